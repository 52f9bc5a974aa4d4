"""
Data mapping engine.

Resolves a node's input fields from prior node outputs, global variables and
user context. Failures are reported per field; the engine itself never
raises for bad expressions or data.
"""

import inspect
import logging
import re
import time
from typing import Any, Callable, Optional, Sequence, Union

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from flowguard.core.exceptions import ExpressionError, TransformError
from flowguard.mapping.expressions import (
    evaluate,
    normalize_number,
    parse,
    referenced_nodes,
    type_name,
)
from flowguard.mapping.functions import HELPERS, TRANSFORMS
from flowguard.mapping.models import (
    ComputedExpression,
    DryRunResult,
    ExpressionResult,
    FieldError,
    FieldMapping,
    FieldValidation,
    MappingContext,
    MappingExpression,
    MappingMetadata,
    MappingResult,
    ReferenceExpression,
    StaticExpression,
    TemplateExpression,
)
from flowguard.mapping.template import TemplateResolver, navigate_path, split_path

logger = logging.getLogger(__name__)

_EXPRESSION_ADAPTER: TypeAdapter = TypeAdapter(MappingExpression)


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 3)


def _reference_label(node_id: str, path: str) -> str:
    return f"{node_id}.{path}" if path else node_id


def _format_limit(limit: float) -> str:
    return str(normalize_number(limit))


def validate_value(value: Any, validation: Optional[FieldValidation]) -> Optional[str]:
    """
    Check a resolved value against field constraints.

    Returns:
        An error message, or None when the value passes
    """
    if validation is None:
        return None

    if validation.required and (value is None or value == ""):
        return "Field is required"

    if validation.type and value is not None:
        actual = type_name(value)
        if actual != validation.type:
            return f"Expected type {validation.type}, got {actual}"

    if validation.pattern and isinstance(value, str):
        try:
            matched = re.search(validation.pattern, value)
        except re.error as e:
            return f"Invalid pattern {validation.pattern!r}: {e}"
        if not matched:
            return f"Value does not match pattern: {validation.pattern}"

    sized = isinstance(value, (str, list))
    measure = len(value) if sized else value

    if validation.min is not None and (sized or type_name(value) == "number"):
        if measure < validation.min:
            what = "Length" if sized else "Value"
            return f"{what} must be at least {_format_limit(validation.min)}"

    if validation.max is not None and (sized or type_name(value) == "number"):
        if measure > validation.max:
            what = "Length" if sized else "Value"
            return f"{what} must be at most {_format_limit(validation.max)}"

    return None


def _get_child(container: Any, key: str) -> Any:
    if isinstance(container, list):
        if key.isdigit() and int(key) < len(container):
            return container[int(key)]
        return None
    return container.get(key)


def _set_child(container: Any, key: str, value: Any) -> None:
    if isinstance(container, list):
        if not key.isdigit():
            raise ValueError(f"Cannot set key '{key}' on a list")
        index = int(key)
        if index >= len(container):
            container.extend([None] * (index + 1 - len(container)))
        container[index] = value
    else:
        container[key] = value


def set_nested(target: dict[str, Any], path: str, value: Any) -> None:
    """
    Write a value at a dot / ``[index]`` path, creating containers on the way.

    A missing container becomes a list when the next segment is numeric and
    a dict otherwise.
    """
    segments = split_path(path)
    if not segments:
        raise ValueError(f"Invalid target field: {path!r}")

    current: Any = target
    for i, key in enumerate(segments[:-1]):
        child = _get_child(current, key)
        if not isinstance(child, (dict, list)):
            child = [] if segments[i + 1].isdigit() else {}
            _set_child(current, key, child)
        current = child

    _set_child(current, segments[-1], value)


class DataMappingEngine:
    """
    Evaluates mapping expressions and applies field mappings.

    Custom functions registered on an engine are callable from expressions
    and usable as transforms; they may be sync or async.
    """

    def __init__(self):
        self._custom_functions: dict[str, Callable[..., Any]] = {}

    # ==================== Functions ====================

    def register_custom_function(self, name: str, func: Callable[..., Any]) -> None:
        """
        Register a function callable from expressions.

        Raises:
            ValueError: If the name is empty, taken by a built-in, or func is not callable
        """
        if not name or not isinstance(name, str):
            raise ValueError("Custom function name must be a non-empty string")
        if name in HELPERS:
            raise ValueError(f"'{name}' is a built-in helper and cannot be replaced")
        if not callable(func):
            raise ValueError(f"Custom function '{name}' must be callable")

        self._custom_functions[name] = func
        logger.info(f"Registered custom function: {name}")

    def available_functions(self) -> dict[str, list[str]]:
        """Names of built-in helpers, named transforms and custom functions."""
        return {
            "helpers": sorted(HELPERS),
            "transforms": sorted(TRANSFORMS),
            "custom": sorted(self._custom_functions),
        }

    @property
    def functions(self) -> dict[str, Callable[..., Any]]:
        return {**HELPERS, **self._custom_functions}

    # ==================== Evaluation ====================

    async def evaluate(
        self,
        expression: Union[MappingExpression, dict[str, Any]],
        context: Union[MappingContext, dict[str, Any]],
    ) -> ExpressionResult:
        """
        Evaluate one mapping expression against a context.

        Returns:
            ExpressionResult; failures are reported in ``error``, never raised
        """
        start = time.perf_counter()
        references: list[str] = []

        try:
            expression = self._coerce_expression(expression)
            context = self._coerce_context(context)
            value = await self._resolve(expression, context, references)
        except Exception as e:
            logger.debug(f"Expression evaluation failed: {e}")
            return ExpressionResult(
                success=False,
                error=str(e),
                evaluation_time_ms=_elapsed_ms(start),
                references_used=references,
            )

        return ExpressionResult(
            success=True,
            value=value,
            evaluation_time_ms=_elapsed_ms(start),
            references_used=references,
        )

    async def _resolve(
        self,
        expression: MappingExpression,
        context: MappingContext,
        references: list[str],
    ) -> Any:
        if isinstance(expression, StaticExpression):
            return expression.value

        if isinstance(expression, ReferenceExpression):
            references.append(_reference_label(expression.node_id, expression.path))
            value = navigate_path(
                context.node_outputs.get(expression.node_id),
                split_path(expression.path),
            )
            return expression.fallback if value is None else value

        if isinstance(expression, ComputedExpression):
            ast = parse(expression.expression)
            references.extend(_reference_label(n, p) for n, p in referenced_nodes(ast))
            variables = {
                "nodes": context.node_outputs,
                "vars": context.global_variables,
                "user": context.user_context,
            }
            return await evaluate(ast, variables, self.functions)

        if isinstance(expression, TemplateExpression):
            references.extend(
                _reference_label(n, p)
                for n, p in TemplateResolver.find_references(expression.template)
            )
            resolver = TemplateResolver(
                node_outputs=context.node_outputs,
                global_variables=context.global_variables,
                user_context=context.user_context,
            )
            return resolver.resolve(expression.template)

        raise ExpressionError(f"Unknown expression type: {type(expression).__name__}")

    # ==================== Mappings ====================

    async def apply_mappings(
        self,
        mappings: Sequence[Union[FieldMapping, dict[str, Any]]],
        context: Union[MappingContext, dict[str, Any]],
    ) -> MappingResult:
        """
        Apply field mappings and build the nested input object.

        Each field is resolved, transformed and validated independently; a
        failing field is reported in ``errors`` and left out of ``result``.
        """
        start = time.perf_counter()
        result: dict[str, Any] = {}
        errors: list[FieldError] = []
        references: dict[str, None] = {}
        successful = 0

        try:
            context = self._coerce_context(context)
        except PydanticValidationError as e:
            return MappingResult(
                success=False,
                errors=[FieldError(field="context", error=str(e))],
                metadata=MappingMetadata(
                    total_fields=len(mappings),
                    evaluation_time_ms=_elapsed_ms(start),
                ),
            )

        for raw in mappings:
            try:
                mapping = raw if isinstance(raw, FieldMapping) else FieldMapping.model_validate(raw)
            except PydanticValidationError as e:
                field = raw.get("target_field") or raw.get("targetField") if isinstance(raw, dict) else None
                errors.append(FieldError(field=str(field or "<invalid>"), error=str(e)))
                continue

            error = await self._apply_one(mapping, context, result, references)
            if error:
                errors.append(FieldError(field=mapping.target_field, error=error))
            else:
                successful += 1

        if errors:
            logger.info(f"Mapping completed with {len(errors)} failed field(s) of {len(mappings)}")

        return MappingResult(
            success=not errors,
            result=result,
            errors=errors,
            metadata=MappingMetadata(
                total_fields=len(mappings),
                successful_fields=successful,
                evaluation_time_ms=_elapsed_ms(start),
                references_used=list(references),
            ),
        )

    async def _apply_one(
        self,
        mapping: FieldMapping,
        context: MappingContext,
        result: dict[str, Any],
        references: dict[str, None],
    ) -> Optional[str]:
        """Resolve a single field into ``result``; return an error message on failure."""
        outcome = await self.evaluate(mapping.expression, context)
        for ref in outcome.references_used:
            references.setdefault(ref, None)
        if not outcome.success:
            return outcome.error

        value = outcome.value
        if mapping.transform:
            try:
                value = await self.apply_transform(mapping.transform, value, mapping.transform_args)
            except TransformError as e:
                return str(e)

        problem = validate_value(value, mapping.validation)
        if problem:
            return problem

        try:
            set_nested(result, mapping.target_field, value)
        except ValueError as e:
            return str(e)
        return None

    async def apply_transform(self, name: str, value: Any, args: Sequence[Any] = ()) -> Any:
        """
        Apply a named transform (or custom function) to a value.

        Raises:
            TransformError: If the transform is unknown or fails
        """
        func = TRANSFORMS.get(name) or self._custom_functions.get(name)
        if func is None:
            raise TransformError(f"Unknown transformation: {name}")

        try:
            transformed = func(value, *args)
            if inspect.isawaitable(transformed):
                transformed = await transformed
        except Exception as e:
            raise TransformError(f"Transform '{name}' failed: {e}") from e
        return transformed

    # ==================== Dry run ====================

    async def test_expression(
        self,
        expression: Union[MappingExpression, dict[str, Any]],
        sample_context: Union[MappingContext, dict[str, Any]],
    ) -> DryRunResult:
        """
        Evaluate an expression against sample data and flag missing references.

        Warnings are raised for every referenced node absent from the sample
        context; they do not make the result invalid.
        """
        outcome = await self.evaluate(expression, sample_context)
        warnings: list[str] = []

        try:
            expression = self._coerce_expression(expression)
            context = self._coerce_context(sample_context)
        except PydanticValidationError:
            return DryRunResult(valid=False, error=outcome.error, warnings=warnings)

        for node_id in self._referenced_node_ids(expression):
            if node_id not in context.node_outputs:
                warnings.append(f"Referenced node '{node_id}' not found in sample context")

        return DryRunResult(
            valid=outcome.success,
            result=outcome.value,
            error=outcome.error,
            references_used=outcome.references_used,
            warnings=warnings,
        )

    @staticmethod
    def _referenced_node_ids(expression: MappingExpression) -> list[str]:
        pairs: list[tuple[str, str]] = []
        if isinstance(expression, ComputedExpression):
            try:
                pairs = referenced_nodes(parse(expression.expression))
            except ExpressionError:
                pairs = []
        elif isinstance(expression, TemplateExpression):
            pairs = TemplateResolver.find_references(expression.template)
        return list(dict.fromkeys(node_id for node_id, _ in pairs))

    # ==================== Coercion ====================

    @staticmethod
    def _coerce_expression(expression: Any) -> MappingExpression:
        if isinstance(
            expression,
            (StaticExpression, ReferenceExpression, ComputedExpression, TemplateExpression),
        ):
            return expression
        return _EXPRESSION_ADAPTER.validate_python(expression)

    @staticmethod
    def _coerce_context(context: Any) -> MappingContext:
        if isinstance(context, MappingContext):
            return context
        return MappingContext.model_validate(context or {})
