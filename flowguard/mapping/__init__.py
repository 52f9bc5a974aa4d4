"""Data mapping engine and its expression language."""

from flowguard.mapping.engine import DataMappingEngine, set_nested, validate_value
from flowguard.mapping.models import (
    ComputedExpression,
    DryRunResult,
    ExpressionResult,
    FieldMapping,
    FieldValidation,
    MappingContext,
    MappingExpression,
    MappingResult,
    ReferenceExpression,
    StaticExpression,
    TemplateExpression,
)

__all__ = [
    "ComputedExpression",
    "DataMappingEngine",
    "DryRunResult",
    "ExpressionResult",
    "FieldMapping",
    "FieldValidation",
    "MappingContext",
    "MappingExpression",
    "MappingResult",
    "ReferenceExpression",
    "StaticExpression",
    "TemplateExpression",
    "set_nested",
    "validate_value",
]
