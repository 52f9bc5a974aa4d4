"""
Models for field mappings and their evaluation results.

A mapping expression is a tagged variant on ``type``. Payloads are accepted
in either snake_case or the camelCase used by the editor.
"""

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class _MappingModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class StaticExpression(_MappingModel):
    """A literal value, independent of context."""

    type: Literal["static"] = "static"
    value: Any = None


class ReferenceExpression(_MappingModel):
    """A value read from a prior node's output."""

    type: Literal["reference"] = "reference"
    node_id: str = Field(..., min_length=1, alias="nodeId")
    path: str = Field(default="", description="Dot path into the node output")
    fallback: Any = Field(default=None, description="Used when the path resolves to null")


class ComputedExpression(_MappingModel):
    """An expression in the restricted mapping language."""

    type: Literal["expression"] = "expression"
    expression: str = Field(..., min_length=1)


class TemplateExpression(_MappingModel):
    """A string with ``{{...}}`` placeholders."""

    type: Literal["template"] = "template"
    template: str


MappingExpression = Annotated[
    Union[StaticExpression, ReferenceExpression, ComputedExpression, TemplateExpression],
    Field(discriminator="type"),
]

ValueType = Literal["string", "number", "boolean", "array", "object"]


class FieldValidation(_MappingModel):
    """Constraints checked on a resolved field value."""

    required: bool = False
    type: Optional[ValueType] = None
    pattern: Optional[str] = None
    min: Optional[float] = None
    max: Optional[float] = None


class FieldMapping(_MappingModel):
    """How one target field of a node's input is produced."""

    target_field: str = Field(..., min_length=1, alias="targetField")
    expression: MappingExpression
    transform: Optional[str] = None
    transform_args: list[Any] = Field(default_factory=list, alias="transformArgs")
    validation: Optional[FieldValidation] = None


class MappingContext(_MappingModel):
    """Everything an expression may read."""

    node_outputs: dict[str, Any] = Field(default_factory=dict, alias="nodeOutputs")
    current_node: Optional[str] = Field(default=None, alias="currentNode")
    global_variables: dict[str, Any] = Field(default_factory=dict, alias="globalVariables")
    user_context: dict[str, Any] = Field(default_factory=dict, alias="userContext")


class ExpressionResult(BaseModel):
    """Outcome of evaluating a single mapping expression."""

    success: bool
    value: Any = None
    error: Optional[str] = None
    evaluation_time_ms: float = 0.0
    references_used: list[str] = Field(default_factory=list)


class FieldError(BaseModel):
    """A failure isolated to one target field."""

    field: str
    error: str


class MappingMetadata(BaseModel):
    total_fields: int = 0
    successful_fields: int = 0
    evaluation_time_ms: float = 0.0
    references_used: list[str] = Field(default_factory=list)


class MappingResult(BaseModel):
    """Outcome of applying a list of field mappings."""

    success: bool
    result: dict[str, Any] = Field(default_factory=dict)
    errors: list[FieldError] = Field(default_factory=list)
    metadata: MappingMetadata = Field(default_factory=MappingMetadata)


class DryRunResult(BaseModel):
    """Outcome of a dry-run evaluation against sample data."""

    valid: bool
    result: Any = None
    error: Optional[str] = None
    references_used: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
