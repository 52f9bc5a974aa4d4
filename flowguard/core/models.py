"""
Domain models for workflow graphs.

All models use Pydantic for validation and serialization. Node parameters are
parsed into a typed variant chosen by the node category, with unknown keys
kept as extra attributes.
"""

from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, SerializeAsAny, field_validator, model_validator


class NodeCategory(str, Enum):
    """Leading segment of a node type."""

    TRIGGER = "trigger"
    ACTION = "action"
    TRANSFORM = "transform"
    CONDITION = "condition"
    DELAY = "delay"
    LOGGER = "logger"


NODE_CATEGORIES: frozenset[str] = frozenset(c.value for c in NodeCategory)


def split_node_type(node_type: str) -> tuple[str, str, str]:
    """
    Split a dotted node type into (category, service, operation).

    Missing segments are returned as empty strings; extra segments are
    folded into the operation.
    """
    parts = node_type.split(".", 2)
    parts += [""] * (3 - len(parts))
    return parts[0], parts[1], parts[2]


class Position(BaseModel):
    """2D layout position of a node in the editor."""

    x: float = 0.0
    y: float = 0.0


class NodeParams(BaseModel):
    """Base class for per-category parameters. Unknown keys are kept."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    @property
    def extra(self) -> dict[str, Any]:
        """Parameters not declared by the category model."""
        return dict(self.model_extra or {})


class TriggerParams(NodeParams):
    """Parameters for trigger nodes."""

    schedule: Optional[str] = Field(default=None, description="Cron expression for time triggers")
    timezone: Optional[str] = Field(default=None)
    dedupe_key: Optional[str] = Field(default=None, alias="dedupeKey")
    polling: bool = Field(default=False)
    interval_minutes: Optional[int] = Field(default=None, ge=1, alias="intervalMinutes")


class ActionParams(NodeParams):
    """Parameters for action nodes calling an external service."""

    recipient: Optional[str] = Field(default=None)
    subject: Optional[str] = Field(default=None)
    body: Optional[str] = Field(default=None)
    spreadsheet_id: Optional[str] = Field(default=None, alias="spreadsheetId")
    url: Optional[str] = Field(default=None)
    method: str = Field(default="GET")
    headers: dict[str, str] = Field(default_factory=dict)


class TransformParams(NodeParams):
    """Parameters for data transform nodes."""

    mappings: list[dict[str, Any]] = Field(default_factory=list)


class ConditionParams(NodeParams):
    """Parameters for condition nodes."""

    expression: Optional[str] = Field(default=None)


class DelayParams(NodeParams):
    """Parameters for delay nodes."""

    duration: Optional[Union[int, float, str]] = Field(default=None)


class LoggerParams(NodeParams):
    """Parameters for logger nodes."""

    message: Optional[str] = Field(default=None)
    level: str = Field(default="info")


PARAMS_BY_CATEGORY: dict[NodeCategory, type[NodeParams]] = {
    NodeCategory.TRIGGER: TriggerParams,
    NodeCategory.ACTION: ActionParams,
    NodeCategory.TRANSFORM: TransformParams,
    NodeCategory.CONDITION: ConditionParams,
    NodeCategory.DELAY: DelayParams,
    NodeCategory.LOGGER: LoggerParams,
}


class Node(BaseModel):
    """A single node of a workflow graph."""

    id: str = Field(..., min_length=1, max_length=255, description="Unique node identifier")
    type: str = Field(..., min_length=1, description="Dotted type <category>.<service>.<operation>")
    params: SerializeAsAny[NodeParams] = Field(default_factory=NodeParams)
    position: Optional[Position] = Field(default=None)

    @model_validator(mode="before")
    @classmethod
    def parse_params(cls, data: Any) -> Any:
        """Build the typed params variant matching the node category."""
        if not isinstance(data, dict):
            return data

        node_type = data.get("type")
        if not isinstance(node_type, str):
            return data

        category, _, _ = split_node_type(node_type)
        if category not in NODE_CATEGORIES:
            raise ValueError(
                f"Unknown node category '{category}' in type '{node_type}'. "
                f"Expected one of: {sorted(NODE_CATEGORIES)}"
            )

        params = data.get("params") or {}
        if isinstance(params, dict):
            params_model = PARAMS_BY_CATEGORY[NodeCategory(category)]
            data = {**data, "params": params_model.model_validate(params)}
        return data

    @property
    def category(self) -> NodeCategory:
        """Category parsed from the type string."""
        return NodeCategory(split_node_type(self.type)[0])

    @property
    def service(self) -> str:
        """Service segment of the type string."""
        return split_node_type(self.type)[1]

    @property
    def operation(self) -> str:
        """Operation segment of the type string."""
        return split_node_type(self.type)[2]


class Edge(BaseModel):
    """Directed connection between two nodes."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    source: str = Field(..., min_length=1)
    target: str = Field(..., min_length=1)


class WorkflowGraph(BaseModel):
    """Complete workflow graph as authored by the planner or the editor."""

    id: str = Field(..., min_length=1, description="Graph identifier")
    name: str = Field(..., min_length=1, max_length=255, description="Display name")
    nodes: list[Node] = Field(..., min_length=1)
    edges: list[Edge] = Field(default_factory=list)

    @field_validator("nodes")
    @classmethod
    def validate_unique_node_ids(cls, v: list[Node]) -> list[Node]:
        """Ensure all node IDs are unique."""
        ids = [node.id for node in v]
        if len(ids) != len(set(ids)):
            duplicates = sorted({x for x in ids if ids.count(x) > 1})
            raise ValueError(f"Duplicate node IDs found: {duplicates}")
        return v

    @model_validator(mode="after")
    def validate_edge_references(self) -> "WorkflowGraph":
        """Ensure every edge connects existing nodes."""
        ids = {node.id for node in self.nodes}
        for edge in self.edges:
            missing = [end for end in (edge.source, edge.target) if end not in ids]
            if missing:
                raise ValueError(f"Edge '{edge.id}' references unknown nodes: {missing}")
        return self

    def to_payload(self) -> dict[str, Any]:
        """Serialize to the plain graph shape accepted by the validator."""
        payload = self.model_dump(mode="json", by_alias=True, exclude_unset=True)
        payload.setdefault("edges", [])
        return payload
