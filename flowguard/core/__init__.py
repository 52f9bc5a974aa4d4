"""Core graph models and validation."""

from flowguard.core.models import (
    Edge,
    Node,
    NodeCategory,
    NodeParams,
    WorkflowGraph,
    split_node_type,
)
from flowguard.core.validator import (
    Complexity,
    GraphValidator,
    Severity,
    ValidationError,
    ValidationResult,
    validate_graph,
)

__all__ = [
    "Complexity",
    "Edge",
    "GraphValidator",
    "Node",
    "NodeCategory",
    "NodeParams",
    "Severity",
    "ValidationError",
    "ValidationResult",
    "WorkflowGraph",
    "split_node_type",
    "validate_graph",
]
