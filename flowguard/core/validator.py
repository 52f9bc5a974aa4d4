"""
Workflow graph validation.

Runs a fixed pipeline of checks over a proposed graph: schema conformance,
structure, required parameters, cycle detection, target-runtime
compatibility, security heuristics, scope aggregation and complexity
classification. Every stage runs even when earlier stages reported errors.
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictStr
from pydantic import ValidationError as SchemaError

from flowguard.config import get_settings
from flowguard.config.settings import ValidatorSettings
from flowguard.core.models import NODE_CATEGORIES, WorkflowGraph, split_node_type

logger = logging.getLogger(__name__)


class Severity(str, Enum):
    """Severity of a validation diagnostic."""

    ERROR = "error"
    WARNING = "warning"


class Complexity(str, Enum):
    """Coarse size classification of a graph."""

    SIMPLE = "simple"
    MEDIUM = "medium"
    COMPLEX = "complex"
    UNKNOWN = "unknown"


@dataclass
class ValidationError:
    """Represents a single validation diagnostic."""

    path: str
    message: str
    severity: Severity = Severity.ERROR
    code: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "message": self.message,
            "severity": self.severity.value,
            "code": self.code,
        }


@dataclass
class ValidationResult:
    """Result of graph validation."""

    valid: bool = True
    errors: list[ValidationError] = field(default_factory=list)
    warnings: list[ValidationError] = field(default_factory=list)
    required_scopes: list[str] = field(default_factory=list)
    complexity: Complexity = Complexity.UNKNOWN

    def add_error(self, path: str, message: str, code: Optional[str] = None) -> None:
        """Add a blocking diagnostic."""
        self.errors.append(ValidationError(path, message, Severity.ERROR, code))
        self.valid = False

    def add_warning(self, path: str, message: str, code: Optional[str] = None) -> None:
        """Add an advisory diagnostic."""
        self.warnings.append(ValidationError(path, message, Severity.WARNING, code))

    @property
    def issues(self) -> list[ValidationError]:
        """Errors followed by warnings."""
        return [*self.errors, *self.warnings]

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
            "required_scopes": list(self.required_scopes),
            "complexity": self.complexity.value,
        }


# ==================== Rule tables ====================

@dataclass(frozen=True)
class RequiredParam:
    """A parameter mandated for node types matching a prefix."""

    type_prefix: str
    name: str
    aliases: tuple[str, ...] = ()
    description: str = ""


REQUIRED_PARAMS: tuple[RequiredParam, ...] = (
    RequiredParam("action.gmail.send", "recipient", ("to",), "Recipient email is required"),
    RequiredParam("action.sheets.", "spreadsheet_id", ("spreadsheetId",), "Spreadsheet ID is required"),
    RequiredParam("trigger.time.", "schedule", ("cron",), "Schedule is required for time-based triggers"),
    RequiredParam("action.http.", "url", (), "URL is required for HTTP requests"),
    RequiredParam("action.slack.send", "channel", (), "Channel is required for Slack messages"),
    RequiredParam("action.calendar.create_event", "title", ("summary",), "Event title is required"),
    RequiredParam("delay.", "duration", (), "Delay duration is required"),
)

# Services the target runtime cannot provide
UNSUPPORTED_SERVICES: frozenset[str] = frozenset(
    {"filesystem", "database", "mysql", "postgres", "server", "shell"}
)

SENSITIVE_TERMS: tuple[str, ...] = (
    "password",
    "ssn",
    "social security",
    "credit card",
    "credit_card",
    "creditcard",
    "bank account",
    "bank_account",
)

# Compared against keys with "_" and "-" removed
SECRET_KEY_SUFFIXES: tuple[str, ...] = (
    "password",
    "secret",
    "token",
    "apikey",
    "privatekey",
    "accesskey",
)

_GOOGLE = "https://www.googleapis.com/auth/"

SCOPES_BY_TYPE: dict[str, tuple[str, ...]] = {
    "trigger.gmail.new_email": (f"{_GOOGLE}gmail.readonly",),
    "trigger.sheets.row_added": (f"{_GOOGLE}spreadsheets.readonly",),
    "trigger.calendar.event_created": (f"{_GOOGLE}calendar.readonly",),
    "action.gmail.send": (f"{_GOOGLE}gmail.send",),
    "action.sheets.append": (f"{_GOOGLE}spreadsheets",),
    "action.drive.create_file": (f"{_GOOGLE}drive.file",),
}

SCOPES_BY_SERVICE: dict[str, tuple[str, ...]] = {
    "gmail": (f"{_GOOGLE}gmail.modify",),
    "sheets": (f"{_GOOGLE}spreadsheets",),
    "drive": (f"{_GOOGLE}drive",),
    "calendar": (f"{_GOOGLE}calendar",),
    "docs": (f"{_GOOGLE}documents",),
    "forms": (f"{_GOOGLE}forms",),
    "http": (f"{_GOOGLE}script.external_request",),
}

# (max nodes, max edges, band), checked in order
COMPLEXITY_BANDS: tuple[tuple[int, int, Complexity], ...] = (
    (3, 2, Complexity.SIMPLE),
    (10, 15, Complexity.MEDIUM),
    (25, 40, Complexity.COMPLEX),
)


# ==================== Helpers ====================

class _GraphShape(BaseModel):
    """Loosest accepted shape of a graph payload."""

    model_config = ConfigDict(extra="allow")

    id: StrictStr = Field(..., min_length=1)
    name: StrictStr = Field(..., min_length=1)
    nodes: list[dict[str, Any]] = Field(..., min_length=1)
    edges: list[dict[str, Any]]


@dataclass
class _GraphView:
    """Tolerant view over a possibly malformed graph payload."""

    nodes: list[tuple[int, dict[str, Any]]]
    edges: list[tuple[int, dict[str, Any]]]
    node_ids: set[str]
    node_types: dict[str, str]

    @classmethod
    def from_payload(cls, graph: Mapping[str, Any]) -> "_GraphView":
        raw_nodes = graph.get("nodes")
        raw_edges = graph.get("edges")
        nodes = [
            (i, n) for i, n in enumerate(raw_nodes if isinstance(raw_nodes, list) else [])
            if isinstance(n, dict)
        ]
        edges = [
            (i, e) for i, e in enumerate(raw_edges if isinstance(raw_edges, list) else [])
            if isinstance(e, dict)
        ]
        node_ids: set[str] = set()
        node_types: dict[str, str] = {}
        for _, node in nodes:
            node_id = node.get("id")
            if _is_text(node_id):
                node_ids.add(node_id)
                node_type = node.get("type")
                if _is_text(node_type):
                    node_types.setdefault(node_id, node_type)
        return cls(nodes, edges, node_ids, node_types)


def _is_text(value: Any) -> bool:
    return isinstance(value, str) and value != ""


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, dict)):
        return len(value) == 0
    return False


def _node_path(node: Mapping[str, Any], index: int) -> str:
    node_id = node.get("id")
    return f"/nodes/{node_id}" if _is_text(node_id) else f"/nodes/{index}"


def _edge_path(edge: Mapping[str, Any], index: int) -> str:
    edge_id = edge.get("id")
    return f"/edges/{edge_id}" if _is_text(edge_id) else f"/edges/{index}"


def _params_of(node: Mapping[str, Any]) -> dict[str, Any]:
    params = node.get("params")
    return params if isinstance(params, dict) else {}


def _matches_prefix(node_type: str, prefix: str) -> bool:
    if prefix.endswith("."):
        return node_type.startswith(prefix)
    return node_type == prefix or node_type.startswith(prefix + ".")


def _walk(value: Any, path: str) -> Iterator[tuple[str, Optional[str], Any]]:
    """Yield (path, key, value) for every leaf of a nested params structure."""
    if isinstance(value, dict):
        for key, item in value.items():
            child = f"{path}/{key}"
            if isinstance(item, (dict, list)):
                yield from _walk(item, child)
            else:
                yield child, str(key), item
    elif isinstance(value, list):
        for index, item in enumerate(value):
            child = f"{path}/{index}"
            if isinstance(item, (dict, list)):
                yield from _walk(item, child)
            else:
                yield child, None, item


def _is_parameterized(value: str) -> bool:
    """Check whether a value is a placeholder or environment reference rather than a literal."""
    stripped = value.strip()
    if "{{" in stripped:
        return True
    if stripped.startswith("$"):
        return True
    lowered = stripped.lower()
    return lowered.startswith("env:") or lowered.startswith("env.")


# ==================== Validator ====================

class GraphValidator:
    """
    Validates workflow graphs before persistence or execution.

    The validator is stateless apart from its settings and never raises:
    unexpected failures become a single top-level error entry.
    """

    def __init__(self, settings: Optional[ValidatorSettings] = None):
        self.settings = settings or get_settings().validator

    def validate(self, graph: Union[WorkflowGraph, Mapping[str, Any], Any]) -> ValidationResult:
        """
        Perform full validation of a graph.

        Args:
            graph: A WorkflowGraph model or a plain graph payload

        Returns:
            ValidationResult with errors, warnings, scopes and complexity
        """
        try:
            if isinstance(graph, WorkflowGraph):
                graph = graph.to_payload()

            if not isinstance(graph, Mapping):
                result = ValidationResult()
                result.add_error(
                    "/",
                    f"Graph must be an object, got {type(graph).__name__}",
                    code="INVALID_GRAPH",
                )
                return result

            return self._run_pipeline(graph)

        except Exception as e:
            logger.exception("Graph validation raised unexpectedly")
            result = ValidationResult()
            result.add_error("/", f"Validation failed unexpectedly: {e}", code="VALIDATOR_EXCEPTION")
            return result

    def _run_pipeline(self, graph: Mapping[str, Any]) -> ValidationResult:
        result = ValidationResult()
        view = _GraphView.from_payload(graph)

        self._validate_schema(graph, result)
        self._validate_nodes(view, result)
        self._validate_edges(view, result)
        self._validate_required_params(view, result)
        self._detect_cycles(view, result)
        self._validate_runtime_compatibility(view, result)
        self._scan_sensitive_data(view, result)
        result.required_scopes = self._aggregate_scopes(view)
        result.complexity = self.classify_complexity(len(view.nodes), len(view.edges))

        logger.debug(
            f"Validated graph {graph.get('id')!r}: valid={result.valid} "
            f"errors={len(result.errors)} warnings={len(result.warnings)}"
        )
        return result

    # ---------- 1. schema ----------

    def _validate_schema(self, graph: Mapping[str, Any], result: ValidationResult) -> None:
        """Check top-level fields against the loosest accepted shape."""
        try:
            _GraphShape.model_validate(dict(graph))
        except SchemaError as exc:
            for err in exc.errors():
                loc = [str(part) for part in err["loc"]]
                path = "/" + "/".join(loc)
                if err["type"] == "missing":
                    result.add_error(path, f"Field '{loc[-1]}' is required", code="MISSING_FIELD")
                elif loc == ["nodes"] and err["type"] == "too_short":
                    result.add_error(path, "Graph must contain at least one node", code="EMPTY_GRAPH")
                else:
                    result.add_error(path, err["msg"], code="INVALID_TYPE")

    # ---------- 2. structure ----------

    def _validate_nodes(self, view: _GraphView, result: ValidationResult) -> None:
        """Check node identity, type and params shape."""
        seen: set[str] = set()

        for index, node in view.nodes:
            path = _node_path(node, index)
            node_id = node.get("id")
            node_type = node.get("type")

            if not _is_text(node_id):
                result.add_error(f"{path}/id", "Node ID is required", code="MISSING_NODE_ID")
            elif node_id in seen:
                result.add_error(
                    f"{path}/id", f"Duplicate node ID: {node_id}", code="DUPLICATE_NODE_ID"
                )
            else:
                seen.add(node_id)

            if not _is_text(node_type):
                result.add_error(f"{path}/type", "Node type is required", code="MISSING_NODE_TYPE")
            else:
                category, _, _ = split_node_type(node_type)
                if category not in NODE_CATEGORIES:
                    result.add_error(
                        f"{path}/type",
                        f"Unknown node category '{category}' in type '{node_type}'",
                        code="UNKNOWN_CATEGORY",
                    )

            params = node.get("params")
            if params is not None and not isinstance(params, dict):
                result.add_error(f"{path}/params", "Node params must be an object", code="INVALID_PARAMS")

    def _validate_edges(self, view: _GraphView, result: ValidationResult) -> None:
        """Check edge fields and that both ends resolve to existing nodes."""
        for index, edge in view.edges:
            path = _edge_path(edge, index)

            if not _is_text(edge.get("id")):
                result.add_error(f"{path}/id", "Edge ID is required", code="MISSING_EDGE_FIELD")

            ends_known = True
            for end in ("source", "target"):
                ref = edge.get(end)
                if not _is_text(ref):
                    result.add_error(f"{path}/{end}", f"Edge {end} is required", code="MISSING_EDGE_FIELD")
                    ends_known = False
                elif ref not in view.node_ids:
                    result.add_error(
                        f"{path}/{end}",
                        f"{end.capitalize()} node '{ref}' not found",
                        code="DANGLING_EDGE",
                    )
                    ends_known = False

            if ends_known:
                source_type = view.node_types.get(edge["source"], "")
                target_type = view.node_types.get(edge["target"], "")
                if source_type.startswith("trigger.") and target_type.startswith("trigger."):
                    result.add_warning(path, "Cannot connect two trigger nodes", code="TRIGGER_CHAIN")

    # ---------- 3. required params ----------

    def _validate_required_params(self, view: _GraphView, result: ValidationResult) -> None:
        """Check operation-specific mandatory parameters."""
        for index, node in view.nodes:
            node_type = node.get("type")
            if not _is_text(node_type):
                continue

            path = _node_path(node, index)
            params = _params_of(node)

            for rule in REQUIRED_PARAMS:
                if not _matches_prefix(node_type, rule.type_prefix):
                    continue
                names = (rule.name, *rule.aliases)
                if all(_is_blank(params.get(name)) for name in names):
                    result.add_error(
                        f"{path}/params/{rule.name}",
                        rule.description or f"Missing required parameter: {rule.name}",
                        code="MISSING_REQUIRED_PARAM",
                    )

            if _matches_prefix(node_type, "action.gmail.send"):
                if _is_blank(params.get("subject")) and _is_blank(params.get("body")):
                    result.add_warning(
                        f"{path}/params",
                        "Email should have subject or body",
                        code="EMPTY_EMAIL",
                    )

    # ---------- 4. cycles ----------

    def _detect_cycles(self, view: _GraphView, result: ValidationResult) -> None:
        """
        Detect cycles using an iterative depth-first search.

        Tracks a visited set and the set of nodes on the active path; an edge
        into the active path is a back-edge. The outer loop covers every
        unvisited node so disconnected components are all searched.
        """
        cycle = self.find_cycle(view)
        if cycle:
            result.add_error(
                "/edges",
                f"Circular dependency detected: {' -> '.join(cycle)}",
                code="CYCLE_DETECTED",
            )

    @staticmethod
    def find_cycle(view: _GraphView) -> list[str]:
        """Return the first cycle found as a closed path, or an empty list."""
        adjacency: dict[str, list[str]] = {node_id: [] for node_id in view.node_ids}
        for _, edge in view.edges:
            source, target = edge.get("source"), edge.get("target")
            if source in adjacency and target in adjacency:
                adjacency[source].append(target)

        order: list[str] = []
        for _, node in view.nodes:
            node_id = node.get("id")
            if _is_text(node_id) and node_id not in order:
                order.append(node_id)

        visited: set[str] = set()
        on_path: set[str] = set()

        for start in order:
            if start in visited:
                continue

            visited.add(start)
            on_path.add(start)
            path = [start]
            stack = [iter(adjacency[start])]

            while stack:
                neighbor = next(stack[-1], None)
                if neighbor is None:
                    stack.pop()
                    on_path.discard(path.pop())
                    continue
                if neighbor in on_path:
                    return path[path.index(neighbor):] + [neighbor]
                if neighbor not in visited:
                    visited.add(neighbor)
                    on_path.add(neighbor)
                    path.append(neighbor)
                    stack.append(iter(adjacency[neighbor]))

        return []

    # ---------- 5. runtime compatibility ----------

    def _validate_runtime_compatibility(self, view: _GraphView, result: ValidationResult) -> None:
        """Check capabilities and limits of the target execution runtime."""
        for index, node in view.nodes:
            path = _node_path(node, index)
            node_type = node.get("type")

            if _is_text(node_type):
                _, service, _ = split_node_type(node_type)
                if service in UNSUPPORTED_SERVICES:
                    result.add_error(
                        f"{path}/type",
                        f"Node type '{node_type}' is not supported by the execution runtime",
                        code="UNSUPPORTED_NODE",
                    )

            for leaf_path, _, value in _walk(_params_of(node), f"{path}/params"):
                if isinstance(value, str) and value.strip().lower().startswith("http://"):
                    result.add_warning(
                        leaf_path,
                        f"Outbound call uses non-HTTPS URL '{value}'",
                        code="INSECURE_URL",
                    )

        if len(view.nodes) > self.settings.max_nodes:
            result.add_warning(
                "/nodes",
                f"Graph has {len(view.nodes)} nodes (limit {self.settings.max_nodes}); "
                f"execution may exceed the runtime limit of "
                f"{self.settings.runtime_ceiling_seconds}s",
                code="RUNTIME_LIMIT",
            )

    # ---------- 6. security ----------

    def _scan_sensitive_data(self, view: _GraphView, result: ValidationResult) -> None:
        """Flag likely PII and hard-coded secrets. Warnings only."""
        for index, node in view.nodes:
            path = _node_path(node, index)
            params = _params_of(node)
            if not params:
                continue

            serialized = json.dumps(params, default=str, sort_keys=True).lower()
            found = [term for term in SENSITIVE_TERMS if term in serialized]
            if found:
                result.add_warning(
                    f"{path}/params",
                    f"Parameters may contain sensitive data ({', '.join(found)}); review before running",
                    code="SENSITIVE_DATA",
                )

            for leaf_path, key, value in _walk(params, f"{path}/params"):
                if key is None or not isinstance(value, str) or not value.strip():
                    continue
                normalized = key.lower().replace("_", "").replace("-", "")
                if not normalized.endswith(SECRET_KEY_SUFFIXES):
                    continue
                if not _is_parameterized(value):
                    result.add_warning(
                        leaf_path,
                        f"Secret-like parameter '{key}' holds a literal value; "
                        f"use a placeholder or environment reference",
                        code="HARDCODED_SECRET",
                    )

    # ---------- 7. scopes ----------

    def _aggregate_scopes(self, view: _GraphView) -> list[str]:
        """Union permission scopes of every node, deduplicated, first-seen order."""
        scopes: dict[str, None] = {}
        for _, node in view.nodes:
            node_type = node.get("type")
            if not _is_text(node_type):
                continue
            for scope in self.scopes_for_type(node_type):
                scopes.setdefault(scope, None)
        return list(scopes)

    @staticmethod
    def scopes_for_type(node_type: str) -> tuple[str, ...]:
        """Get required permission scopes for a node type."""
        if node_type in SCOPES_BY_TYPE:
            return SCOPES_BY_TYPE[node_type]
        _, service, _ = split_node_type(node_type)
        return SCOPES_BY_SERVICE.get(service, ())

    # ---------- 8. complexity ----------

    @staticmethod
    def classify_complexity(node_count: int, edge_count: int) -> Complexity:
        """Classify graph size into a coarse band."""
        for max_nodes, max_edges, band in COMPLEXITY_BANDS:
            if node_count <= max_nodes and edge_count <= max_edges:
                return band
        return Complexity.UNKNOWN


def validate_graph(graph: Union[WorkflowGraph, Mapping[str, Any]]) -> ValidationResult:
    """
    Validate a graph with default settings.

    Convenience function for callers that do not hold a validator instance.
    """
    return GraphValidator().validate(graph)
