"""
Unit tests for graph domain models.
"""

import pytest
from pydantic import ValidationError

from flowguard.core.models import (
    ActionParams,
    Edge,
    Node,
    NodeCategory,
    TriggerParams,
    WorkflowGraph,
    split_node_type,
)


class TestNodeType:
    """Tests for dotted node type parsing."""

    def test_split_full_type(self):
        """Test a three-segment type."""
        assert split_node_type("action.gmail.send") == ("action", "gmail", "send")

    def test_split_short_type(self):
        """Test missing segments come back empty."""
        assert split_node_type("logger") == ("logger", "", "")

    def test_split_extra_segments(self):
        """Test extra segments fold into the operation."""
        assert split_node_type("action.drive.files.copy") == ("action", "drive", "files.copy")


class TestNode:
    """Tests for Node model."""

    def test_params_variant_by_category(self):
        """Test params are parsed into the category's model."""
        node = Node(
            id="send",
            type="action.gmail.send",
            params={"recipient": "a@example.com", "cc": "b@example.com"},
        )

        assert isinstance(node.params, ActionParams)
        assert node.params.recipient == "a@example.com"
        assert node.params.extra == {"cc": "b@example.com"}
        assert node.category == NodeCategory.ACTION
        assert node.service == "gmail"
        assert node.operation == "send"

    def test_params_accept_camel_case(self):
        """Test aliased params are accepted in camelCase."""
        node = Node(id="append", type="action.sheets.append", params={"spreadsheetId": "s1"})

        assert node.params.spreadsheet_id == "s1"

    def test_trigger_params(self):
        """Test trigger params parse schedules."""
        node = Node(id="t", type="trigger.time.schedule", params={"schedule": "0 9 * * 1"})

        assert isinstance(node.params, TriggerParams)
        assert node.params.schedule == "0 9 * * 1"

    def test_unknown_category_rejected(self):
        """Test an unknown category fails model validation."""
        with pytest.raises(ValidationError) as exc_info:
            Node(id="x", type="gadget.thing.do")

        assert "Unknown node category" in str(exc_info.value)

    def test_empty_id_rejected(self):
        """Test node IDs cannot be empty."""
        with pytest.raises(ValidationError):
            Node(id="", type="logger.console.log")

    def test_dump_keeps_variant_fields(self):
        """Test serialization includes the variant's declared fields."""
        node = Node(id="send", type="action.gmail.send", params={"subject": "Hi"})

        dumped = node.model_dump(by_alias=True, exclude_unset=True)

        assert dumped["params"] == {"subject": "Hi"}


class TestEdge:
    """Tests for Edge model."""

    def test_edge_is_frozen(self):
        """Test edges are immutable."""
        edge = Edge(id="e1", source="a", target="b")

        with pytest.raises(ValidationError):
            edge.target = "c"


class TestWorkflowGraph:
    """Tests for WorkflowGraph model."""

    def test_parse_graph(self, linear_graph):
        """Test a valid graph parses."""
        graph = WorkflowGraph.model_validate(linear_graph)

        assert len(graph.nodes) == 3
        assert graph.nodes[1].params.spreadsheet_id == "sheet-123"
        assert [e.target for e in graph.edges] == ["append", "notify"]

    def test_duplicate_node_ids_rejected(self, linear_graph):
        """Test duplicate IDs fail model validation."""
        linear_graph["nodes"].append(dict(linear_graph["nodes"][0]))

        with pytest.raises(ValidationError) as exc_info:
            WorkflowGraph.model_validate(linear_graph)

        assert "Duplicate node IDs" in str(exc_info.value)

    def test_unknown_edge_reference_rejected(self, linear_graph):
        """Test edges must reference existing nodes."""
        linear_graph["edges"].append({"id": "e9", "source": "notify", "target": "ghost"})

        with pytest.raises(ValidationError) as exc_info:
            WorkflowGraph.model_validate(linear_graph)

        assert "ghost" in str(exc_info.value)

    def test_to_payload_always_has_edges(self):
        """Test the payload form includes an edges list even when defaulted."""
        graph = WorkflowGraph(
            id="g",
            name="Solo",
            nodes=[Node(id="log", type="logger.console.log", params={"message": "hi"})],
        )

        payload = graph.to_payload()

        assert payload["edges"] == []
        assert payload["nodes"][0]["params"] == {"message": "hi"}
