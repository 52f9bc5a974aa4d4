"""
Unit tests for workflow graph validation.
"""

import copy

import pytest

from flowguard.config.settings import ValidatorSettings
from flowguard.core.models import WorkflowGraph
from flowguard.core.validator import (
    Complexity,
    GraphValidator,
    Severity,
    validate_graph,
)


@pytest.fixture
def validator() -> GraphValidator:
    return GraphValidator(ValidatorSettings())


def codes(issues) -> list[str]:
    return [issue.code for issue in issues]


class TestSchemaStage:
    """Tests for top-level shape checks."""

    def test_valid_linear_graph(self, validator, linear_graph):
        """Test a well-formed graph passes with no diagnostics."""
        result = validator.validate(linear_graph)

        assert result.valid
        assert result.errors == []
        assert result.warnings == []

    def test_zero_nodes_is_empty_graph(self, validator):
        """Test a graph without nodes is rejected."""
        result = validator.validate({"id": "g", "name": "Empty", "nodes": [], "edges": []})

        assert not result.valid
        assert codes(result.errors) == ["EMPTY_GRAPH"]
        assert result.errors[0].path == "/nodes"

    def test_missing_top_level_fields(self, validator):
        """Test every missing top-level field is reported."""
        result = validator.validate({})

        assert not result.valid
        paths = {e.path for e in result.errors if e.code == "MISSING_FIELD"}
        assert paths == {"/id", "/name", "/nodes", "/edges"}

    def test_wrong_field_type(self, validator, linear_graph):
        """Test a non-string name is a type error."""
        linear_graph["name"] = 123

        result = validator.validate(linear_graph)

        assert not result.valid
        assert [(e.path, e.code) for e in result.errors] == [("/name", "INVALID_TYPE")]

    def test_non_object_graph(self, validator):
        """Test a graph that is not a mapping yields a single error."""
        result = validator.validate(["not", "a", "graph"])

        assert not result.valid
        assert codes(result.errors) == ["INVALID_GRAPH"]
        assert result.errors[0].path == "/"

    def test_accepts_model_instance(self, validator, linear_graph):
        """Test a parsed WorkflowGraph validates like its payload."""
        graph = WorkflowGraph.model_validate(linear_graph)

        assert validator.validate(graph).to_dict() == validator.validate(linear_graph).to_dict()


class TestStructureStage:
    """Tests for node and edge structure."""

    def test_dangling_edge_target(self, validator, linear_graph):
        """Test an edge to an unknown node is reported at its target path."""
        linear_graph["edges"][0]["target"] = "ghost"

        result = validator.validate(linear_graph)

        assert not result.valid
        dangling = [e for e in result.errors if e.code == "DANGLING_EDGE"]
        assert len(dangling) == 1
        assert dangling[0].path == "/edges/e1/target"
        assert "ghost" in dangling[0].message

    def test_dangling_edge_source(self, validator, linear_graph):
        """Test an edge from an unknown node is reported at its source path."""
        linear_graph["edges"][1]["source"] = "phantom"

        result = validator.validate(linear_graph)

        assert not result.valid
        dangling = [e for e in result.errors if e.code == "DANGLING_EDGE"]
        assert len(dangling) == 1
        assert dangling[0].path == "/edges/e2/source"
        assert "phantom" in dangling[0].message

    def test_duplicate_node_id(self, validator, linear_graph):
        """Test duplicate node IDs are errors."""
        duplicate = copy.deepcopy(linear_graph["nodes"][2])
        linear_graph["nodes"].append(duplicate)

        result = validator.validate(linear_graph)

        assert "DUPLICATE_NODE_ID" in codes(result.errors)

    def test_missing_node_id_uses_index_path(self, validator, linear_graph):
        """Test a node without an ID is addressed by its index."""
        del linear_graph["nodes"][1]["id"]

        result = validator.validate(linear_graph)

        missing = [e for e in result.errors if e.code == "MISSING_NODE_ID"]
        assert missing[0].path == "/nodes/1/id"

    def test_unknown_category(self, validator, linear_graph):
        """Test node types must start with a known category."""
        linear_graph["nodes"][1]["type"] = "widget.sheets.append"

        result = validator.validate(linear_graph)

        unknown = [e for e in result.errors if e.code == "UNKNOWN_CATEGORY"]
        assert unknown[0].path == "/nodes/append/type"

    def test_params_must_be_object(self, validator, linear_graph):
        """Test non-object params are errors."""
        linear_graph["nodes"][1]["params"] = ["spreadsheetId"]

        result = validator.validate(linear_graph)

        assert "INVALID_PARAMS" in codes(result.errors)

    def test_trigger_to_trigger_is_warning(self, validator):
        """Test connecting two triggers warns without failing."""
        graph = {
            "id": "g",
            "name": "Triggers",
            "nodes": [
                {"id": "t1", "type": "trigger.time.schedule", "params": {"schedule": "0 * * * *"}},
                {"id": "t2", "type": "trigger.time.schedule", "params": {"schedule": "5 * * * *"}},
            ],
            "edges": [{"id": "e1", "source": "t1", "target": "t2"}],
        }

        result = validator.validate(graph)

        assert result.valid
        assert codes(result.warnings) == ["TRIGGER_CHAIN"]


class TestRequiredParams:
    """Tests for operation-specific required parameters."""

    def test_missing_recipient_is_only_error(self, validator, scenario_graph):
        """Test a send without recipient reports exactly one error."""
        result = validator.validate(scenario_graph)

        assert not result.valid
        assert len(result.errors) == 1
        assert result.errors[0].path == "/nodes/b/params/recipient"
        assert result.errors[0].code == "MISSING_REQUIRED_PARAM"
        assert result.errors[0].severity == Severity.ERROR

    def test_alias_satisfies_requirement(self, validator, scenario_graph):
        """Test 'to' is accepted in place of 'recipient'."""
        scenario_graph["nodes"][1]["params"]["to"] = "team@example.com"

        result = validator.validate(scenario_graph)

        assert result.valid

    def test_blank_value_does_not_satisfy(self, validator, scenario_graph):
        """Test whitespace-only values count as missing."""
        scenario_graph["nodes"][1]["params"]["recipient"] = "   "

        result = validator.validate(scenario_graph)

        assert codes(result.errors) == ["MISSING_REQUIRED_PARAM"]

    def test_email_without_content_warns(self, validator, scenario_graph):
        """Test an email with neither subject nor body warns."""
        scenario_graph["nodes"][1]["params"] = {"recipient": "team@example.com"}

        result = validator.validate(scenario_graph)

        assert result.valid
        assert codes(result.warnings) == ["EMPTY_EMAIL"]

    @pytest.mark.parametrize(
        "node_type,param",
        [
            ("action.sheets.append", "spreadsheet_id"),
            ("trigger.time.schedule", "schedule"),
            ("action.http.request", "url"),
            ("action.slack.send", "channel"),
            ("delay.wait.for", "duration"),
        ],
    )
    def test_required_param_rules(self, validator, node_type, param):
        """Test each rule reports the canonical parameter path."""
        graph = {
            "id": "g",
            "name": "Single",
            "nodes": [{"id": "n", "type": node_type, "params": {}}],
            "edges": [],
        }

        result = validator.validate(graph)

        assert [e.path for e in result.errors] == [f"/nodes/n/params/{param}"]


class TestCycleDetection:
    """Tests for cycle detection."""

    def test_cycle_detected(self, validator, cyclic_graph):
        """Test a three-node loop is reported with its path."""
        result = validator.validate(cyclic_graph)

        cycles = [e for e in result.errors if e.code == "CYCLE_DETECTED"]
        assert len(cycles) == 1
        assert cycles[0].path == "/edges"
        assert cycles[0].message == "Circular dependency detected: a -> b -> c -> a"

    def test_self_loop(self, validator, linear_graph):
        """Test an edge from a node to itself is a cycle."""
        linear_graph["edges"].append({"id": "loop", "source": "append", "target": "append"})

        result = validator.validate(linear_graph)

        assert "CYCLE_DETECTED" in codes(result.errors)

    def test_cycle_in_disconnected_component(self, validator):
        """Test components not reachable from the first node are searched."""
        graph = {
            "id": "g",
            "name": "Islands",
            "nodes": [
                {"id": "x", "type": "logger.console.log", "params": {}},
                {"id": "y", "type": "logger.console.log", "params": {}},
                {"id": "p", "type": "logger.console.log", "params": {}},
                {"id": "q", "type": "logger.console.log", "params": {}},
            ],
            "edges": [
                {"id": "e1", "source": "x", "target": "y"},
                {"id": "e2", "source": "p", "target": "q"},
                {"id": "e3", "source": "q", "target": "p"},
            ],
        }

        result = validator.validate(graph)

        assert codes(result.errors) == ["CYCLE_DETECTED"]
        assert "p -> q -> p" in result.errors[0].message

    def test_diamond_is_not_a_cycle(self, validator):
        """Test converging paths are acyclic."""
        graph = {
            "id": "g",
            "name": "Diamond",
            "nodes": [
                {"id": n, "type": "transform.data.map", "params": {}} for n in ("a", "b", "c", "d")
            ],
            "edges": [
                {"id": "e1", "source": "a", "target": "b"},
                {"id": "e2", "source": "a", "target": "c"},
                {"id": "e3", "source": "b", "target": "d"},
                {"id": "e4", "source": "c", "target": "d"},
            ],
        }

        assert validator.validate(graph).valid


class TestRuntimeAndSecurity:
    """Tests for runtime compatibility and security heuristics."""

    def test_unsupported_service(self, validator):
        """Test services the runtime cannot provide are errors."""
        graph = {
            "id": "g",
            "name": "DB",
            "nodes": [{"id": "q", "type": "action.database.query", "params": {"sql": "SELECT 1"}}],
            "edges": [],
        }

        result = validator.validate(graph)

        assert [(e.path, e.code) for e in result.errors] == [("/nodes/q/type", "UNSUPPORTED_NODE")]

    def test_insecure_url_warning(self, validator):
        """Test plain HTTP URLs warn at the parameter path."""
        graph = {
            "id": "g",
            "name": "HTTP",
            "nodes": [
                {"id": "h", "type": "action.http.request", "params": {"url": "http://api.example.com"}}
            ],
            "edges": [],
        }

        result = validator.validate(graph)

        assert result.valid
        assert [(w.path, w.code) for w in result.warnings] == [("/nodes/h/params/url", "INSECURE_URL")]

    def test_node_limit_warning(self, linear_graph):
        """Test graphs above the node limit warn."""
        validator = GraphValidator(ValidatorSettings(max_nodes=2))

        result = validator.validate(linear_graph)

        assert result.valid
        assert codes(result.warnings) == ["RUNTIME_LIMIT"]

    def test_sensitive_terms_warn(self, validator, scenario_graph):
        """Test PII-like terms in params produce a warning."""
        scenario_graph["nodes"][1]["params"].update(
            recipient="team@example.com", body="Your password is attached"
        )

        result = validator.validate(scenario_graph)

        assert result.valid
        assert codes(result.warnings) == ["SENSITIVE_DATA"]
        assert result.warnings[0].path == "/nodes/b/params"

    def test_hardcoded_secret_warns(self, validator):
        """Test literal secrets warn while placeholders do not."""
        graph = {
            "id": "g",
            "name": "Secrets",
            "nodes": [
                {
                    "id": "h",
                    "type": "action.http.request",
                    "params": {
                        "url": "https://api.example.com",
                        "api_key": "sk-live-123456",
                        "auth": {"access-token": "{{vars.token}}"},
                        "client_secret": "env:CLIENT_SECRET",
                    },
                }
            ],
            "edges": [],
        }

        result = validator.validate(graph)

        assert result.valid
        assert [(w.path, w.code) for w in result.warnings] == [
            ("/nodes/h/params/api_key", "HARDCODED_SECRET")
        ]


class TestScopesAndComplexity:
    """Tests for scope aggregation and complexity bands."""

    def test_scopes_deduplicated_in_order(self, validator, linear_graph):
        """Test scopes are unioned without duplicates."""
        linear_graph["nodes"].append(
            {"id": "again", "type": "action.gmail.send", "params": {"recipient": "x@example.com", "body": "hi"}}
        )

        result = validator.validate(linear_graph)

        assert result.required_scopes == [
            "https://www.googleapis.com/auth/spreadsheets",
            "https://www.googleapis.com/auth/gmail.send",
        ]

    def test_service_fallback_scope(self):
        """Test types without an exact entry fall back to their service scope."""
        assert GraphValidator.scopes_for_type("action.gmail.draft") == (
            "https://www.googleapis.com/auth/gmail.modify",
        )
        assert GraphValidator.scopes_for_type("logger.console.log") == ()

    @pytest.mark.parametrize(
        "nodes,edges,expected",
        [
            (1, 0, Complexity.SIMPLE),
            (3, 2, Complexity.SIMPLE),
            (3, 3, Complexity.MEDIUM),
            (10, 15, Complexity.MEDIUM),
            (11, 10, Complexity.COMPLEX),
            (25, 40, Complexity.COMPLEX),
            (26, 10, Complexity.UNKNOWN),
        ],
    )
    def test_complexity_bands(self, nodes, edges, expected):
        """Test the band boundaries."""
        assert GraphValidator.classify_complexity(nodes, edges) == expected

    def test_cyclic_graph_complexity(self, validator, cyclic_graph):
        """Test complexity is still computed for invalid graphs."""
        assert validator.validate(cyclic_graph).complexity == Complexity.MEDIUM


class TestDeterminism:
    """Tests that validation is a pure function of its input."""

    def test_repeated_validation_identical(self, validator, cyclic_graph):
        """Test two runs produce identical results."""
        cyclic_graph["edges"].append({"id": "e9", "source": "a", "target": "nowhere"})

        first = validator.validate(cyclic_graph).to_dict()
        second = validator.validate(cyclic_graph).to_dict()

        assert first == second

    def test_input_not_mutated(self, validator, scenario_graph):
        """Test validation leaves the payload untouched."""
        snapshot = copy.deepcopy(scenario_graph)

        validator.validate(scenario_graph)

        assert scenario_graph == snapshot

    def test_module_level_helper(self, scenario_graph):
        """Test the convenience function matches the class."""
        assert validate_graph(scenario_graph).to_dict() == GraphValidator().validate(scenario_graph).to_dict()
