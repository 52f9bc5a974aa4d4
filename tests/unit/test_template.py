"""
Unit tests for template resolution.
"""

from flowguard.mapping.template import TemplateResolver, navigate_path, split_path


class TestPaths:
    """Tests for path splitting and navigation."""

    def test_split_path_brackets(self):
        """Test bracket indexes become segments."""
        assert split_path("data.items[0].name") == ["data", "items", "0", "name"]
        assert split_path("rows['2']") == ["rows", "2"]
        assert split_path("") == []

    def test_navigate_nested(self):
        """Test navigation through dicts and lists."""
        data = {"a": {"b": [{"c": 1}, {"c": 2}]}}

        assert navigate_path(data, ["a", "b", "1", "c"]) == 2
        assert navigate_path(data, ["a", "b", "5", "c"]) is None
        assert navigate_path(data, ["a", "x", "y"]) is None

    def test_navigate_stops_at_scalars(self):
        """Test strings and other objects are not traversed."""
        assert navigate_path({"s": "text"}, ["s", "upper"]) is None
        assert navigate_path({"s": "text"}, ["s", "0"]) is None


class TestTemplateResolver:
    """Tests for template resolution."""

    def test_node_reference(self):
        """Test node output references are interpolated."""
        resolver = TemplateResolver(node_outputs={"form": {"name": "Ada", "age": 36}})

        assert resolver.resolve("Hi {{nodes.form.name}}, age {{ nodes.form.age }}") == "Hi Ada, age 36"

    def test_missing_node_reference_is_empty(self):
        """Test unresolved node references render as empty strings."""
        resolver = TemplateResolver(node_outputs={})

        assert resolver.resolve("[{{nodes.ghost.value}}]") == "[]"

    def test_non_string_values_rendered(self):
        """Test lists, booleans and objects are stringified."""
        resolver = TemplateResolver(
            node_outputs={"n": {"tags": ["a", "b"], "ok": True, "meta": {"k": 1}}}
        )

        result = resolver.resolve("{{nodes.n.tags}} {{nodes.n.ok}} {{nodes.n.meta}}")

        assert result == 'a,b true {"k": 1}'

    def test_variable_precedence(self):
        """Test global variables win over user context."""
        resolver = TemplateResolver(
            node_outputs={},
            global_variables={"region": "eu"},
            user_context={"region": "us", "timezone": "UTC"},
        )

        assert resolver.resolve("{{region}}/{{timezone}}") == "eu/UTC"

    def test_unknown_name_left_intact(self):
        """Test unknown bare names are left as written."""
        resolver = TemplateResolver(node_outputs={})

        assert resolver.resolve("Hello {{ unknown }}") == "Hello {{ unknown }}"

    def test_node_reference_without_path_left_intact(self):
        """Test a node placeholder needs a path into the output."""
        resolver = TemplateResolver(node_outputs={"form": {"name": "Ada"}})

        assert resolver.resolve("{{nodes.form}} {{nodes.form.name}}") == "{{nodes.form}} Ada"

    def test_find_references(self):
        """Test node references are listed once each in order."""
        template = "{{nodes.a.x}} {{company}} {{nodes.b}} {{nodes.a.x}}"

        assert TemplateResolver.find_references(template) == [("a", "x")]
