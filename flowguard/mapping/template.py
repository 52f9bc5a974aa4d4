"""
Template interpolation for mapping values.

Resolves ``{{nodes.<id>.<path>}}`` and ``{{name}}`` placeholders without
eval/exec. Navigation only walks dict keys and list indexes.
"""

import re
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from flowguard.mapping.expressions import stringify

_BRACKET_PATTERN = re.compile(r"""\[\s*["']?([^\]"']+)["']?\s*\]""")


def split_path(path: str) -> list[str]:
    """
    Split a dot path into segments.

    Examples:
        "data.items[0].name" -> ["data", "items", "0", "name"]
        "rows.2" -> ["rows", "2"]
    """
    if not path:
        return []
    normalized = _BRACKET_PATTERN.sub(r".\1", path)
    return [segment for segment in normalized.split(".") if segment != ""]


def navigate_path(value: Any, path: list[str]) -> Any:
    """
    Navigate a path through nested data structures.

    Numeric segments index lists; anything that is not a dict or list stops
    navigation with None. Attributes of host objects are never read.
    """
    current = value

    for key in path:
        if current is None:
            return None

        if isinstance(current, list):
            if key.isdigit() and int(key) < len(current):
                current = current[int(key)]
            else:
                return None
        elif isinstance(current, dict):
            current = current.get(key)
        else:
            return None

    return current


@dataclass
class TemplateReference:
    """A parsed ``{{...}}`` placeholder."""

    full_match: str
    node_id: Optional[str]
    path: str
    name: str


class TemplateResolver:
    """
    Resolves template placeholders.

    Supports:
    - {{ nodes.node_id.path }} - value from a node output, empty when missing;
      a path is required, so {{ nodes.node_id }} is treated as a bare name
    - {{ name }} - global variable, then user context, else left as written
    """

    TEMPLATE_PATTERN = re.compile(r"\{\{\s*([^}]+?)\s*\}\}")

    def __init__(
        self,
        node_outputs: Mapping[str, Any],
        global_variables: Optional[Mapping[str, Any]] = None,
        user_context: Optional[Mapping[str, Any]] = None,
    ):
        self.node_outputs = node_outputs
        self.global_variables = global_variables or {}
        self.user_context = user_context or {}

    def resolve(self, template: str) -> str:
        """Replace every placeholder in a template string."""
        return self.TEMPLATE_PATTERN.sub(self._replace, template)

    def _replace(self, match: re.Match) -> str:
        ref = self._parse(match)

        if ref.node_id is not None:
            value = navigate_path(self.node_outputs.get(ref.node_id), split_path(ref.path))
            return "" if value is None else stringify(value)

        if ref.name in self.global_variables:
            return stringify(self.global_variables[ref.name])
        if ref.name in self.user_context:
            return stringify(self.user_context[ref.name])
        return ref.full_match

    @staticmethod
    def _parse(match: re.Match) -> TemplateReference:
        name = match.group(1).strip()
        if name.startswith("nodes."):
            node_id, _, path = name[len("nodes."):].partition(".")
            if node_id and path:
                return TemplateReference(match.group(0), node_id, path, name)
        return TemplateReference(match.group(0), None, "", name)

    @classmethod
    def find_references(cls, template: str) -> list[tuple[str, str]]:
        """Node references in a template as (node_id, path) pairs, first-seen order."""
        found: dict[tuple[str, str], None] = {}
        for match in cls.TEMPLATE_PATTERN.finditer(template):
            ref = cls._parse(match)
            if ref.node_id is not None:
                found.setdefault((ref.node_id, ref.path), None)
        return list(found)
