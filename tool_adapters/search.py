"""Search tool adapters (Grep, Glob, LS)."""

from __future__ import annotations

from .base import ToolAdapter


class SearchAdapter(ToolAdapter):
    """Adapter for search tools; only the search root is a path.

    The pattern itself (a regex or a glob) is never treated as a file.
    """

    def referenced_paths(self, tool_input: dict) -> list[str]:
        return self.explicit_paths(tool_input)
