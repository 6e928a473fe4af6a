"""Adapters for tools without file semantics, plus the generic fallback."""

from __future__ import annotations

from .base import ToolAdapter


class NoPathAdapter(ToolAdapter):
    """Adapter for tools that never touch the filesystem (WebSearch, TodoWrite, ...)."""

    def referenced_paths(self, tool_input: dict) -> list[str]:
        return []


class GenericAdapter(ToolAdapter):
    """
    Fallback adapter for unknown or future tool types.

    Applies every known path field and the command heuristic, since the
    input structure is not known in advance.
    """

    def referenced_paths(self, tool_input: dict) -> list[str]:
        return self.explicit_paths(tool_input) + self.command_paths(tool_input.get("command"))
