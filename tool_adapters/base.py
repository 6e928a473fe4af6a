"""Base classes for tool adapters."""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

# Input keys that carry a file or directory path explicitly.
PATH_FIELDS = ("file_path", "path", "notebook_path")

# Absolute path with an extension, at the start of a command or after whitespace.
COMMAND_PATH_RE = re.compile(r"(?:^|\s)(/[\w./-]+\.\w+)")


@dataclass
class ToolInvocation:
    """One tool_use block reduced to what time accounting needs."""
    tool_name: str
    tool_use_id: str | None
    timestamp: str | None
    referenced_paths: list[str] = field(default_factory=list)


class ToolAdapter(ABC):
    """Base class for tool-specific path extraction."""

    def extract(self, block: dict, timestamp: str | None = None) -> ToolInvocation:
        """Build a ToolInvocation from a tool_use content block."""
        tool_input = block.get("input")
        if not isinstance(tool_input, dict):
            tool_input = {}
        return ToolInvocation(
            tool_name=block.get("name") or "unknown",
            tool_use_id=block.get("id"),
            timestamp=timestamp,
            referenced_paths=self.referenced_paths(tool_input),
        )

    @abstractmethod
    def referenced_paths(self, tool_input: dict) -> list[str]:
        """
        Return the file paths this invocation touches.

        Args:
            tool_input: The ``input`` object of the tool_use block

        Returns:
            Paths in the order they appear, possibly with duplicates
        """
        pass

    def explicit_paths(self, tool_input: dict) -> list[str]:
        """Helper returning non-empty string values of the known path fields."""
        paths = []
        for key in PATH_FIELDS:
            value = tool_input.get(key)
            if isinstance(value, str) and value:
                paths.append(value)
        return paths

    def command_paths(self, command) -> list[str]:
        """Helper applying the absolute-path heuristic to shell command text."""
        if not isinstance(command, str) or not command:
            return []
        return COMMAND_PATH_RE.findall(command)
