"""File operation tool adapters (Read, Write, Edit, NotebookEdit)."""

from __future__ import annotations

from .base import ToolAdapter


class FileOpsAdapter(ToolAdapter):
    """Adapter for tools that take a single file or notebook path."""

    def referenced_paths(self, tool_input: dict) -> list[str]:
        """Return file_path / notebook_path (and path, if present)."""
        return self.explicit_paths(tool_input)


class MultiEditAdapter(FileOpsAdapter):
    """Adapter for MultiEdit, which may also carry per-edit file paths."""

    def referenced_paths(self, tool_input: dict) -> list[str]:
        paths = self.explicit_paths(tool_input)
        edits = tool_input.get("edits")
        if isinstance(edits, list):
            for edit in edits:
                if isinstance(edit, dict):
                    paths.extend(self.explicit_paths(edit))
        return paths
