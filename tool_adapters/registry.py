"""Tool adapter registry and factory."""

from __future__ import annotations

from .base import ToolAdapter
from .bash import BashAdapter
from .file_ops import FileOpsAdapter, MultiEditAdapter
from .search import SearchAdapter
from .special import GenericAdapter, NoPathAdapter


def create_adapter_registry() -> dict[str, ToolAdapter]:
    """
    Create and return the tool adapter registry.

    Maps tool names to their adapter instances.
    """
    registry: dict[str, ToolAdapter] = {}

    registry["Bash"] = BashAdapter()

    # File operations
    file_ops = FileOpsAdapter()
    for name in ("Read", "Write", "Edit", "NotebookEdit", "NotebookRead"):
        registry[name] = file_ops
    registry["MultiEdit"] = MultiEditAdapter()

    # Search
    search = SearchAdapter()
    for name in ("Grep", "Glob", "LS"):
        registry[name] = search

    # Tools with no file semantics
    no_path = NoPathAdapter()
    for name in (
        "WebSearch", "WebFetch", "TodoWrite", "AskUserQuestion",
        "EnterPlanMode", "ExitPlanMode", "Skill", "Task",
        "TaskCreate", "TaskUpdate", "TaskList", "TaskGet", "TaskOutput", "TaskStop",
    ):
        registry[name] = no_path

    return registry


def get_adapter(tool_name: str, registry: dict[str, ToolAdapter]) -> ToolAdapter:
    """
    Get adapter for a tool name, falling back to GenericAdapter for unknown tools.

    Args:
        tool_name: Name of the tool
        registry: Adapter registry

    Returns:
        ToolAdapter instance for the tool
    """
    if tool_name in registry:
        return registry[tool_name]

    # Fallback to generic adapter
    return GenericAdapter()
