"""Tool adapter modules for extracting referenced file paths from tool_use blocks."""

from .base import ToolAdapter, ToolInvocation
from .bash import BashAdapter
from .file_ops import FileOpsAdapter, MultiEditAdapter
from .search import SearchAdapter
from .special import NoPathAdapter, GenericAdapter
from .registry import create_adapter_registry, get_adapter

__all__ = [
    'ToolAdapter',
    'ToolInvocation',
    'BashAdapter',
    'FileOpsAdapter',
    'MultiEditAdapter',
    'SearchAdapter',
    'NoPathAdapter',
    'GenericAdapter',
    'create_adapter_registry',
    'get_adapter',
]
