# MCP tools exposed behind the resource guard.
# Created: 2026-10-07

from mcpgate.tools.protocol import BaseTool, ToolContext, ToolDefinition
from mcpgate.tools.registry import ToolRegistry, get_tool_registry, reset_tool_registry

__all__ = [
    "BaseTool",
    "ToolContext",
    "ToolDefinition",
    "ToolRegistry",
    "get_tool_registry",
    "reset_tool_registry",
]
