# Tool registry for managing available tools.
# Created: 2026-10-07

from __future__ import annotations

import logging
from typing import Any

from mcpgate.tools.protocol import BaseTool, ToolContext

logger = logging.getLogger(__name__)


class ToolRegistry:
    """
    Registry for the tools served at /mcp/tools.

    Usage:
        registry = ToolRegistry()
        registry.register(ListTasksTool())

        # Definitions visible to a token with these scopes
        definitions = registry.get_definitions(["tasks.read"])

        # Execute a tool (the scope was already checked by the guard)
        result = await registry.execute("list_tasks", context)
    """

    def __init__(self) -> None:
        self._tools: dict[str, BaseTool] = {}

    def register(self, tool: BaseTool) -> None:
        self._tools[tool.name] = tool
        logger.debug("Registered tool: %s (%s)", tool.name, tool.required_scope)

    def unregister(self, name: str) -> None:
        if name in self._tools:
            del self._tools[name]
            logger.debug("Unregistered tool: %s", name)

    def get(self, name: str) -> BaseTool | None:
        return self._tools.get(name)

    def has(self, name: str) -> bool:
        return name in self._tools

    @property
    def tool_names(self) -> list[str]:
        return list(self._tools)

    def get_definitions(self, scopes: list[str] | None = None) -> list[dict[str, Any]]:
        """Tool definitions, limited to tools *scopes* can call when given."""
        return [
            tool.definition.to_mcp_schema()
            for tool in self._tools.values()
            if scopes is None or tool.required_scope in scopes
        ]

    async def execute(self, name: str, context: ToolContext, **params: Any) -> str:
        tool = self._tools.get(name)
        if tool is None:
            return f"Error: Tool '{name}' not found"
        logger.info("Executing tool %s for %s", name, context.user_id)
        try:
            return await tool.execute(context, **params)
        except TypeError as e:
            return f"Error: invalid parameters for '{name}': {e}"


# Singleton
_registry: ToolRegistry | None = None


def get_tool_registry() -> ToolRegistry:
    """Registry preloaded with the built-in tools."""
    global _registry
    if _registry is None:
        from mcpgate.tools.builtin import CreateTaskTool, ListTasksTool, PurgeTasksTool

        _registry = ToolRegistry()
        for tool in (ListTasksTool(), CreateTaskTool(), PurgeTasksTool()):
            _registry.register(tool)
    return _registry


def reset_tool_registry() -> None:
    """Reset singleton (for testing)."""
    global _registry
    _registry = None
