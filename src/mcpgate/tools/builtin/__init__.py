# Built-in tools.
# Created: 2026-10-07

from mcpgate.tools.builtin.tasks import CreateTaskTool, ListTasksTool, PurgeTasksTool

__all__ = ["CreateTaskTool", "ListTasksTool", "PurgeTasksTool"]
