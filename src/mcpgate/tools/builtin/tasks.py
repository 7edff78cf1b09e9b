# Task tools - a per-user task list, one tool per scope tier.
# Created: 2026-10-07

import logging
import threading
import uuid
from datetime import UTC, datetime
from typing import Any

from mcpgate.tools.protocol import BaseTool, ToolContext

logger = logging.getLogger(__name__)


class TaskBoard:
    """In-process task storage keyed by user_id."""

    def __init__(self):
        self._tasks: dict[str, list[dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def list(self, user_id: str) -> list[dict[str, Any]]:
        with self._lock:
            return [dict(t) for t in self._tasks.get(user_id, [])]

    def add(self, user_id: str, title: str) -> dict[str, Any]:
        task = {
            "id": uuid.uuid4().hex[:8],
            "title": title,
            "created_at": datetime.now(UTC).isoformat(),
        }
        with self._lock:
            self._tasks.setdefault(user_id, []).append(task)
        return dict(task)

    def clear(self, user_id: str) -> int:
        with self._lock:
            return len(self._tasks.pop(user_id, []))


_board = TaskBoard()


def get_task_board() -> TaskBoard:
    return _board


def reset_task_board() -> None:
    """Drop every task (for testing)."""
    global _board
    _board = TaskBoard()


class ListTasksTool(BaseTool):
    """List the caller's tasks."""

    @property
    def name(self) -> str:
        return "list_tasks"

    @property
    def description(self) -> str:
        return "List your tasks, oldest first."

    @property
    def required_scope(self) -> str:
        return "tasks.read"

    async def execute(self, context: ToolContext) -> str:
        tasks = get_task_board().list(context.user_id)
        if not tasks:
            return "No tasks."
        lines = [f"Found {len(tasks)} task(s):"]
        lines += [f"{i}. [{t['id']}] {t['title']}" for i, t in enumerate(tasks, 1)]
        return "\n".join(lines)


class CreateTaskTool(BaseTool):
    @property
    def name(self) -> str:
        return "create_task"

    @property
    def description(self) -> str:
        return "Add a task to your list."

    @property
    def required_scope(self) -> str:
        return "tasks.write"

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "title": {"type": "string", "description": "Task title"},
            },
            "required": ["title"],
        }

    async def execute(self, context: ToolContext, title: str = "") -> str:
        title = title.strip()
        if not title:
            return self._error("title is required")
        task = get_task_board().add(context.user_id, title)
        return f"Created task {task['id']}: {task['title']}"


class PurgeTasksTool(BaseTool):
    @property
    def name(self) -> str:
        return "purge_tasks"

    @property
    def description(self) -> str:
        return "Delete all of your tasks. Cannot be undone."

    @property
    def required_scope(self) -> str:
        return "tasks.admin"

    async def execute(self, context: ToolContext) -> str:
        removed = get_task_board().clear(context.user_id)
        logger.info("Purged %d tasks for %s", removed, context.user_id)
        return f"Deleted {removed} task(s)."
