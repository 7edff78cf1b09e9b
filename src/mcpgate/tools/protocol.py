# Tool protocol - scoped, string-based tool interface.
# Created: 2026-10-07

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from mcpgate.oauth2.models import AuthContext

if TYPE_CHECKING:
    from mcpgate.upstream.broker import UpstreamTokenBroker
    from mcpgate.upstream.token_store import UpstreamCredential


@dataclass
class ToolDefinition:
    """Tool definition as listed to MCP clients."""

    name: str
    description: str
    parameters: dict[str, Any]  # JSON Schema
    required_scope: str

    def to_mcp_schema(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.parameters,
            "requiredScope": self.required_scope,
        }


@dataclass
class ToolContext:
    """Who is calling. Built by the HTTP layer after the guard passes."""

    auth: AuthContext
    broker: UpstreamTokenBroker | None = None

    @property
    def user_id(self) -> str:
        return self.auth.user_id

    async def upstream_credential(self, service: str) -> UpstreamCredential:
        if self.broker is None:
            raise RuntimeError("No upstream broker configured")
        return await self.broker.get_upstream_credential(self.auth, service)


class BaseTool(ABC):
    """Base class for tools with common functionality."""

    @property
    @abstractmethod
    def name(self) -> str: ...

    @property
    @abstractmethod
    def description(self) -> str: ...

    @property
    @abstractmethod
    def required_scope(self) -> str:
        """OAuth scope the caller's token must carry."""
        ...

    @property
    def parameters(self) -> dict[str, Any]:
        """Parameter schema. Override in subclass."""
        return {"type": "object", "properties": {}, "required": []}

    @property
    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=self.parameters,
            required_scope=self.required_scope,
        )

    @abstractmethod
    async def execute(self, context: ToolContext, **params: Any) -> str:
        """Run the tool for ``context.user_id``."""
        ...

    def _error(self, message: str) -> str:
        return f"Error: {message}"
