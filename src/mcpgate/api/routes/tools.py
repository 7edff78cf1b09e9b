# MCP tools router - the guarded resource.
# Created: 2026-10-08
#
# Every call passes the ResourceGuard with the tool's own required scope
# before the tool runs. A 401/403 carries the WWW-Authenticate challenge.

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from mcpgate.api.deps import get_server, require_scope
from mcpgate.api.schemas.oauth2 import ToolCallRequest, ToolCallResponse
from mcpgate.oauth2.models import AuthContext
from mcpgate.oauth2.server import AuthorizationServer
from mcpgate.tools import ToolContext, get_tool_registry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/mcp", tags=["MCP Tools"])


@router.get("/tools")
async def list_tools(auth: AuthContext = Depends(require_scope())):
    """Tools the presented token is allowed to call."""
    return {"tools": get_tool_registry().get_definitions(auth.scopes)}


@router.post("/tools/{name}", response_model=ToolCallResponse)
async def call_tool(
    name: str,
    request: Request,
    body: ToolCallRequest | None = None,
    server: AuthorizationServer = Depends(get_server),
):
    registry = get_tool_registry()
    tool = registry.get(name)
    # Authenticate before revealing whether the tool exists.
    auth = server.guard.authorize_request(
        request.headers.get("authorization"),
        tool.required_scope if tool else None,
        server.settings.resource_id,
    )
    if tool is None:
        raise HTTPException(status_code=404, detail=f"Unknown tool: {name}")

    context = ToolContext(auth=auth, broker=server.broker)
    arguments = body.arguments if body else {}
    result = await registry.execute(name, context, **arguments)
    return ToolCallResponse(tool=name, content=result, is_error=result.startswith("Error:"))
