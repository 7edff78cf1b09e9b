# Discovery router - RFC 9728 / RFC 8414 metadata and the JWKS.
# Created: 2026-10-08

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from mcpgate.api.deps import get_server
from mcpgate.oauth2.server import AuthorizationServer

router = APIRouter(tags=["Discovery"])


@router.get("/.well-known/oauth-protected-resource")
@router.get("/.well-known/oauth-protected-resource/{resource_path:path}")
async def protected_resource_metadata(
    resource_path: str = "", server: AuthorizationServer = Depends(get_server)
):
    """Tells MCP clients which authorization server protects this resource."""
    return server.metadata.protected_resource_metadata()


@router.get("/.well-known/oauth-authorization-server")
async def authorization_server_metadata(server: AuthorizationServer = Depends(get_server)):
    return server.metadata.authorization_server_metadata()


@router.get("/jwks.json")
async def jwks(server: AuthorizationServer = Depends(get_server)):
    if server.settings.token_format != "jwt":
        raise HTTPException(status_code=404, detail="Not Found")
    return server.keys.jwks()
