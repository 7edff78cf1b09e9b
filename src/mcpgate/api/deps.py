# Shared FastAPI dependencies for the API layer.
# Created: 2026-10-08

from __future__ import annotations

from fastapi import HTTPException, Request

from mcpgate.oauth2.models import AuthContext
from mcpgate.oauth2.server import AuthorizationServer, get_oauth_server
from mcpgate.security.session_tokens import SESSION_COOKIE, verify_session_token


def get_server(request: Request) -> AuthorizationServer:
    """The app's AuthorizationServer (``app.state.oauth_server`` or the singleton)."""
    server = getattr(request.app.state, "oauth_server", None)
    return server if server is not None else get_oauth_server()


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def rate_limit(tier: str):
    """FastAPI dependency enforcing the token-bucket limit for *tier*.

    Usage::

        @router.post("/token", dependencies=[Depends(rate_limit("token"))])
    """

    async def _check(request: Request) -> None:
        from mcpgate.security.rate_limiter import get_limiter

        info = get_limiter(tier).check(client_ip(request))
        if not info.allowed:
            raise HTTPException(status_code=429, detail="Too many requests", headers=info.headers())

    return _check


def require_scope(*scopes: str):
    """FastAPI dependency that validates the bearer token and its scopes.

    Usage::

        @router.get("/mcp/tools")
        async def list_tools(auth: AuthContext = Depends(require_scope())): ...

    With no scopes any valid token for this resource passes. Failures raise
    InvalidTokenError / InsufficientScopeError, rendered by the app's
    exception handler with a WWW-Authenticate challenge.
    """

    async def _check(request: Request) -> AuthContext:
        server = get_server(request)
        auth = server.guard.authorize_request(
            request.headers.get("authorization"),
            list(scopes),
            server.settings.resource_id,
        )
        request.state.auth = auth
        return auth

    return _check


def get_session_user(request: Request) -> str | None:
    """User id from the signed login cookie, or None."""
    token = request.cookies.get(SESSION_COOKIE)
    if not token:
        return None
    return verify_session_token(token, get_server(request).session_secret)
