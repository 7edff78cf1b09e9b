"""HTTP server for ``mcpgate serve``.

Builds the FastAPI application: CORS, the OAuth error handlers and every
router. Protocol errors become ``{error, error_description}`` JSON bodies;
guard failures also carry the ``WWW-Authenticate`` challenge that points MCP
clients at the protected resource metadata.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from fastapi import FastAPI

    from mcpgate.oauth2.server import AuthorizationServer

logger = logging.getLogger(__name__)


def _install_exception_handlers(app: FastAPI) -> None:
    from fastapi import Request
    from fastapi.responses import JSONResponse

    from mcpgate.api.deps import get_server
    from mcpgate.oauth2.errors import (
        InsufficientScopeError,
        InvalidClientError,
        InvalidTokenError,
        OAuthError,
        StorageError,
    )
    from mcpgate.oauth2.guard import www_authenticate
    from mcpgate.upstream.broker import UpstreamError

    @app.exception_handler(OAuthError)
    async def _oauth_error(request: Request, exc: OAuthError) -> JSONResponse:
        headers = {"Cache-Control": "no-store", "Pragma": "no-cache"}
        if isinstance(exc, InvalidTokenError | InsufficientScopeError):
            headers["WWW-Authenticate"] = www_authenticate(get_server(request).settings, exc)
        elif isinstance(exc, InvalidClientError) and request.headers.get(
            "authorization", ""
        ).lower().startswith("basic "):
            headers["WWW-Authenticate"] = 'Basic realm="mcpgate"'
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)

    @app.exception_handler(StorageError)
    async def _storage_error(request: Request, exc: StorageError) -> JSONResponse:
        logger.error("Storage unavailable for %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=503,
            content={
                "error": "temporarily_unavailable",
                "error_description": "the authorization service is temporarily unavailable",
            },
            headers={"Retry-After": "5", "Cache-Control": "no-store"},
        )

    @app.exception_handler(UpstreamError)
    async def _upstream_error(request: Request, exc: UpstreamError) -> JSONResponse:
        return JSONResponse(
            status_code=424,
            content={"error": exc.code, "error_description": str(exc)},
        )


def create_app(server: AuthorizationServer | None = None) -> FastAPI:
    """Build the FastAPI application.

    *server* pins the AuthorizationServer for this app; otherwise routes use
    the process-wide ``get_oauth_server()`` singleton.
    """
    from fastapi import FastAPI
    from fastapi.middleware.cors import CORSMiddleware

    from mcpgate import __version__
    from mcpgate.api.routes import mount_routers
    from mcpgate.config import get_settings

    app = FastAPI(
        title="mcpgate",
        description="OAuth 2.1 authorization server and resource guard for MCP.",
        version=__version__,
        docs_url="/docs",
        redoc_url=None,
    )
    app.state.oauth_server = server

    settings = server.settings if server is not None else get_settings()
    if settings.cors_allowed_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(settings.cors_allowed_origins),
            allow_credentials=False,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["Authorization", "Content-Type", "MCP-Protocol-Version"],
            expose_headers=["WWW-Authenticate"],
        )

    _install_exception_handlers(app)
    mount_routers(app)
    return app


def run_api_server(host: str = "127.0.0.1", port: int = 8000, dev: bool = False) -> None:
    import uvicorn

    from mcpgate.config import get_settings

    settings = get_settings()
    logger.info("mcpgate listening on %s:%d (issuer %s)", host, port, settings.issuer_url)
    logger.info("Protected resource: %s", settings.resource_id)

    if dev:
        import pathlib

        src_dir = str(pathlib.Path(__file__).resolve().parent.parent)
        uvicorn.run(
            "mcpgate.api.serve:create_app",
            factory=True,
            host=host,
            port=port,
            reload=True,
            reload_dirs=[src_dir],
            reload_includes=["*.py"],
            log_level="debug",
        )
    else:
        uvicorn.run(create_app(), host=host, port=port, log_config=None)
