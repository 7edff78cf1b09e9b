# Router aggregation.
# Created: 2026-10-08
#
# mount_routers(app) registers every router at the root path: OAuth and
# well-known URLs are fixed by the RFCs and must not carry a prefix.

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from fastapi import FastAPI

logger = logging.getLogger(__name__)

# Imported lazily inside mount_routers() to avoid circular imports.
_ROUTERS: list[tuple[str, str, str]] = [
    # (module_path, attr_name, tag)
    ("mcpgate.api.routes.wellknown", "router", "Discovery"),
    ("mcpgate.api.routes.register", "router", "Registration"),
    ("mcpgate.api.routes.authorize", "router", "Authorization"),
    ("mcpgate.api.routes.token", "router", "Token"),
    ("mcpgate.api.routes.tools", "router", "MCP Tools"),
]


def mount_routers(app: FastAPI) -> None:
    """Mount all routers on *app*."""
    import importlib

    from fastapi import APIRouter

    for module_path, attr_name, tag in _ROUTERS:
        mod = importlib.import_module(module_path)
        router: APIRouter = getattr(mod, attr_name)
        app.include_router(router)
        logger.debug("Mounted router: %s (%s)", module_path, tag)
