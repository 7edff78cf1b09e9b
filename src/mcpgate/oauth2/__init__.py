# OAuth 2.1 authorization server and resource guard for MCP.
# Created: 2026-10-02

from mcpgate.oauth2.errors import OAuthError, StorageError
from mcpgate.oauth2.server import AuthorizationServer, get_oauth_server, reset_oauth_server

__all__ = [
    "AuthorizationServer",
    "OAuthError",
    "StorageError",
    "get_oauth_server",
    "reset_oauth_server",
]
