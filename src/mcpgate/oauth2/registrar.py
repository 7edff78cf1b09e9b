# Client Registrar - RFC 7591 dynamic client registration.
# Created: 2026-10-03
#
# Every call creates a new client identity; there is no dedup by name.
# Confidential clients receive a plaintext secret once; only its hash is kept.

from __future__ import annotations

import logging
import secrets
from urllib.parse import urlsplit

from mcpgate.oauth2.errors import InvalidClientMetadataError, InvalidRedirectURIError
from mcpgate.oauth2.metadata import TOKEN_ENDPOINT_AUTH_METHODS
from mcpgate.oauth2.models import Client, hash_secret
from mcpgate.oauth2.storage import OAuthStorage

logger = logging.getLogger(__name__)

# Schemes that execute or read locally instead of reaching a client
_FORBIDDEN_SCHEMES = frozenset({"javascript", "data", "vbscript", "file"})


def is_valid_redirect_uri(uri: str) -> bool:
    """Absolute URI with a scheme, no fragment, and an authority or path."""
    try:
        parts = urlsplit(uri)
    except ValueError:
        return False
    if not parts.scheme or parts.fragment or any(c.isspace() for c in uri):
        return False
    if parts.scheme.lower() in _FORBIDDEN_SCHEMES:
        return False
    if parts.scheme in ("http", "https"):
        return bool(parts.hostname)
    # Private-use schemes, e.g. com.example.app:/callback or tauri://oauth-callback
    return bool(parts.netloc or parts.path)


def _check_redirect_uris(redirect_uris: list[str]) -> None:
    if not redirect_uris:
        raise InvalidRedirectURIError("redirect_uris must not be empty")
    bad = [uri for uri in redirect_uris if not is_valid_redirect_uri(uri)]
    if bad:
        raise InvalidRedirectURIError(f"invalid redirect URI: {bad[0]}")


class ClientRegistrar:
    def __init__(self, storage: OAuthStorage):
        self.storage = storage

    def register(
        self,
        client_name: str,
        redirect_uris: list[str],
        logo_uri: str | None = None,
        token_endpoint_auth_method: str = "none",
    ) -> tuple[Client, str | None]:
        """Create a new client. Returns (client, plaintext_secret_or_None)."""
        _check_redirect_uris(redirect_uris)
        if token_endpoint_auth_method not in TOKEN_ENDPOINT_AUTH_METHODS:
            raise InvalidClientMetadataError(
                f"unsupported token_endpoint_auth_method: {token_endpoint_auth_method}"
            )

        is_public = token_endpoint_auth_method == "none"
        secret = None if is_public else secrets.token_urlsafe(32)
        client = Client(
            client_id=f"mcp_{secrets.token_urlsafe(16)}",
            client_name=client_name or "MCP Client",
            redirect_uris=list(dict.fromkeys(redirect_uris)),
            is_public=is_public,
            logo_uri=logo_uri,
            client_secret_hash=hash_secret(secret) if secret else None,
            token_endpoint_auth_method=token_endpoint_auth_method,
        )
        self.storage.save_client(client)
        logger.info("Registered client %s (%s)", client.client_id, client.client_name)
        return client, secret

    def preregister(self, client_id: str, client_name: str, redirect_uris: list[str]) -> Client:
        """Seed a known public client with a fixed id (manual registration)."""
        _check_redirect_uris(redirect_uris)
        client = Client(client_id=client_id, client_name=client_name, redirect_uris=list(redirect_uris))
        self.storage.save_client(client)
        return client

    def delete(self, client_id: str) -> bool:
        return self.storage.delete_client(client_id)
