# Discovery documents (RFC 9728 protected resource, RFC 8414 authorization server).
# Created: 2026-10-03

from __future__ import annotations

from typing import Any

from mcpgate.config import Settings
from mcpgate.oauth2.pkce import SUPPORTED_METHODS

TOKEN_ENDPOINT_AUTH_METHODS = ["none", "client_secret_post", "client_secret_basic"]


class MetadataPublisher:
    """Generates both well-known documents from the shared Settings."""

    def __init__(self, settings: Settings):
        self.settings = settings

    def protected_resource_metadata(self) -> dict[str, Any]:
        s = self.settings
        return {
            "resource": s.resource_id,
            "authorization_servers": s.authorization_servers or [s.issuer_url],
            "bearer_methods_supported": ["header"],
            "scopes_supported": list(s.scopes_supported),
            "resource_name": s.resource_name,
        }

    def authorization_server_metadata(self) -> dict[str, Any]:
        s = self.settings
        base = s.issuer_url
        grant_types = ["authorization_code"]
        if s.refresh_enabled:
            grant_types.append("refresh_token")

        doc: dict[str, Any] = {
            "issuer": base,
            "authorization_endpoint": f"{base}/authorize",
            "token_endpoint": f"{base}/token",
            "revocation_endpoint": f"{base}/revoke",
            "scopes_supported": list(s.scopes_supported),
            "response_types_supported": ["code"],
            "grant_types_supported": grant_types,
            "code_challenge_methods_supported": list(SUPPORTED_METHODS),
            "token_endpoint_auth_methods_supported": list(TOKEN_ENDPOINT_AUTH_METHODS),
            "revocation_endpoint_auth_methods_supported": list(TOKEN_ENDPOINT_AUTH_METHODS),
        }
        if s.registration_enabled:
            doc["registration_endpoint"] = f"{base}/register"
        if s.token_format == "jwt":
            doc["jwks_uri"] = f"{base}/jwks.json"
        return doc
