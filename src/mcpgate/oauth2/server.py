# AuthorizationServer - composition root for the OAuth2 components.
# Created: 2026-10-06
#
# Wires one datastore, one key manager and one audit logger into every
# component. Components never reach for globals; only the HTTP layer uses the
# get_oauth_server() singleton.

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from mcpgate.config import Settings, get_config_dir
from mcpgate.oauth2.authorize import AuthorizationEndpoint
from mcpgate.oauth2.exchange import TokenExchanger
from mcpgate.oauth2.guard import ResourceGuard
from mcpgate.oauth2.keys import SigningKeyManager
from mcpgate.oauth2.metadata import MetadataPublisher
from mcpgate.oauth2.registrar import ClientRegistrar
from mcpgate.oauth2.storage import OAuthStorage, create_storage
from mcpgate.oauth2.tokens import TokenIssuer
from mcpgate.oauth2.users import StaticUserDirectory, UserAuthenticator
from mcpgate.security.audit import AuditLogger
from mcpgate.security.session_tokens import load_or_create_session_secret

if TYPE_CHECKING:
    from mcpgate.upstream.token_store import UpstreamTokenStore

logger = logging.getLogger(__name__)


class AuthorizationServer:
    def __init__(
        self,
        settings: Settings,
        storage: OAuthStorage | None = None,
        keys: SigningKeyManager | None = None,
        audit: AuditLogger | None = None,
        users: UserAuthenticator | None = None,
        upstream_store: UpstreamTokenStore | None = None,
    ):
        self.settings = settings
        self.storage = storage or create_storage(settings.storage_backend, settings.storage_path)
        if keys is None:
            key_path = settings.signing_key_path
            if key_path is None and settings.storage_backend == "sqlite":
                key_path = get_config_dir() / "signing_keys.json"
            keys = SigningKeyManager(key_path)
        self.keys = keys
        self.audit = audit or AuditLogger(settings.audit_log_path)
        self.users = users or StaticUserDirectory(settings.users)
        self.session_secret = settings.session_secret or load_or_create_session_secret(
            get_config_dir() / "session_secret"
        )

        self.metadata = MetadataPublisher(settings)
        self.registrar = ClientRegistrar(self.storage)
        self.issuer = TokenIssuer(settings, self.keys)
        self.authorization = AuthorizationEndpoint(settings, self.storage, self.audit)
        self.exchanger = TokenExchanger(settings, self.storage, self.issuer, self.keys, self.audit)
        self.guard = ResourceGuard(settings, self.storage, self.keys, self.audit)
        from mcpgate.upstream.broker import UpstreamTokenBroker

        self.broker = UpstreamTokenBroker(settings, upstream_store, self.audit)

        for entry in settings.preregistered_clients:
            self.registrar.preregister(entry.client_id, entry.client_name, entry.redirect_uris)

    def disconnect(self, user_id: str, client_id: str) -> int:
        """User-initiated disconnect: forget consent and revoke every token."""
        self.storage.delete_consent(user_id, client_id)
        revoked = self.storage.revoke_tokens_for(user_id, client_id)
        self.audit.log_decision(
            action="consent_revoked",
            target=client_id,
            outcome="revoked",
            user_id=user_id,
            client_id=client_id,
            tokens=revoked,
        )
        logger.info("User disconnected client %s (%d tokens revoked)", client_id, revoked)
        return revoked

    def cleanup(self, now: datetime | None = None) -> int:
        return self.storage.cleanup_expired(now)


# Singleton
_server: AuthorizationServer | None = None


def get_oauth_server() -> AuthorizationServer:
    global _server
    if _server is None:
        from mcpgate.config import get_settings
        from mcpgate.security.audit import get_audit_logger

        _server = AuthorizationServer(get_settings(), audit=get_audit_logger())
    return _server


def set_oauth_server(server: AuthorizationServer | None) -> None:
    global _server
    _server = server


def reset_oauth_server() -> None:
    """Reset singleton (for testing)."""
    set_oauth_server(None)
