# Upstream Token Broker - exchange an MCP identity for an upstream credential.
# Created: 2026-10-06
#
# Tools that call third-party APIs ask the broker for the user's credential
# with that service. The broker refreshes it through the service's token
# endpoint when it is within 60s of expiry. It never returns the bearer token
# the MCP client presented: that token's audience is this server only.

from __future__ import annotations

import logging
import time

import httpx

from mcpgate.config import Settings
from mcpgate.oauth2.models import AuthContext, hash_secret
from mcpgate.security.audit import AuditLogger, AuditSeverity
from mcpgate.upstream.token_store import UpstreamCredential, UpstreamTokenStore

logger = logging.getLogger(__name__)

REFRESH_MARGIN_SECONDS = 60


class UpstreamError(Exception):
    code = "upstream_error"


class UpstreamCredentialMissing(UpstreamError):
    """The user has not linked the service, or the link can no longer be refreshed."""

    code = "upstream_not_linked"


class TokenPassthroughError(UpstreamError):
    """The stored credential is the client's own bearer token."""

    code = "token_passthrough_refused"


class UpstreamTokenBroker:
    def __init__(
        self,
        settings: Settings,
        store: UpstreamTokenStore | None = None,
        audit: AuditLogger | None = None,
        http_timeout: float = 15,
    ):
        self.settings = settings
        self.store = store or UpstreamTokenStore()
        self.audit = audit
        self.http_timeout = http_timeout

    def link_credential(
        self,
        user_id: str,
        service: str,
        access_token: str,
        refresh_token: str | None = None,
        expires_in: int | None = None,
        scopes: list[str] | None = None,
    ) -> UpstreamCredential:
        """Store a credential obtained through the broker's own OAuth client."""
        if service not in self.settings.upstream_services:
            raise ValueError(f"Unknown upstream service: {service}")
        credential = UpstreamCredential(
            user_id=user_id,
            service=service,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=time.time() + expires_in if expires_in else None,
            scopes=list(scopes or []),
        )
        self.store.save(credential)
        return credential

    def unlink(self, user_id: str, service: str) -> bool:
        return self.store.delete(user_id, service)

    async def get_upstream_credential(self, auth: AuthContext, service: str) -> UpstreamCredential:
        credential = self.store.load(auth.user_id, service)
        if credential is None:
            raise UpstreamCredentialMissing(f"{service} is not linked for this user")

        if credential.expires_at and credential.expires_at <= time.time() + REFRESH_MARGIN_SECONDS:
            credential = await self._refresh(credential)

        if hash_secret(credential.access_token) == auth.token_fingerprint:
            logger.error("Refusing to pass a client bearer token to %s", service)
            if self.audit is not None:
                self.audit.log_decision(
                    action="token_passthrough",
                    target=service,
                    outcome="reject",
                    user_id=auth.user_id,
                    client_id=auth.client_id,
                    severity=AuditSeverity.ALERT,
                )
            raise TokenPassthroughError(f"refusing to forward client token to {service}")
        return credential

    async def _refresh(self, credential: UpstreamCredential) -> UpstreamCredential:
        config = self.settings.upstream_services.get(credential.service)
        if config is None or not credential.refresh_token:
            raise UpstreamCredentialMissing(f"{credential.service} credential expired")

        data = {
            "grant_type": "refresh_token",
            "refresh_token": credential.refresh_token,
            "client_id": config.client_id,
        }
        if config.client_secret:
            data["client_secret"] = config.client_secret

        try:
            async with httpx.AsyncClient(timeout=self.http_timeout) as client:
                resp = await client.post(config.token_url, data=data)
                resp.raise_for_status()
                body = resp.json()
            access_token = body["access_token"]
        except (httpx.HTTPError, ValueError, KeyError) as e:
            logger.warning("Upstream token refresh failed for %s: %s", credential.service, e)
            raise UpstreamCredentialMissing(f"{credential.service} credential expired") from e

        credential.access_token = access_token
        credential.expires_at = time.time() + body.get("expires_in", 3600)
        if body.get("refresh_token"):
            credential.refresh_token = body["refresh_token"]
        self.store.save(credential)
        logger.info("Refreshed upstream credential for %s", credential.service)
        return credential
