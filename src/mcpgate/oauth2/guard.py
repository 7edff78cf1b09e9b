# Resource Guard - bearer token validation in front of MCP tools.
# Created: 2026-10-05
#
# Validates signature/lookup, expiry, audience and scope. No business logic.
# Every decision, allow or reject, lands in the audit log.

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime

import jwt

from mcpgate.config import Settings
from mcpgate.oauth2.errors import InsufficientScopeError, InvalidTokenError, OAuthError
from mcpgate.oauth2.keys import ALGORITHM, SigningKeyManager
from mcpgate.oauth2.models import AuthContext, hash_secret, utcnow
from mcpgate.oauth2.storage import OAuthStorage
from mcpgate.oauth2.tokens import OpaqueToken, SignedToken, parse_token
from mcpgate.security.audit import AuditLogger

logger = logging.getLogger(__name__)


def www_authenticate(settings: Settings, error: OAuthError | None = None) -> str:
    """Build the RFC 6750 challenge pointing clients at the discovery document."""
    parts = ['realm="MCP"', f'resource_metadata_uri="{settings.resource_metadata_url}"']
    if isinstance(error, InvalidTokenError) and error.token_presented:
        parts.append('error="invalid_token"')
        if error.description:
            parts.append(f'error_description="{error.description}"')
    elif isinstance(error, InsufficientScopeError):
        parts.append('error="insufficient_scope"')
        if error.required:
            parts.append(f'scope="{" ".join(error.required)}"')
    return "Bearer " + ", ".join(parts)


def extract_bearer(authorization: str | None) -> str:
    if not authorization:
        raise InvalidTokenError("missing bearer token", token_presented=False)
    scheme, _, value = authorization.partition(" ")
    value = value.strip()
    if scheme.lower() != "bearer" or not value:
        raise InvalidTokenError("malformed Authorization header")
    return value


class ResourceGuard:
    def __init__(
        self,
        settings: Settings,
        storage: OAuthStorage,
        keys: SigningKeyManager,
        audit: AuditLogger,
    ):
        self.settings = settings
        self.storage = storage
        self.keys = keys
        self.audit = audit

    def authorize_request(
        self,
        authorization_header: str | None,
        required_scope: str | Iterable[str] | None,
        target_resource_id: str | None = None,
        now: datetime | None = None,
    ) -> AuthContext:
        """Return the caller's AuthContext or raise InvalidTokenError / InsufficientScopeError."""
        target = target_resource_id or self.settings.resource_id
        required = _as_scope_list(required_scope)
        ctx: AuthContext | None = None
        try:
            value = extract_bearer(authorization_header)
            token = parse_token(value)
            if isinstance(token, SignedToken):
                ctx = self._check_signed(token, target, now)
            else:
                ctx = self._check_opaque(token, target, now)

            missing = [s for s in required if s not in ctx.scopes]
            if missing:
                raise InsufficientScopeError(
                    f"requires scope: {' '.join(missing)}", required=required
                )
        except OAuthError as exc:
            self.audit.log_decision(
                action="resource_access",
                target=target,
                outcome="reject",
                user_id=ctx.user_id if ctx else None,
                client_id=ctx.client_id if ctx else None,
                error=exc.error,
                reason=exc.description,
            )
            raise

        self.audit.log_decision(
            action="resource_access",
            target=target,
            outcome="allow",
            user_id=ctx.user_id,
            client_id=ctx.client_id,
            scopes=required,
        )
        return ctx

    def _check_signed(self, token: SignedToken, target: str, now: datetime | None) -> AuthContext:
        key = self.keys.get_verification_keys().get(token.header.get("kid", ""))
        if key is None:
            raise InvalidTokenError("unknown signing key")
        options = {"require": ["exp", "iat", "aud", "iss", "sub", "jti"]}
        try:
            claims = jwt.decode(
                token.raw,
                key,
                algorithms=[ALGORITHM],
                audience=target,
                issuer=self.settings.issuer_url,
                options=options,
            )
        except jwt.ExpiredSignatureError as exc:
            raise InvalidTokenError("token expired") from exc
        except jwt.InvalidAudienceError as exc:
            raise InvalidTokenError("token audience mismatch") from exc
        except jwt.InvalidTokenError as exc:
            raise InvalidTokenError("token validation failed") from exc

        # pyjwt accepts a list-valued aud that merely contains the target.
        if claims["aud"] != target:
            raise InvalidTokenError("token audience mismatch")

        if now is not None and claims["exp"] <= now.timestamp():
            raise InvalidTokenError("token expired")

        record = self.storage.get_access_token(claims["jti"])
        if record is not None and record.revoked:
            raise InvalidTokenError("token revoked")

        return AuthContext(
            user_id=claims["sub"],
            client_id=claims.get("client_id", ""),
            scopes=claims.get("scope", "").split(),
            audience=target,
            token_id=claims["jti"],
            token_fingerprint=hash_secret(token.raw),
        )

    def _check_opaque(self, token: OpaqueToken, target: str, now: datetime | None) -> AuthContext:
        now = now or utcnow()
        record = self.storage.get_access_token(token.lookup_key)
        if record is None:
            raise InvalidTokenError("unknown token")
        if record.revoked:
            raise InvalidTokenError("token revoked")
        if record.expires_at <= now:
            raise InvalidTokenError("token expired")
        if record.audience != target:
            raise InvalidTokenError("token audience mismatch")
        return AuthContext(
            user_id=record.user_id,
            client_id=record.client_id,
            scopes=list(record.scopes),
            audience=record.audience,
            token_id=record.token_id,
            token_fingerprint=token.lookup_key,
        )


def _as_scope_list(required: str | Iterable[str] | None) -> list[str]:
    if required is None:
        return []
    if isinstance(required, str):
        return required.split()
    return list(required)
