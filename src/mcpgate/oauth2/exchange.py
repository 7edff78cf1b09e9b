# Token Exchanger - the /token and /revoke endpoints.
# Created: 2026-10-05
#
# authorization_code grant: code + PKCE verifier -> access (+ refresh) token.
# refresh_token grant: rotation with reuse detection per token family.
# Every failure raises an OAuthError subclass; StorageError propagates as-is.

from __future__ import annotations

import hmac
import logging
from datetime import datetime

import jwt

from mcpgate.config import Settings
from mcpgate.oauth2 import pkce
from mcpgate.oauth2.errors import (
    InvalidClientError,
    InvalidGrantError,
    InvalidRequestError,
    InvalidScopeError,
    InvalidTokenError,
    RefreshTokenReuseError,
    UnsupportedGrantTypeError,
)
from mcpgate.oauth2.keys import ALGORITHM, SigningKeyManager
from mcpgate.oauth2.models import Client, RefreshToken, hash_secret, utcnow
from mcpgate.oauth2.storage import OAuthStorage, RotationOutcome
from mcpgate.oauth2.tokens import OpaqueToken, SignedToken, TokenIssuer, parse_token
from mcpgate.security.audit import AuditLogger, AuditSeverity

logger = logging.getLogger(__name__)

OFFLINE_ACCESS = "offline_access"
GRANT_TYPES = ("authorization_code", "refresh_token")


class TokenExchanger:
    def __init__(
        self,
        settings: Settings,
        storage: OAuthStorage,
        issuer: TokenIssuer,
        keys: SigningKeyManager,
        audit: AuditLogger,
    ):
        self.settings = settings
        self.storage = storage
        self.issuer = issuer
        self.keys = keys
        self.audit = audit

    # -- client authentication -------------------------------------------

    def authenticate_client(self, client_id: str | None, client_secret: str | None = None) -> Client:
        """Resolve the calling client; confidential clients must prove their secret."""
        if not client_id:
            raise InvalidClientError("client_id is required")
        client = self.storage.get_client(client_id)
        if client is None:
            raise InvalidClientError("unknown client")
        if client.is_public:
            return client
        if not client_secret or not client.client_secret_hash:
            raise InvalidClientError("client authentication failed")
        if not hmac.compare_digest(hash_secret(client_secret), client.client_secret_hash):
            raise InvalidClientError("client authentication failed")
        return client

    # -- dispatch ----------------------------------------------------------

    def exchange(
        self,
        grant_type: str,
        *,
        client_id: str | None,
        client_secret: str | None = None,
        code: str | None = None,
        redirect_uri: str | None = None,
        code_verifier: str | None = None,
        refresh_token: str | None = None,
        scope: str | None = None,
        now: datetime | None = None,
    ) -> dict:
        if grant_type not in GRANT_TYPES or (
            grant_type == "refresh_token" and not self.settings.refresh_enabled
        ):
            raise UnsupportedGrantTypeError(f"unsupported grant_type: {grant_type}")

        client = self.authenticate_client(client_id, client_secret)
        if grant_type == "authorization_code":
            if not code or not redirect_uri or not code_verifier:
                raise InvalidRequestError("code, redirect_uri and code_verifier are required")
            return self.exchange_code(client, code, redirect_uri, code_verifier, now=now)

        if not refresh_token:
            raise InvalidRequestError("refresh_token is required")
        return self.refresh(client, refresh_token, scope, now=now)

    # -- authorization_code ------------------------------------------------

    def exchange_code(
        self,
        client: Client,
        code: str,
        redirect_uri: str,
        code_verifier: str,
        now: datetime | None = None,
    ) -> dict:
        now = now or utcnow()
        code_hash = hash_secret(code)
        record = self.storage.get_code(code_hash)

        if record is None or record.consumed or record.expires_at <= now:
            self._reject("authorization_code", client.client_id, "invalid or expired code")
        if record.client_id != client.client_id:
            self._reject("authorization_code", client.client_id, "code was issued to another client")
        if record.redirect_uri != redirect_uri:
            self._reject("authorization_code", client.client_id, "redirect_uri mismatch")
        if not pkce.verify(code_verifier, record.code_challenge, record.code_challenge_method):
            self._reject("authorization_code", client.client_id, "PKCE verification failed")

        # Single use: whoever flips consumed first wins.
        if not self.storage.consume_code(code_hash):
            self._reject("authorization_code", client.client_id, "code already used")

        access_value, access = self.issuer.mint_access_token(
            user_id=record.user_id,
            client_id=client.client_id,
            scopes=record.granted_scopes,
            audience=record.resource,
            now=now,
        )

        refresh_value = None
        if self.settings.refresh_enabled and OFFLINE_ACCESS in record.granted_scopes:
            refresh_value, refresh = self.issuer.mint_refresh_token(
                user_id=record.user_id,
                client_id=client.client_id,
                scopes=record.granted_scopes,
                resource=record.resource,
                now=now,
            )
            access.family_id = refresh.family_id
            self.storage.save_refresh_token(refresh)
        self.storage.save_access_token(access)

        self.audit.log_decision(
            action="token_issued",
            target=record.resource,
            outcome="success",
            user_id=record.user_id,
            client_id=client.client_id,
            grant_type="authorization_code",
            scopes=record.granted_scopes,
        )
        return self._token_response(access_value, record.granted_scopes, refresh_value)

    # -- refresh_token -----------------------------------------------------

    def refresh(
        self,
        client: Client,
        refresh_value: str,
        scope: str | None = None,
        now: datetime | None = None,
    ) -> dict:
        now = now or utcnow()
        token_hash = hash_secret(refresh_value)
        record = self.storage.get_refresh_token(token_hash)

        if record is None or record.client_id != client.client_id:
            self._reject("refresh_token", client.client_id, "invalid refresh token")
        if record.superseded:
            self._handle_reuse(record)
        if record.revoked:
            self._reject("refresh_token", client.client_id, "refresh token revoked")
        if record.expires_at <= now:
            self._reject("refresh_token", client.client_id, "refresh token expired")

        scopes = list(record.scopes)
        if scope:
            requested = list(dict.fromkeys(scope.split()))
            if not set(requested).issubset(record.scopes):
                raise InvalidScopeError("requested scope exceeds the original grant")
            scopes = requested

        new_value = refresh_value
        if self.settings.refresh_rotation:
            new_value, new_record = self.issuer.mint_refresh_token(
                user_id=record.user_id,
                client_id=record.client_id,
                scopes=record.scopes,
                resource=record.resource,
                family_id=record.family_id,
                generation=record.rotation_generation + 1,
                now=now,
            )
            outcome = self.storage.rotate_refresh_token(token_hash, new_record)
            if outcome is RotationOutcome.REUSED:
                self._handle_reuse(record, already_revoked=True)
            if outcome is not RotationOutcome.ROTATED:
                self._reject("refresh_token", client.client_id, "invalid refresh token")

        access_value, access = self.issuer.mint_access_token(
            user_id=record.user_id,
            client_id=record.client_id,
            scopes=scopes,
            audience=record.resource,
            family_id=record.family_id,
            now=now,
        )
        self.storage.save_access_token(access)

        self.audit.log_decision(
            action="token_issued",
            target=record.resource,
            outcome="success",
            user_id=record.user_id,
            client_id=record.client_id,
            grant_type="refresh_token",
            scopes=scopes,
            generation=record.rotation_generation + (1 if self.settings.refresh_rotation else 0),
        )
        return self._token_response(access_value, scopes, new_value)

    def _handle_reuse(self, record: RefreshToken, already_revoked: bool = False):
        if not already_revoked:
            self.storage.revoke_family(record.family_id)
        logger.warning(
            "Refresh token reuse detected for client %s; revoked family %s",
            record.client_id,
            record.family_id,
        )
        self.audit.log_decision(
            action="refresh_reuse",
            target=record.resource,
            outcome="revoked",
            user_id=record.user_id,
            client_id=record.client_id,
            severity=AuditSeverity.ALERT,
            family_id=record.family_id,
        )
        raise RefreshTokenReuseError("refresh token was already used")

    # -- revocation (RFC 7009) -------------------------------------------

    def revoke(self, token: str, client: Client, token_type_hint: str | None = None) -> None:
        """Revoke a refresh or access token. Unknown tokens are ignored."""
        if not token:
            raise InvalidRequestError("token is required")

        if token_type_hint != "access_token":
            record = self.storage.get_refresh_token(hash_secret(token))
            if record is not None:
                if record.client_id == client.client_id:
                    self.storage.revoke_family(record.family_id)
                    self._log_revocation(client.client_id, record.user_id, "refresh_token")
                return

        token_id = self._access_token_id(token)
        if token_id is None:
            return
        access = self.storage.get_access_token(token_id)
        if access is not None and access.client_id == client.client_id:
            self.storage.revoke_access_token(token_id)
            self._log_revocation(client.client_id, access.user_id, "access_token")

    def _access_token_id(self, value: str) -> str | None:
        try:
            parsed = parse_token(value)
        except InvalidTokenError:
            return None
        if isinstance(parsed, OpaqueToken):
            return parsed.lookup_key
        assert isinstance(parsed, SignedToken)
        key = self.keys.get_verification_keys().get(parsed.header.get("kid", ""))
        if key is None:
            return None
        try:
            claims = jwt.decode(
                value,
                key,
                algorithms=[ALGORITHM],
                options={"verify_aud": False, "verify_exp": False},
            )
        except jwt.InvalidTokenError:
            return None
        return claims.get("jti")

    def _log_revocation(self, client_id: str, user_id: str, kind: str) -> None:
        self.audit.log_decision(
            action="token_revoked",
            target=kind,
            outcome="revoked",
            user_id=user_id,
            client_id=client_id,
            severity=AuditSeverity.INFO,
        )

    # -- helpers -----------------------------------------------------------

    def _token_response(self, access_value: str, scopes: list[str], refresh_value: str | None) -> dict:
        body = {
            "access_token": access_value,
            "token_type": "Bearer",
            "expires_in": self.settings.access_token_ttl_seconds,
            "scope": " ".join(scopes),
        }
        if refresh_value:
            body["refresh_token"] = refresh_value
        return body

    def _reject(self, grant_type: str, client_id: str, reason: str):
        self.audit.log_decision(
            action="token_request",
            target=grant_type,
            outcome="reject",
            client_id=client_id,
            reason=reason,
        )
        raise InvalidGrantError(reason)
