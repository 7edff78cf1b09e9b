# Token formats and minting.
# Created: 2026-10-03
#
# Access tokens are either RS256 JWTs or opaque random strings, modeled as the
# tagged variant Token = SignedToken | OpaqueToken. Refresh tokens are always
# opaque. Opaque values are stored only as sha256 hashes.

from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

import jwt

from mcpgate.config import Settings
from mcpgate.oauth2.errors import InvalidTokenError
from mcpgate.oauth2.keys import ALGORITHM, SigningKeyManager
from mcpgate.oauth2.models import AccessToken, RefreshToken, hash_secret, utcnow

ACCESS_TOKEN_PREFIX = "mgat_"
REFRESH_TOKEN_PREFIX = "mgrt_"


@dataclass(frozen=True)
class SignedToken:
    """A JWT access token; ``header`` is unverified until the guard checks it."""

    raw: str
    header: dict


@dataclass(frozen=True)
class OpaqueToken:
    """An opaque access token, looked up in storage by hash."""

    raw: str

    @property
    def lookup_key(self) -> str:
        return hash_secret(self.raw)


Token = SignedToken | OpaqueToken


def parse_token(value: str) -> Token:
    """Classify a bearer value. Raises InvalidTokenError if it is neither format."""
    if value.startswith(ACCESS_TOKEN_PREFIX):
        return OpaqueToken(value)
    if value.count(".") == 2:
        try:
            header = jwt.get_unverified_header(value)
        except jwt.InvalidTokenError as exc:
            raise InvalidTokenError("malformed token") from exc
        return SignedToken(value, header)
    raise InvalidTokenError("malformed token")


class TokenIssuer:
    """Builds access and refresh tokens. The caller persists the records."""

    def __init__(self, settings: Settings, keys: SigningKeyManager):
        self.settings = settings
        self.keys = keys

    def mint_access_token(
        self,
        *,
        user_id: str,
        client_id: str,
        scopes: list[str],
        audience: str,
        family_id: str | None = None,
        now: datetime | None = None,
    ) -> tuple[str, AccessToken]:
        now = now or utcnow()
        expires_at = now + timedelta(seconds=self.settings.access_token_ttl_seconds)

        if self.settings.token_format == "jwt":
            jti = uuid.uuid4().hex
            key = self.keys.get_current_signing_key()
            claims = {
                "iss": self.settings.issuer_url,
                "sub": user_id,
                "aud": audience,
                "client_id": client_id,
                "scope": " ".join(scopes),
                "iat": int(now.timestamp()),
                "exp": int(expires_at.timestamp()),
                "jti": jti,
            }
            value = jwt.encode(claims, key.private_key, algorithm=ALGORITHM, headers={"kid": key.kid})
            token_id = jti
        else:
            value = f"{ACCESS_TOKEN_PREFIX}{secrets.token_urlsafe(32)}"
            token_id = hash_secret(value)

        record = AccessToken(
            token_id=token_id,
            format=self.settings.token_format,
            user_id=user_id,
            client_id=client_id,
            scopes=list(scopes),
            audience=audience,
            issued_at=now,
            expires_at=expires_at,
            family_id=family_id,
        )
        return value, record

    def mint_refresh_token(
        self,
        *,
        user_id: str,
        client_id: str,
        scopes: list[str],
        resource: str,
        family_id: str | None = None,
        generation: int = 0,
        now: datetime | None = None,
    ) -> tuple[str, RefreshToken]:
        now = now or utcnow()
        value = f"{REFRESH_TOKEN_PREFIX}{secrets.token_urlsafe(32)}"
        record = RefreshToken(
            token_hash=hash_secret(value),
            client_id=client_id,
            user_id=user_id,
            scopes=list(scopes),
            resource=resource,
            family_id=family_id or uuid.uuid4().hex,
            issued_at=now,
            expires_at=now + timedelta(seconds=self.settings.refresh_token_ttl_seconds),
            rotation_generation=generation,
        )
        return value, record
