# OAuth2 data models.
# Created: 2026-10-02

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import UTC, datetime


def utcnow() -> datetime:
    return datetime.now(UTC)


def hash_secret(value: str) -> str:
    """SHA-256 hex digest. Codes, opaque tokens and secrets are stored hashed."""
    return hashlib.sha256(value.encode()).hexdigest()


@dataclass
class Client:
    """Registered OAuth2 client (usually a public MCP client)."""

    client_id: str
    client_name: str
    redirect_uris: list[str]
    registration_time: datetime = field(default_factory=utcnow)
    is_public: bool = True
    logo_uri: str | None = None
    client_secret_hash: str | None = None
    token_endpoint_auth_method: str = "none"


@dataclass
class AuthorizationRequestContext:
    """State of one in-progress /authorize attempt, keyed by flow_id."""

    flow_id: str
    client_id: str
    redirect_uri: str
    requested_scopes: list[str]
    code_challenge: str
    code_challenge_method: str
    resource: str
    expires_at: datetime
    state: str | None = None
    user_id: str | None = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class AuthorizationCode:
    """Single-use proof of consent. ``code_hash`` is sha256(code)."""

    code_hash: str
    client_id: str
    user_id: str
    granted_scopes: list[str]
    code_challenge: str
    code_challenge_method: str
    resource: str
    redirect_uri: str
    expires_at: datetime
    consumed: bool = False


@dataclass
class AccessToken:
    """Record of a minted access token.

    ``token_id`` is the JWT ``jti`` or sha256 of the opaque value. For JWTs
    the record doubles as the revocation list entry.
    """

    token_id: str
    format: str  # "jwt" | "opaque"
    user_id: str
    client_id: str
    scopes: list[str]
    audience: str
    issued_at: datetime
    expires_at: datetime
    family_id: str | None = None
    revoked: bool = False


@dataclass
class RefreshToken:
    """Refresh token record. ``token_hash`` is sha256(value)."""

    token_hash: str
    client_id: str
    user_id: str
    scopes: list[str]
    resource: str
    family_id: str
    issued_at: datetime
    expires_at: datetime
    rotation_generation: int = 0
    superseded: bool = False
    revoked: bool = False


@dataclass
class ConsentGrant:
    """A user's durable approval of scopes for one client."""

    user_id: str
    client_id: str
    scopes: list[str]
    granted_at: datetime = field(default_factory=utcnow)

    def covers(self, scopes: list[str]) -> bool:
        return set(scopes).issubset(self.scopes)


@dataclass
class AuthContext:
    """Identity attached to a request that passed the resource guard."""

    user_id: str
    client_id: str
    scopes: list[str]
    audience: str
    token_id: str
    token_fingerprint: str  # sha256 of the bearer value; the value itself is never kept
