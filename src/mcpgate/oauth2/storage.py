# OAuth2 datastore - clients, flows, codes, tokens, consent grants.
# Created: 2026-10-02
#
# Two backends share one interface:
#   MemoryStorage - single process, one RLock (tests, dev).
#   SQLiteStorage - transactional file store shared by worker processes.
# Code consumption, refresh rotation and consent upsert are atomic in both.

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import replace
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from mcpgate.oauth2.errors import StorageError
from mcpgate.oauth2.models import (
    AccessToken,
    AuthorizationCode,
    AuthorizationRequestContext,
    Client,
    ConsentGrant,
    RefreshToken,
    utcnow,
)

logger = logging.getLogger(__name__)


class RotationOutcome(str, Enum):
    ROTATED = "rotated"
    NOT_FOUND = "not_found"
    REVOKED = "revoked"
    REUSED = "reused"


class OAuthStorage(ABC):
    """Datastore interface injected into every OAuth component."""

    # Clients
    @abstractmethod
    def save_client(self, client: Client) -> None: ...

    @abstractmethod
    def get_client(self, client_id: str) -> Client | None: ...

    @abstractmethod
    def delete_client(self, client_id: str) -> bool: ...

    # Authorization flows
    @abstractmethod
    def save_flow(self, flow: AuthorizationRequestContext) -> None: ...

    @abstractmethod
    def get_flow(self, flow_id: str) -> AuthorizationRequestContext | None: ...

    @abstractmethod
    def take_flow(self, flow_id: str) -> AuthorizationRequestContext | None:
        """Atomically remove and return a flow. Only one caller ever gets it."""

    # Authorization codes
    @abstractmethod
    def save_code(self, code: AuthorizationCode) -> None: ...

    @abstractmethod
    def get_code(self, code_hash: str) -> AuthorizationCode | None: ...

    @abstractmethod
    def consume_code(self, code_hash: str) -> bool:
        """Compare-and-set ``consumed`` false -> true. True for exactly one caller."""

    # Access tokens
    @abstractmethod
    def save_access_token(self, token: AccessToken) -> None: ...

    @abstractmethod
    def get_access_token(self, token_id: str) -> AccessToken | None: ...

    @abstractmethod
    def revoke_access_token(self, token_id: str) -> bool: ...

    # Refresh tokens
    @abstractmethod
    def save_refresh_token(self, token: RefreshToken) -> None: ...

    @abstractmethod
    def get_refresh_token(self, token_hash: str) -> RefreshToken | None: ...

    @abstractmethod
    def rotate_refresh_token(self, old_hash: str, new: RefreshToken) -> RotationOutcome:
        """Supersede ``old_hash`` and store ``new`` in one step.

        Presenting an already superseded token revokes its whole family and
        returns ``REUSED``, even when the family was already revoked.
        """

    @abstractmethod
    def revoke_family(self, family_id: str) -> int:
        """Revoke every refresh and access token of a family. Returns count."""

    @abstractmethod
    def revoke_tokens_for(self, user_id: str, client_id: str) -> int:
        """Revoke every token family a user granted to a client."""

    # Consent
    @abstractmethod
    def get_consent(self, user_id: str, client_id: str) -> ConsentGrant | None: ...

    @abstractmethod
    def upsert_consent(self, grant: ConsentGrant) -> ConsentGrant:
        """Insert or merge (scope union) the grant for (user, client)."""

    @abstractmethod
    def delete_consent(self, user_id: str, client_id: str) -> bool: ...

    # Hygiene
    @abstractmethod
    def cleanup_expired(self, now: datetime | None = None) -> int:
        """Drop expired flows, codes and tokens. Returns number removed."""


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class MemoryStorage(OAuthStorage):
    """Process-local storage guarded by a single lock."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._clients: dict[str, Client] = {}
        self._flows: dict[str, AuthorizationRequestContext] = {}
        self._codes: dict[str, AuthorizationCode] = {}
        self._access: dict[str, AccessToken] = {}
        self._refresh: dict[str, RefreshToken] = {}
        self._consent: dict[tuple[str, str], ConsentGrant] = {}

    def save_client(self, client: Client) -> None:
        with self._lock:
            self._clients[client.client_id] = replace(client)

    def get_client(self, client_id: str) -> Client | None:
        with self._lock:
            client = self._clients.get(client_id)
            return replace(client) if client else None

    def delete_client(self, client_id: str) -> bool:
        with self._lock:
            return self._clients.pop(client_id, None) is not None

    def save_flow(self, flow: AuthorizationRequestContext) -> None:
        with self._lock:
            self._flows[flow.flow_id] = replace(flow)

    def get_flow(self, flow_id: str) -> AuthorizationRequestContext | None:
        with self._lock:
            flow = self._flows.get(flow_id)
            return replace(flow) if flow else None

    def take_flow(self, flow_id: str) -> AuthorizationRequestContext | None:
        with self._lock:
            return self._flows.pop(flow_id, None)

    def save_code(self, code: AuthorizationCode) -> None:
        with self._lock:
            self._codes[code.code_hash] = replace(code)

    def get_code(self, code_hash: str) -> AuthorizationCode | None:
        with self._lock:
            code = self._codes.get(code_hash)
            return replace(code) if code else None

    def consume_code(self, code_hash: str) -> bool:
        with self._lock:
            code = self._codes.get(code_hash)
            if code is None or code.consumed:
                return False
            code.consumed = True
            return True

    def save_access_token(self, token: AccessToken) -> None:
        with self._lock:
            self._access[token.token_id] = replace(token)

    def get_access_token(self, token_id: str) -> AccessToken | None:
        with self._lock:
            token = self._access.get(token_id)
            return replace(token) if token else None

    def revoke_access_token(self, token_id: str) -> bool:
        with self._lock:
            token = self._access.get(token_id)
            if token is None or token.revoked:
                return False
            token.revoked = True
            return True

    def save_refresh_token(self, token: RefreshToken) -> None:
        with self._lock:
            self._refresh[token.token_hash] = replace(token)

    def get_refresh_token(self, token_hash: str) -> RefreshToken | None:
        with self._lock:
            token = self._refresh.get(token_hash)
            return replace(token) if token else None

    def rotate_refresh_token(self, old_hash: str, new: RefreshToken) -> RotationOutcome:
        with self._lock:
            old = self._refresh.get(old_hash)
            if old is None:
                return RotationOutcome.NOT_FOUND
            if old.superseded:
                self.revoke_family(old.family_id)
                return RotationOutcome.REUSED
            if old.revoked:
                return RotationOutcome.REVOKED
            old.superseded = True
            self._refresh[new.token_hash] = replace(new)
            return RotationOutcome.ROTATED

    def revoke_family(self, family_id: str) -> int:
        count = 0
        with self._lock:
            for token in self._refresh.values():
                if token.family_id == family_id and not token.revoked:
                    token.revoked = True
                    count += 1
            for access in self._access.values():
                if access.family_id == family_id and not access.revoked:
                    access.revoked = True
                    count += 1
        return count

    def revoke_tokens_for(self, user_id: str, client_id: str) -> int:
        with self._lock:
            families = {
                t.family_id
                for t in self._refresh.values()
                if t.user_id == user_id and t.client_id == client_id
            }
            count = sum(self.revoke_family(f) for f in families)
            for access in self._access.values():
                if access.user_id == user_id and access.client_id == client_id and not access.revoked:
                    access.revoked = True
                    count += 1
            return count

    def get_consent(self, user_id: str, client_id: str) -> ConsentGrant | None:
        with self._lock:
            grant = self._consent.get((user_id, client_id))
            return replace(grant, scopes=list(grant.scopes)) if grant else None

    def upsert_consent(self, grant: ConsentGrant) -> ConsentGrant:
        with self._lock:
            key = (grant.user_id, grant.client_id)
            existing = self._consent.get(key)
            scopes = set(grant.scopes)
            if existing:
                scopes |= set(existing.scopes)
            merged = replace(grant, scopes=sorted(scopes))
            self._consent[key] = merged
            return replace(merged, scopes=list(merged.scopes))

    def delete_consent(self, user_id: str, client_id: str) -> bool:
        with self._lock:
            return self._consent.pop((user_id, client_id), None) is not None

    def cleanup_expired(self, now: datetime | None = None) -> int:
        now = now or utcnow()
        with self._lock:
            removed = 0
            for store in (self._flows, self._codes, self._access, self._refresh):
                expired = [k for k, v in store.items() if v.expires_at <= now]
                for k in expired:
                    del store[k]
                removed += len(expired)
            return removed


# ---------------------------------------------------------------------------
# SQLite backend
# ---------------------------------------------------------------------------

_SCHEMA = """
CREATE TABLE IF NOT EXISTS clients (
    client_id TEXT PRIMARY KEY,
    client_name TEXT NOT NULL,
    redirect_uris TEXT NOT NULL,
    registration_time REAL NOT NULL,
    is_public INTEGER NOT NULL,
    logo_uri TEXT,
    client_secret_hash TEXT,
    token_endpoint_auth_method TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS flows (
    flow_id TEXT PRIMARY KEY,
    data TEXT NOT NULL,
    expires_at REAL NOT NULL
);
CREATE TABLE IF NOT EXISTS codes (
    code_hash TEXT PRIMARY KEY,
    data TEXT NOT NULL,
    consumed INTEGER NOT NULL DEFAULT 0,
    expires_at REAL NOT NULL
);
CREATE TABLE IF NOT EXISTS access_tokens (
    token_id TEXT PRIMARY KEY,
    data TEXT NOT NULL,
    user_id TEXT NOT NULL,
    client_id TEXT NOT NULL,
    family_id TEXT,
    revoked INTEGER NOT NULL DEFAULT 0,
    expires_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_access_family ON access_tokens (family_id);
CREATE TABLE IF NOT EXISTS refresh_tokens (
    token_hash TEXT PRIMARY KEY,
    data TEXT NOT NULL,
    user_id TEXT NOT NULL,
    client_id TEXT NOT NULL,
    family_id TEXT NOT NULL,
    superseded INTEGER NOT NULL DEFAULT 0,
    revoked INTEGER NOT NULL DEFAULT 0,
    expires_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_refresh_family ON refresh_tokens (family_id);
CREATE TABLE IF NOT EXISTS consent_grants (
    user_id TEXT NOT NULL,
    client_id TEXT NOT NULL,
    scopes TEXT NOT NULL,
    granted_at REAL NOT NULL,
    PRIMARY KEY (user_id, client_id)
);
"""


def _ts(value: datetime) -> float:
    return value.timestamp()


def _dt(value: float) -> datetime:
    return datetime.fromtimestamp(value, tz=UTC)


def _dump(record: object, *datetime_fields: str) -> str:
    data = dict(vars(record))
    for name in datetime_fields:
        data[name] = _ts(data[name])
    return json.dumps(data)


def _load(cls, raw: str, *datetime_fields: str):
    data = json.loads(raw)
    for name in datetime_fields:
        data[name] = _dt(data[name])
    return cls(**data)


_FLOW_DATES = ("expires_at", "created_at")
_CODE_DATES = ("expires_at",)
_TOKEN_DATES = ("issued_at", "expires_at")


class SQLiteStorage(OAuthStorage):
    """SQLite-backed storage.

    Each operation opens its own connection; multi-step operations run inside
    ``BEGIN IMMEDIATE`` so concurrent processes serialize on the write lock.
    Driver failures surface as StorageError.
    """

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.executescript(_SCHEMA)
        try:
            self.db_path.chmod(0o600)
        except OSError:
            pass

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = None
        try:
            conn = sqlite3.connect(self.db_path, timeout=30, isolation_level=None)
            conn.row_factory = sqlite3.Row
            yield conn
        except sqlite3.Error as exc:
            raise StorageError(f"database operation failed: {exc}") from exc
        finally:
            if conn is not None:
                conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    # Clients

    def save_client(self, client: Client) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO clients VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    client.client_id,
                    client.client_name,
                    json.dumps(client.redirect_uris),
                    _ts(client.registration_time),
                    int(client.is_public),
                    client.logo_uri,
                    client.client_secret_hash,
                    client.token_endpoint_auth_method,
                ),
            )

    def get_client(self, client_id: str) -> Client | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM clients WHERE client_id = ?", (client_id,)).fetchone()
        if row is None:
            return None
        return Client(
            client_id=row["client_id"],
            client_name=row["client_name"],
            redirect_uris=json.loads(row["redirect_uris"]),
            registration_time=_dt(row["registration_time"]),
            is_public=bool(row["is_public"]),
            logo_uri=row["logo_uri"],
            client_secret_hash=row["client_secret_hash"],
            token_endpoint_auth_method=row["token_endpoint_auth_method"],
        )

    def delete_client(self, client_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM clients WHERE client_id = ?", (client_id,))
            return cur.rowcount > 0

    # Flows

    def save_flow(self, flow: AuthorizationRequestContext) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO flows VALUES (?, ?, ?)",
                (flow.flow_id, _dump(flow, *_FLOW_DATES), _ts(flow.expires_at)),
            )

    def get_flow(self, flow_id: str) -> AuthorizationRequestContext | None:
        with self._connect() as conn:
            row = conn.execute("SELECT data FROM flows WHERE flow_id = ?", (flow_id,)).fetchone()
        return _load(AuthorizationRequestContext, row["data"], *_FLOW_DATES) if row else None

    def take_flow(self, flow_id: str) -> AuthorizationRequestContext | None:
        with self._transaction() as conn:
            row = conn.execute("SELECT data FROM flows WHERE flow_id = ?", (flow_id,)).fetchone()
            if row is None:
                return None
            conn.execute("DELETE FROM flows WHERE flow_id = ?", (flow_id,))
        return _load(AuthorizationRequestContext, row["data"], *_FLOW_DATES)

    # Codes

    def save_code(self, code: AuthorizationCode) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO codes (code_hash, data, consumed, expires_at) VALUES (?, ?, ?, ?)",
                (code.code_hash, _dump(code, *_CODE_DATES), int(code.consumed), _ts(code.expires_at)),
            )

    def get_code(self, code_hash: str) -> AuthorizationCode | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT data, consumed FROM codes WHERE code_hash = ?", (code_hash,)
            ).fetchone()
        if row is None:
            return None
        code = _load(AuthorizationCode, row["data"], *_CODE_DATES)
        code.consumed = bool(row["consumed"])
        return code

    def consume_code(self, code_hash: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE codes SET consumed = 1 WHERE code_hash = ? AND consumed = 0", (code_hash,)
            )
            return cur.rowcount == 1

    # Access tokens

    def save_access_token(self, token: AccessToken) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO access_tokens VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    token.token_id,
                    _dump(token, *_TOKEN_DATES),
                    token.user_id,
                    token.client_id,
                    token.family_id,
                    int(token.revoked),
                    _ts(token.expires_at),
                ),
            )

    def get_access_token(self, token_id: str) -> AccessToken | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT data, revoked FROM access_tokens WHERE token_id = ?", (token_id,)
            ).fetchone()
        if row is None:
            return None
        token = _load(AccessToken, row["data"], *_TOKEN_DATES)
        token.revoked = bool(row["revoked"])
        return token

    def revoke_access_token(self, token_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE access_tokens SET revoked = 1 WHERE token_id = ? AND revoked = 0", (token_id,)
            )
            return cur.rowcount == 1

    # Refresh tokens

    def _insert_refresh(self, conn: sqlite3.Connection, token: RefreshToken) -> None:
        conn.execute(
            "INSERT INTO refresh_tokens VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                token.token_hash,
                _dump(token, *_TOKEN_DATES),
                token.user_id,
                token.client_id,
                token.family_id,
                int(token.superseded),
                int(token.revoked),
                _ts(token.expires_at),
            ),
        )

    def save_refresh_token(self, token: RefreshToken) -> None:
        with self._connect() as conn:
            self._insert_refresh(conn, token)

    def get_refresh_token(self, token_hash: str) -> RefreshToken | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT data, superseded, revoked FROM refresh_tokens WHERE token_hash = ?",
                (token_hash,),
            ).fetchone()
        if row is None:
            return None
        token = _load(RefreshToken, row["data"], *_TOKEN_DATES)
        token.superseded = bool(row["superseded"])
        token.revoked = bool(row["revoked"])
        return token

    def rotate_refresh_token(self, old_hash: str, new: RefreshToken) -> RotationOutcome:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT family_id, superseded, revoked FROM refresh_tokens WHERE token_hash = ?",
                (old_hash,),
            ).fetchone()
            if row is None:
                return RotationOutcome.NOT_FOUND
            if row["superseded"]:
                self._revoke_family(conn, row["family_id"])
                return RotationOutcome.REUSED
            if row["revoked"]:
                return RotationOutcome.REVOKED
            conn.execute("UPDATE refresh_tokens SET superseded = 1 WHERE token_hash = ?", (old_hash,))
            self._insert_refresh(conn, new)
            return RotationOutcome.ROTATED

    def _revoke_family(self, conn: sqlite3.Connection, family_id: str) -> int:
        a = conn.execute(
            "UPDATE refresh_tokens SET revoked = 1 WHERE family_id = ? AND revoked = 0", (family_id,)
        ).rowcount
        b = conn.execute(
            "UPDATE access_tokens SET revoked = 1 WHERE family_id = ? AND revoked = 0", (family_id,)
        ).rowcount
        return a + b

    def revoke_family(self, family_id: str) -> int:
        with self._transaction() as conn:
            return self._revoke_family(conn, family_id)

    def revoke_tokens_for(self, user_id: str, client_id: str) -> int:
        with self._transaction() as conn:
            families = [
                r["family_id"]
                for r in conn.execute(
                    "SELECT DISTINCT family_id FROM refresh_tokens WHERE user_id = ? AND client_id = ?",
                    (user_id, client_id),
                )
            ]
            count = sum(self._revoke_family(conn, f) for f in families)
            count += conn.execute(
                "UPDATE access_tokens SET revoked = 1 "
                "WHERE user_id = ? AND client_id = ? AND revoked = 0",
                (user_id, client_id),
            ).rowcount
            return count

    # Consent

    def get_consent(self, user_id: str, client_id: str) -> ConsentGrant | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM consent_grants WHERE user_id = ? AND client_id = ?",
                (user_id, client_id),
            ).fetchone()
        if row is None:
            return None
        return ConsentGrant(
            user_id=row["user_id"],
            client_id=row["client_id"],
            scopes=json.loads(row["scopes"]),
            granted_at=_dt(row["granted_at"]),
        )

    def upsert_consent(self, grant: ConsentGrant) -> ConsentGrant:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT scopes FROM consent_grants WHERE user_id = ? AND client_id = ?",
                (grant.user_id, grant.client_id),
            ).fetchone()
            scopes = set(grant.scopes)
            if row is not None:
                scopes |= set(json.loads(row["scopes"]))
            merged = replace(grant, scopes=sorted(scopes))
            conn.execute(
                "INSERT OR REPLACE INTO consent_grants VALUES (?, ?, ?, ?)",
                (merged.user_id, merged.client_id, json.dumps(merged.scopes), _ts(merged.granted_at)),
            )
        return merged

    def delete_consent(self, user_id: str, client_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM consent_grants WHERE user_id = ? AND client_id = ?", (user_id, client_id)
            )
            return cur.rowcount > 0

    def cleanup_expired(self, now: datetime | None = None) -> int:
        cutoff = _ts(now or utcnow())
        removed = 0
        with self._transaction() as conn:
            for table in ("flows", "codes", "access_tokens", "refresh_tokens"):
                removed += conn.execute(
                    f"DELETE FROM {table} WHERE expires_at <= ?", (cutoff,)
                ).rowcount
        if removed:
            logger.debug("Removed %d expired OAuth records", removed)
        return removed


def create_storage(backend: str, path: Path | None = None) -> OAuthStorage:
    """Build the configured storage backend."""
    if backend == "memory":
        return MemoryStorage()
    if backend == "sqlite":
        if path is None:
            from mcpgate.config import get_config_dir

            path = get_config_dir() / "oauth.db"
        return SQLiteStorage(path)
    raise ValueError(f"Unknown storage backend: {backend}")
