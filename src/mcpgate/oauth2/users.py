# User login collaborator.
# Created: 2026-10-04
#
# Changes:
#   - 2026-10-18: Passwords are bcrypt hashes; plain SHA-256 digests are no longer accepted.
#
# The authorization endpoint only needs authenticate(username, password).
# The default directory reads username -> bcrypt hash from settings;
# deployments plug in their own identity provider behind the same protocol.

from __future__ import annotations

import logging
from typing import Protocol

import bcrypt

logger = logging.getLogger(__name__)

# bcrypt only looks at the first 72 bytes
_BCRYPT_MAX_BYTES = 72


def hash_password(password: str) -> str:
    """Salted bcrypt hash, suitable for the ``users`` setting."""
    hashed = bcrypt.hashpw(password.encode("utf-8")[:_BCRYPT_MAX_BYTES], bcrypt.gensalt())
    return hashed.decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8")[:_BCRYPT_MAX_BYTES], hashed.encode("utf-8"))
    except ValueError:
        logger.warning("Stored password hash is not a bcrypt hash")
        return False


class UserAuthenticator(Protocol):
    def authenticate(self, username: str, password: str) -> str | None:
        """Return the user_id on success, None on failure."""
        ...


class StaticUserDirectory:
    """Users configured as ``{username: bcrypt_hash(password)}``."""

    def __init__(self, users: dict[str, str]):
        self._users = dict(users)

    def authenticate(self, username: str, password: str) -> str | None:
        expected = self._users.get(username)
        if expected is None or not password:
            return None
        if verify_password(password, expected):
            return username
        return None
