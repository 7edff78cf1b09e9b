"""HMAC-signed login session cookies with TTL.

Token format: ``{user_b64}.{expires_unix}.{hex_hmac}``

Stateless: any worker holding ``session_secret`` can verify the cookie, so
the login step of an authorization flow needs no server-side session store.
Rotating the secret logs every user out.
"""

import base64
import binascii
import hashlib
import hmac
import logging
import secrets
import time
from pathlib import Path

__all__ = [
    "SESSION_COOKIE",
    "create_session_token",
    "load_or_create_session_secret",
    "verify_session_token",
]

logger = logging.getLogger(__name__)

SESSION_COOKIE = "mcpgate_session"


def load_or_create_session_secret(path: Path) -> str:
    """Read the shared cookie secret from *path*, generating it on first use."""
    if path.exists():
        secret = path.read_text().strip()
        if secret:
            return secret
    secret = secrets.token_urlsafe(32)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(secret)
    try:
        path.chmod(0o600)
    except OSError:
        pass
    logger.info("Generated session secret at %s", path)
    return secret


def create_session_token(secret: str, user_id: str, ttl_hours: int = 8) -> str:
    """Issue a session token for *user_id* that expires after *ttl_hours*."""
    user_b64 = base64.urlsafe_b64encode(user_id.encode()).decode().rstrip("=")
    expires = int(time.time()) + ttl_hours * 3600
    payload = f"{user_b64}.{expires}"
    return f"{payload}.{_sign(secret, payload)}"


def verify_session_token(token: str, secret: str) -> str | None:
    """Return the user_id if the token is authentic and unexpired, else None."""
    parts = token.split(".")
    if len(parts) != 3:
        return None

    user_b64, expires_str, sig = parts
    try:
        expires = int(expires_str)
    except ValueError:
        return None

    if time.time() > expires:
        return None

    expected = _sign(secret, f"{user_b64}.{expires_str}")
    if not hmac.compare_digest(sig, expected):
        return None

    try:
        padded = user_b64 + "=" * (-len(user_b64) % 4)
        return base64.urlsafe_b64decode(padded).decode()
    except (binascii.Error, UnicodeDecodeError):
        return None


def _sign(key: str, message: str) -> str:
    return hmac.new(key.encode(), message.encode(), hashlib.sha256).hexdigest()
