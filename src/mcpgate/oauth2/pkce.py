"""PKCE (Proof Key for Code Exchange) verification per RFC 7636.

Only the S256 method is supported; ``plain`` is rejected at /authorize.
"""

import base64
import hashlib
import hmac
import re

SUPPORTED_METHODS = ("S256",)

# RFC 7636 Section 4.1: 43-128 unreserved URI characters
_VERIFIER_RE = re.compile(r"^[A-Za-z0-9\-._~]{43,128}$")
# BASE64URL(SHA256(...)) without padding is always 43 characters
_CHALLENGE_RE = re.compile(r"^[A-Za-z0-9\-_]{43}$")


def compute_challenge(verifier: str, method: str = "S256") -> str:
    """Return the code challenge for *verifier* under *method*."""
    if method != "S256":
        raise ValueError(f"Unsupported code_challenge_method: {method}")
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def is_valid_challenge(challenge: str) -> bool:
    return bool(_CHALLENGE_RE.match(challenge))


def verify(verifier: str, challenge: str, method: str = "S256") -> bool:
    """Check a token-request verifier against the stored challenge."""
    if method not in SUPPORTED_METHODS or not _VERIFIER_RE.match(verifier or ""):
        return False
    return hmac.compare_digest(compute_challenge(verifier, method), challenge)
