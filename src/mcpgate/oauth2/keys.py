# Signing key management - RS256 keys for JWT access tokens, JWKS export.
# Created: 2026-10-03
#
# The newest key signs; the last few stay published for verification so that
# tokens minted before a rotation remain valid until they expire.

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from mcpgate.oauth2.models import utcnow

logger = logging.getLogger(__name__)

ALGORITHM = "RS256"


def _key_id(public_key: rsa.RSAPublicKey) -> str:
    der = public_key.public_bytes(
        serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
    )
    return hashlib.sha256(der).hexdigest()[:16]


@dataclass
class SigningKey:
    kid: str
    private_key: rsa.RSAPrivateKey
    created_at: datetime = field(default_factory=utcnow)

    @property
    def public_key(self) -> rsa.RSAPublicKey:
        return self.private_key.public_key()

    @classmethod
    def generate(cls) -> SigningKey:
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        return cls(kid=_key_id(private_key.public_key()), private_key=private_key)

    def to_jwk(self) -> dict:
        jwk = json.loads(RSAAlgorithm.to_jwk(self.public_key))
        jwk.update({"kid": self.kid, "use": "sig", "alg": ALGORITHM})
        return jwk


class SigningKeyManager:
    """Holds the active signing key plus recent keys still accepted for verification.

    When ``key_path`` is given the key set is persisted as JSON (PEM-encoded
    private keys, chmod 0600) so every worker signs with the same keys.
    """

    def __init__(self, key_path: Path | None = None, max_keys: int = 3):
        self._path = key_path
        self._max_keys = max_keys
        self._keys: list[SigningKey] = []  # newest last
        if key_path is not None and key_path.exists():
            self._load()
        if not self._keys:
            self._keys.append(SigningKey.generate())
            self._save()

    def _load(self) -> None:
        data = json.loads(self._path.read_text())
        for entry in data.get("keys", []):
            private_key = serialization.load_pem_private_key(entry["pem"].encode(), password=None)
            self._keys.append(
                SigningKey(
                    kid=entry["kid"],
                    private_key=private_key,
                    created_at=datetime.fromisoformat(entry["created_at"]),
                )
            )
        logger.debug("Loaded %d signing keys from %s", len(self._keys), self._path)

    def _save(self) -> None:
        if self._path is None:
            return
        entries = []
        for key in self._keys:
            pem = key.private_key.private_bytes(
                serialization.Encoding.PEM,
                serialization.PrivateFormat.PKCS8,
                serialization.NoEncryption(),
            ).decode()
            entries.append({"kid": key.kid, "pem": pem, "created_at": key.created_at.isoformat()})
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps({"keys": entries}, indent=2))
        try:
            self._path.chmod(0o600)
        except OSError:
            pass

    def get_current_signing_key(self) -> SigningKey:
        return self._keys[-1]

    def get_verification_keys(self) -> dict[str, rsa.RSAPublicKey]:
        return {key.kid: key.public_key for key in self._keys}

    def rotate(self) -> SigningKey:
        """Generate a new signing key and retire the oldest beyond ``max_keys``."""
        key = SigningKey.generate()
        self._keys.append(key)
        self._keys = self._keys[-self._max_keys :]
        self._save()
        logger.info("Rotated signing key, new kid=%s", key.kid)
        return key

    def jwks(self) -> dict:
        return {"keys": [key.to_jwk() for key in self._keys]}
