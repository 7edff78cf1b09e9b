# Upstream Token Store - file-based credential persistence at ~/.mcpgate/upstream/.
# Created: 2026-10-06
#
# One file per (user, service): upstream/{sha256(user_id)[:32]}/{service}.json,
# chmod 0600. These are the broker's own credentials with third parties and
# are never handed to MCP clients.

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import stat
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

_SERVICE_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


@dataclass
class UpstreamCredential:
    """OAuth 2.0 token set one user holds with one upstream service."""

    user_id: str
    service: str
    access_token: str
    refresh_token: str | None = None
    token_type: str = "Bearer"
    expires_at: float | None = None  # Unix timestamp
    scopes: list[str] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)


class UpstreamTokenStore:
    def __init__(self, base_dir: Path | None = None):
        if base_dir is None:
            from mcpgate.config import get_config_dir

            base_dir = get_config_dir() / "upstream"
        self.base_dir = base_dir

    def _path(self, user_id: str, service: str) -> Path:
        if not _SERVICE_RE.match(service):
            raise ValueError(f"Invalid service name: {service!r}")
        user_dir = hashlib.sha256(user_id.encode()).hexdigest()[:32]
        return self.base_dir / user_dir / f"{service}.json"

    def save(self, credential: UpstreamCredential) -> None:
        path = self._path(credential.user_id, credential.service)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(asdict(credential), indent=2))
        os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)
        logger.info("Saved upstream credential for %s", credential.service)

    def load(self, user_id: str, service: str) -> UpstreamCredential | None:
        path = self._path(user_id, service)
        if not path.exists():
            return None
        try:
            return UpstreamCredential(**json.loads(path.read_text()))
        except (OSError, ValueError, TypeError) as e:
            logger.warning("Failed to load upstream credential for %s: %s", service, e)
            return None

    def delete(self, user_id: str, service: str) -> bool:
        path = self._path(user_id, service)
        if path.exists():
            path.unlink()
            logger.info("Deleted upstream credential for %s", service)
            return True
        return False

    def list_services(self, user_id: str) -> list[str]:
        user_dir = self._path(user_id, "_").parent
        if not user_dir.exists():
            return []
        return sorted(f.stem for f in user_dir.glob("*.json"))
