# Settings - single configuration source for every component.
# Created: 2026-10-02
#
# Loaded from ~/.mcpgate/config.json (or $MCPGATE_CONFIG_DIR/config.json) and
# MCPGATE_* environment variables. Metadata documents are generated from this
# object, so they can never drift from what the endpoints implement.

from __future__ import annotations

import json
import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Literal
from urllib.parse import urlsplit

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


def get_config_dir() -> Path:
    """Return (and create) the config directory."""
    override = os.environ.get("MCPGATE_CONFIG_DIR")
    path = Path(override) if override else Path.home() / ".mcpgate"
    path.mkdir(parents=True, exist_ok=True)
    return path


class UpstreamServiceConfig(BaseModel):
    """Broker-side OAuth client registration with a third-party service."""

    token_url: str
    client_id: str
    client_secret: str = ""


class PreregisteredClient(BaseModel):
    """Client seeded into storage at startup (manual pre-registration)."""

    client_id: str
    client_name: str
    redirect_uris: list[str]


DEFAULT_SCOPE_DESCRIPTIONS = {
    "tasks.read": "See your tasks",
    "tasks.write": "Create and update your tasks",
    "tasks.admin": "Delete tasks and manage task settings",
    "offline_access": "Stay connected when you are not using the app",
}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="MCPGATE_", extra="ignore")

    # Identity
    issuer: str = "http://localhost:8000"
    resource_id: str = "http://localhost:8000/mcp"
    resource_name: str = "MCP Server"
    trusted_resources: list[str] = Field(default_factory=list)
    authorization_servers: list[str] = Field(default_factory=list)

    # Scopes
    scopes_supported: list[str] = Field(
        default_factory=lambda: ["tasks.read", "tasks.write", "tasks.admin", "offline_access"]
    )
    default_scopes: list[str] = Field(default_factory=lambda: ["tasks.read"])
    scope_descriptions: dict[str, str] = Field(
        default_factory=lambda: dict(DEFAULT_SCOPE_DESCRIPTIONS)
    )

    # Tokens
    token_format: Literal["jwt", "opaque"] = "jwt"
    refresh_enabled: bool = True
    refresh_rotation: bool = True
    registration_enabled: bool = True
    code_ttl_seconds: int = 600
    access_token_ttl_seconds: int = 3600
    refresh_token_ttl_seconds: int = 30 * 24 * 3600
    flow_ttl_seconds: int = 900
    signing_key_path: Path | None = None

    # Login sessions
    session_ttl_hours: int = 8
    session_secret: str | None = None  # None: generated once into the config dir
    users: dict[str, str] = Field(default_factory=dict)  # username -> bcrypt hash

    # Storage
    storage_backend: Literal["memory", "sqlite"] = "sqlite"
    storage_path: Path | None = None
    preregistered_clients: list[PreregisteredClient] = Field(default_factory=list)

    # Upstream services used by the token broker
    upstream_services: dict[str, UpstreamServiceConfig] = Field(default_factory=dict)

    # HTTP
    cors_allowed_origins: list[str] = Field(default_factory=list)
    authorize_rate_per_minute: int = 30
    token_rate_per_minute: int = 60

    # Logging
    log_level: str = "INFO"
    audit_log_path: Path | None = None

    @property
    def audiences(self) -> list[str]:
        """Resource identifiers this authorization server will mint tokens for."""
        return self.trusted_resources or [self.resource_id]

    @property
    def issuer_url(self) -> str:
        return self.issuer.rstrip("/")

    @property
    def resource_metadata_url(self) -> str:
        parts = urlsplit(self.resource_id)
        return f"{parts.scheme}://{parts.netloc}/.well-known/oauth-protected-resource"

    @classmethod
    def load(cls) -> Settings:
        """Load settings from the config file, then environment overrides."""
        path = get_config_dir() / "config.json"
        data: dict = {}
        if path.exists():
            try:
                data = json.loads(path.read_text())
            except (json.JSONDecodeError, OSError) as exc:
                logger.warning("Ignoring unreadable config %s: %s", path, exc)
        # Environment wins over the file: drop file keys that are set in env.
        env_keys = {k[len("MCPGATE_"):].lower() for k in os.environ if k.startswith("MCPGATE_")}
        data = {k: v for k, v in data.items() if k not in env_keys}
        return cls(**data)

    def save(self) -> None:
        path = get_config_dir() / "config.json"
        path.write_text(self.model_dump_json(indent=2))
        try:
            path.chmod(0o600)
        except OSError:
            pass


@lru_cache
def get_settings() -> Settings:
    return Settings.load()
