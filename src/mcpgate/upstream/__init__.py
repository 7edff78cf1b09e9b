# Upstream token broker - per-user credentials for third-party services.
# Created: 2026-10-06

from mcpgate.upstream.broker import (
    TokenPassthroughError,
    UpstreamCredentialMissing,
    UpstreamError,
    UpstreamTokenBroker,
)
from mcpgate.upstream.token_store import UpstreamCredential, UpstreamTokenStore

__all__ = [
    "TokenPassthroughError",
    "UpstreamCredential",
    "UpstreamCredentialMissing",
    "UpstreamError",
    "UpstreamTokenBroker",
    "UpstreamTokenStore",
]
