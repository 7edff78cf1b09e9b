# Shared fixtures for mcpgate tests.
# Created: 2026-10-09

import base64
import hashlib
import secrets
from urllib.parse import parse_qs, urlsplit

import pytest
from fastapi.testclient import TestClient

from mcpgate.config import Settings, UpstreamServiceConfig, get_settings
from mcpgate.oauth2.authorize import FlowState
from mcpgate.oauth2.keys import SigningKeyManager
from mcpgate.oauth2.server import AuthorizationServer, reset_oauth_server
from mcpgate.oauth2.storage import MemoryStorage
from mcpgate.oauth2.users import hash_password
from mcpgate.security.audit import AuditLogger, reset_audit_logger
from mcpgate.security.rate_limiter import reset_limiters
from mcpgate.tools.builtin.tasks import reset_task_board
from mcpgate.tools.registry import reset_tool_registry
from mcpgate.upstream.token_store import UpstreamTokenStore

RESOURCE = "http://localhost:8000/mcp"
REDIRECT_URI = "https://app.example.com/callback"
LOOPBACK_REDIRECT_URI = "http://127.0.0.1:33418/callback"

# Hashed once per session; each bcrypt hash takes a noticeable fraction of a second
USER_PASSWORD_HASHES = {"alice": hash_password("wonderland"), "bob": hash_password("builder")}


def make_pkce_pair():
    """Generate a PKCE code_verifier and S256 code_challenge pair."""
    verifier = secrets.token_urlsafe(32)
    challenge = (
        base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest())
        .rstrip(b"=")
        .decode()
    )
    return verifier, challenge


@pytest.fixture(autouse=True)
def _isolated_config(tmp_path, monkeypatch):
    """Point the config dir at tmp_path and reset every singleton."""
    monkeypatch.setenv("MCPGATE_CONFIG_DIR", str(tmp_path / "config"))
    get_settings.cache_clear()
    reset_audit_logger()
    reset_oauth_server()
    reset_limiters()
    reset_tool_registry()
    reset_task_board()
    yield
    get_settings.cache_clear()
    reset_audit_logger()
    reset_oauth_server()
    reset_limiters()
    reset_tool_registry()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        storage_backend="memory",
        session_secret="test-session-secret",
        users=dict(USER_PASSWORD_HASHES),
        audit_log_path=tmp_path / "audit.jsonl",
        upstream_services={
            "calendar": UpstreamServiceConfig(
                token_url="https://upstream.example.com/oauth/token",
                client_id="mcpgate",
                client_secret="upstream-secret",
            )
        },
    )


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def audit(tmp_path):
    return AuditLogger(tmp_path / "audit.jsonl")


@pytest.fixture
def keys():
    return SigningKeyManager()


@pytest.fixture
def server(settings, storage, keys, audit, tmp_path):
    return AuthorizationServer(
        settings,
        storage=storage,
        keys=keys,
        audit=audit,
        upstream_store=UpstreamTokenStore(tmp_path / "upstream"),
    )


@pytest.fixture
def oauth_client(server):
    """A registered public client with one https and one loopback redirect URI."""
    client, _ = server.registrar.register("Test Client", [REDIRECT_URI, LOOPBACK_REDIRECT_URI])
    return client


@pytest.fixture
def app(server):
    from mcpgate.api.serve import create_app

    return create_app(server)


@pytest.fixture
def http(app):
    return TestClient(app)


@pytest.fixture
def issue_code(server):
    """Run the authorization flow at the component level and return (code, verifier)."""

    def _issue(
        client,
        scope="tasks.read",
        user_id="alice",
        redirect_uri=REDIRECT_URI,
        resource=RESOURCE,
    ):
        verifier, challenge = make_pkce_pair()
        params = {
            "response_type": "code",
            "client_id": client.client_id,
            "redirect_uri": redirect_uri,
            "scope": scope,
            "code_challenge": challenge,
            "code_challenge_method": "S256",
            "resource": resource,
            "state": "st-1",
        }
        result = server.authorization.start(params, user_id=user_id)
        if result.state is FlowState.AWAITING_CONSENT:
            result = server.authorization.decide(result.flow_id, user_id, approved=True)
        assert result.state is FlowState.REDIRECTING, result
        code = parse_qs(urlsplit(result.redirect_url).query)["code"][0]
        return code, verifier

    return _issue


@pytest.fixture
def issue_tokens(server, issue_code):
    """Full code exchange; returns the token response dict."""

    def _tokens(client, scope="tasks.read", user_id="alice", resource=RESOURCE):
        code, verifier = issue_code(client, scope=scope, user_id=user_id, resource=resource)
        return server.exchanger.exchange(
            "authorization_code",
            client_id=client.client_id,
            code=code,
            redirect_uri=REDIRECT_URI,
            code_verifier=verifier,
        )

    return _tokens
