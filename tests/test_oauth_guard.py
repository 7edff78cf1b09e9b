# Tests for the resource guard and its WWW-Authenticate challenge.
# Created: 2026-10-10

import base64
import json
from datetime import timedelta

import jwt
import pytest

from conftest import RESOURCE
from mcpgate.oauth2.errors import InsufficientScopeError, InvalidTokenError
from mcpgate.oauth2.guard import extract_bearer, www_authenticate
from mcpgate.oauth2.keys import ALGORITHM, SigningKeyManager
from mcpgate.oauth2.models import utcnow
from mcpgate.oauth2.tokens import TokenIssuer


@pytest.fixture
def guard(server):
    return server.guard


def _mint(server, storage, audience=RESOURCE, scopes=("tasks.read",), now=None):
    value, record = server.issuer.mint_access_token(
        user_id="alice", client_id="client-a", scopes=list(scopes), audience=audience, now=now
    )
    storage.save_access_token(record)
    return value


def _unsigned_jwt(header):
    def segment(data):
        return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")

    return f"{segment(header)}.{segment({'sub': 'alice'})}.c2ln"

class TestBearerExtraction:
    def test_missing_header_is_not_a_presented_token(self):
        with pytest.raises(InvalidTokenError) as exc_info:
            extract_bearer(None)
        assert exc_info.value.token_presented is False

    @pytest.mark.parametrize("header", ["Basic abc", "Bearer", "Bearer   ", "token"])
    def test_malformed_header(self, header):
        with pytest.raises(InvalidTokenError) as exc_info:
            extract_bearer(header)
        assert exc_info.value.token_presented is True

    def test_scheme_is_case_insensitive(self):
        assert extract_bearer("bearer abc") == "abc"


class TestSignedTokens:
    def test_valid_token(self, guard, server, storage):
        ctx = guard.authorize_request(f"Bearer {_mint(server, storage)}", "tasks.read", RESOURCE)
        assert ctx.user_id == "alice"
        assert ctx.client_id == "client-a"
        assert ctx.scopes == ["tasks.read"]
        assert ctx.token_fingerprint

    def test_audience_mismatch(self, settings, guard, server, storage):
        settings.trusted_resources = [RESOURCE, "https://other.example.com/mcp"]
        token = _mint(server, storage, audience="https://other.example.com/mcp")
        with pytest.raises(InvalidTokenError, match="audience"):
            guard.authorize_request(f"Bearer {token}", "tasks.read", RESOURCE)
        # The same token is fine at its own resource.
        ctx = guard.authorize_request(f"Bearer {token}", "tasks.read", "https://other.example.com/mcp")
        assert ctx.audience == "https://other.example.com/mcp"

    def test_expired(self, guard, server, storage):
        token = _mint(server, storage, now=utcnow() - timedelta(hours=2))
        with pytest.raises(InvalidTokenError, match="expired"):
            guard.authorize_request(f"Bearer {token}", "tasks.read")

    def test_foreign_signing_key(self, settings, guard):
        foreign = TokenIssuer(settings, SigningKeyManager())
        token, _ = foreign.mint_access_token(
            user_id="alice", client_id="c", scopes=["tasks.read"], audience=RESOURCE
        )
        with pytest.raises(InvalidTokenError):
            guard.authorize_request(f"Bearer {token}", "tasks.read")

    def test_wrong_issuer(self, guard, keys):
        key = keys.get_current_signing_key()
        now = int(utcnow().timestamp())
        token = jwt.encode(
            {
                "iss": "https://evil.example.com",
                "sub": "alice",
                "aud": RESOURCE,
                "scope": "tasks.read",
                "iat": now,
                "exp": now + 600,
                "jti": "j1",
            },
            key.private_key,
            algorithm=ALGORITHM,
            headers={"kid": key.kid},
        )
        with pytest.raises(InvalidTokenError):
            guard.authorize_request(f"Bearer {token}", "tasks.read")

    def test_non_string_kid_is_invalid_token(self, guard, tmp_path):
        token = _unsigned_jwt({"alg": "RS256", "kid": 123})
        with pytest.raises(InvalidTokenError, match="malformed"):
            guard.authorize_request(f"Bearer {token}", "tasks.read")
        events = [json.loads(line) for line in (tmp_path / "audit.jsonl").read_text().splitlines()]
        assert events[-1]["outcome"] == "reject"

    def test_tokens_survive_key_rotation(self, guard, server, storage, keys):
        token = _mint(server, storage)
        keys.rotate()
        assert guard.authorize_request(f"Bearer {token}", "tasks.read").user_id == "alice"


class TestOpaqueTokens:
    @pytest.fixture(autouse=True)
    def _opaque(self, settings):
        settings.token_format = "opaque"

    def test_valid(self, guard, server, storage):
        ctx = guard.authorize_request(f"Bearer {_mint(server, storage)}", "tasks.read")
        assert ctx.user_id == "alice"

    def test_unknown(self, guard):
        with pytest.raises(InvalidTokenError):
            guard.authorize_request("Bearer mgat_not-issued", "tasks.read")

    def test_expired(self, guard, server, storage):
        token = _mint(server, storage)
        later = utcnow() + timedelta(hours=2)
        with pytest.raises(InvalidTokenError, match="expired"):
            guard.authorize_request(f"Bearer {token}", "tasks.read", now=later)

    def test_audience_mismatch(self, guard, server, storage):
        token = _mint(server, storage, audience="https://other.example.com/mcp")
        with pytest.raises(InvalidTokenError, match="audience"):
            guard.authorize_request(f"Bearer {token}", "tasks.read", RESOURCE)


class TestScopes:
    def test_insufficient_scope(self, guard, server, storage):
        token = _mint(server, storage, scopes=("tasks.read",))
        with pytest.raises(InsufficientScopeError) as exc_info:
            guard.authorize_request(f"Bearer {token}", "tasks.write")
        assert exc_info.value.status_code == 403
        assert exc_info.value.required == ["tasks.write"]

    def test_all_required_scopes_must_be_granted(self, guard, server, storage):
        token = _mint(server, storage, scopes=("tasks.read", "tasks.write"))
        guard.authorize_request(f"Bearer {token}", ["tasks.read", "tasks.write"])
        with pytest.raises(InsufficientScopeError):
            guard.authorize_request(f"Bearer {token}", ["tasks.read", "tasks.admin"])

    def test_no_scope_required(self, guard, server, storage):
        token = _mint(server, storage)
        assert guard.authorize_request(f"Bearer {token}", None).user_id == "alice"


class TestAudit:
    def test_every_decision_is_logged(self, guard, server, storage, tmp_path):
        token = _mint(server, storage)
        guard.authorize_request(f"Bearer {token}", "tasks.read")
        with pytest.raises(InsufficientScopeError):
            guard.authorize_request(f"Bearer {token}", "tasks.admin")
        with pytest.raises(InvalidTokenError):
            guard.authorize_request(None, "tasks.read")

        events = [json.loads(line) for line in (tmp_path / "audit.jsonl").read_text().splitlines()]
        access = [e for e in events if e["action"] == "resource_access"]
        assert [e["outcome"] for e in access] == ["allow", "reject", "reject"]
        assert access[0]["user_id"] == "alice"
        assert access[1]["context"]["error"] == "insufficient_scope"
        assert access[2]["user_id"] is None
        assert token not in json.dumps(events)


class TestChallenge:
    def test_no_token(self, settings):
        header = www_authenticate(settings, InvalidTokenError("missing", token_presented=False))
        assert header == (
            'Bearer realm="MCP", resource_metadata_uri='
            '"http://localhost:8000/.well-known/oauth-protected-resource"'
        )

    def test_invalid_token(self, settings):
        header = www_authenticate(settings, InvalidTokenError("token expired"))
        assert 'error="invalid_token"' in header
        assert 'error_description="token expired"' in header

    def test_insufficient_scope(self, settings):
        header = www_authenticate(settings, InsufficientScopeError("x", required=["tasks.write"]))
        assert 'error="insufficient_scope"' in header
        assert 'scope="tasks.write"' in header
