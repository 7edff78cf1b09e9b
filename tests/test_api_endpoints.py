# End-to-end HTTP tests: discovery, registration, browser flow, token, tools.
# Created: 2026-10-11

import base64
import re
from urllib.parse import parse_qs, urlsplit

import pytest

from conftest import REDIRECT_URI, RESOURCE, make_pkce_pair
from mcpgate.oauth2.errors import StorageError
from mcpgate.security import rate_limiter
from mcpgate.security.rate_limiter import RateLimiter

_FLOW_ID = re.compile(r'name="flow_id" value="([^"]*)"')
# {"alg": "RS256", "kid": 123} . {"sub": "alice"} . signature
_JWT_WITH_NUMERIC_KID = "eyJhbGciOiAiUlMyNTYiLCAia2lkIjogMTIzfQ.eyJzdWIiOiAiYWxpY2UifQ.c2ln"


def _authorize_params(client_id, challenge, **overrides):
    params = {
        "response_type": "code",
        "client_id": client_id,
        "redirect_uri": REDIRECT_URI,
        "scope": "tasks.read tasks.write offline_access",
        "code_challenge": challenge,
        "code_challenge_method": "S256",
        "resource": RESOURCE,
        "state": "xyz",
    }
    params.update(overrides)
    return params


def _browser_flow(http, client_id, approve=True, **overrides):
    """Drive /authorize -> /login -> consent; return (redirect response, verifier)."""
    verifier, challenge = make_pkce_pair()
    resp = http.get("/authorize", params=_authorize_params(client_id, challenge, **overrides))
    assert resp.status_code == 200
    assert "Sign in" in resp.text
    flow_id = _FLOW_ID.search(resp.text).group(1)

    resp = http.post(
        "/login", data={"username": "alice", "password": "wonderland", "flow_id": flow_id}
    )
    assert resp.status_code == 200
    assert "Authorize Test Client" in resp.text
    assert REDIRECT_URI in resp.text
    assert resp.headers["x-frame-options"] == "DENY"

    resp = http.post(
        "/authorize/consent",
        data={"flow_id": flow_id, "action": "allow" if approve else "deny"},
        follow_redirects=False,
    )
    return resp, verifier


def _query(url):
    return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def tokens(http, oauth_client):
    resp, verifier = _browser_flow(http, oauth_client.client_id)
    code = _query(resp.headers["location"])["code"]
    resp = http.post(
        "/token",
        data={
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": REDIRECT_URI,
            "code_verifier": verifier,
            "client_id": oauth_client.client_id,
        },
    )
    assert resp.status_code == 200, resp.text
    return resp.json()


class TestDiscovery:
    def test_protected_resource_metadata(self, http):
        body = http.get("/.well-known/oauth-protected-resource").json()
        assert body["resource"] == RESOURCE
        assert body["authorization_servers"] == ["http://localhost:8000"]
        assert body["bearer_methods_supported"] == ["header"]
        assert "tasks.read" in body["scopes_supported"]

    def test_path_suffixed_variant(self, http):
        resp = http.get("/.well-known/oauth-protected-resource/mcp")
        assert resp.json()["resource"] == RESOURCE

    def test_authorization_server_metadata(self, http):
        body = http.get("/.well-known/oauth-authorization-server").json()
        assert body["issuer"] == "http://localhost:8000"
        assert body["authorization_endpoint"] == "http://localhost:8000/authorize"
        assert body["token_endpoint"] == "http://localhost:8000/token"
        assert body["registration_endpoint"] == "http://localhost:8000/register"
        assert body["code_challenge_methods_supported"] == ["S256"]
        assert body["response_types_supported"] == ["code"]
        assert body["grant_types_supported"] == ["authorization_code", "refresh_token"]
        assert body["jwks_uri"] == "http://localhost:8000/jwks.json"

    def test_metadata_follows_settings(self, http, settings):
        settings.registration_enabled = False
        settings.refresh_enabled = False
        settings.token_format = "opaque"
        body = http.get("/.well-known/oauth-authorization-server").json()
        assert "registration_endpoint" not in body
        assert "jwks_uri" not in body
        assert body["grant_types_supported"] == ["authorization_code"]

    def test_jwks(self, http, keys):
        body = http.get("/jwks.json").json()
        assert body["keys"][0]["kid"] == keys.get_current_signing_key().kid

    def test_jwks_absent_in_opaque_mode(self, http, settings):
        settings.token_format = "opaque"
        assert http.get("/jwks.json").status_code == 404


class TestRegistration:
    def test_public_client(self, http):
        resp = http.post(
            "/register", json={"client_name": "Claude", "redirect_uris": [REDIRECT_URI]}
        )
        assert resp.status_code == 201
        body = resp.json()
        assert body["client_id"].startswith("mcp_")
        assert body["token_endpoint_auth_method"] == "none"
        assert "client_secret" not in body
        assert resp.headers["cache-control"] == "no-store"

    def test_every_registration_is_a_new_client(self, http):
        payload = {"client_name": "Claude", "redirect_uris": [REDIRECT_URI]}
        first = http.post("/register", json=payload).json()
        second = http.post("/register", json=payload).json()
        assert first["client_id"] != second["client_id"]

    def test_confidential_client_gets_secret(self, http):
        resp = http.post(
            "/register",
            json={
                "client_name": "Backend",
                "redirect_uris": [REDIRECT_URI],
                "token_endpoint_auth_method": "client_secret_basic",
            },
        )
        body = resp.json()
        assert body["client_secret"]
        assert body["client_secret_expires_at"] == 0

    @pytest.mark.parametrize("uris", [[], ["not a uri"], ["https://app.example.com/cb#frag"]])
    def test_invalid_redirect_uris(self, http, uris):
        resp = http.post("/register", json={"client_name": "X", "redirect_uris": uris})
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_redirect_uri"

    def test_malformed_body(self, http):
        resp = http.post("/register", content=b"not json", headers={"content-type": "application/json"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_client_metadata"

    def test_disabled(self, http, settings):
        settings.registration_enabled = False
        resp = http.post("/register", json={"client_name": "X", "redirect_uris": [REDIRECT_URI]})
        assert resp.status_code == 404


class TestBrowserFlow:
    def test_allow_redirects_with_code_and_state(self, http, oauth_client):
        resp, _ = _browser_flow(http, oauth_client.client_id)
        assert resp.status_code == 302
        location = resp.headers["location"]
        assert location.startswith(REDIRECT_URI + "?")
        query = _query(location)
        assert query["state"] == "xyz"
        assert query["code"]

    def test_deny_redirects_access_denied(self, http, oauth_client):
        resp, _ = _browser_flow(http, oauth_client.client_id, approve=False)
        assert resp.status_code == 302
        assert _query(resp.headers["location"]) == {"error": "access_denied", "state": "xyz"}

    def test_unknown_client_never_redirects(self, http):
        _, challenge = make_pkce_pair()
        resp = http.get(
            "/authorize",
            params=_authorize_params("mcp_nobody", challenge),
            follow_redirects=False,
        )
        assert resp.status_code == 400
        assert "location" not in resp.headers
        assert "Something went wrong" in resp.text

    def test_protocol_error_redirects_to_client(self, http, oauth_client):
        _, challenge = make_pkce_pair()
        resp = http.get(
            "/authorize",
            params=_authorize_params(oauth_client.client_id, challenge, code_challenge_method="plain"),
            follow_redirects=False,
        )
        assert resp.status_code == 302
        query = _query(resp.headers["location"])
        assert query["error"] == "invalid_request"
        assert query["state"] == "xyz"

    def test_bad_password(self, http, oauth_client):
        _, challenge = make_pkce_pair()
        resp = http.get("/authorize", params=_authorize_params(oauth_client.client_id, challenge))
        flow_id = _FLOW_ID.search(resp.text).group(1)
        resp = http.post(
            "/login", data={"username": "alice", "password": "nope", "flow_id": flow_id}
        )
        assert resp.status_code == 401
        assert "Incorrect username or password" in resp.text
        assert "mcpgate_session" not in resp.cookies

    def test_consent_requires_session(self, http, oauth_client):
        resp = http.post("/authorize/consent", data={"flow_id": "whatever", "action": "allow"})
        assert resp.status_code == 401

    def test_second_authorization_skips_consent(self, http, oauth_client):
        first, _ = _browser_flow(http, oauth_client.client_id)
        assert first.status_code == 302

        _, challenge = make_pkce_pair()
        resp = http.get(
            "/authorize",
            params=_authorize_params(oauth_client.client_id, challenge),
            follow_redirects=False,
        )
        assert resp.status_code == 302
        assert "code" in _query(resp.headers["location"])


class TestTokenEndpoint:
    def test_code_exchange(self, tokens):
        assert tokens["token_type"] == "Bearer"
        assert tokens["expires_in"] == 3600
        assert tokens["refresh_token"].startswith("mgrt_")
        assert tokens["scope"] == "tasks.read tasks.write offline_access"

    def test_response_is_not_cacheable(self, http, oauth_client, tokens):
        resp = http.post(
            "/token",
            data={
                "grant_type": "refresh_token",
                "refresh_token": tokens["refresh_token"],
                "client_id": oauth_client.client_id,
            },
        )
        assert resp.status_code == 200
        assert resp.headers["cache-control"] == "no-store"
        assert resp.headers["pragma"] == "no-cache"

    def test_refresh_reuse_is_invalid_grant(self, http, oauth_client, tokens):
        data = {
            "grant_type": "refresh_token",
            "refresh_token": tokens["refresh_token"],
            "client_id": oauth_client.client_id,
        }
        assert http.post("/token", data=data).status_code == 200
        resp = http.post("/token", data=data)
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_grant"

    def test_missing_grant_type(self, http):
        resp = http.post("/token", data={"client_id": "x"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_request"

    def test_unsupported_grant_type(self, http, oauth_client):
        resp = http.post(
            "/token", data={"grant_type": "password", "client_id": oauth_client.client_id}
        )
        assert resp.status_code == 400
        assert resp.json()["error"] == "unsupported_grant_type"

    def test_unknown_client(self, http):
        resp = http.post(
            "/token",
            data={
                "grant_type": "authorization_code",
                "client_id": "mcp_nobody",
                "code": "c",
                "redirect_uri": REDIRECT_URI,
                "code_verifier": "v" * 43,
            },
        )
        assert resp.status_code == 401
        assert resp.json()["error"] == "invalid_client"

    def test_client_secret_basic(self, http, server, issue_code):
        client, secret = server.registrar.register(
            "Backend", [REDIRECT_URI], token_endpoint_auth_method="client_secret_basic"
        )
        code, verifier = issue_code(client)
        form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": REDIRECT_URI,
            "code_verifier": verifier,
        }

        bad = base64.b64encode(f"{client.client_id}:wrong".encode()).decode()
        resp = http.post("/token", data=form, headers={"Authorization": f"Basic {bad}"})
        assert resp.status_code == 401
        assert resp.headers["www-authenticate"].startswith("Basic")

        good = base64.b64encode(f"{client.client_id}:{secret}".encode()).decode()
        resp = http.post("/token", data=form, headers={"Authorization": f"Basic {good}"})
        assert resp.status_code == 200

    def test_two_auth_methods_rejected(self, http, server):
        client, secret = server.registrar.register(
            "Backend", [REDIRECT_URI], token_endpoint_auth_method="client_secret_basic"
        )
        basic = base64.b64encode(f"{client.client_id}:{secret}".encode()).decode()
        resp = http.post(
            "/token",
            data={"grant_type": "refresh_token", "refresh_token": "x", "client_secret": secret},
            headers={"Authorization": f"Basic {basic}"},
        )
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_request"

    def test_storage_outage_is_503(self, http, storage, monkeypatch):
        def broken(*args, **kwargs):
            raise StorageError("database is locked")

        monkeypatch.setattr(storage, "get_client", broken)
        resp = http.post(
            "/token",
            data={
                "grant_type": "authorization_code",
                "client_id": "mcp_any",
                "code": "c",
                "redirect_uri": REDIRECT_URI,
                "code_verifier": "v" * 43,
            },
        )
        assert resp.status_code == 503
        assert resp.json()["error"] == "temporarily_unavailable"
        assert resp.headers["retry-after"]

    def test_rate_limited(self, http):
        rate_limiter._limiters["token"] = RateLimiter(rate=0, capacity=1)
        http.post("/token", data={"client_id": "x"})
        resp = http.post("/token", data={"client_id": "x"})
        assert resp.status_code == 429
        assert resp.headers["retry-after"] == "1"


class TestRevocation:
    def test_revoked_access_token_is_rejected(self, http, oauth_client, tokens):
        resp = http.post(
            "/revoke", data={"token": tokens["access_token"], "client_id": oauth_client.client_id}
        )
        assert resp.status_code == 200
        assert resp.json() == {}
        assert http.get("/mcp/tools", headers=_bearer(tokens["access_token"])).status_code == 401

    def test_unknown_token_is_200(self, http, oauth_client):
        resp = http.post("/revoke", data={"token": "garbage", "client_id": oauth_client.client_id})
        assert resp.status_code == 200

    def test_malformed_jwt_header_is_200(self, http, oauth_client):
        resp = http.post(
            "/revoke", data={"token": _JWT_WITH_NUMERIC_KID, "client_id": oauth_client.client_id}
        )
        assert resp.status_code == 200

    def test_disconnect_revokes_everything(self, http, oauth_client, tokens):
        resp = http.post("/consent/revoke", data={"client_id": oauth_client.client_id})
        assert resp.status_code == 200
        assert resp.json() == {"client_id": oauth_client.client_id, "revoked_tokens": 2}
        assert http.get("/mcp/tools", headers=_bearer(tokens["access_token"])).status_code == 401

        refresh = http.post(
            "/token",
            data={
                "grant_type": "refresh_token",
                "refresh_token": tokens["refresh_token"],
                "client_id": oauth_client.client_id,
            },
        )
        assert refresh.json()["error"] == "invalid_grant"

    def test_disconnect_requires_login(self, http):
        resp = http.post("/consent/revoke", data={"client_id": "x"})
        assert resp.status_code == 401
        assert resp.json() == {"error": "login_required"}

    def test_logout_clears_session(self, http):
        resp = http.post("/login", data={"username": "alice", "password": "wonderland"})
        assert "Signed in" in resp.text
        assert http.post("/consent/revoke", data={}).status_code == 400

        http.post("/logout")
        assert http.post("/consent/revoke", data={"client_id": "x"}).status_code == 401


class TestGuardedTools:
    def test_missing_token_challenge(self, http):
        resp = http.get("/mcp/tools")
        assert resp.status_code == 401
        challenge = resp.headers["www-authenticate"]
        assert challenge.startswith('Bearer realm="MCP"')
        assert (
            'resource_metadata_uri="http://localhost:8000/.well-known/oauth-protected-resource"'
            in challenge
        )
        assert "error=" not in challenge

    def test_invalid_token_challenge(self, http):
        resp = http.get("/mcp/tools", headers=_bearer("mgat_forged"))
        assert resp.status_code == 401
        assert 'error="invalid_token"' in resp.headers["www-authenticate"]

    def test_malformed_jwt_header_challenge(self, http):
        resp = http.post("/mcp/tools/list_tasks", headers=_bearer(_JWT_WITH_NUMERIC_KID), json={})
        assert resp.status_code == 401
        assert 'error="invalid_token"' in resp.headers["www-authenticate"]

    def test_list_tools_filtered_by_scope(self, http, tokens):
        body = http.get("/mcp/tools", headers=_bearer(tokens["access_token"])).json()
        names = {tool["name"] for tool in body["tools"]}
        assert names == {"list_tasks", "create_task"}

    def test_create_then_list(self, http, tokens):
        headers = _bearer(tokens["access_token"])
        resp = http.post(
            "/mcp/tools/create_task", json={"arguments": {"title": "Ship it"}}, headers=headers
        )
        assert resp.status_code == 200
        assert resp.json()["content"].endswith(": Ship it")
        assert resp.json()["is_error"] is False

        listed = http.post("/mcp/tools/list_tasks", headers=headers).json()
        assert "Ship it" in listed["content"]

    def test_missing_argument_is_tool_error(self, http, tokens):
        resp = http.post(
            "/mcp/tools/create_task", json={"arguments": {}}, headers=_bearer(tokens["access_token"])
        )
        assert resp.status_code == 200
        assert resp.json()["is_error"] is True

    def test_insufficient_scope(self, http, tokens):
        resp = http.post("/mcp/tools/purge_tasks", headers=_bearer(tokens["access_token"]))
        assert resp.status_code == 403
        challenge = resp.headers["www-authenticate"]
        assert 'error="insufficient_scope"' in challenge
        assert 'scope="tasks.admin"' in challenge

    def test_unknown_tool_requires_auth_first(self, http, tokens):
        assert http.post("/mcp/tools/nope").status_code == 401
        assert http.post("/mcp/tools/nope", headers=_bearer(tokens["access_token"])).status_code == 404

    def test_token_for_other_resource_rejected(self, http, server, settings):
        settings.trusted_resources = [RESOURCE, "https://other.example.com/mcp"]
        value, record = server.issuer.mint_access_token(
            user_id="alice",
            client_id="c",
            scopes=["tasks.read"],
            audience="https://other.example.com/mcp",
        )
        server.storage.save_access_token(record)
        resp = http.get("/mcp/tools", headers=_bearer(value))
        assert resp.status_code == 401
