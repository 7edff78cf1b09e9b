# Authorization router - /authorize, login, consent, logout, disconnect.
# Created: 2026-10-08
#
# Renders FlowResults from AuthorizationEndpoint. End users only ever see the
# generic HTML error page; protocol errors go back to the client via redirect.

from __future__ import annotations

import logging
from html import escape

from fastapi import APIRouter, Depends, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response

from mcpgate.api.deps import get_server, get_session_user, rate_limit
from mcpgate.oauth2.authorize import FlowResult, FlowState
from mcpgate.oauth2.server import AuthorizationServer
from mcpgate.security.session_tokens import SESSION_COOKIE, create_session_token

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Authorization"])

_STYLE = """<style>
body { font-family: system-ui; max-width: 480px; margin: 40px auto; padding: 20px; }
.btn { padding: 10px 24px; border: none; border-radius: 6px; cursor: pointer; font-size: 16px; }
.allow { background: #2563eb; color: white; } .allow:hover { background: #1d4ed8; }
.deny { background: #e5e7eb; color: #374151; margin-left: 12px; }
h2 { margin-bottom: 8px; }
.scopes { background: #f3f4f6; padding: 12px; border-radius: 8px; margin: 16px 0; }
.scopes li { margin: 6px 0; }
.scope { font-family: monospace; background: #dbeafe; padding: 2px 6px; border-radius: 4px; }
.warn { color: #b45309; font-size: 14px; }
input[type=text], input[type=password] { width: 100%; padding: 8px; margin: 6px 0 12px; }
.err { color: #b91c1c; }
</style>"""

_CONSENT_HTML = """<!DOCTYPE html>
<html><head><title>Authorize {client_name}</title>{style}</head><body>
<h2>Authorize {client_name}</h2>
<p>Signed in as <strong>{user_id}</strong>. {client_name} wants to:</p>
<div class="scopes"><ul>{scope_items}</ul></div>
<p class="warn">You will be sent to <code>{redirect_uri}</code></p>
<form method="POST" action="/authorize/consent">
<input type="hidden" name="flow_id" value="{flow_id}">
<button type="submit" name="action" value="allow" class="btn allow">Allow</button>
<button type="submit" name="action" value="deny" class="btn deny">Deny</button>
</form></body></html>"""

_LOGIN_HTML = """<!DOCTYPE html>
<html><head><title>Sign in</title>{style}</head><body>
<h2>Sign in</h2>
{message}
<form method="POST" action="/login">
<input type="hidden" name="flow_id" value="{flow_id}">
<label>Username <input type="text" name="username" autocomplete="username"></label>
<label>Password <input type="password" name="password" autocomplete="current-password"></label>
<button type="submit" class="btn allow">Sign in</button>
</form></body></html>"""

_ERROR_HTML = """<!DOCTYPE html>
<html><head><title>Authorization error</title>{style}</head><body>
<h2>Something went wrong</h2>
<p class="err">{message}</p>
<p>Return to the application and try connecting again.</p>
</body></html>"""

_MESSAGE_HTML = """<!DOCTYPE html>
<html><head><title>{title}</title>{style}</head><body>
<h2>{title}</h2><p>{message}</p></body></html>"""


def _error_page(message: str, status_code: int = 400) -> HTMLResponse:
    return HTMLResponse(
        _ERROR_HTML.format(style=_STYLE, message=escape(message)), status_code=status_code
    )


def _login_page(flow_id: str, message: str = "", status_code: int = 200) -> HTMLResponse:
    note = f'<p class="err">{escape(message)}</p>' if message else ""
    return HTMLResponse(
        _LOGIN_HTML.format(style=_STYLE, flow_id=escape(flow_id), message=note),
        status_code=status_code,
    )


def _render(server: AuthorizationServer, result: FlowResult, user_id: str | None) -> Response:
    if result.redirect_url is not None:
        return RedirectResponse(result.redirect_url, status_code=302)
    if result.is_error_page:
        return _error_page(result.error.description if result.error else "Invalid request")
    if result.state is FlowState.AUTHENTICATING_USER:
        return _login_page(result.flow_id or "")
    if result.state is FlowState.AWAITING_CONSENT and result.client is not None:
        items = "".join(
            f'<li><span class="scope">{escape(scope)}</span> {escape(text)}</li>'
            for scope, text in server.authorization.describe_scopes(result.scopes)
        )
        html = _CONSENT_HTML.format(
            style=_STYLE,
            client_name=escape(result.client.client_name),
            user_id=escape(user_id or ""),
            scope_items=items,
            redirect_uri=escape(result.client_redirect_uri or ""),
            flow_id=escape(result.flow_id or ""),
        )
        return HTMLResponse(html, headers={"X-Frame-Options": "DENY"})
    return _error_page("Invalid request")


def _set_session(response: Response, server: AuthorizationServer, user_id: str) -> None:
    settings = server.settings
    response.set_cookie(
        SESSION_COOKIE,
        create_session_token(server.session_secret, user_id, settings.session_ttl_hours),
        max_age=settings.session_ttl_hours * 3600,
        httponly=True,
        samesite="lax",
        secure=settings.issuer_url.startswith("https://"),
    )


@router.get("/authorize", dependencies=[Depends(rate_limit("authorize"))])
async def authorize(request: Request, server: AuthorizationServer = Depends(get_server)):
    """Start an authorization flow: login page, consent page, or redirect."""
    user_id = get_session_user(request)
    result = server.authorization.start(dict(request.query_params), user_id=user_id)
    return _render(server, result, user_id)


@router.get("/login")
async def login_form(flow_id: str = ""):
    return _login_page(flow_id)


@router.post("/login", dependencies=[Depends(rate_limit("authorize"))])
async def login(request: Request, server: AuthorizationServer = Depends(get_server)):
    form = await request.form()
    username = str(form.get("username", ""))
    password = str(form.get("password", ""))
    flow_id = str(form.get("flow_id", ""))

    user_id = server.users.authenticate(username, password)
    if user_id is None:
        logger.info("Failed login for %r", username)
        server.audit.log_decision(action="login", target=username, outcome="reject")
        return _login_page(flow_id, "Incorrect username or password.", status_code=401)

    server.audit.log_decision(action="login", target=username, outcome="success", user_id=user_id)
    if flow_id:
        response = _render(server, server.authorization.resume(flow_id, user_id), user_id)
    else:
        response = HTMLResponse(
            _MESSAGE_HTML.format(style=_STYLE, title="Signed in", message="You are signed in.")
        )
    _set_session(response, server, user_id)
    return response


@router.post("/authorize/consent")
async def authorize_consent(request: Request, server: AuthorizationServer = Depends(get_server)):
    """Process the consent form (Allow / Deny)."""
    user_id = get_session_user(request)
    if user_id is None:
        return _error_page("Your sign-in session has expired.", status_code=401)

    form = await request.form()
    flow_id = str(form.get("flow_id", ""))
    approved = form.get("action") == "allow"
    result = server.authorization.decide(flow_id, user_id, approved)
    return _render(server, result, user_id)


@router.post("/logout")
async def logout():
    response = HTMLResponse(
        _MESSAGE_HTML.format(style=_STYLE, title="Signed out", message="You are signed out.")
    )
    response.delete_cookie(SESSION_COOKIE)
    return response


@router.post("/consent/revoke")
async def revoke_consent(request: Request, server: AuthorizationServer = Depends(get_server)):
    """Disconnect a client: forget the user's consent and revoke its tokens."""
    user_id = get_session_user(request)
    if user_id is None:
        return JSONResponse(status_code=401, content={"error": "login_required"})

    form = await request.form()
    client_id = str(form.get("client_id", ""))
    if not client_id:
        return JSONResponse(
            status_code=400,
            content={"error": "invalid_request", "error_description": "client_id is required"},
        )
    revoked = server.disconnect(user_id, client_id)
    return {"client_id": client_id, "revoked_tokens": revoked}
