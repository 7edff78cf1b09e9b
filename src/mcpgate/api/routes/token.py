# Token router - /token and /revoke (form-encoded).
# Created: 2026-10-08

from __future__ import annotations

import base64
import binascii
import logging
from urllib.parse import unquote

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from mcpgate.api.deps import get_server, rate_limit
from mcpgate.api.schemas.oauth2 import RevokeRequest, TokenRequest, TokenResponse
from mcpgate.oauth2.errors import InvalidClientError, InvalidRequestError
from mcpgate.oauth2.server import AuthorizationServer

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Token"])

_NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}


def _basic_credentials(request: Request) -> tuple[str, str] | None:
    """client_secret_basic: ``Authorization: Basic b64(urlenc(id):urlenc(secret))``."""
    header = request.headers.get("authorization", "")
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "basic":
        return None
    try:
        decoded = base64.b64decode(value.strip(), validate=True).decode()
    except (binascii.Error, UnicodeDecodeError) as exc:
        raise InvalidClientError("malformed Basic credentials") from exc
    client_id, sep, secret = decoded.partition(":")
    if not sep:
        raise InvalidClientError("malformed Basic credentials")
    return unquote(client_id), unquote(secret)


def _client_credentials(
    request: Request, client_id: str | None, client_secret: str | None
) -> tuple[str | None, str | None]:
    basic = _basic_credentials(request)
    if basic is None:
        return client_id, client_secret
    if client_secret:
        raise InvalidRequestError("use only one client authentication method")
    if client_id and client_id != basic[0]:
        raise InvalidRequestError("client_id does not match Basic credentials")
    return basic


async def _form(request: Request) -> dict[str, str]:
    form = await request.form()
    return {k: str(v) for k, v in form.items()}


@router.post("/token", dependencies=[Depends(rate_limit("token"))])
async def token(request: Request, server: AuthorizationServer = Depends(get_server)):
    """Exchange an authorization code or refresh token for an access token."""
    try:
        body = TokenRequest.model_validate(await _form(request))
    except ValidationError as exc:
        raise InvalidRequestError("grant_type is required") from exc

    client_id, client_secret = _client_credentials(request, body.client_id, body.client_secret)
    result = server.exchanger.exchange(
        body.grant_type,
        client_id=client_id,
        client_secret=client_secret,
        code=body.code,
        redirect_uri=body.redirect_uri,
        code_verifier=body.code_verifier,
        refresh_token=body.refresh_token,
        scope=body.scope,
    )
    content = TokenResponse(**result).model_dump(exclude_none=True)
    return JSONResponse(content=content, headers=_NO_STORE)


@router.post("/revoke", dependencies=[Depends(rate_limit("token"))])
async def revoke(request: Request, server: AuthorizationServer = Depends(get_server)):
    """RFC 7009: 200 whether or not the token was known."""
    try:
        body = RevokeRequest.model_validate(await _form(request))
    except ValidationError as exc:
        raise InvalidRequestError("token is required") from exc

    client_id, client_secret = _client_credentials(request, body.client_id, body.client_secret)
    client = server.exchanger.authenticate_client(client_id, client_secret)
    server.exchanger.revoke(body.token, client, body.token_type_hint)
    return JSONResponse(content={}, headers=_NO_STORE)
