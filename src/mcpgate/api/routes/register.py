# Registration router - RFC 7591 dynamic client registration.
# Created: 2026-10-08

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from mcpgate.api.deps import get_server, rate_limit
from mcpgate.api.schemas.oauth2 import RegisterRequest, RegisterResponse
from mcpgate.oauth2.errors import InvalidClientMetadataError
from mcpgate.oauth2.server import AuthorizationServer

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Registration"])


@router.post("/register", status_code=201, dependencies=[Depends(rate_limit("authorize"))])
async def register_client(request: Request, server: AuthorizationServer = Depends(get_server)):
    if not server.settings.registration_enabled:
        raise HTTPException(status_code=404, detail="Not Found")

    try:
        body = RegisterRequest.model_validate(await request.json())
    except (ValueError, ValidationError) as exc:
        raise InvalidClientMetadataError("malformed client metadata") from exc

    if body.response_types and body.response_types != ["code"]:
        raise InvalidClientMetadataError("only response_type 'code' is supported")

    client, secret = server.registrar.register(
        client_name=body.client_name,
        redirect_uris=body.redirect_uris,
        logo_uri=body.logo_uri,
        token_endpoint_auth_method=body.token_endpoint_auth_method,
    )
    grant_types = ["authorization_code"]
    if server.settings.refresh_enabled:
        grant_types.append("refresh_token")

    response = RegisterResponse(
        client_id=client.client_id,
        client_name=client.client_name,
        redirect_uris=client.redirect_uris,
        token_endpoint_auth_method=client.token_endpoint_auth_method,
        client_id_issued_at=int(client.registration_time.timestamp()),
        grant_types=grant_types,
        client_secret=secret,
        client_secret_expires_at=0 if secret else None,
        logo_uri=client.logo_uri,
    )
    return JSONResponse(
        status_code=201,
        content=response.model_dump(exclude_none=True),
        headers={"Cache-Control": "no-store"},
    )
