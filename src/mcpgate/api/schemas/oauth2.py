# OAuth2 schemas.
# Created: 2026-10-08

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class TokenRequest(BaseModel):
    """Form body of POST /token (authorization_code or refresh_token grant)."""

    grant_type: str
    code: str | None = None
    code_verifier: str | None = None
    redirect_uri: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    refresh_token: str | None = None
    scope: str | None = None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    scope: str
    refresh_token: str | None = None


class RevokeRequest(BaseModel):
    """RFC 7009 revocation request."""

    token: str
    token_type_hint: str | None = None
    client_id: str | None = None
    client_secret: str | None = None


class RegisterRequest(BaseModel):
    """RFC 7591 client metadata. Unknown fields are ignored."""

    client_name: str = ""
    redirect_uris: list[str] = Field(default_factory=list)
    logo_uri: str | None = None
    token_endpoint_auth_method: str = "none"
    grant_types: list[str] | None = None
    response_types: list[str] | None = None


class RegisterResponse(BaseModel):
    client_id: str
    client_name: str
    redirect_uris: list[str]
    token_endpoint_auth_method: str
    client_id_issued_at: int
    grant_types: list[str]
    response_types: list[str] = Field(default_factory=lambda: ["code"])
    client_secret: str | None = None
    client_secret_expires_at: int | None = None
    logo_uri: str | None = None


class ErrorResponse(BaseModel):
    error: str
    error_description: str | None = None


class ToolCallRequest(BaseModel):
    arguments: dict[str, Any] = Field(default_factory=dict)


class ToolCallResponse(BaseModel):
    tool: str
    content: str
    is_error: bool = False
