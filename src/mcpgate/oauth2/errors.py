# OAuth2 error taxonomy.
# Created: 2026-10-02
#
# Each exception carries its RFC 6749 / RFC 6750 error code and HTTP status.
# StorageError sits outside the OAuthError tree: an unavailable
# datastore is a 5xx, never a grant error.

from __future__ import annotations


class OAuthError(Exception):
    """Base class for errors reported to OAuth clients as ``{error, error_description}``."""

    error = "server_error"
    status_code = 400

    def __init__(self, description: str = "") -> None:
        super().__init__(description or self.error)
        self.description = description

    def to_dict(self) -> dict[str, str]:
        body = {"error": self.error}
        if self.description:
            body["error_description"] = self.description
        return body


class InvalidRequestError(OAuthError):
    error = "invalid_request"


class InvalidScopeError(OAuthError):
    error = "invalid_scope"


class UnsupportedResponseTypeError(OAuthError):
    error = "unsupported_response_type"


class UnsupportedGrantTypeError(OAuthError):
    error = "unsupported_grant_type"


class InvalidGrantError(OAuthError):
    error = "invalid_grant"


class RefreshTokenReuseError(InvalidGrantError):
    """A rotated-away refresh token was presented again; its family is revoked."""


class InvalidClientError(OAuthError):
    error = "invalid_client"
    status_code = 401


class UnauthorizedClientError(OAuthError):
    error = "unauthorized_client"
    status_code = 401


class AccessDeniedError(OAuthError):
    error = "access_denied"


class InvalidRedirectURIError(OAuthError):
    error = "invalid_redirect_uri"


class InvalidClientMetadataError(OAuthError):
    error = "invalid_client_metadata"


class InvalidTokenError(OAuthError):
    error = "invalid_token"
    status_code = 401

    def __init__(self, description: str = "", *, token_presented: bool = True) -> None:
        super().__init__(description)
        self.token_presented = token_presented


class InsufficientScopeError(OAuthError):
    error = "insufficient_scope"
    status_code = 403

    def __init__(self, description: str = "", *, required: list[str] | None = None) -> None:
        super().__init__(description)
        self.required = required or []


class StorageError(Exception):
    """The datastore could not complete an operation."""
