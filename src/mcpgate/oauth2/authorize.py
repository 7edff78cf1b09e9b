# Authorization Endpoint - login + consent state machine.
# Created: 2026-10-04
#
#   START -> AUTHENTICATING_USER -> AWAITING_CONSENT -> ISSUING_CODE -> REDIRECTING
#   error exits: INVALID_REQUEST (any state before ISSUING_CODE), DENIED
#
# The flow spans several HTTP requests. Its context lives in the datastore
# under an unguessable flow_id, so any worker can continue it. Each method
# returns a FlowResult which the HTTP layer renders as a page or a redirect.

from __future__ import annotations

import ipaddress
import logging
import secrets
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from urllib.parse import urlencode, urlsplit

from mcpgate.config import Settings
from mcpgate.oauth2 import pkce
from mcpgate.oauth2.errors import (
    InvalidRequestError,
    InvalidScopeError,
    OAuthError,
    UnsupportedResponseTypeError,
)
from mcpgate.oauth2.models import (
    AuthorizationCode,
    AuthorizationRequestContext,
    Client,
    ConsentGrant,
    hash_secret,
    utcnow,
)
from mcpgate.oauth2.storage import OAuthStorage
from mcpgate.security.audit import AuditLogger

logger = logging.getLogger(__name__)


class FlowState(str, Enum):
    START = "start"
    AUTHENTICATING_USER = "authenticating_user"
    AWAITING_CONSENT = "awaiting_consent"
    ISSUING_CODE = "issuing_code"
    REDIRECTING = "redirecting"
    DENIED = "denied"
    INVALID_REQUEST = "invalid_request"


@dataclass
class FlowResult:
    state: FlowState
    flow_id: str | None = None
    redirect_url: str | None = None
    error: OAuthError | None = None
    client: Client | None = None
    scopes: list[str] = field(default_factory=list)
    client_redirect_uri: str | None = None  # shown on the consent screen

    @property
    def is_error_page(self) -> bool:
        """True when the failure must be shown locally instead of redirected."""
        return self.state is FlowState.INVALID_REQUEST and self.redirect_url is None


def is_loopback_uri(uri: str) -> bool:
    host = (urlsplit(uri).hostname or "").lower()
    if host == "localhost" or host.endswith(".localhost"):
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False


def build_redirect(redirect_uri: str, params: Mapping[str, str], state: str | None) -> str:
    """Append *params* (and the client's state, verbatim, if it sent one)."""
    query = dict(params)
    if state is not None:
        query["state"] = state
    sep = "&" if urlsplit(redirect_uri).query else "?"
    return f"{redirect_uri}{sep}{urlencode(query)}"


class AuthorizationEndpoint:
    def __init__(self, settings: Settings, storage: OAuthStorage, audit: AuditLogger):
        self.settings = settings
        self.storage = storage
        self.audit = audit

    # -- START ---------------------------------------------------------

    def start(
        self,
        params: Mapping[str, str],
        user_id: str | None = None,
        now: datetime | None = None,
    ) -> FlowResult:
        """Validate an /authorize request and persist its context."""
        now = now or utcnow()
        client_id = params.get("client_id") or ""
        redirect_uri = params.get("redirect_uri") or ""
        state = params.get("state")

        client = self.storage.get_client(client_id) if client_id else None
        if client is None:
            return self._error_page("unknown client_id")
        if redirect_uri not in client.redirect_uris:
            # Never redirect to an unregistered URI.
            return self._error_page("redirect_uri is not registered for this client")

        try:
            scopes = self._validate(params)
        except OAuthError as exc:
            logger.info("Rejected authorization request from %s: %s", client_id, exc.description)
            return FlowResult(
                FlowState.INVALID_REQUEST,
                redirect_url=build_redirect(redirect_uri, exc.to_dict(), state),
                error=exc,
                client=client,
            )

        flow = AuthorizationRequestContext(
            flow_id=secrets.token_urlsafe(24),
            client_id=client_id,
            redirect_uri=redirect_uri,
            requested_scopes=scopes,
            code_challenge=params["code_challenge"],
            code_challenge_method=params["code_challenge_method"],
            resource=params["resource"],
            state=state,
            created_at=now,
            expires_at=now + timedelta(seconds=self.settings.flow_ttl_seconds),
        )
        self.storage.save_flow(flow)

        if user_id is None:
            return FlowResult(
                FlowState.AUTHENTICATING_USER, flow_id=flow.flow_id, client=client, scopes=scopes
            )
        return self.resume(flow.flow_id, user_id, now)

    def _validate(self, params: Mapping[str, str]) -> list[str]:
        if params.get("response_type") != "code":
            raise UnsupportedResponseTypeError("response_type must be 'code'")

        challenge = params.get("code_challenge")
        method = params.get("code_challenge_method")
        if not challenge or not method:
            raise InvalidRequestError("code_challenge and code_challenge_method are required")
        if method not in pkce.SUPPORTED_METHODS:
            raise InvalidRequestError("code_challenge_method must be S256")
        if not pkce.is_valid_challenge(challenge):
            raise InvalidRequestError("malformed code_challenge")

        resource = params.get("resource")
        if not resource:
            raise InvalidRequestError("resource is required")
        if resource not in self.settings.audiences:
            raise InvalidRequestError("unknown resource")

        raw_scope = (params.get("scope") or "").split()
        scopes = list(dict.fromkeys(raw_scope)) or list(self.settings.default_scopes)
        unknown = [s for s in scopes if s not in self.settings.scopes_supported]
        if unknown:
            raise InvalidScopeError(f"unsupported scope: {' '.join(unknown)}")
        return scopes

    # -- AUTHENTICATING_USER -> AWAITING_CONSENT -------------------------

    def resume(self, flow_id: str, user_id: str, now: datetime | None = None) -> FlowResult:
        """Continue a flow once the user is known; silent issue if consent covers it."""
        now = now or utcnow()
        flow = self._live_flow(flow_id, now)
        if flow is None:
            return self._error_page("authorization request expired or unknown")
        if flow.user_id is not None and flow.user_id != user_id:
            return self._error_page("authorization request belongs to another session")

        client = self.storage.get_client(flow.client_id)
        if client is None:
            return self._error_page("client no longer registered")

        if flow.user_id is None:
            flow.user_id = user_id
            self.storage.save_flow(flow)

        grant = self.storage.get_consent(user_id, flow.client_id)
        if (
            grant is not None
            and grant.covers(flow.requested_scopes)
            and not is_loopback_uri(flow.redirect_uri)
        ):
            taken = self.storage.take_flow(flow_id)
            if taken is None:
                return self._error_page("authorization request already completed")
            return self._issue_code(taken, user_id, now, client, silent=True)

        return FlowResult(
            FlowState.AWAITING_CONSENT,
            flow_id=flow_id,
            client=client,
            scopes=list(flow.requested_scopes),
            client_redirect_uri=flow.redirect_uri,
        )

    # -- AWAITING_CONSENT -> ISSUING_CODE | DENIED ------------------------

    def decide(
        self, flow_id: str, user_id: str, approved: bool, now: datetime | None = None
    ) -> FlowResult:
        """Apply the user's Allow/Deny answer from the consent screen."""
        now = now or utcnow()
        flow = self._live_flow(flow_id, now)
        if flow is None or flow.user_id != user_id:
            return self._error_page("authorization request expired or unknown")

        taken = self.storage.take_flow(flow_id)
        if taken is None:
            return self._error_page("authorization request already completed")

        client = self.storage.get_client(taken.client_id)
        if not approved:
            self.audit.log_decision(
                action="consent",
                target=taken.resource,
                outcome="denied",
                user_id=user_id,
                client_id=taken.client_id,
            )
            return FlowResult(
                FlowState.DENIED,
                redirect_url=build_redirect(taken.redirect_uri, {"error": "access_denied"}, taken.state),
                client=client,
            )

        self.storage.upsert_consent(
            ConsentGrant(
                user_id=user_id,
                client_id=taken.client_id,
                scopes=list(taken.requested_scopes),
                granted_at=now,
            )
        )
        return self._issue_code(taken, user_id, now, client)

    # -- ISSUING_CODE -> REDIRECTING -------------------------------------

    def _issue_code(
        self,
        flow: AuthorizationRequestContext,
        user_id: str,
        now: datetime,
        client: Client | None,
        silent: bool = False,
    ) -> FlowResult:
        code = secrets.token_urlsafe(32)
        self.storage.save_code(
            AuthorizationCode(
                code_hash=hash_secret(code),
                client_id=flow.client_id,
                user_id=user_id,
                granted_scopes=list(flow.requested_scopes),
                code_challenge=flow.code_challenge,
                code_challenge_method=flow.code_challenge_method,
                resource=flow.resource,
                redirect_uri=flow.redirect_uri,
                expires_at=now + timedelta(seconds=self.settings.code_ttl_seconds),
            )
        )
        self.audit.log_decision(
            action="code_issued",
            target=flow.resource,
            outcome="success",
            user_id=user_id,
            client_id=flow.client_id,
            scopes=flow.requested_scopes,
            silent=silent,
        )
        return FlowResult(
            FlowState.REDIRECTING,
            redirect_url=build_redirect(flow.redirect_uri, {"code": code}, flow.state),
            client=client,
            scopes=list(flow.requested_scopes),
        )

    # -- helpers ---------------------------------------------------------

    def _live_flow(self, flow_id: str, now: datetime) -> AuthorizationRequestContext | None:
        flow = self.storage.get_flow(flow_id) if flow_id else None
        if flow is None or flow.expires_at <= now:
            return None
        return flow

    def describe_scopes(self, scopes: list[str]) -> list[tuple[str, str]]:
        """Plain-language descriptions for the consent screen."""
        descriptions = self.settings.scope_descriptions
        return [(s, descriptions.get(s, s)) for s in scopes]

    @staticmethod
    def _error_page(description: str) -> FlowResult:
        return FlowResult(FlowState.INVALID_REQUEST, error=InvalidRequestError(description))
