"""
Authorization endpoint (GET /connect/authorize), authorization code flow.

Each request walks RECEIVED -> VALIDATED -> AUTHENTICATED -> CODE_ISSUED, or ends in REJECTED.
Until the redirect_uri has been matched exactly against the client's registration, errors are
rendered directly and never redirected. Authentication is delegated to the login page
(/account/login), which sends the browser back here with a session cookie.
"""
import html
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from starlette.datastructures import QueryParams

from identity_server.audit import EVENT_CODE_ISSUED, AuditLogger, get_client_ip
from identity_server.config import CODE_TTL_SECONDS
from identity_server.dependencies import get_audit, get_grant_store, get_issuer, get_registry
from identity_server.errors import (
    INVALID_REQUEST,
    INVALID_SCOPE,
    LOGIN_REQUIRED,
    UNAUTHORIZED_CLIENT,
    UNSUPPORTED_RESPONSE_TYPE,
)
from identity_server.grant_store import CodeGrant, GrantStore
from identity_server.keys import TokenIssuer
from identity_server.registry import Client, GrantType, Registry, parse_scope
from identity_server.session import LoginSession, read_session
from identity_server.users import Subject

logger = logging.getLogger(__name__)
router = APIRouter()

AUTHORIZE_PATH = "/connect/authorize"
LOGIN_PATH = "/account/login"

_PARAMS = (
    "client_id",
    "redirect_uri",
    "response_type",
    "scope",
    "state",
    "nonce",
    "code_challenge",
    "code_challenge_method",
    "prompt",
)
# RFC 7636 §4.2: S256 challenge is base64url without padding
_CHALLENGE_RE = re.compile(r"[A-Za-z0-9\-._~]{43,128}")


class AuthorizeState(str, Enum):
    RECEIVED = "received"
    VALIDATED = "validated"
    AUTHENTICATED = "authenticated"
    CODE_ISSUED = "code_issued"
    REJECTED = "rejected"


class AuthorizeError(Exception):
    """Rejected authorization request. redirect_uri is set only once it has been validated."""

    def __init__(self, error: str, description: str, redirect_uri: str | None = None, state: str | None = None):
        super().__init__(description)
        self.error = error
        self.description = description
        self.redirect_uri = redirect_uri
        self.state = state


def append_query(url: str, params: dict) -> str:
    if not params:
        return url
    return f"{url}{'&' if '?' in url else '?'}{urlencode(params)}"


@dataclass
class AuthorizationRequest:
    client_id: str | None = None
    redirect_uri: str | None = None
    response_type: str | None = None
    scope: str | None = None
    state: str | None = None
    nonce: str | None = None
    code_challenge: str | None = None
    code_challenge_method: str | None = None
    prompt: str | None = None
    duplicates: frozenset[str] = frozenset()

    status: AuthorizeState = AuthorizeState.RECEIVED
    client: Client | None = None
    scopes: list[str] = field(default_factory=list)
    subject: Subject | None = None
    auth_time: int | None = None
    error: AuthorizeError | None = None

    @classmethod
    def from_query(cls, params: QueryParams) -> "AuthorizationRequest":
        values = {}
        duplicates = set()
        for name in _PARAMS:
            found = params.getlist(name)
            if len(found) > 1:
                duplicates.add(name)
            values[name] = found[0] if found else None
        return cls(**values, duplicates=frozenset(duplicates))

    def _require(self, expected: AuthorizeState) -> None:
        if self.status is not expected:
            raise RuntimeError(f"authorization request is {self.status.value}, expected {expected.value}")

    def _reject(self, error: str, description: str, trusted: bool) -> AuthorizeError:
        exc = AuthorizeError(
            error,
            description,
            redirect_uri=self.redirect_uri if trusted else None,
            state=self.state,
        )
        self.status = AuthorizeState.REJECTED
        self.error = exc
        return exc

    # RECEIVED -> VALIDATED
    def validate(self, registry: Registry) -> None:
        self._require(AuthorizeState.RECEIVED)

        # Redirect URI not yet trusted: errors are shown directly
        for name in ("client_id", "redirect_uri"):
            if name in self.duplicates:
                raise self._reject(INVALID_REQUEST, f"{name} must not be repeated", trusted=False)
        if not self.client_id:
            raise self._reject(INVALID_REQUEST, "client_id is required", trusted=False)
        client = registry.clients.lookup_client(self.client_id)
        if client is None:
            raise self._reject(UNAUTHORIZED_CLIENT, "Unknown client", trusted=False)
        if not self.redirect_uri:
            raise self._reject(INVALID_REQUEST, "redirect_uri is required", trusted=False)
        if not client.redirect_uri_allowed(self.redirect_uri):
            logger.warning("Rejected unregistered redirect_uri for client %s", client.client_id)
            raise self._reject(INVALID_REQUEST, "redirect_uri is not registered for this client", trusted=False)

        # Redirect URI trusted from here on
        if self.duplicates:
            raise self._reject(
                INVALID_REQUEST,
                f"Parameter(s) must not be repeated: {', '.join(sorted(self.duplicates))}",
                trusted=True,
            )
        if not self.response_type:
            raise self._reject(INVALID_REQUEST, "response_type is required", trusted=True)
        if self.response_type != "code":
            raise self._reject(UNSUPPORTED_RESPONSE_TYPE, "Only response_type=code is supported", trusted=True)
        if not client.allows_grant(GrantType.AUTHORIZATION_CODE):
            raise self._reject(UNAUTHORIZED_CLIENT, "Client is not allowed the authorization code flow", trusted=True)

        scopes = parse_scope(self.scope)
        if not scopes:
            raise self._reject(INVALID_REQUEST, "scope is required", trusted=True)
        for name in scopes:
            if registry.resources.find_scope(name) is None and name != "offline_access":
                raise self._reject(INVALID_SCOPE, f"Unknown scope: {name}", trusted=True)
            if not registry.clients.is_scope_allowed(client, name):
                raise self._reject(INVALID_SCOPE, f"Scope not allowed for this client: {name}", trusted=True)

        if self.code_challenge_method and self.code_challenge_method != "S256":
            raise self._reject(INVALID_REQUEST, "code_challenge_method must be S256", trusted=True)
        if client.require_pkce and not self.code_challenge:
            raise self._reject(INVALID_REQUEST, "code_challenge is required", trusted=True)
        if self.code_challenge:
            if self.code_challenge_method != "S256":
                raise self._reject(INVALID_REQUEST, "code_challenge_method must be S256", trusted=True)
            if not _CHALLENGE_RE.fullmatch(self.code_challenge):
                raise self._reject(INVALID_REQUEST, "code_challenge is malformed", trusted=True)

        self.client = client
        self.scopes = scopes
        self.status = AuthorizeState.VALIDATED

    # VALIDATED -> AUTHENTICATED (subject comes from the login collaborator)
    def authenticate(self, session: LoginSession) -> None:
        self._require(AuthorizeState.VALIDATED)
        self.subject = session.subject
        self.auth_time = session.auth_time
        self.status = AuthorizeState.AUTHENTICATED

    # VALIDATED -> REJECTED when prompt=none and nobody is logged in
    def reject_login_required(self) -> AuthorizeError:
        self._require(AuthorizeState.VALIDATED)
        return self._reject(LOGIN_REQUIRED, "User is not logged in", trusted=True)

    # AUTHENTICATED -> CODE_ISSUED
    def issue_code(self, store: GrantStore, now: datetime, lifetime: int = CODE_TTL_SECONDS) -> CodeGrant:
        self._require(AuthorizeState.AUTHENTICATED)
        grant = store.issue_code(
            client_id=self.client.client_id,
            subject_id=self.subject.subject_id,
            subject_claims=self.subject.claims,
            auth_time=self.auth_time,
            redirect_uri=self.redirect_uri,
            scopes=self.scopes,
            code_challenge=self.code_challenge,
            code_challenge_method=self.code_challenge_method if self.code_challenge else None,
            nonce=self.nonce,
            now=now,
            lifetime=lifetime,
        )
        self.status = AuthorizeState.CODE_ISSUED
        return grant

    def success_url(self, code: str) -> str:
        params = {"code": code}
        if self.state is not None:
            params["state"] = self.state
        return append_query(self.redirect_uri, params)


def error_response(exc: AuthorizeError) -> HTMLResponse | RedirectResponse:
    """Redirect the error to the client when its redirect_uri is trusted; otherwise show it."""
    if exc.redirect_uri:
        params = {"error": exc.error, "error_description": exc.description}
        if exc.state is not None:
            params["state"] = exc.state
        return RedirectResponse(url=append_query(exc.redirect_uri, params), status_code=302)
    return HTMLResponse(
        f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Error</title></head>
<body>
  <h1>Invalid request</h1>
  <p>{html.escape(exc.error)}: {html.escape(exc.description)}</p>
</body>
</html>""",
        status_code=400,
    )


def login_redirect(request: Request) -> RedirectResponse:
    """Send the browser to the login page with the authorize URL (minus prompt) as returnUrl."""
    params = [(k, v) for k, v in request.query_params.multi_items() if k != "prompt"]
    return_url = f"{AUTHORIZE_PATH}?{urlencode(params)}"
    return RedirectResponse(url=f"{LOGIN_PATH}?{urlencode({'returnUrl': return_url})}", status_code=302)


@router.get(AUTHORIZE_PATH)
def authorize(
    request: Request,
    registry: Registry = Depends(get_registry),
    store: GrantStore = Depends(get_grant_store),
    issuer: TokenIssuer = Depends(get_issuer),
    audit: AuditLogger = Depends(get_audit),
):
    """
    OAuth 2.0 authorization endpoint. Validates the request, then either sends the user to
    log in or redirects back to the client with code and state.
    """
    now = datetime.now(timezone.utc)
    auth_request = AuthorizationRequest.from_query(request.query_params)
    try:
        auth_request.validate(registry)
    except AuthorizeError as e:
        logger.info("Authorization request rejected: %s (%s)", e.error, e.description)
        return error_response(e)

    # prompt=login forces a fresh login; returnUrl drops prompt so the round trip terminates
    if auth_request.prompt == "login":
        return login_redirect(request)
    session = read_session(request, issuer)
    if session is None:
        if auth_request.prompt == "none":
            return error_response(auth_request.reject_login_required())
        return login_redirect(request)

    auth_request.authenticate(session)
    grant = auth_request.issue_code(store, now)
    audit.record(
        EVENT_CODE_ISSUED,
        client_id=grant.client_id,
        subject_id=grant.subject_id,
        ip=get_client_ip(request),
    )
    return RedirectResponse(url=auth_request.success_url(grant.code), status_code=302)
