"""
Token endpoint (POST /connect/token). authorization_code, client_credentials and refresh_token grants.
Errors are raised as OAuthError and rendered as {error, error_description} by main.py.
"""
import hashlib
import hmac
import logging
import re
from base64 import urlsafe_b64encode
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Form, Request
from fastapi.responses import JSONResponse

from identity_server import rate_limit
from identity_server.audit import (
    EVENT_GRANT_REPLAY,
    EVENT_TOKEN_FAIL,
    EVENT_TOKEN_ISSUED,
    EVENT_TOKEN_REFRESHED,
    OUTCOME_FAIL,
    AuditLogger,
    get_client_ip,
)
from identity_server.client_auth import authenticate_client
from identity_server.config import ID_TOKEN_TTL_SECONDS, RATE_LIMIT_TOKEN_PER_MINUTE
from identity_server.dependencies import get_audit, get_grant_store, get_issuer, get_registry
from identity_server.errors import (
    INVALID_REQUEST,
    INVALID_SCOPE,
    NO_STORE_HEADERS,
    UNAUTHORIZED_CLIENT,
    UNSUPPORTED_GRANT_TYPE,
    OAuthError,
)
from identity_server.grant_store import GrantError, GrantStore
from identity_server.keys import TokenIssuer, access_token_claims, id_token_claims
from identity_server.registry import OPENID, Client, GrantType, RefreshTokenUsage, Registry, parse_scope

logger = logging.getLogger(__name__)
router = APIRouter()

TOKEN_PATH = "/connect/token"

# RFC 7636 §4.1: 43-128 characters from the unreserved set
_VERIFIER_RE = re.compile(r"[A-Za-z0-9\-._~]{43,128}")


def pkce_verify(code_verifier: str, code_challenge: str) -> bool:
    """S256 only: BASE64URL(SHA256(verifier)) == challenge, compared in constant time."""
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    computed = urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return hmac.compare_digest(computed, code_challenge)


def _issue_tokens(
    registry: Registry,
    issuer: TokenIssuer,
    client: Client,
    *,
    scopes: tuple[str, ...] | list[str],
    now: datetime,
    subject_id: str | None = None,
    subject_claims: dict | None = None,
    auth_time: int | None = None,
    nonce: str | None = None,
    refresh_token: str | None = None,
) -> JSONResponse:
    """Sign the access token (and the ID token when openid was granted) and build the response."""
    access_token = issuer.sign(
        access_token_claims(
            issuer.issuer,
            client_id=client.client_id,
            scopes=scopes,
            audiences=registry.resources.audiences_for(scopes),
            now=now,
            lifetime=client.access_token_ttl,
            subject_id=subject_id,
            auth_time=auth_time,
        ),
        typ="at+jwt",
    )
    body = {
        "access_token": access_token,
        "token_type": "Bearer",
        "expires_in": client.access_token_ttl,
        "scope": " ".join(scopes),
    }
    if refresh_token:
        body["refresh_token"] = refresh_token
    if subject_id is not None and OPENID in scopes:
        released = registry.resources.claims_for(scopes)
        user_claims = {k: v for k, v in (subject_claims or {}).items() if k in released and k != "sub"}
        body["id_token"] = issuer.sign(
            id_token_claims(
                issuer.issuer,
                client_id=client.client_id,
                subject_id=subject_id,
                auth_time=auth_time,
                now=now,
                lifetime=ID_TOKEN_TTL_SECONDS,
                nonce=nonce,
                access_token=access_token,
                user_claims=user_claims,
            )
        )
    return JSONResponse(body, headers=NO_STORE_HEADERS)


@router.post(TOKEN_PATH)
def token(
    request: Request,
    grant_type: str | None = Form(None),
    code: str | None = Form(None),
    redirect_uri: str | None = Form(None),
    code_verifier: str | None = Form(None),
    refresh_token: str | None = Form(None),
    scope: str | None = Form(None),
    client_id: str | None = Form(None),
    client_secret: str | None = Form(None),
    registry: Registry = Depends(get_registry),
    store: GrantStore = Depends(get_grant_store),
    issuer: TokenIssuer = Depends(get_issuer),
    audit: AuditLogger = Depends(get_audit),
):
    """
    authorization_code: exchange code (+ PKCE verifier) for access_token, id_token, refresh_token.
    client_credentials: access_token for the client's own API scopes.
    refresh_token: new access_token (and id_token if openid); one-time tokens are rotated.
    """
    ip = get_client_ip(request)
    rate_limit.enforce(f"token:{ip}", RATE_LIMIT_TOKEN_PER_MINUTE)
    now = datetime.now(timezone.utc)

    client = authenticate_client(registry, request, client_id, client_secret)
    if not grant_type:
        raise OAuthError(INVALID_REQUEST, "grant_type is required")
    try:
        grant = GrantType(grant_type)
    except ValueError:
        raise OAuthError(UNSUPPORTED_GRANT_TYPE, f"Unsupported grant_type: {grant_type}") from None
    if not client.allows_grant(grant):
        raise OAuthError(UNAUTHORIZED_CLIENT, f"Client is not allowed the {grant.value} grant")

    try:
        if grant is GrantType.AUTHORIZATION_CODE:
            return _token_authorization_code(
                registry, store, issuer, audit, client, ip,
                code=code, redirect_uri=redirect_uri, code_verifier=code_verifier, now=now,
            )
        if grant is GrantType.CLIENT_CREDENTIALS:
            return _token_client_credentials(registry, issuer, audit, client, ip, scope=scope, now=now)
        return _token_refresh_token(
            registry, store, issuer, audit, client, ip,
            refresh_token=refresh_token, scope=scope, now=now,
        )
    except GrantError as e:
        audit.record(
            EVENT_GRANT_REPLAY if e.replay else EVENT_TOKEN_FAIL,
            client_id=client.client_id,
            ip=ip,
            outcome=OUTCOME_FAIL,
            detail=f"{grant.value}: {e.description}",
        )
        if e.replay:
            logger.warning("Replayed %s grant from client %s", grant.value, client.client_id)
        raise OAuthError(e.error, e.description)
    except OAuthError as e:
        audit.record(
            EVENT_TOKEN_FAIL,
            client_id=client.client_id,
            ip=ip,
            outcome=OUTCOME_FAIL,
            detail=f"{grant.value}: {e.error}",
        )
        raise


def _token_authorization_code(
    registry: Registry,
    store: GrantStore,
    issuer: TokenIssuer,
    audit: AuditLogger,
    client: Client,
    ip: str | None,
    *,
    code: str | None,
    redirect_uri: str | None,
    code_verifier: str | None,
    now: datetime,
) -> JSONResponse:
    if not code or not redirect_uri:
        raise OAuthError(INVALID_REQUEST, "code and redirect_uri are required for authorization_code grant")

    # Burned before any binding check: a stolen code presented by the wrong client is gone too
    grant = store.redeem_code(code, now)
    if grant.client_id != client.client_id:
        raise GrantError("Authorization code was issued to another client")
    if grant.redirect_uri != redirect_uri:
        raise GrantError("redirect_uri does not match the authorization request")

    if grant.code_challenge:
        if not code_verifier:
            raise GrantError("code_verifier is required")
        if not _VERIFIER_RE.fullmatch(code_verifier):
            raise GrantError("code_verifier is malformed")
        if not pkce_verify(code_verifier, grant.code_challenge):
            raise GrantError("PKCE verification failed")
    elif code_verifier:
        raise GrantError("code_verifier sent for a code issued without code_challenge")

    new_refresh = None
    if client.allow_offline_access:
        new_refresh = store.issue_refresh_token(
            client_id=client.client_id,
            subject_id=grant.subject_id,
            subject_claims=grant.subject_claims,
            auth_time=grant.auth_time,
            scopes=grant.scopes,
            now=now,
            lifetime=client.refresh_token_ttl,
            sliding=client.sliding_refresh_token,
            absolute_lifetime=client.absolute_refresh_token_ttl,
        ).token

    response = _issue_tokens(
        registry,
        issuer,
        client,
        scopes=grant.scopes,
        now=now,
        subject_id=grant.subject_id,
        subject_claims=grant.subject_claims,
        auth_time=grant.auth_time,
        nonce=grant.nonce,
        refresh_token=new_refresh,
    )
    audit.record(EVENT_TOKEN_ISSUED, client_id=client.client_id, subject_id=grant.subject_id, ip=ip,
                 detail=GrantType.AUTHORIZATION_CODE.value)
    return response


def _token_client_credentials(
    registry: Registry,
    issuer: TokenIssuer,
    audit: AuditLogger,
    client: Client,
    ip: str | None,
    *,
    scope: str | None,
    now: datetime,
) -> JSONResponse:
    if not client.is_confidential:
        raise OAuthError(UNAUTHORIZED_CLIENT, "client_credentials requires a confidential client")

    allowed = sorted(s for s in client.allowed_scopes if registry.resources.is_api_scope(s))
    requested = parse_scope(scope)
    granted = [s for s in requested if s in allowed] if requested else allowed
    if not granted:
        raise OAuthError(INVALID_SCOPE, "None of the requested scopes are allowed for this client")

    response = _issue_tokens(registry, issuer, client, scopes=granted, now=now)
    audit.record(EVENT_TOKEN_ISSUED, client_id=client.client_id, ip=ip, detail=GrantType.CLIENT_CREDENTIALS.value)
    return response


def _token_refresh_token(
    registry: Registry,
    store: GrantStore,
    issuer: TokenIssuer,
    audit: AuditLogger,
    client: Client,
    ip: str | None,
    *,
    refresh_token: str | None,
    scope: str | None,
    now: datetime,
) -> JSONResponse:
    if not refresh_token:
        raise OAuthError(INVALID_REQUEST, "refresh_token is required")

    held, granted = store.redeem_refresh_token(
        refresh_token,
        client_id=client.client_id,
        now=now,
        one_time=client.refresh_token_usage is RefreshTokenUsage.ONE_TIME,
        lifetime=client.refresh_token_ttl,
        scopes=parse_scope(scope) or None,
    )
    # No nonce on refresh-issued ID tokens
    response = _issue_tokens(
        registry,
        issuer,
        client,
        scopes=granted,
        now=now,
        subject_id=held.subject_id,
        subject_claims=held.subject_claims,
        auth_time=held.auth_time,
        refresh_token=held.token,
    )
    audit.record(EVENT_TOKEN_REFRESHED, client_id=client.client_id, subject_id=held.subject_id, ip=ip)
    logger.info(
        "refresh_token grant: new tokens issued for client_id=%s sub=%s (%s)",
        client.client_id,
        held.subject_id,
        client.refresh_token_usage.value,
    )
    return response
