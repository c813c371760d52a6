"""
Token introspection endpoint (POST /connect/introspect). RFC 7662.
Caller must authenticate as a registered client.
"""
import logging
from datetime import datetime, timezone

import jwt
from fastapi import APIRouter, Depends, Form, Request
from fastapi.responses import JSONResponse

from identity_server.audit import EVENT_INTROSPECT, AuditLogger, get_client_ip
from identity_server.client_auth import authenticate_client
from identity_server.dependencies import get_audit, get_grant_store, get_issuer, get_registry
from identity_server.errors import INVALID_REQUEST, NO_STORE_HEADERS, OAuthError
from identity_server.grant_store import GrantStore
from identity_server.keys import TokenIssuer
from identity_server.registry import Registry

logger = logging.getLogger(__name__)
router = APIRouter()

INTROSPECTION_PATH = "/connect/introspect"


def _introspect_access_token(issuer: TokenIssuer, token: str) -> dict | None:
    """Verified access token claims, or None. Any published key is accepted (rotation)."""
    try:
        if jwt.get_unverified_header(token).get("typ") != "at+jwt":
            return None
        return issuer.verify(token)
    except jwt.InvalidTokenError:
        return None


@router.post(INTROSPECTION_PATH)
def introspect(
    request: Request,
    token: str | None = Form(None),
    token_type_hint: str | None = Form(None),
    client_id: str | None = Form(None),
    client_secret: str | None = Form(None),
    registry: Registry = Depends(get_registry),
    store: GrantStore = Depends(get_grant_store),
    issuer: TokenIssuer = Depends(get_issuer),
    audit: AuditLogger = Depends(get_audit),
):
    """
    RFC 7662: whether the token is active, and its claims when it is.
    """
    client = authenticate_client(registry, request, client_id, client_secret)
    if not token or not token.strip():
        raise OAuthError(INVALID_REQUEST, "token is required")

    hint = (token_type_hint or "").strip().lower()
    token_value = token.strip()
    result = {"active": False}

    if hint in ("", "access_token"):
        payload = _introspect_access_token(issuer, token_value)
        if payload:
            result = {
                "active": True,
                "token_type": "access_token",
                "scope": payload.get("scope", ""),
                "client_id": payload.get("client_id"),
                "sub": payload.get("sub"),
                "exp": payload.get("exp"),
                "iat": payload.get("iat"),
                "nbf": payload.get("nbf"),
                "iss": payload.get("iss"),
                "aud": payload.get("aud"),
                "jti": payload.get("jti"),
            }
            result = {k: v for k, v in result.items() if v is not None}

    if not result["active"] and hint in ("", "refresh_token"):
        rt = store.find_refresh_token(token_value)
        # Refresh tokens are only disclosed to the client they were issued to
        if rt and not rt.consumed and rt.client_id == client.client_id and rt.expires_at > datetime.now(timezone.utc):
            result = {
                "active": True,
                "token_type": "refresh_token",
                "scope": " ".join(rt.scopes),
                "client_id": rt.client_id,
                "sub": rt.subject_id,
                "exp": int(rt.expires_at.timestamp()),
                "iat": int(rt.issued_at.timestamp()),
            }

    audit.record(
        EVENT_INTROSPECT,
        client_id=client.client_id,
        ip=get_client_ip(request),
        detail="active" if result["active"] else "inactive",
    )
    return JSONResponse(result, headers=NO_STORE_HEADERS)
