"""
Token revocation endpoint (POST /connect/revocation). RFC 7009.
Refresh tokens are revoked in the grant store; access tokens are stateless JWTs and expire on their own.
"""
import logging

from fastapi import APIRouter, Depends, Form, Request
from fastapi.responses import Response

from identity_server.audit import EVENT_TOKEN_REVOKED, AuditLogger, get_client_ip
from identity_server.client_auth import authenticate_client
from identity_server.dependencies import get_audit, get_grant_store, get_registry
from identity_server.errors import INVALID_REQUEST, NO_STORE_HEADERS, OAuthError
from identity_server.grant_store import GrantStore
from identity_server.registry import Registry

logger = logging.getLogger(__name__)
router = APIRouter()

REVOCATION_PATH = "/connect/revocation"


@router.post(REVOCATION_PATH)
def revoke(
    request: Request,
    token: str | None = Form(None),
    token_type_hint: str | None = Form(None),
    client_id: str | None = Form(None),
    client_secret: str | None = Form(None),
    registry: Registry = Depends(get_registry),
    store: GrantStore = Depends(get_grant_store),
    audit: AuditLogger = Depends(get_audit),
):
    """
    Revoke a refresh token owned by the authenticated client. RFC 7009: 200 for unknown tokens
    and for tokens of other clients, so nothing leaks about which tokens exist.
    """
    client = authenticate_client(registry, request, client_id, client_secret)
    if not token or not token.strip():
        raise OAuthError(INVALID_REQUEST, "token is required")

    hint = (token_type_hint or "").strip().lower()
    if hint in ("", "refresh_token") and store.revoke_refresh_token(token.strip(), client.client_id):
        audit.record(EVENT_TOKEN_REVOKED, client_id=client.client_id, ip=get_client_ip(request))
        logger.debug("Revoked refresh token for client %s", client.client_id)

    return Response(status_code=200, headers=NO_STORE_HEADERS)
