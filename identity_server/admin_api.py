"""
Read-only registry API for the admin UI. Requires a Bearer access token issued by this server
with the adminui scope. Secret material is never returned.
"""
import logging
from typing import Annotated

import jwt
from fastapi import APIRouter, Depends, Query
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from identity_server.audit import MAX_AUDIT_LIMIT, AuditLogger
from identity_server.config import ADMIN_SCOPE
from identity_server.dependencies import get_audit, get_issuer, get_registry
from identity_server.errors import INSUFFICIENT_SCOPE, INVALID_TOKEN, OAuthError
from identity_server.keys import TokenIssuer
from identity_server.registry import Client, Registry, Scope

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/admin")

security = HTTPBearer(auto_error=False)


def _bearer_error(error: str, description: str, status_code: int) -> OAuthError:
    return OAuthError(
        error,
        description,
        status_code=status_code,
        headers={"WWW-Authenticate": f'Bearer error="{error}"'},
    )


def get_claims(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
    issuer: Annotated[TokenIssuer, Depends(get_issuer)],
) -> dict:
    """Valid Bearer access token -> decoded claims. 401 invalid_token otherwise."""
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise _bearer_error(INVALID_TOKEN, "Bearer access token required", 401)
    token = credentials.credentials
    try:
        if jwt.get_unverified_header(token).get("typ") != "at+jwt":
            raise _bearer_error(INVALID_TOKEN, "Not an access token", 401)
        return issuer.verify(token)
    except jwt.ExpiredSignatureError:
        raise _bearer_error(INVALID_TOKEN, "Token expired", 401)
    except jwt.InvalidTokenError as e:
        logger.debug("Access token verification failed: %s", e)
        raise _bearer_error(INVALID_TOKEN, "Token verification failed", 401)


def require_scope(required: str):
    """Dependency factory: require the given scope in the access token."""

    def _check(claims: Annotated[dict, Depends(get_claims)]) -> dict:
        if required not in str(claims.get("scope", "")).split():
            raise _bearer_error(INSUFFICIENT_SCOPE, f"Scope '{required}' required", 403)
        return claims

    return Depends(_check)


RequireAdmin = require_scope(ADMIN_SCOPE)


def _client_view(client: Client) -> dict:
    return {
        "client_id": client.client_id,
        "client_name": client.client_name,
        "confidential": client.is_confidential,
        "allowed_grant_types": sorted(g.value for g in client.allowed_grant_types),
        "redirect_uris": sorted(client.redirect_uris),
        "post_logout_redirect_uris": sorted(client.post_logout_redirect_uris),
        "allowed_scopes": sorted(client.allowed_scopes),
        "require_pkce": client.require_pkce,
        "allow_offline_access": client.allow_offline_access,
        "access_token_lifetime": client.access_token_ttl,
        "refresh_token_lifetime": client.refresh_token_ttl,
        "refresh_token_usage": client.refresh_token_usage.value,
        "absolute_refresh_token_lifetime": client.absolute_refresh_token_ttl,
        "sliding_refresh_token": client.sliding_refresh_token,
        "allowed_cors_origins": sorted(client.allowed_cors_origins),
    }


def _scope_view(scope: Scope) -> dict:
    view = {
        "name": scope.name,
        "display_name": scope.display_name,
        "description": scope.description,
    }
    if scope.claims:
        view["claims"] = list(scope.claims)
    return view


@router.get("/clients")
def list_clients(registry: Registry = Depends(get_registry), _claims: dict = RequireAdmin):
    return [_client_view(c) for c in registry.clients.clients()]


@router.get("/scopes")
def list_scopes(registry: Registry = Depends(get_registry), _claims: dict = RequireAdmin):
    """API scopes and identity resources."""
    return {
        "api_scopes": [_scope_view(s) for s in registry.resources.api_scopes()],
        "identity_resources": [_scope_view(s) for s in registry.resources.identity_scopes()],
    }


@router.get("/resources")
def list_resources(registry: Registry = Depends(get_registry), _claims: dict = RequireAdmin):
    return [
        {"name": r.name, "display_name": r.display_name, "scopes": sorted(r.scopes)}
        for r in registry.resources.api_resources()
    ]


@router.get("/events")
def list_events(
    limit: int = Query(100, ge=1, le=MAX_AUDIT_LIMIT),
    event_type: str | None = None,
    outcome: str | None = None,
    client_id: str | None = None,
    audit: AuditLogger = Depends(get_audit),
    _claims: dict = RequireAdmin,
):
    """Recent audit events, most recent first."""
    return audit.query(limit=limit, event_type=event_type, outcome=outcome, client_id=client_id)
