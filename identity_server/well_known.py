"""
Well-known endpoints: OpenID Connect discovery and the JSON Web Key Set.
Both are computed per request from the registry and the current key set.
"""
from fastapi import APIRouter, Depends

from identity_server.authorize import AUTHORIZE_PATH
from identity_server.dependencies import get_issuer, get_registry
from identity_server.endsession import END_SESSION_PATH
from identity_server.introspect import INTROSPECTION_PATH
from identity_server.keys import ALGORITHM, TokenIssuer
from identity_server.registry import Registry
from identity_server.revoke import REVOCATION_PATH
from identity_server.token_endpoint import TOKEN_PATH

router = APIRouter()

DISCOVERY_PATH = "/.well-known/openid-configuration"
JWKS_PATH = f"{DISCOVERY_PATH}/jwks"


def discovery_document(registry: Registry, issuer: str) -> dict:
    return {
        "issuer": issuer,
        "authorization_endpoint": f"{issuer}{AUTHORIZE_PATH}",
        "token_endpoint": f"{issuer}{TOKEN_PATH}",
        "jwks_uri": f"{issuer}{JWKS_PATH}",
        "end_session_endpoint": f"{issuer}{END_SESSION_PATH}",
        "revocation_endpoint": f"{issuer}{REVOCATION_PATH}",
        "introspection_endpoint": f"{issuer}{INTROSPECTION_PATH}",
        "scopes_supported": registry.resources.scopes_supported(),
        "claims_supported": registry.resources.claims_supported(),
        "grant_types_supported": list(registry.grant_types),
        "response_types_supported": ["code"],
        "response_modes_supported": ["query"],
        "subject_types_supported": ["public"],
        "id_token_signing_alg_values_supported": [ALGORITHM],
        "code_challenge_methods_supported": ["S256"],
        "token_endpoint_auth_methods_supported": ["client_secret_basic", "client_secret_post"],
        "frontchannel_logout_supported": False,
        "request_parameter_supported": False,
    }


@router.get(DISCOVERY_PATH)
def openid_configuration(
    registry: Registry = Depends(get_registry),
    issuer: TokenIssuer = Depends(get_issuer),
):
    """OpenID Connect discovery document."""
    return discovery_document(registry, issuer.issuer)


@router.get(JWKS_PATH)
def jwks(issuer: TokenIssuer = Depends(get_issuer)):
    """JSON Web Key Set for token signature verification."""
    return issuer.public_keys()
