"""
Built-in clients, identity resources and API scopes, and the registry built from them.
Client secrets can be overridden from env; IDP_CLIENTS_FILE replaces the client list entirely.
"""
import json
import logging
import os
from pathlib import Path

from identity_server import config
from identity_server.registry import (
    ApiResource,
    Client,
    GrantType,
    OFFLINE_ACCESS,
    RefreshTokenUsage,
    Registry,
    Scope,
    ScopeKind,
    hash_secret,
)

logger = logging.getLogger(__name__)

IDENTITY_RESOURCES = [
    Scope("openid", "Your user identifier", ScopeKind.IDENTITY, claims=("sub",)),
    Scope(
        "profile",
        "User profile",
        ScopeKind.IDENTITY,
        description="Your user profile information (first name, last name, etc.)",
        claims=("name", "given_name", "family_name", "preferred_username"),
    ),
    Scope("email", "Your email address", ScopeKind.IDENTITY, claims=("email", "email_verified")),
    Scope("roles", "User roles", ScopeKind.IDENTITY, claims=("role",)),
]

API_SCOPES = [
    Scope("api1", "My API #1", ScopeKind.API, description="Access to the main API"),
    Scope("api2", "My API #2", ScopeKind.API),
    Scope("weatherapi", "Weather API", ScopeKind.API),
    Scope("adminui", "Admin UI API", ScopeKind.API, description="Read-only access to the registry API"),
    Scope("amlink-maintenance-api", "AM Link Maintenance API", ScopeKind.API),
    Scope("amlink-submission-api", "AM Link Submission API", ScopeKind.API),
    Scope("amlink-policy-api", "AM Link Policy API", ScopeKind.API),
    Scope("amlink-doc-api", "AM Link Document API", ScopeKind.API),
    Scope("amwins-graphadapter-api", "AM Wins Graph Adapter API", ScopeKind.API),
]

API_RESOURCES = [
    ApiResource("api1", "My API #1", frozenset({"api1"})),
    ApiResource("api2", "My API #2", frozenset({"api2"})),
    ApiResource("weatherapi", "Weather API", frozenset({"weatherapi"})),
    ApiResource("adminui", "Admin UI API", frozenset({"adminui"})),
]

# Plain dicts so the same shape can come from IDP_CLIENTS_FILE. "secret_env" names an
# env var that overrides the development secret.
DEFAULT_CLIENTS = [
    {
        "client_id": "test-client",
        "client_name": "Test Client (Machine to Machine)",
        "secret": "secret",
        "secret_env": "IDP_TEST_CLIENT_SECRET",
        "grant_types": ["client_credentials"],
        "scopes": ["api1"],
    },
    {
        "client_id": "m2m",
        "client_name": "Machine to Machine Client",
        "secret": "m2m_secret",
        "secret_env": "IDP_M2M_CLIENT_SECRET",
        "grant_types": ["client_credentials"],
        "scopes": ["api1", "api2", "weatherapi"],
    },
    {
        "client_id": "admin-monitor",
        "client_name": "Admin UI registry reader",
        "secret": "admin-monitor-secret",
        "secret_env": "IDP_ADMIN_MONITOR_SECRET",
        "grant_types": ["client_credentials"],
        "scopes": ["adminui"],
    },
    {
        "client_id": "web",
        "client_name": "Interactive Web App",
        "secret": "secret",
        "secret_env": "IDP_WEB_CLIENT_SECRET",
        "grant_types": ["authorization_code"],
        "redirect_uris": ["https://localhost:5002/signin-oidc"],
        "post_logout_redirect_uris": ["https://localhost:5002/signout-callback-oidc"],
        "scopes": ["openid", "profile", "email", "roles", "api1"],
        "allow_offline_access": True,
    },
    {
        "client_id": "adminui",
        "client_name": "Admin UI",
        "secret": "adminui_secret",
        "secret_env": "IDP_ADMINUI_CLIENT_SECRET",
        "grant_types": ["authorization_code"],
        "redirect_uris": ["https://localhost:5003/signin-oidc"],
        "post_logout_redirect_uris": ["https://localhost:5003/signout-callback-oidc"],
        "scopes": ["openid", "profile", "email", "roles", "adminui"],
        "allow_offline_access": True,
    },
    {
        "client_id": "js",
        "client_name": "JavaScript Client",
        "grant_types": ["authorization_code"],
        "redirect_uris": ["https://localhost:5004/callback.html"],
        "post_logout_redirect_uris": ["https://localhost:5004/index.html"],
        "allowed_cors_origins": ["https://localhost:5004"],
        "scopes": ["openid", "profile", "api1"],
    },
    {
        "client_id": "doc-mgmt-client",
        "client_name": "Document Management System",
        "secret": "doc-mgmt-secret",
        "secret_env": "IDP_DOC_MGMT_CLIENT_SECRET",
        "grant_types": ["authorization_code", "client_credentials"],
        "redirect_uris": ["http://localhost:1180/callback"],
        "post_logout_redirect_uris": ["http://localhost:1180/logout"],
        "scopes": [
            "openid",
            "profile",
            "amlink-maintenance-api",
            "amlink-submission-api",
            "amlink-policy-api",
            "amlink-doc-api",
            "amwins-graphadapter-api",
        ],
        "allow_offline_access": True,
        # Development relaxation; only honoured with IDP_ALLOW_PKCE_OPTIONAL
        "require_pkce": False,
        "access_token_ttl": 3600,
        "refresh_token_usage": "reuse",
        "sliding_refresh_token": True,
        "refresh_token_ttl": 1296000,
        "absolute_refresh_token_ttl": 2592000,
    },
]


def client_from_config(
    data: dict,
    *,
    bcrypt_rounds: int = config.BCRYPT_ROUNDS,
    allow_pkce_optional: bool = config.ALLOW_PKCE_OPTIONAL,
) -> Client:
    """Build an immutable Client from a config dict, hashing its secret."""
    client_id = data["client_id"]
    secret = data.get("secret")
    if data.get("secret_env"):
        secret = os.environ.get(data["secret_env"], secret)

    grant_types = {GrantType(g) for g in data.get("grant_types", [])}
    allow_offline = bool(data.get("allow_offline_access", False))
    if allow_offline:
        grant_types.add(GrantType.REFRESH_TOKEN)

    scopes = set(data.get("scopes", []))
    scopes.discard(OFFLINE_ACCESS)

    require_pkce = bool(data.get("require_pkce", True))
    if not require_pkce and not allow_pkce_optional:
        logger.warning(
            "Client %s asks for require_pkce=false; ignored (set IDP_ALLOW_PKCE_OPTIONAL=true for development)",
            client_id,
        )
        require_pkce = True
    elif not require_pkce:
        logger.warning("PKCE is optional for client %s (development only)", client_id)

    return Client(
        client_id=client_id,
        client_name=data.get("client_name", ""),
        client_secret_hash=hash_secret(secret, bcrypt_rounds) if secret else None,
        allowed_grant_types=frozenset(grant_types),
        redirect_uris=frozenset(data.get("redirect_uris", [])),
        post_logout_redirect_uris=frozenset(data.get("post_logout_redirect_uris", [])),
        allowed_scopes=frozenset(scopes),
        require_pkce=require_pkce,
        access_token_ttl=int(data.get("access_token_ttl", 3600)),
        refresh_token_ttl=int(data.get("refresh_token_ttl", 2592000)),
        refresh_token_usage=RefreshTokenUsage(data.get("refresh_token_usage", RefreshTokenUsage.ONE_TIME.value)),
        absolute_refresh_token_ttl=int(data.get("absolute_refresh_token_ttl", 2592000)),
        sliding_refresh_token=bool(data.get("sliding_refresh_token", False)),
        allow_offline_access=allow_offline,
        allowed_cors_origins=frozenset(o.rstrip("/") for o in data.get("allowed_cors_origins", [])),
    )


def load_client_configs(path: str | None = config.CLIENTS_FILE) -> list[dict]:
    """Client dicts from IDP_CLIENTS_FILE when set, else the built-in list."""
    if not path:
        return DEFAULT_CLIENTS
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a JSON list of clients")
    logger.info("Loaded %d client definitions from %s", len(data), path)
    return data


def build_registry(client_configs: list[dict] | None = None, **client_options) -> Registry:
    configs = load_client_configs() if client_configs is None else client_configs
    clients = [client_from_config(c, **client_options) for c in configs]
    return Registry.build(clients, IDENTITY_RESOURCES + API_SCOPES, API_RESOURCES)
