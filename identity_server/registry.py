"""
Client and resource registries. Built once at startup from seed.py and read-only afterwards.
Components receive the Registry through app.state; there is no module-level lookup.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Iterable

import bcrypt

logger = logging.getLogger(__name__)

OPENID = "openid"
OFFLINE_ACCESS = "offline_access"


class GrantType(str, Enum):
    AUTHORIZATION_CODE = "authorization_code"
    CLIENT_CREDENTIALS = "client_credentials"
    REFRESH_TOKEN = "refresh_token"


class RefreshTokenUsage(str, Enum):
    ONE_TIME = "one_time"
    REUSE = "reuse"


class ScopeKind(str, Enum):
    IDENTITY = "identity"
    API = "api"


@dataclass(frozen=True)
class Scope:
    name: str
    display_name: str
    kind: ScopeKind
    description: str = ""
    # User claims released in the ID token when this identity scope is granted
    claims: tuple[str, ...] = ()


@dataclass(frozen=True)
class ApiResource:
    name: str
    display_name: str
    scopes: frozenset[str] = frozenset()


@dataclass(frozen=True)
class Client:
    client_id: str
    client_name: str = ""
    client_secret_hash: str | None = None
    allowed_grant_types: frozenset[GrantType] = frozenset()
    redirect_uris: frozenset[str] = frozenset()
    post_logout_redirect_uris: frozenset[str] = frozenset()
    allowed_scopes: frozenset[str] = frozenset()
    require_pkce: bool = True
    access_token_ttl: int = 3600
    refresh_token_ttl: int = 2592000
    # Hard ceiling for sliding refresh tokens, counted from the first token in the chain
    absolute_refresh_token_ttl: int = 2592000
    refresh_token_usage: RefreshTokenUsage = RefreshTokenUsage.ONE_TIME
    sliding_refresh_token: bool = False
    allow_offline_access: bool = False
    # Browser origins allowed to call the token, revocation and discovery endpoints
    allowed_cors_origins: frozenset[str] = frozenset()

    @property
    def is_confidential(self) -> bool:
        return bool(self.client_secret_hash)

    def allows_grant(self, grant_type: GrantType) -> bool:
        if grant_type is GrantType.REFRESH_TOKEN:
            return self.allow_offline_access
        return grant_type in self.allowed_grant_types

    def redirect_uri_allowed(self, uri: str) -> bool:
        # Exact string match only
        return uri in self.redirect_uris

    def post_logout_redirect_uri_allowed(self, uri: str) -> bool:
        return uri in self.post_logout_redirect_uris


def hash_secret(secret: str, rounds: int = 12) -> str:
    # bcrypt has a 72-byte limit
    raw = secret.encode("utf-8")[:72]
    return bcrypt.hashpw(raw, bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def check_secret(plain: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(plain.encode("utf-8")[:72], hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        return False


def parse_scope(scope: str | None) -> list[str]:
    """Split a space-delimited scope string into unique names, preserving order."""
    seen: list[str] = []
    for s in (scope or "").split():
        if s not in seen:
            seen.append(s)
    return seen


class ClientRegistry:
    def __init__(self, clients: Iterable[Client]):
        by_id: dict[str, Client] = {}
        for client in clients:
            if client.client_id in by_id:
                raise ValueError(f"Duplicate client_id: {client.client_id}")
            by_id[client.client_id] = client
        self._clients = MappingProxyType(by_id)

    def lookup_client(self, client_id: str | None) -> Client | None:
        if not client_id:
            return None
        return self._clients.get(client_id)

    def validate_secret(self, client: Client, provided: str | None) -> bool:
        """bcrypt comparison is constant-time. Public clients have no secret to validate."""
        if not client.is_confidential or not provided:
            return False
        return check_secret(provided, client.client_secret_hash)

    def is_scope_allowed(self, client: Client, scope: str) -> bool:
        if scope == OFFLINE_ACCESS:
            return client.allow_offline_access
        return scope in client.allowed_scopes

    def clients(self) -> list[Client]:
        return list(self._clients.values())

    def cors_origins(self) -> list[str]:
        """Union of every client's allowed CORS origins."""
        return sorted({o for c in self._clients.values() for o in c.allowed_cors_origins})


class ResourceRegistry:
    def __init__(self, scopes: Iterable[Scope], api_resources: Iterable[ApiResource] = ()):
        by_name: dict[str, Scope] = {}
        for scope in scopes:
            if scope.name in by_name:
                raise ValueError(f"Duplicate scope: {scope.name}")
            by_name[scope.name] = scope
        self._scopes = MappingProxyType(by_name)
        self._api_resources = tuple(api_resources)

    def find_scope(self, name: str) -> Scope | None:
        return self._scopes.get(name)

    def identity_scopes(self) -> list[Scope]:
        return [s for s in self._scopes.values() if s.kind is ScopeKind.IDENTITY]

    def api_scopes(self) -> list[Scope]:
        return [s for s in self._scopes.values() if s.kind is ScopeKind.API]

    def api_resources(self) -> list[ApiResource]:
        return list(self._api_resources)

    def is_api_scope(self, name: str) -> bool:
        scope = self._scopes.get(name)
        return scope is not None and scope.kind is ScopeKind.API

    def scopes_supported(self, include_offline_access: bool = True) -> list[str]:
        names = list(self._scopes)
        if include_offline_access and OFFLINE_ACCESS not in names:
            names.append(OFFLINE_ACCESS)
        return names

    def claims_supported(self) -> list[str]:
        claims = ["sub"]
        for scope in self.identity_scopes():
            for claim in scope.claims:
                if claim not in claims:
                    claims.append(claim)
        return claims

    def claims_for(self, scopes: Iterable[str]) -> set[str]:
        """User claims released for the granted identity scopes."""
        released: set[str] = set()
        for name in scopes:
            scope = self._scopes.get(name)
            if scope is not None and scope.kind is ScopeKind.IDENTITY:
                released.update(scope.claims)
        return released

    def audiences_for(self, scopes: Iterable[str]) -> list[str]:
        """Names of API resources that own at least one of the granted scopes."""
        granted = set(scopes)
        return sorted(r.name for r in self._api_resources if r.scopes & granted)


@dataclass(frozen=True)
class Registry:
    clients: ClientRegistry
    resources: ResourceRegistry
    # Derived once for discovery
    grant_types: tuple[str, ...] = field(default=())

    @classmethod
    def build(cls, clients: Iterable[Client], scopes: Iterable[Scope], api_resources: Iterable[ApiResource] = ()) -> "Registry":
        client_registry = ClientRegistry(clients)
        resource_registry = ResourceRegistry(scopes, api_resources)
        for client in client_registry.clients():
            unknown = {
                s for s in client.allowed_scopes
                if s != OFFLINE_ACCESS and resource_registry.find_scope(s) is None
            }
            if unknown:
                raise ValueError(f"Client {client.client_id} allows unknown scope(s): {', '.join(sorted(unknown))}")
        grant_types = {g.value for c in client_registry.clients() for g in c.allowed_grant_types}
        if any(c.allow_offline_access for c in client_registry.clients()):
            grant_types.add(GrantType.REFRESH_TOKEN.value)
        ordered = tuple(g.value for g in GrantType if g.value in grant_types)
        logger.info(
            "Registry loaded: %d clients (%s), %d scopes",
            len(client_registry.clients()),
            ", ".join(c.client_id for c in client_registry.clients()),
            len(resource_registry.scopes_supported(include_offline_access=False)),
        )
        return cls(clients=client_registry, resources=resource_registry, grant_types=ordered)
