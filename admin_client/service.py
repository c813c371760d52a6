"""
Read-only view of the identity server for the admin UI.
Discovery and JWKS are public; clients and scopes come from the registry API, called with a
client_credentials access token for the adminui scope.
"""
import logging
import time
from dataclasses import dataclass, field

import httpx

from admin_client.config import CLIENT_ID, CLIENT_SECRET, IDP_BASE_URL, REQUEST_TIMEOUT_SECONDS, SCOPE, VERIFY_TLS

logger = logging.getLogger(__name__)

# Refresh the access token this many seconds before it expires
_TOKEN_EXPIRY_MARGIN = 30


class AdminServiceError(Exception):
    """The identity server could not be reached or refused the request."""


@dataclass(frozen=True)
class ClientInfo:
    client_id: str
    client_name: str = ""
    allowed_grant_types: list[str] = field(default_factory=list)
    allowed_scopes: list[str] = field(default_factory=list)
    redirect_uris: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ApiScopeInfo:
    name: str
    display_name: str = ""
    description: str = ""


@dataclass(frozen=True)
class IdentityResourceInfo:
    name: str
    display_name: str = ""
    description: str = ""
    claims: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class DiscoveryInfo:
    issuer: str
    authorization_endpoint: str = ""
    token_endpoint: str = ""
    jwks_uri: str = ""
    end_session_endpoint: str = ""
    scopes_supported: list[str] = field(default_factory=list)
    response_types_supported: list[str] = field(default_factory=list)
    grant_types_supported: list[str] = field(default_factory=list)


class IdentityServerAdminService:
    def __init__(
        self,
        base_url: str = IDP_BASE_URL,
        client_id: str = CLIENT_ID,
        client_secret: str = CLIENT_SECRET,
        scope: str = SCOPE,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._client_id = client_id
        self._client_secret = client_secret
        self._scope = scope
        self._http = httpx.Client(
            base_url=self._base_url,
            timeout=timeout,
            verify=VERIFY_TLS,
            transport=transport,
            headers={"Accept": "application/json"},
        )
        self._access_token: str | None = None
        self._token_expires_at = 0.0

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "IdentityServerAdminService":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def get_discovery_info(self) -> DiscoveryInfo | None:
        """Discovery document, or None when the identity server is unreachable."""
        try:
            r = self._http.get("/.well-known/openid-configuration")
            r.raise_for_status()
            data = r.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Discovery document unavailable at %s: %s", self._base_url, e)
            return None
        return DiscoveryInfo(
            issuer=data.get("issuer", ""),
            authorization_endpoint=data.get("authorization_endpoint", ""),
            token_endpoint=data.get("token_endpoint", ""),
            jwks_uri=data.get("jwks_uri", ""),
            end_session_endpoint=data.get("end_session_endpoint", ""),
            scopes_supported=list(data.get("scopes_supported", [])),
            response_types_supported=list(data.get("response_types_supported", [])),
            grant_types_supported=list(data.get("grant_types_supported", [])),
        )

    def get_jwks(self) -> dict:
        try:
            r = self._http.get("/.well-known/openid-configuration/jwks")
            r.raise_for_status()
            return r.json()
        except httpx.HTTPError as e:
            raise AdminServiceError(f"JWKS unavailable: {e}") from e

    def get_clients(self) -> list[ClientInfo]:
        return [
            ClientInfo(
                client_id=c["client_id"],
                client_name=c.get("client_name", ""),
                allowed_grant_types=list(c.get("allowed_grant_types", [])),
                allowed_scopes=list(c.get("allowed_scopes", [])),
                redirect_uris=list(c.get("redirect_uris", [])),
            )
            for c in self._get_admin("/admin/clients")
        ]

    def get_api_scopes(self) -> list[ApiScopeInfo]:
        scopes = self._get_admin("/admin/scopes")
        return [
            ApiScopeInfo(name=s["name"], display_name=s.get("display_name", ""), description=s.get("description", ""))
            for s in scopes.get("api_scopes", [])
        ]

    def get_identity_resources(self) -> list[IdentityResourceInfo]:
        scopes = self._get_admin("/admin/scopes")
        return [
            IdentityResourceInfo(
                name=s["name"],
                display_name=s.get("display_name", ""),
                description=s.get("description", ""),
                claims=list(s.get("claims", [])),
            )
            for s in scopes.get("identity_resources", [])
        ]

    def get_overview(self) -> dict:
        """Counts and connection status for the dashboard."""
        discovery = self.get_discovery_info()
        if discovery is None:
            return {"status": "Disconnected", "discovery": None}
        return {
            "status": "Connected",
            "discovery": discovery,
            "client_count": len(self.get_clients()),
            "api_scope_count": len(self.get_api_scopes()),
            "identity_resource_count": len(self.get_identity_resources()),
        }

    def _get_access_token(self) -> str:
        if self._access_token and time.monotonic() < self._token_expires_at:
            return self._access_token
        try:
            r = self._http.post(
                "/connect/token",
                data={"grant_type": "client_credentials", "scope": self._scope},
                auth=(self._client_id, self._client_secret),
            )
        except httpx.HTTPError as e:
            raise AdminServiceError(f"Token request failed: {e}") from e
        if r.status_code != 200:
            try:
                error = r.json().get("error", r.status_code)
            except ValueError:
                error = r.status_code
            raise AdminServiceError(f"Token request rejected: {error}")
        data = r.json()
        self._access_token = data["access_token"]
        lifetime = int(data.get("expires_in", 0))
        self._token_expires_at = time.monotonic() + max(0, lifetime - _TOKEN_EXPIRY_MARGIN)
        return self._access_token

    def _get_admin(self, path: str):
        token = self._get_access_token()
        try:
            r = self._http.get(path, headers={"Authorization": f"Bearer {token}"})
            if r.status_code == 401:
                # Token may have been issued under a key that is gone; retry once
                self._access_token = None
                token = self._get_access_token()
                r = self._http.get(path, headers={"Authorization": f"Bearer {token}"})
            r.raise_for_status()
            return r.json()
        except httpx.HTTPError as e:
            raise AdminServiceError(f"GET {path} failed: {e}") from e
