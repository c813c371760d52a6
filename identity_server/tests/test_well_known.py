"""
Tests for discovery and JWKS.
"""
from datetime import datetime, timezone

import jwt
from fastapi.testclient import TestClient

from identity_server.config import ISSUER
from identity_server.keys import TokenIssuer, generate_key, key_thumbprint
from identity_server.main import create_app


def test_openid_configuration(client, registry):
    r = client.get("/.well-known/openid-configuration")
    assert r.status_code == 200
    data = r.json()
    assert data["issuer"] == ISSUER
    assert data["authorization_endpoint"] == f"{ISSUER}/connect/authorize"
    assert data["token_endpoint"] == f"{ISSUER}/connect/token"
    assert data["jwks_uri"] == f"{ISSUER}/.well-known/openid-configuration/jwks"
    assert data["end_session_endpoint"] == f"{ISSUER}/connect/endsession"
    assert data["revocation_endpoint"] == f"{ISSUER}/connect/revocation"
    assert data["introspection_endpoint"] == f"{ISSUER}/connect/introspect"
    assert data["response_types_supported"] == ["code"]
    assert data["response_modes_supported"] == ["query"]
    assert data["code_challenge_methods_supported"] == ["S256"]
    assert data["id_token_signing_alg_values_supported"] == ["RS256"]
    assert data["grant_types_supported"] == ["authorization_code", "client_credentials", "refresh_token"]
    assert {"openid", "profile", "email", "roles", "api1", "weatherapi", "offline_access"} <= set(
        data["scopes_supported"]
    )
    assert {"sub", "email", "name", "role"} <= set(data["claims_supported"])
    assert "client_secret_basic" in data["token_endpoint_auth_methods_supported"]
    assert "userinfo_endpoint" not in data


def test_jwks(client, issuer):
    r = client.get("/.well-known/openid-configuration/jwks")
    assert r.status_code == 200
    keys = r.json()["keys"]
    assert [k["kid"] for k in keys] == [issuer.active_kid]
    assert keys[0]["kty"] == "RSA"
    assert "d" not in keys[0]


def test_jwks_follows_rotation(registry, users):
    issuer = TokenIssuer(ISSUER, generate_key())
    app = create_app(registry=registry, database_url="sqlite:///:memory:", verifier=users, issuer=issuer)
    client = TestClient(app)
    old_kid = issuer.active_kid
    new_key = generate_key()
    issuer.rotate(new_key, datetime.now(timezone.utc), retain_seconds=3600)

    kids = [k["kid"] for k in client.get("/.well-known/openid-configuration/jwks").json()["keys"]]
    assert kids == [key_thumbprint(new_key.public_key()), old_kid]

    # A token signed after rotation names the new kid
    r = client.post("/connect/token", data={"grant_type": "client_credentials"}, auth=("test-client", "secret"))
    assert r.status_code == 200
    assert jwt.get_unverified_header(r.json()["access_token"])["kid"] == kids[0]


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok", "service": "identity_server"}
