"""
Tests for CORS on the token, revocation and discovery endpoints.
"""
import pytest

JS_ORIGIN = "https://localhost:5004"


def _preflight(client, path, origin=JS_ORIGIN, method="POST"):
    return client.options(
        path,
        headers={
            "Origin": origin,
            "Access-Control-Request-Method": method,
            "Access-Control-Request-Headers": "content-type",
        },
    )


@pytest.mark.parametrize("path", ["/connect/token", "/connect/revocation", "/.well-known/openid-configuration"])
def test_preflight_from_registered_origin(client, path):
    r = _preflight(client, path, method="GET" if path.startswith("/.well-known") else "POST")
    assert r.status_code == 200
    assert r.headers["access-control-allow-origin"] == JS_ORIGIN
    assert "POST" in r.headers["access-control-allow-methods"]


def test_preflight_from_unknown_origin(client):
    r = _preflight(client, "/connect/token", origin="https://evil.example")
    assert r.status_code == 400
    assert "access-control-allow-origin" not in r.headers


def test_token_response_carries_cors_header(client):
    r = client.post(
        "/connect/token",
        data={"grant_type": "client_credentials"},
        auth=("test-client", "secret"),
        headers={"Origin": JS_ORIGIN},
    )
    assert r.status_code == 200
    assert r.headers["access-control-allow-origin"] == JS_ORIGIN


def test_jwks_carries_cors_header(client):
    r = client.get("/.well-known/openid-configuration/jwks", headers={"Origin": JS_ORIGIN})
    assert r.status_code == 200
    assert r.headers["access-control-allow-origin"] == JS_ORIGIN


def test_login_and_admin_have_no_cors(client):
    r = _preflight(client, "/account/login")
    assert "access-control-allow-origin" not in r.headers
    r = client.get("/account/login", headers={"Origin": JS_ORIGIN})
    assert "access-control-allow-origin" not in r.headers
    r = client.get("/admin/clients", headers={"Origin": JS_ORIGIN})
    assert "access-control-allow-origin" not in r.headers
