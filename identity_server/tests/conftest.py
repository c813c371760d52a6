"""
Pytest configuration for identity_server. Env is set before the package is imported:
in-memory SQLite, a throwaway signing key, cheap bcrypt and no rate limits.
Each test gets a fresh app (and so a fresh grant store); keys, registry and users are shared.
"""
import hashlib
import os
import re
import secrets
import tempfile
from base64 import urlsafe_b64encode
from urllib.parse import parse_qs, urlsplit

import pytest

_tmp = tempfile.mkdtemp(prefix="idp-tests-")
os.environ["IDP_DATABASE_URL"] = "sqlite:///:memory:"
os.environ["IDP_SIGNING_KEY_PATH"] = os.path.join(_tmp, "signing_key.pem")
os.environ["IDP_BCRYPT_ROUNDS"] = "4"
os.environ["IDP_RATE_LIMIT_LOGIN_PER_MINUTE"] = "0"
os.environ["IDP_RATE_LIMIT_TOKEN_PER_MINUTE"] = "0"
# TestClient talks plain http to testserver
os.environ["IDP_SECURE_COOKIES"] = "false"
for name in ("IDP_USER_VERIFIER_URL", "IDP_CLIENTS_FILE", "IDP_ALLOW_PKCE_OPTIONAL", "IDP_SIGNING_KEY_PREVIOUS_PATH"):
    os.environ.pop(name, None)

from fastapi.testclient import TestClient  # noqa: E402

from identity_server.config import ISSUER  # noqa: E402
from identity_server.keys import TokenIssuer, generate_key  # noqa: E402
from identity_server.seed import build_registry  # noqa: E402
from identity_server.users import DEFAULT_DEV_USERS, InMemoryUserStore  # noqa: E402

WEB_REDIRECT = "https://localhost:5002/signin-oidc"
JS_REDIRECT = "https://localhost:5004/callback.html"


def make_pkce() -> tuple[str, str]:
    verifier = secrets.token_urlsafe(32)
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    challenge = urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return verifier, challenge


def query_of(location: str) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlsplit(location).query).items()}


def antiforgery_token(client, return_url: str = "") -> str:
    """GET the login form (setting the anti-forgery cookie) and return its hidden field value."""
    params = {"returnUrl": return_url} if return_url else None
    r = client.get("/account/login", params=params)
    assert r.status_code == 200
    match = re.search(r'name="antiforgery_token" value="([^"]+)"', r.text)
    assert match, r.text
    return match.group(1)


@pytest.fixture(scope="session")
def registry():
    return build_registry(bcrypt_rounds=4)


@pytest.fixture(scope="session")
def issuer():
    return TokenIssuer(ISSUER, generate_key())


@pytest.fixture(scope="session")
def users():
    return InMemoryUserStore.from_config(DEFAULT_DEV_USERS, bcrypt_rounds=4)


@pytest.fixture
def app(registry, issuer, users):
    from identity_server.main import create_app

    return create_app(registry=registry, database_url="sqlite:///:memory:", verifier=users, issuer=issuer)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def post_login(client):
    """Submit the login form the way a browser does: GET it first, then POST with its anti-forgery field."""

    def _post(username: str = "testuser", password: str = "password", return_url: str = ""):
        data = {
            "username": username,
            "password": password,
            "returnUrl": return_url,
            "antiforgery_token": antiforgery_token(client),
        }
        return client.post("/account/login", data=data, follow_redirects=False)

    return _post


@pytest.fixture
def login(post_login):
    """Log testuser in; the session cookie stays on the TestClient."""

    def _login(username: str = "testuser", password: str = "password"):
        r = post_login(username, password)
        assert r.status_code == 302
        return r

    return _login


@pytest.fixture
def authorize_code(client, login):
    """Run the authorization request as a logged-in user; return (code, code_verifier)."""

    def _authorize(
        client_id: str = "web",
        redirect_uri: str = WEB_REDIRECT,
        scope: str = "openid profile email api1",
        nonce: str | None = "nonce-123",
        state: str = "state-abc",
    ) -> tuple[str, str]:
        login()
        verifier, challenge = make_pkce()
        params = {
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": scope,
            "state": state,
            "code_challenge": challenge,
            "code_challenge_method": "S256",
        }
        if nonce:
            params["nonce"] = nonce
        r = client.get("/connect/authorize", params=params, follow_redirects=False)
        assert r.status_code == 302, r.text
        q = query_of(r.headers["location"])
        assert q["state"] == state
        return q["code"], verifier

    return _authorize


@pytest.fixture
def exchange_code(client):
    """POST the authorization_code grant for the web client."""

    def _exchange(code: str, verifier: str | None, redirect_uri: str = WEB_REDIRECT, auth=("web", "secret")):
        data = {"grant_type": "authorization_code", "code": code, "redirect_uri": redirect_uri}
        if verifier is not None:
            data["code_verifier"] = verifier
        return client.post("/connect/token", data=data, auth=auth)

    return _exchange
