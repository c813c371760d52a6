"""
Tests for GET /connect/authorize and the authorization request state machine.
"""
from datetime import datetime, timezone
from urllib.parse import parse_qs, urlsplit

import pytest
from starlette.datastructures import QueryParams

from conftest import JS_REDIRECT, WEB_REDIRECT, antiforgery_token, make_pkce, query_of
from identity_server.authorize import AuthorizationRequest, AuthorizeError, AuthorizeState
from identity_server.models import AuthorizationCode
from identity_server.registry import Client, GrantType, Registry
from identity_server.seed import API_SCOPES, IDENTITY_RESOURCES
from identity_server.session import LoginSession
from identity_server.users import Subject


def _params(**overrides):
    _, challenge = make_pkce()
    params = {
        "client_id": "web",
        "redirect_uri": WEB_REDIRECT,
        "response_type": "code",
        "scope": "openid profile api1",
        "state": "xyz",
        "code_challenge": challenge,
        "code_challenge_method": "S256",
    }
    params.update(overrides)
    return {k: v for k, v in params.items() if v is not None}


def _authorize(client, **overrides):
    return client.get("/connect/authorize", params=_params(**overrides), follow_redirects=False)


def _assert_redirect_error(r, error, redirect_uri=WEB_REDIRECT, state="xyz"):
    assert r.status_code == 302
    location = r.headers["location"]
    assert location.startswith(redirect_uri + "?")
    q = query_of(location)
    assert q["error"] == error
    assert "error_description" in q
    assert q.get("state") == state
    assert "code" not in q


# --- errors shown directly (redirect not trusted) ---


def test_missing_client_id(client):
    r = _authorize(client, client_id=None)
    assert r.status_code == 400
    assert "client_id" in r.text


def test_unknown_client(client):
    r = _authorize(client, client_id="nobody")
    assert r.status_code == 400
    assert "Unknown client" in r.text


def test_missing_redirect_uri(client):
    r = _authorize(client, redirect_uri=None)
    assert r.status_code == 400


def test_evil_redirect_uri_rejected_without_redirect(client, app, login):
    login()
    r = _authorize(client, redirect_uri="https://evil.example/cb")
    assert r.status_code == 400
    assert "location" not in r.headers
    assert "redirect_uri" in r.text
    # No code was created
    with app.state.grant_store._session_factory() as db:
        assert db.query(AuthorizationCode).count() == 0


@pytest.mark.parametrize(
    "uri",
    [
        WEB_REDIRECT + "/",
        WEB_REDIRECT + "?next=1",
        WEB_REDIRECT.upper(),
        "https://localhost:5002/signin",
        JS_REDIRECT,
    ],
)
def test_non_exact_redirect_uri_rejected(client, uri):
    r = _authorize(client, redirect_uri=uri)
    assert r.status_code == 400


def test_error_page_escapes_html(client):
    r = _authorize(client, client_id="<script>alert(1)</script>")
    assert r.status_code == 400
    assert "<script>" not in r.text


def test_repeated_redirect_uri_rejected_directly(client):
    r = client.get(
        f"/connect/authorize?client_id=web&redirect_uri={WEB_REDIRECT}&redirect_uri={WEB_REDIRECT}"
        "&response_type=code&scope=openid",
        follow_redirects=False,
    )
    assert r.status_code == 400


# --- errors redirected to the trusted redirect_uri ---


def test_missing_response_type(client):
    _assert_redirect_error(_authorize(client, response_type=None), "invalid_request")


def test_unsupported_response_type(client):
    _assert_redirect_error(_authorize(client, response_type="token"), "unsupported_response_type")


def test_client_without_redirect_uris_rejected_directly(client):
    r = _authorize(client, client_id="m2m")
    assert r.status_code == 400


def test_client_without_code_grant_is_unauthorized():
    client = Client(
        client_id="cc-only",
        client_secret_hash="x",
        allowed_grant_types=frozenset({GrantType.CLIENT_CREDENTIALS}),
        redirect_uris=frozenset({WEB_REDIRECT}),
        allowed_scopes=frozenset({"api1"}),
    )
    registry = Registry.build([client], IDENTITY_RESOURCES + API_SCOPES)
    req = _request(client_id="cc-only", scope="api1")
    with pytest.raises(AuthorizeError) as exc:
        req.validate(registry)
    assert exc.value.error == "unauthorized_client"
    assert exc.value.redirect_uri == WEB_REDIRECT


def test_missing_scope(client):
    _assert_redirect_error(_authorize(client, scope=None), "invalid_request")


def test_scope_not_allowed(client):
    _assert_redirect_error(_authorize(client, scope="openid api2"), "invalid_scope")


def test_unknown_scope(client):
    _assert_redirect_error(_authorize(client, scope="openid bogus"), "invalid_scope")


def test_offline_access_requires_client_permission(client):
    _assert_redirect_error(
        _authorize(client, client_id="js", redirect_uri=JS_REDIRECT, scope="openid offline_access"),
        "invalid_scope",
        redirect_uri=JS_REDIRECT,
    )


def test_pkce_required(client):
    _assert_redirect_error(
        _authorize(client, code_challenge=None, code_challenge_method=None), "invalid_request"
    )


def test_pkce_plain_rejected(client):
    _assert_redirect_error(_authorize(client, code_challenge_method="plain"), "invalid_request")


def test_pkce_method_missing(client):
    _assert_redirect_error(_authorize(client, code_challenge_method=None), "invalid_request")


def test_pkce_malformed_challenge(client):
    _assert_redirect_error(_authorize(client, code_challenge="short"), "invalid_request")


def test_pkce_challenge_with_trailing_newline_is_malformed(client):
    _, challenge = make_pkce()
    r = _authorize(client, code_challenge=challenge + "\n")
    _assert_redirect_error(r, "invalid_request")
    assert query_of(r.headers["location"])["error_description"] == "code_challenge is malformed"


def test_error_without_state_has_no_state(client):
    r = _authorize(client, response_type="token", state=None)
    assert r.status_code == 302
    assert "state" not in query_of(r.headers["location"])


# --- authentication ---


def test_no_session_redirects_to_login(client):
    r = _authorize(client)
    assert r.status_code == 302
    location = r.headers["location"]
    assert location.startswith("/account/login?")
    return_url = parse_qs(urlsplit(location).query)["returnUrl"][0]
    assert return_url.startswith("/connect/authorize?")
    assert "client_id=web" in return_url


def test_prompt_none_without_session(client):
    _assert_redirect_error(_authorize(client, prompt="none"), "login_required")


def test_prompt_login_forces_login_and_drops_prompt(client, login):
    login()
    r = _authorize(client, prompt="login")
    assert r.status_code == 302
    location = r.headers["location"]
    assert location.startswith("/account/login?")
    return_url = parse_qs(urlsplit(location).query)["returnUrl"][0]
    assert "prompt" not in return_url


def test_login_round_trip_issues_code(client):
    r = _authorize(client)
    login_url = r.headers["location"]
    return_url = parse_qs(urlsplit(login_url).query)["returnUrl"][0]
    r = client.post(
        "/account/login",
        data={
            "username": "testuser",
            "password": "password",
            "returnUrl": return_url,
            "antiforgery_token": antiforgery_token(client, return_url),
        },
        follow_redirects=False,
    )
    assert r.status_code == 302
    assert r.headers["location"] == return_url
    r = client.get(return_url, follow_redirects=False)
    assert r.status_code == 302
    q = query_of(r.headers["location"])
    assert r.headers["location"].startswith(WEB_REDIRECT + "?")
    assert q["state"] == "xyz"
    assert q["code"]


def test_logged_in_user_gets_code_with_state_verbatim(client, login):
    login()
    r = _authorize(client, state="a b&c=d")
    assert r.status_code == 302
    q = query_of(r.headers["location"])
    assert q["state"] == "a b&c=d"
    assert len(q["code"]) >= 43


def test_public_client_with_pkce(client, login):
    login()
    r = _authorize(client, client_id="js", redirect_uri=JS_REDIRECT, scope="openid api1")
    assert r.status_code == 302
    assert r.headers["location"].startswith(JS_REDIRECT + "?code=")


# --- state machine ---


def _request(**overrides) -> AuthorizationRequest:
    return AuthorizationRequest.from_query(QueryParams(_params(**overrides)))


def _session() -> LoginSession:
    return LoginSession(subject=Subject("1", "testuser", {"name": "Test User"}), auth_time=1700000000)


def test_state_machine_happy_path(registry, app):
    req = _request()
    assert req.status is AuthorizeState.RECEIVED
    req.validate(registry)
    assert req.status is AuthorizeState.VALIDATED
    assert req.scopes == ["openid", "profile", "api1"]
    req.authenticate(_session())
    assert req.status is AuthorizeState.AUTHENTICATED
    grant = req.issue_code(app.state.grant_store, datetime.now(timezone.utc))
    assert req.status is AuthorizeState.CODE_ISSUED
    assert grant.subject_id == "1"
    assert grant.redirect_uri == WEB_REDIRECT
    assert req.success_url(grant.code).startswith(WEB_REDIRECT + "?code=")


def test_state_machine_rejection_is_terminal(registry):
    req = _request(redirect_uri="https://evil.example/cb")
    with pytest.raises(AuthorizeError) as exc:
        req.validate(registry)
    assert exc.value.redirect_uri is None
    assert req.status is AuthorizeState.REJECTED
    with pytest.raises(RuntimeError):
        req.authenticate(_session())


def test_state_machine_cannot_skip_authentication(registry, app):
    req = _request()
    req.validate(registry)
    with pytest.raises(RuntimeError):
        req.issue_code(app.state.grant_store, datetime.now(timezone.utc))


def test_trusted_error_carries_redirect(registry):
    req = _request(scope="openid api2")
    with pytest.raises(AuthorizeError) as exc:
        req.validate(registry)
    assert exc.value.error == "invalid_scope"
    assert exc.value.redirect_uri == WEB_REDIRECT
    assert exc.value.state == "xyz"
