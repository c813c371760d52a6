"""
Tests for signing keys, JWKS, rotation and the token claim builders.
"""
from datetime import datetime, timedelta, timezone

import jwt
import pytest

from identity_server.keys import (
    TokenIssuer,
    access_token_claims,
    generate_key,
    id_token_claims,
    key_thumbprint,
    load_key,
    load_or_create_key,
    token_hash,
)

ISS = "https://idp.test"


@pytest.fixture(scope="module")
def key_a():
    return generate_key()


@pytest.fixture(scope="module")
def key_b():
    return generate_key()


def _claims(now=None, lifetime=300):
    now = now or datetime.now(timezone.utc)
    return {"iss": ISS, "sub": "1", "iat": int(now.timestamp()), "exp": int(now.timestamp()) + lifetime}


def test_kid_is_rfc7638_thumbprint(key_a):
    issuer = TokenIssuer(ISS, key_a)
    assert issuer.active_kid == key_thumbprint(key_a.public_key())
    token = issuer.sign(_claims())
    assert jwt.get_unverified_header(token)["kid"] == issuer.active_kid


def test_jwks_contains_public_parts_only(key_a):
    jwks = TokenIssuer(ISS, key_a).public_keys()
    assert len(jwks["keys"]) == 1
    jwk = jwks["keys"][0]
    assert jwk["kty"] == "RSA"
    assert jwk["alg"] == "RS256"
    assert jwk["use"] == "sig"
    assert set(jwk) == {"kty", "kid", "alg", "use", "n", "e"}


def test_sign_and_verify(key_a):
    issuer = TokenIssuer(ISS, key_a)
    payload = issuer.verify(issuer.sign(_claims()))
    assert payload["sub"] == "1"


def test_verify_rejects_other_issuer_and_unknown_kid(key_a, key_b):
    issuer = TokenIssuer(ISS, key_a)
    other = TokenIssuer("https://other.test", key_a)
    with pytest.raises(jwt.InvalidIssuerError):
        issuer.verify(other.sign({**_claims(), "iss": "https://other.test"}))
    stranger = TokenIssuer(ISS, key_b)
    with pytest.raises(jwt.InvalidTokenError, match="Unknown signing key"):
        issuer.verify(stranger.sign(_claims()))


def test_verify_expired(key_a):
    issuer = TokenIssuer(ISS, key_a)
    past = datetime.now(timezone.utc) - timedelta(hours=1)
    token = issuer.sign(_claims(past, lifetime=60))
    with pytest.raises(jwt.ExpiredSignatureError):
        issuer.verify(token)
    assert issuer.verify(token, verify_exp=False)["sub"] == "1"


def test_rotation_keeps_old_key_until_retention(key_a, key_b):
    issuer = TokenIssuer(ISS, key_a)
    old_kid = issuer.active_kid
    old_token = issuer.sign(_claims())
    now = datetime.now(timezone.utc)

    new_kid = issuer.rotate(key_b, now, retain_seconds=3600)
    assert issuer.active_kid == new_kid != old_kid
    kids = [k["kid"] for k in issuer.public_keys()["keys"]]
    assert kids == [new_kid, old_kid]
    # Tokens signed before rotation still verify; new tokens use the new key
    assert issuer.verify(old_token)["sub"] == "1"
    assert jwt.get_unverified_header(issuer.sign(_claims()))["kid"] == new_kid

    assert issuer.prune(now + timedelta(seconds=3599)) == []
    assert issuer.prune(now + timedelta(seconds=3600)) == [old_kid]
    assert [k["kid"] for k in issuer.public_keys()["keys"]] == [new_kid]
    with pytest.raises(jwt.InvalidTokenError):
        issuer.verify(old_token)


def test_prune_never_drops_active_or_unretired(key_a, key_b):
    issuer = TokenIssuer(ISS, key_a, previous=[key_b])
    assert issuer.prune(datetime.now(timezone.utc) + timedelta(days=365)) == []
    assert len(issuer.public_keys()["keys"]) == 2


def test_previous_key_verifies_but_does_not_sign(key_a, key_b):
    old_issuer = TokenIssuer(ISS, key_b)
    token = old_issuer.sign(_claims())
    issuer = TokenIssuer(ISS, key_a, previous=[key_b])
    assert issuer.verify(token)["sub"] == "1"
    assert jwt.get_unverified_header(issuer.sign(_claims()))["kid"] == key_thumbprint(key_a.public_key())


def test_load_or_create_key_persists(tmp_path):
    path = tmp_path / "key.pem"
    first = load_or_create_key(str(path))
    assert path.exists()
    second = load_or_create_key(str(path))
    assert key_thumbprint(first.public_key()) == key_thumbprint(second.public_key())


def test_load_key_missing_or_invalid(tmp_path):
    assert load_key(str(tmp_path / "missing.pem")) is None
    bad = tmp_path / "bad.pem"
    bad.write_text("not a key")
    assert load_key(str(bad)) is None


def test_token_hash_known_value():
    # Example from OpenID Connect Core §A.3
    assert token_hash("jHkWEdUXMU1BwAsC4vtUsZwnNvTIxEl0z9K3vx5KF0Y") == "77QmUPtjPfzWtF2AnpK9RQ"


def test_access_token_claims_user_and_client():
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    user = access_token_claims(
        ISS, client_id="web", scopes=["openid", "api1"], audiences=["api1"], now=now, lifetime=3600,
        subject_id="1", auth_time=123,
    )
    assert user["aud"] == "api1"
    assert user["scope"] == "openid api1"
    assert user["sub"] == "1"
    assert user["exp"] - user["iat"] == 3600
    assert user["nbf"] == user["iat"]

    machine = access_token_claims(ISS, client_id="m2m", scopes=["api1", "api2"], audiences=["api1", "api2"],
                                  now=now, lifetime=60)
    assert "sub" not in machine
    assert machine["aud"] == ["api1", "api2"]
    assert machine["client_id"] == "m2m"

    bare = access_token_claims(ISS, client_id="web", scopes=["openid"], audiences=[], now=now, lifetime=60)
    assert bare["aud"] == f"{ISS}/resources"


def test_id_token_claims():
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    claims = id_token_claims(
        ISS, client_id="web", subject_id="1", auth_time=100, now=now, lifetime=300,
        nonce="abc", access_token="jHkWEdUXMU1BwAsC4vtUsZwnNvTIxEl0z9K3vx5KF0Y", user_claims={"email": "a@b"},
    )
    assert claims["aud"] == "web"
    assert claims["nonce"] == "abc"
    assert claims["at_hash"] == "77QmUPtjPfzWtF2AnpK9RQ"
    assert claims["email"] == "a@b"
    assert claims["auth_time"] == 100
    no_nonce = id_token_claims(ISS, client_id="web", subject_id="1", auth_time=100, now=now, lifetime=300)
    assert "nonce" not in no_nonce
    assert "at_hash" not in no_nonce
