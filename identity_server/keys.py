"""
RSA signing keys and the token issuer.
New tokens are signed with the active key; JWKS publishes every key still needed for verification.
Rotation appends a key and retires the old one only after tokens it signed can no longer be valid.
Load from file or generate and persist; no key material in code.
"""
import base64
import hashlib
import json
import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey, generate_private_key

logger = logging.getLogger(__name__)

ALGORITHM = "RS256"
_KEY_BITS = 2048


def _b64url_uint(value: int) -> str:
    raw = value.to_bytes((value.bit_length() + 7) // 8, "big")
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def generate_key() -> RSAPrivateKey:
    return generate_private_key(65537, _KEY_BITS)


def _serialize_private(key: RSAPrivateKey) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def _deserialize_private(pem: bytes) -> RSAPrivateKey:
    key = serialization.load_pem_private_key(pem, password=None)
    if not isinstance(key, RSAPrivateKey):
        raise ValueError("signing key must be RSA")
    return key


def load_or_create_key(path: str) -> RSAPrivateKey:
    """Load RSA private key from path, or generate one and try to save it there."""
    p = Path(path)
    if p.exists():
        try:
            return _deserialize_private(p.read_bytes())
        except (ValueError, TypeError) as e:
            logger.warning("Failed to load signing key from %s: %s; generating new key", path, e)
    key = generate_key()
    try:
        p.write_bytes(_serialize_private(key))
        logger.info("Generated and saved signing key to %s", path)
    except OSError as e:
        logger.warning("Could not save signing key to %s: %s", path, e)
    return key


def load_key(path: str) -> RSAPrivateKey | None:
    """Load an optional key (e.g. the previous one during rotation). None if missing or invalid."""
    p = Path(path)
    if not p.exists():
        return None
    try:
        return _deserialize_private(p.read_bytes())
    except (ValueError, TypeError) as e:
        logger.warning("Failed to load signing key from %s: %s", path, e)
        return None


def public_key_to_jwk(public_key, kid: str) -> dict:
    numbers = public_key.public_numbers()
    return {
        "kty": "RSA",
        "kid": kid,
        "alg": ALGORITHM,
        "use": "sig",
        "n": _b64url_uint(numbers.n),
        "e": _b64url_uint(numbers.e),
    }


def key_thumbprint(public_key) -> str:
    """RFC 7638 JWK thumbprint, used as kid."""
    numbers = public_key.public_numbers()
    canonical = json.dumps(
        {"e": _b64url_uint(numbers.e), "kty": "RSA", "n": _b64url_uint(numbers.n)},
        separators=(",", ":"),
        sort_keys=True,
    )
    digest = hashlib.sha256(canonical.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def token_hash(token: str) -> str:
    """Left half of SHA-256, base64url (at_hash for RS256)."""
    digest = hashlib.sha256(token.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest[: len(digest) // 2]).rstrip(b"=").decode("ascii")


@dataclass(frozen=True)
class SigningKey:
    kid: str
    private_key: RSAPrivateKey
    # Set when the key stops signing; it is published until then
    retire_after: datetime | None = None

    @classmethod
    def from_private_key(cls, private_key: RSAPrivateKey) -> "SigningKey":
        return cls(kid=key_thumbprint(private_key.public_key()), private_key=private_key)


class TokenIssuer:
    """Signs JWTs with the active key and publishes the key set."""

    def __init__(self, issuer: str, active: RSAPrivateKey, previous: list[RSAPrivateKey] | None = None):
        self.issuer = issuer
        self._lock = threading.Lock()
        active_key = SigningKey.from_private_key(active)
        keys = {active_key.kid: active_key}
        for private_key in previous or []:
            key = SigningKey.from_private_key(private_key)
            keys.setdefault(key.kid, key)
        self._keys: dict[str, SigningKey] = keys
        self._active_kid = active_key.kid

    @property
    def active_kid(self) -> str:
        return self._active_kid

    def sign(self, claims: dict, typ: str = "JWT") -> str:
        key = self._keys[self._active_kid]
        token = jwt.encode(claims, key.private_key, algorithm=ALGORITHM, headers={"kid": key.kid, "typ": typ})
        if isinstance(token, bytes):
            token = token.decode("utf-8")
        return token

    def public_keys(self) -> dict:
        """JWKS with every published key (active first)."""
        keys = sorted(self._keys.values(), key=lambda k: k.kid != self._active_kid)
        return {"keys": [public_key_to_jwk(k.private_key.public_key(), k.kid) for k in keys]}

    def public_key_for_kid(self, kid: str):
        key = self._keys.get(kid)
        return key.private_key.public_key() if key else None

    def verify(
        self,
        token: str,
        audience: str | list[str] | None = None,
        leeway: int = 0,
        verify_exp: bool = True,
    ) -> dict:
        """Verify signature (key chosen by kid), iss, exp, and aud if given. Raises jwt.InvalidTokenError."""
        header = jwt.get_unverified_header(token)
        kid = header.get("kid")
        public_key = self.public_key_for_kid(kid) if kid else None
        if public_key is None:
            raise jwt.InvalidTokenError("Unknown signing key")
        options = {"verify_aud": audience is not None, "verify_exp": verify_exp, "require": ["exp", "iat", "iss"]}
        return jwt.decode(
            token,
            public_key,
            algorithms=[ALGORITHM],
            issuer=self.issuer,
            audience=audience,
            options=options,
            leeway=leeway,
        )

    def rotate(self, new_key: RSAPrivateKey, now: datetime, retain_seconds: int) -> str:
        """Make new_key active. The old active key stays published for retain_seconds. Returns new kid."""
        new = SigningKey.from_private_key(new_key)
        with self._lock:
            old = self._keys[self._active_kid]
            keys = dict(self._keys)
            keys[old.kid] = SigningKey(
                kid=old.kid,
                private_key=old.private_key,
                retire_after=now + timedelta(seconds=retain_seconds),
            )
            keys[new.kid] = new
            self._keys = keys
            self._active_kid = new.kid
        logger.info("Signing key rotated: active kid=%s, retiring kid=%s", new.kid, old.kid)
        return new.kid

    def prune(self, now: datetime) -> list[str]:
        """Drop retired keys whose retention has passed. Never drops the active key."""
        with self._lock:
            removed = [
                k.kid for k in self._keys.values()
                if k.kid != self._active_kid and k.retire_after is not None and k.retire_after <= now
            ]
            if removed:
                self._keys = {kid: k for kid, k in self._keys.items() if kid not in removed}
        for kid in removed:
            logger.info("Removed retired signing key kid=%s", kid)
        return removed


def new_jti() -> str:
    return uuid.uuid4().hex


def access_token_claims(
    issuer: str,
    *,
    client_id: str,
    scopes: list[str] | tuple[str, ...],
    audiences: list[str],
    now: datetime,
    lifetime: int,
    subject_id: str | None = None,
    auth_time: int | None = None,
) -> dict:
    """
    Access token payload. aud lists the API resources owning the granted scopes, or
    "<issuer>/resources" when none do. Client credentials tokens carry no sub.
    """
    iat = int(now.timestamp())
    claims = {
        "iss": issuer,
        "aud": audiences if len(audiences) > 1 else (audiences[0] if audiences else f"{issuer}/resources"),
        "client_id": client_id,
        "scope": " ".join(scopes),
        "iat": iat,
        "nbf": iat,
        "exp": iat + lifetime,
        "jti": new_jti(),
    }
    if subject_id is not None:
        claims["sub"] = subject_id
        if auth_time is not None:
            claims["auth_time"] = auth_time
    return claims


def id_token_claims(
    issuer: str,
    *,
    client_id: str,
    subject_id: str,
    auth_time: int,
    now: datetime,
    lifetime: int,
    nonce: str | None = None,
    access_token: str | None = None,
    user_claims: dict | None = None,
) -> dict:
    """ID token payload. user_claims must already be filtered to the granted identity scopes."""
    iat = int(now.timestamp())
    claims = dict(user_claims or {})
    claims.update(
        {
            "iss": issuer,
            "sub": subject_id,
            "aud": client_id,
            "iat": iat,
            "exp": iat + lifetime,
            "auth_time": auth_time,
        }
    )
    if nonce:
        claims["nonce"] = nonce
    if access_token:
        claims["at_hash"] = token_hash(access_token)
    return claims
