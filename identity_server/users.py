"""
Credential verification for the login page.
The authorization endpoint never checks passwords itself; it only receives a Subject.
Two verifiers: in-memory test users (development) and a remote identity service over HTTP.
"""
import logging
import secrets
from dataclasses import dataclass, field
from typing import Protocol

import httpx

from identity_server.registry import check_secret, hash_secret

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Subject:
    subject_id: str
    username: str
    claims: dict = field(default_factory=dict, hash=False)


class CredentialVerifier(Protocol):
    def verify(self, username: str, password: str) -> Subject | None:
        """Return the authenticated Subject, or None if the credentials are wrong."""
        ...


@dataclass(frozen=True)
class DevUser:
    subject_id: str
    username: str
    password_hash: str
    claims: dict = field(default_factory=dict, hash=False)


# Development users; WARNING: not for production
DEFAULT_DEV_USERS = [
    {
        "subject_id": "1",
        "username": "testuser",
        "password": "password",
        "claims": {
            "name": "Test User",
            "given_name": "Test",
            "family_name": "User",
            "email": "test@example.com",
            "email_verified": True,
            "role": "user",
        },
    },
]


class InMemoryUserStore:
    """Test user store with bcrypt password hashes."""

    def __init__(self, users: list[DevUser], bcrypt_rounds: int = 12):
        self._by_username = {u.username: u for u in users}
        # Unknown usernames are checked against this so they take as long as a wrong password
        self._dummy_hash = hash_secret(secrets.token_urlsafe(16), bcrypt_rounds)

    @classmethod
    def from_config(cls, users: list[dict], bcrypt_rounds: int = 12) -> "InMemoryUserStore":
        return cls(
            [
                DevUser(
                    subject_id=str(u["subject_id"]),
                    username=u["username"],
                    password_hash=hash_secret(u["password"], bcrypt_rounds),
                    claims=dict(u.get("claims", {})),
                )
                for u in users
            ],
            bcrypt_rounds=bcrypt_rounds,
        )

    def verify(self, username: str, password: str) -> Subject | None:
        user = self._by_username.get(username)
        if user is None:
            check_secret(password, self._dummy_hash)
            return None
        if not check_secret(password, user.password_hash):
            return None
        claims = {"preferred_username": user.username, **user.claims}
        return Subject(subject_id=user.subject_id, username=user.username, claims=claims)


class RemoteCredentialVerifier:
    """
    Delegates to an external user service: POST {url} with JSON {username, password}.
    200 with {"sub": ..., "claims": {...}} means valid; 401/403/404 means invalid.
    Anything else is an error and propagates.
    """

    def __init__(self, url: str, timeout: float = 5.0, transport: httpx.BaseTransport | None = None):
        self._url = url
        self._client = httpx.Client(timeout=timeout, transport=transport)

    def verify(self, username: str, password: str) -> Subject | None:
        r = self._client.post(
            self._url,
            json={"username": username, "password": password},
            headers={"Accept": "application/json"},
        )
        if r.status_code in (401, 403, 404):
            return None
        r.raise_for_status()
        data = r.json()
        sub = data.get("sub")
        if not sub:
            logger.warning("User verifier response has no sub; treating as invalid credentials")
            return None
        claims = {"preferred_username": username, **(data.get("claims") or {})}
        return Subject(subject_id=str(sub), username=username, claims=claims)

    def close(self) -> None:
        self._client.close()
