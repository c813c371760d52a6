"""
Grant store: authorization codes and refresh tokens.

Redemption is exactly-once. Each redemption runs under a process lock and flips the
`consumed` flag with a conditional UPDATE (`WHERE consumed = false`); only the caller
whose UPDATE touched the row wins. Callers get frozen snapshots, never live ORM rows.
"""
import json
import logging
import secrets
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, select, update
from sqlalchemy.orm import sessionmaker

from identity_server.errors import INVALID_GRANT, INVALID_SCOPE
from identity_server.models import AuthorizationCode, RefreshToken

logger = logging.getLogger(__name__)


class GrantError(Exception):
    """A code or refresh token cannot be redeemed. Maps to an OAuth error (invalid_grant by default)."""

    def __init__(self, description: str, error: str = INVALID_GRANT, replay: bool = False):
        super().__init__(description)
        self.description = description
        self.error = error
        self.replay = replay


@dataclass(frozen=True)
class CodeGrant:
    code: str
    client_id: str
    subject_id: str
    redirect_uri: str
    scopes: tuple[str, ...]
    issued_at: datetime
    expires_at: datetime
    auth_time: int
    subject_claims: dict = field(default_factory=dict, hash=False)
    code_challenge: str | None = None
    code_challenge_method: str | None = None
    nonce: str | None = None
    consumed: bool = False


@dataclass(frozen=True)
class RefreshGrant:
    token: str
    client_id: str
    subject_id: str
    scopes: tuple[str, ...]
    issued_at: datetime
    expires_at: datetime
    auth_time: int
    subject_claims: dict = field(default_factory=dict, hash=False)
    sliding: bool = False
    absolute_expires_at: datetime | None = None
    consumed: bool = False


def _to_db(dt: datetime) -> datetime:
    # SQLite DateTime columns hold naive UTC
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def _from_db(dt: datetime) -> datetime:
    return dt.replace(tzinfo=timezone.utc)


def _code_snapshot(row: AuthorizationCode) -> CodeGrant:
    return CodeGrant(
        code=row.code,
        client_id=row.client_id,
        subject_id=row.subject_id,
        redirect_uri=row.redirect_uri,
        scopes=tuple(row.scope.split()),
        issued_at=_from_db(row.issued_at),
        expires_at=_from_db(row.expires_at),
        auth_time=row.auth_time,
        subject_claims=row.get_subject_claims(),
        code_challenge=row.code_challenge,
        code_challenge_method=row.code_challenge_method,
        nonce=row.nonce,
        consumed=row.consumed,
    )


def _refresh_snapshot(row: RefreshToken) -> RefreshGrant:
    return RefreshGrant(
        token=row.token,
        client_id=row.client_id,
        subject_id=row.subject_id,
        scopes=tuple(row.scope.split()),
        issued_at=_from_db(row.issued_at),
        expires_at=_from_db(row.expires_at),
        auth_time=row.auth_time,
        subject_claims=row.get_subject_claims(),
        sliding=row.sliding,
        absolute_expires_at=_from_db(row.absolute_expires_at) if row.absolute_expires_at else None,
        consumed=row.consumed,
    )


class GrantStore:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory
        self._lock = threading.Lock()

    # --- authorization codes ---

    def issue_code(
        self,
        *,
        client_id: str,
        subject_id: str,
        subject_claims: dict,
        auth_time: int,
        redirect_uri: str,
        scopes: list[str],
        code_challenge: str | None,
        code_challenge_method: str | None,
        nonce: str | None,
        now: datetime,
        lifetime: int,
    ) -> CodeGrant:
        row = AuthorizationCode(
            code=secrets.token_urlsafe(32),  # 256 bits
            client_id=client_id,
            subject_id=subject_id,
            subject_claims=json.dumps(subject_claims),
            auth_time=auth_time,
            redirect_uri=redirect_uri,
            scope=" ".join(scopes),
            code_challenge=code_challenge or None,
            code_challenge_method=code_challenge_method or None,
            nonce=nonce or None,
            issued_at=_to_db(now),
            expires_at=_to_db(now + timedelta(seconds=lifetime)),
            consumed=False,
        )
        with self._session_factory() as db:
            db.add(row)
            db.commit()
            return _code_snapshot(row)

    def redeem_code(self, code: str, now: datetime) -> CodeGrant:
        """Mark the code consumed and return it. Raises GrantError if unknown, used or expired."""
        with self._lock, self._session_factory() as db:
            row = db.scalars(select(AuthorizationCode).where(AuthorizationCode.code == code)).first()
            if row is None:
                raise GrantError("Invalid authorization code")
            if row.consumed:
                raise GrantError("Authorization code already used", replay=True)
            if _from_db(row.expires_at) <= now:
                raise GrantError("Authorization code expired")
            result = db.execute(
                update(AuthorizationCode)
                .where(AuthorizationCode.id == row.id, AuthorizationCode.consumed.is_(False))
                .values(consumed=True)
            )
            if result.rowcount != 1:
                db.rollback()
                raise GrantError("Authorization code already used", replay=True)
            db.commit()
            snapshot = _code_snapshot(row)
        return snapshot

    # --- refresh tokens ---

    def issue_refresh_token(
        self,
        *,
        client_id: str,
        subject_id: str,
        subject_claims: dict,
        auth_time: int,
        scopes: list[str] | tuple[str, ...],
        now: datetime,
        lifetime: int,
        sliding: bool = False,
        absolute_lifetime: int | None = None,
    ) -> RefreshGrant:
        """
        New refresh token. A sliding token's expiry moves forward on each use but never past
        issue time + absolute_lifetime; the cap is inherited by every replacement in its chain.
        """
        expires_at = now + timedelta(seconds=lifetime)
        absolute_expires_at = None
        if sliding and absolute_lifetime is not None:
            absolute_expires_at = now + timedelta(seconds=absolute_lifetime)
            expires_at = min(expires_at, absolute_expires_at)
        row = self._new_refresh_row(
            client_id=client_id,
            subject_id=subject_id,
            subject_claims=subject_claims,
            auth_time=auth_time,
            scopes=scopes,
            now=now,
            expires_at=expires_at,
            sliding=sliding,
            absolute_expires_at=absolute_expires_at,
        )
        with self._session_factory() as db:
            db.add(row)
            db.commit()
            return _refresh_snapshot(row)

    def redeem_refresh_token(
        self,
        token: str,
        *,
        client_id: str,
        now: datetime,
        one_time: bool,
        lifetime: int,
        scopes: list[str] | None = None,
    ) -> tuple[RefreshGrant, tuple[str, ...]]:
        """
        Redeem a refresh token for client_id. Returns (refresh grant the client holds afterwards,
        scopes for the new access token). Under one-time usage the old token is consumed and a
        replacement chained to it; otherwise the same token is kept (expiry extended if sliding).
        """
        with self._lock, self._session_factory() as db:
            row = db.scalars(select(RefreshToken).where(RefreshToken.token == token)).first()
            if row is None:
                raise GrantError("Invalid refresh token")
            if row.consumed:
                raise GrantError("Refresh token already used or revoked", replay=True)
            if _from_db(row.expires_at) <= now:
                raise GrantError("Refresh token expired")
            if row.client_id != client_id:
                raise GrantError("Refresh token was issued to another client")

            original = tuple(row.scope.split())
            granted = original
            if scopes:
                extra = set(scopes) - set(original)
                if extra:
                    raise GrantError(
                        f"Scope(s) not granted to the refresh token: {', '.join(sorted(extra))}",
                        error=INVALID_SCOPE,
                    )
                granted = tuple(s for s in original if s in scopes)

            expires_at = _from_db(row.expires_at)
            if row.sliding:
                expires_at = now + timedelta(seconds=lifetime)
                if row.absolute_expires_at is not None:
                    expires_at = min(expires_at, _from_db(row.absolute_expires_at))

            if not one_time:
                if row.sliding:
                    row.expires_at = _to_db(expires_at)
                    db.commit()
                return _refresh_snapshot(row), granted

            result = db.execute(
                update(RefreshToken)
                .where(RefreshToken.id == row.id, RefreshToken.consumed.is_(False))
                .values(consumed=True)
            )
            if result.rowcount != 1:
                db.rollback()
                raise GrantError("Refresh token already used or revoked", replay=True)
            replacement = self._new_refresh_row(
                client_id=row.client_id,
                subject_id=row.subject_id,
                subject_claims=row.get_subject_claims(),
                auth_time=row.auth_time,
                scopes=granted,
                now=now,
                expires_at=expires_at,
                sliding=row.sliding,
                absolute_expires_at=_from_db(row.absolute_expires_at) if row.absolute_expires_at else None,
                parent_id=row.id,
            )
            db.add(replacement)
            db.commit()
            return _refresh_snapshot(replacement), granted

    def find_refresh_token(self, token: str) -> RefreshGrant | None:
        with self._session_factory() as db:
            row = db.scalars(select(RefreshToken).where(RefreshToken.token == token)).first()
            return _refresh_snapshot(row) if row else None

    def revoke_refresh_token(self, token: str, client_id: str) -> bool:
        """Revoke a refresh token owned by client_id. Returns False if unknown or owned by another client."""
        with self._lock, self._session_factory() as db:
            result = db.execute(
                update(RefreshToken)
                .where(RefreshToken.token == token, RefreshToken.client_id == client_id)
                .values(consumed=True)
            )
            db.commit()
            return result.rowcount > 0

    def purge_expired(self, now: datetime) -> int:
        """Delete codes and refresh tokens past expiry. Returns number of rows removed."""
        cutoff = _to_db(now)
        with self._lock, self._session_factory() as db:
            codes = db.execute(delete(AuthorizationCode).where(AuthorizationCode.expires_at <= cutoff))
            tokens = db.execute(delete(RefreshToken).where(RefreshToken.expires_at <= cutoff))
            db.commit()
            removed = codes.rowcount + tokens.rowcount
        if removed:
            logger.info("Purged %d expired grants", removed)
        return removed

    @staticmethod
    def _new_refresh_row(
        *,
        client_id: str,
        subject_id: str,
        subject_claims: dict,
        auth_time: int,
        scopes,
        now: datetime,
        expires_at: datetime,
        sliding: bool,
        absolute_expires_at: datetime | None = None,
        parent_id: int | None = None,
    ) -> RefreshToken:
        return RefreshToken(
            token=secrets.token_urlsafe(48),
            client_id=client_id,
            subject_id=subject_id,
            subject_claims=json.dumps(subject_claims),
            auth_time=auth_time,
            scope=" ".join(scopes),
            issued_at=_to_db(now),
            expires_at=_to_db(expires_at),
            sliding=sliding,
            absolute_expires_at=_to_db(absolute_expires_at) if absolute_expires_at else None,
            consumed=False,
            parent_id=parent_id,
        )
