"""
Audit logging. Security-relevant events only; no tokens, secrets, passwords or request bodies.
"""
import logging

from fastapi import Request
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from identity_server.models import AuditLog

logger = logging.getLogger(__name__)

EVENT_LOGIN_OK = "login_ok"
EVENT_LOGIN_FAIL = "login_fail"
EVENT_LOGOUT = "logout"
EVENT_CODE_ISSUED = "code_issued"
EVENT_TOKEN_ISSUED = "token_issued"
EVENT_TOKEN_REFRESHED = "token_refreshed"
EVENT_TOKEN_FAIL = "token_fail"
EVENT_GRANT_REPLAY = "grant_replay"
EVENT_TOKEN_REVOKED = "token_revoked"
EVENT_INTROSPECT = "introspect"

OUTCOME_SUCCESS = "success"
OUTCOME_FAIL = "fail"

MAX_AUDIT_LIMIT = 500


def get_client_ip(request: Request | None) -> str | None:
    """Client IP if available (request.client.host). Forwarding headers are not trusted."""
    if request is None or request.client is None:
        return None
    return getattr(request.client, "host", None)


class AuditLogger:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def record(
        self,
        event_type: str,
        *,
        client_id: str | None = None,
        subject_id: str | None = None,
        ip: str | None = None,
        outcome: str = OUTCOME_SUCCESS,
        detail: str | None = None,
    ) -> None:
        """Append one audit record."""
        with self._session_factory() as db:
            db.add(
                AuditLog(
                    event_type=event_type,
                    client_id=client_id,
                    subject_id=subject_id,
                    ip=ip,
                    outcome=outcome,
                    detail=(detail or None) and detail[:255],
                )
            )
            db.commit()
        logger.info(
            "audit event=%s outcome=%s client_id=%s sub=%s",
            event_type,
            outcome,
            client_id,
            subject_id,
        )

    def query(
        self,
        *,
        limit: int = 100,
        event_type: str | None = None,
        outcome: str | None = None,
        client_id: str | None = None,
    ) -> list[dict]:
        """Audit records with optional filters. Most recent first."""
        q = select(AuditLog).order_by(AuditLog.id.desc())
        if event_type:
            q = q.where(AuditLog.event_type == event_type)
        if outcome:
            q = q.where(AuditLog.outcome == outcome)
        if client_id:
            q = q.where(AuditLog.client_id == client_id)
        q = q.limit(min(max(1, limit), MAX_AUDIT_LIMIT))
        with self._session_factory() as db:
            rows = db.scalars(q).all()
        return [
            {
                "created_at": r.created_at.isoformat() if r.created_at else None,
                "event_type": r.event_type,
                "client_id": r.client_id,
                "subject_id": r.subject_id,
                "ip": r.ip,
                "outcome": r.outcome,
                "detail": r.detail,
            }
            for r in rows
        ]
