"""
Login session cookie. A short JWT signed by the token issuer, audience "idsrv.session",
carrying the subject and its claims. Stateless; logout deletes the cookie.
Also the login form anti-forgery cookie, a signed JWT paired with a hidden form field.
"""
import hmac
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

import jwt
from fastapi import Request, Response

from identity_server.config import (
    ANTIFORGERY_COOKIE_NAME,
    ANTIFORGERY_TTL_SECONDS,
    SECURE_COOKIES,
    SESSION_COOKIE_NAME,
    SESSION_TTL_SECONDS,
)
from identity_server.keys import TokenIssuer, new_jti
from identity_server.users import Subject

logger = logging.getLogger(__name__)

SESSION_AUDIENCE = "idsrv.session"
ANTIFORGERY_AUDIENCE = "idsrv.antiforgery"
ANTIFORGERY_FIELD = "antiforgery_token"


@dataclass(frozen=True)
class LoginSession:
    subject: Subject
    auth_time: int


def create_session_token(issuer: TokenIssuer, subject: Subject, now: datetime) -> str:
    claims = {
        "iss": issuer.issuer,
        "aud": SESSION_AUDIENCE,
        "sub": subject.subject_id,
        "username": subject.username,
        "claims": subject.claims,
        "auth_time": int(now.timestamp()),
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=SESSION_TTL_SECONDS)).timestamp()),
        "jti": new_jti(),
    }
    return issuer.sign(claims)


def set_session_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        SESSION_COOKIE_NAME,
        token,
        max_age=SESSION_TTL_SECONDS,
        httponly=True,
        secure=SECURE_COOKIES,
        samesite="lax",
        path="/",
    )


def clear_session_cookie(response: Response) -> None:
    response.delete_cookie(SESSION_COOKIE_NAME, path="/")


def read_session(request: Request, issuer: TokenIssuer) -> LoginSession | None:
    """Current login session from the cookie, or None if absent, expired or forged."""
    token = request.cookies.get(SESSION_COOKIE_NAME)
    if not token:
        return None
    try:
        payload = issuer.verify(token, audience=SESSION_AUDIENCE)
    except jwt.InvalidTokenError as e:
        logger.debug("Ignoring invalid session cookie: %s", e)
        return None
    subject = Subject(
        subject_id=payload["sub"],
        username=payload.get("username", ""),
        claims=payload.get("claims") or {},
    )
    return LoginSession(subject=subject, auth_time=int(payload.get("auth_time", payload["iat"])))


def issue_antiforgery(issuer: TokenIssuer, now: datetime) -> tuple[str, str]:
    """
    Anti-forgery pair for the login form: (hidden field value, cookie value). The cookie is a
    signed JWT whose jti is the field value; a POST must present both.
    """
    value = new_jti()
    cookie = issuer.sign({
        "iss": issuer.issuer,
        "aud": ANTIFORGERY_AUDIENCE,
        "jti": value,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=ANTIFORGERY_TTL_SECONDS)).timestamp()),
    })
    return value, cookie


def set_antiforgery_cookie(response: Response, cookie: str) -> None:
    response.set_cookie(
        ANTIFORGERY_COOKIE_NAME,
        cookie,
        max_age=ANTIFORGERY_TTL_SECONDS,
        httponly=True,
        secure=SECURE_COOKIES,
        samesite="strict",
        path="/account",
    )


def antiforgery_valid(request: Request, issuer: TokenIssuer, submitted: str | None) -> bool:
    cookie = request.cookies.get(ANTIFORGERY_COOKIE_NAME)
    if not cookie or not submitted:
        return False
    try:
        payload = issuer.verify(cookie, audience=ANTIFORGERY_AUDIENCE)
    except jwt.InvalidTokenError as e:
        logger.info("Rejected anti-forgery cookie: %s", e)
        return False
    return hmac.compare_digest(str(payload.get("jti", "")), submitted)
