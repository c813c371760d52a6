"""
Login page. GET /account/login renders the form; POST /account/login verifies credentials through
the configured CredentialVerifier, sets the session cookie and returns the browser to the
authorization endpoint that sent it here. The form carries an anti-forgery field that must match
the SameSite=Strict cookie issued with it.
"""
import html
import logging
from datetime import datetime, timezone
from urllib.parse import urlsplit

from fastapi import APIRouter, Depends, Form, Request
from fastapi.responses import HTMLResponse, RedirectResponse

from identity_server import rate_limit
from identity_server.audit import EVENT_LOGIN_FAIL, EVENT_LOGIN_OK, OUTCOME_FAIL, AuditLogger, get_client_ip
from identity_server.authorize import AUTHORIZE_PATH, LOGIN_PATH
from identity_server.config import RATE_LIMIT_LOGIN_PER_MINUTE
from identity_server.dependencies import get_audit, get_issuer, get_verifier
from identity_server.keys import TokenIssuer
from identity_server.session import (
    ANTIFORGERY_FIELD,
    antiforgery_valid,
    create_session_token,
    issue_antiforgery,
    set_antiforgery_cookie,
    set_session_cookie,
)
from identity_server.users import CredentialVerifier

logger = logging.getLogger(__name__)
router = APIRouter()


def safe_return_url(return_url: str | None) -> str:
    """Only local authorize URLs are followed after login; anything else falls back to '/'."""
    if not return_url:
        return "/"
    parts = urlsplit(return_url)
    if parts.scheme or parts.netloc or return_url.startswith("//") or "\\" in return_url:
        return "/"
    if parts.path != AUTHORIZE_PATH:
        return "/"
    return return_url


def _login_page(return_url: str, antiforgery: str, username: str = "", error: str | None = None) -> str:
    def e(s: str) -> str:
        return html.escape(s or "")

    error_html = f'\n  <p style="color:red;">{e(error)}</p>' if error else ""
    return f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Log in</title></head>
<body>
  <h1>Log in</h1>{error_html}
  <form method="post" action="{LOGIN_PATH}">
    <input type="hidden" name="{ANTIFORGERY_FIELD}" value="{e(antiforgery)}"/>
    <input type="hidden" name="returnUrl" value="{e(return_url)}"/>
    <label>Username: <input type="text" name="username" value="{e(username)}" required/></label><br/>
    <label>Password: <input type="password" name="password" required/></label><br/>
    <button type="submit">Log in</button>
  </form>
</body>
</html>"""


def _form_response(
    issuer: TokenIssuer,
    return_url: str,
    username: str = "",
    error: str | None = None,
    status_code: int = 200,
) -> HTMLResponse:
    """Login form with a fresh anti-forgery field and matching cookie."""
    value, cookie = issue_antiforgery(issuer, datetime.now(timezone.utc))
    response = HTMLResponse(_login_page(return_url, value, username, error), status_code=status_code)
    set_antiforgery_cookie(response, cookie)
    return response


@router.get(LOGIN_PATH, response_class=HTMLResponse)
def login_form(returnUrl: str | None = None, issuer: TokenIssuer = Depends(get_issuer)):
    return _form_response(issuer, safe_return_url(returnUrl))


@router.post(LOGIN_PATH)
def login(
    request: Request,
    username: str = Form(""),
    password: str = Form(""),
    returnUrl: str = Form(""),
    antiforgery_token: str = Form(""),
    verifier: CredentialVerifier = Depends(get_verifier),
    issuer: TokenIssuer = Depends(get_issuer),
    audit: AuditLogger = Depends(get_audit),
):
    """
    Verify username/password. On success set the session cookie and redirect to returnUrl.
    On failure re-show the form with 401; a missing or mismatched anti-forgery token gets 400.
    """
    ip = get_client_ip(request)
    rate_limit.enforce(f"login:{ip}", RATE_LIMIT_LOGIN_PER_MINUTE)

    return_url = safe_return_url(returnUrl)
    username = username.strip()
    if not antiforgery_valid(request, issuer, antiforgery_token):
        logger.warning("Login form rejected: anti-forgery token missing or mismatched (ip=%s)", ip)
        return _form_response(issuer, return_url, username, "Your session expired. Please try again.", 400)
    if not username or not password:
        return _form_response(issuer, return_url, username, "Username and password are required.", 401)

    subject = verifier.verify(username, password)
    if subject is None:
        audit.record(EVENT_LOGIN_FAIL, ip=ip, outcome=OUTCOME_FAIL)
        return _form_response(issuer, return_url, username, "Invalid username or password.", 401)

    audit.record(EVENT_LOGIN_OK, subject_id=subject.subject_id, ip=ip)
    now = datetime.now(timezone.utc)
    response = RedirectResponse(url=return_url, status_code=302)
    set_session_cookie(response, create_session_token(issuer, subject, now))
    return response
