"""
OIDC RP-Initiated Logout (GET /connect/endsession).
Clears the login session cookie. Redirects back only to a post_logout_redirect_uri registered for
the client named by a valid id_token_hint; otherwise shows a "logged out" page.
"""
import logging

import jwt
from fastapi import APIRouter, Depends, Request
from fastapi.responses import HTMLResponse, RedirectResponse

from identity_server.audit import EVENT_LOGOUT, AuditLogger, get_client_ip
from identity_server.authorize import append_query
from identity_server.dependencies import get_audit, get_issuer, get_registry
from identity_server.keys import TokenIssuer
from identity_server.registry import Registry
from identity_server.session import clear_session_cookie, read_session

logger = logging.getLogger(__name__)
router = APIRouter()

END_SESSION_PATH = "/connect/endsession"

_LOGGED_OUT_PAGE = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Logged out</title></head>
<body>
  <h1>Logged out</h1>
  <p>You are logged out. Close this window or return to the application.</p>
</body>
</html>"""


def _decode_id_token_hint(issuer: TokenIssuer, id_token: str | None) -> dict | None:
    """Verify id_token_hint (key chosen by kid). Expired hints are accepted; others return None."""
    if not id_token or not id_token.strip():
        return None
    try:
        if jwt.get_unverified_header(id_token.strip()).get("typ") == "at+jwt":
            return None
        # aud is the client_id; it is read after decode
        return issuer.verify(id_token.strip(), verify_exp=False)
    except jwt.InvalidTokenError as e:
        logger.info("Ignoring invalid id_token_hint: %s", e)
        return None


@router.get(END_SESSION_PATH)
def end_session(
    request: Request,
    id_token_hint: str | None = None,
    post_logout_redirect_uri: str | None = None,
    state: str | None = None,
    registry: Registry = Depends(get_registry),
    issuer: TokenIssuer = Depends(get_issuer),
    audit: AuditLogger = Depends(get_audit),
):
    """
    Log the user out and, when allowed, redirect to post_logout_redirect_uri with state.
    """
    session = read_session(request, issuer)
    payload = _decode_id_token_hint(issuer, id_token_hint)
    client = None
    if payload:
        aud = payload.get("aud")
        if isinstance(aud, list):
            aud = aud[0] if len(aud) == 1 else None
        client = registry.clients.lookup_client(aud)

    response = HTMLResponse(_LOGGED_OUT_PAGE)
    uri = (post_logout_redirect_uri or "").strip()
    if uri:
        if client is None or not client.post_logout_redirect_uri_allowed(uri):
            logger.warning("post_logout_redirect_uri not allowed; showing logged-out page instead")
        else:
            params = {"state": state} if state else {}
            response = RedirectResponse(url=append_query(uri, params), status_code=302)

    clear_session_cookie(response)
    audit.record(
        EVENT_LOGOUT,
        client_id=client.client_id if client else None,
        subject_id=session.subject.subject_id if session else None,
        ip=get_client_ip(request),
    )
    return response
