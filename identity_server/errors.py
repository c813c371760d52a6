"""
OAuth error responses (RFC 6749 §5.2). Endpoints raise OAuthError; main.py renders it.
"""
import logging

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)

INVALID_REQUEST = "invalid_request"
INVALID_CLIENT = "invalid_client"
INVALID_GRANT = "invalid_grant"
INVALID_SCOPE = "invalid_scope"
INVALID_TOKEN = "invalid_token"
INSUFFICIENT_SCOPE = "insufficient_scope"
UNAUTHORIZED_CLIENT = "unauthorized_client"
UNSUPPORTED_GRANT_TYPE = "unsupported_grant_type"
UNSUPPORTED_RESPONSE_TYPE = "unsupported_response_type"
LOGIN_REQUIRED = "login_required"
SERVER_ERROR = "server_error"

NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}


class OAuthError(Exception):
    """An OAuth protocol error with its HTTP status."""

    def __init__(
        self,
        error: str,
        description: str | None = None,
        status_code: int = 400,
        headers: dict[str, str] | None = None,
    ):
        super().__init__(description or error)
        self.error = error
        self.description = description
        self.status_code = status_code
        self.headers = headers


def invalid_client(description: str) -> OAuthError:
    return OAuthError(
        INVALID_CLIENT,
        description,
        status_code=401,
        headers={"WWW-Authenticate": 'Basic realm="token"'},
    )


def error_response(error: str, description: str | None, status_code: int, headers: dict | None = None) -> JSONResponse:
    body = {"error": error}
    if description:
        body["error_description"] = description
    return JSONResponse(body, status_code=status_code, headers={**NO_STORE_HEADERS, **(headers or {})})


async def oauth_error_handler(request: Request, exc: OAuthError) -> JSONResponse:
    return error_response(exc.error, exc.description, exc.status_code, exc.headers)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Missing or malformed form/query fields become invalid_request instead of FastAPI's 422."""
    missing = sorted({str(e["loc"][-1]) for e in exc.errors() if e.get("loc")})
    description = f"Missing or invalid parameter(s): {', '.join(missing)}" if missing else "Malformed request"
    return error_response(INVALID_REQUEST, description, 400)


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return error_response(SERVER_ERROR, None, 500)
