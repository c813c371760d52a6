"""
Identity server: OAuth 2.0 authorization code (+PKCE), client credentials and refresh token grants,
OpenID Connect ID tokens, discovery and JWKS.
create_app() wires the registry, grant store, token issuer and login collaborator into app.state.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError

from identity_server.account import router as account_router
from identity_server.admin_api import router as admin_router
from identity_server.audit import AuditLogger
from identity_server.authorize import router as authorize_router
from identity_server.config import (
    BCRYPT_ROUNDS,
    DATABASE_URL,
    ISSUER,
    LOG_LEVEL,
    REQUEST_TIMEOUT_SECONDS,
    SIGNING_KEY_PATH,
    SIGNING_KEY_PREVIOUS_PATH,
    USER_VERIFIER_TIMEOUT_SECONDS,
    USER_VERIFIER_URL,
)
from identity_server.cors import ClientCORSMiddleware
from identity_server.database import init_db, make_engine, make_session_factory
from identity_server.endsession import router as endsession_router
from identity_server.errors import (
    SERVER_ERROR,
    OAuthError,
    error_response,
    oauth_error_handler,
    unhandled_error_handler,
    validation_error_handler,
)
from identity_server.grant_store import GrantStore
from identity_server.introspect import router as introspect_router
from identity_server.keys import TokenIssuer, load_key, load_or_create_key
from identity_server.registry import Registry
from identity_server.revoke import router as revoke_router
from identity_server.seed import build_registry
from identity_server.token_endpoint import router as token_router
from identity_server.users import DEFAULT_DEV_USERS, CredentialVerifier, InMemoryUserStore, RemoteCredentialVerifier
from identity_server.well_known import router as well_known_router

logger = logging.getLogger(__name__)


def default_issuer(issuer_url: str = ISSUER) -> TokenIssuer:
    """Active key from IDP_SIGNING_KEY_PATH (created if missing) plus the optional previous key."""
    active = load_or_create_key(SIGNING_KEY_PATH)
    previous = []
    if SIGNING_KEY_PREVIOUS_PATH:
        key = load_key(SIGNING_KEY_PREVIOUS_PATH)
        if key is not None:
            previous.append(key)
    return TokenIssuer(issuer_url, active, previous)


def default_verifier() -> CredentialVerifier:
    if USER_VERIFIER_URL:
        logger.info("Verifying credentials against %s", USER_VERIFIER_URL)
        return RemoteCredentialVerifier(USER_VERIFIER_URL, timeout=USER_VERIFIER_TIMEOUT_SECONDS)
    logger.warning("Using built-in development users; set IDP_USER_VERIFIER_URL for real accounts")
    return InMemoryUserStore.from_config(DEFAULT_DEV_USERS, bcrypt_rounds=BCRYPT_ROUNDS)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Drop expired grants and retired keys on startup; release the verifier on shutdown."""
    now = datetime.now(timezone.utc)
    app.state.grant_store.purge_expired(now)
    app.state.issuer.prune(now)
    yield
    close = getattr(app.state.verifier, "close", None)
    if close is not None:
        close()


def create_app(
    registry: Registry | None = None,
    database_url: str | None = None,
    verifier: CredentialVerifier | None = None,
    issuer: TokenIssuer | None = None,
    request_timeout: float = REQUEST_TIMEOUT_SECONDS,
) -> FastAPI:
    engine = make_engine(database_url or DATABASE_URL)
    init_db(engine)
    session_factory = make_session_factory(engine)

    app = FastAPI(title="Identity Server", version="1.0.0", lifespan=lifespan)
    app.state.registry = registry or build_registry()
    app.state.grant_store = GrantStore(session_factory)
    app.state.audit = AuditLogger(session_factory)
    app.state.issuer = issuer or default_issuer()
    app.state.verifier = verifier or default_verifier()
    logger.info("Identity server ready: issuer=%s kid=%s", app.state.issuer.issuer, app.state.issuer.active_kid)

    app.add_exception_handler(OAuthError, oauth_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    @app.middleware("http")
    async def request_timeout_middleware(request: Request, call_next):
        try:
            return await asyncio.wait_for(call_next(request), timeout=request_timeout)
        except asyncio.TimeoutError:
            logger.error("Request timed out after %ss: %s %s", request_timeout, request.method, request.url.path)
            return error_response(SERVER_ERROR, "Request timed out", 500)

    # Outermost, so preflights are answered before the timeout wrapper
    app.add_middleware(ClientCORSMiddleware, allow_origins=app.state.registry.clients.cors_origins())

    app.include_router(authorize_router, tags=["authorize"])
    app.include_router(account_router, tags=["account"])
    app.include_router(token_router, tags=["token"])
    app.include_router(revoke_router, tags=["revocation"])
    app.include_router(introspect_router, tags=["introspection"])
    app.include_router(endsession_router, tags=["endsession"])
    app.include_router(well_known_router, tags=["well-known"])
    app.include_router(admin_router, tags=["admin"])

    @app.get("/health")
    def health():
        """Health check endpoint."""
        return {"status": "ok", "service": "identity_server"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(
        "identity_server.main:app",
        host="127.0.0.1",
        port=5001,
        reload=True,
    )
