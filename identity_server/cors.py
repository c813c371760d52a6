"""
CORS for the endpoints a browser client calls directly (token, revocation, discovery, JWKS).
Origins come from the clients' allowed_cors_origins; the login page and admin API get no CORS headers.
"""
from starlette.middleware.cors import CORSMiddleware
from starlette.types import ASGIApp, Receive, Scope, Send

from identity_server.revoke import REVOCATION_PATH
from identity_server.token_endpoint import TOKEN_PATH

CORS_PATHS = (TOKEN_PATH, REVOCATION_PATH, "/.well-known/")


class ClientCORSMiddleware:
    def __init__(self, app: ASGIApp, allow_origins: list[str], paths: tuple[str, ...] = CORS_PATHS):
        self.app = app
        self.paths = paths
        self.cors = CORSMiddleware(
            app,
            allow_origins=allow_origins,
            allow_methods=["GET", "POST"],
            allow_headers=["Authorization", "Content-Type"],
            max_age=600,
        )

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "http" and scope["path"].startswith(self.paths):
            await self.cors(scope, receive, send)
        else:
            await self.app(scope, receive, send)
