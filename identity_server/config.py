"""
Identity server configuration. Values come from the environment; no secrets in this file.
Client and scope definitions live in seed.py.
"""
import os


def _env_bool(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


# Issuer URL (public identifier, also the base of every endpoint URL)
ISSUER = os.environ.get("OAUTH_ISSUER", "https://localhost:5001").rstrip("/")

# Grant store; SQLite for development
DATABASE_URL = os.environ.get("IDP_DATABASE_URL", "sqlite:///./identity_server.db")

# Authorization code lifetime (seconds). Never longer than 10 minutes.
MAX_CODE_TTL_SECONDS = 600
CODE_TTL_SECONDS = min(int(os.environ.get("IDP_CODE_TTL_SECONDS", "300")), MAX_CODE_TTL_SECONDS)

# ID token lifetime (seconds)
ID_TOKEN_TTL_SECONDS = int(os.environ.get("IDP_ID_TOKEN_TTL_SECONDS", "300"))

# Login session cookie
SESSION_COOKIE_NAME = "idsrv.session"
SESSION_TTL_SECONDS = int(os.environ.get("IDP_SESSION_TTL_SECONDS", "28800"))
SECURE_COOKIES = _env_bool("IDP_SECURE_COOKIES", "true")
# Login form anti-forgery cookie (SameSite=Strict) and its lifetime
ANTIFORGERY_COOKIE_NAME = "idsrv.antiforgery"
ANTIFORGERY_TTL_SECONDS = int(os.environ.get("IDP_ANTIFORGERY_TTL_SECONDS", "3600"))

# RSA private key PEM for signing. Generated and saved here if missing.
SIGNING_KEY_PATH = os.environ.get("IDP_SIGNING_KEY_PATH", ".idp_signing_key.pem")
# Optional previous key: published in JWKS so tokens it signed still verify; never signs.
SIGNING_KEY_PREVIOUS_PATH = os.environ.get("IDP_SIGNING_KEY_PREVIOUS_PATH", "").strip() or None

# bcrypt cost for client secrets and test user passwords
BCRYPT_ROUNDS = int(os.environ.get("IDP_BCRYPT_ROUNDS", "12"))

# Optional JSON file replacing the built-in client list
CLIENTS_FILE = os.environ.get("IDP_CLIENTS_FILE", "").strip() or None

# Development only: honour require_pkce=false on client definitions
ALLOW_PKCE_OPTIONAL = _env_bool("IDP_ALLOW_PKCE_OPTIONAL")

# External credential verifier; unset = in-memory test users
USER_VERIFIER_URL = os.environ.get("IDP_USER_VERIFIER_URL", "").strip() or None
USER_VERIFIER_TIMEOUT_SECONDS = float(os.environ.get("IDP_USER_VERIFIER_TIMEOUT_SECONDS", "5"))

# Rate limiting: per-IP, per minute. 0 disables.
RATE_LIMIT_LOGIN_PER_MINUTE = int(os.environ.get("IDP_RATE_LIMIT_LOGIN_PER_MINUTE", "20"))
RATE_LIMIT_TOKEN_PER_MINUTE = int(os.environ.get("IDP_RATE_LIMIT_TOKEN_PER_MINUTE", "60"))

# Upper bound on a single request before server_error is returned
REQUEST_TIMEOUT_SECONDS = float(os.environ.get("IDP_REQUEST_TIMEOUT_SECONDS", "30"))

LOG_LEVEL = os.environ.get("IDP_LOG_LEVEL", "INFO").upper()

# Scope that grants read access to the registry API
ADMIN_SCOPE = "adminui"
