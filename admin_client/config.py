"""
Admin client configuration. Values from the environment.
"""
import os

# Identity server base URL (its issuer)
IDP_BASE_URL = os.environ.get("ADMIN_IDP_BASE_URL", "https://localhost:5001").rstrip("/")

# Client registered at the identity server with the adminui scope (client_credentials)
CLIENT_ID = os.environ.get("ADMIN_CLIENT_ID", "admin-monitor")
CLIENT_SECRET = os.environ.get("ADMIN_CLIENT_SECRET", "admin-monitor-secret")

SCOPE = os.environ.get("ADMIN_SCOPE", "adminui")

REQUEST_TIMEOUT_SECONDS = float(os.environ.get("ADMIN_REQUEST_TIMEOUT_SECONDS", "10"))

# Development certificates are self-signed
VERIFY_TLS = os.environ.get("ADMIN_VERIFY_TLS", "true").strip().lower() in ("1", "true", "yes", "on")
