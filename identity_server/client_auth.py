"""
Client authentication at the token, revocation and introspection endpoints. RFC 6749 §2.3.1.
Credentials via Authorization: Basic base64(client_id:client_secret) or client_id + client_secret in form.
"""
import base64
import binascii
import logging
from urllib.parse import unquote

from fastapi import Request

from identity_server.errors import invalid_client
from identity_server.registry import Client, Registry

logger = logging.getLogger(__name__)


def _parse_basic(header_value: str) -> tuple[str, str] | None:
    """Parse 'Basic <base64(client_id:client_secret)>'. Returns (client_id, client_secret) or None."""
    if not header_value or not header_value.strip().lower().startswith("basic "):
        return None
    try:
        encoded = header_value.strip()[6:].strip()
        decoded = base64.b64decode(encoded, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    if ":" not in decoded:
        return None
    client_id, _, client_secret = decoded.partition(":")
    # RFC 6749 §2.3.1: both parts are form-urlencoded before base64
    return unquote(client_id), unquote(client_secret)


def get_client_credentials(
    request: Request,
    client_id_form: str | None,
    client_secret_form: str | None,
) -> tuple[str | None, str | None]:
    """
    (client_id, client_secret) from Authorization Basic or from form.
    Basic wins when present; a form client_id that disagrees with it is rejected.
    """
    basic = _parse_basic(request.headers.get("Authorization", ""))
    if basic:
        if client_id_form and client_id_form.strip() != basic[0]:
            raise invalid_client("client_id in form does not match Authorization header")
        return basic
    if client_id_form:
        return client_id_form.strip(), client_secret_form
    return None, None


def authenticate_client(
    registry: Registry,
    request: Request,
    client_id_form: str | None,
    client_secret_form: str | None,
) -> Client:
    """
    Resolve and authenticate the calling client. Public clients identify with client_id alone;
    confidential clients must present the right secret. Raises 401 invalid_client otherwise.
    """
    client_id, client_secret = get_client_credentials(request, client_id_form, client_secret_form)
    if not client_id:
        raise invalid_client("client_id is required")
    client = registry.clients.lookup_client(client_id)
    if client is None:
        logger.info("Unknown client_id at client authentication: %s", client_id)
        raise invalid_client("Unknown client")
    if client.is_confidential:
        if not registry.clients.validate_secret(client, client_secret):
            logger.info("Client authentication failed for %s", client_id)
            raise invalid_client("Invalid client credentials")
    elif client_secret:
        raise invalid_client("Public client must not send a client_secret")
    return client
