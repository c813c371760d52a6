"""
FastAPI dependencies handing endpoints the components built in create_app().
"""
from fastapi import Request

from identity_server.audit import AuditLogger
from identity_server.grant_store import GrantStore
from identity_server.keys import TokenIssuer
from identity_server.registry import Registry
from identity_server.users import CredentialVerifier


def get_registry(request: Request) -> Registry:
    return request.app.state.registry


def get_grant_store(request: Request) -> GrantStore:
    return request.app.state.grant_store


def get_issuer(request: Request) -> TokenIssuer:
    return request.app.state.issuer


def get_audit(request: Request) -> AuditLogger:
    return request.app.state.audit


def get_verifier(request: Request) -> CredentialVerifier:
    return request.app.state.verifier
