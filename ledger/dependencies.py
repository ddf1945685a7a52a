from typing import Optional

from fastapi import Header, Request

from .config import Settings
from .errors import AuthenticationError, AuthorizationError
from .identity import IdentityProvider
from .service import LedgerService


def get_settings_dep(request: Request) -> Settings:
    return request.app.state.settings


def get_ledger_service(request: Request) -> LedgerService:
    return request.app.state.ledger


def get_entitlement_service(request: Request):
    return request.app.state.entitlements


def get_payment_service(request: Request):
    return request.app.state.payments


def get_identity_provider(request: Request) -> IdentityProvider:
    return request.app.state.identity


def current_user_id(request: Request, authorization: Optional[str] = Header(default=None)) -> str:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise AuthenticationError("Missing bearer token")
    identity = get_identity_provider(request).authenticate(authorization[7:].strip())
    return identity.user_id


def require_admin(request: Request, x_admin_key: Optional[str] = Header(default=None)) -> None:
    if x_admin_key != get_settings_dep(request).admin_api_key:
        raise AuthorizationError("Unauthorized")
