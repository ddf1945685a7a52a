import logging
import secrets
from typing import Callable, Optional, Protocol

from pydantic import BaseModel, Field

from .errors import AuthenticationError

logger = logging.getLogger(__name__)

AuthCallback = Callable[[Optional[str]], None]


class Identity(BaseModel):
    user_id: str
    profile: dict = Field(default_factory=dict)


class IdentityProvider(Protocol):
    def sign_in(self, user_id: str, profile: Optional[dict] = None) -> str: ...
    def authenticate(self, credential: str) -> Identity: ...
    def on_auth_change(self, callback: AuthCallback) -> Callable[[], None]: ...


class InMemoryIdentityProvider:
    """Bearer-token sessions for locally registered users."""

    def __init__(self):
        self._sessions: dict[str, Identity] = {}
        self._listeners: list[AuthCallback] = []

    def sign_in(self, user_id: str, profile: Optional[dict] = None) -> str:
        token = secrets.token_urlsafe(32)
        self._sessions[token] = Identity(user_id=user_id, profile=profile or {})
        self._notify(user_id)
        return token

    def sign_out(self, token: str) -> None:
        if self._sessions.pop(token, None) is not None:
            self._notify(None)

    def authenticate(self, credential: str) -> Identity:
        identity = self._sessions.get(credential)
        if identity is None:
            raise AuthenticationError("Invalid or expired session")
        return identity

    def on_auth_change(self, callback: AuthCallback) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _notify(self, user_id: Optional[str]) -> None:
        for listener in list(self._listeners):
            listener(user_id)
