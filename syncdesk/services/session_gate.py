from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from syncdesk.models.messages import DecodeError

logger = logging.getLogger(__name__)

LOGIN_PATH = "/login"
LOGOUT_PATH = "/logout"


@dataclass(frozen=True)
class Credentials:
    login: str
    password: str


@dataclass(frozen=True)
class LoginResult:
    token: Optional[str] = None
    error: str = ""

    @property
    def ok(self) -> bool:
        return bool(self.token) and not self.error


class SessionGate:
    """Holds the session token and runs the backend login/logout calls."""

    def __init__(self, transport: Any) -> None:
        self._transport = transport
        self._token: Optional[str] = None

    def is_authenticated(self) -> bool:
        return bool(self._token)

    @property
    def token(self) -> Optional[str]:
        return self._token

    def _set_token(self, token: str | None) -> None:
        self._token = token or None
        setter = getattr(self._transport, "set_token", None)
        if callable(setter):
            setter(self._token)

    async def login(self, credentials: Credentials) -> LoginResult:
        payload = {"login": credentials.login, "password": credentials.password}
        try:
            body = await self._transport.send(LOGIN_PATH, payload)
        except DecodeError as exc:
            logger.warning("Login response could not be decoded: %s", exc)
            return LoginResult(error="Unreadable login response")
        body = body if isinstance(body, dict) else {}
        error = str(body.get("error") or "")
        token = str(body.get("token") or "")
        if error or not token:
            logger.info("Login rejected for %s: %s", credentials.login, error or "empty token")
            return LoginResult(error=error or "Login failed")
        self._set_token(token)
        logger.info("Logged in as %s", credentials.login)
        return LoginResult(token=token)

    async def logout(self) -> None:
        try:
            await self._transport.send(LOGOUT_PATH, {})
        except DecodeError:
            logger.debug("Ignoring logout response body")
        self._set_token(None)
        logger.info("Logged out")


__all__ = ["Credentials", "LoginResult", "SessionGate"]
