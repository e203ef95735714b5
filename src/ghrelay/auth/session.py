from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass
from typing import Protocol

from fastapi import Request

from ..errors import LoginRequired

SESSION_USER_KEY = "user"


@dataclass(frozen=True)
class User:
    login: str
    password: str

    def __repr__(self) -> str:
        return f"User(login={self.login!r})"


class SessionStore(Protocol):
    def is_authenticated(self, request: Request) -> bool: ...

    def current_user(self, request: Request) -> User | None: ...

    def authenticate(self, login: str, password: str) -> User | None: ...

    def login(self, request: Request, user: User) -> None: ...

    def logout(self, request: Request) -> None: ...


class UserSessionStore:
    """Known operators plus the signed session cookie.

    Requires ``SessionMiddleware`` in front of every route that touches it.
    """

    def __init__(self, users: dict[str, User]):
        self._users = dict(users)

    @classmethod
    def single(cls, login: str, password: str) -> "UserSessionStore":
        return cls({login: User(login=login, password=password)})

    def current_user(self, request: Request) -> User | None:
        login = request.session.get(SESSION_USER_KEY)
        if not login:
            return None
        return self._users.get(login)

    def is_authenticated(self, request: Request) -> bool:
        return self.current_user(request) is not None

    def authenticate(self, login: str, password: str) -> User | None:
        user = self._users.get(login)
        if user is None:
            return None
        if not hmac.compare_digest(user.password.encode(), password.encode()):
            return None
        return user

    def login(self, request: Request, user: User) -> None:
        request.session[SESSION_USER_KEY] = user.login

    def logout(self, request: Request) -> None:
        request.session.clear()


def guard(redirect_target: str):
    """Session gate dependency: redirect (307) to ``redirect_target`` unless logged in."""

    async def _require_session(request: Request) -> None:
        sessions: SessionStore = request.app.state.sessions
        if not sessions.is_authenticated(request):
            logging.debug("unauthenticated %s %s -> %s", request.method, request.url.path, redirect_target)
            raise LoginRequired(redirect_target)

    return _require_session


__all__ = ["User", "SessionStore", "UserSessionStore", "guard"]
