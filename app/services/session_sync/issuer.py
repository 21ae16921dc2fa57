from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from uuid import uuid4

from starlette.responses import Response

from app.core.security import generate_session_token, mask_token
from app.services.session_sync.store import AuthStore, SessionRecord

logger = logging.getLogger("app.session_sync.issuer")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CookieDirective:
    name: str
    value: str
    max_age: int
    secure: bool
    path: str = "/"
    httponly: bool = True
    samesite: str = "lax"

    def apply(self, response: Response) -> None:
        response.set_cookie(
            key=self.name,
            value=self.value,
            max_age=self.max_age,
            path=self.path,
            secure=self.secure,
            httponly=self.httponly,
            samesite=self.samesite,
        )

    def clear(self, response: Response) -> None:
        response.delete_cookie(
            key=self.name,
            path=self.path,
            secure=self.secure,
            httponly=self.httponly,
            samesite=self.samesite,
        )


@dataclass(frozen=True)
class IssuedSession:
    session: SessionRecord
    cookie: CookieDirective
    durable: bool = True


class SessionIssuer:
    """Creates local sessions. A session is only handed out once its row is stored."""

    def __init__(
        self,
        store: AuthStore,
        *,
        expires_in: timedelta,
        cookie_name: str,
        cookie_secure: bool,
        clock: Callable[[], datetime] = _utcnow,
        token_factory: Callable[[], str] = generate_session_token,
    ) -> None:
        self._store = store
        self._expires_in = expires_in
        self._cookie_name = cookie_name
        self._cookie_secure = cookie_secure
        self._clock = clock
        self._token_factory = token_factory

    @property
    def expires_in(self) -> timedelta:
        return self._expires_in

    def cookie_for(self, token: str) -> CookieDirective:
        return CookieDirective(
            name=self._cookie_name,
            value=token,
            max_age=int(self._expires_in.total_seconds()),
            secure=self._cookie_secure,
        )

    def new_record(
        self,
        user_id: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> SessionRecord:
        now = self._clock()
        return SessionRecord(
            id=str(uuid4()),
            user_id=user_id,
            token=self._token_factory(),
            expires_at=now + self._expires_in,
            created_at=now,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    async def issue(
        self,
        user_id: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> IssuedSession:
        record = self.new_record(user_id, ip_address=ip_address, user_agent=user_agent)
        # PersistenceError propagates: an unstored token is never issued
        stored = await self._store.create_session(record)
        logger.info(
            "session issued user_id=%s token=%s expires_at=%s",
            user_id,
            mask_token(stored.token),
            stored.expires_at.isoformat(),
        )
        return IssuedSession(session=stored, cookie=self.cookie_for(stored.token))
