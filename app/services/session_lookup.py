from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from app.core.exceptions import BusinessError
from app.core.security import mask_token
from app.i18n.codes import ErrorCode
from app.services.session_sync.fallback import FallbackSessionRegistry
from app.services.session_sync.store import AuthStore, LocalUser, SessionRecord

logger = logging.getLogger("app.session_lookup")


@dataclass(frozen=True)
class CurrentSession:
    user: LocalUser
    session: SessionRecord
    durable: bool = True


class SessionLookup:
    """Resolves a local session cookie to its user.

    Durable rows are checked first, then the fallback registry. Expired rows
    are deleted on sight.
    """

    def __init__(self, store: AuthStore, registry: FallbackSessionRegistry) -> None:
        self._store = store
        self._registry = registry

    async def find(self, token: str) -> Optional[CurrentSession]:
        try:
            return await self.require(token)
        except BusinessError:
            return None

    async def require(self, token: str) -> CurrentSession:
        session = await self._store.get_session_by_token(token)
        if session is not None:
            if session.is_expired():
                logger.info("expired session removed token=%s", mask_token(token))
                await self._store.delete_session(token)
                raise BusinessError(ErrorCode.AUTH_TOKEN_EXPIRED)
            user = await self._store.get_user(session.user_id)
            if user is None:
                raise BusinessError(ErrorCode.USER_NOT_FOUND)
            return CurrentSession(user=user, session=session)

        fallback = self._registry.lookup(token)
        if fallback is not None:
            return CurrentSession(user=fallback.user, session=fallback.session, durable=False)
        raise BusinessError(ErrorCode.AUTH_TOKEN_INVALID)

    async def revoke(self, token: str) -> bool:
        removed_fallback = self._registry.invalidate(token)
        removed_row = await self._store.delete_session(token)
        logger.info(
            "session revoked token=%s durable=%s fallback=%s",
            mask_token(token),
            removed_row,
            removed_fallback,
        )
        return removed_row or removed_fallback
