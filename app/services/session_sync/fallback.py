"""Degraded, non-durable session issuance.

Used only when the user is already resolved but the session row could not
be written. Fallback sessions live in an injected in-process registry: they
do not survive a restart and cannot be revoked by deleting a session row.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from app.core.security import mask_token
from app.schemas.auth import UpstreamIdentity
from app.services.session_sync.errors import PersistenceError
from app.services.session_sync.issuer import IssuedSession, SessionIssuer
from app.services.session_sync.store import LocalUser, SessionRecord, as_utc

logger = logging.getLogger("app.session_sync.fallback")


@dataclass(frozen=True)
class FallbackSession:
    session: SessionRecord
    user: LocalUser
    external_id: str


class FallbackSessionRegistry:
    def __init__(
        self,
        capacity: int,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._capacity = capacity
        self._clock = clock
        self._entries: dict[str, FallbackSession] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [
            token
            for token, entry in self._entries.items()
            if as_utc(entry.session.expires_at) <= now
        ]
        for token in expired:
            del self._entries[token]
        return len(expired)

    def register(self, entry: FallbackSession) -> bool:
        if len(self._entries) >= self._capacity:
            self.purge_expired()
        if len(self._entries) >= self._capacity:
            return False
        self._entries[entry.session.token] = entry
        return True

    def lookup(self, token: str) -> Optional[FallbackSession]:
        entry = self._entries.get(token)
        if entry is None:
            return None
        if as_utc(entry.session.expires_at) <= self._clock():
            del self._entries[token]
            return None
        return entry

    def invalidate(self, token: str) -> bool:
        return self._entries.pop(token, None) is not None


class FallbackSessionPath:
    def __init__(self, issuer: SessionIssuer, registry: FallbackSessionRegistry) -> None:
        self._issuer = issuer
        self._registry = registry

    def issue(
        self,
        identity: UpstreamIdentity,
        user: LocalUser,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> IssuedSession:
        record = self._issuer.new_record(
            user.id, ip_address=ip_address, user_agent=user_agent
        )
        entry = FallbackSession(session=record, user=user, external_id=identity.external_id)
        if not self._registry.register(entry):
            raise PersistenceError("fallback_capacity_exhausted")
        logger.warning(
            "fallback session issued user_id=%s token=%s (not durable)",
            user.id,
            mask_token(record.token),
        )
        return IssuedSession(
            session=record, cookie=self._issuer.cookie_for(record.token), durable=False
        )
