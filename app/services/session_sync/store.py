"""Storage interface the synchronization engine depends on.

The orchestrator and its collaborators only see :class:`AuthStore`; the
SQLAlchemy implementation lives in ``sql_store``. Implementations raise
:class:`~app.services.session_sync.errors.PersistenceError` for write or
read failures and :class:`AccountConflictError` when a unique constraint
rejects a write.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Protocol


@dataclass(frozen=True)
class LocalUser:
    id: str
    email: str
    username: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    roles: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    external_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class UserProfile:
    """Field values for a user row, as derived from an upstream identity."""

    email: str
    username: Optional[str]
    display_name: Optional[str]
    avatar_url: Optional[str]
    roles: list[str]
    metadata: dict[str, Any]
    external_id: str

    def differs_from(self, user: LocalUser) -> bool:
        return (
            self.email != user.email
            or self.username != user.username
            or self.display_name != user.display_name
            or self.avatar_url != user.avatar_url
            or list(self.roles) != list(user.roles)
            or {**user.metadata, **self.metadata} != user.metadata
        )


@dataclass(frozen=True)
class SessionRecord:
    id: str
    user_id: str
    token: str
    expires_at: datetime
    created_at: datetime
    refresh_token: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        current = now or datetime.now(timezone.utc)
        return as_utc(self.expires_at) <= current


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything we write is UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class AuthStore(Protocol):
    async def find_user_by_external_id(
        self, provider: str, provider_account_id: str
    ) -> Optional[LocalUser]:
        """Return the user linked to ``(provider, provider_account_id)``."""
        ...

    async def find_unlinked_user_by_external_id(
        self, provider: str, external_id: str
    ) -> Optional[LocalUser]:
        """Return a user carrying ``external_id`` that has no link for ``provider``."""
        ...

    async def get_user(self, user_id: str) -> Optional[LocalUser]:
        ...

    async def create_user(
        self, profile: UserProfile, *, provider: str, provider_account_id: str
    ) -> LocalUser:
        """Insert the user row and its account link in one transaction."""
        ...

    async def update_user_profile(self, user_id: str, profile: UserProfile) -> LocalUser:
        ...

    async def create_account_link(
        self, user_id: str, provider: str, provider_account_id: str
    ) -> bool:
        """Insert the link if absent. True when the link points at ``user_id``."""
        ...

    async def create_session(self, session: SessionRecord) -> SessionRecord:
        ...

    async def get_session_by_token(self, token: str) -> Optional[SessionRecord]:
        ...

    async def delete_session(self, token: str) -> bool:
        ...
