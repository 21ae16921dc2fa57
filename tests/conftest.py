from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timezone
from typing import AsyncGenerator, Callable, Optional
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.models.base import Base
from app.services.session_sync.errors import AccountConflictError, PersistenceError
from app.services.session_sync.store import LocalUser, SessionRecord, UserProfile


class FakeAuthStore:
    """In-memory AuthStore that enforces the same unique keys as the database.

    Lookups and inserts yield to the event loop, so concurrent callers
    interleave the way they would against a real database.
    """

    def __init__(self) -> None:
        self.users: dict[str, LocalUser] = {}
        self.links: dict[tuple[str, str], str] = {}
        self.sessions: dict[str, SessionRecord] = {}
        self.fail_session_writes = False
        self.fail_link_writes = False
        self.fail_profile_updates = False
        self.create_user_calls = 0

    def add_user(self, user: LocalUser) -> LocalUser:
        self.users[user.id] = user
        return user

    def _email_taken(self, email: str, user_id: Optional[str] = None) -> bool:
        return any(u.email == email and u.id != user_id for u in self.users.values())

    async def find_user_by_external_id(
        self, provider: str, provider_account_id: str
    ) -> Optional[LocalUser]:
        await asyncio.sleep(0)
        user_id = self.links.get((provider, provider_account_id))
        return self.users.get(user_id) if user_id else None

    async def find_unlinked_user_by_external_id(
        self, provider: str, external_id: str
    ) -> Optional[LocalUser]:
        linked = {uid for (p, _), uid in self.links.items() if p == provider}
        for user in self.users.values():
            if user.external_id == external_id and user.id not in linked:
                return user
        return None

    async def get_user(self, user_id: str) -> Optional[LocalUser]:
        return self.users.get(user_id)

    async def create_user(
        self, profile: UserProfile, *, provider: str, provider_account_id: str
    ) -> LocalUser:
        self.create_user_calls += 1
        await asyncio.sleep(0)
        if (provider, provider_account_id) in self.links or self._email_taken(profile.email):
            raise AccountConflictError("duplicate_identity")
        now = datetime.now(timezone.utc)
        user = LocalUser(
            id=str(uuid4()),
            email=profile.email,
            username=profile.username,
            display_name=profile.display_name,
            avatar_url=profile.avatar_url,
            roles=list(profile.roles),
            metadata=dict(profile.metadata),
            external_id=profile.external_id,
            created_at=now,
            updated_at=now,
        )
        self.users[user.id] = user
        self.links[(provider, provider_account_id)] = user.id
        return user

    async def update_user_profile(self, user_id: str, profile: UserProfile) -> LocalUser:
        if self.fail_profile_updates:
            raise PersistenceError("user_update_failed")
        user = self.users[user_id]
        if self._email_taken(profile.email, user_id):
            raise AccountConflictError("profile_conflict")
        updated = replace(
            user,
            email=profile.email,
            username=profile.username,
            display_name=profile.display_name,
            avatar_url=profile.avatar_url,
            roles=list(profile.roles),
            metadata={**user.metadata, **profile.metadata},
            external_id=profile.external_id,
            updated_at=datetime.now(timezone.utc),
        )
        self.users[user_id] = updated
        return updated

    async def create_account_link(
        self, user_id: str, provider: str, provider_account_id: str
    ) -> bool:
        if self.fail_link_writes:
            raise PersistenceError("link_insert_failed")
        owner = self.links.get((provider, provider_account_id))
        if owner is not None and owner != user_id:
            raise AccountConflictError("link_owned_by_other_user")
        self.links[(provider, provider_account_id)] = user_id
        return True

    async def create_session(self, session: SessionRecord) -> SessionRecord:
        if self.fail_session_writes:
            raise PersistenceError("session_insert_failed")
        if session.token in self.sessions:
            raise AccountConflictError("duplicate_token")
        self.sessions[session.token] = session
        return session

    async def get_session_by_token(self, token: str) -> Optional[SessionRecord]:
        return self.sessions.get(token)

    async def delete_session(self, token: str) -> bool:
        return self.sessions.pop(token, None) is not None


def _upstream_record(external_id: object = 42, **overrides: object) -> dict[str, object]:
    record: dict[str, object] = {
        "externalId": external_id,
        "email": "alice@example.com",
        "username": "alice",
        "displayName": "Alice Liddell",
        "roles": ["subscriber"],
    }
    record.update(overrides)
    return record


@pytest.fixture
def store() -> FakeAuthStore:
    return FakeAuthStore()


@pytest.fixture
def make_record() -> Callable[..., dict[str, object]]:
    return _upstream_record


@pytest_asyncio.fixture
async def sqlite_session() -> AsyncGenerator[AsyncSession, None]:
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as session:
        yield session
    await engine.dispose()
