from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import delete, exists, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.account_link import AccountLink
from app.models.session import UserSession
from app.models.user import User
from app.services.session_sync.errors import AccountConflictError, PersistenceError
from app.services.session_sync.store import LocalUser, SessionRecord, UserProfile, as_utc

logger = logging.getLogger("app.session_sync.sql_store")


def _to_local_user(row: User) -> LocalUser:
    return LocalUser(
        id=row.id,
        email=row.email,
        username=row.username,
        display_name=row.display_name,
        avatar_url=row.avatar_url,
        roles=list(row.roles or []),
        metadata=dict(row.profile_metadata or {}),
        external_id=row.external_id,
        created_at=as_utc(row.created_at) if row.created_at else None,
        updated_at=as_utc(row.updated_at) if row.updated_at else None,
    )


def _to_session_record(row: UserSession) -> SessionRecord:
    return SessionRecord(
        id=row.id,
        user_id=row.user_id,
        token=row.token,
        expires_at=as_utc(row.expires_at),
        created_at=as_utc(row.created_at),
        refresh_token=row.refresh_token,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
    )


class SqlAlchemyAuthStore:
    """:class:`AuthStore` on top of one request-scoped ``AsyncSession``.

    Uniqueness of ``(provider, provider_account_id)`` and of ``email`` is left
    to the database; a violated constraint rolls the transaction back and
    surfaces as :class:`AccountConflictError`.
    """

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def find_user_by_external_id(
        self, provider: str, provider_account_id: str
    ) -> Optional[LocalUser]:
        query = (
            select(User)
            .join(AccountLink, AccountLink.user_id == User.id)
            .where(
                AccountLink.provider == provider,
                AccountLink.provider_account_id == provider_account_id,
            )
        )
        try:
            result = await self._db.execute(query)
        except SQLAlchemyError as exc:
            raise PersistenceError("user_lookup_failed", detail=str(exc)) from exc
        row = result.scalar_one_or_none()
        return _to_local_user(row) if row is not None else None

    async def find_unlinked_user_by_external_id(
        self, provider: str, external_id: str
    ) -> Optional[LocalUser]:
        has_link = exists().where(
            AccountLink.user_id == User.id, AccountLink.provider == provider
        )
        query = (
            select(User)
            .where(User.external_id == external_id, ~has_link)
            .order_by(User.created_at)
            .limit(1)
        )
        try:
            result = await self._db.execute(query)
        except SQLAlchemyError as exc:
            raise PersistenceError("user_lookup_failed", detail=str(exc)) from exc
        row = result.scalar_one_or_none()
        return _to_local_user(row) if row is not None else None

    async def get_user(self, user_id: str) -> Optional[LocalUser]:
        try:
            row = await self._db.get(User, user_id)
        except SQLAlchemyError as exc:
            raise PersistenceError("user_lookup_failed", detail=str(exc)) from exc
        return _to_local_user(row) if row is not None else None

    async def create_user(
        self, profile: UserProfile, *, provider: str, provider_account_id: str
    ) -> LocalUser:
        user = User(
            email=profile.email,
            username=profile.username,
            display_name=profile.display_name,
            avatar_url=profile.avatar_url,
            roles=list(profile.roles),
            profile_metadata=dict(profile.metadata),
            external_id=profile.external_id,
        )
        self._db.add(user)
        try:
            await self._db.flush()
            self._db.add(
                AccountLink(
                    user_id=user.id,
                    provider=provider,
                    provider_account_id=provider_account_id,
                )
            )
            await self._db.commit()
            await self._db.refresh(user)
        except IntegrityError as exc:
            await self._db.rollback()
            logger.warning(
                "user insert lost a uniqueness race: provider=%s account=%s",
                provider,
                provider_account_id,
            )
            raise AccountConflictError("duplicate_identity", detail=str(exc.orig)) from exc
        except SQLAlchemyError as exc:
            await self._db.rollback()
            raise PersistenceError("user_insert_failed", detail=str(exc)) from exc
        logger.info("created user id=%s provider=%s", user.id, provider)
        return _to_local_user(user)

    async def update_user_profile(self, user_id: str, profile: UserProfile) -> LocalUser:
        try:
            user = await self._db.get(User, user_id)
            if user is None:
                raise PersistenceError("user_missing", detail=user_id)
            user.email = profile.email
            user.username = profile.username
            user.display_name = profile.display_name
            user.avatar_url = profile.avatar_url
            user.roles = list(profile.roles)
            user.profile_metadata = {**(user.profile_metadata or {}), **profile.metadata}
            user.external_id = profile.external_id
            await self._db.commit()
            await self._db.refresh(user)
        except IntegrityError as exc:
            await self._db.rollback()
            raise AccountConflictError("profile_conflict", detail=str(exc.orig)) from exc
        except SQLAlchemyError as exc:
            await self._db.rollback()
            raise PersistenceError("user_update_failed", detail=str(exc)) from exc
        return _to_local_user(user)

    async def create_account_link(
        self, user_id: str, provider: str, provider_account_id: str
    ) -> bool:
        query = select(AccountLink).where(
            AccountLink.provider == provider,
            AccountLink.provider_account_id == provider_account_id,
        )
        try:
            existing = (await self._db.execute(query)).scalar_one_or_none()
            if existing is not None:
                if existing.user_id != user_id:
                    raise AccountConflictError(
                        "link_owned_by_other_user", detail=existing.user_id
                    )
                return True
            self._db.add(
                AccountLink(
                    user_id=user_id,
                    provider=provider,
                    provider_account_id=provider_account_id,
                )
            )
            await self._db.commit()
        except IntegrityError as exc:
            await self._db.rollback()
            # A concurrent writer got there first; fine if it linked the same user
            try:
                winner = (await self._db.execute(query)).scalar_one_or_none()
            except SQLAlchemyError as lookup_exc:
                raise PersistenceError("link_lookup_failed", detail=str(lookup_exc)) from lookup_exc
            if winner is not None and winner.user_id == user_id:
                return True
            raise AccountConflictError("link_conflict", detail=str(exc.orig)) from exc
        except SQLAlchemyError as exc:
            await self._db.rollback()
            raise PersistenceError("link_insert_failed", detail=str(exc)) from exc
        return True

    async def create_session(self, session: SessionRecord) -> SessionRecord:
        row = UserSession(
            id=session.id,
            user_id=session.user_id,
            token=session.token,
            expires_at=session.expires_at,
            created_at=session.created_at,
            updated_at=session.created_at,
            refresh_token=session.refresh_token,
            ip_address=session.ip_address,
            user_agent=session.user_agent,
        )
        self._db.add(row)
        try:
            await self._db.commit()
        except SQLAlchemyError as exc:
            await self._db.rollback()
            raise PersistenceError("session_insert_failed", detail=str(exc)) from exc
        return session

    async def get_session_by_token(self, token: str) -> Optional[SessionRecord]:
        try:
            result = await self._db.execute(
                select(UserSession).where(UserSession.token == token)
            )
        except SQLAlchemyError as exc:
            raise PersistenceError("session_lookup_failed", detail=str(exc)) from exc
        row = result.scalar_one_or_none()
        return _to_session_record(row) if row is not None else None

    async def delete_session(self, token: str) -> bool:
        try:
            result = await self._db.execute(
                delete(UserSession).where(UserSession.token == token)
            )
            await self._db.commit()
        except SQLAlchemyError as exc:
            await self._db.rollback()
            raise PersistenceError("session_delete_failed", detail=str(exc)) from exc
        return bool(result.rowcount)
