from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, Mapping

from pydantic import ValidationError

from app.schemas.auth import UpstreamIdentity
from app.services.session_sync.errors import (
    AccountConflictError,
    PersistenceError,
    ResolutionError,
)
from app.services.session_sync.linker import AccountLinker
from app.services.session_sync.store import AuthStore, LocalUser, UserProfile

logger = logging.getLogger("app.session_sync.resolver")


@dataclass(frozen=True)
class Resolution:
    user: LocalUser
    created: bool


class UserResolver:
    """Maps an upstream identity onto exactly one local user.

    Lookups go through the account link table keyed by
    ``(provider, external id)``, never by email: an email reassigned upstream
    must not hand over someone else's local account.
    """

    def __init__(
        self,
        store: AuthStore,
        linker: AccountLinker,
        *,
        provider: str,
        numeric_ids: bool = True,
    ) -> None:
        self._store = store
        self._linker = linker
        self._provider = provider
        self._numeric_ids = numeric_ids

    @property
    def provider(self) -> str:
        return self._provider

    def parse_identity(self, record: Mapping[str, Any]) -> UpstreamIdentity:
        try:
            return UpstreamIdentity.model_validate(
                record, context={"numeric_ids": self._numeric_ids}
            )
        except ValidationError as exc:
            fields = ",".join(
                ".".join(str(part) for part in err["loc"]) for err in exc.errors()
            )
            raise ResolutionError("malformed_identity", detail=fields or str(exc)) from exc

    def build_profile(self, identity: UpstreamIdentity) -> UserProfile:
        external_id: object = identity.external_id
        if self._numeric_ids:
            external_id = int(identity.external_id)
        metadata = {
            **identity.metadata,
            "externalId": external_id,
            "provider": self._provider,
        }
        return UserProfile(
            email=identity.email,
            username=identity.resolved_username,
            display_name=identity.resolved_display_name,
            avatar_url=identity.avatar_url,
            roles=list(identity.roles),
            metadata=metadata,
            external_id=identity.external_id,
        )

    async def resolve(self, identity: UpstreamIdentity) -> Resolution:
        account_id = identity.external_id
        profile = self.build_profile(identity)

        user = await self._store.find_user_by_external_id(self._provider, account_id)
        if user is not None:
            logger.info("found linked user id=%s account=%s", user.id, account_id)
            return Resolution(await self._refresh(user, profile), created=False)

        orphan = await self._store.find_unlinked_user_by_external_id(
            self._provider, account_id
        )
        if orphan is not None:
            logger.warning("user id=%s has no %s link, repairing", orphan.id, self._provider)
            await self._linker.link(orphan.id, self._provider, account_id)
            return Resolution(await self._refresh(orphan, profile), created=False)

        try:
            user = await self._store.create_user(
                profile, provider=self._provider, provider_account_id=account_id
            )
        except AccountConflictError as exc:
            # Lost the race (or the email is taken): the link decides who owns it
            winner = await self._store.find_user_by_external_id(self._provider, account_id)
            if winner is None:
                raise ResolutionError("identity_conflict", detail=exc.detail) from exc
            logger.info("concurrent sync created user id=%s first", winner.id)
            return Resolution(winner, created=False)

        logger.info("created user id=%s for account=%s", user.id, account_id)
        return Resolution(user, created=True)

    async def _refresh(self, user: LocalUser, profile: UserProfile) -> LocalUser:
        # Upstream omitting the avatar is not a request to remove it
        if profile.avatar_url is None and user.avatar_url:
            profile = replace(profile, avatar_url=user.avatar_url)
        if not profile.differs_from(user):
            return user
        try:
            return await self._store.update_user_profile(user.id, profile)
        except PersistenceError as exc:
            logger.warning("profile refresh skipped for user id=%s: %s", user.id, exc)
            return user
