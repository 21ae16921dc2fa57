from __future__ import annotations

import logging

from app.services.session_sync.errors import PersistenceError
from app.services.session_sync.store import AuthStore

logger = logging.getLogger("app.session_sync.linker")


class AccountLinker:
    """Records provider -> local user associations.

    A failed link never fails the sync: the user row already exists and the
    next sync attempt repairs the missing link.
    """

    def __init__(self, store: AuthStore) -> None:
        self._store = store

    async def link(self, local_user_id: str, provider: str, provider_account_id: str) -> bool:
        try:
            linked = await self._store.create_account_link(
                local_user_id, provider, provider_account_id
            )
        except PersistenceError as exc:
            logger.warning(
                "account link failed: user_id=%s provider=%s account=%s error=%s",
                local_user_id,
                provider,
                provider_account_id,
                exc,
            )
            return False
        if not linked:
            logger.warning(
                "account link not recorded: user_id=%s provider=%s account=%s",
                local_user_id,
                provider,
                provider_account_id,
            )
        return linked
