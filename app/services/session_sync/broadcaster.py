from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional

logger = logging.getLogger("app.session_sync.broadcaster")

Publisher = Callable[[str, str], Awaitable[None]]


def user_channel(channel: str, user_id: str) -> str:
    return f"{channel}:{user_id}"


class ChangeBroadcaster:
    """Fire-and-forget notification of user/session changes to open clients.

    Publishing runs in a background task; its failure is logged and never
    reaches the caller.
    """

    def __init__(self, publisher: Optional[Publisher], channel: str) -> None:
        self._publisher = publisher
        self._channel = channel
        self._pending: set[asyncio.Task[None]] = set()

    def notify_user_update(
        self, user_id: str, updated_at: Optional[datetime] = None, *, event: str = "user-update"
    ) -> None:
        if self._publisher is None:
            return
        payload: dict[str, object] = {"type": event, "userId": user_id}
        if updated_at is not None:
            payload["updatedAt"] = updated_at.isoformat()
        message = json.dumps(payload)
        task = asyncio.create_task(self._publish(user_id, message))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _publish(self, user_id: str, message: str) -> None:
        assert self._publisher is not None
        try:
            await self._publisher(user_channel(self._channel, user_id), message)
        except Exception as exc:
            logger.warning("sync broadcast failed for user_id=%s: %s", user_id, exc)

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
