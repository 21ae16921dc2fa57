from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Optional
from uuid import uuid4

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from app.config import settings
from app.core.exceptions import BusinessError
from app.core.i18n import get_message, resolve_locale
from app.core.redis import subscription
from app.core.response import envelope
from app.db import get_session_factory
from app.i18n.codes import ErrorCode
from app.services.session_lookup import CurrentSession, SessionLookup
from app.services.session_sync.broadcaster import user_channel
from app.services.session_sync.sql_store import SqlAlchemyAuthStore

logger = logging.getLogger("app.ws")

router = APIRouter(prefix="/ws")


async def _send_error(
    websocket: WebSocket, code: ErrorCode, locale: str, trace_id: str
) -> None:
    payload = envelope(code.value, get_message(code, locale), trace_id=trace_id)
    await websocket.send_text(json.dumps(payload, ensure_ascii=False))


async def _authenticate(
    websocket: WebSocket, locale: str, trace_id: str
) -> Optional[CurrentSession]:
    token = websocket.cookies.get(settings.SESSION_COOKIE_NAME)
    if not token:
        await _send_error(websocket, ErrorCode.AUTH_TOKEN_NOT_PROVIDED, locale, trace_id)
        return None
    async with get_session_factory()() as db:
        lookup = SessionLookup(SqlAlchemyAuthStore(db), websocket.app.state.fallback_registry)
        try:
            return await lookup.require(token)
        except BusinessError as exc:
            await _send_error(websocket, exc.code, locale, trace_id)
            return None


async def _forward_updates(websocket: WebSocket, channel: str) -> None:
    async with subscription(channel) as pubsub:
        while True:
            message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            if message and message.get("type") == "message":
                data = message.get("data")
                if isinstance(data, str):
                    await websocket.send_text(data)
            await asyncio.sleep(0.05)


@router.websocket("/sync")
async def sync_stream(websocket: WebSocket) -> None:
    """Pushes ``user-update`` events for the signed-in user."""
    await websocket.accept()
    locale = resolve_locale(websocket.headers.get("Accept-Language"))
    trace_id = uuid4().hex
    current = await _authenticate(websocket, locale, trace_id)
    if current is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    if not settings.REDIS_URL:
        await _send_error(websocket, ErrorCode.SERVICE_UNAVAILABLE, locale, trace_id)
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
        return

    await websocket.send_text(json.dumps({"type": "connection-ready", "userId": current.user.id}))
    channel = user_channel(settings.SYNC_BROADCAST_CHANNEL, current.user.id)
    forward_task = asyncio.create_task(_forward_updates(websocket, channel))
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug("sync stream closed for user_id=%s", current.user.id)
    finally:
        forward_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await forward_task
