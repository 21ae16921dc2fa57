from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Mapping, Optional

import httpx
from pydantic import ValidationError

from app.core.security import has_cookie_with_prefix
from app.schemas.auth import UpstreamSessionsEnvelope
from app.services.session_sync.errors import (
    MalformedSyncPayload,
    NoUpstreamSession,
    TransportError,
    TransportNotConfigured,
    UpstreamRejected,
)
from app.services.session_sync.transport import SecretKeyedTransport

logger = logging.getLogger("app.session_sync.validator")

ActiveSessionRecord = dict[str, Any]

# Reasons the upstream uses when nobody we may sync is signed in
NO_SESSION_REASONS = frozenset(
    {
        "no_active_sessions",
        "no_active_wp_sessions",
        "no_eligible_active_sessions",
        "no_upstream_session",
    }
)


class SyncMode(str, Enum):
    BROWSER = "browser"
    SERVER = "server"


@dataclass(frozen=True)
class InboundSyncRequest:
    """What the HTTP boundary hands to the orchestrator for one sync attempt."""

    mode: SyncMode
    cookies: Mapping[str, str] = field(default_factory=dict)
    body: Optional[object] = None
    client_ip: Optional[str] = None
    user_agent: Optional[str] = None


class UpstreamSessionValidator:
    """Confirms an active upstream session and returns its raw record.

    Browser-proxied requests are answered by a server-to-server call; the
    browser's cookies are only inspected locally and never forwarded.
    Server-to-server requests already carry the upstream envelope in their
    body, so it is checked with the same rules as an outbound response.
    """

    def __init__(
        self,
        transport: Optional[SecretKeyedTransport],
        *,
        sessions_path: str,
        login_cookie_prefix: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._transport = transport
        self._sessions_path = sessions_path
        self._login_cookie_prefix = login_cookie_prefix
        self._clock = clock

    async def validate(self, request: InboundSyncRequest) -> ActiveSessionRecord:
        if request.mode is SyncMode.SERVER:
            try:
                return self.interpret(request.body)
            except TransportError as exc:
                # Re-reading the same posted body cannot succeed
                raise MalformedSyncPayload(exc.reason, detail=exc.detail) from exc

        if self._login_cookie_prefix and not has_cookie_with_prefix(
            request.cookies, self._login_cookie_prefix
        ):
            raise NoUpstreamSession("no_upstream_cookie")
        if self._transport is None:
            raise TransportNotConfigured("upstream_not_configured")

        payload = {
            "requestSource": self._transport.request_source,
            "timestamp": int(self._clock() * 1000),
        }
        response = await self._transport.post_json(self._sessions_path, payload)
        return self.interpret(self._decode(response))

    def _decode(self, response: httpx.Response) -> object:
        status = response.status_code
        if status >= 500 or status == 429:
            raise TransportError(f"upstream_http_{status}")
        if status in (401, 403):
            raise UpstreamRejected("upstream_unauthorized", detail=f"http {status}")
        if status >= 400:
            raise UpstreamRejected(f"upstream_http_{status}")
        if status >= 300:
            # Usually a redirect to a login page: misconfiguration, not "signed out"
            raise TransportError("unexpected_redirect", detail=response.headers.get("location"))

        content_type = response.headers.get("content-type", "")
        mime = content_type.split(";")[0].strip().lower()
        if not mime.endswith("json"):
            raise TransportError("unexpected_content_type", detail=content_type or "<missing>")
        try:
            return response.json()
        except ValueError as exc:
            raise TransportError("invalid_json", detail=str(exc)) from exc

    def interpret(self, payload: object) -> ActiveSessionRecord:
        if not isinstance(payload, dict):
            raise TransportError("unexpected_payload", detail=type(payload).__name__)
        try:
            envelope = UpstreamSessionsEnvelope.model_validate(payload)
        except ValidationError as exc:
            raise TransportError("unexpected_payload", detail=str(exc)) from exc

        if not envelope.success:
            reason = envelope.error or "upstream_declined"
            if reason in NO_SESSION_REASONS:
                raise NoUpstreamSession(reason)
            raise UpstreamRejected(reason)
        if not envelope.active_sessions:
            raise NoUpstreamSession(envelope.error or "no_active_sessions")

        if len(envelope.active_sessions) > 1:
            logger.info(
                "upstream reported %d active sessions, using the most recent",
                len(envelope.active_sessions),
            )
        return envelope.active_sessions[0]
