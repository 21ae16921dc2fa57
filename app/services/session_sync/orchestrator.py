"""Sync orchestrator: one state machine for upstream -> local session sync.

States::

    START -> VALIDATING -> RESOLVING -> ISSUING -> SUCCESS
                 |             |           |----> FALLBACK
                 v             v           v
               FAILED        FAILED      FAILED (fallback also failed)

Every retry and fallback decision is made here. Collaborators only report
typed failures.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional, Protocol

from app.schemas.auth import UpstreamIdentity
from app.services.session_sync.broadcaster import ChangeBroadcaster
from app.services.session_sync.errors import (
    FALLBACK_USED,
    NoUpstreamSession,
    PersistenceError,
    SyncError,
    TransportError,
    UpstreamRejected,
)
from app.services.session_sync.fallback import FallbackSessionPath
from app.services.session_sync.issuer import CookieDirective, IssuedSession, SessionIssuer
from app.services.session_sync.resolver import UserResolver
from app.services.session_sync.store import LocalUser
from app.services.session_sync.validator import ActiveSessionRecord, InboundSyncRequest

logger = logging.getLogger("app.session_sync.orchestrator")


class SyncState(str, Enum):
    START = "start"
    VALIDATING = "validating"
    RESOLVING = "resolving"
    ISSUING = "issuing"
    SUCCESS = "success"
    FALLBACK = "fallback"
    FAILED = "failed"


class SessionValidator(Protocol):
    async def validate(self, request: InboundSyncRequest) -> ActiveSessionRecord:
        ...


@dataclass(frozen=True)
class SyncRetryPolicy:
    """Bounded retries with linear backoff, for transient transport failures only."""

    max_attempts: int = 3
    backoff_seconds: float = 0.5

    def delay_for(self, attempt: int) -> float:
        return self.backoff_seconds * attempt

    def should_retry(self, exc: SyncError, attempt: int) -> bool:
        return exc.retryable and attempt < self.max_attempts


@dataclass(frozen=True)
class SyncOutcome:
    state: SyncState
    user: Optional[LocalUser] = None
    issued: Optional[IssuedSession] = None
    error: Optional[str] = None
    warning: Optional[str] = None
    created: bool = False
    attempts: int = 0
    states: tuple[SyncState, ...] = field(default_factory=tuple)

    @property
    def succeeded(self) -> bool:
        return self.state in (SyncState.SUCCESS, SyncState.FALLBACK)

    @property
    def cookie(self) -> Optional[CookieDirective]:
        return self.issued.cookie if self.issued is not None else None


_FAILURE_LOG_LEVELS = (
    (NoUpstreamSession, logging.INFO),
    (UpstreamRejected, logging.INFO),
    (TransportError, logging.WARNING),
)


def _failure_log_level(exc: SyncError) -> int:
    for error_type, level in _FAILURE_LOG_LEVELS:
        if isinstance(exc, error_type):
            return level
    return logging.ERROR


class _Trace:
    def __init__(self) -> None:
        self.states: list[SyncState] = [SyncState.START]
        self.attempts = 0

    def enter(self, state: SyncState) -> None:
        logger.debug("sync %s -> %s", self.states[-1].value, state.value)
        self.states.append(state)


class SyncOrchestrator:
    def __init__(
        self,
        validator: SessionValidator,
        resolver: UserResolver,
        issuer: SessionIssuer,
        fallback: FallbackSessionPath,
        *,
        broadcaster: Optional[ChangeBroadcaster] = None,
        retry_policy: SyncRetryPolicy = SyncRetryPolicy(),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._validator = validator
        self._resolver = resolver
        self._issuer = issuer
        self._fallback = fallback
        self._broadcaster = broadcaster
        self._retry_policy = retry_policy
        self._sleep = sleep

    async def run(self, request: InboundSyncRequest) -> SyncOutcome:
        trace = _Trace()

        trace.enter(SyncState.VALIDATING)
        try:
            record = await self._validate(request, trace)
        except SyncError as exc:
            return self._fail(trace, exc)

        trace.enter(SyncState.RESOLVING)
        try:
            identity = self._resolver.parse_identity(record)
            resolution = await self._resolver.resolve(identity)
        except SyncError as exc:
            return self._fail(trace, exc)
        user = resolution.user

        trace.enter(SyncState.ISSUING)
        try:
            issued = await self._issuer.issue(
                user.id, ip_address=request.client_ip, user_agent=request.user_agent
            )
        except PersistenceError as exc:
            logger.error("session persistence failed for user_id=%s: %s", user.id, exc)
            return self._fall_back(trace, request, identity, user, resolution.created)

        trace.enter(SyncState.SUCCESS)
        self._notify(user)
        logger.info(
            "sync succeeded user_id=%s created=%s attempts=%s",
            user.id,
            resolution.created,
            trace.attempts,
        )
        return SyncOutcome(
            state=SyncState.SUCCESS,
            user=user,
            issued=issued,
            created=resolution.created,
            attempts=trace.attempts,
            states=tuple(trace.states),
        )

    async def _validate(
        self, request: InboundSyncRequest, trace: _Trace
    ) -> ActiveSessionRecord:
        while True:
            trace.attempts += 1
            try:
                return await self._validator.validate(request)
            except TransportError as exc:
                if not self._retry_policy.should_retry(exc, trace.attempts):
                    raise
                delay = self._retry_policy.delay_for(trace.attempts)
                logger.warning(
                    "Retry %s/%s for upstream validation after %.2fs: %s",
                    trace.attempts,
                    self._retry_policy.max_attempts,
                    delay,
                    exc,
                )
                await self._sleep(delay)

    def _fall_back(
        self,
        trace: _Trace,
        request: InboundSyncRequest,
        identity: UpstreamIdentity,
        user: LocalUser,
        created: bool,
    ) -> SyncOutcome:
        try:
            issued = self._fallback.issue(
                identity, user, ip_address=request.client_ip, user_agent=request.user_agent
            )
        except PersistenceError as exc:
            return self._fail(trace, exc)

        trace.enter(SyncState.FALLBACK)
        self._notify(user)
        return SyncOutcome(
            state=SyncState.FALLBACK,
            user=user,
            issued=issued,
            warning=FALLBACK_USED,
            created=created,
            attempts=trace.attempts,
            states=tuple(trace.states),
        )

    def _fail(self, trace: _Trace, exc: SyncError) -> SyncOutcome:
        failed_in = trace.states[-1]
        trace.enter(SyncState.FAILED)
        logger.log(
            _failure_log_level(exc),
            "sync failed in %s after %s attempt(s): %s",
            failed_in.value,
            trace.attempts,
            exc,
        )
        return SyncOutcome(
            state=SyncState.FAILED,
            error=exc.code,
            attempts=trace.attempts,
            states=tuple(trace.states),
        )

    def _notify(self, user: LocalUser) -> None:
        if self._broadcaster is None:
            return
        self._broadcaster.notify_user_update(user.id, user.updated_at)
