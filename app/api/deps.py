from __future__ import annotations

from datetime import timedelta
from typing import AsyncGenerator, Optional

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.exceptions import BusinessError
from app.core.redis import publish_message
from app.db import get_db_session
from app.i18n.codes import ErrorCode
from app.services.session_lookup import CurrentSession, SessionLookup
from app.services.session_sync.broadcaster import ChangeBroadcaster
from app.services.session_sync.fallback import FallbackSessionPath, FallbackSessionRegistry
from app.services.session_sync.issuer import SessionIssuer
from app.services.session_sync.linker import AccountLinker
from app.services.session_sync.orchestrator import SyncOrchestrator, SyncRetryPolicy
from app.services.session_sync.resolver import UserResolver
from app.services.session_sync.sql_store import SqlAlchemyAuthStore
from app.services.session_sync.store import AuthStore
from app.services.session_sync.transport import SecretKeyedTransport
from app.services.session_sync.validator import UpstreamSessionValidator


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async for session in get_db_session():
        yield session


async def get_auth_store(db: AsyncSession = Depends(get_db)) -> AuthStore:
    return SqlAlchemyAuthStore(db)


def build_broadcaster() -> ChangeBroadcaster:
    publisher = publish_message if settings.REDIS_URL else None
    return ChangeBroadcaster(publisher, settings.SYNC_BROADCAST_CHANNEL)


def build_fallback_registry() -> FallbackSessionRegistry:
    return FallbackSessionRegistry(capacity=settings.FALLBACK_SESSION_CAPACITY)


def get_fallback_registry(request: Request) -> FallbackSessionRegistry:
    return request.app.state.fallback_registry


def get_broadcaster(request: Request) -> ChangeBroadcaster:
    return request.app.state.broadcaster


def get_upstream_transport() -> Optional[SecretKeyedTransport]:
    if not settings.UPSTREAM_BASE_URL or not settings.SYNC_SHARED_SECRET:
        return None
    return SecretKeyedTransport(
        settings.UPSTREAM_BASE_URL,
        settings.SYNC_SHARED_SECRET,
        settings.UPSTREAM_TIMEOUT_SECONDS,
    )


def get_session_issuer(store: AuthStore = Depends(get_auth_store)) -> SessionIssuer:
    return SessionIssuer(
        store,
        expires_in=timedelta(days=settings.SESSION_EXPIRES_DAYS),
        cookie_name=settings.SESSION_COOKIE_NAME,
        cookie_secure=settings.session_cookie_secure,
    )


def get_sync_orchestrator(
    store: AuthStore = Depends(get_auth_store),
    issuer: SessionIssuer = Depends(get_session_issuer),
    transport: Optional[SecretKeyedTransport] = Depends(get_upstream_transport),
    registry: FallbackSessionRegistry = Depends(get_fallback_registry),
    broadcaster: ChangeBroadcaster = Depends(get_broadcaster),
) -> SyncOrchestrator:
    validator = UpstreamSessionValidator(
        transport,
        sessions_path=settings.UPSTREAM_SESSIONS_PATH,
        login_cookie_prefix=settings.UPSTREAM_LOGIN_COOKIE_PREFIX,
    )
    resolver = UserResolver(
        store,
        AccountLinker(store),
        provider=settings.UPSTREAM_PROVIDER,
        numeric_ids=settings.UPSTREAM_NUMERIC_IDS,
    )
    return SyncOrchestrator(
        validator,
        resolver,
        issuer,
        FallbackSessionPath(issuer, registry),
        broadcaster=broadcaster,
        retry_policy=SyncRetryPolicy(
            max_attempts=settings.UPSTREAM_MAX_ATTEMPTS,
            backoff_seconds=settings.UPSTREAM_RETRY_BACKOFF_SECONDS,
        ),
    )


def get_session_lookup(
    store: AuthStore = Depends(get_auth_store),
    registry: FallbackSessionRegistry = Depends(get_fallback_registry),
) -> SessionLookup:
    return SessionLookup(store, registry)


def get_session_token(request: Request) -> Optional[str]:
    return request.cookies.get(settings.SESSION_COOKIE_NAME) or None


async def get_current_session(
    token: Optional[str] = Depends(get_session_token),
    lookup: SessionLookup = Depends(get_session_lookup),
) -> CurrentSession:
    if not token:
        raise BusinessError(ErrorCode.AUTH_TOKEN_NOT_PROVIDED)
    return await lookup.require(token)
