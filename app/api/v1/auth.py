from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from app.api.deps import (
    get_current_session,
    get_session_issuer,
    get_session_lookup,
    get_session_token,
    get_sync_orchestrator,
)
from app.config import settings
from app.core.response import success
from app.core.security import get_client_address, verify_shared_secret
from app.schemas.auth import SessionInfo, SessionInfoResponse, SyncResponse, SyncUser
from app.services.session_lookup import CurrentSession, SessionLookup
from app.services.session_sync.errors import (
    UNAUTHORIZED,
    NoUpstreamSession,
    PersistenceError,
    ResolutionError,
    TransportError,
    UpstreamRejected,
)
from app.services.session_sync.issuer import SessionIssuer
from app.services.session_sync.orchestrator import SyncOrchestrator
from app.services.session_sync.store import LocalUser
from app.services.session_sync.transport import SECRET_HEADER
from app.services.session_sync.validator import InboundSyncRequest, SyncMode

logger = logging.getLogger("app.api.auth")

router = APIRouter(prefix="/auth")

_STATUS_BY_ERROR = {
    NoUpstreamSession.code: 401,
    UpstreamRejected.code: 401,
    UNAUTHORIZED: 401,
    TransportError.code: 200,
    ResolutionError.code: 500,
    PersistenceError.code: 500,
}


def _detect_mode(request: Request) -> Optional[SyncMode]:
    provided_secret = request.headers.get(SECRET_HEADER)
    if provided_secret is not None:
        if verify_shared_secret(provided_secret, settings.SYNC_SHARED_SECRET):
            return SyncMode.SERVER
        return None
    origin = request.headers.get("origin")
    requested_with = request.headers.get("x-requested-with", "")
    if origin and origin in settings.SYNC_BROWSER_ORIGINS:
        return SyncMode.BROWSER
    if requested_with.lower() == "xmlhttprequest":
        return SyncMode.BROWSER
    return None


def _to_sync_user(user: LocalUser) -> SyncUser:
    return SyncUser(
        id=user.id,
        email=user.email,
        username=user.username,
        display_name=user.display_name,
        roles=list(user.roles),
        avatar_url=user.avatar_url,
    )


def _sync_response(payload: SyncResponse, status_code: int = 200) -> JSONResponse:
    return JSONResponse(payload.to_payload(), status_code=status_code)


@router.post("/sync")
async def sync_session(
    request: Request,
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
) -> JSONResponse:
    mode = _detect_mode(request)
    if mode is None:
        logger.warning(
            "sync request rejected: no trusted origin or valid secret, client=%s",
            get_client_address(request),
        )
        return _sync_response(SyncResponse(success=False, error=UNAUTHORIZED), 401)

    body: object = None
    if mode is SyncMode.SERVER:
        try:
            body = await request.json()
        except ValueError:
            body = None

    outcome = await orchestrator.run(
        InboundSyncRequest(
            mode=mode,
            cookies=dict(request.cookies),
            body=body,
            client_ip=get_client_address(request),
            user_agent=request.headers.get("user-agent"),
        )
    )

    if not outcome.succeeded or outcome.user is None:
        error_code = outcome.error or ResolutionError.code
        return _sync_response(
            SyncResponse(success=False, error=error_code),
            _STATUS_BY_ERROR.get(error_code, 500),
        )

    response = _sync_response(
        SyncResponse(success=True, user=_to_sync_user(outcome.user), warning=outcome.warning)
    )
    if outcome.cookie is not None:
        outcome.cookie.apply(response)
    return response


@router.get("/session")
async def get_session(
    current: CurrentSession = Depends(get_current_session),
) -> JSONResponse:
    payload = SessionInfoResponse(
        user=_to_sync_user(current.user),
        session=SessionInfo(
            id=current.session.id,
            user_id=current.session.user_id,
            expires_at=current.session.expires_at,
            created_at=current.session.created_at,
            durable=current.durable,
        ),
    )
    return success(data=payload.model_dump(by_alias=True, mode="json"))


@router.post("/logout")
async def logout(
    token: Optional[str] = Depends(get_session_token),
    lookup: SessionLookup = Depends(get_session_lookup),
    issuer: SessionIssuer = Depends(get_session_issuer),
) -> JSONResponse:
    revoked = await lookup.revoke(token) if token else False
    response = success(data={"revoked": revoked})
    issuer.cookie_for("").clear(response)
    return response
