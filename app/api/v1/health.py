from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from app.config import settings
from app.core.response import success

router = APIRouter()


@router.get("/health")
async def health(request: Request) -> JSONResponse:
    return success(
        data={
            "status": "ok",
            "upstreamConfigured": bool(
                settings.UPSTREAM_BASE_URL and settings.SYNC_SHARED_SECRET
            ),
            "fallbackSessions": len(request.app.state.fallback_registry),
        }
    )
