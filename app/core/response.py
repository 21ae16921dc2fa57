from __future__ import annotations

from contextvars import ContextVar, Token
from typing import Optional
from uuid import uuid4

from fastapi.responses import JSONResponse

from app.core.i18n import DEFAULT_LOCALE, get_message
from app.i18n.codes import ErrorCode
from app.schemas.common import Envelope

DataPayload = Optional[object]

_request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def set_request_id(trace_id: str) -> Token[Optional[str]]:
    return _request_id_ctx.set(trace_id)


def reset_request_id(token: Token[Optional[str]]) -> None:
    _request_id_ctx.reset(token)


def get_request_id() -> str:
    return _request_id_ctx.get() or uuid4().hex


def envelope(
    code: int, message: str, data: DataPayload = None, *, trace_id: Optional[str] = None
) -> dict[str, object]:
    model = Envelope[object](
        code=code, message=message, data=data, trace_id=trace_id or get_request_id()
    )
    return model.model_dump(by_alias=True)


def success(data: DataPayload = None, message: str = "ok") -> JSONResponse:
    return JSONResponse(envelope(0, message, data))


def error(
    code: ErrorCode,
    locale: str = DEFAULT_LOCALE,
    *,
    status_code: int = 200,
    trace_id: Optional[str] = None,
    **kwargs: str,
) -> JSONResponse:
    message = get_message(code, locale, **kwargs)
    return JSONResponse(
        envelope(code.value, message, trace_id=trace_id), status_code=status_code
    )
