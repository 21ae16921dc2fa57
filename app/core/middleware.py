from __future__ import annotations

import logging
import time
from uuid import uuid4

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from app.core.i18n import resolve_locale
from app.core.response import reset_request_id, set_request_id
from app.core.security import get_client_address

logger = logging.getLogger("app.middleware")


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Populates ``request.state`` with trace id, locale and client address.

    The trace id comes from ``X-Request-Id`` when the caller sends one and is
    echoed back on the response.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        header_request_id = (request.headers.get("X-Request-Id") or "").strip()
        trace_id = header_request_id or uuid4().hex
        request.state.trace_id = trace_id
        request.state.locale = resolve_locale(request.headers.get("Accept-Language"))
        request.state.client_address = get_client_address(request)
        token = set_request_id(trace_id)
        try:
            response = await call_next(request)
        finally:
            reset_request_id(token)
        response.headers["X-Request-Id"] = trace_id
        return response


class AccessLogMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        started = time.perf_counter()
        response = await call_next(request)
        logger.info(
            "%s %s -> %s in %dms client=%s trace_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            (time.perf_counter() - started) * 1000,
            getattr(request.state, "client_address", "-"),
            getattr(request.state, "trace_id", "-"),
        )
        return response
