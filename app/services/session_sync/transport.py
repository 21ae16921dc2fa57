from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import httpx

from app.services.session_sync.errors import TransportError, UpstreamTimeout

logger = logging.getLogger("app.session_sync.transport")

SECRET_HEADER = "X-Sync-Secret"
REQUEST_SOURCE_HEADER = "X-Sync-Request-Source"


class SecretKeyedTransport:
    """Server-to-server JSON calls authenticated by the shared sync secret.

    Every call is bounded by ``timeout`` seconds. A timeout surfaces as
    :class:`UpstreamTimeout`; any other network failure as
    :class:`TransportError`. HTTP status codes are left to the caller.
    """

    def __init__(
        self,
        base_url: str,
        secret: str,
        timeout: float,
        *,
        request_source: str = "local-auth-server",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._secret = secret
        self._timeout = timeout
        self._request_source = request_source
        self._transport = transport

    @property
    def request_source(self) -> str:
        return self._request_source

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
            SECRET_HEADER: self._secret,
            REQUEST_SOURCE_HEADER: self._request_source,
        }

    async def post_json(self, path: str, payload: dict[str, Any]) -> httpx.Response:
        url = f"{self._base_url}/{path.lstrip('/')}"
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout),
                transport=self._transport,
                follow_redirects=False,
            ) as client:
                # httpx timeouts are per phase; wait_for bounds the whole call
                return await asyncio.wait_for(
                    client.post(url, json=payload, headers=self._headers()),
                    timeout=self._timeout,
                )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            logger.warning("upstream call timed out after %ss: %s", self._timeout, url)
            raise UpstreamTimeout("upstream_timeout", detail=url) from exc
        except httpx.HTTPError as exc:
            logger.warning("upstream call failed: %s %s", url, exc)
            raise TransportError("upstream_unreachable", detail=str(exc)) from exc
