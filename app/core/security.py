from __future__ import annotations

import hmac
import secrets
from typing import Mapping, Optional

from fastapi import Request

# 32 bytes -> 256 bits of entropy
SESSION_TOKEN_BYTES = 32


def generate_session_token() -> str:
    return secrets.token_urlsafe(SESSION_TOKEN_BYTES)


def mask_token(token: Optional[str]) -> str:
    if not token:
        return "<none>"
    if len(token) <= 6:
        return "***"
    return f"{token[:6]}..."


def verify_shared_secret(provided: Optional[str], expected: Optional[str]) -> bool:
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def has_cookie_with_prefix(cookies: Mapping[str, str], prefix: str) -> bool:
    return any(name.startswith(prefix) for name in cookies)


def get_client_address(request: Request) -> str:
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # client, proxy1, proxy2
        return forwarded_for.split(",")[0].strip()
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()
    if request.client is not None:
        return request.client.host
    return "127.0.0.1"
