from __future__ import annotations

from enum import IntEnum


class ErrorCode(IntEnum):
    SYSTEM_ERROR = 50000
    SERVICE_UNAVAILABLE = 50300

    AUTH_TOKEN_NOT_PROVIDED = 40100
    AUTH_TOKEN_INVALID = 40101
    AUTH_TOKEN_EXPIRED = 40102

    USER_NOT_FOUND = 40400
