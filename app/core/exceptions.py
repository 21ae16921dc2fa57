from __future__ import annotations

from app.i18n.codes import ErrorCode

_HTTP_STATUSES = frozenset({400, 401, 403, 404, 500, 503})


class BusinessError(Exception):
    def __init__(self, code: ErrorCode, **kwargs: str) -> None:
        super().__init__(str(code))
        self.code = code
        self.kwargs = kwargs

    @property
    def status_code(self) -> int:
        # 40101 -> 401
        status = self.code.value // 100
        return status if status in _HTTP_STATUSES else 400
