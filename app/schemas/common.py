from __future__ import annotations

from typing import Generic, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

T = TypeVar("T")


class Envelope(BaseModel, Generic[T]):
    """``{code, message, data, traceId}`` wrapper used by every JSON API except ``/auth/sync``."""

    model_config = ConfigDict(populate_by_name=True)

    code: int
    message: str
    data: Optional[T] = None
    trace_id: str = Field(serialization_alias="traceId")
