from __future__ import annotations

from datetime import datetime
from uuid import uuid4

from sqlalchemy import JSON, DateTime, String, func
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Native types on PostgreSQL, portable fallbacks elsewhere (SQLite in tests)
UUIDType = UUID(as_uuid=False).with_variant(String(36), "sqlite")
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _new_id() -> str:
    return str(uuid4())


class Base(DeclarativeBase):
    pass


class BaseRecord(Base):
    __abstract__ = True

    id: Mapped[str] = mapped_column(UUIDType, primary_key=True, default=_new_id)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
