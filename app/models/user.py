from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import BaseRecord, JSONType


class User(BaseRecord):
    __tablename__ = "users"
    __table_args__ = (
        UniqueConstraint("email", name="uk_users_email"),
        Index("idx_users_external_id", "external_id"),
    )

    email: Mapped[str] = mapped_column(String(255), nullable=False)
    username: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    display_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    avatar_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    roles: Mapped[list[str]] = mapped_column(JSONType, default=list, nullable=False)
    # "metadata" is reserved on declarative classes
    profile_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONType, default=dict, nullable=False
    )
    # Copy of the upstream id; lookups go through account_links, this only
    # lets a user row whose link write failed be found and re-linked.
    external_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
