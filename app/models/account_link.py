from __future__ import annotations

from sqlalchemy import ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import BaseRecord, UUIDType


class AccountLink(BaseRecord):
    __tablename__ = "account_links"
    __table_args__ = (
        UniqueConstraint(
            "provider", "provider_account_id", name="uk_account_links_provider"
        ),
        Index("idx_account_links_user", "user_id"),
    )

    user_id: Mapped[str] = mapped_column(
        UUIDType, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    provider_account_id: Mapped[str] = mapped_column(String(255), nullable=False)
