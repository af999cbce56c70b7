"""
Module: change_kernel.models.notification
Responsibility: ORM persistence for the notification outbox.
Architecture position: Kernel > Models.  May import from db/base.py only.

Outbox rows are written inside the business transaction and delivered
after it commits.  Their state never feeds back into a change request.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from change_kernel.db.base import Base, EnumValue, UUIDString


class NotificationStatus(str, Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


class NotificationOutboxModel(Base):
    """One notification awaiting (or past) delivery."""

    __tablename__ = "notification_outbox"

    __table_args__ = (
        Index("ix_notification_outbox_status", "status", "created_at"),
    )

    recipient_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False)
    related_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    status: Mapped[NotificationStatus] = mapped_column(
        EnumValue(NotificationStatus),
        nullable=False,
        default=NotificationStatus.PENDING,
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(nullable=False)
    delivered_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def __repr__(self) -> str:
        return (
            f"<Notification {self.category} to={self.recipient_id} "
            f"status={self.status.value}>"
        )
