"""
Module: escrow_kernel.models.outbox
Responsibility: Persisted side effects (notifications, chat messages, chat
    archival) written in the same transaction as the state change that
    caused them and delivered after commit.

Invariants enforced:
    - A message is only ever delivered after its transaction committed.
    - Delivery failures mark the row failed with attempts incremented; they
      never roll back the business transaction.
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from escrow_kernel.db.base import Base


class OutboxChannel(str, Enum):
    NOTIFICATION = "notification"
    CHAT_MESSAGE = "chat_message"
    CHAT_ARCHIVE = "chat_archive"


class OutboxStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class OutboxMessage(Base):
    __tablename__ = "outbox_messages"

    __table_args__ = (
        Index("idx_outbox_status_created", "status", "created_at"),
    )

    channel: Mapped[str] = mapped_column(String(20), nullable=False)
    recipient_id: Mapped[UUID | None] = mapped_column(nullable=True)
    room_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    template_key: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=OutboxStatus.PENDING.value,
    )
    attempts: Mapped[int] = mapped_column(nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    sent_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def __repr__(self) -> str:
        return f"<OutboxMessage {self.channel}:{self.template_key} ({self.status})>"
