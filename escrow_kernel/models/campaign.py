"""
Module: escrow_kernel.models.campaign
Responsibility: Parent of offers and contracts.  Owns the chat room that is
    archived once every contract under the campaign is terminal.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column

from escrow_kernel.db.base import TrackedBase


class CampaignStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Campaign(TrackedBase):
    """A brand campaign that offers and contracts hang off."""

    __tablename__ = "campaigns"

    brand_id: Mapped[UUID] = mapped_column(ForeignKey("parties.id"), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=CampaignStatus.OPEN.value,
    )
    chat_room_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    chat_archived_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def __repr__(self) -> str:
        return f"<Campaign {self.title} ({self.status})>"
