"""
Module: escrow_kernel.models.offer
Responsibility: Precursor of a Contract.  A pending offer becomes exactly one
    contract when the creator accepts it.

Invariants enforced:
    - Status moves only along OFFER_WORKFLOW (escrow_modules.offers).
    - At most one Contract per offer (uq_contract_offer on contracts).
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from escrow_kernel.db.base import TrackedBase


class OfferStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class Offer(TrackedBase):
    """A brand's offer of paid work to a creator."""

    __tablename__ = "offers"

    __table_args__ = (
        Index("idx_offer_status_expires", "status", "expires_at"),
        Index("idx_offer_creator", "creator_id"),
    )

    brand_id: Mapped[UUID] = mapped_column(ForeignKey("parties.id"), nullable=False)
    creator_id: Mapped[UUID] = mapped_column(ForeignKey("parties.id"), nullable=False)
    campaign_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("campaigns.id"), nullable=True,
    )

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    budget: Mapped[Decimal] = mapped_column(nullable=False)
    estimated_days: Mapped[int] = mapped_column(nullable=False, default=7)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=OfferStatus.PENDING.value,
    )
    expires_at: Mapped[datetime | None] = mapped_column(nullable=True)
    accepted_at: Mapped[datetime | None] = mapped_column(nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def __repr__(self) -> str:
        return f"<Offer {self.title} {self.budget} ({self.status})>"
