"""
Module: escrow_kernel.models.contract
Responsibility: ORM persistence for the brand/creator contract: parties,
    money split, primary status, post-completion workflow status and the
    lifecycle timestamps.
Architecture position: Kernel > Models.  May import from db/base.py and
    sibling models only.

Invariants enforced:
    - budget == platform_fee + creator_amount, guaranteed by FeeSplit at creation.
    - status and workflow_status are only written by the contract services,
      which consult CONTRACT_STATUS_WORKFLOW / CONTRACT_PAYMENT_WORKFLOW.
    - phase is NOT a column: it is derived from the milestone set, so it can
      never drift from the milestones it summarizes.

Audit relevance:
    Every status change is mirrored by a ContractAuditLog row written in the
    same transaction.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import (
    Boolean,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from escrow_kernel.db.base import TrackedBase
from escrow_kernel.models.milestone import ContractMilestone, ContractPhase, derive_phase

if TYPE_CHECKING:
    from escrow_kernel.models.job_payment import JobPayment
    from escrow_kernel.models.review import Review


class ContractStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    ACTIVE = "active"
    PENDING_DELIVERY = "pending_delivery"
    IN_REVISION = "in_revision"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"
    TERMINATED = "terminated"
    PAYMENT_FAILED = "payment_failed"


TERMINAL_CONTRACT_STATUSES = frozenset({
    ContractStatus.COMPLETED.value,
    ContractStatus.CANCELLED.value,
    ContractStatus.TERMINATED.value,
})


class WorkflowStatus(str, Enum):
    PAYMENT_PENDING = "payment_pending"
    PAYMENT_FAILED = "payment_failed"
    ACTIVE = "active"
    PENDING_PAYMENT_RELEASE = "pending_payment_release"
    WAITING_REVIEW = "waiting_review"
    PAYMENT_AVAILABLE = "payment_available"
    PAYMENT_WITHDRAWN = "payment_withdrawn"
    TERMINATED = "terminated"


class DisputeWinner(str, Enum):
    CREATOR = "creator"
    BRAND = "brand"


class Contract(TrackedBase):
    """
    A funded (or to-be-funded) engagement between a brand and a creator.

    Guarantees:
        - One contract per accepted offer (uq_contract_offer).
        - Money columns are Numeric(14, 2) and reconcile to the budget.
    """

    __tablename__ = "contracts"

    __table_args__ = (
        UniqueConstraint("offer_id", name="uq_contract_offer"),
        Index("idx_contract_status", "status"),
        Index("idx_contract_creator", "creator_id"),
        Index("idx_contract_campaign", "campaign_id"),
    )

    brand_id: Mapped[UUID] = mapped_column(ForeignKey("parties.id"), nullable=False)
    creator_id: Mapped[UUID] = mapped_column(ForeignKey("parties.id"), nullable=False)
    campaign_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("campaigns.id"), nullable=True,
    )
    offer_id: Mapped[UUID | None] = mapped_column(ForeignKey("offers.id"), nullable=True)

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    budget: Mapped[Decimal] = mapped_column(nullable=False)
    platform_fee: Mapped[Decimal] = mapped_column(nullable=False)
    creator_amount: Mapped[Decimal] = mapped_column(nullable=False)
    estimated_days: Mapped[int] = mapped_column(nullable=False, default=7)

    status: Mapped[str] = mapped_column(
        String(30), nullable=False, default=ContractStatus.PENDING.value,
    )
    workflow_status: Mapped[str] = mapped_column(
        String(30), nullable=False, default=WorkflowStatus.PAYMENT_PENDING.value,
    )

    started_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    disputed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    dispute_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Dispute resolution
    resolved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    resolved_by_id: Mapped[UUID | None] = mapped_column(nullable=True)
    dispute_winner: Mapped[str | None] = mapped_column(String(20), nullable=True)
    resolution_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    revision_count: Mapped[int] = mapped_column(nullable=False, default=0)
    max_revisions: Mapped[int] = mapped_column(nullable=False, default=3)

    has_brand_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    has_creator_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    has_both_reviews: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    chat_room_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    milestones: Mapped[list[ContractMilestone]] = relationship(
        back_populates="contract",
        order_by="ContractMilestone.order",
        cascade="all, delete-orphan",
    )
    payment: Mapped[JobPayment | None] = relationship(
        back_populates="contract", uselist=False,
    )
    reviews: Mapped[list[Review]] = relationship(back_populates="contract")

    @property
    def phase(self) -> ContractPhase | None:
        """Milestone-driven phase; None for contracts without a timeline."""
        return derive_phase(self.milestones)

    @property
    def current_milestone(self) -> ContractMilestone | None:
        for milestone in self.milestones:
            if milestone.is_working:
                return milestone
        return None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_CONTRACT_STATUSES

    def is_party(self, actor_id: UUID) -> bool:
        return actor_id in (self.brand_id, self.creator_id)

    @property
    def revisions_remaining(self) -> int:
        return max(self.max_revisions - self.revision_count, 0)

    def __repr__(self) -> str:
        return f"<Contract {self.title} {self.status}/{self.workflow_status}>"
