"""
Module: escrow_kernel.models.job_payment
Responsibility: The escrow record of a completed contract: total, platform
    fee and creator amount, and whether the creator has been credited.

Invariants enforced:
    - One JobPayment per contract (uq_job_payment_contract).  The unique
      constraint is the idempotency key for creation.
    - total_amount == platform_fee + creator_amount.
    - status reaches completed exactly once; completion is the only path
      that credits the creator's balance.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import ForeignKey, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from escrow_kernel.db.base import TrackedBase

if TYPE_CHECKING:
    from escrow_kernel.models.contract import Contract


class JobPaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobPayment(TrackedBase):
    """Escrowed funds of one contract awaiting release to the creator."""

    __tablename__ = "job_payments"

    __table_args__ = (
        UniqueConstraint("contract_id", name="uq_job_payment_contract"),
        Index("idx_job_payment_status", "status"),
    )

    contract_id: Mapped[UUID] = mapped_column(ForeignKey("contracts.id"), nullable=False)
    brand_id: Mapped[UUID] = mapped_column(ForeignKey("parties.id"), nullable=False)
    creator_id: Mapped[UUID] = mapped_column(ForeignKey("parties.id"), nullable=False)

    total_amount: Mapped[Decimal] = mapped_column(nullable=False)
    platform_fee: Mapped[Decimal] = mapped_column(nullable=False)
    creator_amount: Mapped[Decimal] = mapped_column(nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=JobPaymentStatus.PENDING.value,
    )
    transaction_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("transactions.id"), nullable=True,
    )
    processing_started_at: Mapped[datetime | None] = mapped_column(nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    contract: Mapped[Contract] = relationship(back_populates="payment")

    @property
    def is_completed(self) -> bool:
        return self.status == JobPaymentStatus.COMPLETED.value

    def __repr__(self) -> str:
        return f"<JobPayment {self.creator_amount}/{self.total_amount} ({self.status})>"
