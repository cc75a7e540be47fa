"""
Module: escrow_kernel.models.withdrawal
Responsibility: Creator payout requests and the payout methods they use.

Invariants enforced:
    - The requested amount is debited from available_balance in the same
      transaction that inserts the row (WithdrawalService.create_withdrawal).
    - refunded_at is set at most once: a failed withdrawal is re-credited
      only through an explicit refund, never implicitly.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, Boolean, ForeignKey, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from escrow_kernel.db.base import TrackedBase
from escrow_kernel.domain.values import ZERO


class WithdrawalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class WithdrawalMethod(TrackedBase):
    """A payout rail (PIX, bank transfer, ...) with its limits."""

    __tablename__ = "withdrawal_methods"

    __table_args__ = (
        UniqueConstraint("code", name="uq_withdrawal_method_code"),
    )

    code: Mapped[str] = mapped_column(String(50), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    min_amount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("10.00"))
    max_amount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("10000.00"))
    processing_fee: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    processing_time: Mapped[str | None] = mapped_column(String(100), nullable=True)
    is_bank_transfer: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    required_fields: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)

    def accepts(self, amount: Decimal) -> bool:
        return self.min_amount <= amount <= self.max_amount

    def __repr__(self) -> str:
        return f"<WithdrawalMethod {self.code} [{self.min_amount}, {self.max_amount}]>"


class Withdrawal(TrackedBase):
    """A creator's request to move available balance to an external account."""

    __tablename__ = "withdrawals"

    __table_args__ = (
        Index("idx_withdrawal_creator", "creator_id"),
        Index("idx_withdrawal_status", "status"),
    )

    creator_id: Mapped[UUID] = mapped_column(ForeignKey("parties.id"), nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    withdrawal_method: Mapped[str] = mapped_column(String(50), nullable=False)
    withdrawal_details: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=WithdrawalStatus.PENDING.value,
    )
    transaction_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    approved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    processing_started_at: Mapped[datetime | None] = mapped_column(nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def __repr__(self) -> str:
        return f"<Withdrawal {self.amount} via {self.withdrawal_method} ({self.status})>"
