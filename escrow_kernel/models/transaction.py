"""
Module: escrow_kernel.models.transaction
Responsibility: Append-only monetary ledger rows used for audit and for
    brand/creator statements.

Invariants enforced:
    - Rows are never deleted.  After paid_at is set only ``status`` may be
      corrected, and only to failed on a confirmed processor failure.
    - amount is always positive; ``type`` carries the direction of the
      money movement.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from escrow_kernel.db.base import TrackedBase


class TransactionType(str, Enum):
    CONTRACT_FUNDING = "contract_funding"
    ESCROW_RELEASE = "escrow_release"
    WITHDRAWAL = "withdrawal"
    REFUND = "refund"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class Transaction(TrackedBase):
    """One monetary event."""

    __tablename__ = "transactions"

    __table_args__ = (
        Index("idx_transaction_contract", "contract_id"),
        Index("idx_transaction_external", "external_id"),
    )

    type: Mapped[str] = mapped_column(String(30), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TransactionStatus.PENDING.value,
    )
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    party_id: Mapped[UUID] = mapped_column(ForeignKey("parties.id"), nullable=False)
    contract_id: Mapped[UUID | None] = mapped_column(ForeignKey("contracts.id"), nullable=True)
    withdrawal_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("withdrawals.id"), nullable=True,
    )
    external_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(nullable=True)
    details: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    @property
    def is_paid(self) -> bool:
        return self.status == TransactionStatus.PAID.value

    def __repr__(self) -> str:
        return f"<Transaction {self.type} {self.amount} ({self.status})>"
