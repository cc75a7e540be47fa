"""
Module: escrow_kernel.models.creator_balance
Responsibility: Per-creator ledger row with the four balance buckets.
Architecture position: Kernel > Models.  Written ONLY by
    escrow_kernel.services.balance_service.CreatorBalanceService.

Invariants enforced:
    - total_earned - total_withdrawn == available_balance + pending_balance
      after every mutation (checked by the service before flush).
    - All four buckets >= 0 (ck_creator_balance_non_negative).
    - version_id_col: a concurrent writer that slipped past the row lock
      fails with StaleDataError instead of overwriting.
"""

from decimal import Decimal
from uuid import UUID

from sqlalchemy import CheckConstraint, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from escrow_kernel.db.base import TrackedBase
from escrow_kernel.domain.values import ZERO, BalanceSnapshot


class CreatorBalance(TrackedBase):
    """Ledger aggregate of one creator's earnings and withdrawals."""

    __tablename__ = "creator_balances"

    __table_args__ = (
        UniqueConstraint("creator_id", name="uq_creator_balance_creator"),
        CheckConstraint(
            "available_balance >= 0 AND pending_balance >= 0 "
            "AND total_earned >= 0 AND total_withdrawn >= 0",
            name="ck_creator_balance_non_negative",
        ),
    )

    creator_id: Mapped[UUID] = mapped_column(ForeignKey("parties.id"), nullable=False)
    available_balance: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    pending_balance: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    total_earned: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    total_withdrawn: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    version: Mapped[int] = mapped_column(nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def snapshot(self) -> BalanceSnapshot:
        return BalanceSnapshot(
            available_balance=self.available_balance,
            pending_balance=self.pending_balance,
            total_earned=self.total_earned,
            total_withdrawn=self.total_withdrawn,
        )

    def __repr__(self) -> str:
        return (
            f"<CreatorBalance available={self.available_balance} "
            f"pending={self.pending_balance} earned={self.total_earned} "
            f"withdrawn={self.total_withdrawn}>"
        )
