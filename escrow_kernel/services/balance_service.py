"""
CreatorBalanceService -- the single writer of creator balance buckets.

Responsibility:
    Every change to ``CreatorBalance`` goes through one of the named
    operations below.  No other code assigns balance fields.

Architecture position:
    Kernel > Services.  Flush-only: the calling module service owns the
    transaction, so a withdrawal row and its debit (or a job payment and
    its credit) commit or roll back together.

Invariants enforced:
    - Serialized per creator: the balance row is locked with
      ``SELECT ... FOR UPDATE`` before every mutation, and the row's
      ``version`` column turns any writer that bypassed the lock into an
      ``OptimisticLockError``.
    - Ledger identity after every operation:
          total_earned - total_withdrawn == available_balance + pending_balance
      and all four buckets >= 0.  A breach raises
      ``LedgerInvariantViolationError`` before anything is flushed.
    - Each operation preserves the identity on its own.  Earnings are
      recognized at the moment money enters the ledger:
          add_pending_amount   pending += a,   earned += a
          add_earning          available += a, earned += a
          move_pending_to_available  pending -= a, available += a
          withdraw             available -= a, withdrawn += a
          restore_withdrawn    available += a, withdrawn -= a

Failure modes:
    - InvalidAmountError for zero, negative or sub-cent amounts.
    - InsufficientBalanceError when a bucket cannot cover the amount.
    - LedgerInvariantViolationError (logged at CRITICAL) -- never retried.
    - OptimisticLockError on a concurrent version bump.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Callable
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from escrow_kernel.domain.actors import SYSTEM_ACTOR_ID
from escrow_kernel.domain.values import ZERO, BalanceSnapshot, to_cents
from escrow_kernel.exceptions import (
    InsufficientBalanceError,
    InvalidAmountError,
    LedgerInvariantViolationError,
    OptimisticLockError,
)
from escrow_kernel.logging_config import get_logger
from escrow_kernel.models.creator_balance import CreatorBalance
from escrow_kernel.models.job_payment import JobPayment, JobPaymentStatus
from escrow_kernel.models.withdrawal import Withdrawal, WithdrawalStatus
from escrow_kernel.services.base import BaseService

logger = get_logger("services.balance")


def _positive_cents(amount: Decimal) -> Decimal:
    value = to_cents(amount)
    if value != amount:
        raise InvalidAmountError(amount, "amount has more than two decimal places")
    if value <= ZERO:
        raise InvalidAmountError(amount)
    return value


class CreatorBalanceService(BaseService[CreatorBalance]):
    """
    Named, locked, invariant-checked operations on ``CreatorBalance``.

    Contract:
        Every public mutator returns the post-operation ``BalanceSnapshot``.
        ``ensure_balance`` creates the row lazily with four zero buckets.
    """

    # -------------------------------------------------------------------------
    # Row access
    # -------------------------------------------------------------------------

    def _select_for_update(self, creator_id: UUID) -> CreatorBalance | None:
        return self.session.execute(
            select(CreatorBalance)
            .where(CreatorBalance.creator_id == creator_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def ensure_balance(
        self, creator_id: UUID, actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> CreatorBalance:
        """Return the creator's balance row, locked, creating it if absent."""
        balance = self._select_for_update(creator_id)
        if balance is not None:
            return balance

        savepoint = self.session.begin_nested()
        try:
            balance = CreatorBalance(
                creator_id=creator_id,
                available_balance=ZERO,
                pending_balance=ZERO,
                total_earned=ZERO,
                total_withdrawn=ZERO,
                created_by_id=actor_id,
            )
            self.session.add(balance)
            self.session.flush()
            savepoint.commit()
        except IntegrityError:
            # Another transaction created it first; take its row instead.
            savepoint.rollback()
            balance = self._select_for_update(creator_id)
            if balance is None:
                raise
            return balance

        logger.info(
            "creator_balance_created",
            extra={"creator_id": str(creator_id)},
        )
        return balance

    def get_snapshot(self, creator_id: UUID) -> BalanceSnapshot:
        """Read-only view; zeros when the creator has no ledger row yet."""
        balance = self.session.execute(
            select(CreatorBalance).where(CreatorBalance.creator_id == creator_id)
        ).scalar_one_or_none()
        if balance is None:
            return BalanceSnapshot(ZERO, ZERO, ZERO, ZERO)
        return balance.snapshot()

    def can_withdraw(self, creator_id: UUID, amount: Decimal) -> bool:
        if amount <= ZERO:
            return False
        return self.get_snapshot(creator_id).available_balance >= amount

    # -------------------------------------------------------------------------
    # Mutation pipeline
    # -------------------------------------------------------------------------

    def _mutate(
        self,
        creator_id: UUID,
        operation: str,
        amount: Decimal,
        actor_id: UUID,
        apply: Callable[[CreatorBalance, Decimal], None],
        reference: str | None = None,
    ) -> BalanceSnapshot:
        value = _positive_cents(amount)
        balance = self.ensure_balance(creator_id, actor_id)
        before = balance.snapshot()

        apply(balance, value)
        balance.updated_by_id = actor_id
        self._verify(balance, operation)

        try:
            self.session.flush()
        except StaleDataError as exc:
            raise OptimisticLockError("CreatorBalance", str(balance.id)) from exc

        after = balance.snapshot()
        logger.info(
            "creator_balance_mutated",
            extra={
                "creator_id": str(creator_id),
                "operation": operation,
                "amount": str(value),
                "reference": reference,
                "available_before": str(before.available_balance),
                "available_after": str(after.available_balance),
                "pending_before": str(before.pending_balance),
                "pending_after": str(after.pending_balance),
                "total_earned": str(after.total_earned),
                "total_withdrawn": str(after.total_withdrawn),
            },
        )
        return after

    def _verify(self, balance: CreatorBalance, operation: str) -> None:
        snap = balance.snapshot()
        if snap.is_consistent:
            return
        error = LedgerInvariantViolationError(
            creator_id=str(balance.creator_id),
            available=snap.available_balance,
            pending=snap.pending_balance,
            earned=snap.total_earned,
            withdrawn=snap.total_withdrawn,
            operation=operation,
        )
        logger.critical("ledger_invariant_violation", exc_info=error)
        raise error

    # -------------------------------------------------------------------------
    # Named operations
    # -------------------------------------------------------------------------

    def add_pending_amount(
        self,
        creator_id: UUID,
        amount: Decimal,
        actor_id: UUID = SYSTEM_ACTOR_ID,
        reference: str | None = None,
    ) -> BalanceSnapshot:
        """Funds earned but not yet released."""

        def apply(balance: CreatorBalance, value: Decimal) -> None:
            balance.pending_balance += value
            balance.total_earned += value

        return self._mutate(creator_id, "add_pending_amount", amount, actor_id, apply, reference)

    def move_pending_to_available(
        self,
        creator_id: UUID,
        amount: Decimal,
        actor_id: UUID = SYSTEM_ACTOR_ID,
        reference: str | None = None,
    ) -> BalanceSnapshot:
        def apply(balance: CreatorBalance, value: Decimal) -> None:
            if balance.pending_balance < value:
                raise InsufficientBalanceError(
                    str(creator_id), value, balance.pending_balance, bucket="pending",
                )
            balance.pending_balance -= value
            balance.available_balance += value

        return self._mutate(
            creator_id, "move_pending_to_available", amount, actor_id, apply, reference,
        )

    def add_earning(
        self,
        creator_id: UUID,
        amount: Decimal,
        actor_id: UUID = SYSTEM_ACTOR_ID,
        reference: str | None = None,
    ) -> BalanceSnapshot:
        """Earning released straight to available, bypassing pending."""

        def apply(balance: CreatorBalance, value: Decimal) -> None:
            balance.available_balance += value
            balance.total_earned += value

        return self._mutate(creator_id, "add_earning", amount, actor_id, apply, reference)

    def withdraw(
        self,
        creator_id: UUID,
        amount: Decimal,
        actor_id: UUID = SYSTEM_ACTOR_ID,
        reference: str | None = None,
    ) -> BalanceSnapshot:
        def apply(balance: CreatorBalance, value: Decimal) -> None:
            if balance.available_balance < value:
                raise InsufficientBalanceError(
                    str(creator_id), value, balance.available_balance,
                )
            balance.available_balance -= value
            balance.total_withdrawn += value

        return self._mutate(creator_id, "withdraw", amount, actor_id, apply, reference)

    def restore_withdrawn(
        self,
        creator_id: UUID,
        amount: Decimal,
        actor_id: UUID = SYSTEM_ACTOR_ID,
        reference: str | None = None,
    ) -> BalanceSnapshot:
        """Exact reversal of ``withdraw`` for a cancelled or refunded payout."""

        def apply(balance: CreatorBalance, value: Decimal) -> None:
            if balance.total_withdrawn < value:
                raise InsufficientBalanceError(
                    str(creator_id), value, balance.total_withdrawn, bucket="withdrawn",
                )
            balance.available_balance += value
            balance.total_withdrawn -= value

        return self._mutate(creator_id, "restore_withdrawn", amount, actor_id, apply, reference)

    def release_escrow(
        self,
        creator_id: UUID,
        amount: Decimal,
        actor_id: UUID = SYSTEM_ACTOR_ID,
        reference: str | None = None,
    ) -> BalanceSnapshot:
        """Credit path of a processed job payment.

        Under one row lock: top up pending by whatever it lacks to cover
        ``amount`` (recognizing that part as earned), then move ``amount``
        from pending to available.  Because the lock is held across both
        steps the move cannot lose a race, so there is no direct-increment
        fallback: a failing move is an invariant violation.
        """
        value = _positive_cents(amount)
        balance = self.ensure_balance(creator_id, actor_id)
        gap = value - balance.pending_balance
        if gap > ZERO:
            self.add_pending_amount(creator_id, gap, actor_id, reference)
        try:
            return self.move_pending_to_available(creator_id, value, actor_id, reference)
        except InsufficientBalanceError as exc:
            snap = self.ensure_balance(creator_id, actor_id).snapshot()
            error = LedgerInvariantViolationError(
                creator_id=str(creator_id),
                available=snap.available_balance,
                pending=snap.pending_balance,
                earned=snap.total_earned,
                withdrawn=snap.total_withdrawn,
                operation="release_escrow",
            )
            logger.critical("escrow_release_move_failed", exc_info=error)
            raise error from exc

    # -------------------------------------------------------------------------
    # Reconciliation
    # -------------------------------------------------------------------------

    def recalculate(
        self, creator_id: UUID, actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> BalanceSnapshot:
        """Rebuild the buckets from completed job payments and withdrawals.

        earned    = sum(completed job payments) + current pending
        withdrawn = sum(withdrawals still holding a debit)
        available = earned - withdrawn - pending

        Raises ``LedgerInvariantViolationError`` if the records imply a
        negative available balance.
        """
        released = self.session.execute(
            select(func.coalesce(func.sum(JobPayment.creator_amount), 0))
            .where(JobPayment.creator_id == creator_id)
            .where(JobPayment.status == JobPaymentStatus.COMPLETED.value)
        ).scalar_one()
        debited = self.session.execute(
            select(func.coalesce(func.sum(Withdrawal.amount), 0))
            .where(Withdrawal.creator_id == creator_id)
            .where(Withdrawal.status != WithdrawalStatus.CANCELLED.value)
            .where(Withdrawal.refunded_at.is_(None))
        ).scalar_one()

        balance = self.ensure_balance(creator_id, actor_id)
        before = balance.snapshot()
        earned = to_cents(Decimal(str(released))) + balance.pending_balance
        withdrawn = to_cents(Decimal(str(debited)))

        balance.total_earned = earned
        balance.total_withdrawn = withdrawn
        balance.available_balance = earned - withdrawn - balance.pending_balance
        balance.updated_by_id = actor_id
        self._verify(balance, "recalculate")

        try:
            self.session.flush()
        except StaleDataError as exc:
            raise OptimisticLockError("CreatorBalance", str(balance.id)) from exc

        after = balance.snapshot()
        if after != before:
            logger.warning(
                "creator_balance_recalculated",
                extra={
                    "creator_id": str(creator_id),
                    "available_before": str(before.available_balance),
                    "available_after": str(after.available_balance),
                    "earned_before": str(before.total_earned),
                    "earned_after": str(after.total_earned),
                    "withdrawn_before": str(before.total_withdrawn),
                    "withdrawn_after": str(after.total_withdrawn),
                },
            )
        return after
