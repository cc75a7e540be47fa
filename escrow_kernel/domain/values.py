"""
Ledger primitives (``escrow_kernel.domain.values``).

Money in the marketplace is a single currency (BRL) in cents.  Amounts
are ``Decimal`` quantized to two places with ROUND_HALF_UP; float never
enters the ledger.

Invariants enforced:
    - ``split_budget``: platform_fee + creator_amount == budget exactly.
    - ``BalanceSnapshot.is_consistent``:
      available + pending == earned - withdrawn and all four >= 0.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

CENTS = Decimal("0.01")
ZERO = Decimal("0.00")
DEFAULT_PLATFORM_FEE_RATE = Decimal("0.05")


def to_cents(amount: Decimal | int | str) -> Decimal:
    """Quantize an amount to cents (ROUND_HALF_UP).

    Raises:
        ValueError: if ``amount`` is a float or not a number.
    """
    if isinstance(amount, float):
        raise ValueError("Monetary amounts must not be float")
    try:
        value = Decimal(amount)
    except InvalidOperation as exc:
        raise ValueError(f"Not a monetary amount: {amount!r}") from exc
    if not value.is_finite():
        raise ValueError(f"Not a monetary amount: {amount!r}")
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class FeeSplit:
    """Platform fee / creator amount split of a contract budget."""

    budget: Decimal
    platform_fee: Decimal
    creator_amount: Decimal

    def __post_init__(self) -> None:
        if self.platform_fee + self.creator_amount != self.budget:
            raise ValueError(
                f"Fee split does not reconcile: {self.platform_fee} + "
                f"{self.creator_amount} != {self.budget}"
            )


def split_budget(
    budget: Decimal | int | str,
    fee_rate: Decimal = DEFAULT_PLATFORM_FEE_RATE,
) -> FeeSplit:
    """Split a budget into platform fee and creator amount.

    The fee is rounded to cents and the creator receives the remainder, so
    the two always sum to the budget.

    >>> split_budget(Decimal("1000.00"))
    FeeSplit(budget=Decimal('1000.00'), platform_fee=Decimal('50.00'), creator_amount=Decimal('950.00'))
    """
    total = to_cents(budget)
    if total <= ZERO:
        raise ValueError(f"Budget must be positive, got {total}")
    if not (Decimal("0") <= fee_rate < Decimal("1")):
        raise ValueError(f"Fee rate must be in [0, 1), got {fee_rate}")
    fee = to_cents(total * fee_rate)
    return FeeSplit(budget=total, platform_fee=fee, creator_amount=total - fee)


@dataclass(frozen=True)
class BalanceSnapshot:
    """Immutable view of a creator's four ledger buckets."""

    available_balance: Decimal
    pending_balance: Decimal
    total_earned: Decimal
    total_withdrawn: Decimal

    @property
    def is_consistent(self) -> bool:
        buckets = (
            self.available_balance,
            self.pending_balance,
            self.total_earned,
            self.total_withdrawn,
        )
        if any(b < ZERO for b in buckets):
            return False
        return (
            self.available_balance + self.pending_balance
            == self.total_earned - self.total_withdrawn
        )

    @property
    def total_balance(self) -> Decimal:
        return self.available_balance + self.pending_balance
