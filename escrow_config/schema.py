"""
EscrowConfig schema.

The runtime policy knobs of the escrow core as frozen dataclasses.  Every
section validates itself in ``__post_init__`` so an invalid YAML set is
rejected at load time, not halfway through a sweep.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FeePolicy:
    """Platform commission taken from every contract budget."""

    platform_fee_rate: Decimal = Decimal("0.05")

    def __post_init__(self) -> None:
        if not (Decimal("0") <= self.platform_fee_rate < Decimal("1")):
            raise ValueError(
                f"platform_fee_rate must be in [0, 1), got {self.platform_fee_rate}"
            )


@dataclass(frozen=True)
class ContractPolicy:
    max_revisions: int = 3
    default_estimated_days: int = 7

    def __post_init__(self) -> None:
        if self.max_revisions < 0:
            raise ValueError("max_revisions must be >= 0")
        if self.default_estimated_days < 1:
            raise ValueError("default_estimated_days must be >= 1")


@dataclass(frozen=True)
class PenaltyPolicy:
    """Deadline sweep thresholds.

    A creator with ``suspension_threshold`` or more overdue milestones is
    suspended for ``suspension_days``; a milestone overdue for
    ``penalty_after_days`` applies a ``penalty_days`` penalty once.
    """

    suspension_days: int = 7
    suspension_threshold: int = 2
    penalty_after_days: int = 7
    penalty_days: int = 7

    def __post_init__(self) -> None:
        for name in (
            "suspension_days",
            "suspension_threshold",
            "penalty_after_days",
            "penalty_days",
        ):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be >= 1")


@dataclass(frozen=True)
class ReconciliationPolicy:
    stuck_after_hours: int = 24
    verification_warning_hours: int = 72

    def __post_init__(self) -> None:
        if self.stuck_after_hours < 1:
            raise ValueError("stuck_after_hours must be >= 1")
        if self.verification_warning_hours < 1:
            raise ValueError("verification_warning_hours must be >= 1")


@dataclass(frozen=True)
class OutboxPolicy:
    max_attempts: int = 5
    batch_size: int = 100

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")


@dataclass(frozen=True)
class OfferPolicy:
    default_expiry_days: int = 7

    def __post_init__(self) -> None:
        if self.default_expiry_days < 1:
            raise ValueError("default_expiry_days must be >= 1")


@dataclass(frozen=True)
class WithdrawalMethodDef:
    """A payout rail as declared in configuration."""

    code: str
    name: str
    min_amount: Decimal
    max_amount: Decimal
    processing_fee: Decimal = Decimal("0.00")
    processing_time: str | None = None
    is_bank_transfer: bool = False
    is_active: bool = True
    required_fields: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not self.code:
            raise ValueError("withdrawal method code must not be empty")
        if self.min_amount <= 0 or self.max_amount < self.min_amount:
            raise ValueError(
                f"withdrawal method {self.code}: invalid limits "
                f"{self.min_amount}..{self.max_amount}"
            )


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EscrowConfig:
    config_id: str = "default"
    fees: FeePolicy = field(default_factory=FeePolicy)
    contracts: ContractPolicy = field(default_factory=ContractPolicy)
    penalties: PenaltyPolicy = field(default_factory=PenaltyPolicy)
    reconciliation: ReconciliationPolicy = field(default_factory=ReconciliationPolicy)
    outbox: OutboxPolicy = field(default_factory=OutboxPolicy)
    offers: OfferPolicy = field(default_factory=OfferPolicy)
    withdrawal_methods: tuple[WithdrawalMethodDef, ...] = ()

    def __post_init__(self) -> None:
        codes = [m.code for m in self.withdrawal_methods]
        duplicates = sorted({c for c in codes if codes.count(c) > 1})
        if duplicates:
            raise ValueError(f"Duplicate withdrawal method codes: {duplicates}")
