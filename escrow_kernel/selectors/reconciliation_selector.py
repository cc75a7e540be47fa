"""
ReconciliationSelector -- stuck records and withdrawal verification.

Feeds the external reconciliation job: anything that entered
``processing`` and has not left it within the threshold is eligible for a
re-check against the payment processor.  Verification warnings are
informational for admins and never block processing.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select

from escrow_kernel.domain.dtos import VerificationWarning
from escrow_kernel.models.job_payment import JobPayment, JobPaymentStatus
from escrow_kernel.models.party import Party
from escrow_kernel.models.withdrawal import Withdrawal, WithdrawalStatus
from escrow_kernel.selectors.base import BaseSelector

MAX_REASONABLE_WITHDRAWAL = Decimal("1000000.00")

# Payout fields compared against the creator's registered bank identity.
_IDENTITY_FIELDS = (("cpf", "bank_document"), ("name", "bank_account_holder"))


@dataclass(frozen=True)
class StuckRecord:
    entity_type: str
    entity_id: UUID
    status: str
    since: datetime
    age_hours: int


def _age_hours(since: datetime, now: datetime) -> int:
    return int((now - since).total_seconds() // 3600)


class ReconciliationSelector(BaseSelector[Withdrawal]):

    def stuck_withdrawals(self, now: datetime, older_than: timedelta) -> tuple[StuckRecord, ...]:
        cutoff = now - older_than
        rows = self.session.execute(
            select(Withdrawal)
            .where(Withdrawal.status == WithdrawalStatus.PROCESSING.value)
            .where(Withdrawal.processing_started_at < cutoff)
            .order_by(Withdrawal.processing_started_at)
        ).scalars()
        return tuple(
            StuckRecord(
                entity_type="withdrawal",
                entity_id=w.id,
                status=w.status,
                since=w.processing_started_at,
                age_hours=_age_hours(w.processing_started_at, now),
            )
            for w in rows
        )

    def stuck_job_payments(self, now: datetime, older_than: timedelta) -> tuple[StuckRecord, ...]:
        cutoff = now - older_than
        rows = self.session.execute(
            select(JobPayment)
            .where(JobPayment.status == JobPaymentStatus.PROCESSING.value)
            .where(JobPayment.processing_started_at < cutoff)
            .order_by(JobPayment.processing_started_at)
        ).scalars()
        return tuple(
            StuckRecord(
                entity_type="job_payment",
                entity_id=p.id,
                status=p.status,
                since=p.processing_started_at,
                age_hours=_age_hours(p.processing_started_at, now),
            )
            for p in rows
        )

    def verify_withdrawal(
        self,
        withdrawal: Withdrawal,
        now: datetime,
        warning_hours: int = 72,
    ) -> tuple[VerificationWarning, ...]:
        warnings: list[VerificationWarning] = []

        if withdrawal.amount <= 0 or withdrawal.amount > MAX_REASONABLE_WITHDRAWAL:
            warnings.append(VerificationWarning(
                withdrawal.id, "amount_out_of_range",
                f"Amount {withdrawal.amount} is outside the expected range",
            ))

        end = withdrawal.processed_at or now
        elapsed = _age_hours(withdrawal.created_at, end)
        if elapsed > warning_hours and withdrawal.status in (
            WithdrawalStatus.PENDING.value,
            WithdrawalStatus.APPROVED.value,
            WithdrawalStatus.PROCESSING.value,
            WithdrawalStatus.COMPLETED.value,
        ):
            warnings.append(VerificationWarning(
                withdrawal.id, "slow_processing",
                f"Withdrawal took {elapsed}h (limit {warning_hours}h)",
            ))

        if withdrawal.status == WithdrawalStatus.COMPLETED.value and not withdrawal.transaction_id:
            warnings.append(VerificationWarning(
                withdrawal.id, "missing_transaction_id",
                "Completed withdrawal has no processor transaction id",
            ))

        creator = self.session.get(Party, withdrawal.creator_id)
        details = withdrawal.withdrawal_details or {}
        if creator is not None:
            for detail_key, party_attr in _IDENTITY_FIELDS:
                registered = getattr(creator, party_attr)
                if registered and details.get(detail_key) and details[detail_key] != registered:
                    warnings.append(VerificationWarning(
                        withdrawal.id, "bank_details_mismatch",
                        f"Payout {detail_key} does not match the creator's registered account",
                    ))

        return tuple(warnings)

    def verification_report(
        self,
        now: datetime,
        since: datetime,
        warning_hours: int = 72,
    ) -> dict[UUID, tuple[VerificationWarning, ...]]:
        """Warnings for every withdrawal requested since ``since``."""
        rows = self.session.execute(
            select(Withdrawal)
            .where(Withdrawal.created_at >= since)
            .order_by(Withdrawal.created_at)
        ).scalars()
        report: dict[UUID, tuple[VerificationWarning, ...]] = {}
        for withdrawal in rows:
            found = self.verify_withdrawal(withdrawal, now, warning_hours)
            if found:
                report[withdrawal.id] = found
        return report
