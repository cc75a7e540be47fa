"""
EscrowLedger -- flush-only JobPayment creation and release.

Responsibility:
    Creates the single ``JobPayment`` of a completed contract and releases
    it to the creator's balance.  Runs inside the caller's transaction so
    the payment status, the balance credit, the release Transaction and the
    contract workflow change commit or roll back together.

Invariants enforced:
    - One JobPayment per contract: creation is guarded by
      UNIQUE(contract_id); losing the insert race reuses the winner's row.
    - A JobPayment is credited exactly once: the row is re-read under
      ``FOR UPDATE`` and a completed payment is a no-op.
    - The credit goes through ``CreatorBalanceService.release_escrow`` under
      the creator's balance row lock.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from escrow_kernel.domain.clock import Clock, SystemClock
from escrow_kernel.domain.workflow import require_action
from escrow_kernel.logging_config import get_logger
from escrow_kernel.models.contract import Contract, ContractStatus, WorkflowStatus
from escrow_kernel.models.job_payment import JobPayment, JobPaymentStatus
from escrow_kernel.models.transaction import (
    Transaction,
    TransactionStatus,
    TransactionType,
)
from escrow_kernel.services.balance_service import CreatorBalanceService
from escrow_kernel.services.outbox_service import OutboxService
from escrow_modules.contracts.lifecycle import ContractLifecycle
from escrow_modules.contracts.workflows import (
    CONTRACT_PAYMENT_WORKFLOW,
    RELEASABLE_WORKFLOW_STATUSES,
)
from escrow_modules.payments.workflows import JOB_PAYMENT_WORKFLOW

logger = get_logger("modules.payments.escrow")


class EscrowLedger:

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        lifecycle: ContractLifecycle | None = None,
        balances: CreatorBalanceService | None = None,
        outbox: OutboxService | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._outbox = outbox or OutboxService(session, self._clock)
        self._lifecycle = lifecycle or ContractLifecycle(session, self._clock, self._outbox)
        self._balances = balances or CreatorBalanceService(session, self._clock)

    def _find(self, contract_id: UUID) -> JobPayment | None:
        return self._session.execute(
            select(JobPayment).where(JobPayment.contract_id == contract_id)
        ).scalar_one_or_none()

    def create_for_contract(self, contract: Contract, actor_id: UUID) -> JobPayment:
        """Return the contract's JobPayment, creating it if absent."""
        existing = self._find(contract.id)
        if existing is not None:
            return existing

        funding = self._lifecycle.funding_transaction(contract)
        savepoint = self._session.begin_nested()
        try:
            payment = JobPayment(
                contract=contract,
                brand_id=contract.brand_id,
                creator_id=contract.creator_id,
                total_amount=contract.budget,
                platform_fee=contract.platform_fee,
                creator_amount=contract.creator_amount,
                status=JobPaymentStatus.PENDING.value,
                transaction_id=funding.id if funding else None,
                created_by_id=actor_id,
            )
            self._session.add(payment)
            self._session.flush()
            savepoint.commit()
        except IntegrityError:
            savepoint.rollback()
            payment = self._find(contract.id)
            if payment is None:
                raise
            return payment

        logger.info(
            "job_payment_created",
            extra={
                "contract_id": str(contract.id),
                "job_payment_id": str(payment.id),
                "creator_amount": str(payment.creator_amount),
                "funding_transaction_id": str(funding.id) if funding else None,
            },
        )
        return payment

    def is_releasable(self, payment: JobPayment) -> bool:
        """Pending, contract completed and reviewed by the creator."""
        contract = payment.contract
        return (
            payment.status == JobPaymentStatus.PENDING.value
            and contract.status == ContractStatus.COMPLETED.value
            and contract.workflow_status in RELEASABLE_WORKFLOW_STATUSES
            and contract.has_creator_review
        )

    def process(self, payment: JobPayment, actor_id: UUID) -> bool:
        """Credit the creator for ``payment``.

        Returns:
            True if the payment was released now, False if it had already
            been processed (no effect).
        """
        payment = self._session.execute(
            select(JobPayment)
            .where(JobPayment.id == payment.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one()

        if payment.status == JobPaymentStatus.COMPLETED.value:
            logger.info(
                "job_payment_already_processed",
                extra={"job_payment_id": str(payment.id)},
            )
            return False

        now = self._clock.now()
        transition = require_action(
            JOB_PAYMENT_WORKFLOW, "JobPayment", payment.id, payment.status, "process",
        )
        payment.status = transition.to_state
        payment.processing_started_at = now
        payment.updated_by_id = actor_id
        self._session.flush()

        self._balances.release_escrow(
            payment.creator_id,
            payment.creator_amount,
            actor_id,
            reference=f"job_payment:{payment.id}",
        )

        transition = require_action(
            JOB_PAYMENT_WORKFLOW, "JobPayment", payment.id, payment.status, "complete",
        )
        payment.status = transition.to_state
        payment.processed_at = now
        payment.failure_reason = None

        release = Transaction(
            type=TransactionType.ESCROW_RELEASE.value,
            status=TransactionStatus.PAID.value,
            amount=payment.creator_amount,
            party_id=payment.creator_id,
            contract_id=payment.contract_id,
            paid_at=now,
            details={"job_payment_id": str(payment.id)},
            created_by_id=actor_id,
        )
        self._session.add(release)
        self._session.flush()

        contract = payment.contract
        if CONTRACT_PAYMENT_WORKFLOW.allows(contract.workflow_status, WorkflowStatus.PAYMENT_AVAILABLE):
            self._lifecycle.advance_workflow(contract, WorkflowStatus.PAYMENT_AVAILABLE, actor_id)
        else:
            logger.warning(
                "job_payment_released_outside_workflow",
                extra={
                    "contract_id": str(contract.id),
                    "workflow_status": contract.workflow_status,
                },
            )

        self._outbox.notify(
            payment.creator_id,
            "payment_available",
            {
                "contract_id": contract.id,
                "title": contract.title,
                "amount": payment.creator_amount,
            },
        )
        self._lifecycle.close_campaign_if_finished(contract, actor_id)

        logger.info(
            "job_payment_processed",
            extra={
                "job_payment_id": str(payment.id),
                "contract_id": str(contract.id),
                "creator_id": str(payment.creator_id),
                "creator_amount": str(payment.creator_amount),
            },
        )
        return True
