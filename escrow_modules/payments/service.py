"""
Escrow Module Service (``escrow_modules.payments.service``).

Responsibility
--------------
Transaction-owning entry points for releasing escrowed funds:
``process_payment`` for one JobPayment and ``process_completed_campaign``
for every completed contract of a campaign.
Neither checks for a creator review; the review-gated paths are
``ContractService.process_payment_after_review`` and
``pending_releasable_payments`` used by the batch sweep.

Invariants enforced
-------------------
* Processing an already-completed payment is a successful no-op
  (``already_processed=True``); the creator is never credited twice.
* In ``process_completed_campaign`` each payment is released inside its
  own SAVEPOINT, so one failing payment does not block the others.
* A ledger invariant violation is never converted into a result: the
  transaction is rolled back and the error propagates.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from escrow_kernel.domain.actors import SYSTEM_ACTOR_ID
from escrow_kernel.domain.clock import Clock
from escrow_kernel.domain.dtos import ActionResult
from escrow_kernel.exceptions import (
    EscrowKernelError,
    JobPaymentNotFoundError,
    LedgerInvariantViolationError,
)
from escrow_kernel.logging_config import LogContext, get_logger
from escrow_kernel.models.contract import Contract, ContractStatus
from escrow_kernel.models.job_payment import JobPayment, JobPaymentStatus
from escrow_kernel.services.outbox_service import OutboxPublisher, OutboxService
from escrow_modules._helpers import ModuleService, load
from escrow_modules.contracts.lifecycle import ContractLifecycle
from escrow_modules.payments.escrow import EscrowLedger

logger = get_logger("modules.payments.service")


class EscrowService(ModuleService):

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        publisher: OutboxPublisher | None = None,
        auto_commit: bool = True,
    ):
        super().__init__(session, clock, publisher, auto_commit)
        outbox = OutboxService(session, self._clock)
        self._ledger = EscrowLedger(
            session, self._clock, ContractLifecycle(session, self._clock, outbox), outbox=outbox,
        )

    def process_payment(
        self,
        payment_id: UUID,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> ActionResult:
        """Release one JobPayment to the creator's available balance."""
        with LogContext.bind(actor_id=str(actor_id)):
            try:
                payment = load(self._session, JobPayment, payment_id, JobPaymentNotFoundError)
                with LogContext.bind(contract_id=str(payment.contract_id), creator_id=str(payment.creator_id)):
                    processed = self._ledger.process(payment, actor_id)
                if processed:
                    result = ActionResult.ok(
                        "Pagamento liberado para o criador",
                        entity_id=payment_id,
                        already_processed=False,
                    )
                else:
                    result = ActionResult.ok(
                        "Pagamento já processado",
                        entity_id=payment_id,
                        already_processed=True,
                    )
            except EscrowKernelError as exc:
                result = self._reject(exc, payment_id)
            except Exception:
                self._abort()
                raise
            return self._finish(result)

    def pending_releasable_payments(self) -> list[JobPayment]:
        """Pending payments whose contract is completed and creator-reviewed."""
        payments = self._session.execute(
            select(JobPayment)
            .where(JobPayment.status == JobPaymentStatus.PENDING.value)
            .order_by(JobPayment.created_at, JobPayment.id)
        ).scalars().all()
        return [p for p in payments if self._ledger.is_releasable(p)]

    def process_completed_campaign(
        self,
        campaign_id: UUID,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> ActionResult:
        """Credit every completed contract's pending JobPayment in a campaign."""
        with LogContext.bind(actor_id=str(actor_id)):
            processed: list[str] = []
            failed: dict[str, str] = {}
            try:
                contracts = self._session.execute(
                    select(Contract)
                    .where(Contract.campaign_id == campaign_id)
                    .where(Contract.status == ContractStatus.COMPLETED.value)
                    .order_by(Contract.created_at, Contract.id)
                ).scalars().all()

                for contract in contracts:
                    payment = contract.payment
                    if payment is None or payment.status != JobPaymentStatus.PENDING.value:
                        continue
                    savepoint = self._session.begin_nested()
                    try:
                        self._ledger.process(payment, actor_id)
                        savepoint.commit()
                        processed.append(str(payment.id))
                    except LedgerInvariantViolationError:
                        savepoint.rollback()
                        raise
                    except EscrowKernelError as exc:
                        savepoint.rollback()
                        failed[str(contract.id)] = exc.code
                        logger.warning(
                            "campaign_payment_failed",
                            extra={
                                "campaign_id": str(campaign_id),
                                "contract_id": str(contract.id),
                                "error_code": exc.code,
                            },
                        )

                logger.info(
                    "campaign_payments_processed",
                    extra={
                        "campaign_id": str(campaign_id),
                        "processed": len(processed),
                        "failed": len(failed),
                    },
                )
                result = ActionResult.ok(
                    f"{len(processed)} pagamento(s) liberado(s)",
                    entity_id=campaign_id,
                    processed=processed,
                    failed=failed,
                )
            except Exception:
                self._abort()
                raise
            return self._finish(result)
