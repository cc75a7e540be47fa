"""
Contract Module Service (``escrow_modules.contracts.service``).

Responsibility
--------------
User-facing contract operations: the delivery / revision loop, approval
and completion, cancellation and termination, reviews and the
review-gated release of the escrow.

Architecture position
---------------------
**Modules layer**.  Composes the flush-only ``ContractLifecycle`` and
``EscrowLedger`` and owns the transaction boundary (commit on success,
rollback on failure or unexpected exception).

Invariants enforced
-------------------
* Status changes consult the contract workflows; a rejected transition
  leaves the contract unchanged.
* revision_count never exceeds max_revisions.
* Completing a contract creates its JobPayment exactly once.
* The escrow is released only for a completed contract whose
  workflow_status is waiting_review or pending_payment_release and whose
  creator has reviewed the brand.

Failure modes
-------------
* Business rule violations -> ``ActionResult(success=False)`` with a
  pt-BR message and the error code; session rolled back.
* Unexpected exception -> session rolled back, exception re-raised.
"""

from __future__ import annotations

from enum import Enum
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from escrow_config.schema import ContractPolicy
from escrow_kernel.domain.clock import Clock
from escrow_kernel.domain.dtos import ActionResult
from escrow_kernel.exceptions import (
    ContractNotFoundError,
    EscrowKernelError,
    InvalidTransitionError,
    RevisionLimitExceededError,
    ReviewNotAllowedError,
)
from escrow_kernel.logging_config import LogContext, get_logger
from escrow_kernel.models.contract import Contract, ContractStatus, WorkflowStatus
from escrow_kernel.models.job_payment import JobPaymentStatus
from escrow_kernel.models.review import Review
from escrow_kernel.services.audit_service import ContractAuditService
from escrow_kernel.services.outbox_service import OutboxPublisher, OutboxService
from escrow_modules._helpers import ModuleService, load, require_actor
from escrow_modules.contracts.lifecycle import ContractLifecycle
from escrow_modules.contracts.workflows import (
    CONTRACT_STATUS_WORKFLOW,
    RELEASABLE_WORKFLOW_STATUSES,
)
from escrow_modules.payments.escrow import EscrowLedger

logger = get_logger("modules.contracts.service")


class ContractService(ModuleService):
    """
    Orchestrates contract operations through the lifecycle and the escrow.

    Usage::

        service = ContractService(session, clock=clock, publisher=publisher)
        result = service.approve_delivery(contract_id, brand_id)
        if not result.success:
            show(result.message)
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        publisher: OutboxPublisher | None = None,
        auto_commit: bool = True,
        policy: ContractPolicy | None = None,
    ):
        super().__init__(session, clock, publisher, auto_commit)
        self._policy = policy or ContractPolicy()
        self._outbox = OutboxService(session, self._clock)
        self._audit = ContractAuditService(session, self._clock)
        self._lifecycle = ContractLifecycle(session, self._clock, self._outbox, self._audit)
        self._ledger = EscrowLedger(session, self._clock, self._lifecycle, outbox=self._outbox)

    def _load(self, contract_id: UUID) -> Contract:
        return load(self._session, Contract, contract_id, ContractNotFoundError)

    def _run(self, contract_id: UUID, actor_id: UUID, operation) -> ActionResult:
        """Load the contract, run ``operation`` and close the transaction."""
        with LogContext.bind(actor_id=str(actor_id), contract_id=str(contract_id)):
            try:
                contract = self._load(contract_id)
                result = operation(contract)
            except EscrowKernelError as exc:
                result = self._reject(exc, contract_id)
            except Exception:
                self._abort()
                raise
            return self._finish(result)

    # =========================================================================
    # Status machine
    # =========================================================================

    @staticmethod
    def can_transition(current: str | Enum, target: str | Enum) -> bool:
        return CONTRACT_STATUS_WORKFLOW.allows(current, target)

    def transition_to(
        self,
        contract_id: UUID,
        target: str | Enum,
        actor_id: UUID,
        reason: str | None = None,
    ) -> ActionResult:
        """Administrative move along the fixed status table."""

        def operation(contract: Contract) -> ActionResult:
            require_actor(
                self._session, actor_id, (contract.brand_id, contract.creator_id),
                "change status of", contract.id,
            )
            self._lifecycle.transition_to(contract, target, actor_id, reason)
            return ActionResult.ok("Status do contrato atualizado", entity_id=contract.id, status=contract.status)

        return self._run(contract_id, actor_id, operation)

    # =========================================================================
    # Delivery loop
    # =========================================================================

    def submit_delivery(self, contract_id: UUID, actor_id: UUID) -> ActionResult:
        def operation(contract: Contract) -> ActionResult:
            require_actor(
                self._session, actor_id, (contract.creator_id,), "submit delivery",
                contract.id, allow_admin=False,
            )
            self._lifecycle.transition_to(contract, ContractStatus.PENDING_DELIVERY, actor_id)
            self._outbox.notify(
                contract.brand_id,
                "delivery_submitted",
                {"contract_id": contract.id, "title": contract.title},
            )
            return ActionResult.ok("Entrega enviada para aprovação", entity_id=contract.id)

        return self._run(contract_id, actor_id, operation)

    def request_revision(
        self,
        contract_id: UUID,
        actor_id: UUID,
        reason: str | None = None,
    ) -> ActionResult:
        """Brand sends the delivery back, within the revision cap."""

        def operation(contract: Contract) -> ActionResult:
            require_actor(
                self._session, actor_id, (contract.brand_id,), "request revision", contract.id,
            )
            if not self.can_transition(contract.status, ContractStatus.IN_REVISION):
                raise InvalidTransitionError(
                    "Contract", str(contract.id), contract.status,
                    ContractStatus.IN_REVISION.value,
                )
            if contract.revision_count >= contract.max_revisions:
                raise RevisionLimitExceededError(str(contract.id), contract.max_revisions)
            contract.revision_count += 1
            self._lifecycle.transition_to(contract, ContractStatus.IN_REVISION, actor_id, reason)
            self._outbox.notify(
                contract.creator_id,
                "revision_requested",
                {
                    "contract_id": contract.id,
                    "reason": reason,
                    "revisions_remaining": contract.revisions_remaining,
                },
            )
            return ActionResult.ok(
                "Revisão solicitada",
                entity_id=contract.id,
                revision_count=contract.revision_count,
                revisions_remaining=contract.revisions_remaining,
            )

        return self._run(contract_id, actor_id, operation)

    def approve_delivery(self, contract_id: UUID, actor_id: UUID) -> ActionResult:
        """Brand accepts the delivery: completed, payment awaiting release."""

        def operation(contract: Contract) -> ActionResult:
            require_actor(
                self._session, actor_id, (contract.brand_id,), "approve delivery", contract.id,
            )
            self._lifecycle.transition_to(contract, ContractStatus.COMPLETED, actor_id)
            self._lifecycle.advance_workflow(contract, WorkflowStatus.PENDING_PAYMENT_RELEASE, actor_id)
            payment = self._ledger.create_for_contract(contract, actor_id)
            return ActionResult.ok(
                "Entrega aprovada",
                entity_id=contract.id,
                job_payment_id=payment.id,
            )

        return self._run(contract_id, actor_id, operation)

    def complete(self, contract_id: UUID, actor_id: UUID) -> ActionResult:
        """Close an active contract and await the reviews."""

        def operation(contract: Contract) -> ActionResult:
            require_actor(
                self._session, actor_id, (contract.brand_id,), "complete", contract.id,
            )
            self._lifecycle.perform(contract, "complete", actor_id)
            self._lifecycle.advance_workflow(contract, WorkflowStatus.WAITING_REVIEW, actor_id)
            payment = self._ledger.create_for_contract(contract, actor_id)
            self._outbox.notify_parties(
                (contract.brand_id, contract.creator_id),
                "review_requested",
                {"contract_id": contract.id, "title": contract.title},
            )
            return ActionResult.ok(
                "Contrato concluído",
                entity_id=contract.id,
                job_payment_id=payment.id,
            )

        return self._run(contract_id, actor_id, operation)

    # =========================================================================
    # Ending a contract early
    # =========================================================================

    def cancel(self, contract_id: UUID, actor_id: UUID, reason: str | None = None) -> ActionResult:
        def operation(contract: Contract) -> ActionResult:
            require_actor(
                self._session, actor_id, (contract.brand_id, contract.creator_id),
                "cancel", contract.id,
            )
            self._lifecycle.perform(contract, "cancel", actor_id, reason)
            refund = self._lifecycle.record_funding_refund(contract, actor_id, reason)
            return ActionResult.ok(
                "Contrato cancelado",
                entity_id=contract.id,
                refund_transaction_id=refund.id if refund else None,
            )

        return self._run(contract_id, actor_id, operation)

    def terminate(self, contract_id: UUID, actor_id: UUID, reason: str) -> ActionResult:
        """End an active contract; the brand's charge is queued for refund."""

        def operation(contract: Contract) -> ActionResult:
            require_actor(
                self._session, actor_id, (contract.brand_id, contract.creator_id),
                "terminate", contract.id,
            )
            self._lifecycle.perform(contract, "terminate", actor_id, reason)
            refund = self._lifecycle.record_funding_refund(contract, actor_id, reason)
            return ActionResult.ok(
                "Contrato encerrado",
                entity_id=contract.id,
                refund_transaction_id=refund.id if refund else None,
            )

        return self._run(contract_id, actor_id, operation)

    # =========================================================================
    # Reviews and escrow release
    # =========================================================================

    def record_review(
        self,
        contract_id: UUID,
        reviewer_id: UUID,
        rating: int,
        comment: str | None = None,
    ) -> ActionResult:
        """Record one party's review; a creator review releases the escrow."""

        def operation(contract: Contract) -> ActionResult:
            if contract.status != ContractStatus.COMPLETED.value:
                raise ReviewNotAllowedError(str(contract.id), str(reviewer_id), "contract is not completed")
            if not contract.is_party(reviewer_id):
                raise ReviewNotAllowedError(str(contract.id), str(reviewer_id), "reviewer is not a party")
            if not 1 <= rating <= 5:
                raise ReviewNotAllowedError(str(contract.id), str(reviewer_id), "rating must be 1 to 5")
            duplicate = self._session.execute(
                select(Review.id)
                .where(Review.contract_id == contract.id)
                .where(Review.reviewer_id == reviewer_id)
            ).scalar_one_or_none()
            if duplicate is not None:
                raise ReviewNotAllowedError(str(contract.id), str(reviewer_id), "already reviewed")

            by_creator = reviewer_id == contract.creator_id
            review = Review(
                contract_id=contract.id,
                reviewer_id=reviewer_id,
                reviewed_id=contract.brand_id if by_creator else contract.creator_id,
                rating=rating,
                comment=comment,
                created_by_id=reviewer_id,
            )
            self._session.add(review)
            if by_creator:
                contract.has_creator_review = True
            else:
                contract.has_brand_review = True
            contract.has_both_reviews = contract.has_creator_review and contract.has_brand_review
            self._session.flush()

            self._audit.record(
                contract, reviewer_id, "review_recorded",
                details={"rating": rating, "by": "creator" if by_creator else "brand"},
            )
            self._outbox.notify(
                review.reviewed_id,
                "review_received",
                {"contract_id": contract.id, "rating": rating},
            )

            released = False
            if by_creator and contract.workflow_status in RELEASABLE_WORKFLOW_STATUSES:
                released = self._release(contract, reviewer_id)
            return ActionResult.ok(
                "Avaliação registrada",
                entity_id=review.id,
                payment_released=released,
            )

        return self._run(contract_id, reviewer_id, operation)

    def _release(self, contract: Contract, actor_id: UUID) -> bool:
        if contract.status != ContractStatus.COMPLETED.value or (
            contract.workflow_status not in RELEASABLE_WORKFLOW_STATUSES
        ):
            raise InvalidTransitionError(
                "ContractWorkflow", str(contract.id), contract.workflow_status,
                WorkflowStatus.PAYMENT_AVAILABLE.value, "contract is not awaiting payment release",
            )
        if not contract.has_creator_review:
            raise InvalidTransitionError(
                "ContractWorkflow", str(contract.id), contract.workflow_status,
                WorkflowStatus.PAYMENT_AVAILABLE.value, "creator review missing",
            )
        payment = self._ledger.create_for_contract(contract, actor_id)
        return self._ledger.process(payment, actor_id)

    def process_payment_after_review(self, contract_id: UUID, actor_id: UUID) -> ActionResult:
        """Release the escrow of a completed, creator-reviewed contract."""

        def operation(contract: Contract) -> ActionResult:
            if contract.payment is not None and contract.payment.status == JobPaymentStatus.COMPLETED.value:
                return ActionResult.ok("Pagamento já processado", entity_id=contract.id, already_processed=True)
            released = self._release(contract, actor_id)
            return ActionResult.ok(
                "Pagamento liberado para o criador",
                entity_id=contract.id,
                already_processed=not released,
            )

        return self._run(contract_id, actor_id, operation)

    def mark_payment_withdrawn(self, contract_id: UUID, actor_id: UUID) -> ActionResult:
        def operation(contract: Contract) -> ActionResult:
            require_actor(
                self._session, actor_id, (contract.creator_id,), "mark withdrawn", contract.id,
            )
            self._lifecycle.advance_workflow(contract, WorkflowStatus.PAYMENT_WITHDRAWN, actor_id)
            return ActionResult.ok("Pagamento marcado como sacado", entity_id=contract.id)

        return self._run(contract_id, actor_id, operation)
