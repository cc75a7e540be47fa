"""
Dispute Module Service (``escrow_modules.disputes.service``).

A party opens a dispute on a running contract; a platform admin resolves
it by naming the winner.  The winner decides the single terminal status
and the money side effect:

* creator wins -> ``completed``, workflow ``waiting_review``, JobPayment
  created so the escrow is released after the creator's review.
* brand wins -> ``cancelled``, workflow ``terminated``, the funding charge
  queued for refund.

Resolution is recorded on the contract (resolved_at, resolved_by_id,
dispute_winner, resolution_reason) and in the audit log together with the
acting admin.  Both parties are notified through the outbox, so a failed
delivery never undoes the resolution.
"""

from __future__ import annotations

from enum import Enum
from uuid import UUID

from sqlalchemy.orm import Session

from escrow_kernel.domain.clock import Clock
from escrow_kernel.domain.dtos import ActionResult
from escrow_kernel.exceptions import (
    ContractNotFoundError,
    EscrowKernelError,
    InvalidTransitionError,
    UnauthorizedActorError,
)
from escrow_kernel.logging_config import LogContext, get_logger
from escrow_kernel.models.contract import (
    Contract,
    ContractStatus,
    DisputeWinner,
    WorkflowStatus,
)
from escrow_kernel.services.audit_service import ContractAuditService
from escrow_kernel.services.outbox_service import OutboxPublisher, OutboxService
from escrow_modules._helpers import ModuleService, is_admin, load, require_actor
from escrow_modules.contracts.lifecycle import ContractLifecycle
from escrow_modules.contracts.workflows import CONTRACT_PAYMENT_WORKFLOW
from escrow_modules.payments.escrow import EscrowLedger

logger = get_logger("modules.disputes.service")

# winner -> (contract action, terminal status)
_RESOLUTION = {
    DisputeWinner.CREATOR.value: ("resolve_for_creator", ContractStatus.COMPLETED.value),
    DisputeWinner.BRAND.value: ("resolve_for_brand", ContractStatus.CANCELLED.value),
}


def _value(v: str | Enum) -> str:
    return v.value if isinstance(v, Enum) else v


class DisputeService(ModuleService):

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        publisher: OutboxPublisher | None = None,
        auto_commit: bool = True,
    ):
        super().__init__(session, clock, publisher, auto_commit)
        self._outbox = OutboxService(session, self._clock)
        self._audit = ContractAuditService(session, self._clock)
        self._lifecycle = ContractLifecycle(session, self._clock, self._outbox, self._audit)
        self._ledger = EscrowLedger(session, self._clock, self._lifecycle, outbox=self._outbox)

    def start_dispute(self, contract_id: UUID, actor_id: UUID, reason: str) -> ActionResult:
        """Either party moves a running contract to ``disputed``."""
        with LogContext.bind(actor_id=str(actor_id), contract_id=str(contract_id)):
            try:
                contract = load(self._session, Contract, contract_id, ContractNotFoundError)
                require_actor(
                    self._session, actor_id, (contract.brand_id, contract.creator_id),
                    "dispute", contract.id, allow_admin=False,
                )
                self._lifecycle.perform(contract, "dispute", actor_id, reason)
                logger.info(
                    "dispute_started",
                    extra={"contract_id": str(contract.id), "reason": reason},
                )
                result = ActionResult.ok("Disputa aberta", entity_id=contract.id)
            except EscrowKernelError as exc:
                result = self._reject(exc, contract_id)
            except Exception:
                self._abort()
                raise
            return self._finish(result)

    def resolve_dispute(
        self,
        contract_id: UUID,
        winner: str | DisputeWinner,
        reason: str,
        admin_id: UUID,
        outcome: str | ContractStatus | None = None,
    ) -> ActionResult:
        """Close a dispute in favour of ``winner``.

        ``outcome`` is optional; when given it must be the terminal status
        the winner maps to (completed for the creator, cancelled for the
        brand), otherwise the resolution is rejected.
        """
        with LogContext.bind(actor_id=str(admin_id), contract_id=str(contract_id)):
            try:
                contract = load(self._session, Contract, contract_id, ContractNotFoundError)
                if not is_admin(self._session, admin_id):
                    raise UnauthorizedActorError(str(admin_id), "resolve dispute", str(contract.id))

                winner_value = _value(winner)
                if winner_value not in _RESOLUTION:
                    raise InvalidTransitionError(
                        "Contract", str(contract.id), contract.status, "resolve_dispute",
                        f"unknown winner '{winner_value}'",
                    )
                action, terminal = _RESOLUTION[winner_value]
                if outcome is not None and _value(outcome) != terminal:
                    raise InvalidTransitionError(
                        "Contract", str(contract.id), contract.status, _value(outcome),
                        f"outcome does not match winner '{winner_value}'",
                    )

                self._lifecycle.perform(contract, action, admin_id, reason)
                now = self._clock.now()
                contract.resolved_at = now
                contract.resolved_by_id = admin_id
                contract.dispute_winner = winner_value
                contract.resolution_reason = reason

                data = {"winner": winner_value, "status": contract.status}
                if winner_value == DisputeWinner.CREATOR.value:
                    if CONTRACT_PAYMENT_WORKFLOW.allows(contract.workflow_status, WorkflowStatus.WAITING_REVIEW):
                        self._lifecycle.advance_workflow(contract, WorkflowStatus.WAITING_REVIEW, admin_id)
                    payment = self._ledger.create_for_contract(contract, admin_id)
                    data["job_payment_id"] = payment.id
                else:
                    refund = self._lifecycle.record_funding_refund(contract, admin_id, reason)
                    data["refund_transaction_id"] = refund.id if refund else None
                self._session.flush()

                self._audit.record(
                    contract, admin_id, "dispute_resolved",
                    details={"winner": winner_value, "reason": reason},
                )
                self._outbox.notify_parties(
                    (contract.brand_id, contract.creator_id),
                    "dispute_resolved",
                    {
                        "contract_id": contract.id,
                        "title": contract.title,
                        "winner": winner_value,
                        "reason": reason,
                    },
                )
                logger.info(
                    "dispute_resolved",
                    extra={
                        "contract_id": str(contract.id),
                        "admin_id": str(admin_id),
                        "winner": winner_value,
                        "new_status": contract.status,
                    },
                )
                result = ActionResult.ok("Disputa resolvida", entity_id=contract.id, **data)
            except EscrowKernelError as exc:
                result = self._reject(exc, contract_id)
            except Exception:
                self._abort()
                raise
            return self._finish(result)
