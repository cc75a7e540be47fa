"""
ContractLifecycle -- flush-only contract state machine.

Responsibility:
    Applies contract status and workflow_status changes, stamps the
    lifecycle timestamps, writes the audit entry and enqueues the party
    notifications, all inside the caller's transaction.  Shared by the
    contract, dispute, escrow and funding services so a multi-aggregate
    change commits once.

Invariants enforced:
    - ``transition_to`` only honours the fixed status table; guarded
      operations resolve their transition by action name in
      ``CONTRACT_OPERATIONS_WORKFLOW``.
    - A rejected transition raises before anything is modified.
    - workflow_status only moves forward through ``CONTRACT_PAYMENT_WORKFLOW``.
    - When the last open contract of a campaign becomes terminal, and
      every completed one has been credited, the campaign is closed and
      its chat room archived exactly once.
"""

from __future__ import annotations

from enum import Enum
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from escrow_kernel.domain.clock import Clock, SystemClock
from escrow_kernel.domain.workflow import require_action, require_transition
from escrow_kernel.logging_config import get_logger
from escrow_kernel.models.campaign import Campaign, CampaignStatus
from escrow_kernel.models.contract import (
    TERMINAL_CONTRACT_STATUSES,
    Contract,
    ContractStatus,
    WorkflowStatus,
)
from escrow_kernel.models.job_payment import JobPayment, JobPaymentStatus
from escrow_kernel.models.transaction import (
    Transaction,
    TransactionStatus,
    TransactionType,
)
from escrow_kernel.services.audit_service import ContractAuditService
from escrow_kernel.services.outbox_service import OutboxService
from escrow_modules.contracts.workflows import (
    CONTRACT_OPERATIONS_WORKFLOW,
    CONTRACT_PAYMENT_WORKFLOW,
    CONTRACT_STATUS_WORKFLOW,
)

logger = get_logger("modules.contracts.lifecycle")


def _value(state: str | Enum) -> str:
    return state.value if isinstance(state, Enum) else state


class ContractLifecycle:

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        outbox: OutboxService | None = None,
        audit: ContractAuditService | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._outbox = outbox or OutboxService(session, self._clock)
        self._audit = audit or ContractAuditService(session, self._clock)

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    @staticmethod
    def can_transition(current: str | Enum, target: str | Enum) -> bool:
        return CONTRACT_STATUS_WORKFLOW.allows(current, target)

    def transition_to(
        self,
        contract: Contract,
        target: str | Enum,
        actor_id: UUID,
        reason: str | None = None,
    ) -> Contract:
        """Move along the fixed status table.

        Raises:
            InvalidTransitionError: the pair is not in the table; the
                contract is left untouched.
        """
        target_status = _value(target)
        require_transition(
            CONTRACT_STATUS_WORKFLOW, "Contract", contract.id, contract.status, target_status, reason,
        )
        action = next(
            t.action
            for t in CONTRACT_STATUS_WORKFLOW.transitions
            if t.from_state == contract.status and t.to_state == target_status
        )
        self._apply(contract, target_status, action, actor_id, reason)
        return contract

    def perform(
        self,
        contract: Contract,
        action: str,
        actor_id: UUID,
        reason: str | None = None,
    ) -> Contract:
        """Apply a guarded operation resolved by action name."""
        transition = require_action(
            CONTRACT_OPERATIONS_WORKFLOW, "Contract", contract.id, contract.status, action,
        )
        self._apply(contract, transition.to_state, action, actor_id, reason)
        return contract

    def _apply(
        self,
        contract: Contract,
        new_status: str,
        action: str,
        actor_id: UUID,
        reason: str | None,
    ) -> None:
        now = self._clock.now()
        old_status = contract.status
        contract.status = new_status
        contract.updated_by_id = actor_id

        if new_status == ContractStatus.ACTIVE.value:
            contract.started_at = contract.started_at or now
        elif new_status == ContractStatus.COMPLETED.value:
            contract.completed_at = now
        elif new_status in (ContractStatus.CANCELLED.value, ContractStatus.TERMINATED.value):
            contract.cancelled_at = now
            contract.cancellation_reason = reason
        elif new_status == ContractStatus.DISPUTED.value:
            contract.disputed_at = now
            contract.dispute_reason = reason

        # Keep workflow_status in step where the progression allows it.
        if new_status == ContractStatus.ACTIVE.value:
            self._follow_workflow(contract, WorkflowStatus.ACTIVE, actor_id)
        elif new_status in (ContractStatus.CANCELLED.value, ContractStatus.TERMINATED.value):
            self._follow_workflow(contract, WorkflowStatus.TERMINATED, actor_id)

        self._session.flush()
        self._audit.record(
            contract, actor_id, action, old_status, new_status,
            {"reason": reason} if reason else None,
        )
        self._outbox.notify_parties(
            (contract.brand_id, contract.creator_id),
            "contract_status_changed",
            {
                "contract_id": contract.id,
                "title": contract.title,
                "old_status": old_status,
                "new_status": new_status,
                "reason": reason,
            },
        )
        logger.info(
            "contract_status_changed",
            extra={
                "contract_id": str(contract.id),
                "action": action,
                "old_status": old_status,
                "new_status": new_status,
                "actor_id": str(actor_id),
            },
        )

        # A completed contract closes its campaign once the escrow is
        # credited (EscrowLedger.process), not here.
        if new_status in TERMINAL_CONTRACT_STATUSES and new_status != ContractStatus.COMPLETED.value:
            self.close_campaign_if_finished(contract, actor_id)

    # -------------------------------------------------------------------------
    # workflow_status
    # -------------------------------------------------------------------------

    def _follow_workflow(self, contract: Contract, target: WorkflowStatus, actor_id: UUID) -> None:
        if CONTRACT_PAYMENT_WORKFLOW.allows(contract.workflow_status, target):
            self.advance_workflow(contract, target, actor_id)

    def advance_workflow(
        self,
        contract: Contract,
        target: str | Enum,
        actor_id: UUID,
    ) -> Contract:
        target_status = _value(target)
        old = contract.workflow_status
        require_transition(
            CONTRACT_PAYMENT_WORKFLOW, "ContractWorkflow", contract.id, old, target_status,
        )
        contract.workflow_status = target_status
        contract.updated_by_id = actor_id
        self._session.flush()
        self._audit.record(contract, actor_id, "workflow_status_changed", old, target_status)
        logger.info(
            "contract_workflow_advanced",
            extra={
                "contract_id": str(contract.id),
                "old_workflow_status": old,
                "new_workflow_status": target_status,
            },
        )
        return contract

    # -------------------------------------------------------------------------
    # Money side effects
    # -------------------------------------------------------------------------

    def funding_transaction(self, contract: Contract) -> Transaction | None:
        """Latest paid funding charge of the contract, if any."""
        return self._session.execute(
            select(Transaction)
            .where(Transaction.contract_id == contract.id)
            .where(Transaction.type == TransactionType.CONTRACT_FUNDING.value)
            .where(Transaction.status == TransactionStatus.PAID.value)
            .order_by(Transaction.created_at.desc())
            .limit(1)
        ).scalar_one_or_none()

    def record_funding_refund(
        self,
        contract: Contract,
        actor_id: UUID,
        reason: str | None = None,
    ) -> Transaction | None:
        """Queue a refund of the brand's charge; once per contract.

        The refund itself is executed by the payment processor
        integration; here it is recorded as a pending ``refund``
        Transaction pointing at the original charge.
        """
        funding = self.funding_transaction(contract)
        if funding is None:
            return None
        existing = self._session.execute(
            select(Transaction)
            .where(Transaction.contract_id == contract.id)
            .where(Transaction.type == TransactionType.REFUND.value)
        ).scalar_one_or_none()
        if existing is not None:
            return existing

        refund = Transaction(
            type=TransactionType.REFUND.value,
            status=TransactionStatus.PENDING.value,
            amount=funding.amount,
            party_id=contract.brand_id,
            contract_id=contract.id,
            external_id=funding.external_id,
            details={"funding_transaction_id": str(funding.id), "reason": reason},
            created_by_id=actor_id,
        )
        self._session.add(refund)
        self._session.flush()
        self._outbox.notify(
            contract.brand_id,
            "refund_scheduled",
            {"contract_id": contract.id, "amount": funding.amount},
        )
        logger.info(
            "contract_refund_recorded",
            extra={
                "contract_id": str(contract.id),
                "amount": str(funding.amount),
                "funding_transaction_id": str(funding.id),
            },
        )
        return refund

    # -------------------------------------------------------------------------
    # Campaign closure
    # -------------------------------------------------------------------------

    def close_campaign_if_finished(self, contract: Contract, actor_id: UUID) -> bool:
        """Close the campaign once all of its contracts are terminal.

        A completed contract only counts once its job payment has been
        credited to the creator.
        """
        if contract.campaign_id is None:
            return False
        campaign = self._session.get(Campaign, contract.campaign_id)
        if campaign is None:
            return False

        rows = self._session.execute(
            select(Contract.status, JobPayment.status)
            .outerjoin(JobPayment, JobPayment.contract_id == Contract.id)
            .where(Contract.campaign_id == campaign.id)
        ).all()
        statuses = [contract_status for contract_status, _ in rows]
        if not statuses or any(s not in TERMINAL_CONTRACT_STATUSES for s in statuses):
            return False
        if any(
            contract_status == ContractStatus.COMPLETED.value
            and payment_status != JobPaymentStatus.COMPLETED.value
            for contract_status, payment_status in rows
        ):
            return False

        if campaign.status not in (CampaignStatus.COMPLETED.value, CampaignStatus.CANCELLED.value):
            campaign.status = (
                CampaignStatus.COMPLETED.value
                if ContractStatus.COMPLETED.value in statuses
                else CampaignStatus.CANCELLED.value
            )
            campaign.updated_by_id = actor_id

        if campaign.chat_room_id and campaign.chat_archived_at is None:
            self._outbox.archive_chat_room(campaign.chat_room_id, "campaign_finished")
            campaign.chat_archived_at = self._clock.now()

        self._session.flush()
        logger.info(
            "campaign_closed",
            extra={"campaign_id": str(campaign.id), "status": campaign.status},
        )
        return True
