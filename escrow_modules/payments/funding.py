"""
Funding Module Service (``escrow_modules.payments.funding``).

Responsibility
--------------
The gate between an accepted offer and work starting: charge the brand
for the contract budget through the ``PaymentGateway`` and settle the
contract on the outcome.  Also settles charges whose outcome arrives
later through a processor webhook.

Invariants enforced
-------------------
* The processor is called before anything is written, never while the
  session holds uncommitted changes.
* Definitive success: funding Transaction ``paid``; contract
  pending -> active (or payment_failed -> active on retry), started_at
  stamped, first milestone in progress.
* Definitive failure: funding Transaction ``failed``; contract and
  workflow -> payment_failed.
* Unknown outcome (timeout or processor "pending"): the contract stays
  pending / payment_pending and a ``pending`` Transaction carries the
  external id.  A later call reconciles it with ``retrieve`` instead of
  charging again.
* Webhooks are idempotent through ``WebhookEvent``: a replayed event is a
  successful no-op.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from escrow_kernel.domain.clock import Clock
from escrow_kernel.domain.dtos import ActionResult, FundingResult
from escrow_kernel.domain.ports import GatewayResult, GatewayStatus, PaymentGateway
from escrow_kernel.domain.workflow import require_action
from escrow_kernel.exceptions import (
    ContractNotFoundError,
    DuplicateOperationError,
    EscrowKernelError,
    ExternalGatewayError,
    GatewayTimeoutError,
)
from escrow_kernel.logging_config import LogContext, get_logger
from escrow_kernel.models.contract import Contract, ContractStatus, WorkflowStatus
from escrow_kernel.models.transaction import (
    Transaction,
    TransactionStatus,
    TransactionType,
)
from escrow_kernel.services.outbox_service import OutboxPublisher, OutboxService
from escrow_kernel.services.webhook_service import WebhookEventService
from escrow_kernel.utils.idempotency import generate_idempotency_key
from escrow_modules._helpers import ModuleService, load, message_for, require_actor
from escrow_modules.contracts.lifecycle import ContractLifecycle
from escrow_modules.contracts.workflows import (
    CONTRACT_OPERATIONS_WORKFLOW,
    CONTRACT_PAYMENT_WORKFLOW,
)
from escrow_modules.milestones.service import MilestoneTimeline

logger = get_logger("modules.payments.funding")

CHARGE_SUCCEEDED = "charge.succeeded"
CHARGE_FAILED = "charge.failed"


class FundingService(ModuleService):
    """
    Charge brands for contracts.

    Contract
    --------
    ``process_contract_payment`` and ``retry_payment`` return
    ``FundingResult``; ``handle_gateway_webhook`` returns ``ActionResult``.
    """

    def __init__(
        self,
        session: Session,
        gateway: PaymentGateway,
        clock: Clock | None = None,
        publisher: OutboxPublisher | None = None,
        auto_commit: bool = True,
    ):
        super().__init__(session, clock, publisher, auto_commit)
        self._gateway = gateway
        self._outbox = OutboxService(session, self._clock)
        self._lifecycle = ContractLifecycle(session, self._clock, self._outbox)
        self._timeline = MilestoneTimeline(session, self._clock, self._outbox)
        self._webhooks = WebhookEventService(session, self._clock)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def _pending_charge(self, contract_id: UUID) -> Transaction | None:
        return self._session.execute(
            select(Transaction)
            .where(Transaction.contract_id == contract_id)
            .where(Transaction.type == TransactionType.CONTRACT_FUNDING.value)
            .where(Transaction.status == TransactionStatus.PENDING.value)
            .order_by(Transaction.created_at.desc())
            .limit(1)
        ).scalar_one_or_none()

    def _attempt_number(self, contract_id: UUID) -> int:
        count = self._session.execute(
            select(func.count(Transaction.id))
            .where(Transaction.contract_id == contract_id)
            .where(Transaction.type == TransactionType.CONTRACT_FUNDING.value)
        ).scalar_one()
        return int(count) + 1

    # -------------------------------------------------------------------------
    # Charging
    # -------------------------------------------------------------------------

    def process_contract_payment(self, contract_id: UUID, actor_id: UUID) -> FundingResult:
        """Charge the brand for a pending contract."""
        return self._charge(contract_id, actor_id, action="fund")

    def retry_payment(self, contract_id: UUID, actor_id: UUID) -> FundingResult:
        """Charge again after a definitive failure; only from payment_failed."""
        return self._charge(contract_id, actor_id, action="retry")

    def _charge(self, contract_id: UUID, actor_id: UUID, action: str) -> FundingResult:
        with LogContext.bind(actor_id=str(actor_id), contract_id=str(contract_id)):
            try:
                contract = load(self._session, Contract, contract_id, ContractNotFoundError)
                require_actor(
                    self._session, actor_id, (contract.brand_id,), "fund contract", contract.id,
                )
                require_action(
                    CONTRACT_OPERATIONS_WORKFLOW, "Contract", contract.id, contract.status, action,
                )
            except EscrowKernelError as exc:
                self._abort()
                return FundingResult(
                    success=False,
                    status="rejected",
                    contract_id=contract_id,
                    message=message_for(exc),
                )

            pending = self._pending_charge(contract.id)
            outcome = self._call_gateway(contract, pending, action)

            try:
                funding = self._settle(contract, pending, outcome, actor_id)
            except EscrowKernelError as exc:
                self._finish(self._reject(exc, contract_id))
                return FundingResult(
                    success=False,
                    status="rejected",
                    contract_id=contract_id,
                    external_id=outcome.external_id,
                    message=message_for(exc),
                )
            except Exception:
                self._abort()
                raise

            self._finish(ActionResult.ok(funding.message or "", entity_id=contract.id))
            return funding

    def _call_gateway(
        self,
        contract: Contract,
        pending: Transaction | None,
        action: str,
    ) -> GatewayResult:
        """Ask the processor; never raises for processor-side problems."""
        try:
            if pending is not None and pending.external_id:
                # An earlier attempt has an unknown outcome: reconcile, don't recharge.
                return self._gateway.retrieve(pending.external_id)
            attempt = self._attempt_number(contract.id) if action == "retry" else None
            return self._gateway.charge_or_subscribe(
                reference=generate_idempotency_key("escrow", "contract_funding", contract.id, attempt),
                amount=contract.budget,
                customer_id=contract.brand_id,
                metadata={
                    "contract_id": str(contract.id),
                    "creator_id": str(contract.creator_id),
                    "title": contract.title,
                },
            )
        except GatewayTimeoutError as exc:
            logger.warning(
                "contract_funding_timeout",
                extra={"contract_id": str(contract.id), "external_id": exc.external_id},
            )
            return GatewayResult(
                status=GatewayStatus.PENDING,
                external_id=exc.external_id or (pending.external_id if pending else None),
                message=str(exc),
            )
        except ExternalGatewayError as exc:
            logger.warning(
                "contract_funding_gateway_error",
                extra={"contract_id": str(contract.id), "error": str(exc)},
            )
            return GatewayResult(status=GatewayStatus.FAILED, message=str(exc))

    # -------------------------------------------------------------------------
    # Settlement
    # -------------------------------------------------------------------------

    def _settle(
        self,
        contract: Contract,
        pending: Transaction | None,
        outcome: GatewayResult,
        actor_id: UUID,
    ) -> FundingResult:
        now = self._clock.now()
        charge = pending
        if charge is None:
            charge = Transaction(
                type=TransactionType.CONTRACT_FUNDING.value,
                status=TransactionStatus.PENDING.value,
                amount=contract.budget,
                party_id=contract.brand_id,
                contract_id=contract.id,
                created_by_id=actor_id,
            )
            self._session.add(charge)
        charge.external_id = outcome.external_id or charge.external_id
        charge.updated_by_id = actor_id

        if outcome.status == GatewayStatus.SUCCEEDED:
            action = "fund" if contract.status == ContractStatus.PENDING.value else "retry"
            charge.status = TransactionStatus.PAID.value
            charge.paid_at = now
            self._lifecycle.perform(contract, action, actor_id)
            self._timeline.start_next(contract, actor_id)
            self._outbox.notify_parties(
                (contract.brand_id, contract.creator_id),
                "contract_funded",
                {"contract_id": contract.id, "title": contract.title, "amount": contract.budget},
            )
            logger.info(
                "contract_funded",
                extra={
                    "contract_id": str(contract.id),
                    "amount": str(contract.budget),
                    "external_id": charge.external_id,
                },
            )
            return FundingResult(
                success=True,
                status=TransactionStatus.PAID.value,
                contract_id=contract.id,
                external_id=charge.external_id,
                message="Pagamento confirmado",
            )

        if outcome.status == GatewayStatus.FAILED:
            charge.status = TransactionStatus.FAILED.value
            charge.details = {"failure": outcome.message}
            if contract.status == ContractStatus.PENDING.value:
                self._lifecycle.perform(contract, "fund_failed", actor_id, outcome.message)
            if CONTRACT_PAYMENT_WORKFLOW.allows(contract.workflow_status, WorkflowStatus.PAYMENT_FAILED):
                self._lifecycle.advance_workflow(contract, WorkflowStatus.PAYMENT_FAILED, actor_id)
            self._session.flush()
            self._outbox.notify(
                contract.brand_id,
                "funding_failed",
                {"contract_id": contract.id, "title": contract.title, "reason": outcome.message},
            )
            logger.warning(
                "contract_funding_failed",
                extra={"contract_id": str(contract.id), "reason": outcome.message},
            )
            return FundingResult(
                success=False,
                status=TransactionStatus.FAILED.value,
                contract_id=contract.id,
                external_id=charge.external_id,
                message="Pagamento recusado",
            )

        self._session.flush()
        logger.info(
            "contract_funding_pending",
            extra={"contract_id": str(contract.id), "external_id": charge.external_id},
        )
        return FundingResult(
            success=False,
            status=TransactionStatus.PENDING.value,
            contract_id=contract.id,
            external_id=charge.external_id,
            message="Pagamento em processamento, aguardando confirmação",
        )

    # -------------------------------------------------------------------------
    # Webhooks
    # -------------------------------------------------------------------------

    def handle_gateway_webhook(
        self,
        event_id: str,
        event_type: str,
        payload: dict[str, Any],
    ) -> ActionResult:
        """Settle a pending funding charge from a processor event."""
        try:
            event = self._webhooks.register(event_id, event_type, payload)
        except DuplicateOperationError:
            return self._finish(ActionResult.ok("Evento já processado", already_processed=True))
        except Exception:
            self._abort()
            raise

        try:
            if event_type not in (CHARGE_SUCCEEDED, CHARGE_FAILED):
                self._webhooks.mark_processed(event)
                return self._finish(ActionResult.ok("Evento ignorado", ignored=True))

            external_id = payload.get("external_id") or payload.get("id")
            charge = None
            if external_id:
                charge = self._session.execute(
                    select(Transaction)
                    .where(Transaction.external_id == external_id)
                    .where(Transaction.type == TransactionType.CONTRACT_FUNDING.value)
                    .order_by(Transaction.created_at.desc())
                    .limit(1)
                ).scalar_one_or_none()

            if charge is None or charge.contract_id is None:
                self._webhooks.mark_failed(event, f"no funding charge for {external_id!r}")
                logger.warning(
                    "webhook_charge_not_found",
                    extra={"external_event_id": event_id, "external_id": external_id},
                )
                return self._finish(ActionResult.ok("Evento ignorado", ignored=True))

            if charge.status != TransactionStatus.PENDING.value:
                self._webhooks.mark_processed(event)
                return self._finish(
                    ActionResult.ok("Cobrança já liquidada", entity_id=charge.contract_id, already_settled=True)
                )

            contract = load(self._session, Contract, charge.contract_id, ContractNotFoundError)
            status = GatewayStatus.SUCCEEDED if event_type == CHARGE_SUCCEEDED else GatewayStatus.FAILED
            with LogContext.bind(contract_id=str(contract.id)):
                funding = self._settle(
                    contract,
                    charge,
                    GatewayResult(status=status, external_id=external_id, message=payload.get("message"), raw=payload),
                    contract.brand_id,
                )
            self._webhooks.mark_processed(event)
            result = ActionResult.ok(
                "Evento processado",
                entity_id=contract.id,
                funding_status=funding.status,
            )
        except EscrowKernelError as exc:
            result = self._reject(exc)
        except Exception:
            self._abort()
            raise
        return self._finish(result)
