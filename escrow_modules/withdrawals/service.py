"""
Withdrawal Module Service (``escrow_modules.withdrawals.service``).

Responsibility
--------------
Creator payout requests: validation against the payout method, the
atomic debit of the available balance, admin approval, the payout call
to the processor and the cancel / reject / refund paths that re-credit
the creator.

Architecture position
---------------------
**Modules layer**.  Owns the transaction boundary; balance changes go
through ``CreatorBalanceService`` only.

Invariants enforced
-------------------
* The withdrawal row and the balance debit are written in one
  transaction; a failure rolls back both.
* ``process_withdrawal`` commits ``processing`` before calling the
  processor and never debits again.
* An unknown payout outcome (timeout, processor "pending") leaves the
  withdrawal in ``processing`` for reconciliation.
* A failed payout is NOT re-credited implicitly; ``refund_failed_withdrawal``
  does it once, guarded by ``refunded_at``.
* Cancel and reject re-credit exactly the debited amount.

Failure modes
-------------
* Validation and ledger errors -> ``ActionResult(success=False)`` with a
  pt-BR message, session rolled back.
* Definitive payout failure -> the ``failed`` status is committed and
  ``ActionResult(success=False, code="WITHDRAWAL_FAILED")`` returned.
"""

from __future__ import annotations

from collections.abc import Iterable
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from escrow_config.schema import WithdrawalMethodDef
from escrow_kernel.domain.actors import SYSTEM_ACTOR_ID
from escrow_kernel.domain.clock import Clock
from escrow_kernel.domain.dtos import ActionResult
from escrow_kernel.domain.ports import GatewayResult, GatewayStatus, PaymentGateway
from escrow_kernel.domain.values import ZERO, to_cents
from escrow_kernel.domain.workflow import require_action
from escrow_kernel.exceptions import (
    EscrowKernelError,
    ExternalGatewayError,
    GatewayTimeoutError,
    InsufficientBalanceError,
    InvalidAmountError,
    InvalidTransitionError,
    InvalidWithdrawalDetailsError,
    LedgerInvariantViolationError,
    UnauthorizedActorError,
    WithdrawalLimitError,
    WithdrawalMethodUnavailableError,
    WithdrawalNotFoundError,
)
from escrow_kernel.logging_config import LogContext, get_logger
from escrow_kernel.models.transaction import (
    Transaction,
    TransactionStatus,
    TransactionType,
)
from escrow_kernel.models.withdrawal import Withdrawal, WithdrawalMethod, WithdrawalStatus
from escrow_kernel.services.balance_service import CreatorBalanceService
from escrow_kernel.services.outbox_service import OutboxPublisher, OutboxService
from escrow_kernel.utils.idempotency import generate_idempotency_key
from escrow_modules._helpers import (
    ModuleService,
    is_admin,
    load,
    publish_after_commit,
    require_actor,
)
from escrow_modules.withdrawals.workflows import WITHDRAWAL_WORKFLOW

logger = get_logger("modules.withdrawals.service")

WITHDRAWAL_FAILED = "WITHDRAWAL_FAILED"


class WithdrawalService(ModuleService):
    """
    Orchestrates creator withdrawals.

    Usage::

        service = WithdrawalService(session, gateway, clock=clock)
        result = service.create_withdrawal(
            creator_id, Decimal("100.00"), "pix", {"pix_key": "..."}, creator_id,
        )
        if result.success:
            service.process_withdrawal(result.entity_id, admin_id)
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
        self._balances = CreatorBalanceService(session, self._clock)

    # =========================================================================
    # Methods
    # =========================================================================

    def sync_methods(
        self,
        definitions: Iterable[WithdrawalMethodDef],
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> list[WithdrawalMethod]:
        """Insert or update payout methods from configuration."""
        synced = []
        try:
            for definition in definitions:
                method = self._session.execute(
                    select(WithdrawalMethod).where(WithdrawalMethod.code == definition.code)
                ).scalar_one_or_none()
                if method is None:
                    method = WithdrawalMethod(code=definition.code, created_by_id=actor_id)
                    self._session.add(method)
                else:
                    method.updated_by_id = actor_id
                method.name = definition.name
                method.min_amount = definition.min_amount
                method.max_amount = definition.max_amount
                method.processing_fee = definition.processing_fee
                method.processing_time = definition.processing_time
                method.is_bank_transfer = definition.is_bank_transfer
                method.is_active = definition.is_active
                method.required_fields = list(definition.required_fields)
                synced.append(method)
            self._session.flush()
        except Exception:
            self._abort()
            raise
        if self._auto_commit:
            self._session.commit()
        logger.info("withdrawal_methods_synced", extra={"codes": [m.code for m in synced]})
        return synced

    def available_methods(self) -> list[WithdrawalMethod]:
        return list(self._session.execute(
            select(WithdrawalMethod)
            .where(WithdrawalMethod.is_active.is_(True))
            .order_by(WithdrawalMethod.code)
        ).scalars().all())

    def _method(self, code: str) -> WithdrawalMethod:
        method = self._session.execute(
            select(WithdrawalMethod).where(WithdrawalMethod.code == code)
        ).scalar_one_or_none()
        if method is None or not method.is_active:
            raise WithdrawalMethodUnavailableError(code)
        return method

    # =========================================================================
    # Helpers
    # =========================================================================

    def _load(self, withdrawal_id: UUID) -> Withdrawal:
        return load(self._session, Withdrawal, withdrawal_id, WithdrawalNotFoundError)

    def _require_admin(self, actor_id: UUID, action: str, withdrawal: Withdrawal) -> None:
        if not is_admin(self._session, actor_id):
            raise UnauthorizedActorError(str(actor_id), action, str(withdrawal.id))

    def _move(self, withdrawal: Withdrawal, action: str, actor_id: UUID) -> str:
        old_status = withdrawal.status
        transition = require_action(
            WITHDRAWAL_WORKFLOW, "Withdrawal", withdrawal.id, old_status, action,
        )
        withdrawal.status = transition.to_state
        withdrawal.updated_by_id = actor_id
        return old_status

    def _persist_outcome(self, result: ActionResult) -> ActionResult:
        """Commit state that must survive a failed outcome (e.g. ``failed``)."""
        if self._auto_commit:
            self._session.commit()
            publish_after_commit(self._publisher)
        else:
            self._session.flush()
        return result

    @staticmethod
    def _amount(amount: Decimal | int | str) -> Decimal:
        try:
            value = to_cents(amount)
        except ValueError as exc:
            raise InvalidAmountError(amount, str(exc)) from exc
        if value <= ZERO:
            raise InvalidAmountError(value)
        return value

    def _enrich(self, method: WithdrawalMethod, details: dict[str, Any]) -> dict[str, Any]:
        enriched = dict(details)
        enriched["method_name"] = method.name
        enriched["processing_fee"] = str(method.processing_fee)
        enriched["processing_time"] = method.processing_time
        enriched["requested_at"] = self._clock.now().isoformat()
        if method.is_bank_transfer:
            try:
                account = self._gateway.lookup_bank_account(details)
            except ExternalGatewayError as exc:
                logger.warning(
                    "bank_account_lookup_failed",
                    extra={"method_code": method.code, "error": str(exc)},
                )
                account = None
            if account:
                enriched["bank_account"] = account
        return enriched

    # =========================================================================
    # Create
    # =========================================================================

    def create_withdrawal(
        self,
        creator_id: UUID,
        amount: Decimal | int | str,
        method_code: str,
        details: dict[str, Any],
        actor_id: UUID,
    ) -> ActionResult:
        """Validate the request and debit the available balance."""
        with LogContext.bind(actor_id=str(actor_id), creator_id=str(creator_id)):
            try:
                require_actor(self._session, actor_id, (creator_id,), "withdraw for", creator_id)
                method = self._method(method_code)
                value = self._amount(amount)
                if not method.accepts(value):
                    raise WithdrawalLimitError(
                        method.code, value, method.min_amount, method.max_amount,
                    )
                missing = [f for f in method.required_fields if not details.get(f)]
                if missing:
                    raise InvalidWithdrawalDetailsError(method.code, missing)
                if not self._balances.can_withdraw(creator_id, value):
                    snapshot = self._balances.get_snapshot(creator_id)
                    raise InsufficientBalanceError(
                        str(creator_id), value, snapshot.available_balance,
                    )

                # Processor lookups happen before anything is written.
                enriched = self._enrich(method, details)

                withdrawal = Withdrawal(
                    creator_id=creator_id,
                    amount=value,
                    withdrawal_method=method.code,
                    withdrawal_details=enriched,
                    status=WithdrawalStatus.PENDING.value,
                    created_at=self._clock.now(),
                    created_by_id=actor_id,
                )
                self._session.add(withdrawal)
                self._session.flush()
                self._balances.withdraw(
                    creator_id, value, actor_id, reference=f"withdrawal:{withdrawal.id}",
                )
                self._outbox.notify(
                    creator_id,
                    "withdrawal_requested",
                    {"withdrawal_id": withdrawal.id, "amount": value, "method": method.name},
                )
                logger.info(
                    "withdrawal_created",
                    extra={
                        "withdrawal_id": str(withdrawal.id),
                        "amount": str(value),
                        "method_code": method.code,
                    },
                )
                result = ActionResult.ok(
                    "Solicitação de saque criada",
                    entity_id=withdrawal.id,
                    status=withdrawal.status,
                    amount=value,
                )
            except EscrowKernelError as exc:
                result = self._reject(exc)
            except Exception:
                self._abort()
                raise
            return self._finish(result)

    def approve_withdrawal(self, withdrawal_id: UUID, admin_id: UUID) -> ActionResult:
        with LogContext.bind(actor_id=str(admin_id), withdrawal_id=str(withdrawal_id)):
            try:
                withdrawal = self._load(withdrawal_id)
                self._require_admin(admin_id, "approve", withdrawal)
                self._move(withdrawal, "approve", admin_id)
                withdrawal.approved_at = self._clock.now()
                self._session.flush()
                logger.info("withdrawal_approved", extra={"withdrawal_id": str(withdrawal.id)})
                result = ActionResult.ok("Saque aprovado", entity_id=withdrawal.id)
            except EscrowKernelError as exc:
                result = self._reject(exc, withdrawal_id)
            except Exception:
                self._abort()
                raise
            return self._finish(result)

    # =========================================================================
    # Payout
    # =========================================================================

    def pending_withdrawal_ids(self) -> list[UUID]:
        """Withdrawals waiting for a payout, oldest first."""
        return list(self._session.execute(
            select(Withdrawal.id)
            .where(Withdrawal.status.in_((
                WithdrawalStatus.PENDING.value,
                WithdrawalStatus.APPROVED.value,
            )))
            .order_by(Withdrawal.created_at, Withdrawal.id)
        ).scalars().all())

    def process_withdrawal(
        self,
        withdrawal_id: UUID,
        actor_id: UUID = SYSTEM_ACTOR_ID,
        transaction_id: str | None = None,
    ) -> ActionResult:
        """Pay out a pending or approved withdrawal.

        With ``transaction_id`` the payout was made by an operator outside
        the platform and is only recorded.
        """
        with LogContext.bind(actor_id=str(actor_id), withdrawal_id=str(withdrawal_id)):
            try:
                withdrawal = self._load(withdrawal_id)
                self._require_admin(actor_id, "process", withdrawal)
                self._move(withdrawal, "process", actor_id)
                withdrawal.processing_started_at = self._clock.now()
                snapshot = self._balances.get_snapshot(withdrawal.creator_id)
                if not snapshot.is_consistent:
                    raise LedgerInvariantViolationError(
                        creator_id=str(withdrawal.creator_id),
                        available=snapshot.available_balance,
                        pending=snapshot.pending_balance,
                        earned=snapshot.total_earned,
                        withdrawn=snapshot.total_withdrawn,
                        operation="process_withdrawal",
                    )
                self._session.flush()
            except EscrowKernelError as exc:
                return self._finish(self._reject(exc, withdrawal_id))
            except Exception:
                self._abort()
                raise

            self._checkpoint()
            logger.info("withdrawal_processing", extra={"withdrawal_id": str(withdrawal_id)})

            if transaction_id is not None:
                outcome = GatewayResult(status=GatewayStatus.SUCCEEDED, external_id=transaction_id)
            else:
                outcome = self._payout(withdrawal)

            try:
                return self._settle(withdrawal, outcome, actor_id)
            except EscrowKernelError as exc:
                return self._finish(self._reject(exc, withdrawal_id))
            except Exception:
                self._abort()
                raise

    def _payout(self, withdrawal: Withdrawal) -> GatewayResult:
        try:
            return self._gateway.payout(
                reference=generate_idempotency_key("escrow", "withdrawal_payout", withdrawal.id),
                amount=withdrawal.amount,
                method_code=withdrawal.withdrawal_method,
                details=dict(withdrawal.withdrawal_details or {}),
            )
        except GatewayTimeoutError as exc:
            logger.warning(
                "withdrawal_payout_timeout",
                extra={"withdrawal_id": str(withdrawal.id), "external_id": exc.external_id},
            )
            return GatewayResult(status=GatewayStatus.PENDING, external_id=exc.external_id, message=str(exc))
        except ExternalGatewayError as exc:
            logger.warning(
                "withdrawal_payout_error",
                extra={"withdrawal_id": str(withdrawal.id), "error": str(exc)},
            )
            return GatewayResult(status=GatewayStatus.FAILED, message=str(exc))
        except Exception as exc:
            # processing is already committed; settle as failed
            logger.exception("withdrawal_payout_crashed", extra={"withdrawal_id": str(withdrawal.id)})
            return GatewayResult(
                status=GatewayStatus.FAILED,
                message=f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__,
            )

    def _settle(self, withdrawal: Withdrawal, outcome: GatewayResult, actor_id: UUID) -> ActionResult:
        now = self._clock.now()

        if outcome.status == GatewayStatus.SUCCEEDED:
            self._move(withdrawal, "complete", actor_id)
            withdrawal.processed_at = now
            withdrawal.transaction_id = outcome.external_id
            withdrawal.failure_reason = None
            self._session.add(Transaction(
                type=TransactionType.WITHDRAWAL.value,
                status=TransactionStatus.PAID.value,
                amount=withdrawal.amount,
                party_id=withdrawal.creator_id,
                withdrawal_id=withdrawal.id,
                external_id=outcome.external_id,
                paid_at=now,
                details={"method": withdrawal.withdrawal_method},
                created_by_id=actor_id,
            ))
            self._session.flush()
            self._outbox.notify(
                withdrawal.creator_id,
                "withdrawal_completed",
                {"withdrawal_id": withdrawal.id, "amount": withdrawal.amount},
            )
            logger.info(
                "withdrawal_completed",
                extra={
                    "withdrawal_id": str(withdrawal.id),
                    "amount": str(withdrawal.amount),
                    "transaction_id": outcome.external_id,
                },
            )
            return self._finish(ActionResult.ok(
                "Saque concluído",
                entity_id=withdrawal.id,
                status=withdrawal.status,
                transaction_id=outcome.external_id,
            ))

        if outcome.status == GatewayStatus.FAILED:
            self._move(withdrawal, "fail", actor_id)
            withdrawal.processed_at = now
            withdrawal.failure_reason = outcome.message or "payout failed"
            self._session.flush()
            self._outbox.notify(
                withdrawal.creator_id,
                "withdrawal_failed",
                {
                    "withdrawal_id": withdrawal.id,
                    "amount": withdrawal.amount,
                    "reason": withdrawal.failure_reason,
                },
            )
            logger.warning(
                "withdrawal_failed",
                extra={
                    "withdrawal_id": str(withdrawal.id),
                    "reason": withdrawal.failure_reason,
                },
            )
            return self._persist_outcome(ActionResult.fail(
                "Falha no processamento do saque",
                WITHDRAWAL_FAILED,
                withdrawal.id,
                status=withdrawal.status,
                reason=withdrawal.failure_reason,
            ))

        if outcome.external_id:
            details = dict(withdrawal.withdrawal_details or {})
            details["payout_reference"] = outcome.external_id
            withdrawal.withdrawal_details = details
        self._session.flush()
        logger.info(
            "withdrawal_payout_pending",
            extra={"withdrawal_id": str(withdrawal.id), "external_id": outcome.external_id},
        )
        return self._finish(ActionResult.ok(
            "Saque em processamento",
            entity_id=withdrawal.id,
            status=withdrawal.status,
        ))

    # =========================================================================
    # Re-credit paths
    # =========================================================================

    def _cancel(
        self,
        withdrawal: Withdrawal,
        actor_id: UUID,
        reason: str | None,
        template_key: str,
    ) -> None:
        old_status = self._move(withdrawal, "cancel", actor_id)
        withdrawal.cancelled_at = self._clock.now()
        withdrawal.cancellation_reason = reason
        self._session.flush()
        self._balances.restore_withdrawn(
            withdrawal.creator_id, withdrawal.amount, actor_id,
            reference=f"withdrawal:{withdrawal.id}",
        )
        self._outbox.notify(
            withdrawal.creator_id,
            template_key,
            {"withdrawal_id": withdrawal.id, "amount": withdrawal.amount, "reason": reason},
        )
        logger.info(
            template_key,
            extra={
                "withdrawal_id": str(withdrawal.id),
                "old_status": old_status,
                "amount": str(withdrawal.amount),
            },
        )

    def cancel_withdrawal(
        self,
        withdrawal_id: UUID,
        actor_id: UUID,
        reason: str | None = None,
    ) -> ActionResult:
        """Owner or admin cancels; the amount returns to available."""
        with LogContext.bind(actor_id=str(actor_id), withdrawal_id=str(withdrawal_id)):
            try:
                withdrawal = self._load(withdrawal_id)
                require_actor(
                    self._session, actor_id, (withdrawal.creator_id,), "cancel", withdrawal.id,
                )
                self._cancel(withdrawal, actor_id, reason, "withdrawal_cancelled")
                result = ActionResult.ok("Saque cancelado", entity_id=withdrawal.id)
            except EscrowKernelError as exc:
                result = self._reject(exc, withdrawal_id)
            except Exception:
                self._abort()
                raise
            return self._finish(result)

    def reject_withdrawal(self, withdrawal_id: UUID, admin_id: UUID, reason: str) -> ActionResult:
        with LogContext.bind(actor_id=str(admin_id), withdrawal_id=str(withdrawal_id)):
            try:
                withdrawal = self._load(withdrawal_id)
                self._require_admin(admin_id, "reject", withdrawal)
                self._cancel(withdrawal, admin_id, reason, "withdrawal_rejected")
                result = ActionResult.ok("Saque rejeitado", entity_id=withdrawal.id)
            except EscrowKernelError as exc:
                result = self._reject(exc, withdrawal_id)
            except Exception:
                self._abort()
                raise
            return self._finish(result)

    def refund_failed_withdrawal(self, withdrawal_id: UUID, actor_id: UUID) -> ActionResult:
        """Return a failed payout to the available balance, once."""
        with LogContext.bind(actor_id=str(actor_id), withdrawal_id=str(withdrawal_id)):
            try:
                withdrawal = self._load(withdrawal_id)
                self._require_admin(actor_id, "refund", withdrawal)
                if withdrawal.refunded_at is not None:
                    result = ActionResult.ok(
                        "Saque já estornado", entity_id=withdrawal.id, already_refunded=True,
                    )
                    return self._finish(result)
                if withdrawal.status != WithdrawalStatus.FAILED.value:
                    raise InvalidTransitionError(
                        "Withdrawal", str(withdrawal.id), withdrawal.status, "refund",
                        "only failed withdrawals can be refunded",
                    )

                now = self._clock.now()
                withdrawal.refunded_at = now
                withdrawal.updated_by_id = actor_id
                self._balances.restore_withdrawn(
                    withdrawal.creator_id, withdrawal.amount, actor_id,
                    reference=f"withdrawal_refund:{withdrawal.id}",
                )
                self._session.add(Transaction(
                    type=TransactionType.REFUND.value,
                    status=TransactionStatus.PAID.value,
                    amount=withdrawal.amount,
                    party_id=withdrawal.creator_id,
                    withdrawal_id=withdrawal.id,
                    paid_at=now,
                    details={"reason": withdrawal.failure_reason},
                    created_by_id=actor_id,
                ))
                self._session.flush()
                self._outbox.notify(
                    withdrawal.creator_id,
                    "withdrawal_refunded",
                    {"withdrawal_id": withdrawal.id, "amount": withdrawal.amount},
                )
                logger.info(
                    "withdrawal_refunded",
                    extra={"withdrawal_id": str(withdrawal.id), "amount": str(withdrawal.amount)},
                )
                result = ActionResult.ok(
                    "Saque estornado", entity_id=withdrawal.id, already_refunded=False,
                )
            except EscrowKernelError as exc:
                result = self._reject(exc, withdrawal_id)
            except Exception:
                self._abort()
                raise
            return self._finish(result)
