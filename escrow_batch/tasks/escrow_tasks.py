"""
Batch tasks: the escrow core's scheduled sweeps.

Each task builds the module service it drives with ``auto_commit=False``
so the service only flushes and the runner's SAVEPOINT decides whether
the item's writes are kept.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from escrow_batch.domain.types import BatchItemStatus
from escrow_batch.tasks.base import BatchItemInput, BatchTaskResult, TaskRegistry
from escrow_config.schema import EscrowConfig
from escrow_kernel.domain.actors import SYSTEM_ACTOR_ID
from escrow_kernel.domain.clock import Clock, SystemClock
from escrow_kernel.domain.dtos import ActionResult
from escrow_kernel.domain.ports import ChatSink, NotificationDispatcher, PaymentGateway
from escrow_kernel.logging_config import get_logger
from escrow_kernel.services.outbox_service import OutboxPublisher
from escrow_modules.disputes.penalties import DeadlinePolicyService
from escrow_modules.offers.service import OfferService
from escrow_modules.payments.service import EscrowService
from escrow_modules.withdrawals.service import WITHDRAWAL_FAILED, WithdrawalService

logger = get_logger("batch.tasks")


@dataclass(frozen=True)
class TaskContext:
    """What the tasks need from the outside world.

    Ports left as None disable the tasks that depend on them; those tasks
    list no items and log why.
    """

    config: EscrowConfig = field(default_factory=EscrowConfig)
    clock: Clock = field(default_factory=SystemClock)
    gateway: PaymentGateway | None = None
    dispatcher: NotificationDispatcher | None = None
    chat_sink: ChatSink | None = None


def _items(keys: list[UUID]) -> tuple[BatchItemInput, ...]:
    return tuple(
        BatchItemInput(item_index=i, item_key=str(key))
        for i, key in enumerate(keys)
    )


def _from_action(result: ActionResult) -> BatchTaskResult:
    if result.success:
        return BatchTaskResult(
            status=BatchItemStatus.SUCCEEDED,
            result_data=dict(result.data) or None,
        )
    return BatchTaskResult(
        status=BatchItemStatus.FAILED,
        error_code=result.code,
        error_message=result.data.get("detail", result.message),
    )


class CheckTimelineDeadlinesTask:
    """Delay notices, suspensions and penalties for overdue milestones."""

    def __init__(self, context: TaskContext):
        self._context = context

    @property
    def task_type(self) -> str:
        return "escrow.check_timeline_deadlines"

    @property
    def description(self) -> str:
        return "Mark overdue milestones delayed and apply suspensions / penalties"

    def _service(self, session: Session) -> DeadlinePolicyService:
        return DeadlinePolicyService(
            session,
            clock=self._context.clock,
            auto_commit=False,
            policy=self._context.config.penalties,
        )

    def prepare_items(
        self,
        parameters: dict[str, Any],
        session: Session,
        as_of: datetime,
    ) -> tuple[BatchItemInput, ...]:
        return _items(self._service(session).candidate_ids(as_of))

    def execute_item(
        self,
        item: BatchItemInput,
        parameters: dict[str, Any],
        session: Session,
        as_of: datetime,
    ) -> BatchTaskResult:
        report = self._service(session).enforce_milestone(UUID(item.item_key), as_of)
        data = {
            "delayed": len(report.delayed_milestones),
            "suspended": len(report.suspended_creators),
            "penalized": len(report.penalized_creators),
        }
        if not any(data.values()):
            return BatchTaskResult(status=BatchItemStatus.SKIPPED, result_data=data)
        return BatchTaskResult(status=BatchItemStatus.SUCCEEDED, result_data=data)


class ExpireOffersTask:
    """Flip stale pending offers to expired."""

    def __init__(self, context: TaskContext):
        self._context = context

    @property
    def task_type(self) -> str:
        return "escrow.expire_offers"

    @property
    def description(self) -> str:
        return "Expire pending offers past their expiry date"

    def _service(self, session: Session) -> OfferService:
        config = self._context.config
        return OfferService(
            session,
            clock=self._context.clock,
            auto_commit=False,
            fees=config.fees,
            contracts=config.contracts,
            offers=config.offers,
        )

    def prepare_items(
        self,
        parameters: dict[str, Any],
        session: Session,
        as_of: datetime,
    ) -> tuple[BatchItemInput, ...]:
        return _items(self._service(session).stale_offer_ids(as_of))

    def execute_item(
        self,
        item: BatchItemInput,
        parameters: dict[str, Any],
        session: Session,
        as_of: datetime,
    ) -> BatchTaskResult:
        return _from_action(self._service(session).expire_offer(UUID(item.item_key), as_of))


class ProcessPaymentsTask:
    """Release every releasable job payment to its creator."""

    def __init__(self, context: TaskContext):
        self._context = context

    @property
    def task_type(self) -> str:
        return "escrow.process_payments"

    @property
    def description(self) -> str:
        return "Credit creators for completed, reviewed contracts"

    def _service(self, session: Session) -> EscrowService:
        return EscrowService(session, clock=self._context.clock, auto_commit=False)

    def prepare_items(
        self,
        parameters: dict[str, Any],
        session: Session,
        as_of: datetime,
    ) -> tuple[BatchItemInput, ...]:
        payments = self._service(session).pending_releasable_payments()
        return _items([p.id for p in payments])

    def execute_item(
        self,
        item: BatchItemInput,
        parameters: dict[str, Any],
        session: Session,
        as_of: datetime,
    ) -> BatchTaskResult:
        result = self._service(session).process_payment(UUID(item.item_key), SYSTEM_ACTOR_ID)
        if result.success and result.data.get("already_processed"):
            return BatchTaskResult(status=BatchItemStatus.SKIPPED, result_data=dict(result.data))
        return _from_action(result)


class ProcessWithdrawalsTask:
    """Pay out pending and approved withdrawals."""

    def __init__(self, context: TaskContext):
        self._context = context

    @property
    def task_type(self) -> str:
        return "escrow.process_withdrawals"

    @property
    def description(self) -> str:
        return "Send pending withdrawals to the payment processor"

    def _service(self, session: Session) -> WithdrawalService:
        return WithdrawalService(
            session, self._context.gateway, clock=self._context.clock, auto_commit=False,
        )

    def prepare_items(
        self,
        parameters: dict[str, Any],
        session: Session,
        as_of: datetime,
    ) -> tuple[BatchItemInput, ...]:
        if self._context.gateway is None:
            logger.warning("payment_gateway_not_configured", extra={"task_type": self.task_type})
            return ()
        return _items(self._service(session).pending_withdrawal_ids())

    def execute_item(
        self,
        item: BatchItemInput,
        parameters: dict[str, Any],
        session: Session,
        as_of: datetime,
    ) -> BatchTaskResult:
        result = self._service(session).process_withdrawal(UUID(item.item_key), SYSTEM_ACTOR_ID)
        if result.code == WITHDRAWAL_FAILED:
            # The failed status is the outcome and must be kept.
            return BatchTaskResult(
                status=BatchItemStatus.SUCCEEDED,
                result_data={"outcome": "payout_failed", "reason": result.data.get("reason")},
            )
        return _from_action(result)


class PublishOutboxTask:
    """Deliver pending notifications and chat side effects."""

    def __init__(self, context: TaskContext):
        self._context = context

    @property
    def task_type(self) -> str:
        return "escrow.publish_outbox"

    @property
    def description(self) -> str:
        return "Deliver queued notifications and chat messages"

    def prepare_items(
        self,
        parameters: dict[str, Any],
        session: Session,
        as_of: datetime,
    ) -> tuple[BatchItemInput, ...]:
        if self._context.dispatcher is None or self._context.chat_sink is None:
            logger.warning("outbox_ports_not_configured", extra={"task_type": self.task_type})
            return ()
        return (BatchItemInput(item_index=0, item_key="outbox"),)

    def execute_item(
        self,
        item: BatchItemInput,
        parameters: dict[str, Any],
        session: Session,
        as_of: datetime,
    ) -> BatchTaskResult:
        policy = self._context.config.outbox
        publisher = OutboxPublisher(
            session,
            self._context.dispatcher,
            self._context.chat_sink,
            clock=self._context.clock,
            max_attempts=policy.max_attempts,
        )
        report = publisher.publish_pending(
            limit=int(parameters.get("limit", policy.batch_size)), commit=False,
        )
        return BatchTaskResult(
            status=BatchItemStatus.SUCCEEDED,
            result_data={"sent": report.sent, "failed": report.failed},
        )


def build_task_registry(context: TaskContext | None = None) -> TaskRegistry:
    """A registry with every escrow sweep wired to ``context``."""
    context = context or TaskContext()
    registry = TaskRegistry()
    registry.register(CheckTimelineDeadlinesTask(context))
    registry.register(ExpireOffersTask(context))
    registry.register(ProcessPaymentsTask(context))
    registry.register(ProcessWithdrawalsTask(context))
    registry.register(PublishOutboxTask(context))
    return registry
