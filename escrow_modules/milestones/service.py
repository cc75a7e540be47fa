"""
Milestone Module Service (``escrow_modules.milestones.service``).

Responsibility
--------------
``MilestoneTimeline`` is the flush-only component that lays out and
advances a contract's four milestones; contracts, offers and funding
compose it inside their own transactions.  ``MilestoneService`` owns the
transaction for the user-facing milestone actions: submit, approve,
request changes, justify a delay and extend a deadline.

Invariants enforced
-------------------
* Every status change goes through ``MILESTONE_WORKFLOW``.
* At most one milestone of a contract is ``in_progress`` at a time: it is
  the lowest-order milestone not yet approved.
* Contract phase is never stored; it is derived from the milestone set.

Failure modes
-------------
* ``InvalidTransitionError`` -- action not allowed from the milestone's
  status, or the contract is already terminal.
* ``UnauthorizedActorError`` -- brand-only or creator-only action taken by
  someone else.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from escrow_kernel.domain.clock import Clock, SystemClock
from escrow_kernel.domain.dtos import ActionResult
from escrow_kernel.domain.workflow import require_action
from escrow_kernel.exceptions import (
    EscrowKernelError,
    InvalidTransitionError,
    MilestoneNotFoundError,
)
from escrow_kernel.logging_config import LogContext, get_logger
from escrow_kernel.models.contract import Contract
from escrow_kernel.models.milestone import ContractMilestone, ContractPhase, MilestoneStatus
from escrow_kernel.services.audit_service import ContractAuditService
from escrow_kernel.services.outbox_service import OutboxPublisher, OutboxService
from escrow_modules._helpers import ModuleService, load, require_actor
from escrow_modules.milestones.timeline import plan_timeline
from escrow_modules.milestones.workflows import MILESTONE_WORKFLOW

logger = get_logger("modules.milestones.service")

# Actions a creator or brand may take only on the milestone in progress.
_CURRENT_ONLY_ACTIONS = frozenset({"submit", "approve", "request_changes"})


class MilestoneTimeline:
    """Flush-only timeline operations shared by the contract services."""

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        outbox: OutboxService | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._outbox = outbox or OutboxService(session, self._clock)

    def create_timeline(
        self,
        contract: Contract,
        start: datetime,
        estimated_days: int,
        actor_id: UUID,
    ) -> list[ContractMilestone]:
        """Create the four fixed milestones, all pending."""
        if contract.milestones:
            return list(contract.milestones)

        created = []
        for planned in plan_timeline(start, estimated_days):
            milestone = ContractMilestone(
                milestone_type=planned.template.milestone_type.value,
                title=planned.template.title,
                description=planned.template.description,
                order=planned.order,
                status=MilestoneStatus.PENDING.value,
                deadline=planned.deadline,
                created_by_id=actor_id,
            )
            contract.milestones.append(milestone)
            created.append(milestone)
        self._session.flush()

        logger.info(
            "contract_timeline_created",
            extra={
                "contract_id": str(contract.id),
                "estimated_days": estimated_days,
                "deadlines": [m.deadline.isoformat() for m in created],
            },
        )
        return created

    def start_next(self, contract: Contract, actor_id: UUID) -> ContractMilestone | None:
        """Put the lowest-order pending milestone in progress.

        No-op if a milestone is already being worked on.  Returns the
        started milestone, or None when every milestone is approved.
        """
        if contract.current_milestone is not None:
            return None
        for milestone in contract.milestones:
            if milestone.status == MilestoneStatus.PENDING.value:
                transition = require_action(
                    MILESTONE_WORKFLOW, "ContractMilestone", milestone.id,
                    milestone.status, "start",
                )
                milestone.status = transition.to_state
                milestone.updated_by_id = actor_id
                self._session.flush()
                logger.info(
                    "milestone_started",
                    extra={
                        "contract_id": str(contract.id),
                        "milestone_id": str(milestone.id),
                        "milestone_type": milestone.milestone_type,
                    },
                )
                return milestone
        return None


class MilestoneService(ModuleService):
    """
    User-facing milestone actions.

    Contract
    --------
    Every method returns ``ActionResult``; the session is committed on
    success and rolled back otherwise (see ``ModuleService``).
    """

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
        self._timeline = MilestoneTimeline(session, self._clock, self._outbox)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _load(self, milestone_id: UUID) -> ContractMilestone:
        return load(self._session, ContractMilestone, milestone_id, MilestoneNotFoundError)

    def _apply(
        self,
        milestone: ContractMilestone,
        action: str,
        actor_id: UUID,
        details: dict[str, Any] | None = None,
    ) -> str:
        contract = milestone.contract
        if contract.is_terminal:
            raise InvalidTransitionError(
                "ContractMilestone", str(milestone.id), milestone.status, action,
                f"contract is {contract.status}",
            )
        if action in _CURRENT_ONLY_ACTIONS and contract.current_milestone is not milestone:
            raise InvalidTransitionError(
                "ContractMilestone", str(milestone.id), milestone.status, action,
                "milestone is not the current one on the timeline",
            )
        old_status = milestone.status
        transition = require_action(
            MILESTONE_WORKFLOW, "ContractMilestone", milestone.id, old_status, action,
        )
        milestone.status = transition.to_state
        milestone.updated_by_id = actor_id
        self._session.flush()
        self._audit.record(
            contract,
            actor_id,
            f"milestone_{action}",
            old_status,
            transition.to_state,
            {"milestone_id": milestone.id, "order": milestone.order, **(details or {})},
        )
        return old_status

    # -------------------------------------------------------------------------
    # Actions
    # -------------------------------------------------------------------------

    def submit(
        self,
        milestone_id: UUID,
        actor_id: UUID,
        submission_data: dict[str, Any],
    ) -> ActionResult:
        """Creator hands in work for the milestone."""
        with LogContext.bind(actor_id=str(actor_id)):
            try:
                milestone = self._load(milestone_id)
                contract = milestone.contract
                require_actor(
                    self._session, actor_id, (contract.creator_id,), "submit milestone",
                    milestone.id, allow_admin=False,
                )
                self._apply(milestone, "submit", actor_id)
                milestone.submission_data = dict(submission_data)
                milestone.submitted_at = self._clock.now()
                self._outbox.notify(
                    contract.brand_id,
                    "milestone_submitted",
                    {"contract_id": contract.id, "milestone_id": milestone.id, "title": milestone.title},
                )
                logger.info(
                    "milestone_submitted",
                    extra={"contract_id": str(contract.id), "milestone_id": str(milestone.id)},
                )
                result = ActionResult.ok("Etapa enviada para aprovação", entity_id=milestone.id)
            except EscrowKernelError as exc:
                result = self._reject(exc, milestone_id)
            except Exception:
                self._abort()
                raise
            return self._finish(result)

    def approve(self, milestone_id: UUID, actor_id: UUID) -> ActionResult:
        """Brand approves a submitted milestone and the next one starts."""
        with LogContext.bind(actor_id=str(actor_id)):
            try:
                milestone = self._load(milestone_id)
                contract = milestone.contract
                require_actor(
                    self._session, actor_id, (contract.brand_id,), "approve milestone", milestone.id,
                )
                self._apply(milestone, "approve", actor_id)
                milestone.approved_at = self._clock.now()
                self._session.flush()

                started = self._timeline.start_next(contract, actor_id)
                phase = contract.phase
                self._outbox.notify(
                    contract.creator_id,
                    "milestone_approved",
                    {"contract_id": contract.id, "milestone_id": milestone.id, "title": milestone.title},
                )
                if phase == ContractPhase.PAYMENT:
                    logger.info(
                        "contract_timeline_completed",
                        extra={"contract_id": str(contract.id)},
                    )
                result = ActionResult.ok(
                    "Etapa aprovada",
                    entity_id=milestone.id,
                    next_milestone_id=started.id if started else None,
                    phase=phase.value if phase else None,
                )
            except EscrowKernelError as exc:
                result = self._reject(exc, milestone_id)
            except Exception:
                self._abort()
                raise
            return self._finish(result)

    def request_changes(self, milestone_id: UUID, actor_id: UUID, feedback: str) -> ActionResult:
        """Brand sends a submission back; the submission is cleared, feedback kept."""
        with LogContext.bind(actor_id=str(actor_id)):
            try:
                milestone = self._load(milestone_id)
                contract = milestone.contract
                require_actor(
                    self._session, actor_id, (contract.brand_id,), "request changes", milestone.id,
                )
                self._apply(milestone, "request_changes", actor_id, {"feedback": feedback})
                milestone.submission_data = None
                milestone.feedback = feedback
                self._outbox.notify(
                    contract.creator_id,
                    "milestone_changes_requested",
                    {"contract_id": contract.id, "milestone_id": milestone.id, "feedback": feedback},
                )
                result = ActionResult.ok("Alterações solicitadas", entity_id=milestone.id)
            except EscrowKernelError as exc:
                result = self._reject(exc, milestone_id)
            except Exception:
                self._abort()
                raise
            return self._finish(result)

    def justify_delay(self, milestone_id: UUID, actor_id: UUID, justification: str) -> ActionResult:
        """Creator explains why a milestone is late.  Status is unchanged."""
        with LogContext.bind(actor_id=str(actor_id)):
            try:
                milestone = self._load(milestone_id)
                contract = milestone.contract
                require_actor(
                    self._session, actor_id, (contract.creator_id,), "justify delay",
                    milestone.id, allow_admin=False,
                )
                now = self._clock.now()
                if milestone.status != MilestoneStatus.DELAYED.value and not milestone.is_overdue(now):
                    raise InvalidTransitionError(
                        "ContractMilestone", str(milestone.id), milestone.status,
                        "justify_delay", "milestone is not delayed",
                    )
                milestone.justification = justification
                milestone.justified_at = now
                milestone.updated_by_id = actor_id
                self._session.flush()
                self._audit.record(
                    contract, actor_id, "milestone_delay_justified",
                    details={"milestone_id": milestone.id, "justification": justification},
                )
                self._outbox.notify(
                    contract.brand_id,
                    "milestone_delay_justified",
                    {"contract_id": contract.id, "milestone_id": milestone.id, "justification": justification},
                )
                result = ActionResult.ok("Justificativa registrada", entity_id=milestone.id)
            except EscrowKernelError as exc:
                result = self._reject(exc, milestone_id)
            except Exception:
                self._abort()
                raise
            return self._finish(result)

    def extend_deadline(
        self,
        milestone_id: UUID,
        actor_id: UUID,
        days: int,
        reason: str | None = None,
    ) -> ActionResult:
        """Brand pushes the deadline out.

        Clears ``delay_notified_at`` so the sweep can notify again after
        the new deadline; a delayed milestone returns to in_progress.
        """
        with LogContext.bind(actor_id=str(actor_id)):
            try:
                milestone = self._load(milestone_id)
                contract = milestone.contract
                require_actor(
                    self._session, actor_id, (contract.brand_id,), "extend deadline", milestone.id,
                )
                if days < 1:
                    raise InvalidTransitionError(
                        "ContractMilestone", str(milestone.id), milestone.status,
                        "extend", "extension must be at least one day",
                    )
                if milestone.is_approved or contract.is_terminal:
                    raise InvalidTransitionError(
                        "ContractMilestone", str(milestone.id), milestone.status,
                        "extend", "milestone or contract already finished",
                    )
                old_deadline = milestone.deadline
                milestone.deadline = old_deadline + timedelta(days=days)
                milestone.extension_days += days
                milestone.extension_reason = reason
                milestone.delay_notified_at = None
                if milestone.status == MilestoneStatus.DELAYED.value:
                    self._apply(milestone, "extend", actor_id, {"days": days})
                else:
                    milestone.updated_by_id = actor_id
                    self._session.flush()
                    self._audit.record(
                        contract, actor_id, "milestone_deadline_extended",
                        details={"milestone_id": milestone.id, "days": days},
                    )
                self._outbox.notify(
                    contract.creator_id,
                    "milestone_deadline_extended",
                    {
                        "contract_id": contract.id,
                        "milestone_id": milestone.id,
                        "days": days,
                        "new_deadline": milestone.deadline,
                    },
                )
                logger.info(
                    "milestone_deadline_extended",
                    extra={
                        "milestone_id": str(milestone.id),
                        "old_deadline": old_deadline.isoformat(),
                        "new_deadline": milestone.deadline.isoformat(),
                        "days": days,
                    },
                )
                result = ActionResult.ok("Prazo estendido", entity_id=milestone.id)
            except EscrowKernelError as exc:
                result = self._reject(exc, milestone_id)
            except Exception:
                self._abort()
                raise
            return self._finish(result)
