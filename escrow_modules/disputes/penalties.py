"""
Deadline / Penalty Policy (``escrow_modules.disputes.penalties``).

Responsibility
--------------
The scheduled sweep that escalates overdue milestones:

1. Delay notice -- a milestone past its deadline, not yet notified, on a
   running contract, is stamped ``delay_notified_at``; the milestone
   being worked on is also marked ``delayed`` (a pending one keeps its
   status).  Creator and brand are notified and a system message is
   posted to the contract chat.  A creator with ``suspension_threshold``
   or more overdue milestones is suspended for ``suspension_days``
   unless already suspended.
2. Penalty -- a milestone overdue for ``penalty_after_days`` penalizes
   its creator for ``penalty_days``, once per milestone.

Invariants enforced
-------------------
* delay_notified_at and penalty_applied are set-once markers, so running
  the sweep twice at the same instant changes nothing the second time.
* suspended_until / penalty_until only move forward.
* Submitted milestones are waiting on the brand and never count against
  the creator.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from escrow_config.schema import PenaltyPolicy
from escrow_kernel.domain.actors import SYSTEM_ACTOR_ID
from escrow_kernel.domain.clock import Clock
from escrow_kernel.domain.dtos import DeadlineSweepReport
from escrow_kernel.exceptions import MilestoneNotFoundError
from escrow_kernel.logging_config import get_logger
from escrow_kernel.models.contract import Contract, ContractStatus
from escrow_kernel.models.milestone import ContractMilestone
from escrow_kernel.models.party import Party
from escrow_kernel.services.audit_service import ContractAuditService
from escrow_kernel.services.outbox_service import OutboxPublisher, OutboxService
from escrow_modules._helpers import ModuleService, load, publish_after_commit
from escrow_modules.milestones.workflows import MILESTONE_WORKFLOW, SWEEPABLE_STATUSES

logger = get_logger("modules.disputes.penalties")

RUNNING_CONTRACT_STATUSES = (
    ContractStatus.ACTIVE.value,
    ContractStatus.PENDING_DELIVERY.value,
    ContractStatus.IN_REVISION.value,
)


class _ReportBuilder:

    def __init__(self, now: datetime):
        self.now = now
        self.delayed: list[UUID] = []
        self.suspended: list[UUID] = []
        self.penalized: list[UUID] = []

    def build(self) -> DeadlineSweepReport:
        return DeadlineSweepReport(
            checked_at=self.now,
            delayed_milestones=tuple(self.delayed),
            suspended_creators=tuple(dict.fromkeys(self.suspended)),
            penalized_creators=tuple(dict.fromkeys(self.penalized)),
        )


class DeadlinePolicyService(ModuleService):
    """
    Runs the deadline sweep.

    ``check_deadlines`` processes every candidate in one transaction.
    ``enforce_milestone`` handles a single milestone so the batch runner
    can isolate each one in its own SAVEPOINT.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        publisher: OutboxPublisher | None = None,
        auto_commit: bool = True,
        policy: PenaltyPolicy | None = None,
    ):
        super().__init__(session, clock, publisher, auto_commit)
        self._policy = policy or PenaltyPolicy()
        self._outbox = OutboxService(session, self._clock)
        self._audit = ContractAuditService(session, self._clock)

    # -------------------------------------------------------------------------
    # Candidates
    # -------------------------------------------------------------------------

    def _running(self):
        return (
            select(ContractMilestone)
            .join(Contract, ContractMilestone.contract_id == Contract.id)
            .where(Contract.status.in_(RUNNING_CONTRACT_STATUSES))
            .where(ContractMilestone.status.in_(SWEEPABLE_STATUSES))
        )

    def delay_candidates(self, now: datetime) -> list[ContractMilestone]:
        return list(self._session.execute(
            self._running()
            .where(ContractMilestone.deadline < now)
            .where(ContractMilestone.delay_notified_at.is_(None))
            .order_by(ContractMilestone.deadline, ContractMilestone.id)
        ).scalars().all())

    def penalty_candidates(self, now: datetime) -> list[ContractMilestone]:
        cutoff = now - timedelta(days=self._policy.penalty_after_days)
        return list(self._session.execute(
            self._running()
            .where(ContractMilestone.deadline <= cutoff)
            .where(ContractMilestone.penalty_applied.is_(False))
            .order_by(ContractMilestone.deadline, ContractMilestone.id)
        ).scalars().all())

    def candidate_ids(self, now: datetime) -> list[UUID]:
        """Ids of every milestone the sweep would touch at ``now``."""
        ids = [m.id for m in self.delay_candidates(now)]
        ids.extend(m.id for m in self.penalty_candidates(now))
        return list(dict.fromkeys(ids))

    def _overdue_count(self, creator_id: UUID, now: datetime) -> int:
        return self._session.execute(
            select(func.count(ContractMilestone.id))
            .join(Contract, ContractMilestone.contract_id == Contract.id)
            .where(Contract.creator_id == creator_id)
            .where(Contract.status.in_(RUNNING_CONTRACT_STATUSES))
            .where(ContractMilestone.status.in_(SWEEPABLE_STATUSES))
            .where(ContractMilestone.deadline < now)
        ).scalar_one()

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    def _notify_delay(self, milestone: ContractMilestone, now: datetime, report: _ReportBuilder) -> None:
        contract = milestone.contract
        old_status = milestone.status
        transition = MILESTONE_WORKFLOW.transition_for(old_status, "mark_delayed")
        if transition is not None:
            milestone.status = transition.to_state
        milestone.delay_notified_at = now
        milestone.updated_by_id = SYSTEM_ACTOR_ID
        self._session.flush()

        days_late = milestone.days_overdue(now)
        self._audit.record(
            contract, SYSTEM_ACTOR_ID, "milestone_delayed", old_status, milestone.status,
            {"milestone_id": milestone.id, "days_overdue": days_late},
        )
        payload = {
            "contract_id": contract.id,
            "milestone_id": milestone.id,
            "milestone_title": milestone.title,
            "deadline": milestone.deadline,
            "days_overdue": days_late,
        }
        self._outbox.notify(contract.creator_id, "milestone_delayed_creator", payload)
        self._outbox.notify(contract.brand_id, "milestone_delayed_brand", payload)
        if contract.chat_room_id:
            self._outbox.post_chat_message(
                contract.chat_room_id,
                f"A etapa '{milestone.title}' está atrasada. Prazo: "
                f"{milestone.deadline:%d/%m/%Y %H:%M}.",
            )
        report.delayed.append(milestone.id)
        logger.info(
            "milestone_marked_delayed",
            extra={
                "contract_id": str(contract.id),
                "milestone_id": str(milestone.id),
                "days_overdue": days_late,
            },
        )

        creator = self._session.get(Party, contract.creator_id)
        if creator is None or creator.is_suspended(now):
            return
        overdue = self._overdue_count(creator.id, now)
        if overdue < self._policy.suspension_threshold:
            return
        creator.suspended_until = now + timedelta(days=self._policy.suspension_days)
        creator.updated_by_id = SYSTEM_ACTOR_ID
        self._session.flush()
        self._outbox.notify(
            creator.id,
            "account_suspended",
            {"suspended_until": creator.suspended_until, "overdue_milestones": overdue},
        )
        report.suspended.append(creator.id)
        logger.warning(
            "creator_suspended",
            extra={
                "creator_id": str(creator.id),
                "overdue_milestones": overdue,
                "suspended_until": creator.suspended_until.isoformat(),
            },
        )

    def _apply_penalty(self, milestone: ContractMilestone, now: datetime, report: _ReportBuilder) -> None:
        contract = milestone.contract
        milestone.penalty_applied = True
        milestone.updated_by_id = SYSTEM_ACTOR_ID

        creator = self._session.get(Party, contract.creator_id)
        until = now + timedelta(days=self._policy.penalty_days)
        if creator is not None:
            if creator.penalty_until is None or creator.penalty_until < until:
                creator.penalty_until = until
                creator.updated_by_id = SYSTEM_ACTOR_ID
            report.penalized.append(creator.id)
        self._session.flush()

        self._audit.record(
            contract, SYSTEM_ACTOR_ID, "milestone_penalty_applied",
            details={"milestone_id": milestone.id, "penalty_until": until},
        )
        self._outbox.notify(
            contract.creator_id,
            "penalty_applied",
            {
                "contract_id": contract.id,
                "milestone_id": milestone.id,
                "milestone_title": milestone.title,
                "penalty_until": until,
            },
        )
        logger.warning(
            "milestone_penalty_applied",
            extra={
                "contract_id": str(contract.id),
                "milestone_id": str(milestone.id),
                "creator_id": str(contract.creator_id),
                "penalty_until": until.isoformat(),
            },
        )

    def _enforce(self, milestone: ContractMilestone, now: datetime, report: _ReportBuilder) -> None:
        if (
            milestone.contract.status not in RUNNING_CONTRACT_STATUSES
            or milestone.status not in SWEEPABLE_STATUSES
        ):
            return
        if milestone.deadline < now and milestone.delay_notified_at is None:
            self._notify_delay(milestone, now, report)
        cutoff = now - timedelta(days=self._policy.penalty_after_days)
        if milestone.deadline <= cutoff and not milestone.penalty_applied:
            self._apply_penalty(milestone, now, report)

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    def check_deadlines(self, now: datetime | None = None) -> DeadlineSweepReport:
        """Run both escalation steps over every candidate."""
        now = now or self._clock.now()
        report = _ReportBuilder(now)
        try:
            for milestone in self.delay_candidates(now):
                self._notify_delay(milestone, now, report)
            for milestone in self.penalty_candidates(now):
                self._apply_penalty(milestone, now, report)
            result = report.build()
        except Exception:
            self._abort()
            raise

        if self._auto_commit:
            self._session.commit()
            self._publish()
        else:
            self._session.flush()
        logger.info(
            "deadline_sweep_completed",
            extra={
                "checked_at": now.isoformat(),
                "delayed": len(result.delayed_milestones),
                "suspended": len(result.suspended_creators),
                "penalized": len(result.penalized_creators),
            },
        )
        return result

    def enforce_milestone(self, milestone_id: UUID, now: datetime | None = None) -> DeadlineSweepReport:
        """Apply the sweep to one milestone."""
        now = now or self._clock.now()
        report = _ReportBuilder(now)
        try:
            milestone = load(self._session, ContractMilestone, milestone_id, MilestoneNotFoundError)
            self._enforce(milestone, now, report)
        except Exception:
            self._abort()
            raise
        if self._auto_commit:
            self._session.commit()
            self._publish()
        else:
            self._session.flush()
        return report.build()

    def _publish(self) -> None:
        publish_after_commit(self._publisher)
