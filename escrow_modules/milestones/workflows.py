"""
Milestone Workflow (``escrow_modules.milestones.workflows``).

pending -> in_progress -> submitted -> approved, with the
changes_requested loop back to submitted.  ``delayed`` is entered only by
the deadline sweep, and only from the milestone being worked on; an
overdue pending milestone keeps its status.  A delayed milestone can still
be submitted, and a deadline extension returns it to in_progress.
"""

from escrow_kernel.domain.workflow import Guard, Transition, Workflow
from escrow_kernel.logging_config import get_logger
from escrow_kernel.models.milestone import MilestoneStatus

logger = get_logger("modules.milestones.workflows")

_M = MilestoneStatus

DEADLINE_PASSED = Guard(
    name="deadline_passed",
    description="Milestone deadline is in the past and no delay was notified",
)

MILESTONE_WORKFLOW = Workflow(
    name="contract_milestone",
    description="Lifecycle of one contract timeline milestone",
    initial_state=_M.PENDING.value,
    states=tuple(m.value for m in MilestoneStatus),
    terminal_states=(_M.APPROVED.value,),
    transitions=(
        Transition(_M.PENDING.value, _M.IN_PROGRESS.value, action="start"),
        Transition(_M.IN_PROGRESS.value, _M.SUBMITTED.value, action="submit"),
        Transition(_M.CHANGES_REQUESTED.value, _M.SUBMITTED.value, action="submit"),
        Transition(_M.DELAYED.value, _M.SUBMITTED.value, action="submit"),
        Transition(_M.SUBMITTED.value, _M.APPROVED.value, action="approve"),
        Transition(_M.SUBMITTED.value, _M.CHANGES_REQUESTED.value, action="request_changes"),
        Transition(_M.IN_PROGRESS.value, _M.DELAYED.value, action="mark_delayed", guard=DEADLINE_PASSED),
        Transition(
            _M.CHANGES_REQUESTED.value,
            _M.DELAYED.value,
            action="mark_delayed",
            guard=DEADLINE_PASSED,
        ),
        Transition(_M.DELAYED.value, _M.IN_PROGRESS.value, action="extend"),
    ),
)

# Statuses the deadline sweep may act on.  A submitted milestone is waiting
# on the brand, so it never counts against the creator.
SWEEPABLE_STATUSES = frozenset({
    _M.PENDING.value,
    _M.IN_PROGRESS.value,
    _M.CHANGES_REQUESTED.value,
    _M.DELAYED.value,
})

logger.info(
    "milestone_workflow_registered",
    extra={
        "workflow_name": MILESTONE_WORKFLOW.name,
        "state_count": len(MILESTONE_WORKFLOW.states),
        "transition_count": len(MILESTONE_WORKFLOW.transitions),
        "initial_state": MILESTONE_WORKFLOW.initial_state,
    },
)
