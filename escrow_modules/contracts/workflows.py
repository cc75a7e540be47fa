"""
Contract Workflows (``escrow_modules.contracts.workflows``).

Responsibility
--------------
Declares the contract state machines:

* ``CONTRACT_STATUS_WORKFLOW`` -- the fixed status adjacency table that
  ``can_transition`` / ``transition_to`` consult.
* ``CONTRACT_OPERATIONS_WORKFLOW`` -- the fixed table plus the guarded
  operations that move a contract outside it (funding, payment failure
  and retry, termination, direct completion).  Guarded operations resolve
  their transition here by action name.
* ``CONTRACT_PAYMENT_WORKFLOW`` -- the post-acceptance ``workflow_status``
  progression.  It only moves forward.

Invariants enforced
-------------------
* All ``Workflow``, ``Transition``, and ``Guard`` instances are frozen.
* completed, cancelled and terminated have no outgoing transitions.
* ``moves_money=True`` marks transitions that touch the ledger or the
  payment processor.
"""

from escrow_kernel.domain.workflow import Guard, Transition, Workflow
from escrow_kernel.logging_config import get_logger
from escrow_kernel.models.contract import ContractStatus, WorkflowStatus

logger = get_logger("modules.contracts.workflows")

_S = ContractStatus
_W = WorkflowStatus

# -----------------------------------------------------------------------------
# Guards
# -----------------------------------------------------------------------------

REVISIONS_REMAINING = Guard(
    name="revisions_remaining",
    description="revision_count is below the contract's max_revisions",
)

BRAND_ONLY = Guard(
    name="brand_only",
    description="Only the contract's brand may perform this action",
)

CREATOR_ONLY = Guard(
    name="creator_only",
    description="Only the contract's creator may perform this action",
)

CHARGE_SUCCEEDED = Guard(
    name="charge_succeeded",
    description="The payment processor confirmed the brand charge",
)

CREATOR_REVIEWED = Guard(
    name="creator_reviewed",
    description="The creator left a review of the brand",
)

ADMIN_ONLY = Guard(
    name="admin_only",
    description="Only a platform admin may perform this action",
)

_ALL_STATUSES = tuple(s.value for s in ContractStatus)
_TERMINAL = (_S.COMPLETED.value, _S.CANCELLED.value, _S.TERMINATED.value)

# -----------------------------------------------------------------------------
# Fixed status table
# -----------------------------------------------------------------------------

_FIXED_TRANSITIONS = (
    Transition(_S.PENDING.value, _S.APPROVED.value, action="approve"),
    Transition(_S.PENDING.value, _S.CANCELLED.value, action="cancel"),
    Transition(_S.APPROVED.value, _S.ACTIVE.value, action="activate"),
    Transition(_S.APPROVED.value, _S.CANCELLED.value, action="cancel"),
    Transition(_S.ACTIVE.value, _S.PENDING_DELIVERY.value, action="submit_delivery", guard=CREATOR_ONLY),
    Transition(_S.ACTIVE.value, _S.CANCELLED.value, action="cancel"),
    Transition(_S.ACTIVE.value, _S.DISPUTED.value, action="dispute"),
    Transition(
        _S.PENDING_DELIVERY.value,
        _S.IN_REVISION.value,
        action="request_revision",
        guard=REVISIONS_REMAINING,
    ),
    Transition(
        _S.PENDING_DELIVERY.value,
        _S.COMPLETED.value,
        action="approve_delivery",
        guard=BRAND_ONLY,
        moves_money=True,
    ),
    Transition(_S.PENDING_DELIVERY.value, _S.DISPUTED.value, action="dispute"),
    Transition(_S.IN_REVISION.value, _S.PENDING_DELIVERY.value, action="submit_delivery", guard=CREATOR_ONLY),
    Transition(_S.IN_REVISION.value, _S.CANCELLED.value, action="cancel"),
    Transition(_S.IN_REVISION.value, _S.DISPUTED.value, action="dispute"),
    Transition(
        _S.DISPUTED.value,
        _S.COMPLETED.value,
        action="resolve_for_creator",
        guard=ADMIN_ONLY,
        moves_money=True,
    ),
    Transition(
        _S.DISPUTED.value,
        _S.CANCELLED.value,
        action="resolve_for_brand",
        guard=ADMIN_ONLY,
        moves_money=True,
    ),
)

CONTRACT_STATUS_WORKFLOW = Workflow(
    name="contract_status",
    description="Fixed contract status adjacency table",
    initial_state=_S.PENDING.value,
    states=_ALL_STATUSES,
    terminal_states=_TERMINAL,
    transitions=_FIXED_TRANSITIONS,
)

# -----------------------------------------------------------------------------
# Guarded operations outside the fixed table
# -----------------------------------------------------------------------------

_OPERATION_TRANSITIONS = (
    Transition(_S.PENDING.value, _S.ACTIVE.value, action="fund", guard=CHARGE_SUCCEEDED, moves_money=True),
    Transition(_S.PENDING.value, _S.PAYMENT_FAILED.value, action="fund_failed"),
    Transition(_S.PAYMENT_FAILED.value, _S.ACTIVE.value, action="retry", guard=CHARGE_SUCCEEDED, moves_money=True),
    Transition(_S.PAYMENT_FAILED.value, _S.CANCELLED.value, action="cancel"),
    Transition(_S.ACTIVE.value, _S.TERMINATED.value, action="terminate", moves_money=True),
    Transition(_S.ACTIVE.value, _S.COMPLETED.value, action="complete", moves_money=True),
    Transition(_S.PENDING_DELIVERY.value, _S.COMPLETED.value, action="complete", moves_money=True),
)

CONTRACT_OPERATIONS_WORKFLOW = Workflow(
    name="contract_operations",
    description="Fixed status table plus funding, termination and completion",
    initial_state=_S.PENDING.value,
    states=_ALL_STATUSES,
    terminal_states=_TERMINAL,
    transitions=_FIXED_TRANSITIONS + _OPERATION_TRANSITIONS,
)

# -----------------------------------------------------------------------------
# workflow_status progression
# -----------------------------------------------------------------------------

CONTRACT_PAYMENT_WORKFLOW = Workflow(
    name="contract_payment",
    description="Post-acceptance payment progression of a contract",
    initial_state=_W.PAYMENT_PENDING.value,
    states=tuple(w.value for w in WorkflowStatus),
    terminal_states=(_W.PAYMENT_WITHDRAWN.value, _W.TERMINATED.value),
    transitions=(
        Transition(_W.PAYMENT_PENDING.value, _W.ACTIVE.value, action="fund", moves_money=True),
        Transition(_W.PAYMENT_PENDING.value, _W.PAYMENT_FAILED.value, action="fund_failed"),
        Transition(_W.PAYMENT_PENDING.value, _W.TERMINATED.value, action="terminate"),
        Transition(_W.PAYMENT_FAILED.value, _W.ACTIVE.value, action="retry", moves_money=True),
        Transition(_W.PAYMENT_FAILED.value, _W.TERMINATED.value, action="terminate"),
        Transition(_W.ACTIVE.value, _W.WAITING_REVIEW.value, action="complete"),
        Transition(_W.ACTIVE.value, _W.PENDING_PAYMENT_RELEASE.value, action="approve_delivery"),
        Transition(_W.ACTIVE.value, _W.TERMINATED.value, action="terminate"),
        Transition(
            _W.WAITING_REVIEW.value,
            _W.PAYMENT_AVAILABLE.value,
            action="release",
            guard=CREATOR_REVIEWED,
            moves_money=True,
        ),
        Transition(
            _W.PENDING_PAYMENT_RELEASE.value,
            _W.PAYMENT_AVAILABLE.value,
            action="release",
            guard=CREATOR_REVIEWED,
            moves_money=True,
        ),
        Transition(_W.PAYMENT_AVAILABLE.value, _W.PAYMENT_WITHDRAWN.value, action="mark_withdrawn"),
    ),
)

# Workflow statuses from which the escrow may be released to the creator.
RELEASABLE_WORKFLOW_STATUSES = frozenset({
    _W.WAITING_REVIEW.value,
    _W.PENDING_PAYMENT_RELEASE.value,
})

for _workflow in (
    CONTRACT_STATUS_WORKFLOW,
    CONTRACT_OPERATIONS_WORKFLOW,
    CONTRACT_PAYMENT_WORKFLOW,
):
    logger.info(
        "contract_workflow_registered",
        extra={
            "workflow_name": _workflow.name,
            "state_count": len(_workflow.states),
            "transition_count": len(_workflow.transitions),
            "initial_state": _workflow.initial_state,
        },
    )
