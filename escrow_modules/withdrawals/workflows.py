"""
Withdrawal Workflow (``escrow_modules.withdrawals.workflows``).

The debit happens when the request is created, so every path that ends a
withdrawal without paying it out (cancel, reject) re-credits the creator.
A failed payout keeps the debit until an explicit refund.
"""

from escrow_kernel.domain.workflow import Guard, Transition, Workflow
from escrow_kernel.logging_config import get_logger
from escrow_kernel.models.withdrawal import WithdrawalStatus

logger = get_logger("modules.withdrawals.workflows")

_W = WithdrawalStatus

ADMIN_ONLY = Guard(
    name="admin_only",
    description="Only a platform admin may perform this action",
)

PAYOUT_CONFIRMED = Guard(
    name="payout_confirmed",
    description="The processor confirmed the payout or an operator supplied its id",
)

WITHDRAWAL_WORKFLOW = Workflow(
    name="withdrawal",
    description="Creator payout request",
    initial_state=_W.PENDING.value,
    states=tuple(w.value for w in WithdrawalStatus),
    terminal_states=(_W.COMPLETED.value, _W.CANCELLED.value),
    transitions=(
        Transition(_W.PENDING.value, _W.APPROVED.value, action="approve", guard=ADMIN_ONLY),
        Transition(_W.PENDING.value, _W.PROCESSING.value, action="process"),
        Transition(_W.APPROVED.value, _W.PROCESSING.value, action="process"),
        Transition(
            _W.PROCESSING.value, _W.COMPLETED.value,
            action="complete", guard=PAYOUT_CONFIRMED, moves_money=True,
        ),
        Transition(_W.PROCESSING.value, _W.FAILED.value, action="fail"),
        Transition(_W.PENDING.value, _W.CANCELLED.value, action="cancel", moves_money=True),
        Transition(_W.APPROVED.value, _W.CANCELLED.value, action="cancel", moves_money=True),
        Transition(_W.PROCESSING.value, _W.CANCELLED.value, action="cancel", moves_money=True),
    ),
)

logger.info(
    "withdrawal_workflow_registered",
    extra={
        "workflow_name": WITHDRAWAL_WORKFLOW.name,
        "state_count": len(WITHDRAWAL_WORKFLOW.states),
        "transition_count": len(WITHDRAWAL_WORKFLOW.transitions),
        "initial_state": WITHDRAWAL_WORKFLOW.initial_state,
    },
)
