"""
Job Payment Workflow (``escrow_modules.payments.workflows``).

pending -> processing -> completed is the release path; completed is
terminal so a payment can be credited exactly once.  A failed release can
be reset to pending by an operator after reconciliation.
"""

from escrow_kernel.domain.workflow import Transition, Workflow
from escrow_kernel.logging_config import get_logger
from escrow_kernel.models.job_payment import JobPaymentStatus

logger = get_logger("modules.payments.workflows")

_P = JobPaymentStatus

JOB_PAYMENT_WORKFLOW = Workflow(
    name="job_payment",
    description="Release of a contract's escrowed funds to the creator",
    initial_state=_P.PENDING.value,
    states=tuple(p.value for p in JobPaymentStatus),
    terminal_states=(_P.COMPLETED.value,),
    transitions=(
        Transition(_P.PENDING.value, _P.PROCESSING.value, action="process"),
        Transition(_P.PROCESSING.value, _P.COMPLETED.value, action="complete", moves_money=True),
        Transition(_P.PROCESSING.value, _P.FAILED.value, action="fail"),
        Transition(_P.FAILED.value, _P.PENDING.value, action="reset"),
    ),
)

logger.info(
    "job_payment_workflow_registered",
    extra={
        "workflow_name": JOB_PAYMENT_WORKFLOW.name,
        "state_count": len(JOB_PAYMENT_WORKFLOW.states),
        "transition_count": len(JOB_PAYMENT_WORKFLOW.transitions),
        "initial_state": JOB_PAYMENT_WORKFLOW.initial_state,
    },
)
