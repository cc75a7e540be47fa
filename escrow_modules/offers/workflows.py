"""
Offer Workflow (``escrow_modules.offers.workflows``).

Every non-pending status is terminal; ``accept`` is the single point
where a contract comes into existence.
"""

from escrow_kernel.domain.workflow import Guard, Transition, Workflow
from escrow_kernel.logging_config import get_logger
from escrow_kernel.models.offer import OfferStatus

logger = get_logger("modules.offers.workflows")

_O = OfferStatus

NOT_EXPIRED = Guard(
    name="not_expired",
    description="expires_at is unset or still in the future",
)

OFFER_WORKFLOW = Workflow(
    name="offer",
    description="Brand offer to a creator",
    initial_state=_O.PENDING.value,
    states=tuple(o.value for o in OfferStatus),
    terminal_states=(
        _O.ACCEPTED.value,
        _O.REJECTED.value,
        _O.EXPIRED.value,
        _O.CANCELLED.value,
    ),
    transitions=(
        Transition(_O.PENDING.value, _O.ACCEPTED.value, action="accept", guard=NOT_EXPIRED),
        Transition(_O.PENDING.value, _O.REJECTED.value, action="reject"),
        Transition(_O.PENDING.value, _O.CANCELLED.value, action="cancel"),
        Transition(_O.PENDING.value, _O.EXPIRED.value, action="expire"),
    ),
)

logger.info(
    "offer_workflow_registered",
    extra={
        "workflow_name": OFFER_WORKFLOW.name,
        "state_count": len(OFFER_WORKFLOW.states),
        "transition_count": len(OFFER_WORKFLOW.transitions),
        "initial_state": OFFER_WORKFLOW.initial_state,
    },
)
