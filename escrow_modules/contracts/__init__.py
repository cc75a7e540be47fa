"""Contract lifecycle: status machine, delivery/revision loop, reviews.

``ContractService`` lives in ``escrow_modules.contracts.service``; it
composes the escrow ledger, which itself builds on the lifecycle exported
here, so it is not re-exported from the package.
"""

from escrow_modules.contracts.lifecycle import ContractLifecycle
from escrow_modules.contracts.workflows import (
    CONTRACT_OPERATIONS_WORKFLOW,
    CONTRACT_PAYMENT_WORKFLOW,
    CONTRACT_STATUS_WORKFLOW,
    RELEASABLE_WORKFLOW_STATUSES,
)

__all__ = [
    "CONTRACT_OPERATIONS_WORKFLOW",
    "CONTRACT_PAYMENT_WORKFLOW",
    "CONTRACT_STATUS_WORKFLOW",
    "ContractLifecycle",
    "RELEASABLE_WORKFLOW_STATUSES",
]
