"""
Typed Exception Hierarchy for the Escrow Kernel.

Every error has a typed class (catch by type, not message), a ``code``
class attribute (machine-readable, API-safe) and structured attributes
(not just a message string).

    EscrowKernelError (base)
    |
    +-- TransitionError
    |   +-- InvalidTransitionError
    |   +-- RevisionLimitExceededError
    |
    +-- LedgerError
    |   +-- InsufficientBalanceError
    |   +-- LedgerInvariantViolationError
    |   +-- InvalidAmountError
    |
    +-- WithdrawalError
    |   +-- WithdrawalLimitError
    |   +-- WithdrawalMethodUnavailableError
    |   +-- InvalidWithdrawalDetailsError
    |
    +-- ExternalGatewayError
    |   +-- GatewayTimeoutError
    |
    +-- DuplicateOperationError
    |
    +-- ConcurrencyError
    |   +-- OptimisticLockError
    |
    +-- NotFoundError
    |   +-- ContractNotFoundError, OfferNotFoundError, MilestoneNotFoundError,
    |       WithdrawalNotFoundError, JobPaymentNotFoundError, PartyNotFoundError
    |
    +-- OfferNotAcceptableError
    +-- ReviewNotAllowedError
    +-- UnauthorizedActorError

Error codes
-----------

Category     | Code                        | When Raised
-------------|-----------------------------|------------------------------------------
Transition   | INVALID_TRANSITION          | (from, to) not in the transition table
             | REVISION_LIMIT_EXCEEDED     | revision_count would exceed max_revisions
-------------|-----------------------------|------------------------------------------
Ledger       | INSUFFICIENT_BALANCE        | available/pending below requested amount
             | LEDGER_INVARIANT_VIOLATION  | available + pending != earned - withdrawn
             | INVALID_AMOUNT              | non-positive or non-cent amount
-------------|-----------------------------|------------------------------------------
Withdrawal   | WITHDRAWAL_LIMIT            | amount outside method min/max
             | WITHDRAWAL_METHOD_UNAVAILABLE | unknown or inactive method
             | INVALID_WITHDRAWAL_DETAILS  | required payout fields missing
-------------|-----------------------------|------------------------------------------
Gateway      | EXTERNAL_GATEWAY_ERROR      | processor rejected or failed the call
             | GATEWAY_TIMEOUT             | outcome unknown, caller must not guess
-------------|-----------------------------|------------------------------------------
Idempotency  | DUPLICATE_OPERATION         | replay detected, treated as success
-------------|-----------------------------|------------------------------------------
Concurrency  | OPTIMISTIC_LOCK_CONFLICT    | row version changed under us
"""

from decimal import Decimal


class EscrowKernelError(Exception):
    """
    Base exception for all escrow kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "ESCROW_KERNEL_ERROR"


# Transition-related exceptions


class TransitionError(EscrowKernelError):
    """Base exception for state machine errors."""

    code: str = "TRANSITION_ERROR"


class InvalidTransitionError(TransitionError):
    """The requested (from, to) pair is not in the entity's transition table."""

    code: str = "INVALID_TRANSITION"

    def __init__(
        self,
        entity_type: str,
        entity_id: str,
        from_state: str,
        to_state: str,
        reason: str | None = None,
    ):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.from_state = from_state
        self.to_state = to_state
        self.reason = reason
        message = (
            f"Cannot move {entity_type} {entity_id} from '{from_state}' to '{to_state}'"
        )
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class RevisionLimitExceededError(TransitionError):
    """A revision was requested after the contract's cap was reached."""

    code: str = "REVISION_LIMIT_EXCEEDED"

    def __init__(self, contract_id: str, max_revisions: int):
        self.contract_id = contract_id
        self.max_revisions = max_revisions
        super().__init__(
            f"Contract {contract_id} already used all {max_revisions} revisions"
        )


# Ledger-related exceptions


class LedgerError(EscrowKernelError):
    """Base exception for creator balance ledger errors."""

    code: str = "LEDGER_ERROR"


class InsufficientBalanceError(LedgerError):
    """The balance bucket does not cover the requested amount."""

    code: str = "INSUFFICIENT_BALANCE"

    def __init__(
        self,
        creator_id: str,
        requested: Decimal,
        available: Decimal,
        bucket: str = "available",
    ):
        self.creator_id = creator_id
        self.requested = requested
        self.available = available
        self.bucket = bucket
        super().__init__(
            f"Creator {creator_id} has {available} {bucket}, {requested} requested"
        )


class LedgerInvariantViolationError(LedgerError):
    """available + pending no longer equals earned - withdrawn.

    Fatal: never corrected silently.
    """

    code: str = "LEDGER_INVARIANT_VIOLATION"

    def __init__(
        self,
        creator_id: str,
        available: Decimal,
        pending: Decimal,
        earned: Decimal,
        withdrawn: Decimal,
        operation: str,
    ):
        self.creator_id = creator_id
        self.available = available
        self.pending = pending
        self.earned = earned
        self.withdrawn = withdrawn
        self.operation = operation
        super().__init__(
            f"Ledger invariant broken for creator {creator_id} after {operation}: "
            f"available {available} + pending {pending} != "
            f"earned {earned} - withdrawn {withdrawn}"
        )


class InvalidAmountError(LedgerError):
    """Amount is not a positive value expressible in cents."""

    code: str = "INVALID_AMOUNT"

    def __init__(self, amount: Decimal, reason: str = "amount must be positive"):
        self.amount = amount
        self.reason = reason
        super().__init__(f"Invalid amount {amount}: {reason}")


# Withdrawal-related exceptions


class WithdrawalError(EscrowKernelError):
    """Base exception for withdrawal request errors."""

    code: str = "WITHDRAWAL_ERROR"


class WithdrawalLimitError(WithdrawalError):
    """Amount falls outside the payout method's limits."""

    code: str = "WITHDRAWAL_LIMIT"

    def __init__(
        self,
        method_code: str,
        amount: Decimal,
        min_amount: Decimal,
        max_amount: Decimal,
    ):
        self.method_code = method_code
        self.amount = amount
        self.min_amount = min_amount
        self.max_amount = max_amount
        super().__init__(
            f"Amount {amount} outside limits [{min_amount}, {max_amount}] "
            f"for method '{method_code}'"
        )


class WithdrawalMethodUnavailableError(WithdrawalError):
    """Payout method is unknown or inactive."""

    code: str = "WITHDRAWAL_METHOD_UNAVAILABLE"

    def __init__(self, method_code: str):
        self.method_code = method_code
        super().__init__(f"Withdrawal method '{method_code}' is not available")


class InvalidWithdrawalDetailsError(WithdrawalError):
    """Required payout fields are missing from the withdrawal details."""

    code: str = "INVALID_WITHDRAWAL_DETAILS"

    def __init__(self, method_code: str, missing_fields: list[str]):
        self.method_code = method_code
        self.missing_fields = missing_fields
        super().__init__(
            f"Missing fields for method '{method_code}': {', '.join(missing_fields)}"
        )


# Gateway-related exceptions


class ExternalGatewayError(EscrowKernelError):
    """Payment processor call failed with a definitive answer."""

    code: str = "EXTERNAL_GATEWAY_ERROR"

    def __init__(self, operation: str, message: str, external_id: str | None = None):
        self.operation = operation
        self.external_id = external_id
        super().__init__(f"Gateway {operation} failed: {message}")


class GatewayTimeoutError(ExternalGatewayError):
    """Payment processor did not answer; the remote outcome is unknown."""

    code: str = "GATEWAY_TIMEOUT"

    def __init__(self, operation: str, external_id: str | None = None):
        super().__init__(operation, "no response from processor", external_id)


# Idempotency


class DuplicateOperationError(EscrowKernelError):
    """Replay of an operation that already took effect.

    Callers treat this as success.
    """

    code: str = "DUPLICATE_OPERATION"

    def __init__(self, operation: str, key: str):
        self.operation = operation
        self.key = key
        super().__init__(f"{operation} already applied for {key}")


# Concurrency


class ConcurrencyError(EscrowKernelError):
    """Base exception for concurrency errors."""

    code: str = "CONCURRENCY_ERROR"


class OptimisticLockError(ConcurrencyError):
    """Optimistic locking conflict detected."""

    code: str = "OPTIMISTIC_LOCK_CONFLICT"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            f"Optimistic lock conflict on {entity_type} {entity_id}: "
            "entity was modified by another transaction"
        )


# Lookup


class NotFoundError(EscrowKernelError):
    """Base exception for missing aggregates."""

    code: str = "NOT_FOUND"
    entity_type: str = "entity"

    def __init__(self, entity_id: str):
        self.entity_id = entity_id
        super().__init__(f"{self.entity_type} {entity_id} not found")


class ContractNotFoundError(NotFoundError):
    code: str = "CONTRACT_NOT_FOUND"
    entity_type = "Contract"


class OfferNotFoundError(NotFoundError):
    code: str = "OFFER_NOT_FOUND"
    entity_type = "Offer"


class MilestoneNotFoundError(NotFoundError):
    code: str = "MILESTONE_NOT_FOUND"
    entity_type = "Milestone"


class WithdrawalNotFoundError(NotFoundError):
    code: str = "WITHDRAWAL_NOT_FOUND"
    entity_type = "Withdrawal"


class JobPaymentNotFoundError(NotFoundError):
    code: str = "JOB_PAYMENT_NOT_FOUND"
    entity_type = "JobPayment"


class PartyNotFoundError(NotFoundError):
    code: str = "PARTY_NOT_FOUND"
    entity_type = "Party"


# Business rules


class OfferNotAcceptableError(EscrowKernelError):
    """Offer is not pending or has expired."""

    code: str = "OFFER_NOT_ACCEPTABLE"

    def __init__(self, offer_id: str, status: str, reason: str):
        self.offer_id = offer_id
        self.status = status
        self.reason = reason
        super().__init__(f"Offer {offer_id} ({status}) cannot be accepted: {reason}")


class ReviewNotAllowedError(EscrowKernelError):
    """Review rejected: not a party, contract not completed, or duplicate."""

    code: str = "REVIEW_NOT_ALLOWED"

    def __init__(self, contract_id: str, reviewer_id: str, reason: str):
        self.contract_id = contract_id
        self.reviewer_id = reviewer_id
        self.reason = reason
        super().__init__(
            f"Reviewer {reviewer_id} cannot review contract {contract_id}: {reason}"
        )


class UnauthorizedActorError(EscrowKernelError):
    """Actor is not allowed to perform the operation on this aggregate."""

    code: str = "UNAUTHORIZED_ACTOR"

    def __init__(self, actor_id: str, action: str, entity_id: str):
        self.actor_id = actor_id
        self.action = action
        self.entity_id = entity_id
        super().__init__(f"Actor {actor_id} may not {action} {entity_id}")
