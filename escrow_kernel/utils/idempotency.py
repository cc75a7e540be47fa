"""
Idempotency key generation utilities.

Keys passed to the payment processor so that a retried charge or payout
for the same aggregate is deduplicated remotely instead of executed twice.
"""

from uuid import UUID


def generate_idempotency_key(
    producer: str,
    operation: str,
    entity_id: UUID | str,
    attempt: int | None = None,
) -> str:
    """
    Generate an idempotency key for an outbound processor call.

    Format: producer:operation:entity_id[:attempt]

    ``attempt`` is only supplied when a new remote operation is wanted on
    purpose, e.g. a brand retrying a declined card.

    Example:
        >>> generate_idempotency_key("escrow", "contract_funding", uuid)
        "escrow:contract_funding:550e8400-e29b-41d4-a716-446655440000"
    """
    key = f"{producer}:{operation}:{entity_id}"
    if attempt is not None:
        key = f"{key}:{attempt}"
    return key


def parse_idempotency_key(key: str) -> tuple[str, str, str]:
    """
    Parse an idempotency key into (producer, operation, entity_id).

    Raises:
        ValueError: If key format is invalid.
    """
    parts = key.split(":")
    if len(parts) not in (3, 4):
        raise ValueError(f"Invalid idempotency key format: {key}")
    return parts[0], parts[1], parts[2]
