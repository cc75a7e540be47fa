"""Tests for processor idempotency keys."""

from uuid import UUID

import pytest

from escrow_kernel.utils.idempotency import generate_idempotency_key, parse_idempotency_key

CONTRACT_ID = UUID("550e8400-e29b-41d4-a716-446655440000")


def test_key_without_attempt():
    key = generate_idempotency_key("escrow", "contract_funding", CONTRACT_ID)
    assert key == f"escrow:contract_funding:{CONTRACT_ID}"


def test_key_with_attempt():
    key = generate_idempotency_key("escrow", "contract_funding", CONTRACT_ID, attempt=2)
    assert key.endswith(":2")


def test_same_inputs_same_key():
    assert generate_idempotency_key("escrow", "withdrawal_payout", "w-1") == generate_idempotency_key(
        "escrow", "withdrawal_payout", "w-1",
    )


def test_parse_ignores_attempt():
    key = generate_idempotency_key("escrow", "contract_funding", CONTRACT_ID, attempt=3)
    assert parse_idempotency_key(key) == ("escrow", "contract_funding", str(CONTRACT_ID))


@pytest.mark.parametrize("bad", ["escrow", "a:b", "a:b:c:d:e"])
def test_parse_rejects_malformed(bad):
    with pytest.raises(ValueError, match="Invalid idempotency key"):
        parse_idempotency_key(bad)
