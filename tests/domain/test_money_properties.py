"""
Property-based checks of the money and timeline primitives.

Boundaries fuzzed here:
- Budgets: 0.01 to 10M, any fee rate in [0, 0.5]
- Timelines: 1 to 365 estimated days
"""

from datetime import datetime, timezone
from decimal import Decimal

from hypothesis import given, settings
from hypothesis import strategies as st

from escrow_kernel.domain.values import ZERO, split_budget, to_cents
from escrow_modules.milestones.timeline import plan_timeline

START = datetime(2024, 1, 1, tzinfo=timezone.utc)

budgets = st.decimals(min_value=Decimal("0.01"), max_value=Decimal("10000000"), places=2)
rates = st.decimals(min_value=Decimal("0"), max_value=Decimal("0.5"), places=4)


@given(budget=budgets, rate=rates)
def test_fee_split_always_reconciles(budget, rate):
    split = split_budget(budget, rate)
    assert split.platform_fee + split.creator_amount == split.budget
    assert split.platform_fee >= ZERO
    assert split.creator_amount >= ZERO
    assert split.platform_fee == to_cents(split.platform_fee)


@given(amount=st.decimals(min_value=Decimal("-1e9"), max_value=Decimal("1e9"), allow_nan=False))
def test_to_cents_is_idempotent(amount):
    assert to_cents(to_cents(amount)) == to_cents(amount)


@settings(max_examples=200)
@given(days=st.integers(min_value=1, max_value=365))
def test_timeline_is_ordered_and_ends_on_estimate(days):
    planned = plan_timeline(START, days)
    offsets = [p.days_from_start for p in planned]
    assert offsets == sorted(offsets)
    assert offsets[-1] == days
    assert all(1 <= o <= days for o in offsets)
    assert [p.order for p in planned] == [1, 2, 3, 4]
