"""
Pytest fixtures for the escrow core test suite.

Provides:
- An in-memory SQLite engine created once per session
- Per-test sessions isolated by an outer transaction that is rolled back
- Deterministic clock, parties and in-memory fakes of the outbound ports
- Factories for offers, contracts, funded contracts and creator credit

Module services commit on success; inside the per-test session a commit
only releases a SAVEPOINT, so every test still starts from an empty
database.  Fixtures commit their setup rows so a failed action's rollback
never removes them.
"""

import json
import logging
import os
from collections import deque
from datetime import datetime, timezone
from decimal import Decimal
from io import StringIO
from typing import Any, Generator
from uuid import uuid4

import pytest
from sqlalchemy.orm import Session

from escrow_config import get_active_config
from escrow_kernel.db.engine import create_tables, init_engine_from_url, reset_engine
from escrow_kernel.domain.actors import SYSTEM_ACTOR_ID
from escrow_kernel.domain.clock import DeterministicClock
from escrow_kernel.domain.ports import GatewayResult, GatewayStatus
from escrow_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from escrow_kernel.models.campaign import Campaign
from escrow_kernel.models.contract import Contract
from escrow_kernel.models.party import Party, PartyRole
from escrow_kernel.services.balance_service import CreatorBalanceService
from escrow_kernel.services.outbox_service import OutboxPublisher
from escrow_modules.offers.service import OfferService
from escrow_modules.payments.funding import FundingService
from escrow_modules.withdrawals.service import WithdrawalService

START = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture escrow_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, ...):
            ...
            logs = captured_logs()
            assert any(r["message"] == "withdrawal_created" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("escrow_kernel")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


# =============================================================================
# Database
# =============================================================================


@pytest.fixture(scope="session")
def db_engine():
    """One engine with all tables for the whole run ($DATABASE_URL or in-memory SQLite)."""
    eng = init_engine_from_url(os.environ.get("DATABASE_URL", "sqlite:///:memory:"))
    create_tables()
    yield eng
    reset_engine()


@pytest.fixture(scope="function")
def session(db_engine) -> Generator[Session, None, None]:
    """Session joined to an outer transaction that is rolled back at teardown.

    ``session.commit()`` inside a test releases a SAVEPOINT and
    ``session.rollback()`` rolls back to it, so services behave as in
    production while the test leaves nothing behind.
    """
    conn = db_engine.connect()
    trans = conn.begin()
    sess = Session(bind=conn, join_transaction_mode="create_savepoint", expire_on_commit=False)
    yield sess
    try:
        sess.close()
    finally:
        try:
            trans.rollback()
        finally:
            conn.close()


@pytest.fixture
def deterministic_clock() -> DeterministicClock:
    return DeterministicClock(START)


# =============================================================================
# Parties
# =============================================================================


def _party(session: Session, role: PartyRole, name: str, **extra: Any) -> Party:
    party = Party(
        role=role.value,
        display_name=name,
        email=f"{name.lower().replace(' ', '.')}@example.com",
        created_by_id=SYSTEM_ACTOR_ID,
        **extra,
    )
    session.add(party)
    session.commit()
    return party


@pytest.fixture
def make_party(session):
    def _make(role: PartyRole = PartyRole.CREATOR, name: str | None = None, **extra: Any) -> Party:
        return _party(session, role, name or f"{role.value} {uuid4().hex[:6]}", **extra)
    return _make


@pytest.fixture
def brand(session) -> Party:
    return _party(session, PartyRole.BRAND, "Marca Teste")


@pytest.fixture
def creator(session) -> Party:
    return _party(
        session,
        PartyRole.CREATOR,
        "Criadora Teste",
        bank_account_holder="Criadora Teste",
        bank_document="12345678900",
    )


@pytest.fixture
def admin(session) -> Party:
    return _party(session, PartyRole.ADMIN, "Admin Teste")


@pytest.fixture
def campaign(session, brand) -> Campaign:
    campaign = Campaign(
        brand_id=brand.id,
        title="Campanha de verão",
        chat_room_id="room-campaign-1",
        created_by_id=brand.id,
    )
    session.add(campaign)
    session.commit()
    return campaign


# =============================================================================
# Port fakes
# =============================================================================


class FakeGateway:
    """Scriptable PaymentGateway.

    Queue a ``GatewayResult`` (returned) or an exception instance (raised)
    per call; an empty queue answers with success.
    """

    def __init__(self):
        self.charges: deque = deque()
        self.retrievals: deque = deque()
        self.payouts: deque = deque()
        self.bank_account: dict[str, Any] | None = None
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self._counter = 0

    def _next(self, queue: deque, prefix: str) -> GatewayResult:
        self._counter += 1
        if not queue:
            return GatewayResult(status=GatewayStatus.SUCCEEDED, external_id=f"{prefix}_{self._counter}")
        outcome = queue.popleft()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def calls_to(self, name: str) -> list[dict[str, Any]]:
        return [kwargs for call, kwargs in self.calls if call == name]

    def charge_or_subscribe(self, reference, amount, customer_id, metadata):
        self.calls.append(("charge", {
            "reference": reference, "amount": amount,
            "customer_id": customer_id, "metadata": metadata,
        }))
        return self._next(self.charges, "ch")

    def retrieve(self, external_id):
        self.calls.append(("retrieve", {"external_id": external_id}))
        return self._next(self.retrievals, "ch")

    def cancel(self, external_id):
        self.calls.append(("cancel", {"external_id": external_id}))
        return GatewayResult(status=GatewayStatus.SUCCEEDED, external_id=external_id)

    def payout(self, reference, amount, method_code, details):
        self.calls.append(("payout", {
            "reference": reference, "amount": amount,
            "method_code": method_code, "details": details,
        }))
        return self._next(self.payouts, "po")

    def lookup_bank_account(self, details):
        self.calls.append(("lookup_bank_account", {"details": details}))
        if isinstance(self.bank_account, Exception):
            raise self.bank_account
        return self.bank_account


class FakeDispatcher:
    def __init__(self, fail: bool = False):
        self.sent: list[tuple[Any, str, dict[str, Any]]] = []
        self.fail = fail

    def notify(self, recipient_id, template_key, payload):
        if self.fail:
            raise ConnectionError("notification service unavailable")
        self.sent.append((recipient_id, template_key, payload))

    def templates(self) -> list[str]:
        return [template for _, template, _ in self.sent]


class FakeChatSink:
    def __init__(self):
        self.messages: list[tuple[str, str]] = []
        self.archived: list[tuple[str, str]] = []

    def post_system_message(self, room_id, text):
        self.messages.append((room_id, text))

    def archive_room(self, room_id, reason):
        self.archived.append((room_id, reason))


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def dispatcher() -> FakeDispatcher:
    return FakeDispatcher()


@pytest.fixture
def chat_sink() -> FakeChatSink:
    return FakeChatSink()


@pytest.fixture
def publisher(session, dispatcher, chat_sink, deterministic_clock) -> OutboxPublisher:
    return OutboxPublisher(session, dispatcher, chat_sink, clock=deterministic_clock)


# =============================================================================
# Configuration
# =============================================================================


@pytest.fixture(scope="session")
def escrow_config():
    """The packaged default configuration set."""
    return get_active_config()


@pytest.fixture
def withdrawal_methods(session, gateway, deterministic_clock, escrow_config):
    """PIX and bank transfer methods synced from the default set."""
    service = WithdrawalService(session, gateway, clock=deterministic_clock)
    return {m.code: m for m in service.sync_methods(escrow_config.withdrawal_methods)}


# =============================================================================
# Contract factories
# =============================================================================


@pytest.fixture
def make_offer(session, deterministic_clock, brand, creator):
    """Create a pending offer from ``brand`` to ``creator``; returns its id."""
    def _make(
        budget: Decimal | str = "1000.00",
        estimated_days: int = 7,
        campaign: Campaign | None = None,
        brand_party: Party | None = None,
        creator_party: Party | None = None,
    ):
        brand_party = brand_party or brand
        creator_party = creator_party or creator
        result = OfferService(session, clock=deterministic_clock).create_offer(
            brand_id=brand_party.id,
            creator_id=creator_party.id,
            title="Vídeo de lançamento",
            budget=Decimal(budget),
            actor_id=brand_party.id,
            estimated_days=estimated_days,
            campaign_id=campaign.id if campaign else None,
        )
        assert result.success, result
        return result.entity_id
    return _make


@pytest.fixture
def make_contract(session, deterministic_clock, gateway, make_offer, brand, creator):
    """Offer -> accepted contract, optionally funded through the fake gateway."""
    def _make(
        budget: Decimal | str = "1000.00",
        estimated_days: int = 7,
        campaign: Campaign | None = None,
        funded: bool = True,
        brand_party: Party | None = None,
        creator_party: Party | None = None,
    ) -> Contract:
        creator_party = creator_party or creator
        brand_party = brand_party or brand
        offer_id = make_offer(budget, estimated_days, campaign, brand_party, creator_party)
        accepted = OfferService(session, clock=deterministic_clock).accept_offer(
            offer_id, creator_party.id,
        )
        assert accepted.success, accepted
        contract_id = accepted.data["contract_id"]
        if funded:
            funding = FundingService(session, gateway, clock=deterministic_clock)
            outcome = funding.process_contract_payment(contract_id, brand_party.id)
            assert outcome.success, outcome
        return session.get(Contract, contract_id)
    return _make


@pytest.fixture
def credit_creator(session, deterministic_clock):
    """Put ``amount`` straight into a creator's available balance."""
    def _credit(creator_id, amount: Decimal | str) -> None:
        CreatorBalanceService(session, deterministic_clock).add_earning(creator_id, Decimal(amount))
        session.commit()
    return _credit
