"""
Tests for OfferService: create, accept (idempotent), reject, cancel, expire.
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from escrow_kernel.models.campaign import CampaignStatus
from escrow_kernel.models.contract import Contract, ContractStatus, WorkflowStatus
from escrow_kernel.models.milestone import ContractMilestone, MilestoneStatus
from escrow_kernel.models.offer import Offer, OfferStatus
from escrow_modules.offers.service import OfferService


@pytest.fixture
def offers(session, deterministic_clock, publisher):
    return OfferService(session, clock=deterministic_clock, publisher=publisher)


class TestCreateOffer:
    def test_create(self, session, deterministic_clock, offers, brand, creator, dispatcher):
        result = offers.create_offer(brand.id, creator.id, "Reels", Decimal("500.00"), brand.id)

        assert result.success
        offer = session.get(Offer, result.entity_id)
        assert offer.status == OfferStatus.PENDING.value
        assert offer.estimated_days == 7
        assert offer.expires_at == deterministic_clock.now() + timedelta(days=7)
        assert dispatcher.sent[0][0] == creator.id
        assert dispatcher.sent[0][1] == "offer_received"

    @pytest.mark.parametrize("budget", ["0", "-10.00", "abc"])
    def test_invalid_budget(self, offers, brand, creator, budget):
        result = offers.create_offer(brand.id, creator.id, "Reels", budget, brand.id)
        assert result.code == "INVALID_AMOUNT"

    def test_only_brand_may_offer(self, offers, brand, creator):
        result = offers.create_offer(brand.id, creator.id, "Reels", "100.00", creator.id)
        assert result.code == "UNAUTHORIZED_ACTOR"


class TestAcceptOffer:
    def test_accept_creates_contract_and_timeline(
        self, session, offers, make_offer, creator, dispatcher,
    ):
        offer_id = make_offer(budget="1000.00", estimated_days=7)

        result = offers.accept_offer(offer_id, creator.id)

        assert result.success
        assert result.data["platform_fee"] == Decimal("50.00")
        assert result.data["creator_amount"] == Decimal("950.00")
        assert result.data["already_accepted"] is False
        contract = session.get(Contract, result.data["contract_id"])
        assert contract.status == ContractStatus.PENDING.value
        assert contract.workflow_status == WorkflowStatus.PAYMENT_PENDING.value
        assert contract.max_revisions == 3
        assert [m.status for m in contract.milestones] == [MilestoneStatus.PENDING.value] * 4
        assert {"offer_accepted", "contract_created"} <= set(dispatcher.templates())

    def test_accept_is_idempotent(self, session, offers, make_offer, creator):
        offer_id = make_offer()
        first = offers.accept_offer(offer_id, creator.id)
        second = offers.accept_offer(offer_id, creator.id)

        assert second.success
        assert second.data["already_accepted"] is True
        assert second.data["contract_id"] == first.data["contract_id"]
        count = session.execute(
            select(func.count()).select_from(Contract).where(Contract.offer_id == offer_id)
        ).scalar_one()
        assert count == 1

    def test_expired_offer_cannot_be_accepted(
        self, session, deterministic_clock, offers, make_offer, creator,
    ):
        offer_id = make_offer()
        deterministic_clock.advance_days(8)

        result = offers.accept_offer(offer_id, creator.id)

        assert result.code == "OFFER_NOT_ACCEPTABLE"
        assert session.get(Offer, offer_id).status == OfferStatus.PENDING.value

    def test_rejected_offer_cannot_be_accepted(self, offers, make_offer, creator):
        offer_id = make_offer()
        offers.reject_offer(offer_id, creator.id, "agenda cheia")
        assert offers.accept_offer(offer_id, creator.id).code == "OFFER_NOT_ACCEPTABLE"

    def test_brand_cannot_accept(self, offers, make_offer, brand):
        assert offers.accept_offer(make_offer(), brand.id).code == "UNAUTHORIZED_ACTOR"

    def test_accept_moves_open_campaign(
        self, session, offers, make_offer, campaign, creator,
    ):
        offer_id = make_offer(campaign=campaign)
        result = offers.accept_offer(offer_id, creator.id)
        contract = session.get(Contract, result.data["contract_id"])
        assert contract.chat_room_id == "room-campaign-1"
        session.refresh(campaign)
        assert campaign.status == CampaignStatus.IN_PROGRESS.value


class TestRejectAndCancel:
    def test_reject(self, session, offers, make_offer, creator, brand, dispatcher):
        offer_id = make_offer()
        result = offers.reject_offer(offer_id, creator.id, "agenda cheia")
        assert result.success
        offer = session.get(Offer, offer_id)
        assert offer.status == OfferStatus.REJECTED.value
        assert offer.rejection_reason == "agenda cheia"
        assert (brand.id, "offer_rejected") in [(r, t) for r, t, _ in dispatcher.sent]

    def test_cancel(self, session, offers, make_offer, brand):
        offer_id = make_offer()
        assert offers.cancel_offer(offer_id, brand.id).success
        assert session.get(Offer, offer_id).status == OfferStatus.CANCELLED.value

    def test_cancel_accepted_offer_fails(self, offers, make_offer, brand, creator):
        offer_id = make_offer()
        offers.accept_offer(offer_id, creator.id)
        assert offers.cancel_offer(offer_id, brand.id).code == "INVALID_TRANSITION"


class TestExpiry:
    def test_stale_offers_expire(self, session, deterministic_clock, offers, make_offer, dispatcher):
        stale = make_offer()
        deterministic_clock.advance_days(5)
        fresh = make_offer()
        deterministic_clock.advance_days(3)

        assert offers.stale_offer_ids() == [stale]
        result = offers.expire_stale_offers()

        assert result.success
        assert result.data["expired"] == [stale]
        assert session.get(Offer, stale).status == OfferStatus.EXPIRED.value
        assert session.get(Offer, fresh).status == OfferStatus.PENDING.value
        assert "offer_expired" in dispatcher.templates()

    def test_expire_offer_before_deadline_fails(self, offers, make_offer):
        result = offers.expire_offer(make_offer())
        assert result.code == "INVALID_TRANSITION"
