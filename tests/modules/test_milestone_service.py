"""
Tests for MilestoneService and the derived contract phase.
"""

from datetime import timedelta

import pytest

from escrow_kernel.models.milestone import ContractMilestone, ContractPhase, MilestoneStatus
from escrow_modules.contracts.service import ContractService
from escrow_modules.milestones.service import MilestoneService, MilestoneTimeline


@pytest.fixture
def milestones(session, deterministic_clock, publisher):
    return MilestoneService(session, clock=deterministic_clock, publisher=publisher)


def _first(contract) -> ContractMilestone:
    return contract.milestones[0]


class TestTimelineStart:
    def test_funding_starts_first_milestone(self, make_contract):
        contract = make_contract()
        statuses = [m.status for m in contract.milestones]
        assert statuses == ["in_progress", "pending", "pending", "pending"]
        assert contract.current_milestone is _first(contract)
        assert contract.phase == ContractPhase.ALIGNMENT

    def test_unfunded_contract_has_nothing_in_progress(self, make_contract):
        contract = make_contract(funded=False)
        assert contract.current_milestone is None

    def test_create_timeline_is_idempotent(self, session, deterministic_clock, make_contract, brand):
        contract = make_contract(funded=False)
        existing = list(contract.milestones)
        timeline = MilestoneTimeline(session, clock=deterministic_clock)

        again = timeline.create_timeline(contract, deterministic_clock.now(), 7, brand.id)

        assert again == existing
        assert len(contract.milestones) == 4
        assert [m.order for m in again] == sorted(m.order for m in again)


class TestSubmitApprove:
    def test_submit_then_approve_starts_next(
        self, session, milestones, make_contract, brand, creator, dispatcher,
    ):
        contract = make_contract()
        first = _first(contract)

        submitted = milestones.submit(first.id, creator.id, {"url": "https://docs/roteiro"})
        assert submitted.success
        assert first.status == MilestoneStatus.SUBMITTED.value
        assert first.submission_data == {"url": "https://docs/roteiro"}
        assert "milestone_submitted" in dispatcher.templates()

        approved = milestones.approve(first.id, brand.id)
        assert approved.success
        assert approved.data["next_milestone_id"] == contract.milestones[1].id
        assert approved.data["phase"] == ContractPhase.CREATION.value
        assert first.approved_at is not None
        assert contract.milestones[1].status == MilestoneStatus.IN_PROGRESS.value

    def test_whole_timeline_reaches_payment_phase(self, milestones, make_contract, brand, creator):
        contract = make_contract()
        result = None
        for milestone in list(contract.milestones):
            assert milestones.submit(milestone.id, creator.id, {"n": milestone.order}).success
            result = milestones.approve(milestone.id, brand.id)
            assert result.success
        assert result.data["phase"] == ContractPhase.PAYMENT.value
        assert result.data["next_milestone_id"] is None
        assert contract.current_milestone is None

    def test_cannot_approve_unsubmitted(self, milestones, make_contract, brand):
        contract = make_contract()
        result = milestones.approve(_first(contract).id, brand.id)
        assert result.code == "INVALID_TRANSITION"

    def test_brand_cannot_submit(self, milestones, make_contract, brand):
        contract = make_contract()
        assert milestones.submit(_first(contract).id, brand.id, {}).code == "UNAUTHORIZED_ACTOR"

    def test_request_changes_clears_submission(self, milestones, make_contract, brand, creator):
        contract = make_contract()
        first = _first(contract)
        milestones.submit(first.id, creator.id, {"url": "v1"})

        result = milestones.request_changes(first.id, brand.id, "trocar a abertura")

        assert result.success
        assert first.status == MilestoneStatus.CHANGES_REQUESTED.value
        assert first.submission_data is None
        assert first.feedback == "trocar a abertura"
        assert milestones.submit(first.id, creator.id, {"url": "v2"}).success

    def test_terminal_contract_blocks_milestones(
        self, session, deterministic_clock, milestones, make_contract, brand, creator,
    ):
        contract = make_contract()
        ContractService(session, clock=deterministic_clock).cancel(contract.id, brand.id)
        result = milestones.submit(_first(contract).id, creator.id, {})
        assert result.code == "INVALID_TRANSITION"


class TestDelays:
    def test_justify_requires_overdue(self, milestones, make_contract, creator):
        contract = make_contract()
        result = milestones.justify_delay(_first(contract).id, creator.id, "doente")
        assert result.code == "INVALID_TRANSITION"

    def test_justify_overdue_milestone(
        self, deterministic_clock, milestones, make_contract, creator, dispatcher,
    ):
        contract = make_contract()
        first = _first(contract)
        deterministic_clock.advance_days(3)

        result = milestones.justify_delay(first.id, creator.id, "equipamento quebrou")

        assert result.success
        assert first.justification == "equipamento quebrou"
        assert first.justified_at == deterministic_clock.now()
        assert first.status == MilestoneStatus.IN_PROGRESS.value
        assert "milestone_delay_justified" in dispatcher.templates()

    def test_extend_deadline_revives_delayed_milestone(
        self, session, milestones, make_contract, brand,
    ):
        contract = make_contract()
        first = _first(contract)
        first.status = MilestoneStatus.DELAYED.value
        first.delay_notified_at = first.deadline
        session.commit()
        old_deadline = first.deadline

        result = milestones.extend_deadline(first.id, brand.id, 2, "combinado no chat")

        assert result.success
        assert first.status == MilestoneStatus.IN_PROGRESS.value
        assert first.deadline == old_deadline + timedelta(days=2)
        assert first.extension_days == 2
        assert first.delay_notified_at is None

    def test_extend_needs_positive_days(self, milestones, make_contract, brand):
        contract = make_contract()
        assert milestones.extend_deadline(_first(contract).id, brand.id, 0).code == "INVALID_TRANSITION"

    def test_creator_cannot_extend(self, milestones, make_contract, creator):
        contract = make_contract()
        assert milestones.extend_deadline(_first(contract).id, creator.id, 1).code == "UNAUTHORIZED_ACTOR"
