"""
Tests for DisputeService: opening a dispute and resolving it by winner.
"""

import pytest
from sqlalchemy import select

from escrow_kernel.models.contract import ContractStatus, DisputeWinner, WorkflowStatus
from escrow_kernel.models.job_payment import JobPayment
from escrow_kernel.models.transaction import Transaction, TransactionStatus, TransactionType
from escrow_kernel.services.audit_service import ContractAuditService
from escrow_modules.disputes import DisputeService


@pytest.fixture
def disputes(session, deterministic_clock, publisher):
    return DisputeService(session, clock=deterministic_clock, publisher=publisher)


@pytest.fixture
def disputed(disputes, make_contract, brand):
    contract = make_contract(budget="400.00")
    assert disputes.start_dispute(contract.id, brand.id, "entrega fora do briefing").success
    return contract


class TestStartDispute:
    def test_either_party_may_dispute(self, disputes, make_contract, creator):
        contract = make_contract()
        result = disputes.start_dispute(contract.id, creator.id, "marca sumiu")
        assert result.success
        assert contract.status == ContractStatus.DISPUTED.value

    def test_admin_is_not_a_party(self, disputes, make_contract, admin):
        contract = make_contract()
        result = disputes.start_dispute(contract.id, admin.id, "x")
        assert result.code == "UNAUTHORIZED_ACTOR"
        assert contract.status == ContractStatus.ACTIVE.value

    def test_unfunded_contract_cannot_be_disputed(self, disputes, make_contract, brand):
        contract = make_contract(funded=False)
        assert disputes.start_dispute(contract.id, brand.id, "x").code == "INVALID_TRANSITION"


class TestResolveDispute:
    def test_creator_wins(self, session, deterministic_clock, disputes, disputed, admin, brand, creator, dispatcher):
        result = disputes.resolve_dispute(disputed.id, DisputeWinner.CREATOR, "entrega conforme", admin.id)

        assert result.success
        assert result.data["winner"] == "creator"
        assert result.data["status"] == ContractStatus.COMPLETED.value
        assert disputed.workflow_status == WorkflowStatus.WAITING_REVIEW.value
        assert disputed.resolved_by_id == admin.id
        assert disputed.resolved_at == deterministic_clock.now()
        assert disputed.resolution_reason == "entrega conforme"
        payment = session.get(JobPayment, result.data["job_payment_id"])
        assert payment.contract_id == disputed.id

        recipients = {r for r, t, _ in dispatcher.sent if t == "dispute_resolved"}
        assert recipients == {brand.id, creator.id}
        actions = [entry.action for entry in ContractAuditService(session, deterministic_clock).history(disputed.id)]
        assert "dispute_resolved" in actions

    def test_brand_wins_queues_refund(self, session, disputes, disputed, admin):
        result = disputes.resolve_dispute(disputed.id, "brand", "não entregue", admin.id)

        assert result.success
        assert disputed.status == ContractStatus.CANCELLED.value
        refund = session.get(Transaction, result.data["refund_transaction_id"])
        assert refund.type == TransactionType.REFUND.value
        assert refund.status == TransactionStatus.PENDING.value
        assert refund.amount == disputed.budget
        assert disputed.payment is None

    def test_only_admin_resolves(self, disputes, disputed, brand):
        result = disputes.resolve_dispute(disputed.id, "brand", "x", brand.id)
        assert result.code == "UNAUTHORIZED_ACTOR"
        assert disputed.status == ContractStatus.DISPUTED.value

    def test_outcome_must_match_winner(self, disputes, disputed, admin):
        result = disputes.resolve_dispute(
            disputed.id, "creator", "x", admin.id, outcome=ContractStatus.CANCELLED,
        )
        assert result.code == "INVALID_TRANSITION"
        assert disputed.status == ContractStatus.DISPUTED.value

    def test_unknown_winner(self, disputes, disputed, admin):
        assert disputes.resolve_dispute(disputed.id, "nobody", "x", admin.id).code == "INVALID_TRANSITION"

    def test_contract_not_in_dispute(self, disputes, make_contract, admin):
        contract = make_contract()
        assert disputes.resolve_dispute(contract.id, "creator", "x", admin.id).code == "INVALID_TRANSITION"

    def test_resolved_twice(self, disputes, disputed, admin):
        disputes.resolve_dispute(disputed.id, "creator", "x", admin.id)
        assert disputes.resolve_dispute(disputed.id, "brand", "y", admin.id).code == "INVALID_TRANSITION"
