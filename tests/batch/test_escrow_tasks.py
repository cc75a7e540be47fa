"""
Tests for the escrow sweeps run through BatchRunner, and the CLI entry point.
"""

import pytest

from escrow_batch.__main__ import main
from escrow_batch.domain.types import BatchItemStatus, BatchRunStatus
from escrow_batch.runner import BatchRunner
from escrow_batch.tasks import TaskContext, build_task_registry
from escrow_kernel.domain.ports import GatewayResult, GatewayStatus
from escrow_kernel.models.job_payment import JobPaymentStatus
from escrow_kernel.models.milestone import MilestoneStatus
from escrow_kernel.models.offer import Offer, OfferStatus
from escrow_kernel.models.withdrawal import Withdrawal, WithdrawalStatus
from escrow_modules.contracts.service import ContractService
from escrow_modules.offers.service import OfferService
from escrow_modules.withdrawals.service import WithdrawalService

EXPECTED_TASKS = (
    "escrow.check_timeline_deadlines",
    "escrow.expire_offers",
    "escrow.process_payments",
    "escrow.process_withdrawals",
    "escrow.publish_outbox",
)


@pytest.fixture
def context(escrow_config, deterministic_clock, gateway, dispatcher, chat_sink):
    return TaskContext(
        config=escrow_config,
        clock=deterministic_clock,
        gateway=gateway,
        dispatcher=dispatcher,
        chat_sink=chat_sink,
    )


@pytest.fixture
def run_task(session, deterministic_clock, context):
    def _run(task_type, ctx=None, **parameters):
        registry = build_task_registry(ctx or context)
        return BatchRunner(session, registry, deterministic_clock).run(task_type, parameters)
    return _run


def test_registry_has_every_sweep():
    assert build_task_registry().list_tasks() == EXPECTED_TASKS


class TestExpireOffers:
    def test_expires_only_stale(self, session, deterministic_clock, run_task, make_offer):
        stale = make_offer()
        deterministic_clock.advance_days(8)
        fresh = make_offer()

        run = run_task("escrow.expire_offers")

        assert run.status == BatchRunStatus.COMPLETED
        assert run.total_items == 1
        assert run.item_results[0].item_key == str(stale)
        assert session.get(Offer, stale).status == OfferStatus.EXPIRED.value
        assert session.get(Offer, fresh).status == OfferStatus.PENDING.value


class TestDeadlines:
    def test_marks_overdue_milestones(self, deterministic_clock, run_task, make_contract):
        contract = make_contract()
        deterministic_clock.advance_days(4)

        run = run_task("escrow.check_timeline_deadlines")

        assert run.total_items == 2
        assert run.succeeded == 2
        assert run.item_results[0].result_data["suspended"] == 1
        assert [m.status for m in contract.milestones[:2]] == [
            MilestoneStatus.DELAYED.value,
            MilestoneStatus.PENDING.value,
        ]
        assert all(m.delay_notified_at is not None for m in contract.milestones[:2])

    def test_nothing_due(self, run_task, make_contract):
        make_contract()
        assert run_task("escrow.check_timeline_deadlines").total_items == 0


class TestProcessPayments:
    def test_releases_reviewed_contract(self, session, deterministic_clock, run_task, make_contract, brand):
        contract = make_contract(budget="300.00")
        ContractService(session, clock=deterministic_clock).complete(contract.id, brand.id)
        contract.has_creator_review = True
        session.commit()

        run = run_task("escrow.process_payments")

        assert run.succeeded == 1
        assert contract.payment.status == JobPaymentStatus.COMPLETED.value


class TestProcessWithdrawals:
    @pytest.fixture
    def withdrawal_id(self, session, gateway, deterministic_clock, withdrawal_methods, creator, credit_creator):
        credit_creator(creator.id, "500.00")
        service = WithdrawalService(session, gateway, clock=deterministic_clock)
        return service.create_withdrawal(creator.id, "100.00", "pix", {"pix_key": "k"}, creator.id).entity_id

    def test_pays_out(self, session, run_task, withdrawal_id):
        run = run_task("escrow.process_withdrawals")
        assert run.succeeded == 1
        assert session.get(Withdrawal, withdrawal_id).status == WithdrawalStatus.COMPLETED.value

    def test_failed_payout_is_kept(self, session, run_task, gateway, withdrawal_id):
        gateway.payouts.append(GatewayResult(status=GatewayStatus.FAILED, message="chave inválida"))

        run = run_task("escrow.process_withdrawals")

        [item] = run.item_results
        assert item.status == BatchItemStatus.SUCCEEDED
        assert item.result_data == {"outcome": "payout_failed", "reason": "chave inválida"}
        assert session.get(Withdrawal, withdrawal_id).status == WithdrawalStatus.FAILED.value

    def test_without_gateway_lists_nothing(self, run_task, escrow_config, deterministic_clock, withdrawal_id):
        run = run_task("escrow.process_withdrawals", TaskContext(config=escrow_config, clock=deterministic_clock))
        assert run.total_items == 0


class TestPublishOutbox:
    def test_delivers_queued_notifications(self, session, deterministic_clock, run_task, brand, creator, dispatcher):
        OfferService(session, clock=deterministic_clock).create_offer(brand.id, creator.id, "Reels", "100.00", brand.id)
        assert dispatcher.sent == []

        run = run_task("escrow.publish_outbox")

        assert run.item_results[0].result_data["sent"] >= 1
        assert "offer_received" in dispatcher.templates()


class TestCli:
    def test_list(self, capsys):
        assert main(["--list"]) == 0
        out = capsys.readouterr().out
        for task_type in EXPECTED_TASKS:
            assert task_type in out

    def test_no_task(self, capsys):
        assert main([]) == 2

    def test_unknown_task(self, capsys):
        assert main(["escrow.nope"]) == 2
        assert "Unknown task" in capsys.readouterr().err

    def test_bad_config(self, tmp_path, capsys):
        assert main(["--list", "--config", str(tmp_path / "missing.yaml")]) == 1
        assert "Failed to load config" in capsys.readouterr().err
