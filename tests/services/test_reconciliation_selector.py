"""
Tests for ReconciliationSelector: stuck records and withdrawal verification.
"""

from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from escrow_kernel.exceptions import GatewayTimeoutError
from escrow_kernel.models.job_payment import JobPayment, JobPaymentStatus
from escrow_kernel.models.withdrawal import Withdrawal, WithdrawalStatus
from escrow_kernel.selectors.reconciliation_selector import ReconciliationSelector
from escrow_modules.contracts.service import ContractService
from escrow_modules.withdrawals.service import WithdrawalService


@pytest.fixture
def selector(session):
    return ReconciliationSelector(session)


@pytest.fixture
def withdrawals(session, gateway, deterministic_clock, withdrawal_methods):
    return WithdrawalService(session, gateway, clock=deterministic_clock)


def _withdrawal(creator, clock, **overrides) -> Withdrawal:
    values = dict(
        id=uuid4(),
        creator_id=creator.id,
        amount=Decimal("100.00"),
        withdrawal_method="pix",
        withdrawal_details={"pix_key": "k"},
        status=WithdrawalStatus.COMPLETED.value,
        transaction_id="po_1",
        created_at=clock.now(),
        processed_at=clock.now() + timedelta(hours=1),
    )
    values.update(overrides)
    return Withdrawal(**values)


def _codes(warnings) -> list[str]:
    return [w.code for w in warnings]


class TestStuckRecords:
    def test_withdrawal_stuck_in_processing(
        self, deterministic_clock, selector, withdrawals, gateway, creator, admin, credit_creator,
    ):
        credit_creator(creator.id, "500.00")
        withdrawal_id = withdrawals.create_withdrawal(
            creator.id, "100.00", "pix", {"pix_key": "k"}, creator.id,
        ).entity_id
        gateway.payouts.append(GatewayTimeoutError("payout"))
        withdrawals.process_withdrawal(withdrawal_id, admin.id)
        now = deterministic_clock.now() + timedelta(hours=3)

        [stuck] = selector.stuck_withdrawals(now, timedelta(hours=2))

        assert stuck.entity_type == "withdrawal"
        assert stuck.entity_id == withdrawal_id
        assert stuck.status == WithdrawalStatus.PROCESSING.value
        assert stuck.age_hours == 3
        assert selector.stuck_withdrawals(now, timedelta(hours=4)) == ()

    def test_job_payment_stuck_in_processing(
        self, session, deterministic_clock, selector, make_contract, brand,
    ):
        contract = make_contract()
        payment_id = ContractService(session, clock=deterministic_clock).complete(
            contract.id, brand.id,
        ).data["job_payment_id"]
        payment = session.get(JobPayment, payment_id)
        payment.status = JobPaymentStatus.PROCESSING.value
        payment.processing_started_at = deterministic_clock.now()
        session.commit()

        stuck = selector.stuck_job_payments(deterministic_clock.now() + timedelta(days=1), timedelta(hours=6))

        assert [s.entity_id for s in stuck] == [payment_id]
        assert stuck[0].age_hours == 24

    def test_pending_payments_are_not_stuck(self, deterministic_clock, selector, make_contract):
        make_contract()
        assert selector.stuck_job_payments(deterministic_clock.now() + timedelta(days=30), timedelta(hours=1)) == ()


class TestVerifyWithdrawal:
    def test_clean_withdrawal(self, deterministic_clock, selector, creator):
        withdrawal = _withdrawal(creator, deterministic_clock)
        assert selector.verify_withdrawal(withdrawal, deterministic_clock.now()) == ()

    def test_amount_out_of_range(self, deterministic_clock, selector, creator):
        withdrawal = _withdrawal(creator, deterministic_clock, amount=Decimal("2000000.00"))
        assert _codes(selector.verify_withdrawal(withdrawal, deterministic_clock.now())) == ["amount_out_of_range"]

    def test_slow_processing(self, deterministic_clock, selector, creator):
        withdrawal = _withdrawal(
            creator, deterministic_clock,
            status=WithdrawalStatus.PENDING.value, transaction_id=None, processed_at=None,
        )
        later = deterministic_clock.now() + timedelta(hours=80)

        assert _codes(selector.verify_withdrawal(withdrawal, later)) == ["slow_processing"]
        assert selector.verify_withdrawal(withdrawal, later, warning_hours=96) == ()

    def test_failed_withdrawal_is_not_slow(self, deterministic_clock, selector, creator):
        withdrawal = _withdrawal(
            creator, deterministic_clock,
            status=WithdrawalStatus.FAILED.value, transaction_id=None, processed_at=None,
        )
        assert selector.verify_withdrawal(withdrawal, deterministic_clock.now() + timedelta(days=10)) == ()

    def test_missing_transaction_id(self, deterministic_clock, selector, creator):
        withdrawal = _withdrawal(creator, deterministic_clock, transaction_id=None)
        assert _codes(selector.verify_withdrawal(withdrawal, deterministic_clock.now())) == ["missing_transaction_id"]

    def test_bank_details_mismatch(self, deterministic_clock, selector, creator):
        withdrawal = _withdrawal(
            creator, deterministic_clock,
            withdrawal_method="bank_transfer",
            withdrawal_details={"cpf": "00000000000", "name": "Criadora Teste"},
        )
        [warning] = selector.verify_withdrawal(withdrawal, deterministic_clock.now())
        assert warning.code == "bank_details_mismatch"
        assert "cpf" in warning.message
        assert warning.withdrawal_id == withdrawal.id


class TestVerificationReport:
    def test_only_withdrawals_with_warnings(
        self, deterministic_clock, selector, withdrawals, creator, credit_creator,
    ):
        credit_creator(creator.id, "1000.00")
        clean = withdrawals.create_withdrawal(
            creator.id, "100.00", "pix", {"pix_key": "k"}, creator.id,
        ).entity_id
        suspicious = withdrawals.create_withdrawal(
            creator.id, "100.00", "bank_transfer",
            {"bank_code": "341", "agencia": "1", "conta": "2", "cpf": "99999999999", "name": "Outra Pessoa"},
            creator.id,
        ).entity_id

        report = selector.verification_report(deterministic_clock.now(), since=deterministic_clock.now())

        assert clean not in report
        assert _codes(report[suspicious]) == ["bank_details_mismatch", "bank_details_mismatch"]
