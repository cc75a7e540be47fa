"""
Tests for WithdrawalService: request validation, payout outcomes and the
re-credit paths (cancel, reject, refund of a failed payout).
"""

from decimal import Decimal

import pytest
from sqlalchemy import func, select

from escrow_kernel.domain.ports import GatewayResult, GatewayStatus
from escrow_kernel.exceptions import ExternalGatewayError, GatewayTimeoutError
from escrow_kernel.models.transaction import Transaction, TransactionStatus, TransactionType
from escrow_kernel.models.withdrawal import Withdrawal, WithdrawalMethod, WithdrawalStatus
from escrow_kernel.services.balance_service import CreatorBalanceService
from escrow_modules.withdrawals.service import WithdrawalService

PIX = {"pix_key": "criadora@example.com"}
BANK = {
    "bank_code": "341",
    "agencia": "0001",
    "conta": "12345-6",
    "cpf": "12345678900",
    "name": "Criadora Teste",
}


@pytest.fixture
def withdrawals(session, gateway, deterministic_clock, publisher, withdrawal_methods):
    return WithdrawalService(session, gateway, clock=deterministic_clock, publisher=publisher)


@pytest.fixture
def funded_creator(creator, credit_creator):
    credit_creator(creator.id, "1000.00")
    return creator


def _snapshot(session, clock, creator_id):
    return CreatorBalanceService(session, clock).get_snapshot(creator_id)


def _request(withdrawals, creator, amount="100.00", method="pix", details=None):
    result = withdrawals.create_withdrawal(creator.id, amount, method, details or PIX, creator.id)
    assert result.success, result
    return result.entity_id


class TestMethods:
    def test_available_methods_sorted(self, withdrawals):
        assert [m.code for m in withdrawals.available_methods()] == ["bank_transfer", "pix"]

    def test_sync_is_an_upsert(self, session, withdrawals, escrow_config):
        withdrawals.sync_methods(escrow_config.withdrawal_methods)
        count = session.execute(select(func.count()).select_from(WithdrawalMethod)).scalar_one()
        assert count == 2


class TestCreate:
    def test_debits_available_balance(
        self, session, deterministic_clock, withdrawals, funded_creator, dispatcher,
    ):
        result = withdrawals.create_withdrawal(
            funded_creator.id, Decimal("250.00"), "pix", PIX, funded_creator.id,
        )

        assert result.success
        assert result.data == {"status": "pending", "amount": Decimal("250.00")}
        snap = _snapshot(session, deterministic_clock, funded_creator.id)
        assert snap.available_balance == Decimal("750.00")
        assert snap.total_withdrawn == Decimal("250.00")
        withdrawal = session.get(Withdrawal, result.entity_id)
        assert withdrawal.withdrawal_details["pix_key"] == PIX["pix_key"]
        assert withdrawal.withdrawal_details["method_name"]
        assert "withdrawal_requested" in dispatcher.templates()

    @pytest.mark.parametrize("amount", ["9.99", "10000.01"])
    def test_outside_method_limits(self, withdrawals, funded_creator, credit_creator, amount):
        credit_creator(funded_creator.id, "10000.00")
        result = withdrawals.create_withdrawal(funded_creator.id, amount, "pix", PIX, funded_creator.id)
        assert result.code == "WITHDRAWAL_LIMIT"

    def test_unknown_method(self, withdrawals, funded_creator):
        result = withdrawals.create_withdrawal(funded_creator.id, "100.00", "boleto", {}, funded_creator.id)
        assert result.code == "WITHDRAWAL_METHOD_UNAVAILABLE"

    def test_missing_details(self, withdrawals, funded_creator):
        result = withdrawals.create_withdrawal(funded_creator.id, "100.00", "pix", {}, funded_creator.id)
        assert result.code == "INVALID_WITHDRAWAL_DETAILS"
        assert "pix_key" in result.data["detail"]

    @pytest.mark.parametrize("amount", ["0", "-1.00", "abc"])
    def test_invalid_amount(self, withdrawals, funded_creator, amount):
        result = withdrawals.create_withdrawal(funded_creator.id, amount, "pix", PIX, funded_creator.id)
        assert result.code == "INVALID_AMOUNT"

    def test_insufficient_balance_writes_nothing(self, session, withdrawals, creator):
        result = withdrawals.create_withdrawal(creator.id, "100.00", "pix", PIX, creator.id)
        assert result.code == "INSUFFICIENT_BALANCE"
        assert result.message == "Saldo insuficiente para o saque"
        assert session.execute(select(Withdrawal)).scalars().all() == []

    def test_only_owner_or_admin(self, withdrawals, funded_creator, brand):
        result = withdrawals.create_withdrawal(funded_creator.id, "100.00", "pix", PIX, brand.id)
        assert result.code == "UNAUTHORIZED_ACTOR"

    def test_bank_transfer_is_enriched(self, session, withdrawals, gateway, funded_creator):
        gateway.bank_account = {"bank_name": "Itaú", "holder": "Criadora Teste"}
        withdrawal_id = _request(withdrawals, funded_creator, "100.00", "bank_transfer", BANK)
        details = session.get(Withdrawal, withdrawal_id).withdrawal_details
        assert details["bank_account"] == {"bank_name": "Itaú", "holder": "Criadora Teste"}

    def test_bank_lookup_failure_is_not_fatal(self, session, withdrawals, gateway, funded_creator):
        gateway.bank_account = ExternalGatewayError("lookup_bank_account", "down")
        withdrawal_id = _request(withdrawals, funded_creator, "100.00", "bank_transfer", BANK)
        assert "bank_account" not in session.get(Withdrawal, withdrawal_id).withdrawal_details


class TestProcess:
    def test_successful_payout(
        self, session, withdrawals, gateway, funded_creator, admin, dispatcher,
    ):
        withdrawal_id = _request(withdrawals, funded_creator)

        result = withdrawals.process_withdrawal(withdrawal_id, admin.id)

        assert result.success
        assert result.data["status"] == "completed"
        withdrawal = session.get(Withdrawal, withdrawal_id)
        assert withdrawal.status == WithdrawalStatus.COMPLETED.value
        assert withdrawal.transaction_id == result.data["transaction_id"]
        [call] = gateway.calls_to("payout")
        assert call["reference"] == f"escrow:withdrawal_payout:{withdrawal_id}"
        assert call["amount"] == Decimal("100.00")
        tx = session.execute(
            select(Transaction).where(Transaction.withdrawal_id == withdrawal_id)
        ).scalar_one()
        assert tx.type == TransactionType.WITHDRAWAL.value
        assert tx.status == TransactionStatus.PAID.value
        assert "withdrawal_completed" in dispatcher.templates()

    def test_manual_payout_skips_gateway(self, session, withdrawals, gateway, funded_creator, admin):
        withdrawal_id = _request(withdrawals, funded_creator)
        result = withdrawals.process_withdrawal(withdrawal_id, admin.id, transaction_id="TED-991")
        assert result.data["transaction_id"] == "TED-991"
        assert gateway.calls_to("payout") == []

    def test_creator_cannot_process(self, withdrawals, funded_creator):
        withdrawal_id = _request(withdrawals, funded_creator)
        result = withdrawals.process_withdrawal(withdrawal_id, funded_creator.id)
        assert result.code == "UNAUTHORIZED_ACTOR"

    def test_approved_withdrawal_can_be_processed(self, session, withdrawals, funded_creator, admin):
        withdrawal_id = _request(withdrawals, funded_creator)
        assert withdrawals.approve_withdrawal(withdrawal_id, admin.id).success
        assert session.get(Withdrawal, withdrawal_id).approved_at is not None
        assert withdrawals.process_withdrawal(withdrawal_id, admin.id).success

    def test_failed_payout_is_kept_and_refunded_once(
        self, session, deterministic_clock, withdrawals, gateway, funded_creator, admin, dispatcher,
    ):
        withdrawal_id = _request(withdrawals, funded_creator)
        gateway.payouts.append(GatewayResult(status=GatewayStatus.FAILED, message="conta encerrada"))

        result = withdrawals.process_withdrawal(withdrawal_id, admin.id)

        assert not result.success
        assert result.code == "WITHDRAWAL_FAILED"
        assert result.data == {"status": "failed", "reason": "conta encerrada"}
        withdrawal = session.get(Withdrawal, withdrawal_id)
        assert withdrawal.status == WithdrawalStatus.FAILED.value
        assert "withdrawal_failed" in dispatcher.templates()
        # A failed payout keeps the debit until an admin refunds it.
        assert _snapshot(session, deterministic_clock, funded_creator.id).available_balance == Decimal("900.00")

        refunded = withdrawals.refund_failed_withdrawal(withdrawal_id, admin.id)
        again = withdrawals.refund_failed_withdrawal(withdrawal_id, admin.id)

        assert refunded.data["already_refunded"] is False
        assert again.data["already_refunded"] is True
        snap = _snapshot(session, deterministic_clock, funded_creator.id)
        assert snap.available_balance == Decimal("1000.00")
        assert snap.total_withdrawn == Decimal("0.00")
        assert snap.is_consistent

    def test_gateway_error_fails_payout(self, session, withdrawals, gateway, funded_creator, admin):
        withdrawal_id = _request(withdrawals, funded_creator)
        gateway.payouts.append(ExternalGatewayError("payout", "invalid pix key"))
        result = withdrawals.process_withdrawal(withdrawal_id, admin.id)
        assert result.code == "WITHDRAWAL_FAILED"
        assert "invalid pix key" in result.data["reason"]

    def test_unexpected_adapter_error_fails_payout(
        self, session, withdrawals, gateway, funded_creator, admin, deterministic_clock,
    ):
        withdrawal_id = _request(withdrawals, funded_creator)
        gateway.payouts.append(ConnectionError("socket reset by processor"))

        result = withdrawals.process_withdrawal(withdrawal_id, admin.id)

        assert result.code == "WITHDRAWAL_FAILED"
        withdrawal = session.get(Withdrawal, withdrawal_id)
        assert withdrawal.status == WithdrawalStatus.FAILED.value
        assert "socket reset by processor" in withdrawal.failure_reason
        assert _snapshot(session, deterministic_clock, funded_creator.id).available_balance == Decimal("900.00")
        assert withdrawals.refund_failed_withdrawal(withdrawal_id, admin.id).success

    def test_timeout_leaves_processing(self, session, withdrawals, gateway, funded_creator, admin):
        withdrawal_id = _request(withdrawals, funded_creator)
        gateway.payouts.append(GatewayTimeoutError("payout", external_id="po_unknown"))

        result = withdrawals.process_withdrawal(withdrawal_id, admin.id)

        assert result.success
        assert result.data["status"] == "processing"
        withdrawal = session.get(Withdrawal, withdrawal_id)
        assert withdrawal.withdrawal_details["payout_reference"] == "po_unknown"
        assert withdrawal_id not in withdrawals.pending_withdrawal_ids()

    def test_refund_only_for_failed(self, withdrawals, funded_creator, admin):
        withdrawal_id = _request(withdrawals, funded_creator)
        assert withdrawals.refund_failed_withdrawal(withdrawal_id, admin.id).code == "INVALID_TRANSITION"


class TestCancelAndReject:
    def test_owner_cancels(self, session, deterministic_clock, withdrawals, funded_creator, dispatcher):
        withdrawal_id = _request(withdrawals, funded_creator, "300.00")

        result = withdrawals.cancel_withdrawal(withdrawal_id, funded_creator.id, "mudei de ideia")

        assert result.success
        withdrawal = session.get(Withdrawal, withdrawal_id)
        assert withdrawal.status == WithdrawalStatus.CANCELLED.value
        assert withdrawal.cancellation_reason == "mudei de ideia"
        assert _snapshot(session, deterministic_clock, funded_creator.id).available_balance == Decimal("1000.00")
        assert "withdrawal_cancelled" in dispatcher.templates()

    def test_admin_rejects(self, session, withdrawals, funded_creator, admin, dispatcher):
        withdrawal_id = _request(withdrawals, funded_creator)
        assert withdrawals.reject_withdrawal(withdrawal_id, admin.id, "dados divergentes").success
        assert session.get(Withdrawal, withdrawal_id).status == WithdrawalStatus.CANCELLED.value
        assert "withdrawal_rejected" in dispatcher.templates()

    def test_creator_cannot_reject(self, withdrawals, funded_creator):
        withdrawal_id = _request(withdrawals, funded_creator)
        assert withdrawals.reject_withdrawal(withdrawal_id, funded_creator.id, "x").code == "UNAUTHORIZED_ACTOR"

    def test_completed_cannot_be_cancelled(self, withdrawals, funded_creator, admin):
        withdrawal_id = _request(withdrawals, funded_creator)
        withdrawals.process_withdrawal(withdrawal_id, admin.id)
        result = withdrawals.cancel_withdrawal(withdrawal_id, funded_creator.id)
        assert result.code == "INVALID_TRANSITION"

    def test_pending_ids_oldest_first(self, deterministic_clock, withdrawals, funded_creator):
        first = _request(withdrawals, funded_creator)
        deterministic_clock.advance(60)
        second = _request(withdrawals, funded_creator)
        assert withdrawals.pending_withdrawal_ids() == [first, second]
