"""Creator withdrawals."""

from escrow_modules.withdrawals.service import WithdrawalService
from escrow_modules.withdrawals.workflows import WITHDRAWAL_WORKFLOW

__all__ = ["WITHDRAWAL_WORKFLOW", "WithdrawalService"]
