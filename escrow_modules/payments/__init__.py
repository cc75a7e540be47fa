"""Escrow release and contract funding."""

from escrow_modules.payments.escrow import EscrowLedger
from escrow_modules.payments.funding import FundingService
from escrow_modules.payments.service import EscrowService

__all__ = ["EscrowLedger", "EscrowService", "FundingService"]
