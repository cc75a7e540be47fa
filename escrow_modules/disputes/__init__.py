"""Disputes and deadline penalties."""

from escrow_modules.disputes.penalties import DeadlinePolicyService
from escrow_modules.disputes.service import DisputeService

__all__ = ["DeadlinePolicyService", "DisputeService"]
