"""Domain models for the escrow kernel."""

from escrow_kernel.models.audit_log import ContractAuditLog
from escrow_kernel.models.campaign import Campaign, CampaignStatus
from escrow_kernel.models.contract import (
    TERMINAL_CONTRACT_STATUSES,
    Contract,
    ContractStatus,
    DisputeWinner,
    WorkflowStatus,
)
from escrow_kernel.models.creator_balance import CreatorBalance
from escrow_kernel.models.job_payment import JobPayment, JobPaymentStatus
from escrow_kernel.models.milestone import (
    ContractMilestone,
    ContractPhase,
    MilestoneStatus,
    MilestoneType,
    derive_phase,
)
from escrow_kernel.models.offer import Offer, OfferStatus
from escrow_kernel.models.outbox import OutboxChannel, OutboxMessage, OutboxStatus
from escrow_kernel.models.party import Party, PartyRole
from escrow_kernel.models.review import Review
from escrow_kernel.models.transaction import Transaction, TransactionStatus, TransactionType
from escrow_kernel.models.webhook_event import WebhookEvent, WebhookEventStatus
from escrow_kernel.models.withdrawal import Withdrawal, WithdrawalMethod, WithdrawalStatus

__all__ = [
    "Campaign",
    "CampaignStatus",
    "Contract",
    "ContractAuditLog",
    "ContractMilestone",
    "ContractPhase",
    "ContractStatus",
    "CreatorBalance",
    "DisputeWinner",
    "JobPayment",
    "JobPaymentStatus",
    "MilestoneStatus",
    "MilestoneType",
    "Offer",
    "OfferStatus",
    "OutboxChannel",
    "OutboxMessage",
    "OutboxStatus",
    "Party",
    "PartyRole",
    "Review",
    "TERMINAL_CONTRACT_STATUSES",
    "Transaction",
    "TransactionStatus",
    "TransactionType",
    "WebhookEvent",
    "WebhookEventStatus",
    "Withdrawal",
    "WithdrawalMethod",
    "WithdrawalStatus",
    "WorkflowStatus",
    "derive_phase",
]
