"""
Module: escrow_kernel.models.milestone
Responsibility: Ordered deliverable units of a contract and the derived
    contract phase.

Invariants enforced:
    - (contract_id, order) is unique (uq_milestone_contract_order).
    - At most one milestone per contract is in the working set
      {in_progress, submitted, changes_requested, delayed}; enforced by the
      milestone service, which only ever unlocks the next order.
    - penalty_applied is set once and never cleared.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import JSON, Boolean, ForeignKey, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from escrow_kernel.db.base import TrackedBase

if TYPE_CHECKING:
    from escrow_kernel.models.contract import Contract


class MilestoneStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"
    APPROVED = "approved"  # the "completed" state
    CHANGES_REQUESTED = "changes_requested"
    DELAYED = "delayed"


WORKING_STATUSES = frozenset({
    MilestoneStatus.IN_PROGRESS.value,
    MilestoneStatus.SUBMITTED.value,
    MilestoneStatus.CHANGES_REQUESTED.value,
    MilestoneStatus.DELAYED.value,
})


class MilestoneType(str, Enum):
    SCRIPT_SUBMISSION = "script_submission"
    SCRIPT_APPROVAL = "script_approval"
    VIDEO_SUBMISSION = "video_submission"
    FINAL_APPROVAL = "final_approval"


class ContractPhase(str, Enum):
    ALIGNMENT = "alignment"
    CREATION = "creation"
    PRODUCTION = "production"
    APPROVAL = "approval"
    PAYMENT = "payment"


PHASE_BY_MILESTONE_TYPE = {
    MilestoneType.SCRIPT_SUBMISSION.value: ContractPhase.ALIGNMENT,
    MilestoneType.SCRIPT_APPROVAL.value: ContractPhase.CREATION,
    MilestoneType.VIDEO_SUBMISSION.value: ContractPhase.PRODUCTION,
    MilestoneType.FINAL_APPROVAL.value: ContractPhase.APPROVAL,
}


def derive_phase(milestones: Iterable[ContractMilestone]) -> ContractPhase | None:
    """Project the contract phase from its milestones.

    The phase is the phase of the lowest-order milestone not yet approved;
    when every milestone is approved the contract is in the payment phase.
    Contracts without a timeline have no phase.
    """
    ordered = sorted(milestones, key=lambda m: m.order)
    if not ordered:
        return None
    for milestone in ordered:
        if milestone.status != MilestoneStatus.APPROVED.value:
            return PHASE_BY_MILESTONE_TYPE.get(milestone.milestone_type, ContractPhase.ALIGNMENT)
    return ContractPhase.PAYMENT


class ContractMilestone(TrackedBase):
    """One step of a contract timeline."""

    __tablename__ = "contract_milestones"

    __table_args__ = (
        UniqueConstraint("contract_id", "order", name="uq_milestone_contract_order"),
        Index("idx_milestone_deadline_status", "deadline", "status"),
    )

    contract_id: Mapped[UUID] = mapped_column(ForeignKey("contracts.id"), nullable=False)
    milestone_type: Mapped[str] = mapped_column(String(40), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    order: Mapped[int] = mapped_column(nullable=False)
    status: Mapped[str] = mapped_column(
        String(30), nullable=False, default=MilestoneStatus.PENDING.value,
    )
    deadline: Mapped[datetime] = mapped_column(nullable=False)

    submission_data: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    feedback: Mapped[str | None] = mapped_column(Text, nullable=True)
    submitted_at: Mapped[datetime | None] = mapped_column(nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(nullable=True)

    delay_notified_at: Mapped[datetime | None] = mapped_column(nullable=True)
    penalty_applied: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    justification: Mapped[str | None] = mapped_column(Text, nullable=True)
    justified_at: Mapped[datetime | None] = mapped_column(nullable=True)
    extension_days: Mapped[int] = mapped_column(nullable=False, default=0)
    extension_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    contract: Mapped[Contract] = relationship(back_populates="milestones")

    @property
    def is_approved(self) -> bool:
        return self.status == MilestoneStatus.APPROVED.value

    @property
    def is_working(self) -> bool:
        return self.status in WORKING_STATUSES

    def is_overdue(self, now: datetime) -> bool:
        return not self.is_approved and self.deadline < now

    def days_overdue(self, now: datetime) -> int:
        if not self.is_overdue(now):
            return 0
        return (now - self.deadline).days

    def __repr__(self) -> str:
        return f"<ContractMilestone #{self.order} {self.milestone_type} ({self.status})>"
