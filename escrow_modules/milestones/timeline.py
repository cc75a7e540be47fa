"""
Pure deadline computation for contract timelines.

ZERO I/O: given a start instant and the contract's estimated days, lay
out the four fixed milestones.  Each deadline is
``start + ceil(estimated_days * percent / 100)`` whole days.

Seven estimated days put the milestones on days 2, 3, 6 and 7.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from escrow_kernel.models.milestone import MilestoneType


@dataclass(frozen=True)
class MilestoneTemplate:
    milestone_type: MilestoneType
    title: str
    description: str
    percent: int


MILESTONE_PLAN: tuple[MilestoneTemplate, ...] = (
    MilestoneTemplate(
        MilestoneType.SCRIPT_SUBMISSION,
        "Envio do roteiro",
        "Criador envia o roteiro do conteúdo",
        25,
    ),
    MilestoneTemplate(
        MilestoneType.SCRIPT_APPROVAL,
        "Aprovação do roteiro",
        "Marca revisa e aprova o roteiro",
        35,
    ),
    MilestoneTemplate(
        MilestoneType.VIDEO_SUBMISSION,
        "Envio do vídeo",
        "Criador envia o vídeo final",
        85,
    ),
    MilestoneTemplate(
        MilestoneType.FINAL_APPROVAL,
        "Aprovação final",
        "Marca aprova a entrega final",
        100,
    ),
)


@dataclass(frozen=True)
class PlannedMilestone:
    order: int
    template: MilestoneTemplate
    days_from_start: int
    deadline: datetime


def days_for(estimated_days: int, percent: int) -> int:
    """ceil(estimated_days * percent / 100) in integer arithmetic."""
    return -(-estimated_days * percent // 100)


def plan_timeline(start: datetime, estimated_days: int) -> tuple[PlannedMilestone, ...]:
    if estimated_days < 1:
        raise ValueError(f"estimated_days must be >= 1, got {estimated_days}")
    planned = []
    for order, template in enumerate(MILESTONE_PLAN, start=1):
        days = days_for(estimated_days, template.percent)
        planned.append(
            PlannedMilestone(
                order=order,
                template=template,
                days_from_start=days,
                deadline=start + timedelta(days=days),
            )
        )
    return tuple(planned)
