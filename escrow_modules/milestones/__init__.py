"""Contract timeline: four fixed milestones with proportional deadlines."""

from escrow_modules.milestones.service import MilestoneService, MilestoneTimeline
from escrow_modules.milestones.timeline import MILESTONE_PLAN, plan_timeline

__all__ = ["MILESTONE_PLAN", "MilestoneService", "MilestoneTimeline", "plan_timeline"]
