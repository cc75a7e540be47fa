"""
escrow_batch.tasks -- Task protocol, registry, and the escrow sweeps.
"""

from escrow_batch.tasks.base import (
    BatchItemInput,
    BatchTask,
    BatchTaskResult,
    TaskRegistry,
)
from escrow_batch.tasks.escrow_tasks import TaskContext, build_task_registry

__all__ = [
    "BatchItemInput",
    "BatchTask",
    "BatchTaskResult",
    "TaskContext",
    "TaskRegistry",
    "build_task_registry",
]
