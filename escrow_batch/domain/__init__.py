"""
escrow_batch.domain -- Pure types for batch runs.

ZERO I/O.  All types are frozen dataclasses.
"""

from escrow_batch.domain.types import (
    BatchItemResult,
    BatchItemStatus,
    BatchRunResult,
    BatchRunStatus,
)

__all__ = [
    "BatchItemResult",
    "BatchItemStatus",
    "BatchRunResult",
    "BatchRunStatus",
]
