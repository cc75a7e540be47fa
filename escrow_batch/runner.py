"""
BatchRunner -- SAVEPOINT-per-item execution of one registered task.

Contract:
    ``run()`` lists the task's items and executes each in its own
    SAVEPOINT.  A SUCCEEDED item keeps its writes; FAILED and SKIPPED
    items are rolled back.  One failing item never aborts the run.

Architecture: escrow_batch.  Imports from escrow_batch.domain,
    escrow_batch.tasks and kernel utilities.

Non-goals:
    - Does NOT call ``session.commit()`` -- the caller owns the outer
      transaction (the CLI commits through ``session_scope``).
    - Does NOT persist run history; the returned ``BatchRunResult`` and
      the structured log are the record of a run.

Failure modes:
    - ``LedgerInvariantViolationError`` from an item rolls that item back
      and is re-raised: a broken creator balance stops the whole run.
    - Any other exception from an item is recorded as FAILED with code
      ``UNHANDLED_EXCEPTION``.
    - A failing ``prepare_items()`` yields a FAILED run with no items.
"""

from __future__ import annotations

import time
from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy.orm import Session

from escrow_batch.domain.types import (
    BatchItemResult,
    BatchItemStatus,
    BatchRunResult,
    BatchRunStatus,
)
from escrow_batch.tasks.base import BatchItemInput, BatchTask, TaskRegistry
from escrow_kernel.domain.actors import SYSTEM_ACTOR_ID
from escrow_kernel.domain.clock import Clock, SystemClock
from escrow_kernel.exceptions import LedgerInvariantViolationError
from escrow_kernel.logging_config import LogContext, get_logger

logger = get_logger("batch.runner")


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def _run_status(succeeded: int, failed: int, skipped: int) -> BatchRunStatus:
    if failed == 0:
        return BatchRunStatus.COMPLETED
    if succeeded == 0 and skipped == 0:
        return BatchRunStatus.FAILED
    return BatchRunStatus.PARTIALLY_COMPLETED


class BatchRunner:
    """Runs registered tasks against one session."""

    def __init__(
        self,
        session: Session,
        task_registry: TaskRegistry,
        clock: Clock | None = None,
    ):
        self._session = session
        self._task_registry = task_registry
        self._clock = clock or SystemClock()

    def run(
        self,
        task_type: str,
        parameters: dict[str, Any] | None = None,
        actor_id: UUID = SYSTEM_ACTOR_ID,
        correlation_id: str | None = None,
    ) -> BatchRunResult:
        """Execute every item of ``task_type``.

        Raises:
            KeyError: If ``task_type`` is not registered.
            LedgerInvariantViolationError: If an item breaks a balance.
        """
        task = self._task_registry.get(task_type)
        parameters = parameters or {}
        run_id = uuid4()
        correlation_id = correlation_id or str(run_id)

        with LogContext.bind(
            task_type=task_type,
            correlation_id=correlation_id,
            actor_id=str(actor_id),
        ):
            return self._run(task, parameters, run_id, correlation_id)

    def _run(
        self,
        task: BatchTask,
        parameters: dict[str, Any],
        run_id: UUID,
        correlation_id: str,
    ) -> BatchRunResult:
        start = time.monotonic()
        as_of = self._clock.now()
        logger.info("batch_run_started", extra={"run_id": str(run_id)})

        try:
            items = task.prepare_items(
                parameters=parameters,
                session=self._session,
                as_of=as_of,
            )
        except Exception as exc:
            logger.exception("batch_prepare_failed", extra={"run_id": str(run_id)})
            return BatchRunResult(
                run_id=run_id,
                task_type=task.task_type,
                status=BatchRunStatus.FAILED,
                total_items=0,
                succeeded=0,
                failed=0,
                skipped=0,
                started_at=as_of,
                completed_at=self._clock.now(),
                duration_ms=_elapsed_ms(start),
                correlation_id=correlation_id,
                error_summary=f"prepare_items failed: {exc}",
            )

        results = [
            self._execute(task, item, parameters, as_of) for item in items
        ]
        counts = {status: 0 for status in BatchItemStatus}
        for result in results:
            counts[result.status] += 1
        succeeded = counts[BatchItemStatus.SUCCEEDED]
        failed = counts[BatchItemStatus.FAILED]
        skipped = counts[BatchItemStatus.SKIPPED]

        self._session.flush()
        run = BatchRunResult(
            run_id=run_id,
            task_type=task.task_type,
            status=_run_status(succeeded, failed, skipped),
            total_items=len(items),
            succeeded=succeeded,
            failed=failed,
            skipped=skipped,
            item_results=tuple(results),
            started_at=as_of,
            completed_at=self._clock.now(),
            duration_ms=_elapsed_ms(start),
            correlation_id=correlation_id,
            error_summary=f"{failed} item(s) failed" if failed else None,
        )
        logger.info("batch_run_completed", extra=run.summary())
        return run

    def _execute(
        self,
        task: BatchTask,
        item: BatchItemInput,
        parameters: dict[str, Any],
        as_of: datetime,
    ) -> BatchItemResult:
        item_start = time.monotonic()
        started_at = self._clock.now()

        savepoint = self._session.begin_nested()
        try:
            outcome = task.execute_item(
                item=item,
                parameters=parameters,
                session=self._session,
                as_of=as_of,
            )
        except LedgerInvariantViolationError:
            savepoint.rollback()
            logger.critical("batch_run_aborted", extra={"item_key": item.item_key})
            raise
        except Exception as exc:
            savepoint.rollback()
            logger.exception("batch_item_crashed", extra={"item_key": item.item_key})
            return BatchItemResult(
                item_index=item.item_index,
                item_key=item.item_key,
                status=BatchItemStatus.FAILED,
                error_code="UNHANDLED_EXCEPTION",
                error_message=str(exc),
                duration_ms=_elapsed_ms(item_start),
                started_at=started_at,
                completed_at=self._clock.now(),
            )

        if outcome.status == BatchItemStatus.SUCCEEDED:
            savepoint.commit()
        else:
            savepoint.rollback()
        if outcome.status == BatchItemStatus.FAILED:
            logger.warning(
                "batch_item_failed",
                extra={
                    "item_key": item.item_key,
                    "error_code": outcome.error_code,
                    "error": outcome.error_message,
                },
            )

        return BatchItemResult(
            item_index=item.item_index,
            item_key=item.item_key,
            status=outcome.status,
            error_code=outcome.error_code,
            error_message=outcome.error_message,
            result_data=outcome.result_data,
            duration_ms=_elapsed_ms(item_start),
            started_at=started_at,
            completed_at=self._clock.now(),
        )
