"""
Tests for TaskRegistry and BatchRunner SAVEPOINT-per-item semantics.
"""

from decimal import Decimal

import pytest
from sqlalchemy import select

from escrow_batch.domain.types import BatchItemStatus, BatchRunStatus
from escrow_batch.runner import BatchRunner
from escrow_batch.tasks import BatchItemInput, BatchTask, BatchTaskResult, TaskRegistry
from escrow_kernel.domain.actors import SYSTEM_ACTOR_ID
from escrow_kernel.exceptions import LedgerInvariantViolationError
from escrow_kernel.models.party import Party, PartyRole

ZERO = Decimal("0.00")


class ScriptedTask:
    """Writes a Party per item, then behaves as scripted for that item key."""

    def __init__(self, task_type="test.scripted", script=None, prepare_error=None):
        self._task_type = task_type
        self._script = script or {}
        self._prepare_error = prepare_error

    @property
    def task_type(self):
        return self._task_type

    @property
    def description(self):
        return "scripted"

    def prepare_items(self, parameters, session, as_of):
        if self._prepare_error:
            raise self._prepare_error
        return tuple(
            BatchItemInput(item_index=i, item_key=key)
            for i, key in enumerate(self._script)
        )

    def execute_item(self, item, parameters, session, as_of):
        session.add(Party(
            role=PartyRole.CREATOR.value,
            display_name=f"batch {item.item_key}",
            email=f"{item.item_key}@batch.test",
            created_by_id=SYSTEM_ACTOR_ID,
        ))
        session.flush()
        outcome = self._script[item.item_key]
        if isinstance(outcome, Exception):
            raise outcome
        return BatchTaskResult(status=outcome, error_code="NOPE" if outcome == BatchItemStatus.FAILED else None)


def _written(session) -> set[str]:
    names = session.execute(
        select(Party.display_name).where(Party.display_name.like("batch %"))
    ).scalars()
    return {name.removeprefix("batch ") for name in names}


def _runner(session, clock, *tasks):
    registry = TaskRegistry()
    for task in tasks:
        registry.register(task)
    return BatchRunner(session, registry, clock)


class TestTaskRegistry:
    def test_register_and_get(self):
        registry = TaskRegistry()
        task = ScriptedTask()
        registry.register(task)
        assert registry.get("test.scripted") is task
        assert "test.scripted" in registry
        assert len(registry) == 1

    def test_duplicate_rejected(self):
        registry = TaskRegistry()
        registry.register(ScriptedTask())
        with pytest.raises(ValueError, match="already registered"):
            registry.register(ScriptedTask())

    def test_unknown_task(self):
        with pytest.raises(KeyError, match="No task registered"):
            TaskRegistry().get("missing")

    def test_list_is_sorted(self):
        registry = TaskRegistry()
        registry.register(ScriptedTask("b.task"))
        registry.register(ScriptedTask("a.task"))
        assert registry.list_tasks() == ("a.task", "b.task")

    def test_scripted_task_satisfies_protocol(self):
        assert isinstance(ScriptedTask(), BatchTask)


class TestBatchRunner:
    def test_all_succeed(self, session, deterministic_clock):
        task = ScriptedTask(script={"a": BatchItemStatus.SUCCEEDED, "b": BatchItemStatus.SUCCEEDED})

        run = _runner(session, deterministic_clock, task).run("test.scripted")

        assert run.status == BatchRunStatus.COMPLETED
        assert (run.total_items, run.succeeded, run.failed) == (2, 2, 0)
        assert run.error_summary is None
        assert _written(session) == {"a", "b"}

    def test_failed_and_skipped_items_roll_back(self, session, deterministic_clock):
        task = ScriptedTask(script={
            "ok": BatchItemStatus.SUCCEEDED,
            "bad": BatchItemStatus.FAILED,
            "noop": BatchItemStatus.SKIPPED,
        })

        run = _runner(session, deterministic_clock, task).run("test.scripted")

        assert run.status == BatchRunStatus.PARTIALLY_COMPLETED
        assert (run.succeeded, run.failed, run.skipped) == (1, 1, 1)
        assert run.error_summary == "1 item(s) failed"
        assert _written(session) == {"ok"}

    def test_crashing_item_is_isolated(self, session, deterministic_clock):
        task = ScriptedTask(script={"boom": RuntimeError("kaput"), "ok": BatchItemStatus.SUCCEEDED})

        run = _runner(session, deterministic_clock, task).run("test.scripted")

        crashed = run.item_results[0]
        assert crashed.status == BatchItemStatus.FAILED
        assert crashed.error_code == "UNHANDLED_EXCEPTION"
        assert crashed.error_message == "kaput"
        assert _written(session) == {"ok"}

    def test_every_item_failing_fails_the_run(self, session, deterministic_clock):
        task = ScriptedTask(script={"x": BatchItemStatus.FAILED})
        assert _runner(session, deterministic_clock, task).run("test.scripted").status == BatchRunStatus.FAILED

    def test_ledger_violation_aborts_run(self, session, deterministic_clock):
        violation = LedgerInvariantViolationError(
            creator_id="c", available=ZERO, pending=ZERO, earned=Decimal("1.00"),
            withdrawn=ZERO, operation="test",
        )
        task = ScriptedTask(script={"first": BatchItemStatus.SUCCEEDED, "broken": violation})

        with pytest.raises(LedgerInvariantViolationError):
            _runner(session, deterministic_clock, task).run("test.scripted")

        assert _written(session) == {"first"}

    def test_prepare_failure(self, session, deterministic_clock):
        task = ScriptedTask(prepare_error=RuntimeError("db down"))

        run = _runner(session, deterministic_clock, task).run("test.scripted")

        assert run.status == BatchRunStatus.FAILED
        assert run.total_items == 0
        assert "db down" in run.error_summary

    def test_empty_run_completes(self, session, deterministic_clock):
        run = _runner(session, deterministic_clock, ScriptedTask()).run("test.scripted")
        assert run.status == BatchRunStatus.COMPLETED
        assert run.total_items == 0

    def test_unknown_task_type(self, session, deterministic_clock):
        with pytest.raises(KeyError):
            _runner(session, deterministic_clock).run("missing")

    def test_correlation_id_and_summary_logged(self, session, deterministic_clock, captured_logs):
        task = ScriptedTask(script={"a": BatchItemStatus.SUCCEEDED})

        run = _runner(session, deterministic_clock, task).run("test.scripted", correlation_id="corr-1")

        assert run.correlation_id == "corr-1"
        [done] = [r for r in captured_logs() if r["message"] == "batch_run_completed"]
        assert done["correlation_id"] == "corr-1"
        assert done["task_type"] == "test.scripted"
        assert done["succeeded"] == 1
