"""
Run one escrow batch task from the command line.

Usage:
    python -m escrow_batch escrow.check_timeline_deadlines
    python -m escrow_batch escrow.expire_offers --database-url postgresql://...
    python -m escrow_batch --list

The run commits on success.  Payment gateway, notification and chat
adapters are deployment-specific; tasks that need them list no items when
run from here.
"""

from __future__ import annotations

import argparse
import json
import os
import sys

from escrow_batch.domain.types import BatchRunStatus
from escrow_batch.runner import BatchRunner
from escrow_batch.tasks import TaskContext, build_task_registry
from escrow_config import get_active_config
from escrow_kernel.db.engine import create_tables, init_engine_from_url, session_scope
from escrow_kernel.domain.clock import SystemClock

DEFAULT_DATABASE_URL = "sqlite:///escrow.db"


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="escrow_batch",
        description="Run a scheduled escrow sweep.",
    )
    parser.add_argument(
        "task",
        nargs="?",
        help="Task type to run (see --list)",
    )
    parser.add_argument(
        "--database-url",
        default=os.environ.get("DATABASE_URL", DEFAULT_DATABASE_URL),
        help="SQLAlchemy database URL (default: $DATABASE_URL or local SQLite)",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to a configuration set YAML (default: $ESCROW_CONFIG or packaged default)",
    )
    parser.add_argument(
        "--create-tables",
        action="store_true",
        help="Create missing tables before running",
    )
    parser.add_argument(
        "--list",
        action="store_true",
        help="List registered task types and exit",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)

    try:
        config = get_active_config(args.config)
    except (OSError, ValueError) as e:
        print(f"ERROR: Failed to load config: {e}", file=sys.stderr)
        return 1

    clock = SystemClock()
    registry = build_task_registry(TaskContext(config=config, clock=clock))

    if args.list or not args.task:
        for task_type in registry.list_tasks():
            print(f"{task_type:36} {registry.get(task_type).description}")
        return 0 if args.list else 2

    if args.task not in registry:
        print(f"ERROR: Unknown task {args.task!r}", file=sys.stderr)
        print(f"Available tasks: {list(registry.list_tasks())}", file=sys.stderr)
        return 2

    init_engine_from_url(args.database_url)
    if args.create_tables:
        create_tables()

    with session_scope() as session:
        result = BatchRunner(session, registry, clock).run(args.task)

    print(json.dumps(result.summary(), indent=2))
    return 1 if result.status == BatchRunStatus.FAILED else 0


if __name__ == "__main__":
    sys.exit(main())
