"""
escrow_batch -- Scheduled drivers of the escrow core.

Runs the recurring sweeps (deadline penalties, offer expiry, escrow
release, withdrawal payouts, outbox delivery) as batch tasks: each task
lists its eligible items and the runner processes every item inside its
own SAVEPOINT, so one failing item never aborts the run.

Architecture:
    escrow_batch/ is a top-level package.  Nothing in escrow_kernel/ or
    escrow_modules/ imports from it.  Tasks call module services with
    ``auto_commit=False``; the runner only flushes and the caller (the
    CLI's session scope) commits.

Entry point:
    python -m escrow_batch <task> [--database-url URL] [--config PATH]
"""
