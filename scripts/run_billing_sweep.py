#!/usr/bin/env python3
"""
Run one billing sweep: select contracts, run the billing phases, record the run.

Meant to be invoked by cron.  Holds a lock file so overlapping invocations
exit immediately; a run stops starting new contracts at the configured
deadline and the next run resumes from the saved cursors.

Usage:
    python3 scripts/run_billing_sweep.py [options]

Examples:
    # Regular scheduled run (mode derived from the business date)
    python3 scripts/run_billing_sweep.py --config billing.yaml

    # One contract, no writes
    python3 scripts/run_billing_sweep.py --contract 1042 --dry-run

    # Force a full scan on a weekday
    python3 scripts/run_billing_sweep.py --mode weekend

Exit codes:
    0  sweep completed, or another sweep already holds the lock
    1  configuration or database error
    2  sweep finished with failed or deferred contracts
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

# Project root on sys.path
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run the billing sweep over the contract base.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to billing YAML (default: packaged billing.yaml).",
    )
    parser.add_argument(
        "--db-url",
        default=None,
        help="Database URL (default: database_url from the config).",
    )
    parser.add_argument(
        "--contract",
        default=None,
        help="Process only this contract id.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Compute and log every change; write nothing to the system of record.",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Stop after the first processed contract.",
    )
    parser.add_argument(
        "--mode",
        choices=("weekday", "weekend"),
        default=None,
        help="Selection mode (default: derived from the business date).",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=("DEBUG", "INFO", "WARNING", "ERROR"),
        help="Log level (default: INFO).",
    )
    return parser.parse_args()


def main() -> int:
    args = _parse_args()

    # Lazy imports so we fail fast on args first
    from billing_batch.domain.types import SweepMode, SweepOptions, SweepStatus
    from billing_batch.orchestrator import SweepOrchestrator
    from billing_config import get_active_config
    from billing_kernel.db.engine import (
        create_tables,
        get_session_factory,
        init_engine_from_url,
    )
    from billing_kernel.domain.clock import SystemClock
    from billing_kernel.exceptions import SweepAlreadyRunningError
    from billing_kernel.logging_config import configure_logging
    from billing_kernel.store.sql_store import SqlRecordStore

    configure_logging(level=getattr(logging, args.log_level))

    try:
        config = get_active_config(args.config)
    except (OSError, ValueError) as e:
        print(f"ERROR: Failed to load config: {e}", file=sys.stderr)
        return 1

    try:
        init_engine_from_url(args.db_url or config.database_url)
        import billing_batch.models  # noqa: F401  register ledger tables
        create_tables()
    except Exception as e:
        print(f"ERROR: Database setup failed: {e}", file=sys.stderr)
        return 1

    clock = SystemClock()
    store = SqlRecordStore(get_session_factory(), clock=clock)
    options = SweepOptions(
        contract_id=args.contract,
        dry_run=args.dry_run,
        once=args.once,
        mode=SweepMode(args.mode) if args.mode else None,
    )

    try:
        orchestrator = SweepOrchestrator.from_config(
            get_session_factory(), store, config, clock=clock,
        )
        result = orchestrator.create_sweep().run(options)
    except SweepAlreadyRunningError as e:
        print(f"Sweep skipped: {e}", file=sys.stderr)
        return 0

    print(
        f"Sweep {result.run_id} [{result.mode.value}] {result.status.value}: "
        f"{result.succeeded} succeeded, {result.failed} failed, "
        f"{result.skipped} skipped, {result.deferred} deferred "
        f"in {result.duration_ms} ms"
    )
    for outcome in result.outcomes:
        if outcome.error_code:
            print(f"  {outcome.contract_id}: {outcome.error_code} {outcome.error_message}")

    return 0 if result.status is SweepStatus.COMPLETED else 2


if __name__ == "__main__":
    sys.exit(main())
