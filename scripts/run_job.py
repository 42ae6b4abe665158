#!/usr/bin/env python3
"""
Run one batch job: load records, execute through the coordinator, write the output file.

Job definitions are read from a directory holding one ``<job_config_id>.yaml``
per job.  Records come from a JSON file mapping transaction type codes to
lists of record objects:

    {"PAYMENT": [{"id": "1", "amount": "10.00"}, ...], "REFUND": [...]}

Usage:
    python3 scripts/run_job.py --config-dir <dir> --job <id> --records <file> [options]

Examples:
    # Run against a local SQLite file, output to ./out
    python3 scripts/run_job.py --config-dir jobs --job daily_payments \\
        --records payments.json --business-date 2026-03-31 --output-dir out

    # Replay with an explicit idempotency key (returns the cached result)
    python3 scripts/run_job.py --config-dir jobs --job daily_payments \\
        --records payments.json --idempotency-key run-2026-03-31
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import date
from pathlib import Path

# Project root on sys.path
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

DB_URL = "sqlite:///tranche.db"


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run a configured batch job and write its output file.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--config-dir",
        required=True,
        type=Path,
        help="Directory of job definition YAML files.",
    )
    parser.add_argument(
        "--job",
        required=True,
        help="Job config id (file name without .yaml).",
    )
    parser.add_argument(
        "--records",
        required=True,
        type=Path,
        help="JSON file: transaction type code -> list of records.",
    )
    parser.add_argument(
        "--business-date",
        type=lambda s: date.fromisoformat(s),
        default=None,
        help="Business date (YYYY-MM-DD). Default: today.",
    )
    parser.add_argument(
        "--idempotency-key",
        default=None,
        help="Client idempotency key. Default: derived from the request content.",
    )
    parser.add_argument(
        "--correlation-id",
        default=None,
        help="Correlation id attached to every log line.",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=None,
        help="Directory for the output file. Default: no file is written.",
    )
    parser.add_argument(
        "--db-url",
        default=DB_URL,
        help=f"SQLAlchemy database URL (default: {DB_URL}).",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (default: INFO).",
    )
    return parser.parse_args()


def main() -> int:
    args = _parse_args()

    if not args.config_dir.is_dir():
        print(f"ERROR: Config directory not found: {args.config_dir}", file=sys.stderr)
        return 1
    if not args.records.is_file():
        print(f"ERROR: Records file not found: {args.records}", file=sys.stderr)
        return 1

    from tranche_batch.domain.types import Conflict, ExecutionRequest, ExecutionStatus, ReturnCached
    from tranche_batch.orchestrator import BatchOrchestrator
    from tranche_kernel.db.engine import create_tables, get_session_factory, init_engine_from_url
    from tranche_kernel.exceptions import TrancheError
    from tranche_kernel.logging_config import configure_logging

    configure_logging(level=getattr(logging, args.log_level.upper(), logging.INFO))

    try:
        records = json.loads(args.records.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        print(f"ERROR: Failed to read records: {e}", file=sys.stderr)
        return 1
    if not isinstance(records, dict):
        print("ERROR: Records file must hold an object keyed by transaction type.", file=sys.stderr)
        return 1

    try:
        engine = init_engine_from_url(args.db_url)
        create_tables(engine)
    except Exception as e:
        print(f"ERROR: Database init failed: {e}", file=sys.stderr)
        return 1

    orchestrator = BatchOrchestrator.from_session_factory(
        get_session_factory(),
        config_dir=args.config_dir,
        output_dir=args.output_dir,
    )
    coordinator = orchestrator.create_coordinator()

    request = ExecutionRequest(
        job_config_id=args.job,
        business_date=args.business_date or date.today(),
        records=records,
        idempotency_key=args.idempotency_key,
        correlation_id=args.correlation_id,
    )

    try:
        outcome = coordinator.execute(request)
    except TrancheError as e:
        print(f"ERROR [{e.code}]: {e}", file=sys.stderr)
        return 2

    decision = outcome.decision
    if isinstance(decision, ReturnCached):
        print(f"Already completed under key {decision.key}; cached result:")
        print(json.dumps(decision.payload, indent=2, sort_keys=True))
        return 0
    if isinstance(decision, Conflict):
        retry = f", retry after {decision.retry_after.isoformat()}" if decision.retry_after else ""
        print(f"Conflict for key {decision.key}: {decision.reason.value}{retry}", file=sys.stderr)
        return 3

    execution = outcome.execution
    print(f"Execution {execution.execution_id}: {execution.status.value}")
    print(
        f"  Total: {execution.total_count}, Processed: {execution.processed_count}, "
        f"Errors: {execution.error_count}, Filtered: {execution.filtered_count}"
    )
    if execution.status == ExecutionStatus.COMPLETED:
        print(f"  Content hash: {outcome.document.content_hash}")
        return 0

    if execution.failure_reason is not None:
        print(f"  Failure: {execution.failure_reason.value}: {execution.error_summary}")
    return 4


if __name__ == "__main__":
    sys.exit(main())
