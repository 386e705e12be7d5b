"""
ScalingAd CLI - inspect and reconcile escrowed job payments.

Usage:
    scalingad jobs [--business ID] [--agency ID] [--status S] [--json]
    scalingad show JOB_ID [--json]
    scalingad ledger JOB_ID [--json]
    scalingad reconcile [JOB_ID] [--limit N] [--json]
    scalingad audit JOB_ID [--json]
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from scalingad.cli.commands import cmd_audit, cmd_jobs, cmd_ledger, cmd_reconcile, cmd_show
from scalingad.commerce.config import CommerceConfig
from scalingad.commerce.errors import EscrowError
from scalingad.commerce.escrow.reconcile import Reconciler
from scalingad.commerce.escrow.service import EscrowService
from scalingad.commerce.jobs.models import JobStatus
from scalingad.commerce.jobs.sqlite import SQLiteJobStorage
from scalingad.commerce.processor.stripe_processor import StripeProcessor
from scalingad.commerce.queries import JobQueryService
from scalingad.logging_config import setup_logging

logger = logging.getLogger(__name__)

# Commands that run through the escrow service
SERVICE_COMMANDS = {"reconcile", "audit"}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="scalingad",
        description="Escrow-backed job payments between brands and agencies",
    )
    parser.add_argument("--db", help="SQLite database path (default: $SCALINGAD_DB_PATH)")
    parser.add_argument("--env-file", default=".env", help="Environment file to load")
    parser.add_argument("--verbose", "-v", action="store_true", help="Log at INFO level")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # jobs
    p_jobs = subparsers.add_parser("jobs", help="List jobs")
    p_jobs.add_argument("--business", help="Only jobs of this business")
    p_jobs.add_argument("--agency", help="Only jobs of this agency")
    p_jobs.add_argument("--status", choices=[s.value for s in JobStatus])
    p_jobs.add_argument("--limit", type=int, default=100)
    p_jobs.add_argument("--json", "-j", action="store_true")

    # show
    p_show = subparsers.add_parser("show", help="Show a job with payments and payout")
    p_show.add_argument("job_id")
    p_show.add_argument("--json", "-j", action="store_true")

    # ledger
    p_ledger = subparsers.add_parser("ledger", help="Print a job's ledger")
    p_ledger.add_argument("job_id")
    p_ledger.add_argument("--json", "-j", action="store_true")

    # reconcile
    p_reconcile = subparsers.add_parser(
        "reconcile", help="Re-query the processor for pending payments"
    )
    p_reconcile.add_argument("job_id", nargs="?", help="Reconcile a single job")
    p_reconcile.add_argument("--limit", type=int, default=100)
    p_reconcile.add_argument("--json", "-j", action="store_true")

    # audit
    p_audit = subparsers.add_parser("audit", help="Check a job's rows against its ledger")
    p_audit.add_argument("job_id")
    p_audit.add_argument("--json", "-j", action="store_true")

    return parser


def build_processor(config: CommerceConfig):
    return StripeProcessor(config)


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging("INFO" if args.verbose else None)

    try:
        config = CommerceConfig.from_env(env_file=args.env_file)
        db_path = Path(args.db).expanduser() if args.db else config.resolved_db_path
        storage = SQLiteJobStorage(db_path)
    except (ValueError, TypeError) as e:
        logger.error(f"Failed to initialize ScalingAd: {e}")
        return 1

    try:
        if args.command in SERVICE_COMMANDS:
            # audit reads local rows only
            processor = build_processor(config) if args.command == "reconcile" else None
            service = EscrowService(storage, processor, config=config)
            reconciler = Reconciler(service)
            if args.command == "reconcile":
                cmd_reconcile(args, reconciler)
            elif args.command == "audit":
                cmd_audit(args, reconciler)
        else:
            queries = JobQueryService(storage)
            if args.command == "jobs":
                cmd_jobs(args, queries)
            elif args.command == "show":
                cmd_show(args, queries)
            elif args.command == "ledger":
                cmd_ledger(args, queries)
    except EscrowError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
    except (ValueError, TypeError) as e:
        logger.error(f"Input validation error: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
