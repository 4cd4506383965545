"""
Command-line entry point

    python -m yield_ledger.cli payouts [--dry-run] [--date YYYY-MM-DD]
    python -m yield_ledger.cli serve [--host HOST] [--port PORT]

The payouts command is meant to be scheduled (cron) once a day.
"""

import argparse
import sys
from datetime import date
from typing import List, Optional

import uvicorn

from .api import create_app
from .api.deps import set_ledger_system
from .config import get_config
from .logging_config import setup_logging
from .money import format_amount
from .payouts import BatchReport
from .system import LedgerSystem


def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid date '{value}', expected YYYY-MM-DD")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="yield_ledger",
        description="Yield ledger batch jobs and API server",
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="Override YIELD_LEDGER_DATABASE_URL",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    payouts = subparsers.add_parser("payouts", help="Process due yield payouts")
    payouts.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be processed without making changes",
    )
    payouts.add_argument(
        "--date",
        type=_parse_date,
        default=None,
        help="Process payouts as of this date (default: today)",
    )

    serve = subparsers.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default=None, help="Bind address")
    serve.add_argument("--port", type=int, default=None, help="Bind port")

    return parser


def print_report(report: BatchReport) -> None:
    print("Yield Deposits Payout Processor")
    print(f"Target date: {report.as_of.isoformat()}")
    print(f"Mode: {'DRY RUN' if report.dry_run else 'LIVE PROCESSING'}")
    print()
    for detail in report.details:
        line = f"  deposit #{detail['deposit_id']}: {detail['status']}"
        if "amount" in detail:
            line += f" {format_amount(detail['amount'])}"
        if "payout_date" in detail:
            line += f" for {detail['payout_date'].isoformat()}"
        if "error" in detail:
            line += f" ({detail['error']})"
        print(line)
    print()
    print(f"Processed: {report.processed}")
    print(f"Skipped:   {report.skipped}")
    print(f"Errors:    {report.errors}")
    print(f"Total:     {report.total}")


def run_payouts(system: LedgerSystem, as_of: Optional[date], dry_run: bool) -> int:
    report = system.payout_scheduler.run_due_payouts(
        as_of=as_of or date.today(),
        dry_run=dry_run
    )
    print_report(report)
    return 1 if report.errors else 0


def run_server(system: LedgerSystem, host: str, port: int) -> None:
    set_ledger_system(system)
    uvicorn.run(create_app(), host=host, port=port, log_level="info")


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config = get_config()
    if args.database_url:
        config = config.model_copy(update={"database_url": args.database_url})
    setup_logging(config.log_level, config.log_format)

    system = LedgerSystem(config=config)
    try:
        if args.command == "serve":
            run_server(system, args.host or config.api_host, args.port or config.api_port)
            return 0
        return run_payouts(system, args.date, args.dry_run)
    finally:
        system.close()


if __name__ == "__main__":
    sys.exit(main())
