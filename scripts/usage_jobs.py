#!/usr/bin/env python3
"""
Usage Jobs - scheduled billing-period maintenance.

Commands:
    reset-periods    Start a new period for every account whose period began
                     before the current month (run daily from cron)
    report-overage   Send unreported paid-tier overage to Stripe (run hourly)

Usage:
    python3 scripts/usage_jobs.py reset-periods
    python3 scripts/usage_jobs.py report-overage --dry-run
"""

import argparse
import asyncio
import sys
from datetime import UTC, datetime

from sqlalchemy.exc import SQLAlchemyError

from gateway.config import settings
from gateway.db.session import close_engines, get_read_session, get_write_session
from gateway.exceptions import AccountNotFoundError, WriteVerificationError
from gateway.observability import get_logger, setup_logging
from gateway.services.billing_report import OverageReporter
from gateway.services.ledger import UsageLedger

logger = get_logger("usage_jobs")


async def reset_periods(ledger: UsageLedger, now: datetime, dry_run: bool = False) -> int:
    """Reset every account due for a new period. Returns the number reset."""
    due = await ledger.accounts_due_for_reset(now)
    logger.info("period_reset_started", due=len(due), dry_run=dry_run)

    reset = 0
    for account in due:
        if dry_run:
            logger.info(
                "period_reset_skipped_dry_run",
                account_id=str(account.account_id),
                tokens_used=account.tokens_used_current_period,
            )
            continue
        try:
            await ledger.reset_period(account.account_id)
        except (SQLAlchemyError, OSError, WriteVerificationError, AccountNotFoundError) as e:
            logger.error("period_reset_failed", account_id=str(account.account_id), error=str(e))
            continue
        reset += 1

    logger.info("period_reset_complete", reset=reset, due=len(due))
    return reset


async def report_overage(reporter: OverageReporter, dry_run: bool = False) -> int:
    """Report outstanding overage. Returns the number of accounts reported."""
    if dry_run:
        pending = [
            report
            for account in await reporter.ledger.accounts_with_overage()
            if (report := reporter.build_report(account)) is not None
        ]
        for report in pending:
            logger.info(
                "overage_pending",
                account_id=str(report.account_id),
                tokens=report.tokens,
                identifier=report.identifier,
            )
        return len(pending)

    return len(await reporter.report_all())


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Billing-period maintenance for the streaming gateway",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Roll accounts into the new month (for cron jobs)
  python3 scripts/usage_jobs.py reset-periods

  # Show what would be reported, without calling Stripe
  python3 scripts/usage_jobs.py report-overage --dry-run
        """,
    )
    parser.add_argument(
        "command", choices=["reset-periods", "report-overage"], help="Job to run"
    )
    parser.add_argument(
        "--dry-run", action="store_true", help="Don't write or report, just log what would happen"
    )
    return parser


async def run(command: str, dry_run: bool) -> int:
    ledger = UsageLedger(get_write_session, get_read_session, settings)
    try:
        if command == "reset-periods":
            return await reset_periods(ledger, datetime.now(UTC), dry_run=dry_run)
        if not settings.stripe_api_key:
            logger.error("stripe_not_configured")
            return -1
        reporter = OverageReporter(
            ledger, settings.stripe_api_key, settings.stripe_meter_event_name
        )
        return await report_overage(reporter, dry_run=dry_run)
    finally:
        await close_engines()


def main(argv: list[str] | None = None) -> int:
    setup_logging()
    args = build_parser().parse_args(argv)
    processed = asyncio.run(run(args.command, args.dry_run))
    return 0 if processed >= 0 else 1


if __name__ == "__main__":
    sys.exit(main())
