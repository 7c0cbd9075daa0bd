"""
Overage Reporting - paid-tier usage beyond the allowance sent to Stripe.

Reports are Stripe billing meter events. Each carries an identifier derived
from the account, period and cumulative overage, so a retried report is
deduplicated by Stripe instead of billed twice.
"""

import stripe
from structlog import get_logger

from gateway.exceptions import BillingReportError
from gateway.models.domain import AccountData, OverageReport
from gateway.observability.metrics import metrics
from gateway.services.ledger import UsageLedger

logger = get_logger(__name__)


def overage_identifier(account: AccountData, cumulative_overage: int) -> str:
    period = account.period_start_date.strftime("%Y%m%d")
    return f"overage-{account.account_id}-{period}-{cumulative_overage}"


class OverageReporter:
    """Sends unreported overage to the billing processor."""

    def __init__(self, ledger: UsageLedger, api_key: str, meter_event_name: str) -> None:
        self.ledger = ledger
        self.meter_event_name = meter_event_name
        stripe.api_key = api_key

    def build_report(self, account: AccountData) -> OverageReport | None:
        tokens = account.unreported_overage
        if tokens <= 0 or not account.stripe_customer_id:
            return None
        return OverageReport(
            account_id=account.account_id,
            customer_id=account.stripe_customer_id,
            tokens=tokens,
            identifier=overage_identifier(account, account.overage_tokens_reported + tokens),
        )

    async def report(self, account: AccountData) -> OverageReport | None:
        """
        Report one account's unreported overage.

        Raises:
            BillingReportError: If the Stripe API call fails
        """
        report = self.build_report(account)
        if report is None:
            return None

        try:
            logger.info(
                "reporting_overage",
                account_id=str(report.account_id),
                tokens=report.tokens,
                identifier=report.identifier,
            )
            stripe.billing.MeterEvent.create(
                event_name=self.meter_event_name,
                identifier=report.identifier,
                payload={
                    "stripe_customer_id": report.customer_id,
                    "value": str(report.tokens),
                },
            )
        except stripe.StripeError as exc:
            metrics.overage_reports_total.labels(success="False").inc()
            logger.error(
                "overage_report_failed",
                account_id=str(report.account_id),
                error=str(exc),
            )
            raise BillingReportError(report.account_id, str(exc)) from exc

        await self.ledger.mark_overage_reported(report.account_id, report.tokens)
        metrics.overage_reports_total.labels(success="True").inc()
        return report

    async def report_all(self) -> list[OverageReport]:
        """Report every account with outstanding overage; failures are logged and skipped."""
        reported: list[OverageReport] = []
        for account in await self.ledger.accounts_with_overage():
            try:
                report = await self.report(account)
            except BillingReportError:
                continue
            if report is not None:
                reported.append(report)
        logger.info("overage_reporting_complete", reported=len(reported))
        return reported
