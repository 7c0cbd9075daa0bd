"""
Usage Ledger - Durable token accounting with write verification.

NO DICTIONARIES - All operations use strongly typed domain models.

Each metered upstream call becomes one append-only usage_records row. The
account's running total is advanced in the same transaction by a server-side
increment, so concurrent writers never lose tokens.
"""

import time
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from datetime import UTC, date, datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from gateway.config import Settings
from gateway.db.models import Account, AdmissionEvent, UsageRecord
from gateway.exceptions import (
    AccountNotFoundError,
    LedgerWriteError,
    WriteVerificationError,
)
from gateway.models.api import RequestType, SubscriptionStatus, SubscriptionTier
from gateway.models.domain import (
    AccountData,
    AdmissionEventIntent,
    QuotaSnapshot,
    TokenUsage,
    UsageIntent,
    UsageRecordData,
    UsageSummary,
    VerifiedIdentity,
)
from gateway.observability.metrics import metrics
from gateway.observability.tracing import trace_operation
from gateway.services.pricing import PriceTable

logger = get_logger(__name__)

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def billing_period_for(moment: datetime) -> date:
    """First day of the calendar month containing moment."""
    return moment.date().replace(day=1)


class UsageLedger:
    """
    Usage ledger with write verification.

    Write operations follow the pattern:
    1. Execute write
    2. Flush to database
    3. Read back and verify
    4. Commit

    The ledger opens its own sessions so it can be used after the HTTP
    response has started streaming.
    """

    def __init__(
        self,
        write_session_factory: SessionFactory,
        read_session_factory: SessionFactory,
        settings: Settings,
    ) -> None:
        self.write_session_factory = write_session_factory
        self.read_session_factory = read_session_factory
        self.settings = settings
        self.prices = PriceTable.from_settings(settings)

    # ========================================================================
    # Metering
    # ========================================================================

    async def record_usage(self, intent: UsageIntent) -> UsageRecordData:
        """
        Append a usage record and advance the account's period total.

        Failed calls are recorded with whatever partial usage was observed;
        those tokens were consumed upstream and count against the quota.

        Raises:
            LedgerWriteError: the transaction could not be committed
        """
        started = time.perf_counter()
        usage = intent.usage
        now = _utc_now()
        cost = self.prices.estimate(usage)

        with trace_operation(
            "ledger.record_usage",
            account_id=intent.account_id,
            total_tokens=usage.total_tokens,
            success=intent.success,
        ):
            async with self.write_session_factory() as session:
                try:
                    record = UsageRecord(
                        id=uuid4(),
                        account_id=intent.account_id,
                        conversation_id=intent.conversation_id,
                        input_tokens=usage.input_tokens,
                        output_tokens=usage.output_tokens,
                        total_tokens=usage.total_tokens,
                        cache_read_tokens=usage.cache_read_tokens,
                        cache_creation_tokens=usage.cache_creation_tokens,
                        model=intent.model,
                        request_type=intent.request_type,
                        success=intent.success,
                        latency_ms=intent.latency_ms,
                        error_code=intent.error_code,
                        estimated_cost_usd=cost,
                        billing_period=billing_period_for(now),
                        created_at=now,
                    )
                    session.add(record)
                    await session.flush()

                    verified = await session.get(UsageRecord, record.id)
                    if verified is None:
                        raise WriteVerificationError(f"Usage record {record.id} not found after insert")

                    result = await session.execute(
                        update(Account)
                        .where(Account.id == intent.account_id)
                        .values(
                            tokens_used_current_period=Account.tokens_used_current_period
                            + usage.total_tokens,
                            last_active_at=now,
                        )
                        .returning(Account.tokens_used_current_period, Account.token_limit)
                        .execution_options(synchronize_session=False)
                    )
                    row = result.one_or_none()
                    if row is None:
                        raise AccountNotFoundError(intent.account_id)

                    await session.commit()
                except (SQLAlchemyError, OSError, WriteVerificationError, AccountNotFoundError) as e:
                    await session.rollback()
                    metrics.record_ledger_write(False, time.perf_counter() - started)
                    logger.error(
                        "ledger_write_failed",
                        account_id=str(intent.account_id),
                        total_tokens=usage.total_tokens,
                        success=intent.success,
                        error_code=intent.error_code,
                        error=str(e),
                    )
                    raise LedgerWriteError(intent.account_id, str(e)) from e

        used, limit = row
        metrics.record_ledger_write(True, time.perf_counter() - started)
        metrics.record_tokens(
            usage.input_tokens,
            usage.output_tokens,
            usage.cache_read_tokens,
            usage.cache_creation_tokens,
        )
        logger.info(
            "usage_recorded",
            account_id=str(intent.account_id),
            record_id=str(record.id),
            total_tokens=usage.total_tokens,
            cost_usd=str(cost),
            success=intent.success,
        )

        return UsageRecordData(
            record_id=record.id,
            account_id=intent.account_id,
            conversation_id=intent.conversation_id,
            usage=usage,
            model=intent.model,
            request_type=intent.request_type,
            success=intent.success,
            latency_ms=intent.latency_ms,
            error_code=intent.error_code,
            estimated_cost_usd=cost,
            billing_period=record.billing_period,
            created_at=now,
            tokens_remaining=max(0, limit - used),
        )

    async def get_quota(self, account_id: UUID) -> QuotaSnapshot:
        """
        Current period consumption for an account.

        Raises:
            AccountNotFoundError: Account doesn't exist
        """
        async with self.read_session_factory() as session:
            stmt = select(
                Account.tokens_used_current_period,
                Account.token_limit,
                Account.subscription_tier,
            ).where(Account.id == account_id)
            result = await session.execute(stmt)
            row = result.one_or_none()

        if row is None:
            raise AccountNotFoundError(account_id)

        used, limit, tier = row
        return QuotaSnapshot(used=used, limit=limit, tier=SubscriptionTier(tier))

    # ========================================================================
    # Accounts
    # ========================================================================

    async def get_or_create_account(self, identity: VerifiedIdentity) -> AccountData:
        """
        Get the account for a verified subject, creating a free account on first sight.

        Concurrent first requests race on the unique external_id; the loser
        rolls back and re-reads the winner's row.
        """
        async with self.write_session_factory() as session:
            account = await self._find_account_by_external_id(session, identity.subject_id)
            if account is not None:
                return self._account_to_domain(account)

            limits = self.settings.tier_limits(SubscriptionTier.FREE.value)
            now = _utc_now()
            new_account = Account(
                id=uuid4(),
                external_id=identity.subject_id,
                email=identity.email,
                display_name=identity.display_name,
                subscription_tier=SubscriptionTier.FREE.value,
                subscription_status=SubscriptionStatus.ACTIVE.value,
                token_limit=limits.monthly_tokens,
                tokens_used_current_period=0,
                period_start_date=now,
                overage_tokens_reported=0,
                created_at=now,
                updated_at=now,
            )
            session.add(new_account)

            try:
                await session.flush()
            except IntegrityError:
                # Race condition - account created by another request
                await session.rollback()
                account = await self._find_account_by_external_id(session, identity.subject_id)
                if account is None:
                    raise WriteVerificationError("Account creation failed due to race condition")
                return self._account_to_domain(account)

            verified_account = await session.get(Account, new_account.id)
            if verified_account is None:
                raise WriteVerificationError(f"Account {new_account.id} not found after insert")

            await session.commit()

        metrics.accounts_created_total.inc()
        logger.info(
            "account_created",
            account_id=str(verified_account.id),
            external_id=identity.subject_id,
        )
        return self._account_to_domain(verified_account)

    async def touch_last_seen(self, account_id: UUID) -> bool:
        """Best-effort update of last_active_at. Returns False when the write failed."""
        async with self.write_session_factory() as session:
            try:
                await session.execute(
                    update(Account)
                    .where(Account.id == account_id)
                    .values(last_active_at=_utc_now())
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
            except (SQLAlchemyError, OSError) as e:
                await session.rollback()
                logger.warning("touch_last_seen_failed", account_id=str(account_id), error=str(e))
                return False
        return True

    async def reset_period(self, account_id: UUID) -> AccountData:
        """
        Start a new billing period for an account.

        Zeroes the period total and re-derives the token limit from the
        account's current tier.

        Raises:
            AccountNotFoundError: Account doesn't exist
        """
        async with self.write_session_factory() as session:
            stmt = select(Account).where(Account.id == account_id).with_for_update()
            result = await session.execute(stmt)
            account = result.scalar_one_or_none()
            if account is None:
                raise AccountNotFoundError(account_id)

            limits = self.settings.tier_limits(account.subscription_tier)
            previous_used = account.tokens_used_current_period
            account.tokens_used_current_period = 0
            account.period_start_date = _utc_now()
            account.token_limit = limits.monthly_tokens
            account.overage_tokens_reported = 0
            await session.flush()

            verified_account = await session.get(Account, account_id)
            if verified_account is None:
                raise WriteVerificationError(f"Account {account_id} disappeared after reset")
            if verified_account.tokens_used_current_period != 0:
                raise WriteVerificationError(
                    f"Period total not reset: {verified_account.tokens_used_current_period}"
                )

            await session.commit()

        logger.info(
            "period_reset",
            account_id=str(account_id),
            previous_used=previous_used,
            token_limit=limits.monthly_tokens,
        )
        return self._account_to_domain(verified_account)

    async def mark_overage_reported(self, account_id: UUID, tokens: int) -> None:
        """Advance the reported-overage watermark after a successful report."""
        async with self.write_session_factory() as session:
            await session.execute(
                update(Account)
                .where(Account.id == account_id)
                .values(
                    overage_tokens_reported=Account.overage_tokens_reported + tokens,
                    last_usage_reported_at=_utc_now(),
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    async def accounts_due_for_reset(self, now: datetime) -> list[AccountData]:
        """Accounts whose current period began before this calendar month."""
        period_start = datetime.combine(billing_period_for(now), datetime.min.time(), tzinfo=UTC)
        async with self.read_session_factory() as session:
            stmt = select(Account).where(Account.period_start_date < period_start)
            result = await session.execute(stmt)
            return [self._account_to_domain(a) for a in result.scalars().all()]

    async def accounts_with_overage(self) -> list[AccountData]:
        """Paid accounts with a billing customer and unreported usage beyond their allowance."""
        async with self.read_session_factory() as session:
            stmt = select(Account).where(
                Account.subscription_tier != SubscriptionTier.FREE.value,
                Account.stripe_customer_id.isnot(None),
                Account.tokens_used_current_period
                > Account.token_limit + Account.overage_tokens_reported,
            )
            result = await session.execute(stmt)
            return [self._account_to_domain(a) for a in result.scalars().all()]

    # ========================================================================
    # Reporting
    # ========================================================================

    async def get_usage_summary(
        self, account_id: UUID, period: date | None = None
    ) -> UsageSummary:
        """Aggregate successful usage for one billing period (default: current)."""
        billing_period = period or billing_period_for(_utc_now())
        stmt = select(
            func.count(UsageRecord.id),
            func.coalesce(func.sum(UsageRecord.input_tokens), 0),
            func.coalesce(func.sum(UsageRecord.output_tokens), 0),
            func.coalesce(func.sum(UsageRecord.cache_read_tokens), 0),
            func.coalesce(func.sum(UsageRecord.cache_creation_tokens), 0),
            func.coalesce(func.sum(UsageRecord.estimated_cost_usd), 0),
            func.avg(UsageRecord.latency_ms),
        ).where(
            UsageRecord.account_id == account_id,
            UsageRecord.billing_period == billing_period,
            UsageRecord.success.is_(True),
        )
        async with self.read_session_factory() as session:
            result = await session.execute(stmt)
            row = result.one()

        count, input_tokens, output_tokens, cache_read, cache_creation, cost, avg_latency = row
        return UsageSummary(
            account_id=account_id,
            billing_period=billing_period,
            request_count=int(count),
            input_tokens=int(input_tokens),
            output_tokens=int(output_tokens),
            cache_read_tokens=int(cache_read),
            cache_creation_tokens=int(cache_creation),
            estimated_cost_usd=Decimal(cost),
            avg_latency_ms=float(avg_latency) if avg_latency is not None else None,
        )

    async def get_usage_history(self, account_id: UUID, limit: int = 30) -> list[UsageRecordData]:
        """Most recent usage records, newest first."""
        stmt = (
            select(UsageRecord)
            .where(UsageRecord.account_id == account_id)
            .order_by(UsageRecord.created_at.desc())
            .limit(limit)
        )
        async with self.read_session_factory() as session:
            result = await session.execute(stmt)
            records = result.scalars().all()

        return [self._record_to_domain(r) for r in records]

    async def record_admission_event(self, intent: AdmissionEventIntent) -> None:
        """Best-effort audit row; failures are logged and never raised."""
        async with self.write_session_factory() as session:
            try:
                session.add(
                    AdmissionEvent(
                        account_id=intent.account_id,
                        event_type=intent.event_type,
                        ip_address=intent.ip_address,
                    )
                )
                await session.commit()
            except (SQLAlchemyError, OSError) as e:
                await session.rollback()
                metrics.record_error(type(e).__name__, "record_admission_event")
                logger.warning(
                    "admission_event_write_failed",
                    account_id=str(intent.account_id),
                    event_type=intent.event_type.value,
                    error=str(e),
                )

    async def ping(self) -> bool:
        async with self.read_session_factory() as session:
            await session.execute(select(1))
        return True

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _find_account_by_external_id(
        self, session: AsyncSession, external_id: str
    ) -> Account | None:
        stmt = select(Account).where(Account.external_id == external_id)
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    def _account_to_domain(self, account: Account) -> AccountData:
        """Convert ORM account to domain model."""
        return AccountData(
            account_id=account.id,
            external_id=account.external_id,
            email=account.email,
            display_name=account.display_name,
            subscription_tier=SubscriptionTier(account.subscription_tier),
            subscription_status=SubscriptionStatus(account.subscription_status),
            token_limit=account.token_limit,
            tokens_used_current_period=account.tokens_used_current_period,
            period_start_date=account.period_start_date,
            created_at=account.created_at,
            updated_at=account.updated_at,
            stripe_customer_id=account.stripe_customer_id,
            overage_tokens_reported=account.overage_tokens_reported,
            last_active_at=account.last_active_at,
        )

    def _record_to_domain(self, record: UsageRecord) -> UsageRecordData:
        return UsageRecordData(
            record_id=record.id,
            account_id=record.account_id,
            conversation_id=record.conversation_id,
            usage=TokenUsage(
                input_tokens=record.input_tokens,
                output_tokens=record.output_tokens,
                cache_read_tokens=record.cache_read_tokens,
                cache_creation_tokens=record.cache_creation_tokens,
            ),
            model=record.model,
            request_type=RequestType(record.request_type),
            success=record.success,
            latency_ms=record.latency_ms,
            error_code=record.error_code,
            estimated_cost_usd=Decimal(record.estimated_cost_usd),
            billing_period=record.billing_period,
            created_at=record.created_at,
        )
