"""
Admission Controller - identity, then request rate, then monthly quota.

Returns a decision value rather than raising, so the route can translate
each outcome into its own response without a partial stream.
"""

import asyncio
import time
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from structlog import get_logger

from gateway.exceptions import (
    AccountNotFoundError,
    AuthenticationError,
    TokenExpiredError,
    WriteVerificationError,
)
from gateway.models.api import AdmissionEventType
from gateway.models.domain import (
    AccountData,
    AdmissionDecision,
    AdmissionEventIntent,
    Allowed,
    QuotaExceeded,
    QuotaSnapshot,
    RateLimited,
    Unauthenticated,
)
from gateway.observability.metrics import metrics
from gateway.services.identity import IdentityVerifier
from gateway.services.ledger import UsageLedger
from gateway.services.rate_limiter import RateLimiter

logger = get_logger(__name__)


class AdmissionController:
    """
    Decides whether a request may consume upstream capacity.

    Failure policy:
    - identity provider unreachable: Unauthenticated (fail closed)
    - counter store unreachable: allowed (fail open, in RateLimiter)
    - ledger unreachable on the quota read: allowed (fail open)
    """

    def __init__(
        self,
        verifier: IdentityVerifier,
        rate_limiter: RateLimiter,
        ledger: UsageLedger,
    ) -> None:
        self.verifier = verifier
        self.rate_limiter = rate_limiter
        self.ledger = ledger
        self._background: set[asyncio.Task[object]] = set()

    async def admit(self, token: str, client_ip: str | None = None) -> AdmissionDecision:
        started = time.perf_counter()
        decision = await self._decide(token, client_ip)
        tier = decision.account.subscription_tier.value if isinstance(decision, Allowed) else None
        if isinstance(decision, QuotaExceeded):
            tier = decision.tier.value
        metrics.record_admission(
            type(decision).__name__.lower(), tier, time.perf_counter() - started
        )
        return decision

    async def authenticate(self, token: str) -> AccountData:
        """
        Verify a token and resolve its account.

        Raises:
            AuthenticationError: token rejected or account could not be resolved
        """
        identity = await self.verifier.verify(token)
        try:
            return await self.ledger.get_or_create_account(identity)
        except (SQLAlchemyError, OSError, WriteVerificationError) as e:
            logger.error("account_resolution_failed", subject=identity.subject_id, error=str(e))
            raise AuthenticationError("account unavailable") from e

    async def _decide(self, token: str, client_ip: str | None) -> AdmissionDecision:
        try:
            account = await self.authenticate(token)
        except AuthenticationError as e:
            logger.info("admission_unauthenticated", reason=e.reason)
            return Unauthenticated(reason=e.reason, expired=isinstance(e, TokenExpiredError))

        rate = await self.rate_limiter.check(account.account_id, account.subscription_tier.value)
        if not rate.allowed:
            logger.info(
                "admission_rate_limited",
                account_id=str(account.account_id),
                retry_after=rate.retry_after,
            )
            await self.ledger.record_admission_event(
                AdmissionEventIntent(
                    account.account_id, AdmissionEventType.RATE_LIMITED, client_ip
                )
            )
            return RateLimited(retry_after=rate.retry_after)

        quota = await self._read_quota(account)
        if quota is not None and quota.exhausted and not quota.tier.is_paid:
            logger.info(
                "admission_quota_exceeded",
                account_id=str(account.account_id),
                used=quota.used,
                limit=quota.limit,
            )
            await self.ledger.record_admission_event(
                AdmissionEventIntent(
                    account.account_id, AdmissionEventType.QUOTA_EXCEEDED, client_ip
                )
            )
            return QuotaExceeded(used=quota.used, limit=quota.limit, tier=quota.tier)

        self._record_in_background(account.account_id, client_ip)
        return Allowed(account=account, rate_remaining=rate.remaining, quota=quota)

    async def _read_quota(self, account: AccountData) -> QuotaSnapshot | None:
        try:
            return await self.ledger.get_quota(account.account_id)
        except (SQLAlchemyError, OSError, AccountNotFoundError) as e:
            logger.warning(
                "quota_read_fail_open", account_id=str(account.account_id), error=str(e)
            )
            metrics.record_fail_open("ledger")
            return None

    def _record_in_background(self, account_id: UUID, client_ip: str | None) -> None:
        """Audit the request and refresh last-seen without delaying admission."""
        for coro in (
            self.ledger.record_admission_event(
                AdmissionEventIntent(account_id, AdmissionEventType.REQUEST, client_ip)
            ),
            self.ledger.touch_last_seen(account_id),
        ):
            task = asyncio.create_task(coro)
            self._background.add(task)
            task.add_done_callback(self._background.discard)

    async def drain(self) -> None:
        """Wait for pending audit writes (shutdown and tests)."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
