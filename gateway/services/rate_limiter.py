"""
Rate Limiter - Fixed per-minute and per-hour windows per account.

Keys:
    rl:{account_id}:min:{epoch // 60}     expires after 60s
    rl:{account_id}:hr:{epoch // 3600}    expires after 3600s
"""

import time
from collections.abc import Callable
from uuid import UUID

from structlog import get_logger

from gateway.config import Settings
from gateway.exceptions import CounterStoreUnavailableError
from gateway.models.domain import RateLimitResult
from gateway.observability.metrics import metrics
from gateway.services.counter_store import CounterKey, CounterStore

logger = get_logger(__name__)

MINUTE = 60
HOUR = 3600


def minute_key(account_id: UUID | str, now: float) -> str:
    return f"rl:{account_id}:min:{int(now) // MINUTE}"


def hour_key(account_id: UUID | str, now: float) -> str:
    return f"rl:{account_id}:hr:{int(now) // HOUR}"


def seconds_until_reset(now: float, window: int) -> int:
    """Seconds until the current window rolls over (always >= 1)."""
    return window - (int(now) % window)


class RateLimiter:
    """
    Tiered request-rate limiter over a shared CounterStore.

    Fails open: when the counter store is unreachable the request is
    allowed and the tier's minute ceiling is reported as remaining.
    """

    def __init__(
        self,
        store: CounterStore,
        settings: Settings,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock

    async def check(self, account_id: UUID, tier: str) -> RateLimitResult:
        """Count this request against both windows and decide."""
        limits = self.settings.tier_limits(tier)
        now = self.clock()

        try:
            minute_count, hour_count = await self.store.increment(
                CounterKey(minute_key(account_id, now), MINUTE),
                CounterKey(hour_key(account_id, now), HOUR),
            )
        except CounterStoreUnavailableError as e:
            logger.warning(
                "rate_limit_fail_open",
                account_id=str(account_id),
                tier=tier,
                reason=e.message,
            )
            metrics.record_fail_open("counter_store")
            return RateLimitResult(allowed=True, remaining=limits.per_minute, degraded=True)

        if minute_count > limits.per_minute:
            return RateLimitResult(
                allowed=False, remaining=0, retry_after=seconds_until_reset(now, MINUTE)
            )

        if hour_count > limits.per_hour:
            return RateLimitResult(
                allowed=False, remaining=0, retry_after=seconds_until_reset(now, HOUR)
            )

        remaining = min(limits.per_minute - minute_count, limits.per_hour - hour_count)
        return RateLimitResult(allowed=True, remaining=max(0, remaining))
