"""
Counter Store - Shared expiring counters backed by Redis.

Counters are the only cross-replica state used for rate limiting. Every
increment pairs INCR with EXPIRE inside one MULTI/EXEC pipeline so concurrent
replicas never lose an increment and a key never outlives its window.
"""

from dataclasses import dataclass

from redis.asyncio import Redis
from redis.exceptions import RedisError
from structlog import get_logger

from gateway.exceptions import CounterStoreUnavailableError

logger = get_logger(__name__)


@dataclass(frozen=True)
class CounterKey:
    """A counter key and the window length it expires with."""

    key: str
    ttl_seconds: int


class CounterStore:
    """Atomic expiring counters on a redis.asyncio client."""

    def __init__(self, client: Redis | None) -> None:
        self.client = client

    @property
    def available(self) -> bool:
        return self.client is not None

    async def increment(self, *keys: CounterKey) -> list[int]:
        """
        Increment each key by one and (re)arm its expiry in a single transaction.

        Returns the post-increment counts in key order.

        Raises:
            CounterStoreUnavailableError: no client configured or Redis failed
        """
        if self.client is None:
            raise CounterStoreUnavailableError("counter store not configured")

        try:
            async with self.client.pipeline(transaction=True) as pipe:
                for counter in keys:
                    pipe.incr(counter.key)
                    pipe.expire(counter.key, counter.ttl_seconds)
                results = await pipe.execute()
        except (RedisError, OSError) as e:
            logger.warning("counter_store_increment_failed", error=str(e))
            raise CounterStoreUnavailableError(str(e)) from e

        # INCR results sit at even positions, EXPIRE acks at odd positions
        return [int(results[i * 2] or 0) for i in range(len(keys))]

    async def ping(self) -> bool:
        if self.client is None:
            return False
        try:
            return bool(await self.client.ping())
        except (RedisError, OSError) as e:
            logger.warning("counter_store_ping_failed", error=str(e))
            return False

    async def close(self) -> None:
        if self.client is not None:
            await self.client.aclose()
