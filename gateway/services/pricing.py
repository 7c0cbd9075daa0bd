"""
Pricing - Cost estimation for metered upstream calls.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from gateway.config import Settings
from gateway.models.domain import TokenUsage

MILLION = Decimal(1_000_000)
COST_QUANTUM = Decimal("0.000001")


@dataclass(frozen=True)
class PriceTable:
    """USD price per million tokens for each token kind."""

    input_per_million: Decimal
    output_per_million: Decimal
    cache_creation_per_million: Decimal
    cache_read_per_million: Decimal

    @classmethod
    def from_settings(cls, settings: Settings) -> "PriceTable":
        # str() first so 0.3 becomes Decimal("0.3"), not its binary expansion
        return cls(
            input_per_million=Decimal(str(settings.price_input_per_million)),
            output_per_million=Decimal(str(settings.price_output_per_million)),
            cache_creation_per_million=Decimal(str(settings.price_cache_creation_per_million)),
            cache_read_per_million=Decimal(str(settings.price_cache_read_per_million)),
        )

    def estimate(self, usage: TokenUsage) -> Decimal:
        """Estimated USD cost of one call, rounded to six places."""
        cost = (
            usage.input_tokens * self.input_per_million
            + usage.output_tokens * self.output_per_million
            + usage.cache_creation_tokens * self.cache_creation_per_million
            + usage.cache_read_tokens * self.cache_read_per_million
        ) / MILLION
        return cost.quantize(COST_QUANTUM, rounding=ROUND_HALF_UP)

    def cache_savings(self, cache_read_tokens: int) -> Decimal:
        """What cached prompt tokens would have cost at the full input rate, minus what they did."""
        delta = self.input_per_million - self.cache_read_per_million
        return (cache_read_tokens * delta / MILLION).quantize(
            Decimal("0.01"), rounding=ROUND_HALF_UP
        )
