"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Union
from uuid import UUID

from gateway.models.api import (
    AdmissionEventType,
    RequestType,
    SubscriptionStatus,
    SubscriptionTier,
)


# ============================================================================
# Identity and Accounts
# ============================================================================


@dataclass(frozen=True)
class VerifiedIdentity:
    """Claims extracted from a verified bearer token."""

    subject_id: str
    email: str | None = None
    display_name: str | None = None
    claims: dict[str, Any] = field(default_factory=dict, compare=False)

    def __post_init__(self) -> None:
        if not self.subject_id:
            raise ValueError("subject_id cannot be empty")


@dataclass(frozen=True)
class AccountData:
    """Immutable account data snapshot."""

    account_id: UUID
    external_id: str
    email: str | None
    display_name: str | None
    subscription_tier: SubscriptionTier
    subscription_status: SubscriptionStatus
    token_limit: int
    tokens_used_current_period: int
    period_start_date: datetime
    created_at: datetime
    updated_at: datetime
    stripe_customer_id: str | None = None
    overage_tokens_reported: int = 0
    last_active_at: datetime | None = None

    @property
    def unreported_overage(self) -> int:
        """Tokens over the allowance not yet sent to the billing processor."""
        overage = max(0, self.tokens_used_current_period - self.token_limit)
        return max(0, overage - self.overage_tokens_reported)


@dataclass(frozen=True)
class QuotaSnapshot:
    """Monthly token consumption for one account at a point in time."""

    used: int
    limit: int
    tier: SubscriptionTier

    def __post_init__(self) -> None:
        if self.used < 0:
            raise ValueError(f"Token usage cannot be negative: {self.used}")

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)

    @property
    def percent_used(self) -> float:
        if self.limit <= 0:
            return 100.0
        return round(self.used / self.limit * 100, 2)

    @property
    def exhausted(self) -> bool:
        return self.used >= self.limit


# ============================================================================
# Admission
# ============================================================================


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of one rate window check."""

    allowed: bool
    remaining: int
    retry_after: int = 0
    degraded: bool = False


@dataclass(frozen=True)
class Allowed:
    """Request admitted; carries what the relay and headers need."""

    account: AccountData
    rate_remaining: int
    quota: QuotaSnapshot | None


@dataclass(frozen=True)
class Unauthenticated:
    """Bearer token missing or not verifiable."""

    reason: str
    expired: bool = False


@dataclass(frozen=True)
class RateLimited:
    """A request window is exhausted."""

    retry_after: int


@dataclass(frozen=True)
class QuotaExceeded:
    """Free-tier monthly allowance is used up."""

    used: int
    limit: int
    tier: SubscriptionTier


AdmissionDecision = Union[Allowed, Unauthenticated, RateLimited, QuotaExceeded]


@dataclass(frozen=True)
class AdmissionEventIntent:
    """Audit row for an admission outcome."""

    account_id: UUID
    event_type: AdmissionEventType
    ip_address: str | None = None


# ============================================================================
# Usage
# ============================================================================


@dataclass(frozen=True)
class TokenUsage:
    """Token counts reported by the upstream model for one call."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0

    def __post_init__(self) -> None:
        for name in ("input_tokens", "output_tokens", "cache_read_tokens", "cache_creation_tokens"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} cannot be negative")

    @property
    def total_tokens(self) -> int:
        """Billable total: input plus output."""
        return self.input_tokens + self.output_tokens


class UsageAccumulator:
    """
    Merges usage fragments from the upstream event stream.

    The opening event carries input and cache counts, the closing delta
    carries output. A field present in a later fragment replaces the held
    value; absent (None) fields keep it.
    """

    def __init__(self) -> None:
        self.input_tokens = 0
        self.output_tokens = 0
        self.cache_read_tokens = 0
        self.cache_creation_tokens = 0
        self.text_parts: list[str] = []

    def merge(
        self,
        input_tokens: int | None = None,
        output_tokens: int | None = None,
        cache_read_tokens: int | None = None,
        cache_creation_tokens: int | None = None,
    ) -> None:
        if input_tokens is not None:
            self.input_tokens = input_tokens
        if output_tokens is not None:
            self.output_tokens = output_tokens
        if cache_read_tokens is not None:
            self.cache_read_tokens = cache_read_tokens
        if cache_creation_tokens is not None:
            self.cache_creation_tokens = cache_creation_tokens

    def append_text(self, text: str) -> None:
        self.text_parts.append(text)

    @property
    def text(self) -> str:
        return "".join(self.text_parts)

    def snapshot(self) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            cache_read_tokens=self.cache_read_tokens,
            cache_creation_tokens=self.cache_creation_tokens,
        )


@dataclass(frozen=True)
class UsageIntent:
    """Usage record before persistence - immutable intent."""

    account_id: UUID
    usage: TokenUsage
    model: str
    request_type: RequestType
    success: bool
    conversation_id: str | None = None
    latency_ms: int | None = None
    error_code: str | None = None

    def __post_init__(self) -> None:
        if not self.model:
            raise ValueError("model cannot be empty")
        if self.success and self.error_code:
            raise ValueError("Successful usage cannot carry an error code")


@dataclass(frozen=True)
class UsageRecordData:
    """Immutable usage record after persistence."""

    record_id: UUID
    account_id: UUID
    conversation_id: str | None
    usage: TokenUsage
    model: str
    request_type: RequestType
    success: bool
    latency_ms: int | None
    error_code: str | None
    estimated_cost_usd: Decimal
    billing_period: date
    created_at: datetime
    tokens_remaining: int | None = None


@dataclass(frozen=True)
class UsageSummary:
    """Aggregate of successful usage for one account and billing period."""

    account_id: UUID
    billing_period: date
    request_count: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0
    estimated_cost_usd: Decimal = Decimal("0")
    avg_latency_ms: float | None = None

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @property
    def cache_hit_rate(self) -> float:
        """Share of prompt tokens served from cache."""
        prompt_tokens = self.input_tokens + self.cache_read_tokens
        if prompt_tokens == 0:
            return 0.0
        return round(self.cache_read_tokens / prompt_tokens, 4)


@dataclass(frozen=True)
class OverageReport:
    """Overage tokens reported to the billing processor for one account."""

    account_id: UUID
    customer_id: str
    tokens: int
    identifier: str


# ============================================================================
# Streaming
# ============================================================================


@dataclass(frozen=True)
class RelayConfig:
    """Immutable per-process relay configuration, built once at startup."""

    system_prompt: str
    text_model: str
    vision_model: str
    default_max_tokens: int
    temperature: float
    flush_grace_seconds: float = 5.0


@dataclass(frozen=True)
class StreamEvent:
    """One Server-Sent Event sent to the client."""

    event: str
    data: dict[str, Any]

    def is_terminal(self) -> bool:
        return self.event in ("stream_complete", "stream_error")


@dataclass(frozen=True)
class MessageStarted:
    """Upstream opened a message; carries prompt-side usage."""

    message_id: str
    input_tokens: int | None = None
    cache_read_tokens: int | None = None
    cache_creation_tokens: int | None = None


@dataclass(frozen=True)
class TextDelta:
    """A fragment of generated text."""

    text: str


@dataclass(frozen=True)
class MessageDelta:
    """Late message metadata; carries output usage."""

    output_tokens: int | None = None
    input_tokens: int | None = None
    cache_read_tokens: int | None = None
    cache_creation_tokens: int | None = None
    stop_reason: str | None = None


@dataclass(frozen=True)
class MessageStopped:
    """Upstream finished the message."""


UpstreamEvent = Union[MessageStarted, TextDelta, MessageDelta, MessageStopped]
