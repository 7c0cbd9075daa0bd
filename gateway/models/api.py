"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from enum import Enum
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class SubscriptionTier(str, Enum):
    """Subscription tier enumeration."""

    FREE = "free"
    PRO = "pro"
    ENTERPRISE = "enterprise"

    @property
    def is_paid(self) -> bool:
        return self is not SubscriptionTier.FREE


class SubscriptionStatus(str, Enum):
    """Subscription status enumeration."""

    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    TRIALING = "trialing"


class RequestType(str, Enum):
    """Classification of a metered upstream call."""

    CHAT = "chat"
    VISION = "vision"
    MULTI_CONTEXT = "multi_context"


class AdmissionEventType(str, Enum):
    """Admission outcomes recorded for abuse detection."""

    REQUEST = "request"
    RATE_LIMITED = "rate_limited"
    QUOTA_EXCEEDED = "quota_exceeded"


class ErrorCode(str, Enum):
    """Error codes surfaced to clients."""

    UNAUTHORIZED = "UNAUTHORIZED"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    RATE_LIMITED = "RATE_LIMITED"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    UPSTREAM_RATE_LIMITED = "UPSTREAM_RATE_LIMITED"
    UPSTREAM_OVERLOADED = "UPSTREAM_OVERLOADED"
    UPSTREAM_ERROR = "UPSTREAM_ERROR"
    CLIENT_DISCONNECTED = "CLIENT_DISCONNECTED"


class _CamelModel(BaseModel):
    """Accepts camelCase aliases on input, also accepts field names."""

    model_config = ConfigDict(populate_by_name=True)


# ============================================================================
# Chat Stream Models
# ============================================================================


class ConversationTurn(_CamelModel):
    """A prior turn of the conversation."""

    role: Literal["user", "assistant"]
    content: str


class ImageAttachment(_CamelModel):
    """Base64 image sent with the current message."""

    data: str = Field(..., min_length=1)
    media_type: str = Field(..., alias="mediaType")
    label: str | None = Field(None, max_length=200)


class StreamOptions(_CamelModel):
    """Generation parameters."""

    max_tokens: int | None = Field(None, ge=1, le=8192, alias="maxTokens")


class ChatStreamRequest(_CamelModel):
    """POST /api/v1/chat/stream request body."""

    message: str = Field(..., min_length=1)
    conversation_id: UUID | None = Field(None, alias="conversationId")
    conversation_history: list[ConversationTurn] = Field(
        default_factory=list, alias="conversationHistory"
    )
    images: list[ImageAttachment] = Field(default_factory=list)
    options: StreamOptions = Field(default_factory=StreamOptions)


# ============================================================================
# Error Models
# ============================================================================


class ErrorDetails(_CamelModel):
    """Structured details for admission failures."""

    retry_after: int | None = Field(None, serialization_alias="retryAfter")
    tokens_used: int | None = Field(None, serialization_alias="tokensUsed")
    token_limit: int | None = Field(None, serialization_alias="tokenLimit")
    tier: str | None = None


class ErrorBody(_CamelModel):
    """Error payload."""

    code: ErrorCode
    message: str
    details: ErrorDetails | None = None
    request_id: str | None = Field(None, serialization_alias="requestId")
    timestamp: str


class ErrorResponse(BaseModel):
    """Envelope for all non-200 JSON responses from the gateway."""

    error: ErrorBody


# ============================================================================
# Usage Models
# ============================================================================


class UsagePayload(BaseModel):
    """Token usage as reported to clients (snake_case, as sent upstream)."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0


class CurrentPeriodUsage(_CamelModel):
    """Usage for the current billing period."""

    start_date: str = Field(..., serialization_alias="startDate")
    input_tokens_used: int = Field(..., serialization_alias="inputTokensUsed")
    output_tokens_used: int = Field(..., serialization_alias="outputTokensUsed")
    total_tokens_used: int = Field(..., serialization_alias="totalTokensUsed")
    cached_tokens: int = Field(..., serialization_alias="cachedTokens")
    token_limit: int = Field(..., serialization_alias="tokenLimit")
    tokens_remaining: int = Field(..., serialization_alias="tokensRemaining")
    percent_used: float = Field(..., serialization_alias="percentUsed")
    request_count: int = Field(..., serialization_alias="requestCount")
    estimated_cost_usd: float = Field(..., serialization_alias="estimatedCostUsd")


class CachePerformance(_CamelModel):
    """Prompt cache effectiveness for the period."""

    hit_rate: float = Field(..., serialization_alias="hitRate")
    estimated_savings: float = Field(..., serialization_alias="estimatedSavings")


class CurrentUsageResponse(_CamelModel):
    """GET /api/v1/usage/current response."""

    account_id: UUID = Field(..., serialization_alias="accountId")
    tier: SubscriptionTier
    current_period: CurrentPeriodUsage = Field(..., serialization_alias="currentPeriod")
    cache_performance: CachePerformance = Field(..., serialization_alias="cachePerformance")


class UsageHistoryItem(_CamelModel):
    """Single usage record in history response."""

    id: UUID
    conversation_id: str | None = Field(None, serialization_alias="conversationId")
    input_tokens: int = Field(..., serialization_alias="inputTokens")
    output_tokens: int = Field(..., serialization_alias="outputTokens")
    total_tokens: int = Field(..., serialization_alias="totalTokens")
    cache_read_tokens: int = Field(..., serialization_alias="cacheReadTokens")
    cache_creation_tokens: int = Field(..., serialization_alias="cacheCreationTokens")
    model: str
    request_type: RequestType = Field(..., serialization_alias="requestType")
    success: bool
    latency_ms: int | None = Field(None, serialization_alias="latencyMs")
    error_code: str | None = Field(None, serialization_alias="errorCode")
    estimated_cost_usd: float | None = Field(None, serialization_alias="estimatedCostUsd")
    timestamp: str


class UsageHistoryResponse(_CamelModel):
    """GET /api/v1/usage/history response."""

    account_id: UUID = Field(..., serialization_alias="accountId")
    history: list[UsageHistoryItem]


# ============================================================================
# Health Models
# ============================================================================


class HealthResponse(BaseModel):
    """GET /api/v1/health response."""

    status: str
    version: str
    timestamp: str


class DependencyStatus(BaseModel):
    """Status of one external dependency."""

    status: str
    error: str | None = None


class StatusResponse(BaseModel):
    """GET /api/v1/status response."""

    status: str
    version: str
    database: DependencyStatus
    redis: DependencyStatus
