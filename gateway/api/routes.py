"""
API Routes - FastAPI endpoints for the streaming gateway.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

import json
from collections.abc import AsyncIterator
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, Query, Request, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sse_starlette.sse import EventSourceResponse
from structlog import get_logger

from gateway.api.dependencies import (
    bearer_token,
    get_admission_controller,
    get_client_ip,
    get_counter_store,
    get_current_account,
    get_ledger,
    get_relay,
    get_request_id,
    get_upstream_client,
)
from gateway.api.errors import error_response, unauthorized_response
from gateway.config import settings
from gateway.exceptions import AccountNotFoundError
from gateway.models.api import (
    CachePerformance,
    ChatStreamRequest,
    CurrentPeriodUsage,
    CurrentUsageResponse,
    DependencyStatus,
    ErrorCode,
    ErrorDetails,
    HealthResponse,
    StatusResponse,
    UsageHistoryItem,
    UsageHistoryResponse,
)
from gateway.models.domain import (
    AccountData,
    Allowed,
    QuotaExceeded,
    QuotaSnapshot,
    RateLimited,
    Unauthenticated,
)
from gateway.observability.logging import log_context
from gateway.services.admission import AdmissionController
from gateway.services.counter_store import CounterStore
from gateway.services.ledger import UsageLedger
from gateway.services.relay import StreamingRelay
from gateway.services.upstream import UpstreamModelClient

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1")


def _quota_remaining(admitted: Allowed) -> int:
    if admitted.quota is not None:
        return admitted.quota.remaining
    # Quota read failed open; fall back to what account resolution saw
    account = admitted.account
    return max(0, account.token_limit - account.tokens_used_current_period)


@router.post("/chat/stream", response_model=None)
async def chat_stream(
    body: ChatStreamRequest,
    request: Request,
    token: str = Depends(bearer_token),
    admission: AdmissionController = Depends(get_admission_controller),
    relay: StreamingRelay = Depends(get_relay),
    upstream: UpstreamModelClient = Depends(get_upstream_client),
    request_id: str = Depends(get_request_id),
) -> Response:
    """
    Stream a coaching response as Server-Sent Events.

    Request constraints are checked first, so a rejected body consumes no
    rate budget. Admission failures are plain JSON errors; once the stream
    has started every failure is reported in-band as `stream_error`.
    """
    upstream.validate(body)

    decision = await admission.admit(token, get_client_ip(request))

    if isinstance(decision, Unauthenticated):
        return unauthorized_response(decision.expired, request_id)

    if isinstance(decision, RateLimited):
        return error_response(
            status.HTTP_429_TOO_MANY_REQUESTS,
            ErrorCode.RATE_LIMITED,
            "Too many requests. Please slow down.",
            request_id,
            details=ErrorDetails(retry_after=decision.retry_after),
            headers={"Retry-After": str(decision.retry_after)},
        )

    if isinstance(decision, QuotaExceeded):
        return error_response(
            status.HTTP_429_TOO_MANY_REQUESTS,
            ErrorCode.QUOTA_EXCEEDED,
            "Monthly token limit reached. Upgrade to continue.",
            request_id,
            details=ErrorDetails(
                tokens_used=decision.used,
                token_limit=decision.limit,
                tier=decision.tier.value,
            ),
        )

    admitted: Allowed = decision
    account_id = str(admitted.account.account_id)

    async def event_source() -> AsyncIterator[dict[str, str]]:
        with log_context(request_id=request_id, account_id=account_id):
            async for event in relay.stream(admitted, body):
                yield {"event": event.event, "data": json.dumps(event.data)}

    logger.info("chat_stream_admitted", request_id=request_id, account_id=account_id)
    return EventSourceResponse(
        event_source(),
        headers={
            "X-Request-Id": request_id,
            "X-RateLimit-Remaining": str(admitted.rate_remaining),
            "X-Quota-Remaining": str(_quota_remaining(admitted)),
            "Cache-Control": "no-cache",
        },
    )


@router.get("/usage/current", response_model=CurrentUsageResponse, response_model_by_alias=True)
async def current_usage(
    account: AccountData = Depends(get_current_account),
    ledger: UsageLedger = Depends(get_ledger),
) -> CurrentUsageResponse:
    """
    Quota and aggregated usage for the caller's current billing period.

    Read operation - uses the read replica.
    """
    try:
        quota = await ledger.get_quota(account.account_id)
    except AccountNotFoundError:
        quota = QuotaSnapshot(
            used=account.tokens_used_current_period,
            limit=account.token_limit,
            tier=account.subscription_tier,
        )
    summary = await ledger.get_usage_summary(account.account_id)

    return CurrentUsageResponse(
        account_id=account.account_id,
        tier=account.subscription_tier,
        current_period=CurrentPeriodUsage(
            start_date=account.period_start_date.isoformat(),
            input_tokens_used=summary.input_tokens,
            output_tokens_used=summary.output_tokens,
            total_tokens_used=quota.used,
            cached_tokens=summary.cache_read_tokens,
            token_limit=quota.limit,
            tokens_remaining=quota.remaining,
            percent_used=quota.percent_used,
            request_count=summary.request_count,
            estimated_cost_usd=float(summary.estimated_cost_usd),
        ),
        cache_performance=CachePerformance(
            hit_rate=summary.cache_hit_rate,
            estimated_savings=float(ledger.prices.cache_savings(summary.cache_read_tokens)),
        ),
    )


@router.get("/usage/history", response_model=UsageHistoryResponse, response_model_by_alias=True)
async def usage_history(
    limit: int = Query(30, ge=1, le=100),
    account: AccountData = Depends(get_current_account),
    ledger: UsageLedger = Depends(get_ledger),
) -> UsageHistoryResponse:
    """Most recent usage records for the caller, newest first."""
    records = await ledger.get_usage_history(account.account_id, limit)

    return UsageHistoryResponse(
        account_id=account.account_id,
        history=[
            UsageHistoryItem(
                id=r.record_id,
                conversation_id=r.conversation_id,
                input_tokens=r.usage.input_tokens,
                output_tokens=r.usage.output_tokens,
                total_tokens=r.usage.total_tokens,
                cache_read_tokens=r.usage.cache_read_tokens,
                cache_creation_tokens=r.usage.cache_creation_tokens,
                model=r.model,
                request_type=r.request_type,
                success=r.success,
                latency_ms=r.latency_ms,
                error_code=r.error_code,
                estimated_cost_usd=float(r.estimated_cost_usd),
                timestamp=r.created_at.isoformat(),
            )
            for r in records
        ],
    )


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Liveness check for the load balancer; touches no dependencies."""
    return HealthResponse(
        status="healthy",
        version=settings.api_version,
        timestamp=datetime.now(UTC).isoformat(),
    )


@router.get("/status", response_model=StatusResponse)
async def status_check(
    ledger: UsageLedger = Depends(get_ledger),
    counter_store: CounterStore = Depends(get_counter_store),
) -> JSONResponse:
    """
    Dependency status.

    The database is required (503 when down). Redis is not: without it rate
    limits fail open, so its loss only degrades the service.
    """
    try:
        await ledger.ping()
        database = DependencyStatus(status="connected")
    except (SQLAlchemyError, OSError) as exc:
        logger.error("status_database_check_failed", error=str(exc))
        database = DependencyStatus(status="disconnected", error=str(exc))

    if await counter_store.ping():
        redis = DependencyStatus(status="connected")
    else:
        redis = DependencyStatus(status="disconnected")

    if database.status != "connected":
        overall, status_code = "unhealthy", status.HTTP_503_SERVICE_UNAVAILABLE
    elif redis.status != "connected":
        overall, status_code = "degraded", status.HTTP_200_OK
    else:
        overall, status_code = "healthy", status.HTTP_200_OK

    body = StatusResponse(
        status=overall, version=settings.api_version, database=database, redis=redis
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))
