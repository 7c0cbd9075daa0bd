"""
Main Application - FastAPI application setup.
"""

import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from uuid import uuid4

import anthropic
from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import generate_latest
from redis.asyncio import Redis
from starlette.middleware.base import BaseHTTPMiddleware

from gateway.api.dependencies import get_request_id
from gateway.api.errors import error_response, unauthorized_response
from gateway.api.routes import router
from gateway.config import settings
from gateway.db.session import close_engines, get_read_session, get_write_session
from gateway.exceptions import AuthenticationError, RequestValidationFailure, TokenExpiredError
from gateway.models.api import ErrorCode
from gateway.observability import get_logger, log_context, metrics, setup_logging, setup_tracing
from gateway.observability.tracing import instrument_fastapi
from gateway.services.admission import AdmissionController
from gateway.services.counter_store import CounterStore
from gateway.services.identity import IdentityVerifier
from gateway.services.ledger import UsageLedger
from gateway.services.rate_limiter import RateLimiter
from gateway.services.relay import StreamingRelay, load_relay_config
from gateway.services.upstream import UpstreamModelClient

# Setup logging before anything else
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan manager.

    Builds the long-lived services once and tears them down on shutdown.
    """
    # Startup
    logger.info(
        "application_starting",
        service=settings.api_title,
        version=settings.api_version,
        tracing_enabled=settings.tracing_enabled,
        metrics_enabled=settings.metrics_enabled,
        rate_limiting_enabled=bool(settings.redis_url),
    )

    redis_client = (
        Redis.from_url(
            settings.redis_url,
            socket_timeout=settings.redis_socket_timeout,
            socket_connect_timeout=settings.redis_socket_timeout,
        )
        if settings.redis_url
        else None
    )
    counter_store = CounterStore(redis_client)
    ledger = UsageLedger(get_write_session, get_read_session, settings)
    verifier = IdentityVerifier(settings)
    upstream = UpstreamModelClient(
        anthropic.AsyncAnthropic(
            api_key=settings.anthropic_api_key,
            timeout=settings.upstream_timeout_seconds,
        ),
        settings,
    )
    admission = AdmissionController(verifier, RateLimiter(counter_store, settings), ledger)
    relay = StreamingRelay(upstream, ledger, load_relay_config(settings))

    app.state.counter_store = counter_store
    app.state.ledger = ledger
    app.state.upstream = upstream
    app.state.admission = admission
    app.state.relay = relay

    yield

    # Shutdown
    logger.info("application_shutting_down")
    await relay.drain()
    await admission.drain()
    await verifier.close()
    await counter_store.close()
    await close_engines()
    logger.info("application_stopped")


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=settings.api_description,
    lifespan=lifespan,
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Log body validation errors and answer in the gateway error envelope."""
    # ctx may contain non-serializable objects
    sanitized_errors = [
        {"type": error.get("type"), "loc": error.get("loc"), "msg": error.get("msg")}
        for error in exc.errors()
    ]
    logger.warning(
        "validation_error",
        path=request.url.path,
        method=request.method,
        errors=sanitized_errors,
    )
    first = sanitized_errors[0] if sanitized_errors else {"msg": "Invalid request"}
    return error_response(
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        ErrorCode.VALIDATION_ERROR,
        str(first["msg"]),
        get_request_id(request),
    )


@app.exception_handler(RequestValidationFailure)
async def request_constraint_handler(
    request: Request, exc: RequestValidationFailure
) -> JSONResponse:
    logger.warning("request_constraint_failed", field=exc.field, error=exc.message)
    return error_response(
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        ErrorCode.VALIDATION_ERROR,
        exc.message,
        get_request_id(request),
    )


@app.exception_handler(AuthenticationError)
async def authentication_error_handler(request: Request, exc: AuthenticationError) -> JSONResponse:
    logger.info("authentication_failed", path=request.url.path, reason=exc.reason)
    return unauthorized_response(isinstance(exc, TokenExpiredError), get_request_id(request))


# Setup tracing
setup_tracing()
instrument_fastapi(app)


# Proxy headers middleware - trust X-Forwarded-* headers from the load balancer
class ProxyHeadersMiddleware(BaseHTTPMiddleware):
    """Middleware to handle X-Forwarded-* headers from reverse proxy."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        forwarded_proto = request.headers.get("X-Forwarded-Proto")
        if forwarded_proto:
            request.scope["scheme"] = forwarded_proto

        return await call_next(request)


app.add_middleware(ProxyHeadersMiddleware)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-Id", "X-RateLimit-Remaining", "X-Quota-Remaining", "Retry-After"],
)


# Request logging middleware
@app.middleware("http")
async def logging_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Assign a request id, log the request with timing and record HTTP metrics."""
    start_time = time.time()
    request_id = request.headers.get("X-Request-Id") or str(uuid4())
    request.state.request_id = request_id

    endpoint = request.url.path
    method = request.method
    metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method).inc()

    with log_context(request_id=request_id):
        logger.info("request_started", method=method, path=endpoint)
        try:
            response = await call_next(request)
            duration = time.time() - start_time

            # For streams this is time to response start, not stream end
            metrics.record_http_request(endpoint, method, response.status_code, duration)
            logger.info(
                "request_completed",
                method=method,
                path=endpoint,
                status_code=response.status_code,
                duration_seconds=duration,
            )

            response.headers["X-Request-Id"] = request_id
            return response
        except Exception as e:
            duration = time.time() - start_time
            metrics.record_http_request(endpoint, method, 500, duration)
            metrics.record_error(type(e).__name__, "http_request")

            logger.error(
                "request_failed",
                method=method,
                path=endpoint,
                error=str(e),
                duration_seconds=duration,
                exc_info=True,
            )
            raise
        finally:
            metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method).dec()


# Register routes
app.include_router(router)


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": settings.api_title,
        "version": settings.api_version,
        "status": "running",
    }


@app.get("/metrics")
async def metrics_endpoint() -> Response:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format.
    """
    return PlainTextResponse(generate_latest())


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "gateway.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
