"""
Streaming Relay - upstream completion to client Server-Sent Events.

Event order for one request:
    stream_start, [message_start], content_delta*, stream_complete | stream_error

Exactly one terminal event is emitted. A client that disconnects gets none;
its partial usage is still flushed to the ledger.
"""

import asyncio
import time
from collections.abc import AsyncIterator, Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import anyio
from structlog import get_logger

from gateway.config import Settings
from gateway.exceptions import LedgerWriteError
from gateway.models.api import ChatStreamRequest, ErrorCode, RequestType, UsagePayload
from gateway.models.domain import (
    Allowed,
    MessageDelta,
    MessageStarted,
    MessageStopped,
    RelayConfig,
    StreamEvent,
    TextDelta,
    TokenUsage,
    UsageAccumulator,
    UsageIntent,
    UsageRecordData,
)
from gateway.observability.metrics import metrics
from gateway.services.ledger import UsageLedger
from gateway.services.upstream import UpstreamModelClient, classify_error

logger = get_logger(__name__)


def _timestamp() -> str:
    return datetime.now(UTC).isoformat()


def classify_request(request: ChatStreamRequest) -> RequestType:
    if request.images:
        return RequestType.VISION
    if request.conversation_history:
        return RequestType.MULTI_CONTEXT
    return RequestType.CHAT


def usage_payload(usage: TokenUsage) -> dict[str, int]:
    return UsagePayload(
        input_tokens=usage.input_tokens,
        output_tokens=usage.output_tokens,
        cache_read_tokens=usage.cache_read_tokens,
        cache_creation_tokens=usage.cache_creation_tokens,
    ).model_dump()


class StreamingRelay:
    """Relays one admitted request and meters what it consumed."""

    def __init__(
        self,
        upstream: UpstreamModelClient,
        ledger: UsageLedger,
        config: RelayConfig,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.upstream = upstream
        self.ledger = ledger
        self.config = config
        self.clock = clock
        self._background: set[asyncio.Task[Any]] = set()

    def select_model(self, request: ChatStreamRequest) -> str:
        return self.config.vision_model if request.images else self.config.text_model

    async def stream(self, admitted: Allowed, request: ChatStreamRequest) -> AsyncIterator[StreamEvent]:
        account_id = admitted.account.account_id
        model = self.select_model(request)
        request_type = classify_request(request)
        conversation_id = str(request.conversation_id) if request.conversation_id else None
        max_tokens = request.options.max_tokens or self.config.default_max_tokens

        accumulator = UsageAccumulator()
        started = self.clock()
        first_delta_at: float | None = None
        terminal_sent = False
        usage_write: asyncio.Task[UsageRecordData] | None = None

        def intent(success: bool, error_code: str | None = None) -> UsageIntent:
            return UsageIntent(
                account_id=account_id,
                usage=accumulator.snapshot(),
                model=model,
                request_type=request_type,
                success=success,
                conversation_id=conversation_id,
                latency_ms=int((self.clock() - started) * 1000),
                error_code=error_code,
            )

        metrics.streams_active.inc()
        try:
            yield StreamEvent(
                "stream_start",
                {"conversationId": conversation_id, "timestamp": _timestamp()},
            )

            events = self.upstream.stream(
                request,
                model=model,
                system_prompt=self.config.system_prompt,
                max_tokens=max_tokens,
                temperature=self.config.temperature,
            )
            try:
                async for event in events:
                    if isinstance(event, MessageStarted):
                        accumulator.merge(
                            input_tokens=event.input_tokens,
                            cache_read_tokens=event.cache_read_tokens,
                            cache_creation_tokens=event.cache_creation_tokens,
                        )
                        yield StreamEvent("message_start", {"messageId": event.message_id})
                    elif isinstance(event, TextDelta):
                        if first_delta_at is None:
                            first_delta_at = self.clock()
                            metrics.time_to_first_token_seconds.observe(first_delta_at - started)
                        accumulator.append_text(event.text)
                        yield StreamEvent("content_delta", {"delta": event.text})
                    elif isinstance(event, MessageDelta):
                        accumulator.merge(
                            input_tokens=event.input_tokens,
                            output_tokens=event.output_tokens,
                            cache_read_tokens=event.cache_read_tokens,
                            cache_creation_tokens=event.cache_creation_tokens,
                        )
                    elif isinstance(event, MessageStopped):
                        break
            except Exception as exc:
                e = classify_error(exc)
                logger.error(
                    "upstream_stream_failed",
                    account_id=str(account_id),
                    code=e.code,
                    error=e.message,
                    partial_output_tokens=accumulator.output_tokens,
                )
                self._write_in_background(intent(False, e.code))
                metrics.record_stream(e.code.lower())
                terminal_sent = True
                yield StreamEvent(
                    "stream_error",
                    {"error": e.message, "code": e.code, "timestamp": _timestamp()},
                )
                return
            finally:
                with anyio.CancelScope(shield=True), anyio.move_on_after(
                    self.config.flush_grace_seconds
                ):
                    await events.aclose()

            usage_write = asyncio.ensure_future(self.ledger.record_usage(intent(True)))
            self._track(usage_write)
            tokens_remaining: int | None
            try:
                record = await asyncio.shield(usage_write)
                tokens_remaining = record.tokens_remaining
            except LedgerWriteError as e:
                logger.error(
                    "ledger_write_failed",
                    account_id=str(account_id),
                    usage=usage_payload(accumulator.snapshot()),
                    model=model,
                    reconcile=True,
                    error=e.message,
                )
                tokens_remaining = None

            metrics.record_stream("completed")
            terminal_sent = True
            yield StreamEvent(
                "stream_complete",
                {
                    "usage": usage_payload(accumulator.snapshot()),
                    "tokensRemaining": tokens_remaining,
                    "timestamp": _timestamp(),
                },
            )
        finally:
            metrics.streams_active.dec()
            if not terminal_sent and usage_write is None:
                metrics.record_stream("client_disconnected")
                await self._flush_partial(intent(False, ErrorCode.CLIENT_DISCONNECTED.value))

    async def _flush_partial(self, usage_intent: UsageIntent) -> None:
        """Record a disconnected stream's usage, bounded by the flush grace period."""
        logger.info(
            "client_disconnected",
            account_id=str(usage_intent.account_id),
            partial_tokens=usage_intent.usage.total_tokens,
        )
        task = asyncio.ensure_future(self.ledger.record_usage(usage_intent))
        self._track(task)
        # Runs while the consumer's scope is being cancelled; the write task outlives the wait
        with anyio.CancelScope(shield=True):
            with anyio.move_on_after(self.config.flush_grace_seconds) as grace:
                try:
                    await asyncio.shield(task)
                except LedgerWriteError as e:
                    logger.error(
                        "disconnect_flush_failed",
                        account_id=str(usage_intent.account_id),
                        usage=usage_payload(usage_intent.usage),
                        reconcile=True,
                        error=e.message,
                    )
        if grace.cancelled_caught:
            logger.warning(
                "disconnect_flush_timed_out",
                account_id=str(usage_intent.account_id),
                grace_seconds=self.config.flush_grace_seconds,
            )

    def _write_in_background(self, usage_intent: UsageIntent) -> None:
        self._track(asyncio.ensure_future(self.ledger.record_usage(usage_intent)))

    def _track(self, task: asyncio.Future[Any]) -> None:
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Future[Any]) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            # Retrieve so the loop does not report it as unhandled
            logger.debug("background_usage_write_failed", error=str(task.exception()))

    async def drain(self) -> None:
        """Wait for pending usage writes (shutdown and tests)."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)


def load_relay_config(settings: Settings) -> RelayConfig:
    """
    Build the relay configuration once at startup.

    The system prompt is the coaching prompt and the guardrails joined by a
    rule; when either file is missing the configured fallback prompt is used.
    """
    prompt_path = Path(settings.system_prompt_path)
    guardrails_path = Path(settings.guardrails_path)

    if prompt_path.is_file() and guardrails_path.is_file():
        system_prompt = (
            f"{prompt_path.read_text(encoding='utf-8')}\n\n---\n\n"
            f"{guardrails_path.read_text(encoding='utf-8')}"
        )
        logger.info(
            "system_prompt_loaded",
            prompt_path=str(prompt_path),
            guardrails_path=str(guardrails_path),
            length=len(system_prompt),
        )
    else:
        logger.error(
            "system_prompt_files_missing",
            prompt_path=str(prompt_path),
            guardrails_path=str(guardrails_path),
        )
        system_prompt = settings.fallback_system_prompt

    return RelayConfig(
        system_prompt=system_prompt,
        text_model=settings.text_model,
        vision_model=settings.vision_model,
        default_max_tokens=settings.default_max_tokens,
        temperature=settings.temperature,
        flush_grace_seconds=settings.relay_flush_grace_seconds,
    )
