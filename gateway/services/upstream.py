"""
Upstream Model Client - Anthropic Messages API wrapper.

Validates requests before any network I/O, builds the Messages payload and
translates the SDK's raw stream events into provider-neutral events.
"""

from collections.abc import AsyncIterator
from typing import Any

import anthropic
import anyio
import httpx
from structlog import get_logger

from gateway.config import Settings
from gateway.exceptions import (
    RequestValidationFailure,
    UpstreamError,
    UpstreamOverloadedError,
    UpstreamRateLimitedError,
)
from gateway.models.api import ChatStreamRequest
from gateway.models.domain import (
    MessageDelta,
    MessageStarted,
    MessageStopped,
    TextDelta,
    UpstreamEvent,
)

logger = get_logger(__name__)

OVERLOADED_STATUS = 529


def classify_error(exc: BaseException) -> UpstreamError:
    """Map an SDK or transport failure onto the gateway's upstream errors."""
    if isinstance(exc, UpstreamError):
        return exc

    message = str(exc) or type(exc).__name__
    text = message.lower()
    error_type = _error_type(exc)

    if isinstance(exc, anthropic.RateLimitError) or error_type == "rate_limit_error":
        return UpstreamRateLimitedError(message)
    if (
        getattr(exc, "status_code", None) == OVERLOADED_STATUS
        or error_type == "overloaded_error"
        or "overloaded" in text
    ):
        return UpstreamOverloadedError(message)
    if "rate limit" in text or "rate_limit" in text:
        return UpstreamRateLimitedError(message)
    return UpstreamError(message)


def _error_type(exc: BaseException) -> str | None:
    """The `error.type` field of an API error body, when present."""
    body = getattr(exc, "body", None)
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            error_type = error.get("type")
            return str(error_type) if error_type else None
    return None


def build_system(prompt: str) -> list[dict[str, Any]]:
    """System prompt as one cacheable text block."""
    return [{"type": "text", "text": prompt, "cache_control": {"type": "ephemeral"}}]


def build_messages(request: ChatStreamRequest) -> list[dict[str, Any]]:
    """
    Prior turns as plain text, then the current turn as image parts followed
    by the message text. A label is sent as a text part just before its image.
    """
    messages: list[dict[str, Any]] = [
        {"role": turn.role, "content": turn.content} for turn in request.conversation_history
    ]

    content: list[dict[str, Any]] = []
    for image in request.images:
        if image.label:
            content.append({"type": "text", "text": image.label})
        content.append(
            {
                "type": "image",
                "source": {
                    "type": "base64",
                    "media_type": image.media_type,
                    "data": image.data,
                },
            }
        )
    content.append({"type": "text", "text": request.message})

    messages.append({"role": "user", "content": content})
    return messages


class UpstreamModelClient:
    """Streams completions from the Anthropic Messages API."""

    def __init__(self, client: anthropic.AsyncAnthropic, settings: Settings) -> None:
        self.client = client
        self.settings = settings

    def validate(self, request: ChatStreamRequest) -> None:
        """
        Enforce size and type limits on a request.

        Raises:
            RequestValidationFailure: first violated constraint
        """
        s = self.settings

        if len(request.message) > s.max_message_length:
            raise RequestValidationFailure(
                "message", f"exceeds {s.max_message_length} characters"
            )

        if len(request.conversation_history) > s.max_conversation_history:
            raise RequestValidationFailure(
                "conversationHistory", f"more than {s.max_conversation_history} turns"
            )
        for i, turn in enumerate(request.conversation_history):
            if len(turn.content) > s.max_message_length:
                raise RequestValidationFailure(
                    f"conversationHistory[{i}].content",
                    f"exceeds {s.max_message_length} characters",
                )

        if len(request.images) > s.max_images:
            raise RequestValidationFailure("images", f"more than {s.max_images} images")
        allowed = s.allowed_image_types
        for i, image in enumerate(request.images):
            if image.media_type not in allowed:
                raise RequestValidationFailure(
                    f"images[{i}].mediaType", f"unsupported media type {image.media_type}"
                )
            if len(image.data) > s.max_image_base64_length:
                raise RequestValidationFailure(f"images[{i}].data", "image too large")

        max_tokens = request.options.max_tokens
        if max_tokens is not None and max_tokens > s.max_output_tokens:
            raise RequestValidationFailure(
                "options.maxTokens", f"exceeds {s.max_output_tokens}"
            )

    async def stream(
        self,
        request: ChatStreamRequest,
        model: str,
        system_prompt: str,
        max_tokens: int,
        temperature: float,
    ) -> AsyncIterator[UpstreamEvent]:
        """
        Open a streaming completion and yield translated events.

        The SDK stream is closed when the consumer stops iterating, including
        on cancellation of the enclosing task group.

        Raises:
            UpstreamError: (or a subclass) on any upstream failure
        """
        try:
            raw_stream = await self.client.messages.create(
                model=model,
                max_tokens=max_tokens,
                temperature=temperature,
                system=build_system(system_prompt),
                messages=build_messages(request),
                stream=True,
            )
        except (anthropic.APIError, httpx.HTTPError, OSError) as e:
            raise classify_error(e) from e

        try:
            async for raw_event in raw_stream:
                event = translate_event(raw_event)
                if event is not None:
                    yield event
        except (anthropic.APIError, httpx.HTTPError, OSError) as e:
            # The SDK does not wrap transport errors raised mid-iteration
            logger.warning("upstream_stream_interrupted", error_type=type(e).__name__, error=str(e))
            raise classify_error(e) from e
        except Exception as e:
            logger.error("upstream_event_unreadable", error_type=type(e).__name__, error=str(e))
            raise UpstreamError("unreadable upstream response") from e
        finally:
            # Must complete even when the consumer's scope is cancelled
            with anyio.CancelScope(shield=True), anyio.move_on_after(
                self.settings.relay_flush_grace_seconds
            ):
                await raw_stream.close()


def translate_event(raw: Any) -> UpstreamEvent | None:
    """Raw SDK stream event to a provider-neutral event; None for ignored kinds."""
    kind = getattr(raw, "type", None)

    if kind == "message_start":
        message = raw.message
        usage = getattr(message, "usage", None)
        return MessageStarted(
            message_id=message.id,
            input_tokens=getattr(usage, "input_tokens", None),
            cache_read_tokens=getattr(usage, "cache_read_input_tokens", None) or 0,
            cache_creation_tokens=getattr(usage, "cache_creation_input_tokens", None) or 0,
        )

    if kind == "content_block_delta":
        delta = raw.delta
        if getattr(delta, "type", None) == "text_delta":
            return TextDelta(text=delta.text)
        return None

    if kind == "message_delta":
        usage = getattr(raw, "usage", None)
        return MessageDelta(
            output_tokens=getattr(usage, "output_tokens", None),
            input_tokens=getattr(usage, "input_tokens", None),
            cache_read_tokens=getattr(usage, "cache_read_input_tokens", None),
            cache_creation_tokens=getattr(usage, "cache_creation_input_tokens", None),
            stop_reason=getattr(raw.delta, "stop_reason", None),
        )

    if kind == "message_stop":
        return MessageStopped()

    return None
