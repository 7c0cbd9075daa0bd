"""
Tests for the Streaming Relay.

The upstream is scripted and the ledger records intents in memory, so each
test drives the relay generator directly and inspects what was emitted and
what was metered.
"""

import asyncio
import time
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import anyio
import httpx
import pytest

from gateway.exceptions import UpstreamOverloadedError, UpstreamRateLimitedError
from gateway.models.api import ChatStreamRequest, RequestType
from gateway.models.domain import (
    AccountData,
    Allowed,
    MessageStarted,
    RelayConfig,
    StreamEvent,
    TextDelta,
    TokenUsage,
)
from gateway.services.relay import StreamingRelay, classify_request, load_relay_config
from gateway.services.upstream import UpstreamModelClient
from tests.fakes import (
    FakeUpstream,
    RawStream,
    RecordingLedger,
    completion_events,
    image_part,
    make_settings,
    raw_message_start,
    raw_text,
)


def chat_request(**body) -> ChatStreamRequest:
    return ChatStreamRequest.model_validate({"message": "Is this a 2-1-2 reversal?", **body})


def admitted(account: AccountData) -> Allowed:
    return Allowed(account=account, rate_remaining=9, quota=None)


async def collect(relay: StreamingRelay, account: AccountData, request: ChatStreamRequest):
    return [event async for event in relay.stream(admitted(account), request)]


def names(events: list[StreamEvent]) -> list[str]:
    return [e.event for e in events]


def sdk_upstream(raw: RawStream) -> UpstreamModelClient:
    """The real upstream client over a mocked SDK returning `raw`."""
    sdk = MagicMock()
    sdk.messages.create = AsyncMock(return_value=raw)
    return UpstreamModelClient(sdk, make_settings())


class TestCompletedStream:
    """A normal completion."""

    @pytest.mark.asyncio
    async def test_event_order(self, relay_config: RelayConfig, free_account: AccountData):
        relay = StreamingRelay(FakeUpstream(completion_events()), RecordingLedger(), relay_config)

        events = await collect(relay, free_account, chat_request())

        assert names(events) == [
            "stream_start",
            "message_start",
            "content_delta",
            "content_delta",
            "content_delta",
            "stream_complete",
        ]
        assert events[1].data == {"messageId": "msg_01"}
        assert sum(e.is_terminal() for e in events) == 1

    @pytest.mark.asyncio
    async def test_deltas_concatenate_to_full_text(
        self, relay_config: RelayConfig, free_account: AccountData
    ):
        relay = StreamingRelay(FakeUpstream(completion_events()), RecordingLedger(), relay_config)

        events = await collect(relay, free_account, chat_request())

        text = "".join(e.data["delta"] for e in events if e.event == "content_delta")
        assert text == "Inside bar then 2-up."

    @pytest.mark.asyncio
    async def test_complete_reports_metered_usage(
        self, relay_config: RelayConfig, free_account: AccountData
    ):
        ledger = RecordingLedger(used=10_000)
        relay = StreamingRelay(FakeUpstream(completion_events()), ledger, relay_config)

        events = await collect(relay, free_account, chat_request())

        complete = events[-1].data
        assert complete["usage"] == {
            "input_tokens": 1200,
            "output_tokens": 42,
            "cache_read_tokens": 800,
            "cache_creation_tokens": 0,
        }
        assert complete["tokensRemaining"] == 100_000 - 10_000 - 1242
        assert "timestamp" in complete

        [intent] = ledger.intents
        assert intent.success is True
        assert intent.usage == TokenUsage(1200, 42, 800, 0)
        assert intent.account_id == free_account.account_id
        assert intent.model == "claude-text"
        assert intent.latency_ms is not None

    @pytest.mark.asyncio
    async def test_conversation_id_echoed(
        self, relay_config: RelayConfig, free_account: AccountData
    ):
        relay = StreamingRelay(FakeUpstream(completion_events()), RecordingLedger(), relay_config)
        conversation_id = "c0ffee00-0000-4000-8000-000000000001"

        events = await collect(relay, free_account, chat_request(conversationId=conversation_id))

        assert events[0].data["conversationId"] == conversation_id

    @pytest.mark.asyncio
    async def test_events_after_stop_are_ignored(
        self, relay_config: RelayConfig, free_account: AccountData
    ):
        upstream = FakeUpstream([*completion_events(), TextDelta("stray")])
        relay = StreamingRelay(upstream, RecordingLedger(), relay_config)

        events = await collect(relay, free_account, chat_request())

        assert all(e.data.get("delta") != "stray" for e in events)
        assert upstream.closed is True

    @pytest.mark.asyncio
    async def test_ledger_failure_still_completes(
        self, relay_config: RelayConfig, free_account: AccountData
    ):
        relay = StreamingRelay(
            FakeUpstream(completion_events()), RecordingLedger(fail=True), relay_config
        )

        events = await collect(relay, free_account, chat_request())

        assert events[-1].event == "stream_complete"
        assert events[-1].data["tokensRemaining"] is None


class TestUpstreamParameters:
    """Model and generation parameters passed upstream."""

    @pytest.mark.asyncio
    async def test_text_request(self, relay_config: RelayConfig, free_account: AccountData):
        upstream = FakeUpstream(completion_events())
        relay = StreamingRelay(upstream, RecordingLedger(), relay_config)

        await collect(relay, free_account, chat_request())

        [call] = upstream.calls
        assert call["model"] == "claude-text"
        assert call["max_tokens"] == 4096
        assert call["temperature"] == 1.0
        assert call["system_prompt"] == relay_config.system_prompt

    @pytest.mark.asyncio
    async def test_images_select_vision_model(
        self, relay_config: RelayConfig, free_account: AccountData
    ):
        upstream = FakeUpstream(completion_events())
        ledger = RecordingLedger()
        relay = StreamingRelay(upstream, ledger, relay_config)

        await collect(relay, free_account, chat_request(images=[image_part()]))

        assert upstream.calls[0]["model"] == "claude-vision"
        assert ledger.intents[0].request_type is RequestType.VISION

    @pytest.mark.asyncio
    async def test_max_tokens_override(self, relay_config: RelayConfig, free_account: AccountData):
        upstream = FakeUpstream(completion_events())
        relay = StreamingRelay(upstream, RecordingLedger(), relay_config)

        await collect(relay, free_account, chat_request(options={"maxTokens": 512}))

        assert upstream.calls[0]["max_tokens"] == 512

    @pytest.mark.parametrize(
        "body,expected",
        [
            ({}, RequestType.CHAT),
            ({"images": [image_part()]}, RequestType.VISION),
            ({"conversationHistory": [{"role": "user", "content": "hi"}]}, RequestType.MULTI_CONTEXT),
            (
                {
                    "images": [image_part()],
                    "conversationHistory": [{"role": "user", "content": "hi"}],
                },
                RequestType.VISION,
            ),
        ],
    )
    def test_classify_request(self, body: dict, expected: RequestType):
        assert classify_request(chat_request(**body)) is expected


class TestUpstreamFailure:
    """Upstream errors end the stream with stream_error."""

    @pytest.mark.asyncio
    async def test_mid_stream_overload(self, relay_config: RelayConfig, free_account: AccountData):
        upstream = FakeUpstream(
            [MessageStarted("msg_01", 1200, 800, 0), TextDelta("Inside")],
            error=UpstreamOverloadedError("Overloaded"),
        )
        ledger = RecordingLedger()
        relay = StreamingRelay(upstream, ledger, relay_config)

        events = await collect(relay, free_account, chat_request())
        await relay.drain()

        assert names(events) == ["stream_start", "message_start", "content_delta", "stream_error"]
        assert events[-1].data["code"] == "UPSTREAM_OVERLOADED"
        assert events[-1].data["error"] == "Overloaded"

        [intent] = ledger.intents
        assert intent.success is False
        assert intent.error_code == "UPSTREAM_OVERLOADED"
        assert intent.usage.input_tokens == 1200

    @pytest.mark.asyncio
    async def test_rejected_before_first_event(
        self, relay_config: RelayConfig, free_account: AccountData
    ):
        upstream = FakeUpstream(error=UpstreamRateLimitedError("rate limited"))
        ledger = RecordingLedger()
        relay = StreamingRelay(upstream, ledger, relay_config)

        events = await collect(relay, free_account, chat_request())
        await relay.drain()

        assert names(events) == ["stream_start", "stream_error"]
        assert events[-1].data["code"] == "UPSTREAM_RATE_LIMITED"
        assert ledger.intents[0].usage.total_tokens == 0

    @pytest.mark.asyncio
    async def test_transport_failure_mid_stream(
        self, relay_config: RelayConfig, free_account: AccountData
    ):
        raw = RawStream(
            [raw_message_start(), raw_text("Inside")], error=httpx.ReadError("peer reset")
        )
        ledger = RecordingLedger()
        relay = StreamingRelay(sdk_upstream(raw), ledger, relay_config)

        events = await collect(relay, free_account, chat_request())
        await relay.drain()

        assert names(events) == ["stream_start", "message_start", "content_delta", "stream_error"]
        assert events[-1].data["code"] == "UPSTREAM_ERROR"
        assert raw.closed is True

        [intent] = ledger.intents
        assert (intent.success, intent.error_code) == (False, "UPSTREAM_ERROR")
        assert intent.usage.input_tokens == 1200

    @pytest.mark.asyncio
    async def test_unexpected_error_still_ends_with_stream_error(
        self, relay_config: RelayConfig, free_account: AccountData
    ):
        upstream = FakeUpstream(
            [MessageStarted("msg_01", 1200, 800, 0)], error=RuntimeError("boom")
        )
        ledger = RecordingLedger()
        relay = StreamingRelay(upstream, ledger, relay_config)

        events = await collect(relay, free_account, chat_request())
        await relay.drain()

        assert names(events) == ["stream_start", "message_start", "stream_error"]
        assert events[-1].data["code"] == "UPSTREAM_ERROR"
        assert ledger.intents[0].error_code == "UPSTREAM_ERROR"


class TestClientDisconnect:
    """Partial usage is flushed when the client goes away."""

    @pytest.mark.asyncio
    async def test_disconnect_closes_upstream_and_records_partial(
        self, relay_config: RelayConfig, free_account: AccountData
    ):
        upstream = FakeUpstream(completion_events())
        ledger = RecordingLedger()
        relay = StreamingRelay(upstream, ledger, relay_config)

        stream = relay.stream(admitted(free_account), chat_request())
        async for event in stream:
            if event.event == "content_delta":
                break
        await stream.aclose()

        assert upstream.closed is True
        [intent] = ledger.intents
        assert intent.success is False
        assert intent.error_code == "CLIENT_DISCONNECTED"
        assert intent.usage.input_tokens == 1200
        assert intent.usage.output_tokens == 0

    @pytest.mark.asyncio
    async def test_flush_bounded_by_grace_period(self, free_account: AccountData):
        config = RelayConfig(
            system_prompt="coach",
            text_model="claude-text",
            vision_model="claude-vision",
            default_max_tokens=4096,
            temperature=1.0,
            flush_grace_seconds=0.05,
        )
        ledger = RecordingLedger(delay=0.3)
        relay = StreamingRelay(FakeUpstream(completion_events()), ledger, config)

        stream = relay.stream(admitted(free_account), chat_request())
        await stream.__anext__()
        started = time.monotonic()
        await stream.aclose()
        elapsed = time.monotonic() - started

        assert elapsed < 0.25
        assert ledger.intents == []

        # The write is not abandoned
        await relay.drain()
        assert ledger.intents[0].error_code == "CLIENT_DISCONNECTED"

    @pytest.mark.asyncio
    async def test_no_partial_flush_after_terminal_event(
        self, relay_config: RelayConfig, free_account: AccountData
    ):
        ledger = RecordingLedger()
        relay = StreamingRelay(FakeUpstream(completion_events()), ledger, relay_config)

        stream = relay.stream(admitted(free_account), chat_request())
        async for event in stream:
            if event.event == "stream_complete":
                break
        await stream.aclose()
        await relay.drain()

        assert [i.success for i in ledger.intents] == [True]

    @pytest.mark.asyncio
    async def test_cancelled_task_group_closes_upstream_and_records_partial(
        self, relay_config: RelayConfig, free_account: AccountData
    ):
        raw = RawStream([raw_message_start(), raw_text("Inside")], hang=True)
        ledger = RecordingLedger()
        relay = StreamingRelay(sdk_upstream(raw), ledger, relay_config)
        seen: list[str] = []
        first_delta = anyio.Event()

        async def consume() -> None:
            async for event in relay.stream(admitted(free_account), chat_request()):
                seen.append(event.event)
                if event.event == "content_delta":
                    first_delta.set()

        async with anyio.create_task_group() as tg:
            tg.start_soon(consume)
            await first_delta.wait()
            tg.cancel_scope.cancel()

        assert seen == ["stream_start", "message_start", "content_delta"]
        assert raw.closed is True
        [intent] = ledger.intents
        assert (intent.success, intent.error_code) == (False, "CLIENT_DISCONNECTED")
        assert intent.usage.input_tokens == 1200


class TestLoadRelayConfig:
    """System prompt loading."""

    def test_prompt_and_guardrails_joined(self, tmp_path: Path):
        prompt = tmp_path / "prompt.md"
        guardrails = tmp_path / "guardrails.md"
        prompt.write_text("You coach The Strat.", encoding="utf-8")
        guardrails.write_text("Never give financial advice.", encoding="utf-8")

        config = load_relay_config(
            make_settings(system_prompt_path=str(prompt), guardrails_path=str(guardrails))
        )

        assert config.system_prompt == (
            "You coach The Strat.\n\n---\n\nNever give financial advice."
        )

    def test_missing_file_uses_fallback(self, tmp_path: Path):
        settings = make_settings(
            system_prompt_path=str(tmp_path / "missing.md"),
            guardrails_path=str(tmp_path / "also-missing.md"),
        )

        config = load_relay_config(settings)

        assert config.system_prompt == settings.fallback_system_prompt

    def test_models_and_limits_from_settings(self, tmp_path: Path):
        config = load_relay_config(
            make_settings(
                system_prompt_path=str(tmp_path / "missing.md"),
                text_model="model-a",
                vision_model="model-b",
                default_max_tokens=1024,
                relay_flush_grace_seconds=2.5,
            )
        )

        assert (config.text_model, config.vision_model) == ("model-a", "model-b")
        assert config.default_max_tokens == 1024
        assert config.flush_grace_seconds == 2.5


@pytest.mark.asyncio
async def test_drain_with_nothing_pending(relay_config: RelayConfig):
    relay = StreamingRelay(FakeUpstream(), RecordingLedger(), relay_config)
    await asyncio.wait_for(relay.drain(), 1)
