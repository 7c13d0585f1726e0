"""
Tests for ChatOrchestrator

Runs full requests against a scripted LLM and reads the SSE stream the way
the HTTP layer does.
"""
import asyncio
import json
import re

import httpx
import pytest

from config.settings import ChatConfig, MemoryServiceConfig, RetrievalConfig
from schemas.chat import ChatRequest
from schemas.memory import RetrievalPayload
from schemas.pricing import ModelPricing
from services.circuit_breaker import CircuitBreaker
from services.errors import ProviderError
from services.llm_forwarder import ProviderUsage, StreamDelta, StreamFinish
from services.memory_client import MemoryServiceClient
from services.memory_fallback import MemoryFallbackService
from services.pricing import PricingCatalog
from services.prompt_assembler import MEMORY_HEADER, PromptAssembler
from services.retrieval_policy import RetrievalPolicyEngine
from services.retry import RetryManager
from services.chat_orchestrator import ChatOrchestrator, generate_session_id
from services.telemetry import CHAT_COMPLETED, CHAT_ERROR, MEMORY_SEARCH_FAILED, TelemetryService
from services.usage_cost import UsageCostCalculator


class FakeLLM:
    """Scripted stand-in for LLMForwarder."""

    def __init__(self, chunks=("Hel", "lo"), usage=None, fail_after=None, hang_after=None):
        self.chunks = list(chunks)
        self.usage = usage
        self.fail_after = fail_after
        self.hang_after = hang_after
        self.messages = None

    def resolve_model(self, requested):
        return requested or "gpt-4o-mini"

    async def stream_chat(self, model, messages):
        self.messages = messages
        for i, chunk in enumerate(self.chunks):
            if i == self.fail_after:
                raise ProviderError("Server error, please try again later.", status_code=502,
                                    cause_code="server_error")
            if i == self.hang_after:
                await asyncio.Event().wait()
            yield StreamDelta(chunk)
        yield StreamFinish(usage=self.usage)


class FakeMemory:
    """Records persisted turns; optionally returns a fixed payload."""

    def __init__(self, payload=None):
        self.payload = payload
        self.persisted = []
        self.persisted_event = asyncio.Event()

    async def get_context(self, user_id, query, cfg=None, *, session_id=None, deadline_s=None):
        return self.payload

    async def persist_turn(self, user_id, session_id, messages):
        self.persisted.append((user_id, session_id, messages))
        self.persisted_event.set()
        return True


def parse_events(frames):
    events = []
    for frame in frames:
        if frame.startswith(":"):
            continue
        event_line, data_line = frame.strip().split("\n")
        events.append((event_line[len("event: "):], json.loads(data_line[len("data: "):])))
    return events


@pytest.fixture
def telemetry():
    return TelemetryService()


@pytest.fixture
def catalog():
    return PricingCatalog(initial=[
        ModelPricing(model="gpt-4o-mini", input_per_mtok=0.15, output_per_mtok=0.60),
    ])


def make_orchestrator(llm, telemetry, catalog, memory=None, **kwargs):
    return ChatOrchestrator(
        llm=llm,
        assembler=PromptAssembler(),
        calculator=UsageCostCalculator(catalog),
        pricing=catalog,
        telemetry=telemetry,
        memory=memory,
        chat_config=ChatConfig(system_prompt="You are helpful."),
        **kwargs,
    )


async def run_request(orchestrator, request):
    emitter = orchestrator.start(request, user_id="42", request_id="req-1")
    frames = [frame async for frame in emitter.stream()]
    await orchestrator.drain()
    return emitter, parse_events(frames)


def test_session_id_format():
    assert re.match(r"^session-\d{8}-\d{6}-[a-z0-9]{4}$", generate_session_id())


class TestHappyPath:

    async def test_tokens_usage_done(self, telemetry, catalog):
        llm = FakeLLM(usage=ProviderUsage(tokens_in=1000, tokens_out=500))
        orchestrator = make_orchestrator(llm, telemetry, catalog)

        _, events = await run_request(orchestrator, ChatRequest(message="Hi there"))

        assert [name for name, _ in events] == ["token", "token", "usage", "done"]
        usage = events[2][1]
        assert usage == {"tokensIn": 1000, "tokensOut": 500, "costUsd": 0.00045, "model": "gpt-4o-mini"}
        assert events[3][1] == {"finishReason": "stop"}

        completed = telemetry.recent(CHAT_COMPLETED)[-1]
        assert completed.payload["has_provider_usage"] is True
        assert completed.payload["model_found"] is True
        assert completed.payload["ttft_ms"] is not None

    async def test_estimates_usage_without_provider_usage(self, telemetry, catalog):
        orchestrator = make_orchestrator(FakeLLM(), telemetry, catalog)

        _, events = await run_request(orchestrator, ChatRequest(message="Hi there"))

        usage = dict(events)["usage"]
        assert usage["tokensIn"] > 0
        assert usage["tokensOut"] > 0
        assert telemetry.recent(CHAT_COMPLETED)[-1].payload["has_provider_usage"] is False

    async def test_memory_added_to_system_message(self, telemetry, catalog, make_entry):
        memory = FakeMemory(RetrievalPayload(memories=[make_entry("a", "Prefers window seats.")]))
        llm = FakeLLM()
        orchestrator = make_orchestrator(llm, telemetry, catalog, memory=memory)

        await run_request(orchestrator, ChatRequest(message="Book a flight", useMemory=True))

        system = llm.messages[0]["content"]
        assert system.startswith("You are helpful.")
        assert f"{MEMORY_HEADER}\n- Prefers window seats." in system

    async def test_memory_skipped_when_not_requested(self, telemetry, catalog, make_entry):
        memory = FakeMemory(RetrievalPayload(memories=[make_entry("a", "Prefers window seats.")]))
        llm = FakeLLM()
        orchestrator = make_orchestrator(llm, telemetry, catalog, memory=memory)

        await run_request(orchestrator, ChatRequest(message="Book a flight"))

        assert MEMORY_HEADER not in llm.messages[0]["content"]

    async def test_turn_persisted(self, telemetry, catalog):
        memory = FakeMemory()
        orchestrator = make_orchestrator(FakeLLM(), telemetry, catalog, memory=memory)
        session_id = "session-20240501-120000-ab12"

        await run_request(orchestrator, ChatRequest(message="Hi there", sessionId=session_id))

        user_id, persisted_session, messages = memory.persisted[0]
        assert (user_id, persisted_session) == ("42", session_id)
        assert messages == [
            {"role": "user", "content": "Hi there"},
            {"role": "assistant", "content": "Hello"},
        ]


class TestMemoryDegradation:

    async def test_memory_timeout_still_streams(self, telemetry, catalog, recording_sleep):
        async def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/search"):
                await asyncio.sleep(10)
            return httpx.Response(204)

        config = MemoryServiceConfig(base_url="http://memory.local")
        memory = MemoryFallbackService(
            client=MemoryServiceClient(config, http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler))),
            breaker=CircuitBreaker("memory_service"),
            retry=RetryManager(sleep=recording_sleep),
            policy=RetrievalPolicyEngine(),
            telemetry=telemetry,
            config=config,
            retrieval=RetrievalConfig(),
        )
        orchestrator = make_orchestrator(FakeLLM(), telemetry, catalog, memory=memory, memory_deadline_s=0.05)

        _, events = await run_request(orchestrator, ChatRequest(message="Hi there", useMemory=True))

        assert [name for name, _ in events] == ["token", "token", "usage", "done"]
        failure = telemetry.recent(MEMORY_SEARCH_FAILED)[-1]
        assert failure.payload["fallback"] == "no_memory"
        assert failure.payload["error_class"] == "timeout"


class TestErrors:

    async def test_provider_error_mid_stream(self, telemetry, catalog):
        memory = FakeMemory()
        orchestrator = make_orchestrator(FakeLLM(chunks=("a", "b", "c"), fail_after=2), telemetry, catalog,
                                         memory=memory)

        emitter, events = await run_request(orchestrator, ChatRequest(message="Hi there"))

        assert [name for name, _ in events] == ["token", "token", "error"]
        assert events[-1][1] == {"message": "Server error, please try again later.", "code": "server_error"}
        assert emitter.is_closed

        error = telemetry.recent(CHAT_ERROR)[-1]
        assert error.payload["tokens_sent"] == 2
        assert error.payload["status_code"] == 502
        assert telemetry.recent(CHAT_COMPLETED) == []
        # partial reply is still stored
        assert memory.persisted[0][2][-1] == {"role": "assistant", "content": "ab"}

    async def test_unexpected_error_is_internal(self, telemetry, catalog):
        class BrokenLLM(FakeLLM):
            async def stream_chat(self, model, messages):
                raise RuntimeError("bug")
                yield  # pragma: no cover

        orchestrator = make_orchestrator(BrokenLLM(), telemetry, catalog)

        _, events = await run_request(orchestrator, ChatRequest(message="Hi there"))

        assert events == [("error", {"message": "Internal server error", "code": "internal_error"})]


class TestDisconnect:

    async def test_disconnect_cancels_and_persists(self, telemetry, catalog):
        memory = FakeMemory()
        orchestrator = make_orchestrator(FakeLLM(chunks=("Hel", "lo"), hang_after=1), telemetry, catalog,
                                         memory=memory)

        emitter = orchestrator.start(ChatRequest(message="Hi there"), user_id="42", request_id="req-2")
        stream = emitter.stream()
        assert await stream.__anext__() == ": connected\n\n"
        assert (await stream.__anext__()).startswith("event: token")

        await stream.aclose()
        await asyncio.wait_for(memory.persisted_event.wait(), timeout=1)
        await orchestrator.drain()

        assert [type(e).__name__ for e in emitter.events_sent] == ["TokenEvent"]
        assert memory.persisted[0][2] == [
            {"role": "user", "content": "Hi there"},
            {"role": "assistant", "content": "Hel"},
        ]
        assert telemetry.recent(CHAT_COMPLETED) == []
        assert telemetry.recent(CHAT_ERROR) == []
