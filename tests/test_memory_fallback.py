"""
Tests for MemoryFallbackService

Breaker + retry + per-attempt timeout around the memory search, degrading
to a cached payload or None and never raising to the caller.
"""
import asyncio

import httpx
import pytest

from config.settings import MemoryServiceConfig, RetrievalConfig
from schemas.memory import Fact
from services.circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitState
from services.errors import CircuitOpenError, ClientError, ErrorClass, OperationTimeoutError
from services.memory_client import MemoryServiceClient
from services.memory_fallback import MemoryFallbackService
from services.retrieval_policy import RetrievalPolicyEngine
from services.retry import RetryManager, RetryPolicy
from services.telemetry import MEMORY_SEARCH_FAILED, MEMORY_SEARCH_OK, TelemetryService


RESULTS = {"results": [
    {"id": "1", "content": "Prefers window seats.", "score": 0.9, "timestamp": "2024-05-01T10:00:00Z"},
    {"id": "2", "content": "Allergic to peanuts.", "score": 0.8, "timestamp": "2024-04-01T10:00:00Z"},
]}


class Transport:
    """Scriptable memory-service transport that counts requests."""

    def __init__(self):
        self.calls = 0
        self.mode = "ok"
        self.script = []  # per-call modes, consumed before falling back to mode

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        mode = self.script.pop(0) if self.script else self.mode
        if mode == "timeout":
            raise httpx.ReadTimeout("timed out", request=request)
        if mode == "network":
            raise httpx.ConnectError("connection refused", request=request)
        if mode == "hang":
            await asyncio.sleep(10)
        if mode == "error":
            return httpx.Response(500, text="down")
        if mode == "rate_limited":
            return httpx.Response(429, text="slow down")
        if mode == "mixed":
            bad = {"id": "3", "content": "Keeps a journal.", "score": 0.7, "type": "note"}
            return httpx.Response(200, json={"results": RESULTS["results"] + [bad]})
        if mode == "bad_request":
            return httpx.Response(400, text="invalid fact")
        if request.url.path.endswith("/facts"):
            return httpx.Response(200, json={"upserted": 1})
        if request.url.path.endswith("/messages"):
            return httpx.Response(204)
        return httpx.Response(200, json=RESULTS)


@pytest.fixture
def transport():
    return Transport()


@pytest.fixture
def telemetry():
    return TelemetryService()


@pytest.fixture
def breaker(clock):
    return CircuitBreaker("memory_service", CircuitBreakerConfig(), clock=clock)


@pytest.fixture
def service(transport, telemetry, breaker, clock, recording_sleep):
    config = MemoryServiceConfig(base_url="http://memory.local", search_timeout_ms=50,
                                 cross_region_latency_ms=0, search_timeout_cap_ms=50)
    client = MemoryServiceClient(config, http_client=httpx.AsyncClient(transport=httpx.MockTransport(transport)))
    return MemoryFallbackService(
        client=client,
        breaker=breaker,
        retry=RetryManager(sleep=recording_sleep),
        policy=RetrievalPolicyEngine(),
        telemetry=telemetry,
        config=config,
        retrieval=RetrievalConfig(),
    )


class TestGetContext:

    async def test_success_records_ok(self, service, telemetry):
        payload = await service.get_context("42", "where do I sit?")

        assert [m.id for m in payload.memories] == ["1", "2"]
        ok = telemetry.recent(MEMORY_SEARCH_OK)
        assert len(ok) == 1
        assert ok[0].payload["included_results"] == 2

    async def test_disabled_returns_none(self, service, transport):
        service.config = service.config.model_copy(update={"enabled": False})
        assert await service.get_context("42", "q") is None
        assert transport.calls == 0

    async def test_five_timeouts_open_circuit(self, service, transport, breaker, telemetry):
        transport.mode = "timeout"
        for _ in range(5):
            assert await service.get_context("42", "q") is None

        assert breaker.state == CircuitState.OPEN
        assert transport.calls == 5

        # sixth call is short-circuited before reaching the transport
        assert await service.get_context("42", "q") is None
        assert transport.calls == 5

        failures = telemetry.recent(MEMORY_SEARCH_FAILED)
        assert len(failures) == 6
        assert failures[0].payload["error_class"] == "timeout"
        assert failures[-1].payload["error_class"] == "circuit_open"
        assert failures[-1].payload["breaker_state"] == "open"
        assert all(f.payload["fallback"] == "no_memory" for f in failures)

    async def test_falls_back_to_cache(self, service, transport, telemetry):
        fresh = await service.get_context("42", "seat?")
        transport.mode = "error"

        cached = await service.get_context("42", "seat?")

        assert cached == fresh
        failure = telemetry.recent(MEMORY_SEARCH_FAILED)[-1]
        assert failure.payload["fallback"] == "cache"
        assert failure.payload["error_class"] == "server_error"

    async def test_server_error_retried_once(self, service, transport):
        transport.mode = "error"
        assert await service.get_context("42", "q") is None
        assert transport.calls == 2

    async def test_per_attempt_timeout(self, service, transport, telemetry):
        transport.mode = "hang"
        assert await service.get_context("42", "q") is None
        assert telemetry.recent(MEMORY_SEARCH_FAILED)[-1].payload["error_class"] == "timeout"

    async def test_overall_deadline(self, service, transport, telemetry):
        transport.mode = "hang"
        assert await service.get_context("42", "q", deadline_s=0.01) is None
        failure = telemetry.recent(MEMORY_SEARCH_FAILED)[-1]
        assert failure.payload["error_class"] == "timeout"

    async def test_cache_is_per_user(self, service, transport):
        await service.get_context("42", "seat?")
        transport.mode = "error"
        assert await service.get_context("43", "seat?") is None

    async def test_malformed_result_skipped(self, service, transport, breaker):
        transport.mode = "mixed"
        payload = await service.get_context("42", "q")

        assert [m.id for m in payload.memories] == ["1", "2"]
        assert breaker.failure_count == 0


class TestDeadlinePath:
    """Searches bounded by the overall context deadline, as the chat path calls them."""

    async def test_rate_limited_opens_circuit(self, service, transport, breaker, telemetry):
        service.retry = RetryManager()
        transport.mode = "rate_limited"

        for _ in range(5):
            assert await service.get_context("42", "q", deadline_s=0.7) is None

        assert breaker.state == CircuitState.OPEN
        assert transport.calls == 5

        assert await service.get_context("42", "q", deadline_s=0.7) is None
        assert transport.calls == 5

        failures = telemetry.recent(MEMORY_SEARCH_FAILED)
        assert failures[0].payload["error_class"] == "rate_limited"
        assert failures[-1].payload["error_class"] == "circuit_open"

    async def test_network_error_then_hang_counts_as_failure(self, service, transport, breaker, telemetry):
        transport.script = ["network", "hang"]

        assert await service.get_context("42", "q", deadline_s=0.7) is None

        assert transport.calls == 2
        assert breaker.failure_count == 1
        assert telemetry.recent(MEMORY_SEARCH_FAILED)[-1].payload["error_class"] == "timeout"

    async def test_deadline_during_backoff_counts_as_failure(self, service, transport, breaker, telemetry):
        async def stalled_sleep(delay):
            await asyncio.sleep(10)

        service.retry = RetryManager(
            policies={ErrorClass.SERVER_ERROR: RetryPolicy(max_attempts=2, uniform_range_s=(0.01, 0.01))},
            sleep=stalled_sleep,
        )
        transport.mode = "error"

        assert await service.get_context("42", "q", deadline_s=0.1) is None

        assert transport.calls == 1
        assert breaker.failure_count == 1
        assert telemetry.recent(MEMORY_SEARCH_FAILED)[-1].payload["error_class"] == "timeout"


class TestWrites:

    async def test_persist_turn(self, service, transport):
        messages = [{"role": "user", "content": "hi"}]
        assert await service.persist_turn("42", "session-20240501-120000-ab12", messages) is True
        assert transport.calls == 1

    async def test_persist_turn_skipped_when_open(self, service, transport, breaker):
        transport.mode = "timeout"
        for _ in range(5):
            await service.get_context("42", "q")
        calls = transport.calls

        assert await service.persist_turn("42", "s", [{"role": "user", "content": "hi"}]) is False
        assert transport.calls == calls

    async def test_persist_turn_failure_is_swallowed(self, service, transport):
        transport.mode = "error"
        assert await service.persist_turn("42", "s", [{"role": "user", "content": "hi"}]) is False

    async def test_add_facts(self, service):
        facts = [Fact(subject="user", predicate="likes", object="tea")]
        assert await service.add_facts("42", facts) == 1

    async def test_add_facts_bad_request_does_not_trip(self, service, transport, breaker):
        transport.mode = "bad_request"
        facts = [Fact(subject="user", predicate="likes", object="tea")]
        for _ in range(6):
            with pytest.raises(ClientError) as exc_info:
                await service.add_facts("42", facts)
            assert exc_info.value.status_code == 400
        assert breaker.state == CircuitState.CLOSED

    async def test_add_facts_timeout_is_classified(self, service, transport):
        service.config = service.config.model_copy(update={"write_timeout_ms": 20})
        transport.mode = "hang"

        with pytest.raises(OperationTimeoutError):
            await service.add_facts("42", [Fact(subject="user", predicate="likes", object="tea")])

    async def test_add_facts_rejected_when_open(self, service, transport):
        transport.mode = "timeout"
        for _ in range(5):
            await service.get_context("42", "q")

        with pytest.raises(CircuitOpenError):
            await service.add_facts("42", [Fact(subject="user", predicate="likes", object="tea")])
