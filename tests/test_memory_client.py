"""
Tests for MemoryServiceClient (httpx.MockTransport, no network)
"""
import json

import httpx
import pytest

from config.settings import MemoryServiceConfig
from schemas.memory import Fact
from services.errors import ClientError, NetworkError, OperationTimeoutError, RateLimitedError, ServerError
from services.memory_client import MemoryServiceClient


def make_client(handler, **config) -> MemoryServiceClient:
    config.setdefault("base_url", "http://memory.local")
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return MemoryServiceClient(MemoryServiceConfig(**config), http_client=http_client)


class TestSearch:

    async def test_parses_results(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json={"results": [
                {"id": 1, "content": "Likes green tea.", "score": 0.91,
                 "timestamp": "2024-05-01T10:00:00Z", "session_id": "s1"},
                {"id": "2", "text": "Lives in Lisbon.", "score": 1.7, "type": "fact"},
            ]})

        client = make_client(handler, api_key="mem-key")
        collection = client.collection_for("42")
        entries = await client.search(collection, "what do I drink?", limit=16, session_id="s1")

        assert seen["path"] == "/collections/user:42/search"
        assert seen["body"] == {"query": "what do I drink?", "limit": 16,
                                "search_type": "similarity", "session_id": "s1"}
        assert seen["auth"] == "Bearer mem-key"

        first, second = entries
        assert first.id == "1"
        assert first.timestamp.year == 2024
        assert first.provenance.collection == "user:42"
        assert first.provenance.original_length == len("Likes green tea.")
        assert second.content == "Lives in Lisbon."
        assert second.score == 1.0
        assert second.type == "fact"

    async def test_malformed_items_skipped(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"results": [
                {"id": "1", "content": "Likes green tea.", "score": 0.9},
                {"id": "2", "content": "Keeps a journal.", "score": 0.8, "type": "note"},
                {"content": "No id here.", "score": 0.7},
                {"id": "4", "content": "Bad date.", "timestamp": "yesterday"},
                {"id": "5", "content": "Lives in Lisbon.", "score": 0.6, "type": "fact"},
            ]})

        client = make_client(handler)
        entries = await client.search("user:42", "q", limit=10)

        assert [e.id for e in entries] == ["1", "5"]

    async def test_empty_results(self):
        client = make_client(lambda request: httpx.Response(200, json={}))
        assert await client.search("user:1", "q", limit=4) == []

    @pytest.mark.parametrize("status_code, error_type", [
        (429, RateLimitedError),
        (500, ServerError),
        (422, ClientError),
    ])
    async def test_status_mapping(self, status_code, error_type):
        client = make_client(lambda request: httpx.Response(status_code, text="nope"))
        with pytest.raises(error_type) as exc_info:
            await client.search("user:1", "q", limit=4)
        assert exc_info.value.status_code == status_code

    async def test_transport_errors_mapped(self):
        def timeout(request):
            raise httpx.ReadTimeout("timed out", request=request)

        def refused(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(OperationTimeoutError):
            await make_client(timeout).search("user:1", "q", limit=4)
        with pytest.raises(NetworkError):
            await make_client(refused).search("user:1", "q", limit=4)


class TestWrites:

    async def test_add_messages(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(204)

        client = make_client(handler)
        messages = [{"role": "user", "content": "hi"}, {"role": "assistant", "content": "hello"}]
        await client.add_messages("user:7", "session-20240501-120000-ab12", messages)

        assert seen["path"] == "/collections/user:7/sessions/session-20240501-120000-ab12/messages"
        assert seen["body"] == {"messages": messages}

    async def test_add_facts(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"upserted": 2})

        client = make_client(handler)
        facts = [
            Fact(subject="user", predicate="likes", object="tea", confidence=0.9),
            Fact(subject="user", predicate="lives_in", object="Lisbon"),
        ]
        assert await client.add_facts("user:7", facts) == 2
        assert seen["body"]["facts"][1] == {"subject": "user", "predicate": "lives_in", "object": "Lisbon"}

    async def test_close_keeps_injected_client_open(self):
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        client = MemoryServiceClient(MemoryServiceConfig(), http_client=http_client)
        await client.close()
        assert not http_client.is_closed
        await http_client.aclose()
