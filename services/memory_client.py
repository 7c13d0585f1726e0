"""远程记忆服务客户端

对外部长期记忆服务的薄封装（HTTP JSON）：
    - search:       POST /collections/{collection}/search
    - add_messages: POST /collections/{collection}/sessions/{session}/messages
    - add_facts:    POST /collections/{collection}/facts

HTTP 与传输层异常统一映射为 services.errors 中的分类。
超时、重试与熔断由 MemoryFallbackService 负责，这里不做。
"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from config.logging import get_logger
from config.settings import MemoryServiceConfig
from schemas.memory import Fact, MemoryEntry, Provenance
from services.errors import error_for_status, from_httpx_error

logger = get_logger(__name__)


class MemoryServiceClient:
    """Memory service HTTP client."""

    def __init__(
        self,
        config: MemoryServiceConfig,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(
            limits=httpx.Limits(
                max_connections=100,
                max_keepalive_connections=20,
                keepalive_expiry=60,
            ),
            # per-call deadlines are enforced by the caller
            timeout=httpx.Timeout(connect=5.0, read=10.0, write=5.0, pool=5.0),
        )

    def collection_for(self, user_id: str) -> str:
        """Per-user namespace; nothing else may be addressed."""
        return f"{self.config.collection_prefix}{user_id}"

    def _url(self, collection: str, *parts: str) -> str:
        path = "/".join(quote(p, safe="") for p in ("collections", collection, *parts))
        return f"{self.config.base_url.rstrip('/')}/{path}"

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return headers

    async def _post(self, url: str, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = await self.http_client.post(url, json=body, headers=self._headers())
        except httpx.HTTPError as e:
            raise from_httpx_error(e) from e

        if response.status_code >= 400:
            raise error_for_status(
                response.status_code,
                f"Memory service returned {response.status_code}: {response.text[:200]}",
            )
        if not response.content:
            return {}
        return response.json()

    async def search(
        self,
        collection: str,
        query: str,
        limit: int,
        search_type: str = "similarity",
        session_id: Optional[str] = None,
    ) -> List[MemoryEntry]:
        """Search one collection. Results keep the service's order."""
        body: Dict[str, Any] = {"query": query, "limit": limit, "search_type": search_type}
        if session_id:
            body["session_id"] = session_id

        data = await self._post(self._url(collection, "search"), body)
        entries = []
        for item in data.get("results", []):
            try:
                entries.append(self._to_entry(item, collection, search_type))
            except (ValidationError, KeyError, TypeError, ValueError, AttributeError) as e:
                logger.warning(f"[MEMORY] Skipping malformed result in {collection}: {e}")
        return entries

    @staticmethod
    def _to_entry(item: Dict[str, Any], collection: str, search_type: str) -> MemoryEntry:
        content = item.get("content") or item.get("text") or ""
        timestamp = item.get("timestamp") or item.get("created_at")
        return MemoryEntry(
            id=str(item["id"]),
            content=content,
            score=min(max(float(item.get("score", 0.0)), 0.0), 1.0),
            timestamp=datetime.fromisoformat(timestamp.replace("Z", "+00:00")) if timestamp else None,
            session_id=item.get("session_id"),
            type=item.get("type", "message"),
            provenance=Provenance(
                collection=collection,
                search_type=search_type,
                original_length=len(content),
                was_redacted=bool(item.get("was_redacted", False)),
            ),
        )

    async def add_messages(
        self,
        collection: str,
        session_id: str,
        messages: List[Dict[str, str]],
    ) -> None:
        await self._post(
            self._url(collection, "sessions", session_id, "messages"),
            {"messages": messages},
        )

    async def add_facts(
        self,
        collection: str,
        facts: List[Fact],
        session_id: Optional[str] = None,
    ) -> int:
        body: Dict[str, Any] = {"facts": [f.model_dump(exclude_none=True) for f in facts]}
        if session_id:
            body["session_id"] = session_id
        data = await self._post(self._url(collection, "facts"), body)
        return int(data.get("upserted", len(facts)))

    async def close(self):
        """关闭HTTP客户端"""
        if self._owns_client:
            await self.http_client.aclose()
