"""记忆检索降级服务

编排器访问远程记忆服务的唯一入口。调用链（由外到内）：

    CircuitBreaker → 整体截止时间 → RetryManager → 单次超时(asyncio.wait_for) → MemoryServiceClient.search

检索结果经 RetrievalPolicyEngine 整理后缓存 60 秒。任何失败（超时、重试耗尽、
熔断打开、整体截止时间）都降级为缓存结果或 None，get_context 从不抛出异常。
"""
import asyncio
import time
from typing import Dict, List, Optional

from config.logging import get_logger
from config.settings import MemoryServiceConfig, RetrievalConfig
from schemas.memory import Fact, RetrievalPayload
from services.cache import SimpleCache, make_cache_key
from services.circuit_breaker import CircuitBreaker
from services.errors import OperationTimeoutError, classify_error
from services.memory_client import MemoryServiceClient
from services.retrieval_policy import RetrievalPolicyEngine
from services.retry import RetryManager
from services.telemetry import MEMORY_SEARCH_FAILED, MEMORY_SEARCH_OK, TelemetryService

logger = get_logger(__name__)

FALLBACK_CACHE = "cache"
FALLBACK_NO_MEMORY = "no_memory"


class MemoryFallbackService:
    """Fault-tolerant memory retrieval and fire-and-forget writes."""

    def __init__(
        self,
        client: MemoryServiceClient,
        breaker: CircuitBreaker,
        retry: RetryManager,
        policy: RetrievalPolicyEngine,
        telemetry: TelemetryService,
        config: MemoryServiceConfig,
        retrieval: RetrievalConfig,
        cache: Optional[SimpleCache] = None,
    ):
        self.client = client
        self.breaker = breaker
        self.retry = retry
        self.policy = policy
        self.telemetry = telemetry
        self.config = config
        self.retrieval = retrieval
        self.cache = cache or SimpleCache(
            default_ttl=config.cache_ttl_seconds,
            max_entries=config.cache_max_entries,
        )

    @property
    def search_timeout(self) -> float:
        return self.config.effective_search_timeout

    async def get_context(
        self,
        user_id: str,
        query: str,
        cfg: Optional[RetrievalConfig] = None,
        *,
        session_id: Optional[str] = None,
        deadline_s: Optional[float] = None,
    ) -> Optional[RetrievalPayload]:
        """检索并整理记忆上下文

        Args:
            user_id: 用户ID，决定访问的 collection
            query: 检索文本（通常是用户消息）
            cfg: 检索配置，默认使用进程级配置
            session_id: 仅用于遥测与服务端过滤
            deadline_s: 整体截止时间（秒），覆盖重试在内的全部耗时

        Returns:
            RetrievalPayload；失败且无缓存时返回 None
        """
        if not self.config.enabled:
            return None

        cfg = cfg or self.retrieval
        cache_key = make_cache_key(user_id, query)
        started = time.monotonic()

        try:
            payload = await self._search_and_shape(user_id, query, cfg, session_id, deadline_s)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            return self._fallback(user_id, session_id, cache_key, e, started)

        elapsed_ms = (time.monotonic() - started) * 1000
        self.cache.set(cache_key, payload)
        self.telemetry.record(
            MEMORY_SEARCH_OK,
            user_id=user_id,
            session_id=session_id,
            elapsed_ms=round(elapsed_ms, 1),
            total_results=payload.metadata.total_results,
            included_results=payload.metadata.included_results,
            total_tokens=payload.metadata.total_tokens,
        )
        return payload

    async def _search_and_shape(
        self,
        user_id: str,
        query: str,
        cfg: RetrievalConfig,
        session_id: Optional[str],
        deadline_s: Optional[float] = None,
    ) -> RetrievalPayload:
        collection = self.client.collection_for(user_id)
        expires_at = time.monotonic() + deadline_s if deadline_s is not None else None

        async def attempt():
            timeout = self.search_timeout
            if expires_at is not None:
                timeout = max(min(timeout, expires_at - time.monotonic()), 0.0)
            try:
                return await asyncio.wait_for(
                    self.client.search(
                        collection,
                        query,
                        limit=cfg.top_k * 2,
                        search_type=cfg.search_type,
                        session_id=session_id,
                    ),
                    timeout=timeout,
                )
            except asyncio.TimeoutError as e:
                raise OperationTimeoutError(f"memory search exceeded {timeout * 1000:.0f}ms") from e

        async def bounded():
            # 整体截止时间在熔断器内部生效，超时计为依赖失败
            call = self.retry.execute(attempt, name="memory.search", deadline_s=deadline_s)
            if deadline_s is None:
                return await call
            try:
                return await asyncio.wait_for(call, timeout=deadline_s)
            except asyncio.TimeoutError as e:
                raise OperationTimeoutError(f"memory context deadline {deadline_s}s exceeded") from e

        search_started = time.monotonic()
        raw = await self.breaker.execute(bounded)
        query_ms = (time.monotonic() - search_started) * 1000
        return self.policy.process(raw, cfg, query_time_ms=round(query_ms, 1))

    def _fallback(
        self,
        user_id: str,
        session_id: Optional[str],
        cache_key: str,
        error: Exception,
        started: float,
    ) -> Optional[RetrievalPayload]:
        cached = self.cache.get(cache_key)
        fallback = FALLBACK_CACHE if cached is not None else FALLBACK_NO_MEMORY
        error_class = classify_error(error)

        logger.warning(
            f"[MEMORY] Search failed for user {user_id} ({error_class.value}: {error}), "
            f"fallback={fallback}"
        )
        self.telemetry.record(
            MEMORY_SEARCH_FAILED,
            user_id=user_id,
            session_id=session_id,
            reason=str(error) or type(error).__name__,
            error_class=error_class.value,
            fallback=fallback,
            breaker_state=self.breaker.state.value,
            elapsed_ms=round((time.monotonic() - started) * 1000, 1),
        )
        return cached

    # ------------------------------------------------------------------
    # Writes (fire-and-forget from the orchestrator's point of view)
    # ------------------------------------------------------------------

    async def persist_turn(
        self,
        user_id: str,
        session_id: str,
        messages: List[Dict[str, str]],
    ) -> bool:
        """写入一轮对话。熔断打开时跳过；失败只记日志。"""
        if not self.config.enabled:
            return False
        if self.breaker.is_open:
            logger.info(f"[MEMORY] Circuit open, skipping write for session {session_id}")
            return False

        collection = self.client.collection_for(user_id)
        try:
            await self.breaker.execute(
                lambda: asyncio.wait_for(
                    self.client.add_messages(collection, session_id, messages),
                    timeout=self.config.write_timeout_ms / 1000.0,
                )
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                f"[MEMORY] Failed to persist turn for session {session_id} "
                f"({classify_error(e).value}): {e}"
            )
            return False

        logger.debug(f"[MEMORY] Stored {len(messages)} messages for session {session_id}")
        return True

    async def add_facts(
        self,
        user_id: str,
        facts: List[Fact],
        session_id: Optional[str] = None,
    ) -> int:
        """写入事实，返回写入条数。错误按分类抛出，由调用方决定如何处理。"""
        collection = self.client.collection_for(user_id)
        timeout = self.config.write_timeout_ms / 1000.0

        async def write():
            try:
                return await asyncio.wait_for(
                    self.client.add_facts(collection, facts, session_id=session_id),
                    timeout=timeout,
                )
            except asyncio.TimeoutError as e:
                raise OperationTimeoutError(f"fact upsert exceeded {timeout * 1000:.0f}ms") from e

        return await self.breaker.execute(write)
