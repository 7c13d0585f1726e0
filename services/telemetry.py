"""遥测服务

记录编排过程中的结构化事件：
    - memory_search_ok / memory_search_failed
    - chat_completed / chat_error

每条记录写日志、保留在有界的近期窗口中，并可选地交给持久化 sink
（后台任务，失败只记日志，不影响请求）。
"""
import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set

from config.logging import get_logger

logger = get_logger(__name__)

MEMORY_SEARCH_OK = "memory_search_ok"
MEMORY_SEARCH_FAILED = "memory_search_failed"
CHAT_COMPLETED = "chat_completed"
CHAT_ERROR = "chat_error"

MAX_RECENT_RECORDS = 500


@dataclass
class TelemetryRecord:
    type: str
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)


TelemetrySink = Callable[[TelemetryRecord], Awaitable[None]]


class TelemetryService:
    """Telemetry collaborator used by the orchestrator and memory path."""

    def __init__(self, sink: Optional[TelemetrySink] = None, max_recent: int = MAX_RECENT_RECORDS):
        self._sink = sink
        self._recent: Deque[TelemetryRecord] = deque(maxlen=max_recent)
        self._pending: Set[asyncio.Task] = set()

    def record(
        self,
        event_type: str,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        **payload: Any,
    ) -> TelemetryRecord:
        rec = TelemetryRecord(
            type=event_type,
            user_id=user_id,
            session_id=session_id,
            payload=payload,
        )
        self._recent.append(rec)

        level = logger.warning if event_type in (MEMORY_SEARCH_FAILED, CHAT_ERROR) else logger.info
        details = " ".join(f"{k}={v}" for k, v in payload.items())
        level(f"[TELEMETRY] {event_type} user={user_id} session={session_id} {details}")

        if self._sink is not None:
            self._spawn(rec)
        return rec

    def _spawn(self, rec: TelemetryRecord) -> None:
        try:
            task = asyncio.get_running_loop().create_task(self._persist(rec))
        except RuntimeError:
            logger.debug(f"[TELEMETRY] No running loop, {rec.type} not persisted")
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _persist(self, rec: TelemetryRecord) -> None:
        try:
            await self._sink(rec)
        except Exception as e:
            logger.error(f"[TELEMETRY] Failed to persist {rec.type}: {e}")

    def recent(self, event_type: Optional[str] = None, limit: int = 50) -> List[TelemetryRecord]:
        """最近的记录（新的在后）"""
        records = [r for r in self._recent if event_type is None or r.type == event_type]
        return records[-limit:]

    async def flush(self, timeout: float = 5.0) -> None:
        """等待未完成的持久化任务（关闭时调用）"""
        if not self._pending:
            return
        done, pending = await asyncio.wait(set(self._pending), timeout=timeout)
        if pending:
            logger.warning(f"[TELEMETRY] {len(pending)} writes still pending at shutdown")
