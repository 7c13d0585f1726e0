"""SSE 流发射器

管理单个请求的出站事件流状态机：

    OPEN --token--> OPEN
    OPEN --usage--> USAGE_SENT --done--> CLOSED
    OPEN --error--> CLOSED
    OPEN/USAGE_SENT --disconnect--> CLOSED（不再发送任何事件）

事件经 asyncio.Queue 交给 stream()，后者作为 StreamingResponse 的 body 迭代器：
先输出一条注释行以立即冲刷响应头，空闲时按间隔输出心跳注释。
"""
import asyncio
import time
from enum import Enum
from typing import Callable, Dict, List, Optional, AsyncIterator

from config.logging import get_logger
from schemas.chat import (
    DoneEvent,
    ErrorEvent,
    SSEEvent,
    TokenEvent,
    UsageEvent,
    format_comment,
    format_sse,
)

logger = get_logger(__name__)

SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

_CLOSE = object()


class StreamState(str, Enum):
    OPEN = "open"
    USAGE_SENT = "usage_sent"
    CLOSED = "closed"


class StreamStateError(RuntimeError):
    """Raised on an event that the current stream state does not allow."""


class SSEStreamEmitter:
    """Per-request SSE event stream."""

    def __init__(self, request_id: str, heartbeat_interval: float = 10.0):
        self.request_id = request_id
        self.heartbeat_interval = heartbeat_interval
        self.state = StreamState.OPEN
        self.disconnected = False
        self.events_sent: List[SSEEvent] = []
        self._queue: asyncio.Queue = asyncio.Queue()
        self._opened = asyncio.Event()
        self._disconnect_callbacks: List[Callable[[], None]] = []

    @property
    def headers(self) -> Dict[str, str]:
        return {**SSE_HEADERS, "X-Request-Id": self.request_id}

    @property
    def is_closed(self) -> bool:
        return self.state == StreamState.CLOSED

    def on_disconnect(self, callback: Callable[[], None]) -> None:
        self._disconnect_callbacks.append(callback)

    async def wait_opened(self, timeout: Optional[float] = None) -> bool:
        """Wait until the response headers have been handed to the server."""
        try:
            await asyncio.wait_for(self._opened.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    # ------------------------------------------------------------------
    # Event API
    # ------------------------------------------------------------------

    def _emit(self, event: SSEEvent) -> None:
        self.events_sent.append(event)
        self._queue.put_nowait(event)

    def send_token(self, text: str) -> bool:
        if self.is_closed:
            return False
        if self.state != StreamState.OPEN:
            raise StreamStateError(f"token after {self.state.value}")
        self._emit(TokenEvent(text=text))
        return True

    def send_usage(self, tokens_in: int, tokens_out: int, cost_usd: float, model: str) -> bool:
        if self.is_closed:
            return False
        if self.state != StreamState.OPEN:
            raise StreamStateError(f"usage after {self.state.value}")
        self._emit(UsageEvent(tokens_in=tokens_in, tokens_out=tokens_out, cost_usd=cost_usd, model=model))
        self.state = StreamState.USAGE_SENT
        return True

    def send_done(self, finish_reason: str = "stop") -> bool:
        if self.is_closed:
            return False
        if self.state != StreamState.USAGE_SENT:
            raise StreamStateError("done before usage")
        self._emit(DoneEvent(finish_reason=finish_reason))
        self._close()
        return True

    def send_error(self, message: str, code: str) -> bool:
        if self.is_closed:
            return False
        if self.state != StreamState.OPEN:
            raise StreamStateError(f"error after {self.state.value}")
        self._emit(ErrorEvent(message=message, code=code))
        self._close()
        return True

    def _close(self) -> None:
        self.state = StreamState.CLOSED
        self._queue.put_nowait(_CLOSE)

    def disconnect(self) -> None:
        """客户端断开：关闭流并通知上游取消"""
        if self.disconnected:
            return
        self.disconnected = True
        was_closed = self.is_closed
        if not was_closed:
            self._close()
            logger.info(f"[SSE] Client disconnected before completion (request {self.request_id})")
        for callback in self._disconnect_callbacks:
            try:
                callback()
            except Exception as e:
                logger.error(f"[SSE] Disconnect callback failed: {e}")

    # ------------------------------------------------------------------
    # Wire
    # ------------------------------------------------------------------

    async def stream(self) -> AsyncIterator[str]:
        """Body iterator for StreamingResponse."""
        finished = False
        self._opened.set()
        try:
            yield format_comment("connected")
            while True:
                try:
                    item = await asyncio.wait_for(self._queue.get(), timeout=self.heartbeat_interval)
                except asyncio.TimeoutError:
                    if self.is_closed:
                        break
                    logger.debug(f"[SSE] heartbeat {self.request_id}")
                    yield format_comment(f"heartbeat {int(time.time() * 1000)}")
                    continue
                if item is _CLOSE:
                    finished = True
                    break
                yield format_sse(item)
        finally:
            if not finished:
                self.disconnect()
