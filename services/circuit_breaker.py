"""熔断器

单个外部依赖的熔断器，三种状态：CLOSED → OPEN → HALF_OPEN。
由启动时的依赖装配创建并注入，多个并发请求共享同一实例，状态转换在
asyncio.Lock 内完成（锁内不做 I/O）。
"""
import asyncio
import inspect
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, Optional

from config.logging import get_logger
from services.errors import CircuitOpenError, ClientError

logger = get_logger(__name__)

MAX_METRIC_EVENTS = 200


class CircuitState(str, Enum):
    CLOSED = "closed"         # Normal operation
    OPEN = "open"             # Failing, calls rejected without invoking the operation
    HALF_OPEN = "half_open"   # Probing, one call in flight at a time


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    open_timeout_s: float = 60.0
    half_open_probes: int = 3


@dataclass
class BreakerMetricEvent:
    timestamp: float
    event: str       # "failure", "trip", "probe", "recover", "short_circuit", "reset"
    state: str
    detail: str = ""


@dataclass
class CircuitBreakerStats:
    total_calls: int = 0
    total_failures: int = 0
    total_short_circuits: int = 0
    trips: int = 0
    events: Deque[BreakerMetricEvent] = field(default_factory=lambda: deque(maxlen=MAX_METRIC_EVENTS))


class CircuitBreaker:
    """Circuit breaker for a single dependency.

    ``execute(op, fallback)`` runs ``op`` (a zero-argument coroutine function)
    unless the breaker is rejecting calls, in which case it returns
    ``fallback()`` or raises CircuitOpenError.
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.stats = CircuitBreakerStats()
        self._clock = clock
        self._lock = asyncio.Lock()
        self._probe_in_flight = False

    @property
    def is_open(self) -> bool:
        """True while calls would be rejected (timeout not yet elapsed)."""
        if self.state != CircuitState.OPEN:
            return False
        return not self._open_timeout_elapsed(self._clock())

    def _open_timeout_elapsed(self, now: float) -> bool:
        return now - (self.last_failure_time or 0.0) >= self.config.open_timeout_s

    def _record_metric(self, event: str, detail: str = "") -> None:
        self.stats.events.append(BreakerMetricEvent(
            timestamp=time.time(),
            event=event,
            state=self.state.value,
            detail=detail,
        ))

    def _transition(self, new_state: CircuitState, detail: str) -> None:
        old = self.state
        self.state = new_state
        logger.info(f"[BREAKER] {self.name}: {old.value} → {new_state.value} ({detail})")

    async def _admit(self) -> bool:
        """Decide whether the call may proceed. Returns True when it is a half-open probe."""
        async with self._lock:
            self.stats.total_calls += 1
            now = self._clock()

            if self.state == CircuitState.OPEN:
                if not self._open_timeout_elapsed(now):
                    self.stats.total_short_circuits += 1
                    self._record_metric("short_circuit", "open")
                    raise CircuitOpenError(self.name)
                self._transition(CircuitState.HALF_OPEN, "open timeout elapsed")
                self.success_count = 0
                self._probe_in_flight = False

            if self.state == CircuitState.HALF_OPEN:
                if self._probe_in_flight:
                    self.stats.total_short_circuits += 1
                    self._record_metric("short_circuit", "probe in flight")
                    raise CircuitOpenError(self.name, f"Circuit breaker '{self.name}' is probing")
                self._probe_in_flight = True
                self._record_metric("probe")
                return True

            return False

    async def execute(
        self,
        op: Callable[[], Awaitable[Any]],
        fallback: Optional[Callable[[], Any]] = None,
    ) -> Any:
        try:
            is_probe = await self._admit()
        except CircuitOpenError:
            if fallback is None:
                raise
            result = fallback()
            if inspect.isawaitable(result):
                result = await result
            return result

        try:
            result = await op()
        except asyncio.CancelledError:
            if is_probe:
                await self._release_probe()
            raise
        except ClientError:
            # caller fault, not a dependency failure
            await self._on_success(is_probe)
            raise
        except Exception as e:
            await self._on_failure(is_probe, e)
            raise

        await self._on_success(is_probe)
        return result

    async def _release_probe(self) -> None:
        async with self._lock:
            self._probe_in_flight = False

    async def _on_success(self, is_probe: bool) -> None:
        async with self._lock:
            if is_probe and self.state == CircuitState.HALF_OPEN:
                self._probe_in_flight = False
                self.success_count += 1
                if self.success_count >= self.config.half_open_probes:
                    self._transition(CircuitState.CLOSED, f"{self.success_count} probes succeeded")
                    self.failure_count = 0
                    self.success_count = 0
                    self._record_metric("recover")
            elif self.state == CircuitState.CLOSED:
                self.failure_count = 0

    async def _on_failure(self, is_probe: bool, error: Exception) -> None:
        async with self._lock:
            now = self._clock()
            self.stats.total_failures += 1
            self.last_failure_time = now
            self._record_metric("failure", type(error).__name__)

            if is_probe and self.state == CircuitState.HALF_OPEN:
                self._probe_in_flight = False
                self.success_count = 0
                self.stats.trips += 1
                self._transition(CircuitState.OPEN, f"probe failed: {type(error).__name__}")
                self._record_metric("trip", "half_open → open")
            elif self.state == CircuitState.CLOSED:
                self.failure_count += 1
                if self.failure_count >= self.config.failure_threshold:
                    self.stats.trips += 1
                    self._transition(CircuitState.OPEN, f"{self.failure_count} consecutive failures")
                    self._record_metric("trip", "closed → open")

    async def reset(self) -> None:
        """Manually reset breaker to CLOSED state."""
        async with self._lock:
            self._transition(CircuitState.CLOSED, "manual reset")
            self.failure_count = 0
            self.success_count = 0
            self._probe_in_flight = False
            self._record_metric("reset")

    def to_dict(self) -> Dict[str, Any]:
        """Serialize breaker state for /health."""
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "last_failure_time": self.last_failure_time,
            "stats": {
                "total_calls": self.stats.total_calls,
                "total_failures": self.stats.total_failures,
                "total_short_circuits": self.stats.total_short_circuits,
                "trips": self.stats.trips,
            },
            "config": {
                "failure_threshold": self.config.failure_threshold,
                "open_timeout_s": self.config.open_timeout_s,
                "half_open_probes": self.config.half_open_probes,
            },
        }
