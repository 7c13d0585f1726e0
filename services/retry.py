"""重试管理

按错误类别查表重试幂等的远程调用（带抖动的指数退避）。
未列出的类别（超时、客户端错误、熔断、未知）只执行一次。
"""
import asyncio
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from config.logging import get_logger
from services.errors import ErrorClass, classify_error

logger = get_logger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry policy for one error class. Attempts include the first call."""
    max_attempts: int = 1
    base_delay_s: float = 0.0
    max_delay_s: float = 0.0
    jitter: float = 0.25
    uniform_range_s: Optional[tuple] = None  # (low, high) overrides exponential backoff


RETRY_POLICIES: Dict[ErrorClass, RetryPolicy] = {
    ErrorClass.RATE_LIMITED:    RetryPolicy(max_attempts=3, base_delay_s=1.0, max_delay_s=10.0),
    ErrorClass.SERVER_ERROR:    RetryPolicy(max_attempts=2, base_delay_s=0.5, max_delay_s=2.0),
    ErrorClass.GATEWAY_TIMEOUT: RetryPolicy(max_attempts=2),
    ErrorClass.NETWORK_ERROR:   RetryPolicy(max_attempts=2, uniform_range_s=(0.1, 0.5)),
    ErrorClass.CLIENT_ERROR:    RetryPolicy(max_attempts=1),
    ErrorClass.TIMEOUT:         RetryPolicy(max_attempts=1),
    ErrorClass.CIRCUIT_OPEN:    RetryPolicy(max_attempts=1),
    ErrorClass.UNKNOWN:         RetryPolicy(max_attempts=1),
}


class RetryManager:
    """Runs an operation and retries it according to the policy for its error class."""

    def __init__(
        self,
        policies: Optional[Dict[ErrorClass, RetryPolicy]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.policies = dict(RETRY_POLICIES)
        if policies:
            self.policies.update(policies)
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._clock = clock

    def policy_for(self, error_class: ErrorClass) -> RetryPolicy:
        return self.policies.get(error_class, RetryPolicy())

    def compute_delay(self, policy: RetryPolicy, attempt: int) -> float:
        """Delay before the retry that follows failed ``attempt`` (1-based).

        ``min(base * 2**(attempt-1), cap)`` then ±jitter uniformly.
        """
        if policy.uniform_range_s:
            low, high = policy.uniform_range_s
            return self._rng.uniform(low, high)
        if policy.base_delay_s <= 0:
            return 0.0
        delay = min(policy.base_delay_s * (2 ** (attempt - 1)), policy.max_delay_s)
        return delay * self._rng.uniform(1 - policy.jitter, 1 + policy.jitter)

    async def execute(
        self,
        op: Callable[[], Awaitable[Any]],
        classify: Callable[[BaseException], ErrorClass] = classify_error,
        name: str = "operation",
        deadline_s: Optional[float] = None,
    ) -> Any:
        """Run ``op`` until it succeeds or its error class runs out of attempts.

        Args:
            op: Zero-argument coroutine function; must be idempotent.
            classify: Maps a raised exception to an ErrorClass.
            name: Label used in log messages.
            deadline_s: Overall time budget. A retry whose backoff would end past
                it is not attempted; the last error is raised instead.

        Returns:
            The result of the first successful attempt.

        Raises:
            The last error once the policy's attempts are exhausted.
        """
        expires_at = self._clock() + deadline_s if deadline_s is not None else None
        attempt = 0
        while True:
            attempt += 1
            try:
                return await op()
            except Exception as e:
                error_class = classify(e)
                policy = self.policy_for(error_class)
                if attempt >= policy.max_attempts:
                    if policy.max_attempts > 1:
                        logger.warning(
                            f"[RETRY] {name} gave up after {attempt} attempts ({error_class.value}): {e}"
                        )
                    raise
                delay = self.compute_delay(policy, attempt)
                if expires_at is not None and self._clock() + delay >= expires_at:
                    logger.warning(
                        f"[RETRY] {name} out of time after {attempt} attempts ({error_class.value}): {e}"
                    )
                    raise
                logger.info(
                    f"[RETRY] {name} attempt {attempt}/{policy.max_attempts} failed "
                    f"({error_class.value}), retrying in {delay:.2f}s"
                )
                if delay > 0:
                    await self._sleep(delay)
