"""缓存服务

进程内 TTL 缓存，用于记忆检索结果的短期兜底。
读多写少；写入是按 key 的幂等覆盖，并发下最后写入者生效。
"""
import time
import hashlib
from typing import Optional, Any, Callable

from config.logging import get_logger


logger = get_logger(__name__)


class SimpleCache:
    """简单的内存缓存实现"""

    def __init__(
        self,
        default_ttl: float = 60,
        max_entries: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            default_ttl: 默认缓存过期时间（秒）
            max_entries: 最大条目数，超出时先清理过期项，再淘汰最早写入的项
            clock: 时间源（测试可注入）
        """
        self._cache: dict[str, tuple[Any, float]] = {}  # {key: (value, expire_time)}
        self._default_ttl = default_ttl
        self._max_entries = max_entries
        self._clock = clock

    def __len__(self) -> int:
        return len(self._cache)

    def get(self, key: str) -> Optional[Any]:
        """获取缓存值"""
        item = self._cache.get(key)
        if item is None:
            return None

        value, expire_time = item
        if self._clock() > expire_time:
            self._cache.pop(key, None)
            return None

        return value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """设置缓存值"""
        if ttl is None:
            ttl = self._default_ttl
        # re-insert so dict order tracks write order
        self._cache.pop(key, None)
        self._cache[key] = (value, self._clock() + ttl)

        if len(self._cache) > self._max_entries:
            self.cleanup()
        while len(self._cache) > self._max_entries:
            oldest = next(iter(self._cache))
            del self._cache[oldest]

    def delete(self, key: str) -> None:
        """删除缓存"""
        self._cache.pop(key, None)

    def clear(self) -> None:
        """清空所有缓存"""
        self._cache.clear()

    def cleanup(self) -> int:
        """清理过期的缓存，返回清理数量"""
        now = self._clock()
        expired_keys = [
            key for key, (_, expire_time) in self._cache.items()
            if now > expire_time
        ]
        for key in expired_keys:
            del self._cache[key]
        if expired_keys:
            logger.debug(f"[CACHE] Cleaned up {len(expired_keys)} expired entries")
        return len(expired_keys)


def make_cache_key(*parts: str) -> str:
    """生成缓存键（sha256，各部分以 NUL 分隔避免拼接歧义）"""
    key_str = "\x00".join(str(p) for p in parts)
    return hashlib.sha256(key_str.encode("utf-8")).hexdigest()
