"""模型费率目录

models_pricing 表的进程内只读快照。管理端更新费率后调用 invalidate()，
下一次计费前 ensure_fresh() 会重新加载。
"""
import asyncio
from typing import Awaitable, Callable, Dict, List, Optional

from config.logging import get_logger
from schemas.pricing import ModelPricing

logger = get_logger(__name__)

PricingLoader = Callable[[], Awaitable[List[ModelPricing]]]


class PricingCatalog:
    """Pricing lookup with explicit invalidation."""

    def __init__(self, loader: Optional[PricingLoader] = None, initial: Optional[List[ModelPricing]] = None):
        self._loader = loader
        self._prices: Dict[str, ModelPricing] = {p.model: p for p in (initial or [])}
        self._stale = loader is not None and initial is None
        self._lock = asyncio.Lock()

    @property
    def is_stale(self) -> bool:
        return self._stale

    def lookup(self, model: str) -> Optional[ModelPricing]:
        return self._prices.get(model)

    def models(self) -> List[str]:
        return sorted(self._prices)

    def invalidate(self) -> None:
        """标记快照过期（管理端费率更新后调用）"""
        self._stale = True
        logger.info("[USAGE] Pricing catalog invalidated")

    async def refresh(self) -> None:
        if self._loader is None:
            self._stale = False
            return
        async with self._lock:
            prices = await self._loader()
            self._prices = {p.model: p for p in prices}
            self._stale = False
        logger.info(f"[USAGE] Pricing catalog loaded: {len(self._prices)} models")

    async def ensure_fresh(self) -> None:
        """过期时重新加载；加载失败保留旧快照"""
        if not self._stale:
            return
        try:
            await self.refresh()
        except Exception as e:
            logger.error(f"[USAGE] Pricing reload failed, keeping {len(self._prices)} cached entries: {e}")
