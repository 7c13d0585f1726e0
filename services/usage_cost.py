"""用量计费

根据 token 数与费率计算单次请求费用。内部保持完整浮点精度，
存储/传输时四舍五入到 6 位小数，展示时 4 位。
"""
from dataclasses import dataclass
from typing import Optional

from config.logging import get_logger
from config.settings import PricingConfig
from schemas.pricing import CostBreakdown, ModelPricing
from services.pricing import PricingCatalog
from services.tokens import estimate_usage_tokens

logger = get_logger(__name__)

PER_MILLION = 1_000_000


@dataclass(frozen=True)
class TokenUsage:
    tokens_in: int
    tokens_out: int
    cached_tokens_in: int = 0
    estimated: bool = False


def estimate_usage(prompt_text: str, output_text: str) -> TokenUsage:
    """Usage estimate used when the provider reports none."""
    return TokenUsage(
        tokens_in=estimate_usage_tokens(prompt_text),
        tokens_out=estimate_usage_tokens(output_text),
        estimated=True,
    )


class UsageCostCalculator:
    """Converts token counts into a CostBreakdown."""

    def __init__(self, catalog: PricingCatalog, defaults: Optional[PricingConfig] = None):
        self.catalog = catalog
        self.defaults = defaults or PricingConfig()

    def _default_pricing(self, model: str) -> ModelPricing:
        return ModelPricing(
            model=model,
            input_per_mtok=self.defaults.default_input_per_mtok,
            output_per_mtok=self.defaults.default_output_per_mtok,
            cached_input_per_mtok=self.defaults.default_cached_input_per_mtok,
        )

    def calculate(
        self,
        model: str,
        tokens_in: int,
        tokens_out: int,
        cached_tokens_in: int = 0,
    ) -> CostBreakdown:
        """计算费用

        Args:
            model: 模型名称
            tokens_in: 输入 token 总数（含缓存命中部分）
            tokens_out: 输出 token 数
            cached_tokens_in: 命中提示缓存的输入 token 数

        Returns:
            CostBreakdown；模型不在费率表中时使用默认费率且 model_found=False
        """
        pricing = self.catalog.lookup(model)
        model_found = pricing is not None
        if pricing is None:
            pricing = self._default_pricing(model)
            logger.warning(
                f"[USAGE] Pricing anomaly: model '{model}' not in pricing table, using default rates "
                f"({pricing.input_per_mtok}/{pricing.output_per_mtok} per Mtok)"
            )

        cached = min(max(cached_tokens_in, 0), max(tokens_in, 0))
        regular_in = max(tokens_in - cached, 0)

        input_usd = regular_in / PER_MILLION * pricing.input_per_mtok
        cached_usd = 0.0
        if pricing.cached_input_per_mtok is not None:
            cached_usd = cached / PER_MILLION * pricing.cached_input_per_mtok
        output_usd = max(tokens_out, 0) / PER_MILLION * pricing.output_per_mtok

        return CostBreakdown(
            model=model,
            total_usd=input_usd + cached_usd + output_usd,
            input_usd=input_usd,
            output_usd=output_usd,
            cached_usd=cached_usd,
            model_found=model_found,
        )

    def calculate_usage(self, model: str, usage: TokenUsage) -> CostBreakdown:
        return self.calculate(model, usage.tokens_in, usage.tokens_out, usage.cached_tokens_in)
