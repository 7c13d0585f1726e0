"""计费模型

ModelPricing 为只读费率（USD / 百万 token）；CostBreakdown 为单次请求的派生费用。
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional
from pydantic import BaseModel, ConfigDict


def round_half_up(value: float, places: int) -> float:
    """Round half away from zero at ``places`` decimals.

    The float is first snapped to 12 decimals so binary noise such as
    0.00029249999999999995 rounds like the decimal value it represents.
    """
    quantum = Decimal(1).scaleb(-places)
    snapped = Decimal(repr(round(value, 12)))
    return float(snapped.quantize(quantum, rounding=ROUND_HALF_UP))


class ModelPricing(BaseModel):
    model_config = ConfigDict(frozen=True)

    model: str
    input_per_mtok: float
    output_per_mtok: float
    cached_input_per_mtok: Optional[float] = None


class CostBreakdown(BaseModel):
    model_config = ConfigDict(frozen=True, protected_namespaces=())

    model: str
    total_usd: float
    input_usd: float
    output_usd: float
    cached_usd: float
    model_found: bool

    def storage_total(self) -> float:
        """Total rounded to 6 decimals (persisted / sent to clients)."""
        return round_half_up(self.total_usd, 6)

    def display_total(self) -> float:
        """Total rounded to 4 decimals (UI display only)."""
        return round_half_up(self.total_usd, 4)
