"""
Shared enumerations for the execution subsystem
"""

from enum import Enum
from typing import Union


class OrderSide(Enum):
    """Order side"""
    BUY = "buy"
    SELL = "sell"

    @classmethod
    def parse(cls, value: Union[str, 'OrderSide']) -> 'OrderSide':
        if isinstance(value, cls):
            return value
        return cls(str(value).lower())


class Urgency(Enum):
    """How quickly an order must be worked"""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"

    @classmethod
    def parse(cls, value: Union[str, 'Urgency']) -> 'Urgency':
        if isinstance(value, cls):
            return value
        return cls(str(value).lower())


class LiquidityLevel(Enum):
    """Order size relative to daily volume, best to worst"""
    VERY_HIGH = "very_high"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    VERY_LOW = "very_low"


class ImpactLevel(Enum):
    """Walk-the-book impact bucket"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    EXTREME = "extreme"


class PressureDirection(Enum):
    """Dominant side of resting depth"""
    BUY = "buy"
    SELL = "sell"
    NEUTRAL = "neutral"


class SlippageRisk(Enum):
    """Slippage risk bands"""
    VERY_LOW = "very_low"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    VERY_HIGH = "very_high"
    EXTREME = "extreme"


HIGH_RISK_LEVELS = (SlippageRisk.HIGH, SlippageRisk.VERY_HIGH, SlippageRisk.EXTREME)


def signed_slippage(side: OrderSide, price: float, reference: float) -> float:
    """Slippage of price vs reference, positive when unfavorable for the side"""
    if not reference:
        return 0.0
    if side == OrderSide.BUY:
        return (price - reference) / reference
    return (reference - price) / reference
