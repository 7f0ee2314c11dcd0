"""
Market Analysis Module

Pre-trade analysis feeding the execution strategies:
- Order book depth, pressure and liquidity distribution
- Liquidity classification and price impact estimation
- Slippage history by time-of-day bucket and known risk windows
- Execution delay and optimal timing recommendations
"""

from .market_depth import MarketDepthAnalyzer, MarketDepthConfig, OrderBookSnapshot, OrderBookLevel
from .slippage_timing import SlippageTimingModel, SlippageTimingConfig, PeriodType, check_known_risk_periods

__all__ = [
    'MarketDepthAnalyzer',
    'MarketDepthConfig',
    'OrderBookSnapshot',
    'OrderBookLevel',
    'SlippageTimingModel',
    'SlippageTimingConfig',
    'PeriodType',
    'check_known_risk_periods'
]
