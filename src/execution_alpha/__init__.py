"""
Execution Alpha

Order execution engine that turns a parent order into child orders:
- Market depth, liquidity and price impact analysis
- Time-of-day slippage risk and execution timing
- TWAP / VWAP / adaptive scheduled slicing
- Iceberg execution with concurrent hidden children
- Automatic strategy routing across all of the above
"""

from typing import Any, Dict, Optional, Union

from .core import (
    Clock, SystemClock, ManualClock, RandomSource, EventBus, Event, EventType,
    ExecutionAlphaError, TaskNotFoundError, InvalidTaskStateError,
    OrderGatewayError, InsufficientBalanceError,
    OrderSide, Urgency, LiquidityLevel, ImpactLevel, SlippageRisk,
)
from .analysis import MarketDepthAnalyzer, MarketDepthConfig, SlippageTimingModel, SlippageTimingConfig
from .execution import (
    OrderGateway, FillReport, PaperGateway,
    ScheduledSlicer, ScheduledSlicerConfig,
    IcebergSlicer, IcebergConfig,
    ExecutionRouter, RouterConfig, ExecutionOrder, ExecutionStrategy,
)
from .configuration import Config, EngineConfig, load_config
from .logging_config import configure_logging

__version__ = "1.0.0"


def create_execution_router(
    config: Union[EngineConfig, Dict[str, Any], str, None] = None,
    gateway: Optional[OrderGateway] = None,
    clock: Optional[Clock] = None,
    random: Optional[RandomSource] = None,
    setup_logging: bool = True
) -> ExecutionRouter:
    """
    Wire all components into a router sharing one clock, gateway and analyzer

    Args:
        config: EngineConfig, section dictionaries or a YAML path
        gateway: Order gateway; children are simulated when omitted
        clock: Time source (system clock by default)
        random: Random source for iceberg sizing and pacing
        setup_logging: Apply the logging section to structlog and the root logger

    Returns:
        Ready-to-use execution router
    """
    if isinstance(config, str):
        config = load_config(config)
    elif not isinstance(config, EngineConfig):
        config = EngineConfig.from_dict(config)

    if setup_logging:
        configure_logging(config.logging.level, config.logging.renderer)

    clock = clock or SystemClock()
    random = random or RandomSource()

    depth_analyzer = MarketDepthAnalyzer(config.market_depth, clock=clock)

    return ExecutionRouter(
        config=config.router,
        depth_analyzer=depth_analyzer,
        slippage_model=SlippageTimingModel(config.slippage_timing, clock=clock),
        scheduled_slicer=ScheduledSlicer(config.scheduled_slicer, depth_analyzer=depth_analyzer,
                                         gateway=gateway, clock=clock),
        iceberg_slicer=IcebergSlicer(config.iceberg, depth_analyzer=depth_analyzer,
                                     gateway=gateway, clock=clock, random=random),
        gateway=gateway,
        clock=clock,
        random=random
    )


def quick_analyze(
    book: Any,
    symbol: str,
    side: Union[str, OrderSide],
    size: float,
    daily_volume: Optional[float] = None
) -> Dict[str, Any]:
    """
    One-shot depth, liquidity and impact analysis with a strategy hint

    Args:
        book: Order book snapshot or {'bids': [[price, size], ...], 'asks': [...]}
        symbol: Instrument
        side: 'buy' or 'sell'
        size: Order quantity
        daily_volume: Daily traded volume; liquidity reads very low without it

    Returns:
        depth_analysis, liquidity_assessment, impact_estimation and recommendation
    """
    analyzer = MarketDepthAnalyzer()
    if daily_volume:
        analyzer.update_daily_volume(symbol, daily_volume)

    depth = analyzer.analyze_depth(book, symbol)
    liquidity = analyzer.assess_liquidity(symbol, size, depth)
    impact = analyzer.estimate_impact_cost(symbol, side, size, book)

    if impact['impact_level'] == ImpactLevel.EXTREME:
        strategy, reason = ExecutionStrategy.ICEBERG, 'Extreme impact, strongly recommend iceberg'
    elif impact['impact_level'] == ImpactLevel.HIGH or liquidity['level'] == LiquidityLevel.VERY_LOW:
        strategy, reason = ExecutionStrategy.TWAP, 'High impact, recommend TWAP execution'
    elif liquidity['level'] == LiquidityLevel.LOW:
        strategy, reason = ExecutionStrategy.VWAP, 'Low liquidity, recommend VWAP'
    else:
        strategy, reason = ExecutionStrategy.DIRECT, 'Sufficient liquidity, direct execution OK'

    return {
        'depth_analysis': depth,
        'liquidity_assessment': liquidity,
        'impact_estimation': impact,
        'recommendation': {'strategy': strategy, 'reason': reason},
    }


__all__ = [
    'Clock',
    'SystemClock',
    'ManualClock',
    'RandomSource',
    'EventBus',
    'Event',
    'EventType',
    'ExecutionAlphaError',
    'TaskNotFoundError',
    'InvalidTaskStateError',
    'OrderGatewayError',
    'InsufficientBalanceError',
    'OrderSide',
    'Urgency',
    'LiquidityLevel',
    'ImpactLevel',
    'SlippageRisk',
    'MarketDepthAnalyzer',
    'MarketDepthConfig',
    'SlippageTimingModel',
    'SlippageTimingConfig',
    'OrderGateway',
    'FillReport',
    'PaperGateway',
    'ScheduledSlicer',
    'ScheduledSlicerConfig',
    'IcebergSlicer',
    'IcebergConfig',
    'ExecutionRouter',
    'RouterConfig',
    'ExecutionOrder',
    'ExecutionStrategy',
    'Config',
    'EngineConfig',
    'load_config',
    'configure_logging',
    'create_execution_router',
    'quick_analyze',
]
