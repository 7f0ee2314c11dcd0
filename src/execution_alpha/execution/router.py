"""
Execution Router

Top-level engine that picks and supervises an execution strategy per order:
- Market analysis combining depth, liquidity, impact, trend and slippage risk
- Ordered rule-based strategy selection (direct, TWAP, VWAP, iceberg, adaptive)
- Optional pre-execution delay driven by the slippage timing model
- Dispatch to the scheduled and iceberg slicers or a direct order
- Execution records, aggregate statistics and slippage feedback
"""

from typing import Dict, List, Any, Optional, Union
from dataclasses import dataclass, field, replace
from enum import Enum
import itertools
import math
import pandas as pd
import numpy as np
import structlog

from ..core.clock import Clock, SystemClock, RandomSource
from ..core.events import Event, EventBus, EventType
from ..core.types import (
    OrderSide, Urgency, LiquidityLevel, ImpactLevel, SlippageRisk, signed_slippage
)
from ..analysis.market_depth import MarketDepthAnalyzer
from ..analysis.slippage_timing import SlippageTimingModel
from .gateway import OrderGateway, simulated_fill
from .scheduled_slicer import ScheduledSlicer, TaskStatus
from .iceberg_slicer import IcebergSlicer, IcebergStatus, SplitStrategy, DisplayMode

logger = structlog.get_logger(__name__)


class ExecutionStrategy(Enum):
    """Execution strategies the router can dispatch"""
    DIRECT = "direct"
    TWAP = "twap"
    VWAP = "vwap"
    ICEBERG = "iceberg"
    ADAPTIVE = "adaptive"
    AUTO = "auto"


class OrderSizeClass(Enum):
    """Order size relative to daily volume"""
    TINY = "tiny"
    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"
    VERY_LARGE = "very_large"


class RiskLevel(Enum):
    """Aggregate execution risk"""
    VERY_LOW = "very_low"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    VERY_HIGH = "very_high"


LIQUIDITY_SCORES = {
    LiquidityLevel.VERY_HIGH: 10,
    LiquidityLevel.HIGH: 20,
    LiquidityLevel.MEDIUM: 50,
    LiquidityLevel.LOW: 70,
    LiquidityLevel.VERY_LOW: 90,
}

IMPACT_SCORES = {
    ImpactLevel.LOW: 20,
    ImpactLevel.MEDIUM: 50,
    ImpactLevel.HIGH: 75,
    ImpactLevel.EXTREME: 95,
}

STRATEGY_REASONS = {
    ExecutionStrategy.DIRECT: 'Small order or high liquidity, direct execution is most efficient',
    ExecutionStrategy.TWAP: 'Medium order, time distribution reduces market impact',
    ExecutionStrategy.VWAP: 'Large order executed with volume distribution, following market rhythm',
    ExecutionStrategy.ICEBERG: 'Low liquidity or high impact, hiding real order size',
    ExecutionStrategy.ADAPTIVE: 'Complex market conditions, dynamically adjusting execution',
}


@dataclass(frozen=True)
class RouterConfig:
    """Configuration for the execution router"""

    # Size classes (order size / daily volume)
    size_tiny: float = 0.001
    size_small: float = 0.005
    size_medium: float = 0.02
    size_large: float = 0.05

    # Strategy weights carried for downstream scoring
    weight_liquidity: float = 0.3
    weight_slippage_risk: float = 0.3
    weight_urgency: float = 0.2
    weight_order_size: float = 0.2

    # Algo eligibility (order size / daily volume)
    min_size_for_algo: float = 0.01
    min_size_for_iceberg: float = 0.02

    # Scheduled execution defaults
    default_twap_duration_ms: float = 30 * 60 * 1000
    default_slice_count: int = 20

    # Behaviour
    enable_auto_delay: bool = True
    enable_slippage_recording: bool = True
    adaptive_iceberg_share: float = 0.7
    history_limit: int = 100

    def __post_init__(self):
        """Validate configuration"""
        if not (0 < self.size_tiny <= self.size_small <= self.size_medium <= self.size_large):
            raise ValueError("size class thresholds must be positive and ascending")
        weights = (self.weight_liquidity, self.weight_slippage_risk, self.weight_urgency, self.weight_order_size)
        if any(w < 0 for w in weights) or not math.isclose(sum(weights), 1.0):
            raise ValueError("strategy weights must be non-negative and sum to 1")
        if not (0 < self.adaptive_iceberg_share < 1):
            raise ValueError("adaptive_iceberg_share must be between 0 and 1")
        if self.default_slice_count < 1:
            raise ValueError("default_slice_count must be at least 1")
        if self.history_limit < 1:
            raise ValueError("history_limit must be positive")


@dataclass
class ExecutionOrder:
    """Parent order submitted to the router"""
    symbol: str
    side: OrderSide
    size: float
    exchange_id: Optional[str] = None
    strategy: ExecutionStrategy = ExecutionStrategy.AUTO
    urgency: Urgency = Urgency.NORMAL
    max_slippage: float = 0.005
    limit_price: Optional[float] = None
    options: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.side = OrderSide.parse(self.side)
        self.urgency = Urgency.parse(self.urgency)
        if isinstance(self.strategy, str):
            self.strategy = ExecutionStrategy(self.strategy.lower())
        if self.size <= 0:
            raise ValueError("size must be positive")


@dataclass
class MarketAnalysis:
    """
    Market state for one prospective order

    depth / liquidity / impact are None when no fresh order book is cached;
    they are never computed from stale data.
    """
    symbol: str
    order_size: float
    side: OrderSide
    timestamp: float
    size_class: OrderSizeClass
    overall_risk: RiskLevel
    slippage_risk: Dict[str, Any]
    optimal_time: Dict[str, Any]
    trend: Dict[str, Any]
    depth: Optional[Dict[str, Any]] = None
    liquidity: Optional[Dict[str, Any]] = None
    impact: Optional[Dict[str, Any]] = None

    @property
    def liquidity_level(self) -> Optional[LiquidityLevel]:
        return self.liquidity['level'] if self.liquidity else None

    @property
    def impact_level(self) -> Optional[ImpactLevel]:
        return self.impact['impact_level'] if self.impact else None

    @property
    def slippage_level(self) -> Optional[SlippageRisk]:
        return self.slippage_risk.get('risk_level') if self.slippage_risk else None

    @property
    def mid_price(self) -> Optional[float]:
        return self.depth['mid_price'] if self.depth else None

    def best_price_for(self, side: OrderSide) -> Optional[float]:
        if not self.depth:
            return None
        price = self.depth['best_ask'] if side == OrderSide.BUY else self.depth['best_bid']
        return price or None


class ExecutionRouter:
    """Strategy selection and supervision for parent orders"""

    def __init__(
        self,
        config: Optional[RouterConfig] = None,
        depth_analyzer: Optional[MarketDepthAnalyzer] = None,
        slippage_model: Optional[SlippageTimingModel] = None,
        scheduled_slicer: Optional[ScheduledSlicer] = None,
        iceberg_slicer: Optional[IcebergSlicer] = None,
        gateway: Optional[OrderGateway] = None,
        clock: Optional[Clock] = None,
        random: Optional[RandomSource] = None
    ):
        self.config = config or RouterConfig()
        self.clock = clock or SystemClock()
        self.random = random or RandomSource()
        self.gateway = gateway

        self.depth_analyzer = depth_analyzer or MarketDepthAnalyzer(clock=self.clock)
        self.slippage_model = slippage_model or SlippageTimingModel(clock=self.clock)
        self.scheduled_slicer = scheduled_slicer or ScheduledSlicer(
            depth_analyzer=self.depth_analyzer, gateway=gateway, clock=self.clock
        )
        self.iceberg_slicer = iceberg_slicer or IcebergSlicer(
            depth_analyzer=self.depth_analyzer, gateway=gateway, clock=self.clock, random=self.random
        )

        self.events = EventBus(source="execution_router", clock=self.clock)
        self.active_executions: Dict[str, Dict[str, Any]] = {}
        self.execution_history: List[Dict[str, Any]] = []
        self._sequence = itertools.count(1)

        self.stats = {
            'total_executions': 0,
            'direct_executions': 0,
            'twap_executions': 0,
            'vwap_executions': 0,
            'iceberg_executions': 0,
            'adaptive_executions': 0,
            'failed_executions': 0,
            'avg_slippage': 0.0,
        }

        self._setup_event_forwarding()

    def subscribe(self, event_type: EventType, handler):
        return self.events.subscribe(event_type, handler)

    def _setup_event_forwarding(self) -> None:
        def forward(target: EventType, extra: Optional[Dict[str, Any]] = None):
            def handler(event: Event) -> None:
                self.events.publish(target, {**(extra or {}), **event.payload})
            return handler

        self.scheduled_slicer.subscribe(EventType.TASK_COMPLETED,
                                        forward(EventType.ALGO_TASK_COMPLETED, {'type': 'twap/vwap'}))
        self.scheduled_slicer.subscribe(EventType.SLICE_EXECUTED, forward(EventType.ALGO_SLICE_EXECUTED))
        self.iceberg_slicer.subscribe(EventType.ICEBERG_COMPLETED,
                                      forward(EventType.ALGO_TASK_COMPLETED, {'type': 'iceberg'}))
        self.iceberg_slicer.subscribe(EventType.SUB_ORDER_COMPLETED, forward(EventType.ALGO_SLICE_EXECUTED))
        self.slippage_model.subscribe(EventType.SLIPPAGE_WARNING, forward(EventType.SLIPPAGE_WARNING))

    # Market data input

    def update_order_book(self, symbol: str, book: Any) -> Dict[str, Any]:
        return self.depth_analyzer.update_order_book(symbol, book)

    def update_daily_volume(self, symbol: str, volume: float) -> None:
        self.depth_analyzer.update_daily_volume(symbol, volume)

    # Analysis

    def analyze_market(self, symbol: str, order_size: float, side: Union[str, OrderSide]) -> MarketAnalysis:
        """
        Gather every input the strategy rules need

        Args:
            symbol: Instrument
            order_size: Parent quantity
            side: 'buy' or 'sell'

        Returns:
            MarketAnalysis with depth-derived fields left None when no fresh book exists
        """
        side = OrderSide.parse(side)
        book = self.depth_analyzer.get_cached_order_book(symbol)

        depth = liquidity = impact = None
        if book is not None:
            depth = self.depth_analyzer.analyze_depth(book, symbol)
            liquidity = self.depth_analyzer.assess_liquidity(symbol, order_size, depth)
            impact = self.depth_analyzer.estimate_impact_cost(symbol, side, order_size, book)

        slippage_risk = self.slippage_model.get_current_risk(symbol)

        return MarketAnalysis(
            symbol=symbol,
            order_size=order_size,
            side=side,
            timestamp=self.clock.now_ms(),
            size_class=self.classify_order_size(symbol, order_size),
            overall_risk=self.calculate_overall_risk(liquidity, slippage_risk, impact),
            slippage_risk=slippage_risk,
            optimal_time=self.slippage_model.get_optimal_execution_time(symbol),
            trend=self.depth_analyzer.analyze_trend(symbol, 60000),
            depth=depth,
            liquidity=liquidity,
            impact=impact
        )

    def classify_order_size(self, symbol: str, order_size: float) -> OrderSizeClass:
        """Size class from order / daily volume; medium when no volume is known"""
        daily_volume = self.depth_analyzer.get_daily_volume(symbol)
        if daily_volume <= 0:
            return OrderSizeClass.MEDIUM

        ratio = order_size / daily_volume
        cfg = self.config
        if ratio <= cfg.size_tiny:
            return OrderSizeClass.TINY
        if ratio <= cfg.size_small:
            return OrderSizeClass.SMALL
        if ratio <= cfg.size_medium:
            return OrderSizeClass.MEDIUM
        if ratio <= cfg.size_large:
            return OrderSizeClass.LARGE
        return OrderSizeClass.VERY_LARGE

    @staticmethod
    def calculate_overall_risk(
        liquidity: Optional[Dict[str, Any]],
        slippage_risk: Optional[Dict[str, Any]],
        impact: Optional[Dict[str, Any]]
    ) -> RiskLevel:
        """Bucket the mean of the available liquidity, slippage and impact scores"""
        scores = []
        if liquidity:
            scores.append(LIQUIDITY_SCORES.get(liquidity['level'], 50))
        if slippage_risk:
            score = slippage_risk.get('risk_score')
            scores.append(50 if score is None else score)
        if impact:
            scores.append(IMPACT_SCORES.get(impact['impact_level'], 50))

        avg_score = float(np.mean(scores)) if scores else 50.0

        if avg_score <= 20:
            return RiskLevel.VERY_LOW
        if avg_score <= 40:
            return RiskLevel.LOW
        if avg_score <= 60:
            return RiskLevel.MEDIUM
        if avg_score <= 80:
            return RiskLevel.HIGH
        return RiskLevel.VERY_HIGH

    def select_strategy(self, analysis: MarketAnalysis, urgency: Union[str, Urgency] = Urgency.NORMAL) -> ExecutionStrategy:
        """First matching rule wins"""
        urgency = Urgency.parse(urgency)
        size_class = analysis.size_class
        liquidity = analysis.liquidity_level
        impact = analysis.impact_level
        slippage = analysis.slippage_level

        if urgency == Urgency.CRITICAL:
            return ExecutionStrategy.DIRECT

        if size_class == OrderSizeClass.TINY:
            return ExecutionStrategy.DIRECT

        if size_class == OrderSizeClass.SMALL and liquidity in (LiquidityLevel.HIGH, LiquidityLevel.VERY_HIGH):
            return ExecutionStrategy.DIRECT

        if impact in (ImpactLevel.EXTREME, ImpactLevel.HIGH) or liquidity == LiquidityLevel.VERY_LOW:
            return ExecutionStrategy.ICEBERG

        if (size_class in (OrderSizeClass.MEDIUM, OrderSizeClass.LARGE)
                and slippage in (SlippageRisk.HIGH, SlippageRisk.VERY_HIGH)):
            return ExecutionStrategy.TWAP

        if size_class in (OrderSizeClass.LARGE, OrderSizeClass.VERY_LARGE) and urgency == Urgency.LOW:
            return ExecutionStrategy.VWAP

        if size_class == OrderSizeClass.MEDIUM:
            return ExecutionStrategy.TWAP

        return ExecutionStrategy.DIRECT

    def get_recommendation(
        self,
        symbol: str,
        order_size: float,
        side: Union[str, OrderSide],
        urgency: Union[str, Urgency] = Urgency.NORMAL
    ) -> Dict[str, Any]:
        """Strategy recommendation with timing and split advice"""
        urgency = Urgency.parse(urgency)
        analysis = self.analyze_market(symbol, order_size, side)
        strategy = self.select_strategy(analysis, urgency)

        recommendations: List[Dict[str, Any]] = [{
            'type': 'strategy',
            'strategy': strategy,
            'reason': STRATEGY_REASONS[strategy],
        }]

        if analysis.slippage_level in (SlippageRisk.HIGH, SlippageRisk.VERY_HIGH):
            recommendations.append({
                'type': 'timing',
                'recommendation': 'Recommend waiting for better timing',
                'optimal_time': analysis.optimal_time.get('optimal_time'),
            })

        if analysis.impact_level in (ImpactLevel.HIGH, ImpactLevel.EXTREME) and analysis.impact['filled_size'] > 0:
            suggested = math.ceil(order_size / (analysis.impact['filled_size'] / 3))
            recommendations.append({
                'type': 'split',
                'recommendation': f'Recommend splitting into {suggested} sub-orders',
                'suggested_splits': suggested,
            })

        return {
            'symbol': symbol,
            'order_size': order_size,
            'side': analysis.side,
            'urgency': urgency,
            'recommended_strategy': strategy,
            'recommendations': recommendations,
            'analysis': analysis,
            'expected_impact': analysis.impact['impact_bps'] if analysis.impact else 0.0,
            'risk_level': analysis.overall_risk,
        }

    # Execution

    async def execute(self, order: ExecutionOrder) -> Dict[str, Any]:
        """
        Analyze, select, optionally delay, dispatch and record one parent order

        Args:
            order: Parent order

        Returns:
            Executor result merged with execution id, strategy and market analysis

        Raises:
            Whatever the direct path's gateway raises; execution_failed is published first
        """
        execution_id = f"exec_{order.symbol}_{next(self._sequence)}"
        start_time = self.clock.now_ms()

        try:
            analysis = self.analyze_market(order.symbol, order.size, order.side)

            strategy = (self.select_strategy(analysis, order.urgency)
                        if order.strategy == ExecutionStrategy.AUTO else order.strategy)

            if self.config.enable_auto_delay and order.urgency != Urgency.CRITICAL:
                delay = self.slippage_model.should_delay_execution(order.symbol, order.size)
                if delay['should_delay']:
                    logger.info(f"Delay of {delay['delay_ms']:.0f}ms recommended for {order.symbol}",
                                reason=delay['reason'], urgency=order.urgency.value)
                    if order.urgency == Urgency.LOW:
                        await self.clock.sleep(delay['delay_ms'])

            logger.info(f"Executing {order.symbol} {order.side.value} {order.size} via {strategy.value}",
                        execution_id=execution_id)

            if strategy == ExecutionStrategy.TWAP:
                result = await self._execute_twap(execution_id, order, analysis)
            elif strategy == ExecutionStrategy.VWAP:
                result = await self._execute_vwap(execution_id, order, analysis)
            elif strategy == ExecutionStrategy.ICEBERG:
                result = await self._execute_iceberg(execution_id, order, analysis)
            elif strategy == ExecutionStrategy.ADAPTIVE:
                result = await self._execute_adaptive(execution_id, order, analysis)
            else:
                strategy = ExecutionStrategy.DIRECT
                result = await self._execute_direct(execution_id, order, analysis)

            self.stats[f'{strategy.value}_executions'] += 1

            record = self._record_execution(execution_id, order, strategy, analysis, result, start_time)
            self.events.publish(EventType.EXECUTION_COMPLETED, record)

            return {
                'success': True,
                **result,
                'execution_id': execution_id,
                'strategy': strategy,
                'market_analysis': analysis,
            }

        except Exception as e:
            self.stats['failed_executions'] += 1
            logger.error(f"Execution {execution_id} failed", error=str(e))
            self.events.publish(EventType.EXECUTION_FAILED, {
                'execution_id': execution_id,
                'symbol': order.symbol,
                'side': order.side,
                'size': order.size,
                'error': str(e),
            })
            raise

        finally:
            for key in [k for k in self.active_executions
                        if k == execution_id or k.startswith(f"{execution_id}_")]:
                del self.active_executions[key]

    async def _execute_direct(self, execution_id: str, order: ExecutionOrder, analysis: MarketAnalysis) -> Dict[str, Any]:
        expected_price = analysis.best_price_for(order.side)

        if self.gateway:
            report = await self.gateway.place_order(
                order.exchange_id, order.symbol, order.side, order.size,
                order.limit_price or expected_price,
                {'execution_id': execution_id}
            )
            avg_price = report.avg_price or expected_price
            slippage = signed_slippage(order.side, avg_price, expected_price) if expected_price and avg_price else 0.0

            return {
                'success': True,
                'executed_size': order.size if report.filled_amount is None else report.filled_amount,
                'avg_price': avg_price,
                'expected_price': expected_price,
                'slippage': slippage,
                'orders': [report],
            }

        report = simulated_fill(f"{execution_id}_direct", order.size, order.limit_price or expected_price)
        slippage = signed_slippage(order.side, report.avg_price, expected_price) if expected_price else 0.0

        return {
            'success': True,
            'executed_size': report.filled_amount,
            'avg_price': report.avg_price,
            'expected_price': expected_price,
            'slippage': slippage,
            'orders': [report],
            'simulated': True,
        }

    async def _execute_twap(self, execution_id: str, order: ExecutionOrder, analysis: MarketAnalysis) -> Dict[str, Any]:
        duration = order.options.get('duration_ms') or self.config.default_twap_duration_ms
        if order.urgency == Urgency.HIGH:
            duration *= 0.5
        elif order.urgency == Urgency.LOW:
            duration *= 1.5

        task = self.scheduled_slicer.create_twap_task(
            order.symbol, order.side, order.size,
            exchange_id=order.exchange_id,
            duration_ms=duration,
            slice_count=order.options.get('slice_count') or self.config.default_slice_count,
            max_slippage=order.max_slippage,
            limit_price=order.limit_price
        )
        return await self._run_scheduled(execution_id, 'twap', task, order, analysis)

    async def _execute_vwap(self, execution_id: str, order: ExecutionOrder, analysis: MarketAnalysis) -> Dict[str, Any]:
        task = self.scheduled_slicer.create_vwap_task(
            order.symbol, order.side, order.size,
            exchange_id=order.exchange_id,
            duration_ms=order.options.get('duration_ms') or self.config.default_twap_duration_ms,
            slice_count=order.options.get('slice_count') or self.config.default_slice_count,
            volume_curve=order.options.get('volume_curve', 'crypto'),
            max_slippage=order.max_slippage,
            limit_price=order.limit_price
        )
        return await self._run_scheduled(execution_id, 'vwap', task, order, analysis)

    async def _run_scheduled(self, execution_id, kind, task, order, analysis) -> Dict[str, Any]:
        self.active_executions[execution_id] = {'type': kind, 'task_id': task.task_id, 'task': task}

        await self.scheduled_slicer.start_task(task.task_id)

        expected_price = analysis.mid_price
        return {
            'success': task.status == TaskStatus.COMPLETED,
            'executed_size': task.executed_size,
            'avg_price': task.avg_execution_price,
            'expected_price': expected_price,
            'slippage': self._slippage_vs(order.side, task.avg_execution_price, expected_price),
            'task_id': task.task_id,
            'completion_rate': task.completion_rate,
            'slice_count': len(task.slices),
        }

    async def _execute_iceberg(self, execution_id: str, order: ExecutionOrder, analysis: MarketAnalysis) -> Dict[str, Any]:
        if analysis.liquidity_level == LiquidityLevel.VERY_LOW:
            split_strategy = SplitStrategy.LIQUIDITY
        elif analysis.liquidity_level == LiquidityLevel.LOW:
            split_strategy = SplitStrategy.RANDOM
        else:
            split_strategy = SplitStrategy.ADAPTIVE

        depth = analysis.depth or {}
        iceberg = self.iceberg_slicer.create_iceberg_order(
            order.symbol, order.side, order.size,
            exchange_id=order.exchange_id,
            display_mode=DisplayMode.DYNAMIC,
            split_strategy=split_strategy,
            limit_price=order.limit_price,
            liquidity_info={
                'bid_depth': depth.get('bid_depth', {}).get('total_volume', 0.0),
                'ask_depth': depth.get('ask_depth', {}).get('total_volume', 0.0),
                'spread': depth.get('spread', 0.0),
            }
        )

        self.active_executions[execution_id] = {'type': 'iceberg', 'iceberg_id': iceberg.iceberg_id, 'iceberg': iceberg}

        await self.iceberg_slicer.start_iceberg(iceberg.iceberg_id)

        expected_price = analysis.mid_price
        return {
            'success': iceberg.status == IcebergStatus.COMPLETED,
            'executed_size': iceberg.executed_size,
            'unconfirmed_size': iceberg.unconfirmed_size,
            'avg_price': iceberg.avg_execution_price,
            'expected_price': expected_price,
            'slippage': self._slippage_vs(order.side, iceberg.avg_execution_price, expected_price),
            'iceberg_id': iceberg.iceberg_id,
            'sub_orders_count': len(iceberg.sub_orders),
        }

    async def _execute_adaptive(self, execution_id: str, order: ExecutionOrder, analysis: MarketAnalysis) -> Dict[str, Any]:
        """Iceberg on the configured share, then a direct order for whatever remains"""
        iceberg_order = replace(order, size=order.size * self.config.adaptive_iceberg_share)
        iceberg_result = await self._execute_iceberg(f"{execution_id}_iceberg", iceberg_order, analysis)

        # Timed-out children may still fill, so their size is not re-sent
        remaining = order.size - iceberg_result['executed_size'] - iceberg_result['unconfirmed_size']
        direct_result: Dict[str, Any] = {'success': True, 'executed_size': 0.0, 'avg_price': 0.0}

        if remaining > order.size * 1e-9:
            direct_result = await self._execute_direct(
                f"{execution_id}_direct", replace(order, size=remaining), analysis
            )

        iceberg_executed = iceberg_result['executed_size']
        direct_executed = direct_result['executed_size']
        total_executed = iceberg_executed + direct_executed

        notional = iceberg_executed * (iceberg_result['avg_price'] or 0.0) + direct_executed * (direct_result['avg_price'] or 0.0)
        avg_price = notional / total_executed if total_executed > 0 else 0.0

        expected_price = analysis.mid_price
        return {
            'success': iceberg_result['success'] and direct_result['success'],
            'executed_size': total_executed,
            'avg_price': avg_price,
            'expected_price': expected_price,
            'slippage': self._slippage_vs(order.side, avg_price, expected_price),
            'components': {'iceberg': iceberg_result, 'direct': direct_result},
        }

    @staticmethod
    def _slippage_vs(side: OrderSide, price: Optional[float], expected_price: Optional[float]) -> float:
        if not expected_price or not price:
            return 0.0
        return signed_slippage(side, price, expected_price)

    def _record_execution(
        self,
        execution_id: str,
        order: ExecutionOrder,
        strategy: ExecutionStrategy,
        analysis: MarketAnalysis,
        result: Dict[str, Any],
        start_time: float
    ) -> Dict[str, Any]:
        end_time = self.clock.now_ms()
        record = {
            'execution_id': execution_id,
            'symbol': order.symbol,
            'side': order.side.value,
            'size': order.size,
            'strategy': strategy.value,
            'urgency': order.urgency.value,
            'start_time': start_time,
            'end_time': end_time,
            'duration': end_time - start_time,
            'executed_size': result.get('executed_size', 0.0),
            'avg_price': result.get('avg_price'),
            'slippage': result.get('slippage'),
            'success': result.get('success', False),
            'market_analysis': {
                'liquidity_level': analysis.liquidity_level.value if analysis.liquidity_level else None,
                'slippage_risk': analysis.slippage_level.value if analysis.slippage_level else None,
                'impact_bps': analysis.impact['impact_bps'] if analysis.impact else None,
            },
        }

        self.execution_history.append(record)
        if len(self.execution_history) > self.config.history_limit:
            self.execution_history = self.execution_history[-self.config.history_limit:]

        self.stats['total_executions'] += 1

        slippage = result.get('slippage')
        if slippage is not None:
            count = self.stats['total_executions']
            self.stats['avg_slippage'] += (slippage - self.stats['avg_slippage']) / count

            if self.config.enable_slippage_recording:
                self.slippage_model.record_slippage(
                    order.symbol,
                    slippage,
                    side=order.side.value,
                    size=order.size,
                    expected_price=result.get('expected_price'),
                    actual_price=result.get('avg_price'),
                    spread=analysis.depth['spread'] if analysis.depth else None
                )

            if analysis.impact:
                self.depth_analyzer.record_actual_execution(analysis.impact['impact_cost'], abs(slippage))

        return record

    # Queries

    def get_active_tasks(self) -> List[Dict[str, Any]]:
        return [{'execution_id': execution_id, **entry} for execution_id, entry in self.active_executions.items()]

    def get_execution_history(self, limit: int = 100) -> List[Dict[str, Any]]:
        return self.execution_history[-limit:]

    def get_slippage_heatmap(self, symbol: str) -> Dict[str, Any]:
        return self.slippage_model.get_period_heatmap(symbol)

    def strategy_breakdown(self) -> pd.DataFrame:
        """Per-strategy counts, volume, success rate and mean slippage from history"""
        if not self.execution_history:
            return pd.DataFrame(columns=['executions', 'executed_size', 'success_rate', 'avg_slippage'])

        frame = pd.DataFrame(self.execution_history)
        return frame.groupby('strategy').agg(
            executions=('execution_id', 'count'),
            executed_size=('executed_size', 'sum'),
            success_rate=('success', 'mean'),
            avg_slippage=('slippage', 'mean'),
        )

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            'active_tasks': len(self.active_executions),
            'history_count': len(self.execution_history),
            'by_strategy': self.strategy_breakdown().to_dict(orient='index'),
            'depth_analyzer': self.depth_analyzer.get_stats(),
            'scheduled_slicer': self.scheduled_slicer.get_stats(),
            'iceberg_slicer': self.iceberg_slicer.get_stats(),
            'slippage_model': self.slippage_model.get_stats(),
        }

    async def shutdown(self) -> None:
        await self.scheduled_slicer.shutdown()
        await self.iceberg_slicer.shutdown()
        logger.info("Execution router shut down")
