"""
Market Depth Analysis

Order book analysis feeding execution decisions:
- Per-instrument snapshot cache with freshness checks and atomic replacement
- Level-2 depth aggregation, spread, mid price and buy/sell pressure
- Liquidity classification of an order against daily volume
- Walk-the-book market impact estimation
- Optimal limit price suggestion by urgency
- Short-term depth trend from retained snapshots
"""

from typing import Dict, List, Any, Optional, Sequence, Tuple, Union
from dataclasses import dataclass
from collections import deque
import math
import structlog

from ..core.clock import Clock, SystemClock
from ..core.events import EventBus, EventType
from ..core.types import OrderSide, LiquidityLevel, ImpactLevel, PressureDirection, Urgency

logger = structlog.get_logger(__name__)


LIQUIDITY_BANDS = (0.001, 0.002, 0.005, 0.01, 0.02, 0.05)

LIQUIDITY_RISK_LEVELS = {
    LiquidityLevel.VERY_HIGH: 1,
    LiquidityLevel.HIGH: 2,
    LiquidityLevel.MEDIUM: 3,
    LiquidityLevel.LOW: 4,
    LiquidityLevel.VERY_LOW: 5,
}


@dataclass(frozen=True)
class MarketDepthConfig:
    """Configuration for market depth analysis"""

    # Aggregation
    depth_levels: int = 20                     # Levels summed per side

    # Impact cost buckets (fraction of best price)
    impact_low: float = 0.001                  # 0.1%
    impact_medium: float = 0.003               # 0.3%
    impact_high: float = 0.01                  # 1%

    # Liquidity buckets (order size / daily volume)
    liquidity_very_high: float = 0.1
    liquidity_high: float = 0.05
    liquidity_medium: float = 0.02
    liquidity_low: float = 0.01

    # Pressure
    imbalance_threshold: float = 0.3           # |bid ratio - ask ratio| for directional pressure

    # Retention
    cache_time_ms: float = 100                 # Snapshot freshness on read
    trend_retention_ms: float = 5 * 60 * 1000  # Snapshots kept for trend analysis
    cleanup_horizon_ms: float = 10 * 60 * 1000 # Snapshot history kept by cleanup()

    def __post_init__(self):
        """Validate configuration"""
        if self.depth_levels <= 0:
            raise ValueError("depth_levels must be positive")
        if not (0 < self.impact_low <= self.impact_medium <= self.impact_high):
            raise ValueError("impact thresholds must be positive and ascending")
        if not (0 < self.liquidity_low <= self.liquidity_medium <= self.liquidity_high <= self.liquidity_very_high):
            raise ValueError("liquidity thresholds must be positive and ascending")
        if not (0 < self.imbalance_threshold < 1):
            raise ValueError("imbalance_threshold must be between 0 and 1")
        if self.cache_time_ms <= 0:
            raise ValueError("cache_time_ms must be positive")


@dataclass(frozen=True)
class OrderBookLevel:
    """Single level in the order book"""
    price: float
    volume: float


@dataclass(frozen=True)
class OrderBookSnapshot:
    """Complete order book snapshot; replaced as a whole, never edited"""
    symbol: str
    bids: Tuple[OrderBookLevel, ...]
    asks: Tuple[OrderBookLevel, ...]
    timestamp: float
    exchange_id: Optional[str] = None

    @classmethod
    def from_levels(
        cls,
        symbol: str,
        bids: Sequence[Sequence[float]],
        asks: Sequence[Sequence[float]],
        timestamp: float,
        exchange_id: Optional[str] = None
    ) -> 'OrderBookSnapshot':
        """Build a snapshot from [[price, volume], ...] sequences"""
        return cls(
            symbol=symbol,
            bids=tuple(OrderBookLevel(float(p), float(v)) for p, v in bids),
            asks=tuple(OrderBookLevel(float(p), float(v)) for p, v in asks),
            timestamp=timestamp,
            exchange_id=exchange_id
        )

    @property
    def best_bid(self) -> float:
        """Best bid price, 0 when the side is empty"""
        return self.bids[0].price if self.bids else 0.0

    @property
    def best_ask(self) -> float:
        """Best ask price, 0 when the side is empty"""
        return self.asks[0].price if self.asks else 0.0

    @property
    def mid_price(self) -> Optional[float]:
        """Midpoint of the touch, None unless both sides are quoted"""
        if self.best_bid > 0 and self.best_ask > 0:
            return (self.best_bid + self.best_ask) / 2
        return None

    @property
    def is_crossed(self) -> bool:
        return 0 < self.best_ask < self.best_bid

    def side_levels(self, side: OrderSide) -> Tuple[OrderBookLevel, ...]:
        """Levels an order on `side` trades against"""
        return self.asks if side == OrderSide.BUY else self.bids

    def best_price_for(self, side: OrderSide) -> float:
        """Best opposing price for an order on `side`"""
        return self.best_ask if side == OrderSide.BUY else self.best_bid

    def top_depth(self, side: OrderSide, levels: int = 5) -> float:
        return sum(level.volume for level in self.side_levels(side)[:levels])


BookInput = Union[OrderBookSnapshot, Dict[str, Any]]


@dataclass(frozen=True)
class DepthPoint:
    """Compact history point for trend analysis"""
    timestamp: float
    bid_depth: float
    ask_depth: float
    spread: float
    mid_price: Optional[float]


class MarketDepthAnalyzer:
    """Order book cache and depth / liquidity / impact analytics"""

    def __init__(self, config: Optional[MarketDepthConfig] = None, clock: Optional[Clock] = None):
        self.config = config or MarketDepthConfig()
        self.clock = clock or SystemClock()
        self.events = EventBus(source="market_depth", clock=self.clock)

        self.order_book_cache: Dict[str, OrderBookSnapshot] = {}
        self.depth_history: Dict[str, deque] = {}
        self.daily_volumes: Dict[str, float] = {}

        self.stats = self._empty_stats()

    def subscribe(self, event_type: EventType, handler):
        return self.events.subscribe(event_type, handler)

    @staticmethod
    def _empty_stats() -> Dict[str, Any]:
        return {
            'analyzed_orders': 0,
            'impact_estimations': 0,
            'accurate_estimations': 0,
            'total_slippage_estimated': 0.0,
            'total_slippage_actual': 0.0,
        }

    # Market data input

    def to_snapshot(self, symbol: str, book: BookInput) -> OrderBookSnapshot:
        """Normalize dict input ({'bids': [[p, v]], 'asks': [[p, v]]}) into a snapshot"""
        if isinstance(book, OrderBookSnapshot):
            return book
        return OrderBookSnapshot.from_levels(
            symbol,
            book.get('bids') or [],
            book.get('asks') or [],
            timestamp=book.get('timestamp', self.clock.now_ms()),
            exchange_id=book.get('exchange_id')
        )

    def update_order_book(self, symbol: str, book: BookInput) -> Dict[str, Any]:
        """
        Replace the cached snapshot for an instrument

        Args:
            symbol: Instrument
            book: Snapshot or {'bids': [[price, volume], ...], 'asks': [...]}

        Returns:
            Depth analysis of the new snapshot
        """
        snapshot = self.to_snapshot(symbol, book)
        # Stamp with receive time so freshness is measured locally
        snapshot = OrderBookSnapshot(
            symbol=symbol,
            bids=snapshot.bids,
            asks=snapshot.asks,
            timestamp=self.clock.now_ms(),
            exchange_id=snapshot.exchange_id
        )
        self.order_book_cache[symbol] = snapshot

        analysis = self.analyze_depth(snapshot, symbol)
        self.events.publish(EventType.ORDER_BOOK_UPDATED, {'symbol': symbol, 'analysis': analysis})

        return analysis

    def update_daily_volume(self, symbol: str, volume: float) -> None:
        self.daily_volumes[symbol] = float(volume)

    def get_daily_volume(self, symbol: str) -> float:
        return self.daily_volumes.get(symbol, 0.0)

    def get_cached_order_book(self, symbol: str) -> Optional[OrderBookSnapshot]:
        """Cached snapshot if still fresh, otherwise None"""
        cached = self.order_book_cache.get(symbol)
        if cached and self.clock.now_ms() - cached.timestamp < self.config.cache_time_ms:
            return cached
        return None

    # Core analysis

    def analyze_depth(self, book: BookInput, symbol: str, record_history: bool = True) -> Dict[str, Any]:
        """
        Analyze order book depth

        Args:
            book: Order book snapshot or dict
            symbol: Instrument
            record_history: Append a trend point for analyze_trend

        Returns:
            Best prices, spread, per-side depth, pressure and liquidity by band
        """
        snapshot = self.to_snapshot(symbol, book)

        bid_depth = self._calculate_side_depth(snapshot.bids)
        ask_depth = self._calculate_side_depth(snapshot.asks)

        best_bid = snapshot.best_bid
        best_ask = snapshot.best_ask
        mid_price = snapshot.mid_price
        # Crossed books clamp to zero; one-sided books have no spread
        spread = max(0.0, (best_ask - best_bid) / best_ask) if mid_price is not None else 0.0

        if record_history:
            self._save_depth_point(symbol, DepthPoint(
                timestamp=self.clock.now_ms(),
                bid_depth=bid_depth['total_volume'],
                ask_depth=ask_depth['total_volume'],
                spread=spread,
                mid_price=mid_price
            ))

        return {
            'symbol': symbol,
            'best_bid': best_bid,
            'best_ask': best_ask,
            'mid_price': mid_price,
            'spread': spread,
            'spread_bps': spread * 10000,
            'crossed': snapshot.is_crossed,
            'one_sided': mid_price is None and bool(snapshot.bids or snapshot.asks),
            'bid_depth': bid_depth,
            'ask_depth': ask_depth,
            'pressure': self._calculate_pressure(bid_depth, ask_depth),
            'liquidity_distribution': self._calculate_liquidity_distribution(
                snapshot, mid_price if mid_price is not None else best_bid or best_ask),
            'timestamp': self.clock.now_ms(),
        }

    def assess_liquidity(self, symbol: str, order_size: float, depth_analysis: Dict[str, Any]) -> Dict[str, Any]:
        """
        Classify an order's size against daily volume and resting depth

        Args:
            symbol: Instrument
            order_size: Quantity to execute
            depth_analysis: Result of analyze_depth

        Returns:
            Liquidity level, order ratio, absorb ratios, recommendations and 1-5 risk level
        """
        daily_volume = self.get_daily_volume(symbol)
        order_ratio = order_size / daily_volume if daily_volume > 0 else 1.0

        level = self.classify_liquidity(order_ratio)

        bid_volume = depth_analysis['bid_depth']['total_volume']
        ask_volume = depth_analysis['ask_depth']['total_volume']

        return {
            'level': level,
            'order_ratio': order_ratio,
            'daily_volume': daily_volume,
            'bid_absorb_ratio': min(order_size / bid_volume, 1.0) if bid_volume > 0 else 1.0,
            'ask_absorb_ratio': min(order_size / ask_volume, 1.0) if ask_volume > 0 else 1.0,
            'recommendations': self._liquidity_recommendations(level, depth_analysis),
            'risk_level': LIQUIDITY_RISK_LEVELS.get(level, 3),
        }

    def classify_liquidity(self, order_ratio: float) -> LiquidityLevel:
        """Map order size / daily volume to a liquidity level (larger ratio, worse level)"""
        cfg = self.config
        if order_ratio <= cfg.liquidity_low / 10:
            return LiquidityLevel.VERY_HIGH
        elif order_ratio <= cfg.liquidity_low:
            return LiquidityLevel.HIGH
        elif order_ratio <= cfg.liquidity_medium:
            return LiquidityLevel.MEDIUM
        elif order_ratio <= cfg.liquidity_high:
            return LiquidityLevel.LOW
        return LiquidityLevel.VERY_LOW

    def estimate_impact_cost(
        self,
        symbol: str,
        side: Union[str, OrderSide],
        order_size: float,
        book: BookInput
    ) -> Dict[str, Any]:
        """
        Estimate market impact by walking the opposing side of the book

        Args:
            symbol: Instrument
            side: 'buy' or 'sell'
            order_size: Quantity to execute
            book: Order book snapshot or dict

        Returns:
            Average fill price, impact (fraction and bps), levels penetrated,
            filled / remaining size and fill ratio
        """
        self.stats['impact_estimations'] += 1

        side = OrderSide.parse(side)
        snapshot = self.to_snapshot(symbol, book)
        levels = snapshot.side_levels(side)

        if not levels:
            return {
                'estimated_price': 0.0,
                'best_price': 0.0,
                'impact_cost': 1.0,
                'impact_bps': 10000.0,
                'impact_level': ImpactLevel.EXTREME,
                'filled_levels': 0,
                'filled_size': 0.0,
                'remaining_size': order_size,
                'can_execute': False,
                'fill_ratio': 0.0,
                'suggestions': [],
            }

        remaining_size = order_size
        total_cost = 0.0
        filled_levels = 0

        for level in levels:
            if remaining_size <= 0:
                break
            fill_volume = min(remaining_size, level.volume)
            total_cost += fill_volume * level.price
            remaining_size -= fill_volume
            filled_levels += 1

        filled_size = order_size - remaining_size
        avg_fill_price = total_cost / filled_size if filled_size > 0 else 0.0
        best_price = levels[0].price
        impact_cost = abs(avg_fill_price - best_price) / best_price if best_price > 0 and filled_size > 0 else 0.0

        impact_level = self.classify_impact(impact_cost)

        return {
            'estimated_price': avg_fill_price,
            'best_price': best_price,
            'impact_cost': impact_cost,
            'impact_bps': impact_cost * 10000,
            'impact_level': impact_level,
            'filled_levels': filled_levels,
            'filled_size': filled_size,
            'remaining_size': remaining_size,
            'can_execute': remaining_size == 0,
            'fill_ratio': filled_size / order_size if order_size > 0 else 0.0,
            'suggestions': self._impact_suggestions(impact_level, filled_levels, order_size, filled_size),
        }

    def classify_impact(self, impact_cost: float) -> ImpactLevel:
        cfg = self.config
        if impact_cost <= cfg.impact_low:
            return ImpactLevel.LOW
        elif impact_cost <= cfg.impact_medium:
            return ImpactLevel.MEDIUM
        elif impact_cost <= cfg.impact_high:
            return ImpactLevel.HIGH
        return ImpactLevel.EXTREME

    def calculate_optimal_price(
        self,
        symbol: str,
        side: Union[str, OrderSide],
        order_size: float,
        book: BookInput,
        target_fill_ratio: float = 1.0,
        max_impact_bps: float = 10,
        urgency: Union[str, Urgency] = Urgency.NORMAL
    ) -> Dict[str, Any]:
        """
        Suggest a limit price for an order

        High urgency penetrates the book to the target fill ratio (aggressive),
        low urgency rests inside the spread (passive, ~30% expected fill),
        anything else offsets by half the allowed impact (balanced, ~70%).
        """
        side = OrderSide.parse(side)
        urgency = Urgency.parse(urgency)
        snapshot = self.to_snapshot(symbol, book)
        depth = self.analyze_depth(snapshot, symbol, record_history=False)

        is_buy = side == OrderSide.BUY
        best_price = depth['best_ask'] if is_buy else depth['best_bid']
        opposite_price = depth['best_bid'] if is_buy else depth['best_ask']

        if not snapshot.side_levels(side) or best_price == 0:
            return {
                'optimal_price': 0.0,
                'can_execute': False,
                'reason': 'No order book data',
            }

        if urgency in (Urgency.HIGH, Urgency.CRITICAL):
            price_strategy = 'aggressive'
            impact = self.estimate_impact_cost(symbol, side, order_size * target_fill_ratio, snapshot)
            optimal_price = impact['estimated_price']
            expected_fill = impact['fill_ratio']
            expected_impact = impact['impact_bps']
        elif urgency == Urgency.LOW:
            price_strategy = 'passive'
            spread_mid = (best_price + opposite_price) / 2 if opposite_price > 0 else best_price
            if is_buy:
                optimal_price = min(spread_mid, best_price * (1 - max_impact_bps / 10000))
            else:
                optimal_price = max(spread_mid, best_price * (1 + max_impact_bps / 10000))
            expected_fill = 0.3
            expected_impact = 0.0
        else:
            price_strategy = 'balanced'
            offset = max_impact_bps / 20000
            optimal_price = best_price * (1 + offset) if is_buy else best_price * (1 - offset)
            expected_fill = 0.7
            expected_impact = max_impact_bps / 2

        return {
            'optimal_price': optimal_price,
            'best_price': best_price,
            'mid_price': depth['mid_price'],
            'price_strategy': price_strategy,
            'expected_fill': expected_fill,
            'expected_impact': expected_impact,
            'can_execute': True,
            'spread': depth['spread'],
            'pressure': depth['pressure'],
        }

    def analyze_trend(self, symbol: str, lookback_ms: float = 60000) -> Dict[str, Any]:
        """
        Compare the oldest and newest retained depth points in the window

        Bullish when bid depth grew more than 10% while ask depth shrank more
        than 5%; bearish is the mirror image.
        """
        cutoff = self.clock.now_ms() - lookback_ms
        points = [p for p in self.depth_history.get(symbol, ()) if p.timestamp >= cutoff]

        if len(points) < 2:
            return {
                'has_trend': False,
                'trend_direction': 'neutral',
                'reason': 'Insufficient historical data',
                'sample_count': len(points),
            }

        first, last = points[0], points[-1]

        bid_change = self._relative_change(first.bid_depth, last.bid_depth)
        ask_change = self._relative_change(first.ask_depth, last.ask_depth)
        if first.mid_price is None or last.mid_price is None:
            price_change = 0.0
        else:
            price_change = self._relative_change(first.mid_price, last.mid_price)

        if bid_change > 0.1 and ask_change < -0.05:
            direction = 'bullish'
        elif ask_change > 0.1 and bid_change < -0.05:
            direction = 'bearish'
        else:
            direction = 'neutral'

        return {
            'has_trend': direction != 'neutral',
            'trend_direction': direction,
            'bid_depth_change': bid_change,
            'ask_depth_change': ask_change,
            'spread_change': last.spread - first.spread,
            'price_change': price_change,
            'period_ms': lookback_ms,
            'sample_count': len(points),
            'suggestions': self._trend_suggestions(direction),
        }

    # Feedback and housekeeping

    def record_actual_execution(self, estimated_impact: Optional[float], actual_impact: Optional[float]) -> None:
        """Track how close impact estimates were to realized impact"""
        self.stats['total_slippage_estimated'] += estimated_impact or 0
        self.stats['total_slippage_actual'] += actual_impact or 0

        if estimated_impact and actual_impact:
            accuracy = 1 - abs(estimated_impact - actual_impact) / max(estimated_impact, actual_impact)
            if accuracy > 0.8:
                self.stats['accurate_estimations'] += 1

        self.stats['analyzed_orders'] += 1

    def get_stats(self) -> Dict[str, Any]:
        estimations = self.stats['impact_estimations']
        return {
            **self.stats,
            'estimation_accuracy': self.stats['accurate_estimations'] / estimations if estimations else 0.0,
            'cached_symbols': len(self.order_book_cache),
            'history_symbols': len(self.depth_history),
        }

    def reset_stats(self) -> None:
        self.stats = self._empty_stats()

    def cleanup(self) -> None:
        """Drop long-stale snapshots and old depth history"""
        now = self.clock.now_ms()

        for symbol in list(self.order_book_cache):
            if now - self.order_book_cache[symbol].timestamp > self.config.cache_time_ms * 10:
                del self.order_book_cache[symbol]

        cutoff = now - self.config.cleanup_horizon_ms
        for symbol in list(self.depth_history):
            kept = deque(p for p in self.depth_history[symbol] if p.timestamp >= cutoff)
            if kept:
                self.depth_history[symbol] = kept
            else:
                del self.depth_history[symbol]

        logger.debug("Market depth cache cleaned",
                     cached_symbols=len(self.order_book_cache),
                     history_symbols=len(self.depth_history))

    # Internals

    def _calculate_side_depth(self, levels: Sequence[OrderBookLevel]) -> Dict[str, Any]:
        """Aggregate volume and value over the configured number of levels"""
        analyzed = levels[:self.config.depth_levels]

        total_volume = sum(level.volume for level in analyzed)
        total_value = sum(level.price * level.volume for level in analyzed)

        return {
            'total_volume': total_volume,
            'total_value': total_value,
            'levels': len(analyzed),
            'weighted_avg_price': total_value / total_volume if total_volume > 0 else 0.0,
        }

    def _calculate_pressure(self, bid_depth: Dict[str, Any], ask_depth: Dict[str, Any]) -> Dict[str, Any]:
        """Buy/sell pressure from aggregated depth"""
        total = bid_depth['total_volume'] + ask_depth['total_volume']

        if total == 0:
            return {'direction': PressureDirection.NEUTRAL, 'ratio': 0.5, 'imbalance': 0.0}

        bid_ratio = bid_depth['total_volume'] / total
        ask_ratio = ask_depth['total_volume'] / total
        imbalance = abs(bid_ratio - ask_ratio)

        if imbalance < self.config.imbalance_threshold:
            direction = PressureDirection.NEUTRAL
        elif bid_ratio > ask_ratio:
            direction = PressureDirection.BUY
        else:
            direction = PressureDirection.SELL

        return {
            'direction': direction,
            'ratio': bid_ratio,
            'imbalance': imbalance,
            'bid_volume': bid_depth['total_volume'],
            'ask_volume': ask_depth['total_volume'],
        }

    def _calculate_liquidity_distribution(self, snapshot: OrderBookSnapshot, reference_price: float) -> Dict[str, Dict[str, float]]:
        """Volume resting within each price band around the reference price"""
        distribution: Dict[str, Dict[str, float]] = {'bids': {}, 'asks': {}}

        for band in LIQUIDITY_BANDS:
            label = f"{band * 100:.1f}%"
            bid_floor = reference_price * (1 - band)
            ask_ceiling = reference_price * (1 + band)
            distribution['bids'][label] = sum(l.volume for l in snapshot.bids if l.price >= bid_floor)
            distribution['asks'][label] = sum(l.volume for l in snapshot.asks if l.price <= ask_ceiling)

        return distribution

    def _save_depth_point(self, symbol: str, point: DepthPoint) -> None:
        history = self.depth_history.setdefault(symbol, deque())
        history.append(point)

        cutoff = point.timestamp - self.config.trend_retention_ms
        while history and history[0].timestamp < cutoff:
            history.popleft()

    @staticmethod
    def _relative_change(before: float, after: float) -> float:
        if before == 0:
            return 0.0 if after == 0 else math.copysign(1.0, after)
        return (after - before) / before

    @staticmethod
    def _liquidity_recommendations(level: LiquidityLevel, depth_analysis: Dict[str, Any]) -> List[str]:
        recommendations = []

        if level == LiquidityLevel.VERY_LOW:
            recommendations.append('Strongly recommend splitting order')
            recommendations.append('Use TWAP/VWAP execution')
            recommendations.append('Consider extending execution time')
        elif level == LiquidityLevel.LOW:
            recommendations.append('Recommend splitting order')
            recommendations.append('Use iceberg order')
        elif level == LiquidityLevel.MEDIUM:
            recommendations.append('May split moderately')
            recommendations.append('Monitor slippage')
        else:
            recommendations.append('Liquidity is sufficient')

        if depth_analysis.get('spread_bps', 0) > 10:
            recommendations.append('Large spread, recommend limit orders')

        return recommendations

    @staticmethod
    def _impact_suggestions(impact_level: ImpactLevel, filled_levels: int, order_size: float, filled_size: float) -> List[str]:
        suggestions = []

        if impact_level == ImpactLevel.EXTREME:
            suggestions.append('Impact too high, strongly recommend splitting')
            if filled_size > 0:
                pieces = math.ceil(order_size / filled_size * 2)
                suggestions.append(f'Suggest splitting into {pieces} sub-orders')
        elif impact_level == ImpactLevel.HIGH:
            suggestions.append('High impact, recommend VWAP execution')
        elif impact_level == ImpactLevel.MEDIUM:
            suggestions.append('Medium impact, consider batch execution')

        if filled_levels > 10:
            suggestions.append(f'Penetrating {filled_levels} levels, suggest extending execution time')

        return suggestions

    @staticmethod
    def _trend_suggestions(direction: str) -> List[str]:
        if direction == 'bullish':
            return ['Bid depth increasing, possible upward pressure',
                    'Buy orders may raise price slightly']
        if direction == 'bearish':
            return ['Ask depth increasing, possible downward pressure',
                    'Sell orders may lower price slightly']
        return []
