"""
Slippage Timing Model

Realized-slippage statistics used to decide when to trade:
- Per-instrument slippage history with time-based retention
- Per time-bucket (UTC hour, minute rounded to granularity) period statistics
- Bounded recent window with increasing / decreasing / stable trend
- Live risk score blending historical, recent and calendar risk
- Known high-risk windows (funding settlements, major market opens)
- Delay recommendation, optimal execution time search and risk heatmap
"""

from typing import Dict, List, Any, Optional, Tuple
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from collections import deque
from enum import Enum
import pandas as pd
import numpy as np
import structlog

from ..core.clock import Clock, SystemClock
from ..core.events import EventBus, EventType
from ..core.types import OrderSide, SlippageRisk, HIGH_RISK_LEVELS

logger = structlog.get_logger(__name__)


class PeriodType(Enum):
    """Calendar period classification"""
    NORMAL = "normal"
    HIGH_VOLATILITY = "high_vol"
    LOW_LIQUIDITY = "low_liq"
    NEWS_EVENT = "news"
    MARKET_OPEN = "market_open"
    MARKET_CLOSE = "market_close"
    MAINTENANCE = "maintenance"
    FUNDING_RATE = "funding"


MINUTES_PER_DAY = 24 * 60

RECOMMENDATIONS = {
    SlippageRisk.EXTREME: 'Strongly recommend delaying execution or using limit orders',
    SlippageRisk.VERY_HIGH: 'Recommend waiting for lower risk or splitting orders',
    SlippageRisk.HIGH: 'Recommend TWAP/VWAP or iceberg execution',
    SlippageRisk.MEDIUM: 'Normal execution OK, recommend monitoring slippage',
    SlippageRisk.LOW: 'Good execution timing',
    SlippageRisk.VERY_LOW: 'Good execution timing',
}


@dataclass(frozen=True)
class SlippageTimingConfig:
    """Configuration for the slippage timing model"""

    # Slippage thresholds (absolute fraction)
    very_low_threshold: float = 0.0005      # 0.05%
    low_threshold: float = 0.001            # 0.1%
    medium_threshold: float = 0.002         # 0.2%
    high_threshold: float = 0.005           # 0.5%
    very_high_threshold: float = 0.01       # 1%
    extreme_threshold: float = 0.02         # 2%

    # Statistics
    history_retention_hours: float = 168    # 7 days
    statistics_window: int = 100            # Recent window size
    time_granularity: int = 15              # Minutes per period bucket

    # Delay policy
    high_risk_delay_ms: float = 30000
    enable_auto_delay: bool = True
    safe_window_step_minutes: int = 15
    safe_window_max_steps: int = 24 * 4

    # Known risk windows (UTC)
    funding_hours: Tuple[int, ...] = (0, 8, 16)
    funding_window_minutes: int = 15        # +-15 min around settlement
    market_opens: Tuple[Tuple[str, int, int], ...] = (('US', 13, 30), ('EU', 7, 0), ('ASIA', 0, 0))
    market_open_window_minutes: int = 30    # +-30 min around the open

    # Warnings
    warning_interval_ms: float = 5000       # Per-instrument warning rate limit

    # Risk blend weights
    historical_weight: float = 0.3
    recent_weight: float = 0.4
    known_risk_weight: float = 0.3
    known_risk_score: float = 30
    min_historical_samples: int = 10
    min_recent_samples: int = 5

    def __post_init__(self):
        """Validate configuration"""
        thresholds = [self.very_low_threshold, self.low_threshold, self.medium_threshold,
                      self.high_threshold, self.very_high_threshold, self.extreme_threshold]
        if any(t <= 0 for t in thresholds) or thresholds != sorted(thresholds):
            raise ValueError("slippage thresholds must be positive and ascending")
        if self.time_granularity <= 0 or 60 % self.time_granularity != 0:
            raise ValueError("time_granularity must divide 60")
        if self.statistics_window < 10:
            raise ValueError("statistics_window must be at least 10")
        if self.history_retention_hours <= 0:
            raise ValueError("history_retention_hours must be positive")
        if self.funding_window_minutes < 0 or self.market_open_window_minutes < 0:
            raise ValueError("risk windows must be non-negative")
        if any(not 0 <= hour < 24 for hour in self.funding_hours):
            raise ValueError("funding_hours must be UTC hours 0-23")
        if any(len(entry) != 3 or not 0 <= entry[1] < 24 or not 0 <= entry[2] < 60 for entry in self.market_opens):
            raise ValueError("market_opens entries must be (name, hour, minute)")
        object.__setattr__(self, 'funding_hours', tuple(self.funding_hours))
        object.__setattr__(self, 'market_opens', tuple(tuple(entry) for entry in self.market_opens))


DEFAULT_CONFIG = SlippageTimingConfig()


@dataclass
class SlippageRecord:
    """One realized slippage observation"""
    symbol: str
    timestamp: float
    slippage: float
    is_unfavorable: bool
    side: Optional[OrderSide] = None
    size: float = 0.0
    expected_price: Optional[float] = None
    actual_price: Optional[float] = None
    spread: float = 0.0
    volatility: float = 0.0
    order_type: str = "market"
    hour: int = 0
    minute: int = 0
    day_of_week: int = 0


@dataclass
class PeriodStat:
    """Aggregated slippage for one time bucket"""
    count: int = 0
    total_slippage: float = 0.0
    avg_slippage: float = 0.0
    max_slippage: float = 0.0
    min_slippage: float = float('inf')

    def add(self, slippage: float) -> None:
        self.count += 1
        self.total_slippage += slippage
        self.avg_slippage = self.total_slippage / self.count
        self.max_slippage = max(self.max_slippage, slippage)
        self.min_slippage = min(self.min_slippage, slippage)


@dataclass
class RecentMonitor:
    """Bounded window of recent slippage with trend flag"""
    recent: deque
    trend: str = "stable"
    last_update: float = 0.0

    @property
    def average(self) -> Optional[float]:
        return float(np.mean(self.recent)) if self.recent else None


def check_known_risk_periods(
    hour: int,
    minute: int,
    config: Optional[SlippageTimingConfig] = None
) -> List[Dict[str, Any]]:
    """
    Known high-risk calendar windows active at a UTC hour/minute

    Funding windows wrap around midnight; market-open windows do not.
    Windows come from the config (defaults when omitted).
    """
    cfg = config or DEFAULT_CONFIG
    risks = []
    moment = hour * 60 + minute

    for funding_hour in cfg.funding_hours:
        diff = abs(moment - funding_hour * 60)
        if diff <= cfg.funding_window_minutes or MINUTES_PER_DAY - diff <= cfg.funding_window_minutes:
            risks.append({
                'type': PeriodType.FUNDING_RATE,
                'detail': f'Funding rate settlement {funding_hour:02d}:00 UTC',
                'severity': 'high',
            })

    for market, open_hour, open_minute in cfg.market_opens:
        diff = abs(moment - (open_hour * 60 + open_minute))
        if diff <= cfg.market_open_window_minutes:
            risks.append({
                'type': PeriodType.MARKET_OPEN,
                'detail': f'{market} market open',
                'severity': 'medium',
            })

    return risks


class SlippageTimingModel:
    """Slippage history, risk scoring and execution timing advice"""

    def __init__(self, config: Optional[SlippageTimingConfig] = None, clock: Optional[Clock] = None):
        self.config = config or SlippageTimingConfig()
        self.clock = clock or SystemClock()
        self.events = EventBus(source="slippage_timing", clock=self.clock)

        self.slippage_history: Dict[str, deque] = {}
        self.period_stats: Dict[str, Dict[str, PeriodStat]] = {}
        self.monitors: Dict[str, RecentMonitor] = {}
        self.last_warning: Dict[str, float] = {}

        self.global_stats = self._empty_stats()

    def subscribe(self, event_type: EventType, handler):
        return self.events.subscribe(event_type, handler)

    @staticmethod
    def _empty_stats() -> Dict[str, Any]:
        return {
            'total_records': 0,
            'avg_slippage': 0.0,
            'max_slippage': 0.0,
            'high_risk_periods_detected': 0,
            'delayed_executions': 0,
        }

    # Scoring

    def slippage_to_score(self, slippage: float) -> int:
        """Map an absolute slippage to a 10-100 score"""
        cfg = self.config
        if slippage <= cfg.very_low_threshold:
            return 10
        if slippage <= cfg.low_threshold:
            return 20
        if slippage <= cfg.medium_threshold:
            return 40
        if slippage <= cfg.high_threshold:
            return 60
        if slippage <= cfg.very_high_threshold:
            return 80
        return 100

    @staticmethod
    def score_to_level(score: float) -> SlippageRisk:
        """Risk band of a score; boundary values belong to the lower band"""
        if score <= 15:
            return SlippageRisk.VERY_LOW
        if score <= 30:
            return SlippageRisk.LOW
        if score <= 50:
            return SlippageRisk.MEDIUM
        if score <= 70:
            return SlippageRisk.HIGH
        if score <= 85:
            return SlippageRisk.VERY_HIGH
        return SlippageRisk.EXTREME

    def get_period_key(self, hour: int, minute: int) -> str:
        """Time bucket key with minutes rounded down to the granularity"""
        granularity = self.config.time_granularity
        rounded = (minute // granularity) * granularity
        return f"{hour:02d}:{rounded:02d}"

    # Recording

    def record_slippage(
        self,
        symbol: str,
        slippage: float,
        side: Optional[str] = None,
        size: float = 0.0,
        expected_price: Optional[float] = None,
        actual_price: Optional[float] = None,
        spread: Optional[float] = None,
        volatility: float = 0.0,
        order_type: str = "market"
    ) -> SlippageRecord:
        """
        Record one realized slippage sample

        Args:
            symbol: Instrument
            slippage: Signed slippage, positive when unfavorable
            side: Order side
            size: Order size
            expected_price: Reference price
            actual_price: Realized average price
            spread: Spread at the time
            volatility: Volatility at the time
            order_type: Order type label

        Returns:
            Stored record (absolute slippage)
        """
        now = self.clock.utcnow()
        magnitude = abs(slippage)

        record = SlippageRecord(
            symbol=symbol,
            timestamp=self.clock.now_ms(),
            slippage=magnitude,
            is_unfavorable=slippage > 0,
            side=OrderSide.parse(side) if side else None,
            size=size,
            expected_price=expected_price,
            actual_price=actual_price,
            spread=spread or 0.0,
            volatility=volatility,
            order_type=order_type,
            hour=now.hour,
            minute=now.minute,
            day_of_week=now.weekday()
        )

        self.slippage_history.setdefault(symbol, deque()).append(record)
        self._update_period_stats(symbol, record)
        self._update_monitor(symbol, record)

        stats = self.global_stats
        stats['total_records'] += 1
        stats['avg_slippage'] += (magnitude - stats['avg_slippage']) / stats['total_records']
        stats['max_slippage'] = max(stats['max_slippage'], magnitude)

        self._cleanup_old_data()
        self.events.publish(EventType.SLIPPAGE_RECORDED, {'symbol': symbol, 'record': record})

        return record

    # Risk

    def get_current_risk(self, symbol: str) -> Dict[str, Any]:
        """
        Live slippage risk for an instrument

        Score = 0.3 x historical same-bucket score (>= 10 samples)
              + 0.4 x recent-window score (>= 5 samples)
              + 0.3 x flat penalty while a known risk window is active
        """
        cfg = self.config
        now = self.clock.utcnow()
        period = self.period_stats.get(symbol, {}).get(self.get_period_key(now.hour, now.minute))
        monitor = self.monitors.get(symbol)
        known_risks = check_known_risk_periods(now.hour, now.minute, self.config)

        score = 0.0
        factors: List[Dict[str, Any]] = []

        if period and period.count >= cfg.min_historical_samples:
            score += self.slippage_to_score(period.avg_slippage) * cfg.historical_weight
            if period.avg_slippage > cfg.high_threshold:
                factors.append({'factor': 'historical_period',
                                'avg_slippage': period.avg_slippage,
                                'weight': cfg.historical_weight})

        recent_avg = monitor.average if monitor else None
        if monitor and len(monitor.recent) >= cfg.min_recent_samples:
            score += self.slippage_to_score(recent_avg) * cfg.recent_weight
            if recent_avg > cfg.medium_threshold:
                factors.append({'factor': 'recent_slippage',
                                'avg_slippage': recent_avg,
                                'weight': cfg.recent_weight})

        if known_risks:
            score += cfg.known_risk_score * cfg.known_risk_weight
            factors.extend({'factor': risk['type'].value,
                            'detail': risk['detail'],
                            'weight': cfg.known_risk_weight} for risk in known_risks)

        level = self.score_to_level(score)

        return {
            'symbol': symbol,
            'timestamp': self.clock.now_ms(),
            'risk_level': level,
            'risk_score': score,
            'risk_factors': factors,
            'historical_avg': period.avg_slippage if period else None,
            'recent_avg': recent_avg,
            'trend': monitor.trend if monitor else 'stable',
            'recommendation': RECOMMENDATIONS[level],
            'known_risks': known_risks,
        }

    def should_delay_execution(self, symbol: str, order_size: float = 0.0) -> Dict[str, Any]:
        """
        Recommend whether to postpone an order

        Extreme risk waits twice the base delay, very high the base delay,
        high risk half of it but only inside a known risk window. A delayed
        instant that still falls inside a known window is pushed forward to
        the next clear window.
        """
        risk = self.get_current_risk(symbol)

        if not self.config.enable_auto_delay:
            return {'should_delay': False, 'delay_ms': 0, 'reason': None,
                    'recommended_time': None, 'risk': risk}

        base_delay = self.config.high_risk_delay_ms
        level = risk['risk_level']
        should_delay = False
        delay_ms = 0.0
        reason = None

        if level == SlippageRisk.EXTREME:
            should_delay, delay_ms, reason = True, base_delay * 2, 'Extreme slippage risk'
        elif level == SlippageRisk.VERY_HIGH:
            should_delay, delay_ms, reason = True, base_delay, 'Very high slippage risk'
        elif level == SlippageRisk.HIGH and risk['known_risks']:
            should_delay, delay_ms, reason = True, base_delay / 2, 'Known high-risk period'

        recommended_time = None
        if should_delay:
            now_ms = self.clock.now_ms()
            recommended = self.clock.to_datetime(now_ms + delay_ms)
            if check_known_risk_periods(recommended.hour, recommended.minute, self.config):
                delay_ms = self._find_next_safe_window()
            recommended_time = self.clock.to_datetime(now_ms + delay_ms)
            self.global_stats['delayed_executions'] += 1
            logger.info(f"Delay recommended for {symbol}: {delay_ms:.0f}ms", reason=reason, order_size=order_size)

        return {
            'should_delay': should_delay,
            'delay_ms': delay_ms,
            'reason': reason,
            'recommended_time': recommended_time,
            'risk': risk,
        }

    def get_optimal_execution_time(
        self,
        symbol: str,
        within_hours: float = 1,
        avoid_known_risks: bool = True
    ) -> Dict[str, Any]:
        """
        Scan the horizon at the configured granularity for the lowest-risk slot

        Slots without history score a neutral 50.

        Returns:
            Optimal time, its score, up to three alternatives and a scan summary
        """
        now = self.clock.utcnow()
        end = now + timedelta(hours=within_hours)
        step = timedelta(minutes=self.config.time_granularity)
        symbol_stats = self.period_stats.get(symbol, {})

        candidates = []
        scan = now
        while scan < end:
            known = check_known_risk_periods(scan.hour, scan.minute, self.config)
            if not (avoid_known_risks and known):
                period = symbol_stats.get(self.get_period_key(scan.hour, scan.minute))
                candidates.append({
                    'time': scan,
                    'hour': scan.hour,
                    'minute': scan.minute,
                    'score': self.slippage_to_score(period.avg_slippage) if period else 50,
                    'avg_slippage': period.avg_slippage if period else None,
                    'sample_count': period.count if period else 0,
                    'known_risks': known,
                })
            scan += step

        # Stable sort keeps the earliest slot first among equal scores
        candidates.sort(key=lambda c: c['score'])
        optimal = candidates[0] if candidates else None

        return {
            'symbol': symbol,
            'optimal_time': optimal['time'] if optimal else now,
            'optimal_score': optimal['score'] if optimal else 50,
            'optimal_avg_slippage': optimal['avg_slippage'] if optimal else None,
            'sample_count': optimal['sample_count'] if optimal else 0,
            'alternatives': [
                {'time': c['time'], 'score': c['score'], 'avg_slippage': c['avg_slippage']}
                for c in candidates[1:4]
            ],
            'analysis': {
                'scanned_periods': len(candidates),
                'within_hours': within_hours,
                'avoided_known_risks': avoid_known_risks,
            },
        }

    def get_period_heatmap(self, symbol: str) -> Dict[str, Any]:
        """24 x (60 / granularity) grid of period statistics with high-risk slots flagged"""
        symbol_stats = self.period_stats.get(symbol)
        if not symbol_stats:
            return {'symbol': symbol, 'has_data': False, 'message': 'Insufficient historical data'}

        granularity = self.config.time_granularity
        heatmap: List[List[Dict[str, Any]]] = []
        high_risk_periods = []

        for hour in range(24):
            row = []
            for minute in range(0, 60, granularity):
                data = symbol_stats.get(self.get_period_key(hour, minute))
                level = self.score_to_level(self.slippage_to_score(data.avg_slippage)) if data else None
                row.append({
                    'hour': hour,
                    'minute': minute,
                    'avg_slippage': data.avg_slippage if data else None,
                    'max_slippage': data.max_slippage if data else None,
                    'count': data.count if data else 0,
                    'risk_level': level,
                })
                if level in HIGH_RISK_LEVELS:
                    high_risk_periods.append({
                        'hour': hour,
                        'minute': minute,
                        'avg_slippage': data.avg_slippage,
                        'risk_level': level,
                    })
            heatmap.append(row)

        total_count = sum(s.count for s in symbol_stats.values())
        total_slippage = sum(s.total_slippage for s in symbol_stats.values())

        return {
            'symbol': symbol,
            'has_data': True,
            'heatmap': heatmap,
            'high_risk_periods': high_risk_periods,
            'summary': {
                'total_slots': 24 * (60 // granularity),
                'slots_with_data': sum(1 for row in heatmap for slot in row if slot['count'] > 0),
                'high_risk_slots': len(high_risk_periods),
                'avg_slippage': total_slippage / total_count if total_count else 0.0,
            },
        }

    def heatmap_frame(self, symbol: str) -> pd.DataFrame:
        """Average slippage pivoted to an hour x minute-slot DataFrame (NaN where empty)"""
        granularity = self.config.time_granularity
        minutes = list(range(0, 60, granularity))
        frame = pd.DataFrame(np.nan, index=pd.RangeIndex(24, name='hour'),
                             columns=pd.Index(minutes, name='minute'))

        for key, stat in self.period_stats.get(symbol, {}).items():
            hour, minute = (int(part) for part in key.split(':'))
            frame.loc[hour, minute] = stat.avg_slippage

        return frame

    # Stats

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.global_stats,
            'symbols_tracked': len(self.slippage_history),
            'periods_covered': sum(len(stats) for stats in self.period_stats.values()),
        }

    def get_tracked_symbols(self) -> List[str]:
        return list(self.slippage_history)

    def reset_stats(self) -> None:
        self.slippage_history.clear()
        self.period_stats.clear()
        self.monitors.clear()
        self.last_warning.clear()
        self.global_stats = self._empty_stats()

    # Internals

    def _update_period_stats(self, symbol: str, record: SlippageRecord) -> None:
        buckets = self.period_stats.setdefault(symbol, {})
        key = self.get_period_key(record.hour, record.minute)
        buckets.setdefault(key, PeriodStat()).add(record.slippage)

    def _update_monitor(self, symbol: str, record: SlippageRecord) -> None:
        monitor = self.monitors.get(symbol)
        if monitor is None:
            monitor = RecentMonitor(recent=deque(maxlen=self.config.statistics_window))
            self.monitors[symbol] = monitor

        monitor.recent.append(record.slippage)

        if len(monitor.recent) >= 10:
            window = list(monitor.recent)
            recent_avg = float(np.mean(window[-5:]))
            previous_avg = float(np.mean(window[-10:-5]))
            if recent_avg > previous_avg * 1.2:
                monitor.trend = 'increasing'
            elif recent_avg < previous_avg * 0.8:
                monitor.trend = 'decreasing'
            else:
                monitor.trend = 'stable'

        monitor.last_update = record.timestamp

        level = self.score_to_level(self.slippage_to_score(record.slippage))
        if level in HIGH_RISK_LEVELS:
            self._emit_warning(symbol, level, record)

    def _emit_warning(self, symbol: str, level: SlippageRisk, record: SlippageRecord) -> None:
        now = self.clock.now_ms()
        last = self.last_warning.get(symbol)
        if last is not None and now - last < self.config.warning_interval_ms:
            return

        self.last_warning[symbol] = now
        self.global_stats['high_risk_periods_detected'] += 1

        self.events.publish(EventType.SLIPPAGE_WARNING, {
            'symbol': symbol,
            'risk_level': level,
            'slippage': record.slippage,
            'timestamp': record.timestamp,
            'recommendation': RECOMMENDATIONS[level],
        })

        logger.warning(f"Slippage warning: {symbol} risk {level.value}, "
                       f"slippage {record.slippage * 10000:.1f} bps")

    def _find_next_safe_window(self) -> float:
        """Milliseconds until the next instant outside every known risk window"""
        now_ms = self.clock.now_ms()
        step_ms = self.config.safe_window_step_minutes * 60 * 1000

        for step in range(1, self.config.safe_window_max_steps + 1):
            candidate = self.clock.to_datetime(now_ms + step * step_ms)
            if not check_known_risk_periods(candidate.hour, candidate.minute, self.config):
                return step * step_ms

        return self.config.high_risk_delay_ms * 2

    def _cleanup_old_data(self) -> None:
        cutoff = self.clock.now_ms() - self.config.history_retention_hours * 60 * 60 * 1000
        for history in self.slippage_history.values():
            while history and history[0].timestamp < cutoff:
                history.popleft()
