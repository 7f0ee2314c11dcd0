"""
Iceberg Slicer

Conceals a large parent order behind a stream of smaller child orders:
- Fixed, percentage, liquidity-based, adaptive and random split plans
- Fixed, random and dynamic (depth-capped) display sizing
- Anti-detection jitter against repeating child sizes
- Bounded pool of concurrent children, each with its own timeout
- Stop on failure streaks or unrecoverable (insufficient balance) errors
"""

from typing import Dict, List, Any, Optional, Union
from dataclasses import dataclass, field
from collections import deque
from enum import Enum
import asyncio
import math
import numpy as np
import structlog

from ..core.clock import Clock, SystemClock, RandomSource
from ..core.events import EventBus, EventType
from ..core.exceptions import InvalidTaskStateError, OrderGatewayError, is_unrecoverable
from ..core.registry import Registry
from ..core.types import OrderSide
from ..analysis.market_depth import MarketDepthAnalyzer
from .gateway import OrderGateway, simulated_fill

logger = structlog.get_logger(__name__)


class SplitStrategy(Enum):
    """How the parent quantity is planned into chunks"""
    FIXED = "fixed"
    PERCENTAGE = "percentage"
    LIQUIDITY = "liquidity"
    ADAPTIVE = "adaptive"
    RANDOM = "random"


class DisplayMode(Enum):
    """How much of each chunk is shown"""
    FIXED = "fixed"
    RANDOM = "random"
    DYNAMIC = "dynamic"


class IcebergStatus(Enum):
    """Iceberg lifecycle"""
    PENDING = "pending"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELED = "canceled"
    FAILED = "failed"


TERMINAL_STATUSES = (IcebergStatus.COMPLETED, IcebergStatus.CANCELED, IcebergStatus.FAILED)


class SubOrderStatus(Enum):
    """Child order lifecycle"""
    PENDING = "pending"
    COMPLETED = "completed"
    SIMULATED = "simulated"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELED = "canceled"


@dataclass(frozen=True)
class IcebergConfig:
    """Configuration for iceberg execution"""

    # Display sizing
    default_display_ratio: float = 0.1       # 10% of total
    max_display_ratio: float = 0.3           # Never show more than 30%
    random_range: float = 0.2                # +-20% jitter

    # Pacing
    sub_order_interval_ms: float = 1000
    interval_random_range_ms: float = 500
    min_interval_ms: float = 100

    # Concurrency
    max_concurrent_orders: int = 3
    sub_order_timeout_ms: float = 30000

    # Anti-detection
    enable_anti_detection: bool = True
    max_consecutive_same_size: int = 2
    size_memory: int = 10
    anti_detection_jitter: float = 0.2

    # Failure policy
    failure_window: int = 5
    max_failures: int = 3

    def __post_init__(self):
        """Validate configuration"""
        if not (0 < self.default_display_ratio <= self.max_display_ratio <= 1):
            raise ValueError("display ratios must satisfy 0 < default <= max <= 1")
        if not (0 <= self.random_range < 1):
            raise ValueError("random_range must be in [0, 1)")
        if self.max_concurrent_orders < 1:
            raise ValueError("max_concurrent_orders must be at least 1")
        if self.sub_order_timeout_ms <= 0:
            raise ValueError("sub_order_timeout_ms must be positive")
        if self.max_consecutive_same_size < 1:
            raise ValueError("max_consecutive_same_size must be at least 1")


@dataclass(frozen=True)
class Split:
    """Planned chunk"""
    size: float
    kind: str
    random_factor: Optional[float] = None


@dataclass
class SubOrder:
    """Released child order"""
    sub_order_id: str
    size: float
    price: Optional[float]
    split_index: Optional[int]
    is_supplementary: bool = False
    status: SubOrderStatus = SubOrderStatus.PENDING
    created_at: float = 0.0
    completed_at: Optional[float] = None
    executed_size: float = 0.0
    avg_price: float = 0.0
    error: Optional[str] = None


@dataclass
class IcebergOrder:
    """Parent order worked by the iceberg slicer"""
    iceberg_id: str
    exchange_id: Optional[str]
    symbol: str
    side: OrderSide

    total_size: float
    display_size: float
    display_mode: DisplayMode
    executed_size: float
    remaining_size: float

    split_strategy: SplitStrategy
    splits: List[Split]
    current_split_index: int = 0

    limit_price: Optional[float] = None
    price_type: str = "limit"
    avg_execution_price: float = 0.0
    total_cost: float = 0.0

    status: IcebergStatus = IcebergStatus.PENDING
    sub_orders: List[SubOrder] = field(default_factory=list)
    active_sub_orders: Dict[str, SubOrder] = field(default_factory=dict)

    created_at: float = 0.0
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    options: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    finalized: bool = False
    # Size of timed-out children whose fate the gateway never confirmed
    unconfirmed_size: float = 0.0

    recent_sizes: deque = field(default_factory=lambda: deque(maxlen=10), repr=False)
    resume_gate: asyncio.Event = field(default_factory=asyncio.Event, repr=False, compare=False)
    child_tasks: Dict[str, asyncio.Task] = field(default_factory=dict, repr=False, compare=False)

    @property
    def in_flight_size(self) -> float:
        return sum(sub.size for sub in self.active_sub_orders.values())

    @property
    def progress(self) -> float:
        return self.executed_size / self.total_size if self.total_size > 0 else 0.0

    @property
    def is_filled(self) -> bool:
        return self.remaining_size <= self.total_size * 1e-9


class SplitCalculator:
    """Split plan builders"""

    @staticmethod
    def fixed_split(total_size: float, split_size: float, kind: str = "fixed") -> List[Split]:
        """ceil(total / split) chunks; only the last one may be smaller"""
        if split_size <= 0:
            raise ValueError("split_size must be positive")

        count = max(1, math.ceil(total_size / split_size - 1e-9))
        splits = [Split(size=split_size, kind=kind) for _ in range(count - 1)]
        splits.append(Split(size=total_size - split_size * (count - 1), kind=kind))
        return splits

    @staticmethod
    def percentage_split(total_size: float, percentage: float) -> List[Split]:
        return SplitCalculator.fixed_split(total_size, total_size * percentage, kind="percentage")

    @staticmethod
    def liquidity_split(total_size: float, liquidity_info: Optional[Dict[str, float]] = None) -> List[Split]:
        """
        Chunk of about 5% of the deeper book side

        Capped at three average trades when known, narrowed by 30% under a
        spread wider than 20 bps, bounded to [total / 50, total / 5].
        """
        info = liquidity_info or {}
        available = max(info.get('bid_depth', 0.0), info.get('ask_depth', 0.0))

        target = available * 0.05
        avg_trade_size = info.get('avg_trade_size', 0.0)
        if avg_trade_size > 0:
            target = min(target, avg_trade_size * 3)

        if info.get('spread', 0.001) > 0.002:
            target *= 0.7

        target = float(np.clip(target, total_size / 50, total_size / 5))
        return SplitCalculator.fixed_split(total_size, target, kind="liquidity")

    @staticmethod
    def adaptive_split(total_size: float, market_condition: Optional[Dict[str, str]] = None) -> List[Split]:
        """Percentage split scaled by volatility, liquidity and urgency, clamped to 2%-30%"""
        condition = market_condition or {}
        ratio = 0.1

        ratio *= {'high': 0.5, 'low': 1.5}.get(condition.get('volatility', 'normal'), 1.0)
        ratio *= {'high': 1.5, 'low': 0.5}.get(condition.get('liquidity', 'medium'), 1.0)
        ratio *= {'high': 1.3, 'low': 0.8}.get(condition.get('urgency', 'normal'), 1.0)

        return SplitCalculator.percentage_split(total_size, float(np.clip(ratio, 0.02, 0.3)))

    @staticmethod
    def random_split(
        total_size: float,
        random: RandomSource,
        avg_split_ratio: float = 0.1,
        random_range: float = 0.3
    ) -> List[Split]:
        """Jittered chunks around the average; a small tail is folded into the last chunk"""
        splits = []
        remaining = total_size
        avg_size = total_size * avg_split_ratio

        while remaining > avg_size * 0.5:
            factor = 1 + random.symmetric(random_range)
            size = min(avg_size * factor, remaining)
            if remaining - size < avg_size * 0.3:
                size = remaining
            splits.append(Split(size=size, kind="random", random_factor=factor))
            remaining -= size

        if remaining > 0:
            splits.append(Split(size=remaining, kind="random_remainder"))

        return splits


class IcebergSlicer:
    """Iceberg order scheduler"""

    def __init__(
        self,
        config: Optional[IcebergConfig] = None,
        depth_analyzer: Optional[MarketDepthAnalyzer] = None,
        gateway: Optional[OrderGateway] = None,
        clock: Optional[Clock] = None,
        random: Optional[RandomSource] = None
    ):
        self.config = config or IcebergConfig()
        self.depth_analyzer = depth_analyzer
        self.gateway = gateway
        self.clock = clock or SystemClock()
        self.random = random or RandomSource()
        self.events = EventBus(source="iceberg_slicer", clock=self.clock)

        self.icebergs: Registry[IcebergOrder] = Registry(kind="iceberg")
        self._runners: Dict[str, asyncio.Task] = {}
        self._background: set = set()

        self.stats = {
            'total_icebergs': 0,
            'completed_icebergs': 0,
            'canceled_icebergs': 0,
            'total_sub_orders': 0,
            'total_volume': 0.0,
            'avg_sub_order_size': 0.0,
            'avg_completion_time': 0.0,
        }

    def subscribe(self, event_type: EventType, handler):
        return self.events.subscribe(event_type, handler)

    # Creation

    def create_iceberg_order(
        self,
        symbol: str,
        side: Union[str, OrderSide],
        total_size: float,
        exchange_id: Optional[str] = None,
        display_size: Optional[float] = None,
        display_mode: Union[str, DisplayMode] = DisplayMode.RANDOM,
        split_strategy: Union[str, SplitStrategy] = SplitStrategy.ADAPTIVE,
        limit_price: Optional[float] = None,
        price_type: str = "limit",
        split_size: Optional[float] = None,
        split_percentage: Optional[float] = None,
        liquidity_info: Optional[Dict[str, float]] = None,
        market_condition: Optional[Dict[str, str]] = None,
        options: Optional[Dict[str, Any]] = None
    ) -> IcebergOrder:
        """
        Plan and register a pending iceberg order

        Args:
            symbol: Instrument
            side: 'buy' or 'sell'
            total_size: Parent quantity
            exchange_id: Target exchange passed through to the gateway
            display_size: Shown size (default 10% of total, capped at 30%)
            display_mode: fixed, random or dynamic
            split_strategy: fixed, percentage, liquidity, adaptive or random
            limit_price: Child price; best opposing price when omitted
            price_type: Price type tag
            split_size: Chunk size for the fixed strategy
            split_percentage: Chunk ratio for the percentage strategy
            liquidity_info: bid_depth / ask_depth / spread / avg_trade_size
            market_condition: volatility / liquidity / urgency labels
            options: Free-form tags

        Returns:
            The pending iceberg order
        """
        if total_size <= 0:
            raise ValueError("total_size must be positive")

        side = OrderSide.parse(side)
        display_mode = DisplayMode(display_mode) if isinstance(display_mode, str) else display_mode
        split_strategy = SplitStrategy(split_strategy) if isinstance(split_strategy, str) else split_strategy

        shown = display_size or total_size * self.config.default_display_ratio
        shown = min(shown, total_size * self.config.max_display_ratio)

        splits = self._calculate_splits(total_size, split_strategy, split_size, split_percentage,
                                        liquidity_info, market_condition)

        def build(iceberg_id: str) -> IcebergOrder:
            return IcebergOrder(
                iceberg_id=iceberg_id,
                exchange_id=exchange_id,
                symbol=symbol,
                side=side,
                total_size=total_size,
                display_size=shown,
                display_mode=display_mode,
                executed_size=0.0,
                remaining_size=total_size,
                split_strategy=split_strategy,
                splits=splits,
                limit_price=limit_price,
                price_type=price_type,
                created_at=self.clock.now_ms(),
                options=dict(options or {}),
                recent_sizes=deque(maxlen=self.config.size_memory)
            )

        iceberg = self.icebergs.create(f"iceberg_{symbol}", build)
        self.stats['total_icebergs'] += 1

        self.events.publish(EventType.ICEBERG_CREATED, {'iceberg': iceberg})
        logger.info(f"Created iceberg {iceberg.iceberg_id}",
                    symbol=symbol, side=side.value, total_size=total_size,
                    display_size=shown, splits=len(splits), strategy=split_strategy.value)

        return iceberg

    def _calculate_splits(
        self,
        total_size: float,
        strategy: SplitStrategy,
        split_size: Optional[float],
        split_percentage: Optional[float],
        liquidity_info: Optional[Dict[str, float]],
        market_condition: Optional[Dict[str, str]]
    ) -> List[Split]:
        if strategy == SplitStrategy.FIXED:
            return SplitCalculator.fixed_split(total_size, split_size or total_size * 0.1)
        if strategy == SplitStrategy.PERCENTAGE:
            return SplitCalculator.percentage_split(total_size, split_percentage or 0.1)
        if strategy == SplitStrategy.LIQUIDITY:
            return SplitCalculator.liquidity_split(total_size, liquidity_info)
        if strategy == SplitStrategy.RANDOM:
            return SplitCalculator.random_split(total_size, self.random, 0.1, self.config.random_range)
        return SplitCalculator.adaptive_split(total_size, market_condition)

    # Lifecycle

    async def start_iceberg(self, iceberg_id: str, wait: bool = True) -> IcebergOrder:
        """
        Start or resume an iceberg order

        Args:
            iceberg_id: Iceberg to run
            wait: Return only after the iceberg reaches a terminal state

        Returns:
            The iceberg order
        """
        iceberg = self.icebergs.require(iceberg_id)

        if iceberg.status not in (IcebergStatus.PENDING, IcebergStatus.PAUSED):
            raise InvalidTaskStateError(iceberg_id, iceberg.status.value, action="start")

        iceberg.status = IcebergStatus.ACTIVE
        iceberg.started_at = iceberg.started_at or self.clock.now_ms()
        iceberg.resume_gate.set()

        self.events.publish(EventType.ICEBERG_STARTED, {'iceberg': iceberg})
        logger.info(f"Started iceberg {iceberg_id}")

        runner = self._runners.get(iceberg_id)
        if runner is None or runner.done():
            runner = asyncio.create_task(self._run_iceberg_loop(iceberg))
            self._runners[iceberg_id] = runner

        if wait:
            result, = await asyncio.gather(runner, return_exceptions=True)
            if isinstance(result, Exception):
                raise result

        return iceberg

    def pause_iceberg(self, iceberg_id: str) -> bool:
        """Stop releasing children; in-flight children run to completion"""
        iceberg = self.icebergs.require(iceberg_id)

        if iceberg.status != IcebergStatus.ACTIVE:
            return False

        iceberg.status = IcebergStatus.PAUSED
        iceberg.resume_gate.clear()

        self.events.publish(EventType.ICEBERG_PAUSED, {'iceberg': iceberg})
        logger.info(f"Paused iceberg {iceberg_id}")
        return True

    def cancel_iceberg(self, iceberg_id: str) -> bool:
        """Cancel immediately; outstanding children get best-effort gateway cancels"""
        iceberg = self.icebergs.require(iceberg_id)
        runner = self._runners.get(iceberg_id)

        self._close_canceled(iceberg)

        if runner is not None and not runner.done():
            runner.cancel()
        return True

    def _close_canceled(self, iceberg: IcebergOrder) -> None:
        self._cancel_children(iceberg)

        iceberg.status = IcebergStatus.CANCELED
        iceberg.completed_at = self.clock.now_ms()

        self._finalize_iceberg(iceberg)
        self.stats['canceled_icebergs'] += 1

        self.events.publish(EventType.ICEBERG_CANCELED, {'iceberg': iceberg})
        logger.info(f"Canceled iceberg {iceberg.iceberg_id}, executed {iceberg.executed_size}/{iceberg.total_size}")

    def _cancel_children(self, iceberg: IcebergOrder) -> None:
        for sub_order_id, sub_order in list(iceberg.active_sub_orders.items()):
            sub_order.status = SubOrderStatus.CANCELED
            sub_order.completed_at = self.clock.now_ms()
            child = iceberg.child_tasks.get(sub_order_id)
            if child is not None and not child.done():
                child.cancel()
            self._cancel_in_background(sub_order_id)
        iceberg.active_sub_orders.clear()

    async def shutdown(self) -> None:
        """Cancel every active iceberg and wait for the loops to exit"""
        runners = list(self._runners.values())
        for iceberg_id in self.icebergs.ids():
            self.cancel_iceberg(iceberg_id)
        pending = runners + list(self._background)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Iceberg slicer shut down")

    # Control loop

    async def _run_iceberg_loop(self, iceberg: IcebergOrder) -> None:
        try:
            while iceberg.status in (IcebergStatus.ACTIVE, IcebergStatus.PAUSED):
                if iceberg.status == IcebergStatus.PAUSED:
                    await iceberg.resume_gate.wait()
                    continue

                if iceberg.is_filled:
                    iceberg.status = IcebergStatus.COMPLETED
                    break

                if len(iceberg.active_sub_orders) >= self.config.max_concurrent_orders:
                    await self._wait_for_sub_order_completion(iceberg)
                    continue

                params = self._calculate_next_sub_order(iceberg)
                if params is None:
                    if iceberg.active_sub_orders:
                        await self._wait_for_sub_order_completion(iceberg)
                        continue
                    break

                self._launch_sub_order(iceberg, params)
                await self.clock.sleep(self._calculate_interval())

            while iceberg.active_sub_orders:
                await self._wait_for_sub_order_completion(iceberg)

        except asyncio.CancelledError:
            # Runner canceled from outside (caller timeout, task cancel) without cancel_iceberg
            if iceberg.status not in TERMINAL_STATUSES:
                logger.warning(f"Iceberg {iceberg.iceberg_id} runner canceled")
                self._close_canceled(iceberg)
            elif not iceberg.finalized:
                self._cancel_children(iceberg)
                iceberg.completed_at = self.clock.now_ms()
                self._finalize_iceberg(iceberg)
            return

        if iceberg.status == IcebergStatus.ACTIVE:
            if iceberg.is_filled:
                iceberg.status = IcebergStatus.COMPLETED
            else:
                iceberg.status = IcebergStatus.FAILED
                iceberg.error = (f"Sub-order timeouts left {iceberg.unconfirmed_size} unconfirmed"
                                 if iceberg.unconfirmed_size > 0
                                 else f"Stopped with {iceberg.remaining_size} unexecuted")
                logger.error(f"Iceberg {iceberg.iceberg_id} could not confirm its full size", error=iceberg.error)
        iceberg.completed_at = self.clock.now_ms()

        self._finalize_iceberg(iceberg)

    def _calculate_next_sub_order(self, iceberg: IcebergOrder) -> Optional[Dict[str, Any]]:
        """Size of the next child; None when nothing can be released now"""
        available = iceberg.remaining_size - iceberg.in_flight_size - iceberg.unconfirmed_size
        if available <= iceberg.total_size * 1e-9:
            return None

        if iceberg.current_split_index >= len(iceberg.splits):
            if iceberg.active_sub_orders:
                return None
            return {'size': available, 'split_index': None, 'is_supplementary': True}

        split = iceberg.splits[iceberg.current_split_index]
        size = min(split.size, available)
        size = self._apply_display_mode(iceberg, size, available)

        if self.config.enable_anti_detection:
            size = min(self._apply_anti_detection(iceberg, size), available)

        if size <= 0:
            return None

        iceberg.current_split_index += 1
        return {'size': size, 'split_index': iceberg.current_split_index - 1,
                'original_split_size': split.size, 'is_supplementary': False}

    def _apply_display_mode(self, iceberg: IcebergOrder, size: float, available: float) -> float:
        if iceberg.display_mode == DisplayMode.RANDOM:
            factor = 1 + self.random.symmetric(self.config.random_range)
            return min(size * factor, available)

        if iceberg.display_mode == DisplayMode.DYNAMIC:
            book = self.depth_analyzer.get_cached_order_book(iceberg.symbol) if self.depth_analyzer else None
            if book is not None:
                depth = book.top_depth(iceberg.side, 5)
                if depth > 0:
                    return min(size, depth * 0.05, available)
            return size

        return min(size, iceberg.display_size, available)

    def _apply_anti_detection(self, iceberg: IcebergOrder, size: float) -> float:
        """Jitter a size that would repeat the last K released sizes"""
        k = self.config.max_consecutive_same_size
        recent = list(iceberg.recent_sizes)[-k:]
        same = sum(1 for previous in recent if abs(previous - size) / size < 0.01)

        if same >= k:
            size *= 1 + self.random.symmetric(self.config.anti_detection_jitter)

        return size

    def _calculate_interval(self) -> float:
        jitter = self.random.symmetric(self.config.interval_random_range_ms)
        return max(self.config.min_interval_ms, self.config.sub_order_interval_ms + jitter)

    def _launch_sub_order(self, iceberg: IcebergOrder, params: Dict[str, Any]) -> SubOrder:
        price = iceberg.limit_price
        if price is None and self.depth_analyzer:
            book = self.depth_analyzer.get_cached_order_book(iceberg.symbol)
            if book is not None:
                price = book.best_price_for(iceberg.side) or None

        sub_order = SubOrder(
            sub_order_id=f"{iceberg.iceberg_id}_sub_{len(iceberg.sub_orders)}",
            size=params['size'],
            price=price,
            split_index=params['split_index'],
            is_supplementary=params['is_supplementary'],
            created_at=self.clock.now_ms()
        )

        iceberg.sub_orders.append(sub_order)
        iceberg.active_sub_orders[sub_order.sub_order_id] = sub_order
        iceberg.recent_sizes.append(sub_order.size)
        self.stats['total_sub_orders'] += 1

        child = asyncio.create_task(self._execute_sub_order(iceberg, sub_order))
        iceberg.child_tasks[sub_order.sub_order_id] = child
        child.add_done_callback(lambda _: iceberg.child_tasks.pop(sub_order.sub_order_id, None))

        return sub_order

    async def _execute_sub_order(self, iceberg: IcebergOrder, sub_order: SubOrder) -> None:
        try:
            if self.gateway:
                report = await self.clock.wait_for(
                    self.gateway.place_order(
                        iceberg.exchange_id, iceberg.symbol, iceberg.side, sub_order.size, sub_order.price,
                        {'iceberg_id': iceberg.iceberg_id, 'order_id': sub_order.sub_order_id}
                    ),
                    self.config.sub_order_timeout_ms
                )
                sub_order.status = SubOrderStatus.COMPLETED
            else:
                report = simulated_fill(sub_order.sub_order_id, sub_order.size, sub_order.price)
                sub_order.status = SubOrderStatus.SIMULATED

            avg_price = report.avg_price or sub_order.price
            if not avg_price:
                raise ValueError(f"Fill report for {sub_order.sub_order_id} carries no price")

            filled = sub_order.size if report.filled_amount is None else report.filled_amount
            if filled <= 0:
                self._cancel_in_background(sub_order.sub_order_id)
                raise OrderGatewayError(f"Sub-order {sub_order.sub_order_id} reported no fill")

            sub_order.executed_size = filled
            sub_order.avg_price = avg_price

            iceberg.executed_size += sub_order.executed_size
            iceberg.remaining_size -= sub_order.executed_size
            iceberg.total_cost += sub_order.executed_size * avg_price
            iceberg.avg_execution_price = iceberg.total_cost / iceberg.executed_size

            self.events.publish(EventType.SUB_ORDER_COMPLETED, {
                'iceberg': iceberg,
                'sub_order': sub_order,
                'progress': iceberg.progress,
            })
            logger.info(f"Sub-order {sub_order.sub_order_id} filled "
                        f"{sub_order.executed_size} @ {avg_price:.2f}, progress {iceberg.progress * 100:.1f}%")

        except asyncio.TimeoutError:
            sub_order.status = SubOrderStatus.TIMEOUT
            iceberg.unconfirmed_size += sub_order.size
            logger.warning(f"Sub-order {sub_order.sub_order_id} timed out")
            self._cancel_in_background(sub_order.sub_order_id)
            self.events.publish(EventType.SUB_ORDER_TIMEOUT, {'iceberg': iceberg, 'sub_order': sub_order})

        except asyncio.CancelledError:
            sub_order.status = SubOrderStatus.CANCELED
            raise

        except Exception as e:
            sub_order.status = SubOrderStatus.FAILED
            sub_order.error = str(e)
            logger.error(f"Sub-order {sub_order.sub_order_id} failed", error=str(e))

            if iceberg.status == IcebergStatus.ACTIVE and self._should_stop_on_error(iceberg, e):
                iceberg.status = IcebergStatus.FAILED
                iceberg.error = str(e)
                iceberg.resume_gate.set()
                logger.error(f"Stopping iceberg {iceberg.iceberg_id} after sub-order failure")

        finally:
            sub_order.completed_at = self.clock.now_ms()
            iceberg.active_sub_orders.pop(sub_order.sub_order_id, None)

    async def _wait_for_sub_order_completion(self, iceberg: IcebergOrder) -> None:
        children = [child for child in iceberg.child_tasks.values() if not child.done()]
        if children:
            await asyncio.wait(children, return_when=asyncio.FIRST_COMPLETED)
        else:
            await asyncio.sleep(0)

    def _should_stop_on_error(self, iceberg: IcebergOrder, error: Exception) -> bool:
        recent = iceberg.sub_orders[-self.config.failure_window:]
        failed = sum(1 for sub in recent if sub.status == SubOrderStatus.FAILED)
        return failed >= self.config.max_failures or is_unrecoverable(error)

    def _cancel_in_background(self, sub_order_id: str) -> None:
        if not self.gateway:
            return
        task = asyncio.get_running_loop().create_task(self._cancel_sub_order(sub_order_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _cancel_sub_order(self, sub_order_id: str) -> None:
        try:
            await self.gateway.cancel_order(sub_order_id)
        except Exception as e:
            logger.warning(f"Failed to cancel sub-order {sub_order_id}", error=str(e))

    # Finalization

    def _finalize_iceberg(self, iceberg: IcebergOrder) -> None:
        if iceberg.finalized:
            return
        iceberg.finalized = True

        completed_at = iceberg.completed_at or self.clock.now_ms()
        duration = completed_at - (iceberg.started_at or iceberg.created_at)
        completion_rate = iceberg.executed_size / iceberg.total_size

        if iceberg.status == IcebergStatus.COMPLETED:
            self.stats['completed_icebergs'] += 1
            completed = self.stats['completed_icebergs']
            self.stats['avg_completion_time'] += (duration - self.stats['avg_completion_time']) / completed

        self.stats['total_volume'] += iceberg.executed_size
        if self.stats['total_sub_orders']:
            self.stats['avg_sub_order_size'] = self.stats['total_volume'] / self.stats['total_sub_orders']

        self.icebergs.remove(iceberg.iceberg_id)
        self._runners.pop(iceberg.iceberg_id, None)

        self.events.publish(EventType.ICEBERG_COMPLETED, {
            'iceberg': iceberg,
            'duration': duration,
            'completion_rate': completion_rate,
        })
        logger.info(f"Iceberg {iceberg.iceberg_id} finished with status {iceberg.status.value}",
                    executed=iceberg.executed_size,
                    total=iceberg.total_size,
                    avg_price=round(iceberg.avg_execution_price, 6),
                    sub_orders=len(iceberg.sub_orders),
                    duration_s=round(duration / 1000, 1))

    # Queries

    def get_iceberg_status(self, iceberg_id: str) -> Optional[Dict[str, Any]]:
        iceberg = self.icebergs.get(iceberg_id)
        if iceberg is None:
            return None

        return {
            'iceberg_id': iceberg.iceberg_id,
            'status': iceberg.status,
            'progress': iceberg.progress,
            'executed_size': iceberg.executed_size,
            'remaining_size': iceberg.remaining_size,
            'unconfirmed_size': iceberg.unconfirmed_size,
            'avg_execution_price': iceberg.avg_execution_price,
            'sub_orders_count': len(iceberg.sub_orders),
            'active_sub_orders': len(iceberg.active_sub_orders),
            'elapsed_time': self.clock.now_ms() - (iceberg.started_at or iceberg.created_at),
        }

    def get_active_icebergs(self) -> List[Dict[str, Any]]:
        return [self.get_iceberg_status(iceberg_id) for iceberg_id in self.icebergs.ids()]

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            'active_icebergs': len(self.icebergs),
        }
