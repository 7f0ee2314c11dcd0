"""
Scheduled Slicer (TWAP / VWAP)

Time-sliced execution of a parent order:
- TWAP equal slices, VWAP volume-curve weighted slices, adaptive multiplier curves
- Cooperative per-task control loop with first-class pause / resume
- Dynamic slice rescaling by market condition and participation-rate cap
- Limit-price skips and price-deviation deferrals
- Emergency stop on cumulative slippage, failure streaks or unrecoverable errors
"""

from typing import Dict, List, Any, Optional, Sequence, Tuple, Union
from dataclasses import dataclass, field, replace
from datetime import datetime
from collections import deque
from enum import Enum
import asyncio
import numpy as np
import structlog

from ..core.clock import Clock, SystemClock
from ..core.events import EventBus, EventType
from ..core.exceptions import InvalidTaskStateError, OrderGatewayError, is_unrecoverable
from ..core.registry import Registry
from ..core.types import OrderSide, LiquidityLevel, signed_slippage
from ..analysis.market_depth import MarketDepthAnalyzer
from .gateway import OrderGateway, simulated_fill

logger = structlog.get_logger(__name__)


VOLUME_CURVES: Dict[str, Tuple[float, ...]] = {
    # 24h crypto distribution (UTC hours)
    'crypto': (
        0.032, 0.028, 0.025, 0.024, 0.026, 0.032,
        0.042, 0.055, 0.062, 0.058, 0.052, 0.048,
        0.045, 0.048, 0.055, 0.062, 0.058, 0.052,
        0.048, 0.045, 0.042, 0.038, 0.035, 0.033,
    ),
    # US equities regular session
    'us_stock': (
        0, 0, 0, 0, 0, 0,
        0, 0, 0, 0.12, 0.10, 0.08,
        0.07, 0.06, 0.06, 0.08, 0.10, 0,
        0, 0, 0, 0, 0, 0,
    ),
    'uniform': tuple([1 / 24] * 24),
}


class AlgoType(Enum):
    """Scheduling algorithm"""
    TWAP = "twap"
    VWAP = "vwap"
    ADAPTIVE = "adaptive"


class TaskStatus(Enum):
    """Execution task lifecycle"""
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELED = "canceled"
    FAILED = "failed"


class MarketCondition(Enum):
    """Market state used for dynamic slice adjustment"""
    NORMAL = "normal"
    VOLATILE = "volatile"
    TRENDING = "trending"
    LOW_LIQUIDITY = "low_liquidity"


class SliceOutcome(Enum):
    """Result of one slice attempt"""
    EXECUTED = "executed"
    SKIPPED = "skipped"      # Limit price not met, cursor advances
    DEFERRED = "deferred"    # Price deviation, same slice retried
    FAILED = "failed"


CONDITION_FACTORS = {
    MarketCondition.VOLATILE: 0.7,
    MarketCondition.LOW_LIQUIDITY: 0.5,
    MarketCondition.TRENDING: 1.2,
}

TERMINAL_STATUSES = (TaskStatus.COMPLETED, TaskStatus.CANCELED, TaskStatus.FAILED)


@dataclass(frozen=True)
class ScheduledSlicerConfig:
    """Configuration for TWAP / VWAP execution"""

    # Schedule
    default_duration_ms: float = 30 * 60 * 1000   # 30 minutes
    default_slices: int = 20
    min_slice_interval_ms: float = 5000           # Pause after each slice
    max_slice_interval_ms: float = 60000          # Longest single wait for a slice

    # Price controls
    max_slippage: float = 0.005                   # 0.5%
    price_deviation_pause: float = 0.02           # 2% from benchmark defers the slice
    emergency_stop_threshold: float = 0.05        # 5% cumulative slippage aborts

    # Market participation
    max_participation_rate: float = 0.1           # 10% of interval volume
    enable_dynamic_adjustment: bool = True

    # Failure policy
    failure_window: int = 5
    max_failures: int = 3

    overtime_warning_ratio: float = 0.1           # Overtime event when >10% remains
    history_limit: int = 100

    def __post_init__(self):
        """Validate configuration"""
        if self.default_duration_ms <= 0:
            raise ValueError("default_duration_ms must be positive")
        if self.default_slices < 1:
            raise ValueError("default_slices must be at least 1")
        if self.min_slice_interval_ms < 0 or self.max_slice_interval_ms <= 0:
            raise ValueError("slice intervals must be non-negative")
        if not (0 <= self.max_participation_rate <= 1):
            raise ValueError("max_participation_rate must be between 0 and 1")
        if self.max_failures > self.failure_window:
            raise ValueError("max_failures cannot exceed failure_window")


@dataclass(frozen=True)
class Slice:
    """Planned child order"""
    index: int
    size: float
    scheduled_time: float                      # Offset from task start, ms
    weight: float
    hour: Optional[int] = None
    adaptive_factors: Optional[Dict[str, Any]] = None
    is_supplementary: bool = False
    adjusted: bool = False
    adjustment_factor: float = 1.0


@dataclass
class SliceRecord:
    """Execution attempt of one slice"""
    slice_index: int
    planned_size: float
    actual_size: float
    start_time: float
    start_price: Optional[float]
    order_id: Optional[str] = None
    end_time: Optional[float] = None
    avg_price: Optional[float] = None
    filled_size: float = 0.0
    slippage: Optional[float] = None
    status: str = "pending"
    error: Optional[str] = None


@dataclass
class ExecutionTask:
    """Parent order worked by the scheduled slicer"""
    task_id: str
    exchange_id: Optional[str]
    symbol: str
    side: OrderSide
    algo_type: AlgoType

    total_size: float
    executed_size: float
    remaining_size: float

    duration_ms: float
    start_time: float
    end_time: float
    created_at: float

    slices: List[Slice]
    current_slice_index: int = 0

    limit_price: Optional[float] = None
    max_slippage: float = 0.005
    benchmark_price: Optional[float] = None
    avg_execution_price: float = 0.0
    total_cost: float = 0.0

    status: TaskStatus = TaskStatus.PENDING
    execution_records: List[SliceRecord] = field(default_factory=list)
    adjustment_history: List[Dict[str, Any]] = field(default_factory=list)
    options: Dict[str, Any] = field(default_factory=dict)

    error: Optional[str] = None
    overtime: bool = False
    total_slippage: Optional[float] = None
    completion_rate: float = 0.0
    canceled_at: Optional[float] = None
    completed_at: Optional[float] = None
    actual_duration: Optional[float] = None
    finalized: bool = False

    in_flight: Optional[SliceRecord] = field(default=None, repr=False, compare=False)
    resume_gate: asyncio.Event = field(default_factory=asyncio.Event, repr=False, compare=False)

    @property
    def current_slice(self) -> Optional[Slice]:
        if self.current_slice_index < len(self.slices):
            return self.slices[self.current_slice_index]
        return None

    @property
    def progress(self) -> float:
        return self.executed_size / self.total_size if self.total_size > 0 else 0.0

    @property
    def is_filled(self) -> bool:
        return self.remaining_size <= self.total_size * 1e-9


class SliceGenerator:
    """Slice plan builders"""

    @staticmethod
    def twap_slices(total_size: float, slice_count: int, duration_ms: float) -> List[Slice]:
        """Equal sizes at uniform time offsets"""
        interval = duration_ms / slice_count
        size = total_size / slice_count
        return [
            Slice(index=i, size=size, scheduled_time=i * interval, weight=1 / slice_count)
            for i in range(slice_count)
        ]

    @staticmethod
    def vwap_slices(
        total_size: float,
        slice_count: int,
        duration_ms: float,
        volume_curve: Sequence[float],
        start_time: datetime
    ) -> List[Slice]:
        """
        Sizes weighted by the volume curve at each slice's UTC hour

        Hours with no curve weight fall back to a uniform 1/24.
        """
        interval = duration_ms / slice_count
        start_ms = start_time.timestamp() * 1000

        hours = [
            datetime.fromtimestamp((start_ms + i * interval) / 1000, tz=start_time.tzinfo).hour
            for i in range(slice_count)
        ]
        weights = np.array([volume_curve[hour] or 1 / 24 for hour in hours], dtype=float)
        weights = weights / weights.sum()

        return [
            Slice(index=i, size=total_size * float(weights[i]), scheduled_time=i * interval,
                  weight=float(weights[i]), hour=hours[i])
            for i in range(slice_count)
        ]

    @staticmethod
    def adaptive_slices(
        total_size: float,
        slice_count: int,
        duration_ms: float,
        market_data: Optional[Dict[str, Any]] = None
    ) -> List[Slice]:
        """
        Multiplier curve shaped by volatility, liquidity and trend

        High volatility back-loads (0.5 + i/N), low liquidity flattens back to
        uniform, a strong trend front-loads (1.5 - 0.8 i/N).
        """
        market_data = market_data or {}
        volatility = market_data.get('volatility', 0.02)
        liquidity = market_data.get('liquidity', 'medium')
        trend = market_data.get('trend', 'neutral')

        positions = np.arange(slice_count) / slice_count
        multipliers = np.ones(slice_count)

        if volatility > 0.03:
            multipliers = 0.5 + positions
        if liquidity == 'low':
            multipliers = np.ones(slice_count)
        if trend in ('strong_up', 'strong_down'):
            multipliers = 1.5 - positions * 0.8

        weights = multipliers / multipliers.sum()
        interval = duration_ms / slice_count
        factors = {'volatility': volatility, 'liquidity': liquidity, 'trend': trend}

        return [
            Slice(index=i, size=total_size * float(weights[i]), scheduled_time=i * interval,
                  weight=float(weights[i]), adaptive_factors=factors)
            for i in range(slice_count)
        ]


class ScheduledSlicer:
    """TWAP / VWAP / adaptive task scheduler"""

    def __init__(
        self,
        config: Optional[ScheduledSlicerConfig] = None,
        depth_analyzer: Optional[MarketDepthAnalyzer] = None,
        gateway: Optional[OrderGateway] = None,
        clock: Optional[Clock] = None
    ):
        self.config = config or ScheduledSlicerConfig()
        self.depth_analyzer = depth_analyzer
        self.gateway = gateway
        self.clock = clock or SystemClock()
        self.events = EventBus(source="scheduled_slicer", clock=self.clock)

        self.tasks: Registry[ExecutionTask] = Registry(kind="task")
        self.execution_history: deque = deque(maxlen=self.config.history_limit)
        self._runners: Dict[str, asyncio.Task] = {}
        self._background: set = set()

        self.stats = {
            'total_tasks': 0,
            'completed_tasks': 0,
            'canceled_tasks': 0,
            'total_volume': 0.0,
            'total_slippage': 0.0,
            'avg_slippage': 0.0,
        }

        logger.info("Scheduled slicer initialized",
                    gateway=type(gateway).__name__ if gateway else None,
                    depth_analyzer=depth_analyzer is not None)

    def subscribe(self, event_type: EventType, handler):
        return self.events.subscribe(event_type, handler)

    # Task creation

    def create_twap_task(self, symbol: str, side: Union[str, OrderSide], total_size: float, **params) -> ExecutionTask:
        return self._create_execution_task(AlgoType.TWAP, symbol, side, total_size, **params)

    def create_vwap_task(self, symbol: str, side: Union[str, OrderSide], total_size: float, **params) -> ExecutionTask:
        return self._create_execution_task(AlgoType.VWAP, symbol, side, total_size, **params)

    def create_adaptive_task(self, symbol: str, side: Union[str, OrderSide], total_size: float, **params) -> ExecutionTask:
        return self._create_execution_task(AlgoType.ADAPTIVE, symbol, side, total_size, **params)

    def _create_execution_task(
        self,
        algo_type: AlgoType,
        symbol: str,
        side: Union[str, OrderSide],
        total_size: float,
        exchange_id: Optional[str] = None,
        duration_ms: Optional[float] = None,
        slice_count: Optional[int] = None,
        start_time: Optional[datetime] = None,
        volume_curve: Union[str, Sequence[float]] = 'crypto',
        max_slippage: Optional[float] = None,
        limit_price: Optional[float] = None,
        market_data: Optional[Dict[str, Any]] = None,
        options: Optional[Dict[str, Any]] = None
    ) -> ExecutionTask:
        """
        Build a slice plan and register a pending task

        Args:
            algo_type: TWAP, VWAP or adaptive
            symbol: Instrument
            side: 'buy' or 'sell'
            total_size: Parent quantity
            exchange_id: Target exchange passed through to the gateway
            duration_ms: Schedule length (default from config)
            slice_count: Number of planned slices (default from config)
            start_time: Schedule origin (default now)
            volume_curve: Curve name or 24 hourly weights for VWAP
            max_slippage: Per-task slippage tolerance
            limit_price: Slices are skipped while the market is through this price
            market_data: Volatility / liquidity / trend inputs for adaptive plans
            options: Free-form tags

        Returns:
            The pending task
        """
        if total_size <= 0:
            raise ValueError("total_size must be positive")

        side = OrderSide.parse(side)
        duration_ms = duration_ms or self.config.default_duration_ms
        slice_count = slice_count or self.config.default_slices
        if slice_count < 1:
            raise ValueError("slice_count must be at least 1")

        start = start_time or self.clock.utcnow()

        if algo_type == AlgoType.VWAP:
            curve = VOLUME_CURVES[volume_curve] if isinstance(volume_curve, str) else tuple(volume_curve)
            if len(curve) != 24:
                raise ValueError("volume_curve must have 24 hourly weights")
            slices = SliceGenerator.vwap_slices(total_size, slice_count, duration_ms, curve, start)
        elif algo_type == AlgoType.ADAPTIVE:
            slices = SliceGenerator.adaptive_slices(total_size, slice_count, duration_ms, market_data)
        else:
            slices = SliceGenerator.twap_slices(total_size, slice_count, duration_ms)

        start_ms = start.timestamp() * 1000

        def build(task_id: str) -> ExecutionTask:
            return ExecutionTask(
                task_id=task_id,
                exchange_id=exchange_id,
                symbol=symbol,
                side=side,
                algo_type=algo_type,
                total_size=total_size,
                executed_size=0.0,
                remaining_size=total_size,
                duration_ms=duration_ms,
                start_time=start_ms,
                end_time=start_ms + duration_ms,
                created_at=self.clock.now_ms(),
                slices=slices,
                limit_price=limit_price,
                max_slippage=max_slippage if max_slippage is not None else self.config.max_slippage,
                options=dict(options or {})
            )

        task = self.tasks.create(f"{algo_type.value}_{symbol}", build)
        self.stats['total_tasks'] += 1

        self.events.publish(EventType.TASK_CREATED, {'task': task})
        logger.info(f"Created {algo_type.value.upper()} task {task.task_id}",
                    symbol=symbol, side=side.value, total_size=total_size,
                    duration_s=duration_ms / 1000, slices=len(slices))

        return task

    # Lifecycle

    async def start_task(self, task_id: str, wait: bool = True) -> ExecutionTask:
        """
        Start or resume a task

        Args:
            task_id: Task to run
            wait: Return only after the task reaches a terminal state

        Returns:
            The task
        """
        task = self.tasks.require(task_id)

        if task.status not in (TaskStatus.PENDING, TaskStatus.PAUSED):
            raise InvalidTaskStateError(task_id, task.status.value, action="start")

        if task.benchmark_price is None and self.depth_analyzer:
            book = self.depth_analyzer.get_cached_order_book(task.symbol)
            if book:
                task.benchmark_price = book.best_price_for(task.side) or None

        task.status = TaskStatus.RUNNING
        task.resume_gate.set()

        self.events.publish(EventType.TASK_STARTED, {'task': task})
        logger.info(f"Started task {task_id}", benchmark_price=task.benchmark_price)

        runner = self._runners.get(task_id)
        if runner is None or runner.done():
            runner = asyncio.create_task(self._run_execution_loop(task))
            self._runners[task_id] = runner

        if wait:
            result, = await asyncio.gather(runner, return_exceptions=True)
            if isinstance(result, Exception):
                raise result

        return task

    def pause_task(self, task_id: str) -> bool:
        task = self.tasks.require(task_id)

        if task.status != TaskStatus.RUNNING:
            return False

        task.status = TaskStatus.PAUSED
        task.resume_gate.clear()

        self.events.publish(EventType.TASK_PAUSED, {'task': task})
        logger.info(f"Paused task {task_id}")
        return True

    def cancel_task(self, task_id: str) -> bool:
        """Cancel immediately; an in-flight slice order gets a best-effort gateway cancel"""
        task = self.tasks.require(task_id)
        runner = self._runners.get(task_id)

        self._close_canceled(task)

        if runner is not None and not runner.done():
            runner.cancel()
        return True

    def _close_canceled(self, task: ExecutionTask) -> None:
        self._abandon_in_flight(task)

        task.status = TaskStatus.CANCELED
        task.canceled_at = self.clock.now_ms()

        self._finalize_task(task)
        self.stats['canceled_tasks'] += 1

        self.events.publish(EventType.TASK_CANCELED, {'task': task})
        logger.info(f"Canceled task {task.task_id}, executed {task.executed_size}/{task.total_size}")

    def _abandon_in_flight(self, task: ExecutionTask) -> None:
        record = task.in_flight
        if record is None:
            return
        task.in_flight = None

        record.status = 'canceled'
        record.end_time = self.clock.now_ms()
        logger.warning(f"Abandoning in-flight order {record.order_id} of {task.task_id}")
        self._cancel_in_background(record.order_id)

    def _cancel_in_background(self, order_id: str) -> None:
        if not self.gateway:
            return
        background = asyncio.get_running_loop().create_task(self._cancel_order(order_id))
        self._background.add(background)
        background.add_done_callback(self._background.discard)

    async def _cancel_order(self, order_id: str) -> None:
        try:
            await self.gateway.cancel_order(order_id)
        except Exception as e:
            logger.warning(f"Failed to cancel slice order {order_id}", error=str(e))

    async def shutdown(self) -> None:
        """Cancel every active task and wait for the loops to exit"""
        runners = list(self._runners.values())
        for task_id in self.tasks.ids():
            self.cancel_task(task_id)
        pending = runners + list(self._background)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Scheduled slicer shut down")

    # Control loop

    async def _run_execution_loop(self, task: ExecutionTask) -> None:
        try:
            while task.status in (TaskStatus.RUNNING, TaskStatus.PAUSED):
                if task.status == TaskStatus.PAUSED:
                    await task.resume_gate.wait()
                    continue

                if task.is_filled:
                    task.status = TaskStatus.COMPLETED
                    break

                self._check_overtime(task)

                current = task.current_slice
                if current is None:
                    current = self._supplementary_slice(task)
                else:
                    elapsed = self.clock.now_ms() - task.start_time
                    if elapsed < current.scheduled_time:
                        await self.clock.sleep(min(current.scheduled_time - elapsed,
                                                   self.config.max_slice_interval_ms))
                        continue

                    if self.config.enable_dynamic_adjustment:
                        current = self._adjust_slice(task, current)

                outcome, error = await self._attempt_slice(task, current)

                if task.status == TaskStatus.RUNNING:
                    reason = self._check_emergency_stop(task, error)
                    if reason:
                        task.status = TaskStatus.FAILED
                        task.error = reason
                        break

                if outcome == SliceOutcome.DEFERRED:
                    continue

                if current.is_supplementary:
                    if outcome != SliceOutcome.FAILED:
                        break
                else:
                    task.current_slice_index += 1

                await self.clock.sleep(self.config.min_slice_interval_ms)

        except asyncio.CancelledError:
            # Runner canceled from outside (caller timeout, task cancel) without cancel_task
            if task.status not in TERMINAL_STATUSES:
                logger.warning(f"Task {task.task_id} runner canceled")
                self._close_canceled(task)
            return

        if task.status == TaskStatus.RUNNING:
            task.status = TaskStatus.COMPLETED

        self._finalize_task(task)

    async def _attempt_slice(self, task: ExecutionTask, current: Slice) -> Tuple[SliceOutcome, Optional[Exception]]:
        try:
            return await self._execute_slice(task, current), None
        except Exception as e:
            logger.error(f"Slice execution failed for {task.task_id}",
                         slice_index=current.index, error=str(e))
            return SliceOutcome.FAILED, e

    async def _execute_slice(self, task: ExecutionTask, current: Slice) -> SliceOutcome:
        execute_size = min(current.size, task.remaining_size)
        if execute_size <= 0:
            return SliceOutcome.SKIPPED

        current_price = self._current_price(task)

        if task.benchmark_price and current_price:
            deviation = abs(current_price - task.benchmark_price) / task.benchmark_price
            if deviation > self.config.price_deviation_pause:
                logger.warning(f"Price deviation {deviation * 100:.2f}% on {task.task_id}, deferring slice",
                               current_price=current_price, benchmark_price=task.benchmark_price)
                self.events.publish(EventType.PRICE_DEVIATION, {
                    'task': task, 'deviation': deviation, 'current_price': current_price
                })
                await self.clock.sleep(task.duration_ms / len(task.slices))
                return SliceOutcome.DEFERRED

        if task.limit_price is not None and current_price is not None:
            price_ok = (current_price <= task.limit_price if task.side == OrderSide.BUY
                        else current_price >= task.limit_price)
            if not price_ok:
                logger.info(f"Price {current_price} does not meet limit {task.limit_price}, skipping slice",
                            task_id=task.task_id, slice_index=current.index)
                return SliceOutcome.SKIPPED

        order_price = current_price if current_price is not None else task.limit_price

        # One id per attempt; a retried supplementary slice keeps its index
        order_id = f"{task.task_id}_order_{len(task.execution_records)}"
        record = SliceRecord(
            slice_index=current.index,
            planned_size=current.size,
            actual_size=execute_size,
            start_time=self.clock.now_ms(),
            start_price=current_price,
            order_id=order_id
        )
        task.execution_records.append(record)

        try:
            if self.gateway:
                task.in_flight = record
                report = await self.gateway.place_order(
                    task.exchange_id, task.symbol, task.side, execute_size, order_price,
                    {'task_id': task.task_id, 'slice_index': current.index, 'order_id': order_id}
                )
            else:
                report = simulated_fill(order_id, execute_size, order_price)

            avg_price = report.avg_price or order_price
            if not avg_price:
                raise ValueError(f"Fill report for {task.task_id} carries no price")

            filled = execute_size if report.filled_amount is None else report.filled_amount
            if filled <= 0:
                self._cancel_in_background(order_id)
                raise OrderGatewayError(f"Slice order {order_id} reported no fill")
        except asyncio.CancelledError:
            self._abandon_in_flight(task)
            raise
        except Exception as e:
            record.status = 'failed'
            record.error = str(e)
            record.end_time = self.clock.now_ms()
            raise
        finally:
            task.in_flight = None

        record.status = 'simulated' if report.simulated else 'completed'
        record.end_time = self.clock.now_ms()
        record.avg_price = avg_price
        record.filled_size = filled
        if task.benchmark_price:
            record.slippage = signed_slippage(task.side, avg_price, task.benchmark_price)

        task.executed_size += record.filled_size
        task.remaining_size -= record.filled_size
        task.total_cost += record.filled_size * avg_price
        task.avg_execution_price = task.total_cost / task.executed_size

        self.events.publish(EventType.SLICE_EXECUTED, {
            'task': task,
            'slice': current,
            'record': record,
            'progress': task.progress,
        })
        logger.info(f"Executed slice {current.index + 1}/{len(task.slices)} of {task.task_id}: "
                    f"{record.filled_size:.4f} @ {avg_price:.2f}, progress {task.progress * 100:.1f}%")

        return SliceOutcome.EXECUTED

    def _supplementary_slice(self, task: ExecutionTask) -> Slice:
        logger.info(f"Executing supplementary slice for {task.task_id}, remaining {task.remaining_size}")
        return Slice(
            index=len(task.slices),
            size=task.remaining_size,
            scheduled_time=self.clock.now_ms() - task.start_time,
            weight=task.remaining_size / task.total_size,
            is_supplementary=True
        )

    def _current_price(self, task: ExecutionTask) -> Optional[float]:
        if not self.depth_analyzer:
            return None
        book = self.depth_analyzer.get_cached_order_book(task.symbol)
        if book is None:
            return None
        return book.best_price_for(task.side) or None

    def _check_overtime(self, task: ExecutionTask) -> None:
        if task.overtime or self.clock.now_ms() <= task.end_time:
            return

        task.overtime = True
        logger.warning(f"Task {task.task_id} past its end time, draining remaining {task.remaining_size}")
        if task.remaining_size > task.total_size * self.config.overtime_warning_ratio:
            self.events.publish(EventType.TASK_OVERTIME, {'task': task})

    # Dynamic adjustment

    def _adjust_slice(self, task: ExecutionTask, current: Slice) -> Slice:
        condition = self._assess_market_condition(task)
        factor = CONDITION_FACTORS.get(condition, 1.0)

        if self.depth_analyzer and self.config.max_participation_rate > 0:
            daily_volume = self.depth_analyzer.get_daily_volume(task.symbol)
            if daily_volume > 0:
                interval_hours = task.duration_ms / len(task.slices) / (60 * 60 * 1000)
                interval_volume = daily_volume * interval_hours / 24
                max_slice_size = interval_volume * self.config.max_participation_rate
                if current.size > max_slice_size:
                    factor = min(factor, max_slice_size / current.size)

        if factor != 1.0:
            task.adjustment_history.append({
                'slice_index': current.index,
                'original_size': current.size,
                'adjusted_size': current.size * factor,
                'adjustment_factor': factor,
                'market_condition': condition,
                'timestamp': self.clock.now_ms(),
            })

        return replace(current, size=current.size * factor, adjusted=factor != 1.0, adjustment_factor=factor)

    def _assess_market_condition(self, task: ExecutionTask) -> MarketCondition:
        if not self.depth_analyzer:
            return MarketCondition.NORMAL

        book = self.depth_analyzer.get_cached_order_book(task.symbol)
        if book is None:
            return MarketCondition.NORMAL

        trend = self.depth_analyzer.analyze_trend(task.symbol, 60000)
        depth = self.depth_analyzer.analyze_depth(book, task.symbol, record_history=False)

        slices_left = max(1, len(task.slices) - task.current_slice_index)
        liquidity = self.depth_analyzer.assess_liquidity(task.symbol, task.remaining_size / slices_left, depth)

        if liquidity['level'] in (LiquidityLevel.VERY_LOW, LiquidityLevel.LOW):
            return MarketCondition.LOW_LIQUIDITY
        if depth['spread_bps'] > 20:
            return MarketCondition.VOLATILE
        if trend['has_trend']:
            return MarketCondition.TRENDING
        return MarketCondition.NORMAL

    def _check_emergency_stop(self, task: ExecutionTask, error: Optional[Exception] = None) -> Optional[str]:
        """Reason to abort the task, or None"""
        reason = None
        total_slippage = None

        if error is not None and is_unrecoverable(error):
            reason = f"Unrecoverable order error: {error}"

        if reason is None and task.benchmark_price and task.avg_execution_price:
            total_slippage = signed_slippage(task.side, task.avg_execution_price, task.benchmark_price)
            if total_slippage > self.config.emergency_stop_threshold:
                reason = f"Cumulative slippage {total_slippage * 100:.2f}% exceeds threshold"

        if reason is None:
            recent = task.execution_records[-self.config.failure_window:]
            failed = sum(1 for record in recent if record.status == 'failed')
            if failed >= self.config.max_failures:
                reason = f"{failed} of the last {len(recent)} slices failed"

        if reason:
            logger.error(f"Emergency stop on {task.task_id}: {reason}")
            self.events.publish(EventType.EMERGENCY_STOP, {
                'task': task, 'reason': reason, 'total_slippage': total_slippage
            })

        return reason

    # Finalization

    def _finalize_task(self, task: ExecutionTask) -> None:
        if task.finalized:
            return
        task.finalized = True

        task.completed_at = self.clock.now_ms()
        task.actual_duration = task.completed_at - task.start_time

        if task.benchmark_price and task.avg_execution_price:
            task.total_slippage = signed_slippage(task.side, task.avg_execution_price, task.benchmark_price)

        task.completion_rate = task.executed_size / task.total_size

        if task.status == TaskStatus.COMPLETED:
            self.stats['completed_tasks'] += 1
        self.stats['total_volume'] += task.executed_size
        self.stats['total_slippage'] += task.total_slippage or 0.0
        self.stats['avg_slippage'] = self.stats['total_slippage'] / (self.stats['completed_tasks'] or 1)

        self.execution_history.append({
            'task_id': task.task_id,
            'symbol': task.symbol,
            'side': task.side.value,
            'algo_type': task.algo_type.value,
            'total_size': task.total_size,
            'executed_size': task.executed_size,
            'avg_execution_price': task.avg_execution_price,
            'benchmark_price': task.benchmark_price,
            'total_slippage': task.total_slippage,
            'completion_rate': task.completion_rate,
            'status': task.status.value,
            'duration': task.actual_duration,
            'slice_count': len(task.slices),
            'completed_at': task.completed_at,
        })

        self.tasks.remove(task.task_id)
        self._runners.pop(task.task_id, None)

        self.events.publish(EventType.TASK_COMPLETED, {'task': task})
        logger.info(f"Task {task.task_id} finished with status {task.status.value}",
                    executed=task.executed_size,
                    total=task.total_size,
                    completion_rate=round(task.completion_rate, 4),
                    slippage_bps=round((task.total_slippage or 0.0) * 10000, 1))

    # Queries

    def get_task_status(self, task_id: str) -> Optional[Dict[str, Any]]:
        task = self.tasks.get(task_id)
        if task is None:
            return None

        now = self.clock.now_ms()
        return {
            'task_id': task.task_id,
            'status': task.status,
            'progress': task.progress,
            'executed_size': task.executed_size,
            'remaining_size': task.remaining_size,
            'avg_execution_price': task.avg_execution_price,
            'current_slice': task.current_slice_index,
            'total_slices': len(task.slices),
            'elapsed_time': now - task.start_time,
            'remaining_time': max(0.0, task.end_time - now),
        }

    def get_active_tasks(self) -> List[Dict[str, Any]]:
        return [self.get_task_status(task_id) for task_id in self.tasks.ids()]

    def get_execution_history(self, limit: int = 100) -> List[Dict[str, Any]]:
        return list(self.execution_history)[-limit:]

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            'active_tasks': len(self.tasks),
            'history_count': len(self.execution_history),
        }
