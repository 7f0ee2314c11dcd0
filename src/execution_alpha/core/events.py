"""
Typed Event Bus

Publish/subscribe notifications for dashboards and risk systems:
- Enumerated event types shared by every execution component
- Per-component bus instances exposing subscribe / unsubscribe
- Sync and coroutine handlers; handler failures are logged, never propagated
"""

from typing import Dict, List, Any, Optional, Callable
from dataclasses import dataclass, field
from enum import Enum
import asyncio
import structlog

from .clock import Clock, SystemClock

logger = structlog.get_logger(__name__)


class EventType(Enum):
    """Events produced by the execution subsystem"""
    # Market depth
    ORDER_BOOK_UPDATED = "order_book_updated"

    # Slippage model
    SLIPPAGE_RECORDED = "slippage_recorded"
    SLIPPAGE_WARNING = "slippage_warning"

    # Scheduled slicer
    TASK_CREATED = "task_created"
    TASK_STARTED = "task_started"
    TASK_PAUSED = "task_paused"
    TASK_CANCELED = "task_canceled"
    TASK_COMPLETED = "task_completed"
    TASK_OVERTIME = "task_overtime"
    SLICE_EXECUTED = "slice_executed"
    PRICE_DEVIATION = "price_deviation"
    EMERGENCY_STOP = "emergency_stop"

    # Iceberg slicer
    ICEBERG_CREATED = "iceberg_created"
    ICEBERG_STARTED = "iceberg_started"
    ICEBERG_PAUSED = "iceberg_paused"
    ICEBERG_CANCELED = "iceberg_canceled"
    ICEBERG_COMPLETED = "iceberg_completed"
    SUB_ORDER_COMPLETED = "sub_order_completed"
    SUB_ORDER_TIMEOUT = "sub_order_timeout"

    # Router
    EXECUTION_COMPLETED = "execution_completed"
    EXECUTION_FAILED = "execution_failed"
    ALGO_TASK_COMPLETED = "algo_task_completed"
    ALGO_SLICE_EXECUTED = "algo_slice_executed"


@dataclass
class Event:
    """Single published notification"""
    type: EventType
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = 0.0
    source: Optional[str] = None


EventHandler = Callable[[Event], Any]


class EventBus:
    """Fan-out of events to subscribed handlers"""

    def __init__(self, source: Optional[str] = None, clock: Optional[Clock] = None):
        self.source = source
        self.clock = clock or SystemClock()
        self._handlers: Dict[EventType, List[EventHandler]] = {}
        self._pending: set = set()

    def subscribe(self, event_type: EventType, handler: EventHandler) -> Callable[[], None]:
        """
        Register a handler for one event type

        Args:
            event_type: Event to listen for
            handler: Callable (or coroutine function) receiving the Event

        Returns:
            Function that removes the subscription
        """
        self._handlers.setdefault(event_type, []).append(handler)

        def unsubscribe() -> None:
            self.unsubscribe(event_type, handler)

        return unsubscribe

    def unsubscribe(self, event_type: EventType, handler: EventHandler) -> bool:
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    def handler_count(self, event_type: EventType) -> int:
        return len(self._handlers.get(event_type, []))

    def publish(self, event_type: EventType, payload: Optional[Dict[str, Any]] = None) -> Event:
        """Deliver an event to every handler subscribed to its type"""
        event = Event(
            type=event_type,
            payload=payload or {},
            timestamp=self.clock.now_ms(),
            source=self.source
        )

        for handler in list(self._handlers.get(event_type, [])):
            try:
                if asyncio.iscoroutinefunction(handler):
                    self._schedule(handler, event)
                else:
                    handler(event)
            except Exception as e:
                logger.error("Event handler error",
                             event_type=event_type.value,
                             source=self.source,
                             error=str(e))

        return event

    def _schedule(self, handler: EventHandler, event: Event) -> None:
        loop = asyncio.get_running_loop()
        task = loop.create_task(self._run_async_handler(handler, event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _run_async_handler(self, handler: EventHandler, event: Event) -> None:
        try:
            await handler(event)
        except Exception as e:
            logger.error("Async event handler error",
                         event_type=event.type.value,
                         source=self.source,
                         error=str(e))
