"""
Core building blocks shared by the analysis and execution components
"""

from .clock import Clock, SystemClock, ManualClock, RandomSource
from .events import EventBus, Event, EventType
from .registry import Registry
from .exceptions import (
    ExecutionAlphaError,
    TaskNotFoundError,
    InvalidTaskStateError,
    OrderGatewayError,
    InsufficientBalanceError,
)
from .types import OrderSide, Urgency, LiquidityLevel, ImpactLevel, PressureDirection, SlippageRisk

__all__ = [
    'Clock',
    'SystemClock',
    'ManualClock',
    'RandomSource',
    'EventBus',
    'Event',
    'EventType',
    'Registry',
    'ExecutionAlphaError',
    'TaskNotFoundError',
    'InvalidTaskStateError',
    'OrderGatewayError',
    'InsufficientBalanceError',
    'OrderSide',
    'Urgency',
    'LiquidityLevel',
    'ImpactLevel',
    'PressureDirection',
    'SlippageRisk',
]
