"""
Time and Randomness Sources

Injectable clock and random source for the execution control loops:
- Wall clock backed by time.time / asyncio.sleep for live trading
- Manual (virtual) clock whose sleep advances time, for replay and tests
- Seeded numpy random generator for anti-detection jitter
"""

from typing import Any, Awaitable, Optional
from datetime import datetime, timezone
from abc import ABC, abstractmethod
import asyncio
import time

import numpy as np


class Clock(ABC):
    """Source of the current time and of timed suspension"""

    @abstractmethod
    def now_ms(self) -> float:
        """Current epoch time in milliseconds"""

    @abstractmethod
    async def sleep(self, delay_ms: float) -> None:
        """Suspend the calling coroutine for delay_ms"""

    def utcnow(self) -> datetime:
        """Current time as an aware UTC datetime"""
        return datetime.fromtimestamp(self.now_ms() / 1000, tz=timezone.utc)

    def to_datetime(self, epoch_ms: float) -> datetime:
        return datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc)

    async def wait_for(self, awaitable: Awaitable[Any], timeout_ms: float) -> Any:
        """
        Await with a timeout

        Timeouts are enforced by the running event loop, so a hung gateway
        call is interrupted even when virtual time is not advancing.
        """
        return await asyncio.wait_for(awaitable, timeout=timeout_ms / 1000)


class SystemClock(Clock):
    """Wall clock"""

    def now_ms(self) -> float:
        return time.time() * 1000

    async def sleep(self, delay_ms: float) -> None:
        await asyncio.sleep(max(0.0, delay_ms) / 1000)


class ManualClock(Clock):
    """
    Virtual clock for deterministic runs

    sleep() advances the clock by the requested delay and yields control to
    the event loop once, so control loops run through their schedule instantly.
    """

    def __init__(self, start: Optional[datetime] = None):
        start = start or datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        self._now_ms = start.timestamp() * 1000
        self.sleep_calls = 0

    def now_ms(self) -> float:
        return self._now_ms

    def advance(self, delay_ms: float) -> None:
        if delay_ms < 0:
            raise ValueError("Cannot move a clock backwards")
        self._now_ms += delay_ms

    def set_time(self, moment: datetime) -> None:
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        self._now_ms = moment.timestamp() * 1000

    async def sleep(self, delay_ms: float) -> None:
        self.sleep_calls += 1
        self.advance(max(0.0, delay_ms))
        await asyncio.sleep(0)


class RandomSource:
    """Random draws used by jitter and id generation"""

    def __init__(self, seed: Optional[int] = None):
        self.seed = seed
        self._rng = np.random.default_rng(seed)

    def random(self) -> float:
        """Uniform draw in [0, 1)"""
        return float(self._rng.random())

    def uniform(self, low: float, high: float) -> float:
        return float(self._rng.uniform(low, high))

    def symmetric(self, spread: float) -> float:
        """Uniform draw in [-spread, spread)"""
        return (self.random() * 2 - 1) * spread

    def token(self, length: int = 9) -> str:
        alphabet = '0123456789abcdefghijklmnopqrstuvwxyz'
        picks = self._rng.integers(0, len(alphabet), size=length)
        return ''.join(alphabet[i] for i in picks)
