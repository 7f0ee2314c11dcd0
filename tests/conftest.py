"""
Shared fixtures for the execution tests
"""

import asyncio
from dataclasses import replace
from datetime import datetime, timezone

import pytest

from execution_alpha.core import ManualClock, RandomSource
from execution_alpha.analysis.market_depth import MarketDepthAnalyzer, MarketDepthConfig
from execution_alpha.analysis.slippage_timing import SlippageTimingModel
from execution_alpha.execution.gateway import PaperGateway

SYMBOL = "BTC/USDT"


def make_book(mid=100.0, levels=10, volume=5.0, tick=0.1):
    """Symmetric book around mid with evenly spaced levels"""
    half = tick / 2
    bids = [[round(mid - half - i * tick, 6), volume] for i in range(levels)]
    asks = [[round(mid + half + i * tick, 6), volume] for i in range(levels)]
    return {'bids': bids, 'asks': asks}


@pytest.fixture
def clock():
    # Quiet hour: outside funding windows and market opens
    return ManualClock(datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc))


@pytest.fixture
def rng():
    return RandomSource(seed=42)


@pytest.fixture
def gateway():
    return PaperGateway()


@pytest.fixture
def depth_analyzer(clock):
    return MarketDepthAnalyzer(MarketDepthConfig(cache_time_ms=10 ** 9), clock=clock)


@pytest.fixture
def liquid_analyzer(depth_analyzer):
    """Analyzer with a tight book and deep daily volume cached for SYMBOL"""
    depth_analyzer.update_order_book(SYMBOL, make_book(mid=100.0, levels=20, volume=50.0))
    depth_analyzer.update_daily_volume(SYMBOL, 1e9)
    return depth_analyzer


@pytest.fixture
def slippage_model(clock):
    return SlippageTimingModel(clock=clock)


class HangingGateway(PaperGateway):
    """Records every order but never answers"""

    async def place_order(self, exchange_id, symbol, side, amount, price, options=None):
        await super().place_order(exchange_id, symbol, side, amount, price, options)
        await asyncio.Event().wait()


class ZeroFillGateway(PaperGateway):
    """Accepts every order without filling any of it"""

    async def place_order(self, exchange_id, symbol, side, amount, price, options=None):
        report = await super().place_order(exchange_id, symbol, side, amount, price, options)
        return replace(report, filled_amount=0.0)
