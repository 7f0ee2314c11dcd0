"""
Tests for strategy selection and supervised execution
"""

import asyncio

import pandas as pd
import pytest

from execution_alpha.core import (
    EventType, OrderGatewayError, LiquidityLevel, ImpactLevel, SlippageRisk, Urgency
)
from execution_alpha.execution.gateway import PaperGateway
from execution_alpha.execution.iceberg_slicer import IcebergSlicer, IcebergConfig
from execution_alpha.execution.router import (
    ExecutionRouter, RouterConfig, ExecutionOrder, ExecutionStrategy, OrderSizeClass, RiskLevel
)

from conftest import SYMBOL, make_book

THIN_BOOK = {'bids': [[99.9, 100]], 'asks': [[100.0, 1], [100.6, 100]]}


class FailingGateway(PaperGateway):

    async def place_order(self, exchange_id, symbol, side, amount, price, options=None):
        raise OrderGatewayError("exchange rejected order")


class HangOnceGateway(PaperGateway):
    """First order never answers"""

    def __init__(self):
        super().__init__()
        self.calls = 0

    async def place_order(self, exchange_id, symbol, side, amount, price, options=None):
        self.calls += 1
        if self.calls == 1:
            await asyncio.Event().wait()
        return await super().place_order(exchange_id, symbol, side, amount, price, options)


@pytest.fixture
def router(depth_analyzer, gateway, clock, rng):
    return ExecutionRouter(depth_analyzer=depth_analyzer, gateway=gateway, clock=clock, random=rng)


def prime(router, book=None, daily_volume=None):
    router.update_order_book(SYMBOL, book or make_book(levels=20, volume=50.0))
    if daily_volume:
        router.update_daily_volume(SYMBOL, daily_volume)


def record_high_slippage(router, samples=10):
    for _ in range(samples):
        router.slippage_model.record_slippage(SYMBOL, 0.008, side='buy', size=1)


class TestConfigAndOrders:

    def test_weights_must_sum_to_one(self):
        with pytest.raises(ValueError):
            RouterConfig(weight_liquidity=0.5)

    def test_thresholds_must_ascend(self):
        with pytest.raises(ValueError):
            RouterConfig(size_small=0.0001)

    def test_order_parses_strings(self):
        order = ExecutionOrder(SYMBOL, 'SELL', 5, strategy='TWAP', urgency='high')

        assert order.strategy == ExecutionStrategy.TWAP
        assert order.urgency == Urgency.HIGH

    def test_order_rejects_bad_input(self):
        with pytest.raises(ValueError):
            ExecutionOrder(SYMBOL, 'buy', 0)
        with pytest.raises(ValueError):
            ExecutionOrder(SYMBOL, 'hold', 1)


class TestClassification:

    @pytest.mark.parametrize("size, expected", [
        (1, OrderSizeClass.TINY),
        (3000, OrderSizeClass.SMALL),
        (10000, OrderSizeClass.MEDIUM),
        (30000, OrderSizeClass.LARGE),
        (60000, OrderSizeClass.VERY_LARGE),
    ])
    def test_size_classes(self, router, size, expected):
        router.update_daily_volume(SYMBOL, 1e6)
        assert router.classify_order_size(SYMBOL, size) == expected

    def test_unknown_volume_is_medium(self, router):
        assert router.classify_order_size(SYMBOL, 1) == OrderSizeClass.MEDIUM

    def test_overall_risk(self):
        assert ExecutionRouter.calculate_overall_risk(None, None, None) == RiskLevel.MEDIUM
        assert ExecutionRouter.calculate_overall_risk(
            {'level': LiquidityLevel.VERY_HIGH}, {'risk_score': 5}, {'impact_level': ImpactLevel.LOW}
        ) == RiskLevel.VERY_LOW
        assert ExecutionRouter.calculate_overall_risk(
            {'level': LiquidityLevel.VERY_LOW}, None, {'impact_level': ImpactLevel.EXTREME}
        ) == RiskLevel.VERY_HIGH

    def test_zero_slippage_score_counts_as_zero(self):
        assert ExecutionRouter.calculate_overall_risk(
            {'level': LiquidityLevel.VERY_HIGH}, {'risk_score': 0}, {'impact_level': ImpactLevel.LOW}
        ) == RiskLevel.VERY_LOW
        assert ExecutionRouter.calculate_overall_risk(None, {'risk_score': 0}, None) == RiskLevel.VERY_LOW
        assert ExecutionRouter.calculate_overall_risk(None, {'risk_score': None}, None) == RiskLevel.MEDIUM

    def test_analysis_without_book(self, router):
        analysis = router.analyze_market(SYMBOL, 10, 'buy')

        assert analysis.depth is None
        assert analysis.liquidity_level is None
        assert analysis.mid_price is None
        assert analysis.best_price_for(analysis.side) is None
        assert router.select_strategy(analysis) == ExecutionStrategy.TWAP


class TestStrategySelection:

    def select(self, router, size, urgency=Urgency.NORMAL):
        return router.select_strategy(router.analyze_market(SYMBOL, size, 'buy'), urgency)

    def test_tiny_order_goes_direct(self, router):
        prime(router, daily_volume=1e6)
        assert self.select(router, 1) == ExecutionStrategy.DIRECT

    def test_critical_urgency_goes_direct(self, router):
        prime(router, daily_volume=100)
        assert self.select(router, 50, Urgency.CRITICAL) == ExecutionStrategy.DIRECT

    def test_small_liquid_order_goes_direct(self, router):
        prime(router, daily_volume=1000)
        assert self.select(router, 3) == ExecutionStrategy.DIRECT

    def test_high_impact_goes_iceberg(self, router):
        prime(router, THIN_BOOK, daily_volume=1000)

        analysis = router.analyze_market(SYMBOL, 10, 'buy')

        assert analysis.size_class == OrderSizeClass.MEDIUM
        assert analysis.impact_level == ImpactLevel.HIGH
        assert router.select_strategy(analysis) == ExecutionStrategy.ICEBERG

    def test_very_low_liquidity_goes_iceberg(self, router):
        prime(router)
        assert self.select(router, 10) == ExecutionStrategy.ICEBERG

    def test_medium_order_goes_twap(self, router):
        prime(router, daily_volume=1000)
        assert self.select(router, 10) == ExecutionStrategy.TWAP

    def test_large_patient_order_goes_vwap(self, router):
        prime(router, daily_volume=1000)

        assert self.select(router, 30, Urgency.LOW) == ExecutionStrategy.VWAP
        assert self.select(router, 30, Urgency.NORMAL) == ExecutionStrategy.DIRECT

    def test_high_slippage_prefers_twap_over_vwap(self, router):
        prime(router, daily_volume=1000)
        record_high_slippage(router)

        analysis = router.analyze_market(SYMBOL, 30, 'buy')

        assert analysis.slippage_level == SlippageRisk.HIGH
        assert router.select_strategy(analysis, Urgency.LOW) == ExecutionStrategy.TWAP

    def test_recommendation_suggests_split(self, router):
        prime(router, THIN_BOOK, daily_volume=1000)

        recommendation = router.get_recommendation(SYMBOL, 10, 'buy')

        assert recommendation['recommended_strategy'] == ExecutionStrategy.ICEBERG
        types = [item['type'] for item in recommendation['recommendations']]
        assert types[0] == 'strategy'
        assert 'split' in types
        assert recommendation['expected_impact'] == pytest.approx(54.0)


class TestExecution:

    @pytest.mark.asyncio
    async def test_direct_execution_is_recorded(self, router, gateway):
        prime(router, daily_volume=1e6)
        completed = []
        router.subscribe(EventType.EXECUTION_COMPLETED, completed.append)

        result = await router.execute(ExecutionOrder(SYMBOL, 'buy', 1))

        assert result['success'] is True
        assert result['strategy'] == ExecutionStrategy.DIRECT
        assert result['execution_id'] == f"exec_{SYMBOL}_1"
        assert result['avg_price'] == pytest.approx(100.05)
        assert result['slippage'] == pytest.approx(0.0)
        assert gateway.orders[0].options == {'execution_id': result['execution_id']}

        assert len(completed) == 1
        assert router.get_execution_history()[0]['strategy'] == 'direct'
        assert router.stats['direct_executions'] == 1
        assert router.slippage_model.global_stats['total_records'] == 1
        assert router.depth_analyzer.stats['analyzed_orders'] == 1
        assert router.get_active_tasks() == []

    @pytest.mark.asyncio
    async def test_direct_without_gateway_is_simulated(self, depth_analyzer, clock):
        router = ExecutionRouter(depth_analyzer=depth_analyzer, clock=clock)
        prime(router, daily_volume=1e6)

        result = await router.execute(ExecutionOrder(SYMBOL, 'sell', 1))

        assert result['simulated'] is True
        assert result['avg_price'] == pytest.approx(99.95)

    @pytest.mark.asyncio
    async def test_simulated_direct_uses_limit_price(self, depth_analyzer, clock):
        router = ExecutionRouter(depth_analyzer=depth_analyzer, clock=clock)

        result = await router.execute(ExecutionOrder(SYMBOL, 'buy', 1, strategy='direct', limit_price=101.0))

        assert result['simulated'] is True
        assert result['avg_price'] == pytest.approx(101.0)
        assert result['executed_size'] == pytest.approx(1)
        assert result['orders'][0].order_id == f"{result['execution_id']}_direct"

    @pytest.mark.asyncio
    async def test_simulated_direct_without_any_price_fails(self, depth_analyzer, clock):
        router = ExecutionRouter(depth_analyzer=depth_analyzer, clock=clock)

        with pytest.raises(OrderGatewayError):
            await router.execute(ExecutionOrder(SYMBOL, 'buy', 1, strategy='direct'))

        assert router.stats['failed_executions'] == 1
        assert router.get_execution_history() == []

    @pytest.mark.asyncio
    async def test_gateway_failure_is_reported(self, depth_analyzer, clock):
        router = ExecutionRouter(depth_analyzer=depth_analyzer, gateway=FailingGateway(), clock=clock)
        prime(router, daily_volume=1e6)
        failed = []
        router.subscribe(EventType.EXECUTION_FAILED, failed.append)

        with pytest.raises(OrderGatewayError):
            await router.execute(ExecutionOrder(SYMBOL, 'buy', 1))

        assert router.stats['failed_executions'] == 1
        assert failed[0].payload['error'] == "exchange rejected order"
        assert router.get_execution_history() == []
        assert router.get_active_tasks() == []

    @pytest.mark.asyncio
    async def test_twap_execution(self, router):
        prime(router, daily_volume=1e9)
        created, finished, slices = [], [], []
        router.scheduled_slicer.subscribe(EventType.TASK_CREATED, created.append)
        router.subscribe(EventType.ALGO_TASK_COMPLETED, finished.append)
        router.subscribe(EventType.ALGO_SLICE_EXECUTED, slices.append)

        order = ExecutionOrder(SYMBOL, 'buy', 100, strategy='twap', urgency='high',
                               options={'duration_ms': 60000, 'slice_count': 10})
        result = await router.execute(order)

        assert created[0].payload['task'].duration_ms == 30000
        assert result['success'] is True
        assert result['strategy'] == ExecutionStrategy.TWAP
        assert result['executed_size'] == pytest.approx(100)
        assert result['expected_price'] == pytest.approx(100.0)
        assert result['slippage'] == pytest.approx(0.0005)
        assert finished[0].payload['type'] == 'twap/vwap'
        assert len(slices) == 10
        assert router.stats['twap_executions'] == 1

    @pytest.mark.asyncio
    async def test_iceberg_execution(self, router):
        prime(router, daily_volume=1e9)
        finished = []
        router.subscribe(EventType.ALGO_TASK_COMPLETED, finished.append)

        result = await router.execute(ExecutionOrder(SYMBOL, 'buy', 10, strategy=ExecutionStrategy.ICEBERG))

        assert result['success'] is True
        assert result['executed_size'] == pytest.approx(10)
        assert result['sub_orders_count'] > 1
        assert finished[0].payload['type'] == 'iceberg'
        assert router.stats['iceberg_executions'] == 1

    @pytest.mark.asyncio
    async def test_adaptive_execution_combines_iceberg_and_direct(self, router, gateway):
        prime(router, daily_volume=1e9)

        result = await router.execute(ExecutionOrder(SYMBOL, 'buy', 10, strategy='adaptive'))

        components = result['components']
        assert components['iceberg']['executed_size'] == pytest.approx(7)
        assert components['direct']['executed_size'] == pytest.approx(3)
        assert result['executed_size'] == pytest.approx(10)
        assert result['avg_price'] == pytest.approx(100.05)
        assert router.stats['adaptive_executions'] == 1
        assert router.get_active_tasks() == []

    @pytest.mark.asyncio
    async def test_adaptive_does_not_resend_timed_out_iceberg_size(self, depth_analyzer, clock, rng):
        gateway = HangOnceGateway()
        iceberg_slicer = IcebergSlicer(IcebergConfig(sub_order_timeout_ms=20), depth_analyzer=depth_analyzer,
                                       gateway=gateway, clock=clock, random=rng)
        router = ExecutionRouter(depth_analyzer=depth_analyzer, iceberg_slicer=iceberg_slicer,
                                 gateway=gateway, clock=clock, random=rng)
        prime(router, daily_volume=1e9)

        result = await router.execute(ExecutionOrder(SYMBOL, 'buy', 10, strategy='adaptive'))

        iceberg = result['components']['iceberg']
        assert iceberg['unconfirmed_size'] > 0
        assert iceberg['executed_size'] + iceberg['unconfirmed_size'] == pytest.approx(7)
        assert result['components']['direct']['executed_size'] == pytest.approx(3)
        assert result['success'] is False
        await iceberg_slicer.shutdown()

    @pytest.mark.asyncio
    async def test_history_is_capped(self, depth_analyzer, gateway, clock):
        router = ExecutionRouter(RouterConfig(history_limit=2), depth_analyzer=depth_analyzer,
                                 gateway=gateway, clock=clock)
        prime(router, daily_volume=1e6)

        for _ in range(3):
            await router.execute(ExecutionOrder(SYMBOL, 'buy', 1))

        history = router.get_execution_history()
        assert len(history) == 2
        assert history[-1]['execution_id'] == f"exec_{SYMBOL}_3"
        assert router.stats['total_executions'] == 3


class TestQueries:

    def test_slippage_warnings_are_forwarded(self, router):
        warnings = []
        router.subscribe(EventType.SLIPPAGE_WARNING, warnings.append)

        router.slippage_model.record_slippage(SYMBOL, 0.008)

        assert len(warnings) == 1

    def test_empty_breakdown(self, router):
        frame = router.strategy_breakdown()

        assert isinstance(frame, pd.DataFrame)
        assert frame.empty
        assert router.get_slippage_heatmap(SYMBOL)['has_data'] is False

    @pytest.mark.asyncio
    async def test_stats_by_strategy(self, router):
        prime(router, daily_volume=1e6)
        await router.execute(ExecutionOrder(SYMBOL, 'buy', 1))
        await router.execute(ExecutionOrder(SYMBOL, 'sell', 1))

        stats = router.get_stats()

        assert stats['by_strategy']['direct']['executions'] == 2
        assert stats['by_strategy']['direct']['success_rate'] == pytest.approx(1.0)
        assert stats['history_count'] == 2
        assert router.get_slippage_heatmap(SYMBOL)['has_data'] is True

    @pytest.mark.asyncio
    async def test_shutdown_cancels_algos(self, router):
        prime(router, daily_volume=1e9)
        task = router.scheduled_slicer.create_twap_task(SYMBOL, 'buy', 10)

        await router.shutdown()

        assert task.status.value == 'canceled'
