"""
Tests for SlippageTimingModel
"""

from datetime import datetime, timezone

import pytest

from execution_alpha.analysis.slippage_timing import (
    SlippageTimingModel, SlippageTimingConfig, PeriodType, check_known_risk_periods
)
from execution_alpha.core import EventType, SlippageRisk

from conftest import SYMBOL


def at(hour, minute=0):
    return datetime(2024, 1, 1, hour, minute, tzinfo=timezone.utc)


def record_many(model, count, slippage):
    for _ in range(count):
        model.record_slippage(SYMBOL, slippage)


class TestConfig:

    def test_granularity_must_divide_hour(self):
        with pytest.raises(ValueError):
            SlippageTimingConfig(time_granularity=7)

    def test_thresholds_must_ascend(self):
        with pytest.raises(ValueError):
            SlippageTimingConfig(low_threshold=0.0001)


class TestKnownRiskPeriods:

    def test_quiet_time(self):
        assert check_known_risk_periods(10, 0) == []

    def test_funding_window_wraps_midnight(self):
        risks = check_known_risk_periods(23, 50)
        assert [r['type'] for r in risks] == [PeriodType.FUNDING_RATE]

    def test_us_open(self):
        risks = check_known_risk_periods(13, 45)
        assert [r['type'] for r in risks] == [PeriodType.MARKET_OPEN]
        assert risks[0]['detail'] == 'US market open'

    def test_midnight_overlaps_funding_and_asia_open(self):
        types = {r['type'] for r in check_known_risk_periods(0, 10)}
        assert types == {PeriodType.FUNDING_RATE, PeriodType.MARKET_OPEN}

    def test_windows_follow_config(self):
        config = SlippageTimingConfig(
            funding_hours=(4,),
            funding_window_minutes=5,
            market_opens=(("LDN", 10, 0),),
            market_open_window_minutes=10,
        )

        assert check_known_risk_periods(0, 0, config) == []
        assert check_known_risk_periods(4, 4, config)[0]['type'] == PeriodType.FUNDING_RATE
        assert check_known_risk_periods(4, 6, config) == []
        assert check_known_risk_periods(10, 0, config)[0]['detail'] == 'LDN market open'

    def test_model_uses_configured_windows(self, clock):
        model = SlippageTimingModel(SlippageTimingConfig(market_opens=(("LDN", 10, 0),)), clock=clock)
        risk = model.get_current_risk(SYMBOL)

        assert [r['detail'] for r in risk['known_risks']] == ['LDN market open']

    def test_window_lists_become_tuples(self):
        config = SlippageTimingConfig(funding_hours=[1, 9], market_opens=[["US", 14, 30]])

        assert config.funding_hours == (1, 9)
        assert config.market_opens == (("US", 14, 30),)

    def test_invalid_window_hour_rejected(self):
        with pytest.raises(ValueError):
            SlippageTimingConfig(funding_hours=(24,))


class TestScoring:

    def test_period_key_rounds_down(self, slippage_model):
        assert slippage_model.get_period_key(10, 37) == "10:30"
        assert slippage_model.get_period_key(3, 0) == "03:00"

    @pytest.mark.parametrize("slippage, score", [
        (0.0003, 10), (0.0008, 20), (0.0015, 40), (0.004, 60), (0.008, 80), (0.05, 100),
    ])
    def test_slippage_to_score(self, slippage_model, slippage, score):
        assert slippage_model.slippage_to_score(slippage) == score

    @pytest.mark.parametrize("score, level", [
        (15, SlippageRisk.VERY_LOW), (30, SlippageRisk.LOW), (50, SlippageRisk.MEDIUM),
        (70, SlippageRisk.HIGH), (85, SlippageRisk.VERY_HIGH), (86, SlippageRisk.EXTREME),
    ])
    def test_boundaries_belong_to_lower_band(self, score, level):
        assert SlippageTimingModel.score_to_level(score) == level


class TestRecording:

    def test_record_stores_magnitude(self, slippage_model):
        record = slippage_model.record_slippage(SYMBOL, -0.002, side='sell', size=1.5)

        assert record.slippage == pytest.approx(0.002)
        assert record.is_unfavorable is False
        assert (record.hour, record.minute) == (10, 0)
        assert slippage_model.period_stats[SYMBOL]["10:00"].count == 1

    def test_record_publishes_event(self, slippage_model):
        received = []
        slippage_model.subscribe(EventType.SLIPPAGE_RECORDED, received.append)

        slippage_model.record_slippage(SYMBOL, 0.001)

        assert received[0].payload['symbol'] == SYMBOL

    def test_global_stats(self, slippage_model):
        slippage_model.record_slippage(SYMBOL, 0.001)
        slippage_model.record_slippage(SYMBOL, 0.003)

        stats = slippage_model.get_stats()

        assert stats['total_records'] == 2
        assert stats['avg_slippage'] == pytest.approx(0.002)
        assert stats['max_slippage'] == pytest.approx(0.003)
        assert slippage_model.get_tracked_symbols() == [SYMBOL]

    def test_warnings_are_rate_limited(self, slippage_model, clock):
        warnings = []
        slippage_model.subscribe(EventType.SLIPPAGE_WARNING, warnings.append)

        slippage_model.record_slippage(SYMBOL, 0.008)
        clock.advance(1000)
        slippage_model.record_slippage(SYMBOL, 0.008)
        assert len(warnings) == 1

        clock.advance(5000)
        slippage_model.record_slippage(SYMBOL, 0.008)
        assert len(warnings) == 2
        assert warnings[0].payload['risk_level'] == SlippageRisk.VERY_HIGH

    def test_low_slippage_does_not_warn(self, slippage_model):
        warnings = []
        slippage_model.subscribe(EventType.SLIPPAGE_WARNING, warnings.append)
        slippage_model.record_slippage(SYMBOL, 0.001)
        assert warnings == []

    def test_increasing_trend(self, slippage_model):
        record_many(slippage_model, 5, 0.001)
        record_many(slippage_model, 5, 0.003)
        assert slippage_model.monitors[SYMBOL].trend == 'increasing'

    def test_decreasing_trend(self, slippage_model):
        record_many(slippage_model, 5, 0.003)
        record_many(slippage_model, 5, 0.001)
        assert slippage_model.monitors[SYMBOL].trend == 'decreasing'

    def test_old_history_is_dropped(self, slippage_model, clock):
        slippage_model.record_slippage(SYMBOL, 0.001)
        clock.advance(169 * 60 * 60 * 1000)
        slippage_model.record_slippage(SYMBOL, 0.001)

        assert len(slippage_model.slippage_history[SYMBOL]) == 1

    def test_reset(self, slippage_model):
        slippage_model.record_slippage(SYMBOL, 0.001)
        slippage_model.reset_stats()
        assert slippage_model.get_stats()['total_records'] == 0
        assert slippage_model.get_tracked_symbols() == []


class TestCurrentRisk:

    def test_no_data_is_very_low(self, slippage_model):
        risk = slippage_model.get_current_risk(SYMBOL)

        assert risk['risk_level'] == SlippageRisk.VERY_LOW
        assert risk['risk_score'] == 0
        assert risk['trend'] == 'stable'

    def test_recent_window_needs_five_samples(self, slippage_model):
        record_many(slippage_model, 4, 0.008)
        assert slippage_model.get_current_risk(SYMBOL)['risk_score'] == 0

        slippage_model.record_slippage(SYMBOL, 0.008)
        risk = slippage_model.get_current_risk(SYMBOL)
        assert risk['risk_score'] == pytest.approx(32)
        assert risk['risk_level'] == SlippageRisk.MEDIUM

    def test_historical_and_recent_blend(self, slippage_model):
        record_many(slippage_model, 10, 0.008)
        risk = slippage_model.get_current_risk(SYMBOL)

        assert risk['risk_score'] == pytest.approx(56)
        assert risk['risk_level'] == SlippageRisk.HIGH
        assert {f['factor'] for f in risk['risk_factors']} == {'historical_period', 'recent_slippage'}

    def test_known_window_adds_calendar_risk(self, slippage_model, clock):
        clock.set_time(at(8, 5))
        risk = slippage_model.get_current_risk(SYMBOL)

        assert risk['risk_score'] == pytest.approx(9)
        assert risk['known_risks'][0]['type'] == PeriodType.FUNDING_RATE


class TestDelay:

    def test_no_delay_when_quiet(self, slippage_model):
        record_many(slippage_model, 10, 0.008)
        decision = slippage_model.should_delay_execution(SYMBOL, 1.0)

        assert decision['should_delay'] is False
        assert decision['delay_ms'] == 0

    def test_high_risk_in_known_window_moves_to_next_safe_window(self, slippage_model, clock):
        clock.set_time(at(0, 5))
        record_many(slippage_model, 10, 0.008)

        decision = slippage_model.should_delay_execution(SYMBOL, 1.0)

        assert decision['should_delay'] is True
        assert decision['reason'] == 'Known high-risk period'
        # 00:20 is still inside the Asia open window, 00:35 is clear
        assert decision['delay_ms'] == 2 * 15 * 60 * 1000
        assert decision['recommended_time'] == at(0, 35)
        assert slippage_model.get_stats()['delayed_executions'] == 1

    def test_disabled_auto_delay(self, clock):
        model = SlippageTimingModel(SlippageTimingConfig(enable_auto_delay=False), clock=clock)
        clock.set_time(at(0, 5))
        record_many(model, 10, 0.03)

        assert model.should_delay_execution(SYMBOL)['should_delay'] is False


class TestOptimalTime:

    def test_picks_lowest_scoring_slot(self, slippage_model, clock):
        record_many(slippage_model, 3, 0.008)
        clock.set_time(at(10, 15))
        record_many(slippage_model, 3, 0.0003)
        clock.set_time(at(10, 0))

        result = slippage_model.get_optimal_execution_time(SYMBOL, within_hours=1)

        assert result['optimal_time'] == at(10, 15)
        assert result['optimal_score'] == 10
        assert result['analysis']['scanned_periods'] == 4
        assert [a['score'] for a in result['alternatives']] == [50, 50, 80]

    def test_ties_resolve_to_earliest_slot(self, slippage_model):
        result = slippage_model.get_optimal_execution_time(SYMBOL)
        assert result['optimal_time'] == at(10, 0)

    def test_known_risk_slots_are_skipped(self, slippage_model, clock):
        clock.set_time(at(23, 40))
        result = slippage_model.get_optimal_execution_time(SYMBOL, within_hours=1)

        assert result['analysis']['scanned_periods'] == 1
        assert result['optimal_time'] == at(23, 40)


class TestHeatmap:

    def test_no_data(self, slippage_model):
        assert slippage_model.get_period_heatmap(SYMBOL)['has_data'] is False

    def test_grid_and_high_risk_slots(self, slippage_model):
        slippage_model.record_slippage(SYMBOL, 0.008)

        heatmap = slippage_model.get_period_heatmap(SYMBOL)

        assert len(heatmap['heatmap']) == 24
        assert len(heatmap['heatmap'][0]) == 4
        assert heatmap['summary']['total_slots'] == 96
        assert heatmap['summary']['slots_with_data'] == 1
        assert heatmap['high_risk_periods'][0]['hour'] == 10

    def test_frame(self, slippage_model):
        slippage_model.record_slippage(SYMBOL, 0.004)

        frame = slippage_model.heatmap_frame(SYMBOL)

        assert frame.shape == (24, 4)
        assert frame.loc[10, 0] == pytest.approx(0.004)
        assert frame.isna().sum().sum() == 95
