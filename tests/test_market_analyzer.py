"""
Tests for MarketConditionAnalyzer
"""

import pytest
from datetime import timedelta

from conftest import FakeChainSource, FakeClock, GWEI, make_settings
from core.market_analyzer import MarketConditionAnalyzer, classify_regime, classify_time_of_day
from core.models import MarketTrend, RegimeType, TimeOfDay
from utils.exceptions import DataUnavailable


def build(source, clock=None, **overrides):
    settings = make_settings(**overrides)
    return MarketConditionAnalyzer({1: source}, settings=settings, clock=clock or FakeClock())


class TestTimeOfDay:

    @pytest.mark.parametrize("hour,expected", [
        (0, TimeOfDay.QUIET),
        (6, TimeOfDay.QUIET),
        (7, TimeOfDay.ACTIVE),
        (12, TimeOfDay.ACTIVE),
        (13, TimeOfDay.PEAK),
        (16, TimeOfDay.PEAK),
        (17, TimeOfDay.ACTIVE),
        (21, TimeOfDay.ACTIVE),
        (22, TimeOfDay.QUIET),
        (23, TimeOfDay.QUIET),
    ])
    def test_default_utc_buckets(self, hour, expected):
        assert classify_time_of_day(hour, make_settings()) == expected

    def test_boundaries_come_from_configuration(self):
        settings = make_settings(peak_start_hour=9, peak_end_hour=11)
        assert classify_time_of_day(10, settings) == TimeOfDay.PEAK
        assert classify_time_of_day(14, settings) == TimeOfDay.ACTIVE


class TestAnalyze:

    @pytest.mark.asyncio
    async def test_first_sample_uses_neutral_volatility_and_congestion(self):
        analyzer = build(FakeChainSource([GWEI]))
        conditions = await analyzer.analyze(1)

        assert conditions.volatility == 0.5
        assert conditions.network_congestion == 0.5
        assert conditions.reference_gas_price == GWEI
        assert conditions.time_of_day == TimeOfDay.ACTIVE
        assert conditions.market_trend == MarketTrend.SIDEWAYS

    @pytest.mark.asyncio
    async def test_flat_gas_means_zero_volatility(self):
        analyzer = build(FakeChainSource([GWEI] * 5))
        for _ in range(5):
            conditions = await analyzer.analyze(1)

        assert conditions.volatility == 0.0
        assert conditions.network_congestion == 0.0

    @pytest.mark.asyncio
    async def test_liquidity_proxy_from_block_utilization(self):
        half_full = build(FakeChainSource(gas_used=15_000_000, gas_limit=30_000_000))
        assert (await half_full.analyze(1)).liquidity == pytest.approx(100.0)

        nearly_full = build(FakeChainSource(gas_used=27_000_000, gas_limit=30_000_000))
        assert (await nearly_full.analyze(1)).liquidity == pytest.approx(50.0)

    @pytest.mark.asyncio
    async def test_gas_spike_raises_congestion_and_competition(self):
        prices = [GWEI] * 9 + [3 * GWEI]
        analyzer = build(FakeChainSource(prices))
        for _ in range(10):
            conditions = await analyzer.analyze(1)

        # 3 / 1.2 - 1 = 1.5, clamped
        assert conditions.network_congestion == 1.0
        assert conditions.competition_level == pytest.approx(0.8)
        assert 0.0 < conditions.volatility <= 1.0

    @pytest.mark.asyncio
    async def test_rising_gas_is_a_bull_trend(self):
        prices = [GWEI] * 5 + [int(1.2 * GWEI)] * 5
        analyzer = build(FakeChainSource(prices))
        for _ in range(10):
            conditions = await analyzer.analyze(1)

        assert conditions.market_trend == MarketTrend.BULL

    @pytest.mark.asyncio
    async def test_sample_block_never_decreases(self):
        source = FakeChainSource(block_number=500)
        analyzer = build(source)
        first = await analyzer.analyze(1)

        source.block_number = 400
        second = await analyzer.analyze(1)

        assert second.sample_block >= first.sample_block == 500

    @pytest.mark.asyncio
    async def test_gas_history_is_bounded(self):
        analyzer = build(FakeChainSource([GWEI]), gas_history_size=10)
        for _ in range(25):
            await analyzer.analyze(1)

        assert analyzer.history_depth(1) == 10

    @pytest.mark.asyncio
    async def test_unreachable_chain_raises_data_unavailable(self):
        analyzer = build(FakeChainSource(fail=True))
        with pytest.raises(DataUnavailable):
            await analyzer.analyze(1)

    @pytest.mark.asyncio
    async def test_unknown_chain_raises_data_unavailable(self):
        analyzer = build(FakeChainSource())
        with pytest.raises(DataUnavailable) as exc_info:
            await analyzer.analyze(999)
        assert exc_info.value.chain_id == 999

    @pytest.mark.asyncio
    async def test_fallback_to_default_conditions(self):
        source = FakeChainSource(block_number=777)
        analyzer = build(source)
        await analyzer.analyze(1)

        source.fail = True
        conditions, used_fallback = await analyzer.analyze_or_default(1)

        assert used_fallback is True
        assert conditions.volatility == 0.5
        assert conditions.liquidity == 100.0
        assert conditions.time_of_day == TimeOfDay.ACTIVE
        assert conditions.market_trend == MarketTrend.SIDEWAYS
        assert conditions.sample_block == 777
        assert conditions.reference_gas_price == GWEI


class TestRegime:

    def test_high_volatility_overrides_trend(self, make_conditions):
        regime = classify_regime(make_conditions(volatility=0.9, market_trend=MarketTrend.BULL), None)
        assert regime.regime_type == RegimeType.HIGH_VOLATILITY
        assert regime.strength == pytest.approx(0.9)

    def test_trend_decides_mid_volatility(self, make_conditions):
        assert classify_regime(make_conditions(market_trend=MarketTrend.BEAR), None).regime_type \
            == RegimeType.BEAR_MARKET
        assert classify_regime(make_conditions(volatility=0.1), None).regime_type \
            == RegimeType.LOW_VOLATILITY

    def test_stability_grows_then_resets(self, make_conditions):
        first = make_conditions()
        regime = classify_regime(first, None, reset_stability=0.3)
        assert regime.stability == pytest.approx(0.3)

        later = make_conditions(timestamp=first.timestamp + timedelta(minutes=5))
        regime = classify_regime(later, regime, reset_stability=0.3)
        assert regime.regime_type == RegimeType.SIDEWAYS
        assert regime.stability == pytest.approx(0.4)
        assert regime.duration == timedelta(minutes=5)

        changed = make_conditions(volatility=0.95, timestamp=first.timestamp + timedelta(minutes=10))
        regime = classify_regime(changed, regime, reset_stability=0.3)
        assert regime.regime_type == RegimeType.HIGH_VOLATILITY
        assert regime.stability == pytest.approx(0.3)
        assert regime.duration == timedelta(0)

    def test_stability_is_capped(self, make_conditions):
        regime = None
        for _ in range(20):
            regime = classify_regime(make_conditions(), regime)
        assert regime.stability == 1.0

    def test_pure_and_deterministic(self, make_conditions):
        conditions = make_conditions(volatility=0.6, market_trend=MarketTrend.BULL)
        assert classify_regime(conditions, None) == classify_regime(conditions, None)


class TestAssessment:

    def test_calm_market_is_aggressive(self, make_conditions):
        analyzer = build(FakeChainSource())
        assessment = analyzer.assess_market(make_conditions(
            volatility=0.9, network_congestion=0.0, competition_level=0.0
        ))
        assert assessment.recommendation == 'aggressive'
        assert 'high volatility' in assessment.risk_factors
        assert 0.1 <= assessment.confidence <= 1.0

    def test_hostile_market_pauses(self, make_conditions):
        analyzer = build(FakeChainSource())
        assessment = analyzer.assess_market(make_conditions(
            volatility=0.0, liquidity=50.0, network_congestion=0.95, competition_level=0.95
        ))
        assert assessment.recommendation == 'pause'
        assert assessment.risk_level == 'critical'
        assert len(assessment.mitigations) == len(assessment.risk_factors) == 3
