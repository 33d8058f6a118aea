"""
Tests for Configuration Module
"""

import pytest

from config import constants as C
from config.settings import PipelineSettings, get_settings, reload_settings
from conftest import make_settings


class TestConstants:
    """Test configuration constants"""

    def test_adjustment_tables_cover_every_bucket(self):
        assert set(C.VOLATILITY_ADJUSTMENT) == {'low', 'medium', 'high'}
        assert set(C.LIQUIDITY_ADJUSTMENT) == {'thin', 'normal', 'deep'}
        assert set(C.COMPETITION_ADJUSTMENT) == {'low', 'medium', 'high'}
        assert set(C.TIME_OF_DAY_ADJUSTMENT) == {'quiet', 'active', 'peak'}

    def test_safety_bands_are_ordered(self):
        assert C.MIN_SPREAD_BPS < C.BASE_SPREAD_THRESHOLD_BPS < C.MAX_SPREAD_BPS
        assert C.MIN_TRADE_SIZE < C.BASE_TRADE_SIZE < C.MAX_TRADE_SIZE
        assert C.MIN_GAS_BUFFER <= C.BASE_GAS_BUFFER <= C.MAX_GAS_BUFFER
        assert C.LEARNING_FACTOR_MIN < 1.0 < C.LEARNING_FACTOR_MAX

    def test_default_chain_has_gas_profile(self):
        assert C.DEFAULT_CHAIN_ID in C.CHAIN_GAS_PROFILES
        for profile in C.CHAIN_GAS_PROFILES.values():
            assert profile['gas_units_per_swap'] > 0
            assert profile['fee_multiplier'] > 0


class TestPipelineSettings:

    def test_defaults_follow_constants(self):
        settings = make_settings()
        assert settings.base_spread_threshold_bps == C.BASE_SPREAD_THRESHOLD_BPS
        assert settings.max_consecutive_failures == C.MAX_CONSECUTIVE_FAILURES
        assert settings.volatility_adjustment == C.VOLATILITY_ADJUSTMENT

    def test_tables_are_not_shared_between_instances(self):
        first = make_settings()
        first.volatility_adjustment['low'] = 0.1
        assert make_settings().volatility_adjustment['low'] == C.VOLATILITY_ADJUSTMENT['low']

    def test_bounds_cover_numeric_parameters(self):
        bounds = make_settings().bounds()
        assert set(bounds) == {
            'min_spread_bps', 'min_profit_threshold', 'slippage_tolerance_bps',
            'max_trade_size', 'cooldown_period_sec', 'gas_buffer_multiplier',
        }
        assert bounds['min_spread_bps'] == (C.MIN_SPREAD_BPS, C.MAX_SPREAD_BPS)

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv('MAX_DRAWDOWN_PCT', '0.03')
        monkeypatch.setenv('CHAINS', '[1, 42161]')
        settings = PipelineSettings()
        assert settings.max_drawdown_pct == 0.03
        assert settings.chains == [1, 42161]

    def test_reload_replaces_singleton(self, monkeypatch):
        first = get_settings()
        assert get_settings() is first

        monkeypatch.setenv('BREAKER_COOLDOWN_SEC', '60')
        reloaded = reload_settings()
        assert reloaded is not first
        assert reloaded.breaker_cooldown_sec == 60

        monkeypatch.delenv('BREAKER_COOLDOWN_SEC')
        reload_settings()

    @pytest.mark.parametrize("overrides", [
        {'min_spread_bps': 600.0},
        {'learning_factor_min': 3.0},
        {'liquidity_thin_boundary': 200.0},
        {'chains': []},
        {'peak_start_hour': 18},
        {'max_drawdown_pct': 1.5},
        {'volatility_adjustment': {'low': 0.8, 'medium': 1.0}},
        {'liquidity_adjustment': {'thin': 1.5, 'normal': 0.0, 'deep': 0.9}},
        {'trading_pairs': [['WETH', 'WETH']]},
        {'trading_paths': [['WETH', 'USDC']]},
    ])
    def test_invalid_configuration_is_rejected(self, overrides):
        # pydantic's ValidationError subclasses ValueError
        with pytest.raises(ValueError):
            make_settings(**overrides)
