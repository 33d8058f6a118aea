"""
Tests for exceptions, helpers and logging utilities
"""

import pytest
import json
import logging
from datetime import timedelta

import utils
from conftest import START
from core.models import LimitBreach
from utils.exceptions import (
    DataUnavailable,
    DataValidationError,
    ParameterOutOfBounds,
    PipelineError,
    RiskLimitExceeded,
    TradingSuspended,
)
from utils.helpers import (
    clamp,
    coefficient_of_variation,
    mean,
    safe_divide,
    validate_amount,
    validate_token_path,
)
from utils.logger import JSONFormatter, get_logger, log_error_with_context, log_trade_event, setup_logging


class TestExceptions:

    def test_hierarchy(self):
        for cls in (DataUnavailable, DataValidationError, ParameterOutOfBounds,
                    RiskLimitExceeded, TradingSuspended):
            assert issubclass(cls, PipelineError)

    def test_parameter_out_of_bounds_clamps(self):
        high = ParameterOutOfBounds('min_spread_bps', 800.0, 5.0, 500.0)
        low = ParameterOutOfBounds('min_spread_bps', 1.0, 5.0, 500.0)
        assert high.clamped_value == 500.0
        assert low.clamped_value == 5.0
        assert high.error_code == 'PARAMETER_OUT_OF_BOUNDS'

    def test_trading_suspended_carries_reasons(self):
        error = TradingSuspended(
            ["5 consecutive failures", "drawdown 6.00% exceeds 5.00%"],
            activated_at=START,
            estimated_recovery_time=START + timedelta(minutes=30),
        )
        assert len(error.reasons) == 2
        assert "5 consecutive failures" in str(error)
        assert error.details['estimated_recovery_time'] == (START + timedelta(minutes=30)).isoformat()

    def test_risk_limit_exceeded_lists_breaches(self):
        breach = LimitBreach('gas_ratio', 0.5, 0.25, "gas/profit ratio 0.50 exceeds 0.25")
        error = RiskLimitExceeded([breach])
        assert error.breaches == [breach]
        assert error.details == {'limits': ['gas_ratio']}

    def test_data_unavailable_defaults(self):
        error = DataUnavailable("rpc down", source='rpc:gas_price', chain_id=10)
        assert error.error_code == 'DATA_UNAVAILABLE'
        assert error.details == {'source': 'rpc:gas_price', 'chain_id': 10}


class TestHelpers:

    def test_safe_math(self):
        assert clamp(1.5, 0.0, 1.0) == 1.0
        assert safe_divide(1, 0, default=7.0) == 7.0
        assert safe_divide(1, float('inf')) == 0.0
        assert mean([]) == 0.0

    def test_coefficient_of_variation(self):
        assert coefficient_of_variation([5]) == 0.0
        assert coefficient_of_variation([0, 0, 0]) == 0.0
        assert coefficient_of_variation([1, 3]) == pytest.approx(0.5)
        assert coefficient_of_variation([10 ** 9, 3 * 10 ** 9]) == pytest.approx(0.5)
        assert mean([1, 2]) == 1.5

    def test_validate_amount(self):
        assert validate_amount(0, 'gas') == 0
        with pytest.raises(DataValidationError):
            validate_amount(0, 'size', allow_zero=False)
        with pytest.raises(DataValidationError):
            validate_amount(1.5, 'size')
        with pytest.raises(DataValidationError):
            validate_amount(True, 'size')

    def test_validate_token_path(self):
        assert validate_token_path(['WETH', 'USDC', 'DAI', 'WETH']) == ('WETH', 'USDC', 'DAI', 'WETH')
        with pytest.raises(DataValidationError):
            validate_token_path(['WETH', 'WETH'])
        with pytest.raises(DataValidationError):
            validate_token_path(['WETH', ''])
        with pytest.raises(DataValidationError):
            validate_token_path(['WETH', 'USDC', ''])


class TestLogging:

    def test_package_exports_logging_setup(self):
        assert utils.get_logger is get_logger
        assert utils.setup_logging is setup_logging

    def test_json_formatter_keeps_extra_fields(self):
        record = logging.LogRecord('pipeline', logging.INFO, __file__, 1, "approved", None, None)
        record.chain_id = 1
        record.limits = ['gas_ratio']
        record.unserializable = object()

        data = json.loads(JSONFormatter().format(record))

        assert data['message'] == "approved"
        assert data['chain_id'] == 1
        assert data['limits'] == ['gas_ratio']
        assert 'unserializable' not in data

    def test_log_trade_event(self, caplog):
        logger = logging.getLogger('test.events')
        with caplog.at_level(logging.INFO, logger='test.events'):
            log_trade_event(logger, 'CANDIDATE_APPROVED', chain_id=1)

        assert caplog.records[0].event_type == 'CANDIDATE_APPROVED'
        assert caplog.records[0].chain_id == 1

    def test_log_error_with_context_level(self, caplog):
        logger = logging.getLogger('test.errors')
        with caplog.at_level(logging.WARNING, logger='test.errors'):
            log_error_with_context(
                logger, "Quote unavailable", DataUnavailable("503"), level=logging.WARNING, venue='sushiswap'
            )

        assert caplog.records[0].levelno == logging.WARNING
        assert caplog.records[0].venue == 'sushiswap'
