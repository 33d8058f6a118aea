"""
Tests for the host process wiring
"""

import pytest

from conftest import START, WEI, make_settings
from core.models import CandidateOpportunity
from core.parameter_optimizer import ParameterOptimizer
from main import DryRunExecutor, PipelineHost
from strategies.opportunity_scanner import OpportunityScanner
from utils.exceptions import ConfigurationError


class TestPipelineHost:

    def test_missing_rpc_url_is_a_configuration_error(self):
        host = PipelineHost(make_settings(chains=[1, 10], rpc_urls={1: "http://localhost:8545"}))
        with pytest.raises(ConfigurationError) as exc_info:
            host.build()
        assert exc_info.value.details == {'chains': [10]}

    def test_build_wires_one_source_per_chain(self):
        host = PipelineHost(make_settings(
            chains=[1, 10],
            rpc_urls={1: "http://localhost:8545", 10: "http://localhost:9545"},
        ))
        scanner = host.build()

        assert isinstance(scanner, OpportunityScanner)
        assert set(host._quote_sources) == {1, 10}
        assert isinstance(scanner.executor, DryRunExecutor)


class TestDryRunExecutor:

    @pytest.mark.asyncio
    async def test_reports_no_outcome(self, make_conditions):
        params = ParameterOptimizer(make_settings()).compute_parameters(make_conditions())
        candidate = CandidateOpportunity(
            candidate_id="1:WETH-USDC:1000:a/b",
            chain_id=1,
            token_path=('WETH', 'USDC'),
            venues=('a', 'b'),
            quoted_amounts=(WEI, WEI),
            price_spread=0,
            spread_pct=0.5,
            trade_size=WEI,
            gross_profit=5 * 10 ** 15,
            gas_cost=10 ** 14,
            net_profit=49 * 10 ** 14,
            price_impact=0.01,
            confidence=0.9,
            created_at=START,
        )
        assert await DryRunExecutor().submit(candidate, params) is None
