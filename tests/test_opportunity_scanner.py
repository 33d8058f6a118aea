"""
Tests for OpportunityScanner

End-to-end cycles over fake chain and quote sources: threshold filtering,
per-chain failure isolation, suspension reporting and outcome feedback.
"""

import pytest
import asyncio
from dataclasses import replace

from conftest import (
    FakeChainSource,
    FakeQuoteSource,
    RecordingExecutor,
    START,
    WEI,
    make_outcome,
    make_settings,
)
from core.market_analyzer import MarketConditionAnalyzer
from core.models import BreakerState, CandidateOpportunity
from core.parameter_optimizer import ParameterOptimizer
from core.performance_tracker import PerformanceTracker
from core.risk_gate import RiskGate
from strategies.opportunity_scanner import OpportunityScanner, filter_candidates
from utils.exceptions import DataUnavailable


def build_scanner(clock, chain_sources=None, quote_sources=None, executor=None, on_report=None, **overrides):
    settings = make_settings(**overrides)
    chain_sources = chain_sources or {1: FakeChainSource()}
    quote_sources = quote_sources or {1: FakeQuoteSource({'venue_a': 1006, 'venue_b': 1000})}
    return OpportunityScanner(
        analyzer=MarketConditionAnalyzer(chain_sources, settings=settings, clock=clock),
        optimizer=ParameterOptimizer(settings),
        risk_gate=RiskGate(settings, clock=clock),
        tracker=PerformanceTracker(settings, clock=clock),
        quote_sources=quote_sources,
        executor=executor,
        settings=settings,
        clock=clock,
        on_report=on_report,
    )


def candidate(spread_pct, net_profit=10 ** 16, route=('WETH', 'USDC')):
    return CandidateOpportunity(
        candidate_id=f"1:{'-'.join(route)}:1000:{spread_pct}",
        chain_id=1,
        token_path=route,
        venues=('venue_a', 'venue_b'),
        quoted_amounts=(WEI, WEI),
        price_spread=0,
        spread_pct=spread_pct,
        trade_size=WEI,
        gross_profit=net_profit,
        gas_cost=0,
        net_profit=net_profit,
        price_impact=0.0,
        confidence=0.8,
        created_at=START,
    )


class TestFilter:

    def test_spread_threshold(self, make_conditions):
        """
        TEST: against 10.8 bps, a 0.05% spread is dropped and a 0.15% spread kept
        """
        params = ParameterOptimizer(make_settings()).compute_parameters(make_conditions())
        params = replace(params, min_spread_bps=10.8, min_profit_threshold=0)

        narrow, wide = candidate(0.05), candidate(0.15)
        kept, dropped = filter_candidates([narrow, wide], params)

        assert kept == [wide]
        assert dropped[0][0] is narrow
        assert 'below 10.80 bps' in dropped[0][1]

    def test_net_profit_threshold(self, make_conditions):
        params = ParameterOptimizer(make_settings()).compute_parameters(make_conditions())
        params = replace(params, min_spread_bps=10.0, min_profit_threshold=5 * 10 ** 15)

        kept, dropped = filter_candidates([candidate(0.5, net_profit=10 ** 15)], params)
        assert kept == []
        assert dropped[0][1].startswith('net profit')

    def test_filter_is_idempotent(self, make_conditions):
        params = ParameterOptimizer(make_settings()).compute_parameters(make_conditions())
        candidates = [candidate(pct, net_profit=n) for pct in (0.05, 0.2, 0.4, 1.0) for n in (10 ** 14, 10 ** 17)]

        kept, _ = filter_candidates(candidates, params)
        again, dropped = filter_candidates(kept, params)

        assert again == kept
        assert dropped == []


class TestScanCycle:

    @pytest.mark.asyncio
    async def test_profitable_spread_is_dispatched(self, clock):
        executor = RecordingExecutor(clock)
        scanner = build_scanner(clock, executor=executor)

        reports = await scanner.scan_once()

        assert len(reports) == 1
        report = reports[0]
        assert report.errors == []
        assert report.used_fallback_conditions is False
        assert report.parameters.min_spread_bps == pytest.approx(30.0)
        assert report.candidates_found == 1
        assert report.approved == report.dispatched == ['1:WETH-USDC:1000:venue_a/venue_b:1']

        submitted, params = executor.submitted[0]
        assert params is report.parameters
        assert submitted.spread_bps == pytest.approx(60.0)
        assert submitted.gross_profit == pytest.approx(6e15, rel=1e-9)
        assert submitted.gas_cost == pytest.approx(360_000 * 10 ** 9 * 1.32, rel=1e-9)
        assert submitted.net_profit == submitted.gross_profit - submitted.gas_cost
        assert 0.0 <= submitted.confidence <= 1.0

    @pytest.mark.asyncio
    async def test_narrow_spread_is_filtered(self, clock):
        executor = RecordingExecutor(clock)
        quotes = {1: FakeQuoteSource({'venue_a': 1002, 'venue_b': 1000})}
        scanner = build_scanner(clock, quote_sources=quotes, executor=executor)

        report = (await scanner.scan_once())[0]

        assert report.candidates_found == 1
        assert report.approved == []
        assert 'bps below 30.00 bps' in report.filtered[0][1]
        assert executor.submitted == []

    @pytest.mark.asyncio
    async def test_single_venue_yields_no_pair_candidate(self, clock):
        quotes = {1: FakeQuoteSource({'venue_a': 1006})}
        report = (await build_scanner(clock, quote_sources=quotes).scan_once())[0]
        assert report.candidates_found == 0

    @pytest.mark.asyncio
    async def test_multi_hop_path(self, clock):
        executor = RecordingExecutor(clock)
        scanner = build_scanner(
            clock, executor=executor, trading_paths=[['WETH', 'USDC', 'DAI', 'WETH']]
        )

        report = (await scanner.scan_once())[0]

        assert report.candidates_found == 2
        multi = [c for c, _ in executor.submitted if c.is_multi_hop]
        assert len(multi) == 1
        assert multi[0].venues == ('venue_a', 'venue_a', 'venue_a')
        assert len(multi[0].quoted_amounts) == 3
        assert multi[0].spread_bps == pytest.approx(181.08, rel=1e-3)

    @pytest.mark.asyncio
    async def test_failing_chain_does_not_block_others(self, clock):
        executor = RecordingExecutor(clock)
        chain_sources = {1: FakeChainSource(), 137: FakeChainSource(fail=True)}
        quote_sources = {
            1: FakeQuoteSource({'venue_a': 1006, 'venue_b': 1000}),
            137: FakeQuoteSource(
                {},
                errors={'venue_a': RuntimeError("connection reset"), 'venue_b': DataUnavailable("503")},
            ),
        }
        scanner = build_scanner(
            clock, chain_sources=chain_sources, quote_sources=quote_sources,
            executor=executor, chains=[1, 137],
        )

        healthy, broken = await scanner.scan_once()

        assert healthy.chain_id == 1
        assert len(healthy.approved) == 1
        assert broken.chain_id == 137
        assert broken.used_fallback_conditions is True
        assert broken.conditions.reference_gas_price == 50 * 10 ** 9
        assert broken.candidates_found == 0
        assert len(broken.errors) >= 3
        assert broken.finished_at is not None

    @pytest.mark.asyncio
    async def test_slow_quotes_time_out(self, clock):
        quotes = {1: FakeQuoteSource({'venue_a': 1006, 'venue_b': 1000}, delay=1.0)}
        scanner = build_scanner(clock, quote_sources=quotes, quote_timeout_sec=0.05)

        report = (await scanner.scan_once())[0]

        assert report.candidates_found == 0
        assert any(e.startswith('quote timeout') for e in report.errors)

    @pytest.mark.asyncio
    async def test_chain_cycle_timeout(self, clock):
        quotes = {1: FakeQuoteSource({'venue_a': 1006, 'venue_b': 1000}, delay=1.0)}
        scanner = build_scanner(clock, quote_sources=quotes, chain_cycle_timeout_sec=0.05)

        report = (await scanner.scan_once())[0]

        assert report.candidates_found == 0
        assert any('timed out' in e for e in report.errors)

    @pytest.mark.asyncio
    async def test_missing_quote_source(self, clock):
        scanner = build_scanner(clock, quote_sources={2: FakeQuoteSource({})})
        report = (await scanner.scan_once())[0]
        assert report.errors == ["no quote source configured for chain 1"]


class TestRiskIntegration:

    @pytest.mark.asyncio
    async def test_suspension_is_reported_not_raised(self, clock):
        executor = RecordingExecutor(clock)
        scanner = build_scanner(clock, executor=executor)
        for _ in range(5):
            scanner.report_outcome(make_outcome(clock, success=False))

        report = (await scanner.scan_once())[0]

        assert report.suspended is True
        assert "5 consecutive failures" in report.suspension_reasons
        assert report.approved == []
        assert executor.submitted == []
        assert [t.to_state for t in report.breaker_transitions] == [BreakerState.OPEN]

    @pytest.mark.asyncio
    async def test_rejection_carries_the_limit(self, clock):
        executor = RecordingExecutor(clock)
        scanner = build_scanner(clock, executor=executor, initial_capital=5 * WEI)

        report = (await scanner.scan_once())[0]

        assert report.approved == []
        candidate_id, breaches = report.rejected[0]
        assert candidate_id == '1:WETH-USDC:1000:venue_a/venue_b:1'
        assert [b.limit for b in breaches] == ['max_single_trade']

    @pytest.mark.asyncio
    async def test_outcome_feeds_tracker_and_gate(self, clock):
        executor = RecordingExecutor(clock, succeed=True)
        scanner = build_scanner(clock, executor=executor)

        report = (await scanner.scan_once())[0]

        records = scanner.tracker.snapshot()
        assert len(records) == 1
        assert records[0].success is True
        assert records[0].buckets == report.parameters.buckets
        assert records[0].parameters is report.parameters

        metrics = scanner.risk_gate.metrics()
        assert metrics.total_trades == 1
        assert metrics.token_exposure['WETH'] == WEI
        assert metrics.chain_exposure[1] == WEI

    @pytest.mark.asyncio
    async def test_route_cooldown(self, clock):
        executor = RecordingExecutor(clock)
        scanner = build_scanner(clock, executor=executor)

        await scanner.scan_once()
        second = (await scanner.scan_once())[0]
        assert ('1:WETH-USDC:1000:venue_a/venue_b:2', 'route in cooldown') in second.filtered
        assert len(executor.submitted) == 1

        clock.advance(seconds=8)
        third = (await scanner.scan_once())[0]
        assert len(third.approved) == 1
        assert len(executor.submitted) == 2


class FailingExecutor:

    async def submit(self, candidate, parameters):
        raise ConnectionError("executor unreachable")


class TestExposureWithinCycle:

    @pytest.mark.asyncio
    async def test_one_cycle_respects_token_cap(self, clock):
        """
        TEST: three 1 WETH trades against a 2.5 WETH cap, only two are sent
        """
        executor = RecordingExecutor(clock)
        scanner = build_scanner(
            clock, executor=executor,
            trading_pairs=[['WETH', 'USDC'], ['WETH', 'DAI'], ['WETH', 'WBTC']],
        )

        report = (await scanner.scan_once())[0]

        assert report.candidates_found == 3
        assert len(report.approved) == 2
        assert len(executor.submitted) == 2
        _, breaches = report.rejected[0]
        assert [b.limit for b in breaches] == ['token_exposure:WETH']
        assert scanner.risk_gate.metrics().token_exposure['WETH'] == 2 * WEI

    @pytest.mark.asyncio
    async def test_failed_submission_releases_exposure(self, clock):
        scanner = build_scanner(clock, executor=FailingExecutor())

        report = (await scanner.scan_once())[0]

        assert len(report.approved) == 1
        assert report.dispatched == []
        assert any('executor failed' in e for e in report.errors)
        assert scanner.risk_gate.metrics().token_exposure == {}
        assert scanner._in_flight == {}

    @pytest.mark.asyncio
    async def test_detect_only_mode_holds_no_exposure(self, clock):
        scanner = build_scanner(clock)

        report = (await scanner.scan_once())[0]

        assert len(report.approved) == 1
        assert scanner.risk_gate.metrics().chain_exposure == {}


class TestInFlight:

    @pytest.mark.asyncio
    async def test_unreported_dispatches_expire(self, clock):
        executor = RecordingExecutor(clock)
        scanner = build_scanner(clock, executor=executor)

        first = (await scanner.scan_once())[0]
        assert list(scanner._in_flight) == first.dispatched

        clock.advance(hours=25)
        second = (await scanner.scan_once())[0]

        assert list(scanner._in_flight) == second.dispatched
        assert len(scanner._in_flight) == 1

    @pytest.mark.asyncio
    async def test_candidate_ids_differ_across_cycles_on_same_block(self, clock):
        executor = RecordingExecutor(clock)
        scanner = build_scanner(clock, executor=executor)

        await scanner.scan_once()
        clock.advance(seconds=8)
        await scanner.scan_once()

        ids = [c.candidate_id for c, _ in executor.submitted]
        assert len(ids) == 2
        assert ids[0] != ids[1]
        assert all(':1000:' in cid for cid in ids)


class TestRunLoop:

    @pytest.mark.asyncio
    async def test_run_stops_on_event(self, clock):
        stop = asyncio.Event()
        reports = []

        def on_report(report):
            reports.append(report)
            stop.set()

        scanner = build_scanner(clock, on_report=on_report)
        await asyncio.wait_for(scanner.run(stop), timeout=5)

        assert len(reports) == 1
        assert reports[0].chain_id == 1
