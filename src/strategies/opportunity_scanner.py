"""
Opportunity Scanner - Cross-Venue Spread Detection

Drives one evaluation cycle per configured chain, concurrently:

1. Sample chain conditions (default conditions if the chain is unreachable)
2. Ask the optimizer for the current thresholds
3. Quote every trading pair across all venues, and every multi-hop path
   hop by hop, with concurrent requests and a per-request timeout
4. Build candidates from the best and second-best quote

After every chain has been joined, candidates are filtered against the
thresholds, submitted to the risk gate, and the approved ones are handed,
unmodified, to the external executor.

Formulas (pair):
    spread          = best_out - second_out
    spread_fraction = spread / second_out
    gross_profit    = trade_size × spread_fraction
    gas_cost        = swap_gas_units × gas_price × chain_fee_multiplier × gas_buffer
    net_profit      = gross_profit - gas_cost

Formulas (multi-hop A → B → C → A, best venue per hop):
    spread_fraction = (final_out - trade_size) / trade_size

Confidence (advisory only, never gates a trade):
    (liquidity score + price-impact score + gas-efficiency score) / 3
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from config.settings import PipelineSettings, get_settings
from core.data_sources import QuoteSource, chain_profile
from core.market_analyzer import MarketConditionAnalyzer
from core.models import (
    BreakerTransition,
    CandidateOpportunity,
    CycleReport,
    MarketConditions,
    OptimizedParameters,
    QuoteResult,
    TradeOutcome,
    TradeRecord,
)
from core.parameter_optimizer import ParameterOptimizer
from core.performance_tracker import PerformanceTracker
from core.risk_gate import RiskGate
from utils.exceptions import DataUnavailable, RiskLimitExceeded, TradingSuspended
from utils.helpers import clamp, safe_divide, utc_now
from utils.logger import get_logger, log_error_with_context, log_trade_event


logger = get_logger(__name__)

PAIR_SWAPS = 2
PRICE_IMPACT_SCORE_SCALE = 10.0


class TradeExecutor(Protocol):
    """External executor; may report the outcome immediately or later via ``report_outcome``"""

    async def submit(
        self,
        candidate: CandidateOpportunity,
        parameters: OptimizedParameters
    ) -> Optional[TradeOutcome]:
        ...


def filter_candidates(
    candidates: Sequence[CandidateOpportunity],
    params: OptimizedParameters
) -> Tuple[List[CandidateOpportunity], List[Tuple[CandidateOpportunity, str]]]:
    """
    Split candidates into (kept, dropped-with-reason) against the thresholds.

    Pure and idempotent: filtering the kept list again drops nothing.
    """
    kept: List[CandidateOpportunity] = []
    dropped: List[Tuple[CandidateOpportunity, str]] = []
    for candidate in candidates:
        if candidate.spread_bps < params.min_spread_bps:
            dropped.append((
                candidate,
                f"spread {candidate.spread_bps:.2f} bps below {params.min_spread_bps:.2f} bps",
            ))
        elif candidate.net_profit < params.min_profit_threshold:
            dropped.append((
                candidate,
                f"net profit {candidate.net_profit} below {params.min_profit_threshold}",
            ))
        else:
            kept.append(candidate)
    return kept, dropped


class OpportunityScanner:
    """
    Cycle driver joining the analyzer, optimizer, risk gate and tracker.

    Args:
        analyzer: Market condition analyzer (owns the chain data sources)
        optimizer: Parameter optimizer
        risk_gate: Risk gate shared by every chain
        tracker: Performance tracker fed by ``report_outcome``
        quote_sources: Quote source per chain id
        executor: External executor (None = detect and approve only)
        settings: Pipeline settings
        clock: Callable returning the current UTC datetime
        on_report: Optional callback receiving every CycleReport
    """

    def __init__(
        self,
        analyzer: MarketConditionAnalyzer,
        optimizer: ParameterOptimizer,
        risk_gate: RiskGate,
        tracker: PerformanceTracker,
        quote_sources: Mapping[int, QuoteSource],
        executor: Optional[TradeExecutor] = None,
        settings: Optional[PipelineSettings] = None,
        clock: Callable[[], datetime] = utc_now,
        on_report: Optional[Callable[[CycleReport], Any]] = None,
    ):
        self.analyzer = analyzer
        self.optimizer = optimizer
        self.risk_gate = risk_gate
        self.tracker = tracker
        self.executor = executor
        self.settings = settings or get_settings()
        self._quote_sources = dict(quote_sources)
        self._clock = clock
        self._on_report = on_report

        self._last_dispatch: Dict[str, datetime] = {}
        self._in_flight: Dict[str, Tuple[OptimizedParameters, MarketConditions, datetime]] = {}
        self._cycle = 0
        self._transitions: List[BreakerTransition] = []
        self.risk_gate.register_transition_callback(self._transitions.append)

        self._routes: List[Tuple[str, ...]] = (
            [tuple(pair) for pair in self.settings.trading_pairs]
            + [tuple(path) for path in self.settings.trading_paths]
        )
        logger.info(
            f"Opportunity scanner initialized: chains={self.settings.chains} "
            f"routes={len(self._routes)} venues={self.settings.venues}"
        )

    # ========================================================================
    # CYCLE
    # ========================================================================

    async def scan_once(self) -> List[CycleReport]:
        """
        Run one evaluation cycle over every configured chain.

        Chains are evaluated concurrently; a chain that fails or times out
        yields a report with its errors and no candidates. Threshold filtering,
        risk assessment and dispatch run after all chains have been joined.
        """
        self._cycle += 1
        self._expire_in_flight()
        evaluations = await asyncio.gather(
            *(self._evaluate_chain_guarded(chain_id) for chain_id in self.settings.chains)
        )

        reports = []
        for report, candidates in evaluations:
            approved = self._decide(report, candidates)
            for candidate in approved:
                await self._dispatch(candidate, report)
            report.breaker_transitions.extend(self._drain_transitions())
            report.finished_at = self._clock()
            self._publish(report)
            reports.append(report)
        return reports

    async def run(self, stop_event: asyncio.Event) -> None:
        """Repeat ``scan_once`` every ``scan_interval_sec`` until ``stop_event`` is set"""
        logger.info(f"🔍 Scanner loop started (interval {self.settings.scan_interval_sec}s)")
        while not stop_event.is_set():
            try:
                await self.scan_once()
            except Exception as e:
                log_error_with_context(logger, "Scan cycle failed", e)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.settings.scan_interval_sec)
            except asyncio.TimeoutError:
                pass
        logger.info("🔍 Scanner loop stopped")

    async def _evaluate_chain_guarded(self, chain_id: int) -> Tuple[CycleReport, List[CandidateOpportunity]]:
        report = CycleReport(chain_id=chain_id, started_at=self._clock())
        try:
            candidates = await asyncio.wait_for(
                self._evaluate_chain(chain_id, report),
                timeout=self.settings.chain_cycle_timeout_sec,
            )
        except asyncio.TimeoutError:
            report.errors.append(f"chain cycle timed out after {self.settings.chain_cycle_timeout_sec}s")
            logger.warning(f"Chain {chain_id} cycle timed out", extra={'chain_id': chain_id})
            candidates = []
        except Exception as e:
            report.errors.append(f"{type(e).__name__}: {e}")
            log_error_with_context(logger, f"Chain {chain_id} cycle failed", e, chain_id=chain_id)
            candidates = []
        return report, candidates

    async def _evaluate_chain(self, chain_id: int, report: CycleReport) -> List[CandidateOpportunity]:
        conditions, used_fallback = await self.analyzer.analyze_or_default(chain_id)
        report.conditions = conditions
        report.used_fallback_conditions = used_fallback
        if used_fallback:
            report.errors.append(f"chain {chain_id} data unavailable, default conditions used")

        regime = self.analyzer.update_regime(conditions)
        report.regime = regime
        report.assessment = self.analyzer.assess_market(conditions, regime)

        params = self.optimizer.compute_parameters(conditions, self.tracker.snapshot())
        report.parameters = params

        source = self._quote_sources.get(chain_id)
        if source is None:
            report.errors.append(f"no quote source configured for chain {chain_id}")
            return []

        results = await asyncio.gather(
            *(self._evaluate_route(source, route, conditions, params, report) for route in self._routes)
        )
        return [candidate for candidate in results if candidate is not None]

    # ========================================================================
    # QUOTING
    # ========================================================================

    async def _evaluate_route(
        self,
        source: QuoteSource,
        route: Tuple[str, ...],
        conditions: MarketConditions,
        params: OptimizedParameters,
        report: CycleReport,
    ) -> Optional[CandidateOpportunity]:
        trade_size = params.max_trade_size
        if len(route) == 2:
            quotes = await self._quote_all_venues(source, route[0], route[1], trade_size, conditions.chain_id, report)
            if len(quotes) < 2:
                return None
            ranked = sorted(quotes, key=lambda q: q.amount_out, reverse=True)
            best, second = ranked[0], ranked[1]
            spread = best.amount_out - second.amount_out
            spread_fraction = safe_divide(spread, second.amount_out)
            return self.build_candidate(
                conditions, params, route,
                venues=(best.venue, second.venue),
                quoted_amounts=(best.amount_out, second.amount_out),
                price_spread=spread,
                spread_fraction=spread_fraction,
                swaps=PAIR_SWAPS,
            )

        amount = trade_size
        venues = []
        amounts = []
        for token_in, token_out in zip(route, route[1:]):
            quotes = await self._quote_all_venues(source, token_in, token_out, amount, conditions.chain_id, report)
            if not quotes:
                return None
            best = max(quotes, key=lambda q: q.amount_out)
            venues.append(best.venue)
            amounts.append(best.amount_out)
            amount = best.amount_out

        spread = amount - trade_size
        return self.build_candidate(
            conditions, params, route,
            venues=tuple(venues),
            quoted_amounts=tuple(amounts),
            price_spread=spread,
            spread_fraction=safe_divide(spread, trade_size),
            swaps=len(route) - 1,
        )

    async def _quote_all_venues(
        self,
        source: QuoteSource,
        token_in: str,
        token_out: str,
        amount_in: int,
        chain_id: int,
        report: CycleReport,
    ) -> List[QuoteResult]:
        results = await asyncio.gather(
            *(self._fetch_quote(source, token_in, token_out, amount_in, venue, chain_id, report)
              for venue in self.settings.venues)
        )
        return [quote for quote in results if quote is not None]

    async def _fetch_quote(
        self,
        source: QuoteSource,
        token_in: str,
        token_out: str,
        amount_in: int,
        venue: str,
        chain_id: int,
        report: CycleReport,
    ) -> Optional[QuoteResult]:
        try:
            amount_out = await asyncio.wait_for(
                source.get_quote(token_in, token_out, amount_in, venue),
                timeout=self.settings.quote_timeout_sec,
            )
        except asyncio.TimeoutError:
            report.errors.append(f"quote timeout: {venue} {token_in}->{token_out}")
            return None
        except DataUnavailable as e:
            report.errors.append(f"quote unavailable: {venue} {token_in}->{token_out}")
            log_error_with_context(logger, "Quote unavailable", e, level=logging.WARNING, chain_id=chain_id, venue=venue)
            return None
        except Exception as e:
            report.errors.append(f"quote failed: {venue} {token_in}->{token_out}: {e}")
            log_error_with_context(logger, "Quote failed", e, level=logging.WARNING, chain_id=chain_id, venue=venue)
            return None

        if amount_out is None or amount_out <= 0:
            return None
        return QuoteResult(venue, token_in, token_out, amount_in, int(amount_out))

    def build_candidate(
        self,
        conditions: MarketConditions,
        params: OptimizedParameters,
        route: Sequence[str],
        venues: Tuple[str, ...],
        quoted_amounts: Tuple[int, ...],
        price_spread: int,
        spread_fraction: float,
        swaps: int,
    ) -> CandidateOpportunity:
        """Score one route; the result is immutable from here on"""
        trade_size = params.max_trade_size
        profile = chain_profile(conditions.chain_id)

        gross_profit = int(trade_size * spread_fraction)
        gas_cost = int(
            profile.swap_gas_units(swaps)
            * conditions.reference_gas_price
            * profile.fee_multiplier
            * params.gas_buffer_multiplier
        )
        depth = conditions.liquidity * 10 ** self.settings.base_asset_decimals
        price_impact = clamp(safe_divide(trade_size, depth, 1.0), 0.0, 1.0)

        liquidity_score = min(1.0, conditions.liquidity / self.settings.reference_liquidity)
        impact_score = 1.0 - min(1.0, price_impact * PRICE_IMPACT_SCORE_SCALE)
        gas_score = 1.0 - min(1.0, gas_cost / gross_profit) if gross_profit > 0 else 0.0
        confidence = clamp((liquidity_score + impact_score + gas_score) / 3, 0.0, 1.0)

        return CandidateOpportunity(
            candidate_id=(
                f"{conditions.chain_id}:{'-'.join(route)}:{conditions.sample_block}:"
                f"{'/'.join(venues)}:{self._cycle}"
            ),
            chain_id=conditions.chain_id,
            token_path=tuple(route),
            venues=venues,
            quoted_amounts=quoted_amounts,
            price_spread=price_spread,
            spread_pct=spread_fraction * 100,
            trade_size=trade_size,
            gross_profit=gross_profit,
            gas_cost=gas_cost,
            net_profit=gross_profit - gas_cost,
            price_impact=price_impact,
            confidence=confidence,
            created_at=conditions.timestamp,
        )

    # ========================================================================
    # DECISION
    # ========================================================================

    def _decide(self, report: CycleReport, candidates: List[CandidateOpportunity]) -> List[CandidateOpportunity]:
        report.candidates_found = len(candidates)
        self.tracker.note_opportunities(len(candidates))
        params = report.parameters
        if params is None or not candidates:
            return []

        kept, dropped = filter_candidates(candidates, params)
        for candidate, reason in dropped:
            logger.debug(f"Filtered {candidate.candidate_id}: {reason}")
            report.filtered.append((candidate.candidate_id, reason))

        approved = []
        now = self._clock()
        for candidate in sorted(kept, key=lambda c: c.net_profit, reverse=True):
            last = self._last_dispatch.get(candidate.route_key)
            if last is not None and (now - last) < params.cooldown_period:
                report.filtered.append((candidate.candidate_id, "route in cooldown"))
                continue

            try:
                assessment = self.risk_gate.assess_trade(
                    candidate.token_path,
                    candidate.trade_size,
                    candidate.gross_profit,
                    candidate.gas_cost,
                    candidate.chain_id,
                    candidate.confidence,
                    candidate_id=candidate.candidate_id,
                )
                assessment.raise_for_rejection()
            except TradingSuspended as e:
                report.suspended = True
                report.suspension_reasons = tuple(e.reasons)
                logger.warning(
                    f"⏸️ Trading suspended, {len(kept)} candidates held back on chain {report.chain_id}",
                    extra={'chain_id': report.chain_id, 'reasons': e.reasons}
                )
                break
            except RiskLimitExceeded as e:
                report.rejected.append((candidate.candidate_id, tuple(e.breaches)))
                continue

            self._last_dispatch[candidate.route_key] = now
            report.approved.append(candidate.candidate_id)
            approved.append(candidate)
            log_trade_event(
                logger, 'CANDIDATE_APPROVED',
                candidate_id=candidate.candidate_id,
                chain_id=candidate.chain_id,
                spread_bps=candidate.spread_bps,
                net_profit=candidate.net_profit,
                risk_tier=assessment.risk_tier.value,
                confidence=candidate.confidence,
            )
        return approved

    async def _dispatch(self, candidate: CandidateOpportunity, report: CycleReport) -> None:
        if self.executor is None:
            self.risk_gate.release(candidate.candidate_id)
            return
        self._in_flight[candidate.candidate_id] = (report.parameters, report.conditions, self._clock())
        try:
            outcome = await self.executor.submit(candidate, report.parameters)
        except Exception as e:
            self._in_flight.pop(candidate.candidate_id, None)
            self.risk_gate.release(candidate.candidate_id)
            report.errors.append(f"executor failed for {candidate.candidate_id}: {e}")
            log_error_with_context(logger, "Executor submission failed", e, candidate_id=candidate.candidate_id)
            return
        report.dispatched.append(candidate.candidate_id)
        if outcome is not None:
            self.report_outcome(outcome)

    # ========================================================================
    # FEEDBACK
    # ========================================================================

    def report_outcome(self, outcome: TradeOutcome) -> Optional[BreakerTransition]:
        """
        Feed an executor outcome back into the tracker and the risk gate.

        Safe to call from any task, including for outcomes that arrive after
        the cycle that dispatched the candidate has finished.
        """
        params, conditions, _ = self._in_flight.pop(outcome.candidate_id, (None, None, None))
        self.tracker.record(TradeRecord(
            timestamp=outcome.timestamp,
            success=outcome.success,
            profit=outcome.realized_profit,
            gas_used=outcome.gas_used,
            gas_price=outcome.gas_price,
            latency_ms=outcome.latency_ms,
            chain_id=outcome.chain_id,
            parameters=params,
            conditions=conditions,
            buckets=params.buckets if params is not None else None,
        ))
        return self.risk_gate.record_outcome(outcome)

    def _expire_in_flight(self) -> None:
        """Forget dispatches whose outcome never arrived within the performance window"""
        cutoff = self._clock() - timedelta(seconds=self.settings.performance_window_sec)
        stale = [cid for cid, (_, _, dispatched_at) in self._in_flight.items() if dispatched_at < cutoff]
        for candidate_id in stale:
            del self._in_flight[candidate_id]
        if stale:
            logger.debug(f"Dropped {len(stale)} dispatches with no reported outcome")

    def _drain_transitions(self) -> List[BreakerTransition]:
        drained = list(self._transitions)
        self._transitions.clear()
        return drained

    def _publish(self, report: CycleReport) -> None:
        log_trade_event(logger, 'SCAN_CYCLE', **report.to_log_dict())
        if self._on_report is not None:
            try:
                self._on_report(report)
            except Exception as e:
                log_error_with_context(logger, "Cycle report callback failed", e)
