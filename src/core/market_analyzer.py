"""
Market Condition Analyzer

Turns raw chain samples (fee price, block utilization, block number) into
normalized MarketConditions and a coarse MarketRegime.

Metrics:
    volatility  = min(1, CV(last N fee prices) × 10)          N = volatility_window
    liquidity   = max(floor, scale × (1 - block utilization))  proxy for pool depth
    congestion  = clamp(gas / mean(last 10 gas) - 1, 0, 1)
    competition = min(1, congestion × 0.6 + time bonus)        quiet 0.1, active 0.2, peak 0.3
    trend       = mean(last 5) vs mean(previous 5), ±10 %

Regime rules (first match wins):
    volatility > 0.8 → high_volatility
    volatility < 0.2 → low_volatility
    otherwise        → bull_market / bear_market / sideways from the trend

When a chain cannot be sampled, ``analyze`` raises DataUnavailable and
callers use ``default_conditions`` instead of blocking.
"""

import logging
from collections import deque
from datetime import datetime
from typing import Callable, Deque, Dict, Mapping, Optional, Tuple

from config.settings import PipelineSettings, get_settings
from core.data_sources import ChainDataSource, chain_profile
from core.models import (
    MarketAssessment,
    MarketConditions,
    MarketRegime,
    MarketTrend,
    RegimeType,
    TimeOfDay,
)
from utils.exceptions import DataUnavailable
from utils.helpers import clamp, coefficient_of_variation, mean, utc_now
from utils.logger import get_logger, log_error_with_context


logger = get_logger(__name__)

HIGH_VOLATILITY_REGIME = 0.8
LOW_VOLATILITY_REGIME = 0.2
TREND_SAMPLES = 5
TREND_THRESHOLD = 0.10
CONGESTION_MIN_SAMPLES = 5
COMPETITION_CONGESTION_WEIGHT = 0.6
TIME_OF_DAY_COMPETITION_BONUS = {
    TimeOfDay.QUIET: 0.1,
    TimeOfDay.ACTIVE: 0.2,
    TimeOfDay.PEAK: 0.3,
}


def classify_time_of_day(hour: int, settings: PipelineSettings) -> TimeOfDay:
    """UTC hour → quiet / active / peak using the configured boundaries"""
    if hour < settings.quiet_end_hour or hour >= settings.quiet_start_hour:
        return TimeOfDay.QUIET
    if settings.peak_start_hour <= hour < settings.peak_end_hour:
        return TimeOfDay.PEAK
    return TimeOfDay.ACTIVE


def classify_regime(
    conditions: MarketConditions,
    previous: Optional[MarketRegime],
    reset_stability: float = 0.3,
    stability_step: float = 0.1,
) -> MarketRegime:
    """
    Pure regime classification.

    Stability grows by ``stability_step`` while the type is unchanged and
    falls back to ``reset_stability`` on a type change. Duration is measured
    from the sample that opened the current type.
    """
    vol = conditions.volatility
    if vol > HIGH_VOLATILITY_REGIME:
        regime_type = RegimeType.HIGH_VOLATILITY
    elif vol < LOW_VOLATILITY_REGIME:
        regime_type = RegimeType.LOW_VOLATILITY
    elif conditions.market_trend == MarketTrend.BULL:
        regime_type = RegimeType.BULL_MARKET
    elif conditions.market_trend == MarketTrend.BEAR:
        regime_type = RegimeType.BEAR_MARKET
    else:
        regime_type = RegimeType.SIDEWAYS

    if previous is None or previous.regime_type != regime_type:
        return MarketRegime(
            regime_type=regime_type,
            strength=vol,
            stability=reset_stability,
            started_at=conditions.timestamp,
        )

    duration = conditions.timestamp - previous.started_at
    return MarketRegime(
        regime_type=regime_type,
        strength=vol,
        stability=min(1.0, previous.stability + stability_step),
        started_at=previous.started_at,
        duration=duration if duration.total_seconds() > 0 else previous.duration,
    )


class MarketConditionAnalyzer:
    """
    Samples each configured chain and keeps a bounded fee-price history per chain.

    Args:
        sources: Chain data source per chain id
        settings: Pipeline settings (defaults to the process singleton)
        clock: Callable returning the current UTC datetime
    """

    def __init__(
        self,
        sources: Mapping[int, ChainDataSource],
        settings: Optional[PipelineSettings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.settings = settings or get_settings()
        self._sources = dict(sources)
        self._clock = clock
        self._gas_history: Dict[int, Deque[int]] = {}
        self._last_block: Dict[int, int] = {}
        self._regimes: Dict[int, MarketRegime] = {}

    # ========================================================================
    # SAMPLING
    # ========================================================================

    async def analyze(self, chain_id: int) -> MarketConditions:
        """
        Sample ``chain_id`` and return fresh MarketConditions.

        Raises:
            DataUnavailable: If the chain's data source is missing or unreachable
        """
        source = self._sources.get(chain_id)
        if source is None:
            raise DataUnavailable(
                f"No data source configured for chain {chain_id}",
                source='chain',
                chain_id=chain_id,
            )

        try:
            block_number = await source.get_block_number()
            gas_price = await source.get_fee_estimate()
            latest = await source.get_latest_block()
        except DataUnavailable:
            raise
        except Exception as e:
            raise DataUnavailable(
                f"Chain {chain_id} sampling failed: {e}",
                source='chain',
                chain_id=chain_id,
                original_error=e,
            ) from e

        # Everything below is synchronous; no await between reads and writes
        history = self._gas_history.setdefault(
            chain_id, deque(maxlen=self.settings.gas_history_size)
        )
        history.append(max(0, int(gas_price)))
        samples = list(history)

        now = self._clock()
        time_of_day = classify_time_of_day(now.hour, self.settings)
        congestion = self._congestion(samples)
        sample_block = max(int(block_number), latest.number, self._last_block.get(chain_id, 0))
        self._last_block[chain_id] = sample_block

        conditions = MarketConditions(
            chain_id=chain_id,
            volatility=self._volatility(samples),
            liquidity=self._liquidity(latest.utilization),
            network_congestion=congestion,
            competition_level=self._competition(congestion, time_of_day),
            time_of_day=time_of_day,
            market_trend=self._trend(samples),
            reference_gas_price=samples[-1],
            sample_block=sample_block,
            timestamp=now,
        )

        logger.debug(
            f"Chain {chain_id} conditions: vol={conditions.volatility:.3f} "
            f"liq={conditions.liquidity:.1f} cong={conditions.network_congestion:.3f} "
            f"comp={conditions.competition_level:.3f} {time_of_day.value}",
            extra={'chain_id': chain_id, 'sample_block': sample_block}
        )
        return conditions

    async def analyze_or_default(self, chain_id: int) -> Tuple[MarketConditions, bool]:
        """
        ``analyze`` with the documented fallback.

        Returns:
            (conditions, used_fallback)
        """
        try:
            return await self.analyze(chain_id), False
        except DataUnavailable as e:
            log_error_with_context(
                logger, f"Chain {chain_id} unavailable, using default conditions", e,
                level=logging.WARNING, chain_id=chain_id
            )
            return self.default_conditions(chain_id), True

    def default_conditions(self, chain_id: int) -> MarketConditions:
        """
        Neutral conditions for a chain that could not be sampled.

        Medium volatility and competition, reference liquidity, active hours,
        sideways trend, the chain profile's fallback fee price and the last
        block seen for that chain (0 if none).
        """
        s = self.settings
        history = self._gas_history.get(chain_id)
        gas_price = history[-1] if history else chain_profile(chain_id).fallback_gas_price
        return MarketConditions(
            chain_id=chain_id,
            volatility=s.default_volatility,
            liquidity=s.default_liquidity,
            network_congestion=s.default_congestion,
            competition_level=s.default_competition,
            time_of_day=TimeOfDay.ACTIVE,
            market_trend=MarketTrend.SIDEWAYS,
            reference_gas_price=gas_price,
            sample_block=self._last_block.get(chain_id, 0),
            timestamp=self._clock(),
        )

    # ========================================================================
    # REGIME
    # ========================================================================

    def classify_regime(
        self,
        conditions: MarketConditions,
        previous: Optional[MarketRegime]
    ) -> MarketRegime:
        return classify_regime(
            conditions,
            previous,
            reset_stability=self.settings.regime_reset_stability,
            stability_step=self.settings.regime_stability_step,
        )

    def update_regime(self, conditions: MarketConditions) -> MarketRegime:
        """Classify against the chain's previous regime and remember the result"""
        previous = self._regimes.get(conditions.chain_id)
        regime = self.classify_regime(conditions, previous)
        if previous is not None and previous.regime_type != regime.regime_type:
            logger.info(
                f"🔄 Regime change on chain {conditions.chain_id}: "
                f"{previous.regime_type.value} → {regime.regime_type.value}",
                extra={'chain_id': conditions.chain_id}
            )
        self._regimes[conditions.chain_id] = regime
        return regime

    def current_regime(self, chain_id: int) -> Optional[MarketRegime]:
        return self._regimes.get(chain_id)

    def history_depth(self, chain_id: int) -> int:
        return len(self._gas_history.get(chain_id, ()))

    # ========================================================================
    # ASSESSMENT
    # ========================================================================

    def assess_market(
        self,
        conditions: MarketConditions,
        regime: Optional[MarketRegime] = None
    ) -> MarketAssessment:
        """
        Advisory recommendation for the current conditions.

        score = vol×0.3 + min(liq/ref, 1)×0.2 + (1-congestion)×0.3 + (1-competition)×0.2
            > 0.7 aggressive, > 0.4 balanced, > 0.2 conservative, else pause
        """
        s = self.settings
        liquidity_score = min(conditions.liquidity / s.reference_liquidity, 1.0)
        score = (
            conditions.volatility * 0.3
            + liquidity_score * 0.2
            + (1 - conditions.network_congestion) * 0.3
            + (1 - conditions.competition_level) * 0.2
        )
        if score > 0.7:
            recommendation = 'aggressive'
        elif score > 0.4:
            recommendation = 'balanced'
        elif score > 0.2:
            recommendation = 'conservative'
        else:
            recommendation = 'pause'

        factors = []
        mitigations = []
        if conditions.volatility > HIGH_VOLATILITY_REGIME:
            factors.append('high volatility')
            mitigations.append('widen slippage tolerance and reduce trade size')
        if conditions.liquidity < s.liquidity_thin_boundary:
            factors.append('thin liquidity')
            mitigations.append('cap position size to available depth')
        if conditions.network_congestion > 0.8:
            factors.append('network congestion')
            mitigations.append('raise gas buffer or wait for congestion to clear')
        if conditions.competition_level > 0.8:
            factors.append('intense competition')
            mitigations.append('raise minimum spread to avoid losing gas races')

        risk_level = ('low', 'medium', 'high', 'critical', 'critical')[len(factors)]

        depth = min(1.0, self.history_depth(conditions.chain_id) / s.volatility_window)
        stability = regime.stability if regime else 0.5
        confidence = clamp(depth * (1 - conditions.volatility * 0.3) * (0.5 + 0.5 * stability), 0.1, 1.0)

        reasoning = (
            f"volatility {conditions.volatility:.2f}, liquidity {conditions.liquidity:.0f}",
            f"congestion {conditions.network_congestion:.2f}, competition {conditions.competition_level:.2f}",
            f"{conditions.time_of_day.value} hours, {conditions.market_trend.value} trend",
            f"score {score:.2f} → {recommendation}",
        )

        return MarketAssessment(
            recommendation=recommendation,
            confidence=confidence,
            risk_level=risk_level,
            risk_factors=tuple(factors),
            mitigations=tuple(mitigations),
            reasoning=reasoning,
        )

    # ========================================================================
    # METRICS
    # ========================================================================

    def _volatility(self, samples) -> float:
        window = samples[-self.settings.volatility_window:]
        if len(window) < 2:
            return self.settings.default_volatility
        return clamp(coefficient_of_variation(window) * 10, 0.0, 1.0)

    def _liquidity(self, utilization: float) -> float:
        s = self.settings
        return max(s.liquidity_proxy_floor, s.liquidity_proxy_scale * (1 - utilization))

    def _congestion(self, samples) -> float:
        if len(samples) < CONGESTION_MIN_SAMPLES:
            return self.settings.default_congestion
        recent_avg = mean(samples[-self.settings.congestion_window:])
        if recent_avg <= 0:
            return 0.0
        return clamp(samples[-1] / recent_avg - 1, 0.0, 1.0)

    @staticmethod
    def _competition(congestion: float, time_of_day: TimeOfDay) -> float:
        score = congestion * COMPETITION_CONGESTION_WEIGHT + TIME_OF_DAY_COMPETITION_BONUS[time_of_day]
        return clamp(score, 0.0, 1.0)

    @staticmethod
    def _trend(samples) -> MarketTrend:
        if len(samples) < TREND_SAMPLES * 2:
            return MarketTrend.SIDEWAYS
        recent = mean(samples[-TREND_SAMPLES:])
        prior = mean(samples[-TREND_SAMPLES * 2:-TREND_SAMPLES])
        if prior <= 0:
            return MarketTrend.SIDEWAYS
        change = (recent - prior) / prior
        if change > TREND_THRESHOLD:
            return MarketTrend.BULL
        if change < -TREND_THRESHOLD:
            return MarketTrend.BEAR
        return MarketTrend.SIDEWAYS
