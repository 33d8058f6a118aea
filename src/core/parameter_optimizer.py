"""
Parameter Optimizer

Derives the currently effective acceptance thresholds from market conditions
and recent performance.

Spread threshold:
    market_bps   = base × vol_adj × liq_adj × comp_adj × time_adj
    gas_cost     = gas_price × reference_gas_units
    gas_bps      = gas_cost / max_gas_ratio / reference_trade_size × 10_000
    threshold    = max(market_bps, gas_bps) × learning_factor

Minimum profit:
    max(max_trade_size × threshold / 10_000, gas_cost / max_gas_ratio)

Learning factor (pure, over a snapshot of trade records):
    only records under the same condition buckets inside the learning window,
    at least ``learning_min_samples`` of them, else 1.0
    success < 0.15 → × 0.85    success > 0.40 → × 1.10    gas ratio > 0.25 → × 1.15
    clamped to [learning_factor_min, learning_factor_max]

Every numeric output is clamped to its configured safety band before it is
returned. A clamp is logged as a ParameterOutOfBounds warning and never raised.
"""

from datetime import timedelta
from typing import Dict, List, Optional, Sequence, Tuple

from config.settings import PipelineSettings, get_settings
from core.models import (
    ConditionBuckets,
    GasUrgency,
    MarketConditions,
    OptimizedParameters,
    RiskLevel,
    ThresholdBreakdown,
    TradeRecord,
)
from core.performance_tracker import compute_metrics
from utils.exceptions import ParameterOutOfBounds
from utils.helpers import BPS_PER_UNIT, clamp, safe_divide
from utils.logger import get_logger


logger = get_logger(__name__)

URGENCY_ORDER = (GasUrgency.LOW, GasUrgency.MEDIUM, GasUrgency.HIGH, GasUrgency.URGENT)
PRIORITY_FEE_SHARE = 0.1
STRONG_SUCCESS_RATE = 0.8
STRONG_GAS_EFFICIENCY = 2.0
STRONG_PERFORMANCE_SIZE_BOOST = 1.1


# ============================================================================
# PURE BUILDING BLOCKS
# ============================================================================

def classify_buckets(conditions: MarketConditions, settings: PipelineSettings) -> ConditionBuckets:
    """Discretize conditions into the keys of the adjustment tables."""
    if conditions.volatility < settings.volatility_low_boundary:
        volatility = 'low'
    elif conditions.volatility >= settings.volatility_high_boundary:
        volatility = 'high'
    else:
        volatility = 'medium'

    if conditions.liquidity < settings.liquidity_thin_boundary:
        liquidity = 'thin'
    elif conditions.liquidity >= settings.liquidity_deep_boundary:
        liquidity = 'deep'
    else:
        liquidity = 'normal'

    if conditions.competition_level < settings.competition_low_boundary:
        competition = 'low'
    elif conditions.competition_level >= settings.competition_high_boundary:
        competition = 'high'
    else:
        competition = 'medium'

    return ConditionBuckets(
        volatility=volatility,
        liquidity=liquidity,
        competition=competition,
        time_of_day=conditions.time_of_day.value,
    )


def learning_adjustment(
    records: Sequence[TradeRecord],
    buckets: ConditionBuckets,
    settings: PipelineSettings,
    now=None,
) -> Tuple[float, int]:
    """
    Learning factor from trades observed under the same condition buckets.

    Args:
        records: Time-ordered snapshot of trade records
        buckets: Buckets of the conditions being evaluated
        settings: Pipeline settings
        now: Reference time for the learning window (None = no age filter)

    Returns:
        (factor, matching sample count)
    """
    window = timedelta(seconds=settings.learning_window_sec)
    matching = [
        r for r in records
        if r.buckets == buckets and (now is None or now - r.timestamp <= window)
    ]
    if len(matching) < settings.learning_min_samples:
        return 1.0, len(matching)

    metrics = compute_metrics(matching)
    factor = 1.0
    if metrics.success_rate < settings.learning_low_success_rate:
        factor *= settings.learning_low_success_factor
    elif metrics.success_rate > settings.learning_high_success_rate:
        factor *= settings.learning_high_success_factor
    if metrics.avg_gas_ratio > settings.learning_high_gas_ratio:
        factor *= settings.learning_high_gas_factor

    return clamp(factor, settings.learning_factor_min, settings.learning_factor_max), len(matching)


def map_gas_urgency(competition_level: float, thresholds: Dict[str, float]) -> GasUrgency:
    if competition_level > thresholds.get('urgent', 0.8):
        return GasUrgency.URGENT
    if competition_level > thresholds.get('high', 0.6):
        return GasUrgency.HIGH
    if competition_level > thresholds.get('medium', 0.3):
        return GasUrgency.MEDIUM
    return GasUrgency.LOW


def describe_parameter_changes(
    previous: Optional[OptimizedParameters],
    current: OptimizedParameters
) -> List[str]:
    """Human-readable diff between two parameter sets."""
    if previous is None:
        return ["initial parameters"]

    changes = []
    for name in ('min_spread_bps', 'min_profit_threshold', 'slippage_tolerance_bps',
                 'max_trade_size', 'cooldown_period_sec', 'gas_buffer_multiplier'):
        old = getattr(previous, name)
        new = getattr(current, name)
        if old != new:
            delta = safe_divide(new - old, old) * 100 if old else 0.0
            changes.append(f"{name}: {old} → {new} ({delta:+.1f}%)")
    if previous.gas_urgency != current.gas_urgency:
        changes.append(f"gas_urgency: {previous.gas_urgency.value} → {current.gas_urgency.value}")
    if previous.risk_level != current.risk_level:
        changes.append(f"risk_level: {previous.risk_level.value} → {current.risk_level.value}")
    return changes


# ============================================================================
# OPTIMIZER
# ============================================================================

class ParameterOptimizer:
    """
    Computes OptimizedParameters from conditions and a performance snapshot.

    Stateless between calls apart from the last result kept for change
    logging: identical inputs always produce identical parameters.
    """

    def __init__(self, settings: Optional[PipelineSettings] = None):
        self.settings = settings or get_settings()
        self._last: Dict[int, OptimizedParameters] = {}

    def classify_buckets(self, conditions: MarketConditions) -> ConditionBuckets:
        return classify_buckets(conditions, self.settings)

    def compute_parameters(
        self,
        conditions: MarketConditions,
        performance: Sequence[TradeRecord] = ()
    ) -> OptimizedParameters:
        """
        Compute clamped parameters for ``conditions``.

        Args:
            conditions: Current market conditions for one chain
            performance: Snapshot of recent trade records (oldest first)
        """
        s = self.settings
        bounds = s.bounds()
        clamped: List[str] = []

        def bounded(name: str, value):
            lower, upper = bounds[name]
            if value < lower or value > upper:
                violation = ParameterOutOfBounds(name, value, lower, upper)
                logger.warning(
                    f"⚠️ {violation.message}, clamping",
                    extra={'parameter': name, 'value': value, 'lower': lower, 'upper': upper,
                           'chain_id': conditions.chain_id}
                )
                clamped.append(name)
                value = violation.clamped_value
            return value

        buckets = classify_buckets(conditions, s)

        # Market-adjusted spread threshold
        vol_f = s.volatility_adjustment[buckets.volatility]
        liq_f = s.liquidity_adjustment[buckets.liquidity]
        comp_f = s.competition_adjustment[buckets.competition]
        time_f = s.time_of_day_adjustment[buckets.time_of_day]
        market_bps = s.base_spread_threshold_bps * vol_f * liq_f * comp_f * time_f

        # Gas breakeven threshold
        gas_cost = conditions.reference_gas_price * s.reference_gas_units
        gas_bps = gas_cost / s.max_gas_ratio / s.reference_trade_size * BPS_PER_UNIT
        pre_learning_bps = max(market_bps, gas_bps)

        learning_factor, samples = learning_adjustment(performance, buckets, s, now=conditions.timestamp)
        threshold_bps = pre_learning_bps * learning_factor
        min_spread_bps = bounded('min_spread_bps', threshold_bps)

        # Trade size from liquidity, nudged up after strong recent performance
        size = s.base_trade_size * max(0.1, conditions.liquidity / s.reference_liquidity)
        if performance:
            recent = compute_metrics(performance)
            if recent.success_rate > STRONG_SUCCESS_RATE and recent.gas_efficiency > STRONG_GAS_EFFICIENCY:
                size *= STRONG_PERFORMANCE_SIZE_BOOST
        max_trade_size = int(bounded('max_trade_size', int(size)))

        min_profit = max(
            max_trade_size * min_spread_bps / BPS_PER_UNIT,
            gas_cost / s.max_gas_ratio,
        )
        min_profit_threshold = int(bounded('min_profit_threshold', int(min_profit)))

        slippage = int(round(s.base_slippage_bps * (1 + conditions.volatility * 2)))
        slippage_bps = int(bounded('slippage_tolerance_bps', slippage))

        cooldown = bounded('cooldown_period_sec', s.base_cooldown_sec * (1 + conditions.competition_level))

        urgency = map_gas_urgency(conditions.competition_level, s.gas_urgency_thresholds)
        fee_multiplier = s.gas_urgency_fee_multipliers[urgency.value]
        gas_buffer = bounded(
            'gas_buffer_multiplier',
            s.base_gas_buffer * (1 + URGENCY_ORDER.index(urgency) * 0.1)
        )
        max_fee = int(conditions.reference_gas_price * fee_multiplier * gas_buffer)
        priority_fee = int(conditions.reference_gas_price * PRIORITY_FEE_SHARE * fee_multiplier)

        risk_level = self._risk_level(conditions)
        warnings = self._cross_check(min_profit_threshold, max_trade_size, slippage_bps, risk_level)

        breakdown = ThresholdBreakdown(
            base_bps=s.base_spread_threshold_bps,
            volatility_factor=vol_f,
            liquidity_factor=liq_f,
            competition_factor=comp_f,
            time_factor=time_f,
            market_adjusted_bps=market_bps,
            gas_cost=gas_cost,
            gas_breakeven_bps=gas_bps,
            pre_learning_bps=pre_learning_bps,
            learning_factor=learning_factor,
            learning_samples=samples,
            final_bps=threshold_bps,
            clamped_fields=tuple(clamped),
        )

        params = OptimizedParameters(
            min_spread_bps=min_spread_bps,
            min_profit_threshold=min_profit_threshold,
            slippage_tolerance_bps=slippage_bps,
            max_trade_size=max_trade_size,
            gas_urgency=urgency,
            gas_fee_multiplier=fee_multiplier,
            gas_buffer_multiplier=gas_buffer,
            max_fee_per_gas=max_fee,
            max_priority_fee_per_gas=priority_fee,
            cooldown_period_sec=cooldown,
            risk_level=risk_level,
            buckets=buckets,
            breakdown=breakdown,
            warnings=tuple(warnings),
        )

        changes = describe_parameter_changes(self._last.get(conditions.chain_id), params)
        if changes:
            logger.debug(
                f"Parameters for chain {conditions.chain_id}: " + "; ".join(changes),
                extra={'chain_id': conditions.chain_id, 'buckets': buckets.key}
            )
        self._last[conditions.chain_id] = params
        return params

    def _risk_level(self, conditions: MarketConditions) -> RiskLevel:
        """riskScore = vol×0.4 + (1 - min(liq/ref, 1))×0.3 + comp×0.3"""
        liquidity_score = min(conditions.liquidity / self.settings.reference_liquidity, 1.0)
        score = (
            conditions.volatility * 0.4
            + (1 - liquidity_score) * 0.3
            + conditions.competition_level * 0.3
        )
        if score > 0.7:
            return RiskLevel.CONSERVATIVE
        if score > 0.4:
            return RiskLevel.BALANCED
        return RiskLevel.AGGRESSIVE

    @staticmethod
    def _cross_check(
        min_profit: int,
        max_trade_size: int,
        slippage_bps: int,
        risk_level: RiskLevel
    ) -> List[str]:
        warnings = []
        if max_trade_size and min_profit > max_trade_size * 0.1:
            warnings.append("profit threshold above 10% of max trade size")
        if slippage_bps > 500 and risk_level == RiskLevel.CONSERVATIVE:
            warnings.append("high slippage tolerance under conservative risk level")
        if slippage_bps < 20 and risk_level == RiskLevel.AGGRESSIVE:
            warnings.append("tight slippage tolerance under aggressive risk level")
        return warnings
