"""
Value Objects for the Adaptive Opportunity Pipeline

Every object here is immutable once built and is passed by value between
components. The only shared mutable state in the pipeline (risk metrics and
circuit-breaker status) lives inside RiskGate; what leaves it is a snapshot
of the types below.

Amounts are integers in the smallest unit of the base asset. Ratios are
floats in [0, 1].
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional, Tuple

from utils.exceptions import DataValidationError, RiskLimitExceeded


class TimeOfDay(Enum):
    QUIET = "quiet"
    ACTIVE = "active"
    PEAK = "peak"


class MarketTrend(Enum):
    BULL = "bull"
    BEAR = "bear"
    SIDEWAYS = "sideways"


class RegimeType(Enum):
    BULL_MARKET = "bull_market"
    BEAR_MARKET = "bear_market"
    SIDEWAYS = "sideways"
    HIGH_VOLATILITY = "high_volatility"
    LOW_VOLATILITY = "low_volatility"


class GasUrgency(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class RiskLevel(Enum):
    """Aggressiveness of the active parameter set"""
    CONSERVATIVE = "conservative"
    BALANCED = "balanced"
    AGGRESSIVE = "aggressive"


class RiskTier(Enum):
    """Risk tier of a single approved trade"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class BreakerState(Enum):
    CLOSED = "closed"
    OPEN = "open"


def _check_unit_interval(name: str, value: float) -> None:
    if not 0.0 <= value <= 1.0:
        raise DataValidationError(
            f"{name} must lie in [0, 1], got {value}",
            error_code='OUT_OF_RANGE',
            details={name: value}
        )


# ============================================================================
# MARKET STATE
# ============================================================================

@dataclass(frozen=True)
class MarketConditions:
    """Normalized condition metrics for one chain, recomputed each cycle"""
    chain_id: int
    volatility: float
    liquidity: float
    network_congestion: float
    competition_level: float
    time_of_day: TimeOfDay
    market_trend: MarketTrend
    reference_gas_price: int
    sample_block: int
    timestamp: datetime

    def __post_init__(self):
        _check_unit_interval('volatility', self.volatility)
        _check_unit_interval('network_congestion', self.network_congestion)
        _check_unit_interval('competition_level', self.competition_level)
        if self.liquidity <= 0:
            raise DataValidationError(
                f"liquidity must be positive, got {self.liquidity}",
                error_code='OUT_OF_RANGE',
                details={'liquidity': self.liquidity}
            )
        if self.reference_gas_price < 0 or self.sample_block < 0:
            raise DataValidationError(
                "reference_gas_price and sample_block must be non-negative",
                error_code='OUT_OF_RANGE',
                details={'reference_gas_price': self.reference_gas_price,
                         'sample_block': self.sample_block}
            )


@dataclass(frozen=True)
class MarketRegime:
    """Coarse classification of market behavior derived from conditions"""
    regime_type: RegimeType
    strength: float
    stability: float
    started_at: datetime
    duration: timedelta = timedelta(0)

    def __post_init__(self):
        _check_unit_interval('strength', self.strength)
        _check_unit_interval('stability', self.stability)


@dataclass(frozen=True)
class MarketAssessment:
    """Advisory read of current conditions; never gates a trade"""
    recommendation: str
    confidence: float
    risk_level: str
    risk_factors: Tuple[str, ...] = ()
    mitigations: Tuple[str, ...] = ()
    reasoning: Tuple[str, ...] = ()


@dataclass(frozen=True)
class BlockUtilization:
    number: int
    gas_used: int
    gas_limit: int
    timestamp: int = 0

    @property
    def utilization(self) -> float:
        if self.gas_limit <= 0:
            return 0.0
        return min(1.0, max(0.0, self.gas_used / self.gas_limit))


# ============================================================================
# PARAMETERS
# ============================================================================

@dataclass(frozen=True)
class ConditionBuckets:
    """Discretized conditions; the key learning records are matched on"""
    volatility: str
    liquidity: str
    competition: str
    time_of_day: str

    @property
    def key(self) -> str:
        return f"{self.volatility}_{self.liquidity}_{self.competition}_{self.time_of_day}"


@dataclass(frozen=True)
class ThresholdBreakdown:
    """How the final spread threshold was reached"""
    base_bps: float
    volatility_factor: float
    liquidity_factor: float
    competition_factor: float
    time_factor: float
    market_adjusted_bps: float
    gas_cost: int
    gas_breakeven_bps: float
    pre_learning_bps: float
    learning_factor: float
    learning_samples: int
    final_bps: float
    clamped_fields: Tuple[str, ...] = ()


@dataclass(frozen=True)
class OptimizedParameters:
    """Currently effective acceptance thresholds, always inside their safety bands"""
    min_spread_bps: float
    min_profit_threshold: int
    slippage_tolerance_bps: int
    max_trade_size: int
    gas_urgency: GasUrgency
    gas_fee_multiplier: float
    gas_buffer_multiplier: float
    max_fee_per_gas: int
    max_priority_fee_per_gas: int
    cooldown_period_sec: float
    risk_level: RiskLevel
    buckets: ConditionBuckets
    breakdown: ThresholdBreakdown
    warnings: Tuple[str, ...] = ()

    @property
    def cooldown_period(self) -> timedelta:
        return timedelta(seconds=self.cooldown_period_sec)


# ============================================================================
# OPPORTUNITIES & OUTCOMES
# ============================================================================

@dataclass(frozen=True)
class QuoteResult:
    venue: str
    token_in: str
    token_out: str
    amount_in: int
    amount_out: int


@dataclass(frozen=True)
class CandidateOpportunity:
    """An unexecuted, scored potential trade; never mutated after creation"""
    candidate_id: str
    chain_id: int
    token_path: Tuple[str, ...]
    venues: Tuple[str, ...]
    quoted_amounts: Tuple[int, ...]
    price_spread: int
    spread_pct: float
    trade_size: int
    gross_profit: int
    gas_cost: int
    net_profit: int
    price_impact: float
    confidence: float
    created_at: datetime

    @property
    def spread_bps(self) -> float:
        return self.spread_pct * 100

    @property
    def is_multi_hop(self) -> bool:
        return len(self.token_path) > 2

    @property
    def route_key(self) -> str:
        return f"{self.chain_id}:{'-'.join(self.token_path)}"


@dataclass(frozen=True)
class TradeOutcome:
    """Executor's report for a dispatched candidate"""
    candidate_id: str
    chain_id: int
    token_path: Tuple[str, ...]
    trade_size: int
    success: bool
    realized_profit: int
    gas_used: int
    gas_price: int
    latency_ms: float
    timestamp: datetime

    @property
    def gas_cost(self) -> int:
        return self.gas_used * self.gas_price

    @property
    def net_pnl(self) -> int:
        return self.realized_profit - self.gas_cost


@dataclass(frozen=True)
class TradeRecord:
    """One completed trade as seen by the performance tracker"""
    timestamp: datetime
    success: bool
    profit: int
    gas_used: int
    gas_price: int
    latency_ms: float
    chain_id: int = 0
    parameters: Optional[OptimizedParameters] = None
    conditions: Optional[MarketConditions] = None
    buckets: Optional[ConditionBuckets] = None

    @property
    def gas_cost(self) -> int:
        return self.gas_used * self.gas_price

    @property
    def gas_ratio(self) -> float:
        """Gas cost over profit; a trade without positive profit counts as 1.0"""
        if self.profit <= 0:
            return 1.0
        return min(1.0, self.gas_cost / self.profit)


# ============================================================================
# RISK
# ============================================================================

@dataclass(frozen=True)
class RiskMetrics:
    """Read-only snapshot of the risk gate's running metrics"""
    current_drawdown: float
    daily_pnl: int
    weekly_pnl: int
    consecutive_failures: int
    consecutive_successes: int
    gas_to_capital_ratio: float
    success_rate_1h: float
    success_rate_24h: float
    samples_1h: int
    samples_24h: int
    avg_profit_margin: float
    token_exposure: Dict[str, int]
    chain_exposure: Dict[int, int]
    peak_balance: int
    current_balance: int
    total_trades: int
    profitable_trades: int


@dataclass(frozen=True)
class CircuitBreakerStatus:
    is_active: bool
    activated_at: Optional[datetime]
    reasons: Tuple[str, ...]
    estimated_recovery_time: Optional[datetime]
    can_override: bool

    @property
    def state(self) -> BreakerState:
        return BreakerState.OPEN if self.is_active else BreakerState.CLOSED


@dataclass(frozen=True)
class BreakerTransition:
    from_state: BreakerState
    to_state: BreakerState
    at: datetime
    reasons: Tuple[str, ...]
    trigger: str = "automatic"


@dataclass(frozen=True)
class LimitBreach:
    """The exact limit that blocked a trade"""
    limit: str
    observed: float
    threshold: float
    message: str


@dataclass(frozen=True)
class TradeRiskAssessment:
    approved: bool
    risk_tier: RiskTier
    max_position_size: int
    required_confidence: float
    gas_ratio: float
    breaches: Tuple[LimitBreach, ...] = ()
    warnings: Tuple[str, ...] = ()
    reservation_id: Optional[str] = None

    def raise_for_rejection(self) -> None:
        """Raise RiskLimitExceeded carrying every breach if the trade was rejected"""
        if not self.approved:
            raise RiskLimitExceeded(self.breaches)


# ============================================================================
# OBSERVABILITY
# ============================================================================

@dataclass
class CycleReport:
    """Structured per-chain record of one scan cycle"""
    chain_id: int
    started_at: datetime
    finished_at: Optional[datetime] = None
    conditions: Optional[MarketConditions] = None
    used_fallback_conditions: bool = False
    regime: Optional[MarketRegime] = None
    assessment: Optional[MarketAssessment] = None
    parameters: Optional[OptimizedParameters] = None
    candidates_found: int = 0
    filtered: List[Tuple[str, str]] = field(default_factory=list)
    approved: List[str] = field(default_factory=list)
    dispatched: List[str] = field(default_factory=list)
    rejected: List[Tuple[str, Tuple[LimitBreach, ...]]] = field(default_factory=list)
    suspended: bool = False
    suspension_reasons: Tuple[str, ...] = ()
    errors: List[str] = field(default_factory=list)
    breaker_transitions: List[BreakerTransition] = field(default_factory=list)

    def to_log_dict(self) -> Dict:
        """Flat, JSON-friendly view for the structured logger"""
        params = self.parameters
        return {
            'chain_id': self.chain_id,
            'started_at': self.started_at.isoformat(),
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'volatility': self.conditions.volatility if self.conditions else None,
            'competition': self.conditions.competition_level if self.conditions else None,
            'gas_price': self.conditions.reference_gas_price if self.conditions else None,
            'used_fallback_conditions': self.used_fallback_conditions,
            'regime': self.regime.regime_type.value if self.regime else None,
            'recommendation': self.assessment.recommendation if self.assessment else None,
            'min_spread_bps': params.min_spread_bps if params else None,
            'min_profit_threshold': params.min_profit_threshold if params else None,
            'candidates_found': self.candidates_found,
            'filtered': len(self.filtered),
            'approved': len(self.approved),
            'dispatched': len(self.dispatched),
            'rejected': [
                {'candidate': cid, 'limits': [b.limit for b in breaches]}
                for cid, breaches in self.rejected
            ],
            'suspended': self.suspended,
            'suspension_reasons': list(self.suspension_reasons),
            'errors': list(self.errors),
            'breaker_transitions': [
                {'to': t.to_state.value, 'reasons': list(t.reasons)}
                for t in self.breaker_transitions
            ],
        }
