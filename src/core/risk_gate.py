"""
Risk Gate - Stateful Trade Approval with Circuit Breaker

Approves or rejects individual candidate trades independently of the
optimizer's thresholds, and halts all trading when account-level limits are
breached.

Circuit breaker (two states):
    CLOSED → OPEN when any of:
        - drawdown above its limit
        - trailing 24h or 7d loss above its limit
        - consecutive failures reach the maximum
        - 1h or 24h success rate below its minimum (once enough samples exist)
        - gas spent over the last N trades above its share of capital
    OPEN → CLOSED when all of:
        - cooldown elapsed since activation
        - consecutive failures back to zero
        - drawdown below 70% of its limit
        - 1h success rate above 1.2× its minimum (when enough samples exist)
        - no open-trigger condition currently holds
      or through an audited manual override.

Safety Philosophy:
- One lock guards every read and write of the risk state; an assessment and
  an outcome never interleave
- While OPEN every assessment raises TradingSuspended with all reasons
- ``record_outcome`` is the only path that changes balances and streaks
- An approval reserves its notional against the token and chain exposure
  caps in the same locked section; the reservation is held until the
  outcome is recorded, ``release`` is called, or the exposure window ends
- Peak balance only increases
"""

import itertools
import threading
from collections import deque
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence, Tuple

from config.settings import PipelineSettings, get_settings
from core.models import (
    BreakerState,
    BreakerTransition,
    CircuitBreakerStatus,
    LimitBreach,
    RiskMetrics,
    RiskTier,
    TradeOutcome,
    TradeRiskAssessment,
)
from utils.exceptions import TradingSuspended
from utils.helpers import clamp, mean, safe_divide, utc_now, validate_amount, validate_token_path
from utils.logger import get_logger, log_trade_event


logger = get_logger(__name__)

RESUME_DRAWDOWN_FRACTION = 0.7
RESUME_SUCCESS_RATE_MULTIPLE = 1.2
NEAR_LIMIT_FRACTION = 0.8
REQUIRED_CONFIDENCE = {
    RiskTier.LOW: 0.5,
    RiskTier.MEDIUM: 0.65,
    RiskTier.HIGH: 0.8,
}


@dataclass(frozen=True)
class _TradeEntry:
    timestamp: datetime
    success: bool
    net_pnl: int
    gas_cost: int
    trade_size: int


@dataclass(frozen=True)
class _ExposureEntry:
    timestamp: datetime
    chain_id: int
    tokens: Tuple[str, ...]
    notional: int


@dataclass(frozen=True)
class OverrideAudit:
    at: datetime
    action: str
    authorized_by: str
    note: str


class RiskGate:
    """
    Trade-level risk checks plus the account-level circuit breaker.

    Every public method is synchronous, non-blocking and safe to call from
    concurrent scan cycles.
    """

    def __init__(
        self,
        settings: Optional[PipelineSettings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.settings = settings or get_settings()
        self._clock = clock
        self._lock = threading.Lock()

        # Balances
        self._balance: int = self.settings.initial_capital
        self._peak_balance: int = self.settings.initial_capital

        # Trade history (risk_history_days) and rolling exposure (exposure_window_sec)
        self._history: Deque[_TradeEntry] = deque()
        self._exposures: Deque[_ExposureEntry] = deque()
        self._reservations: Dict[str, _ExposureEntry] = {}
        self._reservation_ids = itertools.count(1)
        self._consecutive_failures = 0
        self._consecutive_successes = 0
        self._total_trades = 0
        self._profitable_trades = 0

        # Circuit breaker
        self._open = False
        self._activated_at: Optional[datetime] = None
        self._reasons: Dict[str, str] = {}
        self._override_enabled = False
        self._audit: List[OverrideAudit] = []
        self._callbacks: List[Callable[[BreakerTransition], Any]] = []

        logger.info(
            f"🛡️ Risk gate initialized\n"
            f"   Capital: {self.settings.initial_capital}\n"
            f"   Max Drawdown: {self.settings.max_drawdown_pct:.1%}\n"
            f"   Daily / Weekly Loss: {self.settings.max_daily_loss_pct:.1%} / "
            f"{self.settings.max_weekly_loss_pct:.1%}\n"
            f"   Max Consecutive Failures: {self.settings.max_consecutive_failures}\n"
            f"   Breaker Cooldown: {self.settings.breaker_cooldown_sec}s"
        )

    # ========================================================================
    # TRADE ASSESSMENT
    # ========================================================================

    def assess_trade(
        self,
        pair: Sequence[str],
        trade_size: int,
        estimated_profit: int,
        estimated_gas_cost: int,
        chain_id: int,
        confidence: float = 1.0,
        candidate_id: Optional[str] = None,
    ) -> TradeRiskAssessment:
        """
        Check one candidate trade against the risk limits.

        An approved trade reserves its notional against the exposure caps
        under ``candidate_id`` (or a generated id), so later assessments see
        it before its outcome arrives.

        Args:
            pair: Token pair or multi-hop path
            trade_size: Notional in smallest units
            estimated_profit: Expected gross profit
            estimated_gas_cost: Expected gas cost
            chain_id: Chain the trade executes on
            confidence: Advisory confidence score of the candidate
            candidate_id: Reservation key, matched later by the outcome's candidate id

        Returns:
            TradeRiskAssessment (``approved`` False carries every breach;
            ``reservation_id`` is set when approved)

        Raises:
            TradingSuspended: While the circuit breaker is open
        """
        tokens = validate_token_path(pair)
        validate_amount(trade_size, 'trade_size')
        validate_amount(estimated_gas_cost, 'estimated_gas_cost')

        suspended: Optional[TradingSuspended] = None
        transition: Optional[BreakerTransition] = None
        assessment: Optional[TradeRiskAssessment] = None

        with self._lock:
            now = self._clock()
            if self._open:
                transition = self._try_close_locked(now)
            if self._open:
                suspended = TradingSuspended(
                    list(self._reasons.values()),
                    activated_at=self._activated_at,
                    estimated_recovery_time=self._recovery_time_locked(),
                )
            else:
                self._prune_locked(now)
                assessment = self._assess_locked(
                    tokens, trade_size, estimated_profit, estimated_gas_cost, chain_id, confidence, now
                )
                if assessment.approved:
                    reservation_id = candidate_id or f"assessment-{next(self._reservation_ids)}"
                    self._reservations[reservation_id] = _ExposureEntry(
                        timestamp=now,
                        chain_id=chain_id,
                        tokens=tokens,
                        notional=trade_size,
                    )
                    assessment = replace(assessment, reservation_id=reservation_id)

        if transition is not None:
            self._emit(transition)
        if suspended is not None:
            logger.debug(f"Assessment refused while suspended: {suspended.message}")
            raise suspended

        if not assessment.approved:
            logger.debug(
                f"Trade rejected on chain {chain_id}: "
                + "; ".join(b.message for b in assessment.breaches),
                extra={'chain_id': chain_id, 'limits': [b.limit for b in assessment.breaches]}
            )
        return assessment

    def _assess_locked(
        self,
        tokens: Tuple[str, ...],
        trade_size: int,
        profit: int,
        gas_cost: int,
        chain_id: int,
        confidence: float,
        now: datetime,
    ) -> TradeRiskAssessment:
        s = self.settings
        capital = max(self._balance, 0)
        breaches: List[LimitBreach] = []
        warnings: List[str] = []

        # Single trade size
        capital_cap = int(capital * s.max_single_trade_pct)
        if trade_size > capital_cap:
            breaches.append(LimitBreach(
                limit='max_single_trade',
                observed=trade_size,
                threshold=capital_cap,
                message=f"trade size {trade_size} exceeds {s.max_single_trade_pct:.0%} of capital ({capital_cap})",
            ))
        elif trade_size > capital_cap * NEAR_LIMIT_FRACTION:
            warnings.append("trade size near single-trade limit")

        # Gas against expected profit
        gas_ratio = gas_cost / profit if profit > 0 else float('inf')
        if gas_ratio > s.max_trade_gas_ratio:
            breaches.append(LimitBreach(
                limit='gas_ratio',
                observed=gas_ratio,
                threshold=s.max_trade_gas_ratio,
                message=f"gas/profit ratio {gas_ratio:.2f} exceeds {s.max_trade_gas_ratio:.2f}",
            ))
        elif gas_ratio > s.max_trade_gas_ratio * NEAR_LIMIT_FRACTION:
            warnings.append("gas/profit ratio near limit")

        margin = safe_divide(profit - gas_cost, trade_size)
        if margin < s.min_profit_margin:
            warnings.append(f"profit margin {margin:.4f} below {s.min_profit_margin:.4f}")

        # Rolling exposure per token and per chain
        token_exposure, chain_exposure = self._exposure_locked(now)
        token_cap = int(capital * s.max_token_exposure_pct)
        chain_cap = int(capital * s.max_chain_exposure_pct)
        headroom = capital_cap
        exposure_usage = 0.0

        for token in sorted(set(tokens)):
            current = token_exposure.get(token, 0)
            headroom = min(headroom, token_cap - current)
            exposure_usage = max(exposure_usage, safe_divide(current + trade_size, token_cap, 1.0))
            if current + trade_size > token_cap:
                breaches.append(LimitBreach(
                    limit=f"token_exposure:{token}",
                    observed=current + trade_size,
                    threshold=token_cap,
                    message=f"{token} exposure {current + trade_size} would exceed {token_cap}",
                ))

        current_chain = chain_exposure.get(chain_id, 0)
        headroom = min(headroom, chain_cap - current_chain)
        exposure_usage = max(exposure_usage, safe_divide(current_chain + trade_size, chain_cap, 1.0))
        if current_chain + trade_size > chain_cap:
            breaches.append(LimitBreach(
                limit=f"chain_exposure:{chain_id}",
                observed=current_chain + trade_size,
                threshold=chain_cap,
                message=f"chain {chain_id} exposure {current_chain + trade_size} would exceed {chain_cap}",
            ))

        usage = max(
            safe_divide(trade_size, capital_cap, 1.0),
            min(gas_ratio / s.max_trade_gas_ratio, 1.0),
            exposure_usage,
        )
        if usage < 0.5:
            tier = RiskTier.LOW
        elif usage < NEAR_LIMIT_FRACTION:
            tier = RiskTier.MEDIUM
        else:
            tier = RiskTier.HIGH

        required = REQUIRED_CONFIDENCE[tier]
        if confidence < required:
            warnings.append(f"confidence {confidence:.2f} below {required:.2f} for {tier.value} tier")

        return TradeRiskAssessment(
            approved=not breaches,
            risk_tier=tier,
            max_position_size=max(0, headroom),
            required_confidence=required,
            gas_ratio=gas_ratio,
            breaches=tuple(breaches),
            warnings=tuple(warnings),
        )

    # ========================================================================
    # OUTCOMES
    # ========================================================================

    def record_outcome(self, outcome: TradeOutcome) -> Optional[BreakerTransition]:
        """
        Apply one completed trade to the risk state and re-evaluate the breaker.

        Returns:
            The breaker transition this outcome caused, if any
        """
        with self._lock:
            now = self._clock()
            net = outcome.net_pnl

            self._balance += net
            if self._balance > self._peak_balance:
                self._peak_balance = self._balance

            self._history.append(_TradeEntry(
                timestamp=outcome.timestamp,
                success=outcome.success,
                net_pnl=net,
                gas_cost=outcome.gas_cost,
                trade_size=outcome.trade_size,
            ))
            self._reservations.pop(outcome.candidate_id, None)
            self._exposures.append(_ExposureEntry(
                timestamp=outcome.timestamp,
                chain_id=outcome.chain_id,
                tokens=tuple(outcome.token_path),
                notional=outcome.trade_size,
            ))
            self._prune_locked(now)

            self._total_trades += 1
            if net > 0:
                self._profitable_trades += 1
            if outcome.success:
                self._consecutive_successes += 1
                self._consecutive_failures = 0
            else:
                self._consecutive_failures += 1
                self._consecutive_successes = 0

            if self._open:
                transition = self._try_close_locked(now)
                if transition is None:
                    self._reasons.update(self._trip_reasons_locked(now))
            else:
                reasons = self._trip_reasons_locked(now)
                transition = self._open_locked(reasons, now) if reasons else None

        if transition is not None:
            self._emit(transition)
        return transition

    def release(self, reservation_id: str) -> bool:
        """
        Drop the exposure reserved by an approval that will not execute.

        Returns:
            False if no reservation is held under ``reservation_id``
        """
        with self._lock:
            released = self._reservations.pop(reservation_id, None)
        if released is not None:
            logger.debug(f"Exposure reservation {reservation_id} released")
        return released is not None

    # ========================================================================
    # CIRCUIT BREAKER
    # ========================================================================

    def _trip_reasons_locked(self, now: datetime) -> Dict[str, str]:
        """Every open-trigger condition currently holding, keyed by limit"""
        s = self.settings
        m = self._metrics_locked(now)
        reference = max(self._peak_balance, 1)
        reasons: Dict[str, str] = {}

        if m.current_drawdown > s.max_drawdown_pct:
            reasons['drawdown'] = f"drawdown {m.current_drawdown:.2%} exceeds {s.max_drawdown_pct:.2%}"
        daily_loss = max(0, -m.daily_pnl) / reference
        if daily_loss > s.max_daily_loss_pct:
            reasons['daily_loss'] = f"daily loss {daily_loss:.2%} exceeds {s.max_daily_loss_pct:.2%}"
        weekly_loss = max(0, -m.weekly_pnl) / reference
        if weekly_loss > s.max_weekly_loss_pct:
            reasons['weekly_loss'] = f"weekly loss {weekly_loss:.2%} exceeds {s.max_weekly_loss_pct:.2%}"
        if m.consecutive_failures >= s.max_consecutive_failures:
            reasons['consecutive_failures'] = f"{m.consecutive_failures} consecutive failures"
        if m.samples_1h >= s.min_success_rate_samples and m.success_rate_1h < s.min_success_rate_1h:
            reasons['success_rate_1h'] = (
                f"1h success rate {m.success_rate_1h:.1%} below {s.min_success_rate_1h:.1%}"
            )
        if m.samples_24h >= s.min_success_rate_samples and m.success_rate_24h < s.min_success_rate_24h:
            reasons['success_rate_24h'] = (
                f"24h success rate {m.success_rate_24h:.1%} below {s.min_success_rate_24h:.1%}"
            )
        if m.gas_to_capital_ratio > s.max_gas_to_capital_ratio:
            reasons['gas_to_capital'] = (
                f"gas-to-capital ratio {m.gas_to_capital_ratio:.2%} exceeds {s.max_gas_to_capital_ratio:.2%}"
            )
        return reasons

    def _open_locked(self, reasons: Dict[str, str], now: datetime) -> BreakerTransition:
        self._open = True
        self._activated_at = now
        self._reasons = dict(reasons)
        self._override_enabled = False
        messages = list(reasons.values())

        logger.critical(
            f"🚨 CIRCUIT BREAKER OPEN\n"
            f"   Reasons: {'; '.join(messages)}\n"
            f"   Recovery not before: {self._recovery_time_locked().isoformat()}",
            extra={'reasons': messages}
        )
        return BreakerTransition(
            from_state=BreakerState.CLOSED,
            to_state=BreakerState.OPEN,
            at=now,
            reasons=tuple(messages),
        )

    def _try_close_locked(self, now: datetime) -> Optional[BreakerTransition]:
        """Close the breaker if every resume condition holds."""
        s = self.settings
        if now - self._activated_at < timedelta(seconds=s.breaker_cooldown_sec):
            return None
        if self._consecutive_failures != 0:
            return None

        m = self._metrics_locked(now)
        if m.current_drawdown >= s.max_drawdown_pct * RESUME_DRAWDOWN_FRACTION:
            return None
        if (m.samples_1h >= s.resume_min_samples
                and m.success_rate_1h <= s.min_success_rate_1h * RESUME_SUCCESS_RATE_MULTIPLE):
            return None
        if self._trip_reasons_locked(now):
            return None

        return self._close_locked(now, trigger='automatic', note='resume conditions met')

    def _close_locked(self, now: datetime, trigger: str, note: str) -> BreakerTransition:
        reasons = tuple(self._reasons.values())
        self._open = False
        self._activated_at = None
        self._reasons = {}
        self._override_enabled = False

        logger.info(f"✅ Circuit breaker closed ({trigger}): {note}")
        return BreakerTransition(
            from_state=BreakerState.OPEN,
            to_state=BreakerState.CLOSED,
            at=now,
            reasons=reasons,
            trigger=trigger,
        )

    def _recovery_time_locked(self) -> Optional[datetime]:
        if self._activated_at is None:
            return None
        return self._activated_at + timedelta(seconds=self.settings.breaker_cooldown_sec)

    def enable_override(self, authorized_by: str, note: str = "") -> bool:
        """
        Mark the open breaker as eligible for a manual reset.

        Returns:
            False when the breaker is closed (nothing to override)
        """
        with self._lock:
            if not self._open:
                return False
            self._override_enabled = True
            self._audit.append(OverrideAudit(self._clock(), 'enable_override', authorized_by, note))

        logger.warning(f"⚠️ Circuit breaker override enabled by {authorized_by}: {note}")
        return True

    def force_reset(self, authorized_by: str, note: str = "") -> bool:
        """
        Close the breaker manually. Only allowed after ``enable_override``.

        The consecutive-failure streak restarts from zero; balances and
        history are untouched.

        Returns:
            True if the breaker was closed
        """
        with self._lock:
            if not self._open:
                return False
            if not self._override_enabled:
                logger.error(
                    f"Manual reset by {authorized_by} refused: override not enabled",
                    extra={'authorized_by': authorized_by}
                )
                return False
            now = self._clock()
            self._audit.append(OverrideAudit(now, 'force_reset', authorized_by, note))
            self._consecutive_failures = 0
            transition = self._close_locked(now, trigger='manual', note=f"{authorized_by}: {note}")

        self._emit(transition)
        return True

    def register_transition_callback(self, callback: Callable[[BreakerTransition], Any]) -> None:
        """Register a synchronous callable invoked on every breaker transition"""
        self._callbacks.append(callback)

    def _emit(self, transition: BreakerTransition) -> None:
        log_trade_event(
            logger,
            'BREAKER_OPENED' if transition.to_state == BreakerState.OPEN else 'BREAKER_CLOSED',
            reasons=list(transition.reasons),
            trigger=transition.trigger,
        )
        for callback in list(self._callbacks):
            try:
                callback(transition)
            except Exception as e:
                logger.error(f"Breaker transition callback error: {e}", exc_info=True)

    # ========================================================================
    # METRICS
    # ========================================================================

    def _prune_locked(self, now: datetime) -> None:
        history_cutoff = now - timedelta(days=self.settings.risk_history_days)
        while self._history and self._history[0].timestamp < history_cutoff:
            self._history.popleft()
        exposure_cutoff = now - timedelta(seconds=self.settings.exposure_window_sec)
        while self._exposures and self._exposures[0].timestamp < exposure_cutoff:
            self._exposures.popleft()
        expired = [rid for rid, entry in self._reservations.items() if entry.timestamp < exposure_cutoff]
        for rid in expired:
            del self._reservations[rid]

    def _exposure_locked(self, now: datetime) -> Tuple[Dict[str, int], Dict[int, int]]:
        """Notional per token and per chain: completed trades plus open reservations"""
        cutoff = now - timedelta(seconds=self.settings.exposure_window_sec)
        tokens: Dict[str, int] = {}
        chains: Dict[int, int] = {}
        for entry in itertools.chain(self._exposures, self._reservations.values()):
            if entry.timestamp < cutoff:
                continue
            for token in set(entry.tokens):
                tokens[token] = tokens.get(token, 0) + entry.notional
            chains[entry.chain_id] = chains.get(entry.chain_id, 0) + entry.notional
        return tokens, chains

    def _metrics_locked(self, now: datetime) -> RiskMetrics:
        s = self.settings
        last_hour = [e for e in self._history if now - e.timestamp <= timedelta(hours=1)]
        last_day = [e for e in self._history if now - e.timestamp <= timedelta(days=1)]
        last_week = [e for e in self._history if now - e.timestamp <= timedelta(days=7)]
        recent = list(self._history)[-s.gas_ratio_lookback_trades:]

        if self._peak_balance > 0:
            drawdown = clamp((self._peak_balance - self._balance) / self._peak_balance, 0.0, 1.0)
        else:
            drawdown = 0.0

        recent_gas = sum(e.gas_cost for e in recent)
        if self._balance > 0:
            gas_to_capital = recent_gas / self._balance
        else:
            gas_to_capital = float('inf') if recent_gas else 0.0

        token_exposure, chain_exposure = self._exposure_locked(now)

        return RiskMetrics(
            current_drawdown=drawdown,
            daily_pnl=sum(e.net_pnl for e in last_day),
            weekly_pnl=sum(e.net_pnl for e in last_week),
            consecutive_failures=self._consecutive_failures,
            consecutive_successes=self._consecutive_successes,
            gas_to_capital_ratio=gas_to_capital,
            success_rate_1h=safe_divide(sum(1 for e in last_hour if e.success), len(last_hour)),
            success_rate_24h=safe_divide(sum(1 for e in last_day if e.success), len(last_day)),
            samples_1h=len(last_hour),
            samples_24h=len(last_day),
            avg_profit_margin=mean([e.net_pnl / e.trade_size for e in self._history if e.trade_size > 0]),
            token_exposure=token_exposure,
            chain_exposure=chain_exposure,
            peak_balance=self._peak_balance,
            current_balance=self._balance,
            total_trades=self._total_trades,
            profitable_trades=self._profitable_trades,
        )

    def metrics(self) -> RiskMetrics:
        """Read-only snapshot of the current risk metrics"""
        with self._lock:
            return self._metrics_locked(self._clock())

    def status(self) -> CircuitBreakerStatus:
        with self._lock:
            return CircuitBreakerStatus(
                is_active=self._open,
                activated_at=self._activated_at,
                reasons=tuple(self._reasons.values()),
                estimated_recovery_time=self._recovery_time_locked(),
                can_override=self._open and self._override_enabled,
            )

    @property
    def is_open(self) -> bool:
        with self._lock:
            return self._open

    @property
    def audit_log(self) -> Tuple[OverrideAudit, ...]:
        with self._lock:
            return tuple(self._audit)

    def risk_report(self) -> Dict[str, Any]:
        """Metrics, limits, breaker status, recommendations and a 0-100 health score"""
        s = self.settings
        metrics = self.metrics()
        status = self.status()

        health = 100.0
        health -= min(metrics.current_drawdown / s.max_drawdown_pct, 1.0) * 30
        health -= min(metrics.consecutive_failures / s.max_consecutive_failures, 1.0) * 20
        if metrics.samples_24h:
            health -= (1 - metrics.success_rate_24h) * 20
        health -= min(metrics.gas_to_capital_ratio / s.max_gas_to_capital_ratio, 1.0) * 10
        if status.is_active:
            health -= 30
        health = clamp(health, 0.0, 100.0)

        recommendations = []
        if status.is_active:
            recommendations.append("Trading suspended: review trigger reasons before resuming")
        if metrics.current_drawdown > s.max_drawdown_pct * 0.5:
            recommendations.append("Drawdown above half its limit: reduce position sizes")
        if metrics.consecutive_failures >= max(1, s.max_consecutive_failures - 2):
            recommendations.append("Failure streak building: check executor and slippage settings")
        if metrics.gas_to_capital_ratio > s.max_gas_to_capital_ratio * 0.5:
            recommendations.append("Gas spend is high relative to capital")

        return {
            'health_score': health,
            'metrics': metrics,
            'circuit_breaker': status,
            'limits': {
                'max_drawdown_pct': s.max_drawdown_pct,
                'max_daily_loss_pct': s.max_daily_loss_pct,
                'max_weekly_loss_pct': s.max_weekly_loss_pct,
                'max_consecutive_failures': s.max_consecutive_failures,
                'max_trade_gas_ratio': s.max_trade_gas_ratio,
                'max_gas_to_capital_ratio': s.max_gas_to_capital_ratio,
                'min_success_rate_1h': s.min_success_rate_1h,
                'min_success_rate_24h': s.min_success_rate_24h,
                'max_single_trade_pct': s.max_single_trade_pct,
                'max_token_exposure_pct': s.max_token_exposure_pct,
                'max_chain_exposure_pct': s.max_chain_exposure_pct,
            },
            'recommendations': recommendations,
            'overrides': [a.__dict__ for a in self.audit_log],
        }
