"""
Performance Tracker

Rolling buffer of completed-trade records, bounded both by size and by the
analysis window. Statistics are computed on demand by pure functions over a
snapshot of the buffer, so the optimizer's learning loop never reaches into
tracker state.

Metrics:
    success_rate     = successful / total
    avg_profit       = Σ profit / total
    gas_efficiency   = Σ profit / Σ gas_used          (profit per unit gas)
    return_on_gas    = Σ profit / Σ (gas_used × gas_price) × 100
    trend deltas     = metric(recent half-window) - metric(prior half-window)
"""

import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence, Tuple

from config.settings import PipelineSettings, get_settings
from core.models import TradeRecord
from utils.helpers import mean, safe_divide, utc_now
from utils.logger import get_logger


logger = get_logger(__name__)


@dataclass(frozen=True)
class PerformanceMetrics:
    total_trades: int
    successful_trades: int
    success_rate: float
    avg_profit: float
    total_profit: int
    total_gas_cost: int
    gas_efficiency: float
    return_on_gas: float
    avg_gas_ratio: float
    avg_latency_ms: float


@dataclass(frozen=True)
class PerformanceTrends:
    success_rate_delta: float
    avg_profit_delta: float
    gas_efficiency_delta: float
    recent_trades: int
    prior_trades: int


def compute_metrics(records: Sequence[TradeRecord]) -> PerformanceMetrics:
    """Aggregate statistics over ``records``; an empty sequence yields zeros."""
    total = len(records)
    successes = sum(1 for r in records if r.success)
    total_profit = sum(r.profit for r in records)
    total_gas_units = sum(r.gas_used for r in records)
    total_gas_cost = sum(r.gas_cost for r in records)
    return PerformanceMetrics(
        total_trades=total,
        successful_trades=successes,
        success_rate=safe_divide(successes, total),
        avg_profit=safe_divide(total_profit, total),
        total_profit=total_profit,
        total_gas_cost=total_gas_cost,
        gas_efficiency=safe_divide(total_profit, total_gas_units),
        return_on_gas=safe_divide(total_profit, total_gas_cost) * 100,
        avg_gas_ratio=mean([r.gas_ratio for r in records]),
        avg_latency_ms=mean([r.latency_ms for r in records]),
    )


def compute_trends(
    records: Sequence[TradeRecord],
    now: datetime,
    window: timedelta
) -> PerformanceTrends:
    """Compare the most recent half-window with the half-window before it."""
    half = window / 2
    recent = [r for r in records if now - r.timestamp <= half]
    prior = [r for r in records if half < now - r.timestamp <= window]
    recent_m = compute_metrics(recent)
    prior_m = compute_metrics(prior)
    return PerformanceTrends(
        success_rate_delta=recent_m.success_rate - prior_m.success_rate,
        avg_profit_delta=recent_m.avg_profit - prior_m.avg_profit,
        gas_efficiency_delta=recent_m.gas_efficiency - prior_m.gas_efficiency,
        recent_trades=len(recent),
        prior_trades=len(prior),
    )


class PerformanceTracker:
    """
    Append-only trade history shared by the optimizer and the host.

    ``record`` is synchronous and guarded by a lock so concurrent cycle
    completions can report outcomes safely.
    """

    def __init__(
        self,
        settings: Optional[PipelineSettings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.settings = settings or get_settings()
        self._clock = clock
        self._window = timedelta(seconds=self.settings.performance_window_sec)
        self._records: Deque[TradeRecord] = deque(maxlen=self.settings.max_history_size)
        self._lock = threading.Lock()
        self._opportunities_seen = 0

    def record(self, record: TradeRecord) -> None:
        """Append one completed trade and evict what fell out of the window."""
        with self._lock:
            self._records.append(record)
            self._evict(self._clock())

        logger.debug(
            f"Trade recorded: success={record.success} profit={record.profit} "
            f"gas={record.gas_cost}",
            extra={'chain_id': record.chain_id}
        )

    def note_opportunities(self, count: int) -> None:
        """Count candidates seen by the scanner, for the capture rate."""
        if count > 0:
            with self._lock:
                self._opportunities_seen += count

    def snapshot(self) -> Tuple[TradeRecord, ...]:
        """Time-ordered, immutable copy of the records inside the window."""
        with self._lock:
            self._evict(self._clock())
            return tuple(self._records)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def metrics(self) -> PerformanceMetrics:
        return compute_metrics(self.snapshot())

    def trends(self) -> PerformanceTrends:
        return compute_trends(self.snapshot(), self._clock(), self._window)

    def detailed_report(self) -> Dict[str, Any]:
        """Metrics, trends, insights and recommendations for operators."""
        records = self.snapshot()
        metrics = compute_metrics(records)
        trends = compute_trends(records, self._clock(), self._window)
        with self._lock:
            seen = self._opportunities_seen

        insights: List[str] = []
        recommendations: List[str] = []

        if metrics.total_trades == 0:
            insights.append("No trades in the analysis window")
        else:
            if metrics.success_rate > 0.8:
                insights.append(f"High success rate ({metrics.success_rate:.0%})")
            elif metrics.success_rate < 0.5:
                insights.append(f"Low success rate ({metrics.success_rate:.0%})")
                recommendations.append("Raise minimum spread or review slippage tolerance")

            if metrics.avg_gas_ratio > 0.25:
                insights.append(f"Gas consumes {metrics.avg_gas_ratio:.0%} of profit on average")
                recommendations.append("Favor cheaper chains or larger trade sizes")

            if trends.prior_trades and trends.success_rate_delta < -0.1:
                insights.append("Success rate is falling")
                recommendations.append("Reduce trade frequency until conditions stabilize")
            elif trends.prior_trades and trends.success_rate_delta > 0.1:
                insights.append("Success rate is improving")

            if metrics.avg_latency_ms > 5000:
                recommendations.append("Execution latency is high; check executor and RPC health")

        return {
            'metrics': metrics,
            'trends': trends,
            'opportunities_seen': seen,
            'capture_rate': safe_divide(metrics.total_trades, seen),
            'insights': insights,
            'recommendations': recommendations,
        }

    def _evict(self, now: datetime) -> None:
        cutoff = now - self._window
        while self._records and self._records[0].timestamp < cutoff:
            self._records.popleft()
