"""
Custom Exception Classes for the Adaptive Arbitrage Pipeline

Provides the hierarchy of failures the decision core distinguishes,
so callers can contain per-source problems without masking a suspended
circuit breaker.

Exception Hierarchy:
├── PipelineError (Base)
│   ├── ConfigurationError
│   ├── DataValidationError
│   ├── DataUnavailable
│   ├── ParameterOutOfBounds
│   ├── TradingSuspended
│   └── RiskLimitExceeded
"""

from datetime import datetime
from typing import Optional, Dict, Any, List, Sequence


class PipelineError(Exception):
    """
    Base exception for all pipeline errors.
    Enables catching every core error with: except PipelineError
    """

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None
    ):
        """
        Initialize pipeline error with structured information.

        Args:
            message: Human-readable error message
            error_code: Error code for classification (e.g., 'DATA_UNAVAILABLE')
            details: Additional context dict
            original_error: Original exception that caused this (for error chaining)
        """
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.original_error = original_error
        super().__init__(self.message)

    def __str__(self) -> str:
        error_str = f"{self.__class__.__name__}: {self.message}"
        if self.error_code:
            error_str += f" (Code: {self.error_code})"
        if self.details:
            error_str += f" | Details: {self.details}"
        return error_str


# ============================================================================
# CONFIGURATION & VALIDATION ERRORS
# ============================================================================

class ConfigurationError(PipelineError):
    """
    Raised when configuration is invalid or incomplete.
    Examples: min bound above max bound, empty chain list, unknown table key
    Action: Fix configuration and restart the host process
    """
    pass


class DataValidationError(PipelineError):
    """
    Raised when an input value fails validation
    (negative amounts, malformed addresses, empty token paths).
    """
    pass


# ============================================================================
# DATA SOURCE ERRORS
# ============================================================================

class DataUnavailable(PipelineError):
    """
    A single data source could not be reached.

    Recoverable: the scanner substitutes default conditions (or drops the
    quote) for that source only and keeps evaluating the rest of the cycle.
    """

    def __init__(
        self,
        message: str,
        source: Optional[str] = None,
        chain_id: Optional[int] = None,
        **kwargs
    ):
        self.source = source
        self.chain_id = chain_id
        kwargs.setdefault('error_code', 'DATA_UNAVAILABLE')
        details = kwargs.pop('details', None) or {}
        details.update({'source': source, 'chain_id': chain_id})
        super().__init__(message, details=details, **kwargs)


# ============================================================================
# OPTIMIZER ERRORS
# ============================================================================

class ParameterOutOfBounds(PipelineError):
    """
    An internally computed parameter left its safety band.

    Never propagates out of the optimizer: it is built, logged as a warning
    and the value is clamped.
    """

    def __init__(
        self,
        parameter: str,
        value: float,
        lower: float,
        upper: float,
        **kwargs
    ):
        self.parameter = parameter
        self.value = value
        self.lower = lower
        self.upper = upper
        kwargs.setdefault('error_code', 'PARAMETER_OUT_OF_BOUNDS')
        super().__init__(
            f"{parameter}={value} outside [{lower}, {upper}]",
            details={'parameter': parameter, 'value': value, 'lower': lower, 'upper': upper},
            **kwargs
        )

    @property
    def clamped_value(self) -> float:
        return min(max(self.value, self.lower), self.upper)


# ============================================================================
# RISK ERRORS
# ============================================================================

class TradingSuspended(PipelineError):
    """
    Raised by the risk gate while its circuit breaker is Open.
    Carries every active trigger reason and the estimated recovery time.
    """

    def __init__(
        self,
        reasons: Sequence[str],
        activated_at: Optional[datetime] = None,
        estimated_recovery_time: Optional[datetime] = None,
        **kwargs
    ):
        self.reasons: List[str] = list(reasons)
        self.activated_at = activated_at
        self.estimated_recovery_time = estimated_recovery_time
        kwargs.setdefault('error_code', 'TRADING_SUSPENDED')
        recovery = estimated_recovery_time.isoformat() if estimated_recovery_time else None
        super().__init__(
            "Trading suspended: " + "; ".join(self.reasons),
            details={'reasons': self.reasons, 'estimated_recovery_time': recovery},
            **kwargs
        )


class RiskLimitExceeded(PipelineError):
    """
    A specific trade was rejected by the risk gate.
    Not a failure of the system: a normal negative result carrying
    every limit that blocked the trade.
    """

    def __init__(self, breaches: Sequence[Any], **kwargs):
        self.breaches = list(breaches)
        kwargs.setdefault('error_code', 'RISK_LIMIT_EXCEEDED')
        messages = [getattr(b, 'message', str(b)) for b in self.breaches]
        super().__init__(
            "Trade rejected: " + "; ".join(messages),
            details={'limits': [getattr(b, 'limit', None) for b in self.breaches]},
            **kwargs
        )
