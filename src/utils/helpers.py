"""
Numeric and Validation Helpers for the Adaptive Arbitrage Pipeline

Provides:
- Range clamping and safe division
- The basis-point scale
- Dispersion statistics over fee-price samples
- Input validation for amounts and token paths
"""

import math
import statistics
from datetime import datetime, timezone
from typing import Sequence

from utils.exceptions import DataValidationError


BPS_PER_UNIT = 10_000


# ============================================================================
# 1. SAFE MATH
# ============================================================================

def clamp(value: float, lower: float, upper: float) -> float:
    """Clamp ``value`` into ``[lower, upper]``."""
    return max(lower, min(upper, value))


def safe_divide(numerator: float, denominator: float, default: float = 0.0) -> float:
    """
    Divide, returning ``default`` for a zero or non-finite denominator.

    Examples:
        >>> safe_divide(1, 4)
        0.25
        >>> safe_divide(1, 0, default=1.0)
        1.0
    """
    if denominator == 0 or not math.isfinite(denominator):
        return default
    return numerator / denominator


# ============================================================================
# 2. STATISTICS
# ============================================================================

def mean(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    return statistics.fmean(values)


def coefficient_of_variation(values: Sequence[float]) -> float:
    """
    Population standard deviation divided by the mean.

    Returns 0.0 for fewer than two samples or a zero mean.
    """
    if len(values) < 2:
        return 0.0
    avg = statistics.fmean(values)
    if avg == 0:
        return 0.0
    return statistics.pstdev(values) / avg


# ============================================================================
# 3. INPUT VALIDATION
# ============================================================================

def validate_amount(amount: int, name: str = "amount", allow_zero: bool = True) -> int:
    """
    Validate an integer amount in smallest units.

    Raises:
        DataValidationError: If the amount is negative (or zero when not allowed)
    """
    if not isinstance(amount, int) or isinstance(amount, bool):
        raise DataValidationError(
            f"{name} must be an integer amount",
            error_code='INVALID_AMOUNT_TYPE',
            details={name: repr(amount)}
        )
    if amount < 0 or (amount == 0 and not allow_zero):
        raise DataValidationError(
            f"{name} out of range: {amount}",
            error_code='INVALID_AMOUNT',
            details={name: amount}
        )
    return amount


def validate_token_path(path: Sequence[str]) -> tuple:
    """
    Validate a pair or multi-hop path of token symbols/addresses.

    A pair has two distinct tokens; a multi-hop path has more than two
    tokens and no token repeated back to back.

    Raises:
        DataValidationError: If the path is malformed
    """
    tokens = tuple(path)
    if len(tokens) < 2:
        raise DataValidationError(
            "Token path needs at least two tokens",
            error_code='INVALID_TOKEN_PATH',
            details={'path': list(tokens)}
        )
    for token_in, token_out in zip(tokens, tokens[1:]):
        if not token_in or not token_out or token_in == token_out:
            raise DataValidationError(
                f"Invalid hop {token_in} -> {token_out}",
                error_code='INVALID_TOKEN_PATH',
                details={'path': list(tokens)}
            )
    return tokens


# ============================================================================
# 4. TIME
# ============================================================================

def utc_now() -> datetime:
    """Default clock for every time-windowed component."""
    return datetime.now(timezone.utc)
