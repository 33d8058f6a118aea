"""
Default Constants for the Adaptive Arbitrage Pipeline

Single source of truth for the default tuning values used by the settings
layer. Nothing in the core reads these directly: every component receives a
``PipelineSettings`` instance, whose fields default to the values below and
can be overridden through the environment.

Key Principles:
- All constants are Final (immutable)
- Amounts are integers in the smallest unit of the base asset (wei for ETH)
- Ratios and fractions are floats in [0, 1] unless stated otherwise
- Bucket boundaries and the learning clamp are heuristic defaults, not law
"""

from typing import Final, Dict, List


WEI_PER_ETH: Final[int] = 10 ** 18


# ============================================================================
# 1. ACCEPTANCE THRESHOLD MODEL
# ============================================================================
# Final spread threshold (bps) =
#   max(base × vol_adj × liq_adj × comp_adj × time_adj,
#       gas_cost / max_gas_ratio  expressed in bps of the reference trade)
#   × learning_factor
#
# Example: base 30 bps, low volatility (0.8), normal liquidity (1.0),
# low competition (0.7), active hours (1.0) → 30 × 0.8 × 0.7 = 16.8 bps
# ============================================================================

BASE_SPREAD_THRESHOLD_BPS: Final[float] = 30.0

# Conservative gas estimate for one round-trip arbitrage (two swaps + overhead)
REFERENCE_GAS_UNITS: Final[int] = 500_000

# Trade size the gas-breakeven component is expressed against (1 ETH)
REFERENCE_TRADE_SIZE: Final[int] = WEI_PER_ETH

# Gas may consume at most 30% of expected profit
MAX_GAS_TO_PROFIT_RATIO: Final[float] = 0.30

VOLATILITY_ADJUSTMENT: Final[Dict[str, float]] = {
    'low': 0.8,
    'medium': 1.0,
    'high': 1.4,
}

LIQUIDITY_ADJUSTMENT: Final[Dict[str, float]] = {
    'thin': 1.5,
    'normal': 1.0,
    'deep': 0.9,
}

COMPETITION_ADJUSTMENT: Final[Dict[str, float]] = {
    'low': 0.7,
    'medium': 1.0,
    'high': 1.3,
}

TIME_OF_DAY_ADJUSTMENT: Final[Dict[str, float]] = {
    'quiet': 0.8,
    'active': 1.0,
    'peak': 1.2,
}

# Bucket boundaries: value < low → low bucket, value >= high → high bucket
VOLATILITY_LOW_BOUNDARY: Final[float] = 0.3
VOLATILITY_HIGH_BOUNDARY: Final[float] = 0.7
LIQUIDITY_THIN_BOUNDARY: Final[float] = 80.0
LIQUIDITY_DEEP_BOUNDARY: Final[float] = 150.0
COMPETITION_LOW_BOUNDARY: Final[float] = 0.4
COMPETITION_HIGH_BOUNDARY: Final[float] = 0.7


# ============================================================================
# 2. LEARNING ADJUSTMENT
# ============================================================================
# Applied only when at least LEARNING_MIN_SAMPLES trades were observed under
# the same condition buckets inside the learning window.
#
#   success rate < 0.15  → × 0.85 (thresholds too strict, loosen)
#   success rate > 0.40  → × 1.10 (plenty of room, tighten)
#   avg gas ratio > 0.25 → × 1.15 (gas eating profits, tighten)
#   result clamped to [0.5, 2.0]
# ============================================================================

LEARNING_MIN_SAMPLES: Final[int] = 5
LEARNING_WINDOW_SEC: Final[int] = 24 * 3600
LEARNING_LOW_SUCCESS_RATE: Final[float] = 0.15
LEARNING_LOW_SUCCESS_FACTOR: Final[float] = 0.85
LEARNING_HIGH_SUCCESS_RATE: Final[float] = 0.40
LEARNING_HIGH_SUCCESS_FACTOR: Final[float] = 1.10
LEARNING_HIGH_GAS_RATIO: Final[float] = 0.25
LEARNING_HIGH_GAS_FACTOR: Final[float] = 1.15
LEARNING_FACTOR_MIN: Final[float] = 0.5
LEARNING_FACTOR_MAX: Final[float] = 2.0


# ============================================================================
# 3. EXECUTION PARAMETERS
# ============================================================================

BASE_SLIPPAGE_BPS: Final[int] = 50
BASE_TRADE_SIZE: Final[int] = WEI_PER_ETH
BASE_COOLDOWN_SEC: Final[float] = 5.0
BASE_GAS_BUFFER: Final[float] = 1.2

# Competition level above which each urgency applies
GAS_URGENCY_THRESHOLDS: Final[Dict[str, float]] = {
    'urgent': 0.8,
    'high': 0.6,
    'medium': 0.3,
}

GAS_URGENCY_FEE_MULTIPLIERS: Final[Dict[str, float]] = {
    'low': 0.8,
    'medium': 1.0,
    'high': 1.5,
    'urgent': 2.0,
}

# Safety bands: every OptimizedParameters field is clamped into these
MIN_SPREAD_BPS: Final[float] = 5.0
MAX_SPREAD_BPS: Final[float] = 500.0
MIN_PROFIT_THRESHOLD: Final[int] = 10 ** 14          # 0.0001 ETH
MAX_PROFIT_THRESHOLD: Final[int] = 10 * WEI_PER_ETH  # 10 ETH
MIN_SLIPPAGE_BPS: Final[int] = 10
MAX_SLIPPAGE_BPS: Final[int] = 1000
MIN_TRADE_SIZE: Final[int] = 10 ** 16                # 0.01 ETH
MAX_TRADE_SIZE: Final[int] = 100 * WEI_PER_ETH       # 100 ETH
MIN_COOLDOWN_SEC: Final[float] = 1.0
MAX_COOLDOWN_SEC: Final[float] = 300.0
MIN_GAS_BUFFER: Final[float] = 1.0
MAX_GAS_BUFFER: Final[float] = 3.0


# ============================================================================
# 4. MARKET CONDITION ANALYSIS
# ============================================================================
# Time-of-day buckets (UTC):
#   quiet  - before 07:00 and from 22:00
#   peak   - 13:00 to 17:00
#   active - everything else
# ============================================================================

VOLATILITY_WINDOW: Final[int] = 20
GAS_HISTORY_SIZE: Final[int] = 100
CONGESTION_WINDOW: Final[int] = 10

QUIET_START_HOUR: Final[int] = 22
QUIET_END_HOUR: Final[int] = 7
PEAK_START_HOUR: Final[int] = 13
PEAK_END_HOUR: Final[int] = 17

# Liquidity proxy when pool depth is unavailable:
#   max(LIQUIDITY_PROXY_FLOOR, LIQUIDITY_PROXY_SCALE × (1 - block utilization))
REFERENCE_LIQUIDITY: Final[float] = 100.0
LIQUIDITY_PROXY_FLOOR: Final[float] = 50.0
LIQUIDITY_PROXY_SCALE: Final[float] = 200.0

DEFAULT_VOLATILITY: Final[float] = 0.5
DEFAULT_LIQUIDITY: Final[float] = 100.0
DEFAULT_CONGESTION: Final[float] = 0.5
DEFAULT_COMPETITION: Final[float] = 0.5

# Stability assigned to a freshly entered regime
REGIME_RESET_STABILITY: Final[float] = 0.3
REGIME_STABILITY_STEP: Final[float] = 0.1


# ============================================================================
# 5. RISK LIMITS
# ============================================================================

INITIAL_CAPITAL: Final[int] = 10 * WEI_PER_ETH
MAX_DRAWDOWN_PCT: Final[float] = 0.05
MAX_DAILY_LOSS_PCT: Final[float] = 0.08
MAX_WEEKLY_LOSS_PCT: Final[float] = 0.15
MAX_CONSECUTIVE_FAILURES: Final[int] = 5
MAX_TRADE_GAS_RATIO: Final[float] = 0.25
MAX_GAS_TO_CAPITAL_RATIO: Final[float] = 0.25
MIN_SUCCESS_RATE_1H: Final[float] = 0.15
MIN_SUCCESS_RATE_24H: Final[float] = 0.20
MIN_SUCCESS_RATE_SAMPLES: Final[int] = 20
RESUME_MIN_SAMPLES: Final[int] = 10
MIN_PROFIT_MARGIN: Final[float] = 0.005
MAX_SINGLE_TRADE_PCT: Final[float] = 0.15
MAX_TOKEN_EXPOSURE_PCT: Final[float] = 0.25
MAX_CHAIN_EXPOSURE_PCT: Final[float] = 0.40
EXPOSURE_WINDOW_SEC: Final[int] = 3600
BREAKER_COOLDOWN_SEC: Final[int] = 30 * 60
GAS_RATIO_LOOKBACK_TRADES: Final[int] = 20
RISK_HISTORY_DAYS: Final[int] = 30


# ============================================================================
# 6. PERFORMANCE TRACKING
# ============================================================================

PERFORMANCE_WINDOW_SEC: Final[int] = 24 * 3600
MAX_HISTORY_SIZE: Final[int] = 10_000


# ============================================================================
# 7. CHAIN GAS PROFILES
# ============================================================================
# Chain-specific gas conventions keyed by chain id. Unknown chains fall back
# to the Ethereum profile.
#   gas_units_per_swap   - gas for one swap hop on that chain
#   fee_multiplier       - correction on the reported fee (L2 data fees etc.)
#   fallback_gas_price   - fee price assumed when the chain cannot be sampled
# ============================================================================

DEFAULT_CHAIN_ID: Final[int] = 1

CHAIN_GAS_PROFILES: Final[Dict[int, Dict]] = {
    1: {'name': 'ethereum', 'gas_units_per_swap': 180_000, 'fee_multiplier': 1.0,
        'fallback_gas_price': 30 * 10 ** 9},
    10: {'name': 'optimism', 'gas_units_per_swap': 200_000, 'fee_multiplier': 1.3,
         'fallback_gas_price': 10 ** 6},
    137: {'name': 'polygon', 'gas_units_per_swap': 200_000, 'fee_multiplier': 1.1,
          'fallback_gas_price': 50 * 10 ** 9},
    8453: {'name': 'base', 'gas_units_per_swap': 200_000, 'fee_multiplier': 1.3,
           'fallback_gas_price': 10 ** 6},
    42161: {'name': 'arbitrum', 'gas_units_per_swap': 600_000, 'fee_multiplier': 1.0,
            'fallback_gas_price': 10 ** 8},
}


# ============================================================================
# 8. SCANNER
# ============================================================================

DEFAULT_CHAINS: Final[List[int]] = [1]
DEFAULT_VENUES: Final[List[str]] = ['uniswap_v3', 'sushiswap']
DEFAULT_TRADING_PAIRS: Final[List[List[str]]] = [['WETH', 'USDC']]
SCAN_INTERVAL_SEC: Final[float] = 5.0
CHAIN_CYCLE_TIMEOUT_SEC: Final[float] = 20.0
QUOTE_TIMEOUT_SEC: Final[float] = 5.0
BASE_ASSET_DECIMALS: Final[int] = 18
API_TIMEOUT_SEC: Final[float] = 10.0


# ============================================================================
# LOGGING CONFIGURATION
# ============================================================================

# Logging level: 'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'
LOG_LEVEL: Final[str] = 'INFO'

# Path to log file (ensure write permissions)
LOG_FILE_PATH: Final[str] = 'logs/arb_pipeline.log'

# Maximum log file size in bytes (50 MB - rotate after this size)
MAX_LOG_FILE_SIZE: Final[int] = 50 * 1024 * 1024

# Number of backup log files to keep
LOG_BACKUP_COUNT: Final[int] = 10

# Enable JSON structured logging for the file handler
STRUCTURED_LOGGING: Final[bool] = True
