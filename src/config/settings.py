"""
Pipeline Configuration System

pydantic-settings based configuration for the adaptive opportunity pipeline.
Every field defaults to the matching value in ``config.constants`` and can be
overridden through environment variables or a ``.env`` file.

Settings are consumed once at startup: components receive the instance in
their constructor and never re-validate it per cycle.

Usage:
    from config.settings import get_settings

    settings = get_settings()
    base = settings.base_spread_threshold_bps

    # Override via environment:
    # export MAX_DRAWDOWN_PCT=0.03
    # complex fields take JSON:
    # export CHAINS='[1, 42161]'
"""

from typing import Dict, List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator

from config import constants as C


class PipelineSettings(BaseSettings):
    """
    Adaptive Pipeline Configuration

    All parameters can be overridden via environment variables.
    Example: BASE_SPREAD_THRESHOLD_BPS=25 arb-pipeline
    """

    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        case_sensitive=False,
        extra='ignore'
    )

    # ============================================================================
    # ACCEPTANCE THRESHOLD MODEL
    # ============================================================================

    base_spread_threshold_bps: float = Field(
        default=C.BASE_SPREAD_THRESHOLD_BPS,
        description="Base spread threshold before market adjustments (bps)",
        gt=0.0,
        le=10_000.0
    )

    reference_gas_units: int = Field(
        default=C.REFERENCE_GAS_UNITS,
        description="Conservative gas estimate for one arbitrage round trip",
        gt=0
    )

    reference_trade_size: int = Field(
        default=C.REFERENCE_TRADE_SIZE,
        description="Trade size the gas-breakeven threshold is expressed against",
        gt=0
    )

    max_gas_ratio: float = Field(
        default=C.MAX_GAS_TO_PROFIT_RATIO,
        description="Maximum share of expected profit that gas may consume",
        gt=0.0,
        le=1.0
    )

    volatility_adjustment: Dict[str, float] = Field(default_factory=lambda: dict(C.VOLATILITY_ADJUSTMENT))
    liquidity_adjustment: Dict[str, float] = Field(default_factory=lambda: dict(C.LIQUIDITY_ADJUSTMENT))
    competition_adjustment: Dict[str, float] = Field(default_factory=lambda: dict(C.COMPETITION_ADJUSTMENT))
    time_of_day_adjustment: Dict[str, float] = Field(default_factory=lambda: dict(C.TIME_OF_DAY_ADJUSTMENT))

    volatility_low_boundary: float = Field(default=C.VOLATILITY_LOW_BOUNDARY, ge=0.0, le=1.0)
    volatility_high_boundary: float = Field(default=C.VOLATILITY_HIGH_BOUNDARY, ge=0.0, le=1.0)
    liquidity_thin_boundary: float = Field(default=C.LIQUIDITY_THIN_BOUNDARY, ge=0.0)
    liquidity_deep_boundary: float = Field(default=C.LIQUIDITY_DEEP_BOUNDARY, ge=0.0)
    competition_low_boundary: float = Field(default=C.COMPETITION_LOW_BOUNDARY, ge=0.0, le=1.0)
    competition_high_boundary: float = Field(default=C.COMPETITION_HIGH_BOUNDARY, ge=0.0, le=1.0)

    # ============================================================================
    # LEARNING ADJUSTMENT
    # ============================================================================

    learning_min_samples: int = Field(default=C.LEARNING_MIN_SAMPLES, ge=1)
    learning_window_sec: int = Field(default=C.LEARNING_WINDOW_SEC, gt=0)
    learning_low_success_rate: float = Field(default=C.LEARNING_LOW_SUCCESS_RATE, ge=0.0, le=1.0)
    learning_low_success_factor: float = Field(default=C.LEARNING_LOW_SUCCESS_FACTOR, gt=0.0)
    learning_high_success_rate: float = Field(default=C.LEARNING_HIGH_SUCCESS_RATE, ge=0.0, le=1.0)
    learning_high_success_factor: float = Field(default=C.LEARNING_HIGH_SUCCESS_FACTOR, gt=0.0)
    learning_high_gas_ratio: float = Field(default=C.LEARNING_HIGH_GAS_RATIO, ge=0.0)
    learning_high_gas_factor: float = Field(default=C.LEARNING_HIGH_GAS_FACTOR, gt=0.0)
    learning_factor_min: float = Field(default=C.LEARNING_FACTOR_MIN, gt=0.0)
    learning_factor_max: float = Field(default=C.LEARNING_FACTOR_MAX, gt=0.0)

    # ============================================================================
    # EXECUTION PARAMETERS & SAFETY BANDS
    # ============================================================================

    base_slippage_bps: int = Field(default=C.BASE_SLIPPAGE_BPS, ge=0)
    base_trade_size: int = Field(default=C.BASE_TRADE_SIZE, gt=0)
    base_cooldown_sec: float = Field(default=C.BASE_COOLDOWN_SEC, ge=0.0)
    base_gas_buffer: float = Field(default=C.BASE_GAS_BUFFER, ge=1.0)

    gas_urgency_thresholds: Dict[str, float] = Field(default_factory=lambda: dict(C.GAS_URGENCY_THRESHOLDS))
    gas_urgency_fee_multipliers: Dict[str, float] = Field(
        default_factory=lambda: dict(C.GAS_URGENCY_FEE_MULTIPLIERS)
    )

    min_spread_bps: float = Field(default=C.MIN_SPREAD_BPS, ge=0.0)
    max_spread_bps: float = Field(default=C.MAX_SPREAD_BPS, ge=0.0)
    min_profit_threshold: int = Field(default=C.MIN_PROFIT_THRESHOLD, ge=0)
    max_profit_threshold: int = Field(default=C.MAX_PROFIT_THRESHOLD, ge=0)
    min_slippage_bps: int = Field(default=C.MIN_SLIPPAGE_BPS, ge=0)
    max_slippage_bps: int = Field(default=C.MAX_SLIPPAGE_BPS, ge=0)
    min_trade_size: int = Field(default=C.MIN_TRADE_SIZE, ge=0)
    max_trade_size: int = Field(default=C.MAX_TRADE_SIZE, ge=0)
    min_cooldown_sec: float = Field(default=C.MIN_COOLDOWN_SEC, ge=0.0)
    max_cooldown_sec: float = Field(default=C.MAX_COOLDOWN_SEC, ge=0.0)
    min_gas_buffer: float = Field(default=C.MIN_GAS_BUFFER, ge=1.0)
    max_gas_buffer: float = Field(default=C.MAX_GAS_BUFFER, ge=1.0)

    # ============================================================================
    # MARKET CONDITION ANALYSIS
    # ============================================================================

    volatility_window: int = Field(
        default=C.VOLATILITY_WINDOW,
        description="Fee-price samples used for volatility (minimum 2)",
        ge=2
    )
    gas_history_size: int = Field(default=C.GAS_HISTORY_SIZE, ge=2)
    congestion_window: int = Field(default=C.CONGESTION_WINDOW, ge=1)

    quiet_start_hour: int = Field(default=C.QUIET_START_HOUR, ge=0, le=24)
    quiet_end_hour: int = Field(default=C.QUIET_END_HOUR, ge=0, le=24)
    peak_start_hour: int = Field(default=C.PEAK_START_HOUR, ge=0, le=24)
    peak_end_hour: int = Field(default=C.PEAK_END_HOUR, ge=0, le=24)

    reference_liquidity: float = Field(default=C.REFERENCE_LIQUIDITY, gt=0.0)
    liquidity_proxy_floor: float = Field(default=C.LIQUIDITY_PROXY_FLOOR, gt=0.0)
    liquidity_proxy_scale: float = Field(default=C.LIQUIDITY_PROXY_SCALE, gt=0.0)
    default_volatility: float = Field(default=C.DEFAULT_VOLATILITY, ge=0.0, le=1.0)
    default_liquidity: float = Field(default=C.DEFAULT_LIQUIDITY, gt=0.0)
    default_congestion: float = Field(default=C.DEFAULT_CONGESTION, ge=0.0, le=1.0)
    default_competition: float = Field(default=C.DEFAULT_COMPETITION, ge=0.0, le=1.0)
    regime_reset_stability: float = Field(default=C.REGIME_RESET_STABILITY, ge=0.0, le=1.0)
    regime_stability_step: float = Field(default=C.REGIME_STABILITY_STEP, ge=0.0, le=1.0)

    # ============================================================================
    # RISK GATE LIMITS
    # ============================================================================

    initial_capital: int = Field(default=C.INITIAL_CAPITAL, gt=0)
    max_drawdown_pct: float = Field(default=C.MAX_DRAWDOWN_PCT, gt=0.0, le=1.0)
    max_daily_loss_pct: float = Field(default=C.MAX_DAILY_LOSS_PCT, gt=0.0, le=1.0)
    max_weekly_loss_pct: float = Field(default=C.MAX_WEEKLY_LOSS_PCT, gt=0.0, le=1.0)
    max_consecutive_failures: int = Field(default=C.MAX_CONSECUTIVE_FAILURES, ge=1)
    max_trade_gas_ratio: float = Field(
        default=C.MAX_TRADE_GAS_RATIO,
        description="Per-trade gas / expected profit limit enforced by the risk gate",
        gt=0.0
    )
    max_gas_to_capital_ratio: float = Field(default=C.MAX_GAS_TO_CAPITAL_RATIO, gt=0.0)
    min_success_rate_1h: float = Field(default=C.MIN_SUCCESS_RATE_1H, ge=0.0, le=1.0)
    min_success_rate_24h: float = Field(default=C.MIN_SUCCESS_RATE_24H, ge=0.0, le=1.0)
    min_success_rate_samples: int = Field(default=C.MIN_SUCCESS_RATE_SAMPLES, ge=1)
    resume_min_samples: int = Field(default=C.RESUME_MIN_SAMPLES, ge=1)
    min_profit_margin: float = Field(default=C.MIN_PROFIT_MARGIN, ge=0.0)
    max_single_trade_pct: float = Field(default=C.MAX_SINGLE_TRADE_PCT, gt=0.0, le=1.0)
    max_token_exposure_pct: float = Field(default=C.MAX_TOKEN_EXPOSURE_PCT, gt=0.0, le=1.0)
    max_chain_exposure_pct: float = Field(default=C.MAX_CHAIN_EXPOSURE_PCT, gt=0.0, le=1.0)
    exposure_window_sec: int = Field(default=C.EXPOSURE_WINDOW_SEC, gt=0)
    breaker_cooldown_sec: int = Field(default=C.BREAKER_COOLDOWN_SEC, ge=0)
    gas_ratio_lookback_trades: int = Field(default=C.GAS_RATIO_LOOKBACK_TRADES, ge=1)
    risk_history_days: int = Field(default=C.RISK_HISTORY_DAYS, ge=7)

    # ============================================================================
    # PERFORMANCE TRACKING
    # ============================================================================

    performance_window_sec: int = Field(default=C.PERFORMANCE_WINDOW_SEC, gt=0)
    max_history_size: int = Field(default=C.MAX_HISTORY_SIZE, ge=1)

    # ============================================================================
    # SCANNER
    # ============================================================================

    chains: List[int] = Field(default_factory=lambda: list(C.DEFAULT_CHAINS))
    venues: List[str] = Field(default_factory=lambda: list(C.DEFAULT_VENUES))
    trading_pairs: List[List[str]] = Field(default_factory=lambda: [list(p) for p in C.DEFAULT_TRADING_PAIRS])
    trading_paths: List[List[str]] = Field(
        default_factory=list,
        description="Multi-hop cycles such as [WETH, USDC, DAI, WETH]"
    )
    rpc_urls: Dict[int, str] = Field(default_factory=dict)
    quote_api_url: str = Field(default='http://localhost:8080')
    scan_interval_sec: float = Field(default=C.SCAN_INTERVAL_SEC, gt=0.0)
    chain_cycle_timeout_sec: float = Field(default=C.CHAIN_CYCLE_TIMEOUT_SEC, gt=0.0)
    quote_timeout_sec: float = Field(default=C.QUOTE_TIMEOUT_SEC, gt=0.0)
    api_timeout_sec: float = Field(default=C.API_TIMEOUT_SEC, gt=0.0)
    base_asset_decimals: int = Field(default=C.BASE_ASSET_DECIMALS, ge=0, le=36)

    # ============================================================================
    # LOGGING
    # ============================================================================

    log_level: str = Field(default=C.LOG_LEVEL)
    log_file_path: str = Field(default=C.LOG_FILE_PATH)
    structured_logging: bool = Field(default=C.STRUCTURED_LOGGING)

    # ============================================================================
    # VALIDATORS
    # ============================================================================

    @field_validator('volatility_adjustment', 'competition_adjustment')
    @classmethod
    def validate_three_level_table(cls, v):
        """Low/medium/high tables must carry every bucket with a positive factor"""
        return _check_table(v, ('low', 'medium', 'high'))

    @field_validator('liquidity_adjustment')
    @classmethod
    def validate_liquidity_table(cls, v):
        return _check_table(v, ('thin', 'normal', 'deep'))

    @field_validator('time_of_day_adjustment')
    @classmethod
    def validate_time_table(cls, v):
        return _check_table(v, ('quiet', 'active', 'peak'))

    @field_validator('gas_urgency_fee_multipliers')
    @classmethod
    def validate_fee_multipliers(cls, v):
        return _check_table(v, ('low', 'medium', 'high', 'urgent'))

    @field_validator('trading_paths')
    @classmethod
    def validate_paths(cls, v):
        for path in v:
            if len(path) < 3:
                raise ValueError(f"Trading path {path} must have more than two tokens")
        return v

    @field_validator('trading_pairs')
    @classmethod
    def validate_pairs(cls, v):
        for pair in v:
            if len(pair) != 2 or pair[0] == pair[1]:
                raise ValueError(f"Trading pair {pair} must name two distinct tokens")
        return v

    def model_post_init(self, __context):
        """Cross-field checks: every band must be ordered"""
        bands = [
            ('spread_bps', self.min_spread_bps, self.max_spread_bps),
            ('profit_threshold', self.min_profit_threshold, self.max_profit_threshold),
            ('slippage_bps', self.min_slippage_bps, self.max_slippage_bps),
            ('trade_size', self.min_trade_size, self.max_trade_size),
            ('cooldown_sec', self.min_cooldown_sec, self.max_cooldown_sec),
            ('gas_buffer', self.min_gas_buffer, self.max_gas_buffer),
            ('learning_factor', self.learning_factor_min, self.learning_factor_max),
            ('volatility_boundary', self.volatility_low_boundary, self.volatility_high_boundary),
            ('liquidity_boundary', self.liquidity_thin_boundary, self.liquidity_deep_boundary),
            ('competition_boundary', self.competition_low_boundary, self.competition_high_boundary),
        ]
        for name, lower, upper in bands:
            if lower > upper:
                raise ValueError(f"Invalid {name} band: min {lower} exceeds max {upper}")

        if not self.chains:
            raise ValueError("At least one chain must be configured")

        if self.peak_start_hour >= self.peak_end_hour:
            raise ValueError(
                f"Peak hours must be ordered: start {self.peak_start_hour} >= end {self.peak_end_hour}"
            )

    def bounds(self) -> Dict[str, tuple]:
        """Safety band for every numeric OptimizedParameters field"""
        return {
            'min_spread_bps': (self.min_spread_bps, self.max_spread_bps),
            'min_profit_threshold': (self.min_profit_threshold, self.max_profit_threshold),
            'slippage_tolerance_bps': (self.min_slippage_bps, self.max_slippage_bps),
            'max_trade_size': (self.min_trade_size, self.max_trade_size),
            'cooldown_period_sec': (self.min_cooldown_sec, self.max_cooldown_sec),
            'gas_buffer_multiplier': (self.min_gas_buffer, self.max_gas_buffer),
        }


def _check_table(table: Dict[str, float], keys) -> Dict[str, float]:
    missing = [k for k in keys if k not in table]
    if missing:
        raise ValueError(f"Adjustment table missing buckets: {missing}")
    for key, factor in table.items():
        if factor <= 0:
            raise ValueError(f"Adjustment factor for '{key}' must be positive, got {factor}")
    return table


# Singleton instance
_settings: Optional[PipelineSettings] = None


def get_settings() -> PipelineSettings:
    """
    Get singleton settings instance.

    Returns:
        PipelineSettings: Configured settings instance
    """
    global _settings
    if _settings is None:
        _settings = PipelineSettings()
    return _settings


def reload_settings() -> PipelineSettings:
    """
    Force reload settings from environment.

    Returns:
        PipelineSettings: New settings instance

    Example:
        >>> os.environ['MAX_DRAWDOWN_PCT'] = '0.03'
        >>> settings = reload_settings()
        >>> print(settings.max_drawdown_pct)
        0.03
    """
    global _settings
    _settings = PipelineSettings()
    return _settings


__all__ = ['get_settings', 'reload_settings', 'PipelineSettings']
