"""
Test Configuration Module
Provides fixtures, fakes and shared test utilities
"""

import pytest
import asyncio
import sys
import os
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), 'src'))

from config.settings import PipelineSettings
from core.models import (
    BlockUtilization,
    MarketConditions,
    MarketTrend,
    TimeOfDay,
    TradeOutcome,
)
from utils.exceptions import DataUnavailable


WEI = 10 ** 18
GWEI = 10 ** 9
START = datetime(2026, 1, 15, 10, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock"""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self.now = self.now + timedelta(seconds=seconds, **kwargs)
        return self.now


class FakeChainSource:
    """Chain sampler replaying scripted gas prices"""

    def __init__(
        self,
        gas_prices: Optional[List[int]] = None,
        block_number: int = 1000,
        gas_used: int = 15_000_000,
        gas_limit: int = 30_000_000,
        fail: bool = False,
    ):
        self.gas_prices = list(gas_prices or [GWEI])
        self.block_number = block_number
        self.gas_used = gas_used
        self.gas_limit = gas_limit
        self.fail = fail
        self.calls = 0

    async def get_block_number(self) -> int:
        if self.fail:
            raise DataUnavailable("rpc down", source='rpc:block_number')
        return self.block_number

    async def get_fee_estimate(self) -> int:
        if self.fail:
            raise DataUnavailable("rpc down", source='rpc:gas_price')
        price = self.gas_prices[min(self.calls, len(self.gas_prices) - 1)]
        self.calls += 1
        return price

    async def get_latest_block(self) -> BlockUtilization:
        if self.fail:
            raise DataUnavailable("rpc down", source='rpc:latest_block')
        return BlockUtilization(self.block_number, self.gas_used, self.gas_limit)


class FakeQuoteSource:
    """
    Venue quoter returning amount_in × rate / 1000 for every hop.

    ``rates`` maps venue → rate per mille; a missing venue has no route.
    ``errors`` maps venue → exception to raise.
    """

    def __init__(
        self,
        rates: Dict[str, int],
        errors: Optional[Dict[str, Exception]] = None,
        delay: float = 0.0,
    ):
        self.rates = rates
        self.errors = errors or {}
        self.delay = delay
        self.requests: List[tuple] = []

    async def get_quote(self, token_in: str, token_out: str, amount_in: int, venue: str) -> Optional[int]:
        self.requests.append((token_in, token_out, amount_in, venue))
        if self.delay:
            await asyncio.sleep(self.delay)
        if venue in self.errors:
            raise self.errors[venue]
        rate = self.rates.get(venue)
        if rate is None:
            return None
        return amount_in * rate // 1000


class RecordingExecutor:
    """Executor that remembers submissions and optionally reports an outcome"""

    def __init__(self, clock: FakeClock, succeed: Optional[bool] = None):
        self.clock = clock
        self.succeed = succeed
        self.submitted = []

    async def submit(self, candidate, parameters):
        self.submitted.append((candidate, parameters))
        if self.succeed is None:
            return None
        return TradeOutcome(
            candidate_id=candidate.candidate_id,
            chain_id=candidate.chain_id,
            token_path=candidate.token_path,
            trade_size=candidate.trade_size,
            success=self.succeed,
            realized_profit=candidate.gross_profit if self.succeed else 0,
            gas_used=300_000,
            gas_price=GWEI,
            latency_ms=850.0,
            timestamp=self.clock(),
        )


def make_settings(**overrides) -> PipelineSettings:
    values = dict(
        chains=[1],
        venues=['venue_a', 'venue_b'],
        trading_pairs=[['WETH', 'USDC']],
        trading_paths=[],
        initial_capital=10 * WEI,
        log_file_path='logs/test_pipeline.log',
    )
    values.update(overrides)
    return PipelineSettings(**values)


def make_outcome(
    clock: FakeClock,
    success: bool,
    realized_profit: int = 0,
    gas_used: int = 200_000,
    gas_price: int = 10 * GWEI,
    trade_size: int = WEI // 10,
    chain_id: int = 1,
    token_path=('WETH', 'USDC'),
    candidate_id: str = 'cand',
) -> TradeOutcome:
    return TradeOutcome(
        candidate_id=candidate_id,
        chain_id=chain_id,
        token_path=tuple(token_path),
        trade_size=trade_size,
        success=success,
        realized_profit=realized_profit,
        gas_used=gas_used,
        gas_price=gas_price,
        latency_ms=500.0,
        timestamp=clock(),
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def make_conditions():
    """Factory for MarketConditions with neutral defaults"""

    def _make(**overrides) -> MarketConditions:
        values = dict(
            chain_id=1,
            volatility=0.5,
            liquidity=100.0,
            network_congestion=0.5,
            competition_level=0.5,
            time_of_day=TimeOfDay.ACTIVE,
            market_trend=MarketTrend.SIDEWAYS,
            reference_gas_price=GWEI,
            sample_block=1000,
            timestamp=START,
        )
        values.update(overrides)
        return MarketConditions(**values)

    return _make
