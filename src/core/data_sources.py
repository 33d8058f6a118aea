"""
Inbound Data Sources

Interfaces the pipeline uses to sample chains and quote venues, plus the
production adapters:

- ``Web3ChainDataSource``: block number, fee estimate and latest-block
  utilization over an async web3 JSON-RPC provider
- ``HttpQuoteSource``: venue quotes from an aggregator-style REST endpoint
  over a pooled aiohttp session

Every adapter call is individually fallible. Transport failures surface as
``DataUnavailable`` so the scanner can degrade that single source; a venue
that simply has no route returns ``None``.

Chain-specific gas conventions are a table lookup keyed by chain id
(``chain_profile``), not a class per chain.
"""

import asyncio
from dataclasses import dataclass
from typing import Dict, Optional, Protocol, runtime_checkable

import aiohttp
from web3 import AsyncWeb3, AsyncHTTPProvider

from config.constants import CHAIN_GAS_PROFILES, DEFAULT_CHAIN_ID, API_TIMEOUT_SEC
from core.models import BlockUtilization
from utils.logger import get_logger
from utils.exceptions import DataUnavailable


logger = get_logger(__name__)


# ============================================================================
# CHAIN GAS PROFILES
# ============================================================================

@dataclass(frozen=True)
class ChainGasProfile:
    chain_id: int
    name: str
    gas_units_per_swap: int
    fee_multiplier: float
    fallback_gas_price: int

    def swap_gas_units(self, hops: int) -> int:
        return self.gas_units_per_swap * max(1, hops)


def chain_profile(chain_id: int) -> ChainGasProfile:
    """Gas profile for ``chain_id``; unknown chains use the default chain's profile"""
    entry = CHAIN_GAS_PROFILES.get(chain_id)
    if entry is None:
        entry = CHAIN_GAS_PROFILES[DEFAULT_CHAIN_ID]
    return ChainGasProfile(chain_id=chain_id, **entry)


# ============================================================================
# INTERFACES
# ============================================================================

@runtime_checkable
class ChainDataSource(Protocol):
    """Per-chain network sampler"""

    async def get_block_number(self) -> int:
        ...

    async def get_fee_estimate(self) -> int:
        ...

    async def get_latest_block(self) -> BlockUtilization:
        ...


@runtime_checkable
class QuoteSource(Protocol):
    """Venue quoter; returns None when the venue cannot quote the hop"""

    async def get_quote(
        self,
        token_in: str,
        token_out: str,
        amount_in: int,
        venue: str
    ) -> Optional[int]:
        ...


# ============================================================================
# WEB3 ADAPTER
# ============================================================================

class Web3ChainDataSource:
    """
    Chain sampler backed by an async web3 HTTP provider.

    Args:
        chain_id: Chain the RPC endpoint serves
        rpc_url: JSON-RPC endpoint
        request_timeout: Per-request timeout in seconds
    """

    def __init__(self, chain_id: int, rpc_url: str, request_timeout: float = API_TIMEOUT_SEC):
        self.chain_id = chain_id
        self.rpc_url = rpc_url
        self._w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url, request_kwargs={'timeout': request_timeout}))

    async def get_block_number(self) -> int:
        try:
            return int(await self._w3.eth.block_number)
        except Exception as e:
            raise self._unavailable('block_number', e) from e

    async def get_fee_estimate(self) -> int:
        try:
            return int(await self._w3.eth.gas_price)
        except Exception as e:
            raise self._unavailable('gas_price', e) from e

    async def get_latest_block(self) -> BlockUtilization:
        try:
            block = await self._w3.eth.get_block('latest')
        except Exception as e:
            raise self._unavailable('latest_block', e) from e

        return BlockUtilization(
            number=int(block['number']),
            gas_used=int(block['gasUsed']),
            gas_limit=int(block['gasLimit']),
            timestamp=int(block.get('timestamp', 0)),
        )

    def _unavailable(self, call: str, error: Exception) -> DataUnavailable:
        return DataUnavailable(
            f"RPC call {call} failed on chain {self.chain_id}: {error}",
            source=f"rpc:{call}",
            chain_id=self.chain_id,
            original_error=error,
        )


# ============================================================================
# HTTP QUOTE ADAPTER
# ============================================================================

class HttpQuoteSource:
    """
    Venue quotes from a REST endpoint.

    ``GET {base_url}/quote?chainId=..&tokenIn=..&tokenOut=..&amount=..&venue=..``
    answering ``{"amountOut": "<integer string>"}``. HTTP 404 and an empty
    ``amountOut`` mean the venue has no route.

    Call ``start()`` before use and ``close()`` on shutdown; the session is
    pooled and shared by every concurrent quote request.
    """

    def __init__(self, chain_id: int, base_url: str, timeout: float = API_TIMEOUT_SEC):
        self.chain_id = chain_id
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def start(self) -> None:
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(
                limit=100,
                limit_per_host=30,
                ttl_dns_cache=300,
                enable_cleanup_closed=True
            )
            self._session = aiohttp.ClientSession(
                connector=connector,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={"Accept": "application/json"}
            )

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
            logger.info("Closed quote session", extra={'chain_id': self.chain_id})

    async def get_quote(
        self,
        token_in: str,
        token_out: str,
        amount_in: int,
        venue: str
    ) -> Optional[int]:
        if self._session is None or self._session.closed:
            await self.start()

        params: Dict[str, str] = {
            'chainId': str(self.chain_id),
            'tokenIn': token_in,
            'tokenOut': token_out,
            'amount': str(amount_in),
            'venue': venue,
        }

        try:
            async with self._session.get(f"{self.base_url}/quote", params=params) as response:
                if response.status == 404:
                    return None
                response.raise_for_status()
                data = await response.json()
        except aiohttp.ClientResponseError as e:
            raise DataUnavailable(
                f"Quote request to {venue} failed: HTTP {e.status}",
                source=f"quote:{venue}",
                chain_id=self.chain_id,
                original_error=e,
            ) from e
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise DataUnavailable(
                f"Quote request to {venue} failed: {e}",
                source=f"quote:{venue}",
                chain_id=self.chain_id,
                original_error=e,
            ) from e

        amount_out = data.get('amountOut') if isinstance(data, dict) else None
        if amount_out in (None, '', '0', 0):
            return None
        return int(amount_out)
