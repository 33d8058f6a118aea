"""
Main Entry Point for the Adaptive Arbitrage Pipeline

Wires settings, chain samplers, quote sources and the decision core into a
long-running scan loop. Trade execution is out of scope for this process:
approved candidates go to a dry-run executor that only logs them.

Run with: arb-pipeline   (or: python src/main.py)
"""

import os
import sys
import signal
import asyncio
from typing import Dict, Optional

# Add src to path for imports
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from config.settings import PipelineSettings, get_settings
from core.data_sources import HttpQuoteSource, Web3ChainDataSource
from core.market_analyzer import MarketConditionAnalyzer
from core.models import CandidateOpportunity, OptimizedParameters, TradeOutcome
from core.parameter_optimizer import ParameterOptimizer
from core.performance_tracker import PerformanceTracker
from core.risk_gate import RiskGate
from strategies.opportunity_scanner import OpportunityScanner
from utils.exceptions import ConfigurationError, PipelineError
from utils.logger import get_logger, log_trade_event, setup_logging


logger = get_logger(__name__)


class DryRunExecutor:
    """Logs approved candidates instead of executing them"""

    async def submit(
        self,
        candidate: CandidateOpportunity,
        parameters: OptimizedParameters
    ) -> Optional[TradeOutcome]:
        log_trade_event(
            logger, 'DRY_RUN_DISPATCH',
            candidate_id=candidate.candidate_id,
            venues=list(candidate.venues),
            trade_size=candidate.trade_size,
            net_profit=candidate.net_profit,
            slippage_bps=parameters.slippage_tolerance_bps,
            max_fee_per_gas=parameters.max_fee_per_gas,
        )
        return None


class PipelineHost:
    """Owns the collaborators and the scan loop lifecycle"""

    def __init__(self, settings: Optional[PipelineSettings] = None):
        self.settings = settings or get_settings()
        self._stop_event = asyncio.Event()
        self._quote_sources: Dict[int, HttpQuoteSource] = {}
        self.scanner: Optional[OpportunityScanner] = None

    def build(self) -> OpportunityScanner:
        s = self.settings
        missing = [chain_id for chain_id in s.chains if chain_id not in s.rpc_urls]
        if missing:
            raise ConfigurationError(
                "RPC URL missing for configured chains",
                error_code='MISSING_RPC_URL',
                details={'chains': missing}
            )

        chain_sources = {
            chain_id: Web3ChainDataSource(chain_id, s.rpc_urls[chain_id], s.api_timeout_sec)
            for chain_id in s.chains
        }
        self._quote_sources = {
            chain_id: HttpQuoteSource(chain_id, s.quote_api_url, s.api_timeout_sec)
            for chain_id in s.chains
        }

        self.scanner = OpportunityScanner(
            analyzer=MarketConditionAnalyzer(chain_sources, settings=s),
            optimizer=ParameterOptimizer(settings=s),
            risk_gate=RiskGate(settings=s),
            tracker=PerformanceTracker(settings=s),
            quote_sources=self._quote_sources,
            executor=DryRunExecutor(),
            settings=s,
        )
        return self.scanner

    def stop(self) -> None:
        logger.info("Shutdown requested")
        self._stop_event.set()

    async def run(self) -> None:
        scanner = self.scanner or self.build()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.stop)
            except NotImplementedError:
                # Signal handlers are unavailable on some platforms (Windows)
                pass

        for source in self._quote_sources.values():
            await source.start()
        try:
            await scanner.run(self._stop_event)
        finally:
            for source in self._quote_sources.values():
                await source.close()
            report = scanner.risk_gate.risk_report()
            logger.info(f"Final risk health score: {report['health_score']:.0f}/100")


async def run_pipeline() -> None:
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_file_path, settings.structured_logging)
    logger.info("Starting adaptive arbitrage pipeline...")
    await PipelineHost(settings).run()


def main() -> None:
    """Console entry point"""
    try:
        asyncio.run(run_pipeline())
    except KeyboardInterrupt:
        logger.info("Pipeline stopped by user")
    except PipelineError as e:
        logger.error(f"Pipeline error: {e}")
        sys.exit(1)
    except Exception as e:
        logger.critical(f"Unexpected error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
