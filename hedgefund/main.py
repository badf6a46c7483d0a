"""HedgeFund — autonomous decision-cycle trading agent.

Main entry point. Wires all components and runs the orchestrator until it
stops or halts.

Startup: load config -> logging -> market feed -> wallet -> advisor -> strategies -> scheduler -> orchestrator
Shutdown: stop orchestrator -> stop scheduler -> close market feed
"""

from __future__ import annotations

import asyncio
import signal

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from prometheus_client import start_http_server

from hedgefund.market.data_feed import KrakenMarketData, SimulatedMarketData
from hedgefund.orchestrator.advisor import AIAdvisor, HeuristicAdvisor
from hedgefund.orchestrator.ai_client import AIClient
from hedgefund.orchestrator.orchestrator import Orchestrator
from hedgefund.shell.config import Config, load_config
from hedgefund.shell.contract import AdvisoryPort
from hedgefund.shell.metrics import ObservabilitySink, PrometheusSink
from hedgefund.shell.portfolio import PaperWallet, TradeLedger
from hedgefund.strategies.registry import build_strategies
from hedgefund.utils.logging import setup_logging

log = structlog.get_logger()


class HedgeFundApp:
    """Main application — owns the orchestrator and its housekeeping jobs."""

    def __init__(self, config: Config | None = None) -> None:
        self._config = config
        self._market: SimulatedMarketData | KrakenMarketData | None = None
        self._wallet: PaperWallet | None = None
        self._ledger: TradeLedger | None = None
        self._ai: AIClient | None = None
        self._observer: ObservabilitySink | None = None
        self._orchestrator: Orchestrator | None = None
        self._scheduler: AsyncIOScheduler | None = None

    @property
    def orchestrator(self) -> Orchestrator | None:
        return self._orchestrator

    @property
    def ledger(self) -> TradeLedger | None:
        return self._ledger

    def build(self) -> Orchestrator:
        """Construct every collaborator from config. No I/O."""
        if self._config is None:
            self._config = load_config()
        config = self._config

        if config.market.source == "kraken":
            self._market = KrakenMarketData(config.market.symbols, rest_url=config.market.rest_url)
        else:
            self._market = SimulatedMarketData(
                config.market.symbols, seed=config.market.seed, venues=config.market.venues,
            )

        self._wallet = PaperWallet(
            starting_cash=config.wallet.paper_balance_usd,
            fee_pct=config.wallet.fee_pct,
            price_lookup=self._market.last_price,
            address=config.wallet.address,
        )
        self._ledger = TradeLedger()
        self._observer = PrometheusSink() if config.monitoring.prometheus_enabled else ObservabilitySink()

        self._orchestrator = Orchestrator(
            agent_id=config.agent_id,
            risk_profile=config.risk.to_profile(),
            wallet=self._wallet,
            market_data=self._market,
            advisory=self._build_advisor(),
            metrics_sink=self._ledger,
            strategies=build_strategies(config.strategies.enabled, self._wallet),
            config=config.orchestrator,
            observer=self._observer,
        )
        return self._orchestrator

    def _build_advisor(self) -> AdvisoryPort:
        if self._config.ai.provider == "anthropic":
            self._ai = AIClient(self._config.ai)
            self._ai.initialize()
            return AIAdvisor(self._ai)
        return HeuristicAdvisor()

    async def start(self) -> None:
        """Full startup sequence. Returns once the orchestrator stops or halts."""
        if self._config is None:
            self._config = load_config()
        setup_logging(self._config.log_level)
        log.info("app.starting", agent=self._config.agent_id, market=self._config.market.source,
                 advisor=self._config.ai.provider, strategies=self._config.strategies.enabled)

        orchestrator = self.build()

        if isinstance(self._observer, PrometheusSink) and self._config.monitoring.metrics_port:
            start_http_server(self._config.monitoring.metrics_port, registry=self._observer.registry)
            log.info("metrics.serving", port=self._config.monitoring.metrics_port)

        self._scheduler = AsyncIOScheduler(timezone=self._config.timezone)
        self._setup_jobs()
        self._scheduler.start()

        await orchestrator.start()
        await orchestrator.wait_closed()
        log.info("app.orchestrator_closed", state=orchestrator.state.value)

    def _setup_jobs(self) -> None:
        self._scheduler.add_job(
            self._heartbeat, IntervalTrigger(minutes=self._config.monitoring.heartbeat_minutes),
            id="heartbeat", name="Status heartbeat",
        )
        self._scheduler.add_job(
            self._daily_snapshot, CronTrigger(hour=23, minute=59),
            id="daily_snapshot", name="Daily performance snapshot",
        )
        log.info("scheduler.configured", heartbeat_minutes=self._config.monitoring.heartbeat_minutes)

    async def _heartbeat(self) -> None:
        if self._orchestrator is None:
            return
        status = self._orchestrator.status()
        log.info("heartbeat", state=status.state.value,
                 failures=status.consecutive_failures,
                 next_cycle_ms=status.next_cycle_delay_ms,
                 allocation={k: round(v, 3) for k, v in status.current_allocation.items()})

    async def _daily_snapshot(self) -> None:
        if self._orchestrator is None or self._wallet is None:
            return
        info = await self._wallet.get_info()
        metrics = self._orchestrator.status().performance_metrics
        log.info("daily_snapshot", portfolio=f"${info.total_value_usd:.2f}",
                 total_return=f"{metrics.total_return:.2%}", sharpe=round(metrics.sharpe_ratio, 3),
                 max_drawdown=f"{metrics.max_drawdown:.2%}", fees=round(self._wallet.fees_paid, 2),
                 trades=self._ledger.summary() if self._ledger else {})
        if self._ai is not None:
            log.info("ai.daily_usage", **self._ai.get_daily_usage())

    async def stop(self) -> None:
        """Graceful shutdown sequence."""
        log.info("app.stopping")

        if self._orchestrator is not None:
            await self._orchestrator.stop()

        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)

        if isinstance(self._market, KrakenMarketData):
            await self._market.close()

        log.info("app.stopped")


async def main() -> None:
    app = HedgeFundApp()

    # Handle SIGTERM/SIGINT for graceful shutdown
    loop = asyncio.get_running_loop()
    _stop_task = None

    def signal_handler():
        nonlocal _stop_task
        if _stop_task is None:
            _stop_task = asyncio.create_task(app.stop())

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
    finally:
        if _stop_task is not None:
            await _stop_task
        else:
            await app.stop()


def run() -> None:
    """Entry point for pyproject.toml script."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
