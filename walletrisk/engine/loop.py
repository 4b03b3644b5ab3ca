"""Process runner: wires the subsystems and runs their loops.

Loops started by :class:`EngineRunner`:
  - Portfolio sync      (``sync.tick_interval_secs``)
  - Price refresh       (``pricing.refresh_interval_secs``)
  - Alert evaluation    (``alerts.tick_interval_secs``)
  - Block feeds         (one per configured websocket URL; only mark wallets dirty)
  - Config watcher      (hot-reloads tunables from the YAML file)

Each loop sleeps on the shared stop event, so shutdown never waits out a
full interval. Role refresh runs on demand only.
"""

from __future__ import annotations

import asyncio
import signal
import time
from dataclasses import dataclass
from typing import Any

from walletrisk.alerts.engine import AlertEngine
from walletrisk.alerts.notifier import AlertNotifier
from walletrisk.backtest.engine import BacktestEngine
from walletrisk.backtest.prices import PriceSeriesLoader
from walletrisk.config import AppConfig, ConfigWatcher
from walletrisk.connectors.block_feed import BlockFeed
from walletrisk.connectors.chain_rpc import JsonRpcChainClient
from walletrisk.connectors.coingecko import CoinGeckoClient
from walletrisk.connectors.rate_limiter import rate_limiter, rpc_bucket
from walletrisk.observability.logger import get_logger
from walletrisk.pricing.oracle import PriceOracle
from walletrisk.pricing.refresher import PriceRefresher
from walletrisk.roles.cache import RoleCache
from walletrisk.storage.database import Database
from walletrisk.sync.engine import PortfolioSyncEngine

log = get_logger(__name__)

_RELOADABLE_SECTIONS = ("sync", "pricing", "roles", "alerts", "backtest")


@dataclass
class Services:
    """Every long-lived component, built once per process."""
    config: AppConfig
    db: Database
    chain: JsonRpcChainClient
    market: CoinGeckoClient
    oracle: PriceOracle
    roles: RoleCache
    sync: PortfolioSyncEngine
    notifier: AlertNotifier
    alerts: AlertEngine
    refresher: PriceRefresher
    backtest_loader: PriceSeriesLoader
    backtest: BacktestEngine

    async def aclose(self) -> None:
        await self.chain.close()
        await self.market.close()
        await self.notifier.close()
        self.db.close()


def build_services(config: AppConfig) -> Services:
    db = Database(config.storage)
    db.connect()

    for chain_id in set(config.chains.rpc_urls):
        rate_limiter.configure(
            rpc_bucket(chain_id), config.chains.requests_per_second, config.chains.max_burst,
        )

    chain = JsonRpcChainClient(config.chains)
    market = CoinGeckoClient(
        base_url=config.pricing.coingecko_api_base,
        ids=config.pricing.coingecko_ids,
        timeout=config.pricing.request_timeout_secs,
    )
    oracle = PriceOracle(db, market, config.pricing)
    notifier = AlertNotifier(config.alerts)

    tracked = {t.symbol for t in config.chains.tokens}
    tracked.add(config.chains.default_native_symbol)
    tracked.update(config.chains.native_symbols.values())
    loader = PriceSeriesLoader(db, market, config.backtest)

    return Services(
        config=config,
        db=db,
        chain=chain,
        market=market,
        oracle=oracle,
        roles=RoleCache(db, chain, config.roles),
        sync=PortfolioSyncEngine(db, chain, oracle, config.sync),
        notifier=notifier,
        alerts=AlertEngine(db, config.alerts, notifier),
        refresher=PriceRefresher(db, oracle, config.pricing, extra_symbols=tracked),
        backtest_loader=loader,
        backtest=BacktestEngine(db, loader, config.backtest),
    )


def apply_reload(current: AppConfig, new: AppConfig) -> None:
    """Copy tunables from a reloaded config into the live section objects.

    Components hold references to their sections, so intervals,
    thresholds and TTLs take effect on the next tick. Storage and
    endpoints are not reloaded.
    """
    for section in _RELOADABLE_SECTIONS:
        target = getattr(current, section)
        source = getattr(new, section)
        for name in type(source).model_fields:
            setattr(target, name, getattr(source, name))
    log.info("engine.config_reloaded", sections=list(_RELOADABLE_SECTIONS))


class EngineRunner:
    """Runs every background loop until stopped or signalled."""

    def __init__(
        self,
        services: Services,
        watcher: ConfigWatcher | None = None,
        watch_interval_secs: float = 30.0,
    ):
        self.services = services
        self._config = services.config
        self._watcher = watcher
        self._watch_interval = watch_interval_secs
        self._stop_event = asyncio.Event()
        self._tasks: list[asyncio.Task[None]] = []
        self._feeds: list[BlockFeed] = []
        self._started_at: float = 0.0
        if watcher is not None:
            watcher.on_change(lambda new: apply_reload(self._config, new))

    @property
    def is_running(self) -> bool:
        return bool(self._tasks) and not self._stop_event.is_set()

    async def start(self) -> None:
        """Start all loops and block until :meth:`stop` is called."""
        self._started_at = time.time()
        engine_cfg = self._config.engine
        log.info(
            "engine.starting",
            sync=engine_cfg.run_sync,
            price_refresh=engine_cfg.run_price_refresh,
            alerts=engine_cfg.run_alerts,
        )

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._handle_signal, sig)
            except (NotImplementedError, RuntimeError):
                pass  # Windows or non-main thread

        if engine_cfg.run_sync and self._config.sync.enabled:
            await self.services.sync.start()
            if self._config.sync.ws_trigger_enabled:
                for chain_id, url in self._config.chains.ws_urls.items():
                    feed = BlockFeed(chain_id, url)
                    feed.on_head(self.services.sync.on_new_head)
                    self._feeds.append(feed)
                    self._tasks.append(asyncio.create_task(feed.start()))
        if engine_cfg.run_price_refresh:
            self._tasks.append(asyncio.create_task(self.services.refresher.run(self._stop_event)))
        if engine_cfg.run_alerts and self._config.alerts.enabled:
            self._tasks.append(asyncio.create_task(self.services.alerts.run(self._stop_event)))
        if self._watcher is not None:
            self._tasks.append(asyncio.create_task(self._watch_config()))

        await self._stop_event.wait()
        await self._shutdown()

    def stop(self) -> None:
        log.info("engine.stop_requested")
        self._stop_event.set()

    def _handle_signal(self, sig: signal.Signals) -> None:
        log.info("engine.signal_received", signal=sig.name)
        self.stop()

    async def _watch_config(self) -> None:
        assert self._watcher is not None
        while not self._stop_event.is_set():
            self._watcher.check_and_reload()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._watch_interval)
            except asyncio.TimeoutError:
                pass

    async def _shutdown(self) -> None:
        for feed in self._feeds:
            await feed.stop()
        await self.services.sync.stop()

        grace = self._config.sync.shutdown_grace_secs
        if self._tasks:
            done, pending = await asyncio.wait(self._tasks, timeout=grace)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        self._tasks.clear()
        log.info("engine.stopped", uptime_secs=round(time.time() - self._started_at, 1))

    def get_status(self) -> dict[str, Any]:
        return {
            "running": self.is_running,
            "loops": len(self._tasks),
            "block_feeds": {f.chain_id: f.last_block for f in self._feeds},
            "dirty_wallets": len(self.services.sync.dirty),
            "rate_limits": rate_limiter.stats(),
        }
