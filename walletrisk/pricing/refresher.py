"""Background price refresh loop.

Keeps the price cache warm for every symbol held in a latest snapshot,
named by a strategy, or configured as a token or native asset.
"""

from __future__ import annotations

import asyncio
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Iterable

from walletrisk.config import PricingConfig
from walletrisk.errors import WalletRiskError
from walletrisk.observability.logger import get_logger, log_context
from walletrisk.pricing.oracle import PriceOracle
from walletrisk.storage.database import Database

log = get_logger(__name__)


@dataclass
class RefreshReport:
    refreshed: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"refreshed": self.refreshed, "failed": self.failed}


class PriceRefresher:
    def __init__(
        self,
        db: Database,
        oracle: PriceOracle,
        config: PricingConfig,
        extra_symbols: Iterable[str] = (),
    ):
        self._db = db
        self._oracle = oracle
        self._config = config
        self._extra = {s.upper() for s in extra_symbols}

    def symbols(self) -> list[str]:
        return sorted(self._db.referenced_symbols() | self._extra)

    async def refresh_once(self) -> RefreshReport:
        report = RefreshReport()
        for symbol in self.symbols():
            with log_context(symbol=symbol):
                try:
                    await self._oracle.refresh(symbol)
                    report.refreshed.append(symbol)
                except WalletRiskError as e:
                    report.failed[symbol] = str(e)
                    log.warning("price_refresh.symbol_failed", error=str(e))
        log.info(
            "price_refresh.pass_complete",
            refreshed=len(report.refreshed),
            failed=len(report.failed),
        )
        return report

    async def run(self, stop_event: asyncio.Event) -> None:
        interval = self._config.refresh_interval_secs
        log.info("price_refresh.started", interval_secs=interval)
        while not stop_event.is_set():
            try:
                await self.refresh_once()
            except (sqlite3.Error, WalletRiskError) as e:
                log.error("price_refresh.pass_failed", error=str(e))
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        log.info("price_refresh.stopped")
