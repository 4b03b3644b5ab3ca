"""Price series assembly for backtests.

Stored history is used when it covers the requested range. Otherwise the
market data provider's chart is fetched and persisted. When neither is
available a deterministic synthetic series is returned, flagged as such.
"""

from __future__ import annotations

import random
import time
import zlib
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable

from walletrisk.config import BacktestConfig
from walletrisk.connectors.coingecko import MarketDataProvider
from walletrisk.errors import DataInvalidError, TransientError
from walletrisk.observability.logger import get_logger
from walletrisk.storage.database import Database
from walletrisk.storage.models import PriceHistoryRecord

log = get_logger(__name__)

SECONDS_PER_DAY = 86400.0

SYNTHETIC_START = 100.0
SYNTHETIC_DRIFT = 0.0015
SYNTHETIC_NOISE = 0.01


@dataclass
class PriceSeries:
    symbol: str
    points: list[tuple[float, float]] = field(default_factory=list)
    source: str = "history"  # history | market | synthetic | supplied

    @property
    def synthetic(self) -> bool:
        return self.source == "synthetic"


def synthetic_prices(
    days: int,
    end_ts: float,
    seed: int = 42,
    min_points: int = 7,
) -> list[tuple[float, float]]:
    """Daily random walk with a small positive drift, ending at ``end_ts``."""
    n = max(days + 1, min_points)
    rng = random.Random(seed)
    price = SYNTHETIC_START
    points: list[tuple[float, float]] = []
    for i in range(n):
        ts = end_ts - (n - 1 - i) * SECONDS_PER_DAY
        if i > 0:
            price *= 1 + SYNTHETIC_DRIFT + rng.uniform(-SYNTHETIC_NOISE, SYNTHETIC_NOISE)
        points.append((ts, round(price, 8)))
    return points


def covers(points: list[tuple[float, float]], start: float, end: float) -> bool:
    """True if the series spans the range to within one day at each end."""
    if len(points) < 2:
        return False
    return points[0][0] <= start + SECONDS_PER_DAY and points[-1][0] >= end - SECONDS_PER_DAY


class PriceSeriesLoader:
    def __init__(
        self,
        db: Database,
        provider: MarketDataProvider | None,
        config: BacktestConfig,
        clock: Callable[[], float] = time.time,
    ):
        self._db = db
        self._provider = provider
        self._config = config
        self._clock = clock

    async def load(self, symbol: str, days: int) -> PriceSeries:
        symbol = symbol.upper()
        days = max(1, days)
        end = self._clock()
        start = end - days * SECONDS_PER_DAY

        stored = [(p.price_ts, float(p.price)) for p in self._db.price_range(symbol, start, end)]
        if covers(stored, start, end):
            return PriceSeries(symbol, stored, "history")

        if self._provider is not None:
            try:
                chart = await self._provider.get_market_chart(symbol, days)
            except (TransientError, DataInvalidError) as e:
                log.warning("backtest.market_chart_failed", symbol=symbol, error=str(e))
            else:
                if len(chart) >= 2:
                    self._persist(symbol, chart)
                    return PriceSeries(symbol, [(ts, float(p)) for ts, p in chart], "market")

        seed = self._config.synthetic_seed ^ zlib.crc32(symbol.encode())
        log.warning("backtest.synthetic_prices", symbol=symbol, days=days)
        return PriceSeries(
            symbol,
            synthetic_prices(days, end, seed=seed, min_points=self._config.synthetic_min_points),
            "synthetic",
        )

    async def warm(self, symbol: str, days: int) -> int:
        """Fetch the provider chart into price history. Returns rows inserted."""
        if self._provider is None:
            return 0
        symbol = symbol.upper()
        chart = await self._provider.get_market_chart(symbol, max(1, days))
        return self._persist(symbol, chart)

    def _persist(self, symbol: str, chart: list[tuple[float, Decimal]]) -> int:
        inserted = self._db.insert_price_points([
            PriceHistoryRecord(symbol=symbol, chain_id=0, price_ts=ts, price=price, source="coingecko_chart")
            for ts, price in chart
        ])
        log.info("backtest.history_persisted", symbol=symbol, points=len(chart), inserted=inserted)
        return inserted
