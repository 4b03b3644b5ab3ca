"""Price oracle: tiered USD price resolution.

Tier order for ``get_price``:
  1. live cache entry                          → source ``cache``
  2. recent price history point                → source ``history``
  3. market data provider (writes cache and
     a throttled history point)                → source ``market``
  4. configured static price                   → source ``static`` (degraded)
  5. expired cache entry                       → source ``stale`` (degraded)
  6. PriceUnavailableError

Concurrent misses for one symbol share a single provider call.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from walletrisk.config import PricingConfig
from walletrisk.connectors.coingecko import MarketDataProvider
from walletrisk.errors import DataInvalidError, PriceUnavailableError, TransientError
from walletrisk.observability.logger import get_logger
from walletrisk.storage.database import Database
from walletrisk.storage.models import PriceCacheRecord, PriceHistoryRecord

log = get_logger(__name__)

T = TypeVar("T")


class PriceSource(str, Enum):
    CACHE = "cache"
    HISTORY = "history"
    MARKET = "market"
    STATIC = "static"
    STALE = "stale"


@dataclass
class PriceQuote:
    symbol: str
    price: Decimal
    source: PriceSource
    fetched_at: float

    @property
    def degraded(self) -> bool:
        return self.source in (PriceSource.STATIC, PriceSource.STALE)

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "price": str(self.price),
            "source": self.source.value,
            "fetched_at": self.fetched_at,
            "degraded": self.degraded,
        }


class SingleFlight:
    """Coalesce concurrent calls for the same key into one execution.

    The first caller for a key starts the work as a task; later callers
    await that same task until it finishes, then the key is released.
    Every caller sees the same result or the same exception. Callers are
    shielded, so cancelling one waiter does not cancel the shared work.
    """

    def __init__(self) -> None:
        self._inflight: dict[str, asyncio.Task[Any]] = {}

    def in_flight(self, key: str) -> bool:
        return key in self._inflight

    async def do(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(fn())
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._release(k, t))
        return await asyncio.shield(task)

    def _release(self, key: str, task: asyncio.Task[Any]) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]


class PriceOracle:
    """Resolves USD prices through cache, history, provider and fallbacks."""

    def __init__(
        self,
        db: Database,
        provider: MarketDataProvider | None,
        config: PricingConfig,
        clock: Callable[[], float] = time.time,
    ):
        self._db = db
        self._provider = provider
        self._config = config
        self._clock = clock
        self._flight = SingleFlight()
        self.provider_calls = 0

    async def get_price(self, symbol: str, chain_id: int = 0) -> PriceQuote:
        symbol = symbol.upper()
        now = self._clock()

        cached = self._db.get_price_cache(symbol)
        if cached is not None and cached.is_live(now):
            return PriceQuote(symbol, cached.price, PriceSource.CACHE, cached.fetched_at)

        point = self._db.latest_price_point(symbol, chain_id or None)
        if point is not None and now - point.price_ts <= self._config.history_staleness_secs:
            return PriceQuote(symbol, point.price, PriceSource.HISTORY, point.price_ts)

        if self._provider is not None:
            try:
                return await self._flight.do(symbol, lambda: self._fetch_market(symbol))
            except (TransientError, DataInvalidError) as e:
                log.warning("oracle.market_failed", symbol=symbol, error=str(e))

        static = self._config.static_prices.get(symbol)
        if static is not None and static > 0:
            log.warning("oracle.degraded", symbol=symbol, source="static")
            return PriceQuote(symbol, Decimal(str(static)), PriceSource.STATIC, now)

        if cached is not None:
            log.warning("oracle.degraded", symbol=symbol, source="stale", age=now - cached.fetched_at)
            return PriceQuote(symbol, cached.price, PriceSource.STALE, cached.fetched_at)

        raise PriceUnavailableError(symbol)

    async def refresh(self, symbol: str) -> PriceQuote:
        """Force a provider fetch, skipping cache and history. Errors propagate."""
        symbol = symbol.upper()
        if self._provider is None:
            raise PriceUnavailableError(symbol)
        return await self._flight.do(symbol, lambda: self._fetch_market(symbol))

    async def _fetch_market(self, symbol: str) -> PriceQuote:
        assert self._provider is not None
        self.provider_calls += 1
        price = await self._provider.get_price(symbol)
        if price <= 0:
            raise DataInvalidError(f"non-positive price for {symbol}: {price}")

        now = self._clock()
        self._db.upsert_price_cache(PriceCacheRecord(
            symbol=symbol,
            price=price,
            fetched_at=now,
            expires_at=now + self._config.price_cache_ttl_secs,
            source="coingecko",
        ))
        self._maybe_record_history(symbol, price, now)
        log.info("oracle.market_price", symbol=symbol, price=str(price))
        return PriceQuote(symbol, price, PriceSource.MARKET, now)

    def _maybe_record_history(self, symbol: str, price: Decimal, now: float) -> None:
        last = self._db.latest_price_point(symbol)
        if last is not None and now - last.price_ts < self._config.history_min_interval_secs:
            return
        self._db.insert_price_points([
            PriceHistoryRecord(symbol=symbol, chain_id=0, price_ts=now, price=price, source="coingecko"),
        ])
