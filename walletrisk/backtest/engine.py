"""Backtest engine: runs a stored strategy and persists the result.

Missing price data never fails a run: the loader substitutes a synthetic
series and the result is marked ``synthetic``.
"""

from __future__ import annotations

import time
from typing import Any, Callable, Sequence

from walletrisk.backtest.prices import SECONDS_PER_DAY, PriceSeries, PriceSeriesLoader
from walletrisk.backtest.strategies import run_strategy
from walletrisk.config import BacktestConfig
from walletrisk.errors import NotFoundError
from walletrisk.observability.logger import get_logger, log_context
from walletrisk.storage.database import Database
from walletrisk.storage.models import BacktestResultRecord

log = get_logger(__name__)

PriceInput = Sequence[float] | Sequence[tuple[float, float]]


def normalize_prices(prices: PriceInput, end_ts: float) -> list[tuple[float, float]]:
    """Accept bare prices (daily, ending at ``end_ts``) or ``(ts, price)`` pairs."""
    out: list[tuple[float, float]] = []
    n = len(prices)
    for i, item in enumerate(prices):
        if isinstance(item, (tuple, list)):
            out.append((float(item[0]), float(item[1])))
        else:
            out.append((end_ts - (n - 1 - i) * SECONDS_PER_DAY, float(item)))
    out.sort(key=lambda p: p[0])
    return out


class BacktestEngine:
    def __init__(
        self,
        db: Database,
        loader: PriceSeriesLoader,
        config: BacktestConfig,
        clock: Callable[[], float] = time.time,
    ):
        self._db = db
        self._loader = loader
        self._config = config
        self._clock = clock

    async def _series(self, symbol: str, days: int, prices: PriceInput | None) -> PriceSeries:
        if prices is not None:
            points = normalize_prices(prices, self._clock())
            if len(points) >= 2:
                return PriceSeries(symbol.upper(), points, "supplied")
            log.warning("backtest.supplied_prices_insufficient", points=len(points))
        return await self._loader.load(symbol, days)

    async def run(
        self,
        strategy_id: str,
        prices: PriceInput | None = None,
        symbol: str | None = None,
        days: int | None = None,
        other_prices: PriceInput | None = None,
    ) -> BacktestResultRecord:
        strategy = self._db.get_strategy(strategy_id)
        if strategy is None:
            raise NotFoundError(f"strategy {strategy_id} not found")

        params = strategy.params
        symbol = symbol or params.get("symbol") or self._config.default_symbol
        days = int(days or params.get("days") or self._config.default_days)
        started = self._clock()

        with log_context(strategy_id=strategy_id, symbol=symbol):
            series = await self._series(symbol, days, prices)
            other: PriceSeries | None = None
            if strategy.kind == "correlation" and (other_prices is not None or params.get("other_symbol")):
                other = await self._series(params.get("other_symbol") or symbol, days, other_prices)

            result = run_strategy(strategy.kind, params, series.points, other.points if other else None)
            synthetic = series.synthetic or (other is not None and other.synthetic)
            metrics: dict[str, Any] = {
                **result.metrics,
                "symbol": series.symbol,
                "points": len(series.points),
                "price_source": series.source,
            }
            record = BacktestResultRecord(
                strategy_id=strategy_id,
                equity_curve=result.equity_curve,
                metrics=metrics,
                synthetic=synthetic,
                started_at=started,
                completed_at=self._clock(),
            )
            self._db.insert_backtest_result(record)
            log.info(
                "backtest.completed",
                kind=strategy.kind,
                points=len(series.points),
                synthetic=synthetic,
                total_return=round(float(metrics.get("total_return", 0.0)), 6),
            )
        return record
