"""CoinGecko market data connector.

Spot prices come from ``/simple/price``; historical series from
``/coins/{id}/market_chart``. Symbols map to CoinGecko coin ids through a
built-in table that configuration can override.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any, Protocol

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from walletrisk.connectors.rate_limiter import rate_limiter
from walletrisk.errors import DataInvalidError, TransientError
from walletrisk.observability.logger import get_logger

log = get_logger(__name__)

COINGECKO_BASE = "https://api.coingecko.com/api/v3"

DEFAULT_IDS: dict[str, str] = {
    "ETH": "ethereum",
    "WETH": "ethereum",
    "BTC": "bitcoin",
    "WBTC": "wrapped-bitcoin",
    "USDC": "usd-coin",
    "USDT": "tether",
    "DAI": "dai",
    "BNB": "binancecoin",
}


class MarketDataProvider(Protocol):
    async def get_price(self, symbol: str) -> Decimal: ...

    async def get_market_chart(self, symbol: str, days: int) -> list[tuple[float, Decimal]]: ...


def parse_price(value: Any, symbol: str) -> Decimal:
    """Validate a provider price; zero, negative and non-numeric values are rejected."""
    if isinstance(value, bool) or value is None:
        raise DataInvalidError(f"no numeric price for {symbol}: {value!r}")
    try:
        price = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise DataInvalidError(f"non-numeric price for {symbol}: {value!r}") from e
    if not price.is_finite() or price <= 0:
        raise DataInvalidError(f"non-positive price for {symbol}: {value!r}")
    return price


class CoinGeckoClient:
    """Async client for the CoinGecko public API."""

    def __init__(
        self,
        base_url: str = COINGECKO_BASE,
        ids: dict[str, str] | None = None,
        timeout: float = 15.0,
    ):
        self._base = base_url.rstrip("/")
        self._ids = {**DEFAULT_IDS, **{k.upper(): v for k, v in (ids or {}).items()}}
        self._client = httpx.AsyncClient(
            base_url=self._base,
            timeout=timeout,
            headers={"Accept": "application/json"},
        )

    async def close(self) -> None:
        await self._client.aclose()

    def coin_id(self, symbol: str) -> str:
        upper = symbol.upper()
        return self._ids.get(upper, upper.lower())

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=1, max=10),
        retry=retry_if_exception_type(TransientError),
        reraise=True,
    )
    async def _get(self, path: str, params: dict[str, Any]) -> Any:
        await rate_limiter.get("coingecko").acquire()
        try:
            resp = await self._client.get(path, params=params)
        except httpx.TimeoutException as e:
            raise TransientError(f"coingecko {path} timed out") from e
        except httpx.TransportError as e:
            raise TransientError(f"coingecko {path} transport error: {e}") from e
        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientError(f"coingecko {path} returned {resp.status_code}")
        if resp.status_code >= 400:
            raise DataInvalidError(f"coingecko {path} returned {resp.status_code}")
        try:
            return resp.json()
        except ValueError as e:
            raise DataInvalidError(f"coingecko {path} returned non-JSON body") from e

    async def get_price(self, symbol: str) -> Decimal:
        coin = self.coin_id(symbol)
        body = await self._get("/simple/price", {"ids": coin, "vs_currencies": "usd"})
        entry = body.get(coin) if isinstance(body, dict) else None
        if not isinstance(entry, dict):
            raise DataInvalidError(f"coingecko price missing for {symbol} ({coin})")
        price = parse_price(entry.get("usd"), symbol)
        log.debug("coingecko.price", symbol=symbol, price=str(price))
        return price

    async def get_market_chart(self, symbol: str, days: int) -> list[tuple[float, Decimal]]:
        """Return ``(epoch_secs, price)`` points, oldest first; invalid points are dropped."""
        coin = self.coin_id(symbol)
        body = await self._get(
            f"/coins/{coin}/market_chart",
            {"vs_currency": "usd", "days": str(max(1, days))},
        )
        prices = body.get("prices") if isinstance(body, dict) else None
        if not isinstance(prices, list):
            raise DataInvalidError(f"coingecko market_chart missing prices for {symbol}")

        points: list[tuple[float, Decimal]] = []
        for entry in prices:
            if not isinstance(entry, list) or len(entry) < 2:
                continue
            try:
                ts = float(entry[0]) / 1000.0
                price = parse_price(entry[1], symbol)
            except (TypeError, ValueError, DataInvalidError):
                continue
            points.append((ts, price))
        points.sort(key=lambda p: p[0])
        log.info("coingecko.market_chart", symbol=symbol, days=days, points=len(points))
        return points
