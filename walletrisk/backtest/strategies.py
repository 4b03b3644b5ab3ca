"""Backtest strategies: pure computations over a price series.

Series are ``(epoch_secs, price)`` tuples, oldest first. Every strategy
returns an equity curve and a metrics dict containing ``total_return``.

  - ma_cross:    long while short MA > long MA, flat otherwise
  - volatility:  rolling stdev of returns, annualized (no positions)
  - correlation: Pearson between the series and a lagged copy, or a
                 second series (no positions)
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Sequence

from walletrisk.errors import ConfigurationError

TRADING_DAYS = 252
SECONDS_PER_DAY = 86400.0

PricePoints = Sequence[tuple[float, float]]


@dataclass
class StrategyResult:
    equity_curve: list[tuple[float, float]] = field(default_factory=list)
    metrics: dict[str, Any] = field(default_factory=dict)


def _int_param(params: dict[str, Any], name: str, default: int, minimum: int = 1) -> int:
    raw = params.get(name, default)
    try:
        value = int(raw)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from e
    if value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {value}")
    return value


# ── Math helpers ─────────────────────────────────────────────────────

def simple_returns(prices: Sequence[float]) -> list[float]:
    return [
        (curr - prev) / prev
        for prev, curr in zip(prices, prices[1:])
        if prev > 0
    ]


def stdev(values: Sequence[float]) -> float:
    """Population standard deviation."""
    if not values:
        return 0.0
    mean = sum(values) / len(values)
    return math.sqrt(sum((v - mean) ** 2 for v in values) / len(values))


def pearson(x: Sequence[float], y: Sequence[float]) -> float:
    if len(x) != len(y) or not x:
        return 0.0
    mean_x = sum(x) / len(x)
    mean_y = sum(y) / len(y)
    num = den_x = den_y = 0.0
    for a, b in zip(x, y):
        dx, dy = a - mean_x, b - mean_y
        num += dx * dy
        den_x += dx * dx
        den_y += dy * dy
    if den_x == 0 or den_y == 0:
        return 0.0
    return num / math.sqrt(den_x * den_y)


def build_metrics(equity_curve: Sequence[tuple[float, float]]) -> dict[str, float]:
    """Return, drawdown, volatility, Sharpe and naive CAGR of an equity curve.

    ``max_drawdown`` is reported as a non-positive fraction (-0.2 = 20% off peak).
    """
    if not equity_curve:
        return {"total_return": 0.0, "max_drawdown": 0.0, "annualized_vol": 0.0,
                "sharpe": 0.0, "annualized_return": 0.0}

    values = [v for _, v in equity_curve]
    start, end = values[0], values[-1]
    total_return = end / start - 1 if start > 0 else 0.0

    max_dd = 0.0
    peak = values[0]
    for v in values:
        peak = max(peak, v)
        if peak > 0:
            max_dd = min(max_dd, v / peak - 1)

    rets = simple_returns(values)
    vol = stdev(rets) * math.sqrt(TRADING_DAYS) if rets else 0.0
    sharpe = 0.0
    if vol > 0:
        sharpe = (sum(rets) / len(rets)) * math.sqrt(TRADING_DAYS) / vol

    span_days = max(1.0, (equity_curve[-1][0] - equity_curve[0][0]) / SECONDS_PER_DAY)
    cagr = (end / start) ** (365.0 / span_days) - 1 if start > 0 and end > 0 else 0.0

    return {
        "total_return": total_return,
        "max_drawdown": max_dd,
        "annualized_vol": vol,
        "sharpe": sharpe,
        "annualized_return": cagr,
    }


# ── Strategies ───────────────────────────────────────────────────────

def backtest_ma_cross(prices: PricePoints, short_window: int = 5, long_window: int = 20) -> StrategyResult:
    closes = [p for _, p in prices]
    equity = 1.0
    position = 0.0
    curve: list[tuple[float, float]] = []
    for i, (ts, price) in enumerate(prices):
        if i > 0 and closes[i - 1] > 0:
            equity *= 1 + (price - closes[i - 1]) / closes[i - 1] * position
        window = closes[max(0, i - long_window + 1): i + 1]
        short_ma = sum(window[-short_window:]) / short_window if len(window) >= short_window else price
        long_ma = sum(window) / len(window)
        # Decided at this bar's close, applied to the next bar's return
        position = 1.0 if short_ma > long_ma else 0.0
        curve.append((ts, equity))

    metrics: dict[str, Any] = {"type": "ma_cross", "short_window": short_window, "long_window": long_window}
    metrics.update(build_metrics(curve))
    return StrategyResult(curve, metrics)


def rolling_vol(prices: Sequence[float], lookback: int = 20) -> list[float]:
    """Annualized stdev of the trailing ``lookback`` returns at each bar with enough history."""
    rets = simple_returns(prices)
    return [
        stdev(rets[i - lookback:i]) * math.sqrt(TRADING_DAYS)
        for i in range(lookback, len(rets) + 1)
    ]


def _underlying_return(prices: PricePoints) -> float:
    if len(prices) < 2 or prices[0][1] <= 0:
        return 0.0
    return prices[-1][1] / prices[0][1] - 1


def backtest_volatility(prices: PricePoints, lookback: int = 20) -> StrategyResult:
    vols = rolling_vol([p for _, p in prices], lookback)
    curve = [(ts, 1.0) for ts, _ in prices]
    return StrategyResult(curve, {
        "type": "volatility",
        "lookback": lookback,
        "annualized_vol": vols[-1] if vols else 0.0,
        "rolling_vol": vols,
        "total_return": _underlying_return(prices),
    })


def backtest_correlation(
    prices: PricePoints, lag: int = 5, other: PricePoints | None = None,
) -> StrategyResult:
    closes = [p for _, p in prices]
    if other is None:
        x, y = closes[lag:], closes[:len(closes) - lag]
    else:
        other_closes = [p for _, p in other]
        n = min(len(closes), len(other_closes))
        x, y = closes[lag:n], other_closes[:n - lag] if n > lag else []
    corr = pearson(x, y)
    curve = [(ts, 1.0) for ts, _ in prices]
    return StrategyResult(curve, {
        "type": "correlation",
        "lag": lag,
        "correlation": corr,
        "pairs": len(x),
        "total_return": _underlying_return(prices),
    })


STRATEGY_KINDS = ("ma_cross", "volatility", "correlation")


def run_strategy(
    kind: str,
    params: dict[str, Any],
    prices: PricePoints,
    other: PricePoints | None = None,
) -> StrategyResult:
    kind = kind.lower()
    if kind in ("ma_cross", "ma"):
        return backtest_ma_cross(
            prices,
            short_window=_int_param(params, "short_window", 5),
            long_window=_int_param(params, "long_window", 20),
        )
    if kind == "volatility":
        return backtest_volatility(prices, lookback=_int_param(params, "lookback", 20))
    if kind == "correlation":
        return backtest_correlation(prices, lag=_int_param(params, "lag", 5, minimum=0), other=other)
    raise ConfigurationError(f"unknown strategy kind {kind!r}")
