"""Token-bucket rate limiting for outbound provider calls.

One bucket per endpoint key: ``coingecko`` for the market data API and
``rpc:<chain_id>`` for each chain's JSON-RPC endpoint.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from threading import Lock


@dataclass
class BucketConfig:
    """Refill rate and burst size of one bucket."""
    tokens_per_second: float
    max_burst: int
    name: str = ""


# CoinGecko's public tier allows roughly 10-30 calls per minute
DEFAULT_LIMITS: dict[str, BucketConfig] = {
    "coingecko": BucketConfig(tokens_per_second=0.5, max_burst=5, name="CoinGecko"),
    "rpc": BucketConfig(tokens_per_second=10.0, max_burst=20, name="JSON-RPC"),
    "webhook": BucketConfig(tokens_per_second=1.0, max_burst=5, name="Alert webhooks"),
}


def rpc_bucket(chain_id: int) -> str:
    return f"rpc:{chain_id}"


class TokenBucket:
    """Token bucket shared by every coroutine calling one endpoint."""

    def __init__(self, config: BucketConfig):
        self._config = config
        self._tokens = float(config.max_burst)
        self._last_refill = time.monotonic()
        self._lock = Lock()
        self._granted = 0
        self._waited = 0

    def _refill(self) -> None:
        now = time.monotonic()
        self._tokens = min(
            float(self._config.max_burst),
            self._tokens + (now - self._last_refill) * self._config.tokens_per_second,
        )
        self._last_refill = now

    def try_acquire(self) -> bool:
        with self._lock:
            self._refill()
            if self._tokens < 1.0:
                return False
            self._tokens -= 1.0
            self._granted += 1
            return True

    def wait_time(self) -> float:
        """Seconds until one token is available."""
        with self._lock:
            self._refill()
            if self._tokens >= 1.0:
                return 0.0
            return (1.0 - self._tokens) / self._config.tokens_per_second

    async def acquire(self) -> None:
        while not self.try_acquire():
            self._waited += 1
            await asyncio.sleep(max(self.wait_time(), 0.01))

    @property
    def stats(self) -> dict[str, int]:
        return {"granted": self._granted, "waited": self._waited}


class RateLimiterRegistry:
    """Per-endpoint buckets, created lazily."""

    def __init__(self) -> None:
        self._buckets: dict[str, TokenBucket] = {}
        self._lock = Lock()

    def get(self, endpoint: str) -> TokenBucket:
        with self._lock:
            bucket = self._buckets.get(endpoint)
            if bucket is None:
                family = endpoint.split(":", 1)[0]
                config = DEFAULT_LIMITS.get(
                    family, BucketConfig(tokens_per_second=5.0, max_burst=10),
                )
                bucket = TokenBucket(BucketConfig(
                    config.tokens_per_second, config.max_burst, name=endpoint,
                ))
                self._buckets[endpoint] = bucket
            return bucket

    def configure(self, endpoint: str, tokens_per_second: float, max_burst: int) -> None:
        with self._lock:
            self._buckets[endpoint] = TokenBucket(
                BucketConfig(tokens_per_second, max_burst, name=endpoint)
            )

    def stats(self) -> dict[str, dict[str, int]]:
        with self._lock:
            return {name: b.stats for name, b in self._buckets.items()}


rate_limiter = RateLimiterRegistry()
