"""Shared test fixtures."""

from __future__ import annotations

import asyncio
import sys
from decimal import Decimal
from pathlib import Path

import pytest

# Ensure walletrisk is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from walletrisk.config import StorageConfig  # noqa: E402
from walletrisk.connectors.chain_rpc import Balance, ChainEvent  # noqa: E402
from walletrisk.errors import DataInvalidError, TransientError  # noqa: E402
from walletrisk.storage.database import Database  # noqa: E402
from walletrisk.storage.models import WalletRecord  # noqa: E402

T0 = 1_760_000_000.0  # 2025-10-09 08:53:20 UTC


class FakeClock:
    """Manually advanced clock, callable like ``time.time``."""

    def __init__(self, start: float = T0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, secs: float) -> None:
        self.now += secs


class FakeChain:
    """In-memory ChainClient."""

    def __init__(self) -> None:
        self.block_number = 1_000
        self.balances: dict[str, list[Balance]] = {}
        self.events: dict[str, list[ChainEvent]] = {}
        self.roles: dict[str, int] = {}
        self.errors: list[Exception] = []
        self.role_error: Exception | None = None
        self.log_calls: list[tuple[int, int]] = []
        self.role_calls = 0

    def _maybe_fail(self) -> None:
        if self.errors:
            raise self.errors.pop(0)

    async def get_block_number(self, chain_id: int) -> int:
        self._maybe_fail()
        return self.block_number

    async def get_balances(self, address: str, chain_id: int) -> list[Balance]:
        return list(self.balances.get(address, []))

    async def get_logs_since(self, address: str, chain_id: int, from_block: int, to_block: int) -> list[ChainEvent]:
        self.log_calls.append((from_block, to_block))
        return [
            e for e in self.events.get(address, [])
            if from_block <= e.block_number <= to_block
        ]

    async def get_role(self, address: str, chain_id: int) -> int:
        self.role_calls += 1
        if self.role_error is not None:
            raise self.role_error
        return self.roles.get(address, 0)


class FakeMarket:
    """In-memory MarketDataProvider."""

    def __init__(self, prices: dict[str, str] | None = None, delay: float = 0.0):
        self.prices = {k: Decimal(v) for k, v in (prices or {}).items()}
        self.charts: dict[str, list[tuple[float, Decimal]]] = {}
        self.delay = delay
        self.calls = 0
        self.chart_calls = 0
        self.fail_with: Exception | None = None

    async def get_price(self, symbol: str) -> Decimal:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        if symbol not in self.prices:
            raise TransientError(f"no quote for {symbol}")
        price = self.prices[symbol]
        if price <= 0:
            raise DataInvalidError(f"non-positive price for {symbol}")
        return price

    async def get_market_chart(self, symbol: str, days: int) -> list[tuple[float, Decimal]]:
        self.chart_calls += 1
        if self.fail_with is not None:
            raise self.fail_with
        return list(self.charts.get(symbol, []))


def make_event(
    tx_hash: str,
    block: int,
    log_index: int = 0,
    amount: float = 1.0,
    direction: str = "in",
    kind: str = "transfer",
    symbol: str = "USDC",
    ts: float = T0,
) -> ChainEvent:
    return ChainEvent(
        kind=kind,
        tx_hash=tx_hash,
        block_number=block,
        log_index=log_index,
        symbol=symbol,
        amount=amount,
        direction=direction,
        from_address="0xfrom",
        to_address="0xto",
        block_timestamp=ts,
    )


@pytest.fixture()
def db(tmp_path) -> Database:
    database = Database(StorageConfig(sqlite_path=str(tmp_path / "test.db")))
    database.connect()
    yield database
    database.close()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def chain() -> FakeChain:
    return FakeChain()


@pytest.fixture()
def wallet(db: Database) -> WalletRecord:
    w = WalletRecord(user_id="user-1", address="0xabc0000000000000000000000000000000000001", chain_id=1, created_at=T0)
    db.insert_wallet(w)
    return w
