"""Database models: Pydantic models for storage records.

Timestamps are epoch seconds (UTC); days are ``YYYY-MM-DD`` strings.
"""

from __future__ import annotations

import time
import uuid
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field


def _new_id() -> str:
    return str(uuid.uuid4())


class WalletRecord(BaseModel):
    """Tracked wallet; identity is (address, chain_id)."""
    id: str = Field(default_factory=_new_id)
    user_id: str
    address: str
    chain_id: int
    cached_role: int | None = None
    role_cached_at: float | None = None
    created_at: float = Field(default_factory=time.time)


class Position(BaseModel):
    asset_symbol: str
    amount: float = 0.0
    usd_value: float = 0.0


class PortfolioSnapshotRecord(BaseModel):
    """Point-in-time valuation of a wallet. Never mutated once written."""
    id: str = Field(default_factory=_new_id)
    wallet_id: str
    total_usd_value: float = 0.0
    positions: list[Position] = Field(default_factory=list)
    snapshot_time: float = Field(default_factory=time.time)


class DailySnapshotRecord(BaseModel):
    """Latest snapshot of a day, kept for long retention."""
    wallet_id: str
    day: str
    total_usd_value: float = 0.0
    positions: list[Position] = Field(default_factory=list)
    snapshot_time: float = 0.0


class WalletTransactionRecord(BaseModel):
    """One decoded Transfer/Approval log for a wallet."""
    id: str = Field(default_factory=_new_id)
    wallet_id: str
    chain_id: int
    tx_hash: str
    block_number: int
    log_index: int
    kind: str = "transfer"  # transfer | approval
    asset_symbol: str = ""
    amount: float = 0.0  # signed: negative for outgoing
    usd_value: float = 0.0  # signed like amount
    direction: str = "in"  # in | out
    from_address: str = ""
    to_address: str = ""
    block_timestamp: float = 0.0

    @property
    def key(self) -> tuple[str, int]:
        return (self.tx_hash, self.log_index)


class SyncCursorRecord(BaseModel):
    wallet_id: str
    chain_id: int
    last_block: int = 0
    last_synced_at: float | None = None
    last_rollup_day: str | None = None


class SyncRunRecord(BaseModel):
    """Append-only record of one sync attempt."""
    id: str = Field(default_factory=_new_id)
    wallet_id: str
    status: str
    attempts: int = 1
    error: str | None = None
    started_at: float
    finished_at: float


class PriceCacheRecord(BaseModel):
    symbol: str
    price: Decimal
    fetched_at: float
    expires_at: float
    source: str = "coingecko"

    def is_live(self, now: float) -> bool:
        return self.expires_at > now


class PriceHistoryRecord(BaseModel):
    symbol: str
    chain_id: int = 0
    price_ts: float
    price: Decimal
    source: str = "coingecko"


class AlertRuleRecord(BaseModel):
    id: str = Field(default_factory=_new_id)
    user_id: str
    kind: str
    threshold: float
    enabled: bool = True
    cooldown_secs: int | None = None
    created_at: float = Field(default_factory=time.time)


class AlertTriggerRecord(BaseModel):
    id: str = Field(default_factory=_new_id)
    rule_id: str
    wallet_id: str
    message: str
    created_at: float = Field(default_factory=time.time)


class StrategyRecord(BaseModel):
    id: str = Field(default_factory=_new_id)
    user_id: str
    name: str = ""
    kind: str = "ma_cross"  # ma_cross | volatility | correlation
    params: dict[str, Any] = Field(default_factory=dict)
    created_at: float = Field(default_factory=time.time)


class BacktestResultRecord(BaseModel):
    """Immutable backtest output linked to a strategy."""
    id: str = Field(default_factory=_new_id)
    strategy_id: str
    equity_curve: list[tuple[float, float]] = Field(default_factory=list)
    metrics: dict[str, Any] = Field(default_factory=dict)
    synthetic: bool = False
    started_at: float = Field(default_factory=time.time)
    completed_at: float | None = None
