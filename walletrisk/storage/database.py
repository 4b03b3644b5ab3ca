"""Database: SQLite persistence layer.

Manages connections, runs migrations, and provides CRUD operations.
Uniqueness and ordering invariants are enforced here so that no caller
can write a duplicate transaction row, an out-of-order snapshot, or move
a sync cursor backwards.
"""

from __future__ import annotations

import json
import sqlite3
import time
from decimal import Decimal
from pathlib import Path
from typing import Iterable

from walletrisk.config import StorageConfig
from walletrisk.errors import DataInvalidError, DuplicateRecordError
from walletrisk.observability.logger import get_logger
from walletrisk.storage.migrations import run_migrations
from walletrisk.storage.models import (
    AlertRuleRecord,
    AlertTriggerRecord,
    BacktestResultRecord,
    DailySnapshotRecord,
    PortfolioSnapshotRecord,
    Position,
    PriceCacheRecord,
    PriceHistoryRecord,
    StrategyRecord,
    SyncCursorRecord,
    SyncRunRecord,
    WalletRecord,
    WalletTransactionRecord,
)

log = get_logger(__name__)


def _positions_json(positions: list[Position]) -> str:
    return json.dumps([p.model_dump() for p in positions])


def _positions_from(raw: str) -> list[Position]:
    return [Position(**p) for p in json.loads(raw or "[]")]


class Database:
    """SQLite database shared by all subsystems."""

    def __init__(self, config: StorageConfig):
        self._config = config
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> None:
        """Open database connection and run migrations."""
        path = self._config.sqlite_path
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(path)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        run_migrations(self._conn)
        log.info("database.connected", path=path)

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._conn

    # ── Wallets ──────────────────────────────────────────────────────

    def insert_wallet(self, wallet: WalletRecord) -> str:
        try:
            with self.conn:
                self.conn.execute(
                    """
                    INSERT INTO wallets
                        (id, user_id, address, chain_id, cached_role,
                         role_cached_at, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        wallet.id, wallet.user_id, wallet.address.lower(),
                        wallet.chain_id, wallet.cached_role,
                        wallet.role_cached_at, wallet.created_at,
                    ),
                )
        except sqlite3.IntegrityError as e:
            raise DuplicateRecordError(
                f"wallet {wallet.address} already tracked on chain {wallet.chain_id}"
            ) from e
        return wallet.id

    def get_wallet(self, wallet_id: str) -> WalletRecord | None:
        row = self.conn.execute(
            "SELECT * FROM wallets WHERE id = ?", (wallet_id,)
        ).fetchone()
        return WalletRecord(**dict(row)) if row else None

    def list_wallets(
        self, user_id: str | None = None, chain_id: int | None = None,
    ) -> list[WalletRecord]:
        sql = "SELECT * FROM wallets WHERE 1=1"
        params: list[object] = []
        if user_id is not None:
            sql += " AND user_id = ?"
            params.append(user_id)
        if chain_id is not None:
            sql += " AND chain_id = ?"
            params.append(chain_id)
        rows = self.conn.execute(sql + " ORDER BY created_at, id", params).fetchall()
        return [WalletRecord(**dict(r)) for r in rows]

    def delete_wallet(self, wallet_id: str) -> None:
        """Delete a wallet; snapshots, transactions and runs cascade."""
        self.conn.execute("DELETE FROM wallets WHERE id = ?", (wallet_id,))
        self.conn.commit()

    def update_wallet_role(self, wallet_id: str, role: int, cached_at: float) -> None:
        self.conn.execute(
            "UPDATE wallets SET cached_role = ?, role_cached_at = ? WHERE id = ?",
            (role, cached_at, wallet_id),
        )
        self.conn.commit()

    def list_wallets_due(
        self, now: float, interval_secs: float, dirty: Iterable[str] = (),
    ) -> list[WalletRecord]:
        """Wallets never synced, last synced before ``now - interval``, or dirty."""
        rows = self.conn.execute(
            """
            SELECT w.* FROM wallets w
            LEFT JOIN wallet_sync_cursors c ON c.wallet_id = w.id
            WHERE c.last_synced_at IS NULL OR c.last_synced_at <= ?
            ORDER BY COALESCE(c.last_synced_at, 0), w.id
            """,
            (now - interval_secs,),
        ).fetchall()
        due = [WalletRecord(**dict(r)) for r in rows]
        seen = {w.id for w in due}
        for wallet_id in dirty:
            if wallet_id in seen:
                continue
            wallet = self.get_wallet(wallet_id)
            if wallet is not None:
                due.append(wallet)
                seen.add(wallet_id)
        return due

    # ── Snapshots ────────────────────────────────────────────────────

    def latest_snapshots(self, wallet_id: str, limit: int = 2) -> list[PortfolioSnapshotRecord]:
        """Newest first."""
        rows = self.conn.execute(
            """
            SELECT * FROM portfolio_snapshots WHERE wallet_id = ?
            ORDER BY snapshot_time DESC LIMIT ?
            """,
            (wallet_id, limit),
        ).fetchall()
        return [self._snapshot_from_row(r) for r in rows]

    def latest_snapshot(self, wallet_id: str) -> PortfolioSnapshotRecord | None:
        snaps = self.latest_snapshots(wallet_id, limit=1)
        return snaps[0] if snaps else None

    def snapshots_since(self, wallet_id: str, since: float) -> list[PortfolioSnapshotRecord]:
        """Oldest first."""
        rows = self.conn.execute(
            """
            SELECT * FROM portfolio_snapshots
            WHERE wallet_id = ? AND snapshot_time >= ?
            ORDER BY snapshot_time ASC
            """,
            (wallet_id, since),
        ).fetchall()
        return [self._snapshot_from_row(r) for r in rows]

    @staticmethod
    def _snapshot_from_row(row: sqlite3.Row) -> PortfolioSnapshotRecord:
        return PortfolioSnapshotRecord(
            id=row["id"],
            wallet_id=row["wallet_id"],
            total_usd_value=row["total_usd_value"],
            positions=_positions_from(row["positions_json"]),
            snapshot_time=row["snapshot_time"],
        )

    def insert_snapshot(self, snapshot: PortfolioSnapshotRecord) -> None:
        with self.conn:
            self._insert_snapshot(snapshot)

    def _insert_snapshot(self, snapshot: PortfolioSnapshotRecord) -> None:
        row = self.conn.execute(
            "SELECT MAX(snapshot_time) FROM portfolio_snapshots WHERE wallet_id = ?",
            (snapshot.wallet_id,),
        ).fetchone()
        latest = row[0] if row else None
        if latest is not None and snapshot.snapshot_time <= latest:
            raise DataInvalidError(
                f"snapshot for wallet {snapshot.wallet_id} at {snapshot.snapshot_time} "
                f"is not after latest {latest}"
            )
        self.conn.execute(
            """
            INSERT INTO portfolio_snapshots
                (id, wallet_id, total_usd_value, positions_json, snapshot_time)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                snapshot.id, snapshot.wallet_id, snapshot.total_usd_value,
                _positions_json(snapshot.positions), snapshot.snapshot_time,
            ),
        )

    # ── Sync unit of work ────────────────────────────────────────────

    def write_sync_result(
        self,
        snapshot: PortfolioSnapshotRecord,
        transactions: list[WalletTransactionRecord],
        cursor: SyncCursorRecord,
    ) -> None:
        """Write snapshot, transactions and cursor as one transaction.

        Either every row becomes visible or none does.
        """
        try:
            with self.conn:
                self._insert_snapshot(snapshot)
                self._insert_transactions(transactions)
                self._upsert_cursor(cursor)
        except sqlite3.IntegrityError as e:
            raise DuplicateRecordError(str(e)) from e

    # ── Transactions ─────────────────────────────────────────────────

    def insert_transactions(self, transactions: list[WalletTransactionRecord]) -> None:
        """Strict insert; a duplicate (wallet, tx_hash, log_index) is rejected."""
        try:
            with self.conn:
                self._insert_transactions(transactions)
        except sqlite3.IntegrityError as e:
            raise DuplicateRecordError(str(e)) from e

    def _insert_transactions(self, transactions: list[WalletTransactionRecord]) -> None:
        self.conn.executemany(
            """
            INSERT INTO wallet_transactions
                (id, wallet_id, chain_id, tx_hash, block_number, log_index,
                 kind, asset_symbol, amount, usd_value, direction,
                 from_address, to_address, block_timestamp)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    t.id, t.wallet_id, t.chain_id, t.tx_hash, t.block_number,
                    t.log_index, t.kind, t.asset_symbol, t.amount, t.usd_value,
                    t.direction, t.from_address, t.to_address, t.block_timestamp,
                )
                for t in transactions
            ],
        )

    def existing_tx_keys(
        self, wallet_id: str, keys: Iterable[tuple[str, int]],
    ) -> set[tuple[str, int]]:
        wanted = set(keys)
        if not wanted:
            return set()
        hashes = sorted({h for h, _ in wanted})
        placeholders = ",".join("?" for _ in hashes)
        rows = self.conn.execute(
            f"""
            SELECT tx_hash, log_index FROM wallet_transactions
            WHERE wallet_id = ? AND tx_hash IN ({placeholders})
            """,
            (wallet_id, *hashes),
        ).fetchall()
        return {(r["tx_hash"], r["log_index"]) for r in rows} & wanted

    def get_transactions(self, wallet_id: str, limit: int = 100) -> list[WalletTransactionRecord]:
        rows = self.conn.execute(
            """
            SELECT * FROM wallet_transactions WHERE wallet_id = ?
            ORDER BY block_number DESC, log_index DESC LIMIT ?
            """,
            (wallet_id, limit),
        ).fetchall()
        return [WalletTransactionRecord(**dict(r)) for r in rows]

    def count_transactions(self, wallet_id: str) -> int:
        row = self.conn.execute(
            "SELECT COUNT(*) FROM wallet_transactions WHERE wallet_id = ?", (wallet_id,)
        ).fetchone()
        return int(row[0]) if row else 0

    def net_flow_since(self, wallet_id: str, since: float) -> float:
        """Signed USD transfer flow since ``since`` (negative = net outflow)."""
        row = self.conn.execute(
            """
            SELECT COALESCE(SUM(usd_value), 0) FROM wallet_transactions
            WHERE wallet_id = ? AND kind = 'transfer' AND block_timestamp >= ?
            """,
            (wallet_id, since),
        ).fetchone()
        return float(row[0]) if row else 0.0

    def approval_count_since(self, wallet_id: str, since: float) -> int:
        row = self.conn.execute(
            """
            SELECT COUNT(*) FROM wallet_transactions
            WHERE wallet_id = ? AND kind = 'approval' AND block_timestamp >= ?
            """,
            (wallet_id, since),
        ).fetchone()
        return int(row[0]) if row else 0

    # ── Sync cursors & runs ──────────────────────────────────────────

    def get_cursor(self, wallet_id: str) -> SyncCursorRecord | None:
        row = self.conn.execute(
            "SELECT * FROM wallet_sync_cursors WHERE wallet_id = ?", (wallet_id,)
        ).fetchone()
        return SyncCursorRecord(**dict(row)) if row else None

    def _upsert_cursor(self, cursor: SyncCursorRecord) -> None:
        # MAX() keeps the block cursor monotonic
        self.conn.execute(
            """
            INSERT INTO wallet_sync_cursors
                (wallet_id, chain_id, last_block, last_synced_at, last_rollup_day)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(wallet_id) DO UPDATE SET
                last_block = MAX(last_block, excluded.last_block),
                last_synced_at = COALESCE(excluded.last_synced_at, last_synced_at),
                last_rollup_day = COALESCE(excluded.last_rollup_day, last_rollup_day)
            """,
            (
                cursor.wallet_id, cursor.chain_id, cursor.last_block,
                cursor.last_synced_at, cursor.last_rollup_day,
            ),
        )

    def upsert_cursor(self, cursor: SyncCursorRecord) -> None:
        with self.conn:
            self._upsert_cursor(cursor)

    def insert_sync_run(self, run: SyncRunRecord) -> None:
        self.conn.execute(
            """
            INSERT INTO sync_runs
                (id, wallet_id, status, attempts, error, started_at, finished_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                run.id, run.wallet_id, run.status, run.attempts,
                run.error, run.started_at, run.finished_at,
            ),
        )
        self.conn.commit()

    def get_sync_runs(self, wallet_id: str | None = None, limit: int = 50) -> list[SyncRunRecord]:
        if wallet_id:
            rows = self.conn.execute(
                "SELECT * FROM sync_runs WHERE wallet_id = ? ORDER BY finished_at DESC LIMIT ?",
                (wallet_id, limit),
            ).fetchall()
        else:
            rows = self.conn.execute(
                "SELECT * FROM sync_runs ORDER BY finished_at DESC LIMIT ?", (limit,)
            ).fetchall()
        return [SyncRunRecord(**dict(r)) for r in rows]

    # ── Daily rollups ────────────────────────────────────────────────

    def upsert_daily_snapshot(self, daily: DailySnapshotRecord) -> None:
        """Idempotent per (wallet, day); a later snapshot of the day wins."""
        self.conn.execute(
            """
            INSERT INTO portfolio_daily_snapshots
                (wallet_id, day, total_usd_value, positions_json, snapshot_time, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(wallet_id, day) DO UPDATE SET
                total_usd_value = excluded.total_usd_value,
                positions_json = excluded.positions_json,
                snapshot_time = excluded.snapshot_time,
                updated_at = excluded.updated_at
            WHERE excluded.snapshot_time >= portfolio_daily_snapshots.snapshot_time
            """,
            (
                daily.wallet_id, daily.day, daily.total_usd_value,
                _positions_json(daily.positions), daily.snapshot_time, time.time(),
            ),
        )
        self.conn.commit()

    def get_daily_snapshots(self, wallet_id: str) -> list[DailySnapshotRecord]:
        rows = self.conn.execute(
            "SELECT * FROM portfolio_daily_snapshots WHERE wallet_id = ? ORDER BY day",
            (wallet_id,),
        ).fetchall()
        return [
            DailySnapshotRecord(
                wallet_id=r["wallet_id"], day=r["day"],
                total_usd_value=r["total_usd_value"],
                positions=_positions_from(r["positions_json"]),
                snapshot_time=r["snapshot_time"],
            )
            for r in rows
        ]

    # ── Prices ───────────────────────────────────────────────────────

    def get_price_cache(self, symbol: str) -> PriceCacheRecord | None:
        """Return the cache entry for a symbol, expired or not."""
        row = self.conn.execute(
            "SELECT * FROM price_cache WHERE symbol = ?", (symbol,)
        ).fetchone()
        if not row:
            return None
        data = dict(row)
        data["price"] = Decimal(data["price"])
        return PriceCacheRecord(**data)

    def upsert_price_cache(self, entry: PriceCacheRecord) -> None:
        if entry.price <= 0:
            raise DataInvalidError(f"refusing to cache non-positive price for {entry.symbol}")
        self.conn.execute(
            """
            INSERT INTO price_cache (symbol, price, fetched_at, expires_at, source)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(symbol) DO UPDATE SET
                price = excluded.price,
                fetched_at = excluded.fetched_at,
                expires_at = excluded.expires_at,
                source = excluded.source
            """,
            (entry.symbol, str(entry.price), entry.fetched_at, entry.expires_at, entry.source),
        )
        self.conn.commit()

    def insert_price_points(self, points: list[PriceHistoryRecord]) -> int:
        """Append history points; existing (symbol, chain, ts) keys are skipped."""
        before = self.conn.total_changes
        self.conn.executemany(
            """
            INSERT OR IGNORE INTO price_history (symbol, chain_id, price_ts, price, source)
            VALUES (?, ?, ?, ?, ?)
            """,
            [
                (p.symbol, p.chain_id, p.price_ts, str(p.price), p.source)
                for p in points if p.price > 0
            ],
        )
        self.conn.commit()
        return self.conn.total_changes - before

    def latest_price_point(self, symbol: str, chain_id: int | None = None) -> PriceHistoryRecord | None:
        if chain_id is None:
            row = self.conn.execute(
                "SELECT * FROM price_history WHERE symbol = ? ORDER BY price_ts DESC LIMIT 1",
                (symbol,),
            ).fetchone()
        else:
            row = self.conn.execute(
                """
                SELECT * FROM price_history WHERE symbol = ? AND chain_id IN (?, 0)
                ORDER BY price_ts DESC LIMIT 1
                """,
                (symbol, chain_id),
            ).fetchone()
        return self._price_point_from_row(row) if row else None

    def price_range(self, symbol: str, start: float, end: float) -> list[PriceHistoryRecord]:
        """Oldest first; one point per timestamp across chains."""
        rows = self.conn.execute(
            """
            SELECT symbol, MIN(chain_id) AS chain_id, price_ts, price, source
            FROM price_history
            WHERE symbol = ? AND price_ts >= ? AND price_ts <= ?
            GROUP BY price_ts ORDER BY price_ts ASC
            """,
            (symbol, start, end),
        ).fetchall()
        return [self._price_point_from_row(r) for r in rows]

    @staticmethod
    def _price_point_from_row(row: sqlite3.Row) -> PriceHistoryRecord:
        data = dict(row)
        data["price"] = Decimal(data["price"])
        return PriceHistoryRecord(**data)

    def referenced_symbols(self) -> set[str]:
        """Symbols held in any wallet's latest snapshot or named by a strategy."""
        symbols: set[str] = set()
        rows = self.conn.execute(
            """
            SELECT s.positions_json FROM portfolio_snapshots s
            JOIN (
                SELECT wallet_id, MAX(snapshot_time) AS ts
                FROM portfolio_snapshots GROUP BY wallet_id
            ) latest ON latest.wallet_id = s.wallet_id AND latest.ts = s.snapshot_time
            """
        ).fetchall()
        for r in rows:
            symbols.update(p.asset_symbol.upper() for p in _positions_from(r[0]))
        for strategy in self.list_strategies():
            symbol = strategy.params.get("symbol")
            if isinstance(symbol, str) and symbol:
                symbols.add(symbol.upper())
        return symbols

    # ── Alert rules & triggers ───────────────────────────────────────

    def insert_rule(self, rule: AlertRuleRecord) -> str:
        self.conn.execute(
            """
            INSERT INTO alert_rules
                (id, user_id, kind, threshold, enabled, cooldown_secs, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                rule.id, rule.user_id, rule.kind, rule.threshold,
                int(rule.enabled), rule.cooldown_secs, rule.created_at,
            ),
        )
        self.conn.commit()
        return rule.id

    def get_rule(self, rule_id: str) -> AlertRuleRecord | None:
        row = self.conn.execute(
            "SELECT * FROM alert_rules WHERE id = ?", (rule_id,)
        ).fetchone()
        return AlertRuleRecord(**dict(row)) if row else None

    def list_rules(self, user_id: str | None = None, enabled_only: bool = False) -> list[AlertRuleRecord]:
        sql = "SELECT * FROM alert_rules WHERE 1=1"
        params: list[object] = []
        if user_id is not None:
            sql += " AND user_id = ?"
            params.append(user_id)
        if enabled_only:
            sql += " AND enabled = 1"
        rows = self.conn.execute(sql + " ORDER BY created_at, id", params).fetchall()
        return [AlertRuleRecord(**dict(r)) for r in rows]

    def insert_trigger(self, trigger: AlertTriggerRecord) -> str:
        self.conn.execute(
            """
            INSERT INTO alert_triggers (id, rule_id, wallet_id, message, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (trigger.id, trigger.rule_id, trigger.wallet_id, trigger.message, trigger.created_at),
        )
        self.conn.commit()
        return trigger.id

    def last_trigger_at(self, rule_id: str) -> float | None:
        row = self.conn.execute(
            "SELECT MAX(created_at) FROM alert_triggers WHERE rule_id = ?", (rule_id,)
        ).fetchone()
        return row[0] if row and row[0] is not None else None

    def list_triggers(self, rule_id: str | None = None, limit: int = 50) -> list[AlertTriggerRecord]:
        if rule_id:
            rows = self.conn.execute(
                "SELECT * FROM alert_triggers WHERE rule_id = ? ORDER BY created_at DESC LIMIT ?",
                (rule_id, limit),
            ).fetchall()
        else:
            rows = self.conn.execute(
                "SELECT * FROM alert_triggers ORDER BY created_at DESC LIMIT ?", (limit,)
            ).fetchall()
        return [AlertTriggerRecord(**dict(r)) for r in rows]

    # ── Strategies & backtests ───────────────────────────────────────

    def insert_strategy(self, strategy: StrategyRecord) -> str:
        self.conn.execute(
            """
            INSERT INTO strategies (id, user_id, name, kind, params_json, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                strategy.id, strategy.user_id, strategy.name, strategy.kind,
                json.dumps(strategy.params), strategy.created_at,
            ),
        )
        self.conn.commit()
        return strategy.id

    def get_strategy(self, strategy_id: str) -> StrategyRecord | None:
        row = self.conn.execute(
            "SELECT * FROM strategies WHERE id = ?", (strategy_id,)
        ).fetchone()
        return self._strategy_from_row(row) if row else None

    def list_strategies(self, user_id: str | None = None) -> list[StrategyRecord]:
        if user_id:
            rows = self.conn.execute(
                "SELECT * FROM strategies WHERE user_id = ? ORDER BY created_at", (user_id,)
            ).fetchall()
        else:
            rows = self.conn.execute("SELECT * FROM strategies ORDER BY created_at").fetchall()
        return [self._strategy_from_row(r) for r in rows]

    @staticmethod
    def _strategy_from_row(row: sqlite3.Row) -> StrategyRecord:
        return StrategyRecord(
            id=row["id"], user_id=row["user_id"], name=row["name"],
            kind=row["kind"], params=json.loads(row["params_json"] or "{}"),
            created_at=row["created_at"],
        )

    def insert_backtest_result(self, result: BacktestResultRecord) -> str:
        self.conn.execute(
            """
            INSERT INTO strategy_backtests
                (id, strategy_id, equity_curve_json, metrics_json, synthetic,
                 started_at, completed_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                result.id, result.strategy_id,
                json.dumps([list(p) for p in result.equity_curve]),
                json.dumps(result.metrics), int(result.synthetic),
                result.started_at, result.completed_at,
            ),
        )
        self.conn.commit()
        return result.id

    def list_backtest_results(self, strategy_id: str, limit: int = 20) -> list[BacktestResultRecord]:
        rows = self.conn.execute(
            """
            SELECT * FROM strategy_backtests WHERE strategy_id = ?
            ORDER BY started_at DESC LIMIT ?
            """,
            (strategy_id, limit),
        ).fetchall()
        return [
            BacktestResultRecord(
                id=r["id"], strategy_id=r["strategy_id"],
                equity_curve=[tuple(p) for p in json.loads(r["equity_curve_json"])],
                metrics=json.loads(r["metrics_json"]),
                synthetic=bool(r["synthetic"]),
                started_at=r["started_at"], completed_at=r["completed_at"],
            )
            for r in rows
        ]
