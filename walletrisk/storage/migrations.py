"""Database migrations: create and upgrade schema."""

from __future__ import annotations

import sqlite3

from walletrisk.observability.logger import get_logger

log = get_logger(__name__)

SCHEMA_VERSION = 4

_MIGRATIONS: dict[int, list[str]] = {
    1: [
        """
        CREATE TABLE IF NOT EXISTS wallets (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            address TEXT NOT NULL,
            chain_id INTEGER NOT NULL,
            created_at REAL NOT NULL,
            UNIQUE (address, chain_id)
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS portfolio_snapshots (
            id TEXT PRIMARY KEY,
            wallet_id TEXT NOT NULL REFERENCES wallets(id) ON DELETE CASCADE,
            total_usd_value REAL NOT NULL DEFAULT 0,
            positions_json TEXT NOT NULL DEFAULT '[]',
            snapshot_time REAL NOT NULL
        );
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_snapshots_wallet_time
            ON portfolio_snapshots(wallet_id, snapshot_time DESC);
        """,
        """
        CREATE TABLE IF NOT EXISTS strategies (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            name TEXT NOT NULL DEFAULT '',
            kind TEXT NOT NULL,
            params_json TEXT NOT NULL DEFAULT '{}',
            created_at REAL NOT NULL
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS strategy_backtests (
            id TEXT PRIMARY KEY,
            strategy_id TEXT NOT NULL REFERENCES strategies(id) ON DELETE CASCADE,
            equity_curve_json TEXT NOT NULL DEFAULT '[]',
            metrics_json TEXT NOT NULL DEFAULT '{}',
            synthetic INTEGER NOT NULL DEFAULT 0,
            started_at REAL NOT NULL,
            completed_at REAL
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS alert_rules (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            kind TEXT NOT NULL,
            threshold REAL NOT NULL,
            enabled INTEGER NOT NULL DEFAULT 1,
            cooldown_secs INTEGER,
            created_at REAL NOT NULL
        );
        """,
    ],
    2: [
        # Role cache lives on the wallet row
        "ALTER TABLE wallets ADD COLUMN cached_role INTEGER;",
        "ALTER TABLE wallets ADD COLUMN role_cached_at REAL;",
        # One row per sync attempt, insert-only
        """
        CREATE TABLE IF NOT EXISTS sync_runs (
            id TEXT PRIMARY KEY,
            wallet_id TEXT NOT NULL REFERENCES wallets(id) ON DELETE CASCADE,
            status TEXT NOT NULL,
            attempts INTEGER NOT NULL DEFAULT 1,
            error TEXT,
            started_at REAL NOT NULL,
            finished_at REAL NOT NULL
        );
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_sync_runs_wallet
            ON sync_runs(wallet_id, finished_at DESC);
        """,
        """
        CREATE TABLE IF NOT EXISTS alert_triggers (
            id TEXT PRIMARY KEY,
            rule_id TEXT NOT NULL REFERENCES alert_rules(id) ON DELETE CASCADE,
            wallet_id TEXT NOT NULL REFERENCES wallets(id) ON DELETE CASCADE,
            message TEXT NOT NULL,
            created_at REAL NOT NULL
        );
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_alert_triggers_rule
            ON alert_triggers(rule_id, created_at DESC);
        """,
    ],
    3: [
        """
        CREATE TABLE IF NOT EXISTS portfolio_daily_snapshots (
            wallet_id TEXT NOT NULL REFERENCES wallets(id) ON DELETE CASCADE,
            day TEXT NOT NULL,
            total_usd_value REAL NOT NULL,
            positions_json TEXT NOT NULL DEFAULT '[]',
            snapshot_time REAL NOT NULL,
            updated_at REAL NOT NULL,
            PRIMARY KEY (wallet_id, day)
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS wallet_transactions (
            id TEXT PRIMARY KEY,
            wallet_id TEXT NOT NULL REFERENCES wallets(id) ON DELETE CASCADE,
            chain_id INTEGER NOT NULL,
            tx_hash TEXT NOT NULL,
            block_number INTEGER NOT NULL,
            log_index INTEGER NOT NULL,
            kind TEXT NOT NULL DEFAULT 'transfer',
            asset_symbol TEXT NOT NULL,
            amount REAL NOT NULL,
            usd_value REAL NOT NULL,
            direction TEXT NOT NULL,
            from_address TEXT NOT NULL,
            to_address TEXT NOT NULL,
            block_timestamp REAL NOT NULL,
            UNIQUE (wallet_id, tx_hash, log_index)
        );
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_wallet_tx_wallet_block
            ON wallet_transactions(wallet_id, block_number DESC);
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_wallet_tx_wallet_ts
            ON wallet_transactions(wallet_id, block_timestamp);
        """,
        """
        CREATE TABLE IF NOT EXISTS wallet_sync_cursors (
            wallet_id TEXT PRIMARY KEY REFERENCES wallets(id) ON DELETE CASCADE,
            chain_id INTEGER NOT NULL,
            last_block INTEGER NOT NULL DEFAULT 0,
            last_synced_at REAL,
            last_rollup_day TEXT
        );
        """,
    ],
    4: [
        # Prices are TEXT to keep Decimal precision
        """
        CREATE TABLE IF NOT EXISTS price_cache (
            symbol TEXT PRIMARY KEY,
            price TEXT NOT NULL,
            fetched_at REAL NOT NULL,
            expires_at REAL NOT NULL,
            source TEXT NOT NULL DEFAULT 'coingecko'
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS price_history (
            symbol TEXT NOT NULL,
            chain_id INTEGER NOT NULL DEFAULT 0,
            price_ts REAL NOT NULL,
            price TEXT NOT NULL,
            source TEXT NOT NULL DEFAULT 'coingecko',
            PRIMARY KEY (symbol, chain_id, price_ts)
        );
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_price_history_symbol_ts
            ON price_history(symbol, price_ts DESC);
        """,
    ],
}


def run_migrations(conn: sqlite3.Connection) -> None:
    """Run all pending migrations."""
    conn.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER PRIMARY KEY)")
    conn.commit()

    current = _get_current_version(conn)

    for version in sorted(_MIGRATIONS.keys()):
        if version <= current:
            continue
        log.info("migrations.running", version=version)
        with conn:
            for sql in _MIGRATIONS[version]:
                conn.execute(sql)
            conn.execute(
                "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
                (version,),
            )
        log.info("migrations.applied", version=version)

    log.debug("migrations.complete", version=_get_current_version(conn))


def _get_current_version(conn: sqlite3.Connection) -> int:
    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    return row[0] if row and row[0] else 0
