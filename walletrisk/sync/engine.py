"""Portfolio sync engine.

Each tick:
  1. Enumerate due wallets (interval elapsed, never synced, or dirty)
  2. Sync them concurrently, bounded by ``max_concurrency``
  3. Per wallet: balances → new Transfer/Approval logs → valuation →
     one atomic write of snapshot, transactions and cursor
  4. Roll the latest snapshot of each day into the daily table
  5. Append a run record for every attempt

A wallet already being synced is skipped, so it is never processed by
two workers at once. One wallet's failure never affects the others.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import sqlite3
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable

from walletrisk.config import SyncConfig
from walletrisk.connectors.chain_rpc import ChainClient, ChainEvent
from walletrisk.errors import ExhaustedError, WalletRiskError
from walletrisk.observability.logger import get_logger, log_context
from walletrisk.pricing.oracle import PriceOracle
from walletrisk.storage.database import Database
from walletrisk.storage.models import (
    DailySnapshotRecord,
    PortfolioSnapshotRecord,
    Position,
    SyncCursorRecord,
    SyncRunRecord,
    WalletRecord,
    WalletTransactionRecord,
)
from walletrisk.sync.retry import SyncOutcome, SyncStatus, run_with_retry

log = get_logger(__name__)


def day_of(ts: float) -> str:
    return dt.datetime.fromtimestamp(ts, tz=dt.timezone.utc).strftime("%Y-%m-%d")


def day_start(day: str) -> float:
    return dt.datetime.strptime(day, "%Y-%m-%d").replace(tzinfo=dt.timezone.utc).timestamp()


@dataclass
class TickReport:
    """Summary of one sync tick."""
    started_at: float
    finished_at: float = 0.0
    due: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    outcomes: dict[str, SyncOutcome] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "due": self.due,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "outcomes": {k: v.to_dict() for k, v in self.outcomes.items()},
        }


class PortfolioSyncEngine:
    def __init__(
        self,
        db: Database,
        chain: ChainClient,
        oracle: PriceOracle,
        config: SyncConfig,
        clock: Callable[[], float] = time.time,
    ):
        self._db = db
        self._chain = chain
        self._oracle = oracle
        self._config = config
        self._clock = clock
        self._semaphore = asyncio.Semaphore(config.max_concurrency)
        self._semaphore_size = config.max_concurrency
        self._dirty: set[str] = set()
        self._inflight: set[str] = set()
        self._workers: set[asyncio.Task[SyncOutcome]] = set()
        self._stop_event: asyncio.Event | None = None
        self._task: asyncio.Task[None] | None = None

    # ── Dirty marking ────────────────────────────────────────────────

    def mark_dirty(self, wallet_id: str) -> None:
        self._dirty.add(wallet_id)

    def mark_chain_dirty(self, chain_id: int) -> int:
        wallets = self._db.list_wallets(chain_id=chain_id)
        self._dirty.update(w.id for w in wallets)
        return len(wallets)

    async def on_new_head(self, chain_id: int, block_number: int) -> None:
        """Block feed callback."""
        marked = self.mark_chain_dirty(chain_id)
        log.debug("sync.new_head", chain_id=chain_id, block=block_number, marked=marked)

    @property
    def dirty(self) -> frozenset[str]:
        return frozenset(self._dirty)

    # ── Tick ─────────────────────────────────────────────────────────

    async def tick(self) -> TickReport:
        report = TickReport(started_at=self._clock())
        if self._semaphore_size != self._config.max_concurrency and not self._workers:
            # Reloaded bound; no worker holds the old semaphore between ticks
            self._semaphore = asyncio.Semaphore(self._config.max_concurrency)
            self._semaphore_size = self._config.max_concurrency
        due = self._db.list_wallets_due(
            report.started_at, self._config.sync_interval_secs, sorted(self._dirty),
        )
        report.due = len(due)

        tasks: dict[str, asyncio.Task[SyncOutcome]] = {}
        for wallet in due:
            if wallet.id in self._inflight:
                report.skipped += 1
                continue
            self._inflight.add(wallet.id)
            self._dirty.discard(wallet.id)
            tasks[wallet.id] = asyncio.create_task(self._sync_one(wallet))
        self._workers.update(tasks.values())

        try:
            outcomes = await asyncio.gather(*tasks.values())
        except BaseException:
            # Cancelled or a worker raised: abandon every sibling before unwinding
            await self._cancel_workers(tasks.values())
            raise
        finally:
            self._workers.difference_update(tasks.values())

        for wallet_id, outcome in zip(tasks, outcomes):
            report.outcomes[wallet_id] = outcome
            if outcome.ok:
                report.succeeded += 1
            else:
                report.failed += 1

        report.finished_at = self._clock()
        log.info(
            "sync.tick_complete",
            due=report.due,
            succeeded=report.succeeded,
            failed=report.failed,
            skipped=report.skipped,
            duration_secs=round(report.finished_at - report.started_at, 3),
        )
        return report

    async def _sync_one(self, wallet: WalletRecord) -> SyncOutcome:
        try:
            async with self._semaphore:
                with log_context(wallet_id=wallet.id, chain_id=wallet.chain_id):
                    started = self._clock()
                    outcome = await run_with_retry(
                        lambda: self.sync_wallet(wallet),
                        max_attempts=self._config.max_retries,
                        backoff_secs=self._config.retry_backoff_secs,
                        backoff_max_secs=self._config.retry_backoff_max_secs,
                    )
                    self._db.insert_sync_run(SyncRunRecord(
                        wallet_id=wallet.id,
                        status=outcome.status.value,
                        attempts=outcome.attempts,
                        error=outcome.error,
                        started_at=started,
                        finished_at=self._clock(),
                    ))
                    if outcome.status is SyncStatus.FAILED_FATAL:
                        log.error("sync.wallet_failed", error=outcome.error, attempts=outcome.attempts)
                    elif outcome.status is SyncStatus.FAILED_RETRYABLE:
                        log.warning("sync.wallet_failed", error=outcome.error, attempts=outcome.attempts)
                    return outcome
        finally:
            self._inflight.discard(wallet.id)

    # ── One attempt ──────────────────────────────────────────────────

    async def sync_wallet(self, wallet: WalletRecord) -> None:
        """Fetch, value and persist one wallet. Raises on any failure."""
        latest_block = await self._chain.get_block_number(wallet.chain_id)
        cursor = self._db.get_cursor(wallet.id)
        if cursor is not None and cursor.last_block > 0:
            from_block = cursor.last_block + 1
        else:
            from_block = max(0, latest_block - self._config.initial_lookback_blocks)
        to_block = min(latest_block, from_block + self._config.max_block_range - 1)

        balances = await self._chain.get_balances(wallet.address, wallet.chain_id)
        events: list[ChainEvent] = []
        if from_block <= to_block:
            events = await self._chain.get_logs_since(
                wallet.address, wallet.chain_id, from_block, to_block,
            )

        seen = self._db.existing_tx_keys(wallet.id, [e.key for e in events])
        fresh: list[ChainEvent] = []
        for event in events:
            if event.key in seen:
                continue
            seen.add(event.key)
            fresh.append(event)

        prices: dict[str, Decimal | None] = {}
        positions: list[Position] = []
        for bal in balances:
            price = await self._price(bal.symbol, wallet.chain_id, prices)
            usd = bal.amount * float(price) if price is not None else 0.0
            positions.append(Position(asset_symbol=bal.symbol, amount=bal.amount, usd_value=usd))

        transactions: list[WalletTransactionRecord] = []
        for event in fresh:
            signed = event.amount if event.direction == "in" else -event.amount
            usd = 0.0
            if event.kind == "transfer":
                price = await self._price(event.symbol, wallet.chain_id, prices)
                usd = signed * float(price) if price is not None else 0.0
            transactions.append(WalletTransactionRecord(
                wallet_id=wallet.id,
                chain_id=wallet.chain_id,
                tx_hash=event.tx_hash,
                block_number=event.block_number,
                log_index=event.log_index,
                kind=event.kind,
                asset_symbol=event.symbol,
                amount=signed if event.kind == "transfer" else event.amount,
                usd_value=usd,
                direction=event.direction,
                from_address=event.from_address,
                to_address=event.to_address,
                block_timestamp=event.block_timestamp,
            ))

        now = self._clock()
        latest = self._db.latest_snapshot(wallet.id)
        snapshot_time = now
        if latest is not None and snapshot_time <= latest.snapshot_time:
            snapshot_time = latest.snapshot_time + 1e-6

        snapshot = PortfolioSnapshotRecord(
            wallet_id=wallet.id,
            total_usd_value=sum(p.usd_value for p in positions),
            positions=positions,
            snapshot_time=snapshot_time,
        )
        self._db.write_sync_result(
            snapshot,
            transactions,
            SyncCursorRecord(
                wallet_id=wallet.id,
                chain_id=wallet.chain_id,
                last_block=to_block,
                last_synced_at=now,
            ),
        )
        if to_block < latest_block:
            # Still catching up; pick the wallet up again next tick
            self._dirty.add(wallet.id)

        log.info(
            "sync.wallet_synced",
            total_usd=round(snapshot.total_usd_value, 2),
            positions=len(positions),
            new_transactions=len(transactions),
            from_block=from_block,
            to_block=to_block,
        )

        try:
            self.rollup(wallet.id)
        except (sqlite3.Error, WalletRiskError) as e:
            log.warning("sync.rollup_failed", error=str(e))

    async def _price(
        self, symbol: str, chain_id: int, memo: dict[str, Decimal | None],
    ) -> Decimal | None:
        if symbol not in memo:
            try:
                memo[symbol] = (await self._oracle.get_price(symbol, chain_id)).price
            except ExhaustedError as e:
                log.warning("sync.price_unavailable", symbol=symbol, error=str(e))
                memo[symbol] = None
        return memo[symbol]

    # ── Daily rollup ─────────────────────────────────────────────────

    def rollup(self, wallet_id: str) -> int:
        """Upsert the latest snapshot of each day since the last rolled-up day."""
        cursor = self._db.get_cursor(wallet_id)
        since = day_start(cursor.last_rollup_day) if cursor and cursor.last_rollup_day else 0.0

        latest_per_day: dict[str, PortfolioSnapshotRecord] = {}
        for snap in self._db.snapshots_since(wallet_id, since):
            latest_per_day[day_of(snap.snapshot_time)] = snap
        if not latest_per_day:
            return 0

        for day in sorted(latest_per_day):
            snap = latest_per_day[day]
            self._db.upsert_daily_snapshot(DailySnapshotRecord(
                wallet_id=wallet_id,
                day=day,
                total_usd_value=snap.total_usd_value,
                positions=snap.positions,
                snapshot_time=snap.snapshot_time,
            ))
        if cursor is not None:
            self._db.upsert_cursor(SyncCursorRecord(
                wallet_id=wallet_id,
                chain_id=cursor.chain_id,
                last_block=cursor.last_block,
                last_rollup_day=max(latest_per_day),
            ))
        return len(latest_per_day)

    # ── Loop ─────────────────────────────────────────────────────────

    async def run(self, stop_event: asyncio.Event) -> None:
        interval = self._config.tick_interval_secs
        log.info("sync.started", interval_secs=interval, max_concurrency=self._config.max_concurrency)
        while not stop_event.is_set():
            try:
                await self.tick()
            except (sqlite3.Error, WalletRiskError) as e:
                log.error("sync.tick_failed", error=str(e))
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        log.info("sync.stopped")

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self.run(self._stop_event))

    async def stop(self) -> None:
        """Stop ticking; in-flight wallets get ``shutdown_grace_secs`` to finish."""
        if self._task is None or self._stop_event is None:
            return
        self._stop_event.set()
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=self._config.shutdown_grace_secs)
        except asyncio.TimeoutError:
            log.warning("sync.shutdown_cancelled", inflight=len(self._inflight))
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        await self._cancel_workers(list(self._workers))
        self._task = None

    @staticmethod
    async def _cancel_workers(workers) -> None:
        pending = [w for w in workers if not w.done()]
        for worker in pending:
            worker.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
