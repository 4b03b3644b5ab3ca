"""On-chain role cache.

A wallet's role is read from the role manager contract and cached on the
wallet row with its timestamp. Reads within the chain's TTL are served
from the row; expired or forced reads call the chain. When the chain call
fails the last-known role is returned marked stale.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Callable

from walletrisk.config import RolesConfig
from walletrisk.connectors.chain_rpc import ChainClient
from walletrisk.errors import DataInvalidError, NotFoundError, RoleUnavailableError, WalletRiskError
from walletrisk.observability.logger import get_logger, log_context
from walletrisk.storage.database import Database
from walletrisk.storage.models import WalletRecord

log = get_logger(__name__)


class Role(IntEnum):
    NONE = 0
    ADMIN = 1
    VIEWER = 2


@dataclass
class RoleLookup:
    role: Role
    cached_at: float
    stale: bool = False
    refreshed: bool = False


@dataclass
class RoleRefreshReport:
    total: int = 0
    refreshed: int = 0
    failed: int = 0
    errors: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return self.__dict__


class RoleCache:
    def __init__(
        self,
        db: Database,
        chain: ChainClient,
        config: RolesConfig,
        clock: Callable[[], float] = time.time,
    ):
        self._db = db
        self._chain = chain
        self._config = config
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, wallet_id: str) -> asyncio.Lock:
        lock = self._locks.get(wallet_id)
        if lock is None:
            lock = self._locks[wallet_id] = asyncio.Lock()
        return lock

    def _fresh(self, wallet: WalletRecord, now: float) -> bool:
        if wallet.cached_role is None or wallet.role_cached_at is None:
            return False
        return now - wallet.role_cached_at < self._config.ttl_for(wallet.chain_id)

    async def get_role(self, wallet_id: str, force_refresh: bool = False) -> RoleLookup:
        wallet = self._db.get_wallet(wallet_id)
        if wallet is None:
            raise NotFoundError(f"wallet {wallet_id} not found")
        if not force_refresh and self._fresh(wallet, self._clock()):
            return RoleLookup(Role(wallet.cached_role), wallet.role_cached_at)

        async with self._lock_for(wallet_id):
            # Another waiter may have refreshed while we queued
            wallet = self._db.get_wallet(wallet_id) or wallet
            if not force_refresh and self._fresh(wallet, self._clock()):
                return RoleLookup(Role(wallet.cached_role), wallet.role_cached_at)
            return await self._refresh(wallet)

    async def _refresh(self, wallet: WalletRecord) -> RoleLookup:
        with log_context(wallet_id=wallet.id, chain_id=wallet.chain_id):
            try:
                raw = await self._chain.get_role(wallet.address, wallet.chain_id)
                try:
                    role = Role(raw)
                except ValueError as e:
                    raise DataInvalidError(f"unknown role value {raw}") from e
            except WalletRiskError as e:
                if wallet.cached_role is None or wallet.role_cached_at is None:
                    log.error("roles.unavailable", error=str(e))
                    raise RoleUnavailableError(wallet.id, e) from e
                log.warning("roles.serving_stale", error=str(e), cached_at=wallet.role_cached_at)
                return RoleLookup(Role(wallet.cached_role), wallet.role_cached_at, stale=True)

            now = self._clock()
            self._db.update_wallet_role(wallet.id, int(role), now)
            log.info("roles.refreshed", role=role.name)
            return RoleLookup(role, now, refreshed=True)

    async def refresh_all(self) -> RoleRefreshReport:
        """Force-refresh every tracked wallet; failures are counted, never raised."""
        report = RoleRefreshReport()
        for wallet in self._db.list_wallets():
            report.total += 1
            try:
                lookup = await self.get_role(wallet.id, force_refresh=True)
            except WalletRiskError as e:
                report.failed += 1
                report.errors[wallet.id] = str(e)
                continue
            if lookup.stale:
                report.failed += 1
                report.errors[wallet.id] = "refresh failed; serving last known role"
            else:
                report.refreshed += 1
        log.info(
            "roles.refresh_all_complete",
            total=report.total, refreshed=report.refreshed, failed=report.failed,
        )
        return report
