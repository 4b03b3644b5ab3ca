"""Tests for the TTL-bound role cache."""

from __future__ import annotations

import asyncio

import pytest

from walletrisk.config import RolesConfig
from walletrisk.errors import NotFoundError, RoleUnavailableError, TransientError
from walletrisk.roles.cache import Role, RoleCache
from walletrisk.storage.models import WalletRecord


def _cache(db, chain, clock, **cfg) -> RoleCache:
    return RoleCache(db, chain, RolesConfig(**cfg), clock=clock)


class TestTTL:

    @pytest.mark.asyncio
    async def test_first_lookup_reads_chain_and_caches(self, db, chain, clock, wallet):
        chain.roles[wallet.address] = 1
        lookup = await _cache(db, chain, clock).get_role(wallet.id)
        assert lookup.role == Role.ADMIN
        assert lookup.refreshed
        stored = db.get_wallet(wallet.id)
        assert stored.cached_role == 1
        assert stored.role_cached_at == clock()

    @pytest.mark.asyncio
    async def test_chain_override_ttl(self, db, chain, clock, wallet):
        chain.roles[wallet.address] = 2
        cache = _cache(db, chain, clock, ttl_default_secs=300, ttl_overrides={1: 600})
        await cache.get_role(wallet.id)
        assert chain.role_calls == 1

        clock.advance(500)
        lookup = await cache.get_role(wallet.id)
        assert not lookup.refreshed
        assert chain.role_calls == 1

        clock.advance(200)
        lookup = await cache.get_role(wallet.id)
        assert lookup.refreshed
        assert chain.role_calls == 2

    @pytest.mark.asyncio
    async def test_default_ttl_for_other_chains(self, db, chain, clock):
        bsc = WalletRecord(user_id="u", address="0xbsc", chain_id=56)
        db.insert_wallet(bsc)
        cache = _cache(db, chain, clock, ttl_default_secs=300, ttl_overrides={1: 600})
        await cache.get_role(bsc.id)
        clock.advance(301)
        await cache.get_role(bsc.id)
        assert chain.role_calls == 2

    @pytest.mark.asyncio
    async def test_force_refresh_bypasses_ttl(self, db, chain, clock, wallet):
        cache = _cache(db, chain, clock)
        await cache.get_role(wallet.id)
        chain.roles[wallet.address] = 1
        lookup = await cache.get_role(wallet.id, force_refresh=True)
        assert lookup.role == Role.ADMIN
        assert chain.role_calls == 2

    @pytest.mark.asyncio
    async def test_concurrent_lookups_share_refresh(self, db, chain, clock, wallet):
        cache = _cache(db, chain, clock)
        await asyncio.gather(*(cache.get_role(wallet.id) for _ in range(5)))
        assert chain.role_calls == 1


class TestFailures:

    @pytest.mark.asyncio
    async def test_unknown_wallet(self, db, chain, clock):
        with pytest.raises(NotFoundError):
            await _cache(db, chain, clock).get_role("missing")

    @pytest.mark.asyncio
    async def test_stale_role_served_on_chain_failure(self, db, chain, clock, wallet):
        chain.roles[wallet.address] = 2
        cache = _cache(db, chain, clock)
        await cache.get_role(wallet.id)
        cached_at = clock()

        clock.advance(1000)
        chain.role_error = TransientError("rpc down")
        lookup = await cache.get_role(wallet.id)
        assert lookup.stale
        assert lookup.role == Role.VIEWER
        assert lookup.cached_at == cached_at

    @pytest.mark.asyncio
    async def test_no_prior_role_raises(self, db, chain, clock, wallet):
        chain.role_error = TransientError("rpc down")
        with pytest.raises(RoleUnavailableError):
            await _cache(db, chain, clock).get_role(wallet.id)

    @pytest.mark.asyncio
    async def test_unknown_role_value_is_invalid(self, db, chain, clock, wallet):
        chain.roles[wallet.address] = 9
        with pytest.raises(RoleUnavailableError):
            await _cache(db, chain, clock).get_role(wallet.id)
        assert db.get_wallet(wallet.id).cached_role is None


class TestRefreshAll:

    @pytest.mark.asyncio
    async def test_report_counts(self, db, chain, clock, wallet):
        other = WalletRecord(user_id="u", address="0xother", chain_id=1)
        db.insert_wallet(other)
        chain.roles[wallet.address] = 1
        report = await _cache(db, chain, clock).refresh_all()
        assert report.total == 2
        assert report.refreshed == 2
        assert report.failed == 0

    @pytest.mark.asyncio
    async def test_failures_counted_not_raised(self, db, chain, clock, wallet):
        cache = _cache(db, chain, clock)
        await cache.get_role(wallet.id)
        db.insert_wallet(WalletRecord(user_id="u", address="0xnew", chain_id=1))

        chain.role_error = TransientError("rpc down")
        report = await cache.refresh_all()
        assert report.total == 2
        assert report.refreshed == 0
        assert report.failed == 2
        assert len(report.errors) == 2
