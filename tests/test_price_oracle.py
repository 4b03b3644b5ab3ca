"""Tests for the tiered price oracle and the background refresher."""

from __future__ import annotations

import asyncio
import sqlite3
from decimal import Decimal

import pytest

from walletrisk.config import PricingConfig
from walletrisk.errors import DataInvalidError, PriceUnavailableError, TransientError
from walletrisk.pricing.oracle import PriceOracle, PriceSource, SingleFlight
from walletrisk.pricing.refresher import PriceRefresher
from walletrisk.storage.models import PriceCacheRecord, PriceHistoryRecord

from tests.conftest import FakeMarket


def _oracle(db, market, clock, **overrides) -> PriceOracle:
    cfg = PricingConfig(static_prices={}, **overrides)
    return PriceOracle(db, market, cfg, clock=clock)


class TestTiers:

    @pytest.mark.asyncio
    async def test_live_cache_hit_skips_provider(self, db, clock):
        market = FakeMarket({"ETH": "3100"})
        db.upsert_price_cache(PriceCacheRecord(
            symbol="ETH", price=Decimal("3000"), fetched_at=clock(), expires_at=clock() + 60,
        ))
        quote = await _oracle(db, market, clock).get_price("eth")
        assert quote.source == PriceSource.CACHE
        assert quote.price == Decimal("3000")
        assert market.calls == 0

    @pytest.mark.asyncio
    async def test_recent_history_used_when_cache_expired(self, db, clock):
        market = FakeMarket({"ETH": "3100"})
        market.fail_with = TransientError("provider down")
        db.upsert_price_cache(PriceCacheRecord(
            symbol="ETH", price=Decimal("2800"), fetched_at=clock() - 600, expires_at=clock() - 540,
        ))
        db.insert_price_points([PriceHistoryRecord(symbol="ETH", price_ts=clock() - 120, price=Decimal("2990"))])
        quote = await _oracle(db, market, clock).get_price("ETH")
        assert quote.source == PriceSource.HISTORY
        assert quote.price == Decimal("2990")
        assert market.calls == 0

    @pytest.mark.asyncio
    async def test_old_history_falls_through_to_market(self, db, clock):
        market = FakeMarket({"ETH": "3100"})
        db.insert_price_points([PriceHistoryRecord(symbol="ETH", price_ts=clock() - 3600, price=Decimal("2990"))])
        quote = await _oracle(db, market, clock).get_price("ETH")
        assert quote.source == PriceSource.MARKET
        assert quote.price == Decimal("3100")

    @pytest.mark.asyncio
    async def test_market_fetch_writes_cache_and_history(self, db, clock):
        market = FakeMarket({"ETH": "3100"})
        oracle = _oracle(db, market, clock)
        await oracle.get_price("ETH")

        cached = db.get_price_cache("ETH")
        assert cached.price == Decimal("3100")
        assert cached.expires_at == clock() + 60
        assert db.latest_price_point("ETH").price == Decimal("3100")

        # Second call within TTL is a cache hit
        quote = await oracle.get_price("ETH")
        assert quote.source == PriceSource.CACHE
        assert market.calls == 1

    @pytest.mark.asyncio
    async def test_history_writes_are_throttled(self, db, clock):
        market = FakeMarket({"ETH": "3100"})
        oracle = _oracle(db, market, clock, history_min_interval_secs=120)
        await oracle.refresh("ETH")
        clock.advance(30)
        await oracle.refresh("ETH")
        assert len(db.price_range("ETH", 0, clock() + 1)) == 1
        clock.advance(120)
        await oracle.refresh("ETH")
        assert len(db.price_range("ETH", 0, clock() + 1)) == 2

    @pytest.mark.asyncio
    async def test_static_fallback_is_degraded(self, db, clock):
        market = FakeMarket({})
        oracle = PriceOracle(db, market, PricingConfig(static_prices={"USDC": 1.0}), clock=clock)
        quote = await oracle.get_price("USDC")
        assert quote.source == PriceSource.STATIC
        assert quote.degraded
        assert quote.price == Decimal("1.0")

    @pytest.mark.asyncio
    async def test_expired_cache_served_as_stale(self, db, clock):
        market = FakeMarket({})
        db.upsert_price_cache(PriceCacheRecord(
            symbol="ETH", price=Decimal("2800"), fetched_at=clock() - 7200, expires_at=clock() - 7140,
        ))
        quote = await _oracle(db, market, clock).get_price("ETH")
        assert quote.source == PriceSource.STALE
        assert quote.degraded
        assert quote.to_dict()["price"] == "2800"

    @pytest.mark.asyncio
    async def test_unavailable_when_every_tier_fails(self, db, clock):
        with pytest.raises(PriceUnavailableError) as exc:
            await _oracle(db, FakeMarket({}), clock).get_price("NOPE")
        assert exc.value.symbol == "NOPE"

    @pytest.mark.asyncio
    async def test_invalid_provider_price_never_cached(self, db, clock):
        market = FakeMarket({"ETH": "0"})
        with pytest.raises(PriceUnavailableError):
            await _oracle(db, market, clock).get_price("ETH")
        assert db.get_price_cache("ETH") is None
        assert db.latest_price_point("ETH") is None

    @pytest.mark.asyncio
    async def test_refresh_propagates_provider_errors(self, db, clock):
        market = FakeMarket({})
        market.fail_with = DataInvalidError("garbage")
        with pytest.raises(DataInvalidError):
            await _oracle(db, market, clock).refresh("ETH")

    @pytest.mark.asyncio
    async def test_no_provider_refresh_unavailable(self, db, clock):
        oracle = PriceOracle(db, None, PricingConfig(static_prices={}), clock=clock)
        with pytest.raises(PriceUnavailableError):
            await oracle.refresh("ETH")


class TestSingleFlight:

    @pytest.mark.asyncio
    async def test_concurrent_misses_share_one_call(self, db, clock):
        market = FakeMarket({"ETH": "3100"}, delay=0.05)
        oracle = _oracle(db, market, clock)
        quotes = await asyncio.gather(*(oracle.get_price("ETH") for _ in range(10)))
        assert market.calls == 1
        assert oracle.provider_calls == 1
        assert {q.price for q in quotes} == {Decimal("3100")}

    @pytest.mark.asyncio
    async def test_error_shared_and_key_released(self):
        flight = SingleFlight()
        calls = 0

        async def boom():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            raise ValueError("boom")

        results = await asyncio.gather(
            flight.do("k", boom), flight.do("k", boom), return_exceptions=True,
        )
        assert calls == 1
        assert all(isinstance(r, ValueError) for r in results)
        await asyncio.sleep(0)
        assert not flight.in_flight("k")

    @pytest.mark.asyncio
    async def test_different_keys_run_independently(self):
        flight = SingleFlight()

        async def value(v):
            await asyncio.sleep(0.01)
            return v

        a, b = await asyncio.gather(flight.do("a", lambda: value(1)), flight.do("b", lambda: value(2)))
        assert (a, b) == (1, 2)


class TestRefresher:

    @pytest.mark.asyncio
    async def test_refresh_once_reports_failures(self, db, clock):
        market = FakeMarket({"ETH": "3100"})
        oracle = _oracle(db, market, clock)
        refresher = PriceRefresher(db, oracle, PricingConfig(), extra_symbols={"eth", "missing"})
        report = await refresher.refresh_once()
        assert report.refreshed == ["ETH"]
        assert list(report.failed) == ["MISSING"]
        assert db.get_price_cache("ETH") is not None

    @pytest.mark.asyncio
    async def test_store_error_does_not_end_loop(self, db, clock, monkeypatch):
        market = FakeMarket({"ETH": "3100"})
        config = PricingConfig()
        config.refresh_interval_secs = 0.01
        refresher = PriceRefresher(db, _oracle(db, market, clock), config, extra_symbols={"eth"})
        calls = 0

        def locked():
            nonlocal calls
            calls += 1
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(db, "referenced_symbols", locked)
        stop = asyncio.Event()
        task = asyncio.create_task(refresher.run(stop))
        await asyncio.sleep(0.1)
        assert not task.done()
        assert calls >= 2

        monkeypatch.undo()
        await asyncio.sleep(0.05)
        stop.set()
        await asyncio.wait_for(task, timeout=1)
        assert db.get_price_cache("ETH") is not None
