"""Tests for the chain RPC, CoinGecko and block feed connectors."""

from __future__ import annotations

import json
from decimal import Decimal
from unittest.mock import AsyncMock

import httpx
import pytest

from walletrisk.config import ChainsConfig, TokenConfig
from walletrisk.connectors.block_feed import BlockFeed
from walletrisk.connectors.chain_rpc import (
    APPROVAL_TOPIC,
    BALANCE_OF,
    TRANSFER_TOPIC,
    JsonRpcChainClient,
    address_topic,
    parse_hex_int,
    topic_address,
)
from walletrisk.connectors.coingecko import CoinGeckoClient, parse_price
from walletrisk.connectors.rate_limiter import RateLimiterRegistry, rate_limiter, rpc_bucket
from walletrisk.errors import ConfigurationError, DataInvalidError, TransientError

WALLET = "0xabc0000000000000000000000000000000000001"
PEER = "0x00000000000000000000000000000000000000ff"
USDC = "0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48"
RPC_URL = "https://rpc.test"


@pytest.fixture(autouse=True)
def _fast_buckets():
    rate_limiter.configure(rpc_bucket(1), 1000.0, 1000)
    rate_limiter.configure("coingecko", 1000.0, 1000)


def _rpc_client(handler, **cfg) -> JsonRpcChainClient:
    config = ChainsConfig(
        default_rpc_url=RPC_URL,
        tokens=[TokenConfig(symbol="USDC", address=USDC, decimals=6, chain_id=1)],
        **cfg,
    )
    client = JsonRpcChainClient(config)
    client._clients[RPC_URL] = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return client


def _result(request: httpx.Request, result) -> httpx.Response:
    body = json.loads(request.content)
    return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})


# ── ABI helpers ──────────────────────────────────────────────────────

class TestAbiHelpers:

    def test_known_selectors(self):
        assert BALANCE_OF == "0x70a08231"
        assert TRANSFER_TOPIC == "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
        assert APPROVAL_TOPIC == "0x8c5be1e5ebec7d5bd14f71427d1e84f3dd0314c0f7b2291e5b200ac8c7c3b925"

    def test_address_topic_round_trip(self):
        topic = address_topic(WALLET.upper().replace("0X", "0x"))
        assert len(topic) == 66
        assert topic_address(topic) == WALLET

    def test_topic_address_rejects_short(self):
        with pytest.raises(DataInvalidError):
            topic_address("0x1234")

    @pytest.mark.parametrize("value,expected", [("0x0", 0), ("0x", 0), ("0x1a", 26)])
    def test_parse_hex_int(self, value, expected):
        assert parse_hex_int(value) == expected

    @pytest.mark.parametrize("value", [None, 12, "12", "0xzz"])
    def test_parse_hex_int_rejects(self, value):
        with pytest.raises(DataInvalidError):
            parse_hex_int(value)


# ── JSON-RPC client ──────────────────────────────────────────────────

class TestJsonRpcChainClient:

    @pytest.mark.asyncio
    async def test_block_number(self):
        client = _rpc_client(lambda r: _result(r, "0x3e8"))
        assert await client.get_block_number(1) == 1000
        await client.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("response,error", [
        (httpx.Response(429), TransientError),
        (httpx.Response(503), TransientError),
        (httpx.Response(401), ConfigurationError),
        (httpx.Response(400), DataInvalidError),
        (httpx.Response(200, text="not json"), DataInvalidError),
        (httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "error": {"code": -32005, "message": "limit"}}),
         TransientError),
        (httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "error": {"code": -32000, "message": "rate limit hit"}}),
         TransientError),
        (httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "error": {"code": -32602, "message": "bad params"}}),
         DataInvalidError),
        (httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": "zz"}), DataInvalidError),
    ])
    async def test_error_mapping(self, response, error):
        client = _rpc_client(lambda r: response)
        with pytest.raises(error):
            await client.get_block_number(1)
        await client.close()

    @pytest.mark.asyncio
    async def test_transport_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = _rpc_client(handler)
        with pytest.raises(TransientError):
            await client.get_block_number(1)
        await client.close()

    @pytest.mark.asyncio
    async def test_missing_endpoint(self):
        client = JsonRpcChainClient(ChainsConfig())
        with pytest.raises(ConfigurationError):
            await client.get_block_number(1)

    @pytest.mark.asyncio
    async def test_balances_scaled_and_zero_omitted(self):
        def handler(request):
            body = json.loads(request.content)
            if body["method"] == "eth_getBalance":
                return _result(request, hex(2 * 10**18))
            call = body["params"][0]
            assert call["to"] == USDC
            assert call["data"].startswith(BALANCE_OF)
            return _result(request, "0x0")

        client = _rpc_client(handler)
        balances = await client.get_balances(WALLET, 1)
        assert [(b.symbol, b.amount) for b in balances] == [("ETH", 2.0)]
        await client.close()

    @pytest.mark.asyncio
    async def test_logs_decoded_and_deduped(self):
        outgoing = {
            "address": USDC,
            "topics": [TRANSFER_TOPIC, address_topic(WALLET), address_topic(PEER)],
            "data": hex(5 * 10**6),
            "blockNumber": "0x10",
            "logIndex": "0x1",
            "transactionHash": "0xAA",
        }
        incoming = {
            "address": USDC,
            "topics": [TRANSFER_TOPIC, address_topic(PEER), address_topic(WALLET)],
            "data": hex(7 * 10**6),
            "blockNumber": "0x0f",
            "logIndex": "0x0",
            "transactionHash": "0xbb",
        }
        approval = {
            "address": USDC,
            "topics": [APPROVAL_TOPIC, address_topic(WALLET), address_topic(PEER)],
            "data": hex(10**6),
            "blockNumber": "0x10",
            "logIndex": "0x2",
            "transactionHash": "0xcc",
        }
        block_calls = 0

        def handler(request):
            nonlocal block_calls
            body = json.loads(request.content)
            if body["method"] == "eth_getBlockByNumber":
                block_calls += 1
                return _result(request, {"timestamp": "0x64"})
            topics = body["params"][0]["topics"]
            if topics[0] == APPROVAL_TOPIC:
                return _result(request, [approval])
            if len(topics) == 2:
                return _result(request, [outgoing])
            # Node repeats a log across pages
            return _result(request, [incoming, incoming])

        client = _rpc_client(handler)
        events = await client.get_logs_since(WALLET, 1, 1, 100)
        assert [(e.tx_hash, e.log_index) for e in events] == [("0xbb", 0), ("0xaa", 1), ("0xcc", 2)]
        assert events[0].direction == "in"
        assert events[0].amount == 7.0
        assert events[1].direction == "out"
        assert events[2].kind == "approval"
        assert all(e.block_timestamp == 100.0 for e in events)
        assert block_calls == 2
        await client.close()

    @pytest.mark.asyncio
    async def test_self_transfer_dropped(self):
        self_transfer = {
            "address": USDC,
            "topics": [TRANSFER_TOPIC, address_topic(WALLET), address_topic(WALLET)],
            "data": hex(5 * 10**6),
            "blockNumber": "0x10",
            "logIndex": "0x1",
            "transactionHash": "0xaa",
        }

        def handler(request):
            body = json.loads(request.content)
            if body["method"] == "eth_getBlockByNumber":
                return _result(request, {"timestamp": "0x64"})
            if body["params"][0]["topics"][0] == APPROVAL_TOPIC:
                return _result(request, [])
            # Matches both the sender and the recipient query
            return _result(request, [self_transfer])

        client = _rpc_client(handler)
        assert await client.get_logs_since(WALLET, 1, 1, 100) == []
        await client.close()

    @pytest.mark.asyncio
    async def test_role_requires_manager(self):
        client = _rpc_client(lambda r: _result(r, "0x1"))
        with pytest.raises(ConfigurationError):
            await client.get_role(WALLET, 1)
        await client.close()

    @pytest.mark.asyncio
    async def test_role_read(self):
        client = _rpc_client(lambda r: _result(r, "0x" + "0" * 63 + "2"), role_manager_address="0xrole")
        assert await client.get_role(WALLET, 1) == 2
        await client.close()


# ── CoinGecko ────────────────────────────────────────────────────────

def _gecko(handler) -> CoinGeckoClient:
    client = CoinGeckoClient(base_url="https://gecko.test")
    client._client = httpx.AsyncClient(
        base_url="https://gecko.test", transport=httpx.MockTransport(handler),
    )
    return client


class TestCoinGecko:

    @pytest.mark.parametrize("value", [None, True, "abc", 0, -1, "NaN", "Infinity"])
    def test_parse_price_rejects(self, value):
        with pytest.raises(DataInvalidError):
            parse_price(value, "ETH")

    def test_parse_price_keeps_precision(self):
        assert parse_price("3012.123456789", "ETH") == Decimal("3012.123456789")

    @pytest.mark.asyncio
    async def test_get_price(self):
        def handler(request):
            assert request.url.params["ids"] == "binancecoin"
            return httpx.Response(200, json={"binancecoin": {"usd": 612.5}})

        client = _gecko(handler)
        assert await client.get_price("bnb") == Decimal("612.5")
        await client.close()

    @pytest.mark.asyncio
    async def test_market_chart_drops_invalid_points(self):
        payload = {"prices": [[2000, 11.0], [1000, 10.0], [3000, 0], [4000, None], "junk"]}
        client = _gecko(lambda r: httpx.Response(200, json=payload))
        points = await client.get_market_chart("ETH", 7)
        assert points == [(1.0, Decimal("10.0")), (2.0, Decimal("11.0"))]
        await client.close()

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self):
        calls = 0

        def handler(request):
            nonlocal calls
            calls += 1
            return httpx.Response(404)

        client = _gecko(handler)
        with pytest.raises(DataInvalidError):
            await client.get_price("ETH")
        assert calls == 1
        await client.close()


# ── Block feed ───────────────────────────────────────────────────────

class TestBlockFeed:

    @pytest.mark.asyncio
    async def test_new_head_dispatched(self):
        feed = BlockFeed(1, "wss://feed.test")
        callback = AsyncMock()
        feed.on_head(callback)
        await feed.handle_message({
            "jsonrpc": "2.0",
            "method": "eth_subscription",
            "params": {"subscription": "0x1", "result": {"number": "0x1b4"}},
        })
        callback.assert_awaited_once_with(1, 436)
        assert feed.last_block == 436

    @pytest.mark.asyncio
    async def test_other_messages_ignored(self):
        feed = BlockFeed(1, "wss://feed.test")
        callback = AsyncMock()
        feed.on_head(callback)
        await feed.handle_message({"jsonrpc": "2.0", "id": 1, "result": "0xsub"})
        await feed.handle_message({"method": "eth_subscription", "params": {"result": {"number": "zz"}}})
        callback.assert_not_awaited()
        assert feed.last_block is None

    @pytest.mark.asyncio
    async def test_callback_error_does_not_break_feed(self):
        feed = BlockFeed(56, "wss://feed.test")
        failing = AsyncMock(side_effect=RuntimeError("boom"))
        ok = AsyncMock()
        feed.on_head(failing)
        feed.on_head(ok)
        await feed.handle_message({"method": "eth_subscription", "params": {"result": {"number": "0x2"}}})
        ok.assert_awaited_once_with(56, 2)


# ── Rate limiting ────────────────────────────────────────────────────

class TestRateLimiter:

    def test_burst_then_empty(self):
        registry = RateLimiterRegistry()
        registry.configure("rpc:1", 0.001, 2)
        bucket = registry.get("rpc:1")
        assert bucket.try_acquire()
        assert bucket.try_acquire()
        assert not bucket.try_acquire()
        assert bucket.wait_time() > 0
        assert registry.stats()["rpc:1"]["granted"] == 2

    def test_family_defaults(self):
        registry = RateLimiterRegistry()
        registry.get("rpc:56")
        registry.get("coingecko")
        assert set(registry.stats()) == {"rpc:56", "coingecko"}
