"""EVM chain access over JSON-RPC.

The sync engine and role cache only depend on the :class:`ChainClient`
protocol; :class:`JsonRpcChainClient` is the production implementation
talking plain JSON-RPC over httpx. Only ERC-20 ``Transfer`` and
``Approval`` logs are decoded.

Error mapping:
  - timeouts, connection errors, HTTP 429/5xx, RPC limit errors → TransientError
  - malformed results or logs                                  → DataInvalidError
  - missing endpoint or role manager address                   → ConfigurationError
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
from Crypto.Hash import keccak

from walletrisk.config import ChainsConfig, TokenConfig
from walletrisk.connectors.rate_limiter import rate_limiter, rpc_bucket
from walletrisk.errors import ConfigurationError, DataInvalidError, TransientError
from walletrisk.observability.logger import get_logger

log = get_logger(__name__)

NATIVE_DECIMALS = 18

# JSON-RPC error codes providers use for throttling / overload
_TRANSIENT_RPC_CODES = frozenset({-32005, -32603, 429})


# ── ABI helpers ──────────────────────────────────────────────────────

def keccak_hex(text: str) -> str:
    h = keccak.new(digest_bits=256)
    h.update(text.encode())
    return h.hexdigest()


def selector(signature: str) -> str:
    """4-byte function selector, ``0x``-prefixed."""
    return "0x" + keccak_hex(signature)[:8]


def event_topic(signature: str) -> str:
    return "0x" + keccak_hex(signature)


BALANCE_OF = selector("balanceOf(address)")
GET_ROLE = selector("getRole(address)")
TRANSFER_TOPIC = event_topic("Transfer(address,address,uint256)")
APPROVAL_TOPIC = event_topic("Approval(address,address,uint256)")


def address_topic(address: str) -> str:
    """Left-pad a 20-byte address to a 32-byte topic."""
    return "0x" + address.lower().removeprefix("0x").rjust(64, "0")


def topic_address(topic: str) -> str:
    raw = topic.lower().removeprefix("0x")
    if len(raw) != 64:
        raise DataInvalidError(f"topic is not 32 bytes: {topic!r}")
    return "0x" + raw[24:]


def parse_hex_int(value: Any, field: str = "value") -> int:
    if not isinstance(value, str) or not value.startswith("0x"):
        raise DataInvalidError(f"{field} is not a hex quantity: {value!r}")
    if value == "0x":
        return 0
    try:
        return int(value, 16)
    except ValueError as e:
        raise DataInvalidError(f"{field} is not a hex quantity: {value!r}") from e


def scale(raw: int, decimals: int) -> float:
    return raw / (10 ** decimals)


# ── Data types ───────────────────────────────────────────────────────

@dataclass
class Balance:
    """Holding of one asset, already scaled by its decimals."""
    symbol: str
    amount: float
    raw: int = 0


@dataclass
class ChainEvent:
    """A decoded ERC-20 Transfer or Approval log touching a wallet."""
    kind: str  # transfer | approval
    tx_hash: str
    block_number: int
    log_index: int
    symbol: str
    amount: float
    direction: str  # in | out
    from_address: str
    to_address: str
    block_timestamp: float

    @property
    def key(self) -> tuple[str, int]:
        return (self.tx_hash, self.log_index)


class ChainClient(Protocol):
    async def get_block_number(self, chain_id: int) -> int: ...

    async def get_balances(self, address: str, chain_id: int) -> list[Balance]: ...

    async def get_logs_since(
        self, address: str, chain_id: int, from_block: int, to_block: int,
    ) -> list[ChainEvent]: ...

    async def get_role(self, address: str, chain_id: int) -> int: ...


# ── JSON-RPC client ──────────────────────────────────────────────────

class JsonRpcChainClient:
    """ChainClient over raw JSON-RPC, one httpx client per endpoint."""

    def __init__(self, config: ChainsConfig):
        self._config = config
        self._clients: dict[str, httpx.AsyncClient] = {}
        self._ids = itertools.count(1)

    async def close(self) -> None:
        for client in self._clients.values():
            await client.aclose()
        self._clients.clear()

    def _client_for(self, chain_id: int) -> httpx.AsyncClient:
        url = self._config.rpc_url_for(chain_id)
        client = self._clients.get(url)
        if client is None:
            client = httpx.AsyncClient(
                timeout=self._config.request_timeout_secs,
                headers={"Content-Type": "application/json"},
            )
            self._clients[url] = client
        return client

    async def _rpc(self, chain_id: int, method: str, params: list[Any]) -> Any:
        url = self._config.rpc_url_for(chain_id)
        client = self._client_for(chain_id)
        await rate_limiter.get(rpc_bucket(chain_id)).acquire()
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            resp = await client.post(url, json=payload)
        except httpx.TimeoutException as e:
            raise TransientError(f"{method} timed out on chain {chain_id}") from e
        except httpx.TransportError as e:
            raise TransientError(f"{method} transport error on chain {chain_id}: {e}") from e

        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientError(f"{method} HTTP {resp.status_code} on chain {chain_id}")
        if resp.status_code in (401, 403, 404):
            raise ConfigurationError(f"RPC endpoint for chain {chain_id} rejected request ({resp.status_code})")
        if resp.status_code >= 400:
            raise DataInvalidError(f"{method} HTTP {resp.status_code} on chain {chain_id}")

        try:
            body = resp.json()
        except ValueError as e:
            raise DataInvalidError(f"{method} returned non-JSON body") from e
        if not isinstance(body, dict):
            raise DataInvalidError(f"{method} returned unexpected payload")

        error = body.get("error")
        if error:
            code = error.get("code") if isinstance(error, dict) else None
            message = error.get("message", "") if isinstance(error, dict) else str(error)
            if code in _TRANSIENT_RPC_CODES or "rate limit" in str(message).lower():
                raise TransientError(f"{method} RPC error {code}: {message}")
            raise DataInvalidError(f"{method} RPC error {code}: {message}")
        if "result" not in body:
            raise DataInvalidError(f"{method} response has no result")
        return body["result"]

    # ── ChainClient ──────────────────────────────────────────────────

    async def get_block_number(self, chain_id: int) -> int:
        return parse_hex_int(await self._rpc(chain_id, "eth_blockNumber", []), "blockNumber")

    async def get_balances(self, address: str, chain_id: int) -> list[Balance]:
        """Native balance plus every configured token on the chain; zero balances are omitted."""
        balances: list[Balance] = []
        raw_native = parse_hex_int(
            await self._rpc(chain_id, "eth_getBalance", [address, "latest"]), "balance",
        )
        if raw_native > 0:
            balances.append(Balance(
                symbol=self._config.native_symbol_for(chain_id),
                amount=scale(raw_native, NATIVE_DECIMALS),
                raw=raw_native,
            ))
        for token in self._config.tokens_for(chain_id):
            data = BALANCE_OF + address.lower().removeprefix("0x").rjust(64, "0")
            result = await self._rpc(
                chain_id, "eth_call", [{"to": token.address, "data": data}, "latest"],
            )
            raw = parse_hex_int(result, f"{token.symbol}.balanceOf")
            if raw > 0:
                balances.append(Balance(symbol=token.symbol, amount=scale(raw, token.decimals), raw=raw))
        return balances

    async def get_logs_since(
        self, address: str, chain_id: int, from_block: int, to_block: int,
    ) -> list[ChainEvent]:
        tokens = {t.address: t for t in self._config.tokens_for(chain_id)}
        if not tokens or from_block > to_block:
            return []
        wallet = address.lower()
        wallet_topic = address_topic(wallet)
        base = {
            "address": list(tokens),
            "fromBlock": hex(from_block),
            "toBlock": hex(to_block),
        }
        queries = [
            [TRANSFER_TOPIC, wallet_topic],
            [TRANSFER_TOPIC, None, wallet_topic],
            [APPROVAL_TOPIC, wallet_topic],
        ]
        raw_logs: list[dict[str, Any]] = []
        for topics in queries:
            result = await self._rpc(chain_id, "eth_getLogs", [{**base, "topics": topics}])
            if not isinstance(result, list):
                raise DataInvalidError("eth_getLogs result is not a list")
            raw_logs.extend(result)

        block_times: dict[int, float] = {}
        events: dict[tuple[str, int], ChainEvent] = {}
        for raw in raw_logs:
            event = await self._decode_log(raw, wallet, tokens, chain_id, block_times)
            if event.kind == "transfer" and event.from_address == event.to_address:
                # Self-transfers net to zero
                continue
            events.setdefault(event.key, event)
        return sorted(events.values(), key=lambda e: (e.block_number, e.log_index))

    async def _decode_log(
        self,
        raw: dict[str, Any],
        wallet: str,
        tokens: dict[str, TokenConfig],
        chain_id: int,
        block_times: dict[int, float],
    ) -> ChainEvent:
        if not isinstance(raw, dict):
            raise DataInvalidError("log entry is not an object")
        topics = raw.get("topics") or []
        token = tokens.get(str(raw.get("address", "")).lower())
        if token is None or len(topics) < 3:
            raise DataInvalidError(f"unexpected log shape: {raw.get('transactionHash')}")
        tx_hash = raw.get("transactionHash")
        if not isinstance(tx_hash, str) or not tx_hash:
            raise DataInvalidError("log has no transaction hash")

        block_number = parse_hex_int(raw.get("blockNumber"), "blockNumber")
        log_index = parse_hex_int(raw.get("logIndex"), "logIndex")
        first, second = topic_address(topics[1]), topic_address(topics[2])
        amount = scale(parse_hex_int(raw.get("data") or "0x", "data"), token.decimals)

        if topics[0].lower() == APPROVAL_TOPIC:
            kind, direction = "approval", "out"
        else:
            kind = "transfer"
            direction = "in" if second == wallet else "out"

        if block_number not in block_times:
            block_times[block_number] = await self._block_timestamp(chain_id, block_number)

        return ChainEvent(
            kind=kind,
            tx_hash=tx_hash.lower(),
            block_number=block_number,
            log_index=log_index,
            symbol=token.symbol,
            amount=amount,
            direction=direction,
            from_address=first,
            to_address=second,
            block_timestamp=block_times[block_number],
        )

    async def _block_timestamp(self, chain_id: int, block_number: int) -> float:
        block = await self._rpc(chain_id, "eth_getBlockByNumber", [hex(block_number), False])
        if not isinstance(block, dict):
            raise DataInvalidError(f"block {block_number} not found")
        return float(parse_hex_int(block.get("timestamp"), "timestamp"))

    async def get_role(self, address: str, chain_id: int) -> int:
        manager = self._config.role_manager_address
        if not manager:
            raise ConfigurationError("role manager address is not configured")
        data = GET_ROLE + address.lower().removeprefix("0x").rjust(64, "0")
        result = await self._rpc(chain_id, "eth_call", [{"to": manager, "data": data}, "latest"])
        return parse_hex_int(result, "getRole")
