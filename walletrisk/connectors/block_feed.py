"""Block feed: new-head notifications over websockets.

Subscribes to ``eth_subscribe newHeads`` on one chain and invokes the
registered callbacks with ``(chain_id, block_number)``. The sync engine
uses this only to mark a chain's wallets dirty; it is never the source
of truth for balances or logs.

Reconnects with exponential backoff.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Awaitable, Callable

import websockets

from walletrisk.observability.logger import get_logger

log = get_logger(__name__)

HeadCallback = Callable[[int, int], Awaitable[None]]


class BlockFeed:
    """Websocket subscription to new block headers for one chain."""

    def __init__(
        self,
        chain_id: int,
        url: str,
        initial_delay: float = 1.0,
        max_delay: float = 60.0,
    ):
        self.chain_id = chain_id
        self._url = url
        self._callbacks: list[HeadCallback] = []
        self._running = False
        self._initial_delay = initial_delay
        self._reconnect_delay = initial_delay
        self._max_reconnect_delay = max_delay
        self._ws: Any = None
        self.last_block: int | None = None

    def on_head(self, callback: HeadCallback) -> None:
        self._callbacks.append(callback)

    async def start(self) -> None:
        """Run until :meth:`stop`, reconnecting after any connection failure."""
        self._running = True
        while self._running:
            try:
                await self._connect()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if not self._running:
                    break
                log.warning(
                    "block_feed.disconnected",
                    chain_id=self.chain_id,
                    error=str(e),
                    reconnect_delay=self._reconnect_delay,
                )
                await asyncio.sleep(self._reconnect_delay)
                self._reconnect_delay = min(self._reconnect_delay * 2, self._max_reconnect_delay)

    async def stop(self) -> None:
        self._running = False
        if self._ws is not None:
            try:
                await self._ws.close()
            except Exception as e:
                log.debug("block_feed.close_error", chain_id=self.chain_id, error=str(e))

    async def _connect(self) -> None:
        log.info("block_feed.connecting", chain_id=self.chain_id)
        async with websockets.connect(self._url) as ws:
            self._ws = ws
            await ws.send(json.dumps({
                "jsonrpc": "2.0",
                "id": 1,
                "method": "eth_subscribe",
                "params": ["newHeads"],
            }))
            self._reconnect_delay = self._initial_delay
            log.info("block_feed.connected", chain_id=self.chain_id)

            async for raw in ws:
                if not self._running:
                    break
                try:
                    msg = json.loads(raw if isinstance(raw, str) else raw.decode())
                except (ValueError, UnicodeDecodeError) as e:
                    log.debug("block_feed.parse_error", chain_id=self.chain_id, error=str(e))
                    continue
                await self.handle_message(msg)

    async def handle_message(self, msg: dict[str, Any]) -> None:
        """Dispatch one subscription message; anything but a new head is ignored."""
        if msg.get("method") != "eth_subscription":
            return
        head = (msg.get("params") or {}).get("result") or {}
        number = head.get("number")
        if not isinstance(number, str):
            return
        try:
            block_number = int(number, 16)
        except ValueError:
            return
        self.last_block = block_number

        for cb in self._callbacks:
            try:
                await cb(self.chain_id, block_number)
            except Exception as e:
                log.error("block_feed.callback_error", chain_id=self.chain_id, error=str(e))
