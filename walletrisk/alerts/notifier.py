"""Alert delivery: log plus optional chat webhooks.

Supported channels:
  - Log (always)
  - Discord (webhook)
  - Slack (webhook)

Delivery failures are logged and never propagate; the trigger row is
already persisted by the time a notification is sent.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

import httpx

from walletrisk.config import AlertsConfig
from walletrisk.connectors.rate_limiter import rate_limiter
from walletrisk.observability.logger import get_logger
from walletrisk.storage.models import AlertTriggerRecord

log = get_logger(__name__)


@dataclass
class Notification:
    """One delivered trigger and the channels it reached."""
    rule_id: str
    wallet_id: str
    kind: str
    message: str
    timestamp: float = 0.0
    channels_sent: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.timestamp == 0.0:
            self.timestamp = time.time()

    def to_dict(self) -> dict[str, Any]:
        return self.__dict__


class AlertNotifier:
    def __init__(self, config: AlertsConfig, client: httpx.AsyncClient | None = None):
        self._config = config
        self._client = client
        self._owns_client = client is None
        self._history: list[Notification] = []

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._config.webhook_timeout_secs)
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def notify(self, trigger: AlertTriggerRecord, kind: str) -> Notification:
        note = Notification(
            rule_id=trigger.rule_id,
            wallet_id=trigger.wallet_id,
            kind=kind,
            message=trigger.message,
            timestamp=trigger.created_at,
        )
        log.warning(
            "alert.triggered",
            rule_id=trigger.rule_id,
            wallet_id=trigger.wallet_id,
            kind=kind,
            message=trigger.message[:200],
        )
        note.channels_sent.append("log")

        if self._config.discord_webhook_url:
            try:
                await self._send_discord(note)
                note.channels_sent.append("discord")
            except httpx.HTTPError as e:
                log.error("alert.discord_error", error=str(e))

        if self._config.slack_webhook_url:
            try:
                await self._send_slack(note)
                note.channels_sent.append("slack")
            except httpx.HTTPError as e:
                log.error("alert.slack_error", error=str(e))

        self._history.append(note)
        if len(self._history) > 500:
            self._history = self._history[-250:]
        return note

    async def _post(self, url: str, payload: dict[str, Any]) -> None:
        await rate_limiter.get("webhook").acquire()
        client = await self._get_client()
        resp = await client.post(url, json=payload)
        resp.raise_for_status()

    async def _send_discord(self, note: Notification) -> None:
        await self._post(self._config.discord_webhook_url, {
            "embeds": [{
                "title": f"Wallet alert: {note.kind}",
                "description": note.message,
                "color": 0xE74C3C,
                "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(note.timestamp)),
            }]
        })

    async def _send_slack(self, note: Notification) -> None:
        await self._post(self._config.slack_webhook_url, {
            "text": f":rotating_light: *{note.kind}*\n{note.message}",
        })

    def get_history(self, limit: int = 50) -> list[dict[str, Any]]:
        return [n.to_dict() for n in self._history[-limit:]]
