"""Alert evaluation engine.

Every tick evaluates each enabled rule against all wallets owned by the
rule's user. A rule that evaluates true writes a trigger only when no
trigger for the same rule exists within its cooldown; otherwise the
evaluation is suppressed. ``simulate`` runs the same path for a single
rule on demand and is subject to the same cooldown.
"""

from __future__ import annotations

import asyncio
import sqlite3
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from walletrisk.alerts.notifier import AlertNotifier
from walletrisk.alerts.rules import EvaluationContext, evaluate, parse_rule
from walletrisk.config import AlertsConfig
from walletrisk.errors import NotFoundError, WalletRiskError
from walletrisk.observability.logger import get_logger, log_context
from walletrisk.storage.database import Database
from walletrisk.storage.models import AlertRuleRecord, AlertTriggerRecord, WalletRecord

log = get_logger(__name__)


@dataclass
class RuleOutcome:
    rule_id: str
    wallet_id: str | None
    status: str  # triggered | suppressed | not_triggered | skipped | error
    message: str = ""
    trigger_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return self.__dict__


@dataclass
class EvaluationReport:
    started_at: float
    rules: int = 0
    outcomes: list[RuleOutcome] = field(default_factory=list)

    def count(self, status: str) -> int:
        return sum(1 for o in self.outcomes if o.status == status)

    @property
    def triggered(self) -> int:
        return self.count("triggered")

    @property
    def suppressed(self) -> int:
        return self.count("suppressed")

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at,
            "rules": self.rules,
            "triggered": self.triggered,
            "suppressed": self.suppressed,
            "skipped": self.count("skipped"),
            "errors": self.count("error"),
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


class AlertEngine:
    def __init__(
        self,
        db: Database,
        config: AlertsConfig,
        notifier: AlertNotifier | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._db = db
        self._config = config
        self._notifier = notifier
        self._clock = clock

    async def tick(self) -> EvaluationReport:
        report = EvaluationReport(started_at=self._clock())
        rules = self._db.list_rules(enabled_only=True)
        report.rules = len(rules)
        for rule in rules:
            with log_context(rule_id=rule.id):
                try:
                    report.outcomes.extend(await self._evaluate_rule(rule))
                except (sqlite3.Error, WalletRiskError) as e:
                    log.error("alerts.rule_failed", kind=rule.kind, error=str(e))
                    report.outcomes.append(RuleOutcome(rule.id, None, "error", str(e)))
        log.info(
            "alerts.tick_complete",
            rules=report.rules,
            triggered=report.triggered,
            suppressed=report.suppressed,
        )
        return report

    async def simulate(self, rule_id: str) -> list[RuleOutcome]:
        """Evaluate one rule now, enabled or not. Cooldown still applies."""
        rule = self._db.get_rule(rule_id)
        if rule is None:
            raise NotFoundError(f"alert rule {rule_id} not found")
        with log_context(rule_id=rule.id, simulated=True):
            return await self._evaluate_rule(rule)

    def _context(self, wallet: WalletRecord, now: float) -> EvaluationContext:
        snaps = self._db.latest_snapshots(wallet.id, limit=2)
        return EvaluationContext(
            wallet=wallet,
            latest=snaps[0] if snaps else None,
            previous=snaps[1] if len(snaps) > 1 else None,
            net_flow_usd=self._db.net_flow_since(wallet.id, now - self._config.net_flow_window_secs),
            approval_count=self._db.approval_count_since(wallet.id, now - self._config.approval_window_secs),
        )

    async def _evaluate_rule(self, rule: AlertRuleRecord) -> list[RuleOutcome]:
        kind = parse_rule(rule.kind, rule.threshold)
        cooldown = rule.cooldown_secs if rule.cooldown_secs is not None else self._config.default_cooldown_secs
        outcomes: list[RuleOutcome] = []

        for wallet in self._db.list_wallets(user_id=rule.user_id):
            now = self._clock()
            verdict = evaluate(kind, self._context(wallet, now), rule.threshold)
            if verdict.skipped:
                outcomes.append(RuleOutcome(rule.id, wallet.id, "skipped", verdict.skipped_reason or ""))
                continue
            if not verdict.triggered:
                outcomes.append(RuleOutcome(rule.id, wallet.id, "not_triggered"))
                continue

            last = self._db.last_trigger_at(rule.id)
            if last is not None and now - last < cooldown:
                log.debug("alerts.cooldown", wallet_id=wallet.id, remaining=round(cooldown - (now - last), 1))
                outcomes.append(RuleOutcome(rule.id, wallet.id, "suppressed", verdict.message))
                continue

            trigger = AlertTriggerRecord(
                rule_id=rule.id, wallet_id=wallet.id, message=verdict.message, created_at=now,
            )
            self._db.insert_trigger(trigger)
            if self._notifier is not None:
                await self._notifier.notify(trigger, kind.value)
            outcomes.append(RuleOutcome(rule.id, wallet.id, "triggered", verdict.message, trigger.id))
        return outcomes

    async def run(self, stop_event: asyncio.Event) -> None:
        interval = self._config.tick_interval_secs
        log.info("alerts.started", interval_secs=interval)
        while not stop_event.is_set():
            try:
                await self.tick()
            except sqlite3.Error as e:
                log.error("alerts.tick_failed", error=str(e))
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        log.info("alerts.stopped")
