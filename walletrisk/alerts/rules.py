"""Alert rule kinds and their evaluators.

Evaluators are pure functions of an :class:`EvaluationContext`. A rule
without enough data (for example a single snapshot for ``tvl_drop_pct``)
returns a skipped verdict rather than an error.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from walletrisk.errors import ConfigurationError
from walletrisk.storage.models import PortfolioSnapshotRecord, WalletRecord


class RuleKind(str, Enum):
    TVL_DROP_PCT = "tvl_drop_pct"
    TVL_BELOW = "tvl_below"
    EXPOSURE_PCT = "exposure_pct"
    NET_OUTFLOW_PCT = "net_outflow_pct"
    APPROVAL_SPIKE = "approval_spike"


@dataclass
class EvaluationContext:
    wallet: WalletRecord
    latest: PortfolioSnapshotRecord | None
    previous: PortfolioSnapshotRecord | None
    net_flow_usd: float = 0.0
    approval_count: int = 0


@dataclass
class RuleVerdict:
    triggered: bool
    message: str = ""
    skipped_reason: str | None = None

    @property
    def skipped(self) -> bool:
        return self.skipped_reason is not None


def _skip(reason: str) -> RuleVerdict:
    return RuleVerdict(triggered=False, skipped_reason=reason)


def parse_rule(kind: str, threshold: float) -> RuleKind:
    """Validate a rule's kind and threshold."""
    try:
        rule_kind = RuleKind(kind)
    except ValueError as e:
        raise ConfigurationError(f"unknown rule kind {kind!r}") from e
    if threshold is None or math.isnan(threshold) or math.isinf(threshold) or threshold < 0:
        raise ConfigurationError(f"invalid threshold {threshold!r} for {kind}")
    return rule_kind


# ── Evaluators ───────────────────────────────────────────────────────

def eval_tvl_drop_pct(ctx: EvaluationContext, threshold: float) -> RuleVerdict:
    if ctx.latest is None or ctx.previous is None:
        return _skip("needs two snapshots")
    prev_total = ctx.previous.total_usd_value
    if prev_total <= 0:
        return _skip("previous total is zero")
    latest_total = ctx.latest.total_usd_value
    drop_pct = (prev_total - latest_total) / prev_total * 100
    if drop_pct >= threshold:
        return RuleVerdict(True, (
            f"Wallet {ctx.wallet.address} TVL dropped {drop_pct:.2f}% "
            f"({prev_total:.2f} -> {latest_total:.2f})"
        ))
    return RuleVerdict(False)


def eval_tvl_below(ctx: EvaluationContext, threshold: float) -> RuleVerdict:
    if ctx.latest is None:
        return _skip("no snapshot")
    total = ctx.latest.total_usd_value
    if total < threshold:
        return RuleVerdict(True, f"Wallet {ctx.wallet.address} TVL ${total:.2f} below ${threshold:.2f}")
    return RuleVerdict(False)


def eval_exposure_pct(ctx: EvaluationContext, threshold: float) -> RuleVerdict:
    if ctx.latest is None:
        return _skip("no snapshot")
    total = ctx.latest.total_usd_value
    if total <= 0 or not ctx.latest.positions:
        return _skip("empty portfolio")
    top = max(ctx.latest.positions, key=lambda p: p.usd_value)
    share = top.usd_value / total * 100
    if share >= threshold:
        return RuleVerdict(True, f"Wallet {ctx.wallet.address} {top.asset_symbol} exposure {share:.2f}%")
    return RuleVerdict(False)


def eval_net_outflow_pct(ctx: EvaluationContext, threshold: float) -> RuleVerdict:
    if ctx.latest is None:
        return _skip("no snapshot")
    total = ctx.latest.total_usd_value
    if total <= 0:
        return _skip("empty portfolio")
    pct = ctx.net_flow_usd / total * 100
    if pct < -threshold:
        return RuleVerdict(True, (
            f"Wallet {ctx.wallet.address} net outflow {-pct:.2f}% "
            f"(~${-ctx.net_flow_usd:.2f}) past 24h"
        ))
    return RuleVerdict(False)


def eval_approval_spike(ctx: EvaluationContext, threshold: float) -> RuleVerdict:
    if ctx.approval_count > threshold:
        return RuleVerdict(True, f"Wallet {ctx.wallet.address} saw {ctx.approval_count} approvals")
    return RuleVerdict(False)


EVALUATORS: dict[RuleKind, Callable[[EvaluationContext, float], RuleVerdict]] = {
    RuleKind.TVL_DROP_PCT: eval_tvl_drop_pct,
    RuleKind.TVL_BELOW: eval_tvl_below,
    RuleKind.EXPOSURE_PCT: eval_exposure_pct,
    RuleKind.NET_OUTFLOW_PCT: eval_net_outflow_pct,
    RuleKind.APPROVAL_SPIKE: eval_approval_spike,
}


def evaluate(kind: RuleKind, ctx: EvaluationContext, threshold: float) -> RuleVerdict:
    return EVALUATORS[kind](ctx, threshold)
