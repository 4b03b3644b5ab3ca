"""CLI entry point for the wallet risk platform.

Commands:
  walletrisk run                       Run all background loops
  walletrisk sync-once [--wallet ID]   Run one sync tick
  walletrisk price SYMBOL              Resolve a USD price through the oracle
  walletrisk fetch-prices SYMBOL       Warm price history from the market chart
  walletrisk roles get WALLET_ID       Show a wallet's (cached) role
  walletrisk roles refresh             Force-refresh every wallet's role
  walletrisk alerts evaluate           Run one alert tick
  walletrisk alerts simulate RULE_ID   Evaluate one rule now (cooldown applies)
  walletrisk alerts add-rule           Create an alert rule
  walletrisk wallets add ADDRESS       Track a wallet
  walletrisk strategies add NAME       Create a strategy
  walletrisk backtest STRATEGY_ID      Backtest a strategy and store the result
  walletrisk status                    Wallets, snapshots and recent sync runs
"""

from __future__ import annotations

import asyncio
import json
import sys
from typing import Any, Awaitable, Callable, TypeVar

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from walletrisk.config import AppConfig, ConfigWatcher, load_config
from walletrisk.errors import WalletRiskError
from walletrisk.observability.logger import configure_logging, get_logger

load_dotenv()

console = Console()
log = get_logger(__name__)

T = TypeVar("T")


def _run(coro: Awaitable[T]) -> T:
    """Run an async coroutine from sync CLI."""
    return asyncio.run(coro)  # type: ignore[arg-type]


def _with_services(cfg: AppConfig, fn: Callable[[Any], Awaitable[T]]) -> T:
    """Build services, run ``fn(services)``, always close them."""
    from walletrisk.engine.loop import build_services

    async def _go() -> T:
        services = build_services(cfg)
        try:
            return await fn(services)
        finally:
            await services.aclose()

    try:
        return _run(_go())
    except WalletRiskError as e:
        console.print(f"[red]❌ {type(e).__name__}: {e}[/red]")
        sys.exit(1)


@click.group()
@click.option("--config", "config_path", default=None, help="Path to config.yaml")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None) -> None:
    """Multi-chain wallet risk platform."""
    ctx.ensure_object(dict)
    cfg = load_config(config_path)
    ctx.obj["config"] = cfg
    ctx.obj["config_path"] = config_path
    configure_logging(
        level=cfg.observability.log_level,
        fmt="console",  # CLI always uses console format
        log_file=cfg.observability.log_file,
    )


# ─── RUN ─────────────────────────────────────────────────────────────

@cli.command()
@click.pass_context
def run(ctx: click.Context) -> None:
    """Run sync, price refresh and alert loops until interrupted."""
    cfg: AppConfig = ctx.obj["config"]

    console.print("[bold cyan]Starting wallet risk engine[/bold cyan]")
    console.print(f"  Sync tick: {cfg.sync.tick_interval_secs}s (interval {cfg.sync.sync_interval_secs}s)")
    console.print(f"  Max concurrent syncs: {cfg.sync.max_concurrency}")
    console.print(f"  Price refresh: {cfg.pricing.refresh_interval_secs}s")
    console.print(f"  Alert tick: {cfg.alerts.tick_interval_secs}s")
    console.print(f"  Block feeds: {len(cfg.chains.ws_urls) if cfg.sync.ws_trigger_enabled else 0}")
    console.print()

    async def _run_engine(services: Any) -> None:
        from walletrisk.engine.loop import EngineRunner

        watcher = ConfigWatcher(ctx.obj["config_path"]) if ctx.obj["config_path"] else None
        runner = EngineRunner(services, watcher=watcher)
        await runner.start()
        console.print("\n[yellow]Engine stopped.[/yellow]")

    _with_services(cfg, _run_engine)


# ─── SYNC ────────────────────────────────────────────────────────────

@cli.command("sync-once")
@click.option("--wallet", "wallet_id", default=None, help="Force this wallet into the tick")
@click.pass_context
def sync_once(ctx: click.Context, wallet_id: str | None) -> None:
    """Run a single sync tick."""
    cfg: AppConfig = ctx.obj["config"]

    async def _tick(services: Any) -> Any:
        if wallet_id:
            services.sync.mark_dirty(wallet_id)
        return await services.sync.tick()

    report = _with_services(cfg, _tick)

    table = Table(title=f"🔄 Sync Tick ({report.due} due)")
    table.add_column("Wallet", style="dim")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Error", max_width=60)
    for wid, outcome in report.outcomes.items():
        style = "green" if outcome.ok else "red"
        table.add_row(wid, f"[{style}]{outcome.status.value}[/{style}]", str(outcome.attempts), outcome.error or "")
    console.print(table)


# ─── PRICES ──────────────────────────────────────────────────────────

@cli.command()
@click.argument("symbol")
@click.option("--chain", "chain_id", default=0, help="Chain id (0 = any)")
@click.option("--refresh", is_flag=True, help="Bypass cache and history")
@click.pass_context
def price(ctx: click.Context, symbol: str, chain_id: int, refresh: bool) -> None:
    """Resolve a USD price."""
    cfg: AppConfig = ctx.obj["config"]

    async def _price(services: Any) -> Any:
        if refresh:
            return await services.oracle.refresh(symbol)
        return await services.oracle.get_price(symbol, chain_id)

    quote = _with_services(cfg, _price)
    color = "yellow" if quote.degraded else "green"
    console.print(
        f"[bold]{quote.symbol}[/bold] [{color}]${quote.price}[/{color}] "
        f"(source: {quote.source.value}{', degraded' if quote.degraded else ''})"
    )


@cli.command("fetch-prices")
@click.argument("symbol")
@click.option("--days", default=30, help="Days of history to fetch")
@click.pass_context
def fetch_prices(ctx: click.Context, symbol: str, days: int) -> None:
    """Warm price history for backtests."""
    cfg: AppConfig = ctx.obj["config"]

    async def _fetch(services: Any) -> int:
        return await services.backtest_loader.warm(symbol, days)

    inserted = _with_services(cfg, _fetch)
    console.print(f"[green]✓ {inserted} price points stored for {symbol.upper()}[/green]")


# ─── ROLES ───────────────────────────────────────────────────────────

@cli.group()
def roles() -> None:
    """On-chain role cache commands."""


@roles.command("get")
@click.argument("wallet_id")
@click.option("--force", is_flag=True, help="Force a chain read")
@click.pass_context
def roles_get(ctx: click.Context, wallet_id: str, force: bool) -> None:
    """Show a wallet's role."""
    cfg: AppConfig = ctx.obj["config"]
    lookup = _with_services(cfg, lambda s: s.roles.get_role(wallet_id, force_refresh=force))
    flag = " [yellow](stale)[/yellow]" if lookup.stale else ""
    console.print(f"[bold]{wallet_id}[/bold]: {lookup.role.name}{flag}")


@roles.command("refresh")
@click.pass_context
def roles_refresh(ctx: click.Context) -> None:
    """Force-refresh every tracked wallet's role."""
    cfg: AppConfig = ctx.obj["config"]
    report = _with_services(cfg, lambda s: s.roles.refresh_all())

    table = Table(title="🔑 Role Refresh")
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    table.add_row("Wallets", str(report.total))
    table.add_row("Refreshed", f"[green]{report.refreshed}[/green]")
    table.add_row("Failed", f"[red]{report.failed}[/red]" if report.failed else "0")
    console.print(table)
    for wid, err in report.errors.items():
        console.print(f"  [red]{wid}[/red]: {err}")


# ─── ALERTS ──────────────────────────────────────────────────────────

@cli.group()
def alerts() -> None:
    """Alert rule commands."""


def _print_outcomes(title: str, outcomes: list[Any]) -> None:
    table = Table(title=title)
    table.add_column("Rule", style="dim")
    table.add_column("Wallet", style="dim")
    table.add_column("Status")
    table.add_column("Message", max_width=70)
    colors = {"triggered": "red", "suppressed": "yellow", "error": "red"}
    for o in outcomes:
        c = colors.get(o.status, "white")
        table.add_row(o.rule_id[:12], (o.wallet_id or "")[:12], f"[{c}]{o.status}[/{c}]", o.message)
    console.print(table)


@alerts.command("evaluate")
@click.pass_context
def alerts_evaluate(ctx: click.Context) -> None:
    """Run one alert tick over every enabled rule."""
    cfg: AppConfig = ctx.obj["config"]
    report = _with_services(cfg, lambda s: s.alerts.tick())
    _print_outcomes(f"🔔 Alert Tick ({report.rules} rules)", report.outcomes)


@alerts.command("simulate")
@click.argument("rule_id")
@click.pass_context
def alerts_simulate(ctx: click.Context, rule_id: str) -> None:
    """Evaluate a single rule now."""
    cfg: AppConfig = ctx.obj["config"]
    outcomes = _with_services(cfg, lambda s: s.alerts.simulate(rule_id))
    _print_outcomes("🔔 Simulated Rule", outcomes)


@alerts.command("add-rule")
@click.option("--user", "user_id", required=True)
@click.option("--kind", required=True, type=click.Choice([
    "tvl_drop_pct", "tvl_below", "exposure_pct", "net_outflow_pct", "approval_spike",
]))
@click.option("--threshold", required=True, type=float)
@click.option("--cooldown", "cooldown_secs", default=None, type=int, help="Seconds between triggers")
@click.pass_context
def alerts_add_rule(
    ctx: click.Context, user_id: str, kind: str, threshold: float, cooldown_secs: int | None,
) -> None:
    """Create an alert rule."""
    from walletrisk.alerts.rules import parse_rule
    from walletrisk.storage.models import AlertRuleRecord

    cfg: AppConfig = ctx.obj["config"]

    async def _add(services: Any) -> str:
        parse_rule(kind, threshold)
        return services.db.insert_rule(AlertRuleRecord(
            user_id=user_id, kind=kind, threshold=threshold, cooldown_secs=cooldown_secs,
        ))

    console.print(f"[green]✓ Rule {_with_services(cfg, _add)} created[/green]")


# ─── WALLETS & STRATEGIES ────────────────────────────────────────────

@cli.group()
def wallets() -> None:
    """Tracked wallet commands."""


@wallets.command("add")
@click.argument("address")
@click.option("--chain", "chain_id", default=1, help="Chain id")
@click.option("--user", "user_id", required=True)
@click.pass_context
def wallets_add(ctx: click.Context, address: str, chain_id: int, user_id: str) -> None:
    """Track a wallet."""
    from walletrisk.storage.models import WalletRecord

    cfg: AppConfig = ctx.obj["config"]

    async def _add(services: Any) -> str:
        return services.db.insert_wallet(WalletRecord(user_id=user_id, address=address, chain_id=chain_id))

    console.print(f"[green]✓ Wallet {_with_services(cfg, _add)} tracked[/green]")


@cli.group()
def strategies() -> None:
    """Strategy commands."""


@strategies.command("add")
@click.argument("name")
@click.option("--user", "user_id", required=True)
@click.option("--kind", default="ma_cross", type=click.Choice(["ma_cross", "volatility", "correlation"]))
@click.option("--params", "params_json", default="{}", help="JSON object of strategy parameters")
@click.pass_context
def strategies_add(ctx: click.Context, name: str, user_id: str, kind: str, params_json: str) -> None:
    """Create a strategy."""
    from walletrisk.storage.models import StrategyRecord

    cfg: AppConfig = ctx.obj["config"]
    try:
        params = json.loads(params_json)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"invalid JSON: {e}", param_hint="--params")

    async def _add(services: Any) -> str:
        return services.db.insert_strategy(StrategyRecord(user_id=user_id, name=name, kind=kind, params=params))

    console.print(f"[green]✓ Strategy {_with_services(cfg, _add)} created[/green]")


@cli.command()
@click.argument("strategy_id")
@click.option("--symbol", default=None, help="Override the strategy's symbol")
@click.option("--days", default=None, type=int, help="Days of history")
@click.pass_context
def backtest(ctx: click.Context, strategy_id: str, symbol: str | None, days: int | None) -> None:
    """Backtest a strategy and store the result."""
    cfg: AppConfig = ctx.obj["config"]
    result = _with_services(cfg, lambda s: s.backtest.run(strategy_id, symbol=symbol, days=days))

    if result.synthetic:
        console.print("[yellow]⚠ No real price data; synthetic series used.[/yellow]")
    table = Table(title=f"📈 Backtest {result.id[:12]}")
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    for key, value in result.metrics.items():
        if isinstance(value, float):
            table.add_row(key, f"{value:.4f}")
        elif not isinstance(value, list):
            table.add_row(key, str(value))
    console.print(table)


# ─── STATUS ──────────────────────────────────────────────────────────

@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show tracked wallets with their latest snapshot and sync state."""
    from walletrisk.storage.database import Database

    cfg: AppConfig = ctx.obj["config"]
    db = Database(cfg.storage)
    db.connect()
    try:
        table = Table(title="👛 Wallets")
        table.add_column("ID", style="dim", max_width=12)
        table.add_column("Chain", justify="right")
        table.add_column("Address", max_width=44)
        table.add_column("Total USD", justify="right", style="green")
        table.add_column("Last Block", justify="right")
        table.add_column("Last Run")
        for w in db.list_wallets():
            snap = db.latest_snapshot(w.id)
            cursor = db.get_cursor(w.id)
            runs = db.get_sync_runs(w.id, limit=1)
            table.add_row(
                w.id[:12],
                str(w.chain_id),
                w.address,
                f"${snap.total_usd_value:,.2f}" if snap else "-",
                str(cursor.last_block) if cursor else "-",
                runs[0].status if runs else "-",
            )
        console.print(table)
    finally:
        db.close()


if __name__ == "__main__":
    cli()
