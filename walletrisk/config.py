"""Shared configuration loader and Pydantic settings.

Supports:
  - YAML file loading with env var overrides
  - Hot-reload via file watcher
  - All subsystem configs: storage, chains, sync, pricing, roles,
    alerts, backtest, observability, engine
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Callable, List

import yaml
from pydantic import BaseModel, Field, field_validator

from walletrisk.errors import ConfigurationError
from walletrisk.observability.logger import get_logger

log = get_logger(__name__)

_PROJECT_ROOT = Path(__file__).resolve().parent.parent


class StorageConfig(BaseModel):
    sqlite_path: str = "data/walletrisk.db"


class TokenConfig(BaseModel):
    """An ERC-20 token tracked on one chain."""
    symbol: str
    address: str
    decimals: int = 18
    chain_id: int = 1

    @field_validator("address")
    @classmethod
    def _lower_address(cls, v: str) -> str:
        return v.lower()


class ChainsConfig(BaseModel):
    """RPC endpoints and token lists per chain."""
    rpc_urls: dict[int, str] = Field(default_factory=dict)
    ws_urls: dict[int, str] = Field(default_factory=dict)
    default_rpc_url: str = ""
    native_symbols: dict[int, str] = Field(default_factory=lambda: {56: "BNB"})
    default_native_symbol: str = "ETH"
    tokens: list[TokenConfig] = Field(default_factory=list)
    role_manager_address: str = ""
    request_timeout_secs: float = 10.0
    requests_per_second: float = 10.0
    max_burst: int = 20

    def rpc_url_for(self, chain_id: int) -> str:
        url = self.rpc_urls.get(chain_id) or self.default_rpc_url
        if not url:
            raise ConfigurationError(f"no RPC endpoint configured for chain {chain_id}")
        return url

    def native_symbol_for(self, chain_id: int) -> str:
        return self.native_symbols.get(chain_id, self.default_native_symbol)

    def tokens_for(self, chain_id: int) -> list[TokenConfig]:
        return [t for t in self.tokens if t.chain_id == chain_id]


class SyncConfig(BaseModel):
    """Portfolio sync engine configuration."""
    enabled: bool = True
    sync_interval_secs: int = 900
    tick_interval_secs: int = 30
    max_concurrency: int = 4
    max_retries: int = 3
    retry_backoff_secs: float = 2.0
    retry_backoff_max_secs: float = 30.0
    initial_lookback_blocks: int = 500
    max_block_range: int = 5000
    ws_trigger_enabled: bool = True
    shutdown_grace_secs: float = 10.0

    @field_validator("max_concurrency", "max_retries")
    @classmethod
    def _at_least_one(cls, v: int) -> int:
        return max(1, v)


class PricingConfig(BaseModel):
    """Price oracle configuration."""
    coingecko_api_base: str = "https://api.coingecko.com/api/v3"
    coingecko_ids: dict[str, str] = Field(default_factory=dict)
    price_cache_ttl_secs: int = 60
    history_staleness_secs: int = 300
    history_min_interval_secs: int = 60
    refresh_interval_secs: int = 60
    request_timeout_secs: float = 15.0
    static_prices: dict[str, float] = Field(default_factory=lambda: {
        "ETH": 3000.0, "BNB": 600.0, "USDC": 1.0,
    })

    @field_validator("price_cache_ttl_secs")
    @classmethod
    def _min_ttl(cls, v: int) -> int:
        return max(10, v)

    @field_validator("refresh_interval_secs")
    @classmethod
    def _min_refresh(cls, v: int) -> int:
        return max(30, v)


class RolesConfig(BaseModel):
    """On-chain role cache configuration."""
    ttl_default_secs: int = 300
    ttl_overrides: dict[int, int] = Field(default_factory=dict)

    def ttl_for(self, chain_id: int) -> int:
        return self.ttl_overrides.get(chain_id, self.ttl_default_secs)


class AlertsConfig(BaseModel):
    """Alert evaluation and delivery configuration."""
    enabled: bool = True
    tick_interval_secs: int = 60
    default_cooldown_secs: int = 300
    net_flow_window_secs: int = 86400
    approval_window_secs: int = 3600
    discord_webhook_url: str = ""
    slack_webhook_url: str = ""
    webhook_timeout_secs: float = 10.0


class BacktestConfig(BaseModel):
    default_symbol: str = "ETH"
    default_days: int = 30
    synthetic_min_points: int = 7
    synthetic_seed: int = 42


class ObservabilityConfig(BaseModel):
    log_level: str = "INFO"
    log_format: str = "json"
    log_file: str = "logs/walletrisk.log"


class EngineConfig(BaseModel):
    """Top-level process runner configuration."""
    run_sync: bool = True
    run_price_refresh: bool = True
    run_alerts: bool = True


class AppConfig(BaseModel):
    storage: StorageConfig = Field(default_factory=StorageConfig)
    chains: ChainsConfig = Field(default_factory=ChainsConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    pricing: PricingConfig = Field(default_factory=PricingConfig)
    roles: RolesConfig = Field(default_factory=RolesConfig)
    alerts: AlertsConfig = Field(default_factory=AlertsConfig)
    backtest: BacktestConfig = Field(default_factory=BacktestConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)


# ── Env var parsing ──────────────────────────────────────────────────

def parse_chain_map(raw: str) -> dict[int, str]:
    """Parse ``"1=https://a,56=https://b"`` into ``{1: ..., 56: ...}``."""
    out: dict[int, str] = {}
    for item in raw.split(","):
        chain, _, value = item.strip().partition("=")
        if not chain or not value.strip():
            continue
        try:
            out[int(chain)] = value.strip()
        except ValueError:
            continue
    return out


def parse_chain_ttls(raw: str) -> dict[int, int]:
    """Parse ``"1=600,56=120"`` into per-chain TTL seconds."""
    out: dict[int, int] = {}
    for chain_id, value in parse_chain_map(raw).items():
        try:
            out[chain_id] = int(value)
        except ValueError:
            continue
    return out


def parse_token_prices(raw: str) -> dict[str, float]:
    out: dict[str, float] = {}
    for item in raw.split(","):
        symbol, _, value = item.partition("=")
        symbol = symbol.strip().upper()
        try:
            price = float(value)
        except ValueError:
            continue
        if symbol:
            out[symbol] = price
    return out


def parse_tokens(raw: str) -> list[TokenConfig]:
    """Parse ``SYMBOL:address:decimals[:chain_id]`` entries."""
    tokens: list[TokenConfig] = []
    for item in raw.split(","):
        parts = [p.strip() for p in item.strip().split(":")]
        if len(parts) < 3 or not parts[0] or not parts[1]:
            continue
        try:
            decimals = int(parts[2])
        except ValueError:
            decimals = 18
        chain_id = 1
        if len(parts) > 3:
            try:
                chain_id = int(parts[3])
            except ValueError:
                pass
        tokens.append(TokenConfig(
            symbol=parts[0].upper(), address=parts[1],
            decimals=decimals, chain_id=chain_id,
        ))
    return tokens


def _apply_env_overrides(raw: dict[str, Any]) -> dict[str, Any]:
    env = os.environ
    if env.get("WALLETRISK_DB_PATH"):
        raw.setdefault("storage", {})["sqlite_path"] = env["WALLETRISK_DB_PATH"]
    chains = raw.setdefault("chains", {})
    if env.get("RPC_URL"):
        chains["default_rpc_url"] = env["RPC_URL"]
    if env.get("CHAIN_RPC_URLS"):
        chains["rpc_urls"] = parse_chain_map(env["CHAIN_RPC_URLS"])
    if env.get("CHAIN_WS_URLS"):
        chains["ws_urls"] = parse_chain_map(env["CHAIN_WS_URLS"])
    if env.get("ERC20_TOKENS"):
        chains["tokens"] = [t.model_dump() for t in parse_tokens(env["ERC20_TOKENS"])]
    if env.get("ROLE_MANAGER_ADDRESS"):
        chains["role_manager_address"] = env["ROLE_MANAGER_ADDRESS"]
    if env.get("ROLE_CACHE_TTL_SECS"):
        raw.setdefault("roles", {})["ttl_default_secs"] = int(env["ROLE_CACHE_TTL_SECS"])
    if env.get("ROLE_CACHE_TTL_OVERRIDES"):
        raw.setdefault("roles", {})["ttl_overrides"] = parse_chain_ttls(
            env["ROLE_CACHE_TTL_OVERRIDES"]
        )
    if env.get("TOKEN_PRICES"):
        pricing = raw.setdefault("pricing", {})
        pricing["static_prices"] = {
            **pricing.get("static_prices", PricingConfig().static_prices),
            **parse_token_prices(env["TOKEN_PRICES"]),
        }
    if env.get("COINGECKO_API_BASE"):
        raw.setdefault("pricing", {})["coingecko_api_base"] = env["COINGECKO_API_BASE"]
    return raw


def load_config(path: str | Path | None = None) -> AppConfig:
    """Load config from YAML file, falling back to defaults."""
    if path is None:
        path = _PROJECT_ROOT / "config.yaml"
    path = Path(path)
    raw: dict[str, Any] = {}
    if path.exists():
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    return AppConfig(**_apply_env_overrides(raw))


class ConfigWatcher:
    """Watch config file for changes and hot-reload."""

    def __init__(self, path: str | Path | None = None):
        self._path = Path(path) if path else _PROJECT_ROOT / "config.yaml"
        self._last_mtime: float = 0.0
        self._config: AppConfig = load_config(self._path)
        self._callbacks: List[Callable[[AppConfig], None]] = []
        self._update_mtime()

    def _update_mtime(self) -> None:
        if self._path.exists():
            self._last_mtime = self._path.stat().st_mtime

    @property
    def config(self) -> AppConfig:
        return self._config

    def on_change(self, callback: Callable[[AppConfig], None]) -> None:
        """Register a callback for config changes."""
        self._callbacks.append(callback)

    def check_and_reload(self) -> bool:
        """Check if config file changed and reload if so. Returns True if reloaded."""
        if not self._path.exists():
            return False
        current_mtime = self._path.stat().st_mtime
        if current_mtime <= self._last_mtime:
            return False
        try:
            new_config = load_config(self._path)
        except (yaml.YAMLError, ValueError) as e:
            log.warning("config.reload_failed", error=str(e))
            return False
        self._config = new_config
        self._last_mtime = current_mtime
        for cb in self._callbacks:
            cb(new_config)
        return True
