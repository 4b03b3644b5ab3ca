"""Tests for config loading, env overrides and hot reload."""

from __future__ import annotations

import os
import time

import pytest

from walletrisk.config import (
    AppConfig,
    ChainsConfig,
    ConfigWatcher,
    PricingConfig,
    RolesConfig,
    SyncConfig,
    load_config,
    parse_chain_map,
    parse_chain_ttls,
    parse_token_prices,
    parse_tokens,
)
from walletrisk.engine.loop import apply_reload
from walletrisk.errors import ConfigurationError


class TestParsers:

    def test_chain_ttls(self):
        assert parse_chain_ttls("1=600") == {1: 600}
        assert parse_chain_ttls("1=600, 56=120,bad=3,10=x") == {1: 600, 56: 120}
        assert parse_chain_ttls("") == {}

    def test_chain_map(self):
        assert parse_chain_map("1=https://eth,56=https://bsc") == {1: "https://eth", 56: "https://bsc"}

    def test_tokens(self):
        tokens = parse_tokens("usdc:0xA0B8:6,DAI:0x6B17:18:56,broken")
        assert [(t.symbol, t.address, t.decimals, t.chain_id) for t in tokens] == [
            ("USDC", "0xa0b8", 6, 1),
            ("DAI", "0x6b17", 18, 56),
        ]

    def test_token_prices(self):
        assert parse_token_prices("eth=3000,usdc=1,bad=x") == {"ETH": 3000.0, "USDC": 1.0}


class TestSections:

    def test_role_ttl_override(self):
        cfg = RolesConfig(ttl_default_secs=300, ttl_overrides={1: 600})
        assert cfg.ttl_for(1) == 600
        assert cfg.ttl_for(56) == 300

    def test_minimums_enforced(self):
        cfg = PricingConfig(price_cache_ttl_secs=1, refresh_interval_secs=1)
        assert cfg.price_cache_ttl_secs == 10
        assert cfg.refresh_interval_secs == 30
        assert SyncConfig(max_concurrency=0, max_retries=0).max_concurrency == 1

    def test_rpc_url_resolution(self):
        cfg = ChainsConfig(rpc_urls={56: "https://bsc"}, default_rpc_url="https://eth")
        assert cfg.rpc_url_for(56) == "https://bsc"
        assert cfg.rpc_url_for(1) == "https://eth"
        assert cfg.native_symbol_for(56) == "BNB"
        assert cfg.native_symbol_for(1) == "ETH"
        with pytest.raises(ConfigurationError):
            ChainsConfig().rpc_url_for(1)


class TestLoadConfig:

    def test_missing_file_gives_defaults(self, tmp_path):
        cfg = load_config(tmp_path / "nope.yaml")
        assert isinstance(cfg, AppConfig)
        assert cfg.sync.sync_interval_secs == 900

    def test_yaml_and_env_overrides(self, tmp_path, monkeypatch):
        path = tmp_path / "config.yaml"
        path.write_text("sync:\n  max_concurrency: 8\nroles:\n  ttl_default_secs: 120\n")
        monkeypatch.setenv("RPC_URL", "https://rpc.test")
        monkeypatch.setenv("ROLE_CACHE_TTL_OVERRIDES", "1=600")
        monkeypatch.setenv("ERC20_TOKENS", "USDC:0xA0B8:6")
        monkeypatch.setenv("TOKEN_PRICES", "USDC=0.999")

        cfg = load_config(path)
        assert cfg.sync.max_concurrency == 8
        assert cfg.roles.ttl_default_secs == 120
        assert cfg.roles.ttl_for(1) == 600
        assert cfg.chains.default_rpc_url == "https://rpc.test"
        assert cfg.chains.tokens[0].decimals == 6
        assert cfg.pricing.static_prices["USDC"] == 0.999
        assert cfg.pricing.static_prices["ETH"] == 3000.0


class TestHotReload:

    def test_watcher_applies_tunables(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("alerts:\n  default_cooldown_secs: 300\n")
        watcher = ConfigWatcher(path)
        live = watcher.config
        watcher.on_change(lambda new: apply_reload(live, new))

        assert not watcher.check_and_reload()
        path.write_text("alerts:\n  default_cooldown_secs: 900\nstorage:\n  sqlite_path: other.db\n")
        future = time.time() + 5
        os.utime(path, (future, future))

        assert watcher.check_and_reload()
        assert live.alerts.default_cooldown_secs == 900
        # Storage is not hot-reloaded
        assert live.storage.sqlite_path != "other.db"

    def test_invalid_yaml_keeps_previous(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("sync:\n  max_concurrency: 2\n")
        watcher = ConfigWatcher(path)
        path.write_text("sync: [unclosed\n")
        future = time.time() + 5
        os.utime(path, (future, future))
        assert not watcher.check_and_reload()
        assert watcher.config.sync.max_concurrency == 2
