"""
Unit tests for configuration loading and validation
"""

import os
import sys

import pytest

# Add repo root to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from sniper_bot.config import BotConfig, BotConfigManager, Settings
from sniper_bot.core.models import SafetyStrategy, VenueKind
from sniper_bot.exceptions import ConfigurationException


class TestBotConfig:
    """Test BotConfig"""

    def test_defaults_are_valid(self):
        config = BotConfig()
        assert config.validate() == []
        assert config.entry_venue == VenueKind.MIGRATED_POOL
        assert config.safety_strategy == SafetyStrategy.LOCAL
        assert config.max_positions == 1

    def test_from_dict_partial(self):
        config = BotConfig.from_dict({"entry": {"min_liquidity_sol": 120}, "safety": {"strategy": "EXTERNAL"}})
        assert config.entry.min_liquidity_sol == 120
        assert config.entry.buy_amount_sol == 0.01
        assert config.safety_strategy == SafetyStrategy.EXTERNAL

    def test_unknown_key_rejected(self):
        with pytest.raises(ConfigurationException):
            BotConfig.from_dict({"entry": {"min_liquidty_sol": 1}})

    def test_validation_errors_collected(self):
        config = BotConfig.from_dict({
            "entry": {"venue": "AGGREGATOR", "buy_amount_sol": 0},
            "safety": {"strategy": "BOTH"},
            "exit": {"mode": "never"},
            "sell": {"rescue_attempts": 0},
        })
        errors = config.validate()
        assert len(errors) == 5
        assert any("entry.venue" in e for e in errors)
        assert any("sell.rescue_attempts" in e for e in errors)

    def test_bundle_needs_relays(self):
        config = BotConfig.from_dict({"relay": {"enabled": False}})
        assert any("bundle" in e for e in config.validate())
        config = BotConfig.from_dict({"relay": {"enabled": False}, "entry": {"submission": "rpc"}})
        assert config.validate() == []

    def test_build_trigger(self):
        trigger = BotConfig().exit.build_trigger(95_000_000_000, 93.0)
        assert trigger.target_progress_threshold == 96.0
        assert trigger.liquidity_spike_absolute == 20_000_000_000
        assert trigger.initial_liquidity_snapshot == 95_000_000_000


class TestBotConfigManager:
    """Test file round trip"""

    def test_creates_default_file(self, tmp_path):
        path = tmp_path / "bot_config.yaml"
        manager = BotConfigManager(str(path))
        assert path.exists()
        assert manager.require_valid() == BotConfig()

    def test_yaml_round_trip(self, tmp_path):
        path = tmp_path / "bot_config.yaml"
        manager = BotConfigManager(str(path))
        config = manager.get_config()
        config.entry.min_liquidity_sol = 42.0
        config.exit.stop_loss_pct = 25.0
        manager.save_config(config)

        reloaded = BotConfigManager(str(path)).get_config()
        assert reloaded.entry.min_liquidity_sol == 42.0
        assert reloaded.exit.stop_loss_pct == 25.0

    def test_json_file(self, tmp_path):
        path = tmp_path / "bot_config.json"
        path.write_text('{"max_positions": 2, "paper_trading": true}', encoding="utf-8")
        config = BotConfigManager(str(path)).get_config()
        assert config.max_positions == 2
        assert config.paper_trading

    def test_invalid_file_raises(self, tmp_path):
        path = tmp_path / "bot_config.yaml"
        path.write_text("exit:\n  mode: sometimes\n", encoding="utf-8")
        with pytest.raises(ConfigurationException):
            BotConfigManager(str(path)).require_valid()

    def test_unreadable_yaml(self, tmp_path):
        path = tmp_path / "bot_config.yaml"
        path.write_text("entry: [unclosed", encoding="utf-8")
        with pytest.raises(ConfigurationException):
            BotConfigManager(str(path))


class TestSettings:
    """Test Settings.from_env"""

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("RPC_URL", "https://rpc.example")
        monkeypatch.delenv("WSS_URL", raising=False)
        monkeypatch.setenv("PAPER_TRADING_MODE", "true")
        monkeypatch.setenv("LOG_LEVEL", "debug")
        settings = Settings.from_env()
        assert settings.WSS_URL == "wss://rpc.example"
        assert settings.PAPER_TRADING_MODE
        assert settings.LOG_LEVEL == "DEBUG"
