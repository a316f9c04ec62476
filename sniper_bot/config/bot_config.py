"""
Bot Configuration Manager

Strategy parameters (entry filters, safety gate, exit triggers, sell
escalation, relays) loaded from a YAML/JSON file.
"""

import json
import yaml
import logging
from typing import Dict, Any, Optional, List
from dataclasses import dataclass, field, asdict
from pathlib import Path

from ..constants import (
    DBC_STANDARD_CONFIG,
    DEFAULT_BLACKLISTED_CREATORS,
    JITO_BLOCK_ENGINES,
    LAMPORTS_PER_SOL,
)
from ..core.models import ExitTriggerConfig, SafetyStrategy, VenueKind
from ..exceptions import ConfigurationException

logger = logging.getLogger(__name__)

EXIT_MODES = ("monitor", "fixed_delay")
SUBMISSION_MODES = ("rpc", "bundle")


@dataclass
class EntryConfig:
    """Detection, pre-filters and buy execution"""
    venue: str = VenueKind.MIGRATED_POOL.value  # pool type we buy into
    buy_amount_sol: float = 0.01
    min_liquidity_sol: float = 80.0
    insider_min_pct: float = 15.0  # one wallet buying more than this...
    insider_max_pct: float = 90.0  # ...but less than this (above = it's the pool)
    blacklisted_creators: List[str] = field(default_factory=lambda: list(DEFAULT_BLACKLISTED_CREATORS))
    pool_config: str = DBC_STANDARD_CONFIG  # used for pool address derivation
    graduation_threshold_sol: float = 85.0  # DBC quote reserve at migration
    fetch_attempts: int = 5
    fetch_retry_delay_sec: float = 0.5
    submission: str = "bundle"  # rpc | bundle
    priority_fee_micro_lamports: int = 100_000
    slippage_bps: int = 500
    confirm_timeout_sec: float = 30.0
    confirm_poll_sec: float = 0.5


@dataclass
class SafetyConfig:
    """Safety gate (exactly one strategy active)"""
    strategy: str = SafetyStrategy.LOCAL.value
    allow_mint_authority: bool = False
    allow_freeze_authority: bool = False
    allow_mutable_metadata: bool = False
    max_top_holder_pct: float = 50.0
    max_risk_score: int = 50  # rugcheck normalised score (0-100)
    external_max_attempts: int = 10
    external_retry_delay_sec: float = 2.0
    external_timeout_sec: float = 20.0


@dataclass
class ExitConfig:
    """Exit trigger regime"""
    mode: str = "monitor"  # monitor | fixed_delay
    poll_interval_sec: float = 0.5
    max_hold_seconds: float = 300.0
    liquidity_spike_sol: float = 20.0
    auto_sell_delay_sec: float = 30.0
    stop_loss_pct: Optional[float] = None
    # Adaptive target tiers, keyed on progress at open
    default_target: float = 90.0
    mid_tier_start: float = 80.0
    mid_target: float = 93.0
    high_tier_start: float = 90.0
    high_target: float = 96.0

    def target_for(self, start_progress: Optional[float]) -> Optional[float]:
        """Target progress for a position that opened at ``start_progress``."""
        if start_progress is None:
            return None
        if start_progress >= self.high_tier_start:
            return self.high_target
        if start_progress >= self.mid_tier_start:
            return self.mid_target
        return self.default_target

    def build_trigger(self, initial_liquidity: int, start_progress: Optional[float]) -> ExitTriggerConfig:
        """Freeze the per-position trigger parameters at open time."""
        return ExitTriggerConfig(
            target_progress_threshold=self.target_for(start_progress),
            max_hold_seconds=self.max_hold_seconds,
            liquidity_spike_absolute=int(self.liquidity_spike_sol * LAMPORTS_PER_SOL),
            initial_liquidity_snapshot=initial_liquidity,
            stop_loss_pct=self.stop_loss_pct,
        )


@dataclass
class SellConfig:
    """Tiered sell escalation"""
    standard_attempts: int = 5
    rescue_attempts: int = 5
    migrated_attempts: int = 3
    aggregator_attempts: int = 5
    base_priority_fee: int = 100_000  # microLamports per CU
    rescue_fee_multiplier: float = 10.0
    retry_delay_sec: float = 1.0
    confirm_timeout_sec: float = 30.0
    slippage_bps: int = 500
    race_emergency: bool = True  # emergency exits race all relays + RPC


@dataclass
class RelayConfig:
    """Jito block engines"""
    enabled: bool = True
    block_engines: List[str] = field(default_factory=lambda: list(JITO_BLOCK_ENGINES))
    tip_sol: float = 0.001
    request_timeout_sec: float = 5.0
    failure_threshold: int = 3
    recovery_timeout_sec: float = 30.0
    race_include_rpc: bool = True


@dataclass
class PaperConfig:
    """Paper trading simulation"""
    starting_balance_sol: float = 1.0
    fee_bps: float = 100.0


@dataclass
class BotConfig:
    """Complete bot configuration"""
    version: str = "1.0"

    entry: EntryConfig = field(default_factory=EntryConfig)
    safety: SafetyConfig = field(default_factory=SafetyConfig)
    exit: ExitConfig = field(default_factory=ExitConfig)
    sell: SellConfig = field(default_factory=SellConfig)
    relay: RelayConfig = field(default_factory=RelayConfig)
    paper: PaperConfig = field(default_factory=PaperConfig)

    max_positions: int = 1
    paper_trading: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BotConfig":
        """Create from dictionary"""
        try:
            return cls(
                version=data.get("version", "1.0"),
                entry=EntryConfig(**data.get("entry", {})),
                safety=SafetyConfig(**data.get("safety", {})),
                exit=ExitConfig(**data.get("exit", {})),
                sell=SellConfig(**data.get("sell", {})),
                relay=RelayConfig(**data.get("relay", {})),
                paper=PaperConfig(**data.get("paper", {})),
                max_positions=data.get("max_positions", 1),
                paper_trading=data.get("paper_trading", False),
            )
        except TypeError as e:
            raise ConfigurationException("Unknown configuration key", error=str(e)) from e

    @property
    def entry_venue(self) -> VenueKind:
        return VenueKind(self.entry.venue)

    @property
    def safety_strategy(self) -> SafetyStrategy:
        return SafetyStrategy(self.safety.strategy)

    def validate(self) -> List[str]:
        """Validate config, return list of errors"""
        errors = []

        if self.entry.venue not in (VenueKind.DIRECT_POOL.value, VenueKind.MIGRATED_POOL.value):
            errors.append("entry.venue must be DIRECT_POOL or MIGRATED_POOL")
        if self.entry.buy_amount_sol <= 0:
            errors.append("entry.buy_amount_sol must be > 0")
        if self.entry.min_liquidity_sol < 0:
            errors.append("entry.min_liquidity_sol must be >= 0")
        if not 0 < self.entry.insider_min_pct < self.entry.insider_max_pct <= 100:
            errors.append("entry insider bounds must satisfy 0 < min < max <= 100")
        if self.entry.submission not in SUBMISSION_MODES:
            errors.append(f"entry.submission must be one of {SUBMISSION_MODES}")
        if self.entry.fetch_attempts < 1:
            errors.append("entry.fetch_attempts must be >= 1")

        if self.safety.strategy not in (SafetyStrategy.LOCAL.value, SafetyStrategy.EXTERNAL.value):
            errors.append("safety.strategy must be LOCAL or EXTERNAL")
        if not 0 < self.safety.max_top_holder_pct <= 100:
            errors.append("safety.max_top_holder_pct must be between 0 and 100")
        if self.safety.external_max_attempts < 1:
            errors.append("safety.external_max_attempts must be >= 1")

        if self.exit.mode not in EXIT_MODES:
            errors.append(f"exit.mode must be one of {EXIT_MODES}")
        if self.exit.poll_interval_sec <= 0:
            errors.append("exit.poll_interval_sec must be > 0")
        if self.exit.max_hold_seconds <= 0:
            errors.append("exit.max_hold_seconds must be > 0")
        if not self.exit.mid_tier_start <= self.exit.high_tier_start:
            errors.append("exit.mid_tier_start must be <= exit.high_tier_start")
        if self.exit.stop_loss_pct is not None and not 0 < self.exit.stop_loss_pct < 100:
            errors.append("exit.stop_loss_pct must be between 0 and 100")

        for name in ("standard_attempts", "rescue_attempts", "migrated_attempts", "aggregator_attempts"):
            if getattr(self.sell, name) < 1:
                errors.append(f"sell.{name} must be >= 1")
        if self.sell.rescue_fee_multiplier < 1:
            errors.append("sell.rescue_fee_multiplier must be >= 1")

        if self.entry.submission == "bundle" and not (self.relay.enabled and self.relay.block_engines):
            errors.append("bundle submission requires at least one enabled block engine")

        if self.max_positions < 1:
            errors.append("max_positions must be >= 1")

        return errors


class BotConfigManager:
    """
    Bot configuration manager.

    Usage:
        manager = BotConfigManager("config/bot_config.yaml")
        config = manager.get_config()
        min_liq = config.entry.min_liquidity_sol
    """

    DEFAULT_CONFIG_PATH = "config/bot_config.yaml"

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = Path(config_path or self.DEFAULT_CONFIG_PATH)
        self._config: Optional[BotConfig] = None
        self._load_or_create()

    def _load_or_create(self):
        """Load existing config or create default"""
        if self.config_path.exists():
            self._config = self._load_from_file()
            logger.info("Bot config loaded from %s", self.config_path)
        else:
            self._config = BotConfig()
            self.save_config(self._config)
            logger.info("Default bot config created at %s", self.config_path)

    def _load_from_file(self) -> BotConfig:
        """Load config from file"""
        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                if self.config_path.suffix in ['.yaml', '.yml']:
                    data = yaml.safe_load(f)
                else:
                    data = json.load(f)
        except (OSError, yaml.YAMLError, json.JSONDecodeError) as e:
            raise ConfigurationException("Cannot read config file", path=str(self.config_path), error=str(e)) from e

        return BotConfig.from_dict(data or {})

    def save_config(self, config: Optional[BotConfig] = None):
        """Save config to file"""
        config = config or self._config
        data = config.to_dict()

        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.config_path, 'w', encoding='utf-8') as f:
            if self.config_path.suffix in ['.yaml', '.yml']:
                yaml.dump(data, f, default_flow_style=False, sort_keys=False, allow_unicode=True)
            else:
                json.dump(data, f, indent=2, ensure_ascii=False)

        logger.info("Bot config saved to %s", self.config_path)

    def get_config(self) -> BotConfig:
        """Get current config"""
        if self._config is None:
            self._config = BotConfig()
        return self._config

    def validate(self) -> List[str]:
        """Validate current config, return list of errors"""
        return self.get_config().validate()

    def require_valid(self) -> BotConfig:
        """Return the config or raise ConfigurationException listing every problem."""
        errors = self.validate()
        if errors:
            raise ConfigurationException("Invalid bot configuration", errors="; ".join(errors))
        return self.get_config()
