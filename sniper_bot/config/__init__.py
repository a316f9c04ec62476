"""Config package"""
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

from .bot_config import (
    BotConfig,
    BotConfigManager,
    EntryConfig,
    SafetyConfig,
    ExitConfig,
    SellConfig,
    RelayConfig,
    PaperConfig,
)
from ..constants import (
    JUPITER_API_BASE,
    RUGCHECK_API_BASE,
    DEXSCREENER_API_BASE,
)


def _env_bool(name: str, default: bool = False) -> bool:
    return os.getenv(name, str(default)).lower() in ("1", "true", "yes")


@dataclass
class Settings:
    """Process-level settings read from the environment (.env)."""

    # ============================================
    # CREDENTIALS & ENDPOINTS
    # ============================================
    RPC_URL: str = "https://api.mainnet-beta.solana.com"
    WSS_URL: str = ""
    SOLANA_PRIVATE_KEY: Optional[str] = None

    # ============================================
    # LOGGING
    # ============================================
    LOG_DIR: str = "logs"
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    # ============================================
    # RUNTIME
    # ============================================
    CONFIG_PATH: str = "config/bot_config.yaml"
    PAPER_TRADING_MODE: bool = False
    API_TIMEOUT_SEC: float = 10.0

    JUPITER_API_BASE: str = JUPITER_API_BASE
    RUGCHECK_API_BASE: str = RUGCHECK_API_BASE
    DEXSCREENER_API_BASE: str = DEXSCREENER_API_BASE

    def __post_init__(self) -> None:
        if not self.WSS_URL and self.RPC_URL:
            self.WSS_URL = self.RPC_URL.replace("https", "wss", 1).replace("http", "ws", 1)

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from os.environ."""
        return cls(
            RPC_URL=os.getenv("RPC_URL", cls.RPC_URL),
            WSS_URL=os.getenv("WSS_URL", ""),
            SOLANA_PRIVATE_KEY=os.getenv("SOLANA_PRIVATE_KEY"),
            LOG_DIR=os.getenv("LOG_DIR", cls.LOG_DIR),
            LOG_LEVEL=os.getenv("LOG_LEVEL", cls.LOG_LEVEL).upper(),
            LOG_JSON=_env_bool("LOG_JSON"),
            CONFIG_PATH=os.getenv("BOT_CONFIG_PATH", cls.CONFIG_PATH),
            PAPER_TRADING_MODE=_env_bool("PAPER_TRADING_MODE"),
            API_TIMEOUT_SEC=float(os.getenv("API_TIMEOUT_SEC", cls.API_TIMEOUT_SEC)),
            JUPITER_API_BASE=os.getenv("JUPITER_API_BASE", JUPITER_API_BASE),
            RUGCHECK_API_BASE=os.getenv("RUGCHECK_API_BASE", RUGCHECK_API_BASE),
            DEXSCREENER_API_BASE=os.getenv("DEXSCREENER_API_BASE", DEXSCREENER_API_BASE),
        )


__all__ = [
    "Settings",
    "BotConfig",
    "BotConfigManager",
    "EntryConfig",
    "SafetyConfig",
    "ExitConfig",
    "SellConfig",
    "RelayConfig",
    "PaperConfig",
]
