"""
Logging setup for the sniper.

Console output is colored by the leading tag of each message (BUY, SELL,
REJECT, ...) so a position's lifecycle reads at a glance. The rotating file
gets plain lines, or JSON lines when LOG_JSON is set.
"""
from __future__ import annotations

import json
import logging
import logging.handlers
import time
from pathlib import Path

from sniper_bot.config import Settings

# Attributes every LogRecord has; anything else came in through ``extra=``
_RESERVED = set(vars(logging.makeLogRecord({}))) | {"message", "asctime"}

_QUIET_LOGGERS = ("httpx", "httpcore", "hpack", "asyncio", "aiohttp", "websockets")

_MAX_LOG_BYTES = 10 * 1024 * 1024
_LOG_BACKUPS = 5


class ColoredFormatter(logging.Formatter):
    """Colors a console line by level, then by the first lifecycle tag in it."""

    GREY = "\x1b[90m"
    GREEN = "\x1b[92m"
    CYAN = "\x1b[96m"
    RED = "\x1b[91m"
    MAGENTA = "\x1b[95m"
    YELLOW = "\x1b[93m"
    RESET = "\x1b[0m"

    # First match wins
    TAG_COLORS = (
        (("MANUAL", "INTERVENTION"), RED),
        (("BUY", "ENTRY", "PASS"), GREEN),
        (("DETECTED",), CYAN),
        (("SELL", "EXIT"), MAGENTA),
        (("REJECT", "ABORT"), GREY),
    )

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(message)s", datefmt="%H:%M:%S")

    def _color_for(self, record: logging.LogRecord) -> str:
        if record.levelno >= logging.ERROR:
            return self.RED
        text = str(record.msg)
        for tags, color in self.TAG_COLORS:
            if any(tag in text for tag in tags):
                return color
        return self.YELLOW if record.levelno >= logging.WARNING else self.GREY

    def format(self, record: logging.LogRecord) -> str:
        return f"{self._color_for(record)}{super().format(record)}{self.RESET}"


class StructuredFormatter(logging.Formatter):
    """One JSON object per line; ``extra=`` fields are carried through."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%S", time.localtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "where": f"{record.module}:{record.funcName}:{record.lineno}",
        }
        payload.update(
            (key, value) for key, value in vars(record).items()
            if key not in _RESERVED and key not in payload
        )
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def _file_handler(settings: Settings) -> logging.Handler:
    log_dir = Path(settings.LOG_DIR)
    log_dir.mkdir(parents=True, exist_ok=True)
    handler = logging.handlers.RotatingFileHandler(
        log_dir / ("sniper.jsonl" if settings.LOG_JSON else "sniper.log"),
        maxBytes=_MAX_LOG_BYTES,
        backupCount=_LOG_BACKUPS,
        encoding="utf-8",
    )
    if settings.LOG_JSON:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)-7s %(name)s: %(message)s"))
    return handler


def setup_logging(settings: Settings) -> None:
    root = logging.getLogger()
    root.setLevel(settings.LOG_LEVEL)
    root.handlers.clear()

    console = logging.StreamHandler()
    console.setFormatter(ColoredFormatter())
    root.addHandler(console)
    root.addHandler(_file_handler(settings))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
