import asyncio
import logging
import os
import platform
import signal
import sys

# Ensure we can import from the package
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sniper_bot.config import BotConfigManager, Settings
from sniper_bot.core.bot import SniperBot
from sniper_bot.exceptions import BotException, ConfigurationException
from sniper_bot.utils.logging import setup_logging

logger = logging.getLogger(__name__)


async def main() -> int:
    settings = Settings.from_env()
    setup_logging(settings)

    # Windows UTF-8 fix
    if platform.system() == "Windows":
        sys.stdout.reconfigure(encoding='utf-8')
        sys.stderr.reconfigure(encoding='utf-8')

    try:
        config = BotConfigManager(settings.CONFIG_PATH).require_valid()
    except ConfigurationException as e:
        logger.error("Configuration error: %s", e)
        return 2

    try:
        bot = await SniperBot.create(settings, config)
    except BotException as e:
        logger.error("Startup failed: %s", e)
        return 2

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def handle_shutdown(sig):
        logger.info("[SHUTDOWN] Received signal %s...", sig)
        shutdown_event.set()

    # Add signal handlers (not supported on Windows - Ctrl-C raises KeyboardInterrupt)
    if platform.system() != "Windows":
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda s=sig: handle_shutdown(s))

    bot_task = asyncio.create_task(bot.run())
    stop_task = asyncio.create_task(shutdown_event.wait())
    exit_code = 0
    try:
        done, _ = await asyncio.wait({bot_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        if bot_task in done and bot_task.exception() is not None:
            logger.critical("Bot stopped: %s", bot_task.exception())
            exit_code = 1
    finally:
        logger.info("Initiating graceful shutdown...")
        stop_task.cancel()
        await bot.close()
        if not bot_task.done():
            bot_task.cancel()
            await asyncio.gather(bot_task, return_exceptions=True)

    return exit_code


def run() -> None:
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        print("Bot stopped by user.")


if __name__ == "__main__":
    run()
