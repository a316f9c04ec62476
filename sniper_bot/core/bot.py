"""
Sniper Bot

Context object owning every collaborator. Consumes detection events and
runs each one through prepare -> lock -> entry -> exit -> release.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

import aiohttp
from solana.rpc.async_api import AsyncClient
from solders.keypair import Keypair

from sniper_bot.config import BotConfig, Settings
from sniper_bot.constants import (
    CURVE_LOG_MARKERS,
    DAMM_MIGRATION_PROGRAM,
    DBC_PROGRAM,
    LAMPORTS_PER_SOL,
    MIGRATION_LOG_MARKERS,
)
from sniper_bot.core.blacklist import BlacklistManager
from sniper_bot.core.chain import ChainClient
from sniper_bot.core.entry_controller import EntryController
from sniper_bot.core.event_stream import LogsEventStream
from sniper_bot.core.executor import SwapExecutor
from sniper_bot.core.exit_controller import ExitController
from sniper_bot.core.models import DetectionEvent, VenueKind
from sniper_bot.core.price_feed import PriceFeed
from sniper_bot.core.registry import PositionRegistry
from sniper_bot.core.relay_pool import RelayPool
from sniper_bot.core.rugcheck_client import RugCheckClient
from sniper_bot.core.safety import build_safety_gate
from sniper_bot.core.tx_confirmer import TransactionConfirmer
from sniper_bot.core.venues import AggregatorVenue, DirectPoolVenue, MigratedPoolVenue, VenueRegistry
from sniper_bot.core.wallet import Wallet
from sniper_bot.exceptions import StateException, WalletException
from sniper_bot.paper_trading.broker import PaperBroker

logger = logging.getLogger("sniper_bot.bot")


class SniperBot:
    def __init__(
        self,
        config: BotConfig,
        registry: PositionRegistry,
        entry: EntryController,
        exit_controller: ExitController,
        stream: LogsEventStream,
        paper: bool = False,
        closers: tuple = (),
    ) -> None:
        self.config = config
        self.registry = registry
        self.entry = entry
        self.exit = exit_controller
        self.stream = stream
        self.paper = paper
        self._closers = closers
        self._tasks: set[asyncio.Task] = set()
        self._fatal: Optional[BaseException] = None

    @classmethod
    async def create(cls, settings: Settings, config: BotConfig) -> "SniperBot":
        """Build every collaborator once."""
        paper = settings.PAPER_TRADING_MODE or config.paper_trading

        try:
            wallet = Wallet.from_private_key(settings.SOLANA_PRIVATE_KEY)
        except WalletException:
            if not paper:
                raise
            wallet = Wallet(Keypair())
            logger.warning("No wallet configured, paper trading with ephemeral key %s...", str(wallet.pubkey)[:12])

        session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=settings.API_TIMEOUT_SEC))
        rpc = AsyncClient(settings.RPC_URL)
        chain = ChainClient(rpc, wallet.pubkey)

        relay_pool = RelayPool.from_config(session, config.relay, chain) if config.relay.enabled else None
        venues = VenueRegistry(
            direct=DirectPoolVenue(
                chain,
                wallet.pubkey,
                int(config.entry.graduation_threshold_sol * LAMPORTS_PER_SOL),
                config.entry.slippage_bps,
            ),
            migrated=MigratedPoolVenue(chain, wallet.pubkey, config.sell.slippage_bps),
            aggregator=AggregatorVenue(session, wallet.pubkey, settings.JUPITER_API_BASE, timeout_sec=settings.API_TIMEOUT_SEC),
        )
        rugcheck = RugCheckClient(settings, session)
        safety_gate = build_safety_gate(config.safety_strategy, config.safety, chain=chain, rugcheck=rugcheck)
        blacklist = BlacklistManager(config.entry.blacklisted_creators)
        registry = PositionRegistry(config.max_positions)
        confirmer = TransactionConfirmer(chain, config.entry.confirm_poll_sec)
        executor = SwapExecutor(chain, wallet, relay_pool, config.relay)
        price_feed = PriceFeed(settings)
        paper_broker = PaperBroker(config.paper.starting_balance_sol, config.paper.fee_bps) if paper else None

        entry = EntryController(
            config, chain, venues, safety_gate, blacklist, registry, executor, confirmer,
            paper_broker=paper_broker, price_feed=price_feed,
        )
        exit_controller = ExitController(
            config, chain, wallet, venues, registry, executor, confirmer, blacklist,
            price_feed=price_feed, paper_broker=paper_broker,
        )

        if config.entry_venue == VenueKind.DIRECT_POOL:
            stream = LogsEventStream(settings.WSS_URL, str(DBC_PROGRAM), CURVE_LOG_MARKERS)
        else:
            stream = LogsEventStream(settings.WSS_URL, str(DAMM_MIGRATION_PROGRAM), MIGRATION_LOG_MARKERS)

        logger.info(
            "Sniper ready: venue=%s safety=%s exit=%s submission=%s paper=%s",
            config.entry.venue, config.safety.strategy, config.exit.mode, config.entry.submission, paper,
        )
        return cls(
            config, registry, entry, exit_controller, stream,
            paper=paper,
            closers=(price_feed.close, rpc.close, session.close),
        )

    async def handle_event(self, event: DetectionEvent) -> None:
        if not self.registry.has_capacity():
            logger.debug("Busy, dropping %s...", event.signature[:16])
            return

        try:
            candidate = await self.entry.prepare(event)
        except StateException:
            raise
        except Exception:
            logger.exception("Unexpected error preparing %s...", event.signature[:16])
            return
        if candidate is None:
            return

        if not self.registry.try_acquire(candidate.mint, self.config.entry_venue):
            return
        position = self.registry.require(candidate.mint)
        position.paper = self.paper

        try:
            outcome = await self.entry.execute(candidate, position)
            if outcome.opened:
                await self.exit.run(outcome.position)
        except StateException:
            raise
        except Exception:
            logger.exception("Unexpected error handling %s...", candidate.mint[:8])
        finally:
            released = self.registry.release(candidate.mint)
            if released.manual_intervention:
                logger.error(
                    "MANUAL INTERVENTION required for %s: tokens may still be held (exit=%s)",
                    released.mint, released.exit_reason,
                )

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.critical("Invariant violated, stopping: %s", error, exc_info=error)
            self._fatal = error
            asyncio.ensure_future(self.stream.stop())

    async def run(self) -> None:
        """Consume the event stream; each event is handled in its own task."""
        logger.info("Listening for %s events...", self.config.entry.venue)
        async for event in self.stream.events():
            task = asyncio.create_task(self.handle_event(event))
            self._tasks.add(task)
            task.add_done_callback(self._on_task_done)
            if self._fatal is not None:
                break

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._fatal is not None:
            raise self._fatal

    async def close(self) -> None:
        await self.stream.stop()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        for closer in self._closers:
            await closer()
        logger.info("Shutdown complete")
