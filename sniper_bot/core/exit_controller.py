"""
Exit Controller

Watches an open position until one trigger fires, then sells it through a
bounded escalation chain:

    standard (base fee) -> rescue (fee x10) -> migrated pool -> aggregator
    -> burn and reclaim rent -> manual intervention flag

A completed-curve error during the direct-pool phases skips straight to
the migrated pool. Every path ends with the position CLOSED or flagged.

States: MONITORING -> TRIGGERED -> SELLING -> CLOSED | ESCALATING -> CLOSED
        | MANUAL_INTERVENTION
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

from solders.pubkey import Pubkey

from sniper_bot.config import BotConfig
from sniper_bot.constants import TOKEN_PROGRAM, TOKEN_PROGRAMS
from sniper_bot.core.blacklist import BlacklistManager
from sniper_bot.core.chain import ChainClient
from sniper_bot.core.executor import SUBMIT_BUNDLE, SUBMIT_RPC, SwapExecutor
from sniper_bot.core.models import (
    AttemptOutcome,
    ExitTriggerConfig,
    Position,
    PositionStatus,
    SubmissionAttempt,
    SwapDirection,
    VenueKind,
)
from sniper_bot.core.price_feed import PriceFeed
from sniper_bot.core.registry import PositionRegistry
from sniper_bot.core.tx_confirmer import TransactionConfirmer, TxStatus
from sniper_bot.core.venues import SwapFragment, VenueAdapter, VenueRegistry
from sniper_bot.core.wallet import Wallet
from sniper_bot.exceptions import (
    BotException,
    PoolMigratedException,
    SellExhaustedException,
    SwapException,
)
from sniper_bot.paper_trading.broker import PaperBroker
from sniper_bot.utils.retry import fixed_delay, retry

logger = logging.getLogger("sniper_bot.exit")

T = TypeVar("T")

RUGGED_CREATOR_TIMEOUT_MINUTES = 24 * 60
OPEN_READ_ATTEMPTS = 3
OPEN_READ_DELAY_SEC = 0.5


class ExitState(str, Enum):
    MONITORING = "MONITORING"
    TRIGGERED = "TRIGGERED"
    SELLING = "SELLING"
    ESCALATING = "ESCALATING"
    CLOSED = "CLOSED"
    MANUAL_INTERVENTION = "MANUAL_INTERVENTION"


class PhaseResult(str, Enum):
    SOLD = "SOLD"
    MIGRATED = "MIGRATED"
    EXHAUSTED = "EXHAUSTED"

    @classmethod
    def of(cls, tries: list[SubmissionAttempt]) -> "PhaseResult":
        """A phase sold if any try landed, migrated if its last try saw the pool complete."""
        if any(t.outcome == AttemptOutcome.LANDED for t in tries):
            return cls.SOLD
        if tries and tries[-1].outcome == AttemptOutcome.MIGRATED:
            return cls.MIGRATED
        return cls.EXHAUSTED


@dataclass
class ExitSignal:
    reason: str
    emergency: bool = False


@dataclass
class TriggerState:
    """Live monitor state; fires at most once."""
    trigger: ExitTriggerConfig
    stopped: asyncio.Event = field(default_factory=asyncio.Event)
    signal: Optional[ExitSignal] = None

    def fire(self, signal: ExitSignal) -> bool:
        if self.stopped.is_set():
            return False
        self.signal = signal
        self.stopped.set()
        return True


class ExitController:
    def __init__(
        self,
        config: BotConfig,
        chain: ChainClient,
        wallet: Wallet,
        venues: VenueRegistry,
        registry: PositionRegistry,
        executor: SwapExecutor,
        confirmer: TransactionConfirmer,
        blacklist: BlacklistManager,
        price_feed: Optional[PriceFeed] = None,
        paper_broker: Optional[PaperBroker] = None,
    ) -> None:
        self.config = config
        self.chain = chain
        self.wallet = wallet
        self.venues = venues
        self.registry = registry
        self.executor = executor
        self.confirmer = confirmer
        self.blacklist = blacklist
        self.price_feed = price_feed
        self.paper_broker = paper_broker

    def _state(self, mint: str, state: ExitState, detail: str = "") -> None:
        level = logging.INFO
        if state == ExitState.ESCALATING:
            level = logging.WARNING
        elif state == ExitState.MANUAL_INTERVENTION:
            level = logging.ERROR
        logger.log(level, "EXIT %s... -> %s%s", mint[:8], state.value, f" ({detail})" if detail else "")

    async def _quiet(self, operation: Callable[[], Awaitable[T]], label: str) -> Optional[T]:
        try:
            return await operation()
        except BotException as e:
            logger.debug("%s read failed: %s", label, e)
            return None

    async def _read_with_retry(self, operation: Callable[[], Awaitable[T]], label: str) -> Optional[T]:
        try:
            return await retry(
                operation,
                max_attempts=OPEN_READ_ATTEMPTS,
                delay_strategy=fixed_delay(OPEN_READ_DELAY_SEC),
                is_retryable=lambda e: isinstance(e, BotException),
                name=label,
            )
        except BotException as e:
            logger.warning("%s unavailable at open: %s", label, e)
            return None

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------
    async def open_trigger(self, position: Position) -> ExitTriggerConfig:
        """Snapshot liquidity and progress once and freeze the trigger."""
        venue = self.venues.get(position.venue)
        pool = position.pool_address
        liquidity = await self._read_with_retry(lambda: venue.pool_liquidity(pool), "liquidity") or 0
        progress = await self._read_with_retry(lambda: venue.progress(pool), "progress")
        trigger = self.config.exit.build_trigger(liquidity, progress)
        logger.info(
            "Trigger for %s...: liquidity %.2f SOL, progress %s, target %s, max hold %.0fs",
            position.mint[:8],
            liquidity / 1e9,
            f"{progress:.1f}%" if progress is not None else "n/a",
            f"{trigger.target_progress_threshold:.0f}%" if trigger.target_progress_threshold is not None else "n/a",
            trigger.max_hold_seconds,
        )
        return trigger

    async def check_tick(self, position: Position, state: TriggerState) -> Optional[ExitSignal]:
        """One monitor pass. Order: spike, target, timeout, stop-loss."""
        venue = self.venues.get(position.venue)
        pool = position.pool_address
        trigger = state.trigger

        liquidity = await self._quiet(lambda: venue.pool_liquidity(pool), "liquidity")
        if liquidity is not None and trigger.initial_liquidity_snapshot > 0:
            if liquidity - trigger.initial_liquidity_snapshot > trigger.liquidity_spike_absolute:
                return ExitSignal(f"liquidity spike {liquidity / 1e9:.2f} SOL", emergency=True)

        progress = await self._quiet(lambda: venue.progress(pool), "progress")
        if progress is not None:
            if trigger.target_progress_threshold is None:
                # First successful read sets the target, once
                state.trigger = trigger = replace(
                    trigger, target_progress_threshold=self.config.exit.target_for(progress)
                )
                logger.info("Target for %s... set to %.0f%%", position.mint[:8], trigger.target_progress_threshold)
            if progress >= trigger.target_progress_threshold:
                return ExitSignal(f"target {progress:.1f}% >= {trigger.target_progress_threshold:.0f}%")

        held = position.held_seconds()
        if held >= trigger.max_hold_seconds:
            return ExitSignal(f"timeout {held:.0f}s")

        if trigger.stop_loss_pct and self.price_feed is not None and position.entry_price_base > 0:
            price = await self.price_feed.price_of(position.mint)
            if price is not None and price <= position.entry_price_base * (1 - trigger.stop_loss_pct / 100):
                return ExitSignal(f"stop loss at {price:.10f}")

        return None

    async def monitor(self, position: Position, trigger: ExitTriggerConfig) -> ExitSignal:
        state = TriggerState(trigger)
        self._state(position.mint, ExitState.MONITORING)
        while not state.stopped.is_set():
            signal = await self.check_tick(position, state)
            if signal is not None and state.fire(signal):
                break
            await asyncio.sleep(self.config.exit.poll_interval_sec)
        return state.signal

    async def run(self, position: Position) -> ExitState:
        if self.config.exit.mode == "fixed_delay":
            self._state(position.mint, ExitState.MONITORING, f"fixed delay {self.config.exit.auto_sell_delay_sec:.0f}s")
            await asyncio.sleep(self.config.exit.auto_sell_delay_sec)
            signal = ExitSignal("fixed delay")
        else:
            signal = await self.monitor(position, await self.open_trigger(position))

        self._state(position.mint, ExitState.TRIGGERED, signal.reason)
        return await self.sell(position, signal)

    # ------------------------------------------------------------------
    # Selling
    # ------------------------------------------------------------------
    async def sell(self, position: Position, signal: ExitSignal) -> ExitState:
        self.registry.transition(position.mint, PositionStatus.PENDING_EXIT)
        position.exit_reason = signal.reason
        self._state(position.mint, ExitState.SELLING, "emergency" if signal.emergency else signal.reason)

        if position.paper:
            return await self._close_paper(position)

        try:
            await self._escalate(position, signal.emergency)
        except SellExhaustedException as e:
            logger.warning("SELL %s... exhausted: %s", position.mint[:8], e)
            return await self._burn(position)
        return self._close(position)

    async def _escalate(self, position: Position, emergency: bool) -> None:
        sell = self.config.sell
        mint = position.mint
        venue = self.venues.get(position.venue)
        rescue_fee = int(sell.base_priority_fee * sell.rescue_fee_multiplier)

        result = await self._phase("standard", position, venue, position.pool_address,
                                   sell.standard_attempts, sell.base_priority_fee, emergency)
        if result == PhaseResult.SOLD:
            return
        if result == PhaseResult.EXHAUSTED:
            self._state(mint, ExitState.ESCALATING, f"rescue fee {rescue_fee}")
            result = await self._phase("rescue", position, venue, position.pool_address,
                                       sell.rescue_attempts, rescue_fee, emergency)
            if result == PhaseResult.SOLD:
                return

        if position.venue == VenueKind.DIRECT_POOL:
            self._state(mint, ExitState.ESCALATING, "migrated pool")
            migrated_pool = await self._quiet(lambda: self.venues.migrated.find_pool_for_mint(mint), "migrated pool")
            if migrated_pool:
                result = await self._phase("migrated", position, self.venues.migrated, migrated_pool,
                                           sell.migrated_attempts, rescue_fee, emergency)
                if result == PhaseResult.SOLD:
                    return
            else:
                logger.warning("No migrated pool found for %s...", mint[:8])

        self._state(mint, ExitState.ESCALATING, "aggregator")
        result = await self._phase("aggregator", position, self.venues.get(VenueKind.AGGREGATOR), "",
                                   sell.aggregator_attempts, rescue_fee, emergency)
        if result == PhaseResult.SOLD:
            return

        raise SellExhaustedException("Every sell tier failed", mint=mint)

    async def _phase(
        self,
        name: str,
        position: Position,
        venue: VenueAdapter,
        pool: str,
        attempts: int,
        priority_fee: int,
        emergency: bool,
    ) -> PhaseResult:
        mint = position.mint
        tries: list[SubmissionAttempt] = []

        def on_retry(attempt: int, error: BaseException) -> None:
            logger.warning("SELL %s... %s attempt %d/%d failed: %s", mint[:8], name, attempt, attempts, error)

        try:
            await retry(
                lambda: self._sell_once(position, venue, pool, priority_fee, emergency, tries),
                max_attempts=attempts,
                delay_strategy=fixed_delay(self.config.sell.retry_delay_sec),
                is_retryable=lambda e: not isinstance(e, PoolMigratedException),
                on_retry=on_retry,
                name=f"{name} sell {mint[:8]}",
            )
        except PoolMigratedException as e:
            logger.warning("SELL %s... pool migrated during %s phase: %s", mint[:8], name, e)
        except Exception as e:
            logger.warning("SELL %s... %s phase exhausted: %s", mint[:8], name, e,
                           exc_info=not isinstance(e, BotException))

        result = PhaseResult.of(tries)
        logger.info("SELL %s... %s phase %s: %s", mint[:8], name, result.value,
                    "; ".join(t.summary() for t in tries) or "no attempts")
        return result

    async def _balance_is_zero(self, mint: str) -> bool:
        return await self.chain.get_token_balance(mint) == 0

    async def _sell_once(
        self,
        position: Position,
        venue: VenueAdapter,
        pool: str,
        priority_fee: int,
        emergency: bool,
        tries: list[SubmissionAttempt],
    ) -> None:
        attempt = SubmissionAttempt(venue=venue.kind, route="", priority_fee=priority_fee)
        tries.append(attempt)
        try:
            await self._submit_sell(position, venue, pool, priority_fee, emergency, attempt)
        except PoolMigratedException as e:
            attempt.outcome, attempt.error = AttemptOutcome.MIGRATED, attempt.error or str(e)
            raise
        except Exception as e:
            attempt.error = attempt.error or str(e)
            if attempt.signature is not None and attempt.outcome == AttemptOutcome.ERROR:
                attempt.outcome = AttemptOutcome.NOT_CONFIRMED
            raise

    async def _submit_sell(
        self,
        position: Position,
        venue: VenueAdapter,
        pool: str,
        priority_fee: int,
        emergency: bool,
        attempt: SubmissionAttempt,
    ) -> None:
        mint = position.mint
        balance = await self.chain.get_token_balance(mint)
        if balance == 0:
            logger.info("SELL %s... balance already zero", mint[:8])
            attempt.outcome = AttemptOutcome.LANDED
            return

        mode = self.config.entry.submission
        try:
            min_out = await venue.quote(pool, mint, SwapDirection.SELL, balance)
            fragment = await venue.build_swap(pool, mint, SwapDirection.SELL, balance, min_out)
            signature, route = await self.executor.submit(
                fragment,
                priority_fee,
                mode=mode,
                race=emergency and self.config.sell.race_emergency,
                simulate_first=mode == SUBMIT_BUNDLE,
            )
        except PoolMigratedException:
            raise
        except BotException as e:
            if venue.is_migration_error(str(e)):
                attempt.error = str(e)
                raise PoolMigratedException("Pool is completed", mint=mint, venue=venue.kind.value) from e
            attempt.outcome = AttemptOutcome.REJECTED
            raise
        attempt.signature, attempt.route = signature, route

        result = await self.confirmer.confirm(
            signature,
            self.config.sell.confirm_timeout_sec,
            settled=lambda: self._balance_is_zero(mint),
        )
        if result.is_success or (result.status == TxStatus.EXPIRED and await self._balance_is_zero(mint)):
            attempt.outcome = AttemptOutcome.LANDED
            position.exit_signature = signature
            logger.info("SELL %s... landed via %s on %s: %s", mint[:8], route, venue.kind.value, signature[:16])
            return
        attempt.error = result.error or result.status.value
        if result.error and venue.is_migration_error(result.error):
            raise PoolMigratedException("Pool is completed", mint=mint, venue=venue.kind.value)
        raise SwapException("Sell not confirmed", mint=mint[:8], status=result.status.value, error=result.error)

    async def _burn(self, position: Position) -> ExitState:
        mint = position.mint
        self._state(mint, ExitState.ESCALATING, "burn and reclaim")
        try:
            balance = await self.chain.get_token_balance(mint)
            account = await self.chain.get_account_info(mint)
            program = Pubkey.from_string(account.owner) if account and account.owner in TOKEN_PROGRAMS else TOKEN_PROGRAM
            instructions = self.wallet.burn_and_close_instructions(Pubkey.from_string(mint), balance, program)
            fee = int(self.config.sell.base_priority_fee * self.config.sell.rescue_fee_multiplier)
            signature, _ = await self.executor.submit(SwapFragment(instructions), fee, mode=SUBMIT_RPC)
            # Only the signature proves the burn; a zero balance can also come from a late sell
            result = await self.confirmer.confirm(signature, self.config.sell.confirm_timeout_sec)
            if not result.is_success:
                raise SwapException("Burn not confirmed", status=result.status.value, error=result.error)
        except Exception as e:
            position.manual_intervention = True
            logger.error("MANUAL INTERVENTION required for %s: burn failed: %s", mint, e,
                         exc_info=not isinstance(e, BotException))
            self.registry.transition(mint, PositionStatus.CLOSED)
            self._state(mint, ExitState.MANUAL_INTERVENTION)
            return ExitState.MANUAL_INTERVENTION

        position.exit_signature = signature
        position.exit_reason = "burned"
        if position.creator:
            self.blacklist.cleanup()
            self.blacklist.add_timeout(position.creator, RUGGED_CREATOR_TIMEOUT_MINUTES)
        return self._close(position)

    async def _close_paper(self, position: Position) -> ExitState:
        price = None
        if self.price_feed is not None:
            price = await self.price_feed.price_of(position.mint)
        price = price or position.entry_price_base
        if self.paper_broker is not None and price:
            self.paper_broker.sell(position, price)
            logger.info("Paper summary: %s", self.paper_broker.summary())
        position.exit_signature = "paper"
        return self._close(position)

    def _close(self, position: Position) -> ExitState:
        self.registry.transition(position.mint, PositionStatus.CLOSED)
        self._state(position.mint, ExitState.CLOSED, position.exit_reason or "")
        return ExitState.CLOSED
