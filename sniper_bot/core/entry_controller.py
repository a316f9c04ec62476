"""
Entry Controller

Two halves around the position lock:

- prepare(): runs without the lock. Fetches the detection transaction,
  extracts mint and pool and applies the cheap pre-filters (blacklist,
  insider buy, liquidity floor) so rejected candidates never touch the
  registry.
- execute(): runs with the lock held. Safety gate, live liquidity
  re-check, buy submission and confirmation.

States: IDLE -> DETECTED -> GATING -> LIQUIDITY_CHECK -> SUBMITTING ->
CONFIRMING -> OPENED | ABORTED

IDLE is the absence of an entry in flight; only the states after it are
logged.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from sniper_bot.config import BotConfig
from sniper_bot.constants import LAMPORTS_PER_SOL, WSOL_MINT
from sniper_bot.core.blacklist import BlacklistManager
from sniper_bot.core.chain import ChainClient
from sniper_bot.core.executor import SwapExecutor
from sniper_bot.core.models import (
    AttemptOutcome,
    DetectionEvent,
    EntryCandidate,
    Position,
    PositionStatus,
    SubmissionAttempt,
    SwapDirection,
    TransactionDetails,
    VenueKind,
)
from sniper_bot.core.price_feed import PriceFeed
from sniper_bot.core.registry import PositionRegistry
from sniper_bot.core.safety import SafetyGate
from sniper_bot.core.transaction_parser import (
    detect_insider_buy,
    entry_price_from_deltas,
    extract_target_mint,
    match_pool_account,
    pool_base_liquidity,
)
from sniper_bot.core.tx_confirmer import TransactionConfirmer
from sniper_bot.core.venues import CurvePoolState, VenueRegistry
from sniper_bot.exceptions import BotException, NetworkException, StateException
from sniper_bot.paper_trading.broker import PaperBroker
from sniper_bot.utils.retry import exponential_backoff, retry

logger = logging.getLogger("sniper_bot.entry")

WSOL = str(WSOL_MINT)
MAX_ACCOUNTS_PER_LOOKUP = 100


class EntryState(str, Enum):
    DETECTED = "DETECTED"
    GATING = "GATING"
    LIQUIDITY_CHECK = "LIQUIDITY_CHECK"
    SUBMITTING = "SUBMITTING"
    CONFIRMING = "CONFIRMING"
    OPENED = "OPENED"
    ABORTED = "ABORTED"


@dataclass
class EntryOutcome:
    state: EntryState
    position: Position
    reason: Optional[str] = None
    attempt: Optional[SubmissionAttempt] = None

    @property
    def opened(self) -> bool:
        return self.state == EntryState.OPENED


class EntryController:
    def __init__(
        self,
        config: BotConfig,
        chain: ChainClient,
        venues: VenueRegistry,
        safety_gate: SafetyGate,
        blacklist: BlacklistManager,
        registry: PositionRegistry,
        executor: SwapExecutor,
        confirmer: TransactionConfirmer,
        paper_broker: Optional[PaperBroker] = None,
        price_feed: Optional[PriceFeed] = None,
    ) -> None:
        self.config = config
        self.chain = chain
        self.venues = venues
        self.safety_gate = safety_gate
        self.blacklist = blacklist
        self.registry = registry
        self.executor = executor
        self.confirmer = confirmer
        self.paper_broker = paper_broker
        self.price_feed = price_feed

    @property
    def venue(self):
        return self.venues.get(self.config.entry_venue)

    @property
    def liquidity_floor(self) -> int:
        return int(self.config.entry.min_liquidity_sol * LAMPORTS_PER_SOL)

    def _state(self, mint: str, state: EntryState, detail: str = "") -> None:
        logger.info("ENTRY %s... -> %s%s", mint[:8], state.value, f" ({detail})" if detail else "")

    # ------------------------------------------------------------------
    # DETECTED: fetch, extract, pre-filter (no lock)
    # ------------------------------------------------------------------
    async def _fetch(self, signature: str) -> TransactionDetails:
        tx = await self.chain.get_transaction(signature)
        if tx is None:
            raise NetworkException("Transaction not available yet", signature=signature[:16])
        return tx

    async def prepare(self, event: DetectionEvent) -> Optional[EntryCandidate]:
        """Candidate that passed every pre-filter, or None."""
        entry = self.config.entry
        try:
            tx = await retry(
                lambda: self._fetch(event.signature),
                max_attempts=entry.fetch_attempts,
                delay_strategy=exponential_backoff(entry.fetch_retry_delay_sec),
                is_retryable=lambda e: isinstance(e, NetworkException),
                name=f"fetch {event.signature[:12]}",
            )
        except BotException as e:
            logger.info("REJECT %s...: transaction unavailable (%s)", event.signature[:16], e)
            return None

        if tx.err is not None:
            logger.info("REJECT %s...: transaction failed on-chain", event.signature[:16])
            return None

        target = extract_target_mint(tx, WSOL)
        if target is None:
            logger.info("REJECT %s...: no target mint in balances", event.signature[:16])
            return None
        mint = target.mint
        self._state(mint, EntryState.DETECTED, f"sig {event.signature[:12]}")

        venue = self.venue
        try:
            snapshots = await self.chain.get_multiple_accounts(tx.account_keys[:MAX_ACCOUNTS_PER_LOOKUP])
        except BotException as e:
            logger.info("REJECT %s...: account lookup failed (%s)", mint[:8], e)
            return None

        pool_account = match_pool_account(snapshots, str(venue.program_id), venue.pool_account_size)
        if pool_account is not None:
            pool_address = pool_account.address
        else:
            pool_address = venue.derive_pool(entry.pool_config, mint, WSOL)
        if not pool_address:
            logger.info("REJECT %s...: pool not found", mint[:8])
            return None

        creator = None
        if pool_account is not None and venue.kind == VenueKind.DIRECT_POOL:
            try:
                creator = CurvePoolState.decode(pool_address, pool_account.data).creator
            except BotException as e:
                logger.debug("Creator unreadable for %s...: %s", mint[:8], e)

        blocked = self.blacklist.any_blocked(creator, tx.fee_payer)
        if blocked:
            logger.info("REJECT %s...: blacklisted creator %s...", mint[:8], blocked[:8])
            return None

        owners = venue.pool_owners(pool_address)
        insider = detect_insider_buy(tx, mint, owners, entry.insider_min_pct, entry.insider_max_pct)
        if insider:
            logger.info("REJECT %s...: insider %s... took %.1f%% of supply", mint[:8], insider[0][:8], insider[1])
            return None

        liquidity = pool_base_liquidity(tx, owners, pool_address, WSOL)
        if liquidity < self.liquidity_floor:
            logger.info(
                "REJECT %s...: liquidity %.2f SOL < %.2f SOL",
                mint[:8], liquidity / LAMPORTS_PER_SOL, entry.min_liquidity_sol,
            )
            return None

        return EntryCandidate(
            mint=mint,
            pool_address=pool_address,
            signature=event.signature,
            creator=creator or tx.fee_payer,
            liquidity_lamports=liquidity,
            entry_price_base=entry_price_from_deltas(tx, mint, WSOL) or 0.0,
        )

    # ------------------------------------------------------------------
    # GATING -> OPENED (lock held)
    # ------------------------------------------------------------------
    def _abort(self, position: Position, reason: str, attempt: Optional[SubmissionAttempt] = None) -> EntryOutcome:
        if position.status == PositionStatus.PENDING_ENTRY:
            self.registry.transition(position.mint, PositionStatus.FAILED)
        logger.info("ABORT entry %s...: %s", position.mint[:8], reason)
        return EntryOutcome(EntryState.ABORTED, position, reason, attempt)

    def _open(self, position: Position, candidate: EntryCandidate, signature: str, token_amount: int, price: float) -> EntryOutcome:
        position.pool_address = candidate.pool_address
        position.creator = candidate.creator
        position.entry_signature = signature
        position.token_amount = token_amount
        position.entry_price_base = price
        position.entry_amount_base = self.config.entry.buy_amount_sol
        position.entry_time = time.time()
        self.registry.transition(position.mint, PositionStatus.OPEN)
        self._state(position.mint, EntryState.OPENED, f"{token_amount} tokens")
        return EntryOutcome(EntryState.OPENED, position)

    async def execute(self, candidate: EntryCandidate, position: Position) -> EntryOutcome:
        try:
            return await self._execute(candidate, position)
        except StateException:
            raise
        except Exception as e:
            logger.warning("Entry error for %s...: %s", candidate.mint[:8], e, exc_info=not isinstance(e, BotException))
            return self._abort(position, f"error: {e}")

    async def _execute(self, candidate: EntryCandidate, position: Position) -> EntryOutcome:
        mint = candidate.mint
        venue = self.venue
        entry = self.config.entry

        self._state(mint, EntryState.GATING)
        verdict = await self.safety_gate.assess(mint)
        if not verdict.is_safe:
            return self._abort(position, f"unsafe: {verdict.reason}")

        self._state(mint, EntryState.LIQUIDITY_CHECK)
        live = await venue.pool_liquidity(candidate.pool_address)
        if live < self.liquidity_floor:
            return self._abort(position, f"live liquidity {live / LAMPORTS_PER_SOL:.2f} SOL below floor")

        if position.paper:
            return await self._open_paper(candidate, position)

        self._state(mint, EntryState.SUBMITTING, f"{entry.buy_amount_sol} SOL via {entry.submission}")
        amount_in = int(entry.buy_amount_sol * LAMPORTS_PER_SOL)
        min_out = await venue.quote(candidate.pool_address, mint, SwapDirection.BUY, amount_in)
        fragment = await venue.build_swap(candidate.pool_address, mint, SwapDirection.BUY, amount_in, min_out)
        attempt = SubmissionAttempt(venue=venue.kind, route="", priority_fee=entry.priority_fee_micro_lamports)
        try:
            attempt.signature, attempt.route = await self.executor.submit(
                fragment,
                entry.priority_fee_micro_lamports,
                mode=entry.submission,
            )
        except BotException as e:
            attempt.outcome, attempt.error = AttemptOutcome.REJECTED, str(e)
            logger.info("BUY %s... attempt: %s", mint[:8], attempt.summary())
            return self._abort(position, f"submission failed: {e}", attempt)
        signature = attempt.signature

        self._state(mint, EntryState.CONFIRMING, f"{signature[:12]} via {attempt.route}")

        async def holds_tokens() -> bool:
            return await self.chain.get_token_balance(mint) > 0

        result = await self.confirmer.confirm(signature, entry.confirm_timeout_sec, settled=holds_tokens)
        balance = await self.chain.get_token_balance(mint)
        if result.is_success or balance > 0:
            attempt.outcome = AttemptOutcome.LANDED
            if balance == 0:
                logger.warning("BUY %s... confirmed but balance not visible yet", mint[:8])
            logger.info("BUY %s... landed: %s", mint[:8], attempt.summary())
            outcome = self._open(position, candidate, signature, balance, candidate.entry_price_base)
            outcome.attempt = attempt
            return outcome

        attempt.outcome, attempt.error = AttemptOutcome.NOT_CONFIRMED, result.error or result.status.value
        logger.info("BUY %s... attempt: %s", mint[:8], attempt.summary())
        return self._abort(position, f"buy not confirmed ({result.status.value}: {result.error})", attempt)

    async def _open_paper(self, candidate: EntryCandidate, position: Position) -> EntryOutcome:
        price = candidate.entry_price_base
        if not price and self.price_feed is not None:
            price = await self.price_feed.price_of(candidate.mint) or 0.0
        if not price or self.paper_broker is None:
            return self._abort(position, "no price for paper fill")
        fill = self.paper_broker.buy(candidate.mint, self.config.entry.buy_amount_sol, price)
        return self._open(position, candidate, f"paper-{candidate.signature[:16]}", fill.token_amount, fill.price)
