"""
Unit tests for the Entry Controller

Tests core functionality:
1. Pre-filters before the lock (liquidity floor, blacklist, insider buy)
2. Gating, live liquidity re-check and buy confirmation under the lock
3. Paper entries
"""

import asyncio
import os
import sys
from unittest.mock import AsyncMock, MagicMock

# Add repo root to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from sniper_bot.core.blacklist import BlacklistManager
from sniper_bot.core.entry_controller import EntryController, EntryState
from sniper_bot.core.models import (
    AttemptOutcome,
    AccountSnapshot,
    DetectionEvent,
    EntryCandidate,
    PositionStatus,
    SafetyVerdict,
    VenueKind,
)
from sniper_bot.core.registry import PositionRegistry
from sniper_bot.core.tx_confirmer import TxResult, TxStatus
from sniper_bot.core.venues import SwapFragment
from sniper_bot.exceptions import NetworkException
from sniper_bot.paper_trading.broker import PaperBroker
from sniper_bot.tests.helpers import balance, config, detection_tx, pk, sol

POOL_AUTHORITY = pk()
PROGRAM = pk()
POOL_SIZE = 1112


def fake_venue(kind=VenueKind.MIGRATED_POOL):
    venue = MagicMock()
    venue.kind = kind
    venue.program_id = PROGRAM
    venue.pool_account_size = POOL_SIZE
    venue.pool_owners = MagicMock(side_effect=lambda pool: {pool, POOL_AUTHORITY})
    venue.derive_pool = MagicMock(return_value=None)
    venue.pool_liquidity = AsyncMock(return_value=sol(100))
    venue.quote = AsyncMock(return_value=1_000)
    venue.build_swap = AsyncMock(return_value=SwapFragment([]))
    return venue


class Harness:
    """EntryController wired to fakes for a single detection transaction."""

    def __init__(self, liquidity=sol(100), tx=None, min_liquidity_sol=80.0, blacklist=(), **overrides):
        self.mint = pk()
        self.pool = pk()
        self.tx = tx or detection_tx(self.mint, self.pool, POOL_AUTHORITY, liquidity)

        self.venue = fake_venue()
        venues = MagicMock()
        venues.get.return_value = self.venue

        self.chain = MagicMock()
        self.chain.get_transaction = AsyncMock(return_value=self.tx)
        self.chain.get_multiple_accounts = AsyncMock(return_value=[
            None,
            AccountSnapshot(self.pool, PROGRAM, bytes(POOL_SIZE)),
            AccountSnapshot(self.mint, pk(), bytes(82)),
        ])
        self.chain.get_token_balance = AsyncMock(return_value=0)

        self.safety = MagicMock()
        self.safety.assess = AsyncMock(return_value=SafetyVerdict.safe())
        self.executor = MagicMock()
        self.executor.submit = AsyncMock(return_value=("buysig", "rpc"))
        self.confirmer = MagicMock()
        self.confirmer.confirm = AsyncMock(return_value=TxResult("buysig", TxStatus.CONFIRMED))

        self.registry = PositionRegistry(1)
        self.config = config(
            entry={"min_liquidity_sol": min_liquidity_sol, "fetch_attempts": 2, "fetch_retry_delay_sec": 0},
            **overrides,
        )
        self.controller = EntryController(
            self.config, self.chain, venues, self.safety, BlacklistManager(blacklist),
            self.registry, self.executor, self.confirmer,
            paper_broker=PaperBroker(1.0, fee_bps=0),
        )

    def prepare(self):
        return asyncio.run(self.controller.prepare(DetectionEvent(signature="detectsig")))

    def execute(self, candidate=None, paper=False):
        candidate = candidate or EntryCandidate(
            mint=self.mint, pool_address=self.pool, signature="detectsig",
            creator=pk(), liquidity_lamports=sol(100), entry_price_base=0.000001,
        )
        assert self.registry.try_acquire(candidate.mint, VenueKind.MIGRATED_POOL)
        position = self.registry.require(candidate.mint)
        position.paper = paper
        return asyncio.run(self.controller.execute(candidate, position))


class TestLiquidityFloor:
    """Liquidity floor is inclusive"""

    def test_exactly_at_floor_passes(self):
        harness = Harness(liquidity=sol(80))
        candidate = harness.prepare()
        assert candidate is not None
        assert candidate.liquidity_lamports == sol(80)
        assert candidate.pool_address == harness.pool

    def test_one_lamport_below_floor_rejected(self):
        assert Harness(liquidity=sol(80) - 1).prepare() is None

    def test_one_lamport_above_floor_passes(self):
        assert Harness(liquidity=sol(80) + 1).prepare() is not None

    def test_prefilter_never_touches_registry(self):
        harness = Harness(liquidity=sol(40))
        assert harness.prepare() is None
        assert len(harness.registry) == 0
        harness.safety.assess.assert_not_awaited()


class TestPrefilters:
    """Pre-filters that run before the lock"""

    def test_blacklisted_fee_payer(self):
        payer = pk()
        mint, pool = pk(), pk()
        tx = detection_tx(mint, pool, POOL_AUTHORITY, sol(100), fee_payer=payer)
        assert Harness(tx=tx, blacklist=[payer]).prepare() is None

    def test_insider_buy_rejected(self):
        mint, pool = pk(), pk()
        supply = 1_000_000_000_000
        insider = balance(5, mint, pk(), supply // 4)
        tx = detection_tx(mint, pool, POOL_AUTHORITY, sol(100), supply=supply, extra_post=(insider,))
        assert Harness(tx=tx).prepare() is None

    def test_failed_transaction_rejected(self):
        harness = Harness()
        harness.tx.err = {"InstructionError": [0, "Custom"]}
        assert harness.prepare() is None

    def test_fetch_retried_then_rejected(self):
        harness = Harness()
        harness.chain.get_transaction = AsyncMock(side_effect=NetworkException("not found"))
        assert harness.prepare() is None
        assert harness.chain.get_transaction.await_count == 2

    def test_pool_derived_when_not_referenced(self):
        harness = Harness()
        derived = pk()
        harness.chain.get_multiple_accounts = AsyncMock(return_value=[None, None, None])
        harness.venue.derive_pool.return_value = derived
        harness.tx.account_keys[1] = pk()
        candidate = harness.prepare()
        assert candidate is not None
        assert candidate.pool_address == derived


class TestExecute:
    """Lock-held entry path"""

    def test_unsafe_aborts_before_submission(self):
        harness = Harness()
        harness.safety.assess = AsyncMock(return_value=SafetyVerdict.unsafe("Mint authority active"))
        outcome = harness.execute()
        assert outcome.state == EntryState.ABORTED
        assert outcome.position.status == PositionStatus.FAILED
        harness.executor.submit.assert_not_awaited()

    def test_live_liquidity_below_floor_aborts(self):
        harness = Harness()
        harness.venue.pool_liquidity = AsyncMock(return_value=sol(50))
        outcome = harness.execute()
        assert outcome.state == EntryState.ABORTED
        harness.executor.submit.assert_not_awaited()

    def test_drained_pool_aborts(self):
        harness = Harness()
        harness.venue.pool_liquidity = AsyncMock(return_value=0)
        outcome = harness.execute()
        assert outcome.state == EntryState.ABORTED
        assert outcome.position.status == PositionStatus.FAILED
        harness.venue.build_swap.assert_not_awaited()
        harness.executor.submit.assert_not_awaited()

    def test_confirmed_buy_opens_position(self):
        harness = Harness()
        harness.venue.pool_liquidity = AsyncMock(return_value=sol(100))
        harness.chain.get_token_balance = AsyncMock(return_value=5_000)
        outcome = harness.execute()
        assert outcome.opened
        position = outcome.position
        assert position.status == PositionStatus.OPEN
        assert position.token_amount == 5_000
        assert position.entry_signature == "buysig"
        assert position.pool_address == harness.pool
        assert outcome.attempt.outcome == AttemptOutcome.LANDED
        assert outcome.attempt.signature == "buysig"
        assert outcome.attempt.venue == VenueKind.MIGRATED_POOL

    def test_balance_counts_when_status_lags(self):
        harness = Harness()
        harness.confirmer.confirm = AsyncMock(return_value=TxResult("buysig", TxStatus.EXPIRED))
        harness.chain.get_token_balance = AsyncMock(return_value=1)
        assert harness.execute().opened

    def test_unconfirmed_buy_aborts(self):
        harness = Harness()
        harness.confirmer.confirm = AsyncMock(return_value=TxResult("buysig", TxStatus.EXPIRED, error="Timeout"))
        outcome = harness.execute()
        assert outcome.state == EntryState.ABORTED
        assert outcome.position.status == PositionStatus.FAILED
        assert outcome.attempt.outcome == AttemptOutcome.NOT_CONFIRMED
        assert outcome.attempt.error == "Timeout"

    def test_submission_error_aborts(self):
        harness = Harness()
        harness.executor.submit = AsyncMock(side_effect=NetworkException("blockhash"))
        outcome = harness.execute()
        assert not outcome.opened
        assert outcome.position.status == PositionStatus.FAILED
        assert outcome.attempt.outcome == AttemptOutcome.REJECTED
        assert outcome.attempt.signature is None

    def test_paper_entry_skips_submission(self):
        harness = Harness()
        outcome = harness.execute(paper=True)
        assert outcome.opened
        assert abs(outcome.position.token_amount - 10_000) <= 1
        harness.executor.submit.assert_not_awaited()
