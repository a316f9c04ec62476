"""
Unit tests for the SniperBot event handler

Tests core functionality:
1. Rejected candidates never acquire the lock
2. Busy bot drops events instead of queueing them
3. The lock is released on every exit path
4. Invariant violations stop the bot
"""

import asyncio
import os
import sys
from unittest.mock import AsyncMock, MagicMock

import pytest

# Add repo root to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from sniper_bot.core.bot import SniperBot
from sniper_bot.core.entry_controller import EntryOutcome, EntryState
from sniper_bot.core.exit_controller import ExitState
from sniper_bot.core.models import DetectionEvent, EntryCandidate
from sniper_bot.core.registry import PositionRegistry
from sniper_bot.exceptions import StateException
from sniper_bot.tests.helpers import config, pk, sol
from sniper_bot.tests.test_entry_controller import Harness


def make_bot(entry, exit_controller=None, stream=None):
    exit_controller = exit_controller or MagicMock()
    if not isinstance(exit_controller.run, AsyncMock):
        exit_controller.run = AsyncMock(return_value=ExitState.CLOSED)
    return SniperBot(config(), entry.registry, entry, exit_controller, stream or MagicMock())


def opened_entry(registry):
    """Entry fake that opens whatever it is given."""
    entry = MagicMock()
    entry.registry = registry

    async def prepare(event):
        return EntryCandidate(mint=event.signature, pool_address="pool", signature=event.signature)

    async def execute(candidate, position):
        return EntryOutcome(EntryState.OPENED, position)

    entry.prepare = AsyncMock(side_effect=prepare)
    entry.execute = AsyncMock(side_effect=execute)
    return entry


class TestHandleEvent:
    """Test SniperBot.handle_event"""

    def test_low_liquidity_never_acquires_lock(self):
        """A 40 SOL pool under an 80 SOL floor is rejected without touching the registry"""
        harness = Harness(liquidity=sol(40), min_liquidity_sol=80.0)
        bot = make_bot(harness.controller)
        harness.registry.try_acquire = MagicMock(wraps=harness.registry.try_acquire)

        asyncio.run(bot.handle_event(DetectionEvent(signature=pk())))

        harness.registry.try_acquire.assert_not_called()
        harness.safety.assess.assert_not_awaited()
        bot.exit.run.assert_not_awaited()

    def test_position_released_after_exit(self):
        registry = PositionRegistry(1)
        bot = make_bot(opened_entry(registry))
        asyncio.run(bot.handle_event(DetectionEvent(signature="mintA")))
        bot.exit.run.assert_awaited_once()
        assert len(registry) == 0

    def test_released_when_exit_crashes(self):
        registry = PositionRegistry(1)
        exit_controller = MagicMock()
        exit_controller.run = AsyncMock(side_effect=RuntimeError("boom"))
        bot = make_bot(opened_entry(registry), exit_controller)
        asyncio.run(bot.handle_event(DetectionEvent(signature="mintA")))
        assert len(registry) == 0

    def test_flagged_position_logged_on_release(self, caplog):
        registry = PositionRegistry(1)
        exit_controller = MagicMock()

        async def stuck_exit(position):
            position.manual_intervention = True
            return ExitState.MANUAL_INTERVENTION

        exit_controller.run = AsyncMock(side_effect=stuck_exit)
        bot = make_bot(opened_entry(registry), exit_controller)
        with caplog.at_level("ERROR", logger="sniper_bot.bot"):
            asyncio.run(bot.handle_event(DetectionEvent(signature="mintA")))
        assert len(registry) == 0
        assert any("MANUAL INTERVENTION" in r.getMessage() and "mintA" in r.getMessage() for r in caplog.records)

    def test_busy_bot_drops_event(self):
        """With the only slot held, new events are dropped before prepare"""
        registry = PositionRegistry(1)
        registry.try_acquire("held")
        entry = opened_entry(registry)
        bot = make_bot(entry)
        asyncio.run(bot.handle_event(DetectionEvent(signature="mintB")))
        entry.prepare.assert_not_awaited()
        assert "mintB" not in registry

    def test_concurrent_events_single_position(self):
        """Two events racing: one trades, the other is dropped"""
        registry = PositionRegistry(1)
        entry = opened_entry(registry)
        exit_controller = MagicMock()

        async def slow_exit(position):
            await asyncio.sleep(0.02)
            return ExitState.CLOSED

        exit_controller.run = AsyncMock(side_effect=slow_exit)
        bot = make_bot(entry, exit_controller)

        async def scenario():
            await asyncio.gather(
                bot.handle_event(DetectionEvent(signature="mintA")),
                bot.handle_event(DetectionEvent(signature="mintB")),
            )

        asyncio.run(scenario())
        assert exit_controller.run.await_count == 1
        assert len(registry) == 0

    def test_state_exception_propagates(self):
        registry = PositionRegistry(1)
        entry = opened_entry(registry)
        entry.execute = AsyncMock(side_effect=StateException("bad transition"))
        bot = make_bot(entry)
        with pytest.raises(StateException):
            asyncio.run(bot.handle_event(DetectionEvent(signature="mintA")))
        assert len(registry) == 0


class FakeStream:
    def __init__(self, signatures):
        self.signatures = signatures
        self.stopped = False

    async def events(self):
        for signature in self.signatures:
            if self.stopped:
                return
            yield DetectionEvent(signature=signature)
            await asyncio.sleep(0)

    async def stop(self):
        self.stopped = True


class TestRun:
    """Test SniperBot.run"""

    def test_each_event_handled(self):
        registry = PositionRegistry(1)
        entry = opened_entry(registry)
        bot = make_bot(entry, stream=FakeStream(["a", "b", "c"]))
        asyncio.run(bot.run())
        assert entry.prepare.await_count >= 1
        assert len(registry) == 0

    def test_invariant_violation_stops_bot(self):
        registry = PositionRegistry(1)
        entry = opened_entry(registry)
        entry.execute = AsyncMock(side_effect=StateException("bad transition"))
        stream = FakeStream(["a"])
        bot = make_bot(entry, stream=stream)
        with pytest.raises(StateException):
            asyncio.run(bot.run())
