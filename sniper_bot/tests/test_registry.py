"""
Unit tests for the Position Registry

Tests core functionality:
1. Mutual exclusion under interleaved handlers
2. Duplicate mint and capacity rejection
3. Release invariants
4. Lifecycle transitions
"""

import asyncio
import os
import sys

import pytest

# Add repo root to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from sniper_bot.core.models import PositionStatus, VenueKind
from sniper_bot.core.registry import PositionRegistry
from sniper_bot.exceptions import StateException


class TestAcquire:
    """Test try_acquire / release"""

    def test_acquire_inserts_pending_entry(self):
        """A successful acquire records a PENDING_ENTRY position"""
        registry = PositionRegistry(capacity=1)
        assert registry.try_acquire("mintA", VenueKind.DIRECT_POOL)
        position = registry.get("mintA")
        assert position.status == PositionStatus.PENDING_ENTRY
        assert position.venue == VenueKind.DIRECT_POOL
        assert len(registry) == 1

    def test_capacity_exhausted(self):
        """Second mint is refused while the only slot is held"""
        registry = PositionRegistry(capacity=1)
        assert registry.try_acquire("mintA")
        assert not registry.try_acquire("mintB")
        assert "mintB" not in registry

    def test_duplicate_mint_refused(self):
        """The same mint is never held twice, even with spare capacity"""
        registry = PositionRegistry(capacity=3)
        assert registry.try_acquire("mintA")
        assert not registry.try_acquire("mintA")
        assert len(registry) == 1

    def test_release_frees_slot(self):
        """Released capacity is reusable"""
        registry = PositionRegistry(capacity=1)
        registry.try_acquire("mintA")
        released = registry.release("mintA")
        assert released.mint == "mintA"
        assert registry.has_capacity()
        assert registry.try_acquire("mintB")

    def test_release_unheld_raises(self):
        """Releasing a mint that is not held is an invariant violation"""
        registry = PositionRegistry(capacity=1)
        with pytest.raises(StateException):
            registry.release("ghost")

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            PositionRegistry(capacity=0)


class TestMutualExclusion:
    """Interleaved event handlers never exceed capacity"""

    def test_concurrent_handlers_single_slot(self):
        """Of many handlers racing for one slot exactly one wins"""
        registry = PositionRegistry(capacity=1)
        max_seen = []

        async def handler(mint: str, delay: float) -> bool:
            await asyncio.sleep(delay)
            if not registry.try_acquire(mint):
                return False
            try:
                max_seen.append(len(registry.active()))
                await asyncio.sleep(0.01)
                return True
            finally:
                registry.release(mint)

        async def scenario():
            return await asyncio.gather(*(handler(f"mint{i}", 0) for i in range(20)))

        results = asyncio.run(scenario())
        assert sum(results) == 1
        assert max(max_seen) == 1
        assert len(registry) == 0

    def test_concurrent_handlers_bounded_capacity(self):
        """With capacity N at most N positions are ever active"""
        registry = PositionRegistry(capacity=3)
        peak = 0

        async def handler(mint: str):
            nonlocal peak
            await asyncio.sleep(0)
            if registry.try_acquire(mint):
                try:
                    peak = max(peak, len(registry.active()))
                    await asyncio.sleep(0.005)
                finally:
                    registry.release(mint)

        async def scenario():
            await asyncio.gather(*(handler(f"mint{i % 7}") for i in range(40)))

        asyncio.run(scenario())
        assert peak <= 3


class TestTransitions:
    """Lifecycle transitions"""

    def test_happy_path(self):
        registry = PositionRegistry()
        registry.try_acquire("mintA")
        registry.transition("mintA", PositionStatus.OPEN)
        registry.transition("mintA", PositionStatus.PENDING_EXIT)
        position = registry.transition("mintA", PositionStatus.CLOSED)
        assert position.status == PositionStatus.CLOSED
        assert not position.is_active

    def test_entry_failure(self):
        registry = PositionRegistry()
        registry.try_acquire("mintA")
        assert registry.transition("mintA", PositionStatus.FAILED).status == PositionStatus.FAILED

    def test_illegal_transition_raises(self):
        """Skipping PENDING_EXIT is refused"""
        registry = PositionRegistry()
        registry.try_acquire("mintA")
        registry.transition("mintA", PositionStatus.OPEN)
        with pytest.raises(StateException):
            registry.transition("mintA", PositionStatus.CLOSED)

    def test_transition_unknown_mint_raises(self):
        registry = PositionRegistry()
        with pytest.raises(StateException):
            registry.transition("ghost", PositionStatus.OPEN)
