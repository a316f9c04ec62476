"""
Position Registry

Single source of truth for which positions are active. The capacity check
and the insert happen in one synchronous call so interleaved event handlers
can never both pass the check before either records its position.
"""
from __future__ import annotations

import logging
from typing import Optional

from sniper_bot.core.models import Position, PositionStatus, VenueKind
from sniper_bot.exceptions import StateException

logger = logging.getLogger("sniper_bot.registry")

_ALLOWED = {
    PositionStatus.PENDING_ENTRY: {PositionStatus.OPEN, PositionStatus.FAILED},
    PositionStatus.OPEN: {PositionStatus.PENDING_EXIT},
    PositionStatus.PENDING_EXIT: {PositionStatus.CLOSED},
    PositionStatus.CLOSED: set(),
    PositionStatus.FAILED: set(),
}


class PositionRegistry:
    def __init__(self, capacity: int = 1) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._positions: dict[str, Position] = {}

    def __len__(self) -> int:
        return len(self._positions)

    def __contains__(self, mint: str) -> bool:
        return mint in self._positions

    def has_capacity(self) -> bool:
        return len(self._positions) < self.capacity

    def try_acquire(self, mint: str, venue: VenueKind = VenueKind.MIGRATED_POOL) -> bool:
        # Must stay free of awaits: check and set are one step.
        if mint in self._positions:
            logger.info("REJECT %s: position already active for this mint", mint[:8])
            return False
        if len(self._positions) >= self.capacity:
            logger.info("REJECT %s: capacity full (%d/%d)", mint[:8], len(self._positions), self.capacity)
            return False
        self._positions[mint] = Position(mint=mint, venue=venue)
        logger.info("🔒 Lock acquired for %s (%d/%d)", mint[:8], len(self._positions), self.capacity)
        return True

    def release(self, mint: str) -> Position:
        position = self._positions.pop(mint, None)
        if position is None:
            raise StateException("Release of a position that is not held", mint=mint)
        logger.info("🔓 Lock released for %s (status=%s). Resume scanning.", mint[:8], position.status.value)
        return position

    def get(self, mint: str) -> Optional[Position]:
        return self._positions.get(mint)

    def require(self, mint: str) -> Position:
        position = self._positions.get(mint)
        if position is None:
            raise StateException("Position is not registered", mint=mint)
        return position

    def active(self) -> list[Position]:
        return [p for p in self._positions.values() if p.is_active]

    def transition(self, mint: str, status: PositionStatus) -> Position:
        position = self.require(mint)
        if status not in _ALLOWED[position.status]:
            raise StateException(
                "Illegal position transition",
                mint=mint,
                current=position.status.value,
                requested=status.value,
            )
        logger.debug("Position %s: %s -> %s", mint[:8], position.status.value, status.value)
        position.status = status
        return position
