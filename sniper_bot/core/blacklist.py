"""
Blacklist Manager Module

Keeps known-bad creators (launchpad authorities, ruggers) away from the
entry path. Manages temporary timeouts and permanent blocks.
"""

import time
import logging
from typing import Dict, Iterable, Optional, Set

logger = logging.getLogger(__name__)


class BlacklistManager:
    def __init__(self, permanent: Iterable[str] = ()):
        # Maps address -> expiration_timestamp
        self.timeouts: Dict[str, float] = {}
        # Permanent blacklist
        self.permanent_blocks: Set[str] = set(permanent)

    def add_timeout(self, address: str, duration_minutes: float = 60.0):
        """Add a temporary timeout for a creator."""
        expiration = time.time() + (duration_minutes * 60)
        self.timeouts[address] = expiration
        logger.info("Added timeout for %s... (%sm)", address[:8], duration_minutes)

    def is_blocked(self, address: Optional[str]) -> bool:
        """Check if an address is currently blocked."""
        if not address:
            return False

        if address in self.permanent_blocks:
            return True

        if address in self.timeouts:
            if time.time() < self.timeouts[address]:
                return True
            # Expired
            del self.timeouts[address]

        return False

    def any_blocked(self, *addresses: Optional[str]) -> Optional[str]:
        """First blocked address among ``addresses``, if any."""
        for address in addresses:
            if self.is_blocked(address):
                return address
        return None

    def cleanup(self):
        """Remove expired timeouts."""
        now = time.time()
        expired = [k for k, v in self.timeouts.items() if v < now]
        for k in expired:
            del self.timeouts[k]
