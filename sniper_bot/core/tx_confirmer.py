"""
Transaction Confirmation Logic

Races the signature status against an optional balance predicate: whichever
reports first decides the outcome. Balance settlement counts because RPC
status lags behind the token account on busy slots.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

from sniper_bot.core.chain import ChainClient

logger = logging.getLogger(__name__)

SettledCheck = Callable[[], Awaitable[bool]]


class TxStatus(Enum):
    """Transaction status"""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FINALIZED = "finalized"
    BALANCE_CONFIRMED = "balance_confirmed"
    FAILED = "failed"
    EXPIRED = "expired"


@dataclass
class TxResult:
    """Transaction confirmation result"""
    signature: str
    status: TxStatus
    slot: Optional[int] = None
    error: Optional[str] = None
    elapsed_seconds: float = 0.0

    @property
    def is_success(self) -> bool:
        return self.status in (TxStatus.CONFIRMED, TxStatus.FINALIZED, TxStatus.BALANCE_CONFIRMED)


class TransactionConfirmer:
    """
    Usage:
        confirmer = TransactionConfirmer(chain)
        result = await confirmer.confirm(sig, timeout=30, settled=lambda: holds_tokens())

        if result.is_success:
            ...
    """

    DEFAULT_TIMEOUT = 30.0

    def __init__(self, chain: ChainClient, poll_interval: float = 0.5):
        self.chain = chain
        self.poll_interval = poll_interval

    async def _settled(self, settled: Optional[SettledCheck]) -> bool:
        if settled is None:
            return False
        return bool(await settled())

    async def confirm(
        self,
        signature: str,
        timeout: float = DEFAULT_TIMEOUT,
        settled: Optional[SettledCheck] = None,
    ) -> TxResult:
        """
        Poll until a positive signal, an on-chain error or the deadline.

        Args:
            signature: Transaction signature
            timeout: Maximum time to wait (seconds)
            settled: Optional predicate; True means the effect is visible on-chain

        Returns:
            TxResult with status and details
        """
        start = time.monotonic()
        deadline = start + timeout
        result = TxResult(signature=signature, status=TxStatus.PENDING)

        while time.monotonic() < deadline:
            status, is_settled = await asyncio.gather(
                self.chain.get_signature_status(signature),
                self._settled(settled),
                return_exceptions=True,
            )

            if isinstance(status, Exception):
                logger.debug("Status check error for %s...: %s", signature[:16], status)
            elif status:
                result.slot = status.get("slot")
                if status.get("err"):
                    result.status = TxStatus.FAILED
                    result.error = str(status["err"])
                    result.elapsed_seconds = time.monotonic() - start
                    logger.error("Transaction %s... failed: %s", signature[:16], result.error)
                    return result

                confirmation = status.get("confirmationStatus")
                if confirmation in ("confirmed", "finalized"):
                    result.status = TxStatus.FINALIZED if confirmation == "finalized" else TxStatus.CONFIRMED
                    result.elapsed_seconds = time.monotonic() - start
                    logger.info("Transaction %s... %s in %.1fs", signature[:16], confirmation, result.elapsed_seconds)
                    return result

            if isinstance(is_settled, Exception):
                logger.debug("Balance check error for %s...: %s", signature[:16], is_settled)
            elif is_settled:
                result.status = TxStatus.BALANCE_CONFIRMED
                result.elapsed_seconds = time.monotonic() - start
                logger.info("Transaction %s... settled by balance in %.1fs", signature[:16], result.elapsed_seconds)
                return result

            await asyncio.sleep(min(self.poll_interval, max(0.0, deadline - time.monotonic())))

        # Last look at the balance before giving up
        try:
            if await self._settled(settled):
                result.status = TxStatus.BALANCE_CONFIRMED
                result.elapsed_seconds = time.monotonic() - start
                logger.info("Transaction %s... settled by balance at deadline", signature[:16])
                return result
        except Exception as e:
            logger.debug("Final balance check error for %s...: %s", signature[:16], e)

        result.status = TxStatus.EXPIRED
        result.error = f"Timeout after {timeout}s"
        result.elapsed_seconds = time.monotonic() - start
        logger.warning("Transaction %s... expired after %.1fs", signature[:16], result.elapsed_seconds)
        return result
