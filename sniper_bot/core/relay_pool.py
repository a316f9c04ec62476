"""
Jito Relay Pool

Bundles are sent privately to Jito block engines. The pool keeps one
client per block engine, ranks them by last observed latency and fails
over when an engine rate-limits or rejects.

Usage:
    pool = RelayPool.from_config(session, config.relay, chain)

    receipt = await pool.submit_bundle([tx])     # failover, fastest first
    receipt = await pool.race([tx])              # emergency: everyone at once
"""
from __future__ import annotations

import asyncio
import base64
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Optional, Sequence

import aiohttp
from solders.transaction import VersionedTransaction

from sniper_bot.constants import JITO_TIPS
from sniper_bot.core.models import RelayEndpoint
from sniper_bot.exceptions import BotException, RelayException, RelayRateLimited, RelayRejected
from sniper_bot.utils.retry import CircuitBreaker

logger = logging.getLogger(__name__)

RPC_ROUTE = "direct-rpc"

# Older latency samples rank like unmeasured endpoints
LATENCY_MAX_AGE_SEC = 300.0

_RATE_LIMIT_MARKERS = ("rate limited", "resource has been exhausted")


@dataclass
class RelayReceipt:
    """Where and how fast a bundle (or transaction) was accepted."""
    route: str
    bundle_id: Optional[str]
    signature: Optional[str]
    latency_ms: float


def _encode(tx: VersionedTransaction) -> str:
    return base64.b64encode(bytes(tx)).decode("utf-8")


def _first_signature(transactions: Sequence[VersionedTransaction]) -> Optional[str]:
    if transactions and transactions[0].signatures:
        return str(transactions[0].signatures[0])
    return None


class JitoRelayClient:
    """JSON-RPC client for one Jito block engine."""

    def __init__(self, session: aiohttp.ClientSession, url: str, timeout_sec: float = 5.0):
        self.session = session
        self.url = url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout_sec)

    async def _call(self, method: str, params: list) -> Any:
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        try:
            async with self.session.post(f"{self.url}/api/v1/bundles", json=payload, timeout=self.timeout) as resp:
                if resp.status == 429:
                    raise RelayRateLimited("Block engine rate limited", url=self.url)
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise RelayException("Block engine unreachable", url=self.url, error=str(e) or type(e).__name__) from e

        if not isinstance(data, dict):
            raise RelayRejected("Unknown response format", url=self.url)

        error = data.get("error")
        if error:
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            code = error.get("code") if isinstance(error, dict) else None
            if code == 8 or any(m in message.lower() for m in _RATE_LIMIT_MARKERS):
                raise RelayRateLimited("Block engine rate limited", url=self.url, error=message)
            raise RelayRejected("Bundle rejected", url=self.url, error=message)

        if "result" not in data:
            raise RelayRejected("Unknown response format", url=self.url)
        return data["result"]

    async def send_bundle(self, encoded_txs: list[str]) -> str:
        result = await self._call("sendBundle", [encoded_txs, {"encoding": "base64"}])
        return str(result)

    async def get_tip_accounts(self) -> list[str]:
        result = await self._call("getTipAccounts", [])
        return [str(a) for a in result or []]


class RelayPool:
    """
    Latency-ranked set of block engines with failover and racing.

    Endpoints are created once at startup; only their health fields
    change afterwards.
    """

    def __init__(
        self,
        endpoints: list[RelayEndpoint],
        chain=None,
        failure_threshold: int = 3,
        recovery_timeout: float = 30.0,
    ):
        self.endpoints = endpoints
        self.chain = chain
        self.breakers = {
            ep.url: CircuitBreaker(failure_threshold, recovery_timeout, name=ep.url)
            for ep in endpoints
        }
        self._tip_accounts: Optional[list[str]] = None

    @classmethod
    def from_config(cls, session: aiohttp.ClientSession, relay_config, chain=None) -> "RelayPool":
        endpoints = [
            RelayEndpoint(url=url, client=JitoRelayClient(session, url, relay_config.request_timeout_sec))
            for url in relay_config.block_engines
        ]
        logger.info("Relay pool initialized with %d block engines", len(endpoints))
        return cls(
            endpoints,
            chain=chain,
            failure_threshold=relay_config.failure_threshold,
            recovery_timeout=relay_config.recovery_timeout_sec,
        )

    # ------------------------------------------------------------------
    # Ranking
    # ------------------------------------------------------------------
    def ranked(self) -> list[RelayEndpoint]:
        """Healthy endpoints by latency (unmeasured or stale last), then open breakers."""
        now = time.time()

        def latency(ep: RelayEndpoint) -> float:
            if ep.last_latency_ms is None or now - ep.last_checked > LATENCY_MAX_AGE_SEC:
                return float("inf")
            return ep.last_latency_ms

        healthy = [ep for ep in self.endpoints if self.breakers[ep.url].can_execute()]
        tripped = [ep for ep in self.endpoints if ep not in healthy]
        return sorted(healthy, key=latency) + tripped

    async def _send(self, endpoint: RelayEndpoint, encoded: list[str], signature: Optional[str]) -> RelayReceipt:
        start = time.monotonic()
        breaker = self.breakers[endpoint.url]
        try:
            bundle_id = await endpoint.client.send_bundle(encoded)
        except RelayException as e:
            endpoint.record_failure(str(e))
            breaker.record_failure()
            raise
        latency_ms = (time.monotonic() - start) * 1000
        endpoint.record_success(latency_ms)
        breaker.record_success()
        return RelayReceipt(endpoint.url, bundle_id, signature, latency_ms)

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------
    async def submit_bundle(
        self,
        transactions: Sequence[VersionedTransaction],
        order: Optional[Sequence[RelayEndpoint]] = None,
    ) -> Optional[RelayReceipt]:
        """Try endpoints one after another; None when all of them fail."""
        encoded = [_encode(tx) for tx in transactions]
        signature = _first_signature(transactions)

        for endpoint in order or self.ranked():
            try:
                receipt = await self._send(endpoint, encoded, signature)
            except RelayRateLimited as e:
                logger.warning("Relay %s rate limited, trying next: %s", endpoint.url, e)
                continue
            except RelayException as e:
                logger.warning("Relay %s failed, trying next: %s", endpoint.url, e)
                continue
            logger.info("Bundle accepted by %s in %.0fms (bundle=%s)", endpoint.url, receipt.latency_ms, receipt.bundle_id)
            return receipt

        logger.error("Bundle rejected by every relay (%d endpoints)", len(self.endpoints))
        return None

    async def _broadcast_rpc(self, tx: VersionedTransaction) -> RelayReceipt:
        start = time.monotonic()
        signature = await self.chain.broadcast(tx)
        return RelayReceipt(RPC_ROUTE, None, signature, (time.monotonic() - start) * 1000)

    async def race(
        self,
        transactions: Sequence[VersionedTransaction],
        include_rpc: bool = True,
    ) -> Optional[RelayReceipt]:
        """
        Submit to every endpoint (and optionally direct RPC) at once.

        The first success wins and the rest are cancelled.
        """
        encoded = [_encode(tx) for tx in transactions]
        signature = _first_signature(transactions)

        tasks = [
            asyncio.create_task(self._send(ep, encoded, signature), name=ep.url)
            for ep in self.endpoints
        ]
        if include_rpc and self.chain is not None and transactions:
            tasks.append(asyncio.create_task(self._broadcast_rpc(transactions[0]), name=RPC_ROUTE))
        if not tasks:
            return None

        pending = set(tasks)
        winner: Optional[RelayReceipt] = None
        try:
            while pending and winner is None:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    if task.cancelled():
                        continue
                    error = task.exception()
                    if error is None:
                        winner = task.result()
                        break
                    if isinstance(error, BotException):
                        logger.debug("Race leg %s failed: %s", task.get_name(), error)
                    else:
                        logger.warning("Race leg %s crashed: %r", task.get_name(), error)
        finally:
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        if winner is None:
            logger.error("Race lost on every route (%d legs)", len(tasks))
        else:
            logger.info("Race won by %s in %.0fms", winner.route, winner.latency_ms)
        return winner

    # ------------------------------------------------------------------
    # Tips
    # ------------------------------------------------------------------
    async def tip_accounts(self) -> list[str]:
        """Tip accounts from the first healthy endpoint, cached for the process."""
        if self._tip_accounts is not None:
            return self._tip_accounts

        for endpoint in self.ranked():
            try:
                accounts = await endpoint.client.get_tip_accounts()
            except RelayException as e:
                logger.debug("getTipAccounts failed on %s: %s", endpoint.url, e)
                continue
            if accounts:
                self._tip_accounts = accounts
                return accounts

        logger.warning("Using built-in Jito tip accounts")
        self._tip_accounts = list(JITO_TIPS)
        return self._tip_accounts

    def random_tip_account(self) -> str:
        return random.choice(self._tip_accounts or JITO_TIPS)
