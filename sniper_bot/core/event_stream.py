"""Solana logsSubscribe WebSocket stream for pool creation / migration events."""
from __future__ import annotations

import asyncio
import json
import logging
from collections import OrderedDict
from typing import AsyncIterator, Optional, Sequence

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake

from sniper_bot.core.models import DetectionEvent


def parse_notification(message: str | bytes, markers: Sequence[str]) -> Optional[DetectionEvent]:
    """DetectionEvent for a successful logsNotification mentioning a marker, else None."""
    try:
        data = json.loads(message)
    except (json.JSONDecodeError, TypeError):
        return None
    if not isinstance(data, dict) or data.get("method") != "logsNotification":
        return None

    value = ((data.get("params") or {}).get("result") or {}).get("value") or {}
    signature = value.get("signature")
    if not signature or value.get("err") is not None:
        return None

    logs = value.get("logs") or []
    if not any(marker in line for line in logs for marker in markers):
        return None
    return DetectionEvent(signature=signature, logs=list(logs))


class ProcessedSignatures:
    """Bounded set of seen signatures; oldest entries are evicted first."""

    def __init__(self, max_size: int = 10_000) -> None:
        self.max_size = max_size
        self._seen: OrderedDict[str, None] = OrderedDict()

    def __contains__(self, signature: str) -> bool:
        return signature in self._seen

    def __len__(self) -> int:
        return len(self._seen)

    def add(self, signature: str) -> bool:
        """Record ``signature``; False when it was already seen."""
        if signature in self._seen:
            return False
        self._seen[signature] = None
        while len(self._seen) > self.max_size:
            self._seen.popitem(last=False)
        return True


class LogsEventStream:
    """WebSocket client for program log notifications.

    Subscribes to logs mentioning one program and yields an event for every
    successful transaction whose logs contain one of the markers.
    """

    INITIAL_RECONNECT_DELAY = 5.0
    MAX_RECONNECT_DELAY = 60.0
    RATE_LIMIT_DELAY = 15.0

    def __init__(self, ws_url: str, program_id: str, match_logs: Sequence[str], max_seen: int = 10_000) -> None:
        self.ws_url = ws_url
        self.program_id = program_id
        self.match_logs = list(match_logs)
        self.seen = ProcessedSignatures(max_seen)
        self.logger = logging.getLogger("sniper_bot.event_stream")
        self._running = False
        self._ws = None
        self._reconnect_delay = self.INITIAL_RECONNECT_DELAY

    def subscribe_request(self) -> str:
        return json.dumps({
            "jsonrpc": "2.0",
            "id": 1,
            "method": "logsSubscribe",
            "params": [{"mentions": [self.program_id]}, {"commitment": "confirmed"}],
        })

    def accept(self, message: str | bytes) -> Optional[DetectionEvent]:
        event = parse_notification(message, self.match_logs)
        if event is None or not self.seen.add(event.signature):
            return None
        return event

    async def events(self) -> AsyncIterator[DetectionEvent]:
        """Yield detection events until stop() is called."""
        self._running = True
        self.logger.info("Log stream starting for program %s...", self.program_id[:12])

        while self._running:
            delay = None
            try:
                async with websockets.connect(self.ws_url, ping_interval=20, max_size=None) as ws:
                    self._ws = ws
                    self._reconnect_delay = self.INITIAL_RECONNECT_DELAY
                    await ws.send(self.subscribe_request())
                    self.logger.info("Log stream subscribed (%d markers)", len(self.match_logs))

                    async for message in ws:
                        event = self.accept(message)
                        if event is not None:
                            self.logger.info("DETECTED %s...", event.signature[:16])
                            yield event
                        if not self._running:
                            break

            except InvalidHandshake as e:
                status = getattr(getattr(e, "response", None), "status_code", None)
                if status == 429 or "429" in str(e):
                    delay = self.RATE_LIMIT_DELAY
                    self.logger.warning("Log stream rate limited on connect")
                else:
                    self.logger.error("Log stream handshake failed: %s", e)
            except ConnectionClosed as e:
                self.logger.warning("Log stream closed: %s", e)
            except (OSError, asyncio.TimeoutError) as e:
                self.logger.error("Log stream connection error: %r", e)
            finally:
                self._ws = None

            if self._running:
                if delay is None:
                    delay = self._reconnect_delay
                    self._reconnect_delay = min(self._reconnect_delay * 2, self.MAX_RECONNECT_DELAY)
                self.logger.info("Log stream reconnecting in %.1fs...", delay)
                await asyncio.sleep(delay)

    async def stop(self) -> None:
        """Stop the WebSocket connection."""
        self._running = False
        if self._ws:
            await self._ws.close()
        self.logger.info("Log stream stopped")
