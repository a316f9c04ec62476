"""Client for RugCheck.xyz API."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import aiohttp

from sniper_bot.config import Settings
from sniper_bot.exceptions import NetworkException

# Raw score RugCheck hands out to tokens it has not analysed yet
UNKNOWN_TOKEN_SCORE = 501


@dataclass
class RugCheckReport:
    """Standardized report from RugCheck."""
    score: int  # normalised 0-100 when available, raw otherwise
    risks: List[Dict[str, Any]]
    token_program: str
    mint: str
    rugs_detected: bool

    @property
    def danger_risks(self) -> List[str]:
        return [r.get("name", "?") for r in self.risks if r.get("level") == "danger"]


class RugCheckClient:
    """Client for RugCheck.xyz public API."""

    def __init__(self, settings: Settings, session: Optional[aiohttp.ClientSession] = None) -> None:
        self.base_url = settings.RUGCHECK_API_BASE.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=settings.API_TIMEOUT_SEC)
        self.logger = logging.getLogger("sniper_bot.rugcheck_api")
        self.session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self.session

    async def get_report(self, mint: str) -> RugCheckReport:
        """
        Fetch the token report summary.

        Raises NetworkException for anything that may succeed on a later
        call, including 404 (report not generated yet) and rate limits.
        """
        session = await self._get_session()
        url = f"{self.base_url}/tokens/{mint}/report/summary"
        try:
            async with session.get(url, timeout=self.timeout) as response:
                if response.status != 200:
                    body = (await response.text())[:200]
                    raise NetworkException("RugCheck API error", mint=mint[:8], status=response.status, body=body)
                data = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NetworkException("RugCheck unreachable", mint=mint[:8], error=str(e) or type(e).__name__) from e

        risks = data.get("risks") or []

        # Prefer normalised score (0-100 scale) if available
        score_normalised = data.get("score_normalised")
        if score_normalised is not None and score_normalised > 0:
            score = int(score_normalised)
        else:
            score = int(data.get("score", 0) or 0)
            if score == UNKNOWN_TOKEN_SCORE:
                self.logger.debug("RugCheck %s: score 501 (not analysed yet)", mint[:8])

        critical = [r for r in risks if r.get("level") == "danger"]

        return RugCheckReport(
            score=score,
            risks=risks,
            token_program=data.get("tokenProgram", ""),
            mint=mint,
            rugs_detected=len(critical) > 0 and score != UNKNOWN_TOKEN_SCORE,
        )

    async def close(self) -> None:
        if self._owns_session and self.session and not self.session.closed:
            await self.session.close()
