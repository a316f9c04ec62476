from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from sniper_bot.config import Settings
from sniper_bot.constants import WSOL_MINT

WSOL = str(WSOL_MINT)
MAX_TOKENS_PER_REQUEST = 30


@dataclass
class PriceQuote:
    price_base: float  # SOL per token
    price_usd: float | None = None
    liquidity_usd: float = 0.0


class PriceFeed:
    """DexScreener prices for open positions (stop-loss and paper fills)."""

    def __init__(
        self,
        settings: Settings,
        client: httpx.AsyncClient | None = None,
        max_retries: int = 3,
        retry_backoff_sec: float = 1.0,
    ) -> None:
        self.base_url = settings.DEXSCREENER_API_BASE.rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=settings.API_TIMEOUT_SEC)
        self.max_retries = max(1, max_retries)
        self.retry_backoff = max(0.5, retry_backoff_sec)
        self.logger = logging.getLogger("sniper_bot.price_feed")

    async def close(self) -> None:
        await self.client.aclose()

    async def get(self, mints: list[str]) -> dict[str, PriceQuote]:
        quotes: dict[str, PriceQuote] = {}
        for i in range(0, len(mints), MAX_TOKENS_PER_REQUEST):
            chunk = mints[i:i + MAX_TOKENS_PER_REQUEST]
            payload = await self._request(f"{self.base_url}/latest/dex/tokens/{','.join(chunk)}")
            pairs = payload.get("pairs") if isinstance(payload, dict) else None
            for mint in chunk:
                quote = self._best_quote(mint, pairs or [])
                if quote:
                    quotes[mint] = quote
        return quotes

    async def price_of(self, mint: str) -> float | None:
        quote = (await self.get([mint])).get(mint)
        return quote.price_base if quote else None

    @staticmethod
    def _best_quote(mint: str, pairs: list[dict[str, Any]]) -> PriceQuote | None:
        """Highest-liquidity SOL-quoted pair for ``mint``."""
        best: PriceQuote | None = None
        for pair in pairs:
            if (pair.get("baseToken") or {}).get("address") != mint:
                continue
            if (pair.get("quoteToken") or {}).get("address") != WSOL:
                continue
            try:
                price_base = float(pair.get("priceNative") or 0)
            except (TypeError, ValueError):
                continue
            if price_base <= 0:
                continue
            liquidity = float((pair.get("liquidity") or {}).get("usd") or 0)
            price_usd = pair.get("priceUsd")
            if best is None or liquidity > best.liquidity_usd:
                best = PriceQuote(price_base, float(price_usd) if price_usd else None, liquidity)
        return best

    async def _request(
        self,
        url: str,
        params: dict[str, Any] | None = None,
        log_level: str = "debug",
    ) -> dict[str, Any] | list | None:
        for attempt in range(self.max_retries):
            try:
                response = await self.client.get(url, params=params)
                if response.status_code == 429:
                    retry_after = response.headers.get("Retry-After")
                    delay = float(retry_after) if retry_after else self.retry_backoff * (attempt + 1)
                    self.logger.warning("DexScreener rate limited, retrying in %.1fs", delay)
                    await asyncio.sleep(delay)
                    continue
                response.raise_for_status()
                return response.json()
            except httpx.HTTPError as exc:
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(self.retry_backoff)
                    continue
                getattr(self.logger, log_level)(
                    "DexScreener request failed for %s: %s", url, exc
                )
                return None
        return None
