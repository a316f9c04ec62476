from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass

from sniper_bot.core.models import Position

logger = logging.getLogger("sniper_bot.paper")


@dataclass
class PaperFill:
    mint: str
    side: str
    size_sol: float
    token_amount: int
    price: float
    ts: float
    pnl_sol: float = 0.0

    @property
    def pnl_pct(self) -> float:
        if self.side != "SELL" or self.size_sol == 0:
            return 0.0
        cost = self.size_sol - self.pnl_sol
        return (self.pnl_sol / cost * 100) if cost else 0.0


class PaperBroker:
    """Simulated fills against a virtual SOL balance."""

    def __init__(self, starting_balance_sol: float, fee_bps: float = 100.0, slippage_pct: float = 0.0, seed: int | None = None) -> None:
        self.starting_balance = starting_balance_sol
        self.balance_sol = starting_balance_sol
        self.fee_bps = fee_bps
        self.slippage_pct = slippage_pct
        self.rng = random.Random(seed)
        self.trades = 0
        self.wins = 0
        self.losses = 0

    def _fill_price(self, side: str, price: float) -> float:
        slippage = self.rng.uniform(-self.slippage_pct, self.slippage_pct) if self.slippage_pct else 0.0
        fee_pct = min(0.5, self.fee_bps / 10000.0)
        if side == "BUY":
            fill = price * (1 + slippage) * (1 + fee_pct)
        else:
            fill = price * (1 + slippage) * (1 - fee_pct)
        return max(1e-12, fill)

    def buy(self, mint: str, amount_sol: float, price: float) -> PaperFill:
        """Spend ``amount_sol`` at ``price`` (SOL per token)."""
        if price <= 0:
            raise ValueError("price must be > 0")
        fill_price = self._fill_price("BUY", price)
        tokens = int(amount_sol / fill_price)
        self.balance_sol -= amount_sol
        logger.info("PAPER BUY %s... %.4f SOL -> %d tokens @ %.10f", mint[:8], amount_sol, tokens, fill_price)
        return PaperFill(mint, "BUY", amount_sol, tokens, fill_price, time.time())

    def sell(self, position: Position, price: float) -> PaperFill:
        fill_price = self._fill_price("SELL", price)
        tokens = position.token_amount or 0
        proceeds = tokens * fill_price
        pnl = proceeds - position.entry_amount_base
        self.balance_sol += proceeds
        self.trades += 1
        if pnl > 0:
            self.wins += 1
        else:
            self.losses += 1
        fill = PaperFill(position.mint, "SELL", proceeds, tokens, fill_price, time.time(), pnl_sol=pnl)
        logger.info("PAPER SELL %s... %d tokens -> %.4f SOL (PnL %+.4f SOL, %+.1f%%)",
                    position.mint[:8], tokens, proceeds, pnl, fill.pnl_pct)
        return fill

    def summary(self) -> dict:
        return {
            "balance_sol": round(self.balance_sol, 6),
            "pnl_sol": round(self.balance_sol - self.starting_balance, 6),
            "trades": self.trades,
            "wins": self.wins,
            "losses": self.losses,
            "win_rate": round(self.wins / self.trades * 100, 1) if self.trades else 0.0,
        }
