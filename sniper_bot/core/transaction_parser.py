"""
Transaction Parser

Pure helpers that read a confirmed detection transaction: which mint it
created, which pool holds the liquidity, how much base currency the pool
holds, whether someone grabbed a suspicious share of supply in the same
transaction, and the implied entry price.
"""
from __future__ import annotations

from typing import Any, Iterable, Optional

from sniper_bot.constants import WSOL_MINT
from sniper_bot.core.models import AccountSnapshot, TokenBalance, TransactionDetails

WSOL = str(WSOL_MINT)


def _key(entry: Any) -> str:
    # jsonParsed account keys are objects, plain json keys are strings
    if isinstance(entry, dict):
        return str(entry.get("pubkey", ""))
    return str(entry)


def _token_balances(raw: Optional[list]) -> list[TokenBalance]:
    balances = []
    for b in raw or []:
        ui = b.get("uiTokenAmount") or {}
        try:
            amount = int(ui.get("amount") or 0)
        except (TypeError, ValueError):
            amount = 0
        balances.append(TokenBalance(
            account_index=int(b.get("accountIndex", -1)),
            mint=str(b.get("mint", "")),
            owner=b.get("owner"),
            amount=amount,
            decimals=int(ui.get("decimals") or 0),
        ))
    return balances


def parse_transaction(signature: str, payload: dict) -> TransactionDetails:
    """Build TransactionDetails from a getTransaction JSON result."""
    tx_part = payload.get("transaction") or {}
    meta = payload.get("meta")
    if meta is None and isinstance(tx_part, dict) and "meta" in tx_part:
        meta = tx_part.get("meta")
        tx_part = tx_part.get("transaction") or {}
    meta = meta or {}

    message = tx_part.get("message") or {} if isinstance(tx_part, dict) else {}
    account_keys = [_key(k) for k in message.get("accountKeys") or []]

    # Plain json encoding keeps lookup-table addresses in meta
    loaded = meta.get("loadedAddresses") or {}
    if loaded and not any(isinstance(k, dict) for k in message.get("accountKeys") or []):
        account_keys += list(loaded.get("writable") or []) + list(loaded.get("readonly") or [])

    return TransactionDetails(
        signature=signature,
        account_keys=account_keys,
        pre_balances=list(meta.get("preBalances") or []),
        post_balances=list(meta.get("postBalances") or []),
        pre_token_balances=_token_balances(meta.get("preTokenBalances")),
        post_token_balances=_token_balances(meta.get("postTokenBalances")),
        log_messages=list(meta.get("logMessages") or []),
        err=meta.get("err"),
    )


def extract_target_mint(tx: TransactionDetails, base_mint: str = WSOL) -> Optional[TokenBalance]:
    """First fungible, non-base mint among the post-transaction token balances."""
    for balance in tx.post_token_balances:
        if balance.mint == base_mint or balance.decimals == 0:
            continue
        return balance
    return None


def match_pool_account(
    snapshots: Iterable[Optional[AccountSnapshot]],
    program_id: str,
    account_size: int,
) -> Optional[AccountSnapshot]:
    """Referenced account owned by the venue program with the expected size."""
    for snapshot in snapshots:
        if snapshot is None:
            continue
        if snapshot.owner == program_id and len(snapshot.data) == account_size:
            return snapshot
    return None


def pool_base_liquidity(tx: TransactionDetails, pool_owners: set[str], pool_address: str, base_mint: str = WSOL) -> int:
    """
    Base-currency reserve held by the pool after the transaction (raw units).

    Prefers WSOL token balances owned by the pool (or its authority); falls
    back to the pool account's native lamport balance.
    """
    total = sum(
        b.amount for b in tx.post_token_balances
        if b.mint == base_mint and b.owner in pool_owners
    )
    if total > 0:
        return total

    if pool_address in tx.account_keys:
        idx = tx.account_keys.index(pool_address)
        if idx < len(tx.post_balances):
            return int(tx.post_balances[idx])
    return 0


def _owner_deltas(tx: TransactionDetails, mint: str) -> dict[str, int]:
    deltas: dict[str, int] = {}
    for b in tx.pre_token_balances:
        if b.mint == mint and b.owner:
            deltas[b.owner] = deltas.get(b.owner, 0) - b.amount
    for b in tx.post_token_balances:
        if b.mint == mint and b.owner:
            deltas[b.owner] = deltas.get(b.owner, 0) + b.amount
    return deltas


def detect_insider_buy(
    tx: TransactionDetails,
    mint: str,
    pool_owners: set[str],
    min_pct: float,
    max_pct: float,
    supply: Optional[int] = None,
) -> Optional[tuple[str, float]]:
    """
    Return (owner, pct) of a non-pool wallet that acquired between
    ``min_pct`` and ``max_pct`` of supply in this transaction, else None.

    Shares at or above ``max_pct`` are treated as the pool itself.
    """
    if supply is None:
        supply = sum(b.amount for b in tx.post_token_balances if b.mint == mint)
    if not supply:
        return None

    for owner, delta in _owner_deltas(tx, mint).items():
        if owner in pool_owners or delta <= 0:
            continue
        pct = delta / supply * 100
        if min_pct < pct < max_pct:
            return owner, pct
    return None


def _volume(tx: TransactionDetails, mint: str) -> float:
    """Half the total absolute balance movement of ``mint``, in UI units."""
    per_account: dict[int, list[float]] = {}
    for b in tx.pre_token_balances:
        if b.mint == mint:
            per_account.setdefault(b.account_index, [0.0, 0.0])[0] = b.amount / (10 ** b.decimals)
    for b in tx.post_token_balances:
        if b.mint == mint:
            per_account.setdefault(b.account_index, [0.0, 0.0])[1] = b.amount / (10 ** b.decimals)
    return sum(abs(post - pre) for pre, post in per_account.values()) / 2


def entry_price_from_deltas(tx: TransactionDetails, mint: str, base_mint: str = WSOL) -> Optional[float]:
    """Implied price (base per token) from the volumes moved in the transaction."""
    base_volume = _volume(tx, base_mint)
    token_volume = _volume(tx, mint)
    if base_volume > 0 and token_volume > 0:
        return base_volume / token_volume
    return None
