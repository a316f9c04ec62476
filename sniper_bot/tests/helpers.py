"""Builders shared by the test modules."""

import struct
from typing import Optional

from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from solders.transaction import VersionedTransaction

from sniper_bot.config import BotConfig
from sniper_bot.constants import LAMPORTS_PER_SOL, WSOL_MINT
from sniper_bot.core.models import TokenBalance, TransactionDetails

WSOL = str(WSOL_MINT)


def pk() -> str:
    return str(Pubkey.new_unique())


def sol(amount: float) -> int:
    return int(amount * LAMPORTS_PER_SOL)


def mint_data(mint_authority: bool = False, freeze_authority: bool = False, supply: int = 1_000_000_000, decimals: int = 6) -> bytes:
    def coption(present: bool) -> bytes:
        return struct.pack("<I", 1 if present else 0) + (bytes(Pubkey.new_unique()) if present else bytes(32))

    return (
        coption(mint_authority)
        + struct.pack("<Q", supply)
        + bytes([decimals, 1])
        + coption(freeze_authority)
    )


def metadata_data(is_mutable: bool, creators: int = 0) -> bytes:
    def borsh_str(value: str) -> bytes:
        raw = value.encode()
        return struct.pack("<I", len(raw)) + raw

    data = bytes([4]) + bytes(32) + bytes(32)
    data += borsh_str("Token") + borsh_str("TKN") + borsh_str("https://example.invalid/t.json")
    data += struct.pack("<H", 0)
    if creators:
        data += bytes([1]) + struct.pack("<I", creators) + bytes(34 * creators)
    else:
        data += bytes([0])
    data += bytes([0, 1 if is_mutable else 0])
    return data


def balance(index: int, mint: str, owner: Optional[str], amount: int, decimals: int = 6) -> TokenBalance:
    return TokenBalance(account_index=index, mint=mint, owner=owner, amount=amount, decimals=decimals)


def detection_tx(
    mint: str,
    pool: str,
    pool_owner: str,
    liquidity: int,
    supply: int = 1_000_000_000_000,
    extra_post: tuple = (),
    signature: str = "sig",
    fee_payer: Optional[str] = None,
) -> TransactionDetails:
    """Pool creation: the pool owner receives the whole supply and ``liquidity`` WSOL."""
    return TransactionDetails(
        signature=signature,
        account_keys=[fee_payer or pk(), pool, mint],
        pre_balances=[0, 0, 0],
        post_balances=[0, 0, 0],
        pre_token_balances=[],
        post_token_balances=[
            balance(3, mint, pool_owner, supply),
            balance(4, WSOL, pool_owner, liquidity, decimals=9),
            *extra_post,
        ],
    )


def config(**sections) -> BotConfig:
    """BotConfig with per-section overrides, e.g. config(sell={"standard_attempts": 2})."""
    data = {name: dict(values) for name, values in sections.items() if isinstance(values, dict)}
    data.update({name: value for name, value in sections.items() if not isinstance(value, dict)})
    return BotConfig.from_dict(data)


def signed_tx() -> VersionedTransaction:
    payer = Keypair()
    ix = transfer(TransferParams(from_pubkey=payer.pubkey(), to_pubkey=Pubkey.new_unique(), lamports=1))
    message = MessageV0.try_compile(payer.pubkey(), [ix], [], Hash.default())
    return VersionedTransaction(message, [payer])
