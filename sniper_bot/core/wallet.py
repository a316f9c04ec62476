"""Wallet: keypair loading, ATA derivation and transaction assembly."""
from __future__ import annotations

import json
import logging
from typing import Optional, Sequence

import base58
from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from solders.transaction import VersionedTransaction
from spl.token.instructions import (
    BurnParams,
    CloseAccountParams,
    SyncNativeParams,
    burn,
    close_account,
    create_idempotent_associated_token_account,
    get_associated_token_address,
    sync_native,
)

from sniper_bot.constants import COMPUTE_UNIT_LIMIT, TOKEN_PROGRAM, WSOL_MINT
from sniper_bot.exceptions import WalletException

logger = logging.getLogger(__name__)


def associated_token_address(owner: Pubkey, mint: Pubkey, token_program: Pubkey = TOKEN_PROGRAM) -> Pubkey:
    return get_associated_token_address(owner, mint, token_program_id=token_program)


def create_ata_instruction(owner: Pubkey, mint: Pubkey, token_program: Pubkey = TOKEN_PROGRAM) -> Instruction:
    return create_idempotent_associated_token_account(
        payer=owner, owner=owner, mint=mint, token_program_id=token_program
    )


def wrap_sol_instructions(owner: Pubkey, lamports: int) -> list[Instruction]:
    """Create the WSOL ATA (idempotent), fund it and sync."""
    wsol_ata = associated_token_address(owner, WSOL_MINT)
    return [
        create_ata_instruction(owner, WSOL_MINT),
        transfer(TransferParams(from_pubkey=owner, to_pubkey=wsol_ata, lamports=lamports)),
        sync_native(SyncNativeParams(program_id=TOKEN_PROGRAM, account=wsol_ata)),
    ]


def unwrap_sol_instruction(owner: Pubkey) -> Instruction:
    """Close the WSOL ATA, returning lamports to the owner."""
    wsol_ata = associated_token_address(owner, WSOL_MINT)
    return close_account(CloseAccountParams(
        program_id=TOKEN_PROGRAM, account=wsol_ata, dest=owner, owner=owner
    ))


class Wallet:
    """Signing wallet. Holds the keypair and assembles versioned transactions."""

    def __init__(self, keypair: Keypair) -> None:
        self.keypair = keypair

    @classmethod
    def from_private_key(cls, private_key: Optional[str]) -> "Wallet":
        """Load from a base58 secret or a JSON byte array."""
        if not private_key:
            raise WalletException("SOLANA_PRIVATE_KEY is not configured")
        try:
            if private_key.strip().startswith("["):
                key_bytes = bytes(json.loads(private_key))
            else:
                key_bytes = base58.b58decode(private_key.strip())
            keypair = Keypair.from_bytes(key_bytes)
        except (ValueError, TypeError) as e:
            raise WalletException("Invalid private key", error=str(e)) from e
        logger.info("Wallet initialized: %s", str(keypair.pubkey())[:12] + "...")
        return cls(keypair)

    @property
    def pubkey(self) -> Pubkey:
        return self.keypair.pubkey()

    def associated_token_address(self, mint: Pubkey, token_program: Pubkey = TOKEN_PROGRAM) -> Pubkey:
        return associated_token_address(self.pubkey, mint, token_program)

    @staticmethod
    def compute_budget_instructions(unit_price: int, unit_limit: int = COMPUTE_UNIT_LIMIT) -> list[Instruction]:
        return [set_compute_unit_limit(unit_limit), set_compute_unit_price(unit_price)]

    def tip_instruction(self, tip_account: str, lamports: int) -> Instruction:
        return transfer(TransferParams(
            from_pubkey=self.pubkey,
            to_pubkey=Pubkey.from_string(tip_account),
            lamports=lamports,
        ))

    def sign(
        self,
        instructions: Sequence[Instruction],
        blockhash: Hash,
        lookup_tables: Sequence[AddressLookupTableAccount] = (),
    ) -> VersionedTransaction:
        message = MessageV0.try_compile(self.pubkey, list(instructions), list(lookup_tables), blockhash)
        return VersionedTransaction(message, [self.keypair])

    def burn_and_close_instructions(self, mint: Pubkey, amount: int, token_program: Pubkey = TOKEN_PROGRAM) -> list[Instruction]:
        """Burn the whole balance, then close the ATA to reclaim rent."""
        ata = self.associated_token_address(mint, token_program)
        ixs = []
        if amount > 0:
            ixs.append(burn(BurnParams(
                program_id=token_program, account=ata, mint=mint, owner=self.pubkey, amount=amount
            )))
        ixs.append(close_account(CloseAccountParams(
            program_id=token_program, account=ata, dest=self.pubkey, owner=self.pubkey
        )))
        return ixs
