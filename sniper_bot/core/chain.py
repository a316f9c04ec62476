"""
Chain Client

Thin async facade over the Solana RPC used by every controller. Converts
RPC responses into the bot's own records and RPC failures into
NetworkException so callers can apply the retry policy.
"""
from __future__ import annotations

import json
import logging
from typing import Optional, Sequence

from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.types import MemcmpOpts, TokenAccountOpts, TxOpts
from solders.address_lookup_table_account import AddressLookupTable, AddressLookupTableAccount
from solders.hash import Hash
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction

from sniper_bot.core.models import AccountSnapshot, TransactionDetails
from sniper_bot.core.transaction_parser import parse_transaction
from sniper_bot.core.wallet import associated_token_address
from sniper_bot.exceptions import NetworkException, SwapException
from sniper_bot.utils.retry import async_retry

logger = logging.getLogger(__name__)


def _rpc_error_logs(exc: Exception) -> list[str]:
    """Pull program logs out of a preflight failure, if any."""
    for arg in getattr(exc, "args", ()):
        data = getattr(arg, "data", None)
        logs = getattr(data, "logs", None)
        if logs:
            return list(logs)
    return []


class ChainClient:
    def __init__(self, client: AsyncClient, owner: Pubkey, skip_preflight: bool = False) -> None:
        self.client = client
        self.owner = owner
        self.skip_preflight = skip_preflight

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    async def get_transaction(self, signature: str) -> Optional[TransactionDetails]:
        try:
            resp = await self.client.get_transaction(
                Signature.from_string(signature),
                encoding="jsonParsed",
                commitment=Confirmed,
                max_supported_transaction_version=0,
            )
        except Exception as e:
            raise NetworkException("getTransaction failed", signature=signature[:16], error=str(e)) from e
        if resp.value is None:
            return None
        return parse_transaction(signature, json.loads(resp.value.to_json()))

    async def get_signature_status(self, signature: str) -> Optional[dict]:
        try:
            resp = await self.client.get_signature_statuses(
                [Signature.from_string(signature)], search_transaction_history=True
            )
        except Exception as e:
            raise NetworkException("getSignatureStatuses failed", signature=signature[:16], error=str(e)) from e
        status = resp.value[0] if resp and resp.value else None
        if status is None:
            return None
        confirmation = status.confirmation_status
        return {
            "slot": status.slot,
            "err": status.err,
            "confirmationStatus": str(confirmation).split(".")[-1].lower() if confirmation else None,
        }

    async def get_token_balance(self, mint: str, owner: Optional[Pubkey] = None) -> int:
        """
        Raw token balance of ``owner`` (default: the bot wallet) for ``mint``.

        Sums every token account for the mint, falling back to the ATA.
        """
        owner = owner or self.owner
        mint_key = Pubkey.from_string(mint)
        try:
            resp = await self.client.get_token_accounts_by_owner_json_parsed(
                owner, TokenAccountOpts(mint=mint_key)
            )
            total = 0
            for acc in resp.value or []:
                try:
                    total += int(acc.account.data.parsed["info"]["tokenAmount"]["amount"])
                except (KeyError, TypeError):
                    continue
            if total > 0:
                return total

            resp_ata = await self.client.get_token_account_balance(associated_token_address(owner, mint_key))
            if resp_ata.value:
                return int(resp_ata.value.amount)
        except Exception as e:
            if "could not find account" in str(e).lower():
                return 0
            raise NetworkException("Token balance check failed", mint=mint[:8], error=str(e)) from e
        return 0

    async def get_token_account_amount(self, address: str) -> int:
        try:
            resp = await self.client.get_token_account_balance(Pubkey.from_string(address))
        except Exception as e:
            raise NetworkException("getTokenAccountBalance failed", account=address[:8], error=str(e)) from e
        return int(resp.value.amount) if resp.value else 0

    async def get_account_info(self, address: str) -> Optional[AccountSnapshot]:
        try:
            resp = await self.client.get_account_info(Pubkey.from_string(address))
        except Exception as e:
            raise NetworkException("getAccountInfo failed", account=address[:8], error=str(e)) from e
        value = resp.value
        if value is None:
            return None
        return AccountSnapshot(address=address, owner=str(value.owner), data=bytes(value.data), lamports=value.lamports)

    async def get_multiple_accounts(self, addresses: Sequence[str]) -> list[Optional[AccountSnapshot]]:
        if not addresses:
            return []
        try:
            resp = await self.client.get_multiple_accounts([Pubkey.from_string(a) for a in addresses])
        except Exception as e:
            raise NetworkException("getMultipleAccounts failed", count=len(addresses), error=str(e)) from e
        return [
            AccountSnapshot(address=addr, owner=str(v.owner), data=bytes(v.data), lamports=v.lamports) if v else None
            for addr, v in zip(addresses, resp.value)
        ]

    async def get_token_largest_accounts(self, mint: str) -> list[int]:
        # "not a Token mint" errors propagate untouched; the safety checker inspects them.
        resp = await self.client.get_token_largest_accounts(Pubkey.from_string(mint))
        return [int(acc.amount.amount) for acc in resp.value or []]

    async def get_program_accounts(
        self,
        program: Pubkey,
        data_size: Optional[int] = None,
        memcmp: Sequence[tuple[int, str]] = (),
    ) -> list[AccountSnapshot]:
        filters: list = [MemcmpOpts(offset=offset, bytes=value) for offset, value in memcmp]
        if data_size is not None:
            filters.append(data_size)
        try:
            resp = await self.client.get_program_accounts(program, encoding="base64", filters=filters)
        except Exception as e:
            raise NetworkException("getProgramAccounts failed", program=str(program)[:8], error=str(e)) from e
        return [
            AccountSnapshot(
                address=str(item.pubkey),
                owner=str(item.account.owner),
                data=bytes(item.account.data),
                lamports=item.account.lamports,
            )
            for item in resp.value or []
        ]

    async def get_lookup_tables(self, addresses: Sequence[str]) -> list[AddressLookupTableAccount]:
        tables = []
        for snapshot in await self.get_multiple_accounts(addresses):
            if snapshot is None:
                continue
            table = AddressLookupTable.deserialize(snapshot.data)
            tables.append(AddressLookupTableAccount(Pubkey.from_string(snapshot.address), list(table.addresses)))
        return tables

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------
    @async_retry(max_attempts=3, delay=0.2, exceptions=(NetworkException,))
    async def get_latest_blockhash(self) -> Hash:
        try:
            resp = await self.client.get_latest_blockhash(commitment=Confirmed)
        except Exception as e:
            raise NetworkException("getLatestBlockhash failed", error=str(e)) from e
        return resp.value.blockhash

    async def broadcast(self, tx: VersionedTransaction) -> str:
        """Send via RPC. Preflight failures carry the program logs."""
        try:
            resp = await self.client.send_transaction(
                tx,
                opts=TxOpts(skip_preflight=self.skip_preflight, preflight_commitment=Confirmed, max_retries=3),
            )
        except Exception as e:
            logs = _rpc_error_logs(e)
            raise SwapException("RPC broadcast rejected", error=str(e), logs=" | ".join(logs)) from e
        return str(resp.value)

    async def simulate(self, tx: VersionedTransaction) -> tuple[Optional[str], list[str]]:
        """Returns (error, logs); error is None when the simulation passed."""
        try:
            resp = await self.client.simulate_transaction(tx, commitment=Confirmed)
        except Exception as e:
            raise NetworkException("simulateTransaction failed", error=str(e)) from e
        value = resp.value
        logs = list(value.logs or [])
        return (str(value.err) if value.err else None), logs
