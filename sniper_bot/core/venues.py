"""
Venue Adapters

Each venue wraps one way of trading a token against SOL behind the same
capability: quote, build_swap, pool_liquidity and progress.

- DirectPoolVenue: Meteora Dynamic Bonding Curve virtual pool
- MigratedPoolVenue: Meteora DAMM v2 (CP-AMM) pool a curve graduates into
- AggregatorVenue: Jupiter routed swap
"""
from __future__ import annotations

import base64
import logging
import struct
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

import aiohttp
from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from sniper_bot.constants import (
    DAMM_EVENT_AUTH,
    DAMM_POOL_ACCOUNT_SIZE,
    DAMM_POOL_AUTHORITY,
    DAMM_POOL_TOKEN_A_MINT_OFFSET,
    DAMM_POOL_TOKEN_A_VAULT_OFFSET,
    DAMM_POOL_TOKEN_B_MINT_OFFSET,
    DAMM_POOL_TOKEN_B_VAULT_OFFSET,
    DAMM_V2_PROGRAM,
    DBC_EVENT_AUTH,
    DBC_POOL_ACCOUNT_SIZE,
    DBC_POOL_AUTHORITY,
    DBC_POOL_BASE_MINT_OFFSET,
    DBC_POOL_BASE_RESERVE_OFFSET,
    DBC_POOL_BASE_VAULT_OFFSET,
    DBC_POOL_CONFIG_OFFSET,
    DBC_POOL_CREATOR_OFFSET,
    DBC_POOL_IS_MIGRATED_OFFSET,
    DBC_POOL_QUOTE_RESERVE_OFFSET,
    DBC_POOL_QUOTE_VAULT_OFFSET,
    DBC_POOL_SQRT_PRICE_OFFSET,
    DBC_PROGRAM,
    JUPITER_BUY_SLIPPAGE_BPS,
    JUPITER_SELL_SLIPPAGE_BPS,
    POOL_COMPLETED_MARKERS,
    SWAP_DISC,
    TOKEN_PROGRAM,
    TOKEN_PROGRAMS,
    WSOL_MINT,
)
from sniper_bot.core.chain import ChainClient
from sniper_bot.core.models import SwapDirection, VenueKind
from sniper_bot.core.wallet import (
    associated_token_address,
    create_ata_instruction,
    unwrap_sol_instruction,
    wrap_sol_instructions,
)
from sniper_bot.exceptions import (
    ConfigurationException,
    NetworkException,
    PoolMigratedException,
    SwapException,
    ValidationException,
)

logger = logging.getLogger(__name__)

WSOL = str(WSOL_MINT)


@dataclass
class SwapFragment:
    """Instructions for one swap plus any address lookup tables they need."""
    instructions: list[Instruction]
    lookup_tables: list[str] = field(default_factory=list)


def _pubkey_at(data: bytes, offset: int) -> str:
    return str(Pubkey.from_bytes(data[offset:offset + 32]))


def _u64_at(data: bytes, offset: int) -> int:
    return struct.unpack_from("<Q", data, offset)[0]


def _u128_at(data: bytes, offset: int) -> int:
    lo, hi = struct.unpack_from("<QQ", data, offset)
    return lo | (hi << 64)


def apply_slippage(amount: int, slippage_bps: int) -> int:
    if slippage_bps >= 10_000:
        return 0
    return int(amount * (10_000 - slippage_bps) // 10_000)


def derive_pool_address(program: Pubkey, config: str, mint_a: str, mint_b: str) -> str:
    """Pool PDA: ["pool", config, larger mint, smaller mint]."""
    a, b = bytes(Pubkey.from_string(mint_a)), bytes(Pubkey.from_string(mint_b))
    first, second = (a, b) if a > b else (b, a)
    pda, _ = Pubkey.find_program_address(
        [b"pool", bytes(Pubkey.from_string(config)), first, second], program
    )
    return str(pda)


class VenueAdapter(ABC):
    """Shared capability of every trading venue."""

    kind: VenueKind
    program_id: Optional[Pubkey] = None
    pool_account_size: Optional[int] = None

    @abstractmethod
    async def quote(self, pool: str, mint: str, direction: SwapDirection, amount_in: int) -> int:
        """Minimum amount out (raw units) after slippage."""

    @abstractmethod
    async def build_swap(
        self, pool: str, mint: str, direction: SwapDirection, amount_in: int, min_out: int
    ) -> SwapFragment:
        """Swap instructions for the wallet, without compute budget or tip."""

    async def pool_liquidity(self, pool: str) -> int:
        """Base (SOL) reserve in lamports; 0 when unknown."""
        return 0

    async def progress(self, pool: str) -> Optional[float]:
        """Progress toward migration in percent, or None when not applicable."""
        return None

    def is_migration_error(self, error: str) -> bool:
        return False

    def pool_owners(self, pool: str) -> set[str]:
        """Accounts that own the pool's token vaults."""
        return {pool}

    def derive_pool(self, config: str, mint_a: str, mint_b: str) -> Optional[str]:
        return None


class _TokenProgramCache:
    def __init__(self, chain: ChainClient) -> None:
        self.chain = chain
        self._programs: dict[str, Pubkey] = {}

    async def program_for(self, mint: str) -> Pubkey:
        cached = self._programs.get(mint)
        if cached is not None:
            return cached
        snapshot = await self.chain.get_account_info(mint)
        program = TOKEN_PROGRAM
        if snapshot is not None and snapshot.owner in TOKEN_PROGRAMS:
            program = Pubkey.from_string(snapshot.owner)
        self._programs[mint] = program
        return program


# ----------------------------------------------------------------------
# Meteora Dynamic Bonding Curve
# ----------------------------------------------------------------------
@dataclass
class CurvePoolState:
    address: str
    config: str
    creator: str
    base_mint: str
    base_vault: str
    quote_vault: str
    base_reserve: int
    quote_reserve: int
    sqrt_price: int
    is_migrated: bool

    @classmethod
    def decode(cls, address: str, data: bytes) -> "CurvePoolState":
        if len(data) < DBC_POOL_IS_MIGRATED_OFFSET + 1:
            raise ValidationException("Curve pool account too short", pool=address, size=len(data))
        return cls(
            address=address,
            config=_pubkey_at(data, DBC_POOL_CONFIG_OFFSET),
            creator=_pubkey_at(data, DBC_POOL_CREATOR_OFFSET),
            base_mint=_pubkey_at(data, DBC_POOL_BASE_MINT_OFFSET),
            base_vault=_pubkey_at(data, DBC_POOL_BASE_VAULT_OFFSET),
            quote_vault=_pubkey_at(data, DBC_POOL_QUOTE_VAULT_OFFSET),
            base_reserve=_u64_at(data, DBC_POOL_BASE_RESERVE_OFFSET),
            quote_reserve=_u64_at(data, DBC_POOL_QUOTE_RESERVE_OFFSET),
            sqrt_price=_u128_at(data, DBC_POOL_SQRT_PRICE_OFFSET),
            is_migrated=data[DBC_POOL_IS_MIGRATED_OFFSET] == 1,
        )

    @property
    def spot_price(self) -> float:
        """Raw quote units per raw base unit."""
        return (self.sqrt_price / 2 ** 64) ** 2


class DirectPoolVenue(VenueAdapter):
    kind = VenueKind.DIRECT_POOL
    program_id = DBC_PROGRAM
    pool_account_size = DBC_POOL_ACCOUNT_SIZE

    def __init__(self, chain: ChainClient, owner: Pubkey, graduation_threshold_lamports: int, slippage_bps: int = 500) -> None:
        self.chain = chain
        self.owner = owner
        self.graduation_threshold = graduation_threshold_lamports
        self.slippage_bps = slippage_bps
        self._token_programs = _TokenProgramCache(chain)

    async def load(self, pool: str) -> CurvePoolState:
        snapshot = await self.chain.get_account_info(pool)
        if snapshot is None:
            raise ValidationException("Curve pool not found", pool=pool)
        return CurvePoolState.decode(pool, snapshot.data)

    async def quote(self, pool: str, mint: str, direction: SwapDirection, amount_in: int) -> int:
        state = await self.load(pool)
        price = state.spot_price
        if price <= 0:
            raise SwapException("Curve pool has no price", pool=pool)
        out = amount_in / price if direction == SwapDirection.BUY else amount_in * price
        return apply_slippage(int(out), self.slippage_bps)

    async def build_swap(self, pool: str, mint: str, direction: SwapDirection, amount_in: int, min_out: int) -> SwapFragment:
        state = await self.load(pool)
        if state.is_migrated:
            raise PoolMigratedException("Pool is completed", pool=pool)
        base_mint = Pubkey.from_string(state.base_mint)
        base_program = await self._token_programs.program_for(state.base_mint)
        base_ata = associated_token_address(self.owner, base_mint, base_program)
        wsol_ata = associated_token_address(self.owner, WSOL_MINT)

        ixs = []
        if direction == SwapDirection.BUY:
            ixs.append(create_ata_instruction(self.owner, base_mint, base_program))
            ixs.extend(wrap_sol_instructions(self.owner, amount_in))
            source, destination = wsol_ata, base_ata
        else:
            ixs.append(create_ata_instruction(self.owner, WSOL_MINT))
            source, destination = base_ata, wsol_ata

        keys = [
            AccountMeta(DBC_POOL_AUTHORITY, False, False),
            AccountMeta(Pubkey.from_string(state.config), False, False),
            AccountMeta(Pubkey.from_string(pool), False, True),
            AccountMeta(source, False, True),
            AccountMeta(destination, False, True),
            AccountMeta(Pubkey.from_string(state.base_vault), False, True),
            AccountMeta(Pubkey.from_string(state.quote_vault), False, True),
            AccountMeta(base_mint, False, False),
            AccountMeta(WSOL_MINT, False, False),
            AccountMeta(self.owner, True, True),
            AccountMeta(base_program, False, False),
            AccountMeta(TOKEN_PROGRAM, False, False),
            AccountMeta(DBC_PROGRAM, False, False),  # no referral
            AccountMeta(DBC_EVENT_AUTH, False, False),
            AccountMeta(DBC_PROGRAM, False, False),
        ]
        data = SWAP_DISC + struct.pack("<QQ", int(amount_in), int(min_out))
        ixs.append(Instruction(DBC_PROGRAM, data, keys))
        ixs.append(unwrap_sol_instruction(self.owner))
        return SwapFragment(ixs)

    async def pool_liquidity(self, pool: str) -> int:
        return (await self.load(pool)).quote_reserve

    async def progress(self, pool: str) -> Optional[float]:
        state = await self.load(pool)
        if state.is_migrated:
            return 100.0
        if self.graduation_threshold <= 0:
            return None
        return min(100.0, state.quote_reserve / self.graduation_threshold * 100)

    def is_migration_error(self, error: str) -> bool:
        return any(marker in error for marker in POOL_COMPLETED_MARKERS)

    def pool_owners(self, pool: str) -> set[str]:
        return {pool, str(DBC_POOL_AUTHORITY)}

    def derive_pool(self, config: str, mint_a: str, mint_b: str) -> Optional[str]:
        return derive_pool_address(DBC_PROGRAM, config, mint_a, mint_b)


# ----------------------------------------------------------------------
# Meteora DAMM v2 (CP-AMM)
# ----------------------------------------------------------------------
@dataclass
class CpPoolState:
    address: str
    token_a_mint: str
    token_b_mint: str
    token_a_vault: str
    token_b_vault: str

    @classmethod
    def decode(cls, address: str, data: bytes) -> "CpPoolState":
        if len(data) < DAMM_POOL_TOKEN_B_VAULT_OFFSET + 32:
            raise ValidationException("CP-AMM pool account too short", pool=address, size=len(data))
        return cls(
            address=address,
            token_a_mint=_pubkey_at(data, DAMM_POOL_TOKEN_A_MINT_OFFSET),
            token_b_mint=_pubkey_at(data, DAMM_POOL_TOKEN_B_MINT_OFFSET),
            token_a_vault=_pubkey_at(data, DAMM_POOL_TOKEN_A_VAULT_OFFSET),
            token_b_vault=_pubkey_at(data, DAMM_POOL_TOKEN_B_VAULT_OFFSET),
        )

    @property
    def sol_vault(self) -> str:
        return self.token_a_vault if self.token_a_mint == WSOL else self.token_b_vault

    @property
    def token_vault(self) -> str:
        return self.token_b_vault if self.token_a_mint == WSOL else self.token_a_vault


class MigratedPoolVenue(VenueAdapter):
    kind = VenueKind.MIGRATED_POOL
    program_id = DAMM_V2_PROGRAM
    pool_account_size = DAMM_POOL_ACCOUNT_SIZE

    def __init__(self, chain: ChainClient, owner: Pubkey, slippage_bps: int = 500) -> None:
        self.chain = chain
        self.owner = owner
        self.slippage_bps = slippage_bps
        self._token_programs = _TokenProgramCache(chain)

    async def load(self, pool: str) -> CpPoolState:
        snapshot = await self.chain.get_account_info(pool)
        if snapshot is None:
            raise ValidationException("CP-AMM pool not found", pool=pool)
        return CpPoolState.decode(pool, snapshot.data)

    async def reserves(self, state: CpPoolState) -> tuple[int, int]:
        """(sol_reserve, token_reserve) in raw units."""
        sol = await self.chain.get_token_account_amount(state.sol_vault)
        token = await self.chain.get_token_account_amount(state.token_vault)
        return sol, token

    async def quote(self, pool: str, mint: str, direction: SwapDirection, amount_in: int) -> int:
        sol, token = await self.reserves(await self.load(pool))
        if sol <= 0 or token <= 0:
            raise SwapException("CP-AMM pool is empty", pool=pool)
        if direction == SwapDirection.BUY:
            out = amount_in * token // (sol + amount_in)
        else:
            out = amount_in * sol // (token + amount_in)
        return apply_slippage(out, self.slippage_bps)

    async def build_swap(self, pool: str, mint: str, direction: SwapDirection, amount_in: int, min_out: int) -> SwapFragment:
        state = await self.load(pool)
        mint_a = Pubkey.from_string(state.token_a_mint)
        mint_b = Pubkey.from_string(state.token_b_mint)
        program_a = await self._token_programs.program_for(state.token_a_mint)
        program_b = await self._token_programs.program_for(state.token_b_mint)

        token_mint = Pubkey.from_string(mint)
        token_program = program_a if state.token_a_mint == mint else program_b
        token_ata = associated_token_address(self.owner, token_mint, token_program)
        wsol_ata = associated_token_address(self.owner, WSOL_MINT)

        ixs = []
        if direction == SwapDirection.BUY:
            ixs.append(create_ata_instruction(self.owner, token_mint, token_program))
            ixs.extend(wrap_sol_instructions(self.owner, amount_in))
            source, destination = wsol_ata, token_ata
        else:
            ixs.append(create_ata_instruction(self.owner, WSOL_MINT))
            source, destination = token_ata, wsol_ata

        keys = [
            AccountMeta(DAMM_POOL_AUTHORITY, False, False),
            AccountMeta(Pubkey.from_string(pool), False, True),
            AccountMeta(source, False, True),
            AccountMeta(destination, False, True),
            AccountMeta(Pubkey.from_string(state.token_a_vault), False, True),
            AccountMeta(Pubkey.from_string(state.token_b_vault), False, True),
            AccountMeta(mint_a, False, False),
            AccountMeta(mint_b, False, False),
            AccountMeta(self.owner, True, True),
            AccountMeta(program_a, False, False),
            AccountMeta(program_b, False, False),
            AccountMeta(DAMM_V2_PROGRAM, False, False),  # no referral
            AccountMeta(DAMM_EVENT_AUTH, False, False),
            AccountMeta(DAMM_V2_PROGRAM, False, False),
        ]
        data = SWAP_DISC + struct.pack("<QQ", int(amount_in), int(min_out))
        ixs.append(Instruction(DAMM_V2_PROGRAM, data, keys))
        ixs.append(unwrap_sol_instruction(self.owner))
        return SwapFragment(ixs)

    async def pool_liquidity(self, pool: str) -> int:
        state = await self.load(pool)
        return await self.chain.get_token_account_amount(state.sol_vault)

    def pool_owners(self, pool: str) -> set[str]:
        return {pool, str(DAMM_POOL_AUTHORITY)}

    def derive_pool(self, config: str, mint_a: str, mint_b: str) -> Optional[str]:
        return derive_pool_address(DAMM_V2_PROGRAM, config, mint_a, mint_b)

    async def find_pool_for_mint(self, mint: str) -> Optional[str]:
        """Locate the pool a curve migrated into (token as mint A, then B)."""
        for offset in (DAMM_POOL_TOKEN_A_MINT_OFFSET, DAMM_POOL_TOKEN_B_MINT_OFFSET):
            accounts = await self.chain.get_program_accounts(
                DAMM_V2_PROGRAM, data_size=DAMM_POOL_ACCOUNT_SIZE, memcmp=[(offset, mint)]
            )
            if accounts:
                return accounts[0].address
        return None


# ----------------------------------------------------------------------
# Jupiter aggregator
# ----------------------------------------------------------------------
def _parse_ix(ix_data: dict) -> Instruction:
    accounts = [
        AccountMeta(
            pubkey=Pubkey.from_string(acc["pubkey"]),
            is_signer=acc.get("isSigner", False),
            is_writable=acc.get("isWritable", False),
        )
        for acc in ix_data["accounts"]
    ]
    return Instruction(
        program_id=Pubkey.from_string(ix_data["programId"]),
        data=base64.b64decode(ix_data["data"]),
        accounts=accounts,
    )


class AggregatorVenue(VenueAdapter):
    kind = VenueKind.AGGREGATOR

    def __init__(
        self,
        session: aiohttp.ClientSession,
        owner: Pubkey,
        base_url: str,
        buy_slippage_bps: int = JUPITER_BUY_SLIPPAGE_BPS,
        sell_slippage_bps: int = JUPITER_SELL_SLIPPAGE_BPS,
        timeout_sec: float = 10.0,
    ) -> None:
        self.session = session
        self.owner = owner
        self.base_url = base_url.rstrip("/")
        self.buy_slippage_bps = buy_slippage_bps
        self.sell_slippage_bps = sell_slippage_bps
        self.timeout = aiohttp.ClientTimeout(total=timeout_sec)
        self._quotes: dict[tuple[str, SwapDirection, int], dict[str, Any]] = {}

    async def _request(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        url = f"{self.base_url}/{path}"
        try:
            async with self.session.request(method, url, timeout=self.timeout, **kwargs) as resp:
                if resp.status != 200:
                    raise SwapException("Jupiter request failed", path=path, status=resp.status, body=(await resp.text())[:200])
                data = await resp.json()
        except aiohttp.ClientError as e:
            raise NetworkException("Jupiter unreachable", path=path, error=str(e)) from e
        if not isinstance(data, dict) or "error" in data:
            raise SwapException("Jupiter returned an error", path=path, error=str(data.get("error") if isinstance(data, dict) else data))
        return data

    async def get_quote(self, mint: str, direction: SwapDirection, amount_in: int) -> dict[str, Any]:
        if direction == SwapDirection.BUY:
            input_mint, output_mint, slippage = WSOL, mint, self.buy_slippage_bps
        else:
            input_mint, output_mint, slippage = mint, WSOL, self.sell_slippage_bps
        quote = await self._request("GET", "quote", params={
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(int(amount_in)),
            "slippageBps": str(slippage),
        })
        self._quotes[(mint, direction, int(amount_in))] = quote
        logger.debug(
            "Jupiter quote %s %s: in=%s out=%s impact=%s",
            direction.value, mint[:8], amount_in, quote.get("outAmount"), quote.get("priceImpactPct"),
        )
        return quote

    async def quote(self, pool: str, mint: str, direction: SwapDirection, amount_in: int) -> int:
        quote = await self.get_quote(mint, direction, amount_in)
        return int(quote.get("otherAmountThreshold") or 0)

    async def build_swap(self, pool: str, mint: str, direction: SwapDirection, amount_in: int, min_out: int) -> SwapFragment:
        quote = self._quotes.pop((mint, direction, int(amount_in)), None)
        if quote is None:
            quote = await self.get_quote(mint, direction, amount_in)
        data = await self._request("POST", "swap-instructions", json={
            "quoteResponse": quote,
            "userPublicKey": str(self.owner),
            "wrapAndUnwrapSol": True,
            "dynamicComputeUnitLimit": True,
        })

        instructions = [_parse_ix(ix) for ix in data.get("setupInstructions") or []]
        if not data.get("swapInstruction"):
            raise SwapException("Jupiter returned no swap instruction", mint=mint)
        instructions.append(_parse_ix(data["swapInstruction"]))
        if data.get("cleanupInstruction"):
            instructions.append(_parse_ix(data["cleanupInstruction"]))
        return SwapFragment(instructions, list(data.get("addressLookupTableAddresses") or []))


class VenueRegistry:
    """Maps every VenueKind to its adapter."""

    def __init__(self, direct: VenueAdapter, migrated: MigratedPoolVenue, aggregator: VenueAdapter) -> None:
        self._venues: dict[VenueKind, VenueAdapter] = {
            VenueKind.DIRECT_POOL: direct,
            VenueKind.MIGRATED_POOL: migrated,
            VenueKind.AGGREGATOR: aggregator,
        }
        self.migrated = migrated
        missing = set(VenueKind) - set(self._venues)
        if missing:
            raise ConfigurationException("Venue missing", kinds=",".join(k.value for k in missing))

    def get(self, kind: VenueKind) -> VenueAdapter:
        return self._venues[kind]
