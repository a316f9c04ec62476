"""
Safety Gate

Decides whether a freshly detected token may be bought. Exactly one
strategy is active, chosen by configuration:

- LOCAL: reads the mint, its Metaplex metadata and the largest holders
  straight from the chain
- EXTERNAL: asks RugCheck.xyz

Any failure resolves to "not safe".
"""
from __future__ import annotations

import asyncio
import logging
import struct
from abc import ABC, abstractmethod
from typing import Optional

from solders.pubkey import Pubkey

from sniper_bot.config import SafetyConfig
from sniper_bot.constants import (
    METADATA_PROGRAM,
    MINT_ACCOUNT_MIN_SIZE,
    MINT_AUTHORITY_OFFSET,
    MINT_DECIMALS_OFFSET,
    MINT_FREEZE_AUTHORITY_OFFSET,
    MINT_SUPPLY_OFFSET,
    TOKEN_PROGRAMS,
)
from sniper_bot.core.chain import ChainClient
from sniper_bot.core.models import SafetyStrategy, SafetyVerdict
from sniper_bot.core.rugcheck_client import UNKNOWN_TOKEN_SCORE, RugCheckClient
from sniper_bot.exceptions import BotException, ConfigurationException, NetworkException, ValidationException
from sniper_bot.utils.retry import fixed_delay, retry

logger = logging.getLogger(__name__)

TOP_HOLDERS_CHECKED = 10
NOT_A_TOKEN_MINT = "not a token mint"


def _coption_present(data: bytes, offset: int) -> bool:
    """COption<Pubkey>: u32 tag then 32 bytes."""
    return struct.unpack_from("<I", data, offset)[0] == 1


def decode_mint(data: bytes) -> dict:
    if len(data) < MINT_ACCOUNT_MIN_SIZE:
        raise ValidationException("Mint account too short", size=len(data))
    return {
        "mint_authority": _coption_present(data, MINT_AUTHORITY_OFFSET),
        "supply": struct.unpack_from("<Q", data, MINT_SUPPLY_OFFSET)[0],
        "decimals": data[MINT_DECIMALS_OFFSET],
        "freeze_authority": _coption_present(data, MINT_FREEZE_AUTHORITY_OFFSET),
    }


def metadata_address(mint: str) -> Pubkey:
    pda, _ = Pubkey.find_program_address(
        [b"metadata", bytes(METADATA_PROGRAM), bytes(Pubkey.from_string(mint))],
        METADATA_PROGRAM,
    )
    return pda


def decode_metadata_is_mutable(data: bytes) -> bool:
    """
    Walk the Metaplex metadata borsh layout up to ``is_mutable``.

    key u8 | update_authority 32 | mint 32 | name str | symbol str | uri str |
    seller_fee_basis_points u16 | creators Option<Vec<Creator(34)>> |
    primary_sale_happened bool | is_mutable bool
    """
    try:
        offset = 1 + 32 + 32
        for _ in range(3):  # name, symbol, uri
            (length,) = struct.unpack_from("<I", data, offset)
            offset += 4 + length
        offset += 2
        has_creators = data[offset]
        offset += 1
        if has_creators:
            (count,) = struct.unpack_from("<I", data, offset)
            offset += 4 + count * 34
        offset += 1  # primary_sale_happened
        return data[offset] == 1
    except (struct.error, IndexError) as e:
        raise ValidationException("Undecodable metadata", size=len(data)) from e


class SafetyGate(ABC):
    @abstractmethod
    async def assess(self, mint: str) -> SafetyVerdict:
        """Verdict for ``mint``; never raises."""


class LocalSafetyChecker(SafetyGate):
    """On-chain authority, metadata and holder concentration checks."""

    def __init__(self, chain: ChainClient, config: SafetyConfig):
        self.chain = chain
        self.config = config

    async def assess(self, mint: str) -> SafetyVerdict:
        try:
            verdict = await self._assess(mint)
        except Exception as e:
            logger.warning("Safety check error for %s...: %s", mint[:8], e)
            return SafetyVerdict.unsafe("RPC error during check")
        if verdict.is_safe:
            logger.info("PASS safety %s...", mint[:8])
        else:
            logger.info("REJECT safety %s...: %s", mint[:8], verdict.reason)
        return verdict

    async def _assess(self, mint: str) -> SafetyVerdict:
        account = await self.chain.get_account_info(mint)
        if account is None:
            return SafetyVerdict.unsafe("Mint account not found")
        if account.owner not in TOKEN_PROGRAMS:
            return SafetyVerdict.unsafe("Not a token mint")

        info = decode_mint(account.data)
        if info["mint_authority"] and not self.config.allow_mint_authority:
            return SafetyVerdict.unsafe("Mint authority active")
        if info["freeze_authority"] and not self.config.allow_freeze_authority:
            return SafetyVerdict.unsafe("Freeze authority active")

        if not self.config.allow_mutable_metadata:
            metadata = await self.chain.get_account_info(str(metadata_address(mint)))
            if metadata is not None:
                try:
                    mutable = decode_metadata_is_mutable(metadata.data)
                except ValidationException:
                    return SafetyVerdict.unsafe("Undecodable metadata")
                if mutable:
                    return SafetyVerdict.unsafe("Metadata is mutable")

        top_pct = await self._top_holder_pct(mint, info["supply"])
        if top_pct is not None and top_pct > self.config.max_top_holder_pct:
            return SafetyVerdict.unsafe(f"Top holder owns {top_pct:.1f}%")

        return SafetyVerdict.safe()

    async def _top_holder_pct(self, mint: str, supply: int) -> Optional[float]:
        if supply == 0:
            return None
        try:
            amounts = await self.chain.get_token_largest_accounts(mint)
        except Exception as e:
            if NOT_A_TOKEN_MINT in str(e).lower():
                logger.debug("Holder check skipped for %s...: %s", mint[:8], e)
                return None
            raise
        top = amounts[:TOP_HOLDERS_CHECKED]
        if not top:
            return None
        return max(amount / supply * 100 for amount in top)


class ExternalSafetyChecker(SafetyGate):
    """RugCheck.xyz report, retried while the report is not ready."""

    def __init__(self, client: RugCheckClient, config: SafetyConfig):
        self.client = client
        self.config = config

    async def assess(self, mint: str) -> SafetyVerdict:
        operation = retry(
            lambda: self.client.get_report(mint),
            max_attempts=self.config.external_max_attempts,
            delay_strategy=fixed_delay(self.config.external_retry_delay_sec),
            is_retryable=lambda e: isinstance(e, NetworkException),
            name=f"rugcheck {mint[:8]}",
        )
        try:
            report = await asyncio.wait_for(operation, timeout=self.config.external_timeout_sec)
        except asyncio.TimeoutError:
            logger.warning("REJECT safety %s...: RugCheck timed out", mint[:8])
            return SafetyVerdict.unsafe("External check timed out")
        except BotException as e:
            logger.warning("REJECT safety %s...: RugCheck unavailable: %s", mint[:8], e)
            return SafetyVerdict.unsafe("External check unavailable")

        if report.rugs_detected:
            return SafetyVerdict.unsafe("Danger risks: " + ", ".join(report.danger_risks))
        if report.score != UNKNOWN_TOKEN_SCORE and report.score > self.config.max_risk_score:
            return SafetyVerdict.unsafe(f"Risk score {report.score} > {self.config.max_risk_score}")

        logger.info("PASS safety %s... (score %d)", mint[:8], report.score)
        return SafetyVerdict.safe()


def build_safety_gate(
    strategy: SafetyStrategy,
    config: SafetyConfig,
    chain: Optional[ChainClient] = None,
    rugcheck: Optional[RugCheckClient] = None,
) -> SafetyGate:
    if strategy == SafetyStrategy.LOCAL:
        if chain is None:
            raise ConfigurationException("LOCAL safety needs a chain client")
        return LocalSafetyChecker(chain, config)
    if strategy == SafetyStrategy.EXTERNAL:
        if rugcheck is None:
            raise ConfigurationException("EXTERNAL safety needs a RugCheck client")
        return ExternalSafetyChecker(rugcheck, config)
    raise ConfigurationException("Unknown safety strategy", strategy=str(strategy))
