"""
Swap Executor

Turns venue instructions into a signed transaction and lands it on one
route: direct RPC, a Jito bundle with failover, or an emergency race of
every relay plus RPC.
"""
from __future__ import annotations

import logging
from typing import Optional, Sequence

from solders.instruction import Instruction
from solders.transaction import VersionedTransaction

from sniper_bot.config import RelayConfig
from sniper_bot.constants import COMPUTE_UNIT_LIMIT, LAMPORTS_PER_SOL
from sniper_bot.core.chain import ChainClient
from sniper_bot.core.relay_pool import RPC_ROUTE, RelayPool
from sniper_bot.core.venues import SwapFragment
from sniper_bot.core.wallet import Wallet
from sniper_bot.exceptions import ConfigurationException, RelayException, SwapException

logger = logging.getLogger(__name__)

SUBMIT_RPC = "rpc"
SUBMIT_BUNDLE = "bundle"


class SwapExecutor:
    def __init__(
        self,
        chain: ChainClient,
        wallet: Wallet,
        relay_pool: Optional[RelayPool],
        relay_config: RelayConfig,
    ) -> None:
        self.chain = chain
        self.wallet = wallet
        self.relay_pool = relay_pool
        self.relay_config = relay_config

    @property
    def tip_lamports(self) -> int:
        return int(self.relay_config.tip_sol * LAMPORTS_PER_SOL)

    def bundles_available(self) -> bool:
        return self.relay_pool is not None and self.relay_config.enabled

    async def build_transaction(
        self,
        instructions: Sequence[Instruction],
        lookup_tables: Sequence[str],
        priority_fee: int,
        tip: bool,
    ) -> VersionedTransaction:
        ixs = Wallet.compute_budget_instructions(priority_fee, COMPUTE_UNIT_LIMIT)
        ixs.extend(instructions)
        if tip:
            await self.relay_pool.tip_accounts()
            ixs.append(self.wallet.tip_instruction(self.relay_pool.random_tip_account(), self.tip_lamports))

        tables = await self.chain.get_lookup_tables(list(lookup_tables)) if lookup_tables else []
        blockhash = await self.chain.get_latest_blockhash()
        return self.wallet.sign(ixs, blockhash, tables)

    async def submit(
        self,
        fragment: SwapFragment,
        priority_fee: int,
        mode: str = SUBMIT_RPC,
        race: bool = False,
        simulate_first: bool = False,
    ) -> tuple[str, str]:
        """
        Sign and send ``fragment``.

        Returns:
            (signature, route)

        Raises:
            SwapException when RPC or the simulation rejects the transaction
            (its text carries the program logs), RelayException when no relay
            accepts the bundle.
        """
        if mode not in (SUBMIT_RPC, SUBMIT_BUNDLE):
            raise ConfigurationException("Unknown submission mode", mode=mode)

        use_relays = (mode == SUBMIT_BUNDLE or race) and self.bundles_available()
        tx = await self.build_transaction(fragment.instructions, fragment.lookup_tables, priority_fee, tip=use_relays)
        signature = str(tx.signatures[0])

        if not use_relays:
            sent = await self.chain.broadcast(tx)
            logger.info("Sent %s... via RPC (fee %d)", sent[:16], priority_fee)
            return sent, RPC_ROUTE

        # Relays skip preflight, so surface program errors (e.g. a completed pool) here
        if simulate_first:
            err, logs = await self.chain.simulate(tx)
            if err:
                raise SwapException("Simulation failed", error=err, logs=" | ".join(logs[-8:]))

        if race:
            receipt = await self.relay_pool.race([tx], include_rpc=self.relay_config.race_include_rpc)
        else:
            receipt = await self.relay_pool.submit_bundle([tx])
        if receipt is None:
            raise RelayException("No route accepted the transaction", signature=signature[:16])

        logger.info("Sent %s... via %s (fee %d, tip %d)", signature[:16], receipt.route, priority_fee, self.tip_lamports)
        return receipt.signature or signature, receipt.route
