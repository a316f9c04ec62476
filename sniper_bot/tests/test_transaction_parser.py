"""
Unit tests for the detection transaction parser
"""

import os
import sys

# Add repo root to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from sniper_bot.core.models import AccountSnapshot
from sniper_bot.core.transaction_parser import (
    detect_insider_buy,
    entry_price_from_deltas,
    extract_target_mint,
    match_pool_account,
    parse_transaction,
    pool_base_liquidity,
)
from sniper_bot.tests.helpers import WSOL, balance, detection_tx, pk, sol


def raw_balance(index, mint, owner, amount, decimals=6):
    return {
        "accountIndex": index,
        "mint": mint,
        "owner": owner,
        "uiTokenAmount": {"amount": str(amount), "decimals": decimals},
    }


class TestParseTransaction:
    """Test parse_transaction"""

    def test_plain_json_with_loaded_addresses(self):
        payload = {
            "transaction": {"message": {"accountKeys": ["payer", "pool"]}},
            "meta": {
                "err": None,
                "preBalances": [10, 0],
                "postBalances": [5, 3],
                "preTokenBalances": [],
                "postTokenBalances": [raw_balance(2, "mintX", "pool", 1000)],
                "logMessages": ["Program log: hi"],
                "loadedAddresses": {"writable": ["vault"], "readonly": ["prog"]},
            },
        }
        tx = parse_transaction("sig", payload)
        assert tx.account_keys == ["payer", "pool", "vault", "prog"]
        assert tx.fee_payer == "payer"
        assert tx.post_token_balances[0].amount == 1000
        assert tx.log_messages == ["Program log: hi"]
        assert tx.err is None

    def test_json_parsed_keys(self):
        payload = {
            "transaction": {"message": {"accountKeys": [{"pubkey": "payer", "signer": True}, {"pubkey": "pool"}]}},
            "meta": {"err": {"InstructionError": [0, "Custom"]}},
        }
        tx = parse_transaction("sig", payload)
        assert tx.account_keys == ["payer", "pool"]
        assert tx.err is not None

    def test_bad_amount_is_zero(self):
        payload = {
            "transaction": {"message": {"accountKeys": []}},
            "meta": {"postTokenBalances": [{"accountIndex": 0, "mint": "m", "uiTokenAmount": {"amount": "n/a"}}]},
        }
        assert parse_transaction("sig", payload).post_token_balances[0].amount == 0


class TestExtraction:
    """Mint, pool and liquidity extraction"""

    def test_target_mint_skips_wsol_and_nfts(self):
        mint = pk()
        tx = detection_tx(mint, pk(), pk(), sol(1))
        tx.post_token_balances.insert(0, balance(9, pk(), "x", 1, decimals=0))
        tx.post_token_balances.insert(0, balance(8, WSOL, "x", 5, decimals=9))
        assert extract_target_mint(tx).mint == mint

    def test_match_pool_account(self):
        program = pk()
        wrong_size = AccountSnapshot("a", program, bytes(10))
        wrong_owner = AccountSnapshot("b", pk(), bytes(424))
        right = AccountSnapshot("c", program, bytes(424))
        assert match_pool_account([None, wrong_size, wrong_owner, right], program, 424) is right
        assert match_pool_account([None], program, 424) is None

    def test_liquidity_from_token_balances(self):
        authority = pk()
        tx = detection_tx(pk(), "pool", authority, sol(85))
        assert pool_base_liquidity(tx, {"pool", authority}, "pool") == sol(85)

    def test_liquidity_falls_back_to_lamports(self):
        tx = detection_tx(pk(), "pool", pk(), 0)
        tx.post_balances = [0, sol(12), 0]
        assert pool_base_liquidity(tx, {"pool"}, "pool") == sol(12)


class TestInsider:
    """Test detect_insider_buy"""

    def test_insider_detected(self):
        mint, authority, insider = pk(), pk(), pk()
        tx = detection_tx(mint, "pool", authority, sol(1), supply=800, extra_post=(balance(5, mint, insider, 200),))
        owner, pct = detect_insider_buy(tx, mint, {"pool", authority}, 15.0, 90.0)
        assert owner == insider
        assert round(pct, 6) == 20.0

    def test_small_buyer_ignored(self):
        mint, authority = pk(), pk()
        tx = detection_tx(mint, "pool", authority, sol(1), supply=900, extra_post=(balance(5, mint, pk(), 100),))
        assert detect_insider_buy(tx, mint, {"pool", authority}, 15.0, 90.0) is None

    def test_unknown_pool_owner_treated_as_pool(self):
        """A share above the upper bound is the pool itself"""
        mint = pk()
        tx = detection_tx(mint, "pool", pk(), sol(1))
        assert detect_insider_buy(tx, mint, set(), 15.0, 90.0) is None


class TestEntryPrice:
    """Test entry_price_from_deltas"""

    def test_price_from_volumes(self):
        mint, buyer, pool = pk(), pk(), pk()
        tx = detection_tx(mint, "p", pool, 0)
        tx.pre_token_balances = [
            balance(1, WSOL, buyer, sol(2), decimals=9),
            balance(2, WSOL, pool, 0, decimals=9),
            balance(3, mint, pool, 1_000_000_000),
        ]
        tx.post_token_balances = [
            balance(1, WSOL, buyer, sol(1), decimals=9),
            balance(2, WSOL, pool, sol(1), decimals=9),
            balance(3, mint, pool, 500_000_000),
            balance(4, mint, buyer, 500_000_000),
        ]
        assert entry_price_from_deltas(tx, mint) == 1 / 500

    def test_no_movement(self):
        mint = pk()
        tx = detection_tx(mint, "p", pk(), 0)
        tx.post_token_balances = []
        assert entry_price_from_deltas(tx, mint) is None
