import hashlib
from solders.pubkey import Pubkey

# ============================================
# PROGRAM IDS
# ============================================
SYSTEM_PROGRAM = Pubkey.from_string("11111111111111111111111111111111")
TOKEN_PROGRAM = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
TOKEN_2022_PROGRAM = Pubkey.from_string("TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb")
ASSOC_TOKEN_ACC_PROG = Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL")
METADATA_PROGRAM = Pubkey.from_string("metaqbxxUerdq28cj1RbAWkYQm3ybzjb6a8bt518x1s")
WSOL_MINT = Pubkey.from_string("So11111111111111111111111111111111111111112")

TOKEN_PROGRAMS = {str(TOKEN_PROGRAM), str(TOKEN_2022_PROGRAM)}

# METEORA PROGRAM IDs
DBC_PROGRAM = Pubkey.from_string("dbcij3LWUppWqq96dh6gJWwBifmcGfLSB5D4DuSMaqN")
DAMM_V2_PROGRAM = Pubkey.from_string("cpamdpZCGKUy5JxQXB4dcpGPiikHawvSWAd6mEn1sGG")
DAMM_MIGRATION_PROGRAM = Pubkey.from_string("DeQ8dPv6ReZNQ45NfiWwS5CchWpB2BVq1QMyNV8L2uSW")

# Default DBC pool config used by most launchpads
DBC_STANDARD_CONFIG = "8CNy9goNQNLM4wtgRw528tUQGMKD3vSuFRZY2gLGLLvF"

DBC_POOL_AUTHORITY, _ = Pubkey.find_program_address([b"pool_authority"], DBC_PROGRAM)
DBC_EVENT_AUTH, _ = Pubkey.find_program_address([b"__event_authority"], DBC_PROGRAM)
DAMM_POOL_AUTHORITY, _ = Pubkey.find_program_address([b"pool_authority"], DAMM_V2_PROGRAM)
DAMM_EVENT_AUTH, _ = Pubkey.find_program_address([b"__event_authority"], DAMM_V2_PROGRAM)

# ============================================
# DISCRIMINATORS
# ============================================
def anchor_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"global:{name}".encode()).digest()[:8]

SWAP_DISC = anchor_discriminator("swap")

# ============================================
# DETECTION LOG MARKERS
# ============================================
MIGRATION_LOG_MARKERS = ["Program log: Instruction: MigrationDammV2"]
CURVE_LOG_MARKERS = [
    "Program log: Instruction: InitializeVirtualPoolWithSplToken",
    "Program log: Instruction: InitializeVirtualPoolWithToken2022",
    "initialize_virtual_pool",
]

# Venue errors meaning "this curve is completed, trade the migrated pool instead"
POOL_COMPLETED_MARKERS = ("Pool is completed", "0x177d", "6013")

# ============================================
# ACCOUNT LAYOUTS
# ============================================
DBC_POOL_ACCOUNT_SIZE = 424
DAMM_POOL_ACCOUNT_SIZE = 1112

# DBC VirtualPool (after 8 byte discriminator + 64 byte volatility tracker)
DBC_POOL_CONFIG_OFFSET = 72
DBC_POOL_CREATOR_OFFSET = 104
DBC_POOL_BASE_MINT_OFFSET = 136
DBC_POOL_BASE_VAULT_OFFSET = 168
DBC_POOL_QUOTE_VAULT_OFFSET = 200
DBC_POOL_BASE_RESERVE_OFFSET = 232
DBC_POOL_QUOTE_RESERVE_OFFSET = 240
DBC_POOL_SQRT_PRICE_OFFSET = 280  # u128, Q64.64
DBC_POOL_IS_MIGRATED_OFFSET = 305

# DAMM v2 Pool (after 8 byte discriminator + 160 byte fee struct)
DAMM_POOL_TOKEN_A_MINT_OFFSET = 168
DAMM_POOL_TOKEN_B_MINT_OFFSET = 200
DAMM_POOL_TOKEN_A_VAULT_OFFSET = 232
DAMM_POOL_TOKEN_B_VAULT_OFFSET = 264

# SPL mint layout
MINT_AUTHORITY_OFFSET = 0
MINT_SUPPLY_OFFSET = 36
MINT_DECIMALS_OFFSET = 44
MINT_FREEZE_AUTHORITY_OFFSET = 46
MINT_ACCOUNT_MIN_SIZE = 82

# ============================================
# EXECUTION DEFAULTS
# ============================================
LAMPORTS_PER_SOL = 1_000_000_000
COMPUTE_UNIT_LIMIT = 200_000
JUPITER_SELL_SLIPPAGE_BPS = 200
JUPITER_BUY_SLIPPAGE_BPS = 300

# ============================================
# API ENDPOINTS
# ============================================
JUPITER_API_BASE = "https://lite-api.jup.ag/swap/v1"
RUGCHECK_API_BASE = "https://api.rugcheck.xyz/v1"
DEXSCREENER_API_BASE = "https://api.dexscreener.com"

JITO_BLOCK_ENGINES = [
    "https://frankfurt.mainnet.block-engine.jito.wtf",
    "https://amsterdam.mainnet.block-engine.jito.wtf",
    "https://ny.mainnet.block-engine.jito.wtf",
    "https://tokyo.mainnet.block-engine.jito.wtf",
]

JITO_TIPS = [
    "96gYZGLnJYVFmbjzopPSU6QiEV5fGqZNyN9nmNhvrZU5",
    "HFqU5x63VTqvQss8hp11i4wVV8bD44PvwucfZ2bU7gRe",
    "Cw8CFyM9FkoMi7K7Crf6HNQqf4uEMzpKw6QNghXLvLkY",
    "ADaUMid9yfUytqMBgopwjb2DTLSokTSzL1zt6iGPaS49",
    "DfXygSm4jCyNCybVYYK6DwvWqjKee8pbDmJGcLWNDXjh",
    "ADuUkR4vqLUMWXxW9gh6D6L8pMSawimctcNZ5pGwDcEt",
    "DttWaMuVvTiduZRnguLF7jNxTgiMBZ1hyAumKUiL2KRL",
    "3AVi9Tg9Uo68tJfuvoKvqKNWKkC5wPdSSdeBnizKZ6jT",
]

# Launchpad authorities whose pools are never traded
DEFAULT_BLACKLISTED_CREATORS = [
    "BAGSB9TpGrZxQbEsrEznv5jXXdwyP6AXerN8aVRiAmcv",  # Bags: Token Authority
]
