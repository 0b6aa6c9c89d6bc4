"""
Runtime configuration for the poker escrow backend.

Values come from the environment (``.env`` is loaded on import).
Chain constants live here too so every module agrees on decimals and addresses.
"""
import os

from dotenv import load_dotenv

load_dotenv()

# =============================================================================
# CHAIN CONFIG
# =============================================================================

# Toggle between Base mainnet and Base Sepolia
USE_MAINNET = os.getenv("USE_MAINNET", "false").lower() == "true"

POKER_ESCROW_ADDRESS = os.getenv(
    "POKER_ESCROW_ADDRESS", "0x0000000000000000000000000000000000000000"
)

USDC_ADDRESS_MAINNET = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"  # Real USDC on Base
USDC_ADDRESS_TESTNET = "0x036CbD53842c5426634e7929541eC2318f3dCF7e"  # Mock USDC on Base Sepolia

USDC_ADDRESS = os.getenv(
    "USDC_ADDRESS", USDC_ADDRESS_MAINNET if USE_MAINNET else USDC_ADDRESS_TESTNET
)

USDC_DECIMALS = 6
EXPLORER_URL = "https://basescan.org" if USE_MAINNET else "https://sepolia.basescan.org"

# =============================================================================
# GAME CONFIG
# =============================================================================

GAME_CODE_LENGTH = 6
GAME_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"  # No 0/O/I/1

SUPPORTED_CURRENCIES = ("USDC",)

# =============================================================================
# LEDGER / MAINTENANCE
# =============================================================================

DATABASE_PATH = os.getenv("DATABASE_PATH", "poker.db")

# Pending rows older than this are abandoned join attempts
PENDING_PLAYER_GRACE_MINUTES = int(os.getenv("PENDING_PLAYER_GRACE_MINUTES", "10"))

# Post-confirmation ledger writes (money already moved)
LEDGER_COMMIT_ATTEMPTS = int(os.getenv("LEDGER_COMMIT_ATTEMPTS", "3"))
LEDGER_COMMIT_BASE_DELAY = float(os.getenv("LEDGER_COMMIT_BASE_DELAY", "0.5"))

CRON_SECRET = os.getenv("CRON_SECRET")
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")
