"""
Input validation utilities.
"""
import re
from decimal import Decimal
from typing import Tuple

from config import GAME_CODE_ALPHABET, GAME_CODE_LENGTH, USDC_DECIMALS

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def is_valid_evm_address(address: str) -> Tuple[bool, str]:
    """Validate an EVM wallet address (0x + 40 hex chars).

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not address:
        return False, "Wallet address is required"

    if not isinstance(address, str):
        return False, "Wallet address must be a string"

    if not _ADDRESS_RE.match(address):
        return False, "Invalid wallet address format (expected 0x followed by 40 hex characters)"

    return True, ""


def is_valid_amount(amount: float, min_amount: float = 0.01, max_amount: float = 100_000.0) -> Tuple[bool, str]:
    """Validate a buy-in amount.

    Args:
        amount: Amount in USDC
        min_amount: Minimum allowed amount
        max_amount: Maximum allowed amount

    Returns:
        Tuple of (is_valid, error_message)
    """
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        return False, "Amount must be a number"

    if amount != amount or amount <= 0:
        return False, "Amount must be greater than 0"

    if amount < min_amount:
        return False, f"Amount must be at least {min_amount} USDC"

    if amount > max_amount:
        return False, f"Amount cannot exceed {max_amount} USDC"

    # Finer than the token's base unit could not be transferred exactly
    if Decimal(str(amount)).as_tuple().exponent < -USDC_DECIMALS:
        return False, f"Amount cannot have more than {USDC_DECIMALS} decimal places"

    return True, ""


def is_valid_game_code(code: str) -> Tuple[bool, str]:
    """Validate a shareable game code (e.g., "K7PX2M")."""
    if not code:
        return False, "Game code is required"

    if not isinstance(code, str):
        return False, "Game code must be a string"

    code = code.upper()
    if len(code) != GAME_CODE_LENGTH:
        return False, f"Game code must be {GAME_CODE_LENGTH} characters"

    if not all(c in GAME_CODE_ALPHABET for c in code):
        return False, "Game code contains invalid characters"

    return True, ""
