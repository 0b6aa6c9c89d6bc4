"""
Contract ABIs and the conversions the escrow expects.

Amounts on-chain are integers scaled by 10^6 (USDC decimals).
Game ids on-chain are bytes32 derived from the off-chain UUID.
"""
import re
from decimal import Decimal, ROUND_FLOOR, InvalidOperation
from typing import Union

from config import USDC_DECIMALS

USDC_UNIT = 10 ** USDC_DECIMALS

_HEX_RE = re.compile(r"^[0-9a-f]*$")

# Minimal ERC-20 surface: approve, allowance, balanceOf
USDC_ABI = [
    {
        "type": "function",
        "name": "approve",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "spender", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "type": "function",
        "name": "allowance",
        "stateMutability": "view",
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "spender", "type": "address"},
        ],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "function",
        "name": "balanceOf",
        "stateMutability": "view",
        "inputs": [{"name": "account", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
]

POKER_ESCROW_ABI = [
    {
        "type": "function",
        "name": "createGame",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "gameId", "type": "bytes32"}],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "depositUSDC",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "gameId", "type": "bytes32"},
            {"name": "amount", "type": "uint256"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "distributePayout",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "gameId", "type": "bytes32"},
            {"name": "players", "type": "address[]"},
            {"name": "usdcAmounts", "type": "uint256[]"},
            {"name": "ethAmounts", "type": "uint256[]"},
        ],
        "outputs": [],
    },
]


def to_onchain_game_id(game_id: str) -> str:
    """Map a game UUID to its bytes32 escrow slot.

    Hyphens are stripped and the hex is right-padded to 32 bytes, so the same
    game always lands in the same slot.
    """
    hex_id = game_id.replace("-", "").lower()
    if len(hex_id) > 64 or not _HEX_RE.match(hex_id):
        raise ValueError(f"Game id {game_id!r} cannot be mapped to bytes32")
    return "0x" + hex_id.ljust(64, "0")


def parse_usdc(amount: Union[float, int, str, Decimal]) -> int:
    """Convert a display amount to USDC base units (floored)."""
    try:
        value = Decimal(str(amount))
    except InvalidOperation as e:
        raise ValueError(f"Invalid USDC amount: {amount!r}") from e
    if not value.is_finite() or value < 0:
        raise ValueError(f"USDC amount must be finite and non-negative: {amount!r}")
    return int((value * USDC_UNIT).to_integral_value(rounding=ROUND_FLOOR))


def units_to_usdc(units: int) -> float:
    return units / USDC_UNIT


def format_usdc(units: int) -> str:
    """Format base units for display with 2 decimals."""
    return f"{units / USDC_UNIT:.2f}"
