"""
Formatting utilities for display.
"""
from datetime import datetime
from typing import Optional

from config import EXPLORER_URL


def format_currency(amount: float, currency: str = "USDC") -> str:
    """Format an amount with 2 decimals and its currency tag."""
    return f"{amount:.2f} {currency}"


def format_profit(amount: float, currency: str = "USDC") -> str:
    """Signed amount, e.g. +5.00 USDC / -5.00 USDC."""
    sign = "+" if amount >= 0 else "-"
    return f"{sign}{abs(amount):.2f} {currency}"


def format_timestamp(dt: Optional[datetime]) -> str:
    """Format timestamp for display."""
    if not dt:
        return "N/A"
    return dt.strftime("%Y-%m-%d %H:%M:%S UTC")


def format_tx_link(tx_hash: str) -> str:
    """Block explorer link for a transaction."""
    return f"{EXPLORER_URL}/tx/{tx_hash}"


def truncate_address(address: str, start: int = 6, end: int = 4) -> str:
    """Truncate wallet address for display."""
    if len(address) <= start + end:
        return address
    return f"{address[:start]}...{address[-end:]}"
