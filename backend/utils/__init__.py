"""Utility modules for the poker escrow backend."""
from .formatting import (
    format_currency,
    format_profit,
    format_timestamp,
    format_tx_link,
    truncate_address,
)
from .validation import is_valid_evm_address, is_valid_amount, is_valid_game_code
from .retry import retry_with_backoff

__all__ = [
    "format_currency",
    "format_profit",
    "format_timestamp",
    "format_tx_link",
    "truncate_address",
    "is_valid_evm_address",
    "is_valid_amount",
    "is_valid_game_code",
    "retry_with_backoff",
]
