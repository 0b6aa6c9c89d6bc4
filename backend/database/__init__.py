"""Database module for the poker escrow ledger."""
from .models import Game, Player, LedgerTransaction, GameStatus, PlayerStatus, Currency, TransactionType
from .changes import ChangeFeed, Subscription
from .repo import Database, new_player_id

__all__ = [
    "Game",
    "Player",
    "LedgerTransaction",
    "GameStatus",
    "PlayerStatus",
    "Currency",
    "TransactionType",
    "ChangeFeed",
    "Subscription",
    "Database",
    "new_player_id",
]
