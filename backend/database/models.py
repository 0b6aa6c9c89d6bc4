"""
Data models for the poker escrow ledger.
"""
from dataclasses import dataclass, field
from typing import Optional
from datetime import datetime
from enum import Enum


class GameStatus(Enum):
    """Lifecycle status of a game."""
    WAITING = "waiting"  # Accepting joins, no settlement
    ACTIVE = "active"    # Buy-ins allowed, settlement computable
    ENDED = "ended"      # Settled (host may reopen for edits)


class PlayerStatus(Enum):
    """Status of a player's first deposit."""
    PENDING = "pending"      # Row exists, deposit not confirmed on-chain
    DEPOSITED = "deposited"  # Deposit confirmed and recorded


class Currency(Enum):
    USDC = "USDC"
    ETH = "ETH"


class TransactionType(Enum):
    DEPOSIT = "deposit"
    PAYOUT = "payout"


@dataclass
class Game:
    """A poker session with a fixed buy-in."""
    game_id: str
    game_code: str
    host_fid: int
    buy_in_amount: float  # Immutable after creation
    currency: Currency = Currency.USDC
    status: GameStatus = GameStatus.WAITING
    location: Optional[str] = None

    # On-chain tracking
    escrow_tx_hash: Optional[str] = None   # createGame transaction
    payout_tx_hash: Optional[str] = None   # Last confirmed distribution
    distribution_count: int = 0

    created_at: datetime = field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None


@dataclass
class Player:
    """One participant in one game."""
    player_id: str
    game_id: str
    fid: int  # Stable external participant id
    wallet_address: str

    total_buy_ins: int = 0
    total_deposited: float = 0.0
    status: PlayerStatus = PlayerStatus.PENDING

    # Settlement results
    final_chip_count: float = 0.0
    payout_amount: float = 0.0
    payout_sent: bool = False

    # Claimed right before the first deposit is sent; the stale sweep skips claimed rows
    submitting_at: Optional[datetime] = None
    # Set once the first deposit transaction is submitted
    deposit_tx_hash: Optional[str] = None

    created_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def profit(self) -> float:
        return self.payout_amount - self.total_deposited


@dataclass
class LedgerTransaction:
    """A confirmed on-chain transfer applied to the ledger.

    The tx hash is unique per player so the same deposit is never applied twice.
    """
    tx_hash: str
    game_id: str
    player_id: str
    tx_type: TransactionType
    amount: float
    status: str = "confirmed"
    created_at: datetime = field(default_factory=datetime.utcnow)
