"""
Error taxonomy shared by the ledger, escrow client and game flows.

Every error carries a human-readable message. ``retryable`` tells the caller
whether re-entering the flow from the top is safe.
"""
from typing import Optional


class PokerEscrowError(Exception):
    """Base class for all errors surfaced to callers."""
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


# === Wallet / chain ===

class WalletNotConnected(PokerEscrowError):
    def __init__(self, message: str = "Connect a wallet before buying in"):
        super().__init__(message)


class TransactionInProgress(PokerEscrowError):
    """A buy-in for this participant is already in flight."""

    def __init__(self, message: str = "A buy-in is already in progress for this player"):
        super().__init__(message)


class InsufficientFunds(PokerEscrowError):
    retryable = True

    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        self.shortfall = required - available
        super().__init__(
            f"Insufficient USDC balance: need {required / 1_000_000:.2f}, "
            f"have {available / 1_000_000:.2f} (short {self.shortfall / 1_000_000:.2f})"
        )


class UserRejected(PokerEscrowError):
    retryable = True

    def __init__(self, message: str = "Transaction was rejected in the wallet"):
        super().__init__(message)


class NetworkError(PokerEscrowError):
    retryable = True


class ContractReverted(PokerEscrowError):
    retryable = True

    def __init__(self, reason: str, tx_hash: Optional[str] = None):
        self.reason = reason
        self.tx_hash = tx_hash
        super().__init__(f"Transaction reverted: {reason}")


# === Ledger ===

class LedgerUnavailable(PokerEscrowError):
    retryable = True


class DuplicatePendingPlayer(PokerEscrowError):
    """Uniqueness constraint on (game, participant) rejected an insert."""


class PendingRecordExpired(PokerEscrowError):
    """The pending row was removed before the deposit was sent. Nothing moved."""
    retryable = True

    def __init__(self, message: str = "This buy-in expired before the deposit was sent. Please try again."):
        super().__init__(message)


class PartiallyCommitted(PokerEscrowError):
    """Funds moved on-chain but the ledger record is still pending.

    Never retryable: retrying would send a second transfer.
    """

    def __init__(self, message: str, tx_hash: str):
        self.tx_hash = tx_hash
        super().__init__(message)


# === Game rules ===

class GameNotFound(PokerEscrowError):
    pass


class GameClosed(PokerEscrowError):
    pass


class NotHost(PokerEscrowError):
    pass


class InvalidTransition(PokerEscrowError):
    pass


class SettlementError(PokerEscrowError):
    pass


class RedistributionNotConfirmed(SettlementError):
    """The game already had a payout distributed on-chain."""

    def __init__(self, previous_tx_hash: str):
        self.previous_tx_hash = previous_tx_hash
        super().__init__(
            f"Payouts were already distributed (tx {previous_tx_hash}). "
            f"Settling again sends a second distribution; confirm explicitly to proceed."
        )
