"""
Buy-in coordinator: keeps the off-chain ledger in step with escrow deposits.

The deposit and the ledger write are two separate fallible steps. A pending
player row is written before any transaction is sent, so every on-chain
deposit has a ledger row to land on. Failures before the deposit confirms are
compensated by deleting that row. Failures after it confirms are never rolled
back: the ledger write is retried and, if it still fails, reported as a
partial commit so nobody is told to retry and pay twice.

Flow per attempt:
    idle -> checking-balance -> creating-pending-record -> approving-allowance
         -> depositing -> confirming -> committed
    any failure before confirmation -> rolling-back -> idle
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from config import LEDGER_COMMIT_ATTEMPTS, LEDGER_COMMIT_BASE_DELAY
from database import Database, Game, Player, PlayerStatus, GameStatus, Currency, Subscription, new_player_id
from errors import (
    PokerEscrowError,
    WalletNotConnected,
    TransactionInProgress,
    InsufficientFunds,
    NetworkError,
    LedgerUnavailable,
    DuplicatePendingPlayer,
    PendingRecordExpired,
    PartiallyCommitted,
    GameNotFound,
    GameClosed,
)
from security import audit_logger, AuditLogger, AuditEventType, AuditSeverity
from utils import format_tx_link, is_valid_evm_address, retry_with_backoff, truncate_address
from .contracts import format_usdc, parse_usdc, units_to_usdc
from .escrow import EscrowClient

logger = logging.getLogger(__name__)


class BuyInState(Enum):
    IDLE = "idle"
    CHECKING_BALANCE = "checking-balance"
    CREATING_PENDING_RECORD = "creating-pending-record"
    APPROVING_ALLOWANCE = "approving-allowance"
    DEPOSITING = "depositing"
    CONFIRMING = "confirming"
    COMMITTED = "committed"
    ROLLING_BACK = "rolling-back"


class BuyInOutcome(Enum):
    COMMITTED = "committed"                      # Deposit confirmed and recorded
    FAILED = "failed"                            # Nothing moved, ledger restored
    PARTIALLY_COMMITTED = "partially_committed"  # Funds moved, record pending


@dataclass
class BuyInResult:
    """Outcome of one buy-in attempt.

    Check ``outcome`` rather than ``error``: a partial commit carries an error
    too, but it must never be treated as a failure that can be retried.
    """
    outcome: BuyInOutcome
    player: Optional[Player] = None
    tx_hash: Optional[str] = None
    error: Optional[PokerEscrowError] = None
    is_rebuy: bool = False

    @property
    def ok(self) -> bool:
        return self.outcome == BuyInOutcome.COMMITTED

    @property
    def retryable(self) -> bool:
        return self.outcome == BuyInOutcome.FAILED and self.error is not None and self.error.retryable

    @property
    def message(self) -> str:
        if self.outcome == BuyInOutcome.COMMITTED:
            return "Re-buy confirmed" if self.is_rebuy else "Buy-in confirmed"
        if self.outcome == BuyInOutcome.PARTIALLY_COMMITTED:
            return (
                "Your deposit went through on-chain but the game record is still updating. "
                "Do not buy in again; it will be reconciled."
            )
        return self.error.message if self.error else "Buy-in failed"


@dataclass
class _Attempt:
    game_id: str
    fid: int
    player: Optional[Player] = None
    is_rebuy: bool = False
    pending_created: bool = False
    amount: float = 0.0  # USDC actually transferred, in display units
    tx_hash: Optional[str] = None


class BuyInCoordinator:
    """Runs buy-ins for one client session.

    One attempt at a time: a second call while an attempt is in flight is
    rejected. The session's change-feed subscription, if given, is paused for
    the duration of each attempt.
    """

    def __init__(
        self,
        db: Database,
        escrow: EscrowClient,
        audit: Optional[AuditLogger] = None,
        subscription: Optional[Subscription] = None,
        commit_attempts: int = LEDGER_COMMIT_ATTEMPTS,
        commit_base_delay: float = LEDGER_COMMIT_BASE_DELAY,
    ):
        self.db = db
        self.escrow = escrow
        self.audit = audit or audit_logger
        self.subscription = subscription
        self.commit_attempts = commit_attempts
        self.commit_base_delay = commit_base_delay
        self.state = BuyInState.IDLE

    def _transition(self, attempt: _Attempt, new_state: BuyInState):
        logger.info(f"[BUY-IN] game={attempt.game_id} fid={attempt.fid}: {self.state.value} -> {new_state.value}")
        self.state = new_state

    async def buy_in(self, game_id: str, fid: int) -> BuyInResult:
        """Join a game or buy in again. Always returns a result; see BuyInOutcome."""
        if self.state != BuyInState.IDLE:
            return BuyInResult(BuyInOutcome.FAILED, error=TransactionInProgress())

        if self.subscription:
            self.subscription.pause()
        try:
            return await self._run(_Attempt(game_id=game_id, fid=fid))
        finally:
            self.state = BuyInState.IDLE
            if self.subscription:
                self.subscription.resume()

    async def _run(self, attempt: _Attempt) -> BuyInResult:
        try:
            game, existing = self._check_preconditions(attempt)
            address = self.escrow.account
            required = parse_usdc(game.buy_in_amount)
            attempt.amount = units_to_usdc(required)

            self._transition(attempt, BuyInState.CHECKING_BALANCE)
            await self._check_balance(address, required)

            if existing:
                attempt.player = existing
                attempt.is_rebuy = True
            else:
                self._transition(attempt, BuyInState.CREATING_PENDING_RECORD)
                attempt.player = self._create_pending(game, attempt, address)

            self._transition(attempt, BuyInState.APPROVING_ALLOWANCE)
            await self._ensure_allowance(address, required)

            self._transition(attempt, BuyInState.DEPOSITING)
            if attempt.pending_created:
                self._claim_pending(attempt)
            attempt.tx_hash = await self.escrow.deposit(game.game_id, required)
            if attempt.pending_created:
                self._stamp_deposit(attempt)

            self._transition(attempt, BuyInState.CONFIRMING)
            await self.escrow.wait_for_confirmation(attempt.tx_hash)

        except PokerEscrowError as e:
            self._rollback(attempt, e)
            return BuyInResult(
                BuyInOutcome.FAILED, tx_hash=attempt.tx_hash, error=e, is_rebuy=attempt.is_rebuy
            )
        except Exception as e:
            self._rollback(attempt, e)
            raise

        return await self._commit(game, attempt)

    # === Steps ===

    def _check_preconditions(self, attempt: _Attempt) -> Tuple[Game, Optional[Player]]:
        if not self.escrow.account:
            raise WalletNotConnected()
        valid, error = is_valid_evm_address(self.escrow.account)
        if not valid:
            raise WalletNotConnected(f"Connected account cannot buy in: {error}")

        game = self.db.get_game(attempt.game_id)
        if not game:
            raise GameNotFound(f"Game {attempt.game_id} not found")
        if game.status == GameStatus.ENDED:
            raise GameClosed(f"Game {game.game_code} has ended")
        if game.currency != Currency.USDC:
            raise GameClosed(f"Game {game.game_code} uses {game.currency.value}, only USDC buy-ins are supported")

        existing = self.db.get_player_for_fid(game.game_id, attempt.fid)
        if existing and existing.status == PlayerStatus.PENDING:
            raise TransactionInProgress(
                "A previous buy-in for this player has not finished yet. Wait for it to complete."
            )
        return game, existing

    async def _check_balance(self, address: str, required: int):
        """Fail fast on a reliable low balance. A failed read never blocks the deposit."""
        try:
            balance = await self.escrow.balance_of(address)
        except NetworkError as e:
            logger.warning(f"[BUY-IN] Balance read failed for {truncate_address(address)}, continuing: {e}")
            return

        if balance < required:
            raise InsufficientFunds(required=required, available=balance)

    def _create_pending(self, game: Game, attempt: _Attempt, address: str) -> Player:
        player = Player(
            player_id=new_player_id(),
            game_id=game.game_id,
            fid=attempt.fid,
            wallet_address=address,
            total_buy_ins=1,
            total_deposited=attempt.amount,
            status=PlayerStatus.PENDING,
        )
        try:
            self.db.insert_pending_player(player)
        except DuplicatePendingPlayer as e:
            raise TransactionInProgress(str(e)) from e

        attempt.pending_created = True
        self.audit.log(
            AuditEventType.PENDING_CREATED,
            game_id=game.game_id,
            fid=attempt.fid,
            details=f"player={player.player_id} wallet={address}",
        )
        return player

    async def _ensure_allowance(self, address: str, required: int):
        try:
            current = await self.escrow.allowance(address)
        except NetworkError as e:
            logger.warning(f"[BUY-IN] Allowance read failed for {truncate_address(address)}, requesting approval: {e}")
            current = 0

        if current >= required:
            logger.info(f"[BUY-IN] Allowance {format_usdc(current)} USDC covers {format_usdc(required)} USDC, skipping approval")
            return

        approve_tx = await self.escrow.approve(required)
        await self.escrow.wait_for_confirmation(approve_tx)

    def _claim_pending(self, attempt: _Attempt):
        """Claim the pending row right before depositing; a swept row aborts with nothing sent."""
        if not self.db.claim_pending_for_deposit(attempt.player.player_id):
            raise PendingRecordExpired()

    def _stamp_deposit(self, attempt: _Attempt):
        try:
            stamped = self.db.stamp_deposit_tx(attempt.player.player_id, attempt.tx_hash)
        except LedgerUnavailable as e:
            logger.warning(f"[BUY-IN] Could not stamp deposit {attempt.tx_hash} on pending row: {e}")
            return
        if not stamped:
            logger.error(f"[BUY-IN] Pending row {attempt.player.player_id} missing when stamping {attempt.tx_hash}")

    async def _commit(self, game: Game, attempt: _Attempt) -> BuyInResult:
        player = attempt.player
        tx_hash = attempt.tx_hash

        async def write():
            if attempt.is_rebuy:
                return self.db.record_rebuy(player.player_id, attempt.amount, tx_hash)
            promoted = self.db.promote_pending_player(player.player_id, tx_hash)
            if promoted is None:
                raise LedgerUnavailable(f"Pending row {player.player_id} disappeared before commit")
            return promoted

        try:
            written = await retry_with_backoff(
                write,
                attempts=self.commit_attempts,
                base_delay=self.commit_base_delay,
                retry_on=(LedgerUnavailable,),
                label=f"ledger commit for {tx_hash}",
            )
        except LedgerUnavailable as e:
            self.audit.log(
                AuditEventType.PARTIAL_COMMIT,
                severity=AuditSeverity.CRITICAL,
                game_id=game.game_id,
                fid=attempt.fid,
                tx_hash=tx_hash,
                details=f"player={player.player_id} rebuy={attempt.is_rebuy} error={e} {format_tx_link(tx_hash)}",
            )
            error = PartiallyCommitted(
                f"Deposit {tx_hash} confirmed on-chain but the ledger write failed: {e}", tx_hash
            )
            return BuyInResult(
                BuyInOutcome.PARTIALLY_COMMITTED,
                player=player,
                tx_hash=tx_hash,
                error=error,
                is_rebuy=attempt.is_rebuy,
            )

        if attempt.is_rebuy:
            if written:
                player.total_buy_ins += 1
                player.total_deposited += attempt.amount
        else:
            player = written

        self._transition(attempt, BuyInState.COMMITTED)
        self.audit.log(
            AuditEventType.BUY_IN_COMMITTED,
            game_id=game.game_id,
            fid=attempt.fid,
            tx_hash=tx_hash,
            details=f"player={player.player_id} amount={attempt.amount} rebuy={attempt.is_rebuy}",
        )
        return BuyInResult(BuyInOutcome.COMMITTED, player=player, tx_hash=tx_hash, is_rebuy=attempt.is_rebuy)

    def _rollback(self, attempt: _Attempt, error: Exception):
        """Undo the pending row of a first-time join. Nothing on-chain is reversed."""
        self._transition(attempt, BuyInState.ROLLING_BACK)

        if attempt.pending_created:
            try:
                self.db.delete_pending_player(attempt.player.player_id)
            except LedgerUnavailable as e:
                # Left for the pending-row sweep / reconciliation
                logger.error(f"[BUY-IN] Rollback of pending row {attempt.player.player_id} failed: {e}")

        if attempt.tx_hash and isinstance(error, NetworkError):
            self.audit.log(
                AuditEventType.DEPOSIT_OUTCOME_UNKNOWN,
                severity=AuditSeverity.CRITICAL,
                game_id=attempt.game_id,
                fid=attempt.fid,
                tx_hash=attempt.tx_hash,
                details=f"Deposit submitted but confirmation not observed: {error} {format_tx_link(attempt.tx_hash)}",
            )

        if attempt.pending_created or attempt.tx_hash:
            self.audit.log(
                AuditEventType.BUY_IN_ROLLED_BACK,
                severity=AuditSeverity.WARNING,
                game_id=attempt.game_id,
                fid=attempt.fid,
                tx_hash=attempt.tx_hash,
                details=f"{error.__class__.__name__}: {error}",
            )
        logger.warning(f"[BUY-IN] game={attempt.game_id} fid={attempt.fid} failed: {error}")
