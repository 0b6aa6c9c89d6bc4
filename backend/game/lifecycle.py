"""
Game lifecycle: waiting -> active -> ended, plus the host's ended -> active reopen.
"""
import logging
import secrets
import sqlite3
import uuid
from datetime import datetime
from typing import Optional

from config import GAME_CODE_ALPHABET, GAME_CODE_LENGTH, SUPPORTED_CURRENCIES
from database import Database, Game, GameStatus, PlayerStatus, Currency
from errors import GameNotFound, InvalidTransition, NotHost
from security import audit_logger, AuditLogger, AuditEventType, AuditSeverity
from utils import format_currency, is_valid_amount
from .contracts import parse_usdc, units_to_usdc
from .escrow import EscrowClient

logger = logging.getLogger(__name__)

MAX_CODE_ATTEMPTS = 10

# ended -> active is the host's "edit settlement" path
ALLOWED_TRANSITIONS = {
    GameStatus.WAITING: {GameStatus.ACTIVE},
    GameStatus.ACTIVE: {GameStatus.ENDED},
    GameStatus.ENDED: {GameStatus.ACTIVE},
}


def generate_game_code() -> str:
    """Random shareable code without look-alike characters."""
    return "".join(secrets.choice(GAME_CODE_ALPHABET) for _ in range(GAME_CODE_LENGTH))


def generate_game_id() -> str:
    return str(uuid.uuid4())


def can_transition(current: GameStatus, target: GameStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, set())


def require_host(game: Game, fid: int):
    if game.host_fid != fid:
        raise NotHost(f"Only the host can manage game {game.game_code}")


class GameLifecycle:
    """Gates which state changes are legal for a game."""

    def __init__(
        self,
        db: Database,
        escrow: Optional[EscrowClient] = None,
        audit: Optional[AuditLogger] = None,
    ):
        self.db = db
        self.escrow = escrow
        self.audit = audit or audit_logger

    def _get_game(self, game_id: str) -> Game:
        game = self.db.get_game(game_id)
        if not game:
            raise GameNotFound(f"Game {game_id} not found")
        return game

    async def create_game(
        self,
        host_fid: int,
        buy_in_amount: float,
        currency: str = "USDC",
        location: Optional[str] = None,
    ) -> Game:
        """Create a waiting game and, with an escrow client, register it on-chain.

        If the on-chain registration fails the game row stays in place and the
        error propagates; ``register_onchain`` can be retried later.
        """
        valid, error = is_valid_amount(buy_in_amount)
        if not valid:
            raise ValueError(error)
        if currency not in SUPPORTED_CURRENCIES:
            raise ValueError(f"Unsupported currency {currency!r}; supported: {', '.join(SUPPORTED_CURRENCIES)}")

        game = None
        for _ in range(MAX_CODE_ATTEMPTS):
            candidate = Game(
                game_id=generate_game_id(),
                game_code=generate_game_code(),
                host_fid=host_fid,
                buy_in_amount=units_to_usdc(parse_usdc(buy_in_amount)),
                currency=Currency(currency),
                status=GameStatus.WAITING,
                location=location,
            )
            try:
                game = self.db.create_game(candidate)
                break
            except sqlite3.IntegrityError:
                logger.warning(f"[LIFECYCLE] Game code {candidate.game_code} collided, regenerating")
        if game is None:
            raise RuntimeError(f"Could not generate a unique game code after {MAX_CODE_ATTEMPTS} attempts")

        logger.info(f"[LIFECYCLE] Created game {game.game_code} ({game.game_id}) buy-in {format_currency(game.buy_in_amount, currency)}")
        self.audit.log(
            AuditEventType.GAME_CREATED,
            game_id=game.game_id,
            fid=host_fid,
            details=f"code={game.game_code} buy_in={game.buy_in_amount} {currency}",
        )

        if self.escrow:
            await self.register_onchain(game.game_id)
            game = self._get_game(game.game_id)
        return game

    async def register_onchain(self, game_id: str) -> str:
        """Create the game's escrow slot and record the tx hash."""
        if not self.escrow:
            raise RuntimeError("No escrow client configured")
        game = self._get_game(game_id)
        if game.escrow_tx_hash:
            return game.escrow_tx_hash

        tx_hash = await self.escrow.create_game(game_id)
        await self.escrow.wait_for_confirmation(tx_hash)
        self.db.set_escrow_tx(game_id, tx_hash)
        logger.info(f"[LIFECYCLE] Game {game.game_code} registered on-chain (tx: {tx_hash})")
        return tx_hash

    def start_game(self, game_id: str, host_fid: int) -> Game:
        """waiting -> active. Needs at least one confirmed deposit."""
        game = self._get_game(game_id)
        require_host(game, host_fid)
        if game.status != GameStatus.WAITING:
            raise InvalidTransition(f"Cannot start game {game.game_code} from {game.status.value}")

        if not self.db.get_players(game_id, PlayerStatus.DEPOSITED):
            raise InvalidTransition(f"Game {game.game_code} needs at least one deposited player to start")

        if not self.db.set_game_status(
            game_id, GameStatus.ACTIVE, GameStatus.WAITING, started_at=datetime.utcnow()
        ):
            raise InvalidTransition(f"Game {game.game_code} changed state while starting")

        self.audit.log(AuditEventType.GAME_STARTED, game_id=game_id, fid=host_fid)
        return self._get_game(game_id)

    def reopen_game(self, game_id: str, host_fid: int) -> Game:
        """ended -> active so the host can correct chip counts.

        Ledger-only: the earlier on-chain distribution is not reversed, and
        settling again will require explicit confirmation.
        """
        game = self._get_game(game_id)
        require_host(game, host_fid)
        if game.status != GameStatus.ENDED:
            raise InvalidTransition(f"Only ended games can be reopened, {game.game_code} is {game.status.value}")

        if not self.db.set_game_status(game_id, GameStatus.ACTIVE, GameStatus.ENDED, clear_ended_at=True):
            raise InvalidTransition(f"Game {game.game_code} changed state while reopening")

        self.audit.log(
            AuditEventType.GAME_REOPENED,
            severity=AuditSeverity.WARNING,
            game_id=game_id,
            fid=host_fid,
            tx_hash=game.payout_tx_hash,
            details="Reopened for settlement edits; prior distribution stands",
        )
        return self._get_game(game_id)
