"""
Database repository for the poker escrow ledger.
Source of truth for games and player deposits (SQLite).
"""
import sqlite3
import logging
import uuid
from contextlib import contextmanager
from typing import Optional, List, Iterator
from datetime import datetime

from errors import LedgerUnavailable, DuplicatePendingPlayer
from .changes import ChangeFeed
from .models import Game, Player, LedgerTransaction, GameStatus, PlayerStatus, Currency, TransactionType

logger = logging.getLogger(__name__)


class Database:
    """Database repository."""

    def __init__(self, db_path: str = "poker.db", feed: Optional[ChangeFeed] = None):
        self.db_path = db_path
        self.feed = feed or ChangeFeed()
        self._init_db()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """Open a connection, commit on success, translate driver errors."""
        try:
            conn = sqlite3.connect(self.db_path)
        except sqlite3.Error as e:
            raise LedgerUnavailable(f"Cannot open ledger: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.IntegrityError:
            conn.rollback()
            raise
        except sqlite3.Error as e:
            conn.rollback()
            raise LedgerUnavailable(f"Ledger write failed: {e}") from e
        finally:
            conn.close()

    def _init_db(self):
        """Initialize database schema."""
        with self._connect() as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS games (
                    game_id TEXT PRIMARY KEY,
                    game_code TEXT NOT NULL UNIQUE,
                    host_fid INTEGER NOT NULL,
                    buy_in_amount REAL NOT NULL CHECK (buy_in_amount > 0),
                    currency TEXT NOT NULL DEFAULT 'USDC',
                    status TEXT NOT NULL DEFAULT 'waiting',
                    location TEXT,
                    escrow_tx_hash TEXT,
                    payout_tx_hash TEXT,
                    distribution_count INTEGER DEFAULT 0,
                    created_at TEXT NOT NULL,
                    started_at TEXT,
                    ended_at TEXT
                )
            """)

            # (game_id, fid) unique: at most one pending row per participant
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS players (
                    player_id TEXT PRIMARY KEY,
                    game_id TEXT NOT NULL,
                    fid INTEGER NOT NULL,
                    wallet_address TEXT NOT NULL,
                    total_buy_ins INTEGER DEFAULT 0,
                    total_deposited REAL DEFAULT 0.0,
                    status TEXT NOT NULL DEFAULT 'pending',
                    final_chip_count REAL DEFAULT 0.0,
                    payout_amount REAL DEFAULT 0.0,
                    payout_sent INTEGER DEFAULT 0,
                    submitting_at TEXT,
                    deposit_tx_hash TEXT,
                    created_at TEXT NOT NULL,
                    UNIQUE (game_id, fid),
                    FOREIGN KEY (game_id) REFERENCES games(game_id)
                )
            """)

            # Confirmed transfers; a tx hash is applied to a player at most once
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS transactions (
                    tx_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tx_hash TEXT NOT NULL,
                    game_id TEXT NOT NULL,
                    player_id TEXT NOT NULL,
                    tx_type TEXT NOT NULL,
                    amount REAL NOT NULL,
                    status TEXT NOT NULL DEFAULT 'confirmed',
                    created_at TEXT NOT NULL,
                    UNIQUE (tx_hash, player_id),
                    FOREIGN KEY (game_id) REFERENCES games(game_id)
                )
            """)

            # Migrations for ledgers created before these columns existed
            existing_columns = {row["name"] for row in cursor.execute("PRAGMA table_info(players)")}
            player_migrations = [
                ("submitting_at", "TEXT"),
            ]
            for col_name, col_type in player_migrations:
                if col_name not in existing_columns:
                    try:
                        cursor.execute(f"ALTER TABLE players ADD COLUMN {col_name} {col_type}")
                        logger.info(f"Migration: Added column '{col_name}' to players table")
                    except sqlite3.OperationalError as e:
                        if "duplicate column" not in str(e).lower():
                            logger.warning(f"Migration warning for {col_name}: {e}")

            cursor.execute("CREATE INDEX IF NOT EXISTS idx_players_game ON players(game_id)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_players_status ON players(status, created_at)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_transactions_game ON transactions(game_id)")

        logger.info(f"Database initialized at {self.db_path}")

    def _publish(self, game_id: str, table: str, action: str, record_id: str):
        self.feed.publish(game_id, table, action, record_id)

    # === Game Operations ===

    def create_game(self, game: Game) -> Game:
        """Insert a new game. Raises sqlite3.IntegrityError on a duplicate code."""
        with self._connect() as conn:
            conn.execute("""
                INSERT INTO games (
                    game_id, game_code, host_fid, buy_in_amount, currency, status,
                    location, escrow_tx_hash, payout_tx_hash, distribution_count,
                    created_at, started_at, ended_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                game.game_id, game.game_code, game.host_fid, game.buy_in_amount,
                game.currency.value, game.status.value, game.location,
                game.escrow_tx_hash, game.payout_tx_hash, game.distribution_count,
                game.created_at.isoformat(),
                game.started_at.isoformat() if game.started_at else None,
                game.ended_at.isoformat() if game.ended_at else None,
            ))
        self._publish(game.game_id, "games", "insert", game.game_id)
        return game

    def get_game(self, game_id: str) -> Optional[Game]:
        """Get game by ID."""
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM games WHERE game_id = ?", (game_id,)).fetchone()
        return self._row_to_game(row) if row else None

    def get_game_by_code(self, game_code: str) -> Optional[Game]:
        """Get game by its shareable code (case-insensitive)."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM games WHERE game_code = ?", (game_code.upper(),)
            ).fetchone()
        return self._row_to_game(row) if row else None

    def set_game_status(
        self,
        game_id: str,
        new_status: GameStatus,
        expected_status: GameStatus,
        started_at: Optional[datetime] = None,
        clear_ended_at: bool = False,
    ) -> bool:
        """Conditionally move a game between states.

        Returns False if the game was not in ``expected_status``.
        """
        with self._connect() as conn:
            sets = ["status = ?"]
            params: list = [new_status.value]
            if started_at:
                sets.append("started_at = COALESCE(started_at, ?)")
                params.append(started_at.isoformat())
            if clear_ended_at:
                sets.append("ended_at = NULL")
            params.extend([game_id, expected_status.value])
            cursor = conn.execute(
                f"UPDATE games SET {', '.join(sets)} WHERE game_id = ? AND status = ?",
                params,
            )
            changed = cursor.rowcount == 1
        if changed:
            self._publish(game_id, "games", "update", game_id)
        return changed

    def set_escrow_tx(self, game_id: str, tx_hash: str):
        with self._connect() as conn:
            conn.execute(
                "UPDATE games SET escrow_tx_hash = ? WHERE game_id = ?", (tx_hash, game_id)
            )
        self._publish(game_id, "games", "update", game_id)

    def _row_to_game(self, row: sqlite3.Row) -> Game:
        """Convert database row to Game object."""
        return Game(
            game_id=row["game_id"],
            game_code=row["game_code"],
            host_fid=row["host_fid"],
            buy_in_amount=row["buy_in_amount"],
            currency=Currency(row["currency"]),
            status=GameStatus(row["status"]),
            location=row["location"],
            escrow_tx_hash=row["escrow_tx_hash"],
            payout_tx_hash=row["payout_tx_hash"],
            distribution_count=row["distribution_count"] or 0,
            created_at=datetime.fromisoformat(row["created_at"]),
            started_at=datetime.fromisoformat(row["started_at"]) if row["started_at"] else None,
            ended_at=datetime.fromisoformat(row["ended_at"]) if row["ended_at"] else None,
        )

    # === Player Operations ===

    def insert_pending_player(self, player: Player) -> Player:
        """Insert a pending player row before any on-chain transaction.

        Raises:
            DuplicatePendingPlayer: participant already has a row in this game
            LedgerUnavailable: any other storage failure
        """
        try:
            with self._connect() as conn:
                conn.execute("""
                    INSERT INTO players (
                        player_id, game_id, fid, wallet_address, total_buy_ins,
                        total_deposited, status, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    player.player_id, player.game_id, player.fid, player.wallet_address,
                    player.total_buy_ins, player.total_deposited,
                    PlayerStatus.PENDING.value, player.created_at.isoformat(),
                ))
        except sqlite3.IntegrityError as e:
            raise DuplicatePendingPlayer(
                f"Player {player.fid} already has a record in game {player.game_id}"
            ) from e
        self._publish(player.game_id, "players", "insert", player.player_id)
        return player

    def get_player(self, player_id: str) -> Optional[Player]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM players WHERE player_id = ?", (player_id,)).fetchone()
        return self._row_to_player(row) if row else None

    def get_player_for_fid(self, game_id: str, fid: int) -> Optional[Player]:
        """Get a participant's row in a game, if any."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM players WHERE game_id = ? AND fid = ?", (game_id, fid)
            ).fetchone()
        return self._row_to_player(row) if row else None

    def get_players(self, game_id: str, status: Optional[PlayerStatus] = None) -> List[Player]:
        """Get a game's players in join order."""
        query = "SELECT * FROM players WHERE game_id = ?"
        params: list = [game_id]
        if status:
            query += " AND status = ?"
            params.append(status.value)
        query += " ORDER BY created_at ASC, rowid ASC"

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_player(row) for row in rows]

    def claim_pending_for_deposit(self, player_id: str) -> bool:
        """Mark a pending row as about to receive its first deposit.

        Returns False if the row is gone (swept or rolled back), in which case
        no deposit may be sent. Claimed rows are never removed by the stale sweep.
        """
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE players SET submitting_at = ? WHERE player_id = ? AND status = ?",
                (datetime.utcnow().isoformat(), player_id, PlayerStatus.PENDING.value),
            )
            return cursor.rowcount == 1

    def stamp_deposit_tx(self, player_id: str, tx_hash: str) -> bool:
        """Record the submitted deposit hash on a pending row."""
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE players SET deposit_tx_hash = ? WHERE player_id = ? AND status = ?",
                (tx_hash, player_id, PlayerStatus.PENDING.value),
            )
            return cursor.rowcount == 1

    def promote_pending_player(self, player_id: str, tx_hash: str) -> Optional[Player]:
        """Mark a pending player as deposited after on-chain confirmation.

        Idempotent: promoting an already deposited row returns it unchanged.
        Returns None if the row no longer exists.
        """
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM players WHERE player_id = ?", (player_id,)).fetchone()
            if not row:
                return None
            player = self._row_to_player(row)
            if player.status == PlayerStatus.DEPOSITED:
                return player

            conn.execute(
                "UPDATE players SET status = ?, deposit_tx_hash = ? WHERE player_id = ? AND status = ?",
                (PlayerStatus.DEPOSITED.value, tx_hash, player_id, PlayerStatus.PENDING.value),
            )
            try:
                self._insert_transaction(
                    conn, tx_hash, player.game_id, player_id, TransactionType.DEPOSIT, player.total_deposited
                )
            except sqlite3.IntegrityError:
                logger.info(f"[LEDGER] Deposit {tx_hash} already recorded for player {player_id}")
            player.status = PlayerStatus.DEPOSITED
            player.deposit_tx_hash = tx_hash

        self._publish(player.game_id, "players", "update", player_id)
        logger.info(f"[LEDGER] Player {player_id} promoted to deposited (tx: {tx_hash})")
        return player

    def delete_pending_player(self, player_id: str) -> bool:
        """Delete a pending row (compensating action). Never deletes deposited rows."""
        with self._connect() as conn:
            row = conn.execute("SELECT game_id FROM players WHERE player_id = ?", (player_id,)).fetchone()
            cursor = conn.execute(
                "DELETE FROM players WHERE player_id = ? AND status = ?",
                (player_id, PlayerStatus.PENDING.value),
            )
            deleted = cursor.rowcount == 1
        if deleted:
            self._publish(row["game_id"], "players", "delete", player_id)
        return deleted

    def record_rebuy(self, player_id: str, amount: float, tx_hash: str) -> bool:
        """Apply one confirmed re-buy-in deposit.

        Returns False (and changes nothing) if this tx hash was already applied.
        """
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM players WHERE player_id = ?", (player_id,)).fetchone()
            if not row:
                raise LedgerUnavailable(f"Player {player_id} not found for re-buy-in")
            try:
                self._insert_transaction(
                    conn, tx_hash, row["game_id"], player_id, TransactionType.DEPOSIT, amount
                )
            except sqlite3.IntegrityError:
                logger.info(f"[LEDGER] Deposit {tx_hash} already applied to player {player_id}")
                return False
            conn.execute("""
                UPDATE players SET
                    total_buy_ins = total_buy_ins + 1,
                    total_deposited = total_deposited + ?
                WHERE player_id = ?
            """, (amount, player_id))
            game_id = row["game_id"]

        self._publish(game_id, "players", "update", player_id)
        return True

    def get_pot(self, game_id: str) -> float:
        """Sum of confirmed deposits. Pending rows are provisional and excluded."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COALESCE(SUM(total_deposited), 0) AS pot FROM players WHERE game_id = ? AND status = ?",
                (game_id, PlayerStatus.DEPOSITED.value),
            ).fetchone()
        return float(row["pot"])

    def _row_to_player(self, row: sqlite3.Row) -> Player:
        """Convert database row to Player object."""
        return Player(
            player_id=row["player_id"],
            game_id=row["game_id"],
            fid=row["fid"],
            wallet_address=row["wallet_address"],
            total_buy_ins=row["total_buy_ins"],
            total_deposited=row["total_deposited"],
            status=PlayerStatus(row["status"]),
            final_chip_count=row["final_chip_count"] or 0.0,
            payout_amount=row["payout_amount"] or 0.0,
            payout_sent=bool(row["payout_sent"]),
            submitting_at=datetime.fromisoformat(row["submitting_at"]) if row["submitting_at"] else None,
            deposit_tx_hash=row["deposit_tx_hash"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    # === Settlement ===

    def record_settlement(self, game_id: str, lines: list, tx_hash: str) -> bool:
        """Write final chip counts and payouts, then end the game, atomically.

        ``lines`` are PayoutLine objects (player, chips, payout).
        Returns False if the game was not active.
        """
        now = datetime.utcnow().isoformat()
        with self._connect() as conn:
            cursor = conn.execute("""
                UPDATE games SET
                    status = ?, ended_at = ?, payout_tx_hash = ?,
                    distribution_count = distribution_count + 1
                WHERE game_id = ? AND status = ?
            """, (GameStatus.ENDED.value, now, tx_hash, game_id, GameStatus.ACTIVE.value))
            if cursor.rowcount != 1:
                conn.rollback()
                return False

            for line in lines:
                conn.execute("""
                    UPDATE players SET final_chip_count = ?, payout_amount = ?, payout_sent = 1
                    WHERE player_id = ?
                """, (line.chips, line.payout, line.player.player_id))
                if line.payout > 0:
                    self._insert_transaction(
                        conn, tx_hash, game_id, line.player.player_id, TransactionType.PAYOUT, line.payout
                    )

        self._publish(game_id, "games", "update", game_id)
        logger.info(f"[LEDGER] Settlement recorded for game {game_id} (tx: {tx_hash})")
        return True

    # === Maintenance ===

    def get_stale_pending_players(self, cutoff: datetime) -> List[Player]:
        """Pending rows older than cutoff that never started a deposit."""
        with self._connect() as conn:
            rows = conn.execute("""
                SELECT * FROM players
                WHERE status = ? AND created_at < ?
                  AND submitting_at IS NULL AND deposit_tx_hash IS NULL
                ORDER BY created_at ASC
            """, (PlayerStatus.PENDING.value, cutoff.isoformat())).fetchall()
        return [self._row_to_player(row) for row in rows]

    def delete_stale_pending_players(self, cutoff: datetime) -> List[Player]:
        """Delete abandoned pending rows. Deposited rows are never touched."""
        stale = self.get_stale_pending_players(cutoff)
        deleted = []
        for player in stale:
            with self._connect() as conn:
                cursor = conn.execute("""
                    DELETE FROM players
                    WHERE player_id = ? AND status = ?
                      AND submitting_at IS NULL AND deposit_tx_hash IS NULL
                """, (player.player_id, PlayerStatus.PENDING.value))
                if cursor.rowcount == 1:
                    deleted.append(player)
        for player in deleted:
            self._publish(player.game_id, "players", "delete", player.player_id)
        return deleted

    def get_submitted_pending_players(self) -> List[Player]:
        """Pending rows whose deposit was submitted but never committed."""
        with self._connect() as conn:
            rows = conn.execute("""
                SELECT * FROM players
                WHERE status = ? AND deposit_tx_hash IS NOT NULL
                ORDER BY created_at ASC
            """, (PlayerStatus.PENDING.value,)).fetchall()
        return [self._row_to_player(row) for row in rows]

    # === Transactions ===

    def _insert_transaction(
        self,
        conn: sqlite3.Connection,
        tx_hash: str,
        game_id: str,
        player_id: str,
        tx_type: TransactionType,
        amount: float,
    ):
        conn.execute("""
            INSERT INTO transactions (tx_hash, game_id, player_id, tx_type, amount, status, created_at)
            VALUES (?, ?, ?, ?, ?, 'confirmed', ?)
        """, (tx_hash, game_id, player_id, tx_type.value, amount, datetime.utcnow().isoformat()))

    def get_transactions(self, game_id: str) -> List[LedgerTransaction]:
        """Confirmed transfers applied to a game, oldest first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM transactions WHERE game_id = ? ORDER BY tx_id ASC", (game_id,)
            ).fetchall()
        return [self._row_to_transaction(row) for row in rows]

    def _row_to_transaction(self, row: sqlite3.Row) -> LedgerTransaction:
        return LedgerTransaction(
            tx_hash=row["tx_hash"],
            game_id=row["game_id"],
            player_id=row["player_id"],
            tx_type=TransactionType(row["tx_type"]),
            amount=row["amount"],
            status=row["status"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )


def new_player_id() -> str:
    return str(uuid.uuid4())
