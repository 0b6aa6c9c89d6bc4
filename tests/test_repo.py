"""Unit tests for backend/database/repo.py"""

import sqlite3
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from conftest import add_deposited_player
from database import Database, Game, GameStatus, Player, PlayerStatus, TransactionType, new_player_id
from errors import DuplicatePendingPlayer, LedgerUnavailable


def pending_player(game: Game, fid: int, created_at: datetime = None) -> Player:
    return Player(
        player_id=new_player_id(),
        game_id=game.game_id,
        fid=fid,
        wallet_address="0x" + f"{fid:040x}",
        total_buy_ins=1,
        total_deposited=game.buy_in_amount,
        status=PlayerStatus.PENDING,
        created_at=created_at or datetime.utcnow(),
    )


def test_unusable_path_is_ledger_unavailable(tmp_path: Path) -> None:
    with pytest.raises(LedgerUnavailable):
        Database(str(tmp_path))


# --- GAMES ----
def test_get_game_by_code_ignores_case(db: Database, game: Game) -> None:
    found = db.get_game_by_code(game.game_code.lower())

    assert found.game_id == game.game_id
    assert db.get_game_by_code("ZZZZZZ") is None


def test_conditional_status_change(db: Database, game: Game) -> None:
    """A status update only applies from the expected state."""
    assert not db.set_game_status(game.game_id, GameStatus.ENDED, GameStatus.ACTIVE)
    assert db.get_game(game.game_id).status == GameStatus.WAITING

    assert db.set_game_status(game.game_id, GameStatus.ACTIVE, GameStatus.WAITING)
    assert db.get_game(game.game_id).status == GameStatus.ACTIVE


def test_record_settlement_requires_active_game(db: Database, game: Game) -> None:
    assert not db.record_settlement(game.game_id, [], "0xpayout")
    assert db.get_game(game.game_id).payout_tx_hash is None


# --- PLAYERS ----
def test_one_row_per_participant(db: Database, game: Game) -> None:
    db.insert_pending_player(pending_player(game, fid=5))

    with pytest.raises(DuplicatePendingPlayer):
        db.insert_pending_player(pending_player(game, fid=5))


def test_same_participant_in_two_games(db: Database, game: Game) -> None:
    other = Game(game_id=new_player_id(), game_code="QQQQQQ", host_fid=1, buy_in_amount=5.0)
    db.create_game(other)

    db.insert_pending_player(pending_player(game, fid=5))
    db.insert_pending_player(pending_player(other, fid=5))

    assert db.get_player_for_fid(other.game_id, 5) is not None


def test_pot_excludes_pending_rows(db: Database, game: Game) -> None:
    add_deposited_player(db, game, fid=1)
    db.insert_pending_player(pending_player(game, fid=2))

    assert db.get_pot(game.game_id) == 10.0
    assert len(db.get_players(game.game_id)) == 2
    assert len(db.get_players(game.game_id, PlayerStatus.DEPOSITED)) == 1


def test_promote_is_idempotent(db: Database, game: Game) -> None:
    player = pending_player(game, fid=3)
    db.insert_pending_player(player)

    first = db.promote_pending_player(player.player_id, "0xabc")
    again = db.promote_pending_player(player.player_id, "0xabc")

    assert first.status == PlayerStatus.DEPOSITED
    assert again.status == PlayerStatus.DEPOSITED
    (deposit,) = db.get_transactions(game.game_id)
    assert deposit.tx_type == TransactionType.DEPOSIT
    assert (deposit.tx_hash, deposit.amount) == ("0xabc", 10.0)
    assert db.get_pot(game.game_id) == 10.0


def test_promote_missing_row_returns_none(db: Database) -> None:
    assert db.promote_pending_player("no-such-player", "0xabc") is None


def test_delete_pending_never_touches_deposited(db: Database, game: Game) -> None:
    deposited = add_deposited_player(db, game, fid=4)
    pending = pending_player(game, fid=5)
    db.insert_pending_player(pending)

    assert not db.delete_pending_player(deposited.player_id)
    assert db.delete_pending_player(pending.player_id)
    assert [p.fid for p in db.get_players(game.game_id)] == [4]


def test_rebuy_applied_once_per_tx(db: Database, game: Game) -> None:
    """Re-applying the same deposit hash leaves the counters alone."""
    player = add_deposited_player(db, game, fid=6)

    assert db.record_rebuy(player.player_id, 10.0, "0xrebuy")
    assert not db.record_rebuy(player.player_id, 10.0, "0xrebuy")

    stored = db.get_player(player.player_id)
    assert stored.total_buy_ins == 2
    assert stored.total_deposited == 20.0


def test_rebuy_for_missing_player(db: Database) -> None:
    with pytest.raises(LedgerUnavailable):
        db.record_rebuy("no-such-player", 10.0, "0xrebuy")


def test_players_in_join_order(db: Database, game: Game) -> None:
    for fid in (30, 10, 20):
        add_deposited_player(db, game, fid=fid)

    assert [p.fid for p in db.get_players(game.game_id)] == [30, 10, 20]


# --- MAINTENANCE ----
def test_stale_sweep_only_removes_unsubmitted_pending_rows(db: Database, game: Game) -> None:
    old = datetime.utcnow() - timedelta(minutes=30)
    abandoned = pending_player(game, fid=1, created_at=old)
    submitted = pending_player(game, fid=2, created_at=old)
    recent = pending_player(game, fid=3)
    for player in (abandoned, submitted, recent):
        db.insert_pending_player(player)
    db.stamp_deposit_tx(submitted.player_id, "0xsubmitted")
    add_deposited_player(db, game, fid=4)

    cutoff = datetime.utcnow() - timedelta(minutes=10)
    deleted = db.delete_stale_pending_players(cutoff)

    assert [p.player_id for p in deleted] == [abandoned.player_id]
    assert sorted(p.fid for p in db.get_players(game.game_id)) == [2, 3, 4]
    assert [p.player_id for p in db.get_submitted_pending_players()] == [submitted.player_id]


def test_stamp_ignores_deposited_rows(db: Database, game: Game) -> None:
    player = add_deposited_player(db, game, fid=9, tx_hash="0xoriginal")

    assert not db.stamp_deposit_tx(player.player_id, "0xother")
    assert db.get_player(player.player_id).deposit_tx_hash == "0xoriginal"


def test_claimed_row_survives_sweep(db: Database, game: Game) -> None:
    """A row whose deposit is about to be sent is never swept, however old."""
    old = datetime.utcnow() - timedelta(minutes=30)
    claimed = pending_player(game, fid=1, created_at=old)
    db.insert_pending_player(claimed)

    assert db.claim_pending_for_deposit(claimed.player_id)
    deleted = db.delete_stale_pending_players(datetime.utcnow() - timedelta(minutes=10))

    assert deleted == []
    assert db.get_player(claimed.player_id).submitting_at is not None


def test_claim_fails_once_row_is_gone(db: Database, game: Game) -> None:
    swept = pending_player(game, fid=1, created_at=datetime.utcnow() - timedelta(minutes=30))
    db.insert_pending_player(swept)
    db.delete_stale_pending_players(datetime.utcnow() - timedelta(minutes=10))

    assert not db.claim_pending_for_deposit(swept.player_id)

    deposited = add_deposited_player(db, game, fid=2)
    assert not db.claim_pending_for_deposit(deposited.player_id)


def test_older_ledger_gains_claim_column(tmp_path: Path) -> None:
    path = str(tmp_path / "old.db")
    conn = sqlite3.connect(path)
    conn.execute("""
        CREATE TABLE players (
            player_id TEXT PRIMARY KEY, game_id TEXT NOT NULL, fid INTEGER NOT NULL,
            wallet_address TEXT NOT NULL, total_buy_ins INTEGER DEFAULT 0,
            total_deposited REAL DEFAULT 0.0, status TEXT NOT NULL DEFAULT 'pending',
            final_chip_count REAL DEFAULT 0.0, payout_amount REAL DEFAULT 0.0,
            payout_sent INTEGER DEFAULT 0, deposit_tx_hash TEXT, created_at TEXT NOT NULL,
            UNIQUE (game_id, fid)
        )
    """)
    conn.commit()
    conn.close()

    Database(path)

    conn = sqlite3.connect(path)
    columns = {row[1] for row in conn.execute("PRAGMA table_info(players)")}
    conn.close()
    assert "submitting_at" in columns
