"""
Pytest will auto-discover / import this file called 'conftest.py'.
This file defines fixtures shared by the ledger, escrow, game and API tests.
"""

import asyncio
import os
import tempfile
from pathlib import Path
from typing import Any, Callable, Optional

# Keep module-level databases (api.db, the global audit logger) out of the working tree
os.environ.setdefault("DATABASE_PATH", os.path.join(tempfile.mkdtemp(), "poker.db"))

import pytest

from database import Database, Game, GameStatus, Player, PlayerStatus, new_player_id
from game import EscrowClient, GameLifecycle
from game.contracts import USDC_UNIT
from security import AuditLogger, audit_logger

HOST_FID = 1001
ESCROW_ADDRESS = "0x" + "e" * 40
USDC_ADDRESS = "0x" + "c" * 40
PLAYER_ADDRESS = "0x" + "a" * 40


class FakeWallet:
    """In-memory wallet transport with scripted failures.

    Submitting a deposit moves funds immediately unless the function is set to revert.
    """

    def __init__(self, account: Optional[str] = PLAYER_ADDRESS, balance: int = 1_000 * USDC_UNIT) -> None:
        self.account = account
        self.balances: dict[str, int] = {account: balance} if account else {}
        self.allowances: dict[str, int] = {}
        self.escrow_balance = 0
        self.calls: list[tuple[str, list]] = []
        self.write_errors: dict[str, Exception] = {}
        self.read_errors: dict[str, Exception] = {}
        self.receipt_errors: dict[str, Exception] = {}
        self.reverts: set[str] = set()
        # Run just before a receipt for the named function is returned
        self.receipt_hooks: dict[str, Callable[[], None]] = {}
        self._tx_functions: dict[str, str] = {}
        self._counter = 0

    def function_calls(self, function_name: str) -> list[list]:
        return [args for name, args in self.calls if name == function_name]

    async def write_contract(self, address: str, abi: list, function_name: str, args: list) -> str:
        await asyncio.sleep(0)
        if function_name in self.write_errors:
            raise self.write_errors[function_name]

        self._counter += 1
        tx_hash = f"0x{self._counter:064x}"
        self._tx_functions[tx_hash] = function_name
        self.calls.append((function_name, args))

        if function_name not in self.reverts:
            if function_name == "approve":
                self.allowances[self.account] = args[1]
            elif function_name == "depositUSDC":
                amount = args[1]
                self.balances[self.account] -= amount
                self.allowances[self.account] = self.allowances.get(self.account, 0) - amount
                self.escrow_balance += amount
            elif function_name == "distributePayout":
                for player, amount in zip(args[1], args[2]):
                    self.balances[player] = self.balances.get(player, 0) + amount
                    self.escrow_balance -= amount
        return tx_hash

    async def read_contract(self, address: str, abi: list, function_name: str, args: list) -> Any:
        await asyncio.sleep(0)
        if function_name in self.read_errors:
            raise self.read_errors[function_name]
        if function_name == "balanceOf":
            return self.balances.get(args[0], 0)
        if function_name == "allowance":
            return self.allowances.get(args[0], 0)
        raise AssertionError(f"Unexpected read {function_name}")

    async def wait_for_transaction_receipt(self, tx_hash: str) -> dict:
        function_name = self._tx_functions.get(tx_hash)
        if function_name in self.receipt_hooks:
            self.receipt_hooks[function_name]()
        if function_name in self.receipt_errors:
            raise self.receipt_errors[function_name]
        if function_name in self.reverts:
            return {"status": "reverted", "transactionHash": tx_hash, "revert_reason": f"{function_name} reverted"}
        return {"status": "success", "transactionHash": tx_hash}


def run(coro):
    """Drive a coroutine to completion from a sync test."""
    return asyncio.run(coro)


@pytest.fixture(autouse=True)
def isolated_audit_log(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Point the shared audit logger at a per-test file."""
    monkeypatch.setattr(audit_logger, "db_path", str(tmp_path / "audit_global.db"))
    monkeypatch.setattr(audit_logger, "_initialized", False)


@pytest.fixture
def db(tmp_path: Path) -> Database:
    """Fresh ledger database per test."""
    return Database(str(tmp_path / "poker.db"))


@pytest.fixture
def audit(tmp_path: Path) -> AuditLogger:
    return AuditLogger(str(tmp_path / "audit.db"))


@pytest.fixture
def wallet() -> FakeWallet:
    return FakeWallet()


@pytest.fixture
def escrow(wallet: FakeWallet) -> EscrowClient:
    return EscrowClient(wallet, escrow_address=ESCROW_ADDRESS, usdc_address=USDC_ADDRESS, retry_delay=0)


@pytest.fixture
def lifecycle(db: Database, audit: AuditLogger) -> GameLifecycle:
    return GameLifecycle(db, audit=audit)


@pytest.fixture
def game(lifecycle: GameLifecycle) -> Game:
    """A waiting 10 USDC game hosted by HOST_FID."""
    return run(lifecycle.create_game(HOST_FID, 10.0))


def add_deposited_player(
    db: Database,
    game: Game,
    fid: int,
    deposited: Optional[float] = None,
    buy_ins: int = 1,
    tx_hash: Optional[str] = None,
) -> Player:
    """Insert a pending row and promote it, as a confirmed buy-in would."""
    player = Player(
        player_id=new_player_id(),
        game_id=game.game_id,
        fid=fid,
        wallet_address="0x" + f"{fid:040x}",
        total_buy_ins=buy_ins,
        total_deposited=game.buy_in_amount if deposited is None else deposited,
        status=PlayerStatus.PENDING,
    )
    db.insert_pending_player(player)
    return db.promote_pending_player(player.player_id, tx_hash or f"0xdeposit{fid}")


@pytest.fixture
def active_game(db: Database, game: Game) -> tuple[Game, list[Player]]:
    """Active game with two confirmed players: 10 and 20 USDC deposited."""
    players = [
        add_deposited_player(db, game, fid=11, deposited=10.0),
        add_deposited_player(db, game, fid=12, deposited=20.0, buy_ins=2),
    ]
    db.set_game_status(game.game_id, GameStatus.ACTIVE, GameStatus.WAITING)
    return db.get_game(game.game_id), players
