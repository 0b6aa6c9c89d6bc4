#!/usr/bin/env python3
"""
Setup check for the poker escrow backend.
Run this before pointing the app at a real escrow contract.
"""
import os
import sys
import asyncio
import tempfile
from pathlib import Path
from dotenv import load_dotenv

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent / "backend"))

# Load environment
load_dotenv()


def print_header(text):
    """Print a formatted header."""
    print("\n" + "="*60)
    print(f"  {text}")
    print("="*60 + "\n")


def print_test(name, status, message=""):
    """Print a check result."""
    icon = "✅" if status else "❌"
    print(f"{icon} {name}")
    if message:
        print(f"   → {message}")


async def check_environment():
    """Check environment variables."""
    print_header("Checking Environment Configuration")

    required_vars = [
        "POKER_ESCROW_ADDRESS",
        "CRON_SECRET",
    ]
    optional_vars = [
        "USE_MAINNET",
        "USDC_ADDRESS",
        "DATABASE_PATH",
        "CORS_ORIGINS",
    ]

    all_present = True
    for var in required_vars:
        value = os.getenv(var)
        if value:
            display_value = value[:20] + "..." if len(value) > 20 else value
            print_test(f"{var}", True, f"Set to: {display_value}")
        else:
            print_test(f"{var}", False, "NOT SET!")
            all_present = False

    for var in optional_vars:
        value = os.getenv(var)
        print_test(f"{var}", True, f"Set to: {value}" if value else "Using default")

    return all_present


async def check_imports():
    """Check that the stack and project modules import."""
    print_header("Checking Python Imports")

    checks = []

    try:
        import fastapi
        import pydantic
        import uvicorn
        print_test("fastapi + pydantic + uvicorn", True, f"fastapi {fastapi.__version__}, pydantic {pydantic.VERSION}")
        checks.append(True)
    except ImportError as e:
        print_test("web stack", False, str(e))
        checks.append(False)

    try:
        from database import Database, Game, Player
        print_test("Ledger models", True, "All models imported")
        checks.append(True)
    except ImportError as e:
        print_test("Ledger models", False, str(e))
        checks.append(False)

    try:
        from game import BuyInCoordinator, SettlementEngine, GameLifecycle, EscrowClient
        print_test("Game logic", True, "Coordinator, settlement, lifecycle, escrow client")
        checks.append(True)
    except ImportError as e:
        print_test("Game logic", False, str(e))
        checks.append(False)

    return all(checks)


async def check_database():
    """Run a game through the ledger in a throwaway database."""
    print_header("Checking Ledger Database")

    try:
        from database import Database, Player, PlayerStatus, new_player_id
        from game import GameLifecycle
        from security import AuditLogger

        with tempfile.TemporaryDirectory() as tmp:
            db_path = os.path.join(tmp, "check_poker.db")
            db = Database(db_path)
            print_test("Database initialization", True, f"Created {db_path}")

            lifecycle = GameLifecycle(db, audit=AuditLogger(db_path))
            game = await lifecycle.create_game(host_fid=1, buy_in_amount=10.0)
            print_test("Create game", True, f"Code {game.game_code}")

            player = Player(
                player_id=new_player_id(),
                game_id=game.game_id,
                fid=2,
                wallet_address="0x" + "0" * 40,
                total_buy_ins=1,
                total_deposited=10.0,
                status=PlayerStatus.PENDING,
            )
            db.insert_pending_player(player)
            pot_before = db.get_pot(game.game_id)
            db.promote_pending_player(player.player_id, "0x" + "1" * 64)
            pot_after = db.get_pot(game.game_id)

            ok = pot_before == 0.0 and pot_after == 10.0
            print_test("Pending -> deposited", ok, f"Pot {pot_before:.2f} -> {pot_after:.2f}")
            return ok
    except Exception as e:
        print_test("Database check", False, str(e))
        return False


async def check_conversions():
    """Check USDC and game id conversions."""
    print_header("Checking Chain Conversions")

    try:
        from config import POKER_ESCROW_ADDRESS, USDC_ADDRESS, USE_MAINNET
        from game import parse_usdc, to_onchain_game_id
        from utils import is_valid_evm_address

        print_test("Network", True, "Base mainnet" if USE_MAINNET else "Base Sepolia")

        results = []
        for name, address in (("Escrow address", POKER_ESCROW_ADDRESS), ("USDC address", USDC_ADDRESS)):
            valid, error = is_valid_evm_address(address)
            print_test(name, valid, address if valid else error)
            results.append(valid)

        units = parse_usdc("12.345678")
        results.append(units == 12_345_678)
        print_test("USDC base units", units == 12_345_678, f"12.345678 -> {units}")

        onchain = to_onchain_game_id("123e4567-e89b-12d3-a456-426614174000")
        results.append(len(onchain) == 66)
        print_test("bytes32 game id", len(onchain) == 66, onchain)

        return all(results)
    except Exception as e:
        print_test("Conversions", False, str(e))
        return False


async def check_settlement_math():
    """Check payouts add up to the pot."""
    print_header("Checking Settlement Math")

    try:
        from database import Player, PlayerStatus
        from game import compute_settlement

        players = [
            Player(player_id="a", game_id="g", fid=1, wallet_address="0xa", total_buy_ins=1,
                   total_deposited=10.0, status=PlayerStatus.DEPOSITED),
            Player(player_id="b", game_id="g", fid=2, wallet_address="0xb", total_buy_ins=2,
                   total_deposited=20.0, status=PlayerStatus.DEPOSITED),
        ]
        settlement = compute_settlement(players, {"a": 10, "b": 50})

        ok = abs(settlement.total_payout - settlement.pot) < 1e-9
        payouts = ", ".join(f"{line.player.player_id}={line.payout:.2f}" for line in settlement.lines)
        print_test("Payouts sum to pot", ok, payouts)
        return ok
    except Exception as e:
        print_test("Settlement math", False, str(e))
        return False


async def main():
    """Run all checks."""
    print_header("🃏 Poker Escrow - Setup Verification")

    results = []

    results.append(await check_environment())
    results.append(await check_imports())
    results.append(await check_database())
    results.append(await check_conversions())
    results.append(await check_settlement_math())

    # Summary
    print_header("Summary")
    passed = sum(results)
    total = len(results)

    print(f"Checks Passed: {passed}/{total}")

    if passed == total:
        print("\n✅ All checks passed! You're ready to run the API.")
        print("\nNext steps:")
        print("  1. cd backend")
        print("  2. python api.py")
        print("  3. Test on Base Sepolia with small buy-ins")
        return 0
    else:
        print(f"\n❌ {total - passed} check(s) failed. Please fix the issues above.")
        print("\nCommon fixes:")
        print("  • Missing .env file: copy the variables above into backend/.env")
        print("  • Missing packages: pip install -e .[test]")
        print("  • Placeholder escrow address: set POKER_ESCROW_ADDRESS")
        return 1


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
