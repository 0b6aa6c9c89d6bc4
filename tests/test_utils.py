"""Unit tests for backend/utils and backend/profiles.py"""

from datetime import datetime
from typing import Dict, Iterable

import pytest

from conftest import run
from profiles import Profile, fallback_profile, resolve_profiles
from utils import (
    format_currency,
    format_profit,
    format_timestamp,
    format_tx_link,
    is_valid_amount,
    is_valid_evm_address,
    is_valid_game_code,
    retry_with_backoff,
    truncate_address,
)


# --- VALIDATION ----
def test_evm_address_validation() -> None:
    assert is_valid_evm_address("0x" + "aB" * 20) == (True, "")
    assert not is_valid_evm_address("0x123")[0]
    assert not is_valid_evm_address("")[0]
    assert not is_valid_evm_address("0x" + "g" * 40)[0]


@pytest.mark.parametrize("amount", [0.01, 10, 99_999.99, 10.123456])
def test_valid_amounts(amount: float) -> None:
    assert is_valid_amount(amount)[0]


@pytest.mark.parametrize("amount", [0, -1, 0.001, 100_001, float("nan"), True, "10", 10.0000009])
def test_invalid_amounts(amount) -> None:
    valid, message = is_valid_amount(amount)

    assert not valid
    assert message


def test_game_code_validation() -> None:
    assert is_valid_game_code("k7px2m")[0]
    assert not is_valid_game_code("K7PX2")[0]
    assert not is_valid_game_code("K7PX0M")[0]


# --- FORMATTING ----
def test_formatting_helpers() -> None:
    assert format_currency(12) == "12.00 USDC"
    assert format_profit(5) == "+5.00 USDC"
    assert format_profit(-5) == "-5.00 USDC"
    assert format_timestamp(None) == "N/A"
    assert format_timestamp(datetime(2024, 1, 2, 3, 4, 5)) == "2024-01-02 03:04:05 UTC"
    assert format_tx_link("0xabc").endswith("/tx/0xabc")
    assert truncate_address("0x" + "1" * 40) == "0x1111...1111"
    assert truncate_address("0x12") == "0x12"


# --- RETRY ----
def test_retry_succeeds_after_failures() -> None:
    attempts = []

    async def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise ConnectionError("busy")
        return "done"

    assert run(retry_with_backoff(flaky, attempts=3, base_delay=0)) == "done"
    assert len(attempts) == 3


def test_retry_reraises_last_error() -> None:
    async def always_fails():
        raise ConnectionError("busy")

    with pytest.raises(ConnectionError):
        run(retry_with_backoff(always_fails, attempts=2, base_delay=0))


def test_retry_ignores_unlisted_errors() -> None:
    attempts = []

    async def wrong_kind():
        attempts.append(1)
        raise KeyError("not retried")

    with pytest.raises(KeyError):
        run(retry_with_backoff(wrong_kind, attempts=3, base_delay=0, retry_on=(ConnectionError,)))
    assert len(attempts) == 1


# --- PROFILES ----
class StubLookup:
    def __init__(self, profiles: Dict[int, Profile], fail: bool = False) -> None:
        self.profiles = profiles
        self.fail = fail

    async def get_profiles(self, fids: Iterable[int]) -> Dict[int, Profile]:
        if self.fail:
            raise ConnectionError("identity service down")
        return {fid: self.profiles[fid] for fid in fids if fid in self.profiles}


def test_fallback_profile_is_deterministic() -> None:
    profile = fallback_profile(77)

    assert profile.display_name == "User 77"
    assert profile.pfp_url.endswith("seed=77")
    assert fallback_profile(77) == profile


def test_resolve_fills_gaps_with_fallback() -> None:
    alice = Profile(fid=1, username="alice", display_name="Alice", pfp_url="https://example.com/a.png")

    profiles = run(resolve_profiles([1, 2, 1], StubLookup({1: alice})))

    assert list(profiles) == [1, 2]
    assert profiles[1] == alice
    assert profiles[2] == fallback_profile(2)


def test_resolve_tolerates_lookup_failure() -> None:
    profiles = run(resolve_profiles([3], StubLookup({}, fail=True)))

    assert profiles == {3: fallback_profile(3)}


def test_resolve_without_lookup() -> None:
    assert run(resolve_profiles([4])) == {4: fallback_profile(4)}
