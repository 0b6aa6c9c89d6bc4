"""Game logic: escrow client, buy-ins, settlement and lifecycle."""
from .contracts import (
    USDC_ABI,
    POKER_ESCROW_ABI,
    to_onchain_game_id,
    parse_usdc,
    units_to_usdc,
    format_usdc,
)
from .escrow import EscrowClient, WalletTransport, classify_transport_error
from .buyin import BuyInCoordinator, BuyInResult, BuyInOutcome, BuyInState
from .settlement import (
    compute_settlement,
    ChipCountDraft,
    PayoutLine,
    Settlement,
    SettlementEngine,
    SettlementOutcome,
    SettlementResult,
)
from .lifecycle import GameLifecycle, generate_game_code, can_transition, require_host

__all__ = [
    "USDC_ABI",
    "POKER_ESCROW_ABI",
    "to_onchain_game_id",
    "parse_usdc",
    "units_to_usdc",
    "format_usdc",
    "EscrowClient",
    "WalletTransport",
    "classify_transport_error",
    "BuyInCoordinator",
    "BuyInResult",
    "BuyInOutcome",
    "BuyInState",
    "compute_settlement",
    "ChipCountDraft",
    "PayoutLine",
    "Settlement",
    "SettlementEngine",
    "SettlementOutcome",
    "SettlementResult",
    "GameLifecycle",
    "generate_game_code",
    "can_transition",
    "require_host",
]
