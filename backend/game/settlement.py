"""
Settlement: turn final chip counts into payouts and close the game.

    pot    = sum of confirmed deposits
    payout = pot * chips / total_chips
    profit = payout - deposited

One batched distribution goes on-chain first; the ledger is only written
after it confirms.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Mapping, Optional, Union

from config import LEDGER_COMMIT_ATTEMPTS, LEDGER_COMMIT_BASE_DELAY
from database import Database, Game, Player, PlayerStatus, GameStatus
from errors import (
    GameNotFound,
    InvalidTransition,
    LedgerUnavailable,
    NotHost,
    PartiallyCommitted,
    RedistributionNotConfirmed,
    SettlementError,
)
from security import audit_logger, AuditLogger, AuditEventType, AuditSeverity
from utils import format_currency, format_profit, retry_with_backoff, truncate_address
from .contracts import parse_usdc
from .escrow import EscrowClient

logger = logging.getLogger(__name__)

ChipValue = Union[float, int, str]


@dataclass
class PayoutLine:
    player: Player
    chips: float
    payout: float
    profit: float
    deposited: float


@dataclass
class Settlement:
    pot: float
    total_chips: float
    lines: List[PayoutLine] = field(default_factory=list)

    @property
    def total_payout(self) -> float:
        return sum(line.payout for line in self.lines)


def _parse_chips(value: ChipValue, player_id: str) -> float:
    try:
        chips = float(value)
    except (TypeError, ValueError) as e:
        raise SettlementError(f"Chip count for player {player_id} is not a number: {value!r}") from e
    if chips != chips or chips < 0:  # NaN or negative
        raise SettlementError(f"Chip count for player {player_id} must be non-negative, got {value!r}")
    return chips


def compute_settlement(players: List[Player], chip_counts: Mapping[str, ChipValue]) -> Settlement:
    """Compute payouts for every deposited player.

    Players must be in join order; the result is sorted by descending profit
    and keeps join order among equal profits.

    Raises:
        SettlementError: missing/negative chip count, or total chips of zero
    """
    deposited = [p for p in players if p.status == PlayerStatus.DEPOSITED]
    if not deposited:
        raise SettlementError("No deposited players to settle")

    chips_by_player = {}
    for player in deposited:
        if player.player_id not in chip_counts:
            raise SettlementError(f"Missing chip count for player {player.player_id} (fid {player.fid})")
        chips_by_player[player.player_id] = _parse_chips(chip_counts[player.player_id], player.player_id)

    total_chips = sum(chips_by_player.values())
    if total_chips <= 0:
        raise SettlementError("Total chip count is zero; payouts cannot be proportioned")

    pot = sum(p.total_deposited for p in deposited)

    lines = []
    for player in deposited:
        chips = chips_by_player[player.player_id]
        payout = pot * (chips / total_chips)
        lines.append(PayoutLine(
            player=player,
            chips=chips,
            payout=payout,
            profit=payout - player.total_deposited,
            deposited=player.total_deposited,
        ))

    # sorted() is stable, so ties keep join order
    lines = sorted(lines, key=lambda line: -line.profit)
    return Settlement(pot=pot, total_chips=total_chips, lines=lines)


class ChipCountDraft:
    """Host's staged chip-count edits, keyed by player id.

    Edits live apart from the ledger snapshot and are overlaid on read, so a
    refresh of the player list never discards what the host is typing.
    """

    def __init__(self):
        self._staged: Dict[str, float] = {}

    def stage(self, player_id: str, value: ChipValue):
        self._staged[player_id] = _parse_chips(value, player_id)

    def discard(self, player_id: str):
        self._staged.pop(player_id, None)

    def clear(self):
        self._staged.clear()

    @property
    def staged(self) -> Dict[str, float]:
        return dict(self._staged)

    def merged(self, players: List[Player]) -> Dict[str, float]:
        """Chip counts for the given snapshot with staged edits applied.

        Unedited players default to their recorded final chip count, or to
        what they deposited if the game was never settled.
        """
        counts = {}
        for player in players:
            if player.status != PlayerStatus.DEPOSITED:
                continue
            if player.player_id in self._staged:
                counts[player.player_id] = self._staged[player.player_id]
            elif player.payout_sent:
                counts[player.player_id] = player.final_chip_count
            else:
                counts[player.player_id] = player.total_deposited
        return counts


class SettlementOutcome(Enum):
    COMMITTED = "committed"
    PARTIALLY_COMMITTED = "partially_committed"


@dataclass
class SettlementResult:
    outcome: SettlementOutcome
    settlement: Settlement
    tx_hash: str
    error: Optional[PartiallyCommitted] = None

    @property
    def ok(self) -> bool:
        return self.outcome == SettlementOutcome.COMMITTED


class SettlementEngine:
    """Closes an active game with one on-chain distribution."""

    def __init__(
        self,
        db: Database,
        escrow: EscrowClient,
        audit: Optional[AuditLogger] = None,
        commit_attempts: int = LEDGER_COMMIT_ATTEMPTS,
        commit_base_delay: float = LEDGER_COMMIT_BASE_DELAY,
    ):
        self.db = db
        self.escrow = escrow
        self.audit = audit or audit_logger
        self.commit_attempts = commit_attempts
        self.commit_base_delay = commit_base_delay

    def _get_game(self, game_id: str) -> Game:
        game = self.db.get_game(game_id)
        if not game:
            raise GameNotFound(f"Game {game_id} not found")
        return game

    def preview(self, game_id: str, chip_counts: Mapping[str, ChipValue]) -> Settlement:
        """Compute payouts without touching the chain or the ledger."""
        self._get_game(game_id)
        return compute_settlement(self.db.get_players(game_id, PlayerStatus.DEPOSITED), chip_counts)

    async def settle(
        self,
        game_id: str,
        host_fid: int,
        chip_counts: Mapping[str, ChipValue],
        confirm_redistribution: bool = False,
    ) -> SettlementResult:
        """Distribute payouts on-chain, then record them and end the game.

        On any on-chain failure the classified escrow error propagates, nothing
        is written and the game stays active.

        Raises:
            NotHost, InvalidTransition, SettlementError, RedistributionNotConfirmed,
            UserRejected, NetworkError, ContractReverted, WalletNotConnected
        """
        game = self._get_game(game_id)
        if game.host_fid != host_fid:
            raise NotHost("Only the host can settle this game")
        if game.status != GameStatus.ACTIVE:
            raise InvalidTransition(f"Game {game.game_code} is {game.status.value}, only active games can be settled")

        if game.payout_tx_hash and not confirm_redistribution:
            raise RedistributionNotConfirmed(game.payout_tx_hash)

        settlement = compute_settlement(self.db.get_players(game_id, PlayerStatus.DEPOSITED), chip_counts)

        if game.payout_tx_hash:
            self.audit.log(
                AuditEventType.REDISTRIBUTION_CONFIRMED,
                severity=AuditSeverity.WARNING,
                game_id=game_id,
                fid=host_fid,
                tx_hash=game.payout_tx_hash,
                details=f"Host confirmed distribution #{game.distribution_count + 1}",
            )

        addresses = [line.player.wallet_address for line in settlement.lines]
        usdc_amounts = [parse_usdc(line.payout) for line in settlement.lines]
        other_amounts = [0] * len(settlement.lines)

        logger.info(
            f"[SETTLEMENT] Distributing {format_currency(settlement.pot)} across {len(addresses)} players for game {game_id}"
        )
        for line in settlement.lines:
            logger.info(
                f"[SETTLEMENT]   {truncate_address(line.player.wallet_address)}: "
                f"{format_currency(line.payout)} ({format_profit(line.profit)})"
            )
        tx_hash = await self.escrow.distribute_payout(game_id, addresses, usdc_amounts, other_amounts)
        await self.escrow.wait_for_confirmation(tx_hash)

        return await self._commit(game, settlement, tx_hash)

    async def _commit(self, game: Game, settlement: Settlement, tx_hash: str) -> SettlementResult:
        async def write():
            if self.db.record_settlement(game.game_id, settlement.lines, tx_hash):
                return
            # A previous attempt may have landed before its error surfaced
            current = self.db.get_game(game.game_id)
            if current and current.payout_tx_hash == tx_hash:
                return
            raise LedgerUnavailable(f"Game {game.game_id} was no longer active when recording settlement")

        try:
            await retry_with_backoff(
                write,
                attempts=self.commit_attempts,
                base_delay=self.commit_base_delay,
                retry_on=(LedgerUnavailable,),
                label=f"settlement record for {tx_hash}",
            )
        except LedgerUnavailable as e:
            self.audit.log(
                AuditEventType.SETTLEMENT_PARTIAL_COMMIT,
                severity=AuditSeverity.CRITICAL,
                game_id=game.game_id,
                tx_hash=tx_hash,
                details=f"Payout distributed but ledger not updated: {e}",
            )
            error = PartiallyCommitted(
                f"Payout {tx_hash} confirmed on-chain but results were not saved: {e}", tx_hash
            )
            return SettlementResult(SettlementOutcome.PARTIALLY_COMMITTED, settlement, tx_hash, error)

        self.audit.log(
            AuditEventType.SETTLEMENT_DISTRIBUTED,
            game_id=game.game_id,
            fid=game.host_fid,
            tx_hash=tx_hash,
            details=f"pot={settlement.pot:.2f} players={len(settlement.lines)}",
        )
        return SettlementResult(SettlementOutcome.COMMITTED, settlement, tx_hash)
