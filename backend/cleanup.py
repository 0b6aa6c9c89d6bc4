"""
Maintenance for pending player rows.

A client that closes mid buy-in leaves its pending row behind, which would
block that participant from joining again. The sweep deletes pending rows that
are older than the grace window and never submitted a deposit. Rows that did
submit one are left for reconciliation, which asks the chain what happened.

Deposited rows are never touched by either.
"""
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from config import PENDING_PLAYER_GRACE_MINUTES
from database import Database, Player
from errors import ContractReverted, NetworkError
from game.escrow import EscrowClient
from security import audit_logger, AuditLogger, AuditEventType, AuditSeverity
from utils import format_timestamp

logger = logging.getLogger(__name__)


def cleanup_pending_players(
    db: Database,
    grace_minutes: int = PENDING_PLAYER_GRACE_MINUTES,
    now: Optional[datetime] = None,
    audit: Optional[AuditLogger] = None,
) -> List[Player]:
    """Delete abandoned pending rows older than the grace window.

    Returns:
        The deleted player rows
    """
    audit = audit or audit_logger
    cutoff = (now or datetime.utcnow()) - timedelta(minutes=grace_minutes)

    logger.info(f"[CLEANUP] Sweeping pending players created before {format_timestamp(cutoff)}")
    deleted = db.delete_stale_pending_players(cutoff)

    for player in deleted:
        audit.log(
            AuditEventType.PENDING_SWEPT,
            game_id=player.game_id,
            fid=player.fid,
            details=f"player={player.player_id} created_at={player.created_at.isoformat()}",
        )

    logger.info(f"[CLEANUP] Deleted {len(deleted)} abandoned pending records")
    return deleted


async def reconcile_pending_players(
    db: Database,
    escrow: EscrowClient,
    audit: Optional[AuditLogger] = None,
) -> dict:
    """Resolve pending rows whose deposit was submitted but never committed.

    Confirmed deposits are promoted, reverted ones deleted. Rows whose receipt
    cannot be fetched are left as they are for the next run.
    """
    audit = audit or audit_logger
    summary = {"promoted": [], "deleted": [], "unresolved": []}

    for player in db.get_submitted_pending_players():
        tx_hash = player.deposit_tx_hash
        try:
            await escrow.wait_for_confirmation(tx_hash)
        except ContractReverted as e:
            db.delete_pending_player(player.player_id)
            summary["deleted"].append(player.player_id)
            audit.log(
                AuditEventType.PENDING_RECONCILED,
                severity=AuditSeverity.WARNING,
                game_id=player.game_id,
                fid=player.fid,
                tx_hash=tx_hash,
                details=f"Deposit reverted, pending row deleted: {e.reason}",
            )
            continue
        except NetworkError as e:
            logger.warning(f"[RECONCILE] Receipt for {tx_hash} unavailable, leaving player {player.player_id}: {e}")
            summary["unresolved"].append(player.player_id)
            continue

        db.promote_pending_player(player.player_id, tx_hash)
        summary["promoted"].append(player.player_id)
        audit.log(
            AuditEventType.PENDING_RECONCILED,
            game_id=player.game_id,
            fid=player.fid,
            tx_hash=tx_hash,
            details="Deposit confirmed, player promoted",
        )

    logger.info(
        f"[RECONCILE] promoted={len(summary['promoted'])} deleted={len(summary['deleted'])} "
        f"unresolved={len(summary['unresolved'])}"
    )
    return summary
