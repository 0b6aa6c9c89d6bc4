"""
Audit trail for money-relevant events.
Every buy-in, rollback, partial commit and payout is recorded here so a
ledger/on-chain mismatch can be reconciled by hand.
"""
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Iterator, Optional
from enum import Enum

from config import DATABASE_PATH

logger = logging.getLogger(__name__)


class AuditEventType(Enum):
    """Types of events to audit."""
    # Game lifecycle
    GAME_CREATED = "game_created"
    GAME_STARTED = "game_started"
    GAME_REOPENED = "game_reopened"

    # Buy-ins
    PENDING_CREATED = "pending_created"
    BUY_IN_COMMITTED = "buy_in_committed"
    BUY_IN_ROLLED_BACK = "buy_in_rolled_back"
    PARTIAL_COMMIT = "partial_commit"
    DEPOSIT_OUTCOME_UNKNOWN = "deposit_outcome_unknown"

    # Settlement
    SETTLEMENT_DISTRIBUTED = "settlement_distributed"
    SETTLEMENT_PARTIAL_COMMIT = "settlement_partial_commit"
    REDISTRIBUTION_CONFIRMED = "redistribution_confirmed"

    # Maintenance
    PENDING_SWEPT = "pending_swept"
    PENDING_RECONCILED = "pending_reconciled"


class AuditSeverity(Enum):
    """Severity levels for audit events."""
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class AuditLogger:
    """Audit logging system for escrow events."""

    def __init__(self, db_path: str = DATABASE_PATH):
        self.db_path = db_path
        self._initialized = False

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """Open a connection that is always closed, committing on success."""
        conn = sqlite3.connect(self.db_path)
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def _init_audit_table(self):
        """Initialize audit log table."""
        with self._connect() as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS audit_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    event_type TEXT NOT NULL,
                    game_id TEXT,
                    fid INTEGER,
                    tx_hash TEXT,
                    details TEXT,
                    severity TEXT NOT NULL,
                    timestamp TEXT NOT NULL
                )
            """)

            cursor.execute("CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_logs(timestamp)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_audit_game ON audit_logs(game_id)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_audit_event_type ON audit_logs(event_type)")

        self._initialized = True

    def log(
        self,
        event_type: AuditEventType,
        severity: AuditSeverity = AuditSeverity.INFO,
        game_id: Optional[str] = None,
        fid: Optional[int] = None,
        tx_hash: Optional[str] = None,
        details: Optional[str] = None,
    ):
        """Record an event. Never raises: a failed audit write must not change the outcome.

        Args:
            event_type: Type of event
            severity: Severity level
            game_id: Game the event belongs to
            fid: Participant id if applicable
            tx_hash: On-chain transaction if applicable
            details: Free text
        """
        try:
            if not self._initialized:
                self._init_audit_table()

            with self._connect() as conn:
                conn.execute("""
                    INSERT INTO audit_logs (
                        event_type, game_id, fid, tx_hash, details, severity, timestamp
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """, (
                    event_type.value,
                    game_id,
                    fid,
                    tx_hash,
                    details,
                    severity.value,
                    datetime.utcnow().isoformat()
                ))
        except Exception as e:
            logger.error(f"Failed to write audit log: {e}", exc_info=True)

        # Also log to application logger
        log_msg = f"[AUDIT] {event_type.value}"
        if game_id:
            log_msg += f" | game={game_id}"
        if fid is not None:
            log_msg += f" | fid={fid}"
        if tx_hash:
            log_msg += f" | tx={tx_hash}"
        if details:
            log_msg += f" | {details}"

        if severity == AuditSeverity.CRITICAL:
            logger.critical(log_msg)
        elif severity == AuditSeverity.WARNING:
            logger.warning(log_msg)
        else:
            logger.info(log_msg)

    def get_events(
        self,
        game_id: Optional[str] = None,
        event_type: Optional[AuditEventType] = None,
        severity: Optional[AuditSeverity] = None,
        limit: int = 100,
    ) -> list:
        """Get audit events, newest first.

        Returns:
            List of audit log dictionaries
        """
        if not self._initialized:
            self._init_audit_table()

        query = "SELECT * FROM audit_logs WHERE 1=1"
        params = []

        if game_id:
            query += " AND game_id = ?"
            params.append(game_id)

        if event_type:
            query += " AND event_type = ?"
            params.append(event_type.value)

        if severity:
            query += " AND severity = ?"
            params.append(severity.value)

        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)

        with self._connect() as conn:
            conn.row_factory = sqlite3.Row
            rows = conn.execute(query, params).fetchall()

        return [dict(row) for row in rows]

    def get_reconciliation_summary(self, hours: int = 24) -> dict:
        """Count events needing manual attention in the last N hours."""
        if not self._initialized:
            self._init_audit_table()

        cutoff = (datetime.utcnow() - timedelta(hours=hours)).isoformat()

        with self._connect() as conn:
            cursor = conn.cursor()

            cursor.execute("""
                SELECT severity, COUNT(*) as count
                FROM audit_logs
                WHERE timestamp > ?
                GROUP BY severity
            """, (cutoff,))
            severity_counts = dict(cursor.fetchall())

            cursor.execute("""
                SELECT game_id, fid, tx_hash, event_type
                FROM audit_logs
                WHERE timestamp > ? AND event_type IN (?, ?, ?)
                ORDER BY id DESC
            """, (
                cutoff,
                AuditEventType.PARTIAL_COMMIT.value,
                AuditEventType.DEPOSIT_OUTCOME_UNKNOWN.value,
                AuditEventType.SETTLEMENT_PARTIAL_COMMIT.value,
            ))
            needs_review = [
                {"game_id": row[0], "fid": row[1], "tx_hash": row[2], "event_type": row[3]}
                for row in cursor.fetchall()
            ]

        return {
            "period_hours": hours,
            "severity_counts": severity_counts,
            "needs_review": needs_review,
            "total_critical": severity_counts.get("critical", 0),
        }


# Global audit logger instance
audit_logger = AuditLogger()
