"""Audit utilities for the poker escrow backend."""
from .audit import audit_logger, AuditEventType, AuditSeverity, AuditLogger

__all__ = ["audit_logger", "AuditEventType", "AuditSeverity", "AuditLogger"]
