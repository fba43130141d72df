"""Persistence helpers for the escalation audit trail."""

from .audit_store import AuditStore

__all__ = [
    "AuditStore",
]
