"""
auth/audit.py -- Audit sink: append-only security event recording.

The Authenticator, the Authorizer, and the admin routes call record() as an
explicit step after each decision. The write is synchronous, so entries land
in decision order, one per decision.

An audit failure must never change the outcome of the request that produced
it: record() logs the failure at WARNING and returns None instead of raising.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging

from auth.models import AuditEntry, AuditStatus, Severity

logger = logging.getLogger("dashboard.audit")


class AuditSink:
    """Thin writer over any store exposing append_audit_entry(AuditEntry).

    Usage:
        sink = AuditSink(log_store)
        sink.record(
            action="login", resource="auth", user_id=user.id,
            ip_address="10.0.0.1", details={"email": user.email},
        )
    """

    def __init__(self, store) -> None:
        self._store = store

    def record(
        self,
        *,
        action: str,
        resource: str,
        ip_address: str,
        user_id: str | None = None,
        details: dict | None = None,
        user_agent: str | None = None,
        status: str = AuditStatus.success.value,
        severity: str = Severity.low.value,
    ) -> AuditEntry | None:
        """Append one entry. Returns the stored entry, or None if the write failed."""
        entry = AuditEntry(
            action=str(getattr(action, "value", action)),
            resource=str(getattr(resource, "value", resource)),
            ip_address=ip_address or "unknown",
            user_id=user_id,
            details=dict(details or {}),
            user_agent=user_agent,
            status=str(getattr(status, "value", status)),
            severity=str(getattr(severity, "value", severity)),
        )
        try:
            return self._store.append_audit_entry(entry)
        except Exception as exc:
            logger.warning("Audit write failed (action=%s user=%s): %s", entry.action, user_id, exc)
            return None
