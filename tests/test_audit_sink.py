"""
tests/test_audit_sink.py -- AuditSink write-through and failure isolation.
"""

from __future__ import annotations

import dataclasses
import logging

import pytest

from auth.audit import AuditSink
from auth.models import AuditAction, AuditResource, Severity
from auth.store import ActivityLogStore


def test_record_persists_entry(audit_sink: AuditSink, log_store: ActivityLogStore) -> None:
    entry = audit_sink.record(
        action=AuditAction.login,
        resource=AuditResource.auth,
        user_id="u1",
        ip_address="10.0.0.1",
        user_agent="pytest",
        details={"email": "a@example.com"},
        severity=Severity.medium,
    )
    assert entry is not None and entry.id is not None
    stored = log_store.get_audit_entry(entry.id)
    assert stored.action == "login", f"Enum values must be stored as plain strings, got {stored.action!r}"
    assert stored.resource == "auth"
    assert stored.severity == "medium"
    assert stored.status == "success"
    assert stored.details == {"email": "a@example.com"}
    assert stored.created_at is not None


def test_missing_ip_recorded_as_unknown(audit_sink: AuditSink, log_store: ActivityLogStore) -> None:
    entry = audit_sink.record(action="logout", resource="auth", ip_address="")
    assert log_store.get_audit_entry(entry.id).ip_address == "unknown"


def test_store_failure_is_swallowed_and_logged(caplog) -> None:
    class BrokenStore:
        def append_audit_entry(self, entry):
            raise RuntimeError("database is locked")

    sink = AuditSink(BrokenStore())
    with caplog.at_level(logging.WARNING, logger="dashboard.audit"):
        result = sink.record(action="login", resource="auth", user_id="u1", ip_address="10.0.0.1")
    assert result is None
    assert any("Audit write failed" in r.getMessage() for r in caplog.records), (
        f"Expected a WARNING from dashboard.audit, got {[r.getMessage() for r in caplog.records]}"
    )


def test_entries_are_immutable(audit_sink: AuditSink) -> None:
    entry = audit_sink.record(action="login", resource="auth", ip_address="10.0.0.1")
    with pytest.raises(dataclasses.FrozenInstanceError):
        entry.status = "failed"
