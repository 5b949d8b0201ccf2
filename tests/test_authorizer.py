"""
tests/test_authorizer.py -- Unit tests for Authorizer decisions and their audit trail.

Coverage:
  - authenticate: absent / malformed header, refresh token, deleted or
    inactive user -> Unauthenticated; valid access token -> User
  - check_role: allowed vs denied (permission_denied audit on resource "system")
  - check_permission: admin logs:delete granted; manager denied with audit
  - check_ownership_or_permission: self access for a plain user; other
    targets fall through to the permission check with resource_id audited
"""

from __future__ import annotations

import pytest

from auth.audit import AuditSink
from auth.authorizer import Authorizer, RequestContext
from auth.errors import Forbidden, Unauthenticated
from auth.models import User
from auth.permissions import PermissionTable
from auth.store import ActivityLogStore, UserStore
from auth.tokens import TokenService, claims_for

CTX = RequestContext(ip="192.0.2.10", user_agent="pytest", endpoint="/api/admin/logs", method="DELETE")


@pytest.fixture
def seed(user_store: UserStore):
    def _seed(role: str) -> User:
        return user_store.insert_user(
            User(email=f"{role}@example.com", name=role.title(), role=role, hashed_password="x")
        )

    return _seed


def _denials(log_store: ActivityLogStore) -> list:
    entries, _ = log_store.list_audit_entries(limit=100)
    return [e for e in entries if e.action == "permission_denied"]


class TestAuthenticate:
    def test_valid_access_token(self, authorizer: Authorizer, token_service: TokenService, seed) -> None:
        admin = seed("admin")
        token = token_service.issue_access(claims_for(admin))
        assert authorizer.authenticate(f"Bearer {token}").id == admin.id

    @pytest.mark.parametrize("header", [None, "", "Basic dXNlcjpwYXNz", "Bearer", "bearer abc", "Bearer garbage"])
    def test_bad_headers(self, authorizer: Authorizer, header) -> None:
        with pytest.raises(Unauthenticated):
            authorizer.authenticate(header)

    def test_refresh_token_is_not_an_access_token(
        self, authorizer: Authorizer, token_service: TokenService, seed
    ) -> None:
        user = seed("user")
        with pytest.raises(Unauthenticated):
            authorizer.authenticate(f"Bearer {token_service.issue_refresh(claims_for(user))}")

    def test_inactive_user(
        self, authorizer: Authorizer, token_service: TokenService, user_store: UserStore, seed
    ) -> None:
        user = seed("user")
        token = token_service.issue_access(claims_for(user))
        user_store.update_user(user.id, is_active=False)
        with pytest.raises(Unauthenticated):
            authorizer.authenticate(f"Bearer {token}")

    def test_deleted_user(
        self, authorizer: Authorizer, token_service: TokenService, user_store: UserStore, seed
    ) -> None:
        user = seed("user")
        token = token_service.issue_access(claims_for(user))
        user_store.delete_user(user.id)
        with pytest.raises(Unauthenticated):
            authorizer.authenticate(f"Bearer {token}")


class TestCheckRole:
    def test_allowed(self, authorizer: Authorizer, seed) -> None:
        manager = seed("manager")
        assert authorizer.check_role(manager, ["admin", "manager"], CTX) is manager

    def test_denied_is_audited(self, authorizer: Authorizer, log_store: ActivityLogStore, seed) -> None:
        user = seed("user")
        with pytest.raises(Forbidden):
            authorizer.check_role(user, ["admin"], CTX)
        (entry,) = _denials(log_store)
        assert entry.resource == "system"
        assert entry.severity == "medium"
        assert entry.status == "failed"
        assert entry.details["required_roles"] == ["admin"]
        assert entry.details["user_role"] == "user"
        assert entry.details["endpoint"] == "/api/admin/logs"
        assert entry.details["method"] == "DELETE"

    def test_no_identity(self, authorizer: Authorizer) -> None:
        with pytest.raises(Unauthenticated):
            authorizer.check_role(None, ["admin"], CTX)


class TestCheckPermission:
    def test_admin_may_delete_logs(self, authorizer: Authorizer, log_store: ActivityLogStore, seed) -> None:
        admin = seed("admin")
        assert authorizer.check_permission(admin, "logs", "delete", CTX) is admin
        assert _denials(log_store) == []

    def test_manager_may_not_delete_logs(self, authorizer: Authorizer, log_store: ActivityLogStore, seed) -> None:
        manager = seed("manager")
        with pytest.raises(Forbidden):
            authorizer.check_permission(manager, "logs", "delete", CTX)
        (entry,) = _denials(log_store)
        assert entry.user_id == manager.id
        assert entry.resource == "logs"
        assert entry.ip_address == "192.0.2.10"
        assert entry.details["required_permission"] == "logs:delete"

    def test_unknown_resource_denied_and_filed_under_system(
        self, authorizer: Authorizer, log_store: ActivityLogStore, seed
    ) -> None:
        admin = seed("admin")
        with pytest.raises(Forbidden):
            authorizer.check_permission(admin, "billing", "read", CTX)
        assert _denials(log_store)[0].resource == "system"


class TestOwnership:
    def test_plain_user_reads_self(self, authorizer: Authorizer, log_store: ActivityLogStore, seed) -> None:
        user = seed("user")
        assert authorizer.check_ownership_or_permission(user, "users", "read", user.id, CTX) is user
        assert _denials(log_store) == []

    def test_plain_user_cannot_read_others(
        self, authorizer: Authorizer, log_store: ActivityLogStore, seed
    ) -> None:
        user, other = seed("user"), seed("manager")
        with pytest.raises(Forbidden):
            authorizer.check_ownership_or_permission(user, "users", "read", other.id, CTX)
        assert _denials(log_store)[0].details["resource_id"] == other.id

    def test_manager_reads_others_by_permission(self, authorizer: Authorizer, seed) -> None:
        manager, user = seed("manager"), seed("user")
        assert authorizer.check_ownership_or_permission(manager, "users", "read", user.id, CTX) is manager


def test_audit_failure_does_not_change_the_decision(
    user_store: UserStore, token_service: TokenService, seed
) -> None:
    """A broken audit store must not turn a denial into a 500 or an allow."""

    class BrokenStore:
        def append_audit_entry(self, entry):
            raise RuntimeError("disk full")

    authorizer = Authorizer(user_store, token_service, PermissionTable(), AuditSink(BrokenStore()))
    manager = seed("manager")
    with pytest.raises(Forbidden):
        authorizer.check_permission(manager, "logs", "delete", CTX)
