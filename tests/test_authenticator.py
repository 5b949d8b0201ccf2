"""
tests/test_authenticator.py -- Unit tests for the Authenticator.

The Authenticator runs against a real in-memory UserStore/ActivityLogStore
and a FakeClock (conftest.py), so lockout windows and token retention are
exercised without sleeping.

Coverage:
  - signup: role=user, redacted result, duplicate email (also case-folded)
  - login check order: unknown email, locked, deactivated, wrong password, success
  - lockout: 5 failures lock; 6th with the correct password -> AccountLocked;
    lock lifts once the window elapses; success resets the counter
  - refresh: single use, rotation, MissingToken, access token refused
  - logout: removes the token, idempotent, MissingToken
  - get_profile: redacted; Unauthenticated once the user is gone
  - audit entries written for each decision
"""

from __future__ import annotations

import pytest

from auth.errors import (
    AccountDeactivated,
    AccountLocked,
    DuplicateEmail,
    InvalidCredentials,
    InvalidToken,
    MissingToken,
    Unauthenticated,
)
from auth.models import AuditEntry
from auth.service import Authenticator
from auth.store import ActivityLogStore, UserStore

IP = "10.0.0.1"
PASSWORD = "password123"


def _actions(log_store: ActivityLogStore) -> list[str]:
    entries, _ = log_store.list_audit_entries(limit=500)
    return [e.action for e in reversed(entries)]


def _last(log_store: ActivityLogStore) -> AuditEntry:
    entries, _ = log_store.list_audit_entries(limit=1)
    return entries[0]


@pytest.fixture
def alice(authenticator: Authenticator):
    return authenticator.signup("Alice", "alice@example.com", PASSWORD, IP).user


class TestSignup:
    def test_creates_plain_user(self, authenticator: Authenticator, user_store: UserStore) -> None:
        result = authenticator.signup("Alice", "Alice@Example.com", PASSWORD, IP, "pytest")
        assert result.user.role == "user"
        assert result.user.email == "alice@example.com"
        assert result.user.hashed_password == "", "Signup result must not expose the hash"
        assert result.user.refresh_tokens == [], "Signup result must not expose refresh tokens"

        stored = user_store.find_user_by_id(result.user.id)
        assert stored.hashed_password.startswith("$2b$")
        assert [e.token for e in stored.refresh_tokens] == [result.tokens.refresh_token]

    def test_duplicate_email(self, authenticator: Authenticator, alice) -> None:
        with pytest.raises(DuplicateEmail):
            authenticator.signup("Other", "ALICE@example.com", PASSWORD, IP)

    def test_duplicate_key_from_store_maps_to_duplicate_email(
        self, authenticator: Authenticator, user_store: UserStore, alice, monkeypatch
    ) -> None:
        """A concurrent signup that wins the race surfaces as DuplicateEmail, not a 500."""
        monkeypatch.setattr(user_store, "find_user_by_email", lambda email: None)
        with pytest.raises(DuplicateEmail):
            authenticator.signup("Alice Again", "alice@example.com", PASSWORD, IP)

    def test_audited(self, authenticator: Authenticator, log_store: ActivityLogStore, alice) -> None:
        entry = _last(log_store)
        assert (entry.action, entry.resource, entry.severity) == ("signup", "auth", "low")
        assert entry.user_id == alice.id


class TestLoginOrder:
    def test_unknown_email(self, authenticator: Authenticator, log_store: ActivityLogStore) -> None:
        with pytest.raises(InvalidCredentials):
            authenticator.login("ghost@example.com", PASSWORD, IP)
        entry = _last(log_store)
        assert entry.action == "failed_login"
        assert entry.severity == "medium"
        assert entry.user_id is None
        assert entry.details["reason"] == "User not found"

    def test_wrong_password_increments_counter(
        self, authenticator: Authenticator, user_store: UserStore, log_store: ActivityLogStore, alice
    ) -> None:
        with pytest.raises(InvalidCredentials):
            authenticator.login("alice@example.com", "wrong-password", IP)
        stored = user_store.find_user_by_id(alice.id)
        assert stored.failed_attempts == 1
        assert stored.last_failed_at is not None
        assert _last(log_store).details["attempts"] == 1

    def test_deactivated(self, authenticator: Authenticator, user_store: UserStore, alice) -> None:
        user_store.update_user(alice.id, is_active=False)
        with pytest.raises(AccountDeactivated):
            authenticator.login("alice@example.com", PASSWORD, IP)

    def test_locked_checked_before_deactivated(
        self, authenticator: Authenticator, user_store: UserStore, clock, alice
    ) -> None:
        user_store.update_user(alice.id, is_active=False, failed_attempts=5, last_failed_at=clock())
        with pytest.raises(AccountLocked):
            authenticator.login("alice@example.com", PASSWORD, IP)

    def test_success_records_login(
        self, authenticator: Authenticator, user_store: UserStore, log_store: ActivityLogStore, clock, alice
    ) -> None:
        result = authenticator.login("ALICE@example.com", PASSWORD, IP, "pytest")
        stored = user_store.find_user_by_id(alice.id)
        assert stored.failed_attempts == 0
        assert stored.last_login_at == clock()
        assert stored.last_login_ip == IP
        assert result.tokens.refresh_token in [e.token for e in stored.refresh_tokens]
        assert result.user.hashed_password == ""
        assert _last(log_store).action == "login"


class TestLockout:
    def _fail(self, authenticator: Authenticator, times: int) -> None:
        for _ in range(times):
            with pytest.raises(InvalidCredentials):
                authenticator.login("alice@example.com", "wrong-password", IP)

    def test_sixth_attempt_with_correct_password_is_locked(
        self, authenticator: Authenticator, log_store: ActivityLogStore, alice
    ) -> None:
        self._fail(authenticator, 5)
        with pytest.raises(AccountLocked):
            authenticator.login("alice@example.com", PASSWORD, IP)
        entry = _last(log_store)
        assert (entry.action, entry.severity) == ("account_locked", "high")
        assert entry.details["attempts"] == 5

    def test_four_failures_do_not_lock(self, authenticator: Authenticator, alice) -> None:
        self._fail(authenticator, 4)
        assert authenticator.login("alice@example.com", PASSWORD, IP).user.id == alice.id

    def test_lock_lifts_after_window(self, authenticator: Authenticator, clock, alice) -> None:
        self._fail(authenticator, 5)
        clock.advance(minutes=14, seconds=59)
        with pytest.raises(AccountLocked):
            authenticator.login("alice@example.com", PASSWORD, IP)
        clock.advance(seconds=2)
        assert authenticator.login("alice@example.com", PASSWORD, IP).user.id == alice.id

    def test_success_resets_counter(self, authenticator: Authenticator, user_store: UserStore, alice) -> None:
        self._fail(authenticator, 3)
        authenticator.login("alice@example.com", PASSWORD, IP)
        stored = user_store.find_user_by_id(alice.id)
        assert stored.failed_attempts == 0
        assert stored.last_failed_at is None

    def test_audit_sequence(self, authenticator: Authenticator, log_store: ActivityLogStore, alice) -> None:
        self._fail(authenticator, 5)
        with pytest.raises(AccountLocked):
            authenticator.login("alice@example.com", PASSWORD, IP)
        assert _actions(log_store) == ["signup"] + ["failed_login"] * 5 + ["account_locked"]


class TestRefresh:
    def test_rotation_is_single_use(self, authenticator: Authenticator, user_store: UserStore) -> None:
        first = authenticator.signup("Bob", "bob@example.com", PASSWORD, IP).tokens
        second = authenticator.refresh(first.refresh_token, IP)
        assert second.refresh_token != first.refresh_token

        with pytest.raises(InvalidToken):
            authenticator.refresh(first.refresh_token, IP)

        user = user_store.find_user_by_email("bob@example.com")
        assert [e.token for e in user.refresh_tokens] == [second.refresh_token]
        assert authenticator.refresh(second.refresh_token, IP).access_token

    def test_missing_token(self, authenticator: Authenticator) -> None:
        with pytest.raises(MissingToken):
            authenticator.refresh("", IP)
        with pytest.raises(MissingToken):
            authenticator.refresh(None, IP)

    def test_access_token_refused(self, authenticator: Authenticator, alice) -> None:
        tokens = authenticator.login("alice@example.com", PASSWORD, IP).tokens
        with pytest.raises(InvalidToken):
            authenticator.refresh(tokens.access_token, IP)

    def test_inactive_user_refused(self, authenticator: Authenticator, user_store: UserStore) -> None:
        result = authenticator.signup("Carol", "carol@example.com", PASSWORD, IP)
        user_store.update_user(result.user.id, is_active=False)
        with pytest.raises(InvalidToken):
            authenticator.refresh(result.tokens.refresh_token, IP)

    def test_prunes_entries_past_retention(
        self, authenticator: Authenticator, user_store: UserStore, clock
    ) -> None:
        old = authenticator.signup("Dan", "dan@example.com", PASSWORD, IP).tokens
        clock.advance(days=6)
        recent = authenticator.login("dan@example.com", PASSWORD, IP).tokens
        clock.advance(days=2)
        authenticator.refresh(recent.refresh_token, IP)

        tokens = [e.token for e in user_store.find_user_by_email("dan@example.com").refresh_tokens]
        assert old.refresh_token not in tokens, "Entry older than 7 days must be pruned on rotation"
        assert recent.refresh_token not in tokens, "Presented token must be consumed"
        assert len(tokens) == 1

    def test_audited(self, authenticator: Authenticator, log_store: ActivityLogStore) -> None:
        tokens = authenticator.signup("Erin", "erin@example.com", PASSWORD, IP).tokens
        authenticator.refresh(tokens.refresh_token, IP)
        assert _last(log_store).action == "token_refresh"


class TestLogout:
    def test_logout_revokes_and_is_idempotent(
        self, authenticator: Authenticator, user_store: UserStore, log_store: ActivityLogStore
    ) -> None:
        tokens = authenticator.signup("Fay", "fay@example.com", PASSWORD, IP).tokens
        authenticator.logout(tokens.refresh_token, IP)
        assert user_store.find_user_by_email("fay@example.com").refresh_tokens == []
        assert _last(log_store).action == "logout"

        authenticator.logout(tokens.refresh_token, IP)  # second call: no error
        assert _actions(log_store).count("logout") == 1, "A no-op logout must not be audited"

        with pytest.raises(InvalidToken):
            authenticator.refresh(tokens.refresh_token, IP)

    def test_unknown_token_is_noop(self, authenticator: Authenticator) -> None:
        authenticator.logout("never-issued", IP)

    def test_missing_token(self, authenticator: Authenticator) -> None:
        with pytest.raises(MissingToken):
            authenticator.logout("", IP)

    def test_only_presented_token_removed(self, authenticator: Authenticator, user_store: UserStore, alice) -> None:
        first = authenticator.login("alice@example.com", PASSWORD, IP).tokens
        second = authenticator.login("alice@example.com", PASSWORD, IP).tokens
        authenticator.logout(first.refresh_token, IP)
        remaining = [e.token for e in user_store.find_user_by_id(alice.id).refresh_tokens]
        assert first.refresh_token not in remaining
        assert second.refresh_token in remaining


class TestProfile:
    def test_redacted(self, authenticator: Authenticator, alice) -> None:
        profile = authenticator.get_profile(alice.id)
        assert profile.email == "alice@example.com"
        assert profile.hashed_password == ""
        assert profile.refresh_tokens == []

    def test_vanished_user(self, authenticator: Authenticator, user_store: UserStore, alice) -> None:
        user_store.delete_user(alice.id)
        with pytest.raises(Unauthenticated):
            authenticator.get_profile(alice.id)


def test_timing_equalization_runs_a_hash_check(user_store, token_service, audit_sink) -> None:
    """Unknown email still pays for one bcrypt verify."""
    calls: list[str] = []

    class CountingHasher:
        def hash(self, plain: str) -> str:
            return "hashed:" + plain

        def verify(self, plain: str, hashed: str) -> bool:
            calls.append(hashed)
            return False

    authn = Authenticator(user_store, token_service, CountingHasher(), audit_sink)
    with pytest.raises(InvalidCredentials):
        authn.login("nobody@example.com", PASSWORD, IP)
    assert len(calls) == 1
