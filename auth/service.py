"""
auth/service.py -- Authenticator: signup, login, refresh, logout, profile.

Security design decisions:
  Login check order is fixed and observable through the audit log:
    1. unknown email     -> failed_login  / medium -> InvalidCredentials
    2. locked            -> account_locked / high  -> AccountLocked
    3. deactivated       -> failed_login  / medium -> AccountDeactivated
    4. wrong password    -> counters++, failed_login / medium -> InvalidCredentials
    5. success           -> counters reset, login / low -> tokens
  A locked account answers 423 even when the password is correct.

  Timing equalization: when the email is unknown, a bcrypt verify still runs
  against a dummy hash so response time does not reveal account existence.

  Lockout: an account is locked while failed_attempts >= threshold AND the
  last failure is younger than the lockout window. Nothing resets the
  counter on a timer; the lock simply stops applying. Only a successful
  login or an admin password reset zeroes it.

  Refresh tokens are single-use. refresh() removes the presented entry and
  appends its replacement in one whole-record update. Entries older than
  the retention window are pruned on every login and rotation; the store's
  purge_expired_refresh_tokens() covers users who never come back.

Layer rule: no imports from api/ or core/. Settings are passed in by the caller.
"""

from __future__ import annotations

import dataclasses
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable

from auth.audit import AuditSink
from auth.errors import (
    AccountDeactivated,
    AccountLocked,
    DuplicateEmail,
    DuplicateKey,
    InvalidCredentials,
    InvalidToken,
    MissingToken,
    Unauthenticated,
)
from auth.models import (
    AuditAction,
    AuditResource,
    AuditStatus,
    AuthResult,
    RefreshTokenEntry,
    Role,
    Severity,
    TokenPair,
    User,
)
from auth.store import UserStore, normalize_email
from auth.tokens import HashVerifier, TokenService, claims_for

logger = logging.getLogger("dashboard.auth")

_DUMMY_PASSWORD = "timing-equalization-placeholder"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def redact(user: User) -> User:
    """Return a copy of user safe to hand outside the core (no hash, no tokens)."""
    return dataclasses.replace(user, hashed_password="", refresh_tokens=[])


class Authenticator:
    """Credential verification and token lifecycle for one process.

    Usage:
        authn = Authenticator(user_store, token_service, BcryptHasher(12), audit_sink)
        result = authn.login("a@b.com", "secret", ip="10.0.0.1")
        pair = authn.refresh(result.tokens.refresh_token, ip="10.0.0.1")

    `now` is injectable so lockout windows and token retention can be tested
    without sleeping.
    """

    def __init__(
        self,
        users: UserStore,
        tokens: TokenService,
        hasher: HashVerifier,
        audit: AuditSink,
        lockout_threshold: int = 5,
        lockout_window_seconds: int = 15 * 60,
        refresh_retention_seconds: int = 7 * 24 * 3600,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._users = users
        self._tokens = tokens
        self._hasher = hasher
        self._audit = audit
        self.lockout_threshold = lockout_threshold
        self.lockout_window = timedelta(seconds=lockout_window_seconds)
        self.refresh_retention = timedelta(seconds=refresh_retention_seconds)
        self._now = now
        self._dummy_hash: str | None = None

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def signup(
        self, name: str, email: str, password: str, ip: str, user_agent: str | None = None
    ) -> AuthResult:
        """Create a role=user account and sign it in.

        Raises DuplicateEmail if the email is taken, including when another
        signup wins the race between the lookup and the insert.
        """
        email = normalize_email(email)
        if self._users.find_user_by_email(email) is not None:
            raise DuplicateEmail()

        candidate = User(
            email=email,
            name=name.strip(),
            role=Role.user.value,
            hashed_password=self._hasher.hash(password),
        )
        try:
            user = self._users.insert_user(candidate)
        except DuplicateKey as exc:
            raise DuplicateEmail() from exc

        pair = self._issue_pair(user)
        user = self._users.update_user(
            user.id, refresh_tokens=[RefreshTokenEntry(token=pair.refresh_token, issued_at=self._now())]
        )
        self._audit.record(
            action=AuditAction.signup,
            resource=AuditResource.auth,
            user_id=user.id,
            ip_address=ip,
            user_agent=user_agent,
            details={"email": user.email, "name": user.name},
        )
        logger.info("New account created: %s", user.id)
        return AuthResult(user=redact(user), tokens=pair)

    def login(self, email: str, password: str, ip: str, user_agent: str | None = None) -> AuthResult:
        email = normalize_email(email)
        user = self._users.find_user_by_email(email)

        if user is None:
            self._hasher.verify(password, self._get_dummy_hash())
            self._record_failure(None, ip, user_agent, {"email": email, "reason": "User not found"})
            raise InvalidCredentials()

        now = self._now()
        if self.is_locked(user, now):
            self._audit.record(
                action=AuditAction.account_locked,
                resource=AuditResource.auth,
                user_id=user.id,
                ip_address=ip,
                user_agent=user_agent,
                status=AuditStatus.failed,
                severity=Severity.high,
                details={"email": email, "attempts": user.failed_attempts},
            )
            raise AccountLocked()

        if not user.is_active:
            self._record_failure(user.id, ip, user_agent, {"email": email, "reason": "Account deactivated"})
            raise AccountDeactivated()

        if not self._hasher.verify(password, user.hashed_password):
            attempts = user.failed_attempts + 1
            self._users.update_user(user.id, failed_attempts=attempts, last_failed_at=now)
            self._record_failure(
                user.id, ip, user_agent, {"email": email, "reason": "Invalid password", "attempts": attempts}
            )
            raise InvalidCredentials()

        pair = self._issue_pair(user)
        kept = self._prune(user.refresh_tokens, now)
        kept.append(RefreshTokenEntry(token=pair.refresh_token, issued_at=now))
        user = self._users.update_user(
            user.id,
            failed_attempts=0,
            last_failed_at=None,
            last_login_at=now,
            last_login_ip=ip,
            refresh_tokens=kept,
        )
        self._audit.record(
            action=AuditAction.login,
            resource=AuditResource.auth,
            user_id=user.id,
            ip_address=ip,
            user_agent=user_agent,
            details={"email": email},
        )
        return AuthResult(user=redact(user), tokens=pair)

    def refresh(self, token: str | None, ip: str, user_agent: str | None = None) -> TokenPair:
        """Rotate a refresh token. The presented token is consumed."""
        if not token:
            raise MissingToken()
        claims = self._tokens.verify_refresh(token)

        user = self._users.find_user_by_id(claims["sub"])
        if user is None or not user.is_active:
            raise InvalidToken()
        if not any(entry.token == token for entry in user.refresh_tokens):
            raise InvalidToken()

        now = self._now()
        pair = self._issue_pair(user)
        kept = [entry for entry in self._prune(user.refresh_tokens, now) if entry.token != token]
        kept.append(RefreshTokenEntry(token=pair.refresh_token, issued_at=now))
        self._users.update_user(user.id, refresh_tokens=kept)

        self._audit.record(
            action=AuditAction.token_refresh,
            resource=AuditResource.auth,
            user_id=user.id,
            ip_address=ip,
            user_agent=user_agent,
        )
        return pair

    def logout(self, token: str | None, ip: str, user_agent: str | None = None) -> None:
        """Revoke one refresh token. Unknown or already-revoked tokens are a no-op."""
        if not token:
            raise MissingToken()
        user = self._users.find_user_by_refresh_token(token)
        if user is None:
            return
        self._users.update_user(
            user.id, refresh_tokens=[entry for entry in user.refresh_tokens if entry.token != token]
        )
        self._audit.record(
            action=AuditAction.logout,
            resource=AuditResource.auth,
            user_id=user.id,
            ip_address=ip,
            user_agent=user_agent,
        )

    def get_profile(self, user_id: str) -> User:
        user = self._users.find_user_by_id(user_id)
        if user is None:
            raise Unauthenticated()
        return redact(user)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def is_locked(self, user: User, now: datetime | None = None) -> bool:
        if user.failed_attempts < self.lockout_threshold or user.last_failed_at is None:
            return False
        return (now or self._now()) - user.last_failed_at < self.lockout_window

    def _issue_pair(self, user: User) -> TokenPair:
        claims = claims_for(user)
        return TokenPair(
            access_token=self._tokens.issue_access(claims),
            refresh_token=self._tokens.issue_refresh(claims),
        )

    def _prune(self, entries: list[RefreshTokenEntry], now: datetime) -> list[RefreshTokenEntry]:
        cutoff = now - self.refresh_retention
        return [entry for entry in entries if entry.issued_at > cutoff]

    def _record_failure(self, user_id: str | None, ip: str, user_agent: str | None, details: dict) -> None:
        self._audit.record(
            action=AuditAction.failed_login,
            resource=AuditResource.auth,
            user_id=user_id,
            ip_address=ip,
            user_agent=user_agent,
            status=AuditStatus.failed,
            severity=Severity.medium,
            details=details,
        )

    def _get_dummy_hash(self) -> str:
        # Hashed once with the live cost factor so the dummy verify costs the
        # same as a real one.
        if self._dummy_hash is None:
            self._dummy_hash = self._hasher.hash(_DUMMY_PASSWORD)
        return self._dummy_hash
