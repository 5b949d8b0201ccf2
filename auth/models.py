"""
auth/models.py -- Domain dataclasses and closed vocabularies for the auth core.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; the store, the services, and the routes do the work.

Timestamps are timezone-aware UTC datetimes in the domain. The store is the
only place that converts them to and from their ISO 8601 column form.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

# ---------------------------------------------------------------------------
# Closed vocabularies
# ---------------------------------------------------------------------------


class Role(str, Enum):
    user = "user"
    manager = "manager"
    admin = "admin"


class AuditAction(str, Enum):
    login = "login"
    logout = "logout"
    signup = "signup"
    password_change = "password_change"
    profile_update = "profile_update"
    role_change = "role_change"
    user_create = "user_create"
    user_update = "user_update"
    user_delete = "user_delete"
    user_activate = "user_activate"
    user_deactivate = "user_deactivate"
    password_reset = "password_reset"
    token_refresh = "token_refresh"
    failed_login = "failed_login"
    account_locked = "account_locked"
    permission_denied = "permission_denied"
    data_export = "data_export"
    log_delete = "log_delete"
    settings_change = "settings_change"


class AuditResource(str, Enum):
    user = "user"
    users = "users"
    profile = "profile"
    auth = "auth"
    system = "system"
    settings = "settings"
    stats = "stats"
    logs = "logs"


class AuditStatus(str, Enum):
    success = "success"
    failed = "failed"
    warning = "warning"


class Severity(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"
    critical = "critical"


ROLES: frozenset[str] = frozenset(r.value for r in Role)


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------


@dataclass
class RefreshTokenEntry:
    """One outstanding refresh token, persisted by value on its owning user.

    Owned exclusively by a User record. Removed on logout, replaced on
    rotation, and pruned once older than the retention window.
    """

    token: str
    issued_at: datetime


@dataclass
class User:
    """A dashboard account.

    email is stored lower-cased; all lookups normalize before querying, which
    makes uniqueness case-insensitive.

    failed_attempts / last_failed_at are the lockout counters. They are reset
    by a successful login or an admin password reset, never by time alone --
    the lock simply stops applying once last_failed_at falls outside the
    lockout window.

    id is None before the record is written to the store.
    """

    email: str
    name: str
    role: str = Role.user.value  # "user" | "manager" | "admin"
    hashed_password: str = ""
    id: str | None = None
    is_active: bool = True
    failed_attempts: int = 0
    last_failed_at: datetime | None = None
    last_login_at: datetime | None = None
    last_login_ip: str | None = None
    refresh_tokens: list[RefreshTokenEntry] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class AuditEntry:
    """Immutable record of a security-relevant decision, for operator review.

    user_id is None when no account could be attributed (e.g. a failed login
    for an unknown email). Records are inserted, never updated; only an
    administrative purge deletes them.
    """

    action: str
    resource: str
    ip_address: str
    user_id: str | None = None
    details: dict = field(default_factory=dict)
    user_agent: str | None = None
    status: str = AuditStatus.success.value
    severity: str = Severity.low.value
    id: int | None = None
    created_at: datetime | None = None


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str


@dataclass
class AuthResult:
    """What signup and login hand back: a redacted identity plus fresh tokens."""

    user: User
    tokens: TokenPair
