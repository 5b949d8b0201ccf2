"""
API request and response models for the admin dashboard REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
Hashed passwords and refresh-token lists exist only on the domain side; no
response model here has a field that could carry them.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

from auth.models import AuditEntry, AuditStatus, Role, Severity, User

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# bcrypt ignores input past 72 bytes; refuse longer passwords outright.
PASSWORD_MIN = 6
PASSWORD_MAX = 72


class _ProfileFields(BaseModel):
    """Strips surrounding whitespace from name and email.

    Passwords are taken byte-for-byte: every route that sets or checks a
    password must see the same string.
    """

    @field_validator("name", "email", mode="before", check_fields=False)
    @classmethod
    def strip_profile_fields(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value


# ---------------------------------------------------------------------------
# Auth request models
# ---------------------------------------------------------------------------


class SignupRequest(_ProfileFields):
    """Request body for POST /api/auth/signup."""

    name: str = Field(min_length=2, max_length=50)
    email: EmailStr
    password: str = Field(min_length=PASSWORD_MIN, max_length=PASSWORD_MAX)


class LoginRequest(_ProfileFields):
    """Request body for POST /api/auth/login."""

    email: EmailStr
    password: str = Field(min_length=1, max_length=PASSWORD_MAX)


class RefreshRequest(BaseModel):
    """Request body for POST /api/auth/refresh and /logout.

    refresh_token is optional at the schema level so an absent token reaches
    the Authenticator and comes back as missing_token (400), not a 422.
    """

    refresh_token: Optional[str] = Field(default=None, max_length=4096)


# ---------------------------------------------------------------------------
# User responses
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public view of a user account."""

    id: str
    name: str
    email: str
    role: Role
    is_active: bool
    last_login_at: Optional[datetime] = None
    last_login_ip: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


def user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        name=user.name,
        email=user.email,
        role=user.role,
        is_active=user.is_active,
        last_login_at=user.last_login_at,
        last_login_ip=user.last_login_ip,
        created_at=user.created_at,
        updated_at=user.updated_at,
    )


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class AuthResponse(BaseModel):
    """Response for signup and login: the account plus a fresh token pair."""

    user: UserResponse
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class ProfileResponse(BaseModel):
    user: UserResponse


class MessageResponse(BaseModel):
    message: str


# ---------------------------------------------------------------------------
# Admin user management
# ---------------------------------------------------------------------------


class UserCreate(_ProfileFields):
    """Request body for POST /api/admin/users."""

    name: str = Field(min_length=2, max_length=50)
    email: EmailStr
    password: str = Field(min_length=PASSWORD_MIN, max_length=PASSWORD_MAX)
    role: Role = Role.user


class UserUpdate(_ProfileFields):
    """Request body for PUT /api/admin/users/{user_id}.

    Only profile fields. Passwords, roles, activation state, lockout
    counters and tokens each have their own endpoint or none at all; any
    such key in the body is ignored.
    """

    name: Optional[str] = Field(default=None, min_length=2, max_length=50)
    email: Optional[EmailStr] = None


class RoleUpdate(BaseModel):
    role: Role


class PasswordReset(BaseModel):
    new_password: str = Field(min_length=PASSWORD_MIN, max_length=PASSWORD_MAX)


class UserPagination(BaseModel):
    current_page: int
    total_pages: int
    total_users: int
    has_next: bool
    has_prev: bool


class UserListResponse(BaseModel):
    users: list[UserResponse]
    pagination: UserPagination


class UserCreatedResponse(BaseModel):
    message: str = "User created successfully."
    user: UserResponse


# ---------------------------------------------------------------------------
# Activity logs
# ---------------------------------------------------------------------------


class LogEntryResponse(BaseModel):
    id: int
    user_id: Optional[str]
    action: str
    resource: str
    details: dict[str, Any] = Field(default_factory=dict)
    ip_address: str
    user_agent: Optional[str] = None
    status: AuditStatus
    severity: Severity
    created_at: Optional[datetime] = None


def log_entry_response(entry: AuditEntry) -> LogEntryResponse:
    return LogEntryResponse(
        id=entry.id,
        user_id=entry.user_id,
        action=entry.action,
        resource=entry.resource,
        details=entry.details,
        ip_address=entry.ip_address,
        user_agent=entry.user_agent,
        status=entry.status,
        severity=entry.severity,
        created_at=entry.created_at,
    )


class LogPagination(BaseModel):
    current_page: int
    total_pages: int
    total_logs: int
    has_next: bool
    has_prev: bool


class LogListResponse(BaseModel):
    logs: list[LogEntryResponse]
    pagination: LogPagination


class UserLogsResponse(BaseModel):
    user: UserResponse
    logs: list[LogEntryResponse]
    pagination: LogPagination


class LogStatsResponse(BaseModel):
    total_logs: int
    success_logs: int
    failed_logs: int
    warning_logs: int
    critical_logs: int
    unique_users: int
    unique_ips: int


class LogBulkDelete(BaseModel):
    """Request body for DELETE /api/admin/logs. Omitted fields do not filter."""

    user_id: Optional[str] = None
    action: Optional[str] = None
    resource: Optional[str] = None
    status: Optional[AuditStatus] = None
    severity: Optional[Severity] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class LogDeleteResponse(BaseModel):
    message: str
    deleted_count: int


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------


class StatsPeriod(BaseModel):
    start_date: datetime
    end_date: datetime
    days: Optional[int] = None
    hours: Optional[int] = None


class RoleStats(BaseModel):
    role: Role
    count: int
    active_users: int
    inactive_users: int


class UserStatsResponse(BaseModel):
    roles: list[RoleStats]
    total_users: int
    total_active_users: int
    total_inactive_users: int


class LoginActionStats(BaseModel):
    action: str
    count: int
    unique_users: int
    unique_ips: int


class LoginStatsResponse(BaseModel):
    period: StatsPeriod
    stats: list[LoginActionStats]


class ActiveUsersResponse(BaseModel):
    period: StatsPeriod
    total_active_users: int
    by_role: dict[str, list[UserResponse]]


class SystemUserTotals(BaseModel):
    total_users: int
    active_users: int
    new_users: int


class SystemLoginTotals(BaseModel):
    successful_logins: int
    failed_logins: int


class SystemStatsResponse(BaseModel):
    period: StatsPeriod
    users: SystemUserTotals
    activities: LogStatsResponse
    logins: SystemLoginTotals


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Structured error payload.

    code is a stable machine-readable identifier (e.g. "account_locked");
    message is human-readable; detail carries optional extra context.
    """

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Envelope for every error response: {"error": {...}}."""

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/health.

    status is "ok" when every component answers, "degraded" otherwise.
    """

    status: str = "ok"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
