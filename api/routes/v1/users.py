"""
api/routes/v1/users.py -- Admin user management endpoints.

Routes:
  GET    /api/admin/users                          -- list users (users:read)
  GET    /api/admin/users/{user_id}                -- one user (self, or users:read)
  POST   /api/admin/users                          -- create user with any role (users:create)
  PUT    /api/admin/users/{user_id}                -- update name/email (self, or users:update)
  DELETE /api/admin/users/{user_id}                -- delete user (users:delete)
  PATCH  /api/admin/users/{user_id}/activate       -- reactivate (users:update)
  PATCH  /api/admin/users/{user_id}/deactivate     -- deactivate + revoke tokens (users:update)
  PATCH  /api/admin/users/{user_id}/role           -- change role (users:update, admin role)
  PATCH  /api/admin/users/{user_id}/reset-password -- set password, clear lockout (users:update)

Guards:
  Self-delete, self-deactivate and self-role-change are refused with 400 so an
  administrator cannot lock themselves (or the last admin) out by accident.
  Every successful mutation writes one audit entry; listing and reads do not.
"""

from __future__ import annotations

import math
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from api.models import (
    ErrorDetail,
    MessageResponse,
    PasswordReset,
    RoleUpdate,
    UserCreate,
    UserCreatedResponse,
    UserListResponse,
    UserPagination,
    UserResponse,
    UserUpdate,
    user_response,
)
from auth.dependencies import audit_request, require_ownership_or_permission, require_permission, require_role
from auth.errors import DuplicateEmail, DuplicateKey
from auth.models import AuditAction, AuditResource, Role, Severity, User
from auth.store import UserStore

# Auth policy:
# - GET    /users, POST /users, DELETE /users/{id}, PATCH /users/{id}/*: permission check
# - PATCH  /users/{id}/role: permission check, then admin role
# - GET    /users/{id}, PUT /users/{id}: self access, or permission check
router = APIRouter()


def _store(request: Request) -> UserStore:
    return request.app.state.user_store


def _not_found() -> HTTPException:
    return HTTPException(
        status_code=404,
        detail=ErrorDetail(code="not_found", message="User not found.").model_dump(),
    )


def _refuse_self(current_user: User, user_id: str, code: str, message: str) -> None:
    if current_user.id == user_id:
        raise HTTPException(status_code=400, detail=ErrorDetail(code=code, message=message).model_dump())


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


@router.get("/users", response_model=UserListResponse)
def list_users(
    request: Request,
    role: Optional[Role] = None,
    is_active: Optional[bool] = None,
    search: Optional[str] = Query(default=None, max_length=100),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    current_user: User = Depends(require_permission("users", "read")),
) -> UserListResponse:
    """Return a filtered page of users, newest first."""
    users, total = _store(request).list_users(
        role=role.value if role else None,
        is_active=is_active,
        search=search,
        page=page,
        limit=limit,
    )
    return UserListResponse(
        users=[user_response(u) for u in users],
        pagination=UserPagination(
            current_page=page,
            total_pages=math.ceil(total / limit),
            total_users=total,
            has_next=page * limit < total,
            has_prev=page > 1,
        ),
    )


@router.get("/users/{user_id}", response_model=UserResponse)
def get_user(
    request: Request,
    user_id: str,
    current_user: User = Depends(require_ownership_or_permission("users", "read")),
) -> UserResponse:
    user = _store(request).find_user_by_id(user_id)
    if user is None:
        raise _not_found()
    return user_response(user)


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------


@router.post("/users", response_model=UserCreatedResponse, status_code=201)
def create_user(
    request: Request,
    body: UserCreate,
    current_user: User = Depends(require_permission("users", "create")),
) -> UserCreatedResponse:
    """Create an account with an explicit role. No tokens are issued for it."""
    store = _store(request)
    if store.find_user_by_email(body.email) is not None:
        raise DuplicateEmail()
    try:
        user = store.insert_user(
            User(
                email=body.email,
                name=body.name,
                role=body.role.value,
                hashed_password=request.app.state.hasher.hash(body.password),
            )
        )
    except DuplicateKey as exc:
        raise DuplicateEmail() from exc

    audit_request(
        request,
        current_user,
        AuditAction.user_create,
        AuditResource.user,
        {"target_user_id": user.id, "email": user.email, "role": user.role},
    )
    return UserCreatedResponse(user=user_response(user))


@router.put("/users/{user_id}", response_model=UserResponse)
def update_user(
    request: Request,
    user_id: str,
    body: UserUpdate,
    current_user: User = Depends(require_ownership_or_permission("users", "update")),
) -> UserResponse:
    """Update profile fields (name, email). Other fields have dedicated endpoints."""
    store = _store(request)
    if store.find_user_by_id(user_id) is None:
        raise _not_found()

    changes = body.model_dump(exclude_none=True)
    if "email" in changes:
        other = store.find_user_by_email(changes["email"])
        if other is not None and other.id != user_id:
            raise DuplicateEmail()
    if not changes:
        return user_response(store.find_user_by_id(user_id))
    try:
        user = store.update_user(user_id, **changes)
    except DuplicateKey as exc:
        raise DuplicateEmail() from exc
    if user is None:
        raise _not_found()

    audit_request(
        request,
        current_user,
        AuditAction.user_update,
        AuditResource.user,
        {"target_user_id": user_id, "fields": sorted(changes)},
    )
    return user_response(user)


@router.delete("/users/{user_id}", response_model=MessageResponse)
def delete_user(
    request: Request,
    user_id: str,
    current_user: User = Depends(require_permission("users", "delete")),
) -> MessageResponse:
    _refuse_self(current_user, user_id, "self_delete", "You cannot delete your own account.")
    store = _store(request)
    target = store.find_user_by_id(user_id)
    if target is None or not store.delete_user(user_id):
        raise _not_found()

    audit_request(
        request,
        current_user,
        AuditAction.user_delete,
        AuditResource.user,
        {"target_user_id": user_id, "email": target.email},
        severity=Severity.medium,
    )
    return MessageResponse(message="User deleted successfully.")


@router.patch("/users/{user_id}/activate", response_model=UserResponse)
def activate_user(
    request: Request,
    user_id: str,
    current_user: User = Depends(require_permission("users", "update")),
) -> UserResponse:
    user = _store(request).update_user(user_id, is_active=True)
    if user is None:
        raise _not_found()
    audit_request(request, current_user, AuditAction.user_activate, AuditResource.user, {"target_user_id": user_id})
    return user_response(user)


@router.patch("/users/{user_id}/deactivate", response_model=UserResponse)
def deactivate_user(
    request: Request,
    user_id: str,
    current_user: User = Depends(require_permission("users", "update")),
) -> UserResponse:
    """Deactivate an account and revoke every refresh token it holds.

    Outstanding access tokens stop working at once as well: authentication
    rejects inactive users on every request.
    """
    _refuse_self(current_user, user_id, "self_deactivate", "You cannot deactivate your own account.")
    user = _store(request).update_user(user_id, is_active=False, refresh_tokens=[])
    if user is None:
        raise _not_found()
    audit_request(
        request, current_user, AuditAction.user_deactivate, AuditResource.user, {"target_user_id": user_id}
    )
    return user_response(user)


@router.patch(
    "/users/{user_id}/role",
    response_model=UserResponse,
    dependencies=[Depends(require_permission("users", "update"))],
)
def change_role(
    request: Request,
    user_id: str,
    body: RoleUpdate,
    current_user: User = Depends(require_role(Role.admin)),
) -> UserResponse:
    """Change an account's role. Managers may update users but only admins assign roles."""
    _refuse_self(current_user, user_id, "self_role_change", "You cannot change your own role.")
    store = _store(request)
    target = store.find_user_by_id(user_id)
    if target is None:
        raise _not_found()
    user = store.update_user(user_id, role=body.role.value)
    if user is None:
        raise _not_found()

    audit_request(
        request,
        current_user,
        AuditAction.role_change,
        AuditResource.user,
        {"target_user_id": user_id, "old_role": target.role, "new_role": user.role},
        severity=Severity.high,
    )
    return user_response(user)


@router.patch("/users/{user_id}/reset-password", response_model=MessageResponse)
def reset_password(
    request: Request,
    user_id: str,
    body: PasswordReset,
    current_user: User = Depends(require_permission("users", "update")),
) -> MessageResponse:
    """Set a new password, clear the lockout counters, and revoke all refresh tokens."""
    user = _store(request).update_user(
        user_id,
        hashed_password=request.app.state.hasher.hash(body.new_password),
        failed_attempts=0,
        last_failed_at=None,
        refresh_tokens=[],
    )
    if user is None:
        raise _not_found()
    audit_request(
        request,
        current_user,
        AuditAction.password_reset,
        AuditResource.user,
        {"target_user_id": user_id},
        severity=Severity.high,
    )
    return MessageResponse(message="Password reset successfully.")
