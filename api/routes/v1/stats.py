"""
api/routes/v1/stats.py -- Aggregate statistics for the dashboard (stats:read).

Routes:
  GET /api/admin/stats/users                  -- per-role totals, active vs inactive
  GET /api/admin/stats/logins?days=30         -- login vs failed_login counts
  GET /api/admin/stats/active-users?hours=24  -- users with a recent login, by role
  GET /api/admin/stats/system?days=7          -- users, activity, and login totals

All numbers are computed on request from the stores; nothing is cached.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, Query, Request

from api.models import (
    ActiveUsersResponse,
    LoginActionStats,
    LoginStatsResponse,
    LogStatsResponse,
    RoleStats,
    StatsPeriod,
    SystemLoginTotals,
    SystemStatsResponse,
    SystemUserTotals,
    UserStatsResponse,
    user_response,
)
from auth.dependencies import require_permission
from auth.models import User

router = APIRouter()


@router.get("/users", response_model=UserStatsResponse)
def user_stats(
    request: Request,
    current_user: User = Depends(require_permission("stats", "read")),
) -> UserStatsResponse:
    roles = request.app.state.user_store.count_by_role()
    return UserStatsResponse(
        roles=[RoleStats(**r) for r in roles],
        total_users=sum(r["count"] for r in roles),
        total_active_users=sum(r["active_users"] for r in roles),
        total_inactive_users=sum(r["inactive_users"] for r in roles),
    )


@router.get("/logins", response_model=LoginStatsResponse)
def login_stats(
    request: Request,
    days: int = Query(default=30, ge=1, le=365),
    current_user: User = Depends(require_permission("stats", "read")),
) -> LoginStatsResponse:
    end = datetime.now(timezone.utc)
    start = end - timedelta(days=days)
    rows = request.app.state.log_store.count_logins(start)
    return LoginStatsResponse(
        period=StatsPeriod(start_date=start, end_date=end, days=days),
        stats=[LoginActionStats(**r) for r in rows],
    )


@router.get("/active-users", response_model=ActiveUsersResponse)
def active_users(
    request: Request,
    hours: int = Query(default=24, ge=1, le=24 * 90),
    current_user: User = Depends(require_permission("stats", "read")),
) -> ActiveUsersResponse:
    end = datetime.now(timezone.utc)
    start = end - timedelta(hours=hours)
    users = request.app.state.user_store.recently_active(start)
    by_role: dict[str, list] = {}
    for user in users:
        by_role.setdefault(user.role, []).append(user_response(user))
    return ActiveUsersResponse(
        period=StatsPeriod(start_date=start, end_date=end, hours=hours),
        total_active_users=len(users),
        by_role=by_role,
    )


@router.get("/system", response_model=SystemStatsResponse)
def system_stats(
    request: Request,
    days: int = Query(default=7, ge=1, le=365),
    current_user: User = Depends(require_permission("stats", "read")),
) -> SystemStatsResponse:
    user_store = request.app.state.user_store
    log_store = request.app.state.log_store
    end = datetime.now(timezone.utc)
    start = end - timedelta(days=days)

    roles = user_store.count_by_role()
    logins = {r["action"]: r["count"] for r in log_store.count_logins(start)}
    return SystemStatsResponse(
        period=StatsPeriod(start_date=start, end_date=end, days=days),
        users=SystemUserTotals(
            total_users=sum(r["count"] for r in roles),
            active_users=sum(r["active_users"] for r in roles),
            new_users=user_store.count_created_since(start),
        ),
        activities=LogStatsResponse(**log_store.summarize(start_date=start)),
        logins=SystemLoginTotals(
            successful_logins=logins.get("login", 0),
            failed_logins=logins.get("failed_login", 0),
        ),
    )
