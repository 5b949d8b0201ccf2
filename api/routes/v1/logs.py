"""
api/routes/v1/logs.py -- Activity-log browsing, export, and purge endpoints.

Routes:
  GET    /api/admin/logs                    -- filtered page of entries (logs:read)
  GET    /api/admin/logs/stats              -- totals over a date range (logs:read)
  GET    /api/admin/logs/export             -- json/csv download, max 10,000 rows (logs:export)
  GET    /api/admin/logs/{log_id}           -- one entry (logs:read)
  DELETE /api/admin/logs/{log_id}           -- delete one entry (logs:delete)
  DELETE /api/admin/logs                    -- bulk purge by filter body (logs:delete)
  GET    /api/admin/users/{user_id}/logs    -- one user's entries (logs:read)

The audit trail is append-only for everyone except logs:delete holders, and
every purge is itself audited (log_delete / high). The purge entry is written
after the delete, so a bulk purge never removes its own record.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response

from api.models import (
    ErrorDetail,
    LogBulkDelete,
    LogDeleteResponse,
    LogEntryResponse,
    LogListResponse,
    LogPagination,
    LogStatsResponse,
    UserLogsResponse,
    log_entry_response,
    user_response,
)
from auth.dependencies import audit_request, require_permission
from auth.models import AuditAction, AuditResource, AuditStatus, Severity, User
from auth.store import ActivityLogStore, LogQuery
from core.export import EXPORT_LIMIT, export_filename, logs_to_csv, logs_to_json

router = APIRouter()


def _store(request: Request) -> ActivityLogStore:
    return request.app.state.log_store


def entry_filters(
    action: Optional[AuditAction] = None,
    resource: Optional[AuditResource] = None,
    status: Optional[AuditStatus] = None,
    severity: Optional[Severity] = None,
    ip_address: Optional[str] = Query(default=None, max_length=64),
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
) -> LogQuery:
    """Query-string filters for one user's logs; the user comes from the path."""
    return LogQuery(
        action=action.value if action else None,
        resource=resource.value if resource else None,
        status=status.value if status else None,
        severity=severity.value if severity else None,
        ip_address=ip_address,
        start_date=start_date,
        end_date=end_date,
    )


def log_filters(
    user_id: Optional[str] = Query(default=None, max_length=64),
    query: LogQuery = Depends(entry_filters),
) -> LogQuery:
    """Query-string filters shared by list and export."""
    query.user_id = user_id
    return query


def _pagination(page: int, limit: int, total: int) -> LogPagination:
    return LogPagination(
        current_page=page,
        total_pages=math.ceil(total / limit),
        total_logs=total,
        has_next=page * limit < total,
        has_prev=page > 1,
    )


def _log_not_found() -> HTTPException:
    return HTTPException(
        status_code=404,
        detail=ErrorDetail(code="not_found", message="Activity log not found.").model_dump(),
    )


def _filters_dict(query: LogQuery) -> dict:
    return {k: (v.isoformat() if isinstance(v, datetime) else v) for k, v in vars(query).items() if v is not None}


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


@router.get("/logs", response_model=LogListResponse)
def list_logs(
    request: Request,
    query: LogQuery = Depends(log_filters),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=500),
    current_user: User = Depends(require_permission("logs", "read")),
) -> LogListResponse:
    """Return a filtered page of activity logs, newest first."""
    entries, total = _store(request).list_audit_entries(query, page=page, limit=limit)
    return LogListResponse(logs=[log_entry_response(e) for e in entries], pagination=_pagination(page, limit, total))


@router.get("/logs/stats", response_model=LogStatsResponse)
def log_stats(
    request: Request,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    current_user: User = Depends(require_permission("logs", "read")),
) -> LogStatsResponse:
    return LogStatsResponse(**_store(request).summarize(start_date, end_date))


@router.get("/logs/export")
def export_logs(
    request: Request,
    export_format: str = Query(default="json", alias="format", pattern="^(json|csv)$"),
    query: LogQuery = Depends(log_filters),
    current_user: User = Depends(require_permission("logs", "export")),
) -> Response:
    """Download matching logs as a JSON or CSV attachment (newest first)."""
    entries, _total = _store(request).list_audit_entries(query, page=1, limit=EXPORT_LIMIT)

    if export_format == "csv":
        user_store = request.app.state.user_store
        users = {}
        for user_id in {e.user_id for e in entries if e.user_id}:
            user = user_store.find_user_by_id(user_id)
            if user is not None:
                users[user_id] = user
        content = logs_to_csv(entries, users)
        media_type = "text/csv"
    else:
        content = logs_to_json(entries, _filters_dict(query), datetime.now(timezone.utc))
        media_type = "application/json"

    audit_request(
        request,
        current_user,
        AuditAction.data_export,
        AuditResource.logs,
        {"format": export_format, "count": len(entries), "filters": _filters_dict(query)},
    )
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{export_filename(export_format)}"'},
    )


@router.get("/logs/{log_id}", response_model=LogEntryResponse)
def get_log(
    request: Request,
    log_id: int,
    current_user: User = Depends(require_permission("logs", "read")),
) -> LogEntryResponse:
    entry = _store(request).get_audit_entry(log_id)
    if entry is None:
        raise _log_not_found()
    return log_entry_response(entry)


@router.get("/users/{user_id}/logs", response_model=UserLogsResponse)
def user_logs(
    request: Request,
    user_id: str,
    query: LogQuery = Depends(entry_filters),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=500),
    current_user: User = Depends(require_permission("logs", "read")),
) -> UserLogsResponse:
    """Return one user's activity, newest first, with the same field filters as /logs."""
    user = request.app.state.user_store.find_user_by_id(user_id)
    if user is None:
        raise HTTPException(
            status_code=404,
            detail=ErrorDetail(code="not_found", message="User not found.").model_dump(),
        )
    query.user_id = user_id
    entries, total = _store(request).list_audit_entries(query, page=page, limit=limit)
    return UserLogsResponse(
        user=user_response(user),
        logs=[log_entry_response(e) for e in entries],
        pagination=_pagination(page, limit, total),
    )


# ---------------------------------------------------------------------------
# Purge
# ---------------------------------------------------------------------------


@router.delete("/logs/{log_id}", response_model=LogDeleteResponse)
def delete_log(
    request: Request,
    log_id: int,
    current_user: User = Depends(require_permission("logs", "delete")),
) -> LogDeleteResponse:
    if not _store(request).delete_audit_entry(log_id):
        raise _log_not_found()
    audit_request(
        request,
        current_user,
        AuditAction.log_delete,
        AuditResource.logs,
        {"log_id": log_id, "deleted_count": 1},
        severity=Severity.high,
    )
    return LogDeleteResponse(message="Activity log deleted successfully.", deleted_count=1)


@router.delete("/logs", response_model=LogDeleteResponse)
def delete_logs(
    request: Request,
    body: LogBulkDelete,
    current_user: User = Depends(require_permission("logs", "delete")),
) -> LogDeleteResponse:
    """Delete every entry matching the body filters. An empty body deletes all entries."""
    query = LogQuery(
        user_id=body.user_id,
        action=body.action,
        resource=body.resource,
        status=body.status.value if body.status else None,
        severity=body.severity.value if body.severity else None,
        start_date=body.start_date,
        end_date=body.end_date,
    )
    deleted = _store(request).delete_audit_entries(query)
    audit_request(
        request,
        current_user,
        AuditAction.log_delete,
        AuditResource.logs,
        {"deleted_count": deleted, "filters": _filters_dict(query)},
        severity=Severity.high,
    )
    return LogDeleteResponse(message=f"{deleted} activity logs deleted successfully.", deleted_count=deleted)
