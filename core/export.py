"""
core/export.py -- Activity-log export renderers (CSV and JSON).

Security:
  CSV formula injection (CWE-1236). Spreadsheet applications treat a cell
  starting with =, +, -, @ (or a leading tab/carriage return) as a formula.
  Log fields such as user_agent and details are attacker-controlled: anyone
  can send a login request with a crafted User-Agent. Every CSV cell passes
  through _sanitize_csv_cell(), which prefixes dangerous cells with a tab so
  the spreadsheet reads them as text.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
Entries are duck-typed (anything with the AuditEntry attributes).
"""

from __future__ import annotations

import csv
import io
import json
from datetime import date, datetime
from typing import Any, Iterable, Mapping

# Maximum rows one export may contain.
EXPORT_LIMIT = 10_000

CSV_HEADERS = [
    "ID",
    "User",
    "Action",
    "Resource",
    "Status",
    "Severity",
    "IP Address",
    "User Agent",
    "Created At",
]

_FORMULA_PREFIXES = ("=", "+", "-", "@", "\t", "\r")


def _sanitize_csv_cell(value: Any) -> str:
    text = "" if value is None else str(value)
    if text.startswith(_FORMULA_PREFIXES):
        return "\t" + text
    return text


def _iso(value: datetime | None) -> str:
    return value.isoformat() if value is not None else ""


def _user_label(user_id: str | None, users: Mapping[str, Any]) -> str:
    user = users.get(user_id) if user_id else None
    if user is None:
        return "Unknown"
    return f"{user.name} ({user.email})"


def export_filename(extension: str, today: date | None = None) -> str:
    """activity-logs-YYYY-MM-DD.<extension>"""
    return f"activity-logs-{(today or date.today()).isoformat()}.{extension}"


def logs_to_csv(entries: Iterable, users: Mapping[str, Any] | None = None) -> str:
    """Render audit entries as CSV, one row per entry.

    users maps user_id -> user-like object (name, email) for the User column;
    entries with no known user show "Unknown".
    """
    users = users or {}
    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(CSV_HEADERS)
    for entry in entries:
        writer.writerow(
            [
                _sanitize_csv_cell(cell)
                for cell in (
                    entry.id,
                    _user_label(entry.user_id, users),
                    entry.action,
                    entry.resource,
                    entry.status,
                    entry.severity,
                    entry.ip_address,
                    entry.user_agent or "",
                    _iso(entry.created_at),
                )
            ]
        )
    return buf.getvalue()


def logs_to_json(entries: Iterable, filters: Mapping[str, Any], exported_at: datetime) -> str:
    """Render audit entries as a JSON document with export metadata."""
    logs = [
        {
            "id": entry.id,
            "user_id": entry.user_id,
            "action": entry.action,
            "resource": entry.resource,
            "details": entry.details,
            "ip_address": entry.ip_address,
            "user_agent": entry.user_agent,
            "status": entry.status,
            "severity": entry.severity,
            "created_at": _iso(entry.created_at),
        }
        for entry in entries
    ]
    payload = {
        "logs": logs,
        "exported_at": exported_at.isoformat(),
        "total_logs": len(logs),
        "filters": {k: v for k, v in filters.items() if v is not None},
    }
    return json.dumps(payload, indent=2, default=str)
