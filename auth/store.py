"""
auth/store.py -- SQLAlchemy Core persistence layer for users and activity logs.

Pattern: Repository + Data Mapper. UserStore and ActivityLogStore are the
repositories; _row_to_user / _row_to_entry are the mappers. Services and
routes never touch SQL directly.

Each user row is treated as a document: the refresh-token list lives on the
row as a JSON array, and update_user() writes whole fields (the full token
list, the full counter pair) rather than incrementing in SQL. Concurrent
writers to one user therefore resolve last-writer-wins.

Failure mapping:
  OperationalError (database unreachable, locked, missing) -> StoreUnavailable
  IntegrityError on the users.email unique index            -> DuplicateKey

Security:
  All queries use bound parameters. No f-strings in SQL.

DB path: dashboard.db at the project root unless DATABASE_URL is set.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import (
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    and_,
    case,
    create_engine,
    event,
    func,
    or_,
    select,
    text,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, OperationalError

from auth.errors import DuplicateKey, StoreUnavailable
from auth.models import ROLES, AuditEntry, RefreshTokenEntry, User

logger = logging.getLogger("dashboard.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),  # lower-cased on write
    Column("name", String(100), nullable=False),
    Column("hashed_password", Text, nullable=False),
    Column("role", String(20), nullable=False, server_default="user"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("failed_attempts", Integer, nullable=False, server_default="0"),
    Column("last_failed_at", String(32)),
    Column("last_login_at", String(32)),
    Column("last_login_ip", String(64)),
    Column("refresh_tokens", Text, nullable=False, server_default="[]"),  # JSON [{token, issued_at}]
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_activity_logs = Table(
    "activity_logs",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(32)),  # NULL when no account could be attributed
    Column("action", String(40), nullable=False),
    Column("resource", String(20), nullable=False),
    Column("details", Text, nullable=False, server_default="{}"),  # JSON object
    Column("ip_address", String(64), nullable=False),
    Column("user_agent", Text),
    Column("status", String(10), nullable=False, server_default="success"),
    Column("severity", String(10), nullable=False, server_default="low"),
    Column("created_at", String(32), nullable=False),
    Index("ix_activity_logs_user_created", "user_id", "created_at"),
    Index("ix_activity_logs_action_created", "action", "created_at"),
    Index("ix_activity_logs_created", "created_at"),
    sqlite_autoincrement=True,
)

# Fields update_user() accepts. Anything else is a programming error.
_USER_UPDATABLE: frozenset[str] = frozenset(
    {
        "email",
        "name",
        "role",
        "hashed_password",
        "is_active",
        "failed_attempts",
        "last_failed_at",
        "last_login_at",
        "last_login_ip",
        "refresh_tokens",
    }
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _make_engine(db_url: str) -> Engine:
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    return engine


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _to_iso(value: datetime | None) -> str | None:
    # Fixed-width microsecond format keeps lexical order == chronological
    # order, which the range filters below rely on.
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def normalize_email(email: str) -> str:
    return email.strip().lower()


def _dump_tokens(entries: list[RefreshTokenEntry]) -> str:
    seen: set[str] = set()
    payload = []
    for entry in entries:
        if entry.token in seen:
            continue
        seen.add(entry.token)
        payload.append({"token": entry.token, "issued_at": _to_iso(entry.issued_at)})
    return json.dumps(payload)


def _load_tokens(raw: str | None) -> list[RefreshTokenEntry]:
    return [
        RefreshTokenEntry(token=item["token"], issued_at=_from_iso(item["issued_at"]))
        for item in json.loads(raw or "[]")
    ]


class _Repository:
    """Engine ownership and failure translation shared by both stores."""

    def __init__(self, db_url: str) -> None:
        self.engine: Engine = _make_engine(db_url)
        with self._connect() as conn:
            _metadata.create_all(conn)
            conn.commit()

    @contextmanager
    def _connect(self) -> Iterator[Connection]:
        try:
            with self.engine.connect() as conn:
                yield conn
        except OperationalError as exc:
            logger.error("Store operation failed: %s", exc.__class__.__name__)
            raise StoreUnavailable() from exc

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self._connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except StoreUnavailable:
            return False

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserStore(_Repository):
    """Repository for User records.

    Usage:
        store = UserStore("sqlite:///:memory:")
        user = store.insert_user(User(email="a@b.com", name="A", hashed_password=h))
        store.update_user(user.id, failed_attempts=1, last_failed_at=now)
        store.close()
    """

    def insert_user(self, user: User) -> User:
        """Insert a new user and return the stored record.

        Raises DuplicateKey if the (normalized) email already exists.
        """
        if user.role not in ROLES:
            raise ValueError(f"Unknown role: {user.role!r}")
        now = _now()
        user_id = user.id or uuid.uuid4().hex
        values = {
            "id": user_id,
            "email": normalize_email(user.email),
            "name": user.name,
            "hashed_password": user.hashed_password,
            "role": user.role,
            "is_active": 1 if user.is_active else 0,
            "failed_attempts": user.failed_attempts,
            "last_failed_at": _to_iso(user.last_failed_at),
            "last_login_at": _to_iso(user.last_login_at),
            "last_login_ip": user.last_login_ip,
            "refresh_tokens": _dump_tokens(user.refresh_tokens),
            "created_at": _to_iso(user.created_at or now),
            "updated_at": _to_iso(now),
        }
        with self._connect() as conn:
            try:
                conn.execute(_users.insert().values(**values))
                conn.commit()
            except IntegrityError as exc:
                raise DuplicateKey(values["email"]) from exc
        created = self.find_user_by_id(user_id)
        if created is None:
            raise StoreUnavailable("Inserted user could not be read back.")
        return created

    def find_user_by_email(self, email: str) -> User | None:
        with self._connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == normalize_email(email))).fetchone()
        return _row_to_user(row) if row is not None else None

    def find_user_by_id(self, user_id: str) -> User | None:
        with self._connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def find_user_by_refresh_token(self, token: str) -> User | None:
        """Return the user whose refresh-token list holds this exact value.

        The LIKE prefilter matches the quoted value anywhere in the JSON
        text; the exact comparison happens on the decoded list.
        """
        if not token:
            return None
        with self._connect() as conn:
            rows = conn.execute(
                _users.select().where(_users.c.refresh_tokens.contains(f'"{token}"', autoescape=True))
            ).fetchall()
        for row in rows:
            user = _row_to_user(row)
            if any(entry.token == token for entry in user.refresh_tokens):
                return user
        return None

    def update_user(self, user_id: str, **fields) -> User | None:
        """Overwrite the given fields on a user and return the updated record.

        Accepted fields: see _USER_UPDATABLE. Values are domain types
        (datetimes, bools, RefreshTokenEntry lists); conversion to column
        form happens here. Returns None if user_id was not found.

        Raises DuplicateKey when an email change collides with another user.
        """
        unknown = set(fields) - _USER_UPDATABLE
        if unknown:
            raise ValueError(f"Unknown user fields: {sorted(unknown)!r}")
        values: dict = {}
        for key, value in fields.items():
            if key == "email":
                value = normalize_email(value)
            elif key == "role" and value not in ROLES:
                raise ValueError(f"Unknown role: {value!r}")
            elif key == "is_active":
                value = 1 if value else 0
            elif key in ("last_failed_at", "last_login_at"):
                value = _to_iso(value)
            elif key == "refresh_tokens":
                value = _dump_tokens(value)
            values[key] = value
        values["updated_at"] = _to_iso(_now())

        with self._connect() as conn:
            try:
                result = conn.execute(_users.update().where(_users.c.id == user_id).values(**values))
                conn.commit()
            except IntegrityError as exc:
                raise DuplicateKey(values.get("email", "")) from exc
        if result.rowcount == 0:
            return None
        return self.find_user_by_id(user_id)

    def delete_user(self, user_id: str) -> bool:
        """Permanently delete a user record. Returns True if deleted.

        Activity log rows referencing the user are kept; they are history.
        """
        with self._connect() as conn:
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
            conn.commit()
        return result.rowcount > 0

    def list_users(
        self,
        role: str | None = None,
        is_active: bool | None = None,
        search: str | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> tuple[list[User], int]:
        """Return (page of users newest first, total matching count)."""
        conditions = []
        if role:
            conditions.append(_users.c.role == role)
        if is_active is not None:
            conditions.append(_users.c.is_active == (1 if is_active else 0))
        if search:
            needle = search.strip().lower()
            conditions.append(
                or_(
                    func.lower(_users.c.name).contains(needle, autoescape=True),
                    _users.c.email.contains(needle, autoescape=True),
                )
            )
        where = and_(*conditions) if conditions else None

        query = _users.select()
        count_query = select(func.count()).select_from(_users)
        if where is not None:
            query = query.where(where)
            count_query = count_query.where(where)
        query = query.order_by(_users.c.created_at.desc()).limit(limit).offset((page - 1) * limit)

        with self._connect() as conn:
            rows = conn.execute(query).fetchall()
            total = conn.execute(count_query).scalar() or 0
        return [_row_to_user(r) for r in rows], total

    def purge_expired_refresh_tokens(self, max_age_seconds: int, now: datetime | None = None) -> int:
        """Drop refresh-token entries older than max_age_seconds from every user.

        This is the passive half of refresh-token expiry; the Authenticator
        also prunes actively before each rotation. Returns entries removed.
        """
        cutoff = (now or _now()) - timedelta(seconds=max_age_seconds)
        removed = 0
        with self._connect() as conn:
            rows = conn.execute(
                select(_users.c.id, _users.c.refresh_tokens).where(_users.c.refresh_tokens != "[]")
            ).fetchall()
        for row in rows:
            entries = _load_tokens(row.refresh_tokens)
            kept = [e for e in entries if e.issued_at > cutoff]
            if len(kept) != len(entries):
                self.update_user(row.id, refresh_tokens=kept)
                removed += len(entries) - len(kept)
        return removed

    # ------------------------------------------------------------------
    # Aggregates (statistics endpoints)
    # ------------------------------------------------------------------

    def count_by_role(self) -> list[dict]:
        """Return [{role, count, active_users, inactive_users}] ordered by role."""
        active = func.sum(case((_users.c.is_active == 1, 1), else_=0))
        with self._connect() as conn:
            rows = conn.execute(
                select(_users.c.role, func.count().label("count"), active.label("active"))
                .group_by(_users.c.role)
                .order_by(_users.c.role)
            ).fetchall()
        return [
            {
                "role": r.role,
                "count": r.count,
                "active_users": int(r.active or 0),
                "inactive_users": r.count - int(r.active or 0),
            }
            for r in rows
        ]

    def count_created_since(self, since: datetime) -> int:
        with self._connect() as conn:
            return (
                conn.execute(
                    select(func.count()).select_from(_users).where(_users.c.created_at >= _to_iso(since))
                ).scalar()
                or 0
            )

    def recently_active(self, since: datetime) -> list[User]:
        """Active users whose last successful login is at or after `since`."""
        with self._connect() as conn:
            rows = conn.execute(
                _users.select()
                .where((_users.c.last_login_at >= _to_iso(since)) & (_users.c.is_active == 1))
                .order_by(_users.c.last_login_at.desc())
            ).fetchall()
        return [_row_to_user(r) for r in rows]


# ---------------------------------------------------------------------------
# Activity logs
# ---------------------------------------------------------------------------


@dataclass
class LogQuery:
    """Filter set for listing, exporting, and purging activity logs.

    Every field is optional; None means "do not filter on this".
    """

    user_id: str | None = None
    action: str | None = None
    resource: str | None = None
    status: str | None = None
    severity: str | None = None
    ip_address: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None

    def conditions(self) -> list:
        c = _activity_logs.c
        out = []
        for column, value in (
            (c.user_id, self.user_id),
            (c.action, self.action),
            (c.resource, self.resource),
            (c.status, self.status),
            (c.severity, self.severity),
            (c.ip_address, self.ip_address),
        ):
            if value:
                out.append(column == value)
        if self.start_date is not None:
            out.append(c.created_at >= _to_iso(self.start_date))
        if self.end_date is not None:
            out.append(c.created_at <= _to_iso(self.end_date))
        return out


class ActivityLogStore(_Repository):
    """Append-only repository for AuditEntry records.

    The only mutations are append_audit_entry() and the administrative
    purge methods. There is deliberately no update.
    """

    def append_audit_entry(self, entry: AuditEntry) -> AuditEntry:
        created_at = entry.created_at or _now()
        with self._connect() as conn:
            result = conn.execute(
                _activity_logs.insert().values(
                    user_id=entry.user_id,
                    action=entry.action,
                    resource=entry.resource,
                    details=json.dumps(entry.details or {}, default=str),
                    ip_address=entry.ip_address,
                    user_agent=entry.user_agent,
                    status=entry.status,
                    severity=entry.severity,
                    created_at=_to_iso(created_at),
                )
            )
            conn.commit()
        return AuditEntry(
            action=entry.action,
            resource=entry.resource,
            ip_address=entry.ip_address,
            user_id=entry.user_id,
            details=dict(entry.details or {}),
            user_agent=entry.user_agent,
            status=entry.status,
            severity=entry.severity,
            id=result.inserted_primary_key[0],
            created_at=created_at,
        )

    def get_audit_entry(self, entry_id: int) -> AuditEntry | None:
        with self._connect() as conn:
            row = conn.execute(_activity_logs.select().where(_activity_logs.c.id == entry_id)).fetchone()
        return _row_to_entry(row) if row is not None else None

    def list_audit_entries(
        self, query: LogQuery | None = None, page: int = 1, limit: int = 50
    ) -> tuple[list[AuditEntry], int]:
        """Return (page of entries newest first, total matching count)."""
        conditions = (query or LogQuery()).conditions()
        stmt = _activity_logs.select()
        count_stmt = select(func.count()).select_from(_activity_logs)
        if conditions:
            stmt = stmt.where(and_(*conditions))
            count_stmt = count_stmt.where(and_(*conditions))
        stmt = (
            stmt.order_by(_activity_logs.c.created_at.desc(), _activity_logs.c.id.desc())
            .limit(limit)
            .offset((page - 1) * limit)
        )
        with self._connect() as conn:
            rows = conn.execute(stmt).fetchall()
            total = conn.execute(count_stmt).scalar() or 0
        return [_row_to_entry(r) for r in rows], total

    def delete_audit_entry(self, entry_id: int) -> bool:
        with self._connect() as conn:
            result = conn.execute(_activity_logs.delete().where(_activity_logs.c.id == entry_id))
            conn.commit()
        return result.rowcount > 0

    def delete_audit_entries(self, query: LogQuery) -> int:
        """Bulk purge. An empty LogQuery deletes every entry."""
        stmt = _activity_logs.delete()
        conditions = query.conditions()
        if conditions:
            stmt = stmt.where(and_(*conditions))
        with self._connect() as conn:
            result = conn.execute(stmt)
            conn.commit()
        return result.rowcount

    def summarize(self, start_date: datetime | None = None, end_date: datetime | None = None) -> dict:
        """Return totals by status plus critical count and distinct users/IPs."""
        c = _activity_logs.c
        conditions = LogQuery(start_date=start_date, end_date=end_date).conditions()
        stmt = select(
            func.count().label("total"),
            func.sum(case((c.status == "success", 1), else_=0)).label("success"),
            func.sum(case((c.status == "failed", 1), else_=0)).label("failed"),
            func.sum(case((c.status == "warning", 1), else_=0)).label("warning"),
            func.sum(case((c.severity == "critical", 1), else_=0)).label("critical"),
            func.count(func.distinct(c.user_id)).label("unique_users"),
            func.count(func.distinct(c.ip_address)).label("unique_ips"),
        )
        if conditions:
            stmt = stmt.where(and_(*conditions))
        with self._connect() as conn:
            row = conn.execute(stmt).fetchone()
        return {
            "total_logs": row.total or 0,
            "success_logs": int(row.success or 0),
            "failed_logs": int(row.failed or 0),
            "warning_logs": int(row.warning or 0),
            "critical_logs": int(row.critical or 0),
            "unique_users": row.unique_users or 0,
            "unique_ips": row.unique_ips or 0,
        }

    def count_logins(self, since: datetime) -> list[dict]:
        """Return [{action, count, unique_users, unique_ips}] for login/failed_login since `since`."""
        c = _activity_logs.c
        with self._connect() as conn:
            rows = conn.execute(
                select(
                    c.action,
                    func.count().label("count"),
                    func.count(func.distinct(c.user_id)).label("unique_users"),
                    func.count(func.distinct(c.ip_address)).label("unique_ips"),
                )
                .where(c.action.in_(("login", "failed_login")) & (c.created_at >= _to_iso(since)))
                .group_by(c.action)
                .order_by(c.action)
            ).fetchall()
        return [
            {"action": r.action, "count": r.count, "unique_users": r.unique_users, "unique_ips": r.unique_ips}
            for r in rows
        ]


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        name=row.name,
        hashed_password=row.hashed_password,
        role=row.role,
        is_active=bool(row.is_active),
        failed_attempts=row.failed_attempts or 0,
        last_failed_at=_from_iso(row.last_failed_at),
        last_login_at=_from_iso(row.last_login_at),
        last_login_ip=row.last_login_ip,
        refresh_tokens=_load_tokens(row.refresh_tokens),
        created_at=_from_iso(row.created_at),
        updated_at=_from_iso(row.updated_at),
    )


def _row_to_entry(row) -> AuditEntry:
    return AuditEntry(
        id=row.id,
        user_id=row.user_id,
        action=row.action,
        resource=row.resource,
        details=json.loads(row.details or "{}"),
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        status=row.status,
        severity=row.severity,
        created_at=_from_iso(row.created_at),
    )
