from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable

from unical.credential_cipher import CredentialCipher
from unical.models import (
    PROVIDER_KINDS,
    Calendar,
    CalendarAccount,
    CalendarRef,
    Event,
    Recurrence,
    SyncReport,
    SyncState,
    parse_iso_datetime,
    to_utc,
    utc_instant_key,
    utc_now,
)
from unical.rrule import rrule_bounds

EVENT_FIELDS = (
    "title",
    "description",
    "location",
    "start",
    "end",
    "timezone",
    "all_day",
    "status",
    "color",
    "external_id",
    "ics_uid",
    "is_recurring",
    "etag",
    "linked_event_id",
    "calendar_id",
)

_COLUMN = {"start": "start_at", "end": "end_at"}


def _utc_now() -> str:
    return utc_now().isoformat()


def _stamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    return to_utc(value).isoformat()


def _new_id() -> str:
    return uuid.uuid4().hex


def _column_value(name: str, value: Any) -> Any:
    if name in {"start", "end"}:
        return _stamp(parse_iso_datetime(value))
    if name in {"all_day", "is_recurring"}:
        return 1 if value else 0
    return value


def _scoped(query: str, params: list[Any], user_id: str | None) -> tuple[str, list[Any]]:
    if user_id is None:
        return query, params
    query += (
        " AND calendar_id IN (SELECT calendars.id FROM calendars"
        " JOIN accounts ON accounts.id = calendars.account_id WHERE accounts.user_id = ?)"
    )
    return query, params + [user_id]


class EventStore:
    """SQLite persistence for accounts, calendars, events and sync cursors.

    Every datetime is stored as a UTC ISO string so range filters can compare
    columns lexically.
    """

    def __init__(self, db_path: str, cipher: CredentialCipher | None = None) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.cipher = cipher or CredentialCipher.from_env(self.db_path.with_suffix(".key"))
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS accounts (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            provider TEXT NOT NULL,
            email TEXT NOT NULL DEFAULT '',
            credentials_json TEXT NOT NULL DEFAULT '{}',
            last_sync_at TEXT,
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL,
            UNIQUE (user_id, provider)
        );

        CREATE TABLE IF NOT EXISTS calendars (
            id TEXT PRIMARY KEY,
            account_id TEXT NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
            external_id TEXT NOT NULL,
            name TEXT NOT NULL DEFAULT '',
            color TEXT NOT NULL DEFAULT '#3b82f6',
            color_customized INTEGER NOT NULL DEFAULT 0,
            timezone TEXT NOT NULL DEFAULT 'UTC',
            is_visible INTEGER NOT NULL DEFAULT 1,
            is_read_only INTEGER NOT NULL DEFAULT 0,
            is_primary INTEGER NOT NULL DEFAULT 0,
            UNIQUE (account_id, external_id)
        );

        CREATE TABLE IF NOT EXISTS events (
            id TEXT PRIMARY KEY,
            calendar_id TEXT NOT NULL REFERENCES calendars(id) ON DELETE CASCADE,
            title TEXT NOT NULL DEFAULT '',
            description TEXT NOT NULL DEFAULT '',
            location TEXT NOT NULL DEFAULT '',
            start_at TEXT NOT NULL,
            end_at TEXT NOT NULL,
            timezone TEXT NOT NULL DEFAULT 'UTC',
            all_day INTEGER NOT NULL DEFAULT 0,
            status TEXT NOT NULL DEFAULT 'confirmed',
            color TEXT,
            external_id TEXT,
            ics_uid TEXT,
            is_recurring INTEGER NOT NULL DEFAULT 0,
            etag TEXT,
            linked_event_id TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE (calendar_id, external_id)
        );

        CREATE INDEX IF NOT EXISTS idx_events_ics_uid ON events(ics_uid);
        CREATE INDEX IF NOT EXISTS idx_events_external_id ON events(external_id);
        CREATE INDEX IF NOT EXISTS idx_events_range ON events(start_at, end_at);

        CREATE TABLE IF NOT EXISTS recurrences (
            event_id TEXT PRIMARY KEY REFERENCES events(id) ON DELETE CASCADE,
            rrule TEXT NOT NULL,
            until_at TEXT,
            count INTEGER,
            ex_dates_json TEXT NOT NULL DEFAULT '[]'
        );

        CREATE TABLE IF NOT EXISTS sync_states (
            account_id TEXT NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
            calendar_id TEXT NOT NULL REFERENCES calendars(id) ON DELETE CASCADE,
            sync_token TEXT,
            ctag TEXT,
            last_sync_at TEXT,
            status TEXT NOT NULL DEFAULT 'idle',
            error_message TEXT,
            PRIMARY KEY (account_id, calendar_id)
        );

        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            account_id TEXT NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
            run_at TEXT NOT NULL,
            trigger TEXT NOT NULL,
            status TEXT NOT NULL,
            duration_ms INTEGER NOT NULL,
            calendars_synced INTEGER NOT NULL,
            events_upserted INTEGER NOT NULL,
            error_count INTEGER NOT NULL,
            report_json TEXT NOT NULL
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    # --- row mapping ---

    def _seal(self, credentials: dict[str, Any] | None) -> str:
        return self.cipher.encrypt(json.dumps(credentials or {}))

    def _account(self, row: sqlite3.Row) -> CalendarAccount:
        return CalendarAccount(
            id=row["id"],
            user_id=row["user_id"],
            provider=row["provider"],
            email=row["email"],
            credentials=json.loads(self.cipher.decrypt(row["credentials_json"] or "{}")),
            last_sync_at=parse_iso_datetime(row["last_sync_at"]),
            is_active=bool(row["is_active"]),
        )

    @staticmethod
    def _calendar(row: sqlite3.Row) -> Calendar:
        return Calendar(
            id=row["id"],
            account_id=row["account_id"],
            external_id=row["external_id"],
            name=row["name"],
            color=row["color"],
            timezone=row["timezone"],
            is_visible=bool(row["is_visible"]),
            is_read_only=bool(row["is_read_only"]),
            is_primary=bool(row["is_primary"]),
        )

    @staticmethod
    def _event(row: sqlite3.Row) -> Event:
        return Event(
            id=row["id"],
            calendar_id=row["calendar_id"],
            title=row["title"],
            description=row["description"],
            location=row["location"],
            start=parse_iso_datetime(row["start_at"]),
            end=parse_iso_datetime(row["end_at"]),
            timezone=row["timezone"],
            all_day=bool(row["all_day"]),
            status=row["status"],
            color=row["color"],
            external_id=row["external_id"],
            ics_uid=row["ics_uid"],
            is_recurring=bool(row["is_recurring"]),
            etag=row["etag"],
            linked_event_id=row["linked_event_id"],
            updated_at=parse_iso_datetime(row["updated_at"]),
        )

    @staticmethod
    def _recurrence(row: sqlite3.Row) -> Recurrence:
        return Recurrence(
            event_id=row["event_id"],
            rrule=row["rrule"],
            until=parse_iso_datetime(row["until_at"]),
            count=row["count"],
            ex_dates=json.loads(row["ex_dates_json"] or "[]"),
        )

    @staticmethod
    def _sync_state(row: sqlite3.Row) -> SyncState:
        return SyncState(
            account_id=row["account_id"],
            calendar_id=row["calendar_id"],
            sync_token=row["sync_token"],
            ctag=row["ctag"],
            last_sync_at=parse_iso_datetime(row["last_sync_at"]),
            status=row["status"],
            error_message=row["error_message"],
        )

    # --- accounts ---

    def create_account(
        self,
        *,
        user_id: str,
        provider: str,
        email: str = "",
        credentials: dict[str, Any] | None = None,
    ) -> CalendarAccount:
        """Store a connected identity; reconnecting the same provider reuses the row."""
        if provider not in PROVIDER_KINDS:
            raise ValueError(f"Unknown provider kind: {provider}")
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO accounts(id, user_id, provider, email, credentials_json, is_active, created_at)
                    VALUES (?, ?, ?, ?, ?, 1, ?)
                    ON CONFLICT(user_id, provider) DO UPDATE SET
                        email = excluded.email,
                        credentials_json = excluded.credentials_json,
                        is_active = 1
                    """,
                    (_new_id(), user_id, provider, email, self._seal(credentials), _utc_now()),
                )
                row = conn.execute(
                    "SELECT * FROM accounts WHERE user_id = ? AND provider = ?",
                    (user_id, provider),
                ).fetchone()
        return self._account(row)

    def get_account(self, account_id: str) -> CalendarAccount | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM accounts WHERE id = ?", (account_id,)).fetchone()
        return self._account(row) if row else None

    def list_accounts(self, active_only: bool = False, user_id: str | None = None) -> list[CalendarAccount]:
        query = "SELECT * FROM accounts WHERE 1 = 1"
        params: list[Any] = []
        if active_only:
            query += " AND is_active = 1"
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(query + " ORDER BY created_at, id", params).fetchall()
        return [self._account(row) for row in rows]

    def update_account_credentials(self, account_id: str, credentials: dict[str, Any]) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    "UPDATE accounts SET credentials_json = ?, is_active = 1 WHERE id = ?",
                    (self._seal(credentials), account_id),
                )

    def set_account_active(self, account_id: str, is_active: bool) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    "UPDATE accounts SET is_active = ? WHERE id = ?",
                    (1 if is_active else 0, account_id),
                )

    def touch_account_sync(self, account_id: str, at: datetime | None = None) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    "UPDATE accounts SET last_sync_at = ? WHERE id = ?",
                    (_stamp(at or utc_now()), account_id),
                )

    def delete_account(self, account_id: str) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute("DELETE FROM accounts WHERE id = ?", (account_id,))
        return cursor.rowcount > 0

    # --- calendars ---

    def upsert_calendar(self, account_id: str, ref: CalendarRef) -> Calendar:
        """Insert or refresh a calendar; visibility and color stay local."""
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO calendars(id, account_id, external_id, name, color, timezone, is_read_only, is_primary)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(account_id, external_id) DO UPDATE SET
                        name = excluded.name,
                        color = CASE WHEN calendars.color_customized = 1 THEN calendars.color ELSE excluded.color END,
                        timezone = excluded.timezone,
                        is_read_only = excluded.is_read_only,
                        is_primary = excluded.is_primary
                    """,
                    (
                        _new_id(),
                        account_id,
                        ref.external_id,
                        ref.name,
                        ref.color or "#3b82f6",
                        ref.timezone or "UTC",
                        1 if ref.is_read_only else 0,
                        1 if ref.is_primary else 0,
                    ),
                )
                row = conn.execute(
                    "SELECT * FROM calendars WHERE account_id = ? AND external_id = ?",
                    (account_id, ref.external_id),
                ).fetchone()
        return self._calendar(row)

    def get_calendar(self, calendar_id: str) -> Calendar | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM calendars WHERE id = ?", (calendar_id,)).fetchone()
        return self._calendar(row) if row else None

    def list_calendars(self, account_id: str | None = None, visible_only: bool = False) -> list[Calendar]:
        query = "SELECT * FROM calendars WHERE 1 = 1"
        params: list[Any] = []
        if account_id is not None:
            query += " AND account_id = ?"
            params.append(account_id)
        if visible_only:
            query += " AND is_visible = 1"
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(query + " ORDER BY is_primary DESC, name, id", params).fetchall()
        return [self._calendar(row) for row in rows]

    def set_calendar_visibility(self, calendar_id: str, is_visible: bool) -> Calendar | None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    "UPDATE calendars SET is_visible = ? WHERE id = ?",
                    (1 if is_visible else 0, calendar_id),
                )
        return self.get_calendar(calendar_id)

    def set_calendar_color(self, calendar_id: str, color: str) -> Calendar | None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    "UPDATE calendars SET color = ?, color_customized = 1 WHERE id = ?",
                    (color, calendar_id),
                )
        return self.get_calendar(calendar_id)

    # --- events ---

    @staticmethod
    def _validated(fields: dict[str, Any]) -> dict[str, Any]:
        values = {name: _column_value(name, fields[name]) for name in EVENT_FIELDS if name in fields}
        for name in ("start", "end"):
            if name in values and values[name] is None:
                del values[name]
        start = values.get("start")
        end = values.get("end")
        if start is not None and end is not None and end < start:
            raise ValueError(f"event ends before it starts: {start} > {end}")
        return values

    def upsert_event(self, calendar_id: str, external_id: str | None, fields: dict[str, Any]) -> Event:
        """Upsert keyed by ``(calendar_id, external_id)``; a None external id inserts."""
        values = self._validated(fields)
        values.pop("calendar_id", None)
        values.pop("external_id", None)
        now = _utc_now()
        with self._lock:
            with self._connect() as conn:
                existing = None
                if external_id is not None:
                    existing = conn.execute(
                        "SELECT id FROM events WHERE calendar_id = ? AND external_id = ?",
                        (calendar_id, external_id),
                    ).fetchone()
                if existing is not None:
                    event_id = existing["id"]
                    if values:
                        assignments = ", ".join(f"{_COLUMN.get(name, name)} = ?" for name in values)
                        conn.execute(
                            f"UPDATE events SET {assignments}, updated_at = ? WHERE id = ?",  # nosec B608
                            [*values.values(), now, event_id],
                        )
                else:
                    if values.get("start") is None or values.get("end") is None:
                        raise ValueError("a new event needs start and end")
                    event_id = _new_id()
                    columns = ["id", "calendar_id", "external_id", "created_at", "updated_at"]
                    params: list[Any] = [event_id, calendar_id, external_id, now, now]
                    for name, value in values.items():
                        columns.append(_COLUMN.get(name, name))
                        params.append(value)
                    placeholders = ", ".join("?" for _ in columns)
                    conn.execute(
                        f"INSERT INTO events({', '.join(columns)}) VALUES ({placeholders})",  # nosec B608
                        params,
                    )
                row = conn.execute("SELECT * FROM events WHERE id = ?", (event_id,)).fetchone()
        return self._event(row)

    def insert_local_event(self, calendar_id: str, fields: dict[str, Any]) -> Event:
        return self.upsert_event(calendar_id, None, fields)

    def update_event(self, event_id: str, fields: dict[str, Any]) -> Event | None:
        """Patch an event by id; ``calendar_id`` and ``external_id`` may change."""
        values = self._validated(fields)
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM events WHERE id = ?", (event_id,)).fetchone()
                if row is None:
                    return None
                start = values.get("start", row["start_at"])
                end = values.get("end", row["end_at"])
                if end < start:
                    raise ValueError(f"event ends before it starts: {start} > {end}")
                if values:
                    assignments = ", ".join(f"{_COLUMN.get(name, name)} = ?" for name in values)
                    conn.execute(
                        f"UPDATE events SET {assignments}, updated_at = ? WHERE id = ?",  # nosec B608
                        [*values.values(), _utc_now(), event_id],
                    )
                row = conn.execute("SELECT * FROM events WHERE id = ?", (event_id,)).fetchone()
        return self._event(row)

    def get_event(self, event_id: str) -> Event | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM events WHERE id = ?", (event_id,)).fetchone()
        return self._event(row) if row else None

    def get_event_by_external_id(self, calendar_id: str, external_id: str) -> Event | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM events WHERE calendar_id = ? AND external_id = ?",
                    (calendar_id, external_id),
                ).fetchone()
        return self._event(row) if row else None

    def find_events_by_ics_uid(self, ics_uid: str, user_id: str | None = None) -> list[Event]:
        query, params = _scoped("SELECT * FROM events WHERE ics_uid = ?", [ics_uid], user_id)
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(query, params).fetchall()
        return [self._event(row) for row in rows]

    def find_events_by_external_id(self, external_id: str, user_id: str | None = None) -> list[Event]:
        query, params = _scoped("SELECT * FROM events WHERE external_id = ?", [external_id], user_id)
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(query, params).fetchall()
        return [self._event(row) for row in rows]

    def list_events_by_calendar(self, calendar_id: str) -> list[Event]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM events WHERE calendar_id = ? ORDER BY start_at, id",
                    (calendar_id,),
                ).fetchall()
        return [self._event(row) for row in rows]

    def list_events_near(
        self,
        start: datetime,
        end: datetime,
        exclude_calendar_id: str | None = None,
        user_id: str | None = None,
    ) -> list[Event]:
        """Events of other calendars starting within ``[start, end]``."""
        query = "SELECT * FROM events WHERE start_at >= ? AND start_at <= ?"
        params: list[Any] = [_stamp(start), _stamp(end)]
        if exclude_calendar_id is not None:
            query += " AND calendar_id != ?"
            params.append(exclude_calendar_id)
        query, params = _scoped(query, params, user_id)
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(query, params).fetchall()
        return [self._event(row) for row in rows]

    def list_events_in_range(
        self,
        start: datetime,
        end: datetime,
        calendar_ids: Iterable[str] | None = None,
        visible_only: bool = True,
    ) -> list[Event]:
        """Single events overlapping the range plus recurring seeds that may.

        A recurring seed qualifies when it starts before the range ends and
        its cached UNTIL, if any, is not before the range start.
        """
        query = """
            SELECT e.* FROM events e
            JOIN calendars c ON c.id = e.calendar_id
            LEFT JOIN recurrences r ON r.event_id = e.id
            WHERE e.status != 'cancelled'
              AND e.start_at <= ?
              AND (
                  (e.is_recurring = 0 AND e.end_at >= ?)
                  OR (e.is_recurring = 1 AND (r.until_at IS NULL OR r.until_at >= ?))
              )
        """
        params: list[Any] = [_stamp(end), _stamp(start), _stamp(start)]
        if visible_only:
            query += " AND c.is_visible = 1"
        if calendar_ids is not None:
            ids = list(calendar_ids)
            if not ids:
                return []
            query += f" AND e.calendar_id IN ({', '.join('?' for _ in ids)})"
            params.extend(ids)
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(query + " ORDER BY e.start_at, e.id", params).fetchall()
        return [self._event(row) for row in rows]

    def delete_event(self, event_id: str) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute("DELETE FROM events WHERE id = ?", (event_id,))
        return cursor.rowcount > 0

    # --- recurrences ---

    def upsert_recurrence(
        self,
        event_id: str,
        rrule: str,
        ex_dates: Iterable[str | datetime] = (),
        tz: str | None = None,
    ) -> Recurrence:
        """Store the RRULE and its exception dates, recomputing UNTIL/COUNT.

        Raises ``RRuleParseError`` for an unparseable rule so the caller can
        fall back to a single event.
        """
        until, count = rrule_bounds(rrule, tz)
        unique: list[str] = []
        for value in ex_dates:
            key = utc_instant_key(value)
            if key not in unique:
                unique.append(key)
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO recurrences(event_id, rrule, until_at, count, ex_dates_json)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(event_id) DO UPDATE SET
                        rrule = excluded.rrule,
                        until_at = excluded.until_at,
                        count = excluded.count,
                        ex_dates_json = excluded.ex_dates_json
                    """,
                    (event_id, rrule, _stamp(until), count, json.dumps(unique)),
                )
                conn.execute("UPDATE events SET is_recurring = 1 WHERE id = ?", (event_id,))
        return Recurrence(event_id=event_id, rrule=rrule, until=until, count=count, ex_dates=unique)

    def get_recurrence(self, event_id: str) -> Recurrence | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM recurrences WHERE event_id = ?", (event_id,)).fetchone()
        return self._recurrence(row) if row else None

    def delete_recurrence(self, event_id: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute("DELETE FROM recurrences WHERE event_id = ?", (event_id,))
                conn.execute("UPDATE events SET is_recurring = 0 WHERE id = ?", (event_id,))

    def add_exdate(self, event_id: str, instant: str | datetime) -> Recurrence | None:
        key = utc_instant_key(instant)
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM recurrences WHERE event_id = ?", (event_id,)).fetchone()
                if row is None:
                    return None
                recurrence = self._recurrence(row)
                if key not in recurrence.ex_dates:
                    recurrence.ex_dates.append(key)
                    conn.execute(
                        "UPDATE recurrences SET ex_dates_json = ? WHERE event_id = ?",
                        (json.dumps(recurrence.ex_dates), event_id),
                    )
        return recurrence

    # --- sync state ---

    def upsert_sync_state(
        self,
        account_id: str,
        calendar_id: str,
        *,
        sync_token: str | None = None,
        ctag: str | None = None,
        status: str = "idle",
        error: str | None = None,
    ) -> SyncState:
        """Record one sync attempt for a calendar.

        A ``None`` token or ctag keeps the stored cursor. ``last_sync_at``
        only advances on a successful (idle) attempt.
        """
        now = _utc_now() if status == "idle" else None
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO sync_states(account_id, calendar_id, sync_token, ctag, last_sync_at, status, error_message)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(account_id, calendar_id) DO UPDATE SET
                        sync_token = COALESCE(excluded.sync_token, sync_states.sync_token),
                        ctag = COALESCE(excluded.ctag, sync_states.ctag),
                        last_sync_at = COALESCE(excluded.last_sync_at, sync_states.last_sync_at),
                        status = excluded.status,
                        error_message = excluded.error_message
                    """,
                    (account_id, calendar_id, sync_token, ctag, now, status, error),
                )
                row = conn.execute(
                    "SELECT * FROM sync_states WHERE account_id = ? AND calendar_id = ?",
                    (account_id, calendar_id),
                ).fetchone()
        return self._sync_state(row)

    def clear_sync_token(self, account_id: str, calendar_id: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    "UPDATE sync_states SET sync_token = NULL WHERE account_id = ? AND calendar_id = ?",
                    (account_id, calendar_id),
                )

    def get_sync_state(self, account_id: str, calendar_id: str) -> SyncState | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM sync_states WHERE account_id = ? AND calendar_id = ?",
                    (account_id, calendar_id),
                ).fetchone()
        return self._sync_state(row) if row else None

    def list_sync_states(self, account_id: str | None = None) -> list[SyncState]:
        with self._lock:
            with self._connect() as conn:
                if account_id is None:
                    rows = conn.execute("SELECT * FROM sync_states ORDER BY account_id, calendar_id").fetchall()
                else:
                    rows = conn.execute(
                        "SELECT * FROM sync_states WHERE account_id = ? ORDER BY calendar_id",
                        (account_id,),
                    ).fetchall()
        return [self._sync_state(row) for row in rows]

    # --- sync history ---

    def record_sync_run(self, report: SyncReport) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO sync_runs(account_id, run_at, trigger, status, duration_ms,
                                          calendars_synced, events_upserted, error_count, report_json)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        report.account_id,
                        _stamp(report.started_at),
                        report.trigger,
                        "success" if report.success else ("reconnect" if report.needs_reconnect else "partial"),
                        report.duration_ms,
                        report.calendars_synced,
                        report.events_upserted,
                        len(report.errors),
                        json.dumps(report.to_dict(), ensure_ascii=False),
                    ),
                )
                return int(cursor.lastrowid)

    def recent_sync_runs(self, limit: int = 20, account_id: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                if account_id is None:
                    rows = conn.execute(
                        """
                        SELECT id, account_id, run_at, trigger, status, duration_ms,
                               calendars_synced, events_upserted, error_count, report_json
                        FROM sync_runs
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (max(1, limit),),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        """
                        SELECT id, account_id, run_at, trigger, status, duration_ms,
                               calendars_synced, events_upserted, error_count, report_json
                        FROM sync_runs
                        WHERE account_id = ?
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (account_id, max(1, limit)),
                    ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["report"] = json.loads(item.pop("report_json") or "{}")
            output.append(item)
        return output
