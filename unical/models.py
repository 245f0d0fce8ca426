from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any


PROVIDER_KINDS = ("google", "icloud", "microsoft", "caldav", "local")
SYNC_PROVIDER_KINDS = ("google", "icloud", "microsoft", "caldav")
EVENT_STATUSES = ("confirmed", "tentative", "cancelled")
DUPLICATE_POLICIES = ("skip", "keep-both", "link")


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_utc(value: datetime) -> datetime:
    return _ensure_tz(value).astimezone(timezone.utc)


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def utc_instant_key(value: str | datetime) -> str:
    """Canonical UTC ISO form used to compare exception dates."""
    parsed = parse_iso_datetime(value)
    if parsed is None:
        raise ValueError("empty instant")
    return to_utc(parsed).strftime("%Y-%m-%dT%H:%M:%SZ")


def date_to_datetime(value: datetime | date | None, is_end: bool = False) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    if is_end:
        return datetime.combine(value, time.max, tzinfo=timezone.utc)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


@dataclass
class SyncConfig:
    interval_seconds: int = 300
    max_concurrent_syncs: int = 4
    calendar_parallelism: int = 4
    lookback_days: int = 180
    lookahead_days: int = 365
    duplicate_policy: str = "skip"
    rate_limit_backoff_seconds: int = 60
    rate_limit_backoff_max_seconds: int = 3600

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        policy = str(data.get("duplicate_policy", "skip")).strip().lower()
        if policy not in DUPLICATE_POLICIES:
            policy = "skip"
        backoff = max(1, int(data.get("rate_limit_backoff_seconds", 60)))
        return cls(
            interval_seconds=max(30, int(data.get("interval_seconds", 300))),
            max_concurrent_syncs=max(1, int(data.get("max_concurrent_syncs", 4))),
            calendar_parallelism=max(1, int(data.get("calendar_parallelism", 4))),
            lookback_days=max(1, int(data.get("lookback_days", 180))),
            lookahead_days=max(1, int(data.get("lookahead_days", 365))),
            duplicate_policy=policy,
            rate_limit_backoff_seconds=backoff,
            rate_limit_backoff_max_seconds=max(
                backoff, int(data.get("rate_limit_backoff_max_seconds", 3600))
            ),
        )


@dataclass
class RecurrenceConfig:
    max_occurrences: int = 365
    default_timezone: str = "UTC"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "RecurrenceConfig":
        data = data or {}
        return cls(
            max_occurrences=max(1, int(data.get("max_occurrences", 365))),
            default_timezone=str(data.get("default_timezone", "UTC")).strip() or "UTC",
        )


@dataclass
class GoogleConfig:
    api_base_url: str = "https://www.googleapis.com/calendar/v3"
    timeout_seconds: int = 30

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "GoogleConfig":
        data = data or {}
        return cls(
            api_base_url=str(data.get("api_base_url", cls.api_base_url)).strip().rstrip("/")
            or cls.api_base_url,
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
        )


@dataclass
class MicrosoftConfig:
    api_base_url: str = "https://graph.microsoft.com/v1.0"
    timeout_seconds: int = 30

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "MicrosoftConfig":
        data = data or {}
        return cls(
            api_base_url=str(data.get("api_base_url", cls.api_base_url)).strip().rstrip("/")
            or cls.api_base_url,
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
        )


@dataclass
class ICloudConfig:
    base_url: str = "https://caldav.icloud.com"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ICloudConfig":
        data = data or {}
        return cls(base_url=str(data.get("base_url", cls.base_url)).strip() or cls.base_url)


@dataclass
class StorageConfig:
    database_path: str = "data/unical.db"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "StorageConfig":
        data = data or {}
        return cls(
            database_path=str(data.get("database_path", "data/unical.db")).strip() or "data/unical.db"
        )


@dataclass
class AppConfig:
    sync: SyncConfig = field(default_factory=SyncConfig)
    recurrence: RecurrenceConfig = field(default_factory=RecurrenceConfig)
    google: GoogleConfig = field(default_factory=GoogleConfig)
    microsoft: MicrosoftConfig = field(default_factory=MicrosoftConfig)
    icloud: ICloudConfig = field(default_factory=ICloudConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            sync=SyncConfig.from_dict(data.get("sync")),
            recurrence=RecurrenceConfig.from_dict(data.get("recurrence")),
            google=GoogleConfig.from_dict(data.get("google")),
            microsoft=MicrosoftConfig.from_dict(data.get("microsoft")),
            icloud=ICloudConfig.from_dict(data.get("icloud")),
            storage=StorageConfig.from_dict(data.get("storage")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass
class CalendarAccount:
    id: str
    user_id: str
    provider: str
    email: str = ""
    credentials: dict[str, Any] = field(default_factory=dict)
    last_sync_at: datetime | None = None
    is_active: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "provider": self.provider,
            "email": self.email,
            "last_sync_at": serialize_datetime(self.last_sync_at),
            "is_active": self.is_active,
        }


@dataclass
class Calendar:
    id: str
    account_id: str
    external_id: str
    name: str = ""
    color: str = "#3b82f6"
    timezone: str = "UTC"
    is_visible: bool = True
    is_read_only: bool = False
    is_primary: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class CalendarRef:
    """A calendar as reported by a provider listing."""

    external_id: str
    name: str = ""
    color: str | None = None
    timezone: str | None = None
    is_read_only: bool = False
    is_primary: bool = False


@dataclass
class Event:
    id: str
    calendar_id: str
    title: str = ""
    description: str = ""
    location: str = ""
    start: datetime | None = None
    end: datetime | None = None
    timezone: str = "UTC"
    all_day: bool = False
    status: str = "confirmed"
    color: str | None = None
    external_id: str | None = None
    ics_uid: str | None = None
    is_recurring: bool = False
    etag: str | None = None
    linked_event_id: str | None = None
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["start"] = serialize_datetime(self.start)
        payload["end"] = serialize_datetime(self.end)
        payload["updated_at"] = serialize_datetime(self.updated_at)
        return payload

    @property
    def duration(self) -> timedelta:
        if self.start is None or self.end is None:
            return timedelta(0)
        return self.end - self.start


@dataclass
class Recurrence:
    event_id: str
    rrule: str
    until: datetime | None = None
    count: int | None = None
    ex_dates: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "rrule": self.rrule,
            "until": serialize_datetime(self.until),
            "count": self.count,
            "ex_dates": list(self.ex_dates),
        }


@dataclass
class RemoteEvent:
    """Provider-neutral shape every adapter normalizes into."""

    external_id: str
    title: str = ""
    description: str = ""
    location: str = ""
    start: datetime | None = None
    end: datetime | None = None
    timezone: str = "UTC"
    all_day: bool = False
    status: str = "confirmed"
    ics_uid: str | None = None
    rrule: str | None = None
    ex_dates: list[datetime] = field(default_factory=list)
    etag: str | None = None
    color: str | None = None

    def clone(self) -> "RemoteEvent":
        return RemoteEvent(
            external_id=self.external_id,
            title=self.title,
            description=self.description,
            location=self.location,
            start=self.start,
            end=self.end,
            timezone=self.timezone,
            all_day=self.all_day,
            status=self.status,
            ics_uid=self.ics_uid,
            rrule=self.rrule,
            ex_dates=list(self.ex_dates),
            etag=self.etag,
            color=self.color,
        )

    def with_updates(self, **kwargs: Any) -> "RemoteEvent":
        copied = self.clone()
        for key, value in kwargs.items():
            setattr(copied, key, value)
        return copied


@dataclass
class SyncState:
    account_id: str
    calendar_id: str
    sync_token: str | None = None
    ctag: str | None = None
    last_sync_at: datetime | None = None
    status: str = "idle"
    error_message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["last_sync_at"] = serialize_datetime(self.last_sync_at)
        return payload


@dataclass
class EventListing:
    # complete: every live remote event is present, so missing ones may be deleted.
    # ex_date_additions: master external id -> instants cancelled outside the listing.
    events: list[RemoteEvent] = field(default_factory=list)
    sync_token: str | None = None
    ctag: str | None = None
    complete: bool = True
    unchanged: bool = False
    skipped: int = 0
    window_start: datetime | None = None
    window_end: datetime | None = None
    ex_date_additions: dict[str, list[datetime]] = field(default_factory=dict)


@dataclass
class Occurrence:
    event_id: str
    start: datetime
    end: datetime
    title: str = ""
    location: str = ""
    all_day: bool = False
    is_recurring_instance: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "start": serialize_datetime(self.start),
            "end": serialize_datetime(self.end),
            "title": self.title,
            "location": self.location,
            "all_day": self.all_day,
            "is_recurring_instance": self.is_recurring_instance,
        }


@dataclass
class SyncErrorEntry:
    calendar_id: str | None
    kind: str
    message: str
    calendar_name: str = ""
    retry_after: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SyncReport:
    account_id: str
    provider: str = "unknown"
    trigger: str = "manual"
    calendars_synced: int = 0
    events_upserted: int = 0
    events_deleted: int = 0
    duplicates_skipped: int = 0
    events_skipped: int = 0
    errors: list[SyncErrorEntry] = field(default_factory=list)
    started_at: datetime = field(default_factory=utc_now)
    duration_ms: int = 0

    @property
    def success(self) -> bool:
        return not self.errors

    @property
    def needs_reconnect(self) -> bool:
        return any(entry.kind == "credential_expired" for entry in self.errors)

    @property
    def rate_limited(self) -> bool:
        return any(entry.kind == "rate_limited" for entry in self.errors)

    @property
    def warning_count(self) -> int:
        return sum(1 for entry in self.errors if entry.kind != "credential_expired")

    def to_dict(self) -> dict[str, Any]:
        return {
            "account_id": self.account_id,
            "provider": self.provider,
            "trigger": self.trigger,
            "success": self.success,
            "calendars_synced": self.calendars_synced,
            "events_upserted": self.events_upserted,
            "events_deleted": self.events_deleted,
            "duplicates_skipped": self.duplicates_skipped,
            "events_skipped": self.events_skipped,
            "needs_reconnect": self.needs_reconnect,
            "warning_count": self.warning_count,
            "errors": [entry.to_dict() for entry in self.errors],
            "started_at": serialize_datetime(self.started_at),
            "duration_ms": self.duration_ms,
        }


@dataclass
class MoveReport:
    event_id: str
    old_calendar_id: str
    new_calendar_id: str
    new_external_id: str | None = None
    errors: list[SyncErrorEntry] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "old_calendar_id": self.old_calendar_id,
            "new_calendar_id": self.new_calendar_id,
            "new_external_id": self.new_external_id,
            "errors": [entry.to_dict() for entry in self.errors],
        }


def full_sync_window(now: datetime, lookback_days: int, lookahead_days: int) -> tuple[datetime, datetime]:
    now_utc = to_utc(now)
    start = datetime.combine(now_utc.date(), time.min, tzinfo=timezone.utc) - timedelta(
        days=max(1, lookback_days)
    )
    end = datetime.combine(now_utc.date(), time.max, tzinfo=timezone.utc) + timedelta(
        days=max(1, lookahead_days)
    )
    return start, end
