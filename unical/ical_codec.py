from __future__ import annotations

import hashlib
import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Any

from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent
from icalendar import vRecur

from unical.errors import ParseError
from unical.models import RemoteEvent, to_utc

logger = logging.getLogger(__name__)

PRODID = "-//Unical//Calendar Sync//EN"
OVERRIDE_SEPARATOR = "#"


def data_hash(raw_ical: str) -> str:
    return hashlib.sha1(raw_ical.encode("utf-8")).hexdigest()  # nosec B324


def decode_raw_ical(raw_data: Any) -> str:
    if isinstance(raw_data, bytes):
        return raw_data.decode("utf-8", errors="replace")
    return str(raw_data)


def _zone_name(value: Any, params_tz: str | None, default_tz: str) -> str:
    if isinstance(value, datetime) and value.tzinfo is not None:
        key = getattr(value.tzinfo, "key", None)
        if key:
            return str(key)
        if value.utcoffset() == timedelta(0):
            return "UTC"
    return params_tz or default_tz


def _coerce(value: Any) -> tuple[datetime | None, bool]:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc), False
        return value, False
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc), True
    return None, False


def _decoded(vevent: ICEvent, name: str) -> Any:
    if vevent.get(name) is None:
        return None
    return vevent.decoded(name)


def _exdates(vevent: ICEvent) -> list[datetime]:
    raw = vevent.get("EXDATE")
    if raw is None:
        return []
    entries = raw if isinstance(raw, list) else [raw]
    output: list[datetime] = []
    for entry in entries:
        for item in getattr(entry, "dts", []):
            value, _ = _coerce(item.dt)
            if value is not None:
                output.append(value)
    return output


def _rrule_text(vevent: ICEvent) -> str | None:
    raw = vevent.get("RRULE")
    if raw is None:
        return None
    if isinstance(raw, list):
        raw = raw[0] if raw else None
        if raw is None:
            return None
    return raw.to_ical().decode("utf-8")


def parse_vevent(vevent: ICEvent, external_id: str, etag: str | None, default_tz: str = "UTC") -> RemoteEvent:
    dtstart_raw = _decoded(vevent, "DTSTART")
    start, all_day = _coerce(dtstart_raw)
    if start is None:
        raise ParseError(f"VEVENT {external_id} has no DTSTART")
    end, _ = _coerce(_decoded(vevent, "DTEND"))
    if end is None:
        duration = _decoded(vevent, "DURATION")
        if isinstance(duration, timedelta):
            end = start + duration
        else:
            end = start + (timedelta(days=1) if all_day else timedelta(hours=1))

    params_tz = None
    if vevent.get("DTSTART") is not None:
        params_tz = vevent["DTSTART"].params.get("TZID")
    status = str(vevent.get("STATUS", "CONFIRMED")).strip().lower()
    return RemoteEvent(
        external_id=external_id,
        title=str(vevent.get("SUMMARY", "")).strip() or "(No title)",
        description=str(vevent.get("DESCRIPTION", "")).strip(),
        location=str(vevent.get("LOCATION", "")).strip(),
        start=start,
        end=end,
        timezone=_zone_name(dtstart_raw, params_tz, default_tz),
        all_day=all_day,
        status=status if status in {"confirmed", "tentative", "cancelled"} else "confirmed",
        ics_uid=str(vevent.get("UID", "")).strip() or None,
        rrule=_rrule_text(vevent),
        ex_dates=_exdates(vevent),
        etag=etag,
    )


def parse_resource(raw_data: Any, external_id: str, default_tz: str = "UTC") -> list[RemoteEvent]:
    # Overrides are keyed <href>#<recurrence-id>; their slots join the master's ex_dates.
    raw_ical = decode_raw_ical(raw_data)
    try:
        calendar_obj = ICalendar.from_ical(raw_ical)
    except ValueError as exc:
        raise ParseError(f"invalid iCalendar data at {external_id}: {exc}") from exc
    etag = data_hash(raw_ical)

    master: RemoteEvent | None = None
    overrides: list[tuple[datetime, RemoteEvent]] = []
    for component in calendar_obj.walk("VEVENT"):
        recurrence_id, _ = _coerce(_decoded(component, "RECURRENCE-ID"))
        if recurrence_id is None:
            if master is None:
                master = parse_vevent(component, external_id, etag, default_tz)
            continue
        override_id = f"{external_id}{OVERRIDE_SEPARATOR}{to_utc(recurrence_id).strftime('%Y%m%dT%H%M%SZ')}"
        event = parse_vevent(component, override_id, etag, default_tz)
        event.rrule = None
        event.ex_dates = []
        overrides.append((recurrence_id, event))

    if master is None:
        if not overrides:
            raise ParseError(f"VEVENT missing in calendar resource {external_id}")
        return [event for _, event in overrides]
    for recurrence_id, _event in overrides:
        if recurrence_id not in master.ex_dates:
            master.ex_dates.append(recurrence_id)
    return [master] + [event for _, event in overrides if event.status != "cancelled"]


_SERIES_FIELDS = ("DTSTAMP", "SUMMARY", "DESCRIPTION", "LOCATION", "DTSTART", "DTEND", "DURATION", "STATUS", "RRULE", "EXDATE")


def _fill_vevent(vevent: ICEvent, event: RemoteEvent, ex_dates: list[datetime]) -> None:
    vevent.add("DTSTAMP", datetime.now(timezone.utc))
    vevent.add("SUMMARY", event.title or "")
    if event.description:
        vevent.add("DESCRIPTION", event.description)
    if event.location:
        vevent.add("LOCATION", event.location)
    if event.start is not None:
        vevent.add("DTSTART", event.start.date() if event.all_day else event.start)
    if event.end is not None:
        vevent.add("DTEND", event.end.date() if event.all_day else event.end)
    if event.status and event.status != "confirmed":
        vevent.add("STATUS", event.status.upper())
    if event.rrule:
        vevent.add("RRULE", vRecur.from_ical(event.rrule))
        if ex_dates:
            vevent.add("EXDATE", [to_utc(value) for value in ex_dates])


def build_ical(event: RemoteEvent, uid: str) -> str:
    calendar_obj = ICalendar()
    calendar_obj.add("PRODID", PRODID)
    calendar_obj.add("VERSION", "2.0")
    vevent = ICEvent()
    vevent.add("UID", uid)
    _fill_vevent(vevent, event, list(event.ex_dates))
    calendar_obj.add_component(vevent)
    return calendar_obj.to_ical().decode("utf-8")


def rewrite_series(raw_data: Any, event: RemoteEvent) -> str:
    """Rewrite the series master of a stored resource in place.

    Overridden instances (VEVENTs with RECURRENCE-ID), VTIMEZONE blocks and
    master properties unical does not model, such as attendees and alarms,
    are kept as they are. An override slot is written as EXDATE only when
    the master already listed it.
    """
    raw_ical = decode_raw_ical(raw_data)
    try:
        calendar_obj = ICalendar.from_ical(raw_ical)
    except ValueError as exc:
        raise ParseError(f"invalid iCalendar data at {event.external_id}: {exc}") from exc

    master: ICEvent | None = None
    override_slots: set[datetime] = set()
    for component in calendar_obj.walk("VEVENT"):
        recurrence_id, _ = _coerce(_decoded(component, "RECURRENCE-ID"))
        if recurrence_id is not None:
            override_slots.add(to_utc(recurrence_id))
        elif master is None:
            master = component
    if master is None:
        raise ParseError(f"no series master in calendar resource {event.external_id}")

    listed = {to_utc(value) for value in _exdates(master)}
    ex_dates = [
        value for value in event.ex_dates if to_utc(value) not in override_slots or to_utc(value) in listed
    ]
    for name in _SERIES_FIELDS:
        master.pop(name, None)
    _fill_vevent(master, event, ex_dates)
    return calendar_obj.to_ical().decode("utf-8")
