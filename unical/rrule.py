"""RFC 5545 recurrence rules: tolerant parsing plus dateutil expansion.

BYDAY ordinal prefixes (``2TU``, ``-1FR``) are stripped and ignored, so
``BYDAY=2TU`` in a monthly rule matches every Tuesday of the month. An
explicit BYSETPOS is honored.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, time, timezone
from typing import Iterable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil.rrule import DAILY, FR, MO, MONTHLY, SA, SU, TH, TU, WE, WEEKLY, YEARLY, rrule, rruleset

from unical.errors import RRuleParseError
from unical.models import Event, Occurrence, parse_iso_datetime, to_utc

logger = logging.getLogger(__name__)

DEFAULT_MAX_OCCURRENCES = 365
FREQUENCIES = ("DAILY", "WEEKLY", "MONTHLY", "YEARLY")
WEEKDAYS = {"MO": 0, "TU": 1, "WE": 2, "TH": 3, "FR": 4, "SA": 5, "SU": 6}
WEEKDAY_NAMES = {value: key for key, value in WEEKDAYS.items()}

_BYDAY_TOKEN = re.compile(r"^([+-]?\d{1,2})?([A-Z]{2})$")


@dataclass(frozen=True)
class Rule:
    freq: str
    interval: int = 1
    count: int | None = None
    until: datetime | None = None
    by_day: tuple[str, ...] = ()
    by_month: tuple[int, ...] = ()
    by_month_day: tuple[int, ...] = ()
    by_set_pos: tuple[int, ...] = ()
    week_start: str = "MO"

    @property
    def weekdays(self) -> tuple[int, ...]:
        """BYDAY weekdays with any ordinal prefix removed."""
        return tuple(sorted({WEEKDAYS[strip_ordinal(token)] for token in self.by_day}))


def strip_ordinal(token: str) -> str:
    match = _BYDAY_TOKEN.match(token.strip().upper())
    if match is None or match.group(2) not in WEEKDAYS:
        raise RRuleParseError(f"invalid BYDAY token: {token!r}")
    return match.group(2)


def _resolve_zone(tz: str | None) -> ZoneInfo | timezone | None:
    if not tz:
        return None
    if tz.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %s, expanding in UTC", tz)
        return timezone.utc


def parse_rrule_datetime(value: str, tz: str | None = None) -> datetime:
    # A date-only UNTIL covers that whole day; floating values are read in tz.
    text = value.strip().upper()
    zone = _resolve_zone(tz) or timezone.utc
    try:
        if re.fullmatch(r"\d{8}", text):
            day = datetime.strptime(text, "%Y%m%d").date()
            return datetime.combine(day, time(23, 59, 59), tzinfo=zone).astimezone(timezone.utc)
        if text.endswith("Z"):
            return datetime.strptime(text[:-1], "%Y%m%dT%H%M%S").replace(tzinfo=timezone.utc)
        return datetime.strptime(text, "%Y%m%dT%H%M%S").replace(tzinfo=zone).astimezone(timezone.utc)
    except ValueError as exc:
        raise RRuleParseError(f"invalid UNTIL value: {value!r}") from exc


def format_rrule_datetime(value: datetime) -> str:
    return to_utc(value).strftime("%Y%m%dT%H%M%SZ")


def _int_list(key: str, value: str) -> tuple[int, ...]:
    try:
        return tuple(int(item) for item in value.split(",") if item.strip())
    except ValueError as exc:
        raise RRuleParseError(f"invalid {key} value: {value!r}") from exc


def _positive_int(key: str, value: str) -> int:
    try:
        parsed = int(value)
    except ValueError as exc:
        raise RRuleParseError(f"invalid {key} value: {value!r}") from exc
    if parsed < 1:
        raise RRuleParseError(f"{key} must be >= 1, got {parsed}")
    return parsed


def parse_rrule(text: str, tz: str | None = None) -> Rule:
    """Parse ``FREQ=WEEKLY;BYDAY=MO,WE``; unknown keys are ignored, bad known values raise."""
    if not text or not text.strip():
        raise RRuleParseError("empty RRULE")
    body = text.strip()
    if body.upper().startswith("RRULE:"):
        body = body[len("RRULE:"):]

    fields: dict[str, object] = {}
    for part in body.split(";"):
        if "=" not in part:
            continue
        key, value = part.split("=", 1)
        key = key.strip().upper()
        value = value.strip()
        if key == "FREQ":
            freq = value.upper()
            if freq not in FREQUENCIES:
                raise RRuleParseError(f"unsupported FREQ: {value!r}")
            fields["freq"] = freq
        elif key == "INTERVAL":
            fields["interval"] = _positive_int(key, value)
        elif key == "COUNT":
            fields["count"] = _positive_int(key, value)
        elif key == "UNTIL":
            fields["until"] = parse_rrule_datetime(value, tz)
        elif key == "BYDAY":
            tokens = tuple(token.strip().upper() for token in value.split(",") if token.strip())
            for token in tokens:
                strip_ordinal(token)
            fields["by_day"] = tokens
        elif key == "BYMONTH":
            months = _int_list(key, value)
            if any(month < 1 or month > 12 for month in months):
                raise RRuleParseError(f"invalid BYMONTH value: {value!r}")
            fields["by_month"] = months
        elif key == "BYMONTHDAY":
            days = _int_list(key, value)
            if any(day == 0 or abs(day) > 31 for day in days):
                raise RRuleParseError(f"invalid BYMONTHDAY value: {value!r}")
            fields["by_month_day"] = days
        elif key == "BYSETPOS":
            positions = _int_list(key, value)
            if any(pos == 0 or abs(pos) > 366 for pos in positions):
                raise RRuleParseError(f"invalid BYSETPOS value: {value!r}")
            fields["by_set_pos"] = positions
        elif key == "WKST":
            week_start = value.upper()
            if week_start not in WEEKDAYS:
                raise RRuleParseError(f"invalid WKST value: {value!r}")
            fields["week_start"] = week_start

    if "freq" not in fields:
        raise RRuleParseError(f"RRULE without FREQ: {text!r}")
    return Rule(**fields)  # type: ignore[arg-type]


def build_rrule(rule: Rule) -> str:
    parts = [f"FREQ={rule.freq}"]
    if rule.interval > 1:
        parts.append(f"INTERVAL={rule.interval}")
    if rule.count:
        parts.append(f"COUNT={rule.count}")
    if rule.until:
        parts.append(f"UNTIL={format_rrule_datetime(rule.until)}")
    if rule.by_day:
        parts.append(f"BYDAY={','.join(rule.by_day)}")
    if rule.by_month:
        parts.append(f"BYMONTH={','.join(str(x) for x in rule.by_month)}")
    if rule.by_month_day:
        parts.append(f"BYMONTHDAY={','.join(str(x) for x in rule.by_month_day)}")
    if rule.by_set_pos:
        parts.append(f"BYSETPOS={','.join(str(x) for x in rule.by_set_pos)}")
    if rule.week_start != "MO":
        parts.append(f"WKST={rule.week_start}")
    return ";".join(parts)


def rrule_bounds(text: str, tz: str | None = None) -> tuple[datetime | None, int | None]:
    """Return the (until, count) caches derived from an RRULE string."""
    rule = parse_rrule(text, tz)
    return rule.until, rule.count


_FREQ_MAP = {"DAILY": DAILY, "WEEKLY": WEEKLY, "MONTHLY": MONTHLY, "YEARLY": YEARLY}
_DATEUTIL_WEEKDAYS = (MO, TU, WE, TH, FR, SA, SU)


def to_dateutil(rule: Rule, seed_start: datetime) -> rrule:
    """Build the dateutil rule for a series anchored at ``seed_start``."""
    return rrule(
        _FREQ_MAP[rule.freq],
        dtstart=seed_start,
        interval=rule.interval,
        count=rule.count,
        until=rule.until,
        wkst=_DATEUTIL_WEEKDAYS[WEEKDAYS[rule.week_start]],
        byweekday=tuple(_DATEUTIL_WEEKDAYS[day] for day in rule.weekdays) or None,
        bymonth=rule.by_month or None,
        bymonthday=rule.by_month_day or None,
        bysetpos=rule.by_set_pos or None,
    )


def expand(
    rule: Rule,
    seed_start: datetime,
    ex_dates: Iterable[str | datetime] = (),
    window_start: datetime | None = None,
    window_end: datetime | None = None,
    max_occurrences: int = DEFAULT_MAX_OCCURRENCES,
    tz: str | None = None,
) -> list[datetime]:
    """Expand ``rule`` into sorted UTC start instants inside the window.

    Both window bounds are inclusive. Occurrences follow the wall clock of
    ``tz`` (or of ``seed_start``) so a 09:00 meeting stays at 09:00 across
    DST changes. At most ``max_occurrences`` items are returned.
    """
    if window_start is None or window_end is None:
        raise ValueError("expand needs a bounded window")
    window_start = to_utc(window_start)
    window_end = to_utc(window_end)
    if rule.until is not None and rule.until < window_start:
        return []
    if window_end < window_start or max_occurrences <= 0:
        return []

    zone = _resolve_zone(tz)
    seed = seed_start if seed_start.tzinfo is not None else seed_start.replace(tzinfo=timezone.utc)
    if zone is not None:
        seed = seed.astimezone(zone)

    rule_set = rruleset()
    rule_set.rrule(to_dateutil(rule, seed))
    for value in ex_dates:
        excluded = parse_iso_datetime(value)
        if excluded is not None:
            rule_set.exdate(excluded)

    results: list[datetime] = []
    for candidate in rule_set.xafter(window_start, inc=True):
        instant = to_utc(candidate)
        if instant > window_end:
            break
        if results and instant <= results[-1]:
            continue
        results.append(instant)
        if len(results) >= max_occurrences:
            break
    return results


def materialize(
    event: Event,
    starts: Iterable[datetime],
    is_recurring_instance: bool = True,
) -> list[Occurrence]:
    """Pair each start instant with the seed event's duration."""
    duration = event.duration
    return [
        Occurrence(
            event_id=event.id,
            start=start,
            end=start + duration,
            title=event.title,
            location=event.location,
            all_day=event.all_day,
            is_recurring_instance=is_recurring_instance,
        )
        for start in starts
    ]
