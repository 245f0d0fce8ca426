from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import quote
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import requests

from unical.errors import ConflictError, ParseError, RRuleParseError
from unical.models import (
    Calendar,
    CalendarAccount,
    CalendarRef,
    EventListing,
    RemoteEvent,
    SyncState,
    parse_iso_datetime,
    serialize_datetime,
    to_utc,
)
from unical.providers import ProviderAdapter, bearer_request
from unical.rrule import WEEKDAY_NAMES, parse_rrule

logger = logging.getLogger(__name__)

PAGE_SIZE = 250
INSTANCE_LOOKUP_SLACK = timedelta(minutes=1)

GRAPH_COLORS = {
    "lightBlue": "#3b82f6",
    "lightGreen": "#22c55e",
    "lightOrange": "#f97316",
    "lightGray": "#6b7280",
    "lightYellow": "#eab308",
    "lightTeal": "#14b8a6",
    "lightPink": "#ec4899",
    "lightBrown": "#92400e",
    "lightRed": "#ef4444",
    "maxColor": "#8b5cf6",
}

GRAPH_DAYS = {
    "monday": "MO",
    "tuesday": "TU",
    "wednesday": "WE",
    "thursday": "TH",
    "friday": "FR",
    "saturday": "SA",
    "sunday": "SU",
}
GRAPH_DAY_NAMES = {value: key for key, value in GRAPH_DAYS.items()}
GRAPH_INDEX = {"first": 1, "second": 2, "third": 3, "fourth": 4, "last": -1}
GRAPH_INDEX_NAMES = {value: key for key, value in GRAPH_INDEX.items()}

_FRACTION = re.compile(r"(\.\d{6})\d+")


def _parse_graph_datetime(payload: dict[str, Any] | None) -> tuple[datetime | None, str]:
    payload = payload or {}
    raw = payload.get("dateTime")
    tz_name = payload.get("timeZone") or "UTC"
    if not raw:
        return None, tz_name
    parsed = datetime.fromisoformat(_FRACTION.sub(r"\1", raw.rstrip("Z")))
    if parsed.tzinfo is None:
        try:
            zone = timezone.utc if tz_name.upper() == "UTC" else ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError):
            zone = timezone.utc
        parsed = parsed.replace(tzinfo=zone)
    return parsed, tz_name


def _format_graph_datetime(value: datetime) -> dict[str, str]:
    return {"dateTime": to_utc(value).strftime("%Y-%m-%dT%H:%M:%S"), "timeZone": "UTC"}


def graph_recurrence_to_rrule(recurrence: dict[str, Any]) -> str:
    """Translate a Graph ``patternedRecurrence`` into an RRULE string.

    Relative patterns ("second Tuesday") become ``BYDAY=TU;BYSETPOS=2``.
    """
    pattern = recurrence.get("pattern") or {}
    range_ = recurrence.get("range") or {}
    kind = str(pattern.get("type", "daily"))
    freq = {
        "daily": "DAILY",
        "weekly": "WEEKLY",
        "absoluteMonthly": "MONTHLY",
        "relativeMonthly": "MONTHLY",
        "absoluteYearly": "YEARLY",
        "relativeYearly": "YEARLY",
    }.get(kind)
    if freq is None:
        raise RRuleParseError(f"unsupported Graph recurrence type: {kind}")

    parts = [f"FREQ={freq}"]
    interval = int(pattern.get("interval") or 1)
    if interval > 1:
        parts.append(f"INTERVAL={interval}")
    days = [GRAPH_DAYS[day.lower()] for day in pattern.get("daysOfWeek") or [] if day.lower() in GRAPH_DAYS]
    if days:
        parts.append(f"BYDAY={','.join(days)}")
    if kind in {"absoluteMonthly", "absoluteYearly"} and pattern.get("dayOfMonth"):
        parts.append(f"BYMONTHDAY={int(pattern['dayOfMonth'])}")
    if kind in {"absoluteYearly", "relativeYearly"} and pattern.get("month"):
        parts.append(f"BYMONTH={int(pattern['month'])}")
    if kind in {"relativeMonthly", "relativeYearly"} and days:
        parts.append(f"BYSETPOS={GRAPH_INDEX.get(str(pattern.get('index', 'first')), 1)}")
    first_day = str(pattern.get("firstDayOfWeek", "")).lower()
    if kind == "weekly" and first_day in GRAPH_DAYS and GRAPH_DAYS[first_day] != "MO":
        parts.append(f"WKST={GRAPH_DAYS[first_day]}")

    if range_.get("type") == "endDate" and range_.get("endDate"):
        end_date = datetime.fromisoformat(range_["endDate"])
        parts.append(f"UNTIL={end_date.strftime('%Y%m%d')}T235959Z")
    elif range_.get("type") == "numbered" and range_.get("numberOfOccurrences"):
        parts.append(f"COUNT={int(range_['numberOfOccurrences'])}")
    return ";".join(parts)


def rrule_to_graph_recurrence(rrule: str, start: datetime) -> dict[str, Any]:
    rule = parse_rrule(rrule)
    relative = bool(rule.by_day and rule.by_set_pos and rule.freq in {"MONTHLY", "YEARLY"})
    kind = {
        "DAILY": "daily",
        "WEEKLY": "weekly",
        "MONTHLY": "relativeMonthly" if relative else "absoluteMonthly",
        "YEARLY": "relativeYearly" if relative else "absoluteYearly",
    }[rule.freq]
    pattern: dict[str, Any] = {"type": kind, "interval": rule.interval}
    weekdays = rule.weekdays or ((start.weekday(),) if rule.freq == "WEEKLY" else ())
    if weekdays and (rule.freq == "WEEKLY" or relative or rule.by_day):
        pattern["daysOfWeek"] = [GRAPH_DAY_NAMES[WEEKDAY_NAMES[day]] for day in weekdays]
    if kind in {"absoluteMonthly", "absoluteYearly"}:
        pattern["dayOfMonth"] = rule.by_month_day[0] if rule.by_month_day else start.day
    if kind in {"absoluteYearly", "relativeYearly"}:
        pattern["month"] = rule.by_month[0] if rule.by_month else start.month
    if relative:
        pattern["index"] = GRAPH_INDEX_NAMES.get(rule.by_set_pos[0], "first")
    if rule.week_start != "MO":
        pattern["firstDayOfWeek"] = GRAPH_DAY_NAMES[rule.week_start]

    range_: dict[str, Any] = {"type": "noEnd", "startDate": start.date().isoformat()}
    if rule.until is not None:
        range_ = {"type": "endDate", "startDate": start.date().isoformat(), "endDate": rule.until.date().isoformat()}
    elif rule.count is not None:
        range_ = {"type": "numbered", "startDate": start.date().isoformat(), "numberOfOccurrences": rule.count}
    return {"pattern": pattern, "range": range_}


class MicrosoftGraphAdapter(ProviderAdapter):
    provider = "microsoft"

    def _request(self, account: CalendarAccount, method: str, url: str, **kwargs: Any) -> requests.Response:
        if not url.startswith("http"):
            url = f"{self.context.config.microsoft.api_base_url}{url}"
        return bearer_request(
            self.context,
            method,
            url,
            token=str(account.credentials.get("access_token", "")),
            provider=self.provider,
            timeout=self.context.config.microsoft.timeout_seconds,
            **kwargs,
        )

    def _paged(self, account: CalendarAccount, url: str, **kwargs: Any) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        next_url: str | None = url
        while next_url:
            data = self._request(account, "GET", next_url, **kwargs).json()
            items.extend(data.get("value", []))
            next_url = data.get("@odata.nextLink")
            kwargs.pop("params", None)
        return items

    def list_calendars(self, account: CalendarAccount) -> list[CalendarRef]:
        return [
            CalendarRef(
                external_id=item["id"],
                name=item.get("name") or "Untitled calendar",
                color=item.get("hexColor") or GRAPH_COLORS.get(str(item.get("color", ""))),
                is_read_only=not item.get("canEdit", True),
                is_primary=bool(item.get("isDefaultCalendar", False)),
            )
            for item in self._paged(account, "/me/calendars")
            if item.get("id")
        ]

    def list_events(
        self,
        account: CalendarAccount,
        calendar: Calendar,
        sync_state: SyncState | None,
    ) -> EventListing:
        # /events returns series masters with their recurrence instead of
        # expanded instances; expansion happens locally.
        items = self._paged(
            account,
            f"/me/calendars/{quote(calendar.external_id, safe='')}/events",
            params={"$top": PAGE_SIZE},
            headers={"Prefer": 'outlook.timezone="UTC"'},
        )
        listing = EventListing(complete=True)
        for item in items:
            if item.get("isCancelled"):
                continue
            try:
                listing.events.append(self._parse_event(item))
            except (KeyError, ValueError, ParseError) as exc:
                listing.skipped += 1
                logger.warning("Skipping malformed Graph event %s: %s", item.get("id"), exc)
        return listing

    def _parse_event(self, item: dict[str, Any]) -> RemoteEvent:
        start, tz_name = _parse_graph_datetime(item.get("start"))
        end, _ = _parse_graph_datetime(item.get("end"))
        if start is None or end is None:
            raise ParseError(f"event {item.get('id')} has no start/end")
        rrule = None
        if item.get("recurrence"):
            try:
                rrule = graph_recurrence_to_rrule(item["recurrence"])
            except RRuleParseError as exc:
                logger.warning("Graph event %s recurrence ignored: %s", item["id"], exc)
        body = item.get("body") or {}
        description = item.get("bodyPreview") or ""
        if str(body.get("contentType", "")).lower() == "text" and body.get("content"):
            description = body["content"]
        return RemoteEvent(
            external_id=item["id"],
            title=item.get("subject") or "(No title)",
            description=description,
            location=(item.get("location") or {}).get("displayName") or "",
            start=start,
            end=end,
            timezone=item.get("originalStartTimeZone") or tz_name,
            all_day=bool(item.get("isAllDay", False)),
            status="tentative" if item.get("showAs") == "tentative" else "confirmed",
            ics_uid=item.get("iCalUId"),
            rrule=rrule,
            etag=item.get("@odata.etag") or item.get("changeKey"),
        )

    def _to_body(self, values: dict[str, Any]) -> dict[str, Any]:
        body: dict[str, Any] = {}
        if "title" in values:
            body["subject"] = values["title"]
        if "description" in values:
            body["body"] = {"contentType": "Text", "content": values["description"] or ""}
        if "location" in values:
            body["location"] = {"displayName": values["location"] or ""}
        if values.get("start") is not None:
            body["start"] = _format_graph_datetime(values["start"])
        if values.get("end") is not None:
            body["end"] = _format_graph_datetime(values["end"])
        if "all_day" in values:
            body["isAllDay"] = bool(values["all_day"])
        if values.get("rrule") and values.get("start") is not None:
            body["recurrence"] = rrule_to_graph_recurrence(values["rrule"], values["start"])
        return body

    def create_event(self, account: CalendarAccount, calendar: Calendar, event: RemoteEvent) -> str:
        body = self._to_body(
            {
                "title": event.title,
                "description": event.description,
                "location": event.location,
                "start": event.start,
                "end": event.end,
                "all_day": event.all_day,
                "rrule": event.rrule,
            }
        )
        data = self._request(
            account, "POST", f"/me/calendars/{quote(calendar.external_id, safe='')}/events", json=body
        ).json()
        return str(data["id"])

    def _cancel_instances(self, account: CalendarAccount, external_id: str, ex_dates: list[Any]) -> None:
        # Graph has no EXDATE; an excluded occurrence is an instance deleted
        # from the series.
        for value in ex_dates:
            instant = parse_iso_datetime(value)
            if instant is None:
                continue
            items = self._paged(
                account,
                f"/me/events/{quote(external_id, safe='')}/instances",
                params={
                    "startDateTime": serialize_datetime(instant - INSTANCE_LOOKUP_SLACK),
                    "endDateTime": serialize_datetime(instant + INSTANCE_LOOKUP_SLACK),
                },
                headers={"Prefer": 'outlook.timezone="UTC"'},
            )
            for item in items:
                original = parse_iso_datetime(item.get("originalStart"))
                if original is not None and to_utc(original) == to_utc(instant):
                    self._request(account, "DELETE", f"/me/events/{quote(item['id'], safe='')}")

    def update_event(
        self,
        account: CalendarAccount,
        calendar: Calendar,
        external_id: str,
        changes: dict[str, Any],
        baseline_etag: str | None = None,
    ) -> None:
        if changes.get("ex_dates"):
            self._cancel_instances(account, external_id, list(changes["ex_dates"]))
        body = self._to_body(changes)
        if not body:
            return
        path = f"/me/events/{quote(external_id, safe='')}"
        headers = {"If-Match": baseline_etag} if baseline_etag else {}
        try:
            self._request(account, "PATCH", path, json=body, headers=headers)
        except ConflictError:
            # PATCH only touches the named fields, so the retry is a
            # field-level last write wins.
            logger.warning("Graph event %s changed remotely since last sync, local fields win", external_id)
            self._request(account, "PATCH", path, json=body)

    def delete_event(self, account: CalendarAccount, calendar: Calendar, external_id: str) -> None:
        self._request(account, "DELETE", f"/me/events/{quote(external_id, safe='')}")
