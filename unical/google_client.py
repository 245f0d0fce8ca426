from __future__ import annotations

import logging
import re
from datetime import date, datetime, time, timezone
from typing import Any
from urllib.parse import quote
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import requests

from unical.errors import IncrementalSyncInvalidated, ParseError
from unical.models import (
    Calendar,
    CalendarAccount,
    CalendarRef,
    EventListing,
    RemoteEvent,
    SyncState,
    full_sync_window,
    parse_iso_datetime,
    serialize_datetime,
    utc_now,
)
from unical.providers import ProviderAdapter, bearer_request
from unical.reconciler import apply_change
from unical.rrule import format_rrule_datetime

logger = logging.getLogger(__name__)

READ_ONLY_ROLES = {"reader", "freeBusyReader"}
PAGE_SIZE = 2500


def _zone(name: str | None) -> ZoneInfo | timezone:
    if not name or name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return timezone.utc


def parse_exdate_line(line: str, default_tz: str | None = None) -> list[datetime]:
    """Parse one ``EXDATE[;params]:v1,v2`` recurrence line."""
    head, _, values = line.partition(":")
    params = dict(
        part.split("=", 1) for part in head.split(";")[1:] if "=" in part
    )
    zone = _zone(params.get("TZID") or default_tz)
    output: list[datetime] = []
    for raw in values.split(","):
        text = raw.strip().upper()
        if not text:
            continue
        if re.fullmatch(r"\d{8}", text):
            day = datetime.strptime(text, "%Y%m%d").date()
            output.append(datetime.combine(day, time.min, tzinfo=zone))
        elif text.endswith("Z"):
            output.append(datetime.strptime(text[:-1], "%Y%m%dT%H%M%S").replace(tzinfo=timezone.utc))
        else:
            output.append(datetime.strptime(text, "%Y%m%dT%H%M%S").replace(tzinfo=zone))
    return output


def _parse_when(payload: dict[str, Any] | None, default_tz: str) -> tuple[datetime | None, bool, str]:
    payload = payload or {}
    tz_name = payload.get("timeZone") or default_tz
    if payload.get("dateTime"):
        return parse_iso_datetime(payload["dateTime"]), False, tz_name
    if payload.get("date"):
        day = date.fromisoformat(payload["date"])
        return datetime.combine(day, time.min, tzinfo=_zone(tz_name)), True, tz_name
    return None, False, tz_name


def _format_when(value: datetime, all_day: bool, tz_name: str) -> dict[str, str]:
    if all_day:
        return {"date": value.date().isoformat()}
    return {"dateTime": serialize_datetime(value) or "", "timeZone": tz_name or "UTC"}


class GoogleCalendarAdapter(ProviderAdapter):
    provider = "google"

    @property
    def _base_url(self) -> str:
        return self.context.config.google.api_base_url

    def _request(self, account: CalendarAccount, method: str, path: str, **kwargs: Any) -> requests.Response:
        return bearer_request(
            self.context,
            method,
            f"{self._base_url}{path}",
            token=str(account.credentials.get("access_token", "")),
            provider=self.provider,
            timeout=self.context.config.google.timeout_seconds,
            **kwargs,
        )

    def list_calendars(self, account: CalendarAccount) -> list[CalendarRef]:
        calendars: list[CalendarRef] = []
        params: dict[str, Any] = {}
        while True:
            data = self._request(account, "GET", "/users/me/calendarList", params=params).json()
            for item in data.get("items", []):
                if not item.get("id"):
                    continue
                calendars.append(
                    CalendarRef(
                        external_id=item["id"],
                        name=item.get("summaryOverride") or item.get("summary") or "Untitled calendar",
                        color=item.get("backgroundColor"),
                        timezone=item.get("timeZone"),
                        is_read_only=item.get("accessRole") in READ_ONLY_ROLES,
                        is_primary=bool(item.get("primary", False)),
                    )
                )
            page_token = data.get("nextPageToken")
            if not page_token:
                return calendars
            params = {"pageToken": page_token}

    def list_events(
        self,
        account: CalendarAccount,
        calendar: Calendar,
        sync_state: SyncState | None,
    ) -> EventListing:
        token = sync_state.sync_token if sync_state else None
        if token:
            try:
                return self._list(account, calendar, token)
            except IncrementalSyncInvalidated:
                logger.warning(
                    "Sync token for calendar %s expired, falling back to a full listing", calendar.id
                )
        return self._list(account, calendar, None)

    def _list(self, account: CalendarAccount, calendar: Calendar, sync_token: str | None) -> EventListing:
        params: dict[str, Any] = {"maxResults": PAGE_SIZE, "singleEvents": "false"}
        if sync_token:
            params["syncToken"] = sync_token
        else:
            window_start, window_end = full_sync_window(
                utc_now(),
                self.context.config.sync.lookback_days,
                self.context.config.sync.lookahead_days,
            )
            params["timeMin"] = serialize_datetime(window_start)
            params["timeMax"] = serialize_datetime(window_end)

        path = f"/calendars/{quote(calendar.external_id, safe='')}/events"
        listing = EventListing(complete=sync_token is None)
        if sync_token is None:
            listing.window_start, listing.window_end = window_start, window_end
        exceptions: list[dict[str, Any]] = []
        while True:
            data = self._request(account, "GET", path, params=params).json()
            for item in data.get("items", []):
                if item.get("recurringEventId"):
                    exceptions.append(item)
                    if item.get("status") == "cancelled":
                        continue
                try:
                    listing.events.append(self._parse_event(item, calendar.timezone))
                except (KeyError, ValueError, ParseError) as exc:
                    listing.skipped += 1
                    logger.warning("Skipping malformed Google event %s: %s", item.get("id"), exc)
            page_token = data.get("nextPageToken")
            if page_token:
                params = {key: value for key, value in params.items() if key != "pageToken"}
                params["pageToken"] = page_token
                continue
            listing.sync_token = data.get("nextSyncToken") or sync_token
            break

        masters = {event.external_id: event for event in listing.events if event.rrule}
        for item in exceptions:
            master = masters.get(item["recurringEventId"])
            original, _, _ = _parse_when(item.get("originalStartTime"), calendar.timezone)
            if original is None:
                continue
            if master is None:
                # Incremental listings carry changed instances without their series.
                listing.ex_date_additions.setdefault(item["recurringEventId"], []).append(original)
            elif original not in master.ex_dates:
                master.ex_dates.append(original)
        return listing

    def _parse_event(self, item: dict[str, Any], default_tz: str) -> RemoteEvent:
        event_id = item["id"]
        status = item.get("status", "confirmed")
        if status == "cancelled":
            return RemoteEvent(external_id=event_id, status="cancelled")
        start, all_day, tz_name = _parse_when(item.get("start"), default_tz)
        end, _, _ = _parse_when(item.get("end"), default_tz)
        if start is None or end is None:
            raise ParseError(f"event {event_id} has no start/end")
        rrule = None
        ex_dates: list[datetime] = []
        for line in item.get("recurrence", []) or []:
            upper = line.upper()
            if upper.startswith("RRULE:"):
                rrule = line[len("RRULE:"):]
            elif upper.startswith("EXDATE"):
                ex_dates.extend(parse_exdate_line(line, tz_name))
        return RemoteEvent(
            external_id=event_id,
            title=item.get("summary") or "(No title)",
            description=item.get("description") or "",
            location=item.get("location") or "",
            start=start,
            end=end,
            timezone=tz_name,
            all_day=all_day,
            status=status if status in {"confirmed", "tentative"} else "confirmed",
            ics_uid=item.get("iCalUID"),
            rrule=rrule,
            ex_dates=ex_dates,
            etag=item.get("etag"),
        )

    def _to_body(self, event: RemoteEvent) -> dict[str, Any]:
        body: dict[str, Any] = {
            "summary": event.title,
            "description": event.description or None,
            "location": event.location or None,
        }
        if event.start is not None:
            body["start"] = _format_when(event.start, event.all_day, event.timezone)
        if event.end is not None:
            body["end"] = _format_when(event.end, event.all_day, event.timezone)
        if event.rrule:
            recurrence = [f"RRULE:{event.rrule}"]
            if event.ex_dates:
                values = ",".join(format_rrule_datetime(value) for value in event.ex_dates)
                recurrence.append(f"EXDATE:{values}")
            body["recurrence"] = recurrence
        return body

    def create_event(self, account: CalendarAccount, calendar: Calendar, event: RemoteEvent) -> str:
        body = self._to_body(event)
        if event.ics_uid:
            body["iCalUID"] = event.ics_uid
        path = f"/calendars/{quote(calendar.external_id, safe='')}/events"
        data = self._request(account, "POST", path, json=body).json()
        return str(data["id"])

    def update_event(
        self,
        account: CalendarAccount,
        calendar: Calendar,
        external_id: str,
        changes: dict[str, Any],
        baseline_etag: str | None = None,
    ) -> None:
        path = f"/calendars/{quote(calendar.external_id, safe='')}/events/{quote(external_id, safe='')}"
        current_payload = self._request(account, "GET", path).json()
        current = self._parse_event(current_payload, calendar.timezone)
        outcome = apply_change(current_event=current, change=changes, baseline_etag=baseline_etag)
        if outcome.conflicted:
            logger.warning("Google event %s changed remotely since last sync, local fields win", external_id)
        if not outcome.applied:
            return
        body = dict(current_payload)
        body.update(self._to_body(outcome.event))
        self._request(account, "PUT", path, json=body)

    def delete_event(self, account: CalendarAccount, calendar: Calendar, external_id: str) -> None:
        path = f"/calendars/{quote(calendar.external_id, safe='')}/events/{quote(external_id, safe='')}"
        try:
            self._request(account, "DELETE", path)
        except IncrementalSyncInvalidated:
            # 410 Gone on delete: the event is already removed remotely.
            logger.debug("Google event %s already deleted", external_id)
