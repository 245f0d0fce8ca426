from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from unical.adapters import AdapterFactory
from unical.config_manager import ConfigManager
from unical.errors import NotFound, RRuleParseError, error_kind
from unical.event_store import EventStore
from unical.models import (
    SYNC_PROVIDER_KINDS,
    Calendar,
    CalendarAccount,
    Event,
    MoveReport,
    Occurrence,
    Recurrence,
    RemoteEvent,
    SyncErrorEntry,
    parse_iso_datetime,
    to_utc,
)
from unical.providers import ProviderAdapter
from unical.rrule import expand, materialize, parse_rrule

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ("title", "description", "location", "start", "end", "timezone", "all_day", "status", "color")
MIRRORED_FIELDS = ("title", "description", "location", "start", "end", "timezone", "all_day", "status")


def _remote_from_event(event: Event, recurrence: Recurrence | None) -> RemoteEvent:
    return RemoteEvent(
        external_id=event.external_id or "",
        title=event.title,
        description=event.description,
        location=event.location,
        start=event.start,
        end=event.end,
        timezone=event.timezone,
        all_day=event.all_day,
        status=event.status,
        ics_uid=event.ics_uid,
        rrule=recurrence.rrule if recurrence else None,
        ex_dates=[parse_iso_datetime(value) for value in recurrence.ex_dates] if recurrence else [],
        color=event.color,
    )


class EventService:
    """Local writes plus a best-effort mirror; a failed remote call never rolls back."""

    def __init__(self, config_manager: ConfigManager, store: EventStore, adapters: AdapterFactory) -> None:
        self.config_manager = config_manager
        self.store = store
        self.adapters = adapters

    # --- reads ---

    def expand_occurrences(
        self,
        event: Event,
        recurrence: Recurrence | None,
        window_start: datetime,
        window_end: datetime,
    ) -> list[Occurrence]:
        if event.start is None or event.end is None:
            return []
        single = materialize(event, [to_utc(event.start)], is_recurring_instance=False)
        if recurrence is None or not event.is_recurring:
            if to_utc(event.start) <= to_utc(window_end) and to_utc(event.end) >= to_utc(window_start):
                return single
            return []
        config = self.config_manager.load()
        try:
            rule = parse_rrule(recurrence.rrule, event.timezone)
        except RRuleParseError as exc:
            logger.warning("Event %s has an unreadable RRULE, showing the seed only: %s", event.id, exc)
            if to_utc(window_start) <= to_utc(event.start) <= to_utc(window_end):
                return single
            return []
        starts = expand(
            rule,
            event.start,
            recurrence.ex_dates,
            window_start,
            window_end,
            max_occurrences=config.recurrence.max_occurrences,
            tz=event.timezone or config.recurrence.default_timezone,
        )
        return materialize(event, starts)

    def occurrences_in_range(
        self,
        window_start: datetime,
        window_end: datetime,
        calendar_ids: list[str] | None = None,
    ) -> list[Occurrence]:
        occurrences: list[Occurrence] = []
        for event in self.store.list_events_in_range(window_start, window_end, calendar_ids):
            recurrence = self.store.get_recurrence(event.id) if event.is_recurring else None
            occurrences.extend(self.expand_occurrences(event, recurrence, window_start, window_end))
        occurrences.sort(key=lambda item: (item.start, item.event_id))
        return occurrences

    # --- mirroring ---

    def _mirror_target(self, calendar: Calendar) -> tuple[CalendarAccount, ProviderAdapter] | None:
        if calendar.is_read_only:
            return None
        account = self.store.get_account(calendar.account_id)
        if account is None or not account.is_active or account.provider not in SYNC_PROVIDER_KINDS:
            return None
        return account, self.adapters.get(account.provider)

    def _require_event(self, event_id: str) -> tuple[Event, Calendar]:
        event = self.store.get_event(event_id)
        if event is None:
            raise NotFound(f"event not found: {event_id}")
        calendar = self.store.get_calendar(event.calendar_id)
        if calendar is None:
            raise NotFound(f"calendar not found: {event.calendar_id}")
        return event, calendar

    def _push_create(self, event: Event, calendar: Calendar) -> str | None:
        target = self._mirror_target(calendar)
        if target is None:
            return None
        account, adapter = target
        recurrence = self.store.get_recurrence(event.id) if event.is_recurring else None
        external_id = adapter.create_event(account, calendar, _remote_from_event(event, recurrence))
        self.store.update_event(event.id, {"external_id": external_id})
        return external_id

    def _push_update(self, event: Event, calendar: Calendar, changes: dict[str, Any]) -> None:
        if not event.external_id or not changes:
            return
        target = self._mirror_target(calendar)
        if target is None:
            return
        account, adapter = target
        adapter.update_event(account, calendar, event.external_id, changes, baseline_etag=event.etag)

    # --- writes ---

    def create_event(self, calendar_id: str, fields: dict[str, Any], rrule: str | None = None) -> Event:
        calendar = self.store.get_calendar(calendar_id)
        if calendar is None:
            raise NotFound(f"calendar not found: {calendar_id}")
        if rrule:
            parse_rrule(rrule)
        values = {name: fields[name] for name in EDITABLE_FIELDS if name in fields}
        event = self.store.insert_local_event(calendar_id, values)
        if rrule:
            self.store.upsert_recurrence(event.id, rrule, (), tz=event.timezone)
            event = self.store.get_event(event.id) or event
        try:
            self._push_create(event, calendar)
        except Exception as exc:
            logger.warning("Mirroring new event %s to calendar %s failed: %s", event.id, calendar.id, exc)
        return self.store.get_event(event.id) or event

    def update_event(self, event_id: str, changes: dict[str, Any]) -> Event:
        event, calendar = self._require_event(event_id)
        values = {name: changes[name] for name in EDITABLE_FIELDS if name in changes}
        updated = self.store.update_event(event_id, values)
        if updated is None:
            raise NotFound(f"event not found: {event_id}")
        mirrored = {name: values[name] for name in MIRRORED_FIELDS if name in values}
        for name in ("start", "end"):
            if name in mirrored:
                mirrored[name] = parse_iso_datetime(mirrored[name])
        try:
            self._push_update(event, calendar, mirrored)
        except Exception as exc:
            logger.warning("Mirroring update of event %s failed: %s", event_id, exc)
        return updated

    def delete_event(self, event_id: str) -> bool:
        event, calendar = self._require_event(event_id)
        deleted = self.store.delete_event(event_id)
        if event.external_id:
            target = self._mirror_target(calendar)
            if target is not None:
                account, adapter = target
                try:
                    adapter.delete_event(account, calendar, event.external_id)
                except Exception as exc:
                    logger.warning("Mirroring delete of event %s failed: %s", event_id, exc)
        return deleted

    def add_exception_date(self, event_id: str, instant: str | datetime) -> Recurrence:
        """Exclude one occurrence of a recurring event, then push the series upstream."""
        event, calendar = self._require_event(event_id)
        recurrence = self.store.add_exdate(event_id, instant)
        if recurrence is None:
            raise ValueError(f"event {event_id} is not recurring")
        try:
            self._push_update(event, calendar, {"rrule": recurrence.rrule, "ex_dates": recurrence.ex_dates})
        except Exception as exc:
            logger.warning("Pushing exception date of event %s upstream failed: %s", event_id, exc)
        return recurrence

    def move_event(self, event_id: str, new_calendar_id: str) -> MoveReport:
        event, old_calendar = self._require_event(event_id)
        new_calendar = self.store.get_calendar(new_calendar_id)
        if new_calendar is None:
            raise NotFound(f"calendar not found: {new_calendar_id}")
        report = MoveReport(event_id=event_id, old_calendar_id=old_calendar.id, new_calendar_id=new_calendar.id)
        if new_calendar.id == old_calendar.id:
            report.new_external_id = event.external_id
            return report

        moved = self.store.update_event(
            event_id, {"calendar_id": new_calendar.id, "external_id": None, "etag": None}
        )

        if event.external_id:
            target = self._mirror_target(old_calendar)
            if target is not None:
                account, adapter = target
                try:
                    adapter.delete_event(account, old_calendar, event.external_id)
                except Exception as exc:
                    logger.warning("Deleting old remote copy of event %s failed: %s", event_id, exc)
                    report.errors.append(
                        SyncErrorEntry(old_calendar.id, error_kind(exc), str(exc), old_calendar.name)
                    )

        try:
            report.new_external_id = self._push_create(moved or event, new_calendar)
        except Exception as exc:
            logger.warning("Creating remote copy of event %s failed: %s", event_id, exc)
            report.errors.append(SyncErrorEntry(new_calendar.id, error_kind(exc), str(exc), new_calendar.name))
        return report
