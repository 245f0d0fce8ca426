from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any

from unical.adapters import AdapterFactory
from unical.config_manager import ConfigManager
from unical.dedup import FINGERPRINT_TOLERANCE, decide, identify
from unical.errors import RateLimited, RRuleParseError, error_kind
from unical.event_store import EventStore
from unical.models import (
    SYNC_PROVIDER_KINDS,
    AppConfig,
    Calendar,
    CalendarAccount,
    Event,
    EventListing,
    RemoteEvent,
    SyncErrorEntry,
    SyncReport,
    to_utc,
    utc_now,
)
from unical.providers import ProviderAdapter

logger = logging.getLogger(__name__)


@dataclass
class CalendarResult:
    calendar_id: str
    upserted: int = 0
    deleted: int = 0
    duplicates_skipped: int = 0
    skipped: int = 0
    unchanged: bool = False


def _error_entry(exc: BaseException, calendar: Calendar | None = None) -> SyncErrorEntry:
    return SyncErrorEntry(
        calendar_id=calendar.id if calendar else None,
        kind=error_kind(exc),
        message=str(exc) or type(exc).__name__,
        calendar_name=calendar.name if calendar else "",
        retry_after=exc.retry_after if isinstance(exc, RateLimited) else None,
    )


def _event_fields(remote: RemoteEvent) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "title": remote.title,
        "description": remote.description,
        "location": remote.location,
        "start": remote.start,
        "end": remote.end,
        "timezone": remote.timezone or "UTC",
        "all_day": remote.all_day,
        "status": remote.status,
        "ics_uid": remote.ics_uid,
        "etag": remote.etag,
    }
    if remote.color:
        fields["color"] = remote.color
    return fields


class SyncEngine:
    def __init__(
        self,
        config_manager: ConfigManager,
        store: EventStore,
        adapters: AdapterFactory,
    ) -> None:
        self.config_manager = config_manager
        self.store = store
        self.adapters = adapters

    def sync_account(self, account_id: str, trigger: str = "manual") -> SyncReport:
        started = time.monotonic()
        report = SyncReport(account_id=account_id, trigger=trigger, started_at=utc_now())
        account = self.store.get_account(account_id)
        if account is None:
            report.errors.append(SyncErrorEntry(calendar_id=None, kind="not_found", message="account not found"))
            return report
        report.provider = account.provider
        if account.provider not in SYNC_PROVIDER_KINDS:
            logger.debug("Account %s is local, nothing to sync", account_id)
            return report

        logger.info("Sync started for %s account %s (%s)", account.provider, account_id, trigger)
        try:
            self._sync(account, report)
        except Exception as exc:
            logger.exception("Sync of account %s failed", account_id)
            report.errors.append(_error_entry(exc))
        finally:
            report.duration_ms = int((time.monotonic() - started) * 1000)
            self._finish(account, report)
        return report

    def _finish(self, account: CalendarAccount, report: SyncReport) -> None:
        try:
            if report.calendars_synced or report.success:
                self.store.touch_account_sync(account.id)
            self.store.record_sync_run(report)
        except Exception:
            logger.exception("Could not record sync run for account %s", account.id)
        logger.info(
            "Sync finished for account %s: %d calendars, %d upserted, %d deleted, %d duplicates, %d errors in %d ms",
            account.id,
            report.calendars_synced,
            report.events_upserted,
            report.events_deleted,
            report.duplicates_skipped,
            len(report.errors),
            report.duration_ms,
        )

    def _sync(self, account: CalendarAccount, report: SyncReport) -> None:
        config = self.config_manager.load()
        adapter = self.adapters.get(account.provider)
        try:
            refs = adapter.list_calendars(account)
        except Exception as exc:
            logger.warning("Listing calendars of account %s failed: %s", account.id, exc)
            report.errors.append(_error_entry(exc))
            return

        # Calendars missing from a listing are kept; they may only be hidden remotely.
        for ref in refs:
            self.store.upsert_calendar(account.id, ref)
        calendars = self.store.list_calendars(account.id, visible_only=True)
        if not calendars:
            return

        width = max(1, min(config.sync.calendar_parallelism, len(calendars)))
        with ThreadPoolExecutor(max_workers=width, thread_name_prefix="unical-calendar") as pool:
            futures = {
                pool.submit(self._sync_calendar, account, adapter, calendar, config): calendar
                for calendar in calendars
            }
            for future in as_completed(futures):
                calendar = futures[future]
                try:
                    result = future.result()
                except Exception as exc:
                    logger.warning("Sync of calendar %s (%s) failed: %s", calendar.id, calendar.name, exc)
                    report.errors.append(_error_entry(exc, calendar))
                    self._mark_failed(account, calendar, exc)
                    continue
                report.calendars_synced += 1
                report.events_upserted += result.upserted
                report.events_deleted += result.deleted
                report.duplicates_skipped += result.duplicates_skipped
                report.events_skipped += result.skipped

    def _mark_failed(self, account: CalendarAccount, calendar: Calendar, exc: BaseException) -> None:
        try:
            self.store.upsert_sync_state(
                account.id,
                calendar.id,
                status="error",
                error=f"{error_kind(exc)}: {exc}",
            )
        except Exception:
            logger.exception("Could not record sync error for calendar %s", calendar.id)

    def _sync_calendar(
        self,
        account: CalendarAccount,
        adapter: ProviderAdapter,
        calendar: Calendar,
        config: AppConfig,
    ) -> CalendarResult:
        result = CalendarResult(calendar_id=calendar.id)
        state = self.store.upsert_sync_state(account.id, calendar.id, status="syncing")
        listing = adapter.list_events(account, calendar, state)
        if listing.unchanged:
            result.unchanged = True
            self.store.upsert_sync_state(account.id, calendar.id, ctag=listing.ctag, status="idle")
            return result

        seen: set[str] = set()
        for remote in listing.events:
            if remote.status == "cancelled":
                existing = self.store.get_event_by_external_id(calendar.id, remote.external_id)
                if existing is not None and self.store.delete_event(existing.id):
                    result.deleted += 1
                continue
            seen.add(remote.external_id)
            self._import(account, calendar, remote, config, result)

        for master_id, instants in listing.ex_date_additions.items():
            master = self.store.get_event_by_external_id(calendar.id, master_id)
            if master is None or not master.is_recurring:
                continue
            for instant in instants:
                self.store.add_exdate(master.id, instant)

        result.skipped += listing.skipped
        if listing.complete and not listing.skipped:
            result.deleted += self._delete_unseen(calendar, seen, listing)
        elif listing.complete:
            logger.warning(
                "Calendar %s listing had %d unreadable events, deletion detection skipped",
                calendar.id,
                listing.skipped,
            )

        self.store.upsert_sync_state(
            account.id,
            calendar.id,
            sync_token=listing.sync_token,
            ctag=listing.ctag,
            status="idle",
        )
        return result

    def _delete_unseen(self, calendar: Calendar, seen: set[str], listing: EventListing) -> int:
        deleted = 0
        for event in self.store.list_events_by_calendar(calendar.id):
            if not event.external_id or event.external_id in seen:
                continue
            if not self._in_listing_scope(event, listing):
                continue
            if self.store.delete_event(event.id):
                logger.debug("Event %s removed remotely, deleted locally", event.id)
                deleted += 1
        return deleted

    def _in_listing_scope(self, event: Event, listing: EventListing) -> bool:
        if listing.window_start is None or listing.window_end is None:
            return True
        if event.start is None or event.end is None:
            return False
        if to_utc(event.start) > listing.window_end:
            return False
        if event.is_recurring:
            recurrence = self.store.get_recurrence(event.id)
            return recurrence is None or recurrence.until is None or recurrence.until >= listing.window_start
        return to_utc(event.end) >= listing.window_start

    def _import(
        self,
        account: CalendarAccount,
        calendar: Calendar,
        remote: RemoteEvent,
        config: AppConfig,
        result: CalendarResult,
    ) -> None:
        if remote.start is None or remote.end is None or remote.end < remote.start:
            logger.warning("Skipping event %s of calendar %s: invalid start/end", remote.external_id, calendar.id)
            result.skipped += 1
            return

        fields = _event_fields(remote)
        existing = self.store.get_event_by_external_id(calendar.id, remote.external_id)
        if existing is None:
            candidate = Event(
                id="",
                calendar_id=calendar.id,
                title=remote.title,
                location=remote.location,
                start=remote.start,
                end=remote.end,
                external_id=remote.external_id,
                ics_uid=remote.ics_uid,
            )
            duplicate = identify(candidate, self._dedup_candidates(candidate, account.user_id))
            decision = decide(duplicate, config.sync.duplicate_policy)
            if not decision.should_import:
                logger.debug(
                    "Skipping duplicate %s of calendar %s (matched by %s)",
                    remote.external_id,
                    calendar.id,
                    duplicate.matched_by if duplicate else "",
                )
                result.duplicates_skipped += 1
                return
            fields["linked_event_id"] = decision.linked_event_id

        event = self.store.upsert_event(calendar.id, remote.external_id, fields)
        result.upserted += 1

        if remote.rrule:
            try:
                self.store.upsert_recurrence(event.id, remote.rrule, remote.ex_dates, tz=remote.timezone)
            except RRuleParseError as exc:
                # Shown as the single seed event rather than dropped.
                logger.warning("Event %s has an unreadable RRULE, kept as a single event: %s", event.id, exc)
                self.store.delete_recurrence(event.id)
        elif event.is_recurring:
            self.store.delete_recurrence(event.id)

    def _dedup_candidates(self, candidate: Event, user_id: str) -> list[Event]:
        found: dict[str, Event] = {}
        if candidate.ics_uid:
            for event in self.store.find_events_by_ics_uid(candidate.ics_uid, user_id):
                found[event.id] = event
        if candidate.external_id:
            for event in self.store.find_events_by_external_id(candidate.external_id, user_id):
                found[event.id] = event
        if candidate.start is not None:
            for event in self.store.list_events_near(
                candidate.start - FINGERPRINT_TOLERANCE,
                candidate.start + FINGERPRINT_TOLERANCE,
                exclude_calendar_id=candidate.calendar_id,
                user_id=user_id,
            ):
                found[event.id] = event
        return list(found.values())
