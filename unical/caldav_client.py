from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from typing import Any, Iterator

import caldav
import requests
from caldav.elements import dav, ical
from caldav.elements.base import ValuedBaseElement
from caldav.lib import error as caldav_error

from unical.errors import ConflictError, CredentialExpired, ParseError, SyncError, TransientNetwork
from unical.ical_codec import OVERRIDE_SEPARATOR, build_ical, parse_resource, rewrite_series
from unical.models import Calendar, CalendarAccount, CalendarRef, EventListing, RemoteEvent, SyncState
from unical.providers import ProviderAdapter
from unical.reconciler import apply_change

logger = logging.getLogger(__name__)


class GetCTag(ValuedBaseElement):
    tag = "{http://calendarserver.org/ns/}getctag"


def _normalize_color(value: Any) -> str | None:
    text = str(value or "").strip()
    if not text.startswith("#"):
        return None
    # Apple servers report #RRGGBBAA.
    return text[:7]


class CalDAVAdapter(ProviderAdapter):
    """Generic CalDAV server; credentials carry server_url, username and password."""

    provider = "caldav"

    def _server_url(self, account: CalendarAccount) -> str:
        return str(account.credentials.get("server_url", "")).strip()

    @contextmanager
    def _translate_errors(self) -> Iterator[None]:
        try:
            yield
        except caldav_error.AuthorizationError as exc:
            raise CredentialExpired(f"{self.provider} rejected the credentials: {exc}", self.provider) from exc
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise TransientNetwork(f"{self.provider} request failed: {exc}", self.provider) from exc
        except caldav_error.NotFoundError as exc:
            raise SyncError(f"{self.provider} resource not found: {exc}", self.provider) from exc
        except caldav_error.DAVError as exc:
            raise TransientNetwork(f"{self.provider} server error: {exc}", self.provider) from exc

    def _client(self, account: CalendarAccount) -> Any:
        url = self._server_url(account)
        username = str(account.credentials.get("username", ""))
        if not url or not username:
            raise CredentialExpired(f"{self.provider} account is missing server_url or username", self.provider)
        factory = self.context.caldav_client_factory or caldav.DAVClient
        return factory(url=url, username=username, password=str(account.credentials.get("password", "")))

    def _calendar(self, account: CalendarAccount, calendar: Calendar) -> Any:
        return self._client(account).calendar(url=calendar.external_id)

    def list_calendars(self, account: CalendarAccount) -> list[CalendarRef]:
        refs: list[CalendarRef] = []
        with self._translate_errors():
            principal = self._client(account).principal()
            for remote in principal.calendars():
                url = str(remote.url)
                props = remote.get_properties([dav.DisplayName(), ical.CalendarColor()])
                name = props.get(dav.DisplayName.tag) or getattr(remote, "name", "") or url
                refs.append(
                    CalendarRef(
                        external_id=url,
                        name=str(name),
                        color=_normalize_color(props.get(ical.CalendarColor.tag)),
                    )
                )
        return refs

    def list_events(
        self,
        account: CalendarAccount,
        calendar: Calendar,
        sync_state: SyncState | None,
    ) -> EventListing:
        with self._translate_errors():
            remote = self._calendar(account, calendar)
            ctag = remote.get_properties([GetCTag()]).get(GetCTag.tag)
            ctag = str(ctag) if ctag else None
            if ctag and sync_state is not None and sync_state.ctag == ctag:
                logger.debug("Calendar %s ctag unchanged, skipping listing", calendar.id)
                return EventListing(ctag=ctag, complete=False, unchanged=True)
            resources = remote.events()

        listing = EventListing(ctag=ctag, complete=True)
        for resource in resources:
            href = str(getattr(resource, "url", "") or "")
            try:
                listing.events.extend(parse_resource(resource.data, href, calendar.timezone))
            except (ParseError, ValueError) as exc:
                listing.skipped += 1
                logger.warning("Skipping unreadable %s resource %s: %s", self.provider, href, exc)
        return listing

    def create_event(self, account: CalendarAccount, calendar: Calendar, event: RemoteEvent) -> str:
        raw_ical = build_ical(event, uid=event.ics_uid or str(uuid.uuid4()))
        with self._translate_errors():
            resource = self._calendar(account, calendar).save_event(raw_ical)
        return str(resource.url)

    def _resource(self, account: CalendarAccount, calendar: Calendar, external_id: str) -> Any:
        if OVERRIDE_SEPARATOR in external_id:
            raise ConflictError(
                f"{external_id} is an overridden instance; edit the series instead", self.provider
            )
        return self._calendar(account, calendar).event_by_url(external_id)

    def update_event(
        self,
        account: CalendarAccount,
        calendar: Calendar,
        external_id: str,
        changes: dict[str, Any],
        baseline_etag: str | None = None,
    ) -> None:
        with self._translate_errors():
            resource = self._resource(account, calendar, external_id)
            current = parse_resource(resource.data, external_id, calendar.timezone)[0]
            outcome = apply_change(current_event=current, change=changes, baseline_etag=baseline_etag)
            if outcome.conflicted:
                logger.warning("%s event %s changed remotely since last sync, local fields win", self.provider, external_id)
            if not outcome.applied:
                return
            resource.data = rewrite_series(resource.data, outcome.event)
            resource.save()

    def delete_event(self, account: CalendarAccount, calendar: Calendar, external_id: str) -> None:
        with self._translate_errors():
            try:
                resource = self._resource(account, calendar, external_id)
            except caldav_error.NotFoundError:
                logger.debug("%s event %s already deleted", self.provider, external_id)
                return
            resource.delete()


class ICloudAdapter(CalDAVAdapter):
    """iCloud over CalDAV with an app-specific password."""

    provider = "icloud"

    def _server_url(self, account: CalendarAccount) -> str:
        return str(account.credentials.get("server_url") or self.context.config.icloud.base_url).strip()
