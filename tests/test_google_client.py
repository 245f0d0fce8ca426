import json
import unittest
from datetime import datetime, timedelta, timezone
from unittest import mock

import requests

from unical.errors import CredentialExpired, RateLimited
from unical.google_client import GoogleCalendarAdapter, parse_exdate_line
from unical.models import AppConfig, Calendar, CalendarAccount, SyncState
from unical.providers import AdapterContext


def _response(status: int, payload=None, headers=None) -> requests.Response:
    response = requests.Response()
    response.status_code = status
    response._content = json.dumps(payload or {}).encode("utf-8")
    response.headers.update(headers or {})
    return response


MASTER = {
    "id": "master-1",
    "status": "confirmed",
    "summary": "Weekly sync",
    "location": "Room 1",
    "iCalUID": "master-1@google.com",
    "etag": '"e1"',
    "start": {"dateTime": "2025-01-06T09:00:00+01:00", "timeZone": "Europe/Berlin"},
    "end": {"dateTime": "2025-01-06T10:00:00+01:00", "timeZone": "Europe/Berlin"},
    "recurrence": ["RRULE:FREQ=WEEKLY;BYDAY=MO", "EXDATE;TZID=Europe/Berlin:20250113T090000"],
}
CANCELLED_INSTANCE = {
    "id": "master-1_20250120T080000Z",
    "status": "cancelled",
    "recurringEventId": "master-1",
    "originalStartTime": {"dateTime": "2025-01-20T09:00:00+01:00", "timeZone": "Europe/Berlin"},
}
MALFORMED = {"id": "broken", "status": "confirmed", "summary": "No times"}


class GoogleCalendarAdapterTests(unittest.TestCase):
    def setUp(self) -> None:
        self.session = mock.Mock()
        self.adapter = GoogleCalendarAdapter(AdapterContext(config=AppConfig(), session=self.session))
        self.account = CalendarAccount(
            id="acc-1", user_id="user-1", provider="google", credentials={"access_token": "tok"}
        )
        self.calendar = Calendar(id="cal-1", account_id="acc-1", external_id="primary", timezone="Europe/Berlin")

    def test_list_calendars_follows_pages_and_maps_roles(self) -> None:
        self.session.request.side_effect = [
            _response(200, {"items": [{"id": "primary", "summary": "Me", "accessRole": "owner", "primary": True}],
                            "nextPageToken": "p2"}),
            _response(200, {"items": [{"id": "holidays", "summary": "Holidays", "accessRole": "reader"}]}),
        ]

        calendars = self.adapter.list_calendars(self.account)

        self.assertEqual([item.external_id for item in calendars], ["primary", "holidays"])
        self.assertTrue(calendars[0].is_primary)
        self.assertFalse(calendars[0].is_read_only)
        self.assertTrue(calendars[1].is_read_only)
        _, kwargs = self.session.request.call_args
        self.assertEqual(kwargs["params"], {"pageToken": "p2"})
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer tok")

    def test_expired_sync_token_falls_back_to_full_listing(self) -> None:
        calls = []

        def route(method, url, **kwargs):
            calls.append(dict(kwargs["params"]))
            if "syncToken" in kwargs["params"]:
                return _response(410, {"error": {"code": 410, "message": "Sync token is no longer valid"}})
            return _response(200, {"items": [MASTER, CANCELLED_INSTANCE, MALFORMED], "nextSyncToken": "fresh"})

        self.session.request.side_effect = route
        state = SyncState(account_id="acc-1", calendar_id="cal-1", sync_token="stale")

        listing = self.adapter.list_events(self.account, self.calendar, state)

        self.assertEqual(len(calls), 2)
        self.assertNotIn("syncToken", calls[1])
        self.assertIn("timeMin", calls[1])
        self.assertTrue(listing.complete)
        self.assertIsNotNone(listing.window_start)
        self.assertEqual(listing.sync_token, "fresh")
        self.assertEqual(listing.skipped, 1)
        self.assertEqual([event.external_id for event in listing.events], ["master-1"])

        master = listing.events[0]
        self.assertEqual(master.rrule, "FREQ=WEEKLY;BYDAY=MO")
        self.assertEqual(master.ics_uid, "master-1@google.com")
        excluded = sorted(value.astimezone(timezone.utc) for value in master.ex_dates)
        self.assertEqual(
            excluded,
            [
                datetime(2025, 1, 13, 8, 0, tzinfo=timezone.utc),
                datetime(2025, 1, 20, 8, 0, tzinfo=timezone.utc),
            ],
        )

    def test_incremental_listing_reports_orphan_exceptions(self) -> None:
        self.session.request.return_value = _response(
            200, {"items": [CANCELLED_INSTANCE], "nextSyncToken": "next"}
        )
        state = SyncState(account_id="acc-1", calendar_id="cal-1", sync_token="current")

        listing = self.adapter.list_events(self.account, self.calendar, state)

        self.assertFalse(listing.complete)
        self.assertEqual(listing.events, [])
        self.assertEqual(list(listing.ex_date_additions), ["master-1"])
        self.assertEqual(listing.sync_token, "next")

    def test_update_overlays_changes_on_current_remote_copy(self) -> None:
        current = dict(MASTER, etag='"e2"', location="Room 7")
        self.session.request.side_effect = [_response(200, current), _response(200, current)]

        self.adapter.update_event(
            self.account, self.calendar, "master-1", {"title": "Weekly sync (new)"}, baseline_etag='"e1"'
        )

        method, url = self.session.request.call_args[0]
        body = self.session.request.call_args[1]["json"]
        self.assertEqual(method, "PUT")
        self.assertTrue(url.endswith("/calendars/primary/events/master-1"))
        self.assertEqual(body["summary"], "Weekly sync (new)")
        self.assertEqual(body["location"], "Room 7")
        self.assertEqual(body["recurrence"][0], "RRULE:FREQ=WEEKLY;BYDAY=MO")

    def test_missing_access_token_is_credential_expired(self) -> None:
        account = CalendarAccount(id="acc-2", user_id="user-1", provider="google")
        with self.assertRaises(CredentialExpired):
            self.adapter.list_calendars(account)
        self.session.request.assert_not_called()

    def test_rate_limit_propagates(self) -> None:
        self.session.request.return_value = _response(429, headers={"Retry-After": "12"})
        with self.assertRaises(RateLimited) as ctx:
            self.adapter.list_events(self.account, self.calendar, None)
        self.assertEqual(ctx.exception.retry_after, 12.0)

    def test_delete_of_gone_event_is_ignored(self) -> None:
        self.session.request.return_value = _response(410)
        self.adapter.delete_event(self.account, self.calendar, "master-1")
        self.assertEqual(self.session.request.call_args[0][0], "DELETE")


class ParseExdateLineTests(unittest.TestCase):
    def test_mixed_values(self) -> None:
        values = parse_exdate_line("EXDATE;TZID=America/New_York:20250301T090000,20250308T090000")
        self.assertEqual(values[0].astimezone(timezone.utc).hour, 14)
        self.assertEqual(values[1] - values[0], timedelta(days=7))

        utc_values = parse_exdate_line("EXDATE:20250301T090000Z")
        self.assertEqual(utc_values, [datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)])


if __name__ == "__main__":
    unittest.main()
