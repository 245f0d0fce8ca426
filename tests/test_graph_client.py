import json
import unittest
from datetime import datetime, timezone
from unittest import mock

import requests

from unical.errors import RRuleParseError
from unical.graph_client import MicrosoftGraphAdapter, graph_recurrence_to_rrule, rrule_to_graph_recurrence
from unical.models import AppConfig, Calendar, CalendarAccount
from unical.providers import AdapterContext
from unical.rrule import expand, parse_rrule


def _response(status: int, payload=None) -> requests.Response:
    response = requests.Response()
    response.status_code = status
    response._content = json.dumps(payload or {}).encode("utf-8")
    return response


class GraphRecurrenceTests(unittest.TestCase):
    def test_relative_monthly_uses_setpos(self) -> None:
        rrule = graph_recurrence_to_rrule(
            {
                "pattern": {"type": "relativeMonthly", "interval": 1, "daysOfWeek": ["tuesday"], "index": "second"},
                "range": {"type": "endDate", "startDate": "2025-01-14", "endDate": "2025-12-31"},
            }
        )
        self.assertEqual(rrule, "FREQ=MONTHLY;BYDAY=TU;BYSETPOS=2;UNTIL=20251231T235959Z")

        starts = expand(
            parse_rrule(rrule),
            datetime(2025, 1, 14, 10, 0, tzinfo=timezone.utc),
            (),
            datetime(2025, 2, 1, tzinfo=timezone.utc),
            datetime(2025, 3, 31, tzinfo=timezone.utc),
        )
        self.assertEqual([(item.month, item.day) for item in starts], [(2, 11), (3, 11)])

    def test_weekly_numbered(self) -> None:
        rrule = graph_recurrence_to_rrule(
            {
                "pattern": {"type": "weekly", "interval": 2, "daysOfWeek": ["Monday", "Wednesday"]},
                "range": {"type": "numbered", "numberOfOccurrences": 10},
            }
        )
        self.assertEqual(rrule, "FREQ=WEEKLY;INTERVAL=2;BYDAY=MO,WE;COUNT=10")

    def test_relative_yearly_last_weekday(self) -> None:
        rrule = graph_recurrence_to_rrule(
            {
                "pattern": {"type": "relativeYearly", "daysOfWeek": ["friday"], "month": 3, "index": "last"},
                "range": {"type": "noEnd"},
            }
        )
        self.assertEqual(rrule, "FREQ=YEARLY;BYDAY=FR;BYMONTH=3;BYSETPOS=-1")

    def test_unsupported_pattern(self) -> None:
        with self.assertRaises(RRuleParseError):
            graph_recurrence_to_rrule({"pattern": {"type": "hourly"}})

    def test_rrule_back_to_graph(self) -> None:
        recurrence = rrule_to_graph_recurrence(
            "FREQ=MONTHLY;BYDAY=TU;BYSETPOS=2;UNTIL=20251231T235959Z",
            datetime(2025, 1, 14, 10, 0, tzinfo=timezone.utc),
        )
        self.assertEqual(
            recurrence["pattern"],
            {"type": "relativeMonthly", "interval": 1, "daysOfWeek": ["tuesday"], "index": "second"},
        )
        self.assertEqual(
            recurrence["range"],
            {"type": "endDate", "startDate": "2025-01-14", "endDate": "2025-12-31"},
        )


class MicrosoftGraphAdapterTests(unittest.TestCase):
    def setUp(self) -> None:
        self.session = mock.Mock()
        self.adapter = MicrosoftGraphAdapter(AdapterContext(config=AppConfig(), session=self.session))
        self.account = CalendarAccount(
            id="acc-1", user_id="user-1", provider="microsoft", credentials={"access_token": "tok"}
        )
        self.calendar = Calendar(id="cal-1", account_id="acc-1", external_id="AAMk=")

    def test_list_events_follows_next_link(self) -> None:
        first = {
            "value": [
                {
                    "id": "ev-1",
                    "subject": "Retro",
                    "iCalUId": "uid-retro",
                    "@odata.etag": 'W/"abc"',
                    "showAs": "tentative",
                    "start": {"dateTime": "2025-01-06T09:00:00.0000000", "timeZone": "UTC"},
                    "end": {"dateTime": "2025-01-06T10:00:00.0000000", "timeZone": "UTC"},
                    "location": {"displayName": "Room 3"},
                }
            ],
            "@odata.nextLink": "https://graph.microsoft.com/v1.0/me/calendars/AAMk=/events?$skip=1",
        }
        second = {
            "value": [
                {"id": "ev-2", "isCancelled": True},
                {"id": "ev-3", "subject": "No times"},
            ]
        }
        self.session.request.side_effect = [_response(200, first), _response(200, second)]

        listing = self.adapter.list_events(self.account, self.calendar, None)

        self.assertTrue(listing.complete)
        self.assertEqual(listing.skipped, 1)
        self.assertEqual(len(listing.events), 1)
        event = listing.events[0]
        self.assertEqual(event.start, datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc))
        self.assertEqual(event.ics_uid, "uid-retro")
        self.assertEqual(event.status, "tentative")
        self.assertEqual(event.location, "Room 3")
        self.assertEqual(event.etag, 'W/"abc"')
        second_call = self.session.request.call_args_list[1]
        self.assertEqual(second_call[0][1], first["@odata.nextLink"])
        self.assertNotIn("params", second_call[1])

    def test_update_retries_without_if_match_on_conflict(self) -> None:
        self.session.request.side_effect = [_response(412), _response(200, {"id": "ev-1"})]

        self.adapter.update_event(self.account, self.calendar, "ev-1", {"title": "Renamed"}, baseline_etag='W/"abc"')

        first, second = self.session.request.call_args_list
        self.assertEqual(first[1]["headers"]["If-Match"], 'W/"abc"')
        self.assertNotIn("If-Match", second[1]["headers"])
        self.assertEqual(second[1]["json"], {"subject": "Renamed"})

    def test_exception_dates_delete_matching_instances(self) -> None:
        instances = {
            "value": [
                {"id": "inst-1", "originalStart": "2025-01-13T09:00:00Z"},
            ]
        }
        self.session.request.side_effect = [_response(200, instances), _response(204)]

        self.adapter.update_event(self.account, self.calendar, "ev-1", {"ex_dates": ["2025-01-13T09:00:00Z"]})

        methods = [call[0][0] for call in self.session.request.call_args_list]
        self.assertEqual(methods, ["GET", "DELETE"])
        self.assertTrue(self.session.request.call_args[0][1].endswith("/me/events/inst-1"))


if __name__ == "__main__":
    unittest.main()
