import tempfile
import unittest
from pathlib import Path
from unittest import mock

from fastapi.testclient import TestClient

from unical.errors import CredentialExpired, RateLimited, TransientNetwork
from unical.models import CalendarRef
from unical.web_api import create_app


class WebApiTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        config_path = str(Path(self.temp_dir.name) / "config.yaml")
        db_path = str(Path(self.temp_dir.name) / "unical.db")
        self.app = create_app(config_path=config_path, db_path=db_path)
        self.context = self.app.state.context
        self.client = TestClient(self.app)

    def tearDown(self) -> None:
        self.context.queue.shutdown(wait=False)
        self.temp_dir.cleanup()

    def _local_calendar(self) -> str:
        resp = self.client.post("/api/accounts", json={"user_id": "user-1", "provider": "local"})
        self.assertEqual(resp.status_code, 201)
        account_id = resp.json()["account"]["id"]
        return self.context.store.list_calendars(account_id)[0].id

    def _create_event(self, calendar_id: str, **kwargs) -> dict:
        payload = {
            "calendar_id": calendar_id,
            "title": "Standup",
            "start": "2025-01-06T09:00:00Z",
            "end": "2025-01-06T09:15:00Z",
        }
        payload.update(kwargs)
        resp = self.client.post("/api/events", json=payload)
        self.assertEqual(resp.status_code, 201, resp.text)
        return resp.json()["event"]

    def _occurrences(self) -> list:
        resp = self.client.get(
            "/api/events", params={"start": "2025-01-01T00:00:00Z", "end": "2025-01-31T23:59:59Z"}
        )
        self.assertEqual(resp.status_code, 200, resp.text)
        return resp.json()["occurrences"]

    def test_healthz(self) -> None:
        resp = self.client.get("/healthz")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"status": "ok"})

    def test_config_roundtrip(self) -> None:
        resp = self.client.put("/api/config", json={"payload": {"sync": {"interval_seconds": 900}}})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["config"]["sync"]["interval_seconds"], 900)
        self.assertEqual(self.client.get("/api/config").json()["sync"]["interval_seconds"], 900)

    def test_connect_remote_account_queues_initial_sync(self) -> None:
        adapter = mock.Mock()
        adapter.verify.return_value = [CalendarRef(external_id="primary")]
        self.context.adapters.register("google", adapter)

        with mock.patch.object(self.context.queue, "submit") as submit:
            resp = self.client.post(
                "/api/accounts",
                json={"user_id": "user-1", "provider": "google", "credentials": {"access_token": "tok"}},
            )

        self.assertEqual(resp.status_code, 202)
        body = resp.json()
        self.assertEqual(body["status"], "syncing")
        self.assertNotIn("credentials", body["account"])
        submit.assert_called_once_with(body["account"]["id"], trigger="connect")

    def test_connect_with_rejected_credentials(self) -> None:
        adapter = mock.Mock()
        adapter.verify.side_effect = CredentialExpired("401", "microsoft")
        self.context.adapters.register("microsoft", adapter)

        resp = self.client.post("/api/accounts", json={"user_id": "user-1", "provider": "microsoft"})

        self.assertEqual(resp.status_code, 401)
        self.assertEqual(self.context.store.list_accounts(), [])

    def test_connect_with_unreachable_provider(self) -> None:
        adapter = mock.Mock()
        adapter.verify.side_effect = TransientNetwork("timeout", "caldav")
        self.context.adapters.register("caldav", adapter)

        resp = self.client.post("/api/accounts", json={"user_id": "user-1", "provider": "caldav"})

        self.assertEqual(resp.status_code, 502)

    def test_unknown_provider(self) -> None:
        resp = self.client.post("/api/accounts", json={"user_id": "user-1", "provider": "yahoo"})
        self.assertEqual(resp.status_code, 400)

    def test_recurring_event_and_exception_date(self) -> None:
        calendar_id = self._local_calendar()
        event = self._create_event(calendar_id, rrule="FREQ=DAILY;COUNT=5")
        self.assertTrue(event["is_recurring"])
        self.assertEqual(len(self._occurrences()), 5)

        resp = self.client.post(f"/api/events/{event['id']}/exceptions", json={"date": "2025-01-08T09:00:00Z"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["recurrence"]["ex_dates"], ["2025-01-08T09:00:00Z"])

        days = [item["start"][:10] for item in self._occurrences()]
        self.assertEqual(days, ["2025-01-06", "2025-01-07", "2025-01-09", "2025-01-10"])

    def test_invalid_rrule_is_rejected(self) -> None:
        calendar_id = self._local_calendar()
        resp = self.client.post(
            "/api/events",
            json={
                "calendar_id": calendar_id,
                "start": "2025-01-06T09:00:00Z",
                "end": "2025-01-06T10:00:00Z",
                "rrule": "BYDAY=MO",
            },
        )
        self.assertEqual(resp.status_code, 400)

    def test_update_and_delete_event(self) -> None:
        calendar_id = self._local_calendar()
        event = self._create_event(calendar_id)

        resp = self.client.patch(f"/api/events/{event['id']}", json={"title": "Daily standup"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["event"]["title"], "Daily standup")

        resp = self.client.patch(f"/api/events/{event['id']}", json={"end": "2025-01-06T08:00:00Z"})
        self.assertEqual(resp.status_code, 400)

        self.assertEqual(self.client.delete(f"/api/events/{event['id']}").status_code, 200)
        self.assertEqual(self.client.delete(f"/api/events/{event['id']}").status_code, 404)
        self.assertEqual(self._occurrences(), [])

    def test_move_event_between_calendars(self) -> None:
        calendar_id = self._local_calendar()
        account_id = self.context.store.get_calendar(calendar_id).account_id
        other = self.context.store.upsert_calendar(account_id, CalendarRef(external_id="archive", name="Archive"))
        event = self._create_event(calendar_id)

        resp = self.client.post(f"/api/events/{event['id']}/move", json={"calendar_id": other.id})

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["move"]["errors"], [])
        self.assertEqual(self.context.store.get_event(event["id"]).calendar_id, other.id)

        resp = self.client.post(f"/api/events/{event['id']}/move", json={"calendar_id": "missing"})
        self.assertEqual(resp.status_code, 404)

    def test_hidden_calendar_drops_out_of_range_queries(self) -> None:
        calendar_id = self._local_calendar()
        self._create_event(calendar_id)

        resp = self.client.patch(f"/api/calendars/{calendar_id}", json={"is_visible": False, "color": "#aa5500"})

        self.assertEqual(resp.status_code, 200)
        self.assertFalse(resp.json()["calendar"]["is_visible"])
        self.assertEqual(resp.json()["calendar"]["color"], "#aa5500")
        self.assertEqual(self._occurrences(), [])
        self.assertEqual(self.client.patch(f"/api/calendars/{calendar_id}", json={"color": "red"}).status_code, 422)
        self.assertEqual(self.client.patch("/api/calendars/missing", json={"is_visible": True}).status_code, 404)

    def test_invalid_window(self) -> None:
        resp = self.client.get("/api/events", params={"start": "2025-02-01T00:00:00Z", "end": "2025-01-01T00:00:00Z"})
        self.assertEqual(resp.status_code, 400)
        resp = self.client.get("/api/events", params={"start": "soon", "end": "later"})
        self.assertEqual(resp.status_code, 400)

    def _google_account(self, adapter: mock.Mock) -> str:
        self.context.adapters.register("google", adapter)
        account = self.context.store.create_account(
            user_id="user-1", provider="google", credentials={"access_token": "tok"}
        )
        return account.id

    def test_manual_sync_of_paused_provider_is_refused(self) -> None:
        adapter = mock.Mock()
        account_id = self._google_account(adapter)
        self.context.scheduler.backoff.pause("google", retry_after=600)

        resp = self.client.post(f"/api/accounts/{account_id}/sync")

        self.assertEqual(resp.status_code, 429)
        self.assertGreater(int(resp.headers["Retry-After"]), 0)
        adapter.list_calendars.assert_not_called()

    def test_manual_sync_runs_through_the_queue_and_pauses_on_rate_limit(self) -> None:
        adapter = mock.Mock()
        adapter.list_calendars.side_effect = RateLimited("429", "google", retry_after=600)
        account_id = self._google_account(adapter)

        with mock.patch.object(self.context.queue, "submit", wraps=self.context.queue.submit) as submit:
            resp = self.client.post(f"/api/accounts/{account_id}/sync")

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["errors"][0]["kind"], "rate_limited")
        submit.assert_called_once_with(account_id, trigger="manual")

        self.context.queue.shutdown(wait=True)
        self.assertTrue(self.context.scheduler.backoff.is_paused("google"))
        self.assertEqual(self.client.post(f"/api/accounts/{account_id}/sync").status_code, 429)
        self.assertEqual(adapter.list_calendars.call_count, 1)

    def test_accounts_and_sync_status(self) -> None:
        self._local_calendar()

        accounts = self.client.get("/api/accounts").json()["accounts"]
        self.assertEqual(len(accounts), 1)
        self.assertEqual(accounts[0]["calendars"][0]["external_id"], "local")

        resp = self.client.post(f"/api/accounts/{accounts[0]['id']}/sync")
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.json()["success"])

        status = self.client.get("/api/sync/status").json()
        self.assertEqual(status["in_flight"], [])
        self.assertIn("runs", status)

        self.assertEqual(self.client.delete(f"/api/accounts/{accounts[0]['id']}").status_code, 200)
        self.assertEqual(self.client.post(f"/api/accounts/{accounts[0]['id']}/sync").status_code, 404)


if __name__ == "__main__":
    unittest.main()
