import unittest
from datetime import datetime, timezone

from unical.models import (
    AppConfig,
    SyncConfig,
    SyncErrorEntry,
    SyncReport,
    full_sync_window,
    parse_iso_datetime,
    utc_instant_key,
)


class ModelsTests(unittest.TestCase):
    def test_sync_config_normalizes_values(self) -> None:
        cfg = SyncConfig.from_dict(
            {
                "interval_seconds": 5,
                "duplicate_policy": " LINK ",
                "max_concurrent_syncs": 0,
                "rate_limit_backoff_seconds": 120,
                "rate_limit_backoff_max_seconds": 60,
            }
        )
        self.assertEqual(cfg.interval_seconds, 30)
        self.assertEqual(cfg.duplicate_policy, "link")
        self.assertEqual(cfg.max_concurrent_syncs, 1)
        self.assertEqual(cfg.rate_limit_backoff_max_seconds, 120)
        self.assertEqual(SyncConfig.from_dict({"duplicate_policy": "merge"}).duplicate_policy, "skip")

    def test_app_config_defaults(self) -> None:
        cfg = AppConfig.from_dict({"google": {"api_base_url": "https://example.com/calendar/v3/"}})
        self.assertEqual(cfg.google.api_base_url, "https://example.com/calendar/v3")
        self.assertEqual(cfg.recurrence.max_occurrences, 365)
        self.assertEqual(cfg.icloud.base_url, "https://caldav.icloud.com")

    def test_instant_key_is_utc(self) -> None:
        self.assertEqual(utc_instant_key("2025-01-08T13:00:00+01:00"), "2025-01-08T12:00:00Z")
        self.assertEqual(parse_iso_datetime("2025-01-08T12:00:00"), datetime(2025, 1, 8, 12, tzinfo=timezone.utc))
        self.assertIsNone(parse_iso_datetime("  "))

    def test_full_sync_window_spans_whole_days(self) -> None:
        start, end = full_sync_window(datetime(2025, 6, 15, 13, 30, tzinfo=timezone.utc), 10, 20)
        self.assertEqual(start, datetime(2025, 6, 5, tzinfo=timezone.utc))
        self.assertEqual((end.year, end.month, end.day, end.hour), (2025, 7, 5, 23))

    def test_sync_report_flags(self) -> None:
        report = SyncReport(account_id="acc-1")
        self.assertTrue(report.success)
        report.errors.append(SyncErrorEntry(calendar_id="cal-1", kind="rate_limited", message="429"))
        report.errors.append(SyncErrorEntry(calendar_id="cal-2", kind="credential_expired", message="401"))
        self.assertFalse(report.success)
        self.assertTrue(report.rate_limited)
        self.assertTrue(report.needs_reconnect)
        self.assertEqual(report.warning_count, 1)
        self.assertEqual(report.to_dict()["errors"][1]["kind"], "credential_expired")


if __name__ == "__main__":
    unittest.main()
