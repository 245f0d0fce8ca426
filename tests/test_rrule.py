import unittest
from datetime import datetime, timedelta, timezone

from unical.errors import RRuleParseError
from unical.models import Event
from unical.rrule import build_rrule, expand, materialize, parse_rrule, rrule_bounds


def _utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class ParseRRuleTests(unittest.TestCase):
    def test_unknown_keys_and_bare_parts_are_ignored(self) -> None:
        rule = parse_rrule("FREQ=DAILY;X-NAME=standup;garbage;COUNT=3")
        self.assertEqual(rule.freq, "DAILY")
        self.assertEqual(rule.count, 3)

    def test_missing_freq_is_an_error(self) -> None:
        with self.assertRaises(RRuleParseError):
            parse_rrule("INTERVAL=2;COUNT=3")

    def test_malformed_known_value_is_an_error(self) -> None:
        with self.assertRaises(RRuleParseError):
            parse_rrule("FREQ=DAILY;COUNT=many")
        with self.assertRaises(RRuleParseError):
            parse_rrule("FREQ=WEEKLY;BYDAY=XX")
        with self.assertRaises(RRuleParseError):
            parse_rrule("FREQ=MONTHLY;BYDAY=TU;BYSETPOS=0")

    def test_ordinal_prefix_is_stripped_from_weekdays(self) -> None:
        rule = parse_rrule("RRULE:FREQ=MONTHLY;BYDAY=2TU,-1FR")
        self.assertEqual(rule.by_day, ("2TU", "-1FR"))
        self.assertEqual(rule.weekdays, (1, 4))

    def test_date_only_until_covers_the_whole_day(self) -> None:
        rule = parse_rrule("FREQ=DAILY;UNTIL=20250108")
        self.assertEqual(rule.until, _utc(2025, 1, 8, 23, 59, 59))

    def test_bounds_follow_the_rule_string(self) -> None:
        self.assertEqual(rrule_bounds("FREQ=DAILY;COUNT=4"), (None, 4))
        self.assertEqual(
            rrule_bounds("FREQ=DAILY;UNTIL=20250110T000000Z"),
            (_utc(2025, 1, 10), None),
        )

    def test_build_rrule_writes_canonical_order(self) -> None:
        rule = parse_rrule("BYDAY=MO,FR;COUNT=4;FREQ=WEEKLY;INTERVAL=2")
        self.assertEqual(build_rrule(rule), "FREQ=WEEKLY;INTERVAL=2;COUNT=4;BYDAY=MO,FR")


class ExpandTests(unittest.TestCase):
    def test_weekly_mon_wed_fri_count_six(self) -> None:
        seed = Event(
            id="evt-1",
            calendar_id="cal-1",
            title="Gym",
            start=_utc(2025, 1, 6, 9, 0),
            end=_utc(2025, 1, 6, 10, 30),
        )
        rule = parse_rrule("FREQ=WEEKLY;INTERVAL=1;BYDAY=MO,WE,FR;COUNT=6")
        starts = expand(rule, seed.start, (), _utc(2025, 1, 6), _utc(2025, 1, 19, 23, 59, 59))

        self.assertEqual(
            starts,
            [_utc(2025, 1, day, 9, 0) for day in (6, 8, 10, 13, 15, 17)],
        )
        occurrences = materialize(seed, starts)
        self.assertEqual(len(occurrences), 6)
        for occurrence in occurrences:
            self.assertEqual(occurrence.end - occurrence.start, timedelta(minutes=90))
            self.assertTrue(occurrence.is_recurring_instance)

    def test_daily_until_excludes_the_until_day(self) -> None:
        rule = parse_rrule("FREQ=DAILY;UNTIL=20250110T000000Z")
        starts = expand(rule, _utc(2025, 1, 6, 9, 0), (), _utc(2025, 1, 1), _utc(2025, 1, 31))
        self.assertEqual([item.day for item in starts], [6, 7, 8, 9])

    def test_until_before_window_returns_nothing(self) -> None:
        for text in ("FREQ=DAILY;UNTIL=20240101T000000Z", "FREQ=YEARLY;INTERVAL=3;UNTIL=20240101T000000Z"):
            rule = parse_rrule(text)
            self.assertEqual(expand(rule, _utc(2023, 6, 1, 9), (), _utc(2025, 1, 1), _utc(2025, 12, 31)), [])

    def test_exception_dates_are_removed(self) -> None:
        rule = parse_rrule("FREQ=DAILY;COUNT=5")
        starts = expand(
            rule,
            _utc(2025, 1, 6, 9, 0),
            ["2025-01-08T09:00:00Z", _utc(2025, 1, 9, 9, 0)],
            _utc(2025, 1, 1),
            _utc(2025, 1, 31),
        )
        self.assertEqual([item.day for item in starts], [6, 7, 10])

    def test_count_applies_to_the_whole_series(self) -> None:
        rule = parse_rrule("FREQ=DAILY;COUNT=5")
        starts = expand(rule, _utc(2025, 1, 6, 9, 0), (), _utc(2025, 1, 9), _utc(2025, 1, 31))
        self.assertEqual([item.day for item in starts], [9, 10])

    def test_open_ended_rule_stays_inside_the_window(self) -> None:
        rule = parse_rrule("FREQ=DAILY")
        window_start, window_end = _utc(2025, 1, 10), _utc(2025, 2, 8, 23, 59, 59)
        starts = expand(rule, _utc(2025, 1, 6, 9, 0), (), window_start, window_end)

        self.assertEqual(len(starts), 30)
        self.assertTrue(all(window_start <= item <= window_end for item in starts))
        self.assertTrue(all(a < b for a, b in zip(starts, starts[1:])))

    def test_window_bounds_are_inclusive(self) -> None:
        rule = parse_rrule("FREQ=DAILY")
        starts = expand(rule, _utc(2025, 1, 6, 9, 0), (), _utc(2025, 1, 7, 9, 0), _utc(2025, 1, 9, 9, 0))
        self.assertEqual([item.day for item in starts], [7, 8, 9])

    def test_max_occurrences_truncates_pathological_windows(self) -> None:
        rule = parse_rrule("FREQ=DAILY")
        seed = _utc(2025, 1, 1, 8, 0)
        self.assertEqual(len(expand(rule, seed, (), seed, _utc(2125, 1, 1))), 365)
        self.assertEqual(len(expand(rule, seed, (), seed, _utc(2125, 1, 1), max_occurrences=10)), 10)

    def test_ordinal_is_ignored_without_setpos(self) -> None:
        # BYDAY=2TU matches every Tuesday; only BYSETPOS selects the second one.
        rule = parse_rrule("FREQ=MONTHLY;BYDAY=2TU")
        starts = expand(rule, _utc(2025, 1, 14, 10), (), _utc(2025, 1, 1), _utc(2025, 1, 31))
        self.assertEqual([item.day for item in starts], [14, 21, 28])

    def test_setpos_selects_the_nth_weekday(self) -> None:
        rule = parse_rrule("FREQ=MONTHLY;BYDAY=TU;BYSETPOS=2")
        starts = expand(rule, _utc(2025, 1, 14, 10), (), _utc(2025, 1, 1), _utc(2025, 3, 31))
        self.assertEqual([(item.month, item.day) for item in starts], [(1, 14), (2, 11), (3, 11)])

    def test_monthly_day_31_skips_short_months(self) -> None:
        rule = parse_rrule("FREQ=MONTHLY;BYMONTHDAY=31;COUNT=3")
        starts = expand(rule, _utc(2025, 1, 31, 12), (), _utc(2025, 1, 1), _utc(2025, 12, 31))
        self.assertEqual([item.month for item in starts], [1, 3, 5])

    def test_wall_clock_time_survives_dst(self) -> None:
        rule = parse_rrule("FREQ=DAILY;COUNT=4")
        seed = _utc(2025, 3, 7, 14, 0)  # 09:00 in New York before DST starts
        starts = expand(rule, seed, (), _utc(2025, 3, 1), _utc(2025, 3, 31), tz="America/New_York")
        self.assertEqual([item.hour for item in starts], [14, 14, 13, 13])

    def test_last_weekday_of_month_via_negative_setpos(self) -> None:
        rule = parse_rrule("FREQ=YEARLY;BYDAY=FR;BYMONTH=3;BYSETPOS=-1")
        starts = expand(rule, _utc(2025, 3, 28, 16), (), _utc(2025, 1, 1), _utc(2026, 12, 31))
        self.assertEqual([(item.year, item.day) for item in starts], [(2025, 28), (2026, 27)])

    def test_seed_outside_the_rule_is_not_an_occurrence(self) -> None:
        rule = parse_rrule("FREQ=WEEKLY;BYDAY=MO;COUNT=2")
        starts = expand(rule, _utc(2025, 1, 7, 9), (), _utc(2025, 1, 1), _utc(2025, 1, 31))
        self.assertEqual([item.day for item in starts], [13, 20])


if __name__ == "__main__":
    unittest.main()
