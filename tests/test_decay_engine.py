# -*- coding: utf-8 -*-

from __future__ import annotations

import itertools
import math
import unittest
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from sleepfactor.core.decay_engine import (
    average_daily_pattern,
    current_level,
    estimate,
    estimate_level,
    events_in_range,
    format_level,
    generate_level_timeline,
    level_color,
    logged_on_day,
    lookback_days,
    lookback_window,
    remaining_fraction,
    typical_dose,
)
from sleepfactor.core.models import ConsumptionEvent, HabitDecayProfile, InvalidConfiguration

T = datetime(2026, 1, 15, 22, 0, tzinfo=timezone.utc)


def _event(hours_before: float, amount: float, habit_id: str = "1") -> ConsumptionEvent:
    return ConsumptionEvent(habit_id=habit_id, consumed_at=T - timedelta(hours=hours_before), amount=amount)


class TestRemainingFraction(unittest.TestCase):
    def test_zero_elapsed_keeps_full_dose(self) -> None:
        for half_life in (0.5, 5.0, 30.0):
            self.assertEqual(remaining_fraction(0, half_life), 1.0)

    def test_one_half_life_halves(self) -> None:
        self.assertAlmostEqual(remaining_fraction(5.0, 5.0), 0.5, places=12)
        self.assertAlmostEqual(remaining_fraction(30.0, 30.0), 0.5, places=12)

    def test_monotonically_non_increasing(self) -> None:
        values = [remaining_fraction(h * 0.5, 5.0) for h in range(100)]
        self.assertEqual(values, sorted(values, reverse=True))
        self.assertTrue(all(0.0 <= v <= 1.0 for v in values))

    def test_non_positive_half_life_fails_fast(self) -> None:
        for half_life in (0, -1.0, None, float("nan")):
            with self.assertRaises(InvalidConfiguration):
                remaining_fraction(1.0, half_life)

    def test_negative_elapsed_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            remaining_fraction(-0.1, 5.0)


class TestEstimateLevel(unittest.TestCase):
    def test_half_life_property(self) -> None:
        event = _event(5.0, 80.0)
        self.assertAlmostEqual(estimate_level([event], T, 5.0), 40.0, delta=1e-6)

    def test_no_events_is_zero(self) -> None:
        self.assertEqual(estimate_level([], T, 5.0), 0.0)

    def test_future_event_never_contributes(self) -> None:
        future = _event(-0.001, 10_000.0)
        self.assertEqual(estimate_level([future], T, 5.0), 0.0)

    def test_event_at_reference_counts_fully(self) -> None:
        self.assertEqual(estimate_level([_event(0, 42.0)], T, 5.0), 42.0)

    def test_additivity(self) -> None:
        e1, e2 = _event(10.0, 100.0), _event(2.0, 50.0)
        combined = estimate_level([e1, e2], T, 5.0)
        separate = estimate_level([e1], T, 5.0) + estimate_level([e2], T, 5.0)
        self.assertAlmostEqual(combined, separate, places=9)

    def test_order_independence(self) -> None:
        events = [_event(h, a) for h, a in ((1, 95.0), (3.3, 64.0), (7, 0.1), (26, 150.0), (49, 1e6))]
        expected = estimate_level(events, T, 5.0)
        for perm in itertools.permutations(events):
            self.assertEqual(estimate_level(list(perm), T, 5.0), expected)

    def test_caffeine_scenario(self) -> None:
        events = [_event(10.0, 100.0), _event(2.0, 50.0)]
        level = estimate_level(events, T, 5.0)
        self.assertAlmostEqual(level, 100 * 0.25 + 50 * 2 ** (-2 / 5), places=9)
        self.assertAlmostEqual(level, 62.9, delta=0.05)

    def test_zero_amount_log_yields_zero(self) -> None:
        event = _event(1.0, 0.0)
        self.assertEqual(estimate_level([event], T, 5.0), 0.0)
        # only the existence check tells "logged zero" from "never logged"
        self.assertTrue(logged_on_day([event], T.date(), timezone.utc))
        self.assertFalse(logged_on_day([], T.date(), timezone.utc))

    def test_elapsed_time_measured_across_dst_change(self) -> None:
        zurich = ZoneInfo("Europe/Zurich")
        # clocks jump 02:00 -> 03:00 on 2026-03-29: 21 wall-clock hours, 20 real ones
        event = ConsumptionEvent("1", datetime(2026, 3, 29, 1, 0, tzinfo=zurich), 100.0)
        reference = datetime(2026, 3, 29, 22, 0, tzinfo=zurich)
        self.assertAlmostEqual(estimate_level([event], reference, 5.0), 6.25, places=9)

    def test_naive_reference_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            estimate_level([], datetime(2026, 1, 1, 22, 0), 5.0)

    def test_pure_and_repeatable(self) -> None:
        events = [_event(10.0, 100.0), _event(2.0, 50.0)]
        self.assertEqual(estimate_level(events, T, 5.0), estimate_level(events, T, 5.0))

    def test_current_level_uses_now(self) -> None:
        now = T + timedelta(hours=5)
        self.assertAlmostEqual(current_level([_event(0, 10.0)], 5.0, now=now), 5.0, places=12)


class TestEstimate(unittest.TestCase):
    def setUp(self) -> None:
        self.profile = HabitDecayProfile(half_life_hours=5.0, threshold_percent=5.0, habit_id="1", unit="mg")

    def test_bad_rows_rejected_individually(self) -> None:
        rows = [
            {"id": 1, "habit_id": 1, "consumed_at": "2026-01-15T17:00:00Z", "amount": 100},
            {"id": 2, "habit_id": 1, "consumed_at": "2026-01-15T18:00:00Z", "amount": -5},
            {"id": 3, "habit_id": 1, "consumed_at": "yesterday evening", "amount": 10},
            {"id": 4, "habit_id": 2, "consumed_at": "2026-01-15T19:00:00Z", "amount": 10},
            {"id": 5, "habit_id": 1, "amount": 10},
        ]
        with self.assertLogs("sleepfactor.engine", level="WARNING"):
            result = estimate(rows, T, self.profile)
        self.assertAlmostEqual(result.level, 50.0, places=9)
        self.assertEqual(len(result.included_events), 1)
        self.assertEqual(result.included_events[0].event_id, "1")
        self.assertEqual(sorted(r.record["id"] for r in result.rejected_events), [2, 3, 4, 5])
        self.assertEqual(result.unit, "mg")

    def test_future_rows_not_reported_as_included(self) -> None:
        rows = [
            {"habit_id": 1, "consumed_at": "2026-01-15T21:00:00Z", "amount": 10},
            {"habit_id": 1, "consumed_at": "2026-01-15T23:00:00Z", "amount": 10},
        ]
        result = estimate(rows, T, self.profile)
        self.assertEqual(len(result.included_events), 1)
        self.assertEqual(result.rejected_events, ())
        self.assertAlmostEqual(result.level, 10 * 2 ** (-1 / 5), places=9)

    def test_included_events_sorted_by_time(self) -> None:
        rows = [_event(1.0, 1.0), _event(9.0, 2.0), _event(4.0, 3.0)]
        result = estimate(rows, T, self.profile)
        self.assertEqual([e.amount for e in result.included_events], [2.0, 3.0, 1.0])

    def test_naive_rows_read_in_given_zone(self) -> None:
        rows = [{"habit_id": 1, "consumed_at": "2026-01-15T18:00:00", "amount": 100}]
        # 18:00 in Zurich (UTC+1) is 17:00Z, five hours before T
        result = estimate(rows, T, self.profile, tz="Europe/Zurich")
        self.assertAlmostEqual(result.level, 50.0, places=9)

    def test_to_dict_is_json_ready(self) -> None:
        result = estimate([_event(5.0, 10.0)], T, self.profile)
        payload = result.to_dict()
        self.assertEqual(payload["reference_instant"], T.isoformat())
        self.assertEqual(payload["included_events"][0]["amount"], 10.0)
        self.assertEqual(payload["rejected_events"], [])


class TestLookbackWindow(unittest.TestCase):
    def test_policy_values(self) -> None:
        self.assertEqual(lookback_days(5), 3)
        self.assertEqual(lookback_days(30), math.ceil(90 / 24))
        self.assertEqual(lookback_days(30), 4)
        self.assertEqual(lookback_days(24), 3)
        self.assertEqual(lookback_days(25), 4)

    def test_never_below_three_days(self) -> None:
        for half_life in (0.1, 1, 5, 12, 24):
            self.assertGreaterEqual(lookback_days(half_life), 3)

    def test_threshold_only_widens(self) -> None:
        # 5% of a dose is reached after log2(20) ~ 4.32 half-lives
        self.assertEqual(lookback_days(30, 5.0), 6)
        self.assertEqual(lookback_days(5, 5.0), 3)
        self.assertEqual(lookback_days(30, 50.0), lookback_days(30))

    def test_invalid_inputs(self) -> None:
        with self.assertRaises(InvalidConfiguration):
            lookback_days(0)
        with self.assertRaises(InvalidConfiguration):
            lookback_days(5, 0)

    def test_window_ends_at_reference(self) -> None:
        profile = HabitDecayProfile(half_life_hours=30.0, threshold_percent=50.0)
        start, end = lookback_window(T, profile)
        self.assertEqual(end, T)
        self.assertEqual(start, T - timedelta(days=4))

    def test_events_in_range_inclusive(self) -> None:
        events = [_event(0, 1.0), _event(24, 2.0), _event(25, 3.0)]
        selected = events_in_range(events, T - timedelta(hours=24), T)
        self.assertEqual([e.amount for e in selected], [1.0, 2.0])


class TestTimelines(unittest.TestCase):
    def test_timeline_points(self) -> None:
        start = T - timedelta(hours=10)
        events = [ConsumptionEvent("1", start, 100.0)]
        points = generate_level_timeline(events, start, T, 5.0, interval_minutes=300)
        self.assertEqual([p["time"] for p in points], [start, start + timedelta(hours=5), T])
        self.assertEqual(points[0]["level"], 100.0)
        self.assertAlmostEqual(points[1]["level"], 50.0, places=9)
        self.assertAlmostEqual(points[2]["level"], 25.0, places=9)

    def test_timeline_rejects_bad_interval(self) -> None:
        with self.assertRaises(ValueError):
            generate_level_timeline([], T, T, 5.0, interval_minutes=0)

    def test_average_daily_pattern(self) -> None:
        zurich = ZoneInfo("Europe/Zurich")
        d1, d2 = date(2026, 1, 10), date(2026, 1, 11)
        events = [ConsumptionEvent("1", datetime(2026, 1, 10, 8, 0, tzinfo=zurich), 100.0)]
        pattern = average_daily_pattern(events, [d1, d2], 5.0, zurich, start_hour=8, end_hour=9)
        self.assertEqual([p["hour"] for p in pattern], [8.0, 9.0])
        self.assertAlmostEqual(pattern[0]["level"], (100 + 100 * 2 ** -4.8) / 2, places=9)
        self.assertAlmostEqual(pattern[1]["level"], (100 * 2 ** -0.2 + 100 * 2 ** -5) / 2, places=9)

    def test_average_daily_pattern_without_days(self) -> None:
        self.assertEqual(average_daily_pattern([], [], 5.0), [])


class TestPresentationHelpers(unittest.TestCase):
    def test_format_level(self) -> None:
        self.assertEqual(format_level(23.456, "mg"), "23.5 mg")
        self.assertEqual(format_level(2.1, "drinks", decimals=2), "2.10 drinks")
        self.assertEqual(format_level(None, "mg"), "0")
        self.assertEqual(format_level(float("nan"), "mg"), "0")
        self.assertEqual(format_level("abc", "mg"), "0")

    def test_level_color(self) -> None:
        self.assertEqual(level_color(0, 100), "green")
        self.assertEqual(level_color(10, 100), "yellow")
        self.assertEqual(level_color(30, 100), "yellow")
        self.assertEqual(level_color(31, 100), "red")

    def test_typical_dose(self) -> None:
        self.assertEqual(typical_dose([]), 0.0)
        self.assertEqual(typical_dose([_event(1, 100.0), _event(2, 50.0)]), 75.0)


if __name__ == "__main__":
    unittest.main()
