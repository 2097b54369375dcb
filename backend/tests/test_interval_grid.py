from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from unittest import TestCase

from app.services.interval_grid import (
    AEST,
    INTERVAL,
    IntervalGrid,
    OffGridError,
    OutOfRangeError,
    generate_intervals,
)


class GenerateIntervalsTests(TestCase):
    def test_single_day_has_48_half_hour_interval_ends(self) -> None:
        intervals = generate_intervals(date(2025, 10, 1))

        self.assertEqual(len(intervals), 48)
        self.assertEqual(intervals[0], datetime(2025, 10, 1, 0, 30, tzinfo=AEST))
        self.assertEqual(intervals[-1], datetime(2025, 10, 2, 0, 0, tzinfo=AEST))
        for previous, current in zip(intervals, intervals[1:]):
            self.assertEqual(current - previous, timedelta(minutes=30))

    def test_multi_day_grid_matches_concatenated_single_days(self) -> None:
        first_day = date(2025, 10, 1)
        combined = generate_intervals(first_day, 3)
        concatenated = [
            ts
            for offset in range(3)
            for ts in generate_intervals(first_day + timedelta(days=offset))
        ]

        self.assertEqual(len(combined), 144)
        self.assertEqual(combined, concatenated)

    def test_rejects_non_positive_day_count(self) -> None:
        with self.assertRaises(ValueError):
            generate_intervals(date(2025, 10, 1), 0)

    def test_fixed_offset_ignores_daylight_saving(self) -> None:
        # 2025-10-05 is the Sydney DST changeover; the market clock stays at +10:00
        intervals = generate_intervals(date(2025, 10, 5))

        self.assertEqual(len(intervals), 48)
        self.assertTrue(all(ts.utcoffset() == timedelta(hours=10) for ts in intervals))


class IntervalGridTests(TestCase):
    def setUp(self) -> None:
        self.grid = IntervalGrid(date(2025, 10, 1))

    def test_bounds_are_inclusive(self) -> None:
        self.grid.validate(self.grid.range_start)
        self.grid.validate(self.grid.range_end)
        self.assertEqual(self.grid.range_start, datetime(2025, 10, 1, 0, 0, tzinfo=AEST))
        self.assertEqual(self.grid.range_end, datetime(2025, 10, 2, 0, 0, tzinfo=AEST))

    def test_rejects_timestamps_outside_bounds(self) -> None:
        before = self.grid.range_start - timedelta(seconds=1)
        after = self.grid.range_end + timedelta(seconds=1)

        with self.assertRaises(OutOfRangeError) as ctx:
            self.grid.validate(before)
        self.assertIn(before.isoformat(), str(ctx.exception))
        self.assertIn(self.grid.range_start.isoformat(), str(ctx.exception))
        self.assertEqual(ctx.exception.timestamp, before)

        with self.assertRaises(OutOfRangeError):
            self.grid.validate(after)

    def test_one_interval_before_first_day_is_rejected(self) -> None:
        with self.assertRaises(OutOfRangeError):
            self.grid.validate(self.grid.range_start - INTERVAL)

    def test_index_of_maps_interval_ends_to_slots(self) -> None:
        self.assertEqual(self.grid.index_of(datetime(2025, 10, 1, 0, 30, tzinfo=AEST)), 0)
        self.assertEqual(self.grid.index_of(datetime(2025, 10, 1, 1, 0, tzinfo=AEST)), 1)
        self.assertEqual(self.grid.index_of(datetime(2025, 10, 2, 0, 0, tzinfo=AEST)), 47)

    def test_range_start_is_accepted_without_a_slot(self) -> None:
        self.assertIsNone(self.grid.index_of(self.grid.range_start))
        self.assertFalse(self.grid.is_interval_end(self.grid.range_start))

    def test_off_grid_timestamps_are_rejected(self) -> None:
        for ts in (
            datetime(2025, 10, 1, 0, 15, tzinfo=AEST),
            datetime(2025, 10, 1, 0, 31, tzinfo=AEST),
            datetime(2025, 10, 1, 23, 59, 59, tzinfo=AEST),
        ):
            with self.assertRaises(OffGridError) as ctx:
                self.grid.index_of(ts)
            self.assertEqual(ctx.exception.timestamp, ts)
            self.assertEqual(ctx.exception.first_interval_end, datetime(2025, 10, 1, 0, 30, tzinfo=AEST))
            self.assertFalse(self.grid.is_interval_end(ts))
        self.assertTrue(self.grid.is_interval_end(datetime(2025, 10, 1, 0, 30, tzinfo=AEST)))

    def test_index_of_accepts_equivalent_utc_timestamps(self) -> None:
        utc_end = datetime(2025, 9, 30, 14, 30, tzinfo=timezone.utc)

        self.assertEqual(self.grid.index_of(utc_end), 0)
        self.assertEqual(self.grid.interval_ends[0], utc_end)

    def test_rejects_naive_timestamps(self) -> None:
        with self.assertRaises(ValueError):
            self.grid.contains(datetime(2025, 10, 1, 1, 0))

    def test_multi_day_bounds_match_first_and_last_day(self) -> None:
        grid = IntervalGrid(date(2025, 10, 1), 3)

        self.assertEqual(grid.size, 144)
        self.assertEqual(grid.last_day, date(2025, 10, 3))
        self.assertEqual(grid.range_end, datetime(2025, 10, 4, 0, 0, tzinfo=AEST))
        self.assertEqual(grid.index_of(datetime(2025, 10, 2, 0, 30, tzinfo=AEST)), 48)
        with self.assertRaises(OutOfRangeError):
            grid.validate(datetime(2025, 10, 4, 0, 30, tzinfo=AEST))
