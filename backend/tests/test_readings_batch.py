from __future__ import annotations

import json
from datetime import date, datetime, timedelta, timezone
from unittest import TestCase

from app.services.amber_points import (
    PointMetadata,
    channel_point,
    get_channel_metadata,
    renewables_point,
    spot_price_point,
)
from app.services.interval_grid import AEST, OffGridError, OutOfRangeError, generate_intervals
from app.services.readings_batch import (
    Completeness,
    PointReading,
    ReadingsBatch,
)

DAY = date(2025, 10, 1)
RECEIVED = datetime(2025, 10, 2, 3, 0, tzinfo=timezone.utc)
E1_KWH = channel_point(get_channel_metadata("E1", "general"), "energy")
B1_KWH = channel_point(get_channel_metadata("B1", "feedIn"), "energy")
E1_RATE = channel_point(get_channel_metadata("E1", "general"), "rate")
RENEWABLES = renewables_point()
SPOT = spot_price_point()


def _reading(point: PointMetadata, ts: datetime, value: object, quality: str | None) -> PointReading:
    return PointReading(
        point=point,
        raw_value=value,
        measurement_time=ts,
        received_time=RECEIVED,
        quality=quality,
    )


class ReadingsBatchTests(TestCase):
    def test_add_normalises_quality_and_last_write_wins(self) -> None:
        batch = ReadingsBatch.for_range(DAY)
        ts = generate_intervals(DAY)[3]

        batch.add(_reading(E1_KWH, ts, 100.0, "actual"))
        batch.add(_reading(E1_KWH, ts, 120.0, "Billable"))

        stored = batch.get(ts, "E1.kwh")
        self.assertIsNotNone(stored)
        self.assertEqual(stored.raw_value, 120.0)
        self.assertEqual(stored.quality, "b")
        self.assertEqual(batch.count(), 1)

    def test_add_accepts_inclusive_bounds_and_rejects_outside(self) -> None:
        batch = ReadingsBatch.for_range(DAY)
        start = datetime(2025, 10, 1, 0, 0, tzinfo=AEST)
        end = datetime(2025, 10, 2, 0, 0, tzinfo=AEST)

        batch.add(_reading(E1_KWH, start, 1.0, "a"))
        batch.add(_reading(B1_KWH, end, 1.0, "a"))

        outside = end + timedelta(minutes=30)
        with self.assertRaises(OutOfRangeError) as ctx:
            batch.add(_reading(E1_KWH, outside, 1.0, "a"))
        self.assertIn(outside.isoformat(), str(ctx.exception))
        self.assertIn("E1.kwh", str(ctx.exception))

    def test_range_start_reading_does_not_displace_first_interval(self) -> None:
        batch = ReadingsBatch.for_range(DAY)
        first_end = datetime(2025, 10, 1, 0, 30, tzinfo=AEST)

        batch.add(_reading(E1_KWH, first_end, 2.0, "b"))
        batch.add(_reading(E1_KWH, batch.grid.range_start, 1.0, "e"))

        self.assertEqual(batch.count(), 1)
        stored = batch.get(first_end, "E1.kwh")
        self.assertEqual(stored.raw_value, 2.0)
        self.assertEqual(stored.measurement_time, first_end)
        self.assertEqual(batch.overview("E1.kwh")[:3], "b..")
        self.assertIsNone(batch.get(batch.grid.range_start, "E1.kwh"))

    def test_off_grid_reading_is_rejected(self) -> None:
        batch = ReadingsBatch.for_range(DAY)
        off_grid = datetime(2025, 10, 1, 0, 15, tzinfo=AEST)

        with self.assertRaises(OffGridError):
            batch.add(_reading(E1_KWH, off_grid, 1.0, "a"))

        self.assertTrue(batch.is_empty())
        self.assertIsNone(batch.get(off_grid, "E1.kwh"))

    def test_overview_length_matches_grid(self) -> None:
        batch = ReadingsBatch.for_range(DAY, 3)
        intervals = generate_intervals(DAY, 3)
        batch.add(_reading(E1_KWH, intervals[0], 1.0, "b"))
        batch.add(_reading(E1_KWH, intervals[-1], 1.0, None))

        overview = batch.overview("E1.kwh")
        self.assertEqual(len(overview), 144)
        self.assertEqual(overview[0], "b")
        self.assertEqual(overview[-1], ".")
        self.assertEqual(overview[1:-1], "." * 142)
        self.assertEqual(len(batch.overview("never.seen")), 144)

    def test_completeness(self) -> None:
        batch = ReadingsBatch.for_range(DAY)
        self.assertIs(batch.completeness(), Completeness.NONE)

        intervals = generate_intervals(DAY)
        for ts in intervals:
            batch.add(_reading(E1_KWH, ts, 1.0, "billable"))
        self.assertIs(batch.completeness(), Completeness.ALL_BILLABLE)
        self.assertEqual(batch.uniform_quality(), "b")

        batch.add(_reading(B1_KWH, intervals[5], 1.0, "estimated"))
        self.assertIs(batch.completeness(), Completeness.MIXED)
        self.assertIsNone(batch.uniform_quality())

    def test_characterise_splits_on_quality_and_point_set(self) -> None:
        batch = ReadingsBatch.for_range(DAY)
        intervals = generate_intervals(DAY)
        for index, ts in enumerate(intervals):
            usage_quality = "a" if index < 13 else "b"
            batch.add(_reading(E1_KWH, ts, 1.0, usage_quality))
            batch.add(_reading(B1_KWH, ts, 1.0, usage_quality))
            batch.add(_reading(RENEWABLES, ts, 40.0, "a"))
            batch.add(_reading(SPOT, ts, 9.5, "a"))

        ranges = batch.characterise()
        summary = {(item.quality, item.point_keys, item.num_periods) for item in ranges}

        self.assertEqual(len(ranges), 3)
        self.assertEqual(
            summary,
            {
                ("a", ("B1.kwh", "E1.kwh", "grid.renewables", "grid.spotPerKwh"), 13),
                ("b", ("B1.kwh", "E1.kwh"), 35),
                ("a", ("grid.renewables", "grid.spotPerKwh"), 35),
            },
        )
        first = ranges[0]
        self.assertEqual(first.range_start, datetime(2025, 10, 1, 0, 0, tzinfo=AEST))
        self.assertEqual(first.range_end, datetime(2025, 10, 1, 6, 30, tzinfo=AEST))
        self.assertTrue(
            all(item.range_end == datetime(2025, 10, 2, 0, 0, tzinfo=AEST) for item in ranges[1:])
        )

    def test_characterise_handles_three_way_split(self) -> None:
        batch = ReadingsBatch.for_range(DAY)
        intervals = generate_intervals(DAY)
        for ts in intervals[:4]:
            batch.add(_reading(E1_KWH, ts, 1.0, "b"))
            batch.add(_reading(B1_KWH, ts, 1.0, "e"))
            batch.add(_reading(SPOT, ts, 1.0, "f"))

        ranges = batch.characterise()

        self.assertEqual(
            sorted((item.quality, item.point_keys, item.num_periods) for item in ranges),
            [
                ("b", ("E1.kwh",), 4),
                ("e", ("B1.kwh",), 4),
                ("f", ("grid.spotPerKwh",), 4),
            ],
        )

    def test_info_reports_characterisation_only_when_mixed(self) -> None:
        batch = ReadingsBatch.for_range(DAY)
        for ts in generate_intervals(DAY):
            batch.add(_reading(E1_KWH, ts, 1.0, "b"))

        info = batch.info()
        self.assertIs(info.completeness, Completeness.ALL_BILLABLE)
        self.assertIsNone(info.characterisation)
        self.assertEqual(info.num_records, 48)

        batch.add(_reading(SPOT, generate_intervals(DAY)[0], 1.0, "f"))
        self.assertIsNotNone(batch.info().characterisation)

    def test_canonical_display_rows(self) -> None:
        batch = ReadingsBatch.for_range(DAY)
        first = generate_intervals(DAY)[0]
        batch.add(_reading(E1_RATE, first, 25.4, "a"))
        batch.add(_reading(RENEWABLES, first, 40.6, "a"))

        time_row, rate_row, renewables_row, quality_row = batch.canonical_display()

        self.assertEqual(len(time_row), 48 * 6)
        self.assertEqual(time_row[:12], " 00:00 00:30")
        self.assertEqual(rate_row[:12], "   25¢     -")
        self.assertEqual(renewables_row[:12], "   41%     -")
        self.assertEqual(quality_row[:12], "     a     .")

    def test_sample_records_keep_first_three(self) -> None:
        batch = ReadingsBatch.for_range(DAY)
        intervals = generate_intervals(DAY)
        for index in range(5):
            batch.add(_reading(E1_KWH, intervals[index], float(index), "a"))
        batch.add(_reading(B1_KWH, intervals[0], None, "a"))

        samples = batch.sample_records()

        self.assertEqual(list(samples), ["E1.kwh"])
        self.assertEqual([record.raw_value for record in samples["E1.kwh"].records], [0.0, 1.0, 2.0])
        self.assertEqual(samples["E1.kwh"].num_skipped, 2)

    def test_info_is_json_serialisable(self) -> None:
        batch = ReadingsBatch.for_range(DAY)
        intervals = generate_intervals(DAY)
        batch.add(_reading(E1_KWH, intervals[0], 1.0, "a"))
        batch.add(_reading(E1_KWH, intervals[1], 1.0, "b"))

        payload = json.loads(json.dumps(batch.info(comparison_overviews={"E1.kwh": "AB"}).to_dict()))

        self.assertEqual(payload["completeness"], "mixed")
        self.assertEqual(payload["comparison_overviews"], {"E1.kwh": "AB"})
        self.assertEqual(payload["characterisation"][0]["quality"], "a")

    def test_copy_is_independent(self) -> None:
        batch = ReadingsBatch.for_range(DAY)
        intervals = generate_intervals(DAY)
        batch.add(_reading(E1_KWH, intervals[0], 1.0, "a"))

        clone = batch.copy()
        clone.add(_reading(E1_KWH, intervals[1], 2.0, "a"))

        self.assertEqual(batch.count(), 1)
        self.assertEqual(clone.count(), 2)
