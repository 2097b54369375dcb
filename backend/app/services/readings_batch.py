from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field, replace
from datetime import date, datetime, tzinfo
from enum import Enum
from typing import Any

from app.services.amber_points import PointMetadata
from app.services.interval_grid import AEST, INTERVALS_PER_DAY, IntervalGrid
from app.services.interval_quality import MISSING_CODE, TOP_TIER, encode

SAMPLE_RECORD_LIMIT = 3
CANONICAL_COLUMN_WIDTH = 6
CANONICAL_RATE_KEY = "E1.perKwh"
CANONICAL_RENEWABLES_KEY = "grid.renewables"


class OverviewLengthError(RuntimeError):
    pass


class Completeness(str, Enum):
    NONE = "none"
    MIXED = "mixed"
    ALL_BILLABLE = "all-billable"


@dataclass(frozen=True)
class PointReading:
    point: PointMetadata
    raw_value: Any
    measurement_time: datetime
    received_time: datetime
    quality: str | None = None
    session_id: int = 0
    error: str | None = None

    @property
    def point_key(self) -> str:
        return self.point.point_key


@dataclass(frozen=True)
class CharacterisationRange:
    range_start: datetime
    range_end: datetime
    quality: str
    point_keys: tuple[str, ...]
    num_periods: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "range_start": self.range_start.isoformat(),
            "range_end": self.range_end.isoformat(),
            "quality": self.quality,
            "point_keys": list(self.point_keys),
            "num_periods": self.num_periods,
        }


@dataclass(frozen=True)
class SampleRecord:
    raw_value: Any
    measurement_time: datetime
    received_time: datetime
    quality: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "raw_value": self.raw_value,
            "measurement_time": self.measurement_time.isoformat(),
            "received_time": self.received_time.isoformat(),
            "quality": self.quality,
        }


@dataclass(frozen=True)
class PointSamples:
    records: tuple[SampleRecord, ...]
    num_skipped: int | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"records": [record.to_dict() for record in self.records]}
        if self.num_skipped:
            payload["num_skipped"] = self.num_skipped
        return payload


@dataclass(frozen=True)
class BatchInfo:
    completeness: Completeness
    overviews: dict[str, str]
    num_records: int
    canonical: list[str] = field(default_factory=list)
    uniform_quality: str | None = None
    characterisation: list[CharacterisationRange] | None = None
    sample_records: dict[str, PointSamples] = field(default_factory=dict)
    comparison_overviews: dict[str, str] | None = None

    @classmethod
    def empty(cls) -> "BatchInfo":
        return cls(completeness=Completeness.NONE, overviews={}, num_records=0)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "completeness": self.completeness.value,
            "overviews": dict(self.overviews),
            "num_records": self.num_records,
            "uniform_quality": self.uniform_quality,
            "canonical": list(self.canonical),
            "characterisation": (
                [item.to_dict() for item in self.characterisation]
                if self.characterisation is not None
                else None
            ),
            "sample_records": {key: samples.to_dict() for key, samples in self.sample_records.items()},
        }
        if self.comparison_overviews is not None:
            payload["comparison_overviews"] = dict(self.comparison_overviews)
        return payload


class PointRegistry:
    def __init__(self) -> None:
        self._index_by_key: dict[str, int] = {}
        self._keys: list[str] = []

    def resolve(self, point_key: str) -> int:
        index = self._index_by_key.get(point_key)
        if index is None:
            index = len(self._keys)
            self._index_by_key[point_key] = index
            self._keys.append(point_key)
        return index

    def index_of(self, point_key: str) -> int | None:
        return self._index_by_key.get(point_key)

    def key_at(self, index: int) -> str:
        return self._keys[index]

    def keys(self) -> list[str]:
        return list(self._keys)

    def __len__(self) -> int:
        return len(self._keys)


@dataclass
class _OpenRange:
    start_index: int
    end_index: int


class ReadingsBatch:
    def __init__(self, grid: IntervalGrid, *, display_tz: tzinfo = AEST) -> None:
        self.grid = grid
        self._display_tz = display_tz
        self._registry = PointRegistry()
        # dense arena: one small point-index map per interval slot
        self._slots: list[dict[int, PointReading]] = [{} for _ in range(grid.size)]

    @classmethod
    def for_range(cls, first_day: date, number_of_days: int = 1) -> "ReadingsBatch":
        return cls(IntervalGrid(first_day, number_of_days))

    @property
    def first_day(self) -> date:
        return self.grid.first_day

    @property
    def number_of_days(self) -> int:
        return self.grid.number_of_days

    def add(self, reading: PointReading) -> None:
        self.grid.validate(
            reading.measurement_time,
            context=f"cannot add reading for {reading.point_key}",
        )
        slot = self.grid.index_of(reading.measurement_time)
        if slot is None:
            # accepted boundary, but it closes the previous day's last interval
            return
        point_index = self._registry.resolve(reading.point_key)
        self._slots[slot][point_index] = replace(reading, quality=encode(reading.quality))

    def extend(self, readings: Iterable[PointReading]) -> None:
        for reading in readings:
            self.add(reading)

    def copy(self) -> "ReadingsBatch":
        clone = ReadingsBatch(self.grid, display_tz=self._display_tz)
        clone.extend(self.readings())
        return clone

    def get(self, interval_end: datetime, point_key: str) -> PointReading | None:
        if not self.grid.is_interval_end(interval_end):
            return None
        point_index = self._registry.index_of(point_key)
        slot = self.grid.index_of(interval_end)
        if point_index is None or slot is None:
            return None
        return self._slots[slot].get(point_index)

    def get_at(self, slot: int, point_key: str) -> PointReading | None:
        point_index = self._registry.index_of(point_key)
        if point_index is None:
            return None
        return self._slots[slot].get(point_index)

    def point_keys(self) -> list[str]:
        return sorted(self._registry.keys())

    def count(self) -> int:
        return sum(len(slot) for slot in self._slots)

    def is_empty(self) -> bool:
        return self.count() == 0

    def readings(self) -> Iterator[PointReading]:
        for slot in self._slots:
            yield from slot.values()

    def point_records(self, point_key: str) -> list[tuple[datetime, PointReading | None]]:
        point_index = self._registry.index_of(point_key)
        entries: list[tuple[datetime, PointReading | None]] = []
        for interval_end, slot in zip(self.grid.interval_ends, self._slots):
            reading = slot.get(point_index) if point_index is not None else None
            entries.append((interval_end, reading))
        return entries

    def overview(self, point_key: str) -> str:
        overview = "".join(
            reading.quality or MISSING_CODE if reading is not None else MISSING_CODE
            for _, reading in self.point_records(point_key)
        )
        expected = INTERVALS_PER_DAY * self.grid.number_of_days
        if len(overview) != expected:
            raise OverviewLengthError(
                f"overview for {point_key} has {len(overview)} chars, expected {expected}"
            )
        return overview

    def completeness(self) -> Completeness:
        found = False
        for reading in self.readings():
            found = True
            if reading.quality != TOP_TIER.code:
                return Completeness.MIXED
        return Completeness.ALL_BILLABLE if found else Completeness.NONE

    def uniform_quality(self) -> str | None:
        qualities = {reading.quality for reading in self.readings()}
        if len(qualities) == 1:
            return qualities.pop()
        return None

    def characterise(self) -> list[CharacterisationRange]:
        # Sweep the slots in order; a range stays open while the exact same
        # (quality, point-set) class reappears in the next slot.
        open_ranges: dict[tuple[str, frozenset[int]], _OpenRange] = {}
        closed: list[CharacterisationRange] = []

        for slot_index, slot in enumerate(self._slots):
            classes: dict[str, set[int]] = {}
            for point_index, reading in slot.items():
                classes.setdefault(reading.quality or MISSING_CODE, set()).add(point_index)
            present = {(quality, frozenset(members)) for quality, members in classes.items()}

            still_open: dict[tuple[str, frozenset[int]], _OpenRange] = {}
            for key, open_range in open_ranges.items():
                if key in present:
                    open_range.end_index = slot_index
                    still_open[key] = open_range
                else:
                    closed.append(self._close_range(key, open_range))

            for quality in sorted(classes):
                key = (quality, frozenset(classes[quality]))
                if key not in still_open:
                    still_open[key] = _OpenRange(start_index=slot_index, end_index=slot_index)
            open_ranges = still_open

        for key, open_range in open_ranges.items():
            closed.append(self._close_range(key, open_range))

        return [item for item in closed if item.quality != MISSING_CODE]

    def canonical_display(self) -> list[str]:
        time_row: list[str] = []
        rate_row: list[str] = []
        renewables_row: list[str] = []
        quality_row: list[str] = []

        for slot_index in range(self.grid.size):
            interval_start = self.grid.interval_start(slot_index).astimezone(self._display_tz)
            time_row.append(interval_start.strftime("%H:%M"))

            rate = self.get_at(slot_index, CANONICAL_RATE_KEY)
            rate_text = _rounded(rate.raw_value, "¢") if rate is not None else None
            if rate is not None and rate_text is not None:
                rate_row.append(rate_text)
                quality_row.append(rate.quality or MISSING_CODE)
            else:
                rate_row.append("-")
                quality_row.append(MISSING_CODE)

            renewables = self.get_at(slot_index, CANONICAL_RENEWABLES_KEY)
            renewables_text = _rounded(renewables.raw_value, "%") if renewables is not None else None
            renewables_row.append(renewables_text or "-")

        return [
            "".join(cell.rjust(CANONICAL_COLUMN_WIDTH) for cell in row)
            for row in (time_row, rate_row, renewables_row, quality_row)
        ]

    def sample_records(self) -> dict[str, PointSamples]:
        samples: dict[str, PointSamples] = {}
        for point_key in self.point_keys():
            present = [
                reading
                for _, reading in self.point_records(point_key)
                if reading is not None and reading.raw_value is not None
            ]
            if not present:
                continue
            head = present[:SAMPLE_RECORD_LIMIT]
            skipped = len(present) - len(head)
            samples[point_key] = PointSamples(
                records=tuple(
                    SampleRecord(
                        raw_value=reading.raw_value,
                        measurement_time=reading.measurement_time,
                        received_time=reading.received_time,
                        quality=reading.quality,
                    )
                    for reading in head
                ),
                num_skipped=skipped or None,
            )
        return samples

    def info(self, *, comparison_overviews: dict[str, str] | None = None) -> BatchInfo:
        completeness = self.completeness()
        return BatchInfo(
            completeness=completeness,
            overviews={key: self.overview(key) for key in self.point_keys()},
            num_records=self.count(),
            canonical=self.canonical_display(),
            uniform_quality=self.uniform_quality(),
            characterisation=self.characterise() if completeness is Completeness.MIXED else None,
            sample_records=self.sample_records(),
            comparison_overviews=comparison_overviews,
        )

    def _close_range(
        self,
        key: tuple[str, frozenset[int]],
        open_range: _OpenRange,
    ) -> CharacterisationRange:
        quality, members = key
        return CharacterisationRange(
            range_start=self.grid.interval_start(open_range.start_index),
            range_end=self.grid.interval_ends[open_range.end_index],
            quality=quality,
            point_keys=tuple(sorted(self._registry.key_at(index) for index in members)),
            num_periods=open_range.end_index - open_range.start_index + 1,
        )


def _rounded(value: Any, suffix: str) -> str | None:
    if value is None:
        return None
    try:
        return f"{round(float(value))}{suffix}"
    except (TypeError, ValueError, OverflowError):
        return None
