from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone

# Amber publishes on fixed NEM time (UTC+10) which never observes daylight saving.
AEST = timezone(timedelta(hours=10))
INTERVAL = timedelta(minutes=30)
INTERVALS_PER_DAY = 48


class OutOfRangeError(ValueError):
    def __init__(self, *, timestamp: datetime, range_start: datetime, range_end: datetime, detail: str = ""):
        self.timestamp = timestamp
        self.range_start = range_start
        self.range_end = range_end
        message = (
            f"timestamp {timestamp.isoformat()} is outside range boundaries "
            f"[{range_start.isoformat()}, {range_end.isoformat()}]"
        )
        if detail:
            message = f"{message} {detail}"
        super().__init__(message)


class OffGridError(ValueError):
    def __init__(self, *, timestamp: datetime, first_interval_end: datetime):
        self.timestamp = timestamp
        self.first_interval_end = first_interval_end
        super().__init__(
            f"timestamp {timestamp.isoformat()} is not a half-hour interval end "
            f"(grid starts at {first_interval_end.isoformat()})"
        )


def generate_intervals(first_day: date, number_of_days: int = 1) -> list[datetime]:
    if number_of_days < 1:
        raise ValueError(f"number_of_days must be >= 1, got {number_of_days}")
    current = datetime.combine(first_day, time(0, 0), tzinfo=AEST)
    intervals: list[datetime] = []
    for _ in range(INTERVALS_PER_DAY * number_of_days):
        current = current + INTERVAL
        intervals.append(current)
    return intervals


@dataclass(frozen=True)
class IntervalGrid:
    first_day: date
    number_of_days: int = 1
    interval_ends: tuple[datetime, ...] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "interval_ends",
            tuple(generate_intervals(self.first_day, self.number_of_days)),
        )

    @property
    def size(self) -> int:
        return len(self.interval_ends)

    @property
    def range_start(self) -> datetime:
        return self.interval_ends[0] - INTERVAL

    @property
    def range_end(self) -> datetime:
        return self.interval_ends[-1]

    @property
    def last_day(self) -> date:
        return self.first_day + timedelta(days=self.number_of_days - 1)

    def contains(self, ts: datetime) -> bool:
        _require_aware(ts)
        return self.range_start <= ts <= self.range_end

    def validate(self, ts: datetime, *, context: str | None = None) -> None:
        if not self.contains(ts):
            detail = f"for {self.number_of_days} day(s) starting {self.first_day.isoformat()}"
            if context:
                detail = f"{detail} ({context})"
            raise OutOfRangeError(
                timestamp=ts,
                range_start=self.range_start,
                range_end=self.range_end,
                detail=detail,
            )

    def is_interval_end(self, ts: datetime) -> bool:
        if not self.contains(ts) or ts == self.range_start:
            return False
        return (ts - self.range_start) % INTERVAL == timedelta(0)

    def index_of(self, ts: datetime) -> int | None:
        self.validate(ts)
        # range_start closes the previous day's last interval, so it has no slot here
        if ts == self.range_start:
            return None
        offset = ts - self.range_start
        if offset % INTERVAL != timedelta(0):
            raise OffGridError(timestamp=ts, first_interval_end=self.interval_ends[0])
        return offset // INTERVAL - 1

    def interval_start(self, index: int) -> datetime:
        return self.interval_ends[index] - INTERVAL


def _require_aware(ts: datetime) -> None:
    if ts.tzinfo is None or ts.utcoffset() is None:
        raise ValueError(f"timestamp {ts.isoformat()} must be timezone-aware")
