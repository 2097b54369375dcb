from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select, text
from sqlalchemy.orm import Session

from app.db.models import AmberSystem, Point
from app.services.amber_points import PointMetadata
from app.services.readings_batch import PointReading


@dataclass(frozen=True)
class LocalReadingRow:
    point_id: int
    origin_id: str
    origin_sub_id: str
    default_name: str
    subsystem: str | None
    type: str | None
    subtype: str | None
    extension: str | None
    metric_type: str
    metric_unit: str
    transform: str | None
    interval_end: datetime
    avg: float | None
    last: float | None
    delta: float | None
    value_str: str | None
    data_quality: str | None
    session_id: int | None
    created_at: datetime | None

    @classmethod
    def from_mapping(cls, row: Any) -> "LocalReadingRow":
        return cls(
            point_id=int(row["point_id"]),
            origin_id=str(row["origin_id"]),
            origin_sub_id=str(row["origin_sub_id"]),
            default_name=str(row["default_name"]),
            subsystem=row["subsystem"],
            type=row["type"],
            subtype=row["subtype"],
            extension=row["extension"],
            metric_type=str(row["metric_type"]),
            metric_unit=str(row["metric_unit"]),
            transform=row["transform"],
            interval_end=_as_utc(row["interval_end"]),
            avg=row["avg"],
            last=row["last"],
            delta=row["delta"],
            value_str=row["value_str"],
            data_quality=row["data_quality"],
            session_id=row["session_id"],
            created_at=row["created_at"],
        )

    @property
    def raw_value(self) -> Any:
        if self.metric_type == "energy":
            return self.delta
        if self.metric_type == "code":
            return self.value_str
        return self.avg if self.avg is not None else self.last

    def point_metadata(self) -> PointMetadata:
        return PointMetadata(
            origin_id=self.origin_id,
            origin_sub_id=self.origin_sub_id,
            default_name=self.default_name,
            subsystem=self.subsystem or "grid",
            metric_type=self.metric_type,
            metric_unit=self.metric_unit,
            type=self.type or "bidi",
            subtype=self.subtype or "grid",
            extension=self.extension,
            transform=self.transform,
        )

    def to_point_reading(self) -> PointReading:
        return PointReading(
            point=self.point_metadata(),
            raw_value=self.raw_value,
            measurement_time=self.interval_end,
            received_time=_as_utc(self.created_at) if self.created_at else datetime.now(timezone.utc),
            quality=self.data_quality,
            session_id=self.session_id or 0,
        )


def get_system(db: Session, system_id: int) -> AmberSystem | None:
    return db.get(AmberSystem, system_id)


def list_enabled_systems(db: Session) -> list[AmberSystem]:
    return list(
        db.scalars(
            select(AmberSystem).where(AmberSystem.enabled.is_(True)).order_by(AmberSystem.id.asc())
        )
    )


def list_points_for_system(db: Session, system_id: int) -> list[Point]:
    return list(
        db.scalars(
            select(Point)
            .where(Point.system_id == system_id)
            .order_by(Point.origin_id.asc(), Point.origin_sub_id.asc())
        )
    )


def ensure_point(db: Session, *, system_id: int, point: PointMetadata) -> int:
    row = db.execute(
        text(
            """
            INSERT INTO points
                (system_id, origin_id, origin_sub_id, default_name, subsystem, type, subtype,
                 extension, metric_type, metric_unit, transform, created_at)
            VALUES
                (:system_id, :origin_id, :origin_sub_id, :default_name, :subsystem, :type, :subtype,
                 :extension, :metric_type, :metric_unit, :transform, now())
            ON CONFLICT (system_id, origin_id, origin_sub_id)
            DO UPDATE SET
                default_name = EXCLUDED.default_name,
                metric_type = EXCLUDED.metric_type,
                metric_unit = EXCLUDED.metric_unit
            RETURNING id
            """
        ),
        {
            "system_id": system_id,
            "origin_id": point.origin_id,
            "origin_sub_id": point.origin_sub_id,
            "default_name": point.default_name,
            "subsystem": point.subsystem,
            "type": point.type,
            "subtype": point.subtype,
            "extension": point.extension,
            "metric_type": point.metric_type,
            "metric_unit": point.metric_unit,
            "transform": point.transform,
        },
    ).first()
    if row is None:
        raise RuntimeError(f"failed to ensure point {point.point_key} for system {system_id}")
    return int(row[0])


def load_point_readings(
    db: Session,
    *,
    system_id: int,
    point_ids: Sequence[int],
    interval_ends: Sequence[datetime],
) -> list[LocalReadingRow]:
    if not point_ids or not interval_ends:
        return []
    rows = db.execute(
        text(
            """
            SELECT
                r.point_id, p.origin_id, p.origin_sub_id, p.default_name, p.subsystem, p.type,
                p.subtype, p.extension, p.metric_type, p.metric_unit, p.transform,
                r.interval_end, r.avg, r.last, r.delta, r.value_str, r.data_quality,
                r.session_id, r.created_at
            FROM point_readings_agg_5m r
            JOIN points p ON p.id = r.point_id
            WHERE r.system_id = :system_id
              AND r.point_id = ANY(:point_ids)
              AND r.interval_end = ANY(:interval_ends)
            ORDER BY r.interval_end ASC, r.point_id ASC
            """
        ),
        {
            "system_id": system_id,
            "point_ids": list(point_ids),
            "interval_ends": list(interval_ends),
        },
    ).mappings()
    return [LocalReadingRow.from_mapping(row) for row in rows]


def insert_point_readings(
    db: Session,
    *,
    system_id: int,
    session_id: int,
    readings: Iterable[PointReading],
) -> int:
    point_ids: dict[str, int] = {}
    inserted = 0
    for reading in readings:
        point_id = point_ids.get(reading.point_key)
        if point_id is None:
            point_id = ensure_point(db, system_id=system_id, point=reading.point)
            point_ids[reading.point_key] = point_id

        avg, last, delta, value_str = _split_value_columns(reading.point.metric_type, reading.raw_value)
        db.execute(
            text(
                """
                INSERT INTO point_readings_agg_5m
                    (system_id, point_id, interval_end, avg, last, delta, value_str,
                     data_quality, session_id, created_at)
                VALUES
                    (:system_id, :point_id, :interval_end, :avg, :last, :delta, :value_str,
                     :data_quality, :session_id, :created_at)
                ON CONFLICT (system_id, point_id, interval_end)
                DO UPDATE SET
                    avg = EXCLUDED.avg,
                    last = EXCLUDED.last,
                    delta = EXCLUDED.delta,
                    value_str = EXCLUDED.value_str,
                    data_quality = EXCLUDED.data_quality,
                    session_id = EXCLUDED.session_id,
                    created_at = EXCLUDED.created_at
                """
            ),
            {
                "system_id": system_id,
                "point_id": point_id,
                "interval_end": reading.measurement_time,
                "avg": avg,
                "last": last,
                "delta": delta,
                "value_str": value_str,
                "data_quality": reading.quality,
                "session_id": session_id,
                "created_at": datetime.now(timezone.utc),
            },
        )
        inserted += 1
    return inserted


def _split_value_columns(
    metric_type: str,
    raw_value: Any,
) -> tuple[float | None, float | None, float | None, str | None]:
    if raw_value is None:
        return None, None, None, None
    if metric_type == "code":
        return None, None, None, str(raw_value)
    numeric = _as_optional_float(raw_value)
    if metric_type == "energy":
        return None, None, numeric, None
    return numeric, numeric, None, None


def _as_optional_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
