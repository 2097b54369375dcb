from datetime import datetime
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Identity,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base


class AmberSystem(Base):
    __tablename__ = "amber_systems"

    id: Mapped[int] = mapped_column(BigInteger, Identity(always=False), primary_key=True)
    vendor_site_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    display_name: Mapped[str] = mapped_column(String(128), nullable=False)
    timezone_offset_min: Mapped[int] = mapped_column(
        Integer,
        default=600,
        server_default="600",
        nullable=False,
    )
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, server_default="true")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    points: Mapped[list["Point"]] = relationship(
        back_populates="system",
        cascade="all, delete-orphan",
    )


class Point(Base):
    __tablename__ = "points"
    __table_args__ = (
        UniqueConstraint("system_id", "origin_id", "origin_sub_id", name="uq_points_system_origin"),
    )

    id: Mapped[int] = mapped_column(BigInteger, Identity(always=False), primary_key=True)
    system_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("amber_systems.id", ondelete="CASCADE"),
        nullable=False,
    )
    origin_id: Mapped[str] = mapped_column(String(64), nullable=False)
    origin_sub_id: Mapped[str] = mapped_column(String(64), nullable=False)
    default_name: Mapped[str] = mapped_column(String(128), nullable=False)
    subsystem: Mapped[str | None] = mapped_column(String(32))
    type: Mapped[str | None] = mapped_column(String(32))
    subtype: Mapped[str | None] = mapped_column(String(32))
    extension: Mapped[str | None] = mapped_column(String(32))
    metric_type: Mapped[str] = mapped_column(String(32), nullable=False)
    metric_unit: Mapped[str] = mapped_column(String(32), nullable=False)
    transform: Mapped[str | None] = mapped_column(String(32))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    system: Mapped[AmberSystem] = relationship(back_populates="points")


class PointReadingAgg5m(Base):
    __tablename__ = "point_readings_agg_5m"
    __table_args__ = (
        UniqueConstraint(
            "system_id",
            "point_id",
            "interval_end",
            name="uq_point_readings_agg_5m_system_point_interval",
        ),
        Index("ix_point_readings_agg_5m_system_interval", "system_id", "interval_end"),
    )

    id: Mapped[int] = mapped_column(BigInteger, Identity(always=False), primary_key=True)
    system_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("amber_systems.id", ondelete="CASCADE"),
        nullable=False,
    )
    point_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("points.id", ondelete="CASCADE"),
        nullable=False,
    )
    interval_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    avg: Mapped[float | None] = mapped_column(Float)
    last: Mapped[float | None] = mapped_column(Float)
    delta: Mapped[float | None] = mapped_column(Float)
    value_str: Mapped[str | None] = mapped_column(Text)
    data_quality: Mapped[str | None] = mapped_column(String(1))
    session_id: Mapped[int | None] = mapped_column(BigInteger)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


class AmberSyncRun(Base):
    __tablename__ = "amber_sync_runs"
    __table_args__ = (
        CheckConstraint(
            "status IN ('running','ok','failed','error')",
            name="ck_amber_sync_runs_status",
        ),
        Index("ix_amber_sync_runs_system_started", "system_id", "started_at"),
    )

    id: Mapped[int] = mapped_column(BigInteger, Identity(always=False), primary_key=True)
    system_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("amber_systems.id", ondelete="CASCADE"),
        nullable=False,
    )
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    trigger_source: Mapped[str] = mapped_column(String(32), nullable=False)
    first_day: Mapped[str] = mapped_column(String(10), nullable=False)
    number_of_days: Mapped[int] = mapped_column(Integer, nullable=False)
    dry_run: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False, server_default="false")
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    rows_inserted: Mapped[int] = mapped_column(Integer, default=0, nullable=False, server_default="0")
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    audit_json: Mapped[dict[str, Any]] = mapped_column(
        JSONB,
        nullable=False,
        server_default="{}",
    )
    error_text: Mapped[str | None] = mapped_column(Text)
