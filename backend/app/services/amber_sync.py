from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any

from sqlalchemy.orm import sessionmaker

from app.core.config import Settings
from app.repositories.amber_sync_runs import create_amber_sync_run, finish_amber_sync_run
from app.repositories.point_readings import (
    get_system,
    insert_point_readings,
    list_points_for_system,
    load_point_readings,
)
from app.services.amber_client import AmberClient, AmberPriceRecord, AmberUsageRecord
from app.services.amber_points import (
    GRID_ORIGIN_ID,
    abbreviate_tariff_period,
    channel_id_for_type,
    channel_point,
    get_channel_metadata,
    renewables_point,
    spot_price_point,
    tariff_period_point,
)
from app.services.interval_grid import IntervalGrid, OffGridError, OutOfRangeError
from app.services.interval_quality import precedence
from app.services.readings_batch import BatchInfo, Completeness, PointReading, ReadingsBatch

PRICE_POINT_KEYS: frozenset[str] = frozenset(
    {f"{GRID_ORIGIN_ID}.spotPerKwh", f"{GRID_ORIGIN_ID}.renewables"}
)


class SyncAction(str, Enum):
    UPDATE_USAGE = "updateUsage"
    UPDATE_FORECASTS = "updateForecasts"
    UPDATE_ALL = "updateAll"


class SyncState(str, Enum):
    LOAD_LOCAL = "load_local"
    LOAD_REMOTE = "load_remote"
    COMPARE = "compare"
    LOAD_REMOTE_2 = "load_remote_2"
    COMPARE_2 = "compare_2"
    PERSIST = "persist"
    DONE = "done"
    FAILED = "failed"


class UnknownSystemError(LookupError):
    def __init__(self, system_id: int):
        self.system_id = system_id
        super().__init__(f"System {system_id} not found")


@dataclass(frozen=True)
class StageResult:
    stage: str
    info: BatchInfo
    error: str | None = None
    request: str | None = None
    discovery: str | None = None
    num_rows_inserted: int | None = None
    batch: ReadingsBatch | None = field(default=None, repr=False, compare=False)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"stage": self.stage, "info": self.info.to_dict()}
        if self.error is not None:
            payload["error"] = self.error
        if self.request is not None:
            payload["request"] = self.request
        if self.discovery is not None:
            payload["discovery"] = self.discovery
        if self.num_rows_inserted is not None:
            payload["num_rows_inserted"] = self.num_rows_inserted
        return payload


@dataclass(frozen=True)
class SyncSummary:
    total_stages: int
    num_rows_inserted: int
    duration_ms: int
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "total_stages": self.total_stages,
            "num_rows_inserted": self.num_rows_inserted,
            "duration_ms": self.duration_ms,
        }
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass(frozen=True)
class SyncAudit:
    action: SyncAction
    success: bool
    system_id: int
    first_day: date
    number_of_days: int
    stages: tuple[StageResult, ...]
    summary: SyncSummary

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action.value,
            "success": self.success,
            "system_id": self.system_id,
            "first_day": self.first_day.isoformat(),
            "number_of_days": self.number_of_days,
            "stages": [stage.to_dict() for stage in self.stages],
            "summary": self.summary.to_dict(),
        }


AmberSyncResult = SyncAudit


class StageTracker:
    def __init__(self, prefix: str) -> None:
        self.prefix = prefix
        self.count = 0

    def next(self, description: str, *, dry_run: bool = False) -> str:
        self.count += 1
        name = f"{self.prefix} stage {self.count}: {description}"
        if dry_run:
            name = f"{name} (DRY RUN)"
        return name


@dataclass(frozen=True)
class _RemoteSource:
    name: str
    load_description: str
    compare_description: str
    empty_discovery: str
    no_superior_discovery: str
    superior_label: str
    use_remote_keys: bool


USAGE_SOURCE = _RemoteSource(
    name="usage",
    load_description="load remote usage",
    compare_description="compare local vs remote usage",
    empty_discovery="remote usage data for this interval is NOT AVAILABLE",
    no_superior_discovery="local usage is already equal to or better than remote",
    superior_label="superior remote records",
    use_remote_keys=False,
)

PRICES_SOURCE = _RemoteSource(
    name="prices",
    load_description="load remote prices",
    compare_description="compare local vs remote prices",
    empty_discovery="no price data available yet",
    no_superior_discovery="local prices are already equal to or better than remote",
    superior_label="superior remote price records",
    use_remote_keys=True,
)

_ACTION_PLANS: dict[SyncAction, tuple[str, tuple[_RemoteSource, ...], str]] = {
    SyncAction.UPDATE_USAGE: ("usage", (USAGE_SOURCE,), "store superior usage records"),
    SyncAction.UPDATE_FORECASTS: ("forecast", (PRICES_SOURCE,), "store superior price records"),
    SyncAction.UPDATE_ALL: ("sync", (USAGE_SOURCE, PRICES_SOURCE), "store superior records"),
}


@dataclass
class _SyncContext:
    action: SyncAction
    system_id: int
    site_id: str | None
    grid: IntervalGrid
    session_id: int
    dry_run: bool
    tracker: StageTracker
    sources: tuple[_RemoteSource, ...]
    store_description: str
    stages: list[StageResult] = field(default_factory=list)
    source_index: int = 0
    local: ReadingsBatch | None = None
    remote: ReadingsBatch | None = None
    earlier_remote: ReadingsBatch | None = None
    superior: ReadingsBatch | None = None
    error: str | None = None

    @property
    def source(self) -> _RemoteSource:
        return self.sources[self.source_index]


def compare_readings(local: PointReading | None, remote: PointReading | None) -> int:
    if remote is None:
        return -1 if local is not None else 0
    if local is None:
        return 1

    local_rank = precedence(local.quality)
    remote_rank = precedence(remote.quality)
    if remote_rank > local_rank:
        return 1
    if local_rank > remote_rank:
        return -1
    if remote.raw_value != local.raw_value:
        return 1
    return 0


def compare_batches(
    local: ReadingsBatch,
    remote: ReadingsBatch,
    point_keys: Iterable[str],
    *,
    protected: ReadingsBatch | None = None,
) -> tuple[ReadingsBatch, dict[str, str]]:
    superior = ReadingsBatch(remote.grid)
    keys = sorted(point_keys)
    builders: dict[str, list[str]] = {key: [] for key in keys}

    for slot in range(remote.grid.size):
        for key in keys:
            local_reading = local.get_at(slot, key)
            remote_reading = remote.get_at(slot, key)
            outcome = compare_readings(local_reading, remote_reading)
            if outcome > 0 and protected is not None and remote_reading is not None:
                # a value an earlier source supplied this run only yields to higher precedence
                earlier = protected.get_at(slot, key)
                if earlier is not None and precedence(earlier.quality) >= precedence(remote_reading.quality):
                    outcome = -1 if local_reading is not None else 0
            if outcome > 0 and remote_reading is not None:
                builders[key].append((remote_reading.quality or ".").upper())
                superior.add(remote_reading)
            elif outcome < 0 and local_reading is not None:
                builders[key].append((local_reading.quality or ".").lower())
            elif local_reading is None and remote_reading is None:
                builders[key].append(".")
            else:
                builders[key].append("=")

    return superior, {key: "".join(codes) for key, codes in builders.items()}


def build_usage_batch(
    grid: IntervalGrid,
    records: Iterable[AmberUsageRecord],
    *,
    received_time: datetime,
) -> ReadingsBatch:
    batch = ReadingsBatch(grid)
    for record in records:
        channel = get_channel_metadata(record.channel_identifier, record.channel_type)
        for metric, value in (
            ("energy", record.kwh * 1000.0),
            ("value", record.cost),
            ("rate", record.per_kwh),
        ):
            batch.add(
                PointReading(
                    point=channel_point(channel, metric),
                    raw_value=value,
                    measurement_time=record.end_time,
                    received_time=received_time,
                    quality=record.quality,
                )
            )
        # tariff information only arrives on the import channel
        period = abbreviate_tariff_period(record.tariff_period)
        if period is not None:
            batch.add(
                PointReading(
                    point=tariff_period_point(),
                    raw_value=period,
                    measurement_time=record.end_time,
                    received_time=received_time,
                    quality=record.quality,
                )
            )
    return batch


def build_price_batch(
    grid: IntervalGrid,
    records: Iterable[AmberPriceRecord],
    *,
    received_time: datetime,
) -> ReadingsBatch:
    batch = ReadingsBatch(grid)
    for record in records:
        channel = get_channel_metadata(channel_id_for_type(record.channel_type), record.channel_type)
        readings = [(channel_point(channel, "rate"), record.per_kwh)]
        if record.spot_per_kwh is not None:
            readings.append((spot_price_point(), record.spot_per_kwh))
        if record.renewables is not None:
            readings.append((renewables_point(), record.renewables))
        for point, value in readings:
            batch.add(
                PointReading(
                    point=point,
                    raw_value=value,
                    measurement_time=record.end_time,
                    received_time=received_time,
                    quality=record.quality,
                )
            )
    return batch


class AmberSyncService:
    def __init__(
        self,
        *,
        settings: Settings,
        session_factory: sessionmaker,
        amber_client: AmberClient,
    ) -> None:
        self._settings = settings
        self._session_factory = session_factory
        self._amber_client = amber_client
        self._logger = logging.getLogger("app.amber_sync")

    def update_usage(
        self,
        *,
        system_id: int,
        first_day: date,
        number_of_days: int = 1,
        session_id: int = 0,
        dry_run: bool = False,
    ) -> SyncAudit:
        return self.run(
            SyncAction.UPDATE_USAGE,
            system_id=system_id,
            first_day=first_day,
            number_of_days=number_of_days,
            session_id=session_id,
            dry_run=dry_run,
        )

    def update_forecasts(
        self,
        *,
        system_id: int,
        first_day: date,
        number_of_days: int = 1,
        session_id: int = 0,
        dry_run: bool = False,
    ) -> SyncAudit:
        return self.run(
            SyncAction.UPDATE_FORECASTS,
            system_id=system_id,
            first_day=first_day,
            number_of_days=number_of_days,
            session_id=session_id,
            dry_run=dry_run,
        )

    def update_all(
        self,
        *,
        system_id: int,
        first_day: date,
        number_of_days: int = 1,
        session_id: int = 0,
        dry_run: bool = False,
    ) -> SyncAudit:
        return self.run(
            SyncAction.UPDATE_ALL,
            system_id=system_id,
            first_day=first_day,
            number_of_days=number_of_days,
            session_id=session_id,
            dry_run=dry_run,
        )

    def run(
        self,
        action: SyncAction,
        *,
        system_id: int,
        first_day: date,
        number_of_days: int = 1,
        session_id: int = 0,
        dry_run: bool = False,
    ) -> SyncAudit:
        if number_of_days < 1 or number_of_days > self._settings.amber_max_sync_days:
            raise ValueError(
                f"number_of_days must be between 1 and {self._settings.amber_max_sync_days}, "
                f"got {number_of_days}"
            )
        site_id = self._require_system_site(system_id)

        prefix, sources, store_description = _ACTION_PLANS[action]
        ctx = _SyncContext(
            action=action,
            system_id=system_id,
            site_id=site_id,
            grid=IntervalGrid(first_day, number_of_days),
            session_id=session_id,
            dry_run=dry_run,
            tracker=StageTracker(prefix),
            sources=sources,
            store_description=store_description,
        )

        started = time.monotonic()
        self._logger.info(
            "amber sync started action=%s system_id=%s first_day=%s days=%s dry_run=%s",
            action.value,
            system_id,
            first_day.isoformat(),
            number_of_days,
            dry_run,
        )
        final_state = self._drive(ctx)
        duration_ms = int((time.monotonic() - started) * 1000)

        audit = SyncAudit(
            action=action,
            success=final_state is SyncState.DONE,
            system_id=system_id,
            first_day=first_day,
            number_of_days=number_of_days,
            stages=tuple(ctx.stages),
            summary=SyncSummary(
                total_stages=len(ctx.stages),
                num_rows_inserted=sum(stage.num_rows_inserted or 0 for stage in ctx.stages),
                duration_ms=duration_ms,
                error=ctx.error,
            ),
        )
        if audit.success:
            self._logger.info(
                "amber sync finished action=%s system_id=%s stages=%s rows_inserted=%s duration_ms=%s",
                action.value,
                system_id,
                audit.summary.total_stages,
                audit.summary.num_rows_inserted,
                duration_ms,
            )
        else:
            self._logger.warning(
                "amber sync failed action=%s system_id=%s error=%s",
                action.value,
                system_id,
                ctx.error,
            )
        return audit

    def run_and_record(
        self,
        action: SyncAction,
        *,
        system_id: int,
        first_day: date,
        number_of_days: int = 1,
        dry_run: bool = False,
        trigger_source: str = "api",
    ) -> tuple[int, SyncAudit]:
        self._require_system_site(system_id)
        with self._session_factory() as db:
            run_id = create_amber_sync_run(
                db,
                system_id=system_id,
                action=action.value,
                trigger_source=trigger_source,
                first_day=first_day,
                number_of_days=number_of_days,
                dry_run=dry_run,
            )
            db.commit()

        try:
            audit = self.run(
                action,
                system_id=system_id,
                first_day=first_day,
                number_of_days=number_of_days,
                session_id=run_id,
                dry_run=dry_run,
            )
        except Exception as exc:
            self._finish_run(run_id=run_id, status="error", rows_inserted=0, audit=None, error_text=str(exc))
            raise

        self._finish_run(
            run_id=run_id,
            status="ok" if audit.success else "failed",
            rows_inserted=audit.summary.num_rows_inserted,
            audit=audit.to_dict(),
            error_text=audit.summary.error,
        )
        return run_id, audit

    def _finish_run(
        self,
        *,
        run_id: int,
        status: str,
        rows_inserted: int,
        audit: dict[str, Any] | None,
        error_text: str | None,
    ) -> None:
        with self._session_factory() as db:
            finish_amber_sync_run(
                db,
                run_id=run_id,
                status=status,
                rows_inserted=rows_inserted,
                audit_json=audit,
                error_text=error_text,
            )
            db.commit()

    def _require_system_site(self, system_id: int) -> str | None:
        with self._session_factory() as db:
            system = get_system(db, system_id)
            if system is None:
                raise UnknownSystemError(system_id)
            return system.vendor_site_id or None

    def _drive(self, ctx: _SyncContext) -> SyncState:
        handlers: dict[SyncState, Callable[[_SyncContext], SyncState]] = {
            SyncState.LOAD_LOCAL: self._load_local,
            SyncState.LOAD_REMOTE: self._load_remote,
            SyncState.COMPARE: self._compare,
            SyncState.LOAD_REMOTE_2: self._load_remote,
            SyncState.COMPARE_2: self._compare,
            SyncState.PERSIST: self._persist,
        }
        state = SyncState.LOAD_LOCAL
        while state not in (SyncState.DONE, SyncState.FAILED):
            state = handlers[state](ctx)
        return state

    def _fail(self, ctx: _SyncContext, stage: str, exc: Exception, *, request: str | None = None) -> SyncState:
        ctx.stages.append(StageResult(stage=stage, info=BatchInfo.empty(), error=str(exc), request=request))
        ctx.error = f"{ctx.tracker.prefix.capitalize()} stage {ctx.tracker.count} failed: {exc}"
        self._logger.warning("amber sync stage failed stage=%r error=%s", stage, exc)
        return SyncState.FAILED

    def _load_local(self, ctx: _SyncContext) -> SyncState:
        stage = ctx.tracker.next("load local data")
        try:
            batch = ReadingsBatch(ctx.grid)
            with self._session_factory() as db:
                points = list_points_for_system(db, ctx.system_id)
                rows = load_point_readings(
                    db,
                    system_id=ctx.system_id,
                    point_ids=[point.id for point in points],
                    interval_ends=list(ctx.grid.interval_ends),
                )
            batch.extend(row.to_point_reading() for row in rows)
            info = batch.info()
        except (OutOfRangeError, OffGridError):
            raise
        except Exception as exc:
            return self._fail(ctx, stage, exc)

        ctx.local = batch
        has_price_points = bool(PRICE_POINT_KEYS.intersection(batch.point_keys()))
        complete = info.completeness is Completeness.ALL_BILLABLE
        discovery: str | None = None
        next_state = SyncState.LOAD_REMOTE

        if ctx.action is SyncAction.UPDATE_USAGE:
            if complete:
                discovery = "yay, we already have BILLABLE usage data locally for this period"
                next_state = SyncState.DONE
            elif not batch.is_empty():
                discovery = "billable usage data held locally for this period is INCOMPLETE"
        elif complete and has_price_points:
            discovery = (
                "local forecasts already up to date"
                if ctx.action is SyncAction.UPDATE_FORECASTS
                else "local usage and prices already up to date"
            )
            next_state = SyncState.DONE

        ctx.stages.append(StageResult(stage=stage, info=info, discovery=discovery, batch=batch))
        return next_state

    def _load_remote(self, ctx: _SyncContext) -> SyncState:
        source = ctx.source
        stage = ctx.tracker.next(source.load_description)
        request: str | None = None
        received_time = datetime.now(timezone.utc)
        try:
            site_id = self._resolve_site_id(ctx)
            request = self._amber_client.describe_request(
                resource=source.name,
                site_id=site_id,
                first_day=ctx.grid.first_day,
                last_day=ctx.grid.last_day,
            )
            if source is USAGE_SOURCE:
                usage = self._amber_client.get_usage(
                    site_id=site_id,
                    first_day=ctx.grid.first_day,
                    last_day=ctx.grid.last_day,
                )
                batch = build_usage_batch(ctx.grid, usage, received_time=received_time)
            else:
                prices = self._amber_client.get_prices(
                    site_id=site_id,
                    first_day=ctx.grid.first_day,
                    last_day=ctx.grid.last_day,
                )
                batch = build_price_batch(ctx.grid, prices, received_time=received_time)
            info = batch.info()
        except (OutOfRangeError, OffGridError):
            raise
        except Exception as exc:
            return self._fail(ctx, stage, exc, request=request)

        ctx.remote = batch
        if batch.is_empty():
            ctx.stages.append(
                StageResult(
                    stage=stage,
                    info=info,
                    request=request,
                    discovery=source.empty_discovery,
                    batch=batch,
                )
            )
            return self._after_source(ctx)

        discovery: str | None = None
        if source is USAGE_SOURCE:
            if info.completeness is Completeness.ALL_BILLABLE:
                discovery = "remote has full day of data"
            elif ctx.local is not None and ctx.local.is_empty():
                discovery = "local empty, remote has partial day of data (unexpected!)"
        elif info.completeness is Completeness.ALL_BILLABLE:
            discovery = "remote has all actual prices"
        elif info.uniform_quality is None:
            discovery = "remote has price forecasts available"

        ctx.stages.append(StageResult(stage=stage, info=info, request=request, discovery=discovery, batch=batch))
        return SyncState.COMPARE if ctx.source_index == 0 else SyncState.COMPARE_2

    def _compare(self, ctx: _SyncContext) -> SyncState:
        source = ctx.source
        stage = ctx.tracker.next(source.compare_description)
        try:
            if ctx.local is None or ctx.remote is None:
                raise RuntimeError("cannot compare before local and remote data are loaded")
            baseline = ctx.local
            if ctx.superior is not None and not ctx.superior.is_empty():
                baseline = ctx.local.copy()
                baseline.extend(ctx.superior.readings())

            if source.use_remote_keys:
                point_keys = ctx.remote.point_keys()
            else:
                point_keys = baseline.point_keys() or ctx.remote.point_keys()

            winners, comparison_overviews = compare_batches(
                baseline,
                ctx.remote,
                point_keys,
                protected=ctx.earlier_remote,
            )
            info = winners.info(comparison_overviews=comparison_overviews)
        except (OutOfRangeError, OffGridError):
            raise
        except Exception as exc:
            return self._fail(ctx, stage, exc)

        if ctx.superior is None:
            ctx.superior = winners
        else:
            ctx.superior.extend(winners.readings())

        count = winners.count()
        discovery = (
            source.no_superior_discovery
            if count == 0
            else f"found {count} {source.superior_label} to update/insert"
        )
        ctx.stages.append(StageResult(stage=stage, info=info, discovery=discovery, batch=winners))
        return self._after_source(ctx)

    def _after_source(self, ctx: _SyncContext) -> SyncState:
        if ctx.source_index + 1 < len(ctx.sources):
            if ctx.remote is not None:
                if ctx.earlier_remote is None:
                    ctx.earlier_remote = ctx.remote.copy()
                else:
                    ctx.earlier_remote.extend(ctx.remote.readings())
            ctx.source_index += 1
            return SyncState.LOAD_REMOTE_2
        if ctx.superior is not None and not ctx.superior.is_empty():
            return SyncState.PERSIST
        return SyncState.DONE

    def _persist(self, ctx: _SyncContext) -> SyncState:
        superior = ctx.superior
        stage = ctx.tracker.next(ctx.store_description, dry_run=ctx.dry_run)
        try:
            if superior is None:
                raise RuntimeError("no superior readings to store")
            info = superior.info()
            if ctx.dry_run:
                ctx.stages.append(
                    StageResult(
                        stage=stage,
                        info=info,
                        discovery=f"would insert {superior.count()} readings (dry run, skipped)",
                        num_rows_inserted=0,
                        batch=superior,
                    )
                )
                return SyncState.DONE

            with self._session_factory() as db:
                inserted = insert_point_readings(
                    db,
                    system_id=ctx.system_id,
                    session_id=ctx.session_id,
                    readings=superior.readings(),
                )
                db.commit()
        except (OutOfRangeError, OffGridError):
            raise
        except Exception as exc:
            return self._fail(ctx, stage, exc)

        ctx.stages.append(
            StageResult(
                stage=stage,
                info=info,
                discovery=f"inserted {inserted} readings into database",
                num_rows_inserted=inserted,
                batch=superior,
            )
        )
        return SyncState.DONE

    def _resolve_site_id(self, ctx: _SyncContext) -> str:
        if ctx.site_id:
            return ctx.site_id
        if self._settings.amber_site_id:
            ctx.site_id = self._settings.amber_site_id
            return ctx.site_id
        sites = self._amber_client.get_sites()
        if not sites:
            raise RuntimeError("no Amber sites available for the configured API key")
        ctx.site_id = sites[0].id
        return ctx.site_id
