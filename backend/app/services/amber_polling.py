from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import date, datetime, timedelta, timezone
from threading import Event, Lock, Thread
from typing import Any

from sqlalchemy.orm import Session, sessionmaker

from app.core.config import Settings
from app.repositories.amber_sync_runs import get_latest_amber_sync_run
from app.repositories.point_readings import get_system, list_enabled_systems
from app.services.amber_sync import AmberSyncService, SyncAction


class AmberPollingService:
    def __init__(
        self,
        *,
        settings: Settings,
        session_factory: sessionmaker,
        sync_service: AmberSyncService,
    ) -> None:
        self._settings = settings
        self._session_factory = session_factory
        self._sync_service = sync_service
        self._logger = logging.getLogger("app.amber_polling")
        self._stop_event = Event()
        self._thread: Thread | None = None
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="amber-sync-force")

        self._lock = Lock()
        self._running = False
        self._next_due_ts: datetime | None = None
        self._last_error: str | None = None
        self._last_status: str | None = None
        self._last_run_id: int | None = None
        self._force_future: Future[None] | None = None
        self._usage_hours: dict[int, datetime] = {}

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
            self._next_due_ts = datetime.now(timezone.utc)
        self._stop_event.clear()
        self._thread = Thread(target=self._loop, name="amber-polling", daemon=True)
        self._thread.start()
        self._logger.info(
            "started amber polling enabled=%s interval_seconds=%s",
            self._settings.amber_sync_enabled,
            self._settings.amber_poll_seconds,
        )

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5.0)
        self._executor.shutdown(wait=False, cancel_futures=False)
        with self._lock:
            self._running = False

    def request_force_sync(self, system_id: int) -> None:
        if not self._settings.amber_sync_enabled:
            raise RuntimeError("Amber sync is disabled by configuration")

        with self._lock:
            force_future = self._force_future
            if force_future is not None and not force_future.done():
                raise RuntimeError("An Amber force sync is already in progress")

        with self._session_factory() as db:
            system = get_system(db, system_id)
            if system is None:
                raise LookupError(f"System {system_id} not found")
            offset_min = system.timezone_offset_min

        future = self._executor.submit(self._force_worker, system_id, offset_min)
        with self._lock:
            self._force_future = future

    def get_status_snapshot(self, db: Session) -> dict[str, Any]:
        latest = get_latest_amber_sync_run(db)
        with self._lock:
            force_future = self._force_future
            return {
                "enabled": self._settings.amber_sync_enabled,
                "running": self._running and not self._stop_event.is_set(),
                "poll_seconds": self._settings.amber_poll_seconds,
                "next_due_ts": _to_iso(self._next_due_ts),
                "force_in_progress": bool(force_future and not force_future.done()),
                "last_run_id": self._last_run_id,
                "last_status": self._last_status,
                "last_error": self._last_error,
                "last_run": latest,
            }

    def poll_once(self, *, now: datetime | None = None, forced: bool = False) -> None:
        current = now or datetime.now(timezone.utc)
        with self._session_factory() as db:
            systems = [(system.id, system.timezone_offset_min) for system in list_enabled_systems(db)]
        for system_id, offset_min in systems:
            try:
                self.poll_system(system_id, offset_min=offset_min, now=current, forced=forced)
            except Exception:
                self._logger.exception("amber poll failed system_id=%s", system_id)

    def poll_system(
        self,
        system_id: int,
        *,
        offset_min: int,
        now: datetime,
        forced: bool = False,
    ) -> bool:
        trigger_source = "force" if forced else "periodic"
        local_now = now.astimezone(timezone(timedelta(minutes=offset_min)))
        today = local_now.date()

        if forced or self._usage_due(system_id, local_now):
            with self._lock:
                self._usage_hours[system_id] = local_now.replace(minute=0, second=0, microsecond=0)
            usage_ok = self._run(
                SyncAction.UPDATE_USAGE,
                system_id=system_id,
                first_day=today - timedelta(days=1),
                number_of_days=1,
                trigger_source=trigger_source,
            )
            if not usage_ok:
                self._logger.warning(
                    "skipping forecast sync after usage failure system_id=%s",
                    system_id,
                )
                return False

        return self._run(
            SyncAction.UPDATE_FORECASTS,
            system_id=system_id,
            first_day=today,
            number_of_days=self._settings.amber_forecast_days,
            trigger_source=trigger_source,
        )

    def _usage_due(self, system_id: int, local_now: datetime) -> bool:
        if local_now.minute < self._settings.amber_usage_sync_minute:
            return False
        current_hour = local_now.replace(minute=0, second=0, microsecond=0)
        with self._lock:
            return self._usage_hours.get(system_id) != current_hour

    def _run(
        self,
        action: SyncAction,
        *,
        system_id: int,
        first_day: date,
        number_of_days: int,
        trigger_source: str,
    ) -> bool:
        try:
            run_id, audit = self._sync_service.run_and_record(
                action,
                system_id=system_id,
                first_day=first_day,
                number_of_days=number_of_days,
                dry_run=self._settings.amber_dry_run,
                trigger_source=trigger_source,
            )
        except Exception as exc:
            self._set_runtime_status(run_id=None, status="error", error=str(exc))
            raise

        status = "ok" if audit.success else "failed"
        self._set_runtime_status(run_id=run_id, status=status, error=audit.summary.error)
        return audit.success

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            if not self._settings.amber_sync_enabled:
                self._stop_event.wait(1.0)
                continue

            now = datetime.now(timezone.utc)
            with self._lock:
                next_due = self._next_due_ts
            if next_due is None or now >= next_due:
                try:
                    self.poll_once(now=now)
                except Exception:
                    self._logger.exception("periodic amber poll failed")
                with self._lock:
                    self._next_due_ts = datetime.now(timezone.utc) + timedelta(
                        seconds=self._settings.amber_poll_seconds
                    )

            self._stop_event.wait(1.0)

    def _force_worker(self, system_id: int, offset_min: int) -> None:
        try:
            self.poll_system(
                system_id,
                offset_min=offset_min,
                now=datetime.now(timezone.utc),
                forced=True,
            )
        except Exception:
            self._logger.exception("force amber sync failed system_id=%s", system_id)

    def _set_runtime_status(self, *, run_id: int | None, status: str, error: str | None) -> None:
        with self._lock:
            if run_id is not None:
                self._last_run_id = run_id
            self._last_status = status
            self._last_error = error


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()
