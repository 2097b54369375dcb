from __future__ import annotations

from datetime import date, datetime, timezone
from types import SimpleNamespace
from typing import Any
from unittest import TestCase
from unittest.mock import patch

from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.api.amber_sync import router as amber_sync_router
from app.db.session import get_db
from app.dependencies import get_amber_polling_service, get_amber_sync_service
from app.services.amber_sync import SyncAction, UnknownSystemError


def _audit(action: SyncAction, *, rows: int, success: bool = True) -> SimpleNamespace:
    payload = {"action": action.value, "success": success, "stages": []}
    return SimpleNamespace(
        success=success,
        summary=SimpleNamespace(num_rows_inserted=rows, error=None),
        to_dict=lambda: payload,
    )


class _FakeSyncService:
    def __init__(self, *, error: Exception | None = None) -> None:
        self.calls: list[dict[str, Any]] = []
        self._error = error

    def run_and_record(self, action: SyncAction, **kwargs: Any):
        if self._error is not None:
            raise self._error
        self.calls.append({"action": action, **kwargs})
        rows = 288 if action is SyncAction.UPDATE_USAGE else 96
        return len(self.calls), _audit(action, rows=rows)


class _FakePollingService:
    def __init__(self, *, force_error: Exception | None = None) -> None:
        self.forced: list[int] = []
        self._force_error = force_error

    def request_force_sync(self, system_id: int) -> None:
        if self._force_error is not None:
            raise self._force_error
        self.forced.append(system_id)

    def get_status_snapshot(self, _db: Any) -> dict[str, Any]:
        return {
            "enabled": True,
            "running": True,
            "poll_seconds": 60,
            "next_due_ts": "2025-10-02T00:11:00+00:00",
            "force_in_progress": False,
            "last_run_id": 3,
            "last_status": "ok",
            "last_error": None,
            "last_run": None,
        }


def _client(
    *,
    sync_service: _FakeSyncService | None = None,
    polling_service: _FakePollingService | None = None,
) -> TestClient:
    app = FastAPI()
    app.include_router(amber_sync_router)
    app.dependency_overrides[get_amber_sync_service] = lambda: sync_service or _FakeSyncService()
    app.dependency_overrides[get_amber_polling_service] = lambda: polling_service or _FakePollingService()
    app.dependency_overrides[get_db] = lambda: object()
    return TestClient(app)


class AmberSyncEndpointTests(TestCase):
    def test_both_runs_usage_then_pricing(self) -> None:
        sync_service = _FakeSyncService()
        client = _client(sync_service=sync_service)

        response = client.post(
            "/api/amber-sync",
            json={"system_id": 1, "action": "both", "start_date": "2025-10-01", "days": 2, "dry_run": True},
        )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertTrue(body["success"])
        self.assertEqual(body["total_rows_inserted"], 288 + 96)
        self.assertEqual(body["run_ids"], [1, 2])
        self.assertEqual([audit["action"] for audit in body["audits"]], ["updateUsage", "updateForecasts"])
        self.assertEqual(
            [call["action"] for call in sync_service.calls],
            [SyncAction.UPDATE_USAGE, SyncAction.UPDATE_FORECASTS],
        )
        first = sync_service.calls[0]
        self.assertEqual(first["first_day"], date(2025, 10, 1))
        self.assertEqual(first["number_of_days"], 2)
        self.assertTrue(first["dry_run"])
        self.assertEqual(first["trigger_source"], "api")

    def test_all_runs_combined_action(self) -> None:
        sync_service = _FakeSyncService()
        client = _client(sync_service=sync_service)

        response = client.post(
            "/api/amber-sync",
            json={"system_id": 1, "action": "all", "start_date": "2025-10-01"},
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual([call["action"] for call in sync_service.calls], [SyncAction.UPDATE_ALL])
        self.assertEqual(sync_service.calls[0]["number_of_days"], 1)

    def test_request_validation(self) -> None:
        client = _client()

        too_many_days = client.post(
            "/api/amber-sync",
            json={"system_id": 1, "action": "usage", "start_date": "2025-10-01", "days": 31},
        )
        bad_action = client.post(
            "/api/amber-sync",
            json={"system_id": 1, "action": "refresh", "start_date": "2025-10-01"},
        )
        bad_date = client.post(
            "/api/amber-sync",
            json={"system_id": 1, "action": "usage", "start_date": "yesterday"},
        )

        self.assertEqual(too_many_days.status_code, 422)
        self.assertEqual(bad_action.status_code, 422)
        self.assertEqual(bad_date.status_code, 422)

    def test_unknown_system_maps_to_404(self) -> None:
        client = _client(sync_service=_FakeSyncService(error=UnknownSystemError(42)))

        response = client.post(
            "/api/amber-sync",
            json={"system_id": 42, "action": "usage", "start_date": "2025-10-01"},
        )

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["detail"], "System 42 not found")

    def test_out_of_range_maps_to_400(self) -> None:
        client = _client(sync_service=_FakeSyncService(error=ValueError("timestamp outside range")))

        response = client.post(
            "/api/amber-sync",
            json={"system_id": 1, "action": "pricing", "start_date": "2025-10-01"},
        )

        self.assertEqual(response.status_code, 400)

    def test_status_endpoint(self) -> None:
        response = _client().get("/api/amber-sync/status")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertTrue(body["running"])
        self.assertEqual(body["last_run_id"], 3)

    def test_runs_endpoint_lists_recorded_runs(self) -> None:
        rows = [
            {
                "id": 7,
                "system_id": 1,
                "action": "updateUsage",
                "trigger_source": "periodic",
                "first_day": "2025-10-01",
                "number_of_days": 1,
                "dry_run": False,
                "status": "ok",
                "rows_inserted": 288,
                "started_at": datetime(2025, 10, 2, 0, 10, tzinfo=timezone.utc),
                "finished_at": datetime(2025, 10, 2, 0, 10, 2, tzinfo=timezone.utc),
                "error_text": None,
            }
        ]

        with patch("app.api.amber_sync.list_amber_sync_runs", return_value=rows) as list_runs:
            response = _client().get("/api/amber-sync/runs", params={"system_id": 1, "limit": 5})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()[0]["rows_inserted"], 288)
        self.assertEqual(list_runs.call_args.kwargs, {"system_id": 1, "limit": 5})


class AmberForceSyncEndpointTests(TestCase):
    def test_force_is_accepted(self) -> None:
        polling_service = _FakePollingService()
        response = _client(polling_service=polling_service).post("/api/amber-sync/force", params={"system_id": 1})

        self.assertEqual(response.status_code, 202)
        self.assertEqual(response.json(), {"system_id": 1, "status": "accepted", "message": "Amber sync started asynchronously"})
        self.assertEqual(polling_service.forced, [1])

    def test_force_conflict_and_unknown_system(self) -> None:
        busy = _client(polling_service=_FakePollingService(force_error=RuntimeError("already in progress")))
        missing = _client(polling_service=_FakePollingService(force_error=LookupError("System 9 not found")))

        self.assertEqual(busy.post("/api/amber-sync/force", params={"system_id": 1}).status_code, 409)
        self.assertEqual(missing.post("/api/amber-sync/force", params={"system_id": 9}).status_code, 404)
