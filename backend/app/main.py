from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import Depends, FastAPI, Request
from sqlalchemy.orm import Session

from app.api.amber_sync import router as amber_sync_router
from app.core.config import Settings, get_settings
from app.core.logging import configure_logging
from app.db.session import SessionLocal, check_db_connection, get_db
from app.dependencies import get_settings_from_app
from app.services.amber_client import AmberClient
from app.services.amber_polling import AmberPollingService
from app.services.amber_sync import AmberSyncService


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)
    amber_client = AmberClient(
        base_url=settings.amber_base_url,
        api_key=settings.amber_api_key,
        timeout_seconds=settings.amber_http_timeout_seconds,
    )
    amber_sync_service = AmberSyncService(
        settings=settings,
        session_factory=SessionLocal,
        amber_client=amber_client,
    )
    amber_polling_service = AmberPollingService(
        settings=settings,
        session_factory=SessionLocal,
        sync_service=amber_sync_service,
    )

    app.state.settings = settings
    app.state.amber_client = amber_client
    app.state.amber_sync_service = amber_sync_service
    app.state.amber_polling_service = amber_polling_service

    amber_polling_service.start()
    try:
        yield
    finally:
        amber_polling_service.stop()


app = FastAPI(title="Amber Sync Backend", lifespan=lifespan)
app.include_router(amber_sync_router)


@app.get("/health")
def health():
    return {"status": "ok", "service": "backend"}


@app.get("/status")
def status(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings_from_app),
):
    db_ok, db_error = check_db_connection(db)
    amber_polling_service: AmberPollingService | None = getattr(
        request.app.state,
        "amber_polling_service",
        None,
    )

    db_status: dict[str, object] = {"ok": db_ok}
    if db_error:
        db_status["error"] = db_error

    if amber_polling_service is None:
        polling_status = {
            "enabled": False,
            "running": False,
            "poll_seconds": None,
            "next_due_ts": None,
            "force_in_progress": False,
            "last_run_id": None,
            "last_status": None,
            "last_error": "Amber polling service not initialized",
            "last_run": None,
        }
    else:
        polling_status = amber_polling_service.get_status_snapshot(db)

    return {
        "status": "working",
        "service": "backend",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "db": db_status,
        "amber_polling": polling_status,
        "config": {
            "amber_base_url": settings.amber_base_url,
            "amber_site_id": settings.amber_site_id,
            "amber_sync_enabled": settings.amber_sync_enabled,
            "amber_poll_seconds": settings.amber_poll_seconds,
            "amber_usage_sync_minute": settings.amber_usage_sync_minute,
            "amber_forecast_days": settings.amber_forecast_days,
            "amber_max_sync_days": settings.amber_max_sync_days,
            "amber_dry_run": settings.amber_dry_run,
        },
    }
