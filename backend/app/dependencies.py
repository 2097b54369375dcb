from typing import TYPE_CHECKING

from fastapi import HTTPException, Request

from app.core.config import Settings

if TYPE_CHECKING:
    from app.services.amber_polling import AmberPollingService
    from app.services.amber_sync import AmberSyncService


def get_settings_from_app(request: Request) -> Settings:
    settings = getattr(request.app.state, "settings", None)
    if settings is None:
        raise HTTPException(status_code=503, detail="Application settings are not initialized")
    return settings


def get_amber_sync_service(request: Request) -> "AmberSyncService":
    service = getattr(request.app.state, "amber_sync_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Amber sync service is not initialized")
    return service


def get_amber_polling_service(request: Request) -> "AmberPollingService":
    service = getattr(request.app.state, "amber_polling_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Amber polling service is not initialized")
    return service
