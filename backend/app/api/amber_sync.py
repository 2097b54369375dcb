from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.dependencies import get_amber_polling_service, get_amber_sync_service
from app.repositories.amber_sync_runs import list_amber_sync_runs
from app.schemas.amber_sync import (
    AmberSyncForceResponse,
    AmberSyncRequest,
    AmberSyncResponse,
    AmberSyncRunResponse,
    AmberSyncStatusResponse,
)
from app.services.amber_polling import AmberPollingService
from app.services.amber_sync import AmberSyncService, SyncAction, UnknownSystemError


router = APIRouter(prefix="/api/amber-sync", tags=["amber-sync"])

_ACTIONS_BY_REQUEST: dict[str, tuple[SyncAction, ...]] = {
    "usage": (SyncAction.UPDATE_USAGE,),
    "pricing": (SyncAction.UPDATE_FORECASTS,),
    "both": (SyncAction.UPDATE_USAGE, SyncAction.UPDATE_FORECASTS),
    "all": (SyncAction.UPDATE_ALL,),
}


@router.post("", response_model=AmberSyncResponse)
def post_amber_sync(
    payload: AmberSyncRequest,
    sync_service: AmberSyncService = Depends(get_amber_sync_service),
) -> AmberSyncResponse:
    run_ids: list[int] = []
    audits = []
    try:
        for action in _ACTIONS_BY_REQUEST[payload.action]:
            run_id, audit = sync_service.run_and_record(
                action,
                system_id=payload.system_id,
                first_day=payload.start_date,
                number_of_days=payload.days,
                dry_run=payload.dry_run,
                trigger_source="api",
            )
            run_ids.append(run_id)
            audits.append(audit)
    except UnknownSystemError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

    return AmberSyncResponse(
        success=all(audit.success for audit in audits),
        total_rows_inserted=sum(audit.summary.num_rows_inserted for audit in audits),
        run_ids=run_ids,
        audits=[audit.to_dict() for audit in audits],
    )


@router.get("/status", response_model=AmberSyncStatusResponse)
def get_amber_sync_status(
    db: Session = Depends(get_db),
    polling_service: AmberPollingService = Depends(get_amber_polling_service),
) -> AmberSyncStatusResponse:
    return AmberSyncStatusResponse.model_validate(polling_service.get_status_snapshot(db))


@router.get("/runs", response_model=list[AmberSyncRunResponse])
def get_amber_sync_runs(
    system_id: int | None = Query(default=None, ge=1),
    limit: int = Query(default=20, ge=1, le=200),
    db: Session = Depends(get_db),
) -> list[AmberSyncRunResponse]:
    rows = list_amber_sync_runs(db, system_id=system_id, limit=limit)
    return [AmberSyncRunResponse.model_validate(row) for row in rows]


@router.post("/force", response_model=AmberSyncForceResponse, status_code=status.HTTP_202_ACCEPTED)
def post_amber_sync_force(
    system_id: int = Query(ge=1),
    polling_service: AmberPollingService = Depends(get_amber_polling_service),
) -> AmberSyncForceResponse:
    try:
        polling_service.request_force_sync(system_id)
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    except RuntimeError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))

    return AmberSyncForceResponse(
        system_id=system_id,
        status="accepted",
        message="Amber sync started asynchronously",
    )
