from __future__ import annotations

from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


SyncRequestAction = Literal["usage", "pricing", "both", "all"]


class AmberSyncRequest(BaseModel):
    system_id: int = Field(ge=1)
    action: SyncRequestAction
    start_date: date
    days: int = Field(default=1, ge=1, le=30)
    dry_run: bool = False


class AmberSyncResponse(BaseModel):
    success: bool
    total_rows_inserted: int
    run_ids: list[int] = Field(default_factory=list)
    audits: list[dict[str, Any]] = Field(default_factory=list)


class AmberSyncRunResponse(BaseModel):
    id: int
    system_id: int
    action: str
    trigger_source: str
    first_day: str
    number_of_days: int
    dry_run: bool
    status: str
    rows_inserted: int
    started_at: datetime
    finished_at: datetime | None = None
    error_text: str | None = None


class AmberSyncStatusResponse(BaseModel):
    enabled: bool
    running: bool
    poll_seconds: int | None = None
    next_due_ts: datetime | None = None
    force_in_progress: bool
    last_run_id: int | None = None
    last_status: str | None = None
    last_error: str | None = None
    last_run: dict[str, Any] | None = None


class AmberSyncForceResponse(BaseModel):
    system_id: int
    status: str
    message: str
