from __future__ import annotations

import json
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import text
from sqlalchemy.orm import Session


def create_amber_sync_run(
    db: Session,
    *,
    system_id: int,
    action: str,
    trigger_source: str,
    first_day: date,
    number_of_days: int,
    dry_run: bool,
) -> int:
    row = db.execute(
        text(
            """
            INSERT INTO amber_sync_runs
                (system_id, action, trigger_source, first_day, number_of_days, dry_run,
                 status, rows_inserted, started_at, audit_json)
            VALUES
                (:system_id, :action, :trigger_source, :first_day, :number_of_days, :dry_run,
                 'running', 0, :started_at, CAST(:audit_json AS JSONB))
            RETURNING id
            """
        ),
        {
            "system_id": system_id,
            "action": action,
            "trigger_source": trigger_source,
            "first_day": first_day.isoformat(),
            "number_of_days": number_of_days,
            "dry_run": dry_run,
            "started_at": datetime.now(timezone.utc),
            "audit_json": "{}",
        },
    ).first()
    if row is None:
        raise RuntimeError("failed to create amber_sync_run")
    return int(row[0])


def finish_amber_sync_run(
    db: Session,
    *,
    run_id: int,
    status: str,
    rows_inserted: int,
    audit_json: dict[str, Any] | None,
    error_text: str | None,
) -> None:
    db.execute(
        text(
            """
            UPDATE amber_sync_runs
            SET
                finished_at = :finished_at,
                status = :status,
                rows_inserted = :rows_inserted,
                audit_json = CAST(:audit_json AS JSONB),
                error_text = :error_text
            WHERE id = :run_id
            """
        ),
        {
            "run_id": run_id,
            "finished_at": datetime.now(timezone.utc),
            "status": status,
            "rows_inserted": rows_inserted,
            "audit_json": json.dumps(audit_json or {}, separators=(",", ":"), ensure_ascii=True),
            "error_text": error_text,
        },
    )


def list_amber_sync_runs(
    db: Session,
    *,
    system_id: int | None = None,
    limit: int = 20,
) -> list[dict[str, Any]]:
    where_sql = "WHERE system_id = :system_id" if system_id is not None else ""
    rows = db.execute(
        text(
            f"""
            SELECT id, system_id, action, trigger_source, first_day, number_of_days, dry_run,
                   status, rows_inserted, started_at, finished_at, error_text
            FROM amber_sync_runs
            {where_sql}
            ORDER BY started_at DESC, id DESC
            LIMIT :limit
            """
        ),
        {"system_id": system_id, "limit": limit},
    ).mappings()
    return [dict(row) for row in rows]


def get_latest_amber_sync_run(db: Session) -> dict[str, Any] | None:
    row = db.execute(
        text(
            """
            SELECT id, system_id, action, trigger_source, first_day, number_of_days, dry_run,
                   status, rows_inserted, started_at, finished_at, error_text
            FROM amber_sync_runs
            ORDER BY started_at DESC, id DESC
            LIMIT 1
            """
        )
    ).mappings().first()
    return dict(row) if row is not None else None
