"""
Housekeeping routes: backup table cleanup, batch log retention and the
operator scripts.
"""
from fastapi import APIRouter, HTTPException, Depends, Query
from typing import List, Optional

from core.service import MigrationService
from logger import get_logger
from services.api.dependencies import get_service
from services.api.schemas import (
    BackupCleanupRequest,
    BackupCleanupResponse,
    BackupTableResponse,
    LogCleanupResponse,
    ScriptResponse,
)

log = get_logger(__name__)
router = APIRouter(prefix="/maintenance", tags=["maintenance"])


@router.post("/cleanup-backups", response_model=BackupCleanupResponse)
def cleanup_backups(
    request: BackupCleanupRequest,
    service: MigrationService = Depends(get_service),
):
    """List (dry run) or drop ``*_backup_YYYYMMDD_HHMMSS`` tables past retention."""
    result = service.cleanup_old_backups(request.pattern, request.older_than_days, request.dry_run)
    return BackupCleanupResponse(
        pattern=result.pattern,
        older_than_days=result.older_than_days,
        dry_run=result.dry_run,
        dropped_count=result.dropped_count,
        candidates=[
            BackupTableResponse(
                name=b.name,
                base_table=b.base_table,
                created_at=b.created_at,
                age_days=b.age_days,
                dropped=b.dropped,
                error=b.error,
            )
            for b in result.candidates
        ],
    )


@router.post("/cleanup-logs", response_model=LogCleanupResponse)
def cleanup_logs(
    days_to_keep: Optional[int] = Query(default=None, ge=0),
    service: MigrationService = Depends(get_service),
):
    result = service.cleanup_batch_logs(days_to_keep)
    return LogCleanupResponse(
        days_to_keep=result.days_to_keep,
        batch_records_deleted=result.batch_records_deleted,
        operations_deleted=result.operations_deleted,
    )


@router.get("/scripts/failover", response_model=ScriptResponse)
def failover_script(
    tables: List[str] = Query(...),
    save: bool = False,
    service: MigrationService = Depends(get_service),
):
    try:
        script = service.generate_failover_script(tables, save=save)
    except OSError as e:
        log.error("Failed to write failover script: %s", e)
        raise HTTPException(status_code=500, detail=str(e))
    return ScriptResponse(content=script.content, path=script.path)


@router.get("/scripts/comparison/{table_name}", response_model=ScriptResponse)
def comparison_script(
    table_name: str,
    save: bool = False,
    service: MigrationService = Depends(get_service),
):
    try:
        script = service.generate_comparison_script(table_name, save=save)
    except OSError as e:
        log.error("Failed to write comparison script: %s", e)
        raise HTTPException(status_code=500, detail=str(e))
    return ScriptResponse(content=script.content, path=script.path)
