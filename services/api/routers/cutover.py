"""
Cutover routes: switch validation, the rename-based switch, rollback and
the post-migration consistency check.

A failed switch is still a 200 response: the body carries the status and
the rollback outcome, which is what the operator has to act on.
"""
from fastapi import APIRouter, HTTPException, Depends
from typing import Any, Dict

from core.coordinator import CoordinationError
from core.cutover import SwitchResult
from core.service import MigrationService
from services.api.dependencies import get_service
from services.api.schemas import (
    ConsistencyRequest,
    RollbackRequest,
    RollbackResponse,
    SwitchRequest,
    SwitchResponse,
)

router = APIRouter(prefix="/cutover", tags=["cutover"])


def to_switch_response(result: SwitchResult) -> SwitchResponse:
    return SwitchResponse(
        status=result.status.value,
        success=result.success,
        old_table=result.old_table,
        new_table=result.new_table,
        backup_name=result.backup_name,
        old_rows=result.old_rows,
        new_rows=result.new_rows,
        steps_completed=result.steps_completed,
        fks_repointed=result.fks_repointed,
        rollback=result.rollback.value,
        manual_intervention_required=result.manual_intervention_required,
        error=result.error,
        elapsed_seconds=round(result.elapsed_seconds, 4),
    )


@router.get("/validate", response_model=Dict[str, Any])
def validate_switch(
    old_table: str,
    new_table: str,
    force: bool = False,
    service: MigrationService = Depends(get_service),
):
    report = service.validate_switch(old_table, new_table, force)
    return {
        "ready": report.ready,
        "old_table": report.old_table,
        "new_table": report.new_table,
        "old_rows": report.old_rows,
        "new_rows": report.new_rows,
        "is_primary_site": report.is_primary_site,
        "dependent_foreign_keys": [
            f"{fk.table_name}.{fk.constraint_name}" for fk in report.dependent_fks
        ],
        "problems": report.problems,
    }


@router.post("/switch", response_model=SwitchResponse)
def atomic_switch(request: SwitchRequest, service: MigrationService = Depends(get_service)):
    result = service.atomic_switch(
        request.old_table, request.new_table, request.backup_suffix, request.force
    )
    return to_switch_response(result)


@router.post("/rollback", response_model=RollbackResponse)
def rollback(request: RollbackRequest, service: MigrationService = Depends(get_service)):
    """Put a backup table back under the original name."""
    result = service.rollback(
        request.current_table,
        request.backup_table,
        request.force_on_standby,
        request.drop_replaced,
    )
    return RollbackResponse(
        success=result.success,
        current_table=result.current_table,
        backup_table=result.backup_table,
        replaced_table=result.replaced_table,
        replaced_dropped=result.replaced_dropped,
        restored_rows=result.restored_rows,
        error=result.error,
    )


@router.post("/consistency", response_model=Dict[str, Any])
def consistency(request: ConsistencyRequest, service: MigrationService = Depends(get_service)):
    try:
        report = service.validate_consistency(
            request.source_table, request.target_table, request.archive_table, request.key_column
        )
    except CoordinationError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return report.to_dict()
