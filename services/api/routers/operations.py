"""
Coordinated migration routes.

The partner site's ``HttpReadinessSignal`` polls ``GET /operations/{id}``
on this API, so the status route must answer 404 (not 500) while the
operation is unknown here.
"""
from fastapi import APIRouter, HTTPException, Depends
from typing import Optional

from core.coordinator import CoordinationError, CoordinationResult
from core.service import MigrationService
from logger import get_logger
from services.api.dependencies import CLIENT_ERRORS, bad_request, get_service
from services.api.schemas import (
    MigrationPlanResponse,
    OperationResponse,
    OperationStatusResponse,
    PartnerScriptRequest,
    ScriptResponse,
    SiteOperation,
    StartMigrationRequest,
)

log = get_logger(__name__)
router = APIRouter(prefix="/operations", tags=["operations"])


def to_operation_response(result: CoordinationResult) -> OperationResponse:
    plan = None
    if result.plan is not None:
        p = result.plan
        plan = MigrationPlanResponse(
            total_rows=p.total_rows,
            rows_to_archive=p.rows_to_archive,
            rows_to_migrate=p.rows_to_migrate,
            cutoff_column=p.cutoff.column,
            cutoff_boundary=None if p.cutoff.boundary is None else str(p.cutoff.boundary),
            exact=p.cutoff.exact,
            target_exists=p.target_exists,
            archive_exists=p.archive_exists,
        )
    return OperationResponse(
        operation_id=result.operation_id,
        site_name=result.site_name,
        status=result.status.value,
        phase=result.phase,
        is_coordinator=result.is_coordinator,
        success=result.success,
        archived_rows=result.archived_rows,
        migrated_rows=result.migrated_rows,
        backup_table=result.backup_table,
        consistent=result.consistent,
        notes=result.notes,
        error=result.error,
        initiated_at=result.initiated_at,
        completed_at=result.completed_at,
        plan=plan,
    )


@router.post("", response_model=OperationResponse)
def start_operation(
    request: StartMigrationRequest,
    service: MigrationService = Depends(get_service),
):
    """
    Start, resume or dry-run a coordinated migration on this site.

    Runs to completion (or failure) before responding; engine failures are
    reported in ``error`` with the operation's final status.
    """
    result = service.start_coordinated_migration(
        site_name=request.site_name,
        source_table=request.source_table,
        target_table=request.target_table,
        archive_table=request.archive_table,
        is_coordinator=request.is_coordinator,
        wait_for_partner=request.wait_for_partner,
        operation_id=request.operation_id,
        order_column=request.order_column,
        retention=request.retention,
        batch_size=request.batch_size,
        strategy=request.strategy,
        dry_run=request.dry_run,
        sampled_cutoff=request.sampled_cutoff,
    )
    return to_operation_response(result)


@router.get("/{operation_id}", response_model=OperationStatusResponse)
def get_operation(
    operation_id: str,
    site: Optional[str] = None,
    service: MigrationService = Depends(get_service),
):
    """Every site's row for the operation (or only *site*'s) plus its jobs."""
    report = service.check_status(operation_id)
    sites = [s for s in report.sites if site is None or s["site_name"] == site]
    if not sites:
        raise HTTPException(status_code=404, detail="Operation not found")
    return OperationStatusResponse(
        operation_id=operation_id,
        sites=[SiteOperation(**s) for s in sites],
        jobs=report.jobs,
    )


@router.post("/{operation_id}/partner-ready", response_model=SiteOperation)
def mark_partner_ready(
    operation_id: str,
    site: Optional[str] = None,
    service: MigrationService = Depends(get_service),
):
    """Record that the partner is ready; unblocks a waiting coordinator."""
    try:
        op = service.mark_partner_ready(operation_id, site)
    except CoordinationError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return SiteOperation(**op.to_dict())


@router.post("/{operation_id}/partner-script", response_model=ScriptResponse)
def partner_script(
    operation_id: str,
    request: PartnerScriptRequest,
    service: MigrationService = Depends(get_service),
):
    try:
        script = service.generate_partner_script(
            operation_id,
            request.source_table,
            request.target_table,
            request.archive_table,
            save=request.save,
        )
    except CLIENT_ERRORS as e:
        raise bad_request(e)
    except OSError as e:
        log.error("Failed to write partner script: %s", e)
        raise HTTPException(status_code=500, detail=str(e))
    return ScriptResponse(content=script.content, path=script.path)
