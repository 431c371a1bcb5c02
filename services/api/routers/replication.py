"""
Replication status, readiness checks and the per-table forwarding switch.
"""
from fastapi import APIRouter, Depends
from typing import Any, Dict

from core.replication import ReplicationControlError
from core.service import MigrationService
from services.api.dependencies import bad_request, get_service
from services.api.schemas import (
    ReadinessCheckResponse,
    ReadinessResponse,
    ReplicationStatusResponse,
    TableReplicationRequest,
)

router = APIRouter(prefix="/replication", tags=["replication"])


@router.get("/status", response_model=ReplicationStatusResponse)
def replication_status(service: MigrationService = Depends(get_service)):
    return ReplicationStatusResponse(**service.replication_status().to_dict())


@router.get("/readiness", response_model=ReadinessResponse)
def readiness(service: MigrationService = Depends(get_service)):
    """Pre-migration checks: site role, lag, activity, disk."""
    report = service.validate_readiness()
    return ReadinessResponse(
        ready=report.ready,
        checks=[
            ReadinessCheckResponse(name=c.name, status=c.status, details=c.details, action=c.action)
            for c in report.checks
        ],
    )


@router.post("/tables/{table_name}/pause")
def pause_table(
    table_name: str,
    request: TableReplicationRequest,
    service: MigrationService = Depends(get_service),
):
    try:
        service.pause_table_replication(table_name, request.reason)
    except ReplicationControlError as e:
        raise bad_request(e)
    return {"table_name": table_name, "replication_enabled": False}


@router.post("/tables/{table_name}/resume")
def resume_table(table_name: str, service: MigrationService = Depends(get_service)):
    try:
        service.resume_table_replication(table_name)
    except ReplicationControlError as e:
        raise bad_request(e)
    return {"table_name": table_name, "replication_enabled": True}


@router.get("/forwarding-failures", response_model=Dict[str, Any])
def forwarding_failures(service: MigrationService = Depends(get_service)):
    """Counters of change-capture forwards that failed and were isolated."""
    return service.forwarding_failures().to_dict()
