"""
Shared FastAPI dependencies and error mapping for the routers.
"""
from fastapi import HTTPException, Request

from core.batch_engine import BatchValidationError
from core.coordinator import CoordinationError
from core.cutoff import CutoffError
from core.replication import ReplicationControlError
from core.service import MigrationService

# Errors caused by the request itself; reported as 400 instead of 500.
CLIENT_ERRORS = (
    ValueError,
    BatchValidationError,
    CoordinationError,
    CutoffError,
    ReplicationControlError,
)


def get_service(request: Request) -> MigrationService:
    """Dependency: the site's ``MigrationService`` created at startup."""
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return service


def bad_request(exc: Exception) -> HTTPException:
    return HTTPException(status_code=400, detail=str(exc))
