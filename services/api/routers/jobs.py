"""
Batch job routes: listing, progress, pause and resume.
"""
from fastapi import APIRouter, HTTPException, Depends
from typing import Any, Dict, List, Optional

from core.service import MigrationService
from services.api.dependencies import get_service
from services.api.schemas import JobActionResponse, JobProgressResponse

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.get("", response_model=List[Dict[str, Any]])
def list_jobs(
    operation_id: Optional[str] = None,
    service: MigrationService = Depends(get_service),
):
    return [job.to_dict() for job in service.list_jobs(operation_id)]


@router.get("/{job_id}/progress", response_model=JobProgressResponse)
def job_progress(job_id: str, service: MigrationService = Depends(get_service)):
    """Percentage, throughput and ETA from the batch log."""
    progress = service.job_progress(job_id)
    if progress is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return JobProgressResponse(
        job_id=progress.job_id,
        job_name=progress.job_name,
        status=progress.status.value,
        processed_rows=progress.processed_rows,
        total_rows=progress.total_rows,
        percentage=progress.percentage,
        current_batch=progress.current_batch,
        rows_per_second=progress.rows_per_second,
        avg_batch_seconds=progress.avg_batch_seconds,
        last_batch_seconds=progress.last_batch_seconds,
        estimated_completion=progress.estimated_completion,
        elapsed=progress.elapsed,
    )


@router.post("/{job_id}/pause", response_model=JobActionResponse)
def pause_job(job_id: str, service: MigrationService = Depends(get_service)):
    """Stop the job before its next batch."""
    if not service.pause_job(job_id):
        raise HTTPException(status_code=409, detail="Job not found or not pausable")
    return JobActionResponse(job_id=job_id, message="Job paused")


@router.post("/{job_id}/resume", response_model=JobActionResponse)
def resume_job(job_id: str, service: MigrationService = Depends(get_service)):
    """
    Mark a paused job runnable again. The coordinated migration that owns
    it continues from the checkpoint when it is re-invoked.
    """
    if not service.resume_job(job_id):
        raise HTTPException(status_code=409, detail="Job not found or not paused")
    return JobActionResponse(job_id=job_id, message="Job resumed")
