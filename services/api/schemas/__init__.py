"""Pydantic schemas for API request/response models."""
from typing import Optional, List, Dict, Any
from datetime import datetime
from pydantic import BaseModel, Field

from core.coordinator import CutoverStrategy


# ===== Operations =====

class StartMigrationRequest(BaseModel):
    """Request model for starting (or resuming) a coordinated migration."""
    source_table: str
    site_name: Optional[str] = None
    target_table: Optional[str] = None
    archive_table: Optional[str] = None
    is_coordinator: bool = False
    wait_for_partner: bool = True
    operation_id: Optional[str] = None
    order_column: str = "created_at"
    retention: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    batch_size: Optional[int] = Field(default=None, gt=0)
    strategy: CutoverStrategy = CutoverStrategy.CAPTURE_THEN_SWITCH
    dry_run: bool = False
    sampled_cutoff: bool = False


class MigrationPlanResponse(BaseModel):
    total_rows: int
    rows_to_archive: int
    rows_to_migrate: int
    cutoff_column: str
    cutoff_boundary: Optional[str] = None
    exact: bool
    target_exists: bool
    archive_exists: bool


class OperationResponse(BaseModel):
    """Structured result of a coordinated migration call."""
    operation_id: str
    site_name: str
    status: str
    phase: int
    is_coordinator: bool
    success: bool
    archived_rows: int = 0
    migrated_rows: int = 0
    backup_table: Optional[str] = None
    consistent: Optional[bool] = None
    notes: Optional[str] = None
    error: Optional[str] = None
    initiated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    plan: Optional[MigrationPlanResponse] = None


class SiteOperation(BaseModel):
    operation_id: str
    site_name: str
    table_name: str
    status: str
    phase: int
    is_coordinator: bool
    partner_ready: bool
    initiated_at: datetime
    completed_at: Optional[datetime] = None
    notes: Optional[str] = None


class OperationStatusResponse(BaseModel):
    operation_id: str
    sites: List[SiteOperation]
    jobs: List[Dict[str, Any]]


class PartnerScriptRequest(BaseModel):
    source_table: str
    target_table: Optional[str] = None
    archive_table: Optional[str] = None
    save: bool = False


class ScriptResponse(BaseModel):
    content: str
    path: Optional[str] = None


# ===== Jobs =====

class JobProgressResponse(BaseModel):
    job_id: str
    job_name: str
    status: str
    processed_rows: int
    total_rows: int
    percentage: float
    current_batch: int
    rows_per_second: float
    avg_batch_seconds: float
    last_batch_seconds: Optional[float] = None
    estimated_completion: Optional[datetime] = None
    elapsed: str


class JobActionResponse(BaseModel):
    job_id: str
    message: str


# ===== Replication =====

class ReadinessCheckResponse(BaseModel):
    name: str
    status: str
    details: str
    action: str


class ReadinessResponse(BaseModel):
    ready: bool
    checks: List[ReadinessCheckResponse]


class ReplicationStatusResponse(BaseModel):
    site_role: str
    is_active_site: bool
    replication_state: str
    lag_bytes: int
    lag_seconds: float
    subscriptions: List[Dict[str, Any]]
    slots: List[Dict[str, Any]]
    recommendation: str


class TableReplicationRequest(BaseModel):
    reason: str = "Table migration in progress"


# ===== Cutover =====

class SwitchRequest(BaseModel):
    old_table: str
    new_table: str
    backup_suffix: Optional[str] = None
    force: bool = False


class SwitchResponse(BaseModel):
    status: str
    success: bool
    old_table: str
    new_table: str
    backup_name: Optional[str] = None
    old_rows: Optional[int] = None
    new_rows: Optional[int] = None
    steps_completed: int
    fks_repointed: int
    rollback: str
    manual_intervention_required: bool
    error: Optional[str] = None
    elapsed_seconds: float


class RollbackRequest(BaseModel):
    current_table: str
    backup_table: str
    force_on_standby: bool = False
    drop_replaced: bool = True


class RollbackResponse(BaseModel):
    success: bool
    current_table: str
    backup_table: str
    replaced_table: Optional[str] = None
    replaced_dropped: bool = False
    restored_rows: Optional[int] = None
    error: Optional[str] = None


class ConsistencyRequest(BaseModel):
    source_table: str
    target_table: Optional[str] = None
    archive_table: Optional[str] = None
    key_column: str = "id"


# ===== Maintenance =====

class BackupCleanupRequest(BaseModel):
    pattern: str
    older_than_days: Optional[int] = Field(default=None, ge=0)
    dry_run: bool = True


class BackupTableResponse(BaseModel):
    name: str
    base_table: str
    created_at: datetime
    age_days: float
    dropped: bool
    error: Optional[str] = None


class BackupCleanupResponse(BaseModel):
    pattern: str
    older_than_days: int
    dry_run: bool
    dropped_count: int
    candidates: List[BackupTableResponse]


class LogCleanupResponse(BaseModel):
    days_to_keep: int
    batch_records_deleted: int
    operations_deleted: int


# ===== Health =====

class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    timestamp: datetime
    site_name: str
    data_db: bool
    metadata_db: bool
    memory_mb: float
    forwarding_failures: int
