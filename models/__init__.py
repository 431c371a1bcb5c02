"""models/__init__.py"""
from models.mapping import (
    MappingType,
    PredicateDirection,
    RowPredicate,
    TableMapping,
    load_mappings_from_file,
    save_mappings_to_file,
)
from models.records import (
    AuditEntry,
    AuditStatus,
    BatchExecutionRecord,
    BatchOutcome,
    CoordinationOperation,
    JobOperation,
    JobStatus,
    MigrationJob,
    OperationStatus,
    ReplicationControlEntry,
    ReplicationStateSnapshot,
)

__all__ = [
    "MappingType",
    "PredicateDirection",
    "RowPredicate",
    "TableMapping",
    "load_mappings_from_file",
    "save_mappings_to_file",
    "AuditEntry",
    "AuditStatus",
    "BatchExecutionRecord",
    "BatchOutcome",
    "CoordinationOperation",
    "JobOperation",
    "JobStatus",
    "MigrationJob",
    "OperationStatus",
    "ReplicationControlEntry",
    "ReplicationStateSnapshot",
]
