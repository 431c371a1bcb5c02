"""core/__init__.py"""
from core.database import DatabaseManager, DatabaseError, ConnectionLostError, ForeignKeyRef
from core.batch_engine import BatchEngine, BatchJobError, BatchValidationError
from core.cutoff import CutoffError, CutoffResult, calculate_cutoff
from core.cutover import CutoverEngine, CutoverError, SwitchResult
from core.change_capture import ChangeCaptureLayer, ChangeCaptureRule, CapturingWriter, ForwardingMode
from core.coordinator import CoordinationProtocol, CoordinationError, PartnerTimeoutError
from core.replication import ReplicationTransport, ReplicationControlError
from core.service import MigrationService

__all__ = [
    "DatabaseManager",
    "DatabaseError",
    "ConnectionLostError",
    "ForeignKeyRef",
    "BatchEngine",
    "BatchJobError",
    "BatchValidationError",
    "CutoffError",
    "CutoffResult",
    "calculate_cutoff",
    "CutoverEngine",
    "CutoverError",
    "SwitchResult",
    "ChangeCaptureLayer",
    "ChangeCaptureRule",
    "CapturingWriter",
    "ForwardingMode",
    "CoordinationProtocol",
    "CoordinationError",
    "PartnerTimeoutError",
    "ReplicationTransport",
    "ReplicationControlError",
    "MigrationService",
]
