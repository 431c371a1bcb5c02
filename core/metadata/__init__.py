"""Metadata store for jobs, batch log, operations, replication control and audit."""
from core.metadata.db import MetadataDB
from core.metadata.memory import InMemoryMetadataRepository
from core.metadata.repository import (
    MetadataRepository,
    PostgresMetadataRepository,
    RecordExistsError,
)

__all__ = [
    "MetadataDB",
    "MetadataRepository",
    "PostgresMetadataRepository",
    "InMemoryMetadataRepository",
    "RecordExistsError",
]
