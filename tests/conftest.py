"""
tests/conftest.py
-----------------
Shared fixtures: an in-memory data database, an in-memory metadata
repository and a service wired to both.
Run with: python -m pytest tests/
"""
from __future__ import annotations

import pytest

from core.coordinator import MetadataReadinessSignal
from core.metadata.memory import InMemoryMetadataRepository
from core.service import MigrationService
from fakes import ORDER_COLUMNS, FakeDatabase, make_orders


@pytest.fixture
def db() -> FakeDatabase:
    """A primary site holding an ``orders`` table of 100 rows."""
    fake = FakeDatabase()
    fake.create_table("orders", ORDER_COLUMNS, make_orders(100))
    return fake


@pytest.fixture
def repo() -> InMemoryMetadataRepository:
    return InMemoryMetadataRepository()


@pytest.fixture
def service(db: FakeDatabase, repo: InMemoryMetadataRepository) -> MigrationService:
    return MigrationService(
        db,
        repo,
        site_name="site_a",
        readiness=MetadataReadinessSignal(repo, partner_site="site_b"),
        sleep=lambda seconds: None,
    )
