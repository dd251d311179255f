"""Persistence: SQLModel tables, SQLite engine and repository."""

from testplane.store.database import Database
from testplane.store.models import (
    ArtifactStrategy,
    Project,
    QueueEntry,
    Run,
    Suite,
    Test,
    Tester,
    TestState,
)
from testplane.store.repository import Store, TestContext

__all__ = [
    "ArtifactStrategy",
    "Database",
    "Project",
    "QueueEntry",
    "Run",
    "Store",
    "Suite",
    "Test",
    "TestContext",
    "TestState",
    "Tester",
]
