"""SQLModel definitions for projects, suites, tests, runs and the run queue.

Single source of truth for all table schemas.

Ownership:
- Project 1..n Suite (cascade), Suite 1..n Test (cascade), Test 1..1 Queue (cascade)
- Run.test_id is a lookup reference only. It carries no foreign key so a Run
  written after its Test was deleted survives as an orphan.
- Test.last_run_id is a cache maintained by the result recorder.
"""

import json
import time
from enum import Enum
from pathlib import Path

from sqlalchemy import Column, ForeignKey, Integer, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class TestState(str, Enum):
    """Lifecycle state of a test."""

    IDLE = "idle"
    QUEUED = "queued"
    RUNNING = "running"
    OK = "ok"
    FAILED = "failed"


class ArtifactStrategy(str, Enum):
    """How screenshots are located after a run."""

    GENERIC = "generic"  # One file named after the test
    PATTERN = "pattern"  # One file per failing case found in the log


def _now() -> float:
    return time.time()


class Project(SQLModel, table=True):
    """A codebase root."""

    __tablename__ = "projects"

    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(unique=True, index=True)
    path: str
    tests_path: str
    enabled: bool = Field(default=True)
    created_at: float = Field(default_factory=_now)
    updated_at: float = Field(default_factory=_now)


class Tester(SQLModel, table=True):
    """Profile of an external test-running tool."""

    __tablename__ = "testers"

    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(unique=True, index=True)
    command: str
    output_folder: str | None = None
    output_html_fail_extension: str | None = None
    output_png_fail_extension: str | None = None
    require_tee: bool = Field(default=False)
    require_script: bool = Field(default=False)
    error_pattern: str | None = None
    env: str | None = None  # JSON object
    artifact_strategy: str = Field(default=ArtifactStrategy.GENERIC.value)
    screenshot_pattern: str | None = None
    screenshot_template: str | None = None

    def get_env(self) -> dict[str, str]:
        """Parse env JSON to dict."""
        if not self.env:
            return {}
        result: dict[str, str] = json.loads(self.env)
        return result


class Suite(SQLModel, table=True):
    """Named group of tests inside a project, bound to one tester."""

    __tablename__ = "suites"
    __table_args__ = (UniqueConstraint("name", "project_id", name="uq_suite_name_project"),)

    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    project_id: int = Field(
        sa_column=Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), index=True)
    )
    tester_id: int = Field(
        sa_column=Column(Integer, ForeignKey("testers.id", ondelete="CASCADE"), index=True)
    )
    tests_path: str | None = None
    command_options: str | None = None
    file_mask: str | None = None
    retries: int = Field(default=0)
    editor: str | None = None

    def tests_full_path(self, project: Project) -> Path:
        """Directory holding this suite's test files."""
        return Path(project.path) / (self.tests_path or project.tests_path)


class Test(SQLModel, table=True):
    """One discovered test file, keyed by the fingerprint of its content."""

    __tablename__ = "tests"

    id: int | None = Field(default=None, primary_key=True)
    fingerprint: str = Field(unique=True, index=True)
    path: str  # Absolute directory holding the file
    name: str = Field(index=True)  # Path relative to the suite's tests directory
    suite_id: int = Field(
        sa_column=Column(Integer, ForeignKey("suites.id", ondelete="CASCADE"), index=True)
    )
    state: str = Field(default=TestState.IDLE.value, index=True)
    enabled: bool = Field(default=True)
    last_run_id: int | None = None
    created_at: float = Field(default_factory=_now)
    updated_at: float = Field(default_factory=_now)

    @property
    def full_path(self) -> Path:
        return Path(self.path) / Path(self.name).name


class Run(SQLModel, table=True):
    """One recorded execution of a test. Immutable apart from notified_at."""

    __tablename__ = "runs"

    id: int | None = Field(default=None, primary_key=True)
    test_id: int = Field(index=True)
    was_ok: bool
    log: str = Field(sa_column=Column(Text, nullable=False))
    html: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    screenshots: str | None = None  # JSON array of paths
    started_at: float | None = None
    ended_at: float | None = None
    notified_at: float | None = None
    created_at: float = Field(default_factory=_now, index=True)

    def get_screenshots(self) -> list[str]:
        """Parse screenshots JSON to list."""
        if self.screenshots is None:
            return []
        result: list[str] = json.loads(self.screenshots)
        return result

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at is None or self.ended_at is None:
            return None
        return self.ended_at - self.started_at


class QueueEntry(SQLModel, table=True):
    """Marks a test as pending execution. At most one per test."""

    __tablename__ = "queue"

    id: int | None = Field(default=None, primary_key=True)
    test_id: int = Field(
        sa_column=Column(
            Integer,
            ForeignKey("tests.id", ondelete="CASCADE"),
            unique=True,
            nullable=False,
        )
    )
    created_at: float = Field(default_factory=_now, index=True)
