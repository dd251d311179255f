"""Reconcile the stored tests of a suite with the files on disk.

For each suite:
1. The suite's tests directory must exist (fatal ConfigError otherwise)
2. Files are enumerated recursively, restricted to the suite's file mask
3. Excluded or non-testable files drop any test stored under their name
4. Testable files are fingerprinted. A file whose (name, suite) test already
   existed with different content gets the new fingerprint and is admitted
   to the queue. A file seen for the first time is stored idle and NOT
   admitted; it runs once enabled or queued in bulk.
5. Tests whose file disappeared are deleted

CRITICAL INVARIANT: passes over the same suite never overlap. Each suite has
its own lock; different suites may be synchronized in parallel.
"""

from __future__ import annotations

import fnmatch
import hashlib
import os
import threading
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from testplane.core.errors import ConfigError
from testplane.core.messages import Message
from testplane.engine.exclusions import is_excluded
from testplane.engine.queue import QueueManager
from testplane.engine.testability import SkipPredicate, is_testable
from testplane.store.models import Project, Suite, Test
from testplane.store.repository import Store

logger = structlog.get_logger()


@dataclass
class SyncResult:
    """Result of synchronizing one or more suites."""

    files_checked: int = 0
    tests_created: int = 0
    tests_updated: int = 0
    tests_deleted: int = 0
    tests_unchanged: int = 0
    tests_queued: int = 0
    duration_ms: float = 0.0
    messages: list[Message] = field(default_factory=list)

    @property
    def tests_changed(self) -> int:
        """Total tests created, updated or deleted."""
        return self.tests_created + self.tests_updated + self.tests_deleted

    def merge(self, other: SyncResult) -> None:
        self.files_checked += other.files_checked
        self.tests_created += other.tests_created
        self.tests_updated += other.tests_updated
        self.tests_deleted += other.tests_deleted
        self.tests_unchanged += other.tests_unchanged
        self.tests_queued += other.tests_queued
        self.duration_ms += other.duration_ms
        self.messages.extend(other.messages)


def compute_fingerprint(path: Path) -> str:
    """SHA-256 of file content."""
    hasher = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


def iter_suite_files(root: Path, file_mask: str | None = None) -> Iterator[Path]:
    """Files under ``root``, skipping dot-files and dot-directories."""
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
        for name in sorted(filenames):
            if name.startswith("."):
                continue
            if file_mask and not fnmatch.fnmatch(name, file_mask):
                continue
            yield Path(dirpath) / name


class TestSynchronizer:
    """Keeps the ``tests`` table in step with each suite's directory."""

    __test__ = False

    def __init__(
        self,
        store: Store,
        queue: QueueManager,
        skip_predicates: dict[str, SkipPredicate] | None = None,
    ) -> None:
        self.store = store
        self.queue = queue
        self.skip_predicates = skip_predicates
        self._locks: dict[int, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _suite_lock(self, suite_id: int) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(suite_id, threading.Lock())

    def sync_all(self, exclusions_for: Callable[[Project], list[str]]) -> SyncResult:
        """Synchronize every suite. A fatal configuration error stops the pass."""
        total = SyncResult()
        projects = {p.id: p for p in self.store.list_projects()}
        for suite in self.store.list_suites():
            project = projects.get(suite.project_id)
            if project is None:
                continue
            total.merge(self.sync_suite(suite, project, exclusions_for(project)))
        return total

    def sync_suite(self, suite: Suite, project: Project, exclusions: list[str]) -> SyncResult:
        """Synchronize one suite.

        Raises:
            ConfigError: If the suite's tests directory does not exist.
        """
        assert suite.id is not None
        with self._suite_lock(suite.id):
            return self._sync(suite, project, exclusions)

    def _sync(self, suite: Suite, project: Project, exclusions: list[str]) -> SyncResult:
        start_time = time.perf_counter()
        result = SyncResult()
        assert suite.id is not None

        root = suite.tests_full_path(project)
        if not root.is_dir():
            logger.error("tests_dir_not_found", suite=suite.name, path=str(root))
            raise ConfigError.tests_dir_not_found(suite.name, str(root))

        for file in iter_suite_files(root, suite.file_mask):
            result.files_checked += 1
            name = file.relative_to(root).as_posix()

            if is_excluded(exclusions, None, file) or not is_testable(file, self.skip_predicates):
                existing = self.store.find_test_by_name_and_suite(name, suite.id)
                if existing is not None and existing.id is not None:
                    self.store.delete_test(existing.id)
                    result.tests_deleted += 1
                continue

            try:
                self._sync_file(file, name, suite.id, result)
            except OSError as e:
                logger.warning("test_file_unreadable", path=str(file), error=str(e))
                result.messages.append(Message.warning(f"Error reading {file}: {e}"))

        for test in self.store.list_tests(suite_id=suite.id):
            if test.id is not None and not test.full_path.exists():
                self.store.delete_test(test.id)
                result.tests_deleted += 1

        result.duration_ms = (time.perf_counter() - start_time) * 1000
        if result.tests_changed:
            logger.info(
                "suite_synced",
                suite=suite.name,
                project=project.name,
                created=result.tests_created,
                updated=result.tests_updated,
                deleted=result.tests_deleted,
                queued=result.tests_queued,
            )
        return result

    def _sync_file(self, file: Path, name: str, suite_id: int, result: SyncResult) -> None:
        fingerprint = compute_fingerprint(file)
        directory = str(file.parent)

        existing = self.store.find_test_by_name_and_suite(name, suite_id)
        if existing is not None and existing.fingerprint == fingerprint:
            result.tests_unchanged += 1
            return

        if existing is None:
            _test, created = self.store.upsert_test(fingerprint, directory, name, suite_id)
            if created:
                result.tests_created += 1
            else:
                # Same content under a new name: the test moved
                result.tests_updated += 1
            return

        test = self._store_new_content(existing, fingerprint, directory, name, suite_id)
        result.tests_updated += 1
        if test is not None and test.id is not None and self.queue.admit(test.id):
            result.tests_queued += 1

    def _store_new_content(
        self,
        existing: Test,
        fingerprint: str,
        directory: str,
        name: str,
        suite_id: int,
    ) -> Test | None:
        assert existing.id is not None
        owner = self.store.find_test_by_fingerprint(fingerprint)
        if owner is None or owner.id == existing.id:
            return self.store.update_test_fingerprint(existing.id, fingerprint, directory)

        # Fingerprints are unique: the row holding this content is re-pointed
        # here and the stale (name, suite) row goes away.
        self.store.delete_test(existing.id)
        test, _created = self.store.upsert_test(fingerprint, directory, name, suite_id)
        return test
