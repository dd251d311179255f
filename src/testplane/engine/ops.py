"""TestPlane operations facade.

Single entry point used by the daemon and any outer surface. Owns one
instance of each engine component over a shared database:

    TestCoordinator
    ├── ConfigSynchronizer   testers, projects, suites from configuration
    ├── TestSynchronizer     tests from the filesystem
    ├── QueueManager         admission, removal, select-and-claim
    ├── LifecycleManager     start and reset transitions
    ├── ResultRecorder       executor output to Run
    └── NotificationSelector listing, eligibility, notified stamps
"""

from __future__ import annotations

import os
from collections.abc import Iterable
from pathlib import Path
from typing import Literal

import structlog

from testplane.config.models import TestPlaneConfig
from testplane.core.errors import StoreError
from testplane.core.messages import Message
from testplane.engine.config_sync import ConfigSynchronizer
from testplane.engine.exclusions import is_excluded
from testplane.engine.interpreter import LogFormatter, add_project_root_path, decode_file_name
from testplane.engine.lifecycle import LifecycleManager
from testplane.engine.notifications import NotificationSelector, Notifier, TestInfo
from testplane.engine.queue import QueueManager
from testplane.engine.recorder import ResultRecorder
from testplane.engine.synchronizer import SyncResult, TestSynchronizer
from testplane.store.database import Database
from testplane.store.models import Project, Run, Suite, Test, TestState
from testplane.store.repository import Store, TestContext

logger = structlog.get_logger()

All = Literal["all"]


def _contains(root: str, path: str) -> bool:
    root = root.rstrip(os.sep)
    return path == root or path.startswith(root + os.sep)


class TestCoordinator:
    """Runs every engine operation against one configuration and database."""

    __test__ = False

    def __init__(
        self,
        config: TestPlaneConfig,
        db: Database,
        notifier: Notifier | None = None,
    ) -> None:
        self.config = config
        self.db = db
        self.store = Store(db)
        self.formatter = LogFormatter.from_config(config.links)
        self.queue = QueueManager(db)
        self.lifecycle = LifecycleManager(db)
        self.synchronizer = TestSynchronizer(self.store, self.queue)
        self.recorder = ResultRecorder(db, self.store, self.formatter)
        self.notifications = NotificationSelector(self.store, self.formatter, notifier)
        self.config_sync = ConfigSynchronizer(self.store)

    @classmethod
    def from_config(
        cls,
        config: TestPlaneConfig,
        notifier: Notifier | None = None,
    ) -> TestCoordinator:
        """Open (creating if needed) the configured database."""
        db = Database.from_config(config.database)
        db.create_all()
        return cls(config, db, notifier)

    def close(self) -> None:
        self.db.dispose()

    # =========================================================================
    # Synchronization
    # =========================================================================

    def sync_config(self) -> list[Message]:
        return self.config_sync.sync(self.config)

    def exclusions_for(self, project: Project) -> list[str]:
        return self.config.exclusions_for(project.name)

    def sync_tests(self) -> SyncResult:
        """Synchronize every suite.

        Raises:
            ConfigError: A suite's tests directory is missing.
        """
        result = self.synchronizer.sync_all(self.exclusions_for)
        logger.info(
            "tests_synced",
            files=result.files_checked,
            created=result.tests_created,
            updated=result.tests_updated,
            deleted=result.tests_deleted,
            queued=result.tests_queued,
            duration_ms=round(result.duration_ms, 1),
        )
        return result

    def sync_suite(self, suite_id: int) -> SyncResult:
        suite = self._require_suite(suite_id)
        project = self._require_project(suite.project_id)
        return self.synchronizer.sync_suite(suite, project, self.exclusions_for(project))

    # =========================================================================
    # Queue
    # =========================================================================

    def queue_all_tests(self) -> int:
        """Admit every test. Returns how many were admitted."""
        return sum(self._admit(test) for test in self.store.list_tests())

    def queue_tests_for_suite(self, suite_id: int) -> int:
        return sum(self._admit(test) for test in self.store.list_tests(suite_id=suite_id))

    def run_test(self, test_id: int, force: bool = False) -> bool:
        return self.queue.admit(test_id, force=force)

    def run_all(self, project_id: int | None = None) -> int:
        """Enable and force every test (of one project) into the queue."""
        count = 0
        for test in self.store.list_tests(project_id=project_id):
            if test.id is None:
                continue
            self._enable_test(test.id, True)
            count += self.queue.admit(test.id, force=True)
        logger.info("run_all", project_id=project_id, queued=count)
        return count

    def is_enqueued(self, test_id: int) -> bool:
        return self.queue.is_enqueued(test_id)

    def _admit(self, test: Test) -> bool:
        return test.id is not None and self.queue.admit(test.id)

    # =========================================================================
    # Enabling
    # =========================================================================

    def enable_tests(
        self,
        enable: bool,
        project_id: int | None = None,
        test_id: int | All | None = None,
    ) -> bool:
        """Enable or disable tests, optionally narrowed to a project or one test.

        Disabling drops a test from the queue. Enabling admits it unless its
        last result was ok.
        """
        only = None if test_id == "all" else test_id
        for test in self.store.list_tests(project_id=project_id, test_id=only):
            if test.id is not None:
                self._enable_test(test.id, enable)
        return enable

    def enable_projects(self, enable: bool, project_id: int | All) -> bool:
        if project_id == "all":
            projects = self.store.list_projects()
        else:
            project = self.store.get_project(project_id)
            projects = [project] if project else []
        for project in projects:
            if project.id is not None:
                self.store.set_project_enabled(project.id, enable)
        return enable

    def _enable_test(self, test_id: int, enable: bool) -> None:
        """Flip the enabled flag and bring the queue in line.

        Disabling a queued test resets it to idle, which also drops its queue
        entry, so no test is left queued without one. Any other state only
        loses its entry; a running test keeps running. Enabling admits every
        test whose state is not ok.
        """
        test = self.store.set_test_enabled(test_id, enable)
        if test is None:
            return
        if not enable:
            if test.state == TestState.QUEUED.value:
                self.lifecycle.reset(test_id)
            else:
                self.queue.remove(test_id)
            return
        if test.state != TestState.OK.value:
            self.queue.admit(test_id)

    # =========================================================================
    # State
    # =========================================================================

    def reset(self, project_id: int | None = None) -> int:
        return self.lifecycle.reset_all(project_id)

    def reset_test(self, test_id: int) -> Test | None:
        return self.lifecycle.reset(test_id)

    def clear_runs(self) -> int:
        count = self.store.clear_runs()
        logger.info("runs_cleared", count=count)
        return count

    # =========================================================================
    # Execution
    # =========================================================================

    def claim_next(self) -> Test | None:
        return self.queue.claim_next()

    def mark_running(self, test_id: int) -> Test:
        return self.lifecycle.mark_running(test_id)

    def test_context(self, test_id: int) -> TestContext | None:
        return self.store.test_context(test_id)

    def record(
        self,
        test_id: int,
        raw_output: str,
        success: bool,
        started_at: float | None = None,
        ended_at: float | None = None,
    ) -> Run | None:
        return self.recorder.record(test_id, raw_output, success, started_at, ended_at)

    # =========================================================================
    # Results
    # =========================================================================

    def get_tests(self, project_id: int | None = None) -> list[TestInfo]:
        return self.notifications.test_infos(project_id)

    def notify(self, project_id: int | None = None) -> list[TestInfo]:
        return self.notifications.notify(project_id)

    def mark_tests_as_notified(self, entries: Iterable[TestInfo]) -> int:
        return self.notifications.mark_notified(list(entries))

    # =========================================================================
    # File triggers
    # =========================================================================

    def is_test_file(self, path: str | Path) -> Test | None:
        """The stored test whose file is ``path``, if the file exists."""
        target = Path(path)
        if not target.exists():
            return None
        for test in self.store.list_tests():
            if test.full_path == target:
                return test
        return None

    def get_suites_for_path(self, path: str | Path) -> list[Suite]:
        """Suites of the projects containing ``path`` and of projects depending on them."""
        target = os.fspath(path)
        projects = self.store.list_projects()
        owners = {p.name for p in projects if p.path and _contains(p.path, target)}
        dependents = {
            p.name
            for p in projects
            if p.name in self.config.projects
            and owners.intersection(self.config.projects[p.name].depends)
        }
        names = owners | dependents
        project_ids = [p.id for p in projects if p.name in names and p.id is not None]
        if not project_ids:
            return []
        return self.store.list_suites(project_ids)

    def handle_changed_paths(self, paths: Iterable[str | Path]) -> SyncResult:
        """React to filesystem changes.

        A change inside a suite's tests directory re-syncs that suite. A
        change anywhere else in a project queues every test of the suites
        it affects.
        """
        result = SyncResult()
        projects = {p.id: p for p in self.store.list_projects()}
        to_sync: dict[int, Suite] = {}
        to_queue: dict[int, Suite] = {}

        for raw in paths:
            path = Path(raw)
            for suite in self.get_suites_for_path(path):
                project = projects.get(suite.project_id)
                if project is None or suite.id is None:
                    continue
                if is_excluded(self.exclusions_for(project), None, path):
                    continue
                if path.is_relative_to(suite.tests_full_path(project)):
                    to_sync[suite.id] = suite
                else:
                    to_queue[suite.id] = suite

        for suite in to_sync.values():
            project = projects[suite.project_id]
            result.merge(
                self.synchronizer.sync_suite(suite, project, self.exclusions_for(project))
            )
        for suite_id in to_queue:
            result.tests_queued += self.queue_tests_for_suite(suite_id)

        if result.tests_changed or result.tests_queued:
            logger.info(
                "changes_handled",
                suites_synced=len(to_sync),
                suites_queued=len(to_queue),
                queued=result.tests_queued,
            )
        return result

    # =========================================================================
    # Editor
    # =========================================================================

    def make_edit_file_command(self, file_b64: str, line: str | int, suite_id: int) -> str:
        """Editor command line for a linked file.

        Raises:
            StoreError: Unknown suite.
            ConfigError: No editor for the suite and no default editor.
        """
        suite = self._require_suite(suite_id)
        project = self._require_project(suite.project_id)
        file = add_project_root_path(decode_file_name(file_b64), project.path)
        template = self.config.editor_bin(suite.editor)
        return template.replace("{file}", str(file)).replace("{line}", str(line))

    # =========================================================================
    # Lookups
    # =========================================================================

    def _require_suite(self, suite_id: int) -> Suite:
        suite = self.store.get_suite(suite_id)
        if suite is None:
            raise StoreError.not_found("suite", suite_id)
        return suite

    def _require_project(self, project_id: int) -> Project:
        project = self.store.get_project(project_id)
        if project is None:
            raise StoreError.not_found("project", project_id)
        return project
