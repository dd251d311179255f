"""CRUD and query operations over the TestPlane tables.

Every method opens its own session and returns detached rows, which callers
treat as read-only value snapshots. Multi-step read-check-write sequences
(queue admission, claiming, result ingestion) live in the engine and run
inside ``Database.immediate_transaction()``.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import Any

import structlog
from sqlalchemy import case, delete
from sqlmodel import col, select

from testplane.store.database import Database
from testplane.store.models import Project, QueueEntry, Run, Suite, Test, Tester, TestState

logger = structlog.get_logger()

# Listing order: what needs attention first
_STATE_ORDER = {
    TestState.RUNNING.value: 1,
    TestState.FAILED.value: 2,
    TestState.QUEUED.value: 3,
    TestState.OK.value: 4,
    TestState.IDLE.value: 5,
}


@dataclass(frozen=True)
class TestContext:
    """A test with its suite, project and tester resolved."""

    test: Test
    suite: Suite
    project: Project
    tester: Tester


class Store:
    """Repository over a Database."""

    def __init__(self, db: Database) -> None:
        self.db = db

    # -------------------------------------------------------------------------
    # Testers
    # -------------------------------------------------------------------------

    def upsert_tester(self, name: str, **fields: Any) -> Tester:
        """Create or update a tester by name."""
        if isinstance(fields.get("env"), dict):
            fields["env"] = json.dumps(fields["env"])
        with self.db.immediate_transaction() as session:
            tester = session.exec(select(Tester).where(Tester.name == name)).first()
            if tester is None:
                tester = Tester(name=name, **fields)
            else:
                for key, value in fields.items():
                    setattr(tester, key, value)
            session.add(tester)
            session.flush()
            session.refresh(tester)
            return tester

    def find_tester_by_name(self, name: str) -> Tester | None:
        with self.db.session() as session:
            return session.exec(select(Tester).where(Tester.name == name)).first()

    def get_tester(self, tester_id: int) -> Tester | None:
        with self.db.session() as session:
            return session.get(Tester, tester_id)

    def list_testers(self) -> list[Tester]:
        with self.db.session() as session:
            return list(session.exec(select(Tester).order_by(col(Tester.id))))

    def delete_tester(self, tester_id: int) -> None:
        """Delete a tester with its suites and their tests."""
        with self.db.immediate_transaction() as session:
            suite_ids = list(session.exec(select(Suite.id).where(Suite.tester_id == tester_id)))
            self._delete_suites(session, [sid for sid in suite_ids if sid is not None])
            session.execute(delete(Tester).where(col(Tester.id) == tester_id))

    # -------------------------------------------------------------------------
    # Projects
    # -------------------------------------------------------------------------

    def upsert_project(self, name: str, path: str, tests_path: str) -> Project:
        """Create or update a project by name. The enabled flag is preserved."""
        with self.db.immediate_transaction() as session:
            project = session.exec(select(Project).where(Project.name == name)).first()
            if project is None:
                project = Project(name=name, path=path, tests_path=tests_path)
            else:
                project.path = path
                project.tests_path = tests_path
                project.updated_at = time.time()
            session.add(project)
            session.flush()
            session.refresh(project)
            return project

    def get_project(self, project_id: int) -> Project | None:
        with self.db.session() as session:
            return session.get(Project, project_id)

    def find_project_by_name(self, name: str) -> Project | None:
        with self.db.session() as session:
            return session.exec(select(Project).where(Project.name == name)).first()

    def list_projects(self) -> list[Project]:
        with self.db.session() as session:
            return list(session.exec(select(Project).order_by(col(Project.id))))

    def set_project_enabled(self, project_id: int, enabled: bool) -> None:
        with self.db.session() as session:
            project = session.get(Project, project_id)
            if project is None:
                return
            project.enabled = enabled
            session.add(project)
            session.commit()

    def delete_project(self, project_id: int) -> None:
        """Delete a project with its suites and their tests."""
        with self.db.immediate_transaction() as session:
            suite_ids = list(session.exec(select(Suite.id).where(Suite.project_id == project_id)))
            self._delete_suites(session, [sid for sid in suite_ids if sid is not None])
            session.execute(delete(Project).where(col(Project.id) == project_id))

    # -------------------------------------------------------------------------
    # Suites
    # -------------------------------------------------------------------------

    def upsert_suite(self, name: str, project_id: int, tester_id: int, **fields: Any) -> Suite:
        """Create or update a suite by (name, project)."""
        with self.db.immediate_transaction() as session:
            suite = session.exec(
                select(Suite).where(Suite.name == name, Suite.project_id == project_id)
            ).first()
            if suite is None:
                suite = Suite(name=name, project_id=project_id, tester_id=tester_id, **fields)
            else:
                suite.tester_id = tester_id
                for key, value in fields.items():
                    setattr(suite, key, value)
            session.add(suite)
            session.flush()
            session.refresh(suite)
            return suite

    def get_suite(self, suite_id: int) -> Suite | None:
        with self.db.session() as session:
            return session.get(Suite, suite_id)

    def find_suite(self, name: str, project_id: int) -> Suite | None:
        with self.db.session() as session:
            return session.exec(
                select(Suite).where(Suite.name == name, Suite.project_id == project_id)
            ).first()

    def list_suites(self, project_ids: list[int] | None = None) -> list[Suite]:
        with self.db.session() as session:
            stmt = select(Suite).order_by(col(Suite.id))
            if project_ids is not None:
                stmt = stmt.where(col(Suite.project_id).in_(project_ids))
            return list(session.exec(stmt))

    def delete_suite(self, suite_id: int) -> None:
        """Delete a suite with its tests and their queue entries."""
        with self.db.immediate_transaction() as session:
            self._delete_suites(session, [suite_id])

    def _delete_suites(self, session: Any, suite_ids: list[int]) -> None:
        if not suite_ids:
            return
        test_ids = select(Test.id).where(col(Test.suite_id).in_(suite_ids))
        session.execute(delete(QueueEntry).where(col(QueueEntry.test_id).in_(test_ids)))
        session.execute(delete(Test).where(col(Test.suite_id).in_(suite_ids)))
        session.execute(delete(Suite).where(col(Suite.id).in_(suite_ids)))

    # -------------------------------------------------------------------------
    # Tests
    # -------------------------------------------------------------------------

    def get_test(self, test_id: int) -> Test | None:
        with self.db.session() as session:
            return session.get(Test, test_id)

    def find_test_by_fingerprint(self, fingerprint: str) -> Test | None:
        with self.db.session() as session:
            return session.exec(select(Test).where(Test.fingerprint == fingerprint)).first()

    def find_test_by_name_and_suite(self, name: str, suite_id: int) -> Test | None:
        with self.db.session() as session:
            return session.exec(
                select(Test).where(Test.name == name, Test.suite_id == suite_id)
            ).first()

    def upsert_test(self, fingerprint: str, path: str, name: str, suite_id: int) -> tuple[Test, bool]:
        """Create or re-point the test keyed by fingerprint.

        Returns:
            The stored test and whether it was created.
        """
        with self.db.immediate_transaction() as session:
            test = session.exec(select(Test).where(Test.fingerprint == fingerprint)).first()
            created = test is None
            if test is None:
                test = Test(fingerprint=fingerprint, path=path, name=name, suite_id=suite_id)
            else:
                test.path = path
                test.name = name
                test.suite_id = suite_id
                test.updated_at = time.time()
            session.add(test)
            session.flush()
            session.refresh(test)
            return test, created

    def update_test_fingerprint(self, test_id: int, fingerprint: str, path: str) -> Test | None:
        """Record new content for an existing test, keeping its identity and history."""
        with self.db.immediate_transaction() as session:
            test = session.get(Test, test_id)
            if test is None:
                return None
            test.fingerprint = fingerprint
            test.path = path
            test.updated_at = time.time()
            session.add(test)
            session.flush()
            session.refresh(test)
            return test

    def list_tests(
        self,
        project_id: int | None = None,
        test_id: int | None = None,
        suite_id: int | None = None,
    ) -> list[Test]:
        with self.db.session() as session:
            stmt = select(Test).join(Suite, col(Suite.id) == col(Test.suite_id))
            if project_id is not None:
                stmt = stmt.where(Suite.project_id == project_id)
            if test_id is not None:
                stmt = stmt.where(Test.id == test_id)
            if suite_id is not None:
                stmt = stmt.where(Test.suite_id == suite_id)
            return list(session.exec(stmt.order_by(col(Test.id))))

    def list_tests_by_attention(self, project_id: int | None = None) -> list[Test]:
        """Tests ordered running, failed, queued, ok, idle, then most recently updated."""
        with self.db.session() as session:
            order = case(_STATE_ORDER, value=col(Test.state), else_=6)
            stmt = select(Test).join(Suite, col(Suite.id) == col(Test.suite_id))
            if project_id is not None:
                stmt = stmt.where(Suite.project_id == project_id)
            stmt = stmt.order_by(order, col(Test.updated_at).desc(), col(Test.id))
            return list(session.exec(stmt))

    def set_test_enabled(self, test_id: int, enabled: bool) -> Test | None:
        with self.db.session() as session:
            test = session.get(Test, test_id)
            if test is None:
                return None
            test.enabled = enabled
            session.add(test)
            session.commit()
            return test

    def delete_test(self, test_id: int) -> None:
        with self.db.immediate_transaction() as session:
            session.execute(delete(QueueEntry).where(col(QueueEntry.test_id) == test_id))
            session.execute(delete(Test).where(col(Test.id) == test_id))

    def test_context(self, test_id: int) -> TestContext | None:
        """Resolve a test's suite, project and tester in one read."""
        with self.db.session() as session:
            row = session.exec(
                select(Test, Suite, Project, Tester)
                .join(Suite, col(Suite.id) == col(Test.suite_id))
                .join(Project, col(Project.id) == col(Suite.project_id))
                .join(Tester, col(Tester.id) == col(Suite.tester_id))
                .where(Test.id == test_id)
            ).first()
            if row is None:
                return None
            test, suite, project, tester = row
            return TestContext(test=test, suite=suite, project=project, tester=tester)

    # -------------------------------------------------------------------------
    # Runs
    # -------------------------------------------------------------------------

    def get_run(self, run_id: int) -> Run | None:
        with self.db.session() as session:
            return session.get(Run, run_id)

    def latest_run(self, test_id: int) -> Run | None:
        """Most recently created run of a test."""
        with self.db.session() as session:
            return session.exec(
                select(Run)
                .where(Run.test_id == test_id)
                .order_by(col(Run.created_at).desc(), col(Run.id).desc())
            ).first()

    def list_runs(self, test_id: int) -> list[Run]:
        with self.db.session() as session:
            return list(
                session.exec(select(Run).where(Run.test_id == test_id).order_by(col(Run.id)))
            )

    def mark_runs_notified(self, run_ids: list[int], at: float | None = None) -> int:
        if not run_ids:
            return 0
        stamp = at if at is not None else time.time()
        with self.db.session() as session:
            runs = list(session.exec(select(Run).where(col(Run.id).in_(run_ids))))
            for run in runs:
                run.notified_at = stamp
                session.add(run)
            session.commit()
            return len(runs)

    def clear_runs(self) -> int:
        """Delete every run. Tests keep their state; last_run_id is reset."""
        with self.db.immediate_transaction() as session:
            result = session.execute(delete(Run))
            for test in session.exec(select(Test).where(col(Test.last_run_id).is_not(None))):
                test.last_run_id = None
                session.add(test)
            return int(result.rowcount or 0)

    # -------------------------------------------------------------------------
    # Queue
    # -------------------------------------------------------------------------

    def get_queue_entry(self, test_id: int) -> QueueEntry | None:
        with self.db.session() as session:
            return session.exec(select(QueueEntry).where(QueueEntry.test_id == test_id)).first()

    def list_queue(self) -> list[QueueEntry]:
        """Queue entries in admission order."""
        with self.db.session() as session:
            return list(
                session.exec(
                    select(QueueEntry).order_by(col(QueueEntry.created_at), col(QueueEntry.id))
                )
            )
