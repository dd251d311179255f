"""Run queue admission, removal and next-to-run selection.

Every read-check-write sequence runs inside one BEGIN IMMEDIATE transaction,
and ``queue.test_id`` is unique, so concurrent admissions of the same test
collapse into a single entry and one coherent state write. Selection and
claiming happen in one transaction as well, so two workers never receive the
same test.
"""

from __future__ import annotations

import structlog
from sqlalchemy import delete
from sqlmodel import Session, col, select

from testplane.engine.lifecycle import BUSY_STATES
from testplane.store.database import Database
from testplane.store.models import Project, QueueEntry, Suite, Test, TestState

logger = structlog.get_logger()


def _entry_for(session: Session, test_id: int) -> QueueEntry | None:
    return session.exec(select(QueueEntry).where(QueueEntry.test_id == test_id)).first()


def _next_eligible(session: Session) -> Test | None:
    """Oldest-admitted enabled test that is not running."""
    stmt = (
        select(Test)
        .join(QueueEntry, col(QueueEntry.test_id) == col(Test.id))
        .where(col(Test.enabled).is_(True), Test.state != TestState.RUNNING.value)
        .order_by(col(QueueEntry.created_at), col(QueueEntry.id))
        .limit(1)
    )
    return session.exec(stmt).first()


class QueueManager:
    """Single-consumer run queue over the ``queue`` table."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def admit(self, test_id: int, force: bool = False) -> bool:
        """Place a test in the queue.

        No-op for a disabled test or a test of a disabled project, and for a
        test that is already enqueued unless ``force`` is set. The state is
        written as ``queued`` unless the test is already queued or running;
        ``force`` overrides that guard too.

        Returns:
            True if an entry was created or the state was written.
        """
        with self.db.immediate_transaction() as session:
            row = session.exec(
                select(Test, Project)
                .join(Suite, col(Suite.id) == col(Test.suite_id))
                .join(Project, col(Project.id) == col(Suite.project_id))
                .where(Test.id == test_id)
            ).first()
            if row is None:
                return False
            test, project = row
            if not test.enabled or not project.enabled:
                return False

            entry = _entry_for(session, test_id)
            if entry is not None and test.state == TestState.QUEUED.value and not force:
                return False

            changed = False
            if entry is None:
                session.add(QueueEntry(test_id=test_id))
                changed = True
            if force or TestState(test.state) not in BUSY_STATES:
                test.state = TestState.QUEUED.value
                session.add(test)
                changed = True

        if changed:
            logger.debug("test_admitted", test_id=test_id, force=force)
        return changed

    def remove(self, test_id: int) -> bool:
        """Delete the test's queue entry. Idempotent."""
        with self.db.session() as session:
            result = session.execute(delete(QueueEntry).where(col(QueueEntry.test_id) == test_id))
            session.commit()
            return bool(result.rowcount)

    def is_enqueued(self, test_id: int) -> bool:
        """Queued state AND a queue entry. Either one alone does not count."""
        with self.db.session() as session:
            test = session.get(Test, test_id)
            if test is None or test.state != TestState.QUEUED.value:
                return False
            return _entry_for(session, test_id) is not None

    def select_next(self) -> Test | None:
        """Peek at the test that would run next, without claiming it."""
        with self.db.session() as session:
            return _next_eligible(session)

    def claim_next(self) -> Test | None:
        """Select the next test and mark it running in one transaction."""
        with self.db.immediate_transaction() as session:
            test = _next_eligible(session)
            if test is None:
                return None
            test.state = TestState.RUNNING.value
            session.add(test)
        logger.debug("test_claimed", test_id=test.id)
        return test

    def size(self) -> int:
        with self.db.session() as session:
            return len(list(session.exec(select(QueueEntry.id))))
