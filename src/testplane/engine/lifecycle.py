"""Test lifecycle state machine.

States: idle, queued, running, ok, failed. New tests start idle. idle, ok
and failed are resting states and can all be re-entered.

Transitions:
    idle | ok | failed  -> queued    admission
    queued | running    -> queued    forced admission ("run again now")
    queued              -> running   executor picked the test up
    running             -> ok|failed result ingestion
    any                 -> idle      reset

The transition table is pure data. ``LifecycleManager`` applies the
transitions that are not owned by the queue manager or result recorder.
"""

from __future__ import annotations

from enum import Enum

import structlog
from sqlalchemy import delete
from sqlmodel import Session, col, select

from testplane.core.errors import LifecycleError
from testplane.store.database import Database
from testplane.store.models import QueueEntry, Suite, Test, TestState

logger = structlog.get_logger()

RESTING_STATES: frozenset[TestState] = frozenset({TestState.IDLE, TestState.OK, TestState.FAILED})
BUSY_STATES: frozenset[TestState] = frozenset({TestState.QUEUED, TestState.RUNNING})


class Trigger(Enum):
    """What caused a transition."""

    ADMIT = "admit"
    FORCE_ADMIT = "force_admit"
    START = "start"
    RESULT = "result"
    RESET = "reset"


_ALLOWED: dict[Trigger, tuple[frozenset[TestState], frozenset[TestState]]] = {
    # trigger: (from states, to states)
    Trigger.ADMIT: (RESTING_STATES, frozenset({TestState.QUEUED})),
    Trigger.FORCE_ADMIT: (
        RESTING_STATES | BUSY_STATES,
        frozenset({TestState.QUEUED}),
    ),
    Trigger.START: (frozenset({TestState.QUEUED}), frozenset({TestState.RUNNING})),
    Trigger.RESULT: (
        frozenset({TestState.RUNNING}),
        frozenset({TestState.OK, TestState.FAILED}),
    ),
    Trigger.RESET: (frozenset(TestState), frozenset({TestState.IDLE})),
}


def can_transition(current: TestState | str, target: TestState | str, trigger: Trigger) -> bool:
    """Whether ``trigger`` may move a test from ``current`` to ``target``."""
    sources, targets = _ALLOWED[trigger]
    return TestState(current) in sources and TestState(target) in targets


def result_state(success: bool) -> TestState:
    return TestState.OK if success else TestState.FAILED


class LifecycleManager:
    """Applies start and reset transitions against the database."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def mark_running(self, test_id: int) -> Test:
        """Pre-execution hook: queued -> running.

        Raises:
            LifecycleError: If the test is not queued.
        """
        with self.db.immediate_transaction() as session:
            test = session.get(Test, test_id)
            if test is None:
                raise LifecycleError.invalid_transition(test_id, "missing", TestState.RUNNING.value)
            if not can_transition(test.state, TestState.RUNNING, Trigger.START):
                raise LifecycleError.invalid_transition(test_id, test.state, TestState.RUNNING.value)
            test.state = TestState.RUNNING.value
            session.add(test)
        logger.debug("test_running", test_id=test_id)
        return test

    def reset(self, test_id: int) -> Test | None:
        """Any state -> idle. Drops the queue entry; run history is untouched."""
        with self.db.immediate_transaction() as session:
            test = session.get(Test, test_id)
            if test is None:
                return None
            self._reset(session, test)
        logger.debug("test_reset", test_id=test_id)
        return test

    def reset_all(self, project_id: int | None = None) -> int:
        """Reset every test, or every test of one project."""
        with self.db.immediate_transaction() as session:
            stmt = select(Test)
            if project_id is not None:
                stmt = stmt.join(Suite, col(Suite.id) == col(Test.suite_id)).where(
                    Suite.project_id == project_id
                )
            tests = list(session.exec(stmt))
            for test in tests:
                self._reset(session, test)
        logger.info("tests_reset", count=len(tests), project_id=project_id)
        return len(tests)

    def _reset(self, session: Session, test: Test) -> None:
        session.execute(delete(QueueEntry).where(col(QueueEntry.test_id) == test.id))
        test.state = TestState.IDLE.value
        session.add(test)
