"""Ingest executor output for one test into a Run."""

from __future__ import annotations

import json
import time

import structlog
from sqlalchemy import delete
from sqlmodel import col

from testplane.engine.interpreter import LogFormatter, find_screenshots, read_html_artifact
from testplane.engine.lifecycle import Trigger, can_transition, result_state
from testplane.store.database import Database
from testplane.store.models import QueueEntry, Run, Test
from testplane.store.repository import Store

logger = structlog.get_logger()


class ResultRecorder:
    """Builds Run records and moves tests to their result state."""

    def __init__(self, db: Database, store: Store, formatter: LogFormatter) -> None:
        self.db = db
        self.store = store
        self.formatter = formatter

    def record(
        self,
        test_id: int,
        raw_output: str,
        success: bool,
        started_at: float | None = None,
        ended_at: float | None = None,
    ) -> Run | None:
        """Persist the outcome of one execution.

        The run, the state change, the last-run pointer and the queue removal
        are written in one transaction. A test deleted while it was running
        yields None. Store errors propagate.
        """
        context = self.store.test_context(test_id)
        if context is None:
            logger.info("record_skipped_missing_test", test_id=test_id)
            return None

        project_root = context.project.path
        log = self.formatter.format(raw_output, project_root, context.suite.id or 0)
        html = read_html_artifact(project_root, context.tester, context.test.name)
        screenshots = find_screenshots(project_root, context.tester, context.test.name, raw_output)

        target = result_state(success)
        with self.db.immediate_transaction() as session:
            test = session.get(Test, test_id)
            if test is None:
                logger.info("record_skipped_missing_test", test_id=test_id)
                return None
            if not can_transition(test.state, target, Trigger.RESULT):
                logger.warning(
                    "unexpected_result_transition",
                    test_id=test_id,
                    current=test.state,
                    target=target.value,
                )

            run = Run(
                test_id=test_id,
                was_ok=success,
                log=log,
                html=html,
                screenshots=json.dumps(screenshots) if screenshots else None,
                started_at=started_at,
                ended_at=ended_at,
            )
            session.add(run)
            session.flush()

            test.state = target.value
            test.last_run_id = run.id
            test.updated_at = time.time()
            session.add(test)
            session.execute(delete(QueueEntry).where(col(QueueEntry.test_id) == test_id))
            session.flush()
            session.refresh(run)

        logger.info(
            "test_recorded",
            test_id=test_id,
            test=context.test.name,
            state=target.value,
            run_id=run.id,
        )
        return run
