"""Result listing and notification eligibility.

Eligibility is asymmetric: a failed test is always a candidate, a passing or
idle test only once it has been notified before. Delivery and marking are
separate steps so a caller can retry delivery without losing the pending
status of an entry.
"""

from __future__ import annotations

import time
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

import structlog

from testplane.engine.interpreter import LogFormatter
from testplane.store.models import Run, TestState
from testplane.store.repository import Store

logger = structlog.get_logger()


@dataclass(frozen=True)
class TestInfo:
    """A test joined with its latest run, as listed and notified."""

    __test__ = False

    id: int
    project_name: str
    project_id: int
    suite_id: int
    path: str
    name: str
    edit_file_url: str
    updated_at: float
    state: str
    enabled: bool
    run: Run | None = None
    notified_at: float | None = None
    log: str | None = None
    html: str | None = None
    screenshots: tuple[str, ...] = ()
    duration: float | None = None


class Notifier(Protocol):
    """Delivers eligible results. The channel is up to the implementation."""

    def notify(self, entries: Sequence[TestInfo]) -> None: ...


class LogNotifier:
    """Writes one log event per entry."""

    def notify(self, entries: Sequence[TestInfo]) -> None:
        for entry in entries:
            logger.info(
                "test_notification",
                project=entry.project_name,
                test=entry.name,
                state=entry.state,
                run_id=entry.run.id if entry.run else None,
            )


def is_eligible(entry: TestInfo) -> bool:
    return entry.state == TestState.FAILED.value or entry.notified_at is not None


class NotificationSelector:
    """Builds the latest-result view and selects what to surface."""

    def __init__(
        self,
        store: Store,
        formatter: LogFormatter,
        notifier: Notifier | None = None,
    ) -> None:
        self.store = store
        self.formatter = formatter
        self.notifier: Notifier = notifier or LogNotifier()

    def test_infos(self, project_id: int | None = None) -> list[TestInfo]:
        """Tests ordered running, failed, queued, ok, idle; newest first within a state."""
        projects = {p.id: p for p in self.store.list_projects()}
        suites = {s.id: s for s in self.store.list_suites()}

        infos: list[TestInfo] = []
        for test in self.store.list_tests_by_attention(project_id):
            suite = suites.get(test.suite_id)
            project = projects.get(suite.project_id) if suite else None
            if suite is None or project is None or test.id is None:
                continue
            run = self.store.latest_run(test.id)
            infos.append(
                TestInfo(
                    id=test.id,
                    project_name=project.name,
                    project_id=suite.project_id,
                    suite_id=test.suite_id,
                    path=test.path,
                    name=test.name,
                    edit_file_url=self.formatter.edit_url(str(test.full_path), test.suite_id),
                    updated_at=test.updated_at,
                    state=test.state,
                    enabled=test.enabled,
                    run=run,
                    notified_at=run.notified_at if run else None,
                    log=run.log if run else None,
                    html=run.html if run else None,
                    screenshots=tuple(run.get_screenshots()) if run else (),
                    duration=run.duration_seconds if run else None,
                )
            )
        return infos

    @staticmethod
    def eligible(entries: Sequence[TestInfo]) -> list[TestInfo]:
        """Drop entries that are not failed and were never notified."""
        return [entry for entry in entries if is_eligible(entry)]

    def notify(self, project_id: int | None = None) -> list[TestInfo]:
        """Hand eligible entries to the notifier. Does not mark them."""
        selected = self.eligible(self.test_infos(project_id))
        if selected:
            self.notifier.notify(selected)
        logger.debug("notifications_selected", project_id=project_id, count=len(selected))
        return selected

    def mark_notified(self, entries: Sequence[TestInfo], at: float | None = None) -> int:
        """Stamp notified_at on the runs of delivered entries."""
        run_ids = [entry.run.id for entry in entries if entry.run and entry.run.id is not None]
        return self.store.mark_runs_notified(run_ids, at if at is not None else time.time())
