"""Bring stored testers, projects and suites in line with the configuration."""

from __future__ import annotations

import structlog

from testplane.config.models import TestPlaneConfig
from testplane.core.messages import Message
from testplane.store.repository import Store

logger = structlog.get_logger()


class ConfigSynchronizer:
    """Upserts what the configuration declares and deletes what it dropped.

    Deleting a suite or project takes its tests and queue entries with it.
    A suite naming an unknown tester is skipped and reported.
    """

    def __init__(self, store: Store) -> None:
        self.store = store

    def sync(self, config: TestPlaneConfig) -> list[Message]:
        messages: list[Message] = []

        for name, tester in config.testers.items():
            self.store.upsert_tester(name, **tester.model_dump())

        for project_name, project_config in config.projects.items():
            project = self.store.upsert_project(
                project_name, project_config.path, project_config.tests_path
            )
            assert project.id is not None

            for suite_name, suite_config in project_config.suites.items():
                tester = self.store.find_tester_by_name(suite_config.tester)
                if tester is None or tester.id is None:
                    logger.error(
                        "suite_tester_not_found",
                        project=project_name,
                        suite=suite_name,
                        tester=suite_config.tester,
                    )
                    messages.append(Message.error(f"Tester {suite_config.tester} not found."))
                    continue
                self.store.upsert_suite(
                    suite_name,
                    project.id,
                    tester.id,
                    **suite_config.model_dump(exclude={"tester"}),
                )

            self._remove_missing_suites(project.id, set(project_config.suites))

        self._remove_missing_projects(set(config.projects))
        self._remove_missing_testers(set(config.testers))

        logger.info(
            "config_synced",
            testers=len(config.testers),
            projects=len(config.projects),
            errors=sum(1 for m in messages if m.severity == "error"),
        )
        return messages

    def _remove_missing_suites(self, project_id: int, names: set[str]) -> None:
        for suite in self.store.list_suites([project_id]):
            if suite.name not in names and suite.id is not None:
                logger.info("suite_removed", suite=suite.name, project_id=project_id)
                self.store.delete_suite(suite.id)

    def _remove_missing_projects(self, names: set[str]) -> None:
        for project in self.store.list_projects():
            if project.name not in names and project.id is not None:
                logger.info("project_removed", project=project.name)
                self.store.delete_project(project.id)

    def _remove_missing_testers(self, names: set[str]) -> None:
        for tester in self.store.list_testers():
            if tester.name not in names and tester.id is not None:
                logger.info("tester_removed", tester=tester.name)
                self.store.delete_tester(tester.id)
