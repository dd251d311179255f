"""Shared fixtures for engine tests."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import pytest

from testplane.engine.queue import QueueManager
from testplane.engine.synchronizer import TestSynchronizer as Synchronizer
from testplane.store.database import Database
from testplane.store.models import Project, Suite, Tester
from testplane.store.models import Test as StoredTest
from testplane.store.models import TestState as State
from testplane.store.repository import Store

PASSING_TEST = """<?php

class ExampleTest extends TestCase
{
    public function testBasic()
    {
        $this->assertTrue(true);
    }
}
"""


@dataclass
class Workspace:
    """A project on disk with one suite registered in the store."""

    root: Path
    tests_dir: Path
    tester: Tester
    project: Project
    suite: Suite

    def write(self, name: str, content: str = PASSING_TEST) -> Path:
        path = self.tests_dir / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        return path


@pytest.fixture
def workspace(tmp_path: Path, store: Store) -> Workspace:
    root = tmp_path / "shop"
    tests_dir = root / "tests"
    tests_dir.mkdir(parents=True)
    tester = store.upsert_tester("phpunit", command="vendor/bin/phpunit")
    project = store.upsert_project("shop", str(root), "tests")
    assert tester.id is not None and project.id is not None
    suite = store.upsert_suite("unit", project.id, tester.id, file_mask="*Test.php")
    return Workspace(root=root, tests_dir=tests_dir, tester=tester, project=project, suite=suite)


@pytest.fixture
def queue(temp_db: Database) -> QueueManager:
    return QueueManager(temp_db)


@pytest.fixture
def synchronizer(store: Store, queue: QueueManager) -> Synchronizer:
    return Synchronizer(store, queue)


@pytest.fixture
def make_test(
    store: Store, temp_db: Database, workspace: Workspace
) -> Callable[..., StoredTest]:
    """Store a test row directly, in the given state."""

    def _make(
        name: str = "ExampleTest.php",
        state: State = State.IDLE,
        enabled: bool = True,
    ) -> StoredTest:
        test, _ = store.upsert_test(
            f"fp-{name}", str(workspace.tests_dir), name, workspace.suite.id
        )
        with temp_db.session() as session:
            row = session.get(StoredTest, test.id)
            assert row is not None
            row.state = state.value
            row.enabled = enabled
            session.add(row)
            session.commit()
            return row

    return _make
