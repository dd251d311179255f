"""Tests for the Store repository."""

from __future__ import annotations

import time

import pytest
from sqlmodel import select

from testplane.store.database import Database
from testplane.store.models import QueueEntry, Run, Suite
from testplane.store.models import Test as StoredTest
from testplane.store.models import TestState as State
from testplane.store.repository import Store


@pytest.fixture
def suite(store: Store) -> Suite:
    tester = store.upsert_tester("phpunit", command="vendor/bin/phpunit")
    project = store.upsert_project("shop", "/srv/shop", "tests")
    assert tester.id is not None and project.id is not None
    return store.upsert_suite("unit", project.id, tester.id, file_mask="*Test.php")


def _set_state(db: Database, test_id: int, state: State, updated_at: float | None = None) -> None:
    with db.session() as session:
        test = session.get(StoredTest, test_id)
        assert test is not None
        test.state = state.value
        if updated_at is not None:
            test.updated_at = updated_at
        session.add(test)
        session.commit()


class TestUpsertByName:
    def test_given_env_dict_when_tester_upserted_then_stored_as_json(self, store: Store) -> None:
        # When
        tester = store.upsert_tester("dusk", command="php artisan dusk", env={"APP_ENV": "dusk"})

        # Then
        assert tester.get_env() == {"APP_ENV": "dusk"}

    def test_given_existing_tester_when_upserted_then_updated_in_place(self, store: Store) -> None:
        # Given
        first = store.upsert_tester("phpunit", command="phpunit")

        # When
        second = store.upsert_tester("phpunit", command="vendor/bin/phpunit")

        # Then
        assert second.id == first.id
        assert second.command == "vendor/bin/phpunit"
        assert len(store.list_testers()) == 1

    def test_given_disabled_project_when_upserted_then_stays_disabled(self, store: Store) -> None:
        # Given
        project = store.upsert_project("shop", "/srv/shop", "tests")
        assert project.id is not None
        store.set_project_enabled(project.id, False)

        # When
        again = store.upsert_project("shop", "/srv/shop2", "spec")

        # Then
        assert again.id == project.id
        assert again.enabled is False
        assert again.path == "/srv/shop2"

    def test_given_same_suite_name_in_two_projects_then_two_suites(self, store: Store) -> None:
        # Given
        tester = store.upsert_tester("phpunit", command="phpunit")
        a = store.upsert_project("a", "/a", "tests")
        b = store.upsert_project("b", "/b", "tests")
        assert tester.id and a.id and b.id

        # When
        store.upsert_suite("unit", a.id, tester.id)
        store.upsert_suite("unit", b.id, tester.id)
        store.upsert_suite("unit", a.id, tester.id, retries=2)

        # Then
        suites = store.list_suites()
        assert len(suites) == 2
        found = store.find_suite("unit", a.id)
        assert found is not None and found.retries == 2


class TestTests:
    def test_given_new_fingerprint_when_upserted_then_created_idle(
        self, store: Store, suite: Suite
    ) -> None:
        # When
        test, created = store.upsert_test("fp1", "/srv/shop/tests", "ExampleTest.php", suite.id)

        # Then
        assert created is True
        assert test.state == State.IDLE.value
        assert test.enabled is True
        assert str(test.full_path) == "/srv/shop/tests/ExampleTest.php"

    def test_given_known_fingerprint_when_upserted_then_repointed(
        self, store: Store, suite: Suite
    ) -> None:
        # Given
        original, _ = store.upsert_test("fp1", "/srv/shop/tests", "OldTest.php", suite.id)

        # When
        moved, created = store.upsert_test("fp1", "/srv/shop/tests/Unit", "Unit/NewTest.php", suite.id)

        # Then
        assert created is False
        assert moved.id == original.id
        assert moved.name == "Unit/NewTest.php"
        assert str(moved.full_path) == "/srv/shop/tests/Unit/NewTest.php"

    def test_given_test_when_fingerprint_updated_then_identity_kept(
        self, store: Store, suite: Suite
    ) -> None:
        # Given
        test, _ = store.upsert_test("fp1", "/srv/shop/tests", "ExampleTest.php", suite.id)
        assert test.id is not None

        # When
        updated = store.update_test_fingerprint(test.id, "fp2", "/srv/shop/tests")

        # Then
        assert updated is not None
        assert updated.id == test.id
        assert store.find_test_by_fingerprint("fp1") is None
        assert store.find_test_by_name_and_suite("ExampleTest.php", suite.id) is not None

    def test_given_states_when_listed_by_attention_then_running_failed_queued_ok_idle(
        self, store: Store, temp_db: Database, suite: Suite
    ) -> None:
        # Given
        now = time.time()
        names = {}
        for i, state in enumerate([State.IDLE, State.OK, State.QUEUED, State.FAILED, State.RUNNING]):
            test, _ = store.upsert_test(f"fp{i}", "/srv/shop/tests", f"{state.value}Test.php", suite.id)
            assert test.id is not None
            _set_state(temp_db, test.id, state, updated_at=now)
            names[test.id] = state
        older, _ = store.upsert_test("fp-old", "/srv/shop/tests", "OldFailTest.php", suite.id)
        assert older.id is not None
        _set_state(temp_db, older.id, State.FAILED, updated_at=now - 100)

        # When
        ordered = store.list_tests_by_attention(suite.project_id)

        # Then
        assert [t.state for t in ordered] == [
            "running",
            "failed",
            "failed",
            "queued",
            "ok",
            "idle",
        ]
        assert ordered[2].name == "OldFailTest.php"

    def test_given_test_when_context_resolved_then_all_snapshots(
        self, store: Store, suite: Suite
    ) -> None:
        # Given
        test, _ = store.upsert_test("fp1", "/srv/shop/tests", "ExampleTest.php", suite.id)
        assert test.id is not None

        # When
        context = store.test_context(test.id)

        # Then
        assert context is not None
        assert context.suite.name == "unit"
        assert context.project.name == "shop"
        assert context.tester.name == "phpunit"
        assert store.test_context(9999) is None


class TestCascades:
    def test_given_project_deleted_then_suites_tests_and_queue_gone(
        self, store: Store, temp_db: Database, suite: Suite
    ) -> None:
        # Given
        test, _ = store.upsert_test("fp1", "/srv/shop/tests", "ExampleTest.php", suite.id)
        with temp_db.session() as session:
            session.add(QueueEntry(test_id=test.id))
            session.commit()

        # When
        store.delete_project(suite.project_id)

        # Then
        assert store.list_suites() == []
        assert store.list_tests() == []
        assert store.list_queue() == []

    def test_given_tester_deleted_then_its_suites_removed(self, store: Store, suite: Suite) -> None:
        # When
        store.delete_tester(suite.tester_id)

        # Then
        assert store.get_suite(suite.id or 0) is None
        assert store.list_projects() != []

    def test_given_run_for_missing_test_when_written_then_orphan_kept(
        self, store: Store, temp_db: Database
    ) -> None:
        # When
        with temp_db.session() as session:
            session.add(Run(test_id=424242, was_ok=True, log="(empty)"))
            session.commit()

        # Then
        assert store.latest_run(424242) is not None


class TestRuns:
    def test_given_runs_when_latest_requested_then_most_recent(
        self, store: Store, temp_db: Database, suite: Suite
    ) -> None:
        # Given
        test, _ = store.upsert_test("fp1", "/srv/shop/tests", "ExampleTest.php", suite.id)
        assert test.id is not None
        with temp_db.session() as session:
            session.add(Run(test_id=test.id, was_ok=False, log="first", created_at=1.0))
            session.add(Run(test_id=test.id, was_ok=True, log="second", created_at=2.0))
            session.commit()

        # When
        latest = store.latest_run(test.id)

        # Then
        assert latest is not None and latest.log == "second"
        assert len(store.list_runs(test.id)) == 2

    def test_given_runs_when_marked_notified_then_stamped(
        self, store: Store, temp_db: Database
    ) -> None:
        # Given
        with temp_db.session() as session:
            run = Run(test_id=1, was_ok=False, log="x")
            session.add(run)
            session.commit()
            session.refresh(run)
        assert run.id is not None

        # When
        count = store.mark_runs_notified([run.id], at=123.0)

        # Then
        assert count == 1
        stored = store.get_run(run.id)
        assert stored is not None and stored.notified_at == 123.0
        assert store.mark_runs_notified([]) == 0

    def test_given_runs_when_cleared_then_deleted_and_pointer_reset(
        self, store: Store, temp_db: Database, suite: Suite
    ) -> None:
        # Given
        test, _ = store.upsert_test("fp1", "/srv/shop/tests", "ExampleTest.php", suite.id)
        with temp_db.session() as session:
            run = Run(test_id=test.id, was_ok=True, log="ok")
            session.add(run)
            session.flush()
            row = session.get(StoredTest, test.id)
            assert row is not None
            row.last_run_id = run.id
            session.add(row)
            session.commit()

        # When
        deleted = store.clear_runs()

        # Then
        assert deleted == 1
        assert test.id is not None
        refreshed = store.get_test(test.id)
        assert refreshed is not None and refreshed.last_run_id is None
        with temp_db.session() as session:
            assert session.exec(select(Run)).all() == []
