"""Tests for run queue admission, removal and selection."""

from __future__ import annotations

import threading
from collections.abc import Callable

import pytest
from sqlmodel import select

from testplane.engine.queue import QueueManager
from testplane.store.database import Database
from testplane.store.models import QueueEntry
from testplane.store.models import Test as StoredTest
from testplane.store.models import TestState as State
from testplane.store.repository import Store

MakeTest = Callable[..., StoredTest]


def _entries(db: Database) -> list[QueueEntry]:
    with db.session() as session:
        return list(session.exec(select(QueueEntry)))


class TestAdmit:
    @pytest.mark.parametrize("state", [State.IDLE, State.OK, State.FAILED])
    def test_given_resting_test_when_admitted_then_queued_with_entry(
        self, queue: QueueManager, make_test: MakeTest, state: State
    ) -> None:
        # Given
        test = make_test(state=state)

        # When
        admitted = queue.admit(test.id)

        # Then
        assert admitted is True
        assert queue.is_enqueued(test.id) is True
        assert queue.size() == 1

    def test_given_disabled_test_when_admitted_then_noop(
        self, queue: QueueManager, make_test: MakeTest, store: Store
    ) -> None:
        # Given
        test = make_test(enabled=False)

        # When / Then
        assert queue.admit(test.id) is False
        assert queue.admit(test.id, force=True) is False
        assert store.list_queue() == []

    def test_given_disabled_project_when_admitted_then_noop(
        self, queue: QueueManager, make_test: MakeTest, store: Store, workspace
    ) -> None:
        # Given
        test = make_test()
        store.set_project_enabled(workspace.project.id, False)

        # When / Then
        assert queue.admit(test.id) is False
        stored = store.get_test(test.id)
        assert stored is not None and stored.state == State.IDLE.value

    def test_given_enqueued_test_when_admitted_again_then_noop(
        self, queue: QueueManager, make_test: MakeTest, temp_db: Database
    ) -> None:
        # Given
        test = make_test()
        queue.admit(test.id)

        # When
        again = queue.admit(test.id)

        # Then
        assert again is False
        assert len(_entries(temp_db)) == 1

    def test_given_running_test_when_admitted_then_entry_but_state_kept(
        self, queue: QueueManager, make_test: MakeTest, store: Store
    ) -> None:
        # Given
        test = make_test(state=State.RUNNING)

        # When
        queue.admit(test.id)

        # Then
        stored = store.get_test(test.id)
        assert stored is not None and stored.state == State.RUNNING.value
        assert store.get_queue_entry(test.id) is not None
        assert queue.is_enqueued(test.id) is False

    def test_given_running_test_when_forced_then_queued(
        self, queue: QueueManager, make_test: MakeTest, store: Store
    ) -> None:
        # Given
        test = make_test(state=State.RUNNING)

        # When
        admitted = queue.admit(test.id, force=True)

        # Then
        assert admitted is True
        assert queue.is_enqueued(test.id) is True

    def test_given_missing_test_when_admitted_then_noop(self, queue: QueueManager) -> None:
        assert queue.admit(31337) is False

    def test_given_concurrent_admissions_when_done_then_single_entry(
        self, queue: QueueManager, make_test: MakeTest, temp_db: Database, store: Store
    ) -> None:
        # Given
        test = make_test()
        barrier = threading.Barrier(8)
        errors: list[BaseException] = []

        def _admit() -> None:
            barrier.wait()
            try:
                queue.admit(test.id)
            except BaseException as e:  # pragma: no cover
                errors.append(e)

        threads = [threading.Thread(target=_admit) for _ in range(8)]

        # When
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        # Then
        assert errors == []
        assert len(_entries(temp_db)) == 1
        stored = store.get_test(test.id)
        assert stored is not None and stored.state == State.QUEUED.value


class TestEnqueuedFlag:
    def test_given_entry_without_queued_state_then_not_enqueued(
        self, queue: QueueManager, make_test: MakeTest, temp_db: Database
    ) -> None:
        # Given
        test = make_test(state=State.OK)
        with temp_db.session() as session:
            session.add(QueueEntry(test_id=test.id))
            session.commit()

        # When / Then
        assert queue.is_enqueued(test.id) is False

    def test_given_queued_state_without_entry_then_not_enqueued(
        self, queue: QueueManager, make_test: MakeTest
    ) -> None:
        test = make_test(state=State.QUEUED)

        assert queue.is_enqueued(test.id) is False


class TestRemove:
    def test_remove_is_idempotent(self, queue: QueueManager, make_test: MakeTest) -> None:
        # Given
        test = make_test()
        queue.admit(test.id)

        # When / Then
        assert queue.remove(test.id) is True
        assert queue.remove(test.id) is False
        assert queue.is_enqueued(test.id) is False


class TestSelection:
    def test_given_empty_queue_then_nothing(self, queue: QueueManager) -> None:
        assert queue.select_next() is None
        assert queue.claim_next() is None

    def test_given_several_entries_then_fifo(
        self, queue: QueueManager, make_test: MakeTest
    ) -> None:
        # Given
        first = make_test("ATest.php")
        second = make_test("BTest.php")
        queue.admit(second.id)
        queue.admit(first.id)

        # When
        peeked = queue.select_next()

        # Then
        assert peeked is not None and peeked.id == second.id

    def test_given_claim_then_running_and_skipped_by_next_claim(
        self, queue: QueueManager, make_test: MakeTest
    ) -> None:
        # Given
        first = make_test("ATest.php")
        second = make_test("BTest.php")
        queue.admit(first.id)
        queue.admit(second.id)

        # When
        claimed = queue.claim_next()
        following = queue.claim_next()

        # Then
        assert claimed is not None and claimed.id == first.id
        assert claimed.state == State.RUNNING.value
        assert following is not None and following.id == second.id
        assert queue.claim_next() is None

    def test_given_disabled_test_with_entry_then_not_selected(
        self, queue: QueueManager, make_test: MakeTest, temp_db: Database
    ) -> None:
        # Given
        test = make_test(state=State.QUEUED, enabled=False)
        with temp_db.session() as session:
            session.add(QueueEntry(test_id=test.id))
            session.commit()

        # When / Then
        assert queue.select_next() is None

    def test_given_concurrent_claims_then_each_test_claimed_once(
        self, queue: QueueManager, make_test: MakeTest
    ) -> None:
        # Given
        ids = set()
        for name in ("ATest.php", "BTest.php", "CTest.php"):
            test = make_test(name)
            queue.admit(test.id)
            ids.add(test.id)
        barrier = threading.Barrier(6)
        claimed: list[int] = []
        lock = threading.Lock()

        def _claim() -> None:
            barrier.wait()
            test = queue.claim_next()
            if test is not None:
                with lock:
                    claimed.append(test.id)

        threads = [threading.Thread(target=_claim) for _ in range(6)]

        # When
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        # Then
        assert sorted(claimed) == sorted(ids)
