"""Tests for result ingestion."""

from __future__ import annotations

from collections.abc import Callable

import pytest
import structlog

from testplane.config.models import LinksConfig
from testplane.engine.interpreter import EMPTY_LOG, LogFormatter
from testplane.engine.lifecycle import LifecycleManager
from testplane.engine.queue import QueueManager
from testplane.engine.recorder import ResultRecorder
from testplane.store.database import Database
from testplane.store.models import Test as StoredTest
from testplane.store.models import TestState as State
from testplane.store.repository import Store

MakeTest = Callable[..., StoredTest]


@pytest.fixture
def recorder(temp_db: Database, store: Store) -> ResultRecorder:
    return ResultRecorder(temp_db, store, LogFormatter.from_config(LinksConfig()))


def _running(make_test: MakeTest, queue: QueueManager) -> StoredTest:
    test = make_test()
    queue.admit(test.id)
    LifecycleManager(queue.db).mark_running(test.id)
    return test


class TestResultRecording:
    @pytest.mark.parametrize(("success", "state"), [(True, State.OK), (False, State.FAILED)])
    def test_given_running_test_when_recorded_then_result_state_and_queue_cleared(
        self,
        recorder: ResultRecorder,
        make_test: MakeTest,
        queue: QueueManager,
        store: Store,
        success: bool,
        state: State,
    ) -> None:
        # Given
        test = _running(make_test, queue)

        # When
        run = recorder.record(test.id, "OK (1 test)", success, 10.0, 12.5)

        # Then
        assert run is not None
        assert run.was_ok is success
        assert run.duration_seconds == 2.5
        stored = store.get_test(test.id)
        assert stored is not None
        assert stored.state == state.value
        assert stored.last_run_id == run.id
        assert store.get_queue_entry(test.id) is None
        assert store.latest_run(test.id).id == run.id

    def test_given_log_with_reference_when_recorded_then_processed_log_linked(
        self, recorder: ResultRecorder, make_test: MakeTest, queue: QueueManager, workspace
    ) -> None:
        # Given
        workspace.write("ExampleTest.php")
        test = _running(make_test, queue)
        raw = "\x1b[31mFAILURES!\x1b[0m\nat tests/ExampleTest.php:9\nat vendor/lib.php:3"

        # When
        run = recorder.record(test.id, raw, False)

        # Then
        assert run is not None
        assert "\x1b" not in run.log
        assert 'class="file">tests/ExampleTest.php:9</a>' in run.log
        assert "vendor/lib.php:3</a>" not in run.log
        assert run.html is None
        assert run.get_screenshots() == []

    def test_given_empty_output_when_recorded_then_placeholder_log(
        self, recorder: ResultRecorder, make_test: MakeTest, queue: QueueManager
    ) -> None:
        test = _running(make_test, queue)

        run = recorder.record(test.id, "", True)

        assert run is not None and run.log == EMPTY_LOG

    def test_given_pattern_tester_when_recorded_then_screenshots_stored(
        self,
        recorder: ResultRecorder,
        make_test: MakeTest,
        queue: QueueManager,
        store: Store,
        workspace,
    ) -> None:
        # Given
        store.upsert_tester(
            "phpunit",
            command="php artisan dusk",
            output_folder="tests/Browser/screenshots",
            artifact_strategy="pattern",
        )
        test = _running(make_test, queue)

        # When
        run = recorder.record(test.id, "1) Tests\\Browser\\LoginTest::testLogin\n", False)

        # Then
        assert run is not None
        assert run.get_screenshots() == [
            str(workspace.root / "tests/Browser/screenshots" / "failure-testLogin-0.png")
        ]

    def test_given_deleted_test_when_recorded_then_nothing_recorded(
        self, recorder: ResultRecorder, make_test: MakeTest, queue: QueueManager, store: Store
    ) -> None:
        # Given
        test = _running(make_test, queue)
        store.delete_test(test.id)

        # When
        run = recorder.record(test.id, "OK", True)

        # Then
        assert run is None
        assert store.latest_run(test.id) is None

    def test_given_test_not_running_when_recorded_then_recorded_with_warning(
        self, recorder: ResultRecorder, make_test: MakeTest, store: Store
    ) -> None:
        # Given
        test = make_test(state=State.IDLE)

        # When
        with structlog.testing.capture_logs() as logs:
            run = recorder.record(test.id, "OK", True)

        # Then
        assert run is not None
        assert store.get_test(test.id).state == State.OK.value
        assert any(entry["event"] == "unexpected_result_transition" for entry in logs)

    def test_given_forced_requeue_while_running_when_recorded_then_entry_cleared(
        self, recorder: ResultRecorder, make_test: MakeTest, queue: QueueManager, store: Store
    ) -> None:
        # Given
        test = _running(make_test, queue)
        queue.admit(test.id, force=True)

        # When
        recorder.record(test.id, "OK", True)

        # Then
        assert store.get_test(test.id).state == State.OK.value
        assert queue.size() == 0
