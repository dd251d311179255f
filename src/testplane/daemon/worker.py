"""Executor worker loop.

The worker claims the next queued test (select-and-claim in one transaction),
hands an ``ExecutionRequest`` to an ``Executor`` and records what came back.
Spawning and supervising the test process is entirely the executor's job;
the engine never waits on it except through this loop.

``serve()`` runs the claim loop and a periodic full synchronization on
asyncio, pushing the blocking work to the default thread pool.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Protocol

import structlog

from testplane.core.errors import TestPlaneError
from testplane.core.logging import clear_request_id, set_request_id

if TYPE_CHECKING:
    from testplane.config.models import WatcherConfig
    from testplane.engine.ops import TestCoordinator
    from testplane.store.repository import TestContext

logger = structlog.get_logger()


@dataclass(frozen=True)
class ExecutionRequest:
    """Everything an executor needs to run one test."""

    test_id: int
    test_name: str
    test_path: str
    suite_name: str
    project_root: str
    command: str
    command_options: str | None = None
    retries: int = 0
    env: dict[str, str] = field(default_factory=dict)
    require_tee: bool = False
    require_script: bool = False
    error_pattern: str | None = None

    @classmethod
    def from_context(cls, context: TestContext) -> ExecutionRequest:
        assert context.test.id is not None
        return cls(
            test_id=context.test.id,
            test_name=context.test.name,
            test_path=str(context.test.full_path),
            suite_name=context.suite.name,
            project_root=context.project.path,
            command=context.tester.command,
            command_options=context.suite.command_options,
            retries=context.suite.retries,
            env=context.tester.get_env(),
            require_tee=context.tester.require_tee,
            require_script=context.tester.require_script,
            error_pattern=context.tester.error_pattern,
        )


@dataclass(frozen=True)
class ExecutionResult:
    """Raw outcome of one execution."""

    output: str
    success: bool
    started_at: float
    ended_at: float


class Executor(Protocol):
    def execute(self, request: ExecutionRequest) -> ExecutionResult: ...


class WorkerState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


@dataclass
class TestWorker:
    """Pulls tests off the queue one at a time."""

    __test__ = False

    coordinator: TestCoordinator
    executor: Executor
    poll_interval: float = 1.0
    sync_interval: float = 60.0
    notify: bool = False

    _state: WorkerState = field(default=WorkerState.IDLE, init=False)
    _processed: int = field(default=0, init=False)

    @classmethod
    def from_config(
        cls,
        coordinator: TestCoordinator,
        executor: Executor,
        config: WatcherConfig,
        notify: bool = False,
    ) -> TestWorker:
        return cls(
            coordinator,
            executor,
            poll_interval=config.poll_interval_sec,
            sync_interval=config.sync_interval_sec,
            notify=notify,
        )

    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def processed(self) -> int:
        return self._processed

    def run_once(self) -> bool:
        """Claim, execute and record one test.

        Returns:
            True if a test was claimed, False if the queue had nothing to run.

        An executor failure resets the test to idle. Store errors propagate.
        """
        test = self.coordinator.claim_next()
        if test is None or test.id is None:
            return False

        set_request_id()
        try:
            context = self.coordinator.test_context(test.id)
            if context is None:
                logger.info("claimed_test_vanished", test_id=test.id)
                return True

            request = ExecutionRequest.from_context(context)
            logger.info("test_execution_started", test_id=test.id, test=request.test_name)
            try:
                result = self.executor.execute(request)
            except Exception as e:
                logger.error("executor_failed", test_id=test.id, error=str(e))
                self.coordinator.reset_test(test.id)
                return True

            run = self.coordinator.record(
                test.id, result.output, result.success, result.started_at, result.ended_at
            )
            self._processed += 1
            if run is not None and self.notify:
                delivered = self.coordinator.notify(context.project.id)
                self.coordinator.mark_tests_as_notified(delivered)
            return True
        finally:
            clear_request_id()

    def sync_once(self) -> None:
        """Full synchronization. A configuration error aborts this pass only."""
        try:
            self.coordinator.sync_tests()
        except TestPlaneError as e:
            logger.error("sync_failed", code=e.code.value, error=e.message)

    async def serve(self, stop_event: asyncio.Event | None = None) -> None:
        """Run until ``stop_event`` is set.

        A non-positive ``sync_interval`` turns the periodic synchronization off.
        """
        stop = stop_event or asyncio.Event()
        loop = asyncio.get_running_loop()
        self._state = WorkerState.RUNNING
        sync_task = None
        if self.sync_interval > 0:
            sync_task = asyncio.create_task(self._sync_loop(stop))
        logger.info(
            "worker_started",
            poll_interval=self.poll_interval,
            sync_interval=self.sync_interval,
        )

        try:
            while not stop.is_set():
                claimed = await loop.run_in_executor(None, self.run_once)
                if not claimed:
                    with contextlib.suppress(asyncio.TimeoutError):
                        await asyncio.wait_for(stop.wait(), timeout=self.poll_interval)
        finally:
            if sync_task is not None:
                sync_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await sync_task
            self._state = WorkerState.STOPPED
            logger.info("worker_stopped", processed=self._processed)

    async def _sync_loop(self, stop: asyncio.Event) -> None:
        loop = asyncio.get_running_loop()
        while not stop.is_set():
            await loop.run_in_executor(None, self.sync_once)
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(stop.wait(), timeout=self.sync_interval)
