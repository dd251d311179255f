"""TestPlane daemon - file watching and the executor worker loop."""

from testplane.daemon.watcher import FileWatcher
from testplane.daemon.worker import (
    ExecutionRequest,
    ExecutionResult,
    Executor,
    TestWorker,
    WorkerState,
)

__all__ = [
    "ExecutionRequest",
    "ExecutionResult",
    "Executor",
    "FileWatcher",
    "TestWorker",
    "WorkerState",
]
