"""Discovery, queueing, lifecycle and result-processing engine."""

from testplane.engine.config_sync import ConfigSynchronizer
from testplane.engine.exclusions import is_excluded
from testplane.engine.interpreter import LogFormatter, find_screenshots, read_html_artifact
from testplane.engine.lifecycle import LifecycleManager, Trigger, can_transition
from testplane.engine.notifications import (
    LogNotifier,
    NotificationSelector,
    Notifier,
    TestInfo,
)
from testplane.engine.ops import TestCoordinator
from testplane.engine.queue import QueueManager
from testplane.engine.recorder import ResultRecorder
from testplane.engine.synchronizer import SyncResult, TestSynchronizer
from testplane.engine.testability import is_testable

__all__ = [
    "ConfigSynchronizer",
    "LifecycleManager",
    "LogFormatter",
    "LogNotifier",
    "NotificationSelector",
    "Notifier",
    "QueueManager",
    "ResultRecorder",
    "SyncResult",
    "TestCoordinator",
    "TestInfo",
    "TestSynchronizer",
    "Trigger",
    "can_transition",
    "find_screenshots",
    "is_excluded",
    "is_testable",
    "read_html_artifact",
]
