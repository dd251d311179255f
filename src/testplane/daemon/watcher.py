"""Filesystem trigger for test synchronization.

Watches project roots with watchfiles and hands batched path changes to a
callback, normally ``TestCoordinator.handle_changed_paths``.

Batches are debounced with a sliding window: a batch is delivered once
``window`` seconds pass without a new change, or ``max_wait`` seconds after
its first change under a steady stream of writes.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

import structlog
from watchfiles import Change, awatch

if TYPE_CHECKING:
    from testplane.config.models import WatcherConfig

logger = structlog.get_logger()

# Never reported: VCS metadata and our own state directory
IGNORED_DIRS: frozenset[str] = frozenset({".git", ".svn", ".hg", ".bzr", ".testplane"})

DEBOUNCE_WINDOW_SEC = 0.5
MAX_DEBOUNCE_WAIT_SEC = 2.0

_FLUSH_TICK_SEC = 0.1


def _is_ignored(path: Path) -> bool:
    return not IGNORED_DIRS.isdisjoint(path.parts)


def _watch_filter(change: Change, path: str) -> bool:
    return not _is_ignored(Path(path))


@dataclass
class ChangeBatch:
    """Paths collected since the last delivery, with their timing."""

    window: float = DEBOUNCE_WINDOW_SEC
    max_wait: float = MAX_DEBOUNCE_WAIT_SEC
    paths: set[Path] = field(default_factory=set)
    opened_at: float = 0.0
    touched_at: float = 0.0

    def add(self, path: Path, now: float) -> None:
        if not self.paths:
            self.opened_at = now
        self.paths.add(path)
        self.touched_at = now

    def is_due(self, now: float) -> bool:
        if not self.paths:
            return False
        return now - self.touched_at >= self.window or now - self.opened_at >= self.max_wait

    def drain(self) -> list[Path]:
        drained = sorted(self.paths)
        self.paths.clear()
        self.opened_at = self.touched_at = 0.0
        return drained


@dataclass
class FileWatcher:
    """Async watcher over a set of project roots."""

    roots: list[Path]
    on_change: Callable[[list[Path]], object]
    debounce_window: float = DEBOUNCE_WINDOW_SEC
    max_debounce_wait: float = MAX_DEBOUNCE_WAIT_SEC
    enabled: bool = True

    batch: ChangeBatch = field(init=False)
    _stop: asyncio.Event = field(default_factory=asyncio.Event, init=False)
    _tasks: list[asyncio.Task[None]] = field(default_factory=list, init=False)

    def __post_init__(self) -> None:
        self.batch = ChangeBatch(window=self.debounce_window, max_wait=self.max_debounce_wait)

    @classmethod
    def from_config(
        cls,
        roots: list[Path],
        on_change: Callable[[list[Path]], object],
        config: WatcherConfig,
    ) -> FileWatcher:
        return cls(
            roots,
            on_change,
            debounce_window=config.debounce_sec,
            max_debounce_wait=max(MAX_DEBOUNCE_WAIT_SEC, config.debounce_sec),
            enabled=config.enabled,
        )

    @property
    def is_running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def start(self) -> None:
        """Begin watching. A disabled watcher logs and returns."""
        if self._tasks:
            return
        if not self.enabled:
            logger.info("file_watcher_disabled")
            return
        roots = [root for root in self.roots if root.is_dir()]
        if not roots:
            logger.warning("no_watchable_roots", roots=[str(r) for r in self.roots])
            return

        self._stop.clear()
        self._tasks = [
            asyncio.create_task(self._flush_loop()),
            asyncio.create_task(self._watch(roots)),
        ]
        logger.info(
            "file_watcher_started",
            roots=[str(r) for r in roots],
            debounce_window=self.debounce_window,
        )

    async def stop(self) -> None:
        """Stop watching and deliver whatever is still buffered."""
        self._stop.set()
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError, asyncio.TimeoutError):
                await asyncio.wait_for(task, timeout=2.0)
        self._tasks = []
        self.flush()
        logger.info("file_watcher_stopped")

    def queue_changes(self, paths: Iterable[Path]) -> None:
        now = time.monotonic()
        for path in paths:
            if not _is_ignored(path):
                self.batch.add(path, now)

    def flush(self) -> None:
        """Deliver the buffered batch. A failing callback is logged, not raised."""
        if not self.batch.paths:
            return
        paths = self.batch.drain()
        logger.info("changes_detected", count=len(paths))
        try:
            self.on_change(paths)
        except Exception as e:
            logger.error("change_handler_failed", error=str(e), count=len(paths))

    async def _flush_loop(self) -> None:
        while not self._stop.is_set():
            await asyncio.sleep(_FLUSH_TICK_SEC)
            if self.batch.is_due(time.monotonic()):
                self.flush()

    async def _watch(self, roots: list[Path]) -> None:
        while not self._stop.is_set():
            try:
                async for changes in awatch(
                    *roots,
                    watch_filter=_watch_filter,
                    step=500,
                    stop_event=self._stop,
                    ignore_permission_denied=True,
                ):
                    self.queue_changes(Path(path) for _change, path in changes)
            except Exception as e:
                if self._stop.is_set():
                    return
                logger.error("watcher_error", error=str(e))
                await asyncio.sleep(1.0)
