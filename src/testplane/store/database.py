"""SQLite engine and transaction helpers.

Every connection runs in WAL mode with foreign keys enforced. Two kinds of
session are handed out:

``session()``
    Plain session for reads and single-row writes.
``immediate_transaction()``
    Opens with ``BEGIN IMMEDIATE``, taking the write lock before the first
    read. Queue admission, select-and-claim and result ingestion run inside
    one of these so their read-check-write steps never interleave.

Objects are not expired on commit; rows returned from a closed session stay
readable as snapshots.
"""

from __future__ import annotations

import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog
from sqlalchemy import event, text
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, SQLModel, create_engine

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from testplane.config.models import DatabaseConfig

logger = structlog.get_logger()

_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA foreign_keys=ON",
)


def is_lock_contention(error: Exception) -> bool:
    """SQLite reports a held write lock as 'locked' or 'busy'."""
    message = str(error).lower()
    return "database is locked" in message or "database is busy" in message


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff for acquiring the write lock. Never applied to statement errors."""

    max_retries: int = 3
    base_delay: float = 0.1
    max_delay: float = 2.0

    def delay(self, attempt: int) -> float:
        return min(self.base_delay * (2**attempt), self.max_delay)


class Database:
    """Owns the engine for one SQLite file."""

    def __init__(
        self,
        db_path: Path,
        max_retries: int = 3,
        retry_base_delay: float = 0.1,
        busy_timeout_ms: int = 30000,
    ) -> None:
        self.db_path = db_path
        self.retry = RetryPolicy(max_retries=max_retries, base_delay=retry_base_delay)
        self.busy_timeout_ms = busy_timeout_ms
        self.engine = self._build_engine()

    @classmethod
    def from_config(cls, config: DatabaseConfig) -> Database:
        path = Path(config.path).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        return cls(
            path,
            max_retries=config.max_retries,
            retry_base_delay=config.retry_base_delay_sec,
            busy_timeout_ms=config.busy_timeout_ms,
        )

    def _build_engine(self) -> Engine:
        engine = create_engine(
            f"sqlite:///{self.db_path}",
            connect_args={"check_same_thread": False},
        )
        event.listen(engine, "connect", self._on_connect)
        return engine

    def _on_connect(self, dbapi_conn: Any, _record: Any) -> None:
        cursor = dbapi_conn.cursor()
        try:
            for pragma in _PRAGMAS:
                cursor.execute(pragma)
            cursor.execute(f"PRAGMA busy_timeout={int(self.busy_timeout_ms)}")
        finally:
            cursor.close()

    def create_all(self) -> None:
        from testplane.store import models  # noqa: F401

        SQLModel.metadata.create_all(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def session(self) -> Iterator[Session]:
        with Session(self.engine, expire_on_commit=False) as session:
            yield session

    @contextmanager
    def immediate_transaction(self) -> Iterator[Session]:
        """Write-locked session, committed on exit and rolled back on error.

        Only taking the lock is retried. An exception from the body
        propagates after rollback.
        """
        session = self._begin_immediate()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _begin_immediate(self) -> Session:
        attempt = 0
        while True:
            session = Session(self.engine, expire_on_commit=False)
            try:
                session.execute(text("BEGIN IMMEDIATE"))
                return session
            except OperationalError as e:
                session.close()
                if not is_lock_contention(e) or attempt >= self.retry.max_retries:
                    raise
                delay = self.retry.delay(attempt)
                attempt += 1
                logger.warning(
                    "sqlite_busy_retry",
                    attempt=attempt,
                    max_retries=self.retry.max_retries,
                    delay_sec=delay,
                )
                time.sleep(delay)
