"""Typed errors raised by the engine.

Codes are grouped by the layer that raises them:
- 2xxx: configuration
- 3xxx: store lookups
- 6xxx: test lifecycle
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any


class ErrorCode(IntEnum):
    CONFIG_PARSE_ERROR = 2001
    CONFIG_INVALID_VALUE = 2002
    CONFIG_FILE_NOT_FOUND = 2004
    CONFIG_TESTS_DIR_NOT_FOUND = 2005
    CONFIG_NO_DEFAULT_EDITOR = 2006

    STORE_NOT_FOUND = 3001

    LIFECYCLE_INVALID_TRANSITION = 6001


@dataclass(eq=False)
class TestPlaneError(Exception):
    """Base error: a code, a readable message and structured details for logs."""

    __test__ = False

    code: ErrorCode
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def error_name(self) -> str:
        return self.code.name

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": int(self.code),
            "error": self.error_name,
            "message": self.message,
            "details": dict(self.details),
        }

    def __str__(self) -> str:
        return f"[{int(self.code)}] {self.error_name}: {self.message}"


class ConfigError(TestPlaneError):
    """Bad or incomplete configuration.

    ``tests_dir_not_found`` and ``no_default_editor`` abort the operation
    that hit them and are not retried.
    """

    @classmethod
    def parse_error(cls, path: str, reason: str) -> "ConfigError":
        return cls(
            ErrorCode.CONFIG_PARSE_ERROR,
            f"Cannot parse {path}: {reason}",
            {"path": path, "reason": reason},
        )

    @classmethod
    def invalid_value(cls, name: str, value: Any, reason: str) -> "ConfigError":
        return cls(
            ErrorCode.CONFIG_INVALID_VALUE,
            f"{name}: {reason}",
            {"field": name, "value": str(value), "reason": reason},
        )

    @classmethod
    def file_not_found(cls, path: str) -> "ConfigError":
        return cls(ErrorCode.CONFIG_FILE_NOT_FOUND, f"No config file at {path}", {"path": path})

    @classmethod
    def tests_dir_not_found(cls, suite: str, path: str) -> "ConfigError":
        return cls(
            ErrorCode.CONFIG_TESTS_DIR_NOT_FOUND,
            f"Tests directory for suite '{suite}' not found: {path}",
            {"suite": suite, "path": path},
        )

    @classmethod
    def no_default_editor(cls) -> "ConfigError":
        return cls(ErrorCode.CONFIG_NO_DEFAULT_EDITOR, "Default editor not configured")


class StoreError(TestPlaneError):
    """A row the caller required does not exist."""

    @classmethod
    def not_found(cls, entity: str, key: Any) -> "StoreError":
        return cls(
            ErrorCode.STORE_NOT_FOUND,
            f"{entity} not found: {key}",
            {"entity": entity, "key": str(key)},
        )


class LifecycleError(TestPlaneError):
    """A state transition the lifecycle table does not allow."""

    @classmethod
    def invalid_transition(cls, test_id: int, current: str, target: str) -> "LifecycleError":
        return cls(
            ErrorCode.LIFECYCLE_INVALID_TRANSITION,
            f"Test {test_id} cannot move from '{current}' to '{target}'",
            {"test_id": test_id, "current": current, "target": target},
        )
