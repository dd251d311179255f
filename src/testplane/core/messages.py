"""Operation messages returned to callers instead of a shared accumulator."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

Severity = Literal["info", "warning", "error"]


@dataclass(frozen=True, slots=True)
class Message:
    """A single user-facing note produced by an operation."""

    severity: Severity
    body: str

    @classmethod
    def info(cls, body: str) -> Message:
        return cls("info", body)

    @classmethod
    def warning(cls, body: str) -> Message:
        return cls("warning", body)

    @classmethod
    def error(cls, body: str) -> Message:
        return cls("error", body)


def has_errors(messages: list[Message]) -> bool:
    return any(m.severity == "error" for m in messages)
