"""Structured logging for the engine and the daemon.

Every module logs through ``structlog.get_logger()``. ``configure_logging``
routes those events through the stdlib root logger so that each configured
output (stderr, stdout or a file) gets its own level and renderer.

While the worker executes a test it binds a short request id; every event
logged until it is cleared carries ``request_id`` so one run's lines can be
grouped.
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar
from pathlib import Path
from typing import TYPE_CHECKING, Any
from uuid import uuid4

import structlog

if TYPE_CHECKING:
    from testplane.config.models import LoggingConfig, LogOutputConfig

_request_id: ContextVar[str | None] = ContextVar("testplane_request_id", default=None)

# Capped at WARNING whatever the configured level
QUIET_LOGGERS = ("watchfiles.main", "sqlalchemy.engine")

_STREAMS = {"stderr": sys.stderr, "stdout": sys.stdout}


def set_request_id(request_id: str | None = None) -> str:
    """Bind a request id for the current context, generating one if needed."""
    rid = request_id or uuid4().hex[:12]
    _request_id.set(rid)
    return rid


def get_request_id() -> str | None:
    return _request_id.get()


def clear_request_id() -> None:
    _request_id.set(None)


def _inject_request_id(
    _logger: structlog.types.WrappedLogger,
    _method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    rid = _request_id.get()
    if rid is not None:
        event_dict.setdefault("request_id", rid)
    return event_dict


def _level(name: str | None, fallback: int = logging.INFO) -> int:
    if not name:
        return fallback
    value = logging.getLevelName(name.upper())
    return value if isinstance(value, int) else fallback


def _pre_chain() -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S", key="timestamp"),
        _inject_request_id,  # type: ignore[list-item]
    ]


def _handler_for(output: LogOutputConfig, root_level: int) -> logging.Handler:
    stream = _STREAMS.get(output.destination)
    if stream is not None:
        handler: logging.Handler = logging.StreamHandler(stream)
        renderer: structlog.types.Processor = (
            structlog.processors.JSONRenderer()
            if output.format == "json"
            else structlog.dev.ConsoleRenderer(colors=stream.isatty(), pad_event_to=0)
        )
    else:
        path = Path(output.destination)
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(path, mode="a", encoding="utf-8")
        renderer = (
            structlog.processors.JSONRenderer()
            if output.format == "json"
            else structlog.dev.ConsoleRenderer(colors=False, pad_event_to=0)
        )

    handler.setLevel(_level(output.level, root_level))
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(processor=renderer, foreign_pre_chain=_pre_chain())
    )
    return handler


def configure_logging(
    *,
    config: LoggingConfig | None = None,
    json_format: bool = False,
    level: str = "INFO",
) -> None:
    """Install one handler per configured output on the root logger.

    Without ``config`` a single stderr output is used at ``level``, rendered
    as JSON when ``json_format`` is set. A given ``config`` wins over both.
    Safe to call again; previous handlers are replaced.
    """
    from testplane.config.models import LoggingConfig, LogOutputConfig

    if config is None:
        config = LoggingConfig(
            level=level.upper(),
            outputs=[LogOutputConfig(format="json" if json_format else "console")],
        )
    root_level = _level(config.level)

    structlog.configure(
        processors=[*_pre_chain(), structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.make_filtering_bound_logger(root_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
        existing.close()
    root.setLevel(root_level)
    for output in config.outputs:
        root.addHandler(_handler_for(output, root_level))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """A structlog logger, optionally tagged with a component name."""
    logger = structlog.get_logger()
    return logger.bind(component=name) if name else logger  # type: ignore[no-any-return]
