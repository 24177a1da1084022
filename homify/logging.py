"""structlog setup shared by the API process and any script that drives the services.

Every event carries ``service`` and ``environment``. Code that works on one
remote job wraps itself in ``job_log_context`` so each line it emits, and each
line emitted by the callbacks it runs, is tagged with that ``job_id``.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import IO, Any

import structlog

from homify.config import settings

_LOG_LEVEL_MAP: dict[str, int] = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


SERVICE_NAME = "homify"


def _add_service_fields(
    _logger: Any, _method: str, event_dict: structlog.types.EventDict
) -> structlog.types.EventDict:
    event_dict.setdefault("service", SERVICE_NAME)
    event_dict.setdefault("environment", settings.environment)
    return event_dict


@contextmanager
def job_log_context(job_id: str, **extra: Any) -> Iterator[None]:
    """Bind ``job_id`` (and ``extra``) to every log line in the current context."""
    tokens = structlog.contextvars.bind_contextvars(job_id=job_id, **extra)
    try:
        yield
    finally:
        structlog.contextvars.reset_contextvars(**tokens)


class _TeeWriter:
    """Mirror log lines to stdout and an append-only file.

    If the file cannot be opened, or a later write fails, the file side is
    dropped and stdout keeps receiving every line.
    """

    def __init__(self, file_path: str) -> None:
        self._file: IO[str] | None = None
        try:
            self._file = open(file_path, "a")  # noqa: SIM115
        except OSError as exc:
            # structlog is not configured yet at this point
            print(
                f"WARNING: cannot open log file {file_path!r} ({exc}); logging to stdout only.",
                file=sys.stderr,
            )

    def _disable_file(self, action: str) -> None:
        self._file = None
        print(f"WARNING: log file {action} failed; file logging disabled.", file=sys.stderr)

    def write(self, data: str) -> None:
        sys.stdout.write(data)
        if self._file is None:
            return
        try:
            self._file.write(data)
            self._file.flush()
        except (OSError, ValueError):
            self._disable_file("write")

    def flush(self) -> None:
        sys.stdout.flush()
        if self._file is None:
            return
        try:
            self._file.flush()
        except (OSError, ValueError):
            self._disable_file("flush")


def configure_logging() -> None:
    """Human-readable console output in development, JSON lines everywhere else.

    Setting LOG_FILE additionally appends every line to that file.
    """
    renderer = (
        structlog.dev.ConsoleRenderer()
        if settings.environment == "development"
        else structlog.processors.JSONRenderer()
    )

    level = _LOG_LEVEL_MAP.get(settings.log_level.upper(), logging.INFO)

    logger_factory: structlog.types.WrappedLogger
    if settings.log_file:
        logger_factory = structlog.PrintLoggerFactory(file=_TeeWriter(settings.log_file))  # type: ignore[arg-type]
    else:
        logger_factory = structlog.PrintLoggerFactory()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            _add_service_fields,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=logger_factory,
        cache_logger_on_first_use=True,
    )
