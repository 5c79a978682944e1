"""
Structured logging for valops (structlog).

Modules log through ``get_logger(__name__)`` with a dotted event name and
key/value fields, never interpolated prose::

    logger = get_logger(__name__)
    logger.info("ensure.step", step="config", changed=False)

The CLI calls ``configure_logging`` once. Output goes to stderr so ``--json``
results and ``valops render`` output on stdout stay machine-readable. Lines
are JSON when stderr is not a terminal (journald, CI) and colored otherwise.

Secret hygiene:
    Callers log logical ids and paths, never plaintext. As a backstop the
    ``redact_secrets`` processor masks any 64-digit hex run in string
    fields, which is the shape of a validator identity secret.

Tags:
    logging, structlog, redaction, valops
"""

from __future__ import annotations

import logging
import re
import socket
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

REDACTED = "[redacted]"

_SECRET_RUN = re.compile(r"(?<![0-9a-fA-F])[0-9a-fA-F]{64}(?![0-9a-fA-F])")


def redact_secrets(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask identity-secret-shaped hex runs in every string field."""
    for key, value in event_dict.items():
        if isinstance(value, str) and len(value) >= 64:
            event_dict[key] = _SECRET_RUN.sub(REDACTED, value)
    return event_dict


def _host_metadata(hostname: str) -> Processor:
    def _add(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("app", "valops")
        event_dict.setdefault("host", hostname)
        return event_dict

    return _add


def configure_logging(level: str = "INFO", json_format: bool | None = None) -> None:
    """Configure structlog for the valops process.

    Args:
        level: DEBUG, INFO, WARNING or ERROR.
        json_format: True for JSON, False for console, None to decide by
            whether stderr is a terminal.
    """
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        numeric = logging.INFO
    if json_format is None:
        json_format = not sys.stderr.isatty()

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _host_metadata(socket.gethostname()),
        redact_secrets,
    ]
    if json_format:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )
    # Third-party stdlib loggers (httpx) follow the same level.
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=numeric)


def get_logger(name: str | None = None) -> Any:
    return structlog.get_logger(name)


@contextmanager
def LogContext(**fields: Any) -> Iterator[None]:  # noqa: N802
    """Bind ``fields`` to every log line inside the block.

    Values bound by an enclosing block are restored on exit::

        with LogContext(service_id="validator-alice"):
            logger.info("ensure.started")
    """
    with structlog.contextvars.bound_contextvars(**fields):
        yield


__all__ = [
    "REDACTED",
    "configure_logging",
    "get_logger",
    "redact_secrets",
    "LogContext",
]
