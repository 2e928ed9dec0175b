"""Console and run-log configuration using structlog."""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import TextIO

import structlog

LOG_LEVEL_ENV = "PVETEMPLATE_LOG_LEVEL"
COLOR_MODES = ("auto", "always", "never")

_HANDLER_MARKER = "_pvetemplate_handler"


def _resolve_level(value: str | None, verbose: bool) -> int:
    if verbose:
        return logging.DEBUG
    if not value:
        return logging.INFO
    # getLevelNamesMapping() only exists from Python 3.11.
    return logging._nameToLevel.get(value.upper(), logging.INFO)


def use_color(mode: str, stream: TextIO) -> bool:
    if mode == "always":
        return True
    if mode == "never":
        return False
    if os.environ.get("NO_COLOR"):
        return False
    isatty = getattr(stream, "isatty", None)
    return bool(isatty and isatty())


def _pre_chain() -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]


def configure_logging(
    *,
    color: str = "auto",
    verbose: bool = False,
    log_file: Path | None = None,
    stream: TextIO | None = None,
) -> None:
    """Send every event to stderr and, when given, append it to the run log."""
    out = stream or sys.stderr
    level = _resolve_level(os.environ.get(LOG_LEVEL_ENV), verbose)

    console = logging.StreamHandler(out)
    console.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.dev.ConsoleRenderer(colors=use_color(color, out)),
            foreign_pre_chain=_pre_chain(),
        )
    )
    handlers: list[logging.Handler] = [console]

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(
            structlog.stdlib.ProcessorFormatter(
                processor=structlog.dev.ConsoleRenderer(colors=False),
                foreign_pre_chain=_pre_chain(),
            )
        )
        handlers.append(file_handler)

    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, _HANDLER_MARKER, False):
            root.removeHandler(handler)
            handler.close()
    for handler in handlers:
        setattr(handler, _HANDLER_MARKER, True)
        root.addHandler(handler)
    root.setLevel(level)

    structlog.configure(
        processors=[
            *_pre_chain(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )
