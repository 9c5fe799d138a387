"""Logging setup for a build invocation.

Three sinks are attached to the ``opi_imagegen`` logger:
- a Rich console handler at the configured level
- an append-only main log receiving every record, including the output
  of external commands
- an append-only error log receiving ERROR records only, kept as a
  standalone artifact for postmortem
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

from rich.console import Console
from rich.logging import RichHandler

if TYPE_CHECKING:
    from opi_imagegen.config import Settings
    from opi_imagegen.errors import ErrorContext

logger = logging.getLogger(__name__)

PACKAGE_LOGGER = "opi_imagegen"
FILE_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s:%(lineno)d %(message)s"

_HANDLER_MARK = "_opi_imagegen_handler"


def _mark(handler: logging.Handler) -> logging.Handler:
    setattr(handler, _HANDLER_MARK, True)
    return handler


def _file_handler(path: Path, level: int) -> logging.FileHandler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, mode="a", encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(FILE_FORMAT))
    return handler


def setup_logging(settings: Settings, console: Console | None = None) -> None:
    """Attach console, main-log and error-log handlers.

    Calling this again replaces the handlers installed by a previous call.

    Args:
        settings: Build settings (log level and log file paths).
        console: Optional Rich console to render to.
    """
    teardown_logging()

    root = logging.getLogger(PACKAGE_LOGGER)
    root.setLevel(logging.DEBUG)
    root.propagate = False

    console_handler = RichHandler(
        console=console,
        show_path=False,
        rich_tracebacks=True,
        markup=False,
    )
    console_handler.setLevel(settings.log_level)
    root.addHandler(_mark(console_handler))

    root.addHandler(_mark(_file_handler(settings.log_file, logging.DEBUG)))
    root.addHandler(_mark(_file_handler(settings.error_log_file, logging.ERROR)))

    logger.debug(
        "Logging to %s (errors: %s)", settings.log_file, settings.error_log_file
    )


def teardown_logging() -> None:
    """Close and detach handlers installed by setup_logging()."""
    root = logging.getLogger(PACKAGE_LOGGER)
    for handler in list(root.handlers):
        if getattr(handler, _HANDLER_MARK, False):
            root.removeHandler(handler)
            handler.close()
    root.propagate = True


def log_error_context(
    context: ErrorContext,
    log: logging.Logger | None = None,
    level: int = logging.ERROR,
) -> None:
    """Emit an ErrorContext as a single log record.

    Args:
        context: The error to log.
        log: Logger to use (defaults to this module's logger).
        level: Log level; ERROR records also reach the error-only log.
    """
    (log or logger).log(
        level,
        "Error %s: %s (origin=%s, at=%s)",
        context.code.value,
        context.message,
        context.origin,
        context.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
    )


__all__ = ["log_error_context", "setup_logging", "teardown_logging"]
