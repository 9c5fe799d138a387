"""Cancellation flag shared by the pipeline and the process executor.

A signal handler only sets the flag; it is polled between pipeline stages
and between retry attempts. An external command already running is never
interrupted by the poll itself, so cancellation can lag by up to one
command's runtime. The same terminal signal usually reaches the child
process too, which the executor then reports as a signal termination.
"""

from __future__ import annotations

import logging
import signal
from collections.abc import Iterable
from types import FrameType
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGQUIT)


class CancellationToken:
    """Process-wide cancellation flag."""

    def __init__(self) -> None:
        self._cancelled = False
        self.signum: int | None = None
        self._previous: dict[int, Any] = {}

    @property
    def is_set(self) -> bool:
        return self._cancelled

    def cancel(self, signum: int | None = None) -> None:
        """Raise the flag. Safe to call from a signal handler."""
        self._cancelled = True
        if signum is not None:
            self.signum = signum

    def _handle(self, signum: int, frame: FrameType | None) -> None:
        self.cancel(signum)

    def install_signal_handlers(
        self, signals: Iterable[signal.Signals] = DEFAULT_SIGNALS
    ) -> None:
        """Route the given signals to this token."""
        for sig in signals:
            self._previous[sig] = signal.signal(sig, self._handle)
        logger.debug(
            "Installed cancellation handlers for %d signals", len(self._previous)
        )

    def restore_signal_handlers(self) -> None:
        """Restore handlers replaced by install_signal_handlers()."""
        for sig, previous in self._previous.items():
            signal.signal(sig, previous)
        self._previous.clear()

    @property
    def exit_code(self) -> int:
        """Conventional shell exit status for the received signal."""
        return 128 + (self.signum or signal.SIGINT)


__all__ = ["CancellationToken", "DEFAULT_SIGNALS"]
