"""Error definitions for opi_imagegen.

Every failure is described by an ErrorContext carrying a stable code from
the ErrorCode taxonomy, a human message, the originating location and a
timestamp. Exceptions raised across the package wrap one of these so the
pipeline can log, summarize and report them uniformly.
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from opi_imagegen.types import ErrorCode


@dataclass
class ErrorContext:
    """Structured description of a single failure.

    Attributes:
        code: Taxonomy code for programmatic handling.
        message: Human-readable error message.
        origin: Where the failure was raised (module:function).
        timestamp: When the failure was recorded (UTC).
        details: Optional additional details (exit status, command, ...).
    """

    code: ErrorCode
    message: str
    origin: str = "unknown"
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: dict[str, Any] = {
            "code": self.code.value,
            "message": self.message,
            "origin": self.origin,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.details:
            result["details"] = self.details
        return result

    def __str__(self) -> str:
        return f"[{self.code.value}] {self.message} ({self.origin})"


def _caller_origin(depth: int = 2) -> str:
    frame = inspect.currentframe()
    try:
        for _ in range(depth):
            if frame is None or frame.f_back is None:
                return "unknown"
            frame = frame.f_back
        module = frame.f_globals.get("__name__", "unknown")
        return f"{module}:{frame.f_code.co_name}"
    finally:
        del frame


def make_error(
    code: ErrorCode,
    message: str,
    origin: str | None = None,
    stacklevel: int = 1,
    **details: Any,
) -> ErrorContext:
    """Create an ErrorContext, recording the caller as origin if not given.

    Args:
        code: Taxonomy code.
        message: Human-readable message.
        origin: Optional explicit origin; defaults to the calling function.
        stacklevel: How many frames above the caller to attribute the error to.
        **details: Additional details stored on the context.

    Returns:
        ErrorContext instance.
    """
    return ErrorContext(
        code=code,
        message=message,
        origin=origin or _caller_origin(stacklevel + 1),
        details=dict(details),
    )


class BuildError(Exception):
    """Base exception for all build failures."""

    def __init__(self, context: ErrorContext) -> None:
        super().__init__(context.message)
        self.context = context

    @property
    def code(self) -> ErrorCode:
        return self.context.code


class CommandError(BuildError):
    """An external command failed."""


class ResolutionExhausted(BuildError):
    """Every source candidate in a resolution chain failed."""

    def __init__(self, component: str, tried: list[str]) -> None:
        super().__init__(
            make_error(
                ErrorCode.NETWORK_FAILURE,
                f"No usable {component} source after trying: {', '.join(tried)}",
                component=component,
                stacklevel=2,
                tried=tried,
            )
        )
        self.component = component
        self.tried = tried


class StageFailed(BuildError):
    """A pipeline stage failed with a classified error."""


class ImageAssemblyError(BuildError):
    """A step of image assembly failed."""

    def __init__(self, message: str, step: str, **details: Any) -> None:
        super().__init__(
            make_error(
                ErrorCode.IMAGE_ASSEMBLY_FAILED,
                message,
                step=step,
                stacklevel=2,
                **details,
            )
        )
        self.step = step


class InsufficientImageSizeError(BuildError):
    """Configured image size cannot hold the root filesystem."""

    def __init__(self, image_size_mb: int, required_mb: int) -> None:
        super().__init__(
            make_error(
                ErrorCode.INSUFFICIENT_SPACE,
                f"Image size {image_size_mb} MB is too small; at least "
                f"{required_mb} MB is required for the root filesystem",
                image_size_mb=image_size_mb,
                required_mb=required_mb,
                stacklevel=2,
            )
        )
        self.image_size_mb = image_size_mb
        self.required_mb = required_mb


class LayoutError(BuildError):
    """A partition layout or raw placement violates its invariants."""

    def __init__(self, message: str) -> None:
        super().__init__(
            make_error(ErrorCode.IMAGE_ASSEMBLY_FAILED, message, stacklevel=2)
        )


class BuildCancelled(BuildError):
    """The build was cancelled by a signal."""

    def __init__(self, message: str = "Build cancelled by user") -> None:
        super().__init__(
            make_error(ErrorCode.USER_CANCELLED, message, stacklevel=2)
        )


__all__ = [
    "BuildCancelled",
    "BuildError",
    "CommandError",
    "ErrorContext",
    "ImageAssemblyError",
    "InsufficientImageSizeError",
    "LayoutError",
    "ResolutionExhausted",
    "StageFailed",
    "make_error",
]
