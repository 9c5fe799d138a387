"""Per-invocation build context passed to every stage."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from opi_imagegen.errors import ErrorContext, StageFailed, make_error
from opi_imagegen.process.cancel import CancellationToken
from opi_imagegen.process.executor import CommandResult, ProcessExecutor
from opi_imagegen.types import BootArtifacts, Component, ErrorCode

if TYPE_CHECKING:
    from opi_imagegen.config import Settings
    from opi_imagegen.image.engine import ImageResult
    from opi_imagegen.image.handle import ImageHandle
    from opi_imagegen.sources.resolver import ResolutionOutcome

logger = logging.getLogger(__name__)


@dataclass
class BuildContext:
    """State shared by the stages of one build.

    Attributes:
        settings: Build configuration (mutated only through pin_source()).
        executor: Process executor for every external command.
        token: Cancellation flag polled between stages and retries.
        active_handle: ImageHandle of an assembly in progress, torn down by
            cleanup() if the build stops while it is attached.
        resolutions: Pinned sources per component.
        boot_artifacts: Kernel files staged for the boot partition.
        image_result: Result of the image stage.
        soft_errors: Non-fatal failures recorded by stages.
    """

    settings: Settings
    executor: ProcessExecutor
    token: CancellationToken
    active_handle: ImageHandle | None = None
    resolutions: dict[Component, ResolutionOutcome] = field(default_factory=dict)
    boot_artifacts: BootArtifacts | None = None
    image_result: ImageResult | None = None
    soft_errors: list[ErrorContext] = field(default_factory=list)

    @classmethod
    def create(
        cls,
        settings: Settings,
        token: CancellationToken | None = None,
        executor: ProcessExecutor | None = None,
    ) -> BuildContext:
        token = token or CancellationToken()
        if executor is None:
            executor = ProcessExecutor(token=token, retry_delay=settings.retry_delay)
        return cls(settings=settings, executor=executor, token=token)

    def run_checked(
        self,
        command: list[str],
        error_code: ErrorCode,
        message: str,
        **kwargs: Any,
    ) -> CommandResult:
        """Run a command and raise StageFailed with `error_code` if it fails.

        A failure seen after the build was interrupted, or a cancelled
        retry, is reported as user_cancelled instead.
        """
        result = self.executor.run(command, error_code=error_code, **kwargs)
        if result.success:
            return result
        cause = result.error
        cancelled = self.token.is_set or (
            cause is not None and cause.code == ErrorCode.USER_CANCELLED
        )
        code = ErrorCode.USER_CANCELLED if cancelled else error_code
        raise StageFailed(
            make_error(
                code,
                f"{message}: {cause.message}" if cause else message,
                stacklevel=2,
                **(cause.details if cause else {}),
            )
        )

    def soft_fail(self, code: ErrorCode, message: str, **details: Any) -> ErrorContext:
        """Record a non-fatal failure and log it as a warning."""
        error = make_error(code, message, stacklevel=2, **details)
        logger.warning("%s", message)
        self.soft_errors.append(error)
        return error

    def cleanup(self) -> list[ErrorContext]:
        """Tear down an image handle left attached by an interrupted stage."""
        if self.active_handle is None:
            return []
        handle = self.active_handle
        self.active_handle = None
        logger.warning("Releasing image resources: %r", handle)
        return handle.teardown(self.executor)


__all__ = ["BuildContext"]
