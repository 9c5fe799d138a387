"""Stage pipeline controller.

This module handles:
- Running named stages in a fixed order
- Applying the abort / continue-on-error policy to stage results
- Polling the cancellation flag between stages
- Running the cleanup handler exactly once per run
- Producing a PipelineReport for the CLI

State machine: NOT_STARTED -> RUNNING -> COMPLETED | ABORTED.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from opi_imagegen.errors import BuildCancelled, BuildError, ErrorContext, make_error
from opi_imagegen.logs import log_error_context
from opi_imagegen.process.cancel import CancellationToken
from opi_imagegen.types import ErrorCode, PipelineState, StageResult

if TYPE_CHECKING:
    from opi_imagegen.pipeline.context import BuildContext

logger = logging.getLogger(__name__)

StageFunc = Callable[["BuildContext"], "StageResult | None"]
CleanupFunc = Callable[["BuildContext"], "list[ErrorContext] | None"]


@dataclass(frozen=True)
class PipelineStage:
    """A named unit of work.

    Attributes:
        name: Stage name, unique within a pipeline.
        run: Callable receiving the BuildContext. Returning None means
            success; raising BuildError means FATAL_FAIL.
        always_fatal: Abort on failure even with continue-on-error.
        requires: Stages that must have a recorded result first.
        description: Human-readable summary for listings.
    """

    name: str
    run: StageFunc
    always_fatal: bool = False
    requires: tuple[str, ...] = ()
    description: str = ""


@dataclass
class StageRecord:
    """Outcome of one executed stage.

    Attributes:
        name: Stage name.
        result: Final result after any downgrade.
        error: Error that caused a failure, if any.
        duration_s: Wall-clock duration in seconds.
        downgraded: Whether a FATAL_FAIL was downgraded to SOFT_FAIL.
        warnings: Soft failures recorded by the stage.
    """

    name: str
    result: StageResult
    error: ErrorContext | None = None
    duration_s: float = 0.0
    downgraded: bool = False
    warnings: list[ErrorContext] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "result": self.result.value,
            "duration_s": round(self.duration_s, 3),
        }
        if self.downgraded:
            data["downgraded"] = True
        if self.error is not None:
            data["error"] = self.error.to_dict()
        if self.warnings:
            data["warnings"] = [w.to_dict() for w in self.warnings]
        return data


@dataclass
class PipelineReport:
    """Summary of a pipeline run.

    Attributes:
        state: Final pipeline state.
        records: Executed stages in order.
        failed_stage: Stage that caused an abort, if any.
        errors: Error contexts accumulated from failed stages.
        cleanup_errors: Failures reported by the cleanup handler.
        cleanup_runs: Number of times cleanup ran.
    """

    state: PipelineState = PipelineState.NOT_STARTED
    records: list[StageRecord] = field(default_factory=list)
    failed_stage: str | None = None
    errors: list[ErrorContext] = field(default_factory=list)
    cleanup_errors: list[ErrorContext] = field(default_factory=list)
    cleanup_runs: int = 0

    @property
    def success(self) -> bool:
        return self.state == PipelineState.COMPLETED

    @property
    def cancelled(self) -> bool:
        return self.state == PipelineState.ABORTED and any(
            e.code == ErrorCode.USER_CANCELLED for e in self.errors
        )

    @property
    def abort_error(self) -> ErrorContext | None:
        if self.state != PipelineState.ABORTED or not self.errors:
            return None
        return self.errors[-1]

    def result_for(self, name: str) -> StageResult | None:
        for record in self.records:
            if record.name == name:
                return record.result
        return None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "state": self.state.value,
            "stages": [r.to_dict() for r in self.records],
        }
        if self.failed_stage:
            data["failed_stage"] = self.failed_stage
        if self.errors:
            data["errors"] = [e.to_dict() for e in self.errors]
        if self.cleanup_errors:
            data["cleanup_errors"] = [e.to_dict() for e in self.cleanup_errors]
        return data


class Pipeline:
    """Ordered stages with a continue-on-error policy."""

    def __init__(
        self,
        stages: Sequence[PipelineStage],
        continue_on_error: bool = False,
        token: CancellationToken | None = None,
        cleanup: CleanupFunc | None = None,
    ) -> None:
        names = [s.name for s in stages]
        duplicates = {n for n in names if names.count(n) > 1}
        if duplicates:
            raise ValueError(f"Duplicate stage names: {', '.join(sorted(duplicates))}")
        self.stages = list(stages)
        self.continue_on_error = continue_on_error
        self.token = token or CancellationToken()
        self._cleanup = cleanup
        self.state = PipelineState.NOT_STARTED

    @property
    def stage_names(self) -> list[str]:
        return [s.name for s in self.stages]

    def run(self, context: BuildContext) -> PipelineReport:
        """Run every stage in order.

        Args:
            context: Build context handed to each stage.

        Returns:
            PipelineReport describing the run.
        """
        if self.state != PipelineState.NOT_STARTED:
            raise RuntimeError("A pipeline can only be run once")

        report = PipelineReport(state=PipelineState.RUNNING)
        self.state = PipelineState.RUNNING
        try:
            for stage in self.stages:
                if self.token.is_set:
                    cancelled = BuildCancelled(
                        f"Build cancelled before stage {stage.name}"
                    ).context
                    self._abort(report, stage.name, cancelled)
                    break

                record = self._run_stage(stage, context, report)
                report.records.append(record)

                error = record.error
                if record.result != StageResult.FATAL_FAIL or error is None:
                    continue
                if (
                    stage.always_fatal
                    or not self.continue_on_error
                    or error.code == ErrorCode.USER_CANCELLED
                ):
                    self._abort(report, stage.name, error)
                    break

                record.result = StageResult.SOFT_FAIL
                record.downgraded = True
                report.errors.append(error)
                logger.warning(
                    "Stage %s failed (%s), continuing because continue-on-error is set",
                    stage.name,
                    error.code.value,
                )
            else:
                self.state = PipelineState.COMPLETED
        finally:
            report.state = self.state
            self._run_cleanup(context, report)

        if report.state == PipelineState.COMPLETED:
            logger.info("Build completed (%d stages)", len(report.records))
        return report

    def _run_stage(
        self, stage: PipelineStage, context: BuildContext, report: PipelineReport
    ) -> StageRecord:
        missing = [r for r in stage.requires if report.result_for(r) is None]
        if missing:
            error = make_error(
                ErrorCode.DEPENDENCY_MISSING,
                f"Stage {stage.name} requires {', '.join(missing)}, which did not run",
                origin=f"{__name__}:{stage.name}",
            )
            log_error_context(error, logger)
            return StageRecord(name=stage.name, result=StageResult.FATAL_FAIL, error=error)

        logger.info("==> Stage: %s", stage.name)
        warnings_before = len(context.soft_errors)
        started = time.monotonic()
        error: ErrorContext | None = None
        try:
            result = stage.run(context) or StageResult.SUCCESS
        except BuildError as e:
            error = e.context
            result = StageResult.FATAL_FAIL
        except OSError as e:
            error = make_error(
                ErrorCode.UNKNOWN,
                f"Stage {stage.name} failed: {e}",
                origin=f"{__name__}:{stage.name}",
            )
            result = StageResult.FATAL_FAIL
        duration = time.monotonic() - started

        if error is not None:
            log_error_context(error, logger)
        if result == StageResult.FATAL_FAIL and error is None:
            error = make_error(
                ErrorCode.UNKNOWN,
                f"Stage {stage.name} failed",
                origin=f"{__name__}:{stage.name}",
            )
        if (
            error is not None
            and self.token.is_set
            and error.code != ErrorCode.USER_CANCELLED
        ):
            # a tool killed by the interrupt reports its own failure code
            error = make_error(
                ErrorCode.USER_CANCELLED,
                f"Build cancelled during stage {stage.name}",
                origin=f"{__name__}:{stage.name}",
                interrupted=error.message,
            )

        record = StageRecord(
            name=stage.name,
            result=result,
            error=error,
            duration_s=duration,
            warnings=context.soft_errors[warnings_before:],
        )
        logger.info(
            "<== Stage %s: %s (%.1fs)", stage.name, result.value, duration
        )
        return record

    def _abort(
        self, report: PipelineReport, stage_name: str, error: ErrorContext
    ) -> None:
        self.state = PipelineState.ABORTED
        report.failed_stage = stage_name
        report.errors.append(error)
        if error.code == ErrorCode.USER_CANCELLED:
            logger.warning("Build cancelled at stage %s", stage_name)
        else:
            logger.error(
                "Build aborted at stage %s: [%s] %s",
                stage_name,
                error.code.value,
                error.message,
            )

    def _run_cleanup(self, context: BuildContext, report: PipelineReport) -> None:
        report.cleanup_runs += 1
        if self._cleanup is None:
            return
        report.cleanup_errors.extend(self._cleanup(context) or [])


__all__ = [
    "Pipeline",
    "PipelineReport",
    "PipelineStage",
    "StageRecord",
]
