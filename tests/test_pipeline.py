"""Tests for pipeline/controller.py, pipeline/context.py and pipeline/stages.py."""

from unittest.mock import patch

import pytest

from opi_imagegen.errors import BuildCancelled, StageFailed, make_error
from opi_imagegen.image.handle import ImageHandle
from opi_imagegen.pipeline.context import BuildContext
from opi_imagegen.pipeline.controller import Pipeline, PipelineStage
from opi_imagegen.pipeline.stages import (
    HOST_PACKAGES,
    MIN_FREE_SPACE_MB,
    assemble_image,
    build_pipeline,
    free_space_mb,
    image_pipeline,
    install_prerequisites,
    prepare_environment,
    run_build,
)
from opi_imagegen.types import ErrorCode, OutcomeKind, PipelineState, StageResult


def ok(ctx):
    return None


def soft(ctx):
    ctx.soft_fail(ErrorCode.NETWORK_FAILURE, "optional blob missing")
    return StageResult.SOFT_FAIL


def fatal(ctx):
    raise StageFailed(make_error(ErrorCode.COMPILATION_FAILED, "make failed"))


def recorder(calls, name):
    def run(ctx):
        calls.append(name)

    return run


class TestPipeline:
    """Tests for stage sequencing and the continue-on-error policy."""

    def test_all_succeed(self, ctx):
        """Every stage runs in order and the run completes."""
        calls = []
        pipeline = Pipeline(
            [PipelineStage(n, recorder(calls, n)) for n in ("a", "b", "c")]
        )

        report = pipeline.run(ctx)

        assert calls == ["a", "b", "c"]
        assert report.success
        assert report.state == PipelineState.COMPLETED
        assert [r.result for r in report.records] == [StageResult.SUCCESS] * 3
        assert report.cleanup_runs == 1

    def test_fatal_aborts(self, ctx):
        """A fatal failure stops the run without continue-on-error."""
        calls = []
        pipeline = Pipeline(
            [
                PipelineStage("compile", fatal),
                PipelineStage("after", recorder(calls, "after")),
            ]
        )

        report = pipeline.run(ctx)

        assert report.state == PipelineState.ABORTED
        assert report.failed_stage == "compile"
        assert report.abort_error.code == ErrorCode.COMPILATION_FAILED
        assert calls == []
        assert not report.cancelled

    def test_continue_on_error_downgrades(self, ctx):
        """With continue-on-error a fatal failure becomes a soft failure."""
        calls = []
        pipeline = Pipeline(
            [
                PipelineStage("compile", fatal),
                PipelineStage("after", recorder(calls, "after")),
            ],
            continue_on_error=True,
        )

        report = pipeline.run(ctx)

        assert report.state == PipelineState.COMPLETED
        assert report.records[0].result == StageResult.SOFT_FAIL
        assert report.records[0].downgraded
        assert [e.code for e in report.errors] == [ErrorCode.COMPILATION_FAILED]
        assert calls == ["after"]

    def test_always_fatal_ignores_continue(self, ctx):
        """An always-fatal stage aborts even with continue-on-error."""
        pipeline = Pipeline(
            [PipelineStage("image", fatal, always_fatal=True), PipelineStage("x", ok)],
            continue_on_error=True,
        )

        report = pipeline.run(ctx)

        assert report.state == PipelineState.ABORTED
        assert report.failed_stage == "image"
        assert len(report.records) == 1

    def test_soft_fail_records_warnings(self, ctx):
        """Soft failures keep the run going and are attached to the record."""
        pipeline = Pipeline([PipelineStage("gpu", soft), PipelineStage("x", ok)])

        report = pipeline.run(ctx)

        assert report.success
        record = report.records[0]
        assert record.result == StageResult.SOFT_FAIL
        assert not record.downgraded
        assert [w.message for w in record.warnings] == ["optional blob missing"]
        assert report.records[1].warnings == []

    def test_cancel_between_stages(self, ctx):
        """Cancellation is noticed before the next stage starts."""
        calls = []
        cleanups = []

        def cancel(context):
            context.token.cancel()

        pipeline = Pipeline(
            [
                PipelineStage("first", cancel),
                PipelineStage("second", recorder(calls, "second")),
            ],
            continue_on_error=True,
            token=ctx.token,
            cleanup=lambda context: cleanups.append(context),
        )

        report = pipeline.run(ctx)

        assert report.cancelled
        assert report.failed_stage == "second"
        assert calls == []
        assert report.cleanup_runs == 1
        assert cleanups == [ctx]

    def test_cancelled_stage_not_downgraded(self, ctx):
        """A stage interrupted by cancellation aborts despite continue-on-error."""

        def interrupted(context):
            raise BuildCancelled()

        pipeline = Pipeline(
            [PipelineStage("fetch", interrupted), PipelineStage("x", ok)],
            continue_on_error=True,
        )

        report = pipeline.run(ctx)

        assert report.cancelled
        assert len(report.records) == 1

    def test_interrupted_tool_reports_cancellation(self, ctx):
        """A tool killed by SIGINT mid-stage aborts as user_cancelled."""

        def killed(context):
            context.token.cancel(2)
            raise StageFailed(
                make_error(ErrorCode.COMPILATION_FAILED, "make exited with 2")
            )

        pipeline = Pipeline(
            [PipelineStage("compile", killed), PipelineStage("x", ok)],
            token=ctx.token,
        )

        report = pipeline.run(ctx)

        assert report.cancelled
        assert report.abort_error.code == ErrorCode.USER_CANCELLED
        assert report.abort_error.details["interrupted"] == "make exited with 2"
        assert ctx.token.exit_code == 130
        assert len(report.records) == 1

    def test_missing_requirement(self, ctx):
        """A stage whose prerequisite never ran fails as dependency_missing."""
        pipeline = Pipeline([PipelineStage("configure", ok, requires=("source",))])

        report = pipeline.run(ctx)

        assert report.failed_stage == "configure"
        assert report.abort_error.code == ErrorCode.DEPENDENCY_MISSING

    def test_os_error_is_unknown(self, ctx):
        """Unexpected OS errors are reported as unknown failures."""

        def broken(context):
            raise PermissionError("denied")

        report = Pipeline([PipelineStage("broken", broken)]).run(ctx)

        assert report.abort_error.code == ErrorCode.UNKNOWN
        assert "denied" in report.abort_error.message

    def test_cleanup_releases_active_handle(self, ctx, fake_executor, tmp_path):
        """The context cleanup detaches an image left attached."""
        handle = ImageHandle(tmp_path / "disk.img")
        handle.attach("/dev/loop9")

        def attach_then_fail(context):
            context.active_handle = handle
            fatal(context)

        pipeline = Pipeline(
            [PipelineStage("image", attach_then_fail)], cleanup=BuildContext.cleanup
        )

        report = pipeline.run(ctx)

        assert report.state == PipelineState.ABORTED
        assert fake_executor.calls == [["losetup", "--detach", "/dev/loop9"]]
        assert ctx.active_handle is None
        assert report.cleanup_runs == 1

    def test_cleanup_errors_reported(self, ctx):
        """Cleanup failures are kept on the report."""
        error = make_error(ErrorCode.IMAGE_ASSEMBLY_FAILED, "busy")
        pipeline = Pipeline([PipelineStage("a", ok)], cleanup=lambda c: [error])

        report = pipeline.run(ctx)

        assert report.cleanup_errors == [error]
        assert report.to_dict()["cleanup_errors"][0]["message"] == "busy"

    def test_runs_once(self, ctx):
        """A pipeline cannot be run twice."""
        pipeline = Pipeline([PipelineStage("a", ok)])
        pipeline.run(ctx)

        with pytest.raises(RuntimeError):
            pipeline.run(ctx)

    def test_duplicate_names_rejected(self):
        """Stage names must be unique."""
        with pytest.raises(ValueError, match="Duplicate"):
            Pipeline([PipelineStage("a", ok), PipelineStage("a", ok)])

    def test_report_to_dict(self, ctx):
        """The report serializes stage results."""
        report = Pipeline([PipelineStage("gpu", soft)]).run(ctx)
        data = report.to_dict()

        assert data["state"] == "completed"
        assert data["stages"][0]["result"] == "soft_fail"
        assert data["stages"][0]["warnings"][0]["code"] == "network_failure"


class TestBuildContext:
    """Tests for BuildContext helpers."""

    def test_run_checked_success(self, ctx, fake_executor):
        """Successful commands return their result."""
        result = ctx.run_checked(["true"], ErrorCode.UNKNOWN, "should not fail")

        assert result.success
        assert fake_executor.kwargs[0]["error_code"] == ErrorCode.UNKNOWN

    def test_run_checked_failure(self, ctx, fake_executor):
        """Failures become StageFailed with the stage's error code."""
        fake_executor.fail(lambda c: True)

        with pytest.raises(StageFailed) as exc_info:
            ctx.run_checked(["make"], ErrorCode.COMPILATION_FAILED, "Build failed")

        assert exc_info.value.code == ErrorCode.COMPILATION_FAILED
        assert exc_info.value.context.message.startswith("Build failed: ")

    def test_run_checked_cancelled(self, ctx, fake_executor):
        """A cancelled retry keeps the user_cancelled code."""
        fake_executor.fail(lambda c: True, kind=OutcomeKind.CANCELLED)

        with pytest.raises(StageFailed) as exc_info:
            ctx.run_checked(["git"], ErrorCode.NETWORK_FAILURE, "Fetch failed")

        assert exc_info.value.code == ErrorCode.USER_CANCELLED

    def test_run_checked_after_interrupt(self, ctx, fake_executor):
        """A command failing after the interrupt is reported as cancelled."""
        fake_executor.fail(lambda c: True, exit_code=130)
        ctx.token.cancel()

        with pytest.raises(StageFailed) as exc_info:
            ctx.run_checked(["make"], ErrorCode.COMPILATION_FAILED, "Build failed")

        assert exc_info.value.code == ErrorCode.USER_CANCELLED
        assert exc_info.value.context.message.startswith("Build failed: ")

    def test_cleanup_without_handle(self, ctx, fake_executor):
        """Cleanup with nothing attached does nothing."""
        assert ctx.cleanup() == []
        assert fake_executor.calls == []


class TestBuildPipeline:
    """Tests for stage assembly from settings."""

    def test_default_order(self, settings):
        """Default settings produce every stage in the fixed order."""
        pipeline = build_pipeline(settings)

        assert pipeline.stage_names == [
            "environment",
            "prerequisites",
            "rootfs",
            "kernel-source",
            "kernel-configure",
            "kernel-compile",
            "kernel-install",
            "uboot-source",
            "uboot-configure",
            "uboot-compile",
            "uboot-install",
            "gpu",
            "image",
        ]

    def test_image_stage_requirements(self, settings):
        """The image stage is always fatal and requires every component stage."""
        settings.build_kernel = False
        settings.install_gpu_blobs = False

        pipeline = build_pipeline(settings)
        image = pipeline.stages[-1]

        assert image.name == "image"
        assert image.always_fatal
        assert image.requires == (
            "rootfs",
            "uboot-source",
            "uboot-configure",
            "uboot-compile",
            "uboot-install",
        )

    def test_disabled_components(self, settings):
        """Disabled components and the image contribute no stages."""
        settings.build_kernel = False
        settings.build_uboot = False
        settings.build_rootfs = False
        settings.install_gpu_blobs = False
        settings.create_image = False

        pipeline = build_pipeline(settings)

        assert pipeline.stage_names == ["environment", "prerequisites"]

    def test_continue_on_error_passed(self, settings):
        """The pipeline takes its policy from the settings."""
        settings.continue_on_error = True

        assert build_pipeline(settings).continue_on_error

    def test_image_pipeline(self, settings):
        """The image-only pipeline has a single stage."""
        assert image_pipeline(settings).stage_names == ["image"]


class TestEnvironmentStages:
    """Tests for the environment and prerequisites stages."""

    def test_free_space_of_missing_dir(self, tmp_path):
        """A directory not created yet is measured on its nearest parent."""
        missing = tmp_path / "not" / "yet" / "created"

        with patch("opi_imagegen.pipeline.stages.os.statvfs") as statvfs:
            statvfs.return_value.f_bavail = 2048
            statvfs.return_value.f_frsize = 4096
            assert free_space_mb(missing) == 8

        statvfs.assert_called_once_with(tmp_path)

    def test_insufficient_space(self, ctx, fake_executor):
        """Too little free space fails before anything runs."""
        with patch(
            "opi_imagegen.pipeline.stages.free_space_mb",
            return_value=MIN_FREE_SPACE_MB - 1,
        ):
            with pytest.raises(StageFailed) as exc_info:
                prepare_environment(ctx)

        assert exc_info.value.code == ErrorCode.INSUFFICIENT_SPACE
        assert fake_executor.calls == []

    def test_environment_refreshes_index(self, ctx, fake_executor, settings):
        """The package index is refreshed with network retries."""
        with patch(
            "opi_imagegen.pipeline.stages.free_space_mb", return_value=MIN_FREE_SPACE_MB
        ):
            prepare_environment(ctx)

        assert settings.build_dir.is_dir()
        assert settings.output_dir.is_dir()
        assert fake_executor.calls == [["apt-get", "update"]]
        assert fake_executor.kwargs[0]["max_retries"] == settings.network_retries

    def test_environment_offline(self, ctx, fake_executor, settings):
        """Offline mode skips the package index refresh."""
        settings.offline = True
        with patch(
            "opi_imagegen.pipeline.stages.free_space_mb", return_value=MIN_FREE_SPACE_MB
        ):
            assert prepare_environment(ctx) == StageResult.SUCCESS

        assert fake_executor.calls == []

    def test_prerequisites_installed(self, ctx, fake_executor):
        """Host packages are installed non-interactively."""
        install_prerequisites(ctx)

        cmd = fake_executor.calls[0]
        assert cmd[:4] == ["apt-get", "install", "-y", "--no-install-recommends"]
        assert set(HOST_PACKAGES) <= set(cmd)
        assert fake_executor.kwargs[0]["env_override"] == {
            "DEBIAN_FRONTEND": "noninteractive"
        }

    def test_prerequisites_offline_missing(self, ctx, fake_executor, settings):
        """Offline mode fails when host tools are missing."""
        settings.offline = True
        with patch("opi_imagegen.pipeline.stages.check_tools", return_value=["sgdisk"]):
            with pytest.raises(StageFailed) as exc_info:
                install_prerequisites(ctx)

        assert exc_info.value.code == ErrorCode.DEPENDENCY_MISSING
        assert fake_executor.calls == []

    def test_prerequisites_offline_present(self, ctx, fake_executor, settings):
        """Offline mode passes when every tool is present."""
        settings.offline = True
        with patch("opi_imagegen.pipeline.stages.check_tools", return_value=[]):
            install_prerequisites(ctx)

        assert fake_executor.calls == []

    def test_assemble_without_artifacts(self, ctx):
        """The image stage needs kernel artifacts."""
        with pytest.raises(StageFailed) as exc_info:
            assemble_image(ctx)

        assert exc_info.value.code == ErrorCode.DEPENDENCY_MISSING


class TestRunBuild:
    """Tests for run_build."""

    def test_minimal_build(self, settings):
        """A build with only the host stages completes."""
        settings.build_kernel = False
        settings.build_uboot = False
        settings.build_rootfs = False
        settings.install_gpu_blobs = False
        settings.create_image = False
        settings.offline = True

        with (
            patch(
                "opi_imagegen.pipeline.stages.free_space_mb",
                return_value=MIN_FREE_SPACE_MB,
            ),
            patch("opi_imagegen.pipeline.stages.check_tools", return_value=[]),
        ):
            report, context = run_build(settings)

        assert report.success
        assert [r.name for r in report.records] == ["environment", "prerequisites"]
        assert context.settings is settings

    def test_image_only_without_artifacts(self, settings):
        """Image-only mode aborts when nothing has been built."""
        report, context = run_build(settings, image_only=True)

        assert report.state == PipelineState.ABORTED
        assert report.failed_stage == "image"
        assert context.image_result is None
