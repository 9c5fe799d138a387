"""Stage definitions and pipeline assembly.

This module handles:
- The environment and prerequisites stages
- The image assembly stage
- Assembling the fixed stage order from the enable flags in Settings
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING

from opi_imagegen.components import gpu, kernel, rootfs, uboot
from opi_imagegen.errors import StageFailed, make_error
from opi_imagegen.image.engine import ImageAssembler
from opi_imagegen.pipeline.context import BuildContext
from opi_imagegen.pipeline.controller import Pipeline, PipelineReport, PipelineStage
from opi_imagegen.process.executor import check_tools
from opi_imagegen.types import ErrorCode, StageResult

if TYPE_CHECKING:
    from opi_imagegen.config import Settings
    from opi_imagegen.image.handle import ImageHandle
    from opi_imagegen.process.cancel import CancellationToken

logger = logging.getLogger(__name__)

# Free space needed in the build directory
MIN_FREE_SPACE_MB = 15000

HOST_PACKAGES = (
    "build-essential",
    "gcc-aarch64-linux-gnu",
    "g++-aarch64-linux-gnu",
    "bc",
    "bison",
    "flex",
    "libssl-dev",
    "libncurses-dev",
    "libelf-dev",
    "device-tree-compiler",
    "u-boot-tools",
    "python3-pyelftools",
    "swig",
    "git",
    "rsync",
    "kmod",
    "cpio",
    "debootstrap",
    "qemu-user-static",
    "gdisk",
    "dosfstools",
    "e2fsprogs",
    "xz-utils",
    "udev",
)

HOST_TOOLS = (
    "git",
    "make",
    "sgdisk",
    "losetup",
    "mkfs.vfat",
    "mkfs.ext4",
    "blkid",
    "rsync",
    "dd",
    "mkimage",
    "xz",
    "debootstrap",
)


def free_space_mb(path: Path) -> int:
    """Free space on the filesystem holding `path` (or its nearest parent)."""
    existing = path
    while not existing.exists() and existing != existing.parent:
        existing = existing.parent
    stats = os.statvfs(existing)
    return stats.f_bavail * stats.f_frsize // (1024 * 1024)


def prepare_environment(ctx: BuildContext) -> StageResult:
    """Check free space, create work directories, refresh the package index."""
    settings = ctx.settings
    available = free_space_mb(settings.build_dir)
    if available < MIN_FREE_SPACE_MB:
        raise StageFailed(
            make_error(
                ErrorCode.INSUFFICIENT_SPACE,
                f"Only {available} MB free in {settings.build_dir}, "
                f"{MIN_FREE_SPACE_MB} MB required",
                available_mb=available,
            )
        )
    logger.info("%d MB free in %s", available, settings.build_dir)

    for directory in (settings.build_dir, settings.output_dir):
        directory.mkdir(parents=True, exist_ok=True)

    if settings.offline:
        logger.info("Offline mode, skipping package index refresh")
        return StageResult.SUCCESS

    ctx.run_checked(
        ["apt-get", "update"],
        ErrorCode.NETWORK_FAILURE,
        "Failed to refresh package index",
        max_retries=settings.network_retries,
    )
    return StageResult.SUCCESS


def host_tools(settings: Settings) -> list[str]:
    return [*HOST_TOOLS, f"{settings.cross_compile}gcc"]


def install_prerequisites(ctx: BuildContext) -> None:
    """Install host packages, or only verify the tools in offline mode."""
    settings = ctx.settings
    if settings.offline:
        missing = check_tools(host_tools(settings))
        if missing:
            raise StageFailed(
                make_error(
                    ErrorCode.DEPENDENCY_MISSING,
                    f"Offline mode and required tools are missing: {', '.join(missing)}",
                    missing=missing,
                )
            )
        logger.info("Offline mode, all host tools present")
        return

    ctx.run_checked(
        ["apt-get", "install", "-y", "--no-install-recommends", *HOST_PACKAGES],
        ErrorCode.DEPENDENCY_MISSING,
        "Failed to install host packages",
        max_retries=settings.network_retries,
        env_override={"DEBIAN_FRONTEND": "noninteractive"},
    )


def assemble_image(ctx: BuildContext) -> None:
    """Assemble, tear down and finalize the disk image."""
    settings = ctx.settings
    artifacts = ctx.boot_artifacts or kernel.staged_boot_artifacts(settings)
    if artifacts is None:
        raise StageFailed(
            make_error(
                ErrorCode.DEPENDENCY_MISSING,
                f"No kernel artifacts staged in {settings.boot_staging_dir}",
            )
        )

    def track(handle: ImageHandle | None) -> None:
        ctx.active_handle = handle

    assembler = ImageAssembler(settings, ctx.executor, on_handle=track)
    ctx.image_result = assembler.assemble(
        settings.rootfs_dir, artifacts, settings.uboot_output_dir
    )


def _component_stages(settings: Settings) -> list[PipelineStage]:
    stages: list[PipelineStage] = []
    if settings.build_rootfs:
        stages.append(
            PipelineStage(
                "rootfs", rootfs.build_rootfs, description="Bootstrap Ubuntu rootfs"
            )
        )
    if settings.build_kernel:
        stages.extend(
            [
                PipelineStage(
                    "kernel-source", kernel.fetch_source, description="Fetch kernel"
                ),
                PipelineStage(
                    "kernel-configure",
                    kernel.configure,
                    requires=("kernel-source",),
                    description="Configure kernel",
                ),
                PipelineStage(
                    "kernel-compile",
                    kernel.compile_kernel,
                    requires=("kernel-configure",),
                    description="Compile kernel",
                ),
                PipelineStage(
                    "kernel-install",
                    kernel.install,
                    requires=("kernel-compile",),
                    description="Install kernel artifacts",
                ),
            ]
        )
    if settings.build_uboot:
        stages.extend(
            [
                PipelineStage(
                    "uboot-source", uboot.fetch_source, description="Fetch U-Boot"
                ),
                PipelineStage(
                    "uboot-configure",
                    uboot.configure,
                    requires=("uboot-source",),
                    description="Configure U-Boot",
                ),
                PipelineStage(
                    "uboot-compile",
                    uboot.compile_uboot,
                    requires=("uboot-configure",),
                    description="Compile U-Boot",
                ),
                PipelineStage(
                    "uboot-install",
                    uboot.install,
                    requires=("uboot-compile",),
                    description="Install U-Boot blobs",
                ),
            ]
        )
    if settings.install_gpu_blobs:
        stages.append(
            PipelineStage(
                "gpu", gpu.install_gpu_support, description="Install Mali GPU support"
            )
        )
    return stages


def image_stage(requires: tuple[str, ...] = ()) -> PipelineStage:
    return PipelineStage(
        "image",
        assemble_image,
        always_fatal=True,
        requires=requires,
        description="Assemble disk image",
    )


def build_pipeline(
    settings: Settings, token: CancellationToken | None = None
) -> Pipeline:
    """Assemble the stage list for the enabled components.

    Order: environment, prerequisites, rootfs, kernel, U-Boot, GPU, image.
    Disabled components contribute no stages; the image stage requires
    every component stage that is present.
    """
    stages = [
        PipelineStage(
            "environment", prepare_environment, description="Prepare build environment"
        ),
        PipelineStage(
            "prerequisites",
            install_prerequisites,
            requires=("environment",),
            description="Install host prerequisites",
        ),
    ]
    components = _component_stages(settings)
    stages.extend(components)
    if settings.create_image:
        stages.append(image_stage(tuple(s.name for s in components)))

    return Pipeline(
        stages,
        continue_on_error=settings.continue_on_error,
        token=token,
        cleanup=BuildContext.cleanup,
    )


def image_pipeline(
    settings: Settings, token: CancellationToken | None = None
) -> Pipeline:
    """Pipeline running image assembly alone from existing artifacts."""
    return Pipeline(
        [image_stage()],
        continue_on_error=False,
        token=token,
        cleanup=BuildContext.cleanup,
    )


def run_build(
    settings: Settings,
    token: CancellationToken | None = None,
    image_only: bool = False,
) -> tuple[PipelineReport, BuildContext]:
    """Create a context and run the full (or image-only) pipeline."""
    context = BuildContext.create(settings, token=token)
    factory = image_pipeline if image_only else build_pipeline
    pipeline = factory(settings, token=context.token)
    logger.info("Stages: %s", ", ".join(pipeline.stage_names))
    return pipeline.run(context), context


__all__ = [
    "HOST_PACKAGES",
    "HOST_TOOLS",
    "MIN_FREE_SPACE_MB",
    "assemble_image",
    "build_pipeline",
    "free_space_mb",
    "image_pipeline",
    "install_prerequisites",
    "prepare_environment",
    "run_build",
]
