"""Linux kernel stages.

This module handles:
- Resolving the kernel source through the fallback chain
- Configuring the tree from a defconfig plus RK3588/Mali options
- Compiling the kernel image, device trees and modules
- Staging Image and the board DTB for the boot partition and installing
  modules into the rootfs
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import TYPE_CHECKING

from opi_imagegen.errors import StageFailed, make_error
from opi_imagegen.sources.resolver import resolve_component
from opi_imagegen.types import BootArtifacts, Component, ErrorCode, StageResult

if TYPE_CHECKING:
    from opi_imagegen.config import Settings
    from opi_imagegen.pipeline.context import BuildContext

logger = logging.getLogger(__name__)

FALLBACK_DEFCONFIG = "defconfig"
BOARD_DTB = "rk3588-orangepi-5-plus.dtb"

# scripts/config arguments applied on top of the defconfig
KERNEL_CONFIG_OPTIONS = [
    ("--enable", "CONFIG_PREEMPT_VOLUNTARY"),
    ("--enable", "CONFIG_HIGH_RES_TIMERS"),
    ("--enable", "CONFIG_SCHED_AUTOGROUP"),
    ("--enable", "CONFIG_CFS_BANDWIDTH"),
    ("--enable", "CONFIG_CPU_FREQ_DEFAULT_GOV_SCHEDUTIL"),
    ("--enable", "CONFIG_ARM_ROCKCHIP_CPUFREQ"),
    ("--enable", "CONFIG_DRM_ROCKCHIP"),
    ("--enable", "CONFIG_DRM_PANFROST"),
    ("--module", "CONFIG_DRM_PANTHOR"),
]


def compose_make_command(
    settings: Settings, *targets: str, jobs: int | None = None
) -> list[str]:
    """Compose a cross-compiling make invocation."""
    cmd = [
        "make",
        f"ARCH={settings.arch}",
        f"CROSS_COMPILE={settings.cross_compile}",
    ]
    if jobs is not None:
        cmd.append(f"-j{jobs}")
    cmd.extend(targets)
    return cmd


def compose_config_command(options: list[tuple[str, str]]) -> list[str]:
    """Compose one scripts/config call applying every option."""
    cmd = ["scripts/config", "--file", ".config"]
    for flag, option in options:
        cmd.extend([flag, option])
    return cmd


def defconfig_candidates(settings: Settings) -> list[str]:
    candidates = [settings.kernel_defconfig, FALLBACK_DEFCONFIG]
    return list(dict.fromkeys(c for c in candidates if c))


def _source_dir(ctx: BuildContext) -> Path:
    source_dir = ctx.settings.kernel_source_dir
    if not (source_dir / "Makefile").is_file():
        raise StageFailed(
            make_error(
                ErrorCode.DEPENDENCY_MISSING,
                f"Kernel source not found in {source_dir}",
            )
        )
    return source_dir


def fetch_source(ctx: BuildContext) -> StageResult:
    """Resolve and shallow-clone the kernel source."""
    outcome = resolve_component(ctx.settings, Component.KERNEL, ctx.executor)
    ctx.resolutions[Component.KERNEL] = outcome
    if outcome.integration_error is not None:
        ctx.soft_errors.append(outcome.integration_error)
        return StageResult.SOFT_FAIL
    return StageResult.SUCCESS


def configure(ctx: BuildContext) -> StageResult:
    """Apply a defconfig, the RK3588 options and olddefconfig."""
    settings = ctx.settings
    source_dir = _source_dir(ctx)
    env = settings.make_env()

    if settings.clean_build:
        ctx.run_checked(
            compose_make_command(settings, "mrproper"),
            ErrorCode.CONFIGURATION_FAILED,
            "Failed to clean kernel tree",
            cwd=source_dir,
            env_override=env,
        )

    applied = None
    for defconfig in defconfig_candidates(settings):
        logger.info("Applying kernel defconfig %s", defconfig)
        result = ctx.executor.run(
            compose_make_command(settings, defconfig),
            error_code=ErrorCode.CONFIGURATION_FAILED,
            cwd=source_dir,
            env_override=env,
        )
        if result.success:
            applied = defconfig
            break
        logger.warning("Kernel defconfig %s failed, trying next", defconfig)
    if applied is None:
        raise StageFailed(
            make_error(
                ErrorCode.CONFIGURATION_FAILED,
                "No usable kernel defconfig after trying: "
                + ", ".join(defconfig_candidates(settings)),
            )
        )

    result = StageResult.SUCCESS
    tuned = ctx.executor.run(
        compose_config_command(KERNEL_CONFIG_OPTIONS),
        error_code=ErrorCode.CONFIGURATION_FAILED,
        cwd=source_dir,
    )
    if not tuned.success:
        ctx.soft_fail(
            ErrorCode.CONFIGURATION_FAILED,
            "Could not apply RK3588 kernel options, building with plain defconfig",
        )
        result = StageResult.SOFT_FAIL

    ctx.run_checked(
        compose_make_command(settings, "olddefconfig"),
        ErrorCode.CONFIGURATION_FAILED,
        "Failed to finalize kernel configuration",
        cwd=source_dir,
        env_override=env,
    )
    logger.info("Kernel configured with %s", applied)
    return result


def compile_kernel(ctx: BuildContext) -> None:
    """Build Image, dtbs and modules. Never retried."""
    settings = ctx.settings
    ctx.run_checked(
        compose_make_command(settings, "Image", "dtbs", "modules", jobs=settings.jobs),
        ErrorCode.COMPILATION_FAILED,
        "Kernel compilation failed",
        cwd=_source_dir(ctx),
        env_override=settings.make_env(),
    )


def find_board_dtb(source_dir: Path, arch: str = "arm64") -> Path | None:
    """Locate the board DTB, falling back to the first RK3588 DTB."""
    dts_dir = source_dir / "arch" / arch / "boot" / "dts" / "rockchip"
    board = dts_dir / BOARD_DTB
    if board.is_file():
        return board
    fallback = sorted(dts_dir.glob("rk3588*.dtb"))
    if fallback:
        logger.warning("Board DTB %s not found, using %s", BOARD_DTB, fallback[0].name)
        return fallback[0]
    return None


def staged_boot_artifacts(settings: Settings) -> BootArtifacts | None:
    """Boot artifacts left in the staging directory by an earlier build."""
    staging = settings.boot_staging_dir
    image = staging / "Image"
    dtbs = sorted(staging.glob("*.dtb"))
    if not image.is_file() or not dtbs:
        return None
    board = staging / BOARD_DTB
    dtb = board if board.is_file() else dtbs[0]
    initramfs = staging / "initrd.img"
    return BootArtifacts(
        kernel_image=str(image),
        dtb=str(dtb),
        initramfs=str(initramfs) if initramfs.is_file() else None,
    )


def install(ctx: BuildContext) -> None:
    """Stage boot artifacts and install modules into the rootfs."""
    settings = ctx.settings
    source_dir = _source_dir(ctx)
    staging = settings.boot_staging_dir
    staging.mkdir(parents=True, exist_ok=True)

    image = source_dir / "arch" / settings.arch / "boot" / "Image"
    dtb = find_board_dtb(source_dir, settings.arch)
    if not image.is_file() or dtb is None:
        raise StageFailed(
            make_error(
                ErrorCode.INSTALLATION_FAILED,
                f"Kernel build outputs missing in {source_dir}",
                image=str(image),
            )
        )

    try:
        staged_image = Path(shutil.copy2(image, staging / image.name))
        staged_dtb = Path(shutil.copy2(dtb, staging / dtb.name))
    except OSError as e:
        raise StageFailed(
            make_error(
                ErrorCode.INSTALLATION_FAILED,
                f"Failed to stage kernel artifacts: {e}",
            )
        ) from e

    settings.rootfs_dir.mkdir(parents=True, exist_ok=True)
    ctx.run_checked(
        compose_make_command(
            settings, f"INSTALL_MOD_PATH={settings.rootfs_dir}", "modules_install"
        ),
        ErrorCode.INSTALLATION_FAILED,
        "Failed to install kernel modules",
        cwd=source_dir,
        env_override=settings.make_env(),
    )

    ctx.boot_artifacts = BootArtifacts(
        kernel_image=str(staged_image), dtb=str(staged_dtb)
    )
    logger.info("Kernel artifacts staged in %s", staging)


__all__ = [
    "KERNEL_CONFIG_OPTIONS",
    "compile_kernel",
    "compose_config_command",
    "compose_make_command",
    "configure",
    "defconfig_candidates",
    "fetch_source",
    "find_board_dtb",
    "install",
    "staged_boot_artifacts",
]
