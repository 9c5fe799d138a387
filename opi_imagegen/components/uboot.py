"""U-Boot stages.

This module handles:
- Resolving the U-Boot source through the fallback chain
- Trying board and family defconfigs until one applies
- Compiling the bootloader
- Collecting the blobs and writing the flash helper script
"""

from __future__ import annotations

import logging
import shutil
from typing import TYPE_CHECKING

from opi_imagegen.components.kernel import compose_make_command
from opi_imagegen.errors import StageFailed, make_error
from opi_imagegen.image.bootloader import write_flash_script
from opi_imagegen.image.layout import IDBLOADER, UBOOT_COMBINED, UBOOT_ITB, get_layout
from opi_imagegen.sources.resolver import resolve_component
from opi_imagegen.types import Component, ErrorCode, StageResult

if TYPE_CHECKING:
    from opi_imagegen.config import Settings
    from opi_imagegen.pipeline.context import BuildContext

logger = logging.getLogger(__name__)

FALLBACK_DEFCONFIGS = (
    "orangepi_5_defconfig",
    "rk3588_defconfig",
    "evb-rk3588_defconfig",
)


def defconfig_candidates(settings: Settings) -> list[str]:
    """Configured defconfig first, then RK3588 family defconfigs."""
    return list(
        dict.fromkeys(c for c in (settings.uboot_defconfig, *FALLBACK_DEFCONFIGS) if c)
    )


def fetch_source(ctx: BuildContext) -> StageResult:
    """Resolve and shallow-clone the U-Boot source."""
    outcome = resolve_component(ctx.settings, Component.UBOOT, ctx.executor)
    ctx.resolutions[Component.UBOOT] = outcome
    if outcome.integration_error is not None:
        ctx.soft_errors.append(outcome.integration_error)
        return StageResult.SOFT_FAIL
    return StageResult.SUCCESS


def configure(ctx: BuildContext) -> None:
    settings = ctx.settings
    source_dir = settings.uboot_source_dir
    env = settings.make_env()

    if settings.clean_build:
        ctx.run_checked(
            compose_make_command(settings, "distclean"),
            ErrorCode.CONFIGURATION_FAILED,
            "Failed to clean U-Boot tree",
            cwd=source_dir,
            env_override=env,
        )

    tried = defconfig_candidates(settings)
    for defconfig in tried:
        logger.info("Applying U-Boot defconfig %s", defconfig)
        result = ctx.executor.run(
            compose_make_command(settings, defconfig),
            error_code=ErrorCode.CONFIGURATION_FAILED,
            cwd=source_dir,
            env_override=env,
        )
        if result.success:
            logger.info("U-Boot configured with %s", defconfig)
            return
        logger.warning("U-Boot defconfig %s failed, trying next", defconfig)

    raise StageFailed(
        make_error(
            ErrorCode.CONFIGURATION_FAILED,
            f"No usable U-Boot defconfig after trying: {', '.join(tried)}",
        )
    )


def compile_uboot(ctx: BuildContext) -> None:
    """Build U-Boot. Never retried."""
    settings = ctx.settings
    ctx.run_checked(
        compose_make_command(settings, jobs=settings.jobs),
        ErrorCode.COMPILATION_FAILED,
        "U-Boot compilation failed",
        cwd=settings.uboot_source_dir,
        env_override=settings.make_env(),
    )


def install(ctx: BuildContext) -> None:
    """Copy the bootloader blobs to the output directory and write the flash script."""
    settings = ctx.settings
    source_dir = settings.uboot_source_dir
    output_dir = settings.uboot_output_dir
    output_dir.mkdir(parents=True, exist_ok=True)

    combined = source_dir / UBOOT_COMBINED
    pair = [source_dir / IDBLOADER, source_dir / UBOOT_ITB]
    if combined.is_file():
        blobs = [combined]
    elif all(p.is_file() for p in pair):
        blobs = pair
    else:
        raise StageFailed(
            make_error(
                ErrorCode.INSTALLATION_FAILED,
                f"No bootloader blobs in {source_dir}: need {UBOOT_COMBINED} "
                f"or {IDBLOADER} + {UBOOT_ITB}",
            )
        )

    try:
        # blobs from an earlier build would shadow the ones installed now
        for name in (UBOOT_COMBINED, IDBLOADER, UBOOT_ITB):
            (output_dir / name).unlink(missing_ok=True)
        for blob in blobs:
            shutil.copy2(blob, output_dir / blob.name)
            logger.info("Installed %s", blob.name)
    except OSError as e:
        raise StageFailed(
            make_error(ErrorCode.INSTALLATION_FAILED, f"Failed to copy U-Boot blobs: {e}")
        ) from e

    write_flash_script(output_dir, get_layout(settings.target_layout))


__all__ = [
    "FALLBACK_DEFCONFIGS",
    "compile_uboot",
    "configure",
    "defconfig_candidates",
    "fetch_source",
    "install",
]
