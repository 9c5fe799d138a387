"""Raw bootloader placement.

This module handles:
- Discovering the compiled bootloader blob set in an output directory
- Composing the dd commands that write blobs to fixed sectors
- Generating the flash helper script that replays those writes on media
"""

from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from opi_imagegen.errors import ImageAssemblyError
from opi_imagegen.image.layout import (
    IDBLOADER,
    SECTOR_SIZE,
    UBOOT_COMBINED,
    UBOOT_ITB,
    PartitionLayout,
    RawPlacement,
    check_raw_write,
)
from opi_imagegen.types import ErrorCode

if TYPE_CHECKING:
    from opi_imagegen.process.executor import ProcessExecutor

logger = logging.getLogger(__name__)

FLASH_SCRIPT_NAME = "flash-uboot.sh"


@dataclass
class BootloaderBlobs:
    """Bootloader files paired with the sectors they are written at.

    Attributes:
        directory: Directory the blobs were found in.
        placements: (blob path, placement) pairs in write order.
    """

    directory: Path
    placements: list[tuple[Path, RawPlacement]]

    @property
    def combined(self) -> bool:
        return len(self.placements) == 1

    @classmethod
    def discover(cls, directory: Path, layout: PartitionLayout) -> BootloaderBlobs:
        """Find the blob set for a layout.

        A combined u-boot-rockchip.bin is preferred; otherwise the
        idbloader.img + u-boot.itb pair is required.

        Raises:
            ImageAssemblyError: If no complete blob set is present.
        """
        combined = directory / UBOOT_COMBINED
        if layout.combined_write is not None and combined.is_file():
            logger.debug("Using combined bootloader %s", combined)
            return cls(
                directory=directory,
                placements=[(combined, layout.combined_write)],
            )

        placements: list[tuple[Path, RawPlacement]] = []
        missing: list[str] = []
        for placement in layout.raw_writes:
            blob = directory / placement.filename
            if blob.is_file():
                placements.append((blob, placement))
            else:
                missing.append(placement.filename)

        if missing or not placements:
            raise ImageAssemblyError(
                f"No bootloader blobs in {directory}: need {UBOOT_COMBINED} or "
                f"{IDBLOADER} + {UBOOT_ITB} (missing: {', '.join(missing)})",
                step="bootloader",
                directory=str(directory),
            )
        return cls(directory=directory, placements=placements)


def compose_dd_command(blob: Path, device: str, sector: int) -> list[str]:
    """Compose a raw sector write of a blob onto a device."""
    return [
        "dd",
        f"if={blob}",
        f"of={device}",
        f"bs={SECTOR_SIZE}",
        f"seek={sector}",
        "conv=notrunc,fsync",
    ]


def write_bootloader(
    executor: ProcessExecutor,
    blobs: BootloaderBlobs,
    device: str,
    layout: PartitionLayout,
) -> None:
    """Write every blob to its fixed sector. Raw writes are never retried.

    Raises:
        LayoutError: If a blob would overlap protected sectors.
        ImageAssemblyError: If a write fails.
    """
    for blob, placement in blobs.placements:
        check_raw_write(layout, placement.start_sector, blob.stat().st_size)
        logger.info(
            "Writing %s at sector %d of %s", blob.name, placement.start_sector, device
        )
        result = executor.run(
            compose_dd_command(blob, device, placement.start_sector),
            error_code=ErrorCode.IMAGE_ASSEMBLY_FAILED,
        )
        if not result.success:
            raise ImageAssemblyError(
                f"Failed to write {blob.name} to {device}",
                step="bootloader",
                blob=str(blob),
                sector=placement.start_sector,
            )


def render_flash_script(layout: PartitionLayout) -> str:
    """Render a bash script that writes the bootloader to a block device.

    The script takes exactly one argument, the target device, and looks
    for the blobs next to itself.
    """
    lines = [
        "#!/bin/bash",
        f"# Write the U-Boot bootloader for layout {layout.name} to a block device.",
        "set -euo pipefail",
        "",
        'if [ "$#" -ne 1 ]; then',
        '    echo "Usage: $0 <block-device>" >&2',
        "    exit 1",
        "fi",
        "",
        'DEVICE="$1"',
        'if [ ! -b "$DEVICE" ]; then',
        '    echo "Error: $DEVICE is not a block device" >&2',
        "    exit 1",
        "fi",
        "",
        'SCRIPT_DIR="$(cd "$(dirname "${BASH_SOURCE[0]}")" && pwd)"',
        "",
    ]

    def dd_line(placement: RawPlacement, indent: str) -> str:
        return (
            f'{indent}dd if="$SCRIPT_DIR/{placement.filename}" of="$DEVICE" '
            f"bs={SECTOR_SIZE} seek={placement.start_sector} conv=notrunc,fsync"
        )

    if layout.combined_write is not None:
        combined = layout.combined_write
        lines.append(f'if [ -f "$SCRIPT_DIR/{combined.filename}" ]; then')
        lines.append(dd_line(combined, "    "))
        lines.append("else")
        lines.extend(dd_line(p, "    ") for p in layout.raw_writes)
        lines.append("fi")
    else:
        lines.extend(dd_line(p, "") for p in layout.raw_writes)

    lines.extend(["", "sync", 'echo "Bootloader written to $DEVICE"', ""])
    return "\n".join(lines)


def write_flash_script(output_dir: Path, layout: PartitionLayout) -> Path:
    """Write the flash helper script into the bootloader output directory."""
    output_dir.mkdir(parents=True, exist_ok=True)
    script = output_dir / FLASH_SCRIPT_NAME
    script.write_text(render_flash_script(layout), encoding="utf-8")
    script.chmod(0o755)
    logger.info("Flash script written: %s", shlex.quote(str(script)))
    return script


__all__ = [
    "BootloaderBlobs",
    "FLASH_SCRIPT_NAME",
    "compose_dd_command",
    "render_flash_script",
    "write_bootloader",
    "write_flash_script",
]
