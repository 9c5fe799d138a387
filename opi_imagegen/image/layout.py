"""Partition layouts for supported targets.

This module handles:
- Fixed GPT partition layouts per hardware target (512-byte sectors)
- Raw bootloader placements required by the RK3588 boot ROM
- Layout validation and raw-write range checks
- Composing the sgdisk commands that write a layout

All offsets are constants. Only the last partition (rootfs) is open-ended
and grows or shrinks with the configured image size.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from opi_imagegen.errors import LayoutError

logger = logging.getLogger(__name__)

SECTOR_SIZE = 512
MIB = 1024 * 1024

# Sectors before this are the protective MBR and primary GPT
FIRST_USABLE_SECTOR = 34
# Backup GPT at the end of the device
GPT_BACKUP_SECTORS = 33

# Legacy BIOS bootable attribute bit
LEGACY_BOOT_ATTRIBUTE_BIT = 2

TYPE_RESERVED = "8301"
TYPE_BOOT = "0700"
TYPE_LINUX = "8300"

IDBLOADER = "idbloader.img"
UBOOT_ITB = "u-boot.itb"
UBOOT_COMBINED = "u-boot-rockchip.bin"


@dataclass(frozen=True)
class PartitionSpec:
    """One partition of a layout.

    Attributes:
        number: 1-based GPT partition number.
        name: GPT partition name.
        start_sector: First sector.
        end_sector: Last sector (inclusive), None for rest of device.
        filesystem: "vfat", "ext4" or None for raw reserved space.
        type_code: sgdisk type code.
        boot_flag: Whether the legacy bootable attribute is set.
        label: Filesystem label, if formatted.
    """

    number: int
    name: str
    start_sector: int
    end_sector: int | None
    filesystem: str | None = None
    type_code: str = TYPE_RESERVED
    boot_flag: bool = False
    label: str | None = None

    @property
    def is_reserved(self) -> bool:
        return self.filesystem is None

    @property
    def size_sectors(self) -> int | None:
        if self.end_sector is None:
            return None
        return self.end_sector - self.start_sector + 1

    def contains(self, sector: int) -> bool:
        if sector < self.start_sector:
            return False
        return self.end_sector is None or sector <= self.end_sector

    def to_dict(self) -> dict[str, Any]:
        return {
            "number": self.number,
            "name": self.name,
            "start_sector": self.start_sector,
            "end_sector": self.end_sector,
            "filesystem": self.filesystem,
            "type_code": self.type_code,
            "boot_flag": self.boot_flag,
            "label": self.label,
        }


@dataclass(frozen=True)
class RawPlacement:
    """A bootloader blob written directly to fixed sectors.

    Attributes:
        filename: Blob file name in the bootloader output directory.
        start_sector: Sector the blob is written at.
    """

    filename: str
    start_sector: int


@dataclass(frozen=True)
class PartitionLayout:
    """Complete layout for a hardware target.

    Attributes:
        name: Layout identifier.
        description: Human-readable description.
        partitions: Partitions in table order.
        raw_writes: Placements for the split idbloader/ITB pair.
        combined_write: Placement for a single combined bootloader blob.
    """

    name: str
    description: str
    partitions: tuple[PartitionSpec, ...]
    raw_writes: tuple[RawPlacement, ...] = field(default_factory=tuple)
    combined_write: RawPlacement | None = None

    @property
    def boot_partition(self) -> PartitionSpec:
        return next(p for p in self.partitions if p.boot_flag)

    @property
    def root_partition(self) -> PartitionSpec:
        return next(
            p for p in self.partitions if p.filesystem == "ext4" and not p.boot_flag
        )

    @property
    def first_filesystem_sector(self) -> int:
        return min(p.start_sector for p in self.partitions if not p.is_reserved)

    @property
    def fixed_span_mb(self) -> int:
        """MiB consumed before the open-ended partition plus the backup GPT."""
        last_fixed = max(
            p.end_sector for p in self.partitions if p.end_sector is not None
        )
        sectors = last_fixed + 1 + GPT_BACKUP_SECTORS
        return math.ceil(sectors * SECTOR_SIZE / MIB)

    def all_placements(self) -> list[RawPlacement]:
        placements = list(self.raw_writes)
        if self.combined_write is not None:
            placements.append(self.combined_write)
        return placements

    def validate(self) -> None:
        """Check the layout invariants.

        Raises:
            LayoutError: If any invariant is violated.
        """
        if not self.partitions:
            raise LayoutError(f"Layout {self.name} has no partitions")

        previous: PartitionSpec | None = None
        for index, part in enumerate(self.partitions):
            if part.number != index + 1:
                raise LayoutError(
                    f"{self.name}: partition {part.name} has number {part.number}, "
                    f"expected {index + 1}"
                )
            if part.start_sector < FIRST_USABLE_SECTOR:
                raise LayoutError(
                    f"{self.name}: {part.name} starts inside the GPT header"
                )
            if part.end_sector is not None and part.end_sector < part.start_sector:
                raise LayoutError(f"{self.name}: {part.name} ends before it starts")
            if part.end_sector is None and index != len(self.partitions) - 1:
                raise LayoutError(
                    f"{self.name}: only the last partition may extend to end of device"
                )
            if previous is not None and previous.end_sector is not None:
                if part.start_sector <= previous.end_sector:
                    raise LayoutError(
                        f"{self.name}: {part.name} overlaps {previous.name}"
                    )
            if part.boot_flag and part.filesystem != "vfat":
                raise LayoutError(f"{self.name}: boot partition must be vfat")
            previous = part

        boot = [p for p in self.partitions if p.boot_flag]
        if len(boot) != 1:
            raise LayoutError(f"{self.name}: expected exactly one boot partition")
        roots = [
            p for p in self.partitions if p.filesystem == "ext4" and not p.boot_flag
        ]
        if len(roots) != 1:
            raise LayoutError(f"{self.name}: expected exactly one root partition")

        first_fs = self.first_filesystem_sector
        for placement in self.all_placements():
            if placement.start_sector >= first_fs:
                raise LayoutError(
                    f"{self.name}: raw write {placement.filename} at sector "
                    f"{placement.start_sector} lands in a filesystem partition"
                )
            for part in self.partitions:
                if part.contains(placement.start_sector) and not part.is_reserved:
                    raise LayoutError(
                        f"{self.name}: raw write {placement.filename} starts in "
                        f"{part.name}"
                    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "sector_size": SECTOR_SIZE,
            "partitions": [p.to_dict() for p in self.partitions],
            "raw_writes": [
                {"filename": r.filename, "start_sector": r.start_sector}
                for r in self.all_placements()
            ],
        }


_BOOT = PartitionSpec(
    number=4,
    name="boot",
    start_sector=32768,
    end_sector=557055,
    filesystem="vfat",
    type_code=TYPE_BOOT,
    boot_flag=True,
    label="BOOT",
)

_ROOTFS = PartitionSpec(
    number=5,
    name="rootfs",
    start_sector=557056,
    end_sector=None,
    filesystem="ext4",
    type_code=TYPE_LINUX,
    label="ROOTFS",
)

_RK3588_RAW_WRITES = (
    RawPlacement(IDBLOADER, 64),
    RawPlacement(UBOOT_ITB, 16384),
)

RK3588_GPT = PartitionLayout(
    name="rk3588-gpt",
    description="RK3588 five-partition GPT (loader1, loader2, trust, boot, rootfs)",
    partitions=(
        PartitionSpec(number=1, name="loader1", start_sector=64, end_sector=8063),
        PartitionSpec(number=2, name="loader2", start_sector=16384, end_sector=24575),
        PartitionSpec(number=3, name="trust", start_sector=24576, end_sector=32767),
        _BOOT,
        _ROOTFS,
    ),
    raw_writes=_RK3588_RAW_WRITES,
    combined_write=RawPlacement(UBOOT_COMBINED, 64),
)

RK3588_SIMPLE = PartitionLayout(
    name="rk3588-simple",
    description="RK3588 two-partition GPT (boot, rootfs)",
    partitions=(
        PartitionSpec(
            number=1,
            name=_BOOT.name,
            start_sector=_BOOT.start_sector,
            end_sector=_BOOT.end_sector,
            filesystem=_BOOT.filesystem,
            type_code=_BOOT.type_code,
            boot_flag=True,
            label=_BOOT.label,
        ),
        PartitionSpec(
            number=2,
            name=_ROOTFS.name,
            start_sector=_ROOTFS.start_sector,
            end_sector=None,
            filesystem=_ROOTFS.filesystem,
            type_code=_ROOTFS.type_code,
            label=_ROOTFS.label,
        ),
    ),
    raw_writes=_RK3588_RAW_WRITES,
    combined_write=RawPlacement(UBOOT_COMBINED, 64),
)

LAYOUTS: dict[str, PartitionLayout] = {
    RK3588_GPT.name: RK3588_GPT,
    RK3588_SIMPLE.name: RK3588_SIMPLE,
}

DEFAULT_LAYOUT = RK3588_GPT.name


def get_layout(name: str = DEFAULT_LAYOUT) -> PartitionLayout:
    """Look up and validate a layout by name.

    Raises:
        LayoutError: If the name is unknown or the layout is invalid.
    """
    try:
        layout = LAYOUTS[name]
    except KeyError:
        raise LayoutError(
            f"Unknown partition layout: {name} (available: {', '.join(sorted(LAYOUTS))})"
        ) from None
    layout.validate()
    return layout


def check_raw_write(layout: PartitionLayout, start_sector: int, size_bytes: int) -> None:
    """Check that a raw write stays clear of the GPT and filesystem partitions.

    Args:
        layout: Target layout.
        start_sector: First sector written.
        size_bytes: Number of bytes written.

    Raises:
        LayoutError: If the written range overlaps protected sectors.
    """
    if start_sector < FIRST_USABLE_SECTOR:
        raise LayoutError(
            f"Raw write at sector {start_sector} would overwrite the partition table"
        )
    sectors = max(1, math.ceil(size_bytes / SECTOR_SIZE))
    end_sector = start_sector + sectors - 1
    if end_sector >= layout.first_filesystem_sector:
        raise LayoutError(
            f"Raw write of {size_bytes} bytes at sector {start_sector} ends at "
            f"sector {end_sector}, past the start of the first filesystem "
            f"partition ({layout.first_filesystem_sector})"
        )


def compose_sgdisk_commands(layout: PartitionLayout, image_path: Path) -> list[list[str]]:
    """Compose the commands that write a layout onto an image file.

    Returns:
        Two commands: wipe existing tables, then create the new table.
    """
    create = ["sgdisk", "--clear"]
    for part in layout.partitions:
        end = "0" if part.end_sector is None else str(part.end_sector)
        create.append(f"--new={part.number}:{part.start_sector}:{end}")
        create.append(f"--change-name={part.number}:{part.name}")
        create.append(f"--typecode={part.number}:{part.type_code}")
        if part.boot_flag:
            create.append(
                f"--attributes={part.number}:set:{LEGACY_BOOT_ATTRIBUTE_BIT}"
            )
    create.append(str(image_path))
    return [["sgdisk", "--zap-all", str(image_path)], create]


__all__ = [
    "DEFAULT_LAYOUT",
    "FIRST_USABLE_SECTOR",
    "IDBLOADER",
    "LAYOUTS",
    "MIB",
    "PartitionLayout",
    "PartitionSpec",
    "RK3588_GPT",
    "RK3588_SIMPLE",
    "RawPlacement",
    "SECTOR_SIZE",
    "UBOOT_COMBINED",
    "UBOOT_ITB",
    "check_raw_write",
    "compose_sgdisk_commands",
    "get_layout",
]
