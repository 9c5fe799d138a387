"""Loop device and mount table helpers.

This module handles:
- Deriving partition device nodes for a partition-scanned loop device
- Recognizing whole loop device paths
- Reading /proc/mounts to find mounts below a directory
"""

import logging
import os
import re
from pathlib import Path

logger = logging.getLogger(__name__)

PROC_MOUNTS = Path("/proc/mounts")

_LOOP_PATTERN = re.compile(r"^/dev/loop\d+$")


def is_loop_device_path(device_path: str) -> bool:
    """Check if a path names a whole loop device (e.g. /dev/loop3)."""
    return bool(_LOOP_PATTERN.match(device_path))


def partition_node(device_path: str, number: int) -> str:
    """Return the device node for partition `number` of a block device.

    Loop, MMC and NVMe devices use a 'p' separator (/dev/loop0p1),
    SCSI-style names append the number directly (/dev/sda1).

    Args:
        device_path: Whole-device path.
        number: 1-based partition number.

    Returns:
        Partition device path.
    """
    if device_path[-1:].isdigit():
        return f"{device_path}p{number}"
    return f"{device_path}{number}"


def _read_mounts(mounts_file: Path) -> list[tuple[str, str]]:
    entries: list[tuple[str, str]] = []
    try:
        with open(mounts_file) as f:
            for line in f:
                parts = line.split()
                if len(parts) >= 2:
                    # /proc/mounts escapes spaces as \040
                    entries.append((parts[0], parts[1].replace("\\040", " ")))
    except OSError:
        logger.warning("Could not read %s, skipping mount check", mounts_file)
    return entries


def mounts_below(directory: Path, mounts_file: Path = PROC_MOUNTS) -> list[str]:
    """Return mount points at or below a directory, deepest first."""
    base = os.path.realpath(directory)
    found = [
        mount_point
        for _, mount_point in _read_mounts(mounts_file)
        if mount_point == base or mount_point.startswith(base.rstrip("/") + "/")
    ]
    return sorted(found, key=len, reverse=True)


__all__ = [
    "PROC_MOUNTS",
    "is_loop_device_path",
    "mounts_below",
    "partition_node",
]
