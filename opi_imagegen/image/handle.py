"""Ownership record for an image under assembly.

An ImageHandle tracks the loop device bound to the image file and every
mount made on it, in order. teardown() releases them in strict reverse
order and is safe to call more than once; the pipeline's cleanup handler
and the assembler may both call it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from opi_imagegen.errors import ErrorContext, make_error
from opi_imagegen.image.devices import partition_node
from opi_imagegen.logs import log_error_context
from opi_imagegen.types import ErrorCode

if TYPE_CHECKING:
    from opi_imagegen.process.executor import ProcessExecutor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MountRecord:
    """One active mount made during assembly."""

    device: str
    mountpoint: Path


class ImageHandle:
    """Loop device and mounts owned by one image assembly."""

    def __init__(self, image_path: Path) -> None:
        self.image_path = image_path
        self.loop_device: str | None = None
        self._mounts: list[MountRecord] = []

    def __repr__(self) -> str:
        return (
            f"ImageHandle({self.image_path}, loop={self.loop_device}, "
            f"mounts={len(self._mounts)})"
        )

    @property
    def active_mounts(self) -> list[MountRecord]:
        """Mounts in the order they were made."""
        return list(self._mounts)

    @property
    def is_attached(self) -> bool:
        return self.loop_device is not None

    def attach(self, loop_device: str) -> None:
        if self.loop_device is not None:
            raise RuntimeError(f"{self!r} is already attached")
        self.loop_device = loop_device

    def partition_device(self, number: int) -> str:
        if self.loop_device is None:
            raise RuntimeError(f"{self!r} is not attached")
        return partition_node(self.loop_device, number)

    def add_mount(self, device: str, mountpoint: Path) -> None:
        """Record a mount; teardown unmounts in reverse order of these calls."""
        self._mounts.append(MountRecord(device=device, mountpoint=mountpoint))

    def teardown(self, executor: ProcessExecutor) -> list[ErrorContext]:
        """Unmount everything in reverse order, then detach the loop device.

        Individual failures are logged and collected; teardown always
        continues to the next resource.

        Args:
            executor: Process executor.

        Returns:
            Failures encountered (empty on a clean teardown).
        """
        failures: list[ErrorContext] = []

        while self._mounts:
            mount = self._mounts.pop()
            logger.info("Unmounting %s", mount.mountpoint)
            result = executor.run(
                ["umount", str(mount.mountpoint)],
                error_code=ErrorCode.IMAGE_ASSEMBLY_FAILED,
            )
            if result.success:
                continue
            logger.warning("Unmount of %s failed, retrying lazily", mount.mountpoint)
            lazy = executor.run(
                ["umount", "--lazy", str(mount.mountpoint)],
                error_code=ErrorCode.IMAGE_ASSEMBLY_FAILED,
            )
            if not lazy.success:
                failures.append(
                    lazy.error
                    or make_error(
                        ErrorCode.IMAGE_ASSEMBLY_FAILED,
                        f"Could not unmount {mount.mountpoint}",
                    )
                )

        if self.loop_device is not None:
            loop_device = self.loop_device
            self.loop_device = None
            logger.info("Detaching %s", loop_device)
            result = executor.run(
                ["losetup", "--detach", loop_device],
                error_code=ErrorCode.IMAGE_ASSEMBLY_FAILED,
            )
            if not result.success:
                failures.append(
                    result.error
                    or make_error(
                        ErrorCode.IMAGE_ASSEMBLY_FAILED,
                        f"Could not detach {loop_device}",
                    )
                )

        for failure in failures:
            log_error_context(failure, logger)
        return failures


__all__ = ["ImageHandle", "MountRecord"]
