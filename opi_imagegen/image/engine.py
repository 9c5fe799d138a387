"""Image assembly engine.

This module handles:
- Validating the configured image size against the populated rootfs
- Allocating, partitioning and attaching the image file
- Formatting, mounting and populating the filesystems
- Writing the bootloader and boot configuration
- Tearing everything down and finalizing the image

Steps run strictly in order and each depends on the previous one. Any
failure after the image file exists tears down the ImageHandle and
removes the partially written image before the error propagates.
"""

from __future__ import annotations

import logging
import math
import os
import shutil
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from opi_imagegen.errors import (
    ErrorContext,
    ImageAssemblyError,
    InsufficientImageSizeError,
)
from opi_imagegen.image.bootcfg import query_fs_uuid, write_boot_config
from opi_imagegen.image.bootloader import BootloaderBlobs, write_bootloader
from opi_imagegen.image.devices import is_loop_device_path, mounts_below
from opi_imagegen.image.finalize import (
    FinalizedImage,
    finalize_image,
    generate_manifest,
    write_manifest,
)
from opi_imagegen.image.handle import ImageHandle
from opi_imagegen.image.layout import (
    MIB,
    PartitionLayout,
    compose_sgdisk_commands,
    get_layout,
)
from opi_imagegen.types import BootArtifacts, ErrorCode

if TYPE_CHECKING:
    from opi_imagegen.config import Settings
    from opi_imagegen.process.executor import ProcessExecutor

logger = logging.getLogger(__name__)

# Headroom required on top of the measured rootfs size
SAFETY_MARGIN_MB = 512


@dataclass
class ImageResult:
    """Result of a successful image assembly.

    Attributes:
        image_path: Raw image path (replaced by the compressed file when
            compression is enabled).
        layout: Name of the partition layout used.
        rootfs_mb: Measured rootfs size in MiB.
        root_uuid: UUID of the root filesystem.
        finalized: Compressed image and checksum details.
        manifest_path: JSON manifest written next to the image.
        boot_files: Files written into the boot partition.
    """

    image_path: Path
    layout: str
    rootfs_mb: float
    root_uuid: str
    finalized: FinalizedImage | None = None
    manifest_path: Path | None = None
    boot_files: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "image_path": str(self.image_path),
            "layout": self.layout,
            "rootfs_mb": round(self.rootfs_mb, 1),
            "root_uuid": self.root_uuid,
            "boot_files": self.boot_files,
        }
        if self.finalized is not None:
            result["compressed_path"] = str(self.finalized.image_path)
            result["checksum_path"] = str(self.finalized.checksum_path)
            result["sha256"] = self.finalized.sha256
        if self.manifest_path is not None:
            result["manifest_path"] = str(self.manifest_path)
        return result


def measure_tree_mb(path: Path) -> float:
    """Sum the apparent sizes of everything below `path`, in MiB.

    Symlinks are counted as links, never followed.
    """
    total = 0
    for root, dirs, files in os.walk(path):
        for name in files + dirs:
            try:
                total += os.lstat(os.path.join(root, name)).st_size
            except FileNotFoundError:
                continue
    return total / MIB


def required_image_mb(rootfs_mb: float) -> int:
    """Smallest image size that can hold a rootfs of the given size."""
    return math.ceil(rootfs_mb) + SAFETY_MARGIN_MB


def default_image_name(settings: Settings) -> str:
    stamp = datetime.now().strftime("%Y%m%d")
    return f"orangepi5plus-ubuntu-{settings.ubuntu_codename}-{stamp}.img"


class ImageAssembler:
    """Builds one disk image from a rootfs tree, kernel artifacts and bootloader."""

    def __init__(
        self,
        settings: Settings,
        executor: ProcessExecutor,
        layout: PartitionLayout | None = None,
        on_handle: Callable[[ImageHandle | None], None] | None = None,
    ) -> None:
        self.settings = settings
        self.executor = executor
        self.layout = layout or get_layout(settings.target_layout)
        self._on_handle = on_handle

    @property
    def image_path(self) -> Path:
        name = self.settings.image_name or default_image_name(self.settings)
        return self.settings.output_dir / name

    def _publish(self, handle: ImageHandle | None) -> None:
        if self._on_handle is not None:
            self._on_handle(handle)

    def _run(self, command: list[str], step: str, message: str, **kwargs: Any) -> str:
        result = self.executor.run(
            command, error_code=ErrorCode.IMAGE_ASSEMBLY_FAILED, **kwargs
        )
        if not result.success:
            reason = result.error.message if result.error else result.kind.value
            raise ImageAssemblyError(
                f"{message}: {reason}",
                step=step,
                command=result.command_str,
            )
        return result.output

    def allocate(self, rootfs_dir: Path, image_path: Path) -> float:
        """Check the configured size and create the sparse image file.

        A stale image at `image_path` is removed first, so a failed size
        check never leaves an image behind.

        Returns:
            Measured rootfs size in MiB.

        Raises:
            InsufficientImageSizeError: If the image cannot hold the rootfs.
        """
        if image_path.exists():
            logger.info("Removing stale image %s", image_path)
            image_path.unlink()

        rootfs_mb = measure_tree_mb(rootfs_dir)
        required_mb = max(required_image_mb(rootfs_mb), self.layout.fixed_span_mb + 1)
        image_size_mb = self.settings.image_size_mb
        logger.info(
            "Rootfs is %.0f MB; image size %d MB (minimum %d MB)",
            rootfs_mb,
            image_size_mb,
            required_mb,
        )
        if image_size_mb < required_mb:
            raise InsufficientImageSizeError(image_size_mb, required_mb)

        image_path.parent.mkdir(parents=True, exist_ok=True)
        with image_path.open("wb") as f:
            f.truncate(image_size_mb * MIB)
        logger.info("Allocated %d MB sparse image %s", image_size_mb, image_path)
        return rootfs_mb

    def assemble(
        self,
        rootfs_dir: Path,
        artifacts: BootArtifacts,
        bootloader_dir: Path,
        compress: bool = True,
    ) -> ImageResult:
        """Run every assembly step and return the finished image.

        Args:
            rootfs_dir: Populated root filesystem tree.
            artifacts: Kernel image, DTB and optional initramfs to install.
            bootloader_dir: Directory holding the bootloader blobs.
            compress: Whether to xz-compress the finished image.

        Returns:
            ImageResult for the finished image.

        Raises:
            InsufficientImageSizeError: If the image size is too small.
            ImageAssemblyError: If any assembly step fails.
        """
        if not rootfs_dir.is_dir():
            raise ImageAssemblyError(
                f"Root filesystem not found: {rootfs_dir}", step="inputs"
            )
        missing = [
            p
            for p in (artifacts.kernel_image, artifacts.dtb, artifacts.initramfs)
            if p and not Path(p).is_file()
        ]
        if missing:
            raise ImageAssemblyError(
                f"Boot artifacts missing: {', '.join(missing)}", step="inputs"
            )
        blobs = BootloaderBlobs.discover(bootloader_dir, self.layout)

        image_path = self.image_path
        rootfs_mb = self.allocate(rootfs_dir, image_path)

        handle = ImageHandle(image_path)
        self._publish(handle)
        completed = False
        try:
            root_uuid, boot_files = self._build(handle, rootfs_dir, artifacts, blobs)
            completed = True
        finally:
            failures = self._teardown(handle)
            if not completed:
                self._discard(image_path)

        if failures:
            self._discard(image_path)
            raise ImageAssemblyError(
                f"Teardown failed: {failures[0].message}",
                step="teardown",
                failures=[f.to_dict() for f in failures],
            )

        result = ImageResult(
            image_path=image_path,
            layout=self.layout.name,
            rootfs_mb=rootfs_mb,
            root_uuid=root_uuid,
            boot_files=boot_files,
        )
        result.finalized = finalize_image(
            self.executor,
            image_path,
            compression_level=self.settings.compression_level,
            compress=compress,
        )
        manifest = generate_manifest(
            result.finalized,
            self.layout.to_dict(),
            root_uuid=root_uuid,
            build_inputs=self._build_inputs(),
        )
        result.manifest_path = write_manifest(
            manifest, image_path.with_suffix(".manifest.json")
        )
        return result

    def _build(
        self,
        handle: ImageHandle,
        rootfs_dir: Path,
        artifacts: BootArtifacts,
        blobs: BootloaderBlobs,
    ) -> tuple[str, list[str]]:
        layout = self.layout
        image_path = handle.image_path

        for command in compose_sgdisk_commands(layout, image_path):
            self._run(command, "partition", "Failed to write partition table")

        output = self._run(
            ["losetup", "--find", "--show", "--partscan", str(image_path)],
            "attach",
            "Failed to attach loop device",
            capture_output=True,
        )
        lines = output.strip().splitlines()
        loop_device = lines[-1].strip() if lines else ""
        if not is_loop_device_path(loop_device):
            raise ImageAssemblyError(
                f"losetup reported no usable loop device: {output.strip()!r}",
                step="attach",
            )
        handle.attach(loop_device)
        logger.info("Attached %s to %s", image_path.name, handle.loop_device)
        settle = self.executor.run(["udevadm", "settle"])
        if not settle.success:
            logger.warning("udevadm settle failed, partition nodes may lag")

        boot = layout.boot_partition
        root = layout.root_partition
        boot_node = handle.partition_device(boot.number)
        root_node = handle.partition_device(root.number)

        self._run(
            ["mkfs.vfat", "-F", "32", "-n", boot.label or "BOOT", boot_node],
            "format",
            "Failed to format boot partition",
        )
        self._run(
            ["mkfs.ext4", "-F", "-L", root.label or "ROOTFS", root_node],
            "format",
            "Failed to format root partition",
        )

        root_mount = self.settings.mount_dir
        boot_mount = root_mount / "boot"
        root_mount.mkdir(parents=True, exist_ok=True)
        self._run(["mount", root_node, str(root_mount)], "mount", "Failed to mount rootfs")
        handle.add_mount(root_node, root_mount)
        boot_mount.mkdir(parents=True, exist_ok=True)
        self._run(["mount", boot_node, str(boot_mount)], "mount", "Failed to mount boot")
        handle.add_mount(boot_node, boot_mount)

        logger.info("Copying root filesystem into image")
        self._run(
            [
                "rsync",
                "-aHAX",
                "--exclude=/boot/",
                f"{rootfs_dir}/",
                f"{root_mount}/",
            ],
            "populate",
            "Failed to copy root filesystem",
        )
        boot_files = self._install_boot_artifacts(artifacts, boot_mount)

        if handle.loop_device is None:
            raise ImageAssemblyError("Image is not attached", step="bootloader")
        write_bootloader(self.executor, blobs, handle.loop_device, layout)

        root_uuid = query_fs_uuid(self.executor, root_node)
        written = write_boot_config(
            self.executor,
            boot_mount,
            layout,
            root_uuid,
            dtb_name=Path(artifacts.dtb).name,
            kernel_name=Path(artifacts.kernel_image).name,
            initramfs_name=(
                Path(artifacts.initramfs).name if artifacts.initramfs else None
            ),
        )
        boot_files.extend(p.name for p in written)

        self._run(["sync"], "populate", "Failed to flush image writes")
        return root_uuid, boot_files

    def _install_boot_artifacts(
        self, artifacts: BootArtifacts, boot_mount: Path
    ) -> list[str]:
        sources = [artifacts.kernel_image, artifacts.dtb]
        if artifacts.initramfs:
            sources.append(artifacts.initramfs)
        sources.extend(artifacts.extra)

        installed: list[str] = []
        for source in sources:
            src = Path(source)
            try:
                shutil.copy2(src, boot_mount / src.name)
            except OSError as e:
                raise ImageAssemblyError(
                    f"Failed to copy {src.name} into boot partition: {e}",
                    step="populate",
                ) from e
            installed.append(src.name)
        logger.info("Installed boot artifacts: %s", ", ".join(installed))
        return installed

    def _teardown(self, handle: ImageHandle) -> list[ErrorContext]:
        failures = handle.teardown(self.executor)
        self._publish(None)
        leaked = mounts_below(self.settings.mount_dir)
        if leaked:
            logger.warning("Mounts still present after teardown: %s", ", ".join(leaked))
        return failures

    def _discard(self, image_path: Path) -> None:
        if image_path.exists():
            logger.info("Removing incomplete image %s", image_path)
            image_path.unlink()

    def _build_inputs(self) -> dict[str, Any]:
        s = self.settings
        return {
            "kernel": {"url": s.kernel_git_url, "branch": s.kernel_branch},
            "uboot": {"url": s.uboot_git_url, "branch": s.uboot_branch},
            "ubuntu_codename": s.ubuntu_codename,
            "image_size_mb": s.image_size_mb,
        }


__all__ = [
    "ImageAssembler",
    "ImageResult",
    "SAFETY_MARGIN_MB",
    "default_image_name",
    "measure_tree_mb",
    "required_image_mb",
]
