"""Disk image assembly: partition layouts, loop devices, bootloader and boot config."""

from opi_imagegen.image.bootcfg import (
    ENV_FILE_NAME,
    query_fs_uuid,
    render_boot_cmd,
    render_env_file,
    write_boot_config,
)
from opi_imagegen.image.bootloader import (
    FLASH_SCRIPT_NAME,
    BootloaderBlobs,
    compose_dd_command,
    render_flash_script,
    write_bootloader,
    write_flash_script,
)
from opi_imagegen.image.engine import (
    SAFETY_MARGIN_MB,
    ImageAssembler,
    ImageResult,
    measure_tree_mb,
    required_image_mb,
)
from opi_imagegen.image.finalize import FinalizedImage, compute_file_hash, finalize_image
from opi_imagegen.image.handle import ImageHandle, MountRecord
from opi_imagegen.image.layout import (
    LAYOUTS,
    SECTOR_SIZE,
    PartitionLayout,
    PartitionSpec,
    RawPlacement,
    check_raw_write,
    compose_sgdisk_commands,
    get_layout,
)

__all__ = [
    "BootloaderBlobs",
    "ENV_FILE_NAME",
    "FLASH_SCRIPT_NAME",
    "FinalizedImage",
    "ImageAssembler",
    "ImageHandle",
    "ImageResult",
    "LAYOUTS",
    "MountRecord",
    "PartitionLayout",
    "PartitionSpec",
    "RawPlacement",
    "SAFETY_MARGIN_MB",
    "SECTOR_SIZE",
    "check_raw_write",
    "compose_dd_command",
    "compose_sgdisk_commands",
    "compute_file_hash",
    "finalize_image",
    "get_layout",
    "measure_tree_mb",
    "query_fs_uuid",
    "render_boot_cmd",
    "render_env_file",
    "render_flash_script",
    "required_image_mb",
    "write_boot_config",
    "write_bootloader",
    "write_flash_script",
]
