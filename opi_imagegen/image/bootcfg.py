"""U-Boot boot configuration written into the boot partition.

This module handles:
- Rendering the boot.cmd script source
- Rendering the opiEnv.txt environment file with the root UUID
- Querying the root filesystem UUID with blkid
- Compiling boot.cmd to boot.scr with mkimage
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

from opi_imagegen.errors import ImageAssemblyError
from opi_imagegen.image.layout import PartitionLayout
from opi_imagegen.types import ErrorCode

if TYPE_CHECKING:
    from opi_imagegen.process.executor import ProcessExecutor

logger = logging.getLogger(__name__)

BOOT_CMD_NAME = "boot.cmd"
BOOT_SCR_NAME = "boot.scr"
ENV_FILE_NAME = "opiEnv.txt"

SERIAL_CONSOLE = "ttyS2,1500000"
DISPLAY_CONSOLE = "tty1"
DEFAULT_CONSOLE = "both"

# opiEnv.txt console mode -> kernel console arguments
CONSOLE_ARGS = {
    "serial": f"console={SERIAL_CONSOLE}",
    "display": f"console={DISPLAY_CONSOLE}",
    "both": f"console={SERIAL_CONSOLE} console={DISPLAY_CONSOLE}",
}
DEFAULT_EXTRA_ARGS = "cma=256M"

BOOT_CMD_TEMPLATE = """\
# Boot script for Orange Pi 5 Plus ({layout})
# Compile with: mkimage -C none -A arm64 -T script -d boot.cmd boot.scr

setenv load_addr "0x9000000"
setenv rootdev ""
setenv rootfstype "ext4"
setenv console "{console}"
setenv verbosity "1"
setenv extraargs ""
setenv fdtfile "{dtb}"

if test -e ${{devtype}} ${{devnum}}:{boot_part} /{env_file}; then
    load ${{devtype}} ${{devnum}}:{boot_part} ${{load_addr}} /{env_file}
    env import -t ${{load_addr}} ${{filesize}}
fi

{console_block}

setenv bootargs "root=${{rootdev}} rootfstype=${{rootfstype}} rootwait rw ${{consoleargs}} loglevel=${{verbosity}} ${{extraargs}}"

load ${{devtype}} ${{devnum}}:{boot_part} ${{kernel_addr_r}} /{kernel}
load ${{devtype}} ${{devnum}}:{boot_part} ${{fdt_addr_r}} /${{fdtfile}}
fdt addr ${{fdt_addr_r}}
{initrd_block}
"""


def render_boot_cmd(
    layout: PartitionLayout,
    dtb_name: str,
    kernel_name: str = "Image",
    initramfs_name: str | None = None,
    console: str = DEFAULT_CONSOLE,
) -> str:
    """Render boot.cmd for the layout's boot partition.

    Args:
        layout: Partition layout (selects the boot partition number).
        dtb_name: DTB file name inside the boot partition.
        kernel_name: Kernel image file name.
        initramfs_name: Optional initramfs file name.
        console: Default console mode, one of `CONSOLE_ARGS`. The
            env file may override it.

    Returns:
        boot.cmd source text.
    """
    if console not in CONSOLE_ARGS:
        raise ValueError(f"Unknown console mode: {console}")
    console_block = "\n".join(
        [f'setenv consoleargs "{CONSOLE_ARGS[console]}"']
        + [
            f'if test "${{console}}" = "{mode}"; then '
            f'setenv consoleargs "{args}"; fi'
            for mode, args in CONSOLE_ARGS.items()
            if mode != console
        ]
    )

    if initramfs_name:
        initrd_block = (
            f"load ${{devtype}} ${{devnum}}:{layout.boot_partition.number} "
            f"${{ramdisk_addr_r}} /{initramfs_name}\n"
            "booti ${kernel_addr_r} ${ramdisk_addr_r}:${filesize} ${fdt_addr_r}"
        )
    else:
        initrd_block = "booti ${kernel_addr_r} - ${fdt_addr_r}"

    return BOOT_CMD_TEMPLATE.format(
        layout=layout.name,
        console=console,
        console_block=console_block,
        dtb=dtb_name,
        boot_part=layout.boot_partition.number,
        env_file=ENV_FILE_NAME,
        kernel=kernel_name,
        initrd_block=initrd_block,
    )


def render_env_file(
    root_uuid: str,
    dtb_name: str,
    console: str = DEFAULT_CONSOLE,
    extra_args: str = DEFAULT_EXTRA_ARGS,
    bootlogo: bool = False,
) -> str:
    """Render the U-Boot environment file imported by boot.scr."""
    values = {
        "verbosity": "1",
        "bootlogo": "true" if bootlogo else "false",
        "console": console,
        "extraargs": extra_args,
        "overlay_prefix": "rk3588",
        "fdtfile": dtb_name,
        "rootdev": f"UUID={root_uuid}",
        "rootfstype": "ext4",
    }
    return "".join(f"{key}={value}\n" for key, value in values.items())


def query_fs_uuid(executor: ProcessExecutor, device: str) -> str:
    """Read a filesystem UUID from a just-formatted partition.

    Raises:
        ImageAssemblyError: If blkid fails or reports no UUID.
    """
    result = executor.run(
        ["blkid", "-s", "UUID", "-o", "value", device],
        capture_output=True,
        error_code=ErrorCode.IMAGE_ASSEMBLY_FAILED,
    )
    uuid = result.output.strip() if result.success else ""
    if not uuid:
        raise ImageAssemblyError(
            f"Could not read filesystem UUID of {device}",
            step="boot-config",
            device=device,
        )
    return uuid


def write_boot_config(
    executor: ProcessExecutor,
    boot_dir: Path,
    layout: PartitionLayout,
    root_uuid: str,
    dtb_name: str,
    kernel_name: str = "Image",
    initramfs_name: str | None = None,
) -> list[Path]:
    """Write boot.cmd, boot.scr and opiEnv.txt into the boot partition.

    Returns:
        Paths of the files written.

    Raises:
        ImageAssemblyError: If boot.scr cannot be compiled.
    """
    boot_cmd = boot_dir / BOOT_CMD_NAME
    boot_scr = boot_dir / BOOT_SCR_NAME
    env_file = boot_dir / ENV_FILE_NAME

    boot_cmd.write_text(
        render_boot_cmd(layout, dtb_name, kernel_name, initramfs_name),
        encoding="utf-8",
    )
    env_file.write_text(render_env_file(root_uuid, dtb_name), encoding="utf-8")

    result = executor.run(
        [
            "mkimage",
            "-C",
            "none",
            "-A",
            "arm64",
            "-T",
            "script",
            "-d",
            str(boot_cmd),
            str(boot_scr),
        ],
        error_code=ErrorCode.IMAGE_ASSEMBLY_FAILED,
    )
    if not result.success:
        raise ImageAssemblyError(
            "Failed to compile boot script", step="boot-config", source=str(boot_cmd)
        )

    logger.info("Boot configuration written (root UUID %s)", root_uuid)
    return [boot_cmd, boot_scr, env_file]


__all__ = [
    "BOOT_CMD_NAME",
    "BOOT_SCR_NAME",
    "CONSOLE_ARGS",
    "ENV_FILE_NAME",
    "query_fs_uuid",
    "render_boot_cmd",
    "render_env_file",
    "write_boot_config",
]
