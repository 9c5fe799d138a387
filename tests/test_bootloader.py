"""Tests for image/bootloader.py and image/bootcfg.py."""

import os
import re
import shlex

import pytest
from conftest import FAKE_ROOT_UUID

from opi_imagegen.errors import ImageAssemblyError, LayoutError
from opi_imagegen.image.bootcfg import (
    ENV_FILE_NAME,
    SERIAL_CONSOLE,
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
from opi_imagegen.image.layout import (
    IDBLOADER,
    RK3588_GPT,
    RK3588_SIMPLE,
    UBOOT_COMBINED,
    UBOOT_ITB,
)


@pytest.fixture
def blob_dir(tmp_path):
    directory = tmp_path / "uboot"
    directory.mkdir()
    return directory


def write_pair(directory):
    (directory / IDBLOADER).write_bytes(b"\0" * 1024)
    (directory / UBOOT_ITB).write_bytes(b"\0" * 4096)


class TestBootloaderBlobs:
    """Tests for blob discovery."""

    def test_combined_preferred(self, blob_dir):
        """A combined image wins over the split pair."""
        write_pair(blob_dir)
        (blob_dir / UBOOT_COMBINED).write_bytes(b"\0" * 8192)

        blobs = BootloaderBlobs.discover(blob_dir, RK3588_GPT)

        assert blobs.combined
        assert blobs.placements[0][0].name == UBOOT_COMBINED
        assert blobs.placements[0][1].start_sector == 64

    def test_split_pair(self, blob_dir):
        """The idbloader + itb pair is used when no combined image exists."""
        write_pair(blob_dir)

        blobs = BootloaderBlobs.discover(blob_dir, RK3588_GPT)

        assert not blobs.combined
        assert [(b.name, p.start_sector) for b, p in blobs.placements] == [
            (IDBLOADER, 64),
            (UBOOT_ITB, 16384),
        ]

    def test_incomplete_pair(self, blob_dir):
        """Half a pair is not enough."""
        (blob_dir / IDBLOADER).write_bytes(b"\0")

        with pytest.raises(ImageAssemblyError) as exc_info:
            BootloaderBlobs.discover(blob_dir, RK3588_GPT)
        assert exc_info.value.step == "bootloader"
        assert UBOOT_ITB in str(exc_info.value)


class TestWriteBootloader:
    """Tests for raw sector writes."""

    def test_dd_command(self, tmp_path):
        """dd writes whole sectors without truncating the target."""
        cmd = compose_dd_command(tmp_path / "idbloader.img", "/dev/loop7", 64)

        assert cmd == [
            "dd",
            f"if={tmp_path / 'idbloader.img'}",
            "of=/dev/loop7",
            "bs=512",
            "seek=64",
            "conv=notrunc,fsync",
        ]

    def test_writes_each_blob(self, blob_dir, fake_executor):
        """Each blob is written once at its sector."""
        write_pair(blob_dir)
        blobs = BootloaderBlobs.discover(blob_dir, RK3588_GPT)

        write_bootloader(fake_executor, blobs, "/dev/loop7", RK3588_GPT)

        seeks = [c[4] for c in fake_executor.calls_to("dd")]
        assert seeks == ["seek=64", "seek=16384"]
        assert all("max_retries" not in kw for kw in fake_executor.kwargs)

    def test_oversized_blob_rejected(self, blob_dir, fake_executor):
        """A blob that would reach the boot partition is never written."""
        write_pair(blob_dir)
        with (blob_dir / UBOOT_ITB).open("wb") as f:
            f.truncate((32768 - 16384) * 512 + 1)
        blobs = BootloaderBlobs.discover(blob_dir, RK3588_GPT)

        with pytest.raises(LayoutError):
            write_bootloader(fake_executor, blobs, "/dev/loop7", RK3588_GPT)
        assert len(fake_executor.calls_to("dd")) == 1

    def test_dd_failure(self, blob_dir, fake_executor):
        """A failed write is an image assembly error."""
        write_pair(blob_dir)
        fake_executor.fail(lambda c: c[0] == "dd")
        blobs = BootloaderBlobs.discover(blob_dir, RK3588_GPT)

        with pytest.raises(ImageAssemblyError, match=IDBLOADER):
            write_bootloader(fake_executor, blobs, "/dev/loop7", RK3588_GPT)


class TestFlashScript:
    """Tests for the flash helper script."""

    def test_render(self):
        """The script validates its argument and replays the raw writes."""
        script = render_flash_script(RK3588_GPT)

        assert script.startswith("#!/bin/bash\n")
        assert "set -euo pipefail" in script
        assert 'if [ "$#" -ne 1 ]; then' in script
        assert 'if [ ! -b "$DEVICE" ]; then' in script
        assert f'"$SCRIPT_DIR/{UBOOT_COMBINED}"' in script
        assert "seek=64" in script
        assert "seek=16384" in script
        assert "\nsync\n" in script

    def test_write_executable(self, blob_dir):
        """The script is written next to the blobs and is executable."""
        script = write_flash_script(blob_dir, RK3588_GPT)

        assert script == blob_dir / FLASH_SCRIPT_NAME
        assert os.access(script, os.X_OK)


ONE_LINE_IF = re.compile(r'if test "\$\{(\w+)\}" = "(\w+)"; then (.+); fi$')


def effective_bootargs(script, env_text):
    """Evaluate the setenv lines of boot.cmd after importing `env_text`."""
    env = {}
    for line in script.splitlines():
        line = line.strip()
        match = ONE_LINE_IF.match(line)
        if match:
            name, value, line = match.groups()
            if env.get(name) != value:
                continue
        if line.startswith("env import"):
            env.update(entry.split("=", 1) for entry in env_text.splitlines())
        elif line.startswith("setenv "):
            _, key, value = shlex.split(line)
            env[key] = re.sub(
                r"\$\{(\w+)\}", lambda m: env.get(m.group(1), ""), value
            )
    return env["bootargs"]


class TestBootConfig:
    """Tests for boot.cmd, the env file and boot.scr."""

    def test_boot_cmd_uses_boot_partition(self):
        """boot.cmd loads from the layout's boot partition number."""
        gpt = render_boot_cmd(RK3588_GPT, "rk3588-orangepi-5-plus.dtb")
        simple = render_boot_cmd(RK3588_SIMPLE, "rk3588-orangepi-5-plus.dtb")

        assert "${devtype} ${devnum}:4 ${kernel_addr_r} /Image" in gpt
        assert "${devtype} ${devnum}:1 ${kernel_addr_r} /Image" in simple
        assert f"/{ENV_FILE_NAME}" in gpt
        assert 'setenv fdtfile "rk3588-orangepi-5-plus.dtb"' in gpt
        assert "booti ${kernel_addr_r} - ${fdt_addr_r}" in gpt

    def test_boot_cmd_with_initramfs(self):
        """An initramfs is loaded and passed to booti."""
        script = render_boot_cmd(RK3588_GPT, "board.dtb", initramfs_name="initrd.img")

        assert "${ramdisk_addr_r} /initrd.img" in script
        assert "booti ${kernel_addr_r} ${ramdisk_addr_r}:${filesize}" in script

    def test_env_file(self):
        """The env file references the root filesystem by UUID."""
        env = render_env_file("1234-abcd", "board.dtb").splitlines()

        assert "rootdev=UUID=1234-abcd" in env
        assert "fdtfile=board.dtb" in env
        assert "rootfstype=ext4" in env

    def test_console_both(self):
        """The default env file puts the kernel on serial and HDMI."""
        script = render_boot_cmd(RK3588_GPT, "board.dtb")
        env = render_env_file(FAKE_ROOT_UUID, "board.dtb")

        bootargs = effective_bootargs(script, env)

        assert f"console={SERIAL_CONSOLE} console=tty1 " in bootargs
        assert "console=both" not in bootargs
        assert f"root=UUID={FAKE_ROOT_UUID} " in bootargs
        assert bootargs.endswith("cma=256M")

    @pytest.mark.parametrize(
        "mode, expected, absent",
        [
            ("serial", f"console={SERIAL_CONSOLE}", "console=tty1"),
            ("display", "console=tty1", "console=ttyS2"),
        ],
    )
    def test_console_single(self, mode, expected, absent):
        """A serial or display env setting selects one console."""
        script = render_boot_cmd(RK3588_GPT, "board.dtb")
        env = render_env_file(FAKE_ROOT_UUID, "board.dtb", console=mode)

        bootargs = effective_bootargs(script, env)

        assert expected in bootargs
        assert absent not in bootargs

    def test_console_without_env_file(self):
        """boot.cmd alone falls back to its default console mode."""
        script = render_boot_cmd(RK3588_GPT, "board.dtb", console="serial")

        bootargs = effective_bootargs(script, "")

        assert f"console={SERIAL_CONSOLE}" in bootargs
        assert "console=tty1" not in bootargs

    def test_unknown_console_mode(self):
        """Only known console modes can be rendered."""
        with pytest.raises(ValueError):
            render_boot_cmd(RK3588_GPT, "board.dtb", console="hdmi")

    def test_query_uuid(self, fake_executor):
        """The UUID comes from blkid."""
        assert query_fs_uuid(fake_executor, "/dev/loop7p5") == FAKE_ROOT_UUID
        assert fake_executor.calls[0][-1] == "/dev/loop7p5"

    def test_query_uuid_empty(self, fake_executor):
        """No UUID reported is an assembly error."""
        fake_executor.on(lambda c: c[0] == "blkid", lambda c: "")

        with pytest.raises(ImageAssemblyError) as exc_info:
            query_fs_uuid(fake_executor, "/dev/loop7p5")
        assert exc_info.value.step == "boot-config"

    def test_write_boot_config(self, tmp_path, fake_executor):
        """boot.cmd and the env file are written and boot.scr compiled."""
        written = write_boot_config(
            fake_executor, tmp_path, RK3588_GPT, "1234-abcd", "board.dtb"
        )

        assert [p.name for p in written] == ["boot.cmd", "boot.scr", ENV_FILE_NAME]
        assert "rootdev=UUID=1234-abcd" in (tmp_path / ENV_FILE_NAME).read_text()
        mkimage = fake_executor.calls_to("mkimage")[0]
        assert mkimage[-2:] == [str(tmp_path / "boot.cmd"), str(tmp_path / "boot.scr")]
        assert "script" in mkimage

    def test_mkimage_failure(self, tmp_path, fake_executor):
        """A failing mkimage is an assembly error."""
        fake_executor.fail(lambda c: c[0] == "mkimage")

        with pytest.raises(ImageAssemblyError, match="boot script"):
            write_boot_config(
                fake_executor, tmp_path, RK3588_GPT, "1234-abcd", "board.dtb"
            )
