"""Ubuntu root filesystem stage.

This module handles:
- Bootstrapping an arm64 Ubuntu base with debootstrap
- Writing hostname, hosts, fstab, apt sources and the eth0 network unit
- Creating the default user and setting passwords inside a chroot
- Enabling network and SSH services
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import TYPE_CHECKING

from opi_imagegen.errors import StageFailed, make_error
from opi_imagegen.types import ErrorCode

if TYPE_CHECKING:
    from opi_imagegen.config import Settings
    from opi_imagegen.pipeline.context import BuildContext

logger = logging.getLogger(__name__)

BASE_PACKAGES = (
    "systemd",
    "udev",
    "kmod",
    "initramfs-tools",
    "openssh-server",
    "sudo",
    "nano",
    "ca-certificates",
    "network-manager",
    "wpasupplicant",
)

APT_COMPONENTS = "main restricted universe multiverse"
APT_SUITES = ("", "-updates", "-backports", "-security")

USER_GROUPS = ("sudo", "audio", "video", "plugdev")
ENABLED_SERVICES = ("systemd-networkd", "systemd-resolved", "ssh", "NetworkManager")

# Relative to the rootfs, removed again after chpasswd has read it
CHPASSWD_FILE = "tmp/opi-imagegen.chpasswd"


def compose_debootstrap_command(settings: Settings) -> list[str]:
    """Compose the debootstrap call for the configured release and mirror."""
    return [
        "debootstrap",
        f"--arch={settings.arch}",
        "--variant=minbase",
        "--components=main,universe",
        f"--include={','.join(BASE_PACKAGES)}",
        settings.ubuntu_codename,
        str(settings.rootfs_dir),
        settings.ubuntu_mirror,
    ]


def render_sources_list(mirror: str, codename: str) -> str:
    return "".join(
        f"deb {mirror} {codename}{suite} {APT_COMPONENTS}\n" for suite in APT_SUITES
    )


def render_hosts(hostname: str) -> str:
    return (
        "127.0.0.1\tlocalhost\n"
        f"127.0.1.1\t{hostname}\n"
        "::1\t\tlocalhost ip6-localhost ip6-loopback\n"
    )


def render_fstab() -> str:
    return (
        "# <file system>\t<mount point>\t<type>\t<options>\t<dump>\t<pass>\n"
        "LABEL=ROOTFS\t/\text4\tdefaults,noatime\t0\t1\n"
        "LABEL=BOOT\t/boot\tvfat\tdefaults\t0\t2\n"
    )


def render_eth0_network() -> str:
    return "[Match]\nName=eth0\n\n[Network]\nDHCP=yes\n"


def write_system_files(settings: Settings) -> list[Path]:
    """Write the host identity, package sources and network unit."""
    root = settings.rootfs_dir
    files = {
        root / "etc" / "hostname": f"{settings.hostname}\n",
        root / "etc" / "hosts": render_hosts(settings.hostname),
        root / "etc" / "fstab": render_fstab(),
        root / "etc" / "apt" / "sources.list": render_sources_list(
            settings.ubuntu_mirror, settings.ubuntu_codename
        ),
        root / "etc" / "systemd" / "network" / "eth0.network": render_eth0_network(),
    }
    for path, content in files.items():
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        logger.debug("Wrote %s", path)
    return list(files)


def user_exists(root: Path, username: str) -> bool:
    """Check the rootfs passwd database for `username`."""
    passwd = root / "etc" / "passwd"
    if not passwd.is_file():
        return False
    return any(
        line.split(":", 1)[0] == username
        for line in passwd.read_text(encoding="utf-8").splitlines()
    )


def configure_accounts(ctx: BuildContext) -> None:
    """Create the login user and set the user and root passwords.

    Passwords are handed to chpasswd through a file inside the rootfs
    so they never appear on a command line or in the build log.

    Raises:
        StageFailed: With installation_failed if a chroot command fails.
    """
    settings = ctx.settings
    root = settings.rootfs_dir
    username = settings.username

    if user_exists(root, username):
        logger.info("User %s already exists", username)
    else:
        logger.info("Creating user %s", username)
        ctx.run_checked(
            [
                "chroot",
                str(root),
                "useradd",
                "-m",
                "-s",
                "/bin/bash",
                "-G",
                ",".join(USER_GROUPS),
                username,
            ],
            ErrorCode.INSTALLATION_FAILED,
            f"Failed to create user {username}",
        )

    credentials = root / CHPASSWD_FILE
    credentials.parent.mkdir(parents=True, exist_ok=True)
    try:
        credentials.touch(mode=0o600)
        credentials.write_text(
            f"{username}:{settings.user_password.get_secret_value()}\n"
            f"root:{settings.root_password.get_secret_value()}\n",
            encoding="utf-8",
        )
        ctx.run_checked(
            ["chroot", str(root), "sh", "-c", f"chpasswd < /{CHPASSWD_FILE}"],
            ErrorCode.INSTALLATION_FAILED,
            "Failed to set passwords",
        )
    finally:
        credentials.unlink(missing_ok=True)


def enable_services(ctx: BuildContext) -> None:
    root = str(ctx.settings.rootfs_dir)
    for service in ENABLED_SERVICES:
        ctx.run_checked(
            ["chroot", root, "systemctl", "enable", service],
            ErrorCode.INSTALLATION_FAILED,
            f"Failed to enable {service}",
        )


def build_rootfs(ctx: BuildContext) -> None:
    """Bootstrap the base system, configure it and create the login user."""
    settings = ctx.settings
    rootfs_dir = settings.rootfs_dir

    if settings.clean_build and rootfs_dir.exists():
        logger.info("Removing previous rootfs %s", rootfs_dir)
        shutil.rmtree(rootfs_dir)
    rootfs_dir.mkdir(parents=True, exist_ok=True)

    logger.info(
        "Bootstrapping Ubuntu %s (%s) into %s",
        settings.ubuntu_codename,
        settings.arch,
        rootfs_dir,
    )
    ctx.run_checked(
        compose_debootstrap_command(settings),
        ErrorCode.NETWORK_FAILURE,
        "debootstrap failed",
        max_retries=settings.network_retries,
    )

    try:
        write_system_files(settings)
    except OSError as e:
        raise StageFailed(
            make_error(
                ErrorCode.INSTALLATION_FAILED,
                f"Failed to configure rootfs: {e}",
            )
        ) from e

    configure_accounts(ctx)
    enable_services(ctx)
    logger.info("Rootfs configured for user %s", settings.username)


__all__ = [
    "BASE_PACKAGES",
    "ENABLED_SERVICES",
    "USER_GROUPS",
    "build_rootfs",
    "compose_debootstrap_command",
    "configure_accounts",
    "enable_services",
    "render_eth0_network",
    "render_sources_list",
    "user_exists",
    "write_system_files",
]
