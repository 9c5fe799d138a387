"""Configuration settings for opi_imagegen.

Uses pydantic-settings for config parsing from environment variables
and defaults, plus an optional YAML build file. Configuration precedence:
CLI flags > build file > env vars > defaults.

The resulting Settings instance is the build configuration for one
invocation. It is created once and passed explicitly to the pipeline and
every stage; only pin_source() changes it after startup.
"""

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from opi_imagegen.types import Component, SourceCandidate

DEFAULT_BUILD_DIR = Path("/tmp/opi5plus_build")

KERNEL_REPO_URL = "https://github.com/orangepi-xunlong/linux-orangepi.git"
KERNEL_BRANCH = "orange-pi-5.10-rk35xx"
UBOOT_REPO_URL = "https://github.com/orangepi-xunlong/u-boot-orangepi.git"
UBOOT_BRANCH = "v2017.09-rk3588"


def _default_jobs() -> int:
    """Return the default parallelism factor (online CPUs)."""
    return os.cpu_count() or 4


class Settings(BaseSettings):
    """Build configuration.

    Settings are loaded from environment variables with the OPI_IMG_ prefix.
    A YAML build file and CLI flags can override these at startup.
    """

    model_config = SettingsConfigDict(
        env_prefix="OPI_IMG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Target toolchain
    arch: str = Field(default="arm64", description="Target kernel architecture")
    cross_compile: str = Field(
        default="aarch64-linux-gnu-",
        description="Cross-toolchain prefix passed as CROSS_COMPILE",
    )
    jobs: int = Field(
        default_factory=_default_jobs,
        ge=1,
        description="Parallel make jobs",
    )

    # Paths
    build_dir: Path = Field(
        default=DEFAULT_BUILD_DIR,
        description="Working directory for source checkouts",
    )
    output_dir: Path = Field(
        default=DEFAULT_BUILD_DIR / "output",
        description="Directory for bootloader, boot artifacts and images",
    )
    rootfs_dir: Path = Field(
        default=DEFAULT_BUILD_DIR / "rootfs",
        description="Populated root filesystem tree",
    )
    mount_dir: Path = Field(
        default=Path("/mnt/opi_image"),
        description="Mount point used while populating the image",
    )

    # Sources
    kernel_git_url: str = Field(default=KERNEL_REPO_URL)
    kernel_branch: str = Field(default=KERNEL_BRANCH)
    kernel_version: str = Field(
        default="6.8",
        description="Mainline kernel tag (without 'v') used as last fallback",
    )
    kernel_defconfig: str = Field(default="rockchip_linux_defconfig")
    uboot_git_url: str = Field(default=UBOOT_REPO_URL)
    uboot_branch: str = Field(default=UBOOT_BRANCH)
    uboot_defconfig: str = Field(default="orangepi_5_plus_defconfig")

    # Image
    image_size_mb: int = Field(
        default=8192,
        ge=64,
        description="Total image size in MiB",
    )
    target_layout: str = Field(
        default="rk3588-gpt",
        description="Partition layout profile for the target board",
    )
    compression_level: int = Field(default=9, ge=0, le=9)
    image_name: str | None = Field(
        default=None,
        description="Image file name (generated from date if not set)",
    )

    # Root filesystem
    hostname: str = Field(default="orangepi5plus")
    ubuntu_codename: str = Field(default="jammy")
    ubuntu_mirror: str = Field(default="http://ports.ubuntu.com/ubuntu-ports")
    username: str = Field(
        default="orangepi",
        pattern=r"^[a-z_][a-z0-9_-]*$",
        description="Default login user created in the rootfs",
    )
    user_password: SecretStr = Field(default=SecretStr("orangepi"))
    root_password: SecretStr = Field(default=SecretStr("orangepi"))

    # Component selection
    build_kernel: bool = Field(default=True)
    build_uboot: bool = Field(default=True)
    build_rootfs: bool = Field(default=True)
    install_gpu_blobs: bool = Field(default=True)
    enable_vulkan: bool = Field(default=True)
    create_image: bool = Field(default=True)

    # Operational modes
    continue_on_error: bool = Field(
        default=False,
        description="Downgrade fatal stage failures to soft failures",
    )
    clean_build: bool = Field(default=True)
    offline: bool = Field(
        default=False,
        description="Offline mode - skip package index refresh and installs",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Console logging level",
    )
    log_file: Path = Field(default=Path("/tmp/opi5plus_build.log"))
    error_log_file: Path = Field(default=Path("/tmp/opi5plus_build_errors.log"))

    # Retry policy
    network_retries: int = Field(
        default=2,
        ge=0,
        le=10,
        description="Extra attempts for network-shaped commands",
    )
    retry_delay: float = Field(
        default=2.0,
        ge=0,
        description="Fixed delay between retry attempts (seconds)",
    )

    @model_validator(mode="after")
    def _check_source_pairs(self) -> "Settings":
        for component in Component:
            url, branch = self.source_for(component)
            if bool(url) != bool(branch):
                raise ValueError(
                    f"{component.value} git URL and branch must be set together"
                )
        return self

    def source_for(self, component: Component) -> tuple[str, str]:
        """Return the (url, branch) pair configured for a component."""
        if component == Component.KERNEL:
            return self.kernel_git_url, self.kernel_branch
        return self.uboot_git_url, self.uboot_branch

    def pin_source(self, component: Component, candidate: SourceCandidate) -> None:
        """Pin a resolved source so later stages do not re-resolve.

        URL and branch are always written together.
        """
        if component == Component.KERNEL:
            self.kernel_git_url = candidate.locator
            self.kernel_branch = candidate.branch
        else:
            self.uboot_git_url = candidate.locator
            self.uboot_branch = candidate.branch

    @property
    def kernel_source_dir(self) -> Path:
        return self.build_dir / "linux"

    @property
    def uboot_source_dir(self) -> Path:
        return self.build_dir / "u-boot"

    @property
    def boot_staging_dir(self) -> Path:
        return self.output_dir / "boot"

    @property
    def uboot_output_dir(self) -> Path:
        return self.output_dir / "uboot"

    def make_env(self) -> dict[str, str]:
        """Environment variables for cross-compiling external build tools."""
        return {"ARCH": self.arch, "CROSS_COMPILE": self.cross_compile}


def get_settings() -> Settings:
    """Get application settings loaded from the environment.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def load_build_file(path: Path) -> dict[str, Any]:
    """Load a YAML build file and return its contents as a dict.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed YAML content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        ValueError: If the document is not a mapping.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def load_settings(build_file: Path | None = None, **overrides: Any) -> Settings:
    """Build effective settings from env, an optional build file and overrides.

    Overrides whose value is None are ignored so unset CLI flags do not mask
    lower-precedence values.

    Args:
        build_file: Optional YAML build file.
        **overrides: Values taking precedence over everything else.

    Returns:
        Settings instance.
    """
    values: dict[str, Any] = {}
    if build_file is not None:
        values.update(load_build_file(build_file))
    values.update({k: v for k, v in overrides.items() if v is not None})
    return Settings(**values)


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = [
    "Settings",
    "get_settings",
    "load_build_file",
    "load_settings",
    "print_settings_json",
]
