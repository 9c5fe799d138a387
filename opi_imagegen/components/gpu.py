"""Mali G610 GPU support for the root filesystem.

This module handles:
- Downloading Mali firmware and userspace driver blobs with httpx
- Retrying transient network failures with a fixed delay
- Writing the Vulkan ICD manifest when Vulkan is enabled

A missing required blob (the CSF firmware) fails the stage; optional
blobs only produce a soft failure.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import httpx

from opi_imagegen.errors import BuildCancelled, StageFailed, make_error
from opi_imagegen.types import ErrorCode, StageResult

if TYPE_CHECKING:
    from opi_imagegen.pipeline.context import BuildContext
    from opi_imagegen.process.cancel import CancellationToken

logger = logging.getLogger(__name__)

# Timeout for blob downloads (seconds)
DOWNLOAD_TIMEOUT = 300

# Chunk size for downloads (bytes)
DOWNLOAD_CHUNK_SIZE = 64 * 1024  # 64 KB

LINUX_FIRMWARE_RAW = (
    "https://git.kernel.org/pub/scm/linux/kernel/git/firmware/linux-firmware.git/plain"
)
LIBMALI_RAW = "https://github.com/tsukumijima/libmali-rockchip/raw/master"
LIBMALI_NAME = "libmali-valhall-g610-g13p0-wayland-gbm.so"


class DownloadError(Exception):
    """Raised when a blob download fails."""

    def __init__(self, message: str, code: str = "download_error") -> None:
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class GpuBlob:
    """A file fetched into the rootfs.

    Attributes:
        name: Short name used in logs.
        url: Download URL.
        destinations: Paths relative to the rootfs root.
        required: Whether failure aborts the stage.
    """

    name: str
    url: str
    destinations: tuple[str, ...]
    required: bool = True


MALI_FIRMWARE = GpuBlob(
    name="mali-csf-firmware",
    url=f"{LINUX_FIRMWARE_RAW}/arm/mali/arch10.8/mali_csffw.bin",
    destinations=(
        "lib/firmware/arm/mali/arch10.8/mali_csffw.bin",
        "lib/firmware/mali_csffw.bin",
    ),
    required=True,
)

LIBMALI = GpuBlob(
    name="libmali-g610",
    url=f"{LIBMALI_RAW}/lib/aarch64-linux-gnu/{LIBMALI_NAME}",
    destinations=(f"usr/lib/aarch64-linux-gnu/{LIBMALI_NAME}",),
    required=False,
)

GPU_BLOBS = (MALI_FIRMWARE, LIBMALI)

VULKAN_ICD_PATH = "etc/vulkan/icd.d/mali.json"


def download_blob(
    client: httpx.Client,
    url: str,
    dest_path: Path,
    timeout: float = DOWNLOAD_TIMEOUT,
) -> int:
    """Stream a URL to a file, replacing it atomically.

    Returns:
        Number of bytes written.

    Raises:
        DownloadError: If the download fails.
    """
    dest_path.parent.mkdir(parents=True, exist_ok=True)
    partial = dest_path.with_name(dest_path.name + ".part")
    total = 0
    try:
        with client.stream("GET", url, timeout=timeout) as response:
            response.raise_for_status()
            with partial.open("wb") as f:
                for chunk in response.iter_bytes(DOWNLOAD_CHUNK_SIZE):
                    f.write(chunk)
                    total += len(chunk)
    except httpx.HTTPStatusError as e:
        partial.unlink(missing_ok=True)
        raise DownloadError(
            f"HTTP error downloading {url}: {e.response.status_code}",
            code="http_error",
        ) from e
    except httpx.TimeoutException as e:
        partial.unlink(missing_ok=True)
        raise DownloadError(f"Timeout downloading {url}", code="timeout") from e
    except httpx.RequestError as e:
        partial.unlink(missing_ok=True)
        raise DownloadError(
            f"Network error downloading {url}: {e}", code="network_error"
        ) from e

    partial.replace(dest_path)
    return total


def fetch_with_retries(
    client: httpx.Client,
    blob: GpuBlob,
    dest_path: Path,
    retries: int,
    delay: float,
    token: CancellationToken,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """Download a blob, retrying up to `retries` extra times.

    Raises:
        DownloadError: If every attempt failed.
        BuildCancelled: If cancellation was requested between attempts.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return download_blob(client, blob.url, dest_path)
        except DownloadError as e:
            if attempt > retries:
                raise
            logger.warning(
                "Download of %s failed (attempt %d/%d), retrying in %.1fs: %s",
                blob.name,
                attempt,
                retries + 1,
                delay,
                e,
            )
        if token.is_set:
            raise BuildCancelled(f"Cancelled while downloading {blob.name}")
        sleep(delay)
        if token.is_set:
            raise BuildCancelled(f"Cancelled while downloading {blob.name}")


def render_vulkan_icd(library_path: str, api_version: str = "1.2.0") -> str:
    return json.dumps(
        {
            "file_format_version": "1.0.0",
            "ICD": {"library_path": library_path, "api_version": api_version},
        },
        indent=2,
    )


def install_blob(
    client: httpx.Client, blob: GpuBlob, rootfs_dir: Path, ctx: BuildContext
) -> None:
    first = rootfs_dir / blob.destinations[0]
    size = fetch_with_retries(
        client,
        blob,
        first,
        retries=ctx.settings.network_retries,
        delay=ctx.settings.retry_delay,
        token=ctx.token,
    )
    for extra in blob.destinations[1:]:
        target = rootfs_dir / extra
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(first.read_bytes())
    logger.info("Installed %s (%d bytes)", blob.name, size)


def install_gpu_support(
    ctx: BuildContext,
    client: httpx.Client | None = None,
    blobs: tuple[GpuBlob, ...] = GPU_BLOBS,
) -> StageResult:
    """Fetch GPU blobs into the rootfs and configure Vulkan.

    Args:
        ctx: Build context.
        client: Optional HTTPX client (created if not provided).
        blobs: Blobs to install.

    Returns:
        SUCCESS, or SOFT_FAIL if an optional part is missing.

    Raises:
        StageFailed: If a required blob could not be downloaded.
    """
    settings = ctx.settings
    rootfs_dir = settings.rootfs_dir
    if settings.offline:
        ctx.soft_fail(
            ErrorCode.NETWORK_FAILURE, "Offline mode, GPU blobs not installed"
        )
        return StageResult.SOFT_FAIL

    manage_client = client is None
    http_client = client if client is not None else httpx.Client(follow_redirects=True)
    result = StageResult.SUCCESS
    installed: set[str] = set()
    try:
        for blob in blobs:
            try:
                install_blob(http_client, blob, rootfs_dir, ctx)
            except DownloadError as e:
                if blob.required:
                    raise StageFailed(
                        make_error(
                            ErrorCode.NETWORK_FAILURE,
                            f"Required GPU blob {blob.name} unavailable: {e}",
                            url=blob.url,
                        )
                    ) from e
                ctx.soft_fail(
                    ErrorCode.NETWORK_FAILURE,
                    f"Optional GPU blob {blob.name} unavailable: {e}",
                    url=blob.url,
                )
                result = StageResult.SOFT_FAIL
                continue
            installed.add(blob.name)
    finally:
        if manage_client:
            http_client.close()

    if not settings.enable_vulkan:
        logger.info("Vulkan disabled, skipping ICD manifest")
    elif LIBMALI.name in installed:
        icd = rootfs_dir / VULKAN_ICD_PATH
        icd.parent.mkdir(parents=True, exist_ok=True)
        icd.write_text(render_vulkan_icd(LIBMALI_NAME), encoding="utf-8")
        logger.info("Vulkan ICD manifest written: %s", icd)
    else:
        ctx.soft_fail(
            ErrorCode.INSTALLATION_FAILED,
            "Vulkan requested but the Mali userspace driver is not installed",
        )
        result = StageResult.SOFT_FAIL
    return result


__all__ = [
    "DownloadError",
    "GPU_BLOBS",
    "GpuBlob",
    "LIBMALI",
    "MALI_FIRMWARE",
    "VULKAN_ICD_PATH",
    "download_blob",
    "fetch_with_retries",
    "install_gpu_support",
    "render_vulkan_icd",
]
