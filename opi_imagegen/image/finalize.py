"""Image finalization: compression, checksum sidecar and manifest.

This module handles:
- Compressing the finished image with xz
- Computing SHA-256 checksums and writing a sha256sum-format sidecar
- Generating a JSON build manifest next to the image
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

from opi_imagegen.errors import ImageAssemblyError
from opi_imagegen.types import ErrorCode

if TYPE_CHECKING:
    from opi_imagegen.process.executor import ProcessExecutor

logger = logging.getLogger(__name__)

HASH_CHUNK_SIZE = 64 * 1024  # 64KB


@dataclass
class FinalizedImage:
    """Finalized image artifacts.

    Attributes:
        image_path: Compressed image (or the raw image if not compressed).
        checksum_path: sha256sum-format sidecar file.
        sha256: Hex digest of image_path.
        size_bytes: Size of image_path.
    """

    image_path: Path
    checksum_path: Path
    sha256: str
    size_bytes: int


def compute_file_hash(file_path: Path, chunk_size: int = HASH_CHUNK_SIZE) -> str:
    """Compute SHA-256 hash of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks for streaming hash.

    Returns:
        SHA-256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def compose_compress_command(image_path: Path, level: int) -> list[str]:
    """Compose a multithreaded xz compression that replaces the input file."""
    return ["xz", "-T", "0", f"-{level}", "--force", str(image_path)]


def write_checksum(path: Path) -> tuple[Path, str]:
    """Write `<path>.sha256` in sha256sum format and return it with the digest."""
    digest = compute_file_hash(path)
    sidecar = path.with_name(path.name + ".sha256")
    sidecar.write_text(f"{digest}  {path.name}\n", encoding="utf-8")
    return sidecar, digest


def finalize_image(
    executor: ProcessExecutor,
    image_path: Path,
    compression_level: int = 9,
    compress: bool = True,
) -> FinalizedImage:
    """Compress an image and write its checksum sidecar.

    Args:
        executor: Process executor.
        image_path: Raw image file.
        compression_level: xz preset (0-9).
        compress: Skip compression when False.

    Returns:
        FinalizedImage describing the output.

    Raises:
        ImageAssemblyError: If compression fails.
    """
    final_path = image_path
    if compress:
        logger.info("Compressing %s (xz -%d)", image_path.name, compression_level)
        result = executor.run(
            compose_compress_command(image_path, compression_level),
            error_code=ErrorCode.IMAGE_ASSEMBLY_FAILED,
        )
        final_path = image_path.with_name(image_path.name + ".xz")
        if not result.success or not final_path.is_file():
            raise ImageAssemblyError(
                f"Failed to compress {image_path}", step="finalize", image=str(image_path)
            )

    checksum_path, digest = write_checksum(final_path)
    size_bytes = final_path.stat().st_size
    logger.info(
        "Image ready: %s (%d bytes, sha256: %s...)", final_path, size_bytes, digest[:16]
    )
    return FinalizedImage(
        image_path=final_path,
        checksum_path=checksum_path,
        sha256=digest,
        size_bytes=size_bytes,
    )


def generate_manifest(
    finalized: FinalizedImage,
    layout: dict[str, Any],
    root_uuid: str | None = None,
    build_inputs: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Generate an image manifest.

    Args:
        finalized: Finalized image.
        layout: Layout description (PartitionLayout.to_dict()).
        root_uuid: Root filesystem UUID.
        build_inputs: Optional description of the sources and settings used.

    Returns:
        Manifest dictionary suitable for JSON serialization.
    """
    manifest: dict[str, Any] = {
        "version": "1.0",
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "image": {
            "filename": finalized.image_path.name,
            "size_bytes": finalized.size_bytes,
            "sha256": finalized.sha256,
        },
        "layout": layout,
    }
    if root_uuid:
        manifest["root_uuid"] = root_uuid
    if build_inputs:
        manifest["build_inputs"] = build_inputs
    return manifest


def write_manifest(manifest: dict[str, Any], output_path: Path) -> Path:
    """Write manifest to a JSON file."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with output_path.open("w", encoding="utf-8") as f:
        json.dump(manifest, f, indent=2, sort_keys=True)
    logger.info("Wrote manifest to %s", output_path)
    return output_path


__all__ = [
    "FinalizedImage",
    "compose_compress_command",
    "compute_file_hash",
    "finalize_image",
    "generate_manifest",
    "write_checksum",
    "write_manifest",
]
