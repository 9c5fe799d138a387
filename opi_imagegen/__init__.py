"""Orange Pi 5 Plus image generator - build orchestration for RK3588 disk images.

This package sequences the kernel, U-Boot, root filesystem and GPU stages of an
embedded-Linux build and assembles their outputs into a single flashable,
GPT-partitioned disk image.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
