"""Component stages: kernel, U-Boot, root filesystem and GPU support."""

from opi_imagegen.components import gpu, kernel, rootfs, uboot

__all__ = ["gpu", "kernel", "rootfs", "uboot"]
