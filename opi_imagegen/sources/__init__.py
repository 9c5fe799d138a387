"""Source resolution for kernel and U-Boot trees."""

from opi_imagegen.sources.candidates import (
    candidates_for,
    kernel_candidates,
    uboot_candidates,
)
from opi_imagegen.sources.resolver import (
    ResolutionOutcome,
    SourceResolutionChain,
    apply_integration_patches,
    compose_clone_command,
    resolve_component,
)

__all__ = [
    "ResolutionOutcome",
    "SourceResolutionChain",
    "apply_integration_patches",
    "candidates_for",
    "compose_clone_command",
    "kernel_candidates",
    "resolve_component",
    "uboot_candidates",
]
