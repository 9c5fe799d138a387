"""Default source candidates for each component.

Candidates are listed in decreasing trust: the configured board source,
then vendor-family trees carrying RK3588 support, then mainline as the
least preferred but always available fallback.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from opi_imagegen.types import Component, SourceCandidate, SourceTrust

if TYPE_CHECKING:
    from opi_imagegen.config import Settings

VENDOR_KERNEL_URL = "https://github.com/Joshua-Riek/linux-rockchip.git"
VENDOR_KERNEL_BRANCHES = (
    "ubuntu-rockchip-6.8-opi5",
    "ubuntu-rockchip-6.8",
    "ubuntu-rockchip-6.1",
    "ubuntu-rockchip",
)
MAINLINE_KERNEL_URL = "https://github.com/torvalds/linux.git"

MAINLINE_UBOOT_URL = "https://github.com/u-boot/u-boot.git"
MAINLINE_UBOOT_BRANCH = "master"


def board_candidate(settings: Settings, component: Component) -> SourceCandidate:
    """Candidate for the URL and branch currently configured."""
    url, branch = settings.source_for(component)
    return SourceCandidate(
        locator=url,
        branch=branch,
        label=f"board {component.value} ({branch})",
        trust=SourceTrust.BOARD,
    )


def kernel_candidates(settings: Settings) -> list[SourceCandidate]:
    """Kernel candidates: board, vendor-family branches, mainline tag."""
    candidates = [board_candidate(settings, Component.KERNEL)]
    candidates.extend(
        SourceCandidate(
            locator=VENDOR_KERNEL_URL,
            branch=branch,
            label=f"vendor kernel ({branch})",
            trust=SourceTrust.VENDOR,
        )
        for branch in VENDOR_KERNEL_BRANCHES
    )
    candidates.append(
        SourceCandidate(
            locator=MAINLINE_KERNEL_URL,
            branch=f"v{settings.kernel_version}",
            label=f"mainline kernel (v{settings.kernel_version})",
            trust=SourceTrust.MAINLINE,
        )
    )
    return candidates


def uboot_candidates(settings: Settings) -> list[SourceCandidate]:
    """U-Boot candidates: board, then mainline master."""
    return [
        board_candidate(settings, Component.UBOOT),
        SourceCandidate(
            locator=MAINLINE_UBOOT_URL,
            branch=MAINLINE_UBOOT_BRANCH,
            label="mainline u-boot (master)",
            trust=SourceTrust.MAINLINE,
        ),
    ]


def candidates_for(settings: Settings, component: Component) -> list[SourceCandidate]:
    """Return the ordered fallback list for a component."""
    if component == Component.KERNEL:
        return kernel_candidates(settings)
    return uboot_candidates(settings)


__all__ = [
    "MAINLINE_KERNEL_URL",
    "MAINLINE_UBOOT_URL",
    "VENDOR_KERNEL_BRANCHES",
    "VENDOR_KERNEL_URL",
    "board_candidate",
    "candidates_for",
    "kernel_candidates",
    "uboot_candidates",
]
