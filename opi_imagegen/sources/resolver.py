"""Source resolution by ordered fallback.

This module handles:
- Trying source candidates in order with shallow clones
- Pinning the first successful candidate into the build settings
- Integrating hardware support patches when mainline was chosen

Resolution is first-success: the chain keeps no state beyond which
candidate won, and that is written into Settings once.
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from opi_imagegen.errors import (
    BuildCancelled,
    ErrorContext,
    ResolutionExhausted,
    make_error,
)
from opi_imagegen.sources.candidates import candidates_for
from opi_imagegen.types import Component, ErrorCode, OutcomeKind, SourceCandidate

if TYPE_CHECKING:
    from opi_imagegen.config import Settings
    from opi_imagegen.process.executor import ProcessExecutor

logger = logging.getLogger(__name__)

SHALLOW_DEPTH = 1

INTEGRATION_REPO_URL = "https://github.com/Joshua-Riek/ubuntu-rockchip.git"
INTEGRATION_PATCH_DIRS = {
    Component.KERNEL: Path("patches") / "linux",
    Component.UBOOT: Path("patches") / "u-boot",
}


@dataclass
class ResolutionOutcome:
    """Result of resolving one component's source.

    Attributes:
        component: The resolved component.
        candidate: The pinned candidate.
        source_dir: Checkout location.
        integration_applied: Whether mainline integration patches applied
            (None when the candidate is not mainline).
        integration_error: Soft failure recorded during integration.
    """

    component: Component
    candidate: SourceCandidate
    source_dir: Path
    integration_applied: bool | None = None
    integration_error: ErrorContext | None = None


def compose_clone_command(
    candidate: SourceCandidate, dest: Path, depth: int = SHALLOW_DEPTH
) -> list[str]:
    """Compose a depth-limited clone of a candidate's branch."""
    return [
        "git",
        "clone",
        "--depth",
        str(depth),
        "--branch",
        candidate.branch,
        candidate.locator,
        str(dest),
    ]


def _remove_checkout(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    elif path.exists() or path.is_symlink():
        path.unlink()


class SourceResolutionChain:
    """Ordered source candidates with first-success semantics."""

    def __init__(
        self, component: Component, candidates: Iterable[SourceCandidate]
    ) -> None:
        self.component = component
        self.candidates: list[SourceCandidate] = []
        seen: set[tuple[str, str]] = set()
        for candidate in candidates:
            key = (candidate.locator, candidate.branch)
            if key in seen:
                continue
            seen.add(key)
            self.candidates.append(candidate)

    def __iter__(self) -> Iterator[SourceCandidate]:
        return iter(self.candidates)

    def __len__(self) -> int:
        return len(self.candidates)

    def resolve(
        self,
        executor: ProcessExecutor,
        dest: Path,
        retries: int = 1,
    ) -> SourceCandidate:
        """Fetch candidates in order until one succeeds.

        Args:
            executor: Executor used for the clone commands.
            dest: Checkout directory (replaced on every attempt).
            retries: Retry budget for each candidate's clone.

        Returns:
            The first candidate that was fetched successfully.

        Raises:
            ResolutionExhausted: If every candidate failed.
            BuildCancelled: If cancellation was requested meanwhile.
        """
        dest.parent.mkdir(parents=True, exist_ok=True)
        tried: list[str] = []

        for candidate in self.candidates:
            if executor.token.is_set:
                raise BuildCancelled()

            _remove_checkout(dest)
            logger.info(
                "Fetching %s from %s (branch: %s)",
                candidate.label,
                candidate.locator,
                candidate.branch,
            )
            result = executor.run(
                compose_clone_command(candidate, dest),
                max_retries=retries,
                error_code=ErrorCode.NETWORK_FAILURE,
            )
            if result.success:
                logger.info("Resolved %s source: %s", self.component.value, candidate.label)
                return candidate

            if result.kind == OutcomeKind.CANCELLED or executor.token.is_set:
                _remove_checkout(dest)
                raise BuildCancelled()

            logger.warning(
                "Failed to fetch %s (%s@%s), trying next candidate",
                candidate.label,
                candidate.locator,
                candidate.branch,
            )
            tried.append(candidate.label)

        _remove_checkout(dest)
        raise ResolutionExhausted(self.component.value, tried)


def apply_integration_patches(
    executor: ProcessExecutor,
    component: Component,
    source_dir: Path,
    work_dir: Path,
    retries: int = 1,
) -> ErrorContext | None:
    """Fetch and apply the hardware integration patch set.

    Failure is soft: the returned ErrorContext is logged as a warning and
    the build continues without full hardware support. The patch
    checkout is removed once the patches have been applied.

    Returns:
        None if every patch applied, otherwise the failure.
    """
    checkout = work_dir / "ubuntu-rockchip"
    _remove_checkout(checkout)
    logger.info("Fetching hardware integration patches for mainline %s", component.value)

    error: ErrorContext | None
    try:
        clone = executor.run(
            [
                "git",
                "clone",
                "--depth",
                str(SHALLOW_DEPTH),
                INTEGRATION_REPO_URL,
                str(checkout),
            ],
            max_retries=retries,
            error_code=ErrorCode.NETWORK_FAILURE,
        )
        if not clone.success:
            error = clone.error or make_error(
                ErrorCode.NETWORK_FAILURE, "Integration fetch failed"
            )
        else:
            patch_dir = checkout / INTEGRATION_PATCH_DIRS[component]
            patches = sorted(patch_dir.glob("*.patch")) if patch_dir.is_dir() else []
            error = _apply_patches(executor, patches, source_dir)
            if not patches:
                error = make_error(
                    ErrorCode.CONFIGURATION_FAILED,
                    f"No integration patches found in {patch_dir}",
                )
    finally:
        _remove_checkout(checkout)

    if error is not None:
        logger.warning(
            "Hardware integration for mainline %s incomplete, continuing: %s",
            component.value,
            error.message,
        )
    else:
        logger.info("Hardware integration patches applied to %s", source_dir)
    return error


def _apply_patches(
    executor: ProcessExecutor, patches: list[Path], source_dir: Path
) -> ErrorContext | None:
    applied: list[str] = []
    for index, patch in enumerate(patches):
        result = executor.run(
            ["git", "apply", "--verbose", str(patch)],
            cwd=source_dir,
            error_code=ErrorCode.CONFIGURATION_FAILED,
        )
        if not result.success:
            remaining = [p.name for p in patches[index:]]
            logger.warning(
                "Integration patch %s failed; applied: %s; not applied: %s",
                patch.name,
                ", ".join(applied) or "none",
                ", ".join(remaining),
            )
            return make_error(
                ErrorCode.CONFIGURATION_FAILED,
                f"Integration patch {patch.name} did not apply "
                f"({len(applied)} of {len(patches)} applied)",
                applied=applied,
                remaining=remaining,
                cause=result.error.message if result.error else None,
            )
        applied.append(patch.name)
        logger.debug("Applied %s", patch.name)
    return None



def resolve_component(
    settings: Settings,
    component: Component,
    executor: ProcessExecutor,
    source_dir: Path | None = None,
) -> ResolutionOutcome:
    """Resolve, pin and (for mainline) integrate a component's source.

    Args:
        settings: Build settings; the winning URL+branch are pinned here.
        component: Component to resolve.
        executor: Process executor.
        source_dir: Checkout location (defaults from settings).

    Returns:
        ResolutionOutcome describing the pinned source.

    Raises:
        ResolutionExhausted: If no candidate could be fetched.
    """
    if source_dir is None:
        source_dir = (
            settings.kernel_source_dir
            if component == Component.KERNEL
            else settings.uboot_source_dir
        )

    chain = SourceResolutionChain(component, candidates_for(settings, component))
    candidate = chain.resolve(executor, source_dir, retries=settings.network_retries)
    settings.pin_source(component, candidate)
    logger.info(
        "Pinned %s source to %s@%s",
        component.value,
        candidate.locator,
        candidate.branch,
    )

    outcome = ResolutionOutcome(
        component=component, candidate=candidate, source_dir=source_dir
    )
    if candidate.is_mainline:
        error = apply_integration_patches(
            executor,
            component,
            source_dir,
            settings.build_dir,
            retries=settings.network_retries,
        )
        outcome.integration_applied = error is None
        outcome.integration_error = error
    return outcome


__all__ = [
    "INTEGRATION_REPO_URL",
    "ResolutionOutcome",
    "SourceResolutionChain",
    "apply_integration_patches",
    "compose_clone_command",
    "resolve_component",
]
