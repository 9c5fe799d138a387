"""Shared type definitions for opi_imagegen.

This module contains enums and small dataclasses shared across subpackages
to avoid circular imports.
"""

from dataclasses import dataclass, field
from enum import Enum


class ErrorCode(str, Enum):
    """Failure taxonomy surfaced in logs, reports and CLI output."""

    NETWORK_FAILURE = "network_failure"
    INSUFFICIENT_SPACE = "insufficient_space"
    DEPENDENCY_MISSING = "dependency_missing"
    COMPILATION_FAILED = "compilation_failed"
    CONFIGURATION_FAILED = "configuration_failed"
    INSTALLATION_FAILED = "installation_failed"
    IMAGE_ASSEMBLY_FAILED = "image_assembly_failed"
    USER_CANCELLED = "user_cancelled"
    UNKNOWN = "unknown"


class OutcomeKind(str, Enum):
    """How an external command finished."""

    SUCCESS = "success"
    EXITED = "exited"
    SIGNALED = "signaled"
    NOT_FOUND = "not_found"
    CANCELLED = "cancelled"


class StageResult(str, Enum):
    """Result of a single pipeline stage."""

    SUCCESS = "success"
    SOFT_FAIL = "soft_fail"
    FATAL_FAIL = "fatal_fail"


class PipelineState(str, Enum):
    """State of a pipeline run."""

    NOT_STARTED = "not_started"
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"


class Component(str, Enum):
    """Components whose sources are resolved from git."""

    KERNEL = "kernel"
    UBOOT = "uboot"


class SourceTrust(str, Enum):
    """Trust tier of a source candidate, most trusted first."""

    BOARD = "board"
    VENDOR = "vendor"
    MAINLINE = "mainline"


@dataclass(frozen=True)
class SourceCandidate:
    """One fallback option for fetching a component's source.

    Attributes:
        locator: Git repository URL.
        branch: Branch or tag to check out.
        label: Human-readable label used in logs.
        trust: Trust tier; MAINLINE candidates need hardware integration.
    """

    locator: str
    branch: str
    label: str
    trust: SourceTrust = SourceTrust.BOARD

    @property
    def is_mainline(self) -> bool:
        return self.trust == SourceTrust.MAINLINE


@dataclass
class BootArtifacts:
    """Kernel-side files copied into the boot partition."""

    kernel_image: str
    dtb: str
    initramfs: str | None = None
    extra: list[str] = field(default_factory=list)


__all__ = [
    "BootArtifacts",
    "Component",
    "ErrorCode",
    "OutcomeKind",
    "PipelineState",
    "SourceCandidate",
    "SourceTrust",
    "StageResult",
]
