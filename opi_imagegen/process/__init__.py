"""External process execution.

This module handles:
- Running external tools synchronously with logged output
- Outcome classification and retry policy
- The cancellation flag polled between retries and stages
"""

from opi_imagegen.process.cancel import CancellationToken
from opi_imagegen.process.executor import (
    CommandResult,
    ProcessExecutor,
    check_tools,
    which,
)

__all__ = [
    "CancellationToken",
    "CommandResult",
    "ProcessExecutor",
    "check_tools",
    "which",
]
