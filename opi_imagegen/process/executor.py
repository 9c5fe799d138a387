"""Process executor for external build tools.

This module handles:
- Executing a fully formed argument list with subprocess
- Streaming its output into the main build log
- Classifying the outcome (success, non-zero exit, signal, missing tool)
- Retrying non-zero exits with a fixed delay, polling for cancellation

Commands are always lists of tokens; callers build them with the
compose_* helpers found next to each stage. Nothing here is passed
through a shell.
"""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from opi_imagegen.errors import CommandError, ErrorContext, make_error
from opi_imagegen.logs import log_error_context
from opi_imagegen.process.cancel import CancellationToken
from opi_imagegen.types import ErrorCode, OutcomeKind

logger = logging.getLogger(__name__)
output_logger = logging.getLogger("opi_imagegen.process.output")

DEFAULT_RETRY_DELAY = 2.0

# Lines of output included with a failure in the error log
ERROR_TAIL_LINES = 20


@dataclass
class CommandResult:
    """Result of running one external command (after any retries).

    Attributes:
        command: The argument list that was executed.
        kind: How the last attempt finished.
        exit_code: Exit status of the last attempt, if it exited.
        signal: Signal number if the last attempt was killed by a signal.
        output: Captured combined output (empty unless requested).
        attempts: Number of attempts actually made.
        error: ErrorContext describing the failure, None on success.
    """

    command: list[str]
    kind: OutcomeKind
    exit_code: int | None = None
    signal: int | None = None
    output: str = ""
    attempts: int = 1
    error: ErrorContext | None = None
    tail: list[str] = field(default_factory=list, repr=False)

    @property
    def success(self) -> bool:
        return self.kind == OutcomeKind.SUCCESS

    @property
    def command_str(self) -> str:
        return shlex.join(self.command)

    def check(self) -> CommandResult:
        """Return self on success, raise CommandError otherwise."""
        if not self.success:
            raise CommandError(
                self.error
                or make_error(ErrorCode.UNKNOWN, f"Command failed: {self.command_str}")
            )
        return self


class ProcessExecutor:
    """Runs external commands synchronously on behalf of build stages."""

    def __init__(
        self,
        token: CancellationToken | None = None,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.token = token or CancellationToken()
        self.retry_delay = retry_delay
        self._sleep = sleep

    def run(
        self,
        command: Sequence[str | os.PathLike[str]],
        *,
        capture_output: bool = False,
        max_retries: int = 0,
        error_code: ErrorCode = ErrorCode.UNKNOWN,
        cwd: Path | None = None,
        env_override: dict[str, str] | None = None,
    ) -> CommandResult:
        """Execute a command, retrying non-zero exits.

        Args:
            command: Argument tokens; the first is the executable.
            capture_output: Return the combined output in the result.
            max_retries: Extra attempts allowed after a non-zero exit.
            error_code: Taxonomy code reported if the command fails.
            cwd: Working directory.
            env_override: Variables added to the inherited environment.

        Returns:
            CommandResult for the last attempt.

        Raises:
            ValueError: If the command is empty.
        """
        cmd = [os.fspath(part) for part in command]
        if not cmd:
            raise ValueError("Command must not be empty")
        cmd_str = shlex.join(cmd)

        env: dict[str, str] | None = None
        if env_override:
            env = dict(os.environ)
            env.update(env_override)

        attempt = 0
        while True:
            attempt += 1
            logger.info("$ %s", cmd_str)
            result = self._execute_once(cmd, capture_output, cwd, env)
            result.attempts = attempt

            if result.success:
                if attempt > 1:
                    logger.info("Command succeeded on attempt %d: %s", attempt, cmd_str)
                return result

            result.error = self._describe_failure(result, error_code)
            retryable = result.kind == OutcomeKind.EXITED and attempt <= max_retries
            if not retryable:
                self._log_failure(result)
                return result

            logger.warning(
                "Command failed (attempt %d/%d), retrying in %.1fs: %s",
                attempt,
                max_retries + 1,
                self.retry_delay,
                cmd_str,
            )
            if self.token.is_set:
                return self._cancelled(result)
            self._sleep(self.retry_delay)
            if self.token.is_set:
                return self._cancelled(result)

    def _execute_once(
        self,
        cmd: list[str],
        capture_output: bool,
        cwd: Path | None,
        env: dict[str, str] | None,
    ) -> CommandResult:
        captured: list[str] = []
        tail: list[str] = []
        try:
            with subprocess.Popen(
                cmd,
                cwd=cwd,
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                errors="replace",
            ) as proc:
                for line in proc.stdout or ():
                    line = line.rstrip("\n")
                    output_logger.debug(line)
                    tail.append(line)
                    if len(tail) > ERROR_TAIL_LINES:
                        tail.pop(0)
                    if capture_output:
                        captured.append(line)
                returncode = proc.wait()
        except FileNotFoundError:
            return CommandResult(command=cmd, kind=OutcomeKind.NOT_FOUND)
        except OSError as e:
            logger.error("Failed to execute %s: %s", cmd[0], e)
            return CommandResult(command=cmd, kind=OutcomeKind.NOT_FOUND)

        output = "\n".join(captured)
        if returncode == 0:
            return CommandResult(
                command=cmd, kind=OutcomeKind.SUCCESS, exit_code=0, output=output
            )
        if returncode < 0:
            return CommandResult(
                command=cmd,
                kind=OutcomeKind.SIGNALED,
                signal=-returncode,
                output=output,
                tail=tail,
            )
        return CommandResult(
            command=cmd,
            kind=OutcomeKind.EXITED,
            exit_code=returncode,
            output=output,
            tail=tail,
        )

    def _describe_failure(
        self, result: CommandResult, error_code: ErrorCode
    ) -> ErrorContext:
        cmd_str = result.command_str
        if result.kind == OutcomeKind.SIGNALED:
            return make_error(
                error_code,
                f"Command terminated by signal {result.signal}: {cmd_str}",
                origin=__name__,
                signal=result.signal,
                command=cmd_str,
            )
        if result.kind == OutcomeKind.NOT_FOUND:
            return make_error(
                ErrorCode.DEPENDENCY_MISSING,
                f"Executable not found: {result.command[0]}",
                origin=__name__,
                command=cmd_str,
            )
        return make_error(
            error_code,
            f"Command exited with code {result.exit_code}: {cmd_str}",
            origin=__name__,
            exit_code=result.exit_code,
            command=cmd_str,
        )

    def _log_failure(self, result: CommandResult) -> None:
        if result.error is not None:
            log_error_context(result.error, logger)
        if result.tail:
            logger.error("Last output of failed command:\n%s", "\n".join(result.tail))

    def _cancelled(self, result: CommandResult) -> CommandResult:
        logger.warning("Build interrupted, not retrying: %s", result.command_str)
        result.kind = OutcomeKind.CANCELLED
        result.error = make_error(
            ErrorCode.USER_CANCELLED,
            f"Cancelled before retrying: {result.command_str}",
            origin=__name__,
            command=result.command_str,
        )
        return result


def which(tool: str) -> str | None:
    """Return the absolute path of a host tool, or None if missing."""
    return shutil.which(tool)


def check_tools(tools: Sequence[str]) -> list[str]:
    """Return the host tools from `tools` that are not on PATH."""
    missing = [tool for tool in tools if which(tool) is None]
    for tool in missing:
        logger.warning("Required tool missing: %s", tool)
    return missing


__all__ = [
    "CommandResult",
    "DEFAULT_RETRY_DELAY",
    "ProcessExecutor",
    "check_tools",
    "which",
]
