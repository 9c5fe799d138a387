"""Shared fixtures for opi_imagegen tests.

FakeExecutor stands in for ProcessExecutor so stages and image assembly
can be exercised without root privileges or host tools.
"""

import os
from collections.abc import Callable
from pathlib import Path

import pytest

from opi_imagegen.config import Settings
from opi_imagegen.errors import make_error
from opi_imagegen.pipeline.context import BuildContext
from opi_imagegen.process.cancel import CancellationToken
from opi_imagegen.process.executor import CommandResult
from opi_imagegen.types import ErrorCode, OutcomeKind

FAKE_LOOP_DEVICE = "/dev/loop7"
FAKE_ROOT_UUID = "0f1e2d3c-4b5a-6978-8796-a5b4c3d2e1f0"

Predicate = Callable[[list[str]], bool]


def _fake_xz(cmd: list[str]) -> str:
    source = Path(cmd[-1])
    Path(f"{source}.xz").write_bytes(b"compressed image")
    source.unlink(missing_ok=True)
    return ""


class FakeExecutor:
    """Records commands and returns canned results.

    Commands succeed unless a registered failure predicate matches.
    Handlers may produce captured output or side effects on disk.
    """

    def __init__(self, token: CancellationToken | None = None):
        self.token = token or CancellationToken()
        self.calls: list[list[str]] = []
        self.kwargs: list[dict] = []
        self._failures: list[tuple[Predicate, OutcomeKind, int]] = []
        self._handlers: list[tuple[Predicate, Callable[[list[str]], str | None]]] = []
        self.on(
            lambda c: c[0] == "losetup" and "--find" in c,
            lambda c: f"{FAKE_LOOP_DEVICE}\n",
        )
        self.on(lambda c: c[0] == "blkid", lambda c: FAKE_ROOT_UUID)
        self.on(lambda c: c[0] == "xz", _fake_xz)

    def on(self, predicate: Predicate, handler: Callable[[list[str]], str | None]):
        self._handlers.insert(0, (predicate, handler))

    def fail(
        self,
        predicate: Predicate,
        kind: OutcomeKind = OutcomeKind.EXITED,
        exit_code: int = 1,
    ):
        self._failures.append((predicate, kind, exit_code))

    def run(self, command, **kwargs) -> CommandResult:
        cmd = [os.fspath(part) for part in command]
        self.calls.append(cmd)
        self.kwargs.append(kwargs)

        for predicate, kind, exit_code in self._failures:
            if predicate(cmd):
                code = kwargs.get("error_code", ErrorCode.UNKNOWN)
                if kind == OutcomeKind.CANCELLED:
                    code = ErrorCode.USER_CANCELLED
                return CommandResult(
                    command=cmd,
                    kind=kind,
                    exit_code=exit_code if kind == OutcomeKind.EXITED else None,
                    error=make_error(code, f"fake failure: {' '.join(cmd)}"),
                )

        output = ""
        for predicate, handler in self._handlers:
            if predicate(cmd):
                output = handler(cmd) or ""
                break
        return CommandResult(
            command=cmd, kind=OutcomeKind.SUCCESS, exit_code=0, output=output
        )

    def programs(self) -> list[str]:
        return [c[0] for c in self.calls]

    def calls_to(self, program: str) -> list[list[str]]:
        return [c for c in self.calls if c[0] == program]


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings with every path inside tmp_path and no retry delay."""
    return Settings(
        build_dir=tmp_path / "build",
        output_dir=tmp_path / "output",
        rootfs_dir=tmp_path / "rootfs",
        mount_dir=tmp_path / "mnt",
        log_file=tmp_path / "logs" / "build.log",
        error_log_file=tmp_path / "logs" / "errors.log",
        jobs=2,
        network_retries=1,
        retry_delay=0,
    )


@pytest.fixture
def fake_executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def ctx(settings, fake_executor) -> BuildContext:
    """Build context wired to the fake executor."""
    return BuildContext.create(
        settings, token=fake_executor.token, executor=fake_executor
    )
