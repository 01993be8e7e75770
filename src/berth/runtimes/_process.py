"""Process-execution primitive used by the CLI backends.

``run_command`` is the only place berth starts a subprocess. Adapters take
a ``runner`` callable with the same signature so tests can substitute a
fake without patching ``subprocess``.
"""

from __future__ import annotations

import subprocess
import time
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

from berth.codec.shell import join_command, to_argv
from berth.core.errors import BackendError, Timeout
from berth.core.logging import get_logger

logger = get_logger(__name__)

_ENV_FLAGS = frozenset({"--env", "-e"})


def redact_argv(argv: Sequence[str]) -> str:
    """Render argv for logs with environment values masked."""
    shown: list[str] = []
    previous = ""
    in_env = False
    for part in argv:
        if (previous in _ENV_FLAGS or in_env) and "=" in part:
            part = part.split("=", 1)[0] + "=***"
        else:
            in_env = part == "env"
        shown.append(part)
        previous = part
    return join_command(shown)


@dataclass(frozen=True)
class CommandResult:
    """Exit code and decoded output of a finished process."""

    argv: tuple[str, ...]
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def command_line(self) -> str:
        return redact_argv(self.argv)


class CommandRunner(Protocol):
    def __call__(
        self,
        command: str | Sequence[str],
        *,
        stdin: str | None = None,
        timeout: float | None = None,
    ) -> CommandResult: ...


def run_command(
    command: str | Sequence[str],
    *,
    stdin: str | None = None,
    timeout: float | None = None,
) -> CommandResult:
    """Run a command to completion and capture its output.

    A non-zero exit is returned, not raised: callers classify the failure
    from stderr.

    Raises:
        Timeout: the process outlived ``timeout`` and was killed
        BackendError: the executable could not be started
    """
    argv = to_argv(command)
    started = time.monotonic()
    try:
        proc = subprocess.run(
            argv,
            input=stdin,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as exc:
        logger.warning("process.timeout", command=redact_argv(argv), timeout=timeout)
        raise Timeout(
            f"Command timed out after {timeout}s: {redact_argv(argv)}",
            seconds=timeout,
            cause=exc,
        ).with_context(command=redact_argv(argv)) from exc
    except OSError as exc:
        raise BackendError(
            f"Could not start {argv[0] if argv else '<empty>'}: {exc}",
            cause=exc,
        ).with_context(command=redact_argv(argv)) from exc

    logger.debug(
        "process.finished",
        command=redact_argv(argv),
        exit_code=proc.returncode,
        elapsed_ms=round((time.monotonic() - started) * 1000, 1),
    )
    return CommandResult(
        argv=tuple(argv),
        exit_code=proc.returncode,
        stdout=proc.stdout or "",
        stderr=proc.stderr or "",
    )


__all__ = ["CommandResult", "CommandRunner", "redact_argv", "run_command"]
