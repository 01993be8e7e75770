"""
Shared pytest fixtures and configuration for berth tests.

This module provides:
- Auto-marking of unit / integration tests by location
- ``FakeRunner``: a scripted stand-in for ``run_command`` used by the CLI backends
- Ready-made adapters (stub, docker-cli, kubectl) wired to the fake runner

Usage:
    def test_something(fake_runner, docker_cli):
        fake_runner.on("run", "-d", stdout="abc123\\n")
        assert docker_cli.create("alpine", "t1") == "abc123"
"""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path

import pytest
import structlog

from berth.codec.shell import to_argv
from berth.retry import ConstantBackoff
from berth.runtimes._process import CommandResult
from berth.runtimes._types import ResourceLimits
from berth.runtimes.docker_cli import DockerCLIAdapter
from berth.runtimes.kubectl import KubectlAdapter
from berth.runtimes.stub import StubRuntimeAdapter


# =============================================================================
# Test Markers Configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Auto-mark tests based on their location."""
    for item in items:
        test_path = Path(item.fspath).relative_to(Path(__file__).parent)

        if "integration" in str(test_path):
            item.add_marker(pytest.mark.integration)

        markers = {mark.name for mark in item.iter_markers()}
        if not markers.intersection({"unit", "integration", "slow"}):
            item.add_marker(pytest.mark.unit)


@pytest.fixture(autouse=True)
def _reset_structlog():
    """Undo any configure_logging() a test (or a CLI invocation) performed."""
    yield
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()


# =============================================================================
# Fake process runner
# =============================================================================


def _contains(argv: Sequence[str], pattern: Sequence[str]) -> bool:
    size = len(pattern)
    return any(list(argv[i:i + size]) == list(pattern) for i in range(len(argv) - size + 1))


class FakeRunner:
    """Scripted ``CommandRunner``.

    ``on(*tokens, ...)`` registers a response for any argv containing
    ``tokens`` as a contiguous run; the longest matching pattern wins.
    Registering the same pattern several times queues the responses; the
    last one repeats. Unmatched calls succeed with empty output.
    """

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.stdins: list[str | None] = []
        self.timeouts: list[float | None] = []
        self._responses: dict[tuple[str, ...], list[tuple[int, str, str]]] = {}

    def on(self, *tokens: str, exit_code: int = 0, stdout: str = "", stderr: str = "") -> FakeRunner:
        self._responses.setdefault(tuple(tokens), []).append((exit_code, stdout, stderr))
        return self

    def __call__(
        self,
        command: str | Sequence[str],
        *,
        stdin: str | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        argv = to_argv(command)
        self.calls.append(argv)
        self.stdins.append(stdin)
        self.timeouts.append(timeout)

        matches = [pattern for pattern in self._responses if _contains(argv, pattern)]
        if not matches:
            return CommandResult(tuple(argv), 0)
        queue = self._responses[max(matches, key=len)]
        exit_code, stdout, stderr = queue.pop(0) if len(queue) > 1 else queue[0]
        return CommandResult(tuple(argv), exit_code, stdout, stderr)

    def calls_with(self, *tokens: str) -> list[list[str]]:
        return [argv for argv in self.calls if _contains(argv, tokens)]


# =============================================================================
# Adapter fixtures
# =============================================================================


@pytest.fixture
def limits() -> ResourceLimits:
    return ResourceLimits(cpus=0.5, memory_mb=256, swap_mb=512, namespace="berth")


@pytest.fixture
def stub(limits) -> StubRuntimeAdapter:
    return StubRuntimeAdapter(limits)


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def docker_cli(limits, fake_runner) -> DockerCLIAdapter:
    return DockerCLIAdapter(limits, runner=fake_runner)


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def kubectl(limits, fake_runner, sleeps) -> KubectlAdapter:
    return KubectlAdapter(
        limits,
        runner=fake_runner,
        namespace="ci",
        readiness=ConstantBackoff(max_retries=3, delay=0.5),
        sleep=sleeps.append,
    )
