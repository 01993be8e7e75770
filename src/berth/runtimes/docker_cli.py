"""Docker CLI runtime adapter.

Drives a local daemon through the ``docker`` binary. Every call is one
subprocess; failures are classified from the CLI's stderr text.

    .. code-block:: text

        create   → docker run -d [--rm] [--network=] [--cpus=] [--memory=Nm]
                              [--memory-swap=Nm] [--restart=] --name=NAME
                              [--volume|--tmpfs] [--label k=v] [--env K=V]
                              IMAGE [CMD...]
        execute  → docker exec [--workdir] [--env K=V] NAME CMD...
        remove   → docker rm [--force] NAME
        list     → docker ps --all --no-trunc --format '{{json .}}' [--filter k=v]
        stats    → docker stats --no-stream --no-trunc --format '{{json .}}' IDS
                   (TEXT_COLUMNS samples)

    stderr classification:
        "No such container" / "No such object" / "not found"  → NotFound
        "Conflict" / "already in use"   (create)              → CreationFailed(name_conflict)
        "Unable to find image" / "pull access denied"         → CreationFailed(image_missing)
        "already exists"                                      → AlreadyExists
        anything else                                         → BackendError(raw stderr)

Manifesto:
    Subprocess instead of an SDK keeps the dependency surface at zero and
    works with any daemon the ``docker`` binary can reach (contexts,
    ``DOCKER_HOST``, rootless). A remote daemon over SSH is one
    ``host="ssh://user@box"`` away.

Tags:
    berth, runtimes, docker, cli, subprocess
"""

from __future__ import annotations

import json
from typing import Any

from berth.core.errors import (
    AlreadyExists,
    BackendError,
    BerthError,
    CreationFailed,
    CreationReason,
    ExecFailed,
    NotFound,
    ValidationError,
)
from berth.core.logging import get_logger
from berth.runtimes._base import BaseRuntimeAdapter
from berth.runtimes._process import CommandResult, CommandRunner, run_command
from berth.runtimes._types import (
    BindMount,
    ExecResult,
    NetworkHandle,
    RegistryAuth,
    ResourceLimits,
    RestartPolicy,
    RuntimeCapabilities,
    RuntimeHealth,
    TmpfsMount,
    UsageStats,
    VolumeMount,
    Workload,
    WorkloadSpec,
    filter_values,
)
from berth.telemetry import SampleSource, normalize

logger = get_logger(__name__)

_NOT_FOUND_MARKERS = ("no such container", "no such object", "no such network", "not found", "is not connected")
_CONFLICT_MARKERS = ("conflict", "already in use")
_IMAGE_MARKERS = ("unable to find image", "pull access denied", "manifest unknown", "repository does not exist")


def parse_json_lines(text: str) -> list[dict[str, Any]]:
    """Parse ``--format '{{json .}}'`` output: one JSON object per line."""
    rows = []
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            rows.append(json.loads(line))
        except json.JSONDecodeError as exc:
            raise BackendError(f"Unparseable docker output line: {exc}", diagnostic=line, cause=exc) from exc
    return rows


def parse_label_string(text: str) -> dict[str, str]:
    """``"a=1,b=2"`` (the ``Labels`` column of ``docker ps``) → dict."""
    labels: dict[str, str] = {}
    for item in (text or "").split(","):
        if not item:
            continue
        key, _, value = item.partition("=")
        labels[key] = value
    return labels


class DockerCLIAdapter(BaseRuntimeAdapter):
    """Runtime adapter over the ``docker`` command line.

    Args:
        limits: Resource limits applied to every created workload
        binary: docker executable
        runner: Process-execution primitive (``run_command`` by default)
        timeout: Deadline for ordinary calls (create, list, remove ...)
        registry_auth: Credentials used to ``docker login`` before a pull
        host: Daemon address passed as ``--host`` (``ssh://user@box``, ``tcp://...``)
        context: Docker context passed as ``--context``; exclusive with ``host``
    """

    runtime_name = "docker-cli"
    supported_filters = None

    def __init__(
        self,
        limits: ResourceLimits | None = None,
        *,
        binary: str = "docker",
        runner: CommandRunner = run_command,
        timeout: float = 120.0,
        registry_auth: RegistryAuth | None = None,
        host: str | None = None,
        context: str | None = None,
    ) -> None:
        super().__init__(limits)
        if host and context:
            raise ValidationError("Set either a docker host or a docker context, not both")
        self._binary = binary
        self._global_args: list[str] = []
        if host:
            self._global_args = ["--host", host]
        elif context:
            self._global_args = ["--context", context]
        self._runner = runner
        self._timeout = timeout
        self._registry_auth = registry_auth

    @property
    def capabilities(self) -> RuntimeCapabilities:
        return RuntimeCapabilities()

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _docker(
        self,
        args: list[str],
        *,
        operation: str,
        check: bool = True,
        stdin: str | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        result = self._runner(
            [self._binary, *self._global_args, *args],
            stdin=stdin,
            timeout=timeout if timeout is not None else self._timeout,
        )
        if check and not result.ok:
            raise self._classify(result, operation)
        return result

    def _classify(self, result: CommandResult, operation: str) -> BerthError:
        diagnostic = (result.stderr or result.stdout).strip()
        lowered = diagnostic.lower()
        context = {"command": result.command_line, "exit_code": result.exit_code}

        if operation == "create":
            if any(marker in lowered for marker in _CONFLICT_MARKERS):
                reason = CreationReason.NAME_CONFLICT
            elif any(marker in lowered for marker in _IMAGE_MARKERS):
                reason = CreationReason.IMAGE_MISSING
            else:
                reason = CreationReason.REJECTED
            return CreationFailed(diagnostic or "docker run failed", reason=reason).with_context(**context)
        if any(marker in lowered for marker in _NOT_FOUND_MARKERS + _IMAGE_MARKERS[1:]):
            return NotFound(diagnostic).with_context(**context)
        if "already exists" in lowered:
            return AlreadyExists(diagnostic).with_context(**context)
        return BackendError(
            f"docker {operation} failed (exit {result.exit_code})",
            diagnostic=diagnostic,
        ).with_context(**context)

    def _limit_flags(self) -> list[str]:
        limits = self.limits
        flags = []
        if limits.cpus > 0:
            flags.append(f"--cpus={limits.cpus:g}")
        if limits.memory_mb > 0:
            flags.append(f"--memory={limits.memory_mb}m")
        if limits.swap_mb > 0:
            flags.append(f"--memory-swap={limits.swap_mb}m")
        return flags

    @staticmethod
    def _mount_flags(spec: WorkloadSpec) -> list[str]:
        flags: list[str] = []
        for mount in spec.mounts:
            if isinstance(mount, BindMount):
                mode = "ro" if mount.read_only else "rw"
                flags += ["--volume", f"{mount.host_path}:{mount.container_path}:{mode}"]
            elif isinstance(mount, VolumeMount):
                mode = "ro" if mount.read_only else "rw"
                flags += ["--volume", f"{mount.volume_name}:{mount.container_path}:{mode}"]
            elif isinstance(mount, TmpfsMount):
                value = mount.container_path
                if mount.size_bytes:
                    value += f":size={mount.size_bytes}"
                flags += ["--tmpfs", value]
        return flags

    @staticmethod
    def _filter_flags(filters: dict[str, list[str] | str]) -> list[str]:
        flags: list[str] = []
        for key, raw in filters.items():
            for value in filter_values(raw):
                flags += ["--filter", f"{key}={value}"]
        return flags

    # ------------------------------------------------------------------
    # Lifecycle hooks
    # ------------------------------------------------------------------

    def _do_create(self, spec: WorkloadSpec) -> str:
        args = ["run", "-d"]
        if spec.auto_remove:
            args.append("--rm")
        if spec.network:
            args.append(f"--network={spec.network}")
        if spec.entrypoint:
            args.append(f"--entrypoint={spec.entrypoint}")
        args += self._limit_flags()
        if spec.restart_policy is not RestartPolicy.NO:
            args.append(f"--restart={spec.restart_policy.value}")
        args.append(f"--name={spec.name}")
        args += self._mount_flags(spec)
        for key, value in spec.labels.items():
            args += ["--label", f"{key}={value}"]
        if spec.workdir:
            args += ["--workdir", spec.workdir]
        if spec.hostname:
            args += ["--hostname", spec.hostname]
        for key, value in spec.env.items():
            args += ["--env", f"{key}={value}"]
        args.append(spec.image)
        args += spec.command

        result = self._docker(args, operation="create")
        lines = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        if not lines:
            raise CreationFailed("docker run returned no container id", diagnostic=result.stderr)
        return lines[0]

    def _do_execute(
        self,
        workload: str,
        argv: list[str],
        env: dict[str, str],
        timeout: float | None,
        workdir: str | None,
    ) -> ExecResult:
        args = ["exec"]
        if workdir:
            args += ["--workdir", workdir]
        for key, value in env.items():
            args += ["--env", f"{key}={value}"]
        args += [workload, *argv]

        result = self._docker(args, operation="execute", check=False, timeout=timeout)
        if result.ok:
            return ExecResult(result.exit_code, result.stdout, result.stderr)

        lowered = result.stderr.lower()
        if "no such container" in lowered or "is not running" in lowered:
            raise self._classify(result, "execute")
        raise ExecFailed(
            f"Command exited with {result.exit_code} in {workload}",
            exit_code=result.exit_code,
            stdout=result.stdout,
            stderr=result.stderr,
        ).with_context(command=result.command_line)

    def _do_remove(self, workload: str, force: bool) -> None:
        args = ["rm"]
        if force:
            args.append("--force")
        args.append(workload)
        self._docker(args, operation="remove")

    def _do_list(self, filters: dict[str, list[str] | str]) -> list[Workload]:
        args = ["ps", "--all", "--no-trunc", "--format", "{{json .}}", *self._filter_flags(filters)]
        result = self._docker(args, operation="list")
        return [
            Workload(
                name=str(row.get("Names", "")).split(",")[0].lstrip("/"),
                id=str(row.get("ID", "")),
                status=str(row.get("Status") or row.get("State") or ""),
                labels=parse_label_string(str(row.get("Labels", ""))),
            )
            for row in parse_json_lines(result.stdout)
        ]

    def _do_stats(self, workload: str | None, filters: dict[str, list[str] | str]) -> list[UsageStats]:
        if workload is not None:
            targets = [workload]
        else:
            result = self._docker(
                ["ps", "--no-trunc", "--format", "{{.ID}}", *self._filter_flags(filters)],
                operation="stats",
            )
            targets = [line.strip() for line in result.stdout.splitlines() if line.strip()]
            if not targets:
                return []

        result = self._docker(
            ["stats", "--no-stream", "--no-trunc", "--format", "{{json .}}", *targets],
            operation="stats",
        )
        return [normalize(row, SampleSource.TEXT_COLUMNS) for row in parse_json_lines(result.stdout)]

    def _do_pull(self, image: str) -> None:
        auth = self._registry_auth
        if auth is not None:
            args = ["login", "--username", auth.username, "--password-stdin"]
            if auth.server:
                args.append(auth.server)
            self._docker(args, operation="login", stdin=auth.password)
        self._docker(["pull", image], operation="pull")

    # ------------------------------------------------------------------
    # Networks
    # ------------------------------------------------------------------

    def _do_create_network(self, name: str, internal: bool) -> NetworkHandle:
        args = ["network", "create"]
        if internal:
            args.append("--internal")
        args.append(name)
        result = self._docker(args, operation="create_network")
        return NetworkHandle(name=name, id=result.stdout.strip(), driver="bridge", scope="local")

    def _do_remove_network(self, name: str) -> None:
        self._docker(["network", "rm", name], operation="remove_network")

    def _do_network_exists(self, name: str) -> bool:
        result = self._docker(
            ["network", "inspect", "--format", "{{.Name}}", name],
            operation="network_exists",
            check=False,
        )
        if result.ok:
            return True
        error = self._classify(result, "network_exists")
        if isinstance(error, NotFound):
            return False
        raise error

    def _do_list_networks(self) -> list[NetworkHandle]:
        result = self._docker(["network", "ls", "--no-trunc", "--format", "{{json .}}"], operation="list_networks")
        return [
            NetworkHandle(
                name=str(row.get("Name", "")),
                id=str(row.get("ID", "")),
                driver=str(row.get("Driver", "")),
                scope=str(row.get("Scope", "")),
            )
            for row in parse_json_lines(result.stdout)
        ]

    def _do_connect(self, workload: str, network: str) -> None:
        self._docker(["network", "connect", network, workload], operation="connect")

    def _do_disconnect(self, workload: str, network: str, force: bool) -> None:
        args = ["network", "disconnect"]
        if force:
            args.append("--force")
        args += [network, workload]
        result = self._docker(args, operation="disconnect", check=False)
        if result.ok:
            return
        if force and "is not connected" in result.stderr.lower():
            logger.debug("network.disconnect_noop", workload=workload, network=network)
            return
        raise self._classify(result, "disconnect")

    def _do_health(self) -> RuntimeHealth:
        result = self._docker(
            ["version", "--format", "{{.Server.Version}}"],
            operation="health",
            check=False,
            timeout=10,
        )
        if not result.ok:
            return RuntimeHealth(
                healthy=False,
                runtime=self.runtime_name,
                message=(result.stderr or result.stdout).strip() or "docker daemon unreachable",
            )
        return RuntimeHealth(healthy=True, runtime=self.runtime_name, version=result.stdout.strip())


__all__ = ["DockerCLIAdapter", "parse_json_lines", "parse_label_string"]
