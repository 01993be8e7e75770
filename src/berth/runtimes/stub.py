"""In-memory runtime adapter for tests and for development without a daemon.

``StubRuntimeAdapter`` honours the whole adapter contract and the workload
state machine, and behaves like a local daemon with ``--rm`` support:

    .. code-block:: text

        create(command=["sleep", "5"])   → state RUNNING, status "Up ..."
        create(command="exit 3")         → state FAILED,  status "Exited (3) ..."
        create(..., auto_remove=True)    → finished workloads linger until the
                                           next list(), which hides and reaps them
        execute(id, ["echo", "-n", "hi"]) → ExecResult(stdout="hi")
        execute(id, "sleep 10", timeout=1) → Timeout  (no real sleeping)
        remove(id) twice                 → NotFound the second time

    Inject failures:
        adapter.fail_create = True        → create() raises CreationFailed(REJECTED)
        adapter.missing_images = {"x"}    → create("x") raises CreationFailed(IMAGE_MISSING)
        adapter.fail_health = True        → health() reports unhealthy

    Track usage:
        adapter.calls                     → [("create", "t1"), ("execute", "abc..."), ...]
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime

from berth.core.errors import (
    AlreadyExists,
    BackendError,
    CreationFailed,
    CreationReason,
    ExecFailed,
    NotFound,
    Timeout,
)
from berth.runtimes._base import BaseRuntimeAdapter
from berth.runtimes._types import (
    ExecResult,
    NetworkHandle,
    ResourceLimits,
    RuntimeCapabilities,
    RuntimeHealth,
    UsageStats,
    Workload,
    WorkloadSpec,
    _utcnow,
    filter_values,
    label_matches,
)
from berth.runtimes.state import WorkloadState, validate_transition
from berth.telemetry import SampleSource, normalize

_EXIT = re.compile(r"^exit\s+(-?\d+)$")


@dataclass
class _StubWorkload:
    """Internal state for a stubbed workload."""

    spec: WorkloadSpec
    id: str
    state: WorkloadState = WorkloadState.CREATING
    exit_code: int | None = None
    networks: set[str] = field(default_factory=set)
    created_at: datetime = field(default_factory=_utcnow)
    cpu_total: int = 0

    @property
    def status(self) -> str:
        if self.state in (WorkloadState.RUNNING, WorkloadState.EXECUTING):
            return "Up Less than a second"
        if self.state in (WorkloadState.SUCCEEDED, WorkloadState.FAILED):
            return f"Exited ({self.exit_code}) Less than a second ago"
        return self.state.value

    def move(self, target: WorkloadState) -> None:
        validate_transition(self.state, target)
        self.state = target


class StubRuntimeAdapter(BaseRuntimeAdapter):
    """In-memory runtime adapter.

    Args:
        limits: Resource limits (used for the memory figure in stats)
        capabilities: Override to simulate a backend without exec support
    """

    runtime_name = "stub"

    def __init__(
        self,
        limits: ResourceLimits | None = None,
        *,
        capabilities: RuntimeCapabilities | None = None,
    ) -> None:
        super().__init__(limits)
        self._capabilities = capabilities or RuntimeCapabilities()
        self._workloads: dict[str, _StubWorkload] = {}
        self._networks: dict[str, tuple[NetworkHandle, bool]] = {}
        self.images: set[str] = set()
        self.missing_images: set[str] = set()
        self.fail_create = False
        self.fail_health = False
        self.calls: list[tuple[str, str]] = []

    @property
    def capabilities(self) -> RuntimeCapabilities:
        return self._capabilities

    def _find(self, ref: str) -> _StubWorkload:
        if ref in self._workloads:
            return self._workloads[ref]
        for record in self._workloads.values():
            if record.spec.name == ref or record.id.startswith(ref):
                return record
        raise NotFound(f"No such container: {ref}")

    # --- lifecycle hooks ---

    def _do_create(self, spec: WorkloadSpec) -> str:
        self.calls.append(("create", spec.name))
        if self.fail_create:
            raise CreationFailed("Simulated create failure", reason=CreationReason.REJECTED)
        if spec.image in self.missing_images:
            raise CreationFailed(
                f"Unable to find image '{spec.image}' locally",
                reason=CreationReason.IMAGE_MISSING,
            )
        if any(w.spec.name == spec.name for w in self._workloads.values()):
            raise CreationFailed(
                f'Conflict. The container name "/{spec.name}" is already in use',
                reason=CreationReason.NAME_CONFLICT,
            )
        if spec.network and spec.network not in self._networks:
            raise CreationFailed(f"network {spec.network} not found", reason=CreationReason.REJECTED)

        record = _StubWorkload(spec=spec, id=uuid.uuid4().hex + uuid.uuid4().hex)
        if spec.network:
            record.networks.add(spec.network)
        self.images.add(spec.image)
        self._workloads[record.id] = record

        record.move(WorkloadState.RUNNING)
        exit_code = self._exit_code_of(spec.command)
        if exit_code is not None:
            record.exit_code = exit_code
            record.move(WorkloadState.SUCCEEDED if exit_code == 0 else WorkloadState.FAILED)
        return record.id

    @staticmethod
    def _exit_code_of(argv: list[str]) -> int | None:
        """Commands that finish immediately: ``exit N``, ``true``, ``false``."""
        script = " ".join(argv[2:]) if argv[:2] == ["sh", "-c"] else " ".join(argv)
        match = _EXIT.match(script.strip())
        if match:
            return int(match.group(1))
        if script == "true":
            return 0
        if script == "false":
            return 1
        return None

    def _do_execute(
        self,
        workload: str,
        argv: list[str],
        env: dict[str, str],
        timeout: float | None,
        workdir: str | None,
    ) -> ExecResult:
        record = self._find(workload)
        self.calls.append(("execute", record.id))
        if record.state is not WorkloadState.RUNNING:
            raise BackendError(f"Container {record.id} is not running")

        record.move(WorkloadState.EXECUTING)
        try:
            result = self._run(record, argv, env, timeout, workdir)
        finally:
            record.move(WorkloadState.RUNNING)
        if result.exit_code != 0:
            raise ExecFailed(
                f"Command exited with {result.exit_code}",
                exit_code=result.exit_code,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        return result

    def _run(
        self,
        record: _StubWorkload,
        argv: list[str],
        env: dict[str, str],
        timeout: float | None,
        workdir: str | None,
    ) -> ExecResult:
        program, args = argv[0], argv[1:]
        merged_env = {**record.spec.env, **env}
        record.cpu_total += 1_000_000

        if program == "echo":
            newline = True
            if args[:1] == ["-n"]:
                newline, args = False, args[1:]
            return ExecResult(0, " ".join(args) + ("\n" if newline else ""))
        if program == "sleep":
            seconds = float(args[0]) if args else 0.0
            if timeout is not None and seconds > timeout:
                raise Timeout(f"Command timed out after {timeout}s", seconds=timeout)
            return ExecResult(0)
        if program in ("true", "false"):
            return ExecResult(0 if program == "true" else 1)
        if program == "exit":
            return ExecResult(int(args[0]) if args else 0)
        if program == "env":
            return ExecResult(0, "".join(f"{k}={v}\n" for k, v in sorted(merged_env.items())))
        if program == "printenv":
            if args and args[0] not in merged_env:
                return ExecResult(1)
            return ExecResult(0, f"{merged_env[args[0]]}\n" if args else "")
        if program == "pwd":
            return ExecResult(0, f"{workdir or record.spec.workdir or '/'}\n")
        if program == "hostname":
            return ExecResult(0, f"{record.spec.hostname or record.id[:12]}\n")
        return ExecResult(
            127,
            stderr=f'exec: "{program}": executable file not found in $PATH\n',
        )

    def _do_remove(self, workload: str, force: bool) -> None:
        record = self._find(workload)
        self.calls.append(("remove", record.id))
        if record.state is WorkloadState.RUNNING and not force:
            raise BackendError(
                f"You cannot remove a running container {record.id}. "
                "Stop the container before attempting removal or force remove"
            )
        record.move(WorkloadState.TERMINATING)
        record.move(WorkloadState.REMOVED)
        del self._workloads[record.id]

    def _matches(self, record: _StubWorkload, filters: dict[str, list[str] | str]) -> bool:
        for key, raw in filters.items():
            values = filter_values(raw)
            if key == "label":
                if not all(label_matches(record.spec.labels, v) for v in values):
                    return False
            elif key == "name":
                if not any(v in record.spec.name for v in values):
                    return False
            elif key == "id":
                if not any(record.id.startswith(v) for v in values):
                    return False
        return True

    def _do_list(self, filters: dict[str, list[str] | str]) -> list[Workload]:
        return [
            Workload(name=r.spec.name, id=r.id, status=r.status, labels=dict(r.spec.labels))
            for r in self._workloads.values()
            if self._matches(r, filters)
        ]

    def _do_reap(self, workload: Workload) -> None:
        # the daemon removes --rm containers on exit; this is that removal
        record = self._workloads.pop(workload.id, None)
        if record is not None:
            record.move(WorkloadState.REMOVED)

    def _do_stats(self, workload: str | None, filters: dict[str, list[str] | str]) -> list[UsageStats]:
        if workload is not None:
            records = [self._find(workload)]
        else:
            records = [r for r in self._workloads.values() if self._matches(r, filters)]
        records = [r for r in records if r.state in (WorkloadState.RUNNING, WorkloadState.EXECUTING)]

        limit = self.limits.memory_bytes
        return [
            normalize(
                {
                    "id": r.id,
                    "name": f"/{r.spec.name}",
                    "cpu_stats": {
                        "cpu_usage": {"total_usage": r.cpu_total},
                        "system_cpu_usage": 1_000_000_000,
                        "online_cpus": 1,
                    },
                    "precpu_stats": {
                        "cpu_usage": {"total_usage": r.cpu_total},
                        "system_cpu_usage": 0,
                    },
                    "memory_stats": {"usage": 4 * 1024 * 1024, "limit": limit},
                    "blkio_stats": {"io_service_bytes_recursive": []},
                    "networks": {},
                },
                SampleSource.CUMULATIVE_COUNTERS,
            )
            for r in records
        ]

    def _do_pull(self, image: str) -> None:
        if image in self.missing_images:
            raise NotFound(f"pull access denied for {image}, repository does not exist")
        self.images.add(image)

    # --- networks ---

    def _do_create_network(self, name: str, internal: bool) -> NetworkHandle:
        if name in self._networks:
            raise AlreadyExists(f"network with name {name} already exists")
        handle = NetworkHandle(name=name, id=uuid.uuid4().hex, driver="bridge", scope="local")
        self._networks[name] = (handle, internal)
        return handle

    def _do_remove_network(self, name: str) -> None:
        if name not in self._networks:
            raise NotFound(f"network {name} not found")
        if any(name in r.networks for r in self._workloads.values()):
            raise BackendError(f"error while removing network: network {name} has active endpoints")
        del self._networks[name]

    def _do_network_exists(self, name: str) -> bool:
        return name in self._networks

    def _do_list_networks(self) -> list[NetworkHandle]:
        return [handle for handle, _ in self._networks.values()]

    def _do_connect(self, workload: str, network: str) -> None:
        if network not in self._networks:
            raise NotFound(f"network {network} not found")
        record = self._find(workload)
        if network in record.networks:
            raise AlreadyExists(f"endpoint with name {record.spec.name} already exists in network {network}")
        record.networks.add(network)

    def _do_disconnect(self, workload: str, network: str, force: bool) -> None:
        if network not in self._networks:
            raise NotFound(f"network {network} not found")
        record = self._find(workload)
        if network not in record.networks:
            if force:
                return
            raise NotFound(f"container {record.id} is not connected to network {network}")
        record.networks.discard(network)

    def _do_health(self) -> RuntimeHealth:
        if self.fail_health:
            return RuntimeHealth(healthy=False, runtime=self.runtime_name, message="Simulated failure")
        return RuntimeHealth(healthy=True, runtime=self.runtime_name, version="stub-1.0")


__all__ = ["StubRuntimeAdapter"]
