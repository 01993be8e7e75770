"""Core types for the runtime adapter layer.

Defines the data model every backend speaks (``Workload``, ``NetworkHandle``,
``UsageStats``, ``ResourceLimits``), the inputs to ``create`` (mounts,
restart policy), capability flags, and the ``RuntimeAdapter`` protocol.

Architecture:

    .. code-block:: text

        caller
          │  create / execute / remove / list / get_stats / networks
          ▼
        RuntimeAdapter (Protocol)
          │
          ├── DockerCLIAdapter      docker binary, text + JSON lines
          ├── DockerAPIAdapter      Engine API over a Unix socket
          ├── KubectlAdapter        kubectl binary, YAML manifests
          ├── KubernetesAPIAdapter  cluster REST API
          └── StubRuntimeAdapter    in-memory

        ResourceLimits ── frozen, handed to the adapter at construction
        UsageStats     ── produced by berth.telemetry.normalize()

    .. mermaid::

        classDiagram
            class Workload {
                +name: str
                +id: str
                +status: str
                +labels: dict
                +state WorkloadState
            }
            class UsageStats {
                +workload_id: str
                +workload_name: str
                +cpu_usage: float
                +memory_usage: float
                +disk_io: IOPair
                +memory_io: IOPair
                +network_io: IOPair
            }
            class ResourceLimits {
                +cpus: float
                +memory_mb: int
                +swap_mb: int
                +namespace: str
            }

Manifesto:
    Backends disagree about everything (text vs JSON, synchronous vs
    eventually consistent). Callers see one set of frozen value types and
    never branch on which backend produced them.

Tags:
    berth, runtimes, types, protocol, data-model

Doc-Types:
    api-reference
"""

from __future__ import annotations

import base64
import json
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol, Union, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field

from berth.runtimes.state import WorkloadState, auto_remove_label, state_from_status


def _utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Workloads and networks
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Workload:
    """A running or terminated unit of execution, as the backend reports it."""

    name: str
    id: str
    status: str = ""
    """Free-text backend status or phase (``Up 3 seconds``, ``Running``)."""
    labels: dict[str, str] = field(default_factory=dict)

    @property
    def state(self) -> WorkloadState:
        return state_from_status(self.status)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "id": self.id,
            "status": self.status,
            "state": self.state.value,
            "labels": dict(self.labels),
        }


@dataclass(frozen=True)
class NetworkHandle:
    """A named logical network."""

    name: str
    id: str
    driver: str = ""
    scope: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "id": self.id, "driver": self.driver, "scope": self.scope}


# ---------------------------------------------------------------------------
# Telemetry
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class IOPair:
    """Cumulative byte counters in each direction."""

    in_: float = 0.0
    out: float = 0.0

    def to_dict(self) -> dict[str, float]:
        return {"in": self.in_, "out": self.out}


@dataclass(frozen=True)
class UsageStats:
    """Point-in-time resource usage of one workload.

    ``cpu_usage`` is a fraction of one core and exceeds 1.0 when a workload
    uses several cores. ``memory_usage`` is a fraction of the configured
    limit (0.0 when no limit is known). All IO pairs are cumulative bytes.
    """

    workload_id: str
    workload_name: str
    cpu_usage: float = 0.0
    memory_usage: float = 0.0
    disk_io: IOPair = IOPair()
    memory_io: IOPair = IOPair()
    network_io: IOPair = IOPair()

    def to_dict(self) -> dict[str, Any]:
        return {
            "workloadId": self.workload_id,
            "workloadName": self.workload_name,
            "cpuUsage": self.cpu_usage,
            "memoryUsage": self.memory_usage,
            "diskIO": self.disk_io.to_dict(),
            "memoryIO": self.memory_io.to_dict(),
            "networkIO": self.network_io.to_dict(),
        }


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class ResourceLimits(BaseModel):
    """Limits applied to every workload an adapter creates.

    Passed to the adapter at construction and never mutated. Zero means
    "no limit".

    Example:
        >>> limits = ResourceLimits(cpus=0.5, memory_mb=256, namespace="ci")
        >>> limits.cpus
        0.5
    """

    model_config = ConfigDict(frozen=True)

    cpus: float = Field(default=0.0, ge=0)
    memory_mb: int = Field(default=0, ge=0)
    swap_mb: int = Field(default=0, ge=0)
    namespace: str = Field(default="berth", pattern=r"^[A-Za-z0-9]([A-Za-z0-9_.-]*[A-Za-z0-9])?$")

    @property
    def memory_bytes(self) -> int:
        return self.memory_mb * 1024 * 1024

    @property
    def swap_bytes(self) -> int:
        return self.swap_mb * 1024 * 1024


# ---------------------------------------------------------------------------
# Creation inputs
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BindMount:
    """A host path mounted into the workload."""

    host_path: str
    container_path: str
    read_only: bool = False


@dataclass(frozen=True)
class VolumeMount:
    """A named volume mounted into the workload."""

    volume_name: str
    container_path: str
    read_only: bool = False


@dataclass(frozen=True)
class TmpfsMount:
    """An in-memory filesystem. ``size_bytes`` of 0 means backend default."""

    container_path: str
    size_bytes: int = 0


Mount = Union[BindMount, VolumeMount, TmpfsMount]


class RestartPolicy(str, Enum):
    """What the backend does when the workload's process exits."""

    NO = "no"
    ALWAYS = "always"
    ON_FAILURE = "on-failure"
    UNLESS_STOPPED = "unless-stopped"

    @property
    def kubernetes(self) -> str:
        """Pod ``restartPolicy`` equivalent."""
        return {
            RestartPolicy.NO: "Never",
            RestartPolicy.ALWAYS: "Always",
            RestartPolicy.ON_FAILURE: "OnFailure",
            RestartPolicy.UNLESS_STOPPED: "Always",
        }[self]


@dataclass(frozen=True)
class WorkloadSpec:
    """Validated input to ``_do_create``.

    Built by :class:`BaseRuntimeAdapter.create` after validation: the
    command is already an argument vector, env keys are filtered and the
    managed labels are merged into ``labels``.
    """

    image: str
    name: str
    command: list[str] = field(default_factory=list)
    entrypoint: str | None = None
    workdir: str | None = None
    mounts: tuple[Mount, ...] = ()
    env: dict[str, str] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)
    network: str | None = None
    hostname: str | None = None
    restart_policy: RestartPolicy = RestartPolicy.NO
    auto_remove: bool = False


# ---------------------------------------------------------------------------
# Registry credentials
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RegistryAuth:
    """Credentials for pulling from a private registry."""

    username: str
    password: str = field(repr=False)
    server: str = ""
    email: str = ""

    def encode(self) -> str:
        """Base64url JSON, the form the Engine API expects in ``X-Registry-Auth``."""
        payload = {
            "username": self.username,
            "password": self.password,
            "email": self.email,
            "serveraddress": self.server,
        }
        return base64.urlsafe_b64encode(json.dumps(payload).encode()).decode()


# ---------------------------------------------------------------------------
# Exec
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ExecResult:
    """Outcome of a command run inside a workload."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def output(self) -> str:
        """Combined output, stdout first."""
        return self.stdout + self.stderr

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


# ---------------------------------------------------------------------------
# Capabilities and health
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RuntimeCapabilities:
    """Boolean feature flags for a runtime adapter.

    The base adapter checks these before calling the backend, so an
    unsupported request fails fast with ``CapabilityUnsupported``.

    .. code-block:: text

        ┌─────────────────────────┬────────┬────────┬─────────┬─────────┐
        │ Capability              │ docker │ docker │ kubectl │ k8s api │
        │                         │  cli   │  api   │         │         │
        ├─────────────────────────┼────────┼────────┼─────────┼─────────┤
        │ supports_exec           │   ✓    │   ✓    │    ✓    │    ✗    │
        │ supports_exec_env       │   ✓    │   ✓    │    ✓    │    ✗    │
        │ supports_mounts         │   ✓    │   ✓    │    ✓    │    ✓    │
        │ supports_disk_io_stats  │   ✓    │   ✓    │    ✗    │    ✗    │
        │ supports_net_io_stats   │   ✓    │   ✓    │    ✗    │    ✗    │
        │ synchronous_create      │   ✓    │   ✓    │    ✗    │    ✗    │
        └─────────────────────────┴────────┴────────┴─────────┴─────────┘
    """

    supports_exec: bool = True
    supports_exec_env: bool = True
    supports_mounts: bool = True
    supports_disk_io_stats: bool = True
    supports_network_io_stats: bool = True
    synchronous_create: bool = True

    def to_dict(self) -> dict[str, bool]:
        return {
            "supports_exec": self.supports_exec,
            "supports_exec_env": self.supports_exec_env,
            "supports_mounts": self.supports_mounts,
            "supports_disk_io_stats": self.supports_disk_io_stats,
            "supports_network_io_stats": self.supports_network_io_stats,
            "synchronous_create": self.synchronous_create,
        }


@dataclass(frozen=True)
class RuntimeHealth:
    """Result of a runtime adapter health check.

    Example:
        >>> health = RuntimeHealth(healthy=True, runtime="docker-cli", version="24.0.7")
    """

    healthy: bool
    runtime: str
    version: str | None = None
    message: str | None = None
    latency_ms: float | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "healthy": self.healthy,
            "runtime": self.runtime,
        }
        if self.version:
            d["version"] = self.version
        if self.message:
            d["message"] = self.message
        if self.latency_ms is not None:
            d["latency_ms"] = self.latency_ms
        return d


# ---------------------------------------------------------------------------
# Managed labels and name sanitising
# ---------------------------------------------------------------------------

Filters = Mapping[str, Union[str, Sequence[str]]]

NAME_PATTERN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*$")


def managed_labels(namespace: str, *, auto_remove: bool = False, now: datetime | None = None) -> dict[str, str]:
    """Bookkeeping labels stamped on every workload this layer creates."""
    created = now or _utcnow()
    labels = {
        f"{namespace}-type": "runtime",
        f"{namespace}-created": str(int(created.timestamp())),
    }
    if auto_remove:
        labels[auto_remove_label(namespace)] = "true"
    return labels


def filter_values(value: str | Sequence[str]) -> list[str]:
    """Normalise one filter entry to a list of values."""
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value]


def label_matches(labels: Mapping[str, str], selector: str) -> bool:
    """``"key"`` tests presence, ``"key=value"`` tests equality."""
    key, sep, value = selector.partition("=")
    if not sep:
        return key in labels
    return labels.get(key) == value


_DNS_UNSAFE = re.compile(r"[^a-z0-9.-]")
_LABEL_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]")
_REPEATED_SEPARATORS = re.compile(r"([_.-])[_.-]+")


def sanitize_pod_name(name: str) -> str:
    """Lower-case RFC 1123 name: invalid characters become ``-``.

    Example:
        >>> sanitize_pod_name("My_Job.1")
        'my-job.1'
    """
    slug = _DNS_UNSAFE.sub("-", name.lower()).strip("-.")
    return slug[:253] or "workload"


def sanitize_label_value(value: str) -> str:
    """Kubernetes label value: ``[A-Za-z0-9_.-]``, alphanumeric ends, ≤ 63 chars.

    Example:
        >>> sanitize_label_value("team a / prod")
        'team-a-prod'
    """
    cleaned = _LABEL_UNSAFE.sub("-", value)
    cleaned = _REPEATED_SEPARATORS.sub(r"\1", cleaned)
    cleaned = cleaned[:63].strip("-_.")
    return cleaned or "value"


@dataclass(frozen=True)
class ImageReference:
    """An image reference split into repository, tag and digest."""

    repository: str
    tag: str = "latest"
    digest: str | None = None

    @classmethod
    def parse(cls, image: str) -> ImageReference:
        """Split ``repo[:tag][@digest]``. The tag colon must follow the last ``/``.

        Example:
            >>> ImageReference.parse("localhost:5000/app")
            ImageReference(repository='localhost:5000/app', tag='latest', digest=None)
        """
        digest = None
        if "@" in image:
            image, digest = image.split("@", 1)
        slash = image.rfind("/")
        colon = image.rfind(":")
        if colon > slash:
            return cls(repository=image[:colon], tag=image[colon + 1:] or "latest", digest=digest)
        return cls(repository=image, digest=digest)

    def __str__(self) -> str:
        ref = f"{self.repository}:{self.tag}"
        if self.digest:
            ref += f"@{self.digest}"
        return ref


# ---------------------------------------------------------------------------
# RuntimeAdapter Protocol
# ---------------------------------------------------------------------------

@runtime_checkable
class RuntimeAdapter(Protocol):
    """Protocol for workload runtime adapters.

    Every backend implements this protocol. Callers interact with runtimes
    exclusively through these methods and never branch on backend type.

    .. code-block:: text

        RuntimeAdapter Protocol
        ┌───────────────────────────────────────────────────────────────┐
        │  create(image, name, ...) → id        start a workload        │
        │  execute(ref, command)    → ExecResult run inside it          │
        │  remove(ref, force)       → None       tear it down           │
        │  list(filters)            → Workload[] auto-remove reconciled │
        │  get_stats(ref|filters)   → UsageStats[]                      │
        │  pull(image)              → None                              │
        │  create_network / remove_network / network_exists            │
        │  connect / disconnect / list_networks                         │
        │  health()                 → RuntimeHealth                     │
        └───────────────────────────────────────────────────────────────┘

    .. mermaid::

        sequenceDiagram
            participant C as Caller
            participant A as RuntimeAdapter
            C->>A: create(image, name)
            A-->>C: workload id
            C->>A: execute(id, ["echo", "hi"])
            A-->>C: ExecResult(stdout="hi")
            C->>A: remove(id, force=True)
    """

    @property
    def runtime_name(self) -> str: ...

    @property
    def capabilities(self) -> RuntimeCapabilities: ...

    @property
    def limits(self) -> ResourceLimits: ...

    def create(
        self,
        image: str,
        name: str,
        command: str | Sequence[str] | None = None,
        *,
        entrypoint: str | None = None,
        workdir: str | None = None,
        mounts: Sequence[Mount] = (),
        env: Mapping[str, str] | None = None,
        labels: Mapping[str, str] | None = None,
        network: str | None = None,
        hostname: str | None = None,
        restart_policy: RestartPolicy = RestartPolicy.NO,
        auto_remove: bool = False,
    ) -> str: ...

    def execute(
        self,
        workload: str,
        command: str | Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
        workdir: str | None = None,
    ) -> ExecResult: ...

    def remove(self, workload: str, *, force: bool = False) -> None: ...

    def list(self, filters: Filters | None = None) -> list[Workload]: ...

    def get_stats(
        self, workload: str | None = None, *, filters: Filters | None = None
    ) -> list[UsageStats]: ...

    def pull(self, image: str) -> None: ...

    def create_network(self, name: str, *, internal: bool = False) -> NetworkHandle: ...

    def remove_network(self, name: str) -> None: ...

    def network_exists(self, name: str) -> bool: ...

    def list_networks(self) -> list[NetworkHandle]: ...

    def connect(self, workload: str, network: str) -> None: ...

    def disconnect(self, workload: str, network: str, *, force: bool = False) -> None: ...

    def health(self) -> RuntimeHealth: ...


__all__ = [
    "Workload",
    "NetworkHandle",
    "IOPair",
    "UsageStats",
    "ResourceLimits",
    "BindMount",
    "VolumeMount",
    "TmpfsMount",
    "Mount",
    "RestartPolicy",
    "WorkloadSpec",
    "RegistryAuth",
    "ExecResult",
    "RuntimeCapabilities",
    "RuntimeHealth",
    "Filters",
    "NAME_PATTERN",
    "managed_labels",
    "filter_values",
    "label_matches",
    "sanitize_pod_name",
    "sanitize_label_value",
    "ImageReference",
    "RuntimeAdapter",
]
