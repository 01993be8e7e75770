"""Runtime adapters: one lifecycle contract over several container backends.

Architecture:

    .. code-block:: text

        berth.runtimes
        ├── __init__.py       ← Public types (this file)
        ├── _types.py         ← RuntimeAdapter protocol + value types
        ├── state.py          ← WorkloadState machine, status parsing
        ├── _base.py          ← BaseRuntimeAdapter (shared lifecycle logic)
        ├── _process.py       ← subprocess primitive for CLI backends
        ├── _http.py          ← httpx wrapper for API backends
        ├── _kube.py          ← pod / NetworkPolicy manifests
        ├── stub.py           ← StubRuntimeAdapter (in-memory)
        ├── docker_cli.py     ← DockerCLIAdapter
        ├── docker_api.py     ← DockerAPIAdapter
        ├── kubectl.py        ← KubectlAdapter
        ├── kubernetes_api.py ← KubernetesAPIAdapter
        └── router.py         ← RuntimeAdapterRouter + create_adapter()

    The concrete backends and the router are imported from their modules
    (or from the top-level ``berth`` package); this file only exports the
    types every backend shares.

Tags:
    berth, runtimes, adapter-protocol
"""

from berth.runtimes._base import BaseRuntimeAdapter
from berth.runtimes._types import (
    BindMount,
    ExecResult,
    Filters,
    ImageReference,
    IOPair,
    Mount,
    NetworkHandle,
    RegistryAuth,
    ResourceLimits,
    RestartPolicy,
    RuntimeAdapter,
    RuntimeCapabilities,
    RuntimeHealth,
    TmpfsMount,
    UsageStats,
    VolumeMount,
    Workload,
    WorkloadSpec,
)
from berth.runtimes.state import WorkloadState, state_from_status
from berth.runtimes.stub import StubRuntimeAdapter

__all__ = [
    "BaseRuntimeAdapter",
    "BindMount",
    "ExecResult",
    "Filters",
    "ImageReference",
    "IOPair",
    "Mount",
    "NetworkHandle",
    "RegistryAuth",
    "ResourceLimits",
    "RestartPolicy",
    "RuntimeAdapter",
    "RuntimeCapabilities",
    "RuntimeHealth",
    "StubRuntimeAdapter",
    "TmpfsMount",
    "UsageStats",
    "VolumeMount",
    "Workload",
    "WorkloadSpec",
    "WorkloadState",
    "state_from_status",
]
