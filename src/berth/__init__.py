"""
berth - runtime-agnostic container lifecycle.

One adapter contract (create, execute, remove, list, stats, networks,
pull, health) over the Docker CLI, the Docker Engine API, kubectl and the
Kubernetes API, plus an in-memory stub.

Example:
    >>> from berth import BerthSettings, create_adapter
    >>> adapter = create_adapter(BerthSettings(backend="stub"))
    >>> workload_id = adapter.create("alpine:3", "demo", ["sleep", "60"])
    >>> adapter.execute(workload_id, "echo -n hi").stdout
    'hi'
"""

__version__ = "0.1.0"

from berth.core.errors import (
    AlreadyExists,
    BackendError,
    BerthError,
    CapabilityUnsupported,
    CreationFailed,
    CreationReason,
    ErrorCategory,
    ExecFailed,
    InvalidTransitionError,
    MalformedCommand,
    NotFound,
    Timeout,
    ValidationError,
)
from berth.core.settings import BerthSettings
from berth.runtimes import (
    BaseRuntimeAdapter,
    BindMount,
    ExecResult,
    NetworkHandle,
    RegistryAuth,
    ResourceLimits,
    RestartPolicy,
    RuntimeAdapter,
    RuntimeCapabilities,
    RuntimeHealth,
    StubRuntimeAdapter,
    TmpfsMount,
    UsageStats,
    VolumeMount,
    Workload,
    WorkloadState,
)
from berth.runtimes.docker_api import DockerAPIAdapter
from berth.runtimes.docker_cli import DockerCLIAdapter
from berth.runtimes.kubectl import KubectlAdapter
from berth.runtimes.kubernetes_api import KubernetesAPIAdapter
from berth.runtimes.router import RuntimeAdapterRouter, create_adapter

__all__ = [
    "__version__",
    # errors
    "AlreadyExists",
    "BackendError",
    "BerthError",
    "CapabilityUnsupported",
    "CreationFailed",
    "CreationReason",
    "ErrorCategory",
    "ExecFailed",
    "InvalidTransitionError",
    "MalformedCommand",
    "NotFound",
    "Timeout",
    "ValidationError",
    # configuration
    "BerthSettings",
    "ResourceLimits",
    "RegistryAuth",
    # adapters
    "RuntimeAdapter",
    "BaseRuntimeAdapter",
    "DockerCLIAdapter",
    "DockerAPIAdapter",
    "KubectlAdapter",
    "KubernetesAPIAdapter",
    "StubRuntimeAdapter",
    "RuntimeAdapterRouter",
    "create_adapter",
    # values
    "BindMount",
    "VolumeMount",
    "TmpfsMount",
    "RestartPolicy",
    "ExecResult",
    "NetworkHandle",
    "RuntimeCapabilities",
    "RuntimeHealth",
    "UsageStats",
    "Workload",
    "WorkloadState",
]
