"""Base runtime adapter with the backend-independent lifecycle logic.

Architecture:

    .. code-block:: text

        RuntimeAdapter (Protocol)
              │
              ▼
        BaseRuntimeAdapter
        ├── create()        → validate + filter env + managed labels → _do_create()
        ├── execute()       → capability check + tokenize           → _do_execute()
        ├── remove()        → TERMINATING → REMOVED                  → _do_remove()
        ├── list()          → auto-remove reconciliation             → _do_list() / _do_reap()
        ├── get_stats()     → _do_stats()  (telemetry normalizer inside)
        ├── networks        → _do_create_network() / _do_connect() / ...
        └── health()        → latency timing                         → _do_health()
              │
        ┌─────┴──────────┬──────────────┬──────────────┬───────────────┐
        ▼                ▼              ▼              ▼               ▼
    DockerCLIAdapter DockerAPIAdapter KubectlAdapter KubernetesAPI  StubRuntimeAdapter

    Public method call flow (create):

        create(image, name, ...)
          ├── ValidationError / MalformedCommand   (no backend call yet)
          ├── log: workload.transition requested → creating
          ├── _do_create(spec)  ← subclass implements (cluster backends poll)
          ├── log: workload.transition creating → running
          └── on foreign exception: CreationFailed(REJECTED) with cause

Manifesto:
    Everything that does not depend on the backend lives here, so the four
    real adapters only translate calls and classify backend errors.

Tags:
    berth, runtimes, base, adapter-ABC, lifecycle

Doc-Types:
    api-reference
"""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping, Sequence
from typing import TypeVar

from berth.codec.shell import filter_env, to_argv
from berth.core.errors import (
    BackendError,
    BerthError,
    CapabilityUnsupported,
    CreationFailed,
    CreationReason,
    ValidationError,
)
from berth.core.logging import LogContext, get_logger
from berth.runtimes._types import (
    NAME_PATTERN,
    ExecResult,
    Filters,
    Mount,
    NetworkHandle,
    ResourceLimits,
    RestartPolicy,
    RuntimeCapabilities,
    RuntimeHealth,
    UsageStats,
    Workload,
    WorkloadSpec,
    managed_labels,
)
from berth.runtimes.state import WorkloadState, is_reapable, validate_transition

T = TypeVar("T")

logger = get_logger(__name__)


class BaseRuntimeAdapter:
    """Base class for runtime adapters with shared lifecycle logic.

    Subclasses MUST implement:
        _do_create, _do_execute, _do_remove, _do_list, _do_stats, _do_health

    Subclasses MAY override:
        _do_reap (default: nothing, the backend removes the workload itself)
        _do_pull and the network hooks (default: CapabilityUnsupported)
        capabilities, supported_filters
    """

    runtime_name: str = "base"

    #: Filter keys ``list``/``get_stats`` accept. ``None`` passes anything through.
    supported_filters: frozenset[str] | None = frozenset({"label", "name", "id"})

    def __init__(self, limits: ResourceLimits | None = None) -> None:
        self._limits = limits or ResourceLimits()

    @property
    def limits(self) -> ResourceLimits:
        return self._limits

    @property
    def namespace(self) -> str:
        return self._limits.namespace

    @property
    def capabilities(self) -> RuntimeCapabilities:
        """Boolean feature flags. Override in subclass."""
        return RuntimeCapabilities()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _transition(self, workload: str, current: WorkloadState, target: WorkloadState) -> WorkloadState:
        validate_transition(current, target)
        logger.info(
            "workload.transition",
            backend=self.runtime_name,
            workload=workload,
            from_state=current.value,
            to_state=target.value,
        )
        return target

    def _guard(self, operation: str, workload: str | None, func: Callable[[], T]) -> T:
        """Run a hook, tagging berth errors and wrapping foreign ones."""
        try:
            with LogContext(backend=self.runtime_name, operation=operation):
                return func()
        except BerthError as exc:
            if exc.context.backend is None:
                exc.with_context(backend=self.runtime_name, operation=operation)
            if workload and exc.context.workload is None:
                exc.with_context(workload=workload)
            raise
        except Exception as exc:
            logger.error(
                f"{operation}.failed",
                backend=self.runtime_name,
                workload=workload,
                error=str(exc),
            )
            raise BackendError(
                f"{operation} failed on {self.runtime_name}: {exc}",
                diagnostic=str(exc),
                cause=exc,
            ).with_context(backend=self.runtime_name, operation=operation, workload=workload) from exc

    @staticmethod
    def _require(value: str | None, what: str) -> str:
        if value is None or not str(value).strip():
            raise ValidationError(f"{what} must not be empty")
        return str(value)

    @staticmethod
    def _require_name(name: str | None, what: str = "name") -> str:
        name = BaseRuntimeAdapter._require(name, what)
        if not NAME_PATTERN.match(name):
            raise ValidationError(
                f"Invalid {what} {name!r}: must start with a letter or digit and "
                "contain only letters, digits, '.', '_' or '-'"
            )
        return name

    def _check_filters(self, filters: Filters | None) -> dict[str, list[str] | str]:
        if not filters:
            return {}
        if self.supported_filters is not None:
            unknown = set(filters) - self.supported_filters
            if unknown:
                raise ValidationError(
                    f"{self.runtime_name} does not support filter(s): {', '.join(sorted(unknown))}"
                )
        return dict(filters)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

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
    ) -> str:
        """Create and start a workload; return its backend id.

        Raises:
            ValidationError: empty/invalid name or image, malformed command
            CapabilityUnsupported: mounts on a backend without mount support
            CreationFailed: name collision, missing image, rejection, never ready
        """
        name = self._require_name(name)
        image = self._require(image, "image")
        argv = to_argv(command) if command else []
        if mounts and not self.capabilities.supports_mounts:
            raise CapabilityUnsupported(
                f"{self.runtime_name} does not support mounts", feature="mounts"
            )

        merged_labels = {str(k): str(v) for k, v in (labels or {}).items()}
        merged_labels.update(managed_labels(self.namespace, auto_remove=auto_remove))

        spec = WorkloadSpec(
            image=image,
            name=name,
            command=argv,
            entrypoint=entrypoint or None,
            workdir=workdir or None,
            mounts=tuple(mounts),
            env=filter_env(env),
            labels=merged_labels,
            network=network or None,
            hostname=hostname or None,
            restart_policy=RestartPolicy(restart_policy),
            auto_remove=auto_remove,
        )

        state = self._transition(name, WorkloadState.REQUESTED, WorkloadState.CREATING)
        logger.info(
            "workload.creating",
            backend=self.runtime_name,
            workload=name,
            image=image,
            env_keys=sorted(spec.env),
            auto_remove=auto_remove,
        )
        try:
            workload_id = self._do_create(spec)
        except BerthError as exc:
            self._transition(name, state, WorkloadState.FAILED)
            exc.with_context(backend=self.runtime_name, operation="create", workload=name)
            raise
        except Exception as exc:
            self._transition(name, state, WorkloadState.FAILED)
            raise CreationFailed(
                f"Create failed for {name!r} on {self.runtime_name}: {exc}",
                reason=CreationReason.REJECTED,
                cause=exc,
            ).with_context(backend=self.runtime_name, operation="create", workload=name) from exc

        self._transition(name, state, WorkloadState.RUNNING)
        logger.info("workload.created", backend=self.runtime_name, workload=name, workload_id=workload_id)
        return workload_id

    def execute(
        self,
        workload: str,
        command: str | Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
        workdir: str | None = None,
    ) -> ExecResult:
        """Run a command inside a running workload.

        Raises:
            CapabilityUnsupported: exec, or exec with ``env``, not supported
            Timeout: the command outlived ``timeout``
            ExecFailed: the command exited non-zero
            NotFound: no such workload
        """
        workload = self._require(workload, "workload")
        caps = self.capabilities
        if not caps.supports_exec:
            raise CapabilityUnsupported(
                f"{self.runtime_name} cannot execute commands in workloads", feature="exec"
            )
        if env and not caps.supports_exec_env:
            raise CapabilityUnsupported(
                f"{self.runtime_name} cannot set environment variables for exec",
                feature="exec_env",
            )
        if timeout is not None and timeout <= 0:
            raise ValidationError("timeout must be positive")
        argv = to_argv(command)
        if not argv:
            raise ValidationError("command must not be empty")
        exec_env = filter_env(env)

        state = self._transition(workload, WorkloadState.RUNNING, WorkloadState.EXECUTING)
        result = self._guard(
            "execute",
            workload,
            lambda: self._do_execute(workload, argv, exec_env, timeout, workdir),
        )
        self._transition(workload, state, WorkloadState.RUNNING)
        return result

    def remove(self, workload: str, *, force: bool = False) -> None:
        """Remove a workload. A second remove of the same workload raises ``NotFound``."""
        workload = self._require(workload, "workload")
        logger.info("workload.removing", backend=self.runtime_name, workload=workload, force=force)
        self._guard("remove", workload, lambda: self._do_remove(workload, force))
        self._transition(workload, WorkloadState.TERMINATING, WorkloadState.REMOVED)

    def list(self, filters: Filters | None = None) -> list[Workload]:
        """List workloads, hiding auto-remove workloads that have finished.

        Finished auto-remove workloads are handed to ``_do_reap`` so the
        backend-side object disappears too. Reaping problems are logged and
        never fail the listing.
        """
        checked = self._check_filters(filters)
        workloads = self._guard("list", None, lambda: self._do_list(checked))

        visible: list[Workload] = []
        for workload in workloads:
            if not is_reapable(workload.status, workload.labels, self.namespace):
                visible.append(workload)
                continue
            logger.info(
                "workload.reaped",
                backend=self.runtime_name,
                workload=workload.name,
                status=workload.status,
            )
            try:
                self._do_reap(workload)
            except BerthError as exc:
                logger.warning(
                    "workload.reap_failed",
                    backend=self.runtime_name,
                    workload=workload.name,
                    error=exc.message,
                )
        return visible

    def get_stats(
        self, workload: str | None = None, *, filters: Filters | None = None
    ) -> list[UsageStats]:
        """Usage snapshot for one workload, or every workload matching ``filters``."""
        checked = self._check_filters(filters)
        return self._guard("stats", workload, lambda: self._do_stats(workload, checked))

    def pull(self, image: str) -> None:
        image = self._require(image, "image")
        logger.info("image.pulling", backend=self.runtime_name, image=image)
        self._guard("pull", None, lambda: self._do_pull(image))

    # ------------------------------------------------------------------
    # Networking
    # ------------------------------------------------------------------

    def create_network(self, name: str, *, internal: bool = False) -> NetworkHandle:
        name = self._require_name(name, "network name")
        handle = self._guard("create_network", None, lambda: self._do_create_network(name, internal))
        logger.info("network.created", backend=self.runtime_name, network=name, internal=internal)
        return handle

    def remove_network(self, name: str) -> None:
        name = self._require(name, "network name")
        self._guard("remove_network", None, lambda: self._do_remove_network(name))
        logger.info("network.removed", backend=self.runtime_name, network=name)

    def network_exists(self, name: str) -> bool:
        name = self._require(name, "network name")
        return self._guard("network_exists", None, lambda: self._do_network_exists(name))

    def list_networks(self) -> list[NetworkHandle]:
        return self._guard("list_networks", None, self._do_list_networks)

    def connect(self, workload: str, network: str) -> None:
        workload = self._require(workload, "workload")
        network = self._require(network, "network name")
        self._guard("connect", workload, lambda: self._do_connect(workload, network))
        logger.info("network.connected", backend=self.runtime_name, workload=workload, network=network)

    def disconnect(self, workload: str, network: str, *, force: bool = False) -> None:
        """Detach a workload. Fails with ``NotFound`` if it was never attached, unless ``force``."""
        workload = self._require(workload, "workload")
        network = self._require(network, "network name")
        self._guard("disconnect", workload, lambda: self._do_disconnect(workload, network, force))
        logger.info("network.disconnected", backend=self.runtime_name, workload=workload, network=network)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def health(self) -> RuntimeHealth:
        """Health check with latency timing. Never raises."""
        start = time.monotonic()
        try:
            result = self._do_health()
            elapsed = (time.monotonic() - start) * 1000
            return RuntimeHealth(
                healthy=result.healthy,
                runtime=self.runtime_name,
                version=result.version,
                message=result.message,
                latency_ms=elapsed,
            )
        except Exception as exc:
            elapsed = (time.monotonic() - start) * 1000
            return RuntimeHealth(
                healthy=False,
                runtime=self.runtime_name,
                message=f"Health check failed: {exc}",
                latency_ms=elapsed,
            )

    # --- Hooks for subclasses ---

    def _do_create(self, spec: WorkloadSpec) -> str:
        raise NotImplementedError

    def _do_execute(
        self,
        workload: str,
        argv: list[str],
        env: dict[str, str],
        timeout: float | None,
        workdir: str | None,
    ) -> ExecResult:
        raise NotImplementedError

    def _do_remove(self, workload: str, force: bool) -> None:
        raise NotImplementedError

    def _do_list(self, filters: dict[str, list[str] | str]) -> list[Workload]:
        raise NotImplementedError

    def _do_reap(self, workload: Workload) -> None:
        """Delete a finished auto-remove workload. Default: the backend already did."""

    def _do_stats(self, workload: str | None, filters: dict[str, list[str] | str]) -> list[UsageStats]:
        raise NotImplementedError

    def _do_pull(self, image: str) -> None:
        raise CapabilityUnsupported(f"{self.runtime_name} cannot pull images", feature="pull")

    def _no_network_support(self) -> CapabilityUnsupported:
        return CapabilityUnsupported(f"{self.runtime_name} has no network support", feature="network")

    def _do_create_network(self, name: str, internal: bool) -> NetworkHandle:
        raise self._no_network_support()

    def _do_remove_network(self, name: str) -> None:
        raise self._no_network_support()

    def _do_network_exists(self, name: str) -> bool:
        raise self._no_network_support()

    def _do_list_networks(self) -> list[NetworkHandle]:
        raise self._no_network_support()

    def _do_connect(self, workload: str, network: str) -> None:
        raise self._no_network_support()

    def _do_disconnect(self, workload: str, network: str, force: bool) -> None:
        raise self._no_network_support()

    def _do_health(self) -> RuntimeHealth:
        raise NotImplementedError


__all__ = ["BaseRuntimeAdapter"]
