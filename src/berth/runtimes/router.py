"""Runtime adapter router and the settings-driven adapter factory.

Architecture:

    .. code-block:: text

        RuntimeAdapterRouter: adapter registry
        ┌──────────────────────────────────────────────────────────────┐
        │  register(adapter)       → stores by adapter.runtime_name    │
        │  unregister(name)        → removes adapter                   │
        │  get(name)               → exact lookup by name              │
        │  list_runtimes()         → all registered names              │
        │  set_default(name)       → fallback when no backend is named │
        │  route(backend=None)     → named adapter, else the default   │
        │  health_all()            → health of every registered adapter│
        └──────────────────────────────────────────────────────────────┘

        create_adapter(settings)
            settings.backend == "docker-cli"      → DockerCLIAdapter
                                "docker-api"      → DockerAPIAdapter
                                "kubectl"         → KubectlAdapter
                                "kubernetes-api"  → KubernetesAPIAdapter
                                "stub"            → StubRuntimeAdapter

    .. mermaid::

        flowchart TD
            S[BerthSettings] --> F{create_adapter}
            F --> R[RuntimeAdapterRouter]
            R -->|backend='kubectl'| K[KubectlAdapter]
            R -->|backend=None| DEF[Default adapter]
            R -->|not registered| ERR[NotFound]

Example:
    >>> router = RuntimeAdapterRouter()
    >>> router.register(StubRuntimeAdapter())
    >>> router.route().runtime_name
    'stub'

Manifesto:
    Adding a backend is registering an adapter; callers never branch on
    backend names themselves.

Tags:
    berth, runtimes, router, adapter-selection, factory

Doc-Types:
    api-reference
"""

from __future__ import annotations

from berth.core.errors import NotFound, ValidationError
from berth.core.logging import get_logger
from berth.core.settings import BerthSettings
from berth.retry import ConstantBackoff
from berth.runtimes._base import BaseRuntimeAdapter
from berth.runtimes._types import RuntimeAdapter, RuntimeHealth
from berth.runtimes.docker_api import DockerAPIAdapter
from berth.runtimes.docker_cli import DockerCLIAdapter
from berth.runtimes.kubectl import KubectlAdapter
from berth.runtimes.kubernetes_api import KubernetesAPIAdapter
from berth.runtimes.stub import StubRuntimeAdapter

logger = get_logger(__name__)


class RuntimeAdapterRouter:
    """Registry of named runtime adapters with a default.

    Routing order:

    1. ``backend`` given → exact match by name
    2. no ``backend`` → the default adapter
    3. otherwise → ``NotFound``

    Example:
        >>> router = RuntimeAdapterRouter()
        >>> router.register(docker_adapter)
        >>> router.register(kubectl_adapter)
        >>> router.set_default("kubectl")
        >>> router.route("docker-cli")  # → docker_adapter
    """

    def __init__(self) -> None:
        self._adapters: dict[str, RuntimeAdapter] = {}
        self._default_name: str | None = None

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def register(self, adapter: RuntimeAdapter) -> None:
        """Register an adapter under its ``runtime_name``.

        A second adapter with the same name replaces the first. The first
        adapter registered becomes the default.
        """
        name = adapter.runtime_name
        if name in self._adapters:
            logger.warning("router.adapter_replaced", runtime=name)
        self._adapters[name] = adapter
        logger.info("router.adapter_registered", runtime=name)

        if self._default_name is None:
            self._default_name = name

    def unregister(self, name: str) -> bool:
        if name not in self._adapters:
            return False
        del self._adapters[name]
        logger.info("router.adapter_unregistered", runtime=name)
        if self._default_name == name:
            self._default_name = None
            logger.warning("router.default_unregistered", runtime=name)
        return True

    def get(self, name: str) -> RuntimeAdapter | None:
        return self._adapters.get(name)

    def set_default(self, name: str) -> None:
        """Make ``name`` the default.

        Raises:
            NotFound: no adapter registered under that name
        """
        if name not in self._adapters:
            raise NotFound(f"Cannot set default: no adapter registered as '{name}'")
        self._default_name = name
        logger.info("router.default_set", runtime=name)

    def list_runtimes(self) -> list[str]:
        return sorted(self._adapters.keys())

    @property
    def default_name(self) -> str | None:
        return self._default_name

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def route(self, backend: str | None = None) -> RuntimeAdapter:
        """Select an adapter by name, falling back to the default.

        Raises:
            NotFound: nothing registered under ``backend``, or no default
        """
        if backend:
            adapter = self._adapters.get(backend)
            if adapter is None:
                available = ", ".join(self.list_runtimes()) or "(none)"
                raise NotFound(f"No runtime adapter registered as '{backend}'. Available: {available}")
            return adapter

        if self._default_name and self._default_name in self._adapters:
            return self._adapters[self._default_name]

        if not self._adapters:
            raise NotFound("No runtime adapters registered")
        raise NotFound(
            "No default runtime set and no backend named. "
            f"Available runtimes: {', '.join(self.list_runtimes())}"
        )

    def health_all(self) -> dict[str, RuntimeHealth]:
        """Health of every registered adapter, keyed by runtime name."""
        return {name: adapter.health() for name, adapter in self._adapters.items()}

    def __len__(self) -> int:
        return len(self._adapters)

    def __contains__(self, name: str) -> bool:
        return name in self._adapters

    def __repr__(self) -> str:
        names = ", ".join(self.list_runtimes())
        default = f", default={self._default_name}" if self._default_name else ""
        return f"RuntimeAdapterRouter([{names}]{default})"


def create_adapter(settings: BerthSettings | None = None) -> BaseRuntimeAdapter:
    """Build the adapter ``settings.backend`` names, configured from ``settings``.

    Raises:
        ValidationError: unknown backend name
    """
    settings = settings or BerthSettings()
    limits = settings.resource_limits()
    readiness = ConstantBackoff(max_retries=settings.readiness_retries, delay=settings.readiness_interval)
    backend = settings.backend

    adapter: BaseRuntimeAdapter
    if backend == "docker-cli":
        adapter = DockerCLIAdapter(
            limits,
            binary=settings.docker_binary,
            timeout=settings.command_timeout,
            registry_auth=settings.registry_auth(),
            host=settings.docker_host,
            context=settings.docker_context,
        )
    elif backend == "docker-api":
        adapter = DockerAPIAdapter(
            limits,
            socket=settings.docker_socket,
            api_version=settings.docker_api_version,
            timeout=settings.command_timeout,
            registry_auth=settings.registry_auth(),
        )
    elif backend == "kubectl":
        adapter = KubectlAdapter(
            limits,
            binary=settings.kubectl_binary,
            kubeconfig=str(settings.kubeconfig) if settings.kubeconfig else None,
            namespace=settings.k8s_namespace,
            timeout=settings.command_timeout,
            readiness=readiness,
        )
    elif backend == "kubernetes-api":
        adapter = KubernetesAPIAdapter(
            limits,
            api_url=settings.k8s_api_url,
            namespace=settings.k8s_namespace,
            token_path=settings.k8s_token_path,
            ca_path=settings.k8s_ca_path,
            verify_tls=settings.k8s_verify_tls,
            timeout=settings.command_timeout,
            readiness=readiness,
        )
    elif backend == "stub":
        adapter = StubRuntimeAdapter(limits)
    else:
        raise ValidationError(f"Unknown backend {backend!r}")

    logger.debug("adapter.created", backend=backend, namespace=limits.namespace)
    return adapter


__all__ = ["RuntimeAdapterRouter", "create_adapter"]
