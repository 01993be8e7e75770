"""Environment-driven settings for berth.

``BerthSettings`` chooses the backend and carries every knob a backend needs
(binaries, socket path, cluster endpoint, readiness budget). Values come
from ``BERTH_*`` environment variables or a ``.env`` file.

Manifesto:
    Configuration should be explicit, validated, and environment-driven.
    Resource defaults are read once and frozen into a ``ResourceLimits``
    value handed to the adapter at construction; nothing mutates them later.

Examples:
    >>> import os
    >>> os.environ["BERTH_BACKEND"] = "kubectl"
    >>> BerthSettings().backend
    'kubectl'

Tags:
    settings, configuration, pydantic, environment, berth

Doc-Types:
    - API Reference
    - Configuration Guide
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from berth.runtimes._types import RegistryAuth, ResourceLimits

BackendName = Literal["docker-cli", "docker-api", "kubectl", "kubernetes-api", "stub"]


class BerthSettings(BaseSettings):
    """Settings shared by the library, the adapters and the CLI.

    Fields
    ──────
    backend             : Which adapter ``create_adapter`` builds
    namespace           : Label prefix for managed workloads
    cpus/memory_mb/...  : Default resource limits for created workloads
    docker_*            : Docker CLI binary, remote host or context, Engine socket and API version
    kubectl_binary      : kubectl executable
    kubeconfig          : Optional kubeconfig path passed to kubectl
    k8s_*               : Cluster namespace and REST API endpoint
    registry_*          : Credentials used by pull (docker backends)
    readiness_*         : Poll budget for cluster backends
    command_timeout     : Deadline for ordinary backend calls
    log_level/log_json  : Structlog configuration
    """

    model_config = SettingsConfigDict(
        env_prefix="BERTH_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Backend selection ────────────────────────────────────────
    backend: BackendName = "docker-cli"
    namespace: str = "berth"

    # ── Resource defaults ────────────────────────────────────────
    cpus: float = Field(default=0.0, ge=0)
    memory_mb: int = Field(default=0, ge=0)
    swap_mb: int = Field(default=0, ge=0)

    # ── Docker ───────────────────────────────────────────────────
    docker_binary: str = "docker"
    docker_socket: Path = Path("/var/run/docker.sock")
    docker_api_version: str = "v1.43"
    docker_host: str | None = None
    docker_context: str | None = None

    # ── Kubernetes ───────────────────────────────────────────────
    kubectl_binary: str = "kubectl"
    kubeconfig: Path | None = None
    k8s_namespace: str = "default"
    k8s_api_url: str | None = None
    k8s_token_path: Path = Path("/var/run/secrets/kubernetes.io/serviceaccount/token")
    k8s_ca_path: Path = Path("/var/run/secrets/kubernetes.io/serviceaccount/ca.crt")
    k8s_verify_tls: bool = True

    # ── Registry ─────────────────────────────────────────────────
    registry_username: str | None = None
    registry_password: SecretStr | None = None
    registry_server: str = ""

    # ── Timing ───────────────────────────────────────────────────
    readiness_retries: int = Field(default=30, ge=1)
    readiness_interval: float = Field(default=1.0, ge=0)
    command_timeout: float = Field(default=120.0, gt=0)

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    log_json: bool | None = None

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()

    def resource_limits(self) -> ResourceLimits:
        """Freeze the resource defaults into an immutable value."""
        return ResourceLimits(
            cpus=self.cpus,
            memory_mb=self.memory_mb,
            swap_mb=self.swap_mb,
            namespace=self.namespace,
        )

    def registry_auth(self) -> RegistryAuth | None:
        """Registry credentials, or None when no username is configured."""
        if not self.registry_username:
            return None
        password = self.registry_password.get_secret_value() if self.registry_password else ""
        return RegistryAuth(username=self.registry_username, password=password, server=self.registry_server)


__all__ = ["BackendName", "BerthSettings"]
