"""Kubernetes API server runtime adapter (REST over httpx).

Same object model as ``KubectlAdapter`` (one pod per workload, one
NetworkPolicy per network) without needing the ``kubectl`` binary, e.g.
from inside a pod using its service-account token.

    .. code-block:: text

        create    POST   /api/v1/namespaces/{ns}/pods            201 | 409 name
                  GET    /api/v1/namespaces/{ns}/pods/{name}     readiness poll
        remove    DELETE /api/v1/namespaces/{ns}/pods/{name}[?gracePeriodSeconds=0]
        list      GET    /api/v1/namespaces/{ns}/pods?labelSelector=&fieldSelector=
        stats     GET    /apis/metrics.k8s.io/v1beta1/namespaces/{ns}/pods[/{name}]
        networks  /apis/networking.k8s.io/v1/namespaces/{ns}/networkpolicies
        connect   PATCH  pods/{name}  strategic merge {"metadata":{"labels":{"network": N}}}
        execute   GET    pods/{name}/exec over a websocket (kubernetes.stream),
                  exit status read from the error channel; no per-call env

Authentication:
    Bearer token read from ``token_path`` (the mounted service-account
    token by default); TLS verified against ``ca_path`` when it exists.

Tags:
    berth, runtimes, kubernetes, rest, httpx, websocket
"""

from __future__ import annotations

import hashlib
import json
import os
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

import httpx
from kubernetes import client as k8s_client
from kubernetes.client.rest import ApiException
from kubernetes.stream import stream as k8s_stream
from kubernetes.stream.ws_client import ERROR_CHANNEL

from berth.codec.shell import join_command, quote_arg
from berth.core.errors import (
    AlreadyExists,
    BackendError,
    BerthError,
    CreationFailed,
    CreationReason,
    ExecFailed,
    NotFound,
    Timeout,
)
from berth.core.logging import get_logger
from berth.retry import ConstantBackoff, RetryStrategy, poll_until
from berth.runtimes import _kube
from berth.runtimes._base import BaseRuntimeAdapter
from berth.runtimes._http import HttpResponse, HttpTransport
from berth.runtimes._types import (
    ExecResult,
    NetworkHandle,
    ResourceLimits,
    RestartPolicy,
    RuntimeCapabilities,
    RuntimeHealth,
    UsageStats,
    Workload,
    WorkloadSpec,
    sanitize_label_value,
    sanitize_pod_name,
)
from berth.telemetry import SampleSource, normalize

logger = get_logger(__name__)

SERVICE_ACCOUNT_DIR = Path("/var/run/secrets/kubernetes.io/serviceaccount")
MERGE_PATCH = {"Content-Type": "application/strategic-merge-patch+json"}


def in_cluster_url() -> str:
    """API server URL from the standard in-cluster environment."""
    host = os.environ.get("KUBERNETES_SERVICE_HOST")
    port = os.environ.get("KUBERNETES_SERVICE_PORT", "443")
    if host:
        if ":" in host:
            host = f"[{host}]"
        return f"https://{host}:{port}"
    return "https://kubernetes.default.svc"


def _status_message(response: HttpResponse) -> str:
    try:
        payload = response.json()
    except BackendError:
        return response.text.strip()
    if isinstance(payload, dict) and payload.get("message"):
        return str(payload["message"])
    return response.text.strip()


def _exec_exit_code(status: str, pod: str) -> int:
    """Exit code from the exec error channel's ``Status`` object."""
    if not status:
        raise BackendError(f"exec stream for pod {pod} closed without a status")
    try:
        payload = json.loads(status)
    except ValueError as exc:
        raise BackendError(f"Unreadable exec status from pod {pod}", diagnostic=status, cause=exc) from exc
    if payload.get("status") == "Success":
        return 0
    if payload.get("reason") == "NonZeroExitCode":
        for cause in (payload.get("details") or {}).get("causes") or []:
            if cause.get("reason") == "ExitCode":
                return int(cause.get("message", 1))
        return 1
    raise BackendError(
        f"kubernetes execute failed on pod {pod}",
        diagnostic=str(payload.get("message") or status),
    )


class KubernetesAPIAdapter(BaseRuntimeAdapter):

    """Runtime adapter over the Kubernetes REST API.

    Args:
        limits: Resource limits written into every pod manifest
        api_url: API server base URL (in-cluster URL by default)
        namespace: Kubernetes namespace for pods and policies
        token: Bearer token; read from ``token_path`` when omitted
        token_path: Service-account token file
        ca_path: CA bundle for the API server certificate
        verify_tls: Set False to skip certificate verification
        timeout: Default per-request timeout in seconds
        readiness: Poll budget for pod readiness (30 × 1s by default)
        sleep: Injected for tests
        transport: httpx transport override (``httpx.MockTransport`` in tests)
        clock: Monotonic clock for exec deadlines
    """

    runtime_name = "kubernetes-api"

    def __init__(
        self,
        limits: ResourceLimits | None = None,
        *,
        api_url: str | None = None,
        namespace: str = "default",
        token: str | None = None,
        token_path: str | Path = SERVICE_ACCOUNT_DIR / "token",
        ca_path: str | Path | None = SERVICE_ACCOUNT_DIR / "ca.crt",
        verify_tls: bool = True,
        timeout: float = 120.0,
        readiness: RetryStrategy | None = None,
        sleep: Callable[[float], None] = time.sleep,
        transport: httpx.BaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(limits)
        if token is None and Path(token_path).is_file():
            token = Path(token_path).read_text().strip()
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        verify: bool | str | Path = verify_tls
        if verify_tls and ca_path is not None and Path(ca_path).is_file():
            verify = ca_path

        self._k8s_namespace = namespace
        self._api_url = api_url or in_cluster_url()
        self._token = token
        self._verify = verify
        self._http = HttpTransport(
            self._api_url,
            headers=headers,
            verify=verify,
            timeout=timeout,
            transport=transport,
            clock=clock,
        )
        self._readiness = readiness or ConstantBackoff(max_retries=30, delay=1.0)
        self._sleep = sleep
        self._clock = clock
        self._core_api: k8s_client.CoreV1Api | None = None

    def close(self) -> None:
        self._http.close()
        if self._core_api is not None:
            self._core_api.api_client.close()

    @property
    def capabilities(self) -> RuntimeCapabilities:
        return RuntimeCapabilities(
            supports_exec=True,
            supports_exec_env=False,
            supports_disk_io_stats=False,
            supports_network_io_stats=False,
            synchronous_create=False,
        )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @property
    def _pods_path(self) -> str:
        return f"/api/v1/namespaces/{self._k8s_namespace}/pods"

    @property
    def _policies_path(self) -> str:
        return f"/apis/networking.k8s.io/v1/namespaces/{self._k8s_namespace}/networkpolicies"

    @property
    def _metrics_path(self) -> str:
        return f"/apis/metrics.k8s.io/v1beta1/namespaces/{self._k8s_namespace}/pods"

    def _error(self, response: HttpResponse, operation: str) -> BerthError:
        message = _status_message(response)
        context = {"http_status": response.status}
        if operation == "create":
            reason = CreationReason.NAME_CONFLICT if response.status == 409 else CreationReason.REJECTED
            return CreationFailed(message or f"pod create failed (HTTP {response.status})", reason=reason).with_context(
                **context
            )
        if response.status == 404:
            return NotFound(message or f"{operation}: not found").with_context(**context)
        if response.status == 409:
            return AlreadyExists(message).with_context(**context)
        return BackendError(
            f"kubernetes {operation} failed (HTTP {response.status})",
            diagnostic=message,
        ).with_context(**context)

    def _request(self, operation: str, path: str, method: str = "GET", **kwargs: Any) -> Any:
        response = self._http.call(path, method, **kwargs)
        if not response.ok:
            raise self._error(response, operation)
        return response.json()

    def _get_pod(self, name: str, operation: str) -> dict[str, Any]:
        return self._request(operation, f"{self._pods_path}/{name}")

    def _get_pods(self, filters: dict[str, list[str] | str], operation: str) -> list[dict[str, Any]]:
        params = {
            "labelSelector": _kube.label_selector(filters),
            "fieldSelector": _kube.field_selector(filters),
        }
        items = (self._request(operation, self._pods_path, params=params) or {}).get("items") or []
        return [pod for pod in items if _kube.matches_filters(pod, filters)]

    def _resolve(self, ref: str) -> str:
        if not _kube.looks_like_uid(ref):
            return sanitize_pod_name(ref)
        for pod in self._get_pods({}, "resolve"):
            if (pod.get("metadata") or {}).get("uid") == ref:
                return str(pod["metadata"]["name"])
        raise NotFound(f'pods with uid "{ref}" not found')

    def _wait_ready(self, name: str) -> str:
        def check() -> str | None:
            try:
                pod = self._get_pod(name, "wait")
            except NotFound:
                # not yet visible to reads, or deleted under us
                return None
            if _kube.pod_readiness(pod):
                return str(pod["metadata"].get("uid", ""))
            return None

        try:
            return poll_until(check, strategy=self._readiness, describe=f"pod {name}", sleep=self._sleep)
        except Timeout as exc:
            raise CreationFailed(
                f"Pod {name} did not become ready",
                reason=CreationReason.NOT_READY,
                cause=exc,
            ) from exc

    def _label_pod(self, pod: str, value: str | None, operation: str) -> None:
        patch = {"metadata": {"labels": {_kube.NETWORK_LABEL: value}}}
        self._request(operation, f"{self._pods_path}/{pod}", "PATCH", body=json.dumps(patch), headers=MERGE_PATCH)

    def _exec_api(self) -> k8s_client.CoreV1Api:
        """CoreV1Api for the websocket exec channel, built on first use."""
        if self._core_api is None:
            configuration = k8s_client.Configuration()
            configuration.host = self._api_url
            configuration.verify_ssl = self._verify is not False
            if isinstance(self._verify, (str, Path)):
                configuration.ssl_ca_cert = str(self._verify)
            if self._token:
                configuration.api_key = {"authorization": f"Bearer {self._token}"}
            self._core_api = k8s_client.CoreV1Api(k8s_client.ApiClient(configuration))
        return self._core_api

    def _open_exec(self, pod: str, command: list[str]) -> Any:
        try:
            return k8s_stream(
                self._exec_api().connect_get_namespaced_pod_exec,
                pod,
                self._k8s_namespace,
                command=command,
                container=_kube.CONTAINER_NAME,
                stdin=False,
                stdout=True,
                stderr=True,
                tty=False,
                _preload_content=False,
            )
        except ApiException as exc:
            # handshake failures arrive as status 0 with the HTTP status in the reason
            diagnostic = str(exc.reason or exc)
            if exc.status == 404 or "404" in diagnostic:
                raise NotFound(f'pods "{pod}" not found', cause=exc) from exc
            raise BackendError(
                f"kubernetes execute failed on pod {pod}",
                diagnostic=diagnostic,
                cause=exc,
            ) from exc


    # ------------------------------------------------------------------
    # Lifecycle hooks
    # ------------------------------------------------------------------

    def _do_create(self, spec: WorkloadSpec) -> str:
        manifest = _kube.pod_manifest(spec, self.limits)
        self._request("create", self._pods_path, "POST", body=manifest)
        name = manifest["metadata"]["name"]
        logger.debug("pod.created", pod=name, namespace=self._k8s_namespace)
        return self._wait_ready(name)

    def _do_execute(
        self,
        workload: str,
        argv: list[str],
        env: dict[str, str],
        timeout: float | None,
        workdir: str | None,
    ) -> ExecResult:
        pod = self._resolve(workload)
        command = argv
        if workdir:
            command = ["sh", "-c", f"cd {quote_arg(workdir)} && exec {join_command(argv)}"]

        deadline = self._clock() + timeout if timeout is not None else None
        stdout: list[str] = []
        stderr: list[str] = []
        session = self._open_exec(pod, command)
        try:
            while session.is_open():
                wait = 1.0 if deadline is None else max(0.0, min(1.0, deadline - self._clock()))
                session.update(timeout=wait)
                if session.peek_stdout():
                    stdout.append(session.read_stdout())
                if session.peek_stderr():
                    stderr.append(session.read_stderr())
                if deadline is not None and self._clock() > deadline:
                    raise Timeout(f"Command in pod {pod} timed out", seconds=timeout)
            status = session.read_channel(ERROR_CHANNEL)
        finally:
            session.close()

        exit_code = _exec_exit_code(status, pod)
        out, err = "".join(stdout), "".join(stderr)
        if exit_code != 0:
            raise ExecFailed(
                f"Command exited with {exit_code} in {pod}",
                exit_code=exit_code,
                stdout=out,
                stderr=err,
            )
        return ExecResult(0, out, err)

    def _do_remove(self, workload: str, force: bool) -> None:

        params = {"gracePeriodSeconds": 0} if force else None
        self._request("remove", f"{self._pods_path}/{self._resolve(workload)}", "DELETE", params=params)

    def _do_list(self, filters: dict[str, list[str] | str]) -> list[Workload]:
        return [
            _kube.workload_from_pod(pod)
            for pod in self._get_pods(filters, "list")
            if not _kube.is_deleting(pod)
        ]

    def _do_reap(self, workload: Workload) -> None:
        try:
            self._request("reap", f"{self._pods_path}/{workload.name}", "DELETE")
        except NotFound:
            logger.debug("pod.already_gone", pod=workload.name)

    def _do_stats(self, workload: str | None, filters: dict[str, list[str] | str]) -> list[UsageStats]:
        if workload is not None:
            pods = [self._get_pod(self._resolve(workload), "stats")]
        else:
            pods = self._get_pods(filters, "stats")
        pods = [p for p in pods if (p.get("status") or {}).get("phase") == "Running" and not _kube.is_deleting(p)]
        if not pods:
            return []

        if workload is not None:
            metrics = [self._request("stats", f"{self._metrics_path}/{pods[0]['metadata']['name']}")]
        else:
            params = {"labelSelector": _kube.label_selector(filters)}
            metrics = (self._request("stats", self._metrics_path, params=params) or {}).get("items") or []

        usage: dict[str, tuple[str, str]] = {}
        for item in metrics:
            containers = item.get("containers") or []
            main = next((c for c in containers if c.get("name") == _kube.CONTAINER_NAME), None)
            if main is None and containers:
                main = containers[0]
            if main is not None:
                pod_usage = main.get("usage") or {}
                usage[item["metadata"]["name"]] = (pod_usage.get("cpu", "0"), pod_usage.get("memory", "0"))

        samples = []
        for pod in pods:
            metadata = pod["metadata"]
            cpu, memory = usage.get(metadata["name"], ("0", "0"))
            samples.append(
                normalize(
                    {
                        "name": metadata["name"],
                        "id": metadata.get("uid", ""),
                        "cpu": cpu,
                        "memory": memory,
                        "memory_limit": _kube.memory_limit(pod),
                    },
                    SampleSource.CLUSTER_METRICS,
                )
            )
        return samples

    def _do_pull(self, image: str) -> None:
        digest = hashlib.sha1(image.encode()).hexdigest()[:10]
        spec = WorkloadSpec(
            image=image,
            name=f"{self.namespace}-pull-{digest}",
            command=["true"],
            restart_policy=RestartPolicy.NO,
        )
        manifest = _kube.pod_manifest(spec, ResourceLimits(namespace=self.namespace))
        manifest["spec"]["containers"][0]["imagePullPolicy"] = "Always"
        name = manifest["metadata"]["name"]
        path = f"{self._pods_path}/{name}"

        self._http.call(path, "DELETE", params={"gracePeriodSeconds": 0})
        self._request("pull", self._pods_path, "POST", body=manifest)
        try:
            self._wait_ready(name)
        except CreationFailed as exc:
            if exc.reason is CreationReason.IMAGE_MISSING:
                raise NotFound(f"Image {image} could not be pulled", cause=exc) from exc
            raise BackendError(f"Pull of {image} did not finish", diagnostic=exc.message, cause=exc) from exc
        finally:
            self._http.call(path, "DELETE", params={"gracePeriodSeconds": 0})

    # ------------------------------------------------------------------
    # Networks
    # ------------------------------------------------------------------

    def _do_create_network(self, name: str, internal: bool) -> NetworkHandle:
        manifest = _kube.network_policy_manifest(name, internal=internal, namespace_label=self.namespace)
        created = self._request("create_network", self._policies_path, "POST", body=manifest) or {}
        return NetworkHandle(
            name=name,
            id=str((created.get("metadata") or {}).get("uid", "")),
            driver="networkpolicy",
            scope=self._k8s_namespace,
        )

    def _do_remove_network(self, name: str) -> None:
        self._request("remove_network", f"{self._policies_path}/{sanitize_pod_name(name)}", "DELETE")

    def _do_network_exists(self, name: str) -> bool:
        response = self._http.call(f"{self._policies_path}/{sanitize_pod_name(name)}")
        if response.ok:
            return True
        if response.status == 404:
            return False
        raise self._error(response, "network_exists")

    def _do_list_networks(self) -> list[NetworkHandle]:
        payload = self._request(
            "list_networks",
            self._policies_path,
            params={"labelSelector": f"{self.namespace}-type=network"},
        ) or {}
        return [
            NetworkHandle(
                name=str(item["metadata"]["name"]),
                id=str(item["metadata"].get("uid", "")),
                driver="networkpolicy",
                scope=self._k8s_namespace,
            )
            for item in payload.get("items") or []
        ]

    def _do_connect(self, workload: str, network: str) -> None:
        if not self._do_network_exists(network):
            raise NotFound(f'networkpolicies "{network}" not found')
        self._label_pod(self._resolve(workload), sanitize_label_value(network), "connect")

    def _do_disconnect(self, workload: str, network: str, force: bool) -> None:
        pod = self._resolve(workload)
        labels = _kube.pod_labels(self._get_pod(pod, "disconnect"))
        if labels.get(_kube.NETWORK_LABEL) != sanitize_label_value(network):
            if force:
                logger.debug("network.disconnect_noop", workload=pod, network=network)
                return
            raise NotFound(f"pod {pod} is not connected to network {network}")
        self._label_pod(pod, None, "disconnect")

    def _do_health(self) -> RuntimeHealth:
        response = self._http.call("/version", timeout=10)
        if not response.ok:
            return RuntimeHealth(
                healthy=False,
                runtime=self.runtime_name,
                message=_status_message(response) or f"HTTP {response.status}",
            )
        return RuntimeHealth(
            healthy=True,
            runtime=self.runtime_name,
            version=(response.json() or {}).get("gitVersion"),
        )


__all__ = ["KubernetesAPIAdapter", "in_cluster_url"]
