"""kubectl runtime adapter.

Drives a cluster through the ``kubectl`` binary: one pod per workload
(container ``main``), one NetworkPolicy per network.

    .. code-block:: text

        create   → kubectl create -f -          (pod manifest on stdin, YAML)
                   then poll: kubectl get pod NAME -o json
                     ready / Succeeded / Failed       → return metadata.uid
                     ErrImagePull / ImagePullBackOff  → CreationFailed(image_missing)
                     budget exhausted                 → CreationFailed(not_ready)
        execute  → kubectl exec NAME -c main -- [env K=V ...] CMD...
                   kubectl exec NAME -c main -- sh -c 'cd DIR && exec CMD'   (workdir)
        remove   → kubectl delete pod NAME --wait=false [--force --grace-period=0]
        list     → kubectl get pods -o json [-l SELECTOR] [--field-selector metadata.name=X]
        stats    → kubectl top pod --no-headers [-l SELECTOR]   (CLUSTER_METRICS)
        networks → NetworkPolicy selecting pods labelled network=NAME
        connect  → kubectl label pod NAME network=NET --overwrite
        pull     → throwaway pod running ``true`` with the image, then delete

Workload references may be a pod name or a pod uid; names are sanitised
the same way ``create`` sanitised them.

Tags:
    berth, runtimes, kubernetes, kubectl, subprocess
"""

from __future__ import annotations

import hashlib
import json
import time
from collections.abc import Callable
from typing import Any

import yaml

from berth.codec.shell import join_command, quote_arg, quote_env
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
from berth.runtimes._process import CommandResult, CommandRunner, run_command
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

_NOT_FOUND_MARKERS = ("notfound", "not found")
_EXISTS_MARKERS = ("alreadyexists", "already exists")


def _parse_json(text: str, what: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise BackendError(f"Unparseable kubectl output for {what}: {exc}", diagnostic=text, cause=exc) from exc


def parse_top_output(text: str) -> dict[str, tuple[str, str]]:
    """``kubectl top pod --no-headers`` → ``{name: (cpu, memory)}``."""
    usage: dict[str, tuple[str, str]] = {}
    for line in text.splitlines():
        columns = line.split()
        if len(columns) >= 3:
            usage[columns[0]] = (columns[1], columns[2])
    return usage


class KubectlAdapter(BaseRuntimeAdapter):
    """Runtime adapter over the ``kubectl`` command line.

    Args:
        limits: Resource limits written into every pod manifest
        binary: kubectl executable
        kubeconfig: Explicit kubeconfig (``--kubeconfig``); default lookup otherwise
        namespace: Kubernetes namespace for pods and policies
        runner: Process-execution primitive (``run_command`` by default)
        timeout: Deadline for each kubectl call
        readiness: Poll budget for pod readiness (30 × 1s by default)
        sleep: Injected for tests
    """

    runtime_name = "kubectl"

    def __init__(
        self,
        limits: ResourceLimits | None = None,
        *,
        binary: str = "kubectl",
        kubeconfig: str | None = None,
        namespace: str = "default",
        runner: CommandRunner = run_command,
        timeout: float = 120.0,
        readiness: RetryStrategy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__(limits)
        self._binary = binary
        self._kubeconfig = kubeconfig
        self._k8s_namespace = namespace
        self._runner = runner
        self._timeout = timeout
        self._readiness = readiness or ConstantBackoff(max_retries=30, delay=1.0)
        self._sleep = sleep

    @property
    def capabilities(self) -> RuntimeCapabilities:
        return RuntimeCapabilities(
            supports_disk_io_stats=False,
            supports_network_io_stats=False,
            synchronous_create=False,
        )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _kubectl(
        self,
        args: list[str],
        *,
        operation: str,
        check: bool = True,
        stdin: str | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        argv = [self._binary]
        if self._kubeconfig:
            argv += ["--kubeconfig", str(self._kubeconfig)]
        argv += ["--namespace", self._k8s_namespace, *args]
        result = self._runner(argv, stdin=stdin, timeout=timeout if timeout is not None else self._timeout)
        if check and not result.ok:
            raise self._classify(result, operation)
        return result

    def _classify(self, result: CommandResult, operation: str) -> BerthError:
        diagnostic = (result.stderr or result.stdout).strip()
        lowered = diagnostic.lower()
        context = {"command": result.command_line, "exit_code": result.exit_code}

        if operation == "create":
            if any(marker in lowered for marker in _EXISTS_MARKERS):
                reason = CreationReason.NAME_CONFLICT
            else:
                reason = CreationReason.REJECTED
            return CreationFailed(diagnostic or "kubectl create failed", reason=reason).with_context(**context)
        if any(marker in lowered for marker in _NOT_FOUND_MARKERS):
            return NotFound(diagnostic).with_context(**context)
        if any(marker in lowered for marker in _EXISTS_MARKERS):
            return AlreadyExists(diagnostic).with_context(**context)
        return BackendError(
            f"kubectl {operation} failed (exit {result.exit_code})",
            diagnostic=diagnostic,
        ).with_context(**context)

    def _get_pod(self, name: str, operation: str) -> dict[str, Any]:
        result = self._kubectl(["get", "pod", name, "-o", "json"], operation=operation)
        return _parse_json(result.stdout, "get pod")

    def _get_pods(self, filters: dict[str, list[str] | str], operation: str) -> list[dict[str, Any]]:
        args = ["get", "pods", "-o", "json"]
        selector = _kube.label_selector(filters)
        if selector:
            args += ["-l", selector]
        fields = _kube.field_selector(filters)
        if fields:
            args += ["--field-selector", fields]
        result = self._kubectl(args, operation=operation)
        items = _parse_json(result.stdout, "get pods").get("items") or []
        return [pod for pod in items if _kube.matches_filters(pod, filters)]

    def _resolve(self, ref: str) -> str:
        """Pod name for a workload reference (name or uid)."""
        if not _kube.looks_like_uid(ref):
            return sanitize_pod_name(ref)
        for pod in self._get_pods({}, "resolve"):
            if (pod.get("metadata") or {}).get("uid") == ref:
                return str(pod["metadata"]["name"])
        raise NotFound(f'pods with uid "{ref}" not found')

    def _apply_manifest(self, manifest: dict[str, Any], operation: str) -> dict[str, Any]:
        result = self._kubectl(
            ["create", "-f", "-", "-o", "json"],
            operation=operation,
            stdin=yaml.safe_dump(manifest, sort_keys=False),
        )
        return _parse_json(result.stdout, operation)

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

    # ------------------------------------------------------------------
    # Lifecycle hooks
    # ------------------------------------------------------------------

    def _do_create(self, spec: WorkloadSpec) -> str:
        manifest = _kube.pod_manifest(spec, self.limits)
        name = manifest["metadata"]["name"]
        self._apply_manifest(manifest, "create")
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
        if workdir:
            script = f"cd {quote_arg(workdir)} && exec "
            if env:
                script += "env " + " ".join(quote_env(k, v) for k, v in env.items()) + " "
            command = ["sh", "-c", script + join_command(argv)]
        elif env:
            command = ["env", *(f"{k}={v}" for k, v in env.items()), *argv]
        else:
            command = argv

        result = self._kubectl(
            ["exec", pod, "-c", _kube.CONTAINER_NAME, "--", *command],
            operation="execute",
            check=False,
            timeout=timeout,
        )
        if result.ok:
            return ExecResult(result.exit_code, result.stdout, result.stderr)

        lowered = result.stderr.lower()
        if any(marker in lowered for marker in _NOT_FOUND_MARKERS) and "command terminated" not in lowered:
            raise self._classify(result, "execute")
        raise ExecFailed(
            f"Command exited with {result.exit_code} in {pod}",
            exit_code=result.exit_code,
            stdout=result.stdout,
            stderr=result.stderr,
        ).with_context(command=result.command_line)

    def _do_remove(self, workload: str, force: bool) -> None:
        args = ["delete", "pod", self._resolve(workload), "--wait=false"]
        if force:
            args += ["--force", "--grace-period=0"]
        self._kubectl(args, operation="remove")

    def _do_list(self, filters: dict[str, list[str] | str]) -> list[Workload]:
        return [
            _kube.workload_from_pod(pod)
            for pod in self._get_pods(filters, "list")
            if not _kube.is_deleting(pod)
        ]

    def _do_reap(self, workload: Workload) -> None:
        self._kubectl(
            ["delete", "pod", workload.name, "--wait=false", "--ignore-not-found"],
            operation="reap",
        )

    def _do_stats(self, workload: str | None, filters: dict[str, list[str] | str]) -> list[UsageStats]:
        if workload is not None:
            pods = [self._get_pod(self._resolve(workload), "stats")]
        else:
            pods = self._get_pods(filters, "stats")
        pods = [p for p in pods if (p.get("status") or {}).get("phase") == "Running" and not _kube.is_deleting(p)]
        if not pods:
            return []

        args = ["top", "pod", "--no-headers"]
        if workload is not None:
            args.insert(2, pods[0]["metadata"]["name"])
        else:
            selector = _kube.label_selector(filters)
            if selector:
                args += ["-l", selector]
        usage = parse_top_output(self._kubectl(args, operation="stats").stdout)

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
        self._kubectl(["delete", "pod", name, "--ignore-not-found"], operation="pull")
        self._apply_manifest(manifest, "pull")
        try:
            self._wait_ready(name)
        except CreationFailed as exc:
            if exc.reason is CreationReason.IMAGE_MISSING:
                raise NotFound(f"Image {image} could not be pulled", cause=exc) from exc
            raise BackendError(f"Pull of {image} did not finish", diagnostic=exc.message, cause=exc) from exc
        finally:
            self._kubectl(
                ["delete", "pod", name, "--wait=false", "--ignore-not-found"],
                operation="pull",
                check=False,
            )

    # ------------------------------------------------------------------
    # Networks
    # ------------------------------------------------------------------

    def _do_create_network(self, name: str, internal: bool) -> NetworkHandle:
        manifest = _kube.network_policy_manifest(name, internal=internal, namespace_label=self.namespace)
        created = self._apply_manifest(manifest, "create_network")
        return NetworkHandle(
            name=name,
            id=str((created.get("metadata") or {}).get("uid", "")),
            driver="networkpolicy",
            scope=self._k8s_namespace,
        )

    def _do_remove_network(self, name: str) -> None:
        self._kubectl(["delete", "networkpolicy", sanitize_pod_name(name)], operation="remove_network")

    def _do_network_exists(self, name: str) -> bool:
        result = self._kubectl(
            ["get", "networkpolicy", sanitize_pod_name(name), "-o", "name"],
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
        result = self._kubectl(
            ["get", "networkpolicies", "-o", "json", "-l", f"{self.namespace}-type=network"],
            operation="list_networks",
        )
        return [
            NetworkHandle(
                name=str(item["metadata"]["name"]),
                id=str(item["metadata"].get("uid", "")),
                driver="networkpolicy",
                scope=self._k8s_namespace,
            )
            for item in _parse_json(result.stdout, "get networkpolicies").get("items") or []
        ]

    def _do_connect(self, workload: str, network: str) -> None:
        if not self._do_network_exists(network):
            raise NotFound(f'networkpolicies "{network}" not found')
        pod = self._resolve(workload)
        self._kubectl(
            ["label", "pod", pod, f"{_kube.NETWORK_LABEL}={sanitize_label_value(network)}", "--overwrite"],
            operation="connect",
        )

    def _do_disconnect(self, workload: str, network: str, force: bool) -> None:
        pod = self._resolve(workload)
        labels = _kube.pod_labels(self._get_pod(pod, "disconnect"))
        if labels.get(_kube.NETWORK_LABEL) != sanitize_label_value(network):
            if force:
                logger.debug("network.disconnect_noop", workload=pod, network=network)
                return
            raise NotFound(f"pod {pod} is not connected to network {network}")
        self._kubectl(["label", "pod", pod, f"{_kube.NETWORK_LABEL}-"], operation="disconnect")

    def _do_health(self) -> RuntimeHealth:
        result = self._kubectl(["version", "-o", "json"], operation="health", check=False, timeout=10)
        if not result.ok:
            return RuntimeHealth(
                healthy=False,
                runtime=self.runtime_name,
                message=(result.stderr or result.stdout).strip() or "cluster unreachable",
            )
        version = (_parse_json(result.stdout, "version").get("serverVersion") or {}).get("gitVersion")
        return RuntimeHealth(healthy=True, runtime=self.runtime_name, version=version)


__all__ = ["KubectlAdapter", "parse_top_output"]
