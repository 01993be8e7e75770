"""Kubernetes manifest building and pod-status reading.

Shared by ``KubectlAdapter`` and ``KubernetesAPIAdapter``: both send the
same pod and NetworkPolicy documents and read the same pod JSON; only the
transport differs.

    .. code-block:: text

        WorkloadSpec + ResourceLimits ──► pod_manifest()        kind: Pod
        network name                  ──► network_policy_manifest()
        pod JSON                      ──► pod_readiness()  ready | pending | raise
                                      ──► workload_from_pod()
        filters {"label": ..., "name": ..., "id": ...}
                                      ──► label_selector() / field_selector()

Network membership is the pod label ``network=<name>``; a NetworkPolicy
selects members by that label.
"""

from __future__ import annotations

import re
from typing import Any

from berth.core.errors import CreationFailed, CreationReason
from berth.runtimes._types import (
    BindMount,
    ResourceLimits,
    TmpfsMount,
    VolumeMount,
    Workload,
    WorkloadSpec,
    filter_values,
    label_matches,
    sanitize_label_value,
    sanitize_pod_name,
)

CONTAINER_NAME = "main"
NETWORK_LABEL = "network"

IMAGE_PULL_ERRORS = frozenset({"ErrImagePull", "ImagePullBackOff", "InvalidImageName", "ErrImageNeverPull"})
REJECTED_REASONS = frozenset({"CreateContainerConfigError", "CreateContainerError", "RunContainerError"})

_UID = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$")


def looks_like_uid(ref: str) -> bool:
    return bool(_UID.match(ref))


def _format_cpu(cpus: float) -> str:
    return f"{cpus:g}"


def pod_manifest(spec: WorkloadSpec, limits: ResourceLimits) -> dict[str, Any]:
    """Render a ``v1/Pod`` document for ``spec``.

    Limits follow the requested values; requests are half of them so the
    pod schedules on busy nodes.
    """
    labels = {key: sanitize_label_value(value) for key, value in spec.labels.items()}
    if spec.network:
        labels[NETWORK_LABEL] = sanitize_label_value(spec.network)

    container: dict[str, Any] = {
        "name": CONTAINER_NAME,
        "image": spec.image,
        "imagePullPolicy": "IfNotPresent",
    }
    if spec.entrypoint:
        container["command"] = [spec.entrypoint]
    if spec.command:
        container["args"] = list(spec.command)
    if spec.workdir:
        container["workingDir"] = spec.workdir
    if spec.env:
        container["env"] = [{"name": key, "value": value} for key, value in spec.env.items()]

    resource_limits: dict[str, str] = {}
    resource_requests: dict[str, str] = {}
    if limits.cpus > 0:
        resource_limits["cpu"] = _format_cpu(limits.cpus)
        resource_requests["cpu"] = _format_cpu(limits.cpus / 2)
    if limits.memory_mb > 0:
        resource_limits["memory"] = f"{limits.memory_mb}Mi"
        resource_requests["memory"] = f"{max(limits.memory_mb // 2, 1)}Mi"
    if resource_limits:
        container["resources"] = {"limits": resource_limits, "requests": resource_requests}

    volumes: list[dict[str, Any]] = []
    mounts: list[dict[str, Any]] = []
    for index, mount in enumerate(spec.mounts):
        volume_name = f"vol-{index}"
        if isinstance(mount, BindMount):
            volumes.append({"name": volume_name, "hostPath": {"path": mount.host_path}})
            mounts.append({"name": volume_name, "mountPath": mount.container_path, "readOnly": mount.read_only})
        elif isinstance(mount, VolumeMount):
            volumes.append({
                "name": volume_name,
                "persistentVolumeClaim": {"claimName": sanitize_pod_name(mount.volume_name)},
            })
            mounts.append({"name": volume_name, "mountPath": mount.container_path, "readOnly": mount.read_only})
        elif isinstance(mount, TmpfsMount):
            empty_dir: dict[str, Any] = {"medium": "Memory"}
            if mount.size_bytes:
                empty_dir["sizeLimit"] = str(mount.size_bytes)
            volumes.append({"name": volume_name, "emptyDir": empty_dir})
            mounts.append({"name": volume_name, "mountPath": mount.container_path})
    if mounts:
        container["volumeMounts"] = mounts

    pod_spec: dict[str, Any] = {
        "restartPolicy": spec.restart_policy.kubernetes,
        "containers": [container],
    }
    if volumes:
        pod_spec["volumes"] = volumes
    if spec.hostname:
        pod_spec["hostname"] = sanitize_pod_name(spec.hostname)[:63]

    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {"name": sanitize_pod_name(spec.name), "labels": labels},
        "spec": pod_spec,
    }


def network_policy_manifest(name: str, *, internal: bool, namespace_label: str) -> dict[str, Any]:
    """Render the NetworkPolicy that stands in for a network.

    Members (pods labelled ``network=<name>``) may always reach each other.
    A non-internal network additionally allows all other traffic.
    """
    peers = [{"podSelector": {"matchLabels": {NETWORK_LABEL: sanitize_label_value(name)}}}]
    if internal:
        ingress: list[dict[str, Any]] = [{"from": peers}]
        egress: list[dict[str, Any]] = [{"to": peers}]
    else:
        ingress = [{}]
        egress = [{}]
    return {
        "apiVersion": "networking.k8s.io/v1",
        "kind": "NetworkPolicy",
        "metadata": {
            "name": sanitize_pod_name(name),
            "labels": {f"{namespace_label}-type": "network"},
        },
        "spec": {
            "podSelector": {"matchLabels": {NETWORK_LABEL: sanitize_label_value(name)}},
            "policyTypes": ["Ingress", "Egress"],
            "ingress": ingress,
            "egress": egress,
        },
    }


def pod_readiness(pod: dict[str, Any]) -> bool:
    """True once the pod can serve exec calls (or has already finished).

    Raises:
        CreationFailed: the image cannot be pulled or the container was rejected
    """
    status = pod.get("status") or {}
    phase = status.get("phase", "")
    container_statuses = status.get("containerStatuses") or []

    for container_status in container_statuses:
        waiting = (container_status.get("state") or {}).get("waiting") or {}
        reason = waiting.get("reason", "")
        if reason in IMAGE_PULL_ERRORS:
            raise CreationFailed(
                waiting.get("message") or reason,
                reason=CreationReason.IMAGE_MISSING,
            )
        if reason in REJECTED_REASONS:
            raise CreationFailed(waiting.get("message") or reason, reason=CreationReason.REJECTED)

    if phase in ("Succeeded", "Failed"):
        return True
    if phase == "Running" and container_statuses:
        return bool(container_statuses[0].get("ready"))
    return False


def workload_from_pod(pod: dict[str, Any]) -> Workload:
    metadata = pod.get("metadata") or {}
    return Workload(
        name=str(metadata.get("name", "")),
        id=str(metadata.get("uid", "")),
        status=str((pod.get("status") or {}).get("phase", "")),
        labels=dict(metadata.get("labels") or {}),
    )


def is_deleting(pod: dict[str, Any]) -> bool:
    return bool((pod.get("metadata") or {}).get("deletionTimestamp"))


def memory_limit(pod: dict[str, Any]) -> str:
    containers = (pod.get("spec") or {}).get("containers") or []
    if not containers:
        return ""
    return str(((containers[0].get("resources") or {}).get("limits") or {}).get("memory") or "")


def pod_labels(pod: dict[str, Any]) -> dict[str, str]:
    return dict((pod.get("metadata") or {}).get("labels") or {})


def label_selector(filters: dict[str, list[str] | str]) -> str | None:
    """``{"label": ["a", "b=c"]}`` → ``"a,b=c"``."""
    selectors = filter_values(filters.get("label", []))
    return ",".join(selectors) if selectors else None


def field_selector(filters: dict[str, list[str] | str]) -> str | None:
    names = filter_values(filters.get("name", []))
    if len(names) == 1:
        return f"metadata.name={sanitize_pod_name(names[0])}"
    return None


def matches_filters(pod: dict[str, Any], filters: dict[str, list[str] | str]) -> bool:
    """Apply the filters a selector could not express (several names, ids)."""
    metadata = pod.get("metadata") or {}
    labels = pod_labels(pod)
    if not all(label_matches(labels, s) for s in filter_values(filters.get("label", []))):
        return False
    names = filter_values(filters.get("name", []))
    if names and metadata.get("name") not in {sanitize_pod_name(n) for n in names}:
        return False
    ids = filter_values(filters.get("id", []))
    if ids and not any(str(metadata.get("uid", "")).startswith(i) for i in ids):
        return False
    return True


__all__ = [
    "CONTAINER_NAME",
    "NETWORK_LABEL",
    "looks_like_uid",
    "pod_manifest",
    "network_policy_manifest",
    "pod_readiness",
    "workload_from_pod",
    "is_deleting",
    "memory_limit",
    "pod_labels",
    "label_selector",
    "field_selector",
    "matches_filters",
]
