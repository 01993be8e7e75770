"""Docker Engine API runtime adapter (HTTP over the daemon's Unix socket).

    .. code-block:: text

        create   POST /containers/create?name=N   201 {Id}   404 image  409 name
                 POST /containers/{id}/start      204 | 304
        execute  POST /containers/{ref}/exec      201 {Id}
                 POST /exec/{id}/start            raw framed stream ──► StreamDemultiplexer
                 GET  /exec/{id}/json             {ExitCode}
        remove   DELETE /containers/{ref}?force=  204 | 404
        list     GET  /containers/json?all=true&filters={...}
        stats    GET  /containers/{ref}/stats?stream=false   (CUMULATIVE_COUNTERS)
        pull     POST /images/create?fromImage=&tag=         X-Registry-Auth
        networks /networks, /networks/create, /networks/{n}/connect|disconnect

Error bodies are ``{"message": "..."}``; the message is kept verbatim as
the diagnostic.

Tags:
    berth, runtimes, docker, engine-api, httpx, unix-socket
"""

from __future__ import annotations

import json
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

import httpx

from berth.codec.demux import StreamDemultiplexer
from berth.core.errors import (
    AlreadyExists,
    BackendError,
    BerthError,
    CreationFailed,
    CreationReason,
    ExecFailed,
    NotFound,
)
from berth.core.logging import get_logger
from berth.runtimes._base import BaseRuntimeAdapter
from berth.runtimes._http import HttpResponse, HttpTransport
from berth.runtimes._types import (
    BindMount,
    ExecResult,
    ImageReference,
    NetworkHandle,
    RegistryAuth,
    ResourceLimits,
    RestartPolicy,
    RuntimeHealth,
    TmpfsMount,
    UsageStats,
    VolumeMount,
    Workload,
    WorkloadSpec,
    filter_values,
)
from berth.telemetry import SampleSource, normalize

logger = get_logger(__name__)

CPU_PERIOD = 100_000


def _message(response: HttpResponse) -> str:
    try:
        payload = response.json()
    except BackendError:
        return response.text.strip()
    if isinstance(payload, dict) and payload.get("message"):
        return str(payload["message"])
    return response.text.strip()


class DockerAPIAdapter(BaseRuntimeAdapter):
    """Runtime adapter over the Docker Engine HTTP API.

    Args:
        limits: Resource limits applied to every created workload
        socket: Path of the daemon's Unix socket
        api_version: Engine API version prefix (``v1.43``)
        timeout: Default per-request timeout in seconds
        registry_auth: Credentials sent as ``X-Registry-Auth`` on pull
        transport: httpx transport override (``httpx.MockTransport`` in tests)
        clock: Monotonic clock for exec deadlines
    """

    runtime_name = "docker-api"
    supported_filters = None

    def __init__(
        self,
        limits: ResourceLimits | None = None,
        *,
        socket: str | Path = "/var/run/docker.sock",
        api_version: str = "v1.43",
        timeout: float = 120.0,
        registry_auth: RegistryAuth | None = None,
        transport: httpx.BaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(limits)
        version = api_version if api_version.startswith("v") else f"v{api_version}"
        self._http = HttpTransport(
            f"http://docker/{version}",
            uds=None if transport is not None else socket,
            timeout=timeout,
            transport=transport,
            clock=clock,
        )
        self._registry_auth = registry_auth

    def close(self) -> None:
        self._http.close()

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _error(self, response: HttpResponse, operation: str, subject: str) -> BerthError:
        message = _message(response)
        context = {"http_status": response.status}
        if response.status == 404:
            return NotFound(message or f"{subject} not found").with_context(**context)
        if response.status == 409 and operation in ("create_network", "connect"):
            return AlreadyExists(message).with_context(**context)
        if "is not connected" in message.lower():
            return NotFound(message).with_context(**context)
        return BackendError(
            f"docker {operation} failed (HTTP {response.status})",
            diagnostic=message,
        ).with_context(**context)

    def _host_config(self, spec: WorkloadSpec) -> dict[str, Any]:
        limits = self.limits
        binds: list[str] = []
        tmpfs: dict[str, str] = {}
        for mount in spec.mounts:
            if isinstance(mount, BindMount):
                binds.append(f"{mount.host_path}:{mount.container_path}:{'ro' if mount.read_only else 'rw'}")
            elif isinstance(mount, VolumeMount):
                binds.append(f"{mount.volume_name}:{mount.container_path}:{'ro' if mount.read_only else 'rw'}")
            elif isinstance(mount, TmpfsMount):
                tmpfs[mount.container_path] = f"size={mount.size_bytes}" if mount.size_bytes else ""

        host: dict[str, Any] = {"AutoRemove": spec.auto_remove}
        if binds:
            host["Binds"] = binds
        if tmpfs:
            host["Tmpfs"] = tmpfs
        if limits.cpus > 0:
            host["CpuQuota"] = int(limits.cpus * CPU_PERIOD)
            host["CpuPeriod"] = CPU_PERIOD
        if limits.memory_mb > 0:
            host["Memory"] = limits.memory_bytes
        if limits.swap_mb > 0:
            host["MemorySwap"] = limits.swap_bytes
        if spec.restart_policy is not RestartPolicy.NO:
            host["RestartPolicy"] = {"Name": spec.restart_policy.value}
        if spec.network:
            host["NetworkMode"] = spec.network
        return host

    @staticmethod
    def _filters_param(filters: dict[str, list[str] | str]) -> str | None:
        if not filters:
            return None
        return json.dumps({key: filter_values(raw) for key, raw in filters.items()})

    # ------------------------------------------------------------------
    # Lifecycle hooks
    # ------------------------------------------------------------------

    def _do_create(self, spec: WorkloadSpec) -> str:
        body: dict[str, Any] = {
            "Image": spec.image,
            "Labels": spec.labels,
            "Env": [f"{k}={v}" for k, v in spec.env.items()],
            "HostConfig": self._host_config(spec),
        }
        if spec.command:
            body["Cmd"] = spec.command
        if spec.entrypoint:
            body["Entrypoint"] = [spec.entrypoint]
        if spec.workdir:
            body["WorkingDir"] = spec.workdir
        if spec.hostname:
            body["Hostname"] = spec.hostname

        response = self._http.call("/containers/create", "POST", body, params={"name": spec.name})
        if response.status != 201:
            message = _message(response)
            reasons = {404: CreationReason.IMAGE_MISSING, 409: CreationReason.NAME_CONFLICT}
            raise CreationFailed(
                message or f"create returned HTTP {response.status}",
                reason=reasons.get(response.status, CreationReason.REJECTED),
            ).with_context(http_status=response.status)
        workload_id = str(response.json()["Id"])

        started = self._http.call(f"/containers/{workload_id}/start", "POST")
        if started.status not in (204, 304):
            # left in place for inspection
            raise CreationFailed(
                _message(started) or f"start returned HTTP {started.status}",
                reason=CreationReason.REJECTED,
            ).with_context(http_status=started.status, workload=workload_id)
        return workload_id

    def _do_execute(
        self,
        workload: str,
        argv: list[str],
        env: dict[str, str],
        timeout: float | None,
        workdir: str | None,
    ) -> ExecResult:
        body: dict[str, Any] = {
            "AttachStdout": True,
            "AttachStderr": True,
            "Tty": False,
            "Cmd": argv,
            "Env": [f"{k}={v}" for k, v in env.items()],
        }
        if workdir:
            body["WorkingDir"] = workdir
        created = self._http.call(f"/containers/{workload}/exec", "POST", body)
        if created.status != 201:
            raise self._error(created, "execute", workload)
        exec_id = str(created.json()["Id"])

        demuxer = StreamDemultiplexer()
        started = self._http.stream(
            f"/exec/{exec_id}/start",
            demuxer.feed,
            body={"Detach": False, "Tty": False},
            timeout=timeout,
        )
        if not started.ok:
            raise self._error(started, "execute", workload)
        output = demuxer.close()
        stdout = output.stdout.decode("utf-8", errors="replace")
        stderr = output.stderr.decode("utf-8", errors="replace")

        inspected = self._http.call(f"/exec/{exec_id}/json")
        if not inspected.ok:
            raise self._error(inspected, "execute", workload)
        exit_code = int((inspected.json() or {}).get("ExitCode") or 0)
        if exit_code != 0:
            raise ExecFailed(
                f"Command exited with {exit_code} in {workload}",
                exit_code=exit_code,
                stdout=stdout,
                stderr=stderr,
            )
        return ExecResult(exit_code, stdout, stderr)

    def _do_remove(self, workload: str, force: bool) -> None:
        response = self._http.call(
            f"/containers/{workload}",
            "DELETE",
            params={"force": "true" if force else "false"},
        )
        if response.status != 204:
            raise self._error(response, "remove", workload)

    def _do_list(self, filters: dict[str, list[str] | str]) -> list[Workload]:
        response = self._http.call(
            "/containers/json",
            params={"all": "true", "filters": self._filters_param(filters)},
        )
        if not response.ok:
            raise self._error(response, "list", "containers")
        return [
            Workload(
                name=str((row.get("Names") or [""])[0]).lstrip("/"),
                id=str(row.get("Id", "")),
                status=str(row.get("Status") or row.get("State") or ""),
                labels=dict(row.get("Labels") or {}),
            )
            for row in response.json() or []
        ]

    def _sample(self, ref: str) -> dict[str, Any]:
        response = self._http.call(f"/containers/{ref}/stats", params={"stream": "false"})
        if not response.ok:
            raise self._error(response, "stats", ref)
        return response.json()

    def _do_stats(self, workload: str | None, filters: dict[str, list[str] | str]) -> list[UsageStats]:
        if workload is not None:
            refs = [workload]
        else:
            response = self._http.call("/containers/json", params={"filters": self._filters_param(filters)})
            if not response.ok:
                raise self._error(response, "stats", "containers")
            refs = [str(row["Id"]) for row in response.json() or []]
        return [normalize(self._sample(ref), SampleSource.CUMULATIVE_COUNTERS) for ref in refs]

    def _do_pull(self, image: str) -> None:
        ref = ImageReference.parse(image)
        headers = {}
        if self._registry_auth is not None:
            headers["X-Registry-Auth"] = self._registry_auth.encode()
        params = {"fromImage": ref.repository, "tag": ref.digest or ref.tag}
        response = self._http.call("/images/create", "POST", headers=headers, params=params)
        if not response.ok:
            raise self._error(response, "pull", image)
        # progress stream: the daemon reports failures inline with status 200
        for line in response.text.splitlines():
            try:
                event = json.loads(line)
            except ValueError:
                continue
            if isinstance(event, dict) and event.get("error"):
                error = str(event["error"])
                if "not found" in error.lower() or "denied" in error.lower():
                    raise NotFound(error)
                raise BackendError(f"pull of {image} failed", diagnostic=error)

    # ------------------------------------------------------------------
    # Networks
    # ------------------------------------------------------------------

    def _do_create_network(self, name: str, internal: bool) -> NetworkHandle:
        response = self._http.call(
            "/networks/create",
            "POST",
            {"Name": name, "Driver": "bridge", "Internal": internal, "CheckDuplicate": True},
        )
        if response.status != 201:
            raise self._error(response, "create_network", name)
        return NetworkHandle(name=name, id=str(response.json()["Id"]), driver="bridge", scope="local")

    def _do_remove_network(self, name: str) -> None:
        response = self._http.call(f"/networks/{name}", "DELETE")
        if response.status not in (200, 204):
            raise self._error(response, "remove_network", name)

    def _do_network_exists(self, name: str) -> bool:
        response = self._http.call(f"/networks/{name}")
        if response.status == 404:
            return False
        if not response.ok:
            raise self._error(response, "network_exists", name)
        return True

    def _do_list_networks(self) -> list[NetworkHandle]:
        response = self._http.call("/networks")
        if not response.ok:
            raise self._error(response, "list_networks", "networks")
        return [
            NetworkHandle(
                name=str(row.get("Name", "")),
                id=str(row.get("Id", "")),
                driver=str(row.get("Driver", "")),
                scope=str(row.get("Scope", "")),
            )
            for row in response.json() or []
        ]

    def _do_connect(self, workload: str, network: str) -> None:
        response = self._http.call(f"/networks/{network}/connect", "POST", {"Container": workload})
        if not response.ok:
            raise self._error(response, "connect", network)

    def _do_disconnect(self, workload: str, network: str, force: bool) -> None:
        response = self._http.call(
            f"/networks/{network}/disconnect",
            "POST",
            {"Container": workload, "Force": force},
        )
        if response.ok:
            return
        error = self._error(response, "disconnect", network)
        if force and "is not connected" in _message(response).lower():
            logger.debug("network.disconnect_noop", workload=workload, network=network)
            return
        raise error

    def _do_health(self) -> RuntimeHealth:
        ping = self._http.call("/_ping", timeout=10)
        if not ping.ok:
            return RuntimeHealth(healthy=False, runtime=self.runtime_name, message=_message(ping))
        version = self._http.call("/version", timeout=10)
        payload = version.json() if version.ok else {}
        return RuntimeHealth(
            healthy=True,
            runtime=self.runtime_name,
            version=(payload or {}).get("Version"),
        )


__all__ = ["DockerAPIAdapter"]
