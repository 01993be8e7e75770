"""Tests for DockerAPIAdapter against an httpx.MockTransport engine."""

import base64
import json

import httpx
import pytest

from berth.codec.demux import mux
from berth.core.errors import (
    AlreadyExists,
    BackendError,
    CreationFailed,
    CreationReason,
    ExecFailed,
    NotFound,
    Timeout,
)
from berth.runtimes._types import BindMount, RegistryAuth, RestartPolicy, TmpfsMount
from berth.runtimes.docker_api import DockerAPIAdapter
from berth.runtimes.state import WorkloadState


class FakeEngine:
    """Routes ``(method, path-without-version)`` to canned responses."""

    def __init__(self):
        self.routes = {}
        self.requests = []

    def on(self, method, path, status=200, json_body=None, content=b""):
        self.routes[(method, path)] = (status, json_body, content)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path.removeprefix("/v1.43")
        status, json_body, content = self.routes.get((request.method, path), (404, {"message": "no route"}, b""))
        if callable(json_body):
            return json_body(request)
        if json_body is not None:
            return httpx.Response(status, json=json_body)
        return httpx.Response(status, content=content)

    def last(self, method, path):
        for request in reversed(self.requests):
            if request.method == method and request.url.path.endswith(path):
                return request
        raise AssertionError(f"no {method} {path}")


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def adapter(limits, engine):
    return DockerAPIAdapter(limits, transport=httpx.MockTransport(engine))


class TestCreate:
    def test_body_and_start(self, engine, adapter):
        engine.on("POST", "/containers/create", 201, {"Id": "abc123"})
        engine.on("POST", "/containers/abc123/start", 204)

        workload_id = adapter.create(
            "alpine",
            "t1",
            "sleep 30",
            env={"A": "1"},
            mounts=[BindMount("/h", "/c", read_only=True), TmpfsMount("/tmp", size_bytes=64)],
            workdir="/w",
            hostname="box",
            entrypoint="/bin/sh",
            network="n1",
            restart_policy=RestartPolicy.ALWAYS,
            auto_remove=True,
        )
        assert workload_id == "abc123"

        request = engine.last("POST", "/containers/create")
        assert request.url.params["name"] == "t1"
        body = json.loads(request.content)
        assert body["Image"] == "alpine"
        assert body["Cmd"] == ["sleep", "30"]
        assert body["Entrypoint"] == ["/bin/sh"]
        assert body["Env"] == ["A=1"]
        assert body["WorkingDir"] == "/w"
        assert body["Hostname"] == "box"
        assert body["Labels"]["berth-auto-remove"] == "true"
        host = body["HostConfig"]
        assert host["AutoRemove"] is True
        assert host["Binds"] == ["/h:/c:ro"]
        assert host["Tmpfs"] == {"/tmp": "size=64"}
        assert host["CpuQuota"] == 50_000
        assert host["CpuPeriod"] == 100_000
        assert host["Memory"] == 256 * 1024 * 1024
        assert host["MemorySwap"] == 512 * 1024 * 1024
        assert host["RestartPolicy"] == {"Name": "always"}
        assert host["NetworkMode"] == "n1"

    @pytest.mark.parametrize(
        "status, reason",
        [
            (404, CreationReason.IMAGE_MISSING),
            (409, CreationReason.NAME_CONFLICT),
            (400, CreationReason.REJECTED),
        ],
    )
    def test_create_failures(self, engine, adapter, status, reason):
        engine.on("POST", "/containers/create", status, {"message": "daemon says no"})
        with pytest.raises(CreationFailed) as exc_info:
            adapter.create("alpine", "t1")
        assert exc_info.value.reason is reason
        assert exc_info.value.diagnostic == "daemon says no"
        assert exc_info.value.context.http_status == status

    def test_start_failure(self, engine, adapter):
        engine.on("POST", "/containers/create", 201, {"Id": "abc"})
        engine.on("POST", "/containers/abc/start", 500, {"message": "port is already allocated"})
        with pytest.raises(CreationFailed) as exc_info:
            adapter.create("alpine", "t1")
        assert exc_info.value.reason is CreationReason.REJECTED


class TestExecute:
    def _exec_routes(self, engine, *, exit_code, stdout=b"", stderr=b""):
        engine.on("POST", "/containers/t1/exec", 201, {"Id": "e1"})
        engine.on("POST", "/exec/e1/start", 200, content=mux(stdout, stderr))
        engine.on("GET", "/exec/e1/json", 200, {"ExitCode": exit_code, "Running": False})

    def test_output_demultiplexed(self, engine, adapter):
        self._exec_routes(engine, exit_code=0, stdout=b"hello\n", stderr=b"warn\n")
        result = adapter.execute("t1", ["sh", "-c", "echo hello"], env={"A": "1"}, workdir="/w")
        assert result.stdout == "hello\n"
        assert result.stderr == "warn\n"

        body = json.loads(engine.last("POST", "/containers/t1/exec").content)
        assert body["Cmd"] == ["sh", "-c", "echo hello"]
        assert body["Env"] == ["A=1"]
        assert body["WorkingDir"] == "/w"
        assert body["AttachStdout"] and body["AttachStderr"]

    def test_non_zero_exit(self, engine, adapter):
        self._exec_routes(engine, exit_code=3, stderr=b"nope")
        with pytest.raises(ExecFailed) as exc_info:
            adapter.execute("t1", "false")
        assert exc_info.value.exit_code == 3
        assert exc_info.value.stderr == "nope"

    def test_missing_container(self, engine, adapter):
        engine.on("POST", "/containers/t1/exec", 404, {"message": "No such container: t1"})
        with pytest.raises(NotFound):
            adapter.execute("t1", "true")

    def test_not_running(self, engine, adapter):
        engine.on("POST", "/containers/t1/exec", 409, {"message": "Container t1 is not running"})
        with pytest.raises(BackendError) as exc_info:
            adapter.execute("t1", "true")
        assert exc_info.value.diagnostic == "Container t1 is not running"

    def test_stream_timeout(self, engine, adapter):
        engine.on("POST", "/containers/t1/exec", 201, {"Id": "e1"})

        def slow(request):
            raise httpx.ReadTimeout("timed out", request=request)

        engine.on("POST", "/exec/e1/start", json_body=slow)
        with pytest.raises(Timeout):
            adapter.execute("t1", "sleep 10", timeout=1)

    def test_deadline_covers_whole_stream(self, engine, limits):
        # a chatty command: every chunk arrives well inside the read timeout
        ticks = iter([0.0, 0.4, 0.8, 1.2, 1.6, 2.0])
        adapter = DockerAPIAdapter(
            limits,
            transport=httpx.MockTransport(engine),
            clock=lambda: next(ticks),
        )
        engine.on("POST", "/containers/t1/exec", 201, {"Id": "e1"})
        frames = [mux(f"line {i}\n".encode()) for i in range(5)]
        engine.on("POST", "/exec/e1/start", json_body=lambda r: httpx.Response(200, content=iter(frames)))

        with pytest.raises(Timeout) as exc_info:
            adapter.execute("t1", "yes", timeout=1.0)
        assert exc_info.value.seconds == 1.0
        assert ("GET", "/v1.43/exec/e1/json") not in [(r.method, r.url.path) for r in engine.requests]


class TestRemoveAndList:
    def test_remove(self, engine, adapter):
        engine.on("DELETE", "/containers/t1", 204)
        adapter.remove("t1", force=True)
        assert engine.last("DELETE", "/containers/t1").url.params["force"] == "true"

    def test_remove_missing(self, engine, adapter):
        engine.on("DELETE", "/containers/t1", 404, {"message": "No such container: t1"})
        with pytest.raises(NotFound, match="No such container"):
            adapter.remove("t1")

    def test_list(self, engine, adapter):
        engine.on(
            "GET",
            "/containers/json",
            200,
            [
                {"Id": "a", "Names": ["/t1"], "Status": "Up 2 seconds", "Labels": {}},
                {"Id": "b", "Names": ["/t2"], "Status": "Exited (0) 1 second ago",
                 "Labels": {"berth-auto-remove": "true"}},
            ],
        )
        workloads = adapter.list({"label": "berth-type"})
        assert [(w.name, w.state) for w in workloads] == [("t1", WorkloadState.RUNNING)]
        request = engine.last("GET", "/containers/json")
        assert request.url.params["all"] == "true"
        assert json.loads(request.url.params["filters"]) == {"label": ["berth-type"]}


class TestStats:
    def _sample(self, id_):
        return {
            "id": id_,
            "name": "/t1",
            "cpu_stats": {"cpu_usage": {"total_usage": 200}, "system_cpu_usage": 1000, "online_cpus": 1},
            "precpu_stats": {"cpu_usage": {"total_usage": 100}, "system_cpu_usage": 500},
            "memory_stats": {"usage": 10, "limit": 100},
            "networks": {"eth0": {"rx_bytes": 5, "tx_bytes": 6}},
        }

    def test_single(self, engine, adapter):
        engine.on("GET", "/containers/t1/stats", 200, self._sample("abc"))
        [stats] = adapter.get_stats("t1")
        assert stats.cpu_usage == pytest.approx(0.2)
        assert stats.memory_usage == pytest.approx(0.1)
        assert stats.network_io.out == 6
        assert engine.last("GET", "/containers/t1/stats").url.params["stream"] == "false"

    def test_filtered(self, engine, adapter):
        engine.on("GET", "/containers/json", 200, [{"Id": "abc"}])
        engine.on("GET", "/containers/abc/stats", 200, self._sample("abc"))
        [stats] = adapter.get_stats(filters={"name": "t1"})
        assert stats.workload_id == "abc"


class TestPull:
    def test_tag_and_auth(self, limits, engine):
        engine.on("POST", "/images/create", 200, content=b'{"status":"Pulling"}\n{"status":"Done"}\n')
        auth = RegistryAuth(username="bot", password="pw")
        adapter = DockerAPIAdapter(limits, registry_auth=auth, transport=httpx.MockTransport(engine))
        adapter.pull("localhost:5000/app:v2")

        request = engine.last("POST", "/images/create")
        assert request.url.params["fromImage"] == "localhost:5000/app"
        assert request.url.params["tag"] == "v2"
        header = json.loads(base64.urlsafe_b64decode(request.headers["X-Registry-Auth"]))
        assert header["username"] == "bot"

    def test_inline_error(self, engine, adapter):
        engine.on("POST", "/images/create", 200, content=b'{"error":"manifest for nope:latest not found"}\n')
        with pytest.raises(NotFound):
            adapter.pull("nope")

    def test_other_inline_error(self, engine, adapter):
        engine.on("POST", "/images/create", 200, content=b'{"error":"disk full"}\n')
        with pytest.raises(BackendError) as exc_info:
            adapter.pull("alpine")
        assert exc_info.value.diagnostic == "disk full"


class TestNetworks:
    def test_create(self, engine, adapter):
        engine.on("POST", "/networks/create", 201, {"Id": "net1"})
        handle = adapter.create_network("n1", internal=True)
        assert handle.id == "net1"
        body = json.loads(engine.last("POST", "/networks/create").content)
        assert body["Internal"] is True

    def test_create_duplicate(self, engine, adapter):
        engine.on("POST", "/networks/create", 409, {"message": "network with name n1 already exists"})
        with pytest.raises(AlreadyExists):
            adapter.create_network("n1")

    def test_exists(self, engine, adapter):
        engine.on("GET", "/networks/n1", 200, {"Name": "n1"})
        assert adapter.network_exists("n1")
        assert not adapter.network_exists("n2")

    def test_list(self, engine, adapter):
        engine.on("GET", "/networks", 200, [{"Name": "bridge", "Id": "x", "Driver": "bridge", "Scope": "local"}])
        assert [n.name for n in adapter.list_networks()] == ["bridge"]

    def test_remove_missing(self, engine, adapter):
        with pytest.raises(NotFound):
            adapter.remove_network("n1")

    def test_connect_twice(self, engine, adapter):
        engine.on("POST", "/networks/n1/connect", 409, {"message": "endpoint with name t1 already exists"})
        with pytest.raises(AlreadyExists):
            adapter.connect("t1", "n1")

    def test_disconnect_not_connected(self, engine, adapter):
        engine.on(
            "POST",
            "/networks/n1/disconnect",
            500,
            {"message": "container t1 is not connected to network n1"},
        )
        with pytest.raises(NotFound):
            adapter.disconnect("t1", "n1")
        adapter.disconnect("t1", "n1", force=True)
        body = json.loads(engine.last("POST", "/networks/n1/disconnect").content)
        assert body == {"Container": "t1", "Force": True}


class TestHealth:
    def test_healthy(self, engine, adapter):
        engine.on("GET", "/_ping", 200, content=b"OK")
        engine.on("GET", "/version", 200, {"Version": "24.0.7"})
        health = adapter.health()
        assert health.healthy
        assert health.version == "24.0.7"

    def test_unreachable(self, limits):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        adapter = DockerAPIAdapter(limits, transport=httpx.MockTransport(refuse))
        health = adapter.health()
        assert not health.healthy
        assert "connection refused" in health.message
