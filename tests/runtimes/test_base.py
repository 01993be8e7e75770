"""Tests for BaseRuntimeAdapter's backend-independent behaviour."""

import pytest

from berth.core.errors import (
    BackendError,
    CapabilityUnsupported,
    CreationFailed,
    CreationReason,
    MalformedCommand,
    NotFound,
    ValidationError,
)
from berth.runtimes._base import BaseRuntimeAdapter
from berth.runtimes._types import (
    ExecResult,
    ResourceLimits,
    RuntimeCapabilities,
    RuntimeHealth,
    TmpfsMount,
    Workload,
)


class RecordingAdapter(BaseRuntimeAdapter):
    """Captures what the base class hands to the hooks."""

    runtime_name = "recording"

    def __init__(self, capabilities=None):
        super().__init__(ResourceLimits(namespace="ci"))
        self._caps = capabilities or RuntimeCapabilities()
        self.specs = []
        self.exec_calls = []
        self.reaped = []
        self.listing = []
        self.create_error = None
        self.reap_error = None
        self.health_error = None

    @property
    def capabilities(self):
        return self._caps

    def _do_create(self, spec):
        if self.create_error:
            raise self.create_error
        self.specs.append(spec)
        return "id-1"

    def _do_execute(self, workload, argv, env, timeout, workdir):
        self.exec_calls.append((workload, argv, env, timeout, workdir))
        return ExecResult(0, "ok")

    def _do_remove(self, workload, force):
        if workload == "missing":
            raise NotFound("No such container: missing")
        if workload == "explode":
            raise RuntimeError("socket closed")

    def _do_list(self, filters):
        return list(self.listing)

    def _do_reap(self, workload):
        if self.reap_error:
            raise self.reap_error
        self.reaped.append(workload.name)

    def _do_stats(self, workload, filters):
        return []

    def _do_health(self):
        if self.health_error:
            raise self.health_error
        return RuntimeHealth(healthy=True, runtime="recording", version="9")


@pytest.fixture
def adapter():
    return RecordingAdapter()


class TestCreateValidation:
    @pytest.mark.parametrize("name", ["", "   ", "-leading", ".hidden", "has space", "bad/slash"])
    def test_invalid_names(self, adapter, name):
        with pytest.raises(ValidationError):
            adapter.create("alpine", name)
        assert adapter.specs == []

    @pytest.mark.parametrize("name", ["a", "7", "a.b", "web_1-x"])
    def test_short_and_dotted_names(self, adapter, name):
        adapter.create("alpine", name)
        assert adapter.specs[-1].name == name

    def test_empty_image(self, adapter):
        with pytest.raises(ValidationError):
            adapter.create("", "t1")

    def test_malformed_command(self, adapter):
        with pytest.raises(MalformedCommand):
            adapter.create("alpine", "t1", "sh -c 'echo hi")
        assert adapter.specs == []

    def test_mounts_need_capability(self):
        adapter = RecordingAdapter(RuntimeCapabilities(supports_mounts=False))
        with pytest.raises(CapabilityUnsupported) as exc_info:
            adapter.create("alpine", "t1", mounts=[TmpfsMount("/tmp")])
        assert exc_info.value.feature == "mounts"


class TestCreateSpec:
    def test_spec_built_for_hook(self, adapter):
        workload_id = adapter.create(
            "alpine",
            "t1",
            "sh -c 'echo hi && sleep 1'",
            env={"GOOD": "1", "BAD KEY!": "2", "EMPTY": "", "": "x"},
            labels={"team": "a", "ci-type": "overridden"},
            auto_remove=True,
        )
        assert workload_id == "id-1"
        spec = adapter.specs[0]
        assert spec.command == ["sh", "-c", "echo hi && sleep 1"]
        assert spec.env == {"GOOD": "1", "BADKEY": "2"}
        assert spec.labels["team"] == "a"
        assert spec.labels["ci-type"] == "runtime"
        assert spec.labels["ci-auto-remove"] == "true"
        assert "ci-created" in spec.labels
        assert spec.auto_remove

    def test_blank_optionals_become_none(self, adapter):
        adapter.create("alpine", "t1", entrypoint="", workdir="", network="", hostname="")
        spec = adapter.specs[0]
        assert (spec.entrypoint, spec.workdir, spec.network, spec.hostname) == (None, None, None, None)
        assert spec.command == []

    def test_berth_error_tagged(self, adapter):
        adapter.create_error = CreationFailed("in use", reason=CreationReason.NAME_CONFLICT)
        with pytest.raises(CreationFailed) as exc_info:
            adapter.create("alpine", "t1")
        assert exc_info.value.context.backend == "recording"
        assert exc_info.value.context.operation == "create"
        assert exc_info.value.context.workload == "t1"

    def test_foreign_error_becomes_creation_failed(self, adapter):
        adapter.create_error = KeyError("Id")
        with pytest.raises(CreationFailed) as exc_info:
            adapter.create("alpine", "t1")
        assert exc_info.value.reason is CreationReason.REJECTED
        assert isinstance(exc_info.value.__cause__, KeyError)


class TestExecute:
    def test_arguments_passed_through(self, adapter):
        result = adapter.execute("t1", "printenv A", env={"A": "1", "": "x"}, timeout=5, workdir="/app")
        assert result.stdout == "ok"
        assert adapter.exec_calls == [("t1", ["printenv", "A"], {"A": "1"}, 5, "/app")]

    def test_exec_capability(self):
        adapter = RecordingAdapter(RuntimeCapabilities(supports_exec=False))
        with pytest.raises(CapabilityUnsupported) as exc_info:
            adapter.execute("t1", "true")
        assert exc_info.value.feature == "exec"

    def test_exec_env_capability(self):
        adapter = RecordingAdapter(RuntimeCapabilities(supports_exec_env=False))
        adapter.execute("t1", "true")
        with pytest.raises(CapabilityUnsupported) as exc_info:
            adapter.execute("t1", "true", env={"A": "1"})
        assert exc_info.value.feature == "exec_env"

    @pytest.mark.parametrize("command", ["", []])
    def test_empty_command(self, adapter, command):
        with pytest.raises(ValidationError):
            adapter.execute("t1", command)

    def test_non_positive_timeout(self, adapter):
        with pytest.raises(ValidationError):
            adapter.execute("t1", "true", timeout=0)


class TestRemove:
    def test_not_found_tagged(self, adapter):
        with pytest.raises(NotFound) as exc_info:
            adapter.remove("missing")
        assert exc_info.value.context.backend == "recording"
        assert exc_info.value.context.workload == "missing"

    def test_foreign_error_wrapped(self, adapter):
        with pytest.raises(BackendError, match="socket closed") as exc_info:
            adapter.remove("explode")
        assert exc_info.value.context.operation == "remove"


class TestListReconciliation:
    def test_finished_auto_remove_hidden_and_reaped(self, adapter):
        adapter.listing = [
            Workload("live", "1", "Up 2 seconds", {"ci-auto-remove": "true"}),
            Workload("done", "2", "Exited (0) 1 second ago", {"ci-auto-remove": "true"}),
            Workload("kept", "3", "Exited (1) 1 second ago", {}),
        ]
        names = [w.name for w in adapter.list()]
        assert names == ["live", "kept"]
        assert adapter.reaped == ["done"]

    def test_reap_failure_does_not_fail_listing(self, adapter):
        adapter.listing = [Workload("done", "2", "Succeeded", {"ci-auto-remove": "true"})]
        adapter.reap_error = BackendError("delete failed")
        assert adapter.list() == []

    def test_unsupported_filter(self, adapter):
        with pytest.raises(ValidationError, match="status"):
            adapter.list({"status": "running"})


class TestNetworkDefaults:
    def test_no_network_support(self, adapter):
        with pytest.raises(CapabilityUnsupported) as exc_info:
            adapter.create_network("n1")
        assert exc_info.value.feature == "network"

    def test_no_pull_support(self, adapter):
        with pytest.raises(CapabilityUnsupported):
            adapter.pull("alpine")

    def test_invalid_network_name(self, adapter):
        with pytest.raises(ValidationError):
            adapter.create_network("bad name")


class TestHealth:
    def test_latency_recorded(self, adapter):
        health = adapter.health()
        assert health.healthy
        assert health.version == "9"
        assert health.latency_ms is not None

    def test_never_raises(self, adapter):
        adapter.health_error = OSError("daemon down")
        health = adapter.health()
        assert not health.healthy
        assert "daemon down" in health.message
