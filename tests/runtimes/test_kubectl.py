"""Tests for KubectlAdapter against a scripted process runner."""

import json

import pytest
import yaml

from berth.core.errors import (
    AlreadyExists,
    BackendError,
    CreationFailed,
    CreationReason,
    ExecFailed,
    NotFound,
    ValidationError,
)
from berth.runtimes.kubectl import KubectlAdapter, parse_top_output
from berth.runtimes.state import WorkloadState

UID = "0b5c9d2e-8f1a-4c3b-9d7e-6a5b4c3d2e1f"


def _pod(name="t1", phase="Running", ready=True, uid=UID, labels=None, waiting=None, deleting=False):
    state = {"waiting": waiting} if waiting else {"running": {}}
    metadata = {"name": name, "uid": uid, "labels": labels or {}}
    if deleting:
        metadata["deletionTimestamp"] = "2024-01-01T00:00:00Z"
    return {
        "metadata": metadata,
        "spec": {"containers": [{"name": "main", "resources": {"limits": {"memory": "256Mi"}}}]},
        "status": {"phase": phase, "containerStatuses": [{"ready": ready, "state": state}]},
    }


def _pods(*pods):
    return json.dumps({"items": list(pods)})


class TestParseTopOutput:
    def test_columns(self):
        text = "t1   250m   64Mi\nt2   1   1Gi\n\n"
        assert parse_top_output(text) == {"t1": ("250m", "64Mi"), "t2": ("1", "1Gi")}


class TestCommandLine:
    def test_namespace_and_kubeconfig(self, limits, fake_runner):
        adapter = KubectlAdapter(limits, runner=fake_runner, kubeconfig="/k/config", namespace="jobs")
        adapter.remove("t1")
        assert fake_runner.calls[-1][:5] == ["kubectl", "--kubeconfig", "/k/config", "--namespace", "jobs"]


class TestCreate:
    def test_manifest_and_readiness_poll(self, fake_runner, kubectl, sleeps):
        fake_runner.on("create", "-f", "-", stdout=json.dumps(_pod(phase="Pending")))
        fake_runner.on("get", "pod", "t1", stdout=json.dumps(_pod(phase="Pending", ready=False)))
        fake_runner.on("get", "pod", "t1", stdout=json.dumps(_pod()))

        workload_id = kubectl.create("alpine", "t1", "sleep 30", env={"A": "1"}, labels={"team": "a"})
        assert workload_id == UID
        assert sleeps == [0.5]

        [argv] = fake_runner.calls_with("create", "-f", "-")
        assert argv[:3] == ["kubectl", "--namespace", "ci"]
        manifest = yaml.safe_load(fake_runner.stdins[fake_runner.calls.index(argv)])
        assert manifest["metadata"]["name"] == "t1"
        assert manifest["metadata"]["labels"]["team"] == "a"
        assert manifest["metadata"]["labels"]["berth-type"] == "runtime"
        container = manifest["spec"]["containers"][0]
        assert container["args"] == ["sleep", "30"]
        assert container["resources"]["limits"] == {"cpu": "0.5", "memory": "256Mi"}

    def test_name_conflict(self, fake_runner, kubectl):
        fake_runner.on(
            "create", "-f", "-",
            exit_code=1,
            stderr='Error from server (AlreadyExists): pods "t1" already exists',
        )
        with pytest.raises(CreationFailed) as exc_info:
            kubectl.create("alpine", "t1")
        assert exc_info.value.reason is CreationReason.NAME_CONFLICT

    def test_rejected(self, fake_runner, kubectl):
        fake_runner.on("create", "-f", "-", exit_code=1, stderr="error: error validating data")
        with pytest.raises(CreationFailed) as exc_info:
            kubectl.create("alpine", "t1")
        assert exc_info.value.reason is CreationReason.REJECTED

    def test_image_pull_error(self, fake_runner, kubectl):
        fake_runner.on("create", "-f", "-", stdout=json.dumps(_pod(phase="Pending")))
        fake_runner.on(
            "get", "pod", "t1",
            stdout=json.dumps(_pod(phase="Pending", ready=False, waiting={"reason": "ErrImagePull"})),
        )
        with pytest.raises(CreationFailed) as exc_info:
            kubectl.create("nope", "t1")
        assert exc_info.value.reason is CreationReason.IMAGE_MISSING

    def test_never_ready(self, fake_runner, kubectl, sleeps):
        fake_runner.on("create", "-f", "-", stdout=json.dumps(_pod(phase="Pending")))
        fake_runner.on("get", "pod", "t1", stdout=json.dumps(_pod(phase="Pending", ready=False)))
        with pytest.raises(CreationFailed) as exc_info:
            kubectl.create("alpine", "t1")
        assert exc_info.value.reason is CreationReason.NOT_READY
        assert len(fake_runner.calls_with("get", "pod", "t1")) == 3
        assert sleeps == [0.5, 0.5]

    def test_pod_not_yet_visible(self, fake_runner, kubectl, sleeps):
        fake_runner.on("create", "-f", "-", stdout=json.dumps(_pod(phase="Pending")))
        fake_runner.on("get", "pod", "t1", exit_code=1, stderr='Error from server (NotFound): pods "t1" not found')
        fake_runner.on("get", "pod", "t1", stdout=json.dumps(_pod()))
        assert kubectl.create("alpine", "t1") == UID
        assert sleeps == [0.5]

    def test_pod_gone_while_polling(self, fake_runner, kubectl, sleeps):
        fake_runner.on("create", "-f", "-", stdout=json.dumps(_pod(phase="Pending")))
        fake_runner.on("get", "pod", "t1", exit_code=1, stderr='Error from server (NotFound): pods "t1" not found')
        with pytest.raises(CreationFailed) as exc_info:
            kubectl.create("alpine", "t1")
        assert exc_info.value.reason is CreationReason.NOT_READY
        assert len(fake_runner.calls_with("get", "pod", "t1")) == 3

    def test_short_lived_pod(self, fake_runner, kubectl):
        fake_runner.on("create", "-f", "-", stdout="{}")
        fake_runner.on("get", "pod", "t1", stdout=json.dumps(_pod(phase="Succeeded", ready=False)))
        assert kubectl.create("alpine", "t1", "true") == UID


class TestExecute:
    def test_plain(self, fake_runner, kubectl):
        fake_runner.on("exec", stdout="hi\n")
        assert kubectl.execute("t1", "echo hi").stdout == "hi\n"
        assert fake_runner.calls[-1][-7:] == ["exec", "t1", "-c", "main", "--", "echo", "hi"]

    def test_env(self, fake_runner, kubectl):
        kubectl.execute("t1", "printenv A", env={"A": "1"})
        assert fake_runner.calls[-1][-4:] == ["env", "A=1", "printenv", "A"]

    def test_workdir(self, fake_runner, kubectl):
        kubectl.execute("t1", ["ls", "-la"], env={"A": "x y"}, workdir="/srv/app")
        assert fake_runner.calls[-1][-3:] == ["sh", "-c", "cd /srv/app && exec env 'A=x y' ls -la"]

    def test_non_zero_exit(self, fake_runner, kubectl):
        fake_runner.on("exec", exit_code=2, stderr="command terminated with exit code 2")
        with pytest.raises(ExecFailed) as exc_info:
            kubectl.execute("t1", "false")
        assert exc_info.value.exit_code == 2

    def test_missing_pod(self, fake_runner, kubectl):
        fake_runner.on("exec", exit_code=1, stderr='Error from server (NotFound): pods "t1" not found')
        with pytest.raises(NotFound):
            kubectl.execute("t1", "true")

    def test_uid_reference(self, fake_runner, kubectl):
        fake_runner.on("get", "pods", stdout=_pods(_pod(name="job-a")))
        kubectl.execute(UID, "true")
        assert "job-a" in fake_runner.calls[-1]

    def test_unknown_uid(self, fake_runner, kubectl):
        fake_runner.on("get", "pods", stdout=_pods())
        with pytest.raises(NotFound):
            kubectl.execute(UID, "true")


class TestRemove:
    def test_force(self, fake_runner, kubectl):
        kubectl.remove("My_Job", force=True)
        assert fake_runner.calls[-1][-6:] == [
            "delete", "pod", "my-job", "--wait=false", "--force", "--grace-period=0",
        ]

    def test_missing(self, fake_runner, kubectl):
        fake_runner.on("delete", exit_code=1, stderr='Error from server (NotFound): pods "t1" not found')
        with pytest.raises(NotFound):
            kubectl.remove("t1")


class TestList:
    def test_phases_and_reconciliation(self, fake_runner, kubectl):
        fake_runner.on(
            "get", "pods",
            stdout=_pods(
                _pod(name="live", labels={"berth-type": "runtime"}),
                _pod(name="done", phase="Succeeded", labels={"berth-auto-remove": "true"}),
                _pod(name="gone", deleting=True),
                _pod(name="broke", phase="Failed"),
            ),
        )
        workloads = kubectl.list()
        assert [(w.name, w.state) for w in workloads] == [
            ("live", WorkloadState.RUNNING),
            ("broke", WorkloadState.FAILED),
        ]
        [reap] = fake_runner.calls_with("delete", "pod", "done")
        assert "--ignore-not-found" in reap

    def test_selectors(self, fake_runner, kubectl):
        fake_runner.on("get", "pods", stdout=_pods())
        kubectl.list({"label": ["team=a", "tier"], "name": "t1"})
        argv = fake_runner.calls[-1]
        assert argv[argv.index("-l") + 1] == "team=a,tier"
        assert argv[argv.index("--field-selector") + 1] == "metadata.name=t1"

    def test_unsupported_filter(self, kubectl):
        with pytest.raises(ValidationError):
            kubectl.list({"status": "exited"})


class TestStats:
    def test_single_pod(self, fake_runner, kubectl):
        fake_runner.on("get", "pod", "t1", stdout=json.dumps(_pod()))
        fake_runner.on("top", "pod", stdout="t1   250m   64Mi\n")
        [stats] = kubectl.get_stats("t1")
        assert stats.workload_id == UID
        assert stats.cpu_usage == pytest.approx(0.25)
        assert stats.memory_usage == pytest.approx(0.25)
        assert stats.disk_io.in_ == 0
        assert fake_runner.calls[-1][-4:] == ["top", "pod", "t1", "--no-headers"]

    def test_filtered_skips_finished(self, fake_runner, kubectl):
        fake_runner.on(
            "get", "pods",
            stdout=_pods(
                _pod(name="a", labels={"team": "a"}),
                _pod(name="b", phase="Succeeded", labels={"team": "a"}),
            ),
        )
        fake_runner.on("top", "pod", stdout="a 1 128Mi\n")
        stats = kubectl.get_stats(filters={"label": "team=a"})
        assert [s.workload_name for s in stats] == ["a"]
        assert fake_runner.calls[-1][-2:] == ["-l", "team=a"]

    def test_metrics_missing_for_pod(self, fake_runner, kubectl):
        fake_runner.on("get", "pods", stdout=_pods(_pod(name="a")))
        stats = kubectl.get_stats()
        assert stats[0].cpu_usage == 0.0

    def test_nothing_running(self, fake_runner, kubectl):
        fake_runner.on("get", "pods", stdout=_pods())
        assert kubectl.get_stats() == []
        assert fake_runner.calls_with("top") == []


class TestPull:
    def test_throwaway_pod(self, fake_runner, kubectl):
        fake_runner.on("create", "-f", "-", stdout="{}")
        fake_runner.on("get", "pod", stdout=json.dumps(_pod(phase="Succeeded")))
        kubectl.pull("alpine:3.19")

        [create] = fake_runner.calls_with("create", "-f", "-")
        manifest = yaml.safe_load(fake_runner.stdins[fake_runner.calls.index(create)])
        name = manifest["metadata"]["name"]
        assert name.startswith("berth-pull-")
        assert manifest["spec"]["containers"][0]["imagePullPolicy"] == "Always"
        assert len(fake_runner.calls_with("delete", "pod", name)) == 2

    def test_missing_image(self, fake_runner, kubectl):
        fake_runner.on("create", "-f", "-", stdout="{}")
        fake_runner.on(
            "get", "pod",
            stdout=json.dumps(_pod(phase="Pending", ready=False, waiting={"reason": "ImagePullBackOff"})),
        )
        with pytest.raises(NotFound):
            kubectl.pull("nope")
        # cleanup still ran
        assert fake_runner.calls[-1][-5:-3] == ["delete", "pod"]

    def test_pull_never_finishes(self, fake_runner, kubectl):
        fake_runner.on("create", "-f", "-", stdout="{}")
        fake_runner.on("get", "pod", stdout=json.dumps(_pod(phase="Pending", ready=False)))
        with pytest.raises(BackendError):
            kubectl.pull("huge")


class TestNetworks:
    def test_create(self, fake_runner, kubectl):
        fake_runner.on("create", "-f", "-", stdout=json.dumps({"metadata": {"uid": "np-1"}}))
        handle = kubectl.create_network("n1", internal=True)
        assert (handle.id, handle.driver, handle.scope) == ("np-1", "networkpolicy", "ci")
        manifest = yaml.safe_load(fake_runner.stdins[-1])
        assert manifest["kind"] == "NetworkPolicy"

    def test_create_duplicate(self, fake_runner, kubectl):
        fake_runner.on(
            "create", "-f", "-",
            exit_code=1,
            stderr='Error from server (AlreadyExists): networkpolicies.networking.k8s.io "n1" already exists',
        )
        with pytest.raises(AlreadyExists):
            kubectl.create_network("n1")

    def test_exists(self, fake_runner, kubectl):
        fake_runner.on("networkpolicy", "n2", exit_code=1, stderr='Error from server (NotFound): "n2" not found')
        assert kubectl.network_exists("n1")
        assert not kubectl.network_exists("n2")

    def test_list(self, fake_runner, kubectl):
        fake_runner.on("get", "networkpolicies", stdout=_pods({"metadata": {"name": "n1", "uid": "x"}}))
        [handle] = kubectl.list_networks()
        assert handle.name == "n1"
        assert fake_runner.calls[-1][-2:] == ["-l", "berth-type=network"]

    def test_connect(self, fake_runner, kubectl):
        kubectl.connect("t1", "n1")
        assert fake_runner.calls[-1][-5:] == ["label", "pod", "t1", "network=n1", "--overwrite"]

    def test_connect_missing_network(self, fake_runner, kubectl):
        fake_runner.on("networkpolicy", "n1", exit_code=1, stderr="NotFound")
        with pytest.raises(NotFound):
            kubectl.connect("t1", "n1")
        assert fake_runner.calls_with("label") == []

    def test_disconnect(self, fake_runner, kubectl):
        fake_runner.on("get", "pod", "t1", stdout=json.dumps(_pod(labels={"network": "n1"})))
        kubectl.disconnect("t1", "n1")
        assert fake_runner.calls[-1][-4:] == ["label", "pod", "t1", "network-"]

    def test_disconnect_not_connected(self, fake_runner, kubectl):
        fake_runner.on("get", "pod", "t1", stdout=json.dumps(_pod(labels={"network": "other"})))
        with pytest.raises(NotFound):
            kubectl.disconnect("t1", "n1")
        kubectl.disconnect("t1", "n1", force=True)
        assert fake_runner.calls_with("label") == []


class TestHealth:
    def test_healthy(self, fake_runner, kubectl):
        fake_runner.on("version", stdout=json.dumps({"serverVersion": {"gitVersion": "v1.29.1"}}))
        health = kubectl.health()
        assert health.healthy
        assert health.version == "v1.29.1"

    def test_unreachable(self, fake_runner, kubectl):
        fake_runner.on("version", exit_code=1, stderr="The connection to the server was refused")
        assert not kubectl.health().healthy
