"""Tests for BerthSettings (environment-driven configuration)."""

import os
from pathlib import Path

import pytest
from pydantic import ValidationError as PydanticValidationError

from berth.core.settings import BerthSettings


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path):
    """No BERTH_* variables or .env file from the developer's machine."""
    for key in list(os.environ):
        if key.startswith("BERTH_"):
            monkeypatch.delenv(key)
    monkeypatch.chdir(tmp_path)


class TestDefaults:
    def test_defaults(self):
        settings = BerthSettings()
        assert settings.backend == "docker-cli"
        assert settings.namespace == "berth"
        assert settings.readiness_retries == 30
        assert settings.readiness_interval == 1.0
        assert settings.docker_socket == Path("/var/run/docker.sock")
        assert settings.kubeconfig is None
        assert settings.registry_auth() is None


class TestEnvironment:
    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("BERTH_BACKEND", "kubectl")
        monkeypatch.setenv("BERTH_K8S_NAMESPACE", "jobs")
        monkeypatch.setenv("BERTH_MEMORY_MB", "512")
        settings = BerthSettings()
        assert settings.backend == "kubectl"
        assert settings.k8s_namespace == "jobs"
        assert settings.memory_mb == 512

    def test_dotenv_file(self, tmp_path):
        (tmp_path / ".env").write_text("BERTH_BACKEND=stub\nBERTH_NAMESPACE=ci\n")
        settings = BerthSettings()
        assert settings.backend == "stub"
        assert settings.namespace == "ci"

    def test_unknown_backend_rejected(self, monkeypatch):
        monkeypatch.setenv("BERTH_BACKEND", "podman")
        with pytest.raises(PydanticValidationError):
            BerthSettings()

    def test_negative_limits_rejected(self):
        with pytest.raises(PydanticValidationError):
            BerthSettings(cpus=-1)

    def test_log_level_upper_cased(self):
        assert BerthSettings(log_level="debug").log_level == "DEBUG"


class TestDerivedValues:
    def test_resource_limits(self):
        limits = BerthSettings(cpus=1.5, memory_mb=256, swap_mb=512, namespace="ci").resource_limits()
        assert limits.cpus == 1.5
        assert limits.memory_bytes == 256 * 1024 * 1024
        assert limits.swap_bytes == 512 * 1024 * 1024
        assert limits.namespace == "ci"

    def test_registry_auth(self, monkeypatch):
        monkeypatch.setenv("BERTH_REGISTRY_USERNAME", "bot")
        monkeypatch.setenv("BERTH_REGISTRY_PASSWORD", "s3cret")
        monkeypatch.setenv("BERTH_REGISTRY_SERVER", "registry.example.com")
        settings = BerthSettings()
        auth = settings.registry_auth()
        assert auth.username == "bot"
        assert auth.password == "s3cret"
        assert auth.server == "registry.example.com"
        assert "s3cret" not in repr(settings)
