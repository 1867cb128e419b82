"""Unit tests for environment-driven configuration loading."""

from __future__ import annotations

import os

import pytest

from azconverge.config import load_config
from azconverge.models.config import CredentialScope, TargetPlatform


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in list(os.environ):
        if key.startswith("AZCONVERGE_"):
            monkeypatch.delenv(key)


class TestLoadConfig:
    def test_defaults(self) -> None:
        config = load_config()
        assert config.platform == TargetPlatform.CLUSTER
        assert config.resource_group == "microservices-demo-rg"
        assert config.cluster.credential_scope == CredentialScope.USER
        assert config.registry.admin_enabled is True
        assert config.workloads.enabled is True
        assert config.workloads.manifest_files == []
        assert config.engine.max_concurrency == 8
        assert config.log.level == "info"

    def test_overrides(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("AZCONVERGE_PLATFORM", "App-Service")
        monkeypatch.setenv("AZCONVERGE_CREDENTIAL_SCOPE", "ADMIN")
        monkeypatch.setenv("AZCONVERGE_WORKLOADS_ENABLED", "no")
        monkeypatch.setenv("AZCONVERGE_MANIFEST_FILES", "k8s/a.yaml, k8s/b.yaml,")
        monkeypatch.setenv("AZCONVERGE_LOG_LEVEL", "DEBUG")
        config = load_config()
        assert config.platform == TargetPlatform.APP_SERVICE
        assert config.cluster.credential_scope == CredentialScope.ADMIN
        assert config.workloads.enabled is False
        assert config.workloads.manifest_files == ["k8s/a.yaml", "k8s/b.yaml"]
        assert config.log.level == "debug"

    def test_numeric_values_are_clamped(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("AZCONVERGE_NODE_COUNT", "0")
        monkeypatch.setenv("AZCONVERGE_MAX_CONCURRENCY", "500")
        monkeypatch.setenv("AZCONVERGE_MAX_ATTEMPTS", "-3")
        monkeypatch.setenv("AZCONVERGE_LEAF_TIMEOUT", "0.1")
        config = load_config()
        assert config.cluster.node_count == 1
        assert config.engine.max_concurrency == 32
        assert config.engine.max_attempts == 1
        assert config.engine.leaf_timeout == 1.0

    @pytest.mark.parametrize(
        ("key", "value"),
        [
            ("AZCONVERGE_LOG_LEVEL", "verbose"),
            ("AZCONVERGE_LOG_FORMAT", "xml"),
            ("AZCONVERGE_PLATFORM", "vm"),
            ("AZCONVERGE_CREDENTIAL_SCOPE", "root"),
            ("AZCONVERGE_ACR_NAME", "my-registry"),
            ("AZCONVERGE_ACR_NAME", "acr"),
            ("AZCONVERGE_RESOURCE_GROUP", "-leading-dash"),
            ("AZCONVERGE_NODE_COUNT", "three"),
        ],
    )
    def test_invalid_values_raise(self, monkeypatch: pytest.MonkeyPatch, key: str, value: str) -> None:
        monkeypatch.setenv(key, value)
        with pytest.raises(ValueError):
            load_config()
