"""Unit tests for the click CLI with the application replaced by a stub."""

from __future__ import annotations

import json
import os
from datetime import UTC, datetime
from typing import Any

import pytest
from click.testing import CliRunner

from azconverge.app import RunResult
from azconverge.cli import cli
from azconverge.errors import ConfigurationError
from azconverge.graph.models import ConvergencePlan, EdgeType, GraphEdge
from azconverge.models.config import StackConfig, TargetPlatform
from azconverge.models.report import ApplyReport, ResourceOutcome
from azconverge.models.resources import Operation, ResourceState

_PLAN = ConvergencePlan(
    order=("resource-group", "container-registry"),
    edges=(GraphEdge("resource-group", "container-registry", EdgeType.INFERRED, "resourceGroupName"),),
    predecessors={"resource-group": frozenset(), "container-registry": frozenset({"resource-group"})},
)


def _report(failed: bool = False) -> ApplyReport:
    now = datetime.now(tz=UTC)
    report = ApplyReport(started_at=now, finished_at=now)
    report.outcomes["resource-group"] = ResourceOutcome(
        "resource-group", "azure:resources/ResourceGroup", ResourceState.SETTLED, Operation.CREATE, attempts=1
    )
    if failed:
        report.outcomes["container-registry"] = ResourceOutcome(
            "container-registry",
            "azure:containerregistry/Registry",
            ResourceState.FAILED,
            error="InvalidSku: sku Ultra is invalid",
            error_type="ProviderFatalError",
            attempts=1,
        )
    else:
        report.outcomes["container-registry"] = ResourceOutcome(
            "container-registry", "azure:containerregistry/Registry", ResourceState.SETTLED, Operation.NOOP, attempts=1
        )
    return report


class _StubApp:
    """Records the config it was built with and returns canned results."""

    instances: list[_StubApp] = []
    failed = False
    start_error: Exception | None = None

    def __init__(self, config: StackConfig) -> None:
        self.config = config
        self.stopped = False
        _StubApp.instances.append(self)

    async def start(self) -> None:
        if _StubApp.start_error is not None:
            raise _StubApp.start_error

    def cancel(self) -> None:
        pass

    async def preview(self) -> RunResult:
        return RunResult(plan=_PLAN)

    async def up(self) -> RunResult:
        return RunResult(
            plan=_PLAN,
            report=_report(_StubApp.failed),
            outputs={"acrLoginServer": "microservicesacr.azurecr.io", "kubeconfig": "apiVersion: v1\n"},
            secrets={"kubeconfig"},
        )

    async def destroy(self) -> RunResult:
        return RunResult(plan=_PLAN, report=_report(_StubApp.failed))

    async def stop(self) -> None:
        self.stopped = True


@pytest.fixture(autouse=True)
def _stub_app(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in list(os.environ):
        if key.startswith("AZCONVERGE_"):
            monkeypatch.delenv(key)
    _StubApp.instances = []
    _StubApp.failed = False
    _StubApp.start_error = None
    monkeypatch.setattr("azconverge.cli.main.AzConvergeApp", _StubApp)


def _invoke(*args: str, env: dict[str, Any] | None = None) -> Any:
    return CliRunner().invoke(cli, list(args), env=env, catch_exceptions=False)


class TestPreview:
    def test_preview_json(self) -> None:
        result = _invoke("preview", "--json")
        assert result.exit_code == 0
        payload = json.loads(result.stdout)
        assert payload["order"] == ["resource-group", "container-registry"]
        assert payload["edges"][0] == {
            "source": "resource-group",
            "target": "container-registry",
            "type": "inferred",
            "field": "resourceGroupName",
        }

    def test_preview_text_lists_incoming_edges(self) -> None:
        result = _invoke("preview", "--platform", "app-service")
        assert result.exit_code == 0
        assert "2. container-registry" in result.stdout
        assert "resource-group (inferred via resourceGroupName)" in result.stdout
        assert _StubApp.instances[0].config.platform == TargetPlatform.APP_SERVICE


class TestUp:
    def test_up_success_redacts_secrets(self) -> None:
        result = _invoke("up", "--no-workloads", "--credential-scope", "admin")
        assert result.exit_code == 0
        assert "Converged" in result.stdout
        assert "kubeconfig: [secret]" in result.stdout
        config = _StubApp.instances[0].config
        assert config.workloads.enabled is False
        assert config.cluster.credential_scope == "admin"
        assert _StubApp.instances[0].stopped

    def test_up_json_with_secrets(self) -> None:
        result = _invoke("up", "--json", "--show-secrets")
        payload = json.loads(result.stdout)
        assert payload["outputs"]["kubeconfig"] == "apiVersion: v1\n"
        assert payload["report"]["success"] is True

    def test_up_failure_exit_code_and_chain(self) -> None:
        _StubApp.failed = True
        result = _invoke("up")
        assert result.exit_code == 1
        assert "InvalidSku" in result.stdout
        assert "Failure chains" in result.stdout

    def test_configuration_error_exits_2(self) -> None:
        _StubApp.start_error = ConfigurationError("Dependency cycle detected: a -> b -> a")
        result = _invoke("up")
        assert result.exit_code == 2
        assert _StubApp.instances[0].stopped


class TestGroupOptions:
    def test_invalid_environment_exits_2(self) -> None:
        result = _invoke("preview", env={"AZCONVERGE_LOG_LEVEL": "verbose"})
        assert result.exit_code == 2
        assert _StubApp.instances == []

    def test_stack_and_log_overrides(self) -> None:
        result = _invoke("--stack", "prod", "--log-level", "DEBUG", "preview")
        assert result.exit_code == 0
        config = _StubApp.instances[0].config
        assert config.stack == "prod"
        assert config.log.level == "debug"

    def test_destroy_requires_confirmation(self) -> None:
        result = CliRunner().invoke(cli, ["destroy"], input="n\n")
        assert result.exit_code == 1
        assert _StubApp.instances == []

    def test_destroy_with_yes(self) -> None:
        result = _invoke("destroy", "--yes")
        assert result.exit_code == 0
        assert "Converged" in result.stdout
