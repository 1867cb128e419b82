"""
CLI commands for azconverge.

Thin wrappers over ``azconverge.app``.  Exit codes:

    0  every resource settled
    1  at least one resource failed or was blocked, or the run was cancelled
    2  configuration error (nothing was touched)
"""

from __future__ import annotations

import asyncio
import dataclasses
import json

import click

from azconverge.app import AzConvergeApp, RunResult, run
from azconverge.config import load_config
from azconverge.errors import ConfigurationError
from azconverge.models.config import CredentialScope, StackConfig, TargetPlatform
from azconverge.models.report import ApplyReport
from azconverge.models.resources import ResourceState

EXIT_CONFIG = 2

_STATE_COLORS = {
    ResourceState.SETTLED: "green",
    ResourceState.FAILED: "red",
    ResourceState.BLOCKED: "yellow",
}


@click.group("azconverge")
@click.option("--stack", "stack_name", default=None, help="Stack name (overrides AZCONVERGE_STACK).")
@click.option("--log-level", default=None, help="debug, info, warning or error.")
@click.option("--log-format", type=click.Choice(["json", "console"]), default=None, help="Log renderer.")
@click.version_option(package_name="azconverge")
@click.pass_context
def cli(ctx: click.Context, stack_name: str | None, log_level: str | None, log_format: str | None) -> None:
    """azconverge: provision the microservices demo on Azure."""
    try:
        config = load_config()
    except ValueError as exc:
        click.secho(f"❌ Configuration error: {exc}", fg="red", err=True)
        ctx.exit(EXIT_CONFIG)
    if stack_name:
        config = dataclasses.replace(config, stack=stack_name)
    if log_level or log_format:
        config = dataclasses.replace(
            config,
            log=dataclasses.replace(
                config.log,
                level=(log_level or config.log.level).lower(),
                format=log_format or config.log.format,
            ),
        )
    ctx.ensure_object(dict)
    ctx.obj["config"] = config


# ── Apply ───────────────────────────────────────────────────────


@cli.command("up")
@click.option("--platform", type=click.Choice([p.value for p in TargetPlatform]), default=None)
@click.option("--no-workloads", is_flag=True, help="Skip the Kubernetes workload set.")
@click.option("--credential-scope", type=click.Choice([s.value for s in CredentialScope]), default=None)
@click.option("--show-secrets", is_flag=True, help="Print secret outputs (kubeconfig) in clear.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def up(
    ctx: click.Context,
    platform: str | None,
    no_workloads: bool,
    credential_scope: str | None,
    show_secrets: bool,
    as_json: bool,
) -> None:
    """Create or update every resource, then print the report and outputs."""
    config: StackConfig = ctx.obj["config"]
    if platform:
        config = dataclasses.replace(config, platform=TargetPlatform(platform))
    if no_workloads:
        config = dataclasses.replace(config, workloads=dataclasses.replace(config.workloads, enabled=False))
    if credential_scope:
        config = dataclasses.replace(
            config, cluster=dataclasses.replace(config.cluster, credential_scope=CredentialScope(credential_scope))
        )

    result = _execute(ctx, "up", config)
    outputs = result.rendered_outputs(show_secrets=show_secrets)

    if as_json:
        assert result.report is not None
        click.echo(json.dumps({"report": result.report.to_dict(), "outputs": outputs}, indent=2, default=str))
    else:
        assert result.report is not None
        _print_report(result.report)
        click.echo()
        click.secho("📤 Outputs:", fg="cyan", bold=True)
        for name, value in outputs.items():
            shown = value if value is not None else "(unavailable)"
            if isinstance(shown, str) and "\n" in shown:
                click.echo(f"   {name}:")
                click.echo("\n".join(f"      {line}" for line in shown.splitlines()))
            else:
                click.echo(f"   {name}: {shown}")
    ctx.exit(result.exit_code)


# ── Preview ─────────────────────────────────────────────────────


@cli.command("preview")
@click.option("--platform", type=click.Choice([p.value for p in TargetPlatform]), default=None)
@click.option("--no-workloads", is_flag=True, help="Skip the Kubernetes workload set.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def preview(ctx: click.Context, platform: str | None, no_workloads: bool, as_json: bool) -> None:
    """Show the apply order and dependency edges without calling any provider."""
    config: StackConfig = ctx.obj["config"]
    if platform:
        config = dataclasses.replace(config, platform=TargetPlatform(platform))
    if no_workloads:
        config = dataclasses.replace(config, workloads=dataclasses.replace(config.workloads, enabled=False))

    result = _execute(ctx, "preview", config)
    plan = result.plan

    if as_json:
        payload = {
            "order": list(plan.order),
            "edges": [
                {"source": e.source, "target": e.target, "type": e.edge_type.value, "field": e.source_field or None}
                for e in plan.edges
            ],
        }
        click.echo(json.dumps(payload, indent=2))
        return

    click.secho(f"🧭 Plan ({len(plan)} resources):", fg="cyan", bold=True)
    for position, rid in enumerate(plan, start=1):
        incoming = [e for e in plan.edges if e.target == rid]
        click.echo(f"   {position:>2}. {rid}")
        for edge in incoming:
            via = f" via {edge.source_field}" if edge.source_field else ""
            click.echo(f"         ← {edge.source} ({edge.edge_type.value}{via})")


# ── Destroy ─────────────────────────────────────────────────────


@cli.command("destroy")
@click.option("--platform", type=click.Choice([p.value for p in TargetPlatform]), default=None)
@click.option("--yes", is_flag=True, help="Do not ask for confirmation.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def destroy(ctx: click.Context, platform: str | None, yes: bool, as_json: bool) -> None:
    """Delete every resource in reverse order; stop at the first failure."""
    config: StackConfig = ctx.obj["config"]
    if platform:
        config = dataclasses.replace(config, platform=TargetPlatform(platform))
    if not yes:
        click.confirm(f"Destroy stack '{config.stack}' in resource group '{config.resource_group}'?", abort=True)

    result = _execute(ctx, "destroy", config)
    assert result.report is not None
    if as_json:
        click.echo(json.dumps({"report": result.report.to_dict()}, indent=2, default=str))
    else:
        _print_report(result.report)
    ctx.exit(result.exit_code)


# ── Helpers ─────────────────────────────────────────────────────


def _execute(ctx: click.Context, command: str, config: StackConfig) -> RunResult:
    try:
        return asyncio.run(run(command, AzConvergeApp(config)))
    except ConfigurationError as exc:
        click.secho(f"❌ Configuration error: {exc}", fg="red", err=True)
        raise click.exceptions.Exit(EXIT_CONFIG) from exc


def _print_report(report: ApplyReport, indent: str = "   ", nested: bool = False) -> None:
    if not nested:
        status = "✅ Converged" if report.success else "❌ Not converged"
        click.secho(f"{status} in {report.duration_s:.1f}s", fg="green" if report.success else "red", bold=True)
        if report.cancelled:
            click.secho("⚠️  Run was cancelled", fg="yellow")

    for outcome in report.outcomes.values():
        color = _STATE_COLORS.get(outcome.state, "white")
        detail: list[str] = []
        if outcome.operation is not None:
            detail.append(outcome.operation.value)
        if outcome.attempts > 1:
            detail.append(f"{outcome.attempts} attempts")
        if outcome.duration_s:
            detail.append(f"{outcome.duration_s:.1f}s")
        suffix = f" ({', '.join(detail)})" if detail else ""
        click.secho(f"{indent}{outcome.state.value:<8} {outcome.resource_id}{suffix}", fg=color)
        if outcome.state == ResourceState.FAILED and outcome.error:
            click.secho(f"{indent}         {outcome.error_type}: {outcome.error}", fg="red")
        if outcome.changed_paths:
            click.echo(f"{indent}         changed: {', '.join(outcome.changed_paths[:10])}")
        if outcome.children is not None:
            _print_report(outcome.children, indent + "    ", nested=True)

    chains = report.failure_chains()
    if chains and not nested:
        click.echo()
        click.secho("🔗 Failure chains:", fg="red", bold=True)
        for chain in chains:
            click.secho(f"   {chain.root_cause}: {chain.error}", fg="red")
            for rid in chain.blocked:
                click.echo(f"      ↳ blocked: {rid}")
