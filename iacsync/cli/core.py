"""
CLI core commands — plan, apply, run, state and artifact housekeeping.

These are the steps a pipeline calls:

    stage Plan:   iacsync plan            (publishes .iacsync/artifacts)
    stage Apply:  iacsync apply           (after manual approval)

or, for a single-job pipeline triggered on push:

    iacsync run --auto-approve
"""

from __future__ import annotations

import json
import os
from datetime import timedelta
from pathlib import Path
from typing import Optional, Tuple

import click

from ..backend import get_backend
from ..config.loader import Settings, load_infra_config
from ..config.models import InfraConfig
from ..engine.artifacts import ArtifactStore
from ..engine.orchestrator import ApplyResult, Orchestrator
from ..models.artifact import PlanArtifact
from ..persistence.audit import AuditWriter
from ..provisioners import get_provisioner


def build_orchestrator(
    root: Path,
    run_id: Optional[str] = None,
) -> Tuple[Settings, InfraConfig, Orchestrator]:
    """Wire settings, config and an orchestrator for one command."""
    settings = Settings.from_env(root)
    config = load_infra_config(settings.config_path)
    orchestrator = Orchestrator(
        backend=get_backend(settings),
        provisioner=get_provisioner(settings),
        store=ArtifactStore(settings.artifact_dir),
        audit=AuditWriter(settings.ledger_path),
        lock_timeout=settings.lock_timeout_seconds,
        artifact_ttl=timedelta(hours=settings.artifact_ttl_hours),
        run_id=run_id or _pipeline_run_id(),
    )
    return settings, config, orchestrator


def _pipeline_run_id() -> Optional[str]:
    """Use the Azure DevOps build id when running on an agent."""
    build_id = os.environ.get("BUILD_BUILDID")
    return f"R-ado-{build_id}" if build_id else None


def _set_pipeline_variable(name: str, value: str) -> None:
    """Expose a value to later pipeline steps (Azure DevOps logging command)."""
    if os.environ.get("TF_BUILD"):
        click.echo(f"##vso[task.setvariable variable={name};isOutput=true]{value}")


def _echo_plan(artifact: PlanArtifact) -> None:
    symbols = {"create": ("+", "green"), "update": ("~", "yellow"), "delete": ("-", "red")}
    for change in artifact.changes:
        if change.action in symbols:
            symbol, color = symbols[change.action]
            click.secho(f"  {symbol} {change.address}", fg=color)

    s = artifact.summary()
    click.echo("")
    click.echo(f"  Artifact:  {artifact.artifact_id}")
    click.echo(f"  State:     {artifact.env_key} (serial {artifact.base_serial})")
    click.echo(f"  Plan:      {s['create']} to add, {s['update']} to change, {s['delete']} to destroy")
    click.echo(f"  Expires:   {artifact.expires_at_iso}")


def _echo_apply(result: ApplyResult) -> None:
    if result.applied:
        s = result.summary
        click.secho(
            f"✓ Apply complete: {s['create']} added, {s['update']} changed, {s['delete']} destroyed "
            f"(serial {result.serial})",
            fg="green",
        )
    else:
        click.secho(f"✓ No changes; state unchanged at serial {result.serial}", fg="green")


@click.command()
@click.option("--run-id", default=None, help="Override the run id")
@click.pass_context
def plan(ctx: click.Context, run_id: Optional[str]) -> None:
    """Plan changes and persist the artifact for a later apply."""
    _, config, orchestrator = build_orchestrator(ctx.obj["root"], run_id)

    click.echo(f"Planning {config.environment} ({config.state_ref})...")
    artifact = orchestrator.plan(config)
    _echo_plan(artifact)
    _set_pipeline_variable("IACSYNC_ARTIFACT_ID", artifact.artifact_id)


@click.command()
@click.argument("artifact_id", required=False)
@click.option("--run-id", default=None, help="Override the run id")
@click.pass_context
def apply(ctx: click.Context, artifact_id: Optional[str], run_id: Optional[str]) -> None:
    """Apply ARTIFACT_ID, or the latest plan for the environment."""
    _, config, orchestrator = build_orchestrator(ctx.obj["root"], run_id)

    if artifact_id:
        artifact = orchestrator.store.get(artifact_id, config.state_ref.env_key)
        result = orchestrator.apply(artifact, config)
    else:
        result = orchestrator.apply_latest(config)
    _echo_apply(result)


@click.command()
@click.option(
    "--branch",
    default=None,
    help="Branch that triggered the run (default: $BUILD_SOURCEBRANCH)",
)
@click.option("--auto-approve", is_flag=True, help="Apply immediately after planning")
@click.option("--run-id", default=None, help="Override the run id")
@click.pass_context
def run(ctx: click.Context, branch: Optional[str], auto_approve: bool, run_id: Optional[str]) -> None:
    """Pipeline entry: trigger check, plan, and apply when approved."""
    _, config, orchestrator = build_orchestrator(ctx.obj["root"], run_id)

    branch = branch or os.environ.get("BUILD_SOURCEBRANCH", "")
    if branch and not config.triggers_on(branch):
        click.secho(
            f"Branch {branch} is not a trigger branch ({', '.join(config.trigger_branches)}); skipping",
            fg="cyan",
        )
        return

    artifact = orchestrator.plan(config)
    _echo_plan(artifact)
    _set_pipeline_variable("IACSYNC_ARTIFACT_ID", artifact.artifact_id)

    if not auto_approve:
        click.echo("")
        click.secho(f"Plan saved. Approve with: iacsync apply {artifact.artifact_id}", fg="cyan")
        return

    result = orchestrator.apply(artifact, config)
    _echo_apply(result)


# ---------------------------------------------------------------------------
# state
# ---------------------------------------------------------------------------

@click.group()
def state() -> None:
    """Inspect and repair remote state."""


@state.command("show")
@click.option("--json", "as_json", is_flag=True, help="Output raw state JSON")
@click.pass_context
def state_show(ctx: click.Context, as_json: bool) -> None:
    """Show the current state for the configured environment."""
    settings = Settings.from_env(ctx.obj["root"])
    config = load_infra_config(settings.config_path)
    backend = get_backend(settings)
    ref = config.state_ref

    current = backend.read_state(ref)
    holder = backend.lock_holder(ref)

    if as_json:
        click.echo(json.dumps(current.model_dump(mode="json"), indent=2))
        return

    click.echo(f"State:     {ref}")
    click.echo(f"Serial:    {current.serial}")
    click.echo(f"Lineage:   {current.lineage}")
    click.echo(f"Lock:      {holder.describe() if holder else 'unlocked'}")
    click.echo(f"Resources: {len(current.resources)}")
    for address, record in sorted(current.resources.items()):
        click.echo(f"  {address}  {record.id or ''}")


@state.command("unlock")
@click.argument("lock_id")
@click.option("--yes", is_flag=True, help="Skip confirmation prompt")
@click.pass_context
def state_unlock(ctx: click.Context, lock_id: str, yes: bool) -> None:
    """Force-release a lock left by a crashed run."""
    settings = Settings.from_env(ctx.obj["root"])
    config = load_infra_config(settings.config_path)
    backend = get_backend(settings)
    ref = config.state_ref

    if not yes:
        click.confirm(f"Force-unlock {ref} (lock {lock_id})?", abort=True)

    holder = backend.force_unlock(ref, lock_id)
    AuditWriter(settings.ledger_path).emit(
        "lock_forced",
        run_id=holder.run_id or "-",
        env_key=ref.env_key,
        level="warning",
        details=holder.model_dump(),
    )
    click.secho(f"✓ Released {holder.describe()}", fg="green")


# ---------------------------------------------------------------------------
# artifacts
# ---------------------------------------------------------------------------

@click.group()
def artifacts() -> None:
    """Manage persisted plan artifacts."""


@artifacts.command("list")
@click.pass_context
def artifacts_list(ctx: click.Context) -> None:
    """List stored plan artifacts."""
    settings = Settings.from_env(ctx.obj["root"])
    store = ArtifactStore(settings.artifact_dir)

    items = store.list()
    if not items:
        click.echo("No plan artifacts.")
        return

    for artifact in items:
        latest = store.latest_id(artifact.env_key) == artifact.artifact_id
        flags = []
        if latest:
            flags.append("latest")
        if artifact.is_expired():
            flags.append("expired")
        s = artifact.summary()
        click.echo(
            f"{artifact.artifact_id}  {artifact.env_key}  "
            f"+{s['create']} ~{s['update']} -{s['delete']}  {artifact.created_at_iso}"
            + (f"  [{', '.join(flags)}]" if flags else "")
        )


@artifacts.command("purge")
@click.pass_context
def artifacts_purge(ctx: click.Context) -> None:
    """Delete expired and superseded plan artifacts."""
    settings = Settings.from_env(ctx.obj["root"])
    removed = ArtifactStore(settings.artifact_dir).purge()
    click.echo(f"Removed {len(removed)} artifact(s)")
    for artifact_id in removed:
        click.echo(f"  {artifact_id}")
