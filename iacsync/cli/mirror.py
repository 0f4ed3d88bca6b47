"""
CLI mirror commands — sync and status of the repository mirror.

Usage:
    iacsync mirror sync [--branch main] [--force] [--retries N]
    iacsync mirror status [--json]
"""

from __future__ import annotations

import json
from typing import Optional

import click

from ..config.loader import Settings
from ..engine.machine import generate_run_id
from ..errors import IacSyncError, LeaseConflictError
from ..mirror.config import MirrorSettings
from ..mirror.git_sync import RepoMirror
from ..mirror.state import MirrorState
from ..persistence.audit import AuditWriter


@click.group()
def mirror() -> None:
    """Mirror a branch from the source remote to the destination remote."""


@mirror.command("sync")
@click.option("--branch", default=None, help="Branch to mirror (default: $MIRROR_BRANCH or main)")
@click.option("--force", is_flag=True, help="Overwrite the destination without a lease")
@click.option("--retries", type=int, default=None, help="Retries with a refreshed lease on conflict")
@click.pass_context
def mirror_sync(ctx: click.Context, branch: Optional[str], force: bool, retries: Optional[int]) -> None:
    """Fetch the source branch and push it to the destination under a lease."""
    root = ctx.obj["root"]
    settings = MirrorSettings.from_env(root)
    settings.validate()

    branch = branch or settings.branch
    retries = settings.retries if retries is None else retries
    audit = AuditWriter(Settings.from_env(root).ledger_path)
    run_id = generate_run_id()

    state = MirrorState.load(settings.status_path)
    target = state.ensure_target(
        MirrorState.target_id(settings.destination.display_name, branch),
        settings.destination.display_name,
        branch,
    )

    click.echo(f"\n🔀 {settings.source.display_name} → {settings.destination.display_name} ({branch})")
    syncer = RepoMirror(settings.workdir)

    try:
        result = syncer.sync(
            settings.source,
            settings.destination,
            branch=branch,
            force=force,
            retries=retries,
        )
    except IacSyncError as e:
        conflict = isinstance(e, LeaseConflictError)
        target.code.mark_failed(str(e), conflict=conflict)
        state.save(settings.status_path)
        audit.emit(
            "mirror_failed",
            run_id=run_id,
            level="error",
            details={"destination": target.url, "branch": branch, "error": str(e), "kind": type(e).__name__},
        )
        if conflict:
            click.secho(
                "  Destination changed concurrently. Re-run to retry with a fresh lease, "
                "or pass --force to overwrite.",
                fg="yellow",
                err=True,
            )
        raise

    target.code.mark_ok(detail=result.source_head, lease=result.previous_head, pushed=result.pushed)
    state.save(settings.status_path)
    audit.emit(
        "mirror_synced",
        run_id=run_id,
        details={"destination": target.url, **result.to_dict()},
    )

    if result.pushed:
        click.secho(f"✅ Pushed {result.source_head[:12]}", fg="green")
    else:
        click.secho(f"✅ Already up to date ({result.source_head[:12]})", fg="green")


@mirror.command("status")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def mirror_status(ctx: click.Context, as_json: bool) -> None:
    """Show the last sync result for each destination."""
    settings = MirrorSettings.from_env(ctx.obj["root"])
    state = MirrorState.load(settings.status_path)

    if as_json:
        click.echo(json.dumps(state.to_api_dict(), indent=2, default=str))
        return

    click.echo("\n🔀 Mirror Status\n")
    if not state.targets:
        click.echo("  No syncs recorded yet.")
        click.echo()
        return

    for t in state.targets:
        status = t.code.status
        icon = {"ok": "✅", "up-to-date": "✅", "failed": "❌", "conflict": "⚠️"}.get(status, "⏳")
        line = f"  {icon} {t.url} ({t.branch}): {status}"
        if t.code.detail:
            line += f" ({t.code.detail[:12]})"
        if t.code.last_error:
            line += f" — {t.code.last_error[:80]}"
        if t.code.last_sync_iso:
            line += f" [{t.code.last_sync_iso[:19]}]"
        click.echo(line)
    click.echo()
