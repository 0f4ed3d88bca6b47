"""
iacsync — CLI Entry Point

Usage:
    iacsync plan
    iacsync apply [ARTIFACT_ID]
    iacsync run [--branch refs/heads/main] [--auto-approve]
    iacsync state show
    iacsync state unlock LOCK_ID
    iacsync artifacts list|purge
    iacsync mirror sync [--force] [--retries N]
    iacsync mirror status [--json]

Every command exits 0 on success and with the failing error's exit code
otherwise (see iacsync.errors).
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import click
from dotenv import load_dotenv

from .cli.core import apply, artifacts, plan, run, state
from .cli.mirror import mirror
from .errors import IacSyncError
from .logging_config import setup_logging


class IacSyncGroup(click.Group):
    """Command group that turns pipeline errors into exit codes."""

    def invoke(self, ctx: click.Context):
        try:
            return super().invoke(ctx)
        except IacSyncError as e:
            click.secho(f"✗ {e}", fg="red", err=True)
            ctx.exit(e.exit_code)


@click.group(cls=IacSyncGroup)
@click.option(
    "--root",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Project root (default: current directory)",
)
@click.option("--log-level", default=None, help="DEBUG, INFO, WARNING, ERROR")
@click.option("--log-format", type=click.Choice(["text", "json", "azure"]), default=None)
@click.pass_context
def cli(
    ctx: click.Context,
    root: Optional[Path],
    log_level: Optional[str],
    log_format: Optional[str],
) -> None:
    """iacsync — Gated plan/apply for infrastructure state, and repo mirroring."""
    root = (root or Path.cwd()).resolve()

    # Load .env before anything reads the environment
    env_file = root / ".env"
    if env_file.exists():
        load_dotenv(env_file)

    setup_logging(level=log_level, format_type=log_format)

    ctx.ensure_object(dict)
    ctx.obj["root"] = root


cli.add_command(plan)
cli.add_command(apply)
cli.add_command(run)
cli.add_command(state)
cli.add_command(artifacts)
cli.add_command(mirror)


if __name__ == "__main__":
    cli()
