"""
Git Sync — Mirror one branch from a source remote to a destination remote.

Sequence (one blocking pass, no internal parallelism):
1. Fetch the source branch into the local working repo
2. Reset the local branch to the source head
3. Fetch the destination branch to observe its current head (the lease)
4. Push with --force-with-lease=<branch>:<lease>

Git evaluates the lease on the destination server, so if anyone pushed to
the destination after step 3 the push is rejected and the destination is
left untouched. A rejected push raises LeaseConflictError; callers may
retry with a refreshed lease (``retries``) or override with ``force``.
"""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ..errors import AuthenticationError, IacSyncError, LeaseConflictError
from .config import RemoteEndpoint, redact

logger = logging.getLogger(__name__)

SOURCE_REF = "refs/remotes/source/{branch}"
DEST_REF = "refs/remotes/destination/{branch}"

_AUTH_MARKERS = (
    "Authentication failed",
    "could not read Username",
    "could not read Password",
    "terminal prompts disabled",
    "Invalid username or password",
    "The requested URL returned error: 401",
    "The requested URL returned error: 403",
    "Permission denied",
)

_LEASE_MARKERS = ("stale info", "(fetch first)")

_MISSING_REF_MARKERS = ("couldn't find remote ref", "could not find remote ref")


# ---------------------------------------------------------------------------
# Git helpers
# ---------------------------------------------------------------------------

def _git(repo: Path, *args: str, timeout: int = 300) -> subprocess.CompletedProcess:
    """
    Run a git command in the repo directory, never prompting for credentials.

    Failures to run at all are raised with the subcommand name only; the
    full command line carries credentialed remote URLs.
    """
    cmd = ["git"] + list(args)
    env = {**os.environ, "GIT_TERMINAL_PROMPT": "0"}
    try:
        return subprocess.run(
            cmd,
            cwd=str(repo),
            capture_output=True,
            text=True,
            timeout=timeout,
            env=env,
        )
    except FileNotFoundError:
        raise IacSyncError("git executable not found on PATH") from None
    except subprocess.TimeoutExpired:
        raise IacSyncError(f"git {args[0]} timed out after {timeout}s") from None


def _output(result: subprocess.CompletedProcess) -> str:
    return (result.stderr or "").strip() or (result.stdout or "").strip()


@dataclass
class SyncResult:
    """Outcome of one mirror sync."""

    branch: str
    source_head: str
    previous_head: Optional[str]
    pushed: bool
    forced: bool = False
    attempts: int = 1

    @property
    def up_to_date(self) -> bool:
        return not self.pushed

    def to_dict(self) -> dict:
        return {
            "branch": self.branch,
            "source_head": self.source_head,
            "previous_head": self.previous_head,
            "pushed": self.pushed,
            "forced": self.forced,
            "attempts": self.attempts,
        }


class RepoMirror:
    """Mirrors branches through a local working repository."""

    def __init__(self, workdir: Path, timeout: int = 300):
        self.workdir = Path(workdir)
        self.timeout = timeout

    # ------------------------------------------------------------------
    # Low-level steps
    # ------------------------------------------------------------------

    def _run(self, *args: str, secrets: tuple = ()) -> subprocess.CompletedProcess:
        result = _git(self.workdir, *args, timeout=self.timeout)
        if result.returncode != 0:
            self._raise_for(args[0], result, list(secrets))
        return result

    @staticmethod
    def _raise_for(command: str, result: subprocess.CompletedProcess, secrets: list) -> None:
        error = redact(_output(result) or f"git {command} failed", secrets)
        if any(marker in error for marker in _AUTH_MARKERS):
            raise AuthenticationError(f"git {command}: {error}")
        raise IacSyncError(f"git {command} failed: {error}")

    def ensure_repo(self) -> None:
        """Create the working repository on first use."""
        if (self.workdir / ".git").exists():
            return
        self.workdir.mkdir(parents=True, exist_ok=True)
        logger.info(f"[mirror-git] Initialising working repo at {self.workdir}")
        self._run("init", "--quiet")

    def _rev_parse(self, ref: str) -> Optional[str]:
        result = _git(self.workdir, "rev-parse", "--verify", "--quiet", ref, timeout=self.timeout)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def fetch_source(self, source: RemoteEndpoint, branch: str) -> str:
        """Fetch the source branch and return its head commit."""
        ref = SOURCE_REF.format(branch=branch)
        logger.info(f"[mirror-git] Fetching {source.display_name} ({branch})")
        self._run(
            "fetch", "--no-tags", "--quiet", source.remote_url,
            f"+refs/heads/{branch}:{ref}",
            secrets=(source.token,),
        )
        head = self._rev_parse(ref)
        if head is None:
            raise IacSyncError(f"Source branch {branch} resolved to nothing after fetch")
        return head

    def reset_to(self, branch: str, commit: str) -> None:
        """Point the local branch at ``commit`` and check it out."""
        self._run("checkout", "--quiet", "--force", "-B", branch, commit)
        self._run("reset", "--quiet", "--hard", commit)

    def observe_destination(self, destination: RemoteEndpoint, branch: str) -> Optional[str]:
        """Fetch the destination branch and return its head, or None if absent."""
        ref = DEST_REF.format(branch=branch)
        result = _git(
            self.workdir,
            "fetch", "--no-tags", "--quiet", destination.remote_url,
            f"+refs/heads/{branch}:{ref}",
            timeout=self.timeout,
        )
        if result.returncode != 0:
            error = _output(result)
            if any(marker in error for marker in _MISSING_REF_MARKERS):
                logger.info(f"[mirror-git] {destination.display_name} has no {branch} yet")
                _git(self.workdir, "update-ref", "-d", ref, timeout=self.timeout)
                return None
            self._raise_for("fetch", result, [destination.token])
        return self._rev_parse(ref)

    def push(
        self,
        destination: RemoteEndpoint,
        branch: str,
        commit: str,
        lease: Optional[str],
        force: bool = False,
    ) -> None:
        """Push ``commit`` to the destination branch, guarded by ``lease``."""
        target = f"refs/heads/{branch}"
        if force:
            guard = "--force"
        else:
            # Empty expected value means the branch must not exist yet
            guard = f"--force-with-lease={target}:{lease or ''}"

        result = _git(
            self.workdir,
            "push", "--porcelain", guard, destination.remote_url, f"{commit}:{target}",
            timeout=self.timeout,
        )
        if result.returncode == 0:
            return

        # --porcelain reports per-ref rejections on stdout
        report = f"{result.stdout or ''}\n{result.stderr or ''}"
        if any(marker in report for marker in _LEASE_MARKERS):
            raise LeaseConflictError(
                f"{destination.display_name}/{branch} moved since it was observed "
                f"(expected {lease or 'no branch'})",
                expected=lease,
            )
        self._raise_for("push", result, [destination.token])

    # ------------------------------------------------------------------
    # Full sync
    # ------------------------------------------------------------------

    def sync(
        self,
        source: RemoteEndpoint,
        destination: RemoteEndpoint,
        branch: str = "main",
        force: bool = False,
        retries: int = 0,
    ) -> SyncResult:
        """
        Mirror ``branch`` from source to destination.

        Args:
            source: Remote to read from
            destination: Remote to write to
            branch: Branch name on both sides
            force: Push without a lease (explicit override)
            retries: Extra attempts with a refreshed lease after a conflict

        Raises:
            LeaseConflictError: Destination advanced and retries ran out
            AuthenticationError: A remote rejected the credentials
        """
        self.ensure_repo()

        source_head = self.fetch_source(source, branch)
        self.reset_to(branch, source_head)

        attempts = 0
        while True:
            attempts += 1
            lease = self.observe_destination(destination, branch)

            if lease == source_head:
                logger.info(f"[mirror-git] {destination.display_name}: already up to date")
                return SyncResult(branch, source_head, lease, pushed=False, attempts=attempts)

            logger.info(
                f"[mirror-git] Pushing {source_head[:12]} to {destination.display_name}/{branch} "
                f"(lease {lease[:12] if lease else 'none'}{', forced' if force else ''})"
            )
            try:
                self.push(destination, branch, source_head, lease, force=force)
            except LeaseConflictError:
                if attempts > retries:
                    raise
                logger.warning(
                    f"[mirror-git] Lease conflict on {destination.display_name}/{branch}, "
                    f"refreshing lease (attempt {attempts}/{retries + 1})"
                )
                continue

            logger.info(f"[mirror-git] {destination.display_name}: pushed {source_head[:12]}")
            return SyncResult(branch, source_head, lease, pushed=True, forced=force, attempts=attempts)
