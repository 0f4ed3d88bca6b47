"""
Tests for iacsync.mirror.git_sync

Tests the RepoMirror class: lease-guarded push, up-to-date detection,
conflict handling, retries with a refreshed lease, forced pushes and
credential redaction.

All git operations are mocked — no real repos needed. A small fake
models the source and destination remotes and evaluates the lease the
way the git server does.
"""

import subprocess
from pathlib import Path
from typing import Dict, List, Optional
from unittest import mock

import pytest

from iacsync.errors import AuthenticationError, IacSyncError, LeaseConflictError
from iacsync.mirror.config import RemoteEndpoint
from iacsync.mirror.git_sync import RepoMirror, SyncResult, _git


SOURCE = RemoteEndpoint(
    name="source",
    url="https://dev.azure.com/org/project/_git/infra",
    token="src-secret",
    username="pat",
)
DEST = RemoteEndpoint.github("acme/infra", "ghp_dest_secret")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _result(returncode: int = 0, stdout: str = "", stderr: str = ""):
    """Create a subprocess.CompletedProcess."""
    return subprocess.CompletedProcess(args=["git"], returncode=returncode, stdout=stdout, stderr=stderr)


class FakeRemotes:
    """Stands in for ``_git``: two remotes plus the local ref table."""

    def __init__(self, source_head: str = "c0ffee1", dest_head: Optional[str] = "0ld0001"):
        self.source_head = source_head
        self.dest_head = dest_head
        self.refs: Dict[str, str] = {}
        self.calls: List[tuple] = []
        # Heads other writers push to the destination right before our push
        self.concurrent_pushes: List[str] = []
        self.source_error: Optional[str] = None

    def pushes(self) -> List[tuple]:
        return [c for c in self.calls if c[0] == "push"]

    def __call__(self, repo: Path, *args: str, timeout: int = 300):
        self.calls.append(args)
        command = args[0]

        if command == "fetch":
            url, refspec = args[-2], args[-1]
            local_ref = refspec.split(":", 1)[1]
            if "dev.azure.com" in url:
                if self.source_error:
                    return _result(128, stderr=self.source_error.format(url=url))
                self.refs[local_ref] = self.source_head
                return _result()
            if self.dest_head is None:
                return _result(128, stderr="fatal: couldn't find remote ref refs/heads/main")
            self.refs[local_ref] = self.dest_head
            return _result()

        if command == "rev-parse":
            head = self.refs.get(args[-1])
            return _result(0, stdout=f"{head}\n") if head else _result(1)

        if command == "update-ref":
            self.refs.pop(args[-1], None)
            return _result()

        if command == "push":
            guard, refspec = args[2], args[4]
            commit = refspec.split(":", 1)[0]
            if self.concurrent_pushes:
                self.dest_head = self.concurrent_pushes.pop(0)
            if guard == "--force":
                self.dest_head = commit
                return _result(stdout="+\trefs/heads/main\n")
            expected = guard.rsplit(":", 1)[1]
            if expected != (self.dest_head or ""):
                return _result(
                    1,
                    stdout="!\trefs/heads/main:refs/heads/main\t[rejected] (stale info)\n",
                    stderr=f"error: failed to push some refs to '{args[3]}'",
                )
            self.dest_head = commit
            return _result(stdout=" \trefs/heads/main\n")

        # init, checkout, reset
        return _result()


@pytest.fixture
def remotes():
    fake = FakeRemotes()
    with mock.patch("iacsync.mirror.git_sync._git", side_effect=fake):
        yield fake


# ---------------------------------------------------------------------------
# sync()
# ---------------------------------------------------------------------------

class TestSync:
    """Full fetch → reset → observe → push sequence."""

    def test_pushes_with_observed_lease(self, remotes, tmp_path):
        """Destination behind source → push guarded by its current head."""
        result = RepoMirror(tmp_path).sync(SOURCE, DEST, branch="main")

        assert result.pushed is True
        assert result.source_head == "c0ffee1"
        assert result.previous_head == "0ld0001"
        assert remotes.dest_head == "c0ffee1"
        push = remotes.pushes()[0]
        assert push[2] == "--force-with-lease=refs/heads/main:0ld0001"
        assert push[4] == "c0ffee1:refs/heads/main"

    def test_resets_local_branch_to_source_head(self, remotes, tmp_path):
        RepoMirror(tmp_path).sync(SOURCE, DEST, branch="main")

        assert ("checkout", "--quiet", "--force", "-B", "main", "c0ffee1") in remotes.calls
        assert ("reset", "--quiet", "--hard", "c0ffee1") in remotes.calls

    def test_up_to_date_skips_push(self, remotes, tmp_path):
        remotes.dest_head = "c0ffee1"

        result = RepoMirror(tmp_path).sync(SOURCE, DEST)

        assert result.pushed is False
        assert result.up_to_date is True
        assert remotes.pushes() == []

    def test_new_destination_branch(self, remotes, tmp_path):
        """Missing destination branch → lease expects it to still be absent."""
        remotes.dest_head = None

        result = RepoMirror(tmp_path).sync(SOURCE, DEST)

        assert result.pushed is True
        assert result.previous_head is None
        assert remotes.pushes()[0][2] == "--force-with-lease=refs/heads/main:"
        assert remotes.dest_head == "c0ffee1"

    def test_lease_conflict_leaves_destination_untouched(self, remotes, tmp_path):
        """Someone pushed after we observed → LeaseConflictError, their commit stays."""
        remotes.concurrent_pushes = ["7he1r5"]

        with pytest.raises(LeaseConflictError) as exc_info:
            RepoMirror(tmp_path).sync(SOURCE, DEST)

        assert remotes.dest_head == "7he1r5"
        assert exc_info.value.expected == "0ld0001"
        assert len(remotes.pushes()) == 1

    def test_conflict_never_falls_back_to_force(self, remotes, tmp_path):
        remotes.concurrent_pushes = ["7he1r5"]

        with pytest.raises(LeaseConflictError):
            RepoMirror(tmp_path).sync(SOURCE, DEST, retries=0)

        assert all(push[2] != "--force" for push in remotes.pushes())

    def test_retry_refreshes_lease(self, remotes, tmp_path):
        """With retries, the second attempt re-observes the destination."""
        remotes.concurrent_pushes = ["7he1r5"]

        result = RepoMirror(tmp_path).sync(SOURCE, DEST, retries=1)

        assert result.pushed is True
        assert result.attempts == 2
        assert result.previous_head == "7he1r5"
        guards = [push[2] for push in remotes.pushes()]
        assert guards == [
            "--force-with-lease=refs/heads/main:0ld0001",
            "--force-with-lease=refs/heads/main:7he1r5",
        ]

    def test_retries_exhausted(self, remotes, tmp_path):
        remotes.concurrent_pushes = ["a1", "b2", "c3"]

        with pytest.raises(LeaseConflictError):
            RepoMirror(tmp_path).sync(SOURCE, DEST, retries=2)

        assert len(remotes.pushes()) == 3
        assert remotes.dest_head == "c3"

    def test_force_overrides(self, remotes, tmp_path):
        """Explicit force pushes without a lease."""
        remotes.concurrent_pushes = ["7he1r5"]

        result = RepoMirror(tmp_path).sync(SOURCE, DEST, force=True)

        assert result.forced is True
        assert remotes.pushes()[0][2] == "--force"
        assert remotes.dest_head == "c0ffee1"

    def test_source_auth_failure(self, remotes, tmp_path):
        remotes.source_error = "fatal: Authentication failed for '{url}'"

        with pytest.raises(AuthenticationError) as exc_info:
            RepoMirror(tmp_path).sync(SOURCE, DEST)

        assert "src-secret" not in str(exc_info.value)
        assert remotes.pushes() == []

    def test_other_fetch_failure(self, remotes, tmp_path):
        remotes.source_error = "fatal: unable to access '{url}': Could not resolve host"

        with pytest.raises(IacSyncError, match="git fetch failed") as exc_info:
            RepoMirror(tmp_path).sync(SOURCE, DEST)

        assert not isinstance(exc_info.value, AuthenticationError)
        assert "src-secret" not in str(exc_info.value)

    def test_tokens_only_in_remote_urls(self, remotes, tmp_path):
        """Credentials travel in the URL handed to git, never as separate args."""
        RepoMirror(tmp_path).sync(SOURCE, DEST)

        fetches = [c for c in remotes.calls if c[0] == "fetch"]
        assert fetches[0][-2] == SOURCE.remote_url
        assert fetches[1][-2] == DEST.remote_url


class TestSyncResult:
    def test_to_dict(self):
        result = SyncResult("main", "abc", None, pushed=True, attempts=2)
        assert result.to_dict() == {
            "branch": "main",
            "source_head": "abc",
            "previous_head": None,
            "pushed": True,
            "forced": False,
            "attempts": 2,
        }


class TestGitHelper:
    """The subprocess wrapper itself."""

    @mock.patch("iacsync.mirror.git_sync.subprocess.run")
    def test_disables_terminal_prompt(self, mock_run, tmp_path):
        mock_run.return_value = _result()

        _git(tmp_path, "status", timeout=5)

        args, kwargs = mock_run.call_args
        assert args[0] == ["git", "status"]
        assert kwargs["cwd"] == str(tmp_path)
        assert kwargs["env"]["GIT_TERMINAL_PROMPT"] == "0"
        assert kwargs["timeout"] == 5

    @mock.patch("iacsync.mirror.git_sync.subprocess.run")
    def test_timeout_hides_command_line(self, mock_run, tmp_path):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd=["git", "fetch", SOURCE.remote_url], timeout=5)

        with pytest.raises(IacSyncError) as exc_info:
            _git(tmp_path, "fetch", SOURCE.remote_url, timeout=5)

        message = str(exc_info.value)
        assert message == "git fetch timed out after 5s"
        assert "src-secret" not in message
        assert exc_info.value.__cause__ is None
        assert exc_info.value.__suppress_context__

    @mock.patch("iacsync.mirror.git_sync.subprocess.run", side_effect=FileNotFoundError("git"))
    def test_missing_git_binary(self, mock_run, tmp_path):
        with pytest.raises(IacSyncError, match="not found"):
            _git(tmp_path, "status")

    @mock.patch("iacsync.mirror.git_sync.subprocess.run")
    def test_sync_timeout_is_typed_error(self, mock_run, tmp_path):
        (tmp_path / ".git").mkdir()
        mock_run.side_effect = subprocess.TimeoutExpired(cmd=["git", "fetch", SOURCE.remote_url], timeout=300)

        with pytest.raises(IacSyncError) as exc_info:
            RepoMirror(tmp_path).sync(SOURCE, DEST, branch="main")

        assert "src-secret" not in str(exc_info.value)
