"""
Mirror Configuration — Parse MIRROR_* environment variables.

Configures one-way mirroring of a branch from a source remote (typically an
Azure DevOps repo) to a destination remote (typically GitHub).

Minimal required config:
    MIRROR_SOURCE_URL=https://dev.azure.com/org/project/_git/repo
    MIRROR_SOURCE_TOKEN=<azure devops PAT or System.AccessToken>
    MIRROR_DEST_REPO=owner/repo
    MIRROR_DEST_TOKEN=ghp_xxxxx

Optional:
    MIRROR_DEST_URL      full destination URL (instead of MIRROR_DEST_REPO)
    MIRROR_SOURCE_USER   basic-auth user for the source (default: "pat")
    MIRROR_BRANCH        branch to mirror (default: main)
    MIRROR_WORKDIR       local working repository (default: .iacsync/mirror)
    MIRROR_RETRIES       lease-conflict retries (default: 0)

Tokens come from the pipeline's secret store and are only ever placed in
the remote URL handed to git; logs and errors see the redacted form.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional
from urllib.parse import quote, urlsplit, urlunsplit

from ..errors import ConfigError

logger = logging.getLogger(__name__)

_USERINFO_PATTERN = re.compile(r"(https?://)[^@/\s]+@")


def redact(text: str, secrets: Optional[List[str]] = None) -> str:
    """Strip credentials from URLs and known secret values in ``text``."""
    text = _USERINFO_PATTERN.sub(r"\1***@", text)
    for secret in secrets or []:
        if secret:
            text = text.replace(secret, "***")
    return text


@dataclass
class RemoteEndpoint:
    """A git remote plus the credential used to reach it."""

    name: str
    url: str
    token: Optional[str] = None
    username: str = "x-access-token"

    @classmethod
    def github(cls, repo: str, token: Optional[str], name: str = "destination") -> "RemoteEndpoint":
        return cls(name=name, url=f"https://github.com/{repo}.git", token=token)

    @property
    def remote_url(self) -> str:
        """URL handed to git, with the token embedded for https remotes."""
        if not self.token:
            return self.url
        parts = urlsplit(self.url)
        if parts.scheme not in ("http", "https"):
            return self.url
        host = parts.hostname or ""
        if parts.port:
            host = f"{host}:{parts.port}"
        netloc = f"{quote(self.username, safe='')}:{quote(self.token, safe='')}@{host}"
        return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))

    @property
    def display_name(self) -> str:
        return redact(self.url, [self.token] if self.token else None)


@dataclass
class MirrorSettings:
    """Everything one mirror sync needs."""

    source: Optional[RemoteEndpoint] = None
    destination: Optional[RemoteEndpoint] = None
    branch: str = "main"
    workdir: Path = Path(".iacsync/mirror")
    retries: int = 0
    status_path: Path = field(default_factory=lambda: Path(".iacsync/mirror_status.json"))

    @classmethod
    def from_env(cls, root: Optional[Path] = None) -> "MirrorSettings":
        """Parse mirror configuration from environment variables."""
        root = Path(root) if root else Path.cwd()

        source = None
        source_url = os.environ.get("MIRROR_SOURCE_URL")
        if source_url:
            source = RemoteEndpoint(
                name="source",
                url=source_url,
                token=os.environ.get("MIRROR_SOURCE_TOKEN") or os.environ.get("SYSTEM_ACCESSTOKEN"),
                username=os.environ.get("MIRROR_SOURCE_USER", "pat"),
            )

        destination = None
        dest_token = os.environ.get("MIRROR_DEST_TOKEN")
        dest_url = os.environ.get("MIRROR_DEST_URL")
        dest_repo = os.environ.get("MIRROR_DEST_REPO")
        if dest_url:
            destination = RemoteEndpoint(name="destination", url=dest_url, token=dest_token)
        elif dest_repo:
            destination = RemoteEndpoint.github(dest_repo, dest_token)

        workdir = Path(os.environ.get("MIRROR_WORKDIR", ".iacsync/mirror"))
        if not workdir.is_absolute():
            workdir = root / workdir

        retries_raw = os.environ.get("MIRROR_RETRIES", "0")
        try:
            retries = int(retries_raw)
        except ValueError:
            raise ConfigError(f"MIRROR_RETRIES must be an integer, got {retries_raw!r}") from None

        settings = cls(
            source=source,
            destination=destination,
            branch=os.environ.get("MIRROR_BRANCH", "main"),
            workdir=workdir,
            retries=retries,
            status_path=root / ".iacsync" / "mirror_status.json",
        )
        if destination and not destination.token:
            logger.warning("No MIRROR_DEST_TOKEN set; pushing with ambient git credentials")
        return settings

    def validate(self) -> None:
        """Raise ConfigError unless both remotes are configured."""
        missing = []
        if self.source is None:
            missing.append("MIRROR_SOURCE_URL")
        if self.destination is None:
            missing.append("MIRROR_DEST_REPO or MIRROR_DEST_URL")
        if missing:
            raise ConfigError(f"Mirror not configured: set {', '.join(missing)}")
        if self.retries < 0:
            raise ConfigError("MIRROR_RETRIES cannot be negative")
