"""
Mirror State — Track sync status for each destination.

State is stored in .iacsync/mirror_status.json (separate from the
infrastructure state; it is bookkeeping for operators, never an input to
a sync decision).
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class SyncStatus:
    """Status of the last sync to one destination."""

    last_sync_iso: Optional[str] = None
    status: str = "unknown"  # ok, up-to-date, failed, conflict, unknown
    last_error: Optional[str] = None
    detail: Optional[str] = None  # pushed commit
    lease: Optional[str] = None  # destination head observed before the push

    def mark_ok(self, detail: Optional[str] = None, lease: Optional[str] = None, pushed: bool = True):
        self.last_sync_iso = datetime.now(timezone.utc).isoformat()
        self.status = "ok" if pushed else "up-to-date"
        self.last_error = None
        self.detail = detail
        self.lease = lease

    def mark_failed(self, error: str, conflict: bool = False):
        self.last_sync_iso = datetime.now(timezone.utc).isoformat()
        self.status = "conflict" if conflict else "failed"
        self.last_error = error


@dataclass
class MirrorTarget:
    """Status of a single destination remote and branch."""

    id: str
    url: str
    branch: str = "main"
    code: SyncStatus = field(default_factory=SyncStatus)


@dataclass
class MirrorState:
    """Complete mirror state."""

    targets: List[MirrorTarget] = field(default_factory=list)

    @classmethod
    def load(cls, path: Path) -> "MirrorState":
        """Load mirror state from file. A missing or unreadable file starts empty."""
        if not path.exists():
            return cls()

        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            return cls._from_dict(data)
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring unreadable mirror state {path}: {e}")
            return cls()

    def save(self, path: Path):
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self._to_dict(), f, indent=4, default=str)

    def get_target(self, target_id: str) -> Optional[MirrorTarget]:
        for t in self.targets:
            if t.id == target_id:
                return t
        return None

    def ensure_target(self, target_id: str, url: str, branch: str) -> MirrorTarget:
        """Get or create a target entry."""
        existing = self.get_target(target_id)
        if existing:
            existing.url = url
            return existing

        target = MirrorTarget(id=target_id, url=url, branch=branch)
        self.targets.append(target)
        return target

    @staticmethod
    def target_id(url: str, branch: str) -> str:
        return f"{url}#{branch}"

    @classmethod
    def _from_dict(cls, data: Dict) -> "MirrorState":
        targets = []
        for t in data.get("targets", []):
            target = MirrorTarget(id=t["id"], url=t.get("url", ""), branch=t.get("branch", "main"))
            if t.get("code"):
                target.code = SyncStatus(**t["code"])
            targets.append(target)
        return cls(targets=targets)

    def _to_dict(self) -> Dict:
        return {"targets": [asdict(t) for t in self.targets]}

    def to_api_dict(self) -> Dict:
        return self._to_dict()
