"""
Plan Artifact Models — What a plan run hands to the apply run.

The artifact metadata is plain JSON. The payload is opaque bytes owned by
the provisioner that produced it (a terraform plan file, or the canonical
change list for the built-in provisioner).
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


ChangeAction = Literal["create", "update", "delete", "no-op"]


class ResourceChange(BaseModel):
    """A single planned change to one resource address."""

    address: str
    action: ChangeAction
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None


class PlanArtifact(BaseModel):
    """Immutable record of one plan."""

    artifact_id: str
    env_key: str
    run_id: str
    fingerprint: str
    provisioner: str
    base_serial: int
    base_lineage: str
    changes: List[ResourceChange] = Field(default_factory=list)
    created_at_iso: str
    expires_at_iso: str
    payload_sha256: str

    model_config = {"frozen": True}

    @property
    def has_changes(self) -> bool:
        return any(c.action != "no-op" for c in self.changes)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        expires = datetime.fromisoformat(self.expires_at_iso.replace("Z", "+00:00"))
        return now >= expires

    def summary(self) -> Dict[str, int]:
        """Count changes per action, terraform-style."""
        counts = {"create": 0, "update": 0, "delete": 0}
        for change in self.changes:
            if change.action in counts:
                counts[change.action] += 1
        return counts
