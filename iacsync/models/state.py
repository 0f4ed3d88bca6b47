"""
State Models — Pydantic schemas for remote infrastructure state.

A state document is the single source of truth for what an environment
currently contains. Exactly one document exists per environment key and it
is only written while the writer holds the key's lock.
"""

from __future__ import annotations

import getpass
import socket
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field


STATE_FORMAT_VERSION = 4


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class RemoteStateRef(BaseModel):
    """Where a state document lives: (storage location, container, key)."""

    location: str
    container: str = "tfstate"
    key: str

    model_config = {"frozen": True}

    @property
    def env_key(self) -> str:
        """Stable identifier used for locks, artifacts and the run ledger."""
        return f"{self.location}/{self.container}/{self.key}"

    def __str__(self) -> str:
        return self.env_key


class ResourceRecord(BaseModel):
    """One managed resource as recorded in state."""

    type: str
    name: str
    properties: Dict[str, Any] = Field(default_factory=dict)
    # Provider-assigned identifier, filled on create
    id: Optional[str] = None

    @property
    def address(self) -> str:
        return f"{self.type}.{self.name}"


class InfraState(BaseModel):
    """The resource inventory of one environment."""

    version: int = STATE_FORMAT_VERSION
    serial: int = 0
    # Assigned on first write; empty for a state that was never stored
    lineage: str = ""
    resources: Dict[str, ResourceRecord] = Field(default_factory=dict)
    outputs: Dict[str, Any] = Field(default_factory=dict)
    # Raw document produced by an external tool (terraform), kept verbatim
    raw: Optional[Dict[str, Any]] = None


LockOperation = Literal["plan", "apply", "unlock"]


class LockInfo(BaseModel):
    """Who holds a state lock and why."""

    lock_id: str = Field(default_factory=lambda: str(uuid4()))
    run_id: str = ""
    operation: LockOperation = "plan"
    who: str = Field(default_factory=lambda: _default_who())
    created_at_iso: str = Field(default_factory=_now_iso)

    def describe(self) -> str:
        return (
            f"lock {self.lock_id} held by {self.who} "
            f"(run={self.run_id or '-'}, op={self.operation}, since {self.created_at_iso})"
        )


def _default_who() -> str:
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = "unknown"
    return f"{user}@{socket.gethostname()}"
