"""
Run Ledger — Append-only NDJSON audit log.

Each line is one JSON object (newline-delimited JSON).
Events are never edited, only appended. The pipeline publishes the ledger
as a build artifact so every plan, apply, lock break and mirror push can be
traced back to a run.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional
from uuid import uuid4

from ..models.artifact import PlanArtifact


class AuditWriter:
    """
    Append-only NDJSON ledger writer.

    Usage:
        audit = AuditWriter(Path(".iacsync/ledger.ndjson"))
        audit.emit("plan_created", run_id="R-123", env_key="tfstatedev/tfstate/dev.tfstate")
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._ensure_exists()

    def _ensure_exists(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not self.path.exists():
            self.path.touch()

    def emit(
        self,
        event_type: str,
        run_id: str,
        env_key: Optional[str] = None,
        level: str = "info",
        details: Optional[Dict[str, Any]] = None,
        artifact_id: Optional[str] = None,
    ) -> str:
        """
        Emit a ledger event.

        Args:
            event_type: Type of event (plan_created, apply_completed, etc.)
            run_id: Identifier of the pipeline run
            env_key: State reference the event concerns
            level: info, warning or error
            details: Additional event details
            artifact_id: Plan artifact the event concerns

        Returns:
            Generated event_id
        """
        event_id = f"E-{uuid4().hex[:8].upper()}"
        now = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")

        entry: Dict[str, Any] = {
            "ts_iso": now,
            "event_id": event_id,
            "run_id": run_id,
            "level": level,
            "type": event_type,
        }

        if env_key is not None:
            entry["env_key"] = env_key
        if artifact_id is not None:
            entry["artifact_id"] = artifact_id
        if details is not None:
            entry["details"] = details

        with self.path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(entry, default=str) + "\n")

        return event_id

    def emit_plan_created(self, artifact: PlanArtifact) -> str:
        return self.emit(
            event_type="plan_created",
            run_id=artifact.run_id,
            env_key=artifact.env_key,
            artifact_id=artifact.artifact_id,
            details={
                "fingerprint": artifact.fingerprint,
                "base_serial": artifact.base_serial,
                "provisioner": artifact.provisioner,
                "summary": artifact.summary(),
            },
        )

    def emit_apply_rejected(self, run_id: str, env_key: str, artifact_id: str, reason: str) -> str:
        return self.emit(
            event_type="apply_rejected",
            run_id=run_id,
            env_key=env_key,
            artifact_id=artifact_id,
            level="error",
            details={"reason": reason},
        )

    def emit_apply_completed(
        self,
        artifact: PlanArtifact,
        run_id: str,
        serial: int,
        duration_ms: int,
    ) -> str:
        return self.emit(
            event_type="apply_completed",
            run_id=run_id,
            env_key=artifact.env_key,
            artifact_id=artifact.artifact_id,
            details={
                "serial": serial,
                "duration_ms": duration_ms,
                "summary": artifact.summary(),
            },
        )

    def read(self) -> List[Dict[str, Any]]:
        """Return every event in the ledger."""
        return list(self.iter_events())

    def iter_events(self) -> Iterator[Dict[str, Any]]:
        with self.path.open("r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if line:
                    yield json.loads(line)
