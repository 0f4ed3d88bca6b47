"""
Plan Artifact Store — Hand-off between the plan and apply stages.

Storage layout:

    {root}/{env}/{artifact_id}.json   metadata (PlanArtifact)
    {root}/{env}/{artifact_id}.plan   payload bytes
    {root}/{env}/LATEST               id of the most recent plan

where {env} is the env key with "/" replaced by "__". In a pipeline the
root directory is published as a build artifact by the plan stage and
downloaded by the apply stage.

An artifact is immutable once saved and removed when consumed by apply.
Only the artifact named in LATEST may be applied; older ones are kept
until purged so a rejection can say what superseded them.
"""

from __future__ import annotations

import hashlib
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError

from ..errors import ArtifactIntegrityError, IacSyncError, StaleArtifactError
from ..models.artifact import PlanArtifact

logger = logging.getLogger(__name__)

LATEST_FILE = "LATEST"


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _atomic_write(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_name(path.name + ".tmp")
    temp_path.write_bytes(data)
    os.replace(temp_path, path)


class ArtifactStore:
    """Directory of plan artifacts, grouped by env key."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def _env_dir(self, env_key: str) -> Path:
        return self.root / env_key.replace("/", "__")

    def _meta_path(self, env_key: str, artifact_id: str) -> Path:
        return self._env_dir(env_key) / f"{artifact_id}.json"

    def _payload_path(self, env_key: str, artifact_id: str) -> Path:
        return self._env_dir(env_key) / f"{artifact_id}.plan"

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def save(self, artifact: PlanArtifact, payload: bytes) -> None:
        """Persist an artifact and mark it as the latest plan for its env."""
        if sha256_hex(payload) != artifact.payload_sha256:
            raise ArtifactIntegrityError(
                f"Payload does not match checksum for {artifact.artifact_id}",
                artifact_id=artifact.artifact_id,
            )

        meta_path = self._meta_path(artifact.env_key, artifact.artifact_id)
        if meta_path.exists():
            raise IacSyncError(f"Artifact {artifact.artifact_id} already exists")

        _atomic_write(self._payload_path(artifact.env_key, artifact.artifact_id), payload)
        _atomic_write(meta_path, artifact.model_dump_json(indent=2).encode("utf-8"))
        _atomic_write(
            self._env_dir(artifact.env_key) / LATEST_FILE,
            artifact.artifact_id.encode("utf-8"),
        )
        logger.info(f"Artifact saved: {artifact.artifact_id} ({len(payload)} bytes)")

    def consume(self, artifact: PlanArtifact) -> None:
        """Delete an applied artifact so it can never be applied again."""
        self._meta_path(artifact.env_key, artifact.artifact_id).unlink(missing_ok=True)
        self._payload_path(artifact.env_key, artifact.artifact_id).unlink(missing_ok=True)
        if self.latest_id(artifact.env_key) == artifact.artifact_id:
            (self._env_dir(artifact.env_key) / LATEST_FILE).unlink(missing_ok=True)
        logger.info(f"Artifact consumed: {artifact.artifact_id}")

    def purge(self, now: Optional[datetime] = None) -> List[str]:
        """Remove expired and superseded artifacts. Returns removed ids."""
        now = now or datetime.now(timezone.utc)
        removed: List[str] = []
        for artifact in self.list():
            superseded = self.latest_id(artifact.env_key) != artifact.artifact_id
            if superseded or artifact.is_expired(now):
                self.consume(artifact)
                removed.append(artifact.artifact_id)
        return removed

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def latest_id(self, env_key: str) -> Optional[str]:
        path = self._env_dir(env_key) / LATEST_FILE
        try:
            return path.read_text(encoding="utf-8").strip() or None
        except FileNotFoundError:
            return None

    def get(self, artifact_id: str, env_key: Optional[str] = None) -> PlanArtifact:
        """Load artifact metadata by id."""
        if env_key is not None:
            candidates = [self._meta_path(env_key, artifact_id)]
        else:
            candidates = sorted(self.root.glob(f"*/{artifact_id}.json"))

        for path in candidates:
            if path.exists():
                return self._read_meta(path)

        raise StaleArtifactError(
            f"Artifact {artifact_id} not found (already applied or purged)",
            artifact_id=artifact_id,
        )

    def load_payload(self, artifact: PlanArtifact) -> bytes:
        """Read an artifact's payload, verifying its checksum."""
        path = self._payload_path(artifact.env_key, artifact.artifact_id)
        try:
            payload = path.read_bytes()
        except FileNotFoundError:
            raise StaleArtifactError(
                f"Payload for {artifact.artifact_id} is missing",
                artifact_id=artifact.artifact_id,
            ) from None

        if sha256_hex(payload) != artifact.payload_sha256:
            raise ArtifactIntegrityError(
                f"Payload for {artifact.artifact_id} was modified after planning",
                artifact_id=artifact.artifact_id,
            )
        return payload

    def list(self, env_key: Optional[str] = None) -> List[PlanArtifact]:
        pattern = f"{env_key.replace('/', '__')}/*.json" if env_key else "*/*.json"
        artifacts = [self._read_meta(p) for p in sorted(self.root.glob(pattern))]
        return sorted(artifacts, key=lambda a: a.created_at_iso)

    def _read_meta(self, path: Path) -> PlanArtifact:
        try:
            return PlanArtifact.model_validate_json(path.read_bytes())
        except ValidationError as e:
            raise IacSyncError(f"Corrupt artifact metadata {path}: {e}") from e
