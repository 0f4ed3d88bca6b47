"""
Plan/Apply Orchestrator — The gated two-stage pipeline.

plan(config):
1. Lock the environment's state
2. Read state and ask the provisioner for changes
3. Persist the artifact and mark it as the environment's latest plan
4. Release the lock (on every exit path)

apply(artifact, config):
1. Reject the artifact if it is stale:
   - config fingerprint differs from the one it was planned with
   - it is not the latest plan for its environment (superseded/consumed)
   - it has expired
   - its payload was altered
2. Lock the state and reject if the state moved since the plan
3. Let the provisioner carry out the plan and write state at serial + 1
4. Consume the artifact so it can never be applied twice

## Usage

    orchestrator = Orchestrator(backend, provisioner, ArtifactStore(dir))
    artifact = orchestrator.plan(config)

    # later, possibly in another job
    result = Orchestrator(backend, provisioner, store).apply(artifact, config)
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional
from uuid import uuid4

from ..backend.base import StateBackend
from ..config.models import InfraConfig
from ..errors import IacSyncError, StaleArtifactError
from ..models.artifact import PlanArtifact
from ..models.state import LockInfo
from ..persistence.audit import AuditWriter
from ..provisioners.base import Provisioner
from .artifacts import ArtifactStore, sha256_hex
from .fingerprint import config_fingerprint
from .machine import PipelineRun, RunPhase

logger = logging.getLogger(__name__)


def _iso(dt: datetime) -> str:
    return dt.isoformat().replace("+00:00", "Z")


def generate_artifact_id() -> str:
    ts = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
    return f"P-{ts}-{uuid4().hex[:8].upper()}"


@dataclass
class ApplyResult:
    """Outcome of a successful apply."""

    run_id: str
    artifact_id: str
    env_key: str
    serial: int
    applied: bool
    summary: Dict[str, int] = field(default_factory=dict)
    duration_ms: int = 0


class Orchestrator:
    """
    Runs plan and apply for one pipeline run.

    Each instance is one run with its own run id and phase; the plan stage
    and the apply stage of a pipeline may use separate instances that
    share the backend and artifact store.
    """

    def __init__(
        self,
        backend: StateBackend,
        provisioner: Provisioner,
        store: ArtifactStore,
        audit: Optional[AuditWriter] = None,
        lock_timeout: float = 0.0,
        artifact_ttl: timedelta = timedelta(hours=24),
        run_id: Optional[str] = None,
    ):
        self.backend = backend
        self.provisioner = provisioner
        self.store = store
        self.audit = audit
        self.lock_timeout = lock_timeout
        self.artifact_ttl = artifact_ttl
        self.run = PipelineRun(run_id=run_id) if run_id else PipelineRun()

    @property
    def run_id(self) -> str:
        return self.run.run_id

    def fingerprint(self, config: InfraConfig) -> str:
        return config_fingerprint(config, self.provisioner)

    # ------------------------------------------------------------------
    # Plan
    # ------------------------------------------------------------------

    def plan(self, config: InfraConfig) -> PlanArtifact:
        """
        Compute and persist a plan for ``config``.

        Raises:
            LockContentionError: State is locked by another run
            LockTimeoutError: Lock wait ran out
            ProvisionerError: Planning failed
        """
        self.run.transition(RunPhase.PLANNING)
        ref = config.state_ref
        extra = {"run_id": self.run_id, "env_key": ref.env_key}

        try:
            fingerprint = self.fingerprint(config)
            info = LockInfo(run_id=self.run_id, operation="plan")
            with self.backend.acquire_lock(ref, info, timeout=self.lock_timeout):
                state = self.backend.read_state(ref)
                logger.info(
                    f"Planning {ref} from serial {state.serial} with {self.provisioner.name}",
                    extra=extra,
                )
                output = self.provisioner.plan(config, state)

            now = datetime.now(timezone.utc)
            artifact = PlanArtifact(
                artifact_id=generate_artifact_id(),
                env_key=ref.env_key,
                run_id=self.run_id,
                fingerprint=fingerprint,
                provisioner=self.provisioner.name,
                base_serial=state.serial,
                base_lineage=state.lineage,
                changes=output.changes,
                created_at_iso=_iso(now),
                expires_at_iso=_iso(now + self.artifact_ttl),
                payload_sha256=sha256_hex(output.payload),
            )
            self.store.save(artifact, output.payload)
        except Exception as e:
            self.run.fail(e)
            raise

        if self.audit:
            self.audit.emit_plan_created(artifact)

        summary = artifact.summary()
        logger.info(
            f"Plan {artifact.artifact_id}: {summary['create']} to add, "
            f"{summary['update']} to change, {summary['delete']} to destroy",
            extra={**extra, "artifact_id": artifact.artifact_id},
        )
        self.run.transition(RunPhase.PLANNED)
        return artifact

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    def apply(self, artifact: PlanArtifact, config: InfraConfig) -> ApplyResult:
        """
        Apply a previously planned artifact.

        Raises:
            StaleArtifactError: The artifact may not be applied under ``config``
            LockContentionError: State is locked by another run
            LockTimeoutError: Lock wait ran out
            ProvisionerError: Applying failed
        """
        self.run.transition(RunPhase.APPLYING)
        start = time.time()
        ref = config.state_ref
        extra = {"run_id": self.run_id, "env_key": ref.env_key, "artifact_id": artifact.artifact_id}

        try:
            payload = self._check_artifact(artifact, config)

            info = LockInfo(run_id=self.run_id, operation="apply")
            with self.backend.acquire_lock(ref, info, timeout=self.lock_timeout) as handle:
                state = self.backend.read_state(ref)
                if state.serial != artifact.base_serial or state.lineage != artifact.base_lineage:
                    raise StaleArtifactError(
                        f"State {ref} moved since {artifact.artifact_id} was planned "
                        f"(planned at serial {artifact.base_serial}, now {state.serial})",
                        artifact_id=artifact.artifact_id,
                    )

                if artifact.has_changes:
                    logger.info(f"Applying {artifact.artifact_id} to {ref}", extra=extra)
                    new_state = self.provisioner.apply(artifact, payload, state, config)
                    new_state = new_state.model_copy(
                        update={"serial": state.serial + 1, "lineage": state.lineage or str(uuid4())}
                    )
                    self.backend.write_state(ref, new_state, handle)
                    serial = new_state.serial
                else:
                    logger.info(f"No changes in {artifact.artifact_id}, state left at serial {state.serial}", extra=extra)
                    serial = state.serial

            self.store.consume(artifact)
        except StaleArtifactError as e:
            self.run.fail(e)
            if self.audit:
                self.audit.emit_apply_rejected(self.run_id, ref.env_key, artifact.artifact_id, str(e))
            raise
        except Exception as e:
            self.run.fail(e)
            if self.audit and isinstance(e, IacSyncError):
                self.audit.emit(
                    "apply_failed",
                    run_id=self.run_id,
                    env_key=ref.env_key,
                    artifact_id=artifact.artifact_id,
                    level="error",
                    details={"error": str(e), "kind": type(e).__name__},
                )
            raise

        duration_ms = int((time.time() - start) * 1000)
        if self.audit:
            self.audit.emit_apply_completed(artifact, self.run_id, serial, duration_ms)

        self.run.transition(RunPhase.APPLIED)
        return ApplyResult(
            run_id=self.run_id,
            artifact_id=artifact.artifact_id,
            env_key=ref.env_key,
            serial=serial,
            applied=artifact.has_changes,
            summary=artifact.summary(),
            duration_ms=duration_ms,
        )

    def apply_latest(self, config: InfraConfig) -> ApplyResult:
        """Apply the most recent plan for the config's environment."""
        env_key = config.state_ref.env_key
        artifact_id = self.store.latest_id(env_key)
        if artifact_id is None:
            raise StaleArtifactError(f"No pending plan for {env_key}; run plan first")
        return self.apply(self.store.get(artifact_id, env_key), config)

    def _check_artifact(self, artifact: PlanArtifact, config: InfraConfig) -> bytes:
        """Run every staleness check that doesn't need the lock."""
        ref = config.state_ref

        if artifact.env_key != ref.env_key:
            raise StaleArtifactError(
                f"Artifact {artifact.artifact_id} was planned for {artifact.env_key}, not {ref.env_key}",
                artifact_id=artifact.artifact_id,
            )

        if artifact.fingerprint != self.fingerprint(config):
            raise StaleArtifactError(
                f"Configuration changed since {artifact.artifact_id} was planned; re-run plan",
                artifact_id=artifact.artifact_id,
            )

        latest = self.store.latest_id(ref.env_key)
        if latest != artifact.artifact_id:
            reason = f"superseded by {latest}" if latest else "already applied or purged"
            raise StaleArtifactError(
                f"Artifact {artifact.artifact_id} is not the latest plan for {ref.env_key} ({reason})",
                artifact_id=artifact.artifact_id,
            )

        if artifact.is_expired():
            raise StaleArtifactError(
                f"Artifact {artifact.artifact_id} expired at {artifact.expires_at_iso}",
                artifact_id=artifact.artifact_id,
            )

        return self.store.load_payload(artifact)
