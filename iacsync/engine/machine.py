"""
Run State Machine — Explicit phases of one pipeline run.

    IDLE ──► PLANNING ──► PLANNED ──► APPLYING ──► APPLIED
                 │                        │
                 └────────► FAILED ◄──────┘

IDLE may go straight to APPLYING when the apply stage runs as a separate
job from the plan stage. PLANNED may re-enter PLANNING (re-plan before
apply). APPLIED and FAILED are terminal; a new run starts from IDLE.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, List, Tuple
from uuid import uuid4

from ..errors import InvalidTransitionError

logger = logging.getLogger(__name__)


class RunPhase(str, Enum):
    """Phases of a plan/apply run."""
    IDLE = "idle"
    PLANNING = "planning"
    PLANNED = "planned"
    APPLYING = "applying"
    APPLIED = "applied"
    FAILED = "failed"


VALID_TRANSITIONS: Dict[RunPhase, FrozenSet[RunPhase]] = {
    RunPhase.IDLE: frozenset({RunPhase.PLANNING, RunPhase.APPLYING}),
    RunPhase.PLANNING: frozenset({RunPhase.PLANNED, RunPhase.FAILED}),
    RunPhase.PLANNED: frozenset({RunPhase.PLANNING, RunPhase.APPLYING}),
    RunPhase.APPLYING: frozenset({RunPhase.APPLIED, RunPhase.FAILED}),
    RunPhase.APPLIED: frozenset(),
    RunPhase.FAILED: frozenset(),
}

TERMINAL_PHASES = frozenset({RunPhase.APPLIED, RunPhase.FAILED})


def generate_run_id() -> str:
    """Generate a unique run ID: R-{YYYYMMDD}T{HHMMSS}-{RANDOM}."""
    ts = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
    suffix = uuid4().hex[:6].upper()
    return f"R-{ts}-{suffix}"


@dataclass
class PipelineRun:
    """One run's phase and the path it took to get there."""

    run_id: str = field(default_factory=generate_run_id)
    phase: RunPhase = RunPhase.IDLE
    history: List[Tuple[str, str]] = field(default_factory=list)
    error: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    def transition(self, to: RunPhase) -> None:
        if to not in VALID_TRANSITIONS[self.phase]:
            raise InvalidTransitionError(
                f"Run {self.run_id} cannot go from {self.phase.value} to {to.value}"
            )
        logger.debug(f"Run {self.run_id}: {self.phase.value} -> {to.value}")
        self.history.append((self.phase.value, to.value))
        self.phase = to

    def fail(self, error: BaseException) -> None:
        """Move to FAILED from a working phase; no-op elsewhere."""
        self.error = str(error)
        if RunPhase.FAILED in VALID_TRANSITIONS[self.phase]:
            self.transition(RunPhase.FAILED)
