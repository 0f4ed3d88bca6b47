"""
Provisioner Base Class — Interface for planning and applying changes.

A provisioner turns (desired config, current state) into a list of
changes plus an opaque payload, and later turns (payload, state) into the
next state. It never touches the state backend or the lock; the
orchestrator owns both.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List

from ..config.models import InfraConfig
from ..models.artifact import PlanArtifact, ResourceChange
from ..models.state import InfraState


@dataclass
class PlanOutput:
    """What a provisioner hands back from planning."""

    changes: List[ResourceChange] = field(default_factory=list)
    payload: bytes = b""


class Provisioner(ABC):
    """Abstract base class for all provisioners."""

    @property
    @abstractmethod
    def name(self) -> str:
        """The provisioner identifier (e.g., 'builtin', 'terraform')."""

    def fingerprint_inputs(self, config: InfraConfig) -> Dict[str, Any]:
        """Extra inputs that change what a plan would contain."""
        return {}

    @abstractmethod
    def plan(self, config: InfraConfig, state: InfraState) -> PlanOutput:
        """Compute the changes needed to reach ``config`` from ``state``."""

    @abstractmethod
    def apply(
        self,
        artifact: PlanArtifact,
        payload: bytes,
        state: InfraState,
        config: InfraConfig,
    ) -> InfraState:
        """
        Carry out a plan and return the resulting state.

        The returned state's serial and lineage are set by the caller.

        Raises:
            ProvisionerError: If the changes could not be applied
        """
