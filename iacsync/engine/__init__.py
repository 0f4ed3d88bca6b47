"""
Engine — Plan/apply orchestration, run phases and plan artifacts.
"""

from .artifacts import ArtifactStore
from .machine import PipelineRun, RunPhase
from .orchestrator import ApplyResult, Orchestrator

__all__ = ["ApplyResult", "ArtifactStore", "Orchestrator", "PipelineRun", "RunPhase"]
