"""
Models — Pydantic schemas for state, locks and plan artifacts.
"""

from .artifact import PlanArtifact, ResourceChange
from .state import InfraState, LockInfo, RemoteStateRef, ResourceRecord

__all__ = [
    "InfraState",
    "LockInfo",
    "PlanArtifact",
    "RemoteStateRef",
    "ResourceChange",
    "ResourceRecord",
]
