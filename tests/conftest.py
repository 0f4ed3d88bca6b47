"""
Shared fixtures for pipeline tests.

Provides an in-memory state backend, a temporary artifact store and run
ledger, and a small infrastructure config so orchestrator tests never
touch real storage or cloud APIs.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from iacsync.backend.memory import InMemoryBackend
from iacsync.config.models import InfraConfig
from iacsync.engine.artifacts import ArtifactStore
from iacsync.engine.orchestrator import Orchestrator
from iacsync.persistence.audit import AuditWriter
from iacsync.provisioners.builtin import BuiltinProvisioner


def make_config(**overrides) -> InfraConfig:
    """Create a minimal config for testing."""
    data = {
        "environment": "dev",
        "location": "westeurope",
        "name_prefix": "demo",
        "backend": {"storage_account": "tfstatedev", "container": "tfstate"},
        "variables": {"address_space": ["10.0.0.0/16"]},
        "resources": [
            {
                "type": "azurerm_resource_group",
                "name": "main",
                "properties": {"name": "${name_prefix}-${environment}-rg", "location": "${location}"},
            },
            {
                "type": "azurerm_virtual_network",
                "name": "main",
                "properties": {"name": "${name_prefix}-vnet", "address_space": "${address_space}"},
            },
        ],
    }
    data.update(overrides)
    return InfraConfig(**data)


@pytest.fixture
def config() -> InfraConfig:
    return make_config()


@pytest.fixture
def backend() -> InMemoryBackend:
    return InMemoryBackend(poll_interval=0.01)


@pytest.fixture
def store(tmp_path: Path) -> ArtifactStore:
    return ArtifactStore(tmp_path / "artifacts")


@pytest.fixture
def audit(tmp_path: Path) -> AuditWriter:
    return AuditWriter(tmp_path / "ledger.ndjson")


@pytest.fixture
def make_orchestrator(backend, store, audit):
    """Factory for orchestrators sharing one backend, store and ledger."""

    def _make(**kwargs) -> Orchestrator:
        kwargs.setdefault("provisioner", BuiltinProvisioner())
        return Orchestrator(backend=backend, store=store, audit=audit, **kwargs)

    return _make
