"""
Errors — Typed failures that halt a pipeline run.

Every error carries the process exit code the CLI uses when it reaches
the command boundary. Library code raises these and never recovers them.

## Exit codes

    1  generic failure
    3  stale plan artifact
    4  state lock held by another run
    5  state lock wait timed out
    6  mirror lease conflict
    7  authentication failure
    8  provisioner failure
    9  configuration error
"""

from __future__ import annotations

from typing import Optional


class IacSyncError(Exception):
    """Base class for all pipeline errors."""

    exit_code = 1


class ConfigError(IacSyncError):
    """Configuration is missing or invalid."""

    exit_code = 9


class StaleArtifactError(IacSyncError):
    """A plan artifact no longer matches the configuration or state it was made for."""

    exit_code = 3

    def __init__(self, message: str, artifact_id: Optional[str] = None):
        super().__init__(message)
        self.artifact_id = artifact_id


class ArtifactIntegrityError(StaleArtifactError):
    """The stored plan payload does not match its recorded checksum."""


class LockContentionError(IacSyncError):
    """The state lock is held by another run."""

    exit_code = 4

    def __init__(self, message: str, holder: Optional[dict] = None):
        super().__init__(message)
        self.holder = holder or {}


class LockTimeoutError(LockContentionError):
    """Waiting for the state lock exceeded the configured timeout."""

    exit_code = 5


class LeaseConflictError(IacSyncError):
    """The mirror destination advanced since the lease was observed."""

    exit_code = 6

    def __init__(self, message: str, expected: Optional[str] = None, actual: Optional[str] = None):
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class AuthenticationError(IacSyncError):
    """A remote rejected the supplied credentials."""

    exit_code = 7


class ProvisionerError(IacSyncError):
    """The planning or apply tool failed."""

    exit_code = 8


class InvalidTransitionError(IacSyncError):
    """A run was asked to move to a phase it cannot reach."""
