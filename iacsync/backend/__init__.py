"""
State Backends — Locked storage for infrastructure state.
"""

from __future__ import annotations

import logging

from ..config.loader import Settings
from .base import LockHandle, StateBackend
from .local import LocalFileBackend
from .memory import InMemoryBackend

logger = logging.getLogger(__name__)


def get_backend(settings: Settings) -> StateBackend:
    """Build the backend named by ``settings.backend``."""
    if settings.backend == "memory":
        return InMemoryBackend()

    if settings.backend == "azurerm":
        # Azure SDK import is deferred so local runs don't need it configured
        from .azure_blob import AzureBlobBackend

        return AzureBlobBackend(
            connection_string=settings.storage_connection_string,
            account_url=settings.storage_account_url,
            poll_interval=settings.lock_poll_seconds,
        )

    logger.debug(f"Using local state backend at {settings.state_dir}")
    return LocalFileBackend(settings.state_dir, poll_interval=settings.lock_poll_seconds)


__all__ = [
    "InMemoryBackend",
    "LocalFileBackend",
    "LockHandle",
    "StateBackend",
    "get_backend",
]
