"""
In-Memory Backend — Process-local state for tests and dry runs.

Thread-safe: one mutex guards both the documents and the lock table, so
two threads racing for the same reference never both win.
"""

from __future__ import annotations

from threading import Lock
from typing import Dict, Optional

from ..models.state import InfraState, LockInfo, RemoteStateRef
from .base import LockHandle, StateBackend, decode_state, encode_state


class InMemoryBackend(StateBackend):
    """State backend held in a dict."""

    name = "memory"

    def __init__(self, poll_interval: float = 0.05):
        super().__init__(poll_interval=poll_interval)
        self._mutex = Lock()
        self._documents: Dict[str, bytes] = {}
        self._locks: Dict[str, LockInfo] = {}

    def read_state(self, ref: RemoteStateRef) -> InfraState:
        with self._mutex:
            data = self._documents.get(ref.env_key, b"")
        return decode_state(data, str(ref))

    def lock_holder(self, ref: RemoteStateRef) -> Optional[LockInfo]:
        with self._mutex:
            return self._locks.get(ref.env_key)

    def _try_lock(self, ref: RemoteStateRef, info: LockInfo) -> Optional[LockInfo]:
        with self._mutex:
            holder = self._locks.get(ref.env_key)
            if holder is not None:
                return holder
            self._locks[ref.env_key] = info
            return None

    def _unlock(self, ref: RemoteStateRef, info: LockInfo, force: bool = False) -> None:
        with self._mutex:
            holder = self._locks.get(ref.env_key)
            if holder is not None and holder.lock_id == info.lock_id:
                del self._locks[ref.env_key]

    def _write_state(self, ref: RemoteStateRef, state: InfraState, handle: LockHandle) -> None:
        with self._mutex:
            self._documents[ref.env_key] = encode_state(state)
