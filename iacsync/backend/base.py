"""
State Backend Base — Locked access to remote state documents.

A backend stores one state document per RemoteStateRef and guards it with
an exclusive lock. Subclasses implement the storage primitives; the lock
wait loop, handle bookkeeping and holder checks live here so every backend
behaves the same.

## Usage

    backend = LocalFileBackend(Path(".iacsync/state"))

    with backend.acquire_lock(ref, LockInfo(operation="apply"), timeout=30) as handle:
        state = backend.read_state(ref)
        ...
        backend.write_state(ref, state, handle)
"""

from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Optional

from pydantic import ValidationError

from ..errors import IacSyncError, LockContentionError, LockTimeoutError
from ..models.state import InfraState, LockInfo, RemoteStateRef

logger = logging.getLogger(__name__)


def encode_state(state: InfraState) -> bytes:
    """Serialize a state document (pretty JSON, trailing newline)."""
    return (json.dumps(state.model_dump(mode="json"), indent=2) + "\n").encode("utf-8")


def decode_state(data: bytes, where: str) -> InfraState:
    """Parse a state document. Empty content is a fresh state."""
    if not data or not data.strip():
        return InfraState()
    try:
        return InfraState.model_validate_json(data)
    except ValidationError as e:
        raise IacSyncError(f"Corrupt state document at {where}: {e}") from e


class LockHandle:
    """
    Proof of holding a state lock.

    Release is idempotent and also happens when the handle is used as a
    context manager and the block exits, whatever the outcome.
    """

    def __init__(self, backend: "StateBackend", ref: RemoteStateRef, info: LockInfo):
        self.backend = backend
        self.ref = ref
        self.info = info
        self._released = False

    @property
    def lock_id(self) -> str:
        return self.info.lock_id

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self.backend._unlock(self.ref, self.info)
        logger.debug(f"Lock released: {self.ref} ({self.info.lock_id})")

    def __enter__(self) -> "LockHandle":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    def __repr__(self) -> str:
        state = "released" if self._released else "held"
        return f"<LockHandle {self.ref} {self.info.lock_id} {state}>"


class StateBackend(ABC):
    """Abstract base class for state backends."""

    name: str = "abstract"

    def __init__(self, poll_interval: float = 1.0):
        self.poll_interval = poll_interval

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    def acquire_lock(
        self,
        ref: RemoteStateRef,
        info: Optional[LockInfo] = None,
        timeout: float = 0.0,
    ) -> LockHandle:
        """
        Take the exclusive lock for ``ref``.

        Args:
            ref: State reference to lock
            info: Lock metadata recorded for other runs to see
            timeout: Seconds to wait for a held lock. 0 fails immediately.

        Raises:
            LockContentionError: Lock is held and timeout is 0
            LockTimeoutError: Lock was still held when the wait ran out
        """
        info = info or LockInfo()
        deadline = time.monotonic() + timeout

        while True:
            holder = self._try_lock(ref, info)
            if holder is None:
                logger.info(f"Lock acquired: {ref} ({info.lock_id}, op={info.operation})")
                return LockHandle(self, ref, info)

            if timeout <= 0:
                raise LockContentionError(
                    f"State {ref} is locked: {holder.describe()}",
                    holder=holder.model_dump(),
                )

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise LockTimeoutError(
                    f"Timed out after {timeout:g}s waiting for state {ref}: {holder.describe()}",
                    holder=holder.model_dump(),
                )

            logger.debug(f"State {ref} locked by {holder.lock_id}, retrying")
            time.sleep(min(self.poll_interval, remaining))

    def force_unlock(self, ref: RemoteStateRef, lock_id: str) -> LockInfo:
        """
        Release a lock left behind by a crashed run.

        The caller must name the lock id it intends to break.
        """
        holder = self.lock_holder(ref)
        if holder is None:
            raise LockContentionError(f"State {ref} is not locked")
        if holder.lock_id != lock_id:
            raise LockContentionError(
                f"Lock id mismatch for {ref}: {holder.describe()}",
                holder=holder.model_dump(),
            )
        self._unlock(ref, holder, force=True)
        logger.warning(f"Lock force-released: {ref} ({lock_id})")
        return holder

    def check_handle(self, ref: RemoteStateRef, handle: LockHandle) -> None:
        """Verify ``handle`` still holds the lock for ``ref``."""
        if handle.released:
            raise LockContentionError(f"Lock {handle.lock_id} on {ref} was already released")
        if handle.ref != ref:
            raise LockContentionError(f"Lock {handle.lock_id} is for {handle.ref}, not {ref}")

        holder = self.lock_holder(ref)
        if holder is None or holder.lock_id != handle.lock_id:
            raise LockContentionError(
                f"Lock {handle.lock_id} on {ref} is no longer held",
                holder=holder.model_dump() if holder else None,
            )

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def write_state(self, ref: RemoteStateRef, state: InfraState, handle: LockHandle) -> None:
        """Replace the state document. Only the lock holder may write."""
        self.check_handle(ref, handle)
        self._write_state(ref, state, handle)
        logger.info(f"State written: {ref} serial={state.serial}")

    @abstractmethod
    def read_state(self, ref: RemoteStateRef) -> InfraState:
        """Return the current state document, or a fresh one if none exists."""

    @abstractmethod
    def lock_holder(self, ref: RemoteStateRef) -> Optional[LockInfo]:
        """Return the current lock holder, or None."""

    @abstractmethod
    def _try_lock(self, ref: RemoteStateRef, info: LockInfo) -> Optional[LockInfo]:
        """Atomically take the lock. Return None on success, else the holder."""

    @abstractmethod
    def _unlock(self, ref: RemoteStateRef, info: LockInfo, force: bool = False) -> None:
        """Drop the lock described by ``info``."""

    @abstractmethod
    def _write_state(self, ref: RemoteStateRef, state: InfraState, handle: LockHandle) -> None:
        """Persist ``state``; the handle is already verified."""
