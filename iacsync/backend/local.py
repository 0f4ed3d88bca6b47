"""
Local File Backend — JSON state documents on a shared filesystem.

Layout: {root}/{location}/{container}/{key}
Lock:   {root}/{location}/{container}/{key}.lock

The lock file is created with O_CREAT | O_EXCL, which the OS guarantees
only one process can win. Its content is the holder's LockInfo.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from ..models.state import InfraState, LockInfo, RemoteStateRef
from .base import LockHandle, StateBackend, decode_state, encode_state

logger = logging.getLogger(__name__)


class LocalFileBackend(StateBackend):
    """State backend rooted at a directory."""

    name = "local"

    def __init__(self, root: Path, poll_interval: float = 1.0):
        super().__init__(poll_interval=poll_interval)
        self.root = Path(root)

    def state_path(self, ref: RemoteStateRef) -> Path:
        return self.root / ref.location / ref.container / ref.key

    def lock_path(self, ref: RemoteStateRef) -> Path:
        path = self.state_path(ref)
        return path.with_name(path.name + ".lock")

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def read_state(self, ref: RemoteStateRef) -> InfraState:
        path = self.state_path(ref)
        if not path.exists():
            logger.debug(f"No state at {path}, starting fresh")
            return InfraState()
        return decode_state(path.read_bytes(), str(path))

    def _write_state(self, ref: RemoteStateRef, state: InfraState, handle: LockHandle) -> None:
        path = self.state_path(ref)
        path.parent.mkdir(parents=True, exist_ok=True)

        # Write to temp file first for atomicity
        temp_path = path.with_name(path.name + ".tmp")
        temp_path.write_bytes(encode_state(state))
        os.replace(temp_path, path)

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    def lock_holder(self, ref: RemoteStateRef) -> Optional[LockInfo]:
        path = self.lock_path(ref)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

        try:
            return LockInfo(**json.loads(raw))
        except (json.JSONDecodeError, ValidationError, TypeError):
            # Holder is mid-write or the file was hand-edited
            logger.warning(f"Unreadable lock file {path}")
            return LockInfo(lock_id="unknown", who="unknown")

    def _try_lock(self, ref: RemoteStateRef, info: LockInfo) -> Optional[LockInfo]:
        path = self.lock_path(ref)
        path.parent.mkdir(parents=True, exist_ok=True)

        try:
            fd = os.open(str(path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            holder = self.lock_holder(ref)
            if holder is None:
                # Released between our open and read; the caller retries
                return LockInfo(lock_id="unknown", who="unknown")
            return holder

        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(info.model_dump(), f)
        return None

    def _unlock(self, ref: RemoteStateRef, info: LockInfo, force: bool = False) -> None:
        path = self.lock_path(ref)
        holder = self.lock_holder(ref)
        if holder is None:
            return
        if holder.lock_id != info.lock_id and not force:
            logger.warning(
                f"Not removing {path}: held by {holder.lock_id}, not {info.lock_id}"
            )
            return
        path.unlink(missing_ok=True)
