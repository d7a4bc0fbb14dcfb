"""Checkpoint store - save/load to <checkpoint_dir>/<session_id>/checkpoint.json.

Best-effort persistence: write failures are logged, never raised, and a
missing, unreadable or malformed file loads as "no checkpoint".
"""

import asyncio
import json
import logging
import shutil
from pathlib import Path

from pydantic import ValidationError

from src.domain.entities.checkpoint import Checkpoint

logger = logging.getLogger(__name__)

CHECKPOINT_FILE = "checkpoint.json"


class CheckpointStore:
    """File-based checkpoint store keyed by session id.

    Saves to the same session are serialized by a per-session asyncio.Lock
    (FIFO, so the last scheduled write wins). Different sessions never share
    a lock or a file.
    """

    def __init__(self, checkpoint_dir: str | Path = "output/checkpoints") -> None:
        """Initialize with base directory for checkpoint folders."""
        self._base = Path(checkpoint_dir)
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def base_dir(self) -> Path:
        return self._base

    def path_for(self, session_id: str) -> Path:
        return self._base / session_id / CHECKPOINT_FILE

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    def _write_sync(self, checkpoint: Checkpoint) -> None:
        path = self.path_for(checkpoint.session_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        # Write to temp file first, then atomic rename
        tmp_file = path.with_suffix(".tmp")
        try:
            tmp_file.write_text(checkpoint.model_dump_json(indent=2), encoding="utf-8")
            tmp_file.replace(path)
        except OSError:
            tmp_file.unlink(missing_ok=True)
            raise

    async def save(self, checkpoint: Checkpoint) -> bool:
        """Persist checkpoint. Returns False (and logs) on failure."""
        async with self._lock_for(checkpoint.session_id):
            try:
                await asyncio.to_thread(self._write_sync, checkpoint)
            except Exception:
                logger.warning(
                    "Failed to save checkpoint for session %s",
                    checkpoint.session_id,
                    exc_info=True,
                )
                return False
        logger.debug(
            "Checkpoint saved: session=%s phase=%s",
            checkpoint.session_id,
            checkpoint.phase.value,
        )
        return True

    def load_sync(self, session_id: str) -> Checkpoint | None:
        """Load checkpoint. Returns None if missing, unreadable or invalid."""
        path = self.path_for(session_id)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return Checkpoint.model_validate(data)
        except (json.JSONDecodeError, ValidationError, UnicodeDecodeError):
            logger.warning("Malformed checkpoint file: %s", path, exc_info=True)
            return None
        except OSError:
            logger.warning("Cannot read checkpoint for session %s", session_id, exc_info=True)
            return None

    async def load(self, session_id: str) -> Checkpoint | None:
        """Async load (file read off the event loop)."""
        return await asyncio.to_thread(self.load_sync, session_id)

    def exists(self, session_id: str) -> bool:
        return self.path_for(session_id).exists()

    def list_session_ids(self) -> list[str]:
        """Session ids that have a checkpoint file on disk."""
        if not self._base.exists():
            return []
        return sorted(p.parent.name for p in self._base.glob(f"*/{CHECKPOINT_FILE}"))

    async def delete(self, session_id: str) -> bool:
        """Remove a session's checkpoint folder. Returns True if something was deleted."""
        folder = self._base / session_id
        async with self._lock_for(session_id):
            if not folder.exists():
                return False
            try:
                await asyncio.to_thread(shutil.rmtree, folder)
            except OSError:
                logger.warning("Failed to delete checkpoint for session %s", session_id, exc_info=True)
                return False
        self._locks.pop(session_id, None)
        return True
