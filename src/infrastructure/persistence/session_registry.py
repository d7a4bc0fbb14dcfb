"""Session registry - file-based session records (DI-friendly, no global singleton)."""

import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel

logger = logging.getLogger(__name__)

REGISTRY_FILE = Path("output/sessions.json")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SessionRecord(BaseModel):
    """Persisted session record."""

    session_id: str
    resource_id: str = ""
    workspace: str = ""
    status: str = "idle"
    created_at: str = ""
    last_accessed: str = ""


class SessionRegistry:
    """JSON-file registry of known sessions.

    Reads happen once, at construction. Mutations update memory at once and
    write the file off the event loop; writes are serialized by an
    asyncio.Lock and each one snapshots the records when it takes the lock,
    so the file always ends at the latest state.
    """

    def __init__(self, registry_file: Path | str | None = None):
        """Initialize registry; load from file if present."""
        self._file = Path(registry_file) if registry_file else REGISTRY_FILE
        self._records: dict[str, SessionRecord] = {}
        self._lock = asyncio.Lock()
        self._load()

    def _load(self) -> None:
        """Load records from disk."""
        if not self._file.exists():
            return
        try:
            data = json.loads(self._file.read_text(encoding="utf-8"))
            for raw in data.get("sessions", []):
                record = SessionRecord(**raw)
                self._records[record.session_id] = record
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.warning("Corrupted session registry %s: %s", self._file, e)
        except OSError as e:
            logger.warning("Cannot read session registry %s: %s", self._file, e)

    def _write_sync(self, payload: str) -> None:
        self._file.parent.mkdir(parents=True, exist_ok=True)
        # Write to temp file first, then atomic rename
        tmp_file = self._file.with_suffix(".tmp")
        try:
            tmp_file.write_text(payload, encoding="utf-8")
            tmp_file.replace(self._file)
        except OSError:
            tmp_file.unlink(missing_ok=True)
            raise

    async def _save(self) -> None:
        """Persist records to disk. Failures are logged, never raised."""
        async with self._lock:
            data = {"sessions": [r.model_dump() for r in self._records.values()]}
            try:
                await asyncio.to_thread(self._write_sync, json.dumps(data, indent=2))
            except OSError:
                logger.warning("Failed to save session registry to %s", self._file, exc_info=True)

    def list_records(self) -> list[SessionRecord]:
        """Return records, most recently accessed first."""
        return sorted(self._records.values(), key=lambda r: r.last_accessed, reverse=True)

    def get(self, session_id: str) -> SessionRecord | None:
        return self._records.get(session_id)

    async def add(self, session_id: str, resource_id: str = "", workspace: str = "") -> SessionRecord:
        """Register a session (replaces an existing record with the same id)."""
        now = _now()
        record = SessionRecord(
            session_id=session_id,
            resource_id=resource_id,
            workspace=workspace,
            created_at=now,
            last_accessed=now,
        )
        self._records[session_id] = record
        await self._save()
        return record

    async def touch(self, session_id: str, status: str | None = None) -> SessionRecord | None:
        """Update last_accessed (and optionally status)."""
        record = self._records.get(session_id)
        if record is None:
            return None
        record.last_accessed = _now()
        if status is not None:
            record.status = status
        await self._save()
        return record

    async def remove(self, session_id: str) -> bool:
        """Remove record by id."""
        if session_id in self._records:
            del self._records[session_id]
            await self._save()
            return True
        return False
