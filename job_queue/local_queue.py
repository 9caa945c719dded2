"""
Durable Local Queue — JSON file-backed fallback for side effects.

When the remote store cannot be reached, audit records, status updates,
incoming messages and media uploads are parked here until the
ReconciliationWorker replays them.

Features:
  - Survives process restarts (the whole queue is rewritten on every mutation)
  - Atomic writes: temp file + rename
  - A missing or corrupt file loads as an empty queue
  - Persistence errors are logged, never raised: there is no lower fallback

Single-process only: each relay instance owns its own queue file.
"""
from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any, Optional, Union

import structlog
from pydantic import ValidationError

from models.schemas import LocalEntryType, LocalQueueEntry

logger = structlog.get_logger()


class DurableLocalQueue:
    """
    Append-only list of pending side effects, mirrored to a single JSON file.

    Entries leave the queue only through ``remove()``, which callers invoke
    after a confirmed replay against the remote store.
    """

    def __init__(self, path: Union[str, Path] = "./local_queue.json"):
        self._path = Path(path)
        self._entries: list[LocalQueueEntry] = []
        self._lock = threading.RLock()

    @property
    def path(self) -> Path:
        return self._path

    # ── Load / Save ───────────────────────────────────────

    def load(self) -> int:
        """Read prior state from disk. Returns the number of entries loaded."""
        with self._lock:
            self._entries = self._read_file()
            return len(self._entries)

    def _read_file(self) -> list[LocalQueueEntry]:
        if not self._path.exists():
            logger.info("local_queue_not_found", path=str(self._path))
            return []
        try:
            with open(self._path, "r") as f:
                raw = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("local_queue_load_error", path=str(self._path), error=str(e))
            return []
        if not isinstance(raw, list):
            logger.warning("local_queue_load_error", path=str(self._path),
                           error=f"expected a list, got {type(raw).__name__}")
            return []

        entries = []
        for item in raw:
            try:
                entries.append(LocalQueueEntry.model_validate(item))
            except ValidationError as e:
                logger.warning("local_queue_entry_invalid", error=str(e))
        logger.info("local_queue_loaded", path=str(self._path), entries=len(entries))
        return entries

    def _persist(self) -> bool:
        """Write the full queue to disk. Errors are logged, not raised."""
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        try:
            data = [entry.model_dump(mode="json") for entry in self._entries]
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w") as f:
                json.dump(data, f, indent=2, default=str)
            tmp_path.replace(self._path)  # atomic on POSIX
            return True
        except (OSError, TypeError, ValueError) as e:
            logger.error("local_queue_persist_failed", path=str(self._path),
                         entries=len(self._entries), error=str(e))
            return False

    # ── Mutations ─────────────────────────────────────────

    def enqueue(self, type: Union[LocalEntryType, str], payload: Optional[dict[str, Any]] = None) -> LocalQueueEntry:
        """Append an entry stamped with ``created_at`` and persist before returning."""
        entry = LocalQueueEntry(type=LocalEntryType(type), payload=dict(payload or {}))
        with self._lock:
            self._entries.append(entry)
            self._persist()
        logger.info("local_queue_enqueued", type=entry.type.value, entry_id=entry.entry_id,
                    depth=len(self._entries))
        return entry

    def remove(self, entry_id: str) -> bool:
        """Drop a replayed entry from the live queue. Returns False if absent."""
        with self._lock:
            before = len(self._entries)
            self._entries = [e for e in self._entries if e.entry_id != entry_id]
            if len(self._entries) == before:
                return False
            self._persist()
            return True

    # ── Queries ───────────────────────────────────────────

    def snapshot(self) -> list[LocalQueueEntry]:
        """Copy of current entries in insertion order."""
        with self._lock:
            return list(self._entries)

    def is_empty(self) -> bool:
        return len(self) == 0

    def count_by_type(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for entry in self.snapshot():
            counts[entry.type.value] = counts.get(entry.type.value, 0) + 1
        return counts

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
