"""
Relay State — the mutable state shared by workers and event handlers.

One instance per process, injected everywhere it is needed. Writes go
through an asyncio.Lock; reads of single attributes are atomic on the
event loop.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime
from typing import Any, Optional

from job_queue.local_queue import DurableLocalQueue
from models.schemas import LocalEntryType, LocalQueueEntry, utcnow

logger = structlog.get_logger()


class RelayState:
    """Channel readiness, the latest pairing QR, and the local fallback queue."""

    def __init__(self, instance_id: str, local_queue: DurableLocalQueue):
        self.instance_id = instance_id
        self.local_queue = local_queue
        self._client_ready = False
        self._latest_qr: Optional[str] = None
        self._last_qr_at: Optional[datetime] = None
        self._lock = asyncio.Lock()

    @property
    def client_ready(self) -> bool:
        return self._client_ready

    @property
    def latest_qr(self) -> Optional[str]:
        return self._latest_qr

    @property
    def last_qr_at(self) -> Optional[datetime]:
        return self._last_qr_at

    async def set_ready(self, ready: bool) -> None:
        async with self._lock:
            if self._client_ready != ready:
                logger.info("client_readiness_changed", ready=ready)
            self._client_ready = ready

    async def set_qr(self, qr: str) -> None:
        async with self._lock:
            self._latest_qr = qr
            self._last_qr_at = utcnow()

    def enqueue_local(self, type: LocalEntryType, payload: dict[str, Any]) -> LocalQueueEntry:
        return self.local_queue.enqueue(type, payload)

    def to_dict(self) -> dict[str, Any]:
        return {
            "instance": self.instance_id,
            "clientReady": self._client_ready,
            "qr_available": self._latest_qr is not None,
            "local_queue_depth": len(self.local_queue),
        }
