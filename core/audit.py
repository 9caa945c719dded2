"""
Audit Recorder — background writer for audit_log rows.

``record()`` never blocks and never raises: events go onto an asyncio.Queue
owned by a single background task. An insert that fails is parked in the
Durable Local Queue as an ``audit`` entry, so no audit event is dropped
without a trace.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Optional

from database.store_base import RemoteStore
from job_queue.local_queue import DurableLocalQueue
from models.schemas import AuditEvent, LocalEntryType

logger = structlog.get_logger()


class AuditRecorder:
    def __init__(self, store: RemoteStore, local_queue: DurableLocalQueue, actor: str):
        self.store = store
        self.local_queue = local_queue
        self.actor = actor
        self._queue: asyncio.Queue[AuditEvent] = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None

    def record(self, action: str, meta: Optional[dict[str, Any]] = None) -> AuditEvent:
        event = AuditEvent(actor=self.actor, action=action, meta=meta or {})
        self._queue.put_nowait(event)
        return event

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def start(self) -> None:
        self._task = asyncio.create_task(self._run(), name="audit_recorder")
        logger.info("audit_recorder_started", actor=self.actor)

    async def stop(self) -> None:
        """Stop the writer task, then flush whatever is still queued."""
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        await self.drain()
        logger.info("audit_recorder_stopped")

    async def drain(self) -> int:
        """Write every queued event now. Returns how many were handled."""
        handled = 0
        while not self._queue.empty():
            event = self._queue.get_nowait()
            await self._write(event)
            handled += 1
        return handled

    async def _run(self) -> None:
        while True:
            try:
                event = await self._queue.get()
            except asyncio.CancelledError:
                break
            try:
                await self._write(event)
            except asyncio.CancelledError:
                # Interrupted mid-insert: keep the event, a duplicate row is acceptable.
                self.local_queue.enqueue(LocalEntryType.AUDIT, event.to_row())
                raise

    async def _write(self, event: AuditEvent) -> None:
        try:
            await self.store.insert_audit(event.actor, event.action, event.meta)
            logger.info("audit_logged", action=event.action)
        except Exception as e:
            logger.error("audit_insert_failed", action=event.action, error=str(e))
            self.local_queue.enqueue(LocalEntryType.AUDIT, event.to_row())
