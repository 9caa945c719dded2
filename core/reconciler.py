"""
Reconciliation Worker — drains the Durable Local Queue into the remote store.

Each cycle replays a snapshot of the queue. An entry leaves the queue only
after its replay succeeded; a failed replay leaves it untouched for the next
cycle. ``media_upload`` entries go first so that a message referencing an
uploaded file is never stored before the file exists.
"""
from __future__ import annotations

import asyncio
import base64
import structlog
from typing import Any, Optional

from channels.addressing import normalize_number
from config.settings import ReconcileConfig
from database.store_base import RemoteStore
from job_queue.local_queue import DurableLocalQueue
from models.schemas import LocalEntryType, LocalQueueEntry, MessageStatus

logger = structlog.get_logger()

INBOUND_SENDER = "whatsapp"


class ReconciliationWorker:
    def __init__(
        self,
        store: RemoteStore,
        local_queue: DurableLocalQueue,
        config: ReconcileConfig = None,
        sleep=asyncio.sleep,
    ):
        self.store = store
        self.local_queue = local_queue
        self.config = config or ReconcileConfig()
        self._sleep = sleep
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="reconciliation_worker")
        logger.info("reconciliation_worker_started", pending=len(self.local_queue))

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("reconciliation_worker_stopped", pending=len(self.local_queue))

    async def _loop(self) -> None:
        while self._running:
            try:
                if self.local_queue.is_empty():
                    await self._sleep(self.config.idle_interval)
                    continue
                await self.run_reconciliation_cycle()
                await self._sleep(self.config.cycle_interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("reconciliation_loop_error", error=str(e), exc_info=True)
                await self._sleep(self.config.cycle_interval)

    # ── Cycle ─────────────────────────────────────────────────

    async def run_reconciliation_cycle(self) -> dict[str, int]:
        """Replay one snapshot. Returns {"pending", "replayed", "failed", "deferred"}."""
        snapshot = self.local_queue.snapshot()
        stats = {"pending": len(snapshot), "replayed": 0, "failed": 0, "deferred": 0}
        if not snapshot:
            return stats

        logger.info("reconciliation_cycle_started", pending=len(snapshot))
        uploads = [e for e in snapshot if e.type == LocalEntryType.MEDIA_UPLOAD]
        others = [e for e in snapshot if e.type != LocalEntryType.MEDIA_UPLOAD]
        failed_uploads: set[str] = set()

        for entry in uploads + others:
            if entry.type == LocalEntryType.INCOMING_MSG:
                media_path = entry.payload.get("media_path")
                if media_path and media_path in failed_uploads:
                    stats["deferred"] += 1
                    continue
            try:
                await self.replay(entry)
            except Exception as e:
                logger.warning("reconciliation_replay_failed", entry_id=entry.entry_id,
                               type=entry.type.value, error=str(e))
                stats["failed"] += 1
                if entry.type == LocalEntryType.MEDIA_UPLOAD:
                    failed_uploads.add(entry.payload.get("path"))
                continue

            self.local_queue.remove(entry.entry_id)
            stats["replayed"] += 1
            logger.info("reconciliation_replayed", entry_id=entry.entry_id, type=entry.type.value)

        logger.info("reconciliation_cycle_complete", **stats)
        return stats

    async def replay(self, entry: LocalQueueEntry) -> None:
        """Apply one entry to the store. Raises when the store rejects it."""
        p = entry.payload
        if entry.type == LocalEntryType.AUDIT:
            await self.store.insert_audit(p.get("actor", ""), p.get("action", ""), p.get("meta") or {})
        elif entry.type == LocalEntryType.INCOMING_MSG:
            await self.store.insert_message(self._incoming_row(p))
        elif entry.type == LocalEntryType.STATUS:
            await self.store.set_channel_status(
                p.get("status") or "disconnected",
                p.get("client_info") or {},
                p.get("qr"),
            )
        elif entry.type == LocalEntryType.MEDIA_UPLOAD:
            await self.store.upload_media(
                p["path"], base64.b64decode(p.get("data") or ""), p.get("content_type"),
            )
        elif entry.type == LocalEntryType.DISPATCH_ERROR:
            await self.store.insert_audit(p.get("instance", "relay"), "dispatch_error", dict(p))
        elif entry.type == LocalEntryType.MESSAGE_UPDATE:
            await self.store.update_message(p["id"], **(p.get("fields") or {}))

    def _incoming_row(self, p: dict[str, Any]) -> dict[str, Any]:
        media_url = p.get("media_url")
        if not media_url and p.get("media_path"):
            media_url = self.store.public_url(p["media_path"])
        return {
            "chat_id": p.get("chat_id"),
            "sender": INBOUND_SENDER,
            "numero": p.get("numero") or normalize_number(p.get("from")),
            "message": p.get("body"),
            "media_url": media_url,
            "status": MessageStatus.RECEIVED.value,
            "whatsapp_message_id": p.get("whatsapp_message_id"),
        }
