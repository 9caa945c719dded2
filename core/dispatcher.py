"""
Dispatch Worker — polls approved outbound messages and sends them.

Runs as a background task inside the FastAPI lifespan.

Cycle:
    fetch ≤ batch_size rows (approved, attempt_count < ceiling, unclaimed, oldest first)
    → claim each row (lost race → skip)
    → send through the channel (text, or media downloaded from media_url)
    → success: status=sent, whatsapp_message_id, in_progress=false, audit message_sent
    → failure: attempt_count+1, failed at the ceiling else approved,
               in_progress=false, audit send_failed

A fetch that fails means the store is unreachable: a ``dispatch_error``
marker goes to the local queue and the loop backs off for ``error_interval``
without touching any row. A row update that cannot reach the store is parked
as ``message_update`` so the claim is released on reconciliation.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Optional

import httpx

from channels.addressing import resolve_destination
from channels.base import ChannelAdapter, ChannelNotReadyError, MediaFetchError, NoDestinationError
from config.settings import BackoffConfig, DispatchConfig
from core.audit import AuditRecorder
from core.claim import claim
from core.state import RelayState
from database.store_base import RemoteStore
from models.schemas import LocalEntryType, MessageStatus, OutboundMessage, SendResult
from utils.backoff import with_backoff

logger = structlog.get_logger()


class DispatchWorker:
    """
    Sends approved messages, one bounded batch per cycle.

    Configure cadence and retry ceiling in settings:
        dispatch:
          batch_size: 5
          max_attempts: 5
          idle_interval: 1.5
          error_interval: 3.0
    """

    def __init__(
        self,
        store: RemoteStore,
        channel: ChannelAdapter,
        state: RelayState,
        audit: AuditRecorder,
        config: DispatchConfig = None,
        backoff: BackoffConfig = None,
        http_client: Optional[httpx.AsyncClient] = None,
        http_timeout: float = 15.0,
        sleep=asyncio.sleep,
    ):
        self.store = store
        self.channel = channel
        self.state = state
        self.audit = audit
        self.config = config or DispatchConfig()
        self.backoff = backoff or BackoffConfig()
        self._http = http_client
        self._owns_http = False
        self._http_timeout = http_timeout
        self._sleep = sleep
        self._running = False
        self._task: Optional[asyncio.Task] = None

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self) -> None:
        """Start the polling loop as a background task."""
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="dispatch_worker")
        logger.info("dispatch_worker_started", instance=self.state.instance_id,
                    batch_size=self.config.batch_size)

    async def stop(self) -> None:
        """Gracefully stop the worker."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        if self._owns_http and self._http is not None:
            await self._http.aclose()
            self._http = None
            self._owns_http = False
        logger.info("dispatch_worker_stopped")

    async def _loop(self) -> None:
        """Main polling loop — runs until stopped."""
        while self._running:
            delay = self.config.idle_interval
            try:
                stats = await self.run_dispatch_cycle()
                if stats["store_unavailable"]:
                    delay = self.config.error_interval
                elif stats["fetched"]:
                    delay = 0
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("dispatch_loop_error", error=str(e), exc_info=True)
                delay = self.config.error_interval

            await self._sleep(delay)

    # ── Cycle ─────────────────────────────────────────────────

    async def run_dispatch_cycle(self) -> dict[str, Any]:
        """
        One fetch-claim-send-update pass.

        Returns counts: {"fetched", "claimed", "sent", "failed", "skipped"}
        plus "store_unavailable" when the fetch itself failed.
        """
        stats = {"fetched": 0, "claimed": 0, "sent": 0, "failed": 0, "skipped": 0,
                 "store_unavailable": False}

        try:
            items = await self.store.fetch_dispatchable(
                limit=self.config.batch_size,
                max_attempt_count=self.config.max_attempts - 1,
            )
        except Exception as e:
            logger.error("dispatch_fetch_failed", error=str(e))
            self.state.enqueue_local(LocalEntryType.DISPATCH_ERROR, {
                "message": str(e),
                "instance": self.state.instance_id,
            })
            stats["store_unavailable"] = True
            return stats

        stats["fetched"] = len(items)
        for item in items:
            try:
                claimed = await claim(self.store, item.id)
            except Exception as e:
                logger.warning("dispatch_claim_error", id=item.id, error=str(e))
                stats["skipped"] += 1
                continue
            if claimed is None:
                stats["skipped"] += 1
                continue

            stats["claimed"] += 1
            if await self.process(claimed):
                stats["sent"] += 1
            else:
                stats["failed"] += 1

        if stats["fetched"]:
            logger.info("dispatch_cycle_complete", **stats)
        return stats

    async def process(self, item: OutboundMessage) -> bool:
        """Send one claimed item and record the outcome. True on success."""
        result: Optional[SendResult] = None
        try:
            result = await self._send(item)
            await self._retrying(lambda: self.store.update_message(
                item.id,
                status=MessageStatus.SENT,
                whatsapp_message_id=result.message_id,
                in_progress=False,
            ))
        except asyncio.CancelledError:
            await self._release(item, result)
            raise
        except Exception as e:
            await self._record_failure(item, e)
            return False

        self.audit.record("message_sent", {"id": item.id, "whatsapp_id": result.message_id})
        logger.info("dispatch_sent", id=item.id, whatsapp_id=result.message_id,
                    media=item.has_media)
        return True

    async def _send(self, item: OutboundMessage) -> SendResult:
        if not self.state.client_ready:
            raise ChannelNotReadyError()

        address = resolve_destination(item.numero, item.chat_id)
        if not address:
            raise NoDestinationError()

        if item.media_url:
            data, mime_type = await self._fetch_media(item.media_url)
            return await self.channel.send_media(address, data, mime_type, caption=item.message or "")
        return await self.channel.send_text(address, item.message or "")

    async def _fetch_media(self, url: str) -> tuple[bytes, str]:
        client = self._get_http()
        try:
            response = await client.get(url)
        except httpx.HTTPError as e:
            raise MediaFetchError(url) from e
        if not response.is_success:
            raise MediaFetchError(url, response.status_code)
        content_type = response.headers.get("content-type") or "application/octet-stream"
        return response.content, content_type.split(";")[0].strip()

    def _get_http(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(timeout=self._http_timeout, follow_redirects=True)
            self._owns_http = True
        return self._http

    async def _record_failure(self, item: OutboundMessage, error: Exception) -> None:
        attempts = item.attempt_count + 1
        status = MessageStatus.FAILED if attempts >= self.config.max_attempts else MessageStatus.APPROVED
        logger.error("dispatch_send_failed", id=item.id, attempt_count=attempts,
                     status=status.value, error=str(error))
        fields = {"attempt_count": attempts, "in_progress": False, "status": status.value}
        try:
            await self._retrying(lambda: self.store.update_message(item.id, **fields))
        except asyncio.CancelledError:
            self._park_update(item.id, fields)
            raise
        except Exception as e:
            logger.error("dispatch_attempt_update_failed", id=item.id, error=str(e))
            self._park_update(item.id, fields)
        self.audit.record("send_failed", {"id": item.id, "error": str(error)})

    async def _release(self, item: OutboundMessage, result: Optional[SendResult]) -> None:
        """Give back a claim interrupted by shutdown. No attempt is charged."""
        fields: dict[str, Any] = {"in_progress": False}
        if result is not None:
            fields.update(status=MessageStatus.SENT.value, whatsapp_message_id=result.message_id)
        logger.warning("dispatch_interrupted", id=item.id, sent=result is not None)
        try:
            await self.store.update_message(item.id, **fields)
        except Exception as e:
            logger.error("dispatch_release_failed", id=item.id, error=str(e))
            self._park_update(item.id, fields)
        if result is not None:
            self.audit.record("message_sent", {"id": item.id, "whatsapp_id": result.message_id})

    def _park_update(self, message_id: Any, fields: dict[str, Any]) -> None:
        self.state.enqueue_local(LocalEntryType.MESSAGE_UPDATE, {"id": message_id, "fields": fields})

    async def _retrying(self, operation):
        return await with_backoff(
            operation,
            attempts=self.backoff.attempts,
            base_delay=self.backoff.base_delay,
            sleep=self._sleep,
        )
