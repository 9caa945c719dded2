"""
Relay — wires the store, channel, local queue and workers of one instance.

    relay = build_relay(settings)
    await relay.start()      # audit writer, dispatch and reconciliation loops
    ...
    await relay.stop()

``build_relay`` accepts overrides for any collaborator so tests can run the
whole pipeline against the in-memory store and a mock-mode channel.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Optional

from channels.base import ChannelAdapter
from channels.whatsapp_adapter import WhatsAppAdapter
from config.settings import Settings
from core.audit import AuditRecorder
from core.claim import claim
from core.dispatcher import DispatchWorker
from core.events import ChannelEventHandler
from core.inbound import InboundHandler
from core.reconciler import ReconciliationWorker
from core.state import RelayState
from database.store_base import RemoteStore
from database.store_factory import create_store
from job_queue.local_queue import DurableLocalQueue
from models.schemas import LocalEntryType, LocalQueueEntry, OutboundMessage

logger = structlog.get_logger()


class Relay:
    def __init__(
        self,
        settings: Settings,
        store: RemoteStore,
        channel: ChannelAdapter,
        local_queue: DurableLocalQueue,
        state: RelayState,
        audit: AuditRecorder,
        dispatcher: DispatchWorker,
        reconciler: ReconciliationWorker,
        inbound: InboundHandler,
        events: ChannelEventHandler,
    ):
        self.settings = settings
        self.store = store
        self.channel = channel
        self.local_queue = local_queue
        self.state = state
        self.audit = audit
        self.dispatcher = dispatcher
        self.reconciler = reconciler
        self.inbound = inbound
        self.events = events
        self._started = False

    @property
    def instance_id(self) -> str:
        return self.state.instance_id

    # ── Core operations ───────────────────────────────────────

    def enqueue_local(self, type: LocalEntryType, payload: dict[str, Any]) -> LocalQueueEntry:
        return self.state.enqueue_local(type, payload)

    async def claim(self, item_id: Any) -> Optional[OutboundMessage]:
        return await claim(self.store, item_id)

    async def run_dispatch_cycle(self) -> dict[str, Any]:
        return await self.dispatcher.run_dispatch_cycle()

    async def run_reconciliation_cycle(self) -> dict[str, int]:
        return await self.reconciler.run_reconciliation_cycle()

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self) -> None:
        if self._started:
            return
        if not self.channel.initialized:
            await self.channel.initialize({
                "base_url": self.settings.channel.base_url,
                "token": self.settings.channel.token,
                "timeout": self.settings.http_timeout,
            })
        await self.audit.start()
        await self.dispatcher.start()
        await self.reconciler.start()
        self._started = True
        self.audit.record("server_started", {
            "port": self.settings.server.port,
            "instance": self.instance_id,
        })
        logger.info("relay_started", instance=self.instance_id,
                    local_queue_depth=len(self.local_queue))

    async def stop(self) -> None:
        if not self._started:
            return
        await self.dispatcher.stop()
        await self.reconciler.stop()
        await self.audit.stop()
        await self.channel.shutdown()
        await self.store.close()
        self._started = False
        logger.info("relay_stopped", instance=self.instance_id,
                    local_queue_depth=len(self.local_queue))

    def to_dict(self) -> dict[str, Any]:
        data = self.state.to_dict()
        data["audit_pending"] = self.audit.pending
        return data


def build_relay(
    settings: Settings,
    store: Optional[RemoteStore] = None,
    channel: Optional[ChannelAdapter] = None,
    local_queue: Optional[DurableLocalQueue] = None,
    sleep=asyncio.sleep,
) -> Relay:
    """Create every component from settings and load the local queue from disk."""
    store = store or create_store(settings.store, timeout=settings.http_timeout)
    channel = channel or WhatsAppAdapter()
    if local_queue is None:
        local_queue = DurableLocalQueue(settings.local_queue_path)
    local_queue.load()

    state = RelayState(settings.instance_id, local_queue)
    audit = AuditRecorder(store, local_queue, actor=settings.instance_id)
    dispatcher = DispatchWorker(
        store, channel, state, audit,
        config=settings.dispatch,
        backoff=settings.backoff,
        http_timeout=settings.http_timeout,
        sleep=sleep,
    )
    reconciler = ReconciliationWorker(store, local_queue, config=settings.reconcile, sleep=sleep)
    inbound = InboundHandler(store, state, audit)
    events = ChannelEventHandler(store, state, audit, inbound, sleep=sleep)

    return Relay(
        settings=settings,
        store=store,
        channel=channel,
        local_queue=local_queue,
        state=state,
        audit=audit,
        dispatcher=dispatcher,
        reconciler=reconciler,
        inbound=inbound,
        events=events,
    )
