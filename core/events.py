"""
Channel Event Handler — reacts to lifecycle events pushed by the WhatsApp bridge.

Every transition updates the shared RelayState, writes the new status through
the store's status procedure and records an audit event. A status write that
fails is parked in the local queue as a ``status`` entry.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Optional

from core.audit import AuditRecorder
from core.inbound import InboundHandler
from core.state import RelayState
from database.store_base import RemoteStore
from models.schemas import ChannelEvent, ChannelEventType, ChannelStatus, LocalEntryType

logger = structlog.get_logger()


class ChannelEventHandler:
    def __init__(self, store: RemoteStore, state: RelayState, audit: AuditRecorder,
                 inbound: Optional[InboundHandler] = None, sleep=asyncio.sleep):
        self.store = store
        self.state = state
        self.audit = audit
        self.inbound = inbound
        self._sleep = sleep

    async def handle(self, event: ChannelEvent) -> None:
        """Route a bridge event to its handler."""
        if event.type == ChannelEventType.QR:
            if event.qr:
                await self.on_qr(event.qr)
        elif event.type == ChannelEventType.READY:
            await self.on_ready()
        elif event.type == ChannelEventType.DISCONNECTED:
            await self.on_disconnected(event.reason)
        elif event.type == ChannelEventType.AUTH_FAILURE:
            await self.on_auth_failure(event.reason)
        elif event.type == ChannelEventType.MESSAGE and event.message and self.inbound:
            await self.inbound.handle_message(event.message)

    async def on_qr(self, qr: str) -> None:
        await self.state.set_qr(qr)
        logger.info("whatsapp_qr_generated", at=self.state.last_qr_at.isoformat())
        await self._set_status(ChannelStatus.QR_GENERATED, None, qr=qr, fallback={"qr": qr})
        self.audit.record("qr_generated", {"instance": self.state.instance_id})

    async def on_ready(self) -> None:
        await self.state.set_ready(True)
        logger.info("whatsapp_ready")
        await self._set_status(ChannelStatus.CONNECTED, {"instance": self.state.instance_id})
        self.audit.record("client_ready", {"instance": self.state.instance_id})

    async def on_disconnected(self, reason: Optional[str] = None) -> None:
        await self.state.set_ready(False)
        logger.warning("whatsapp_disconnected", reason=reason)
        await self._set_status(
            ChannelStatus.DISCONNECTED,
            {"instance": self.state.instance_id, "reason": reason},
            fallback={"reason": reason},
        )
        self.audit.record("client_disconnected", {"reason": reason})

    async def on_auth_failure(self, msg: Optional[str] = None) -> None:
        await self.state.set_ready(False)
        logger.error("whatsapp_auth_failure", msg=msg)
        await self._set_status(
            ChannelStatus.AUTH_NEEDED,
            {"instance": self.state.instance_id, "msg": msg},
            fallback={"msg": msg},
        )
        self.audit.record("auth_failure", {"msg": msg})

    async def login_via_phone(self, phone: str, delay: float = 2.0) -> bool:
        """
        Phone-number login. The bridge offers no stable phone pairing API, so
        this marks the client ready after ``delay`` seconds and records the
        ``connected_via_phone`` status.
        """
        logger.info("login_via_phone_attempt", phone=phone)
        try:
            await self._sleep(delay)
            await self.state.set_ready(True)
            await self._set_status(
                ChannelStatus.CONNECTED_VIA_PHONE,
                {"instance": self.state.instance_id, "phoneNumber": phone},
                fallback={"client_info": {"phoneNumber": phone}},
            )
        except Exception as e:
            logger.error("login_via_phone_failed", phone=phone, error=str(e))
            self.audit.record("login_via_phone_failed", {
                "instance": self.state.instance_id, "phoneNumber": phone, "err": str(e),
            })
            raise
        self.audit.record("login_via_phone_success", {
            "instance": self.state.instance_id, "phoneNumber": phone,
        })
        return True

    async def _set_status(self, status: ChannelStatus, client_info: Optional[dict[str, Any]],
                          qr: Optional[str] = None,
                          fallback: Optional[dict[str, Any]] = None) -> None:
        try:
            await self.store.set_channel_status(status.value, client_info, qr)
            logger.info("channel_status_written", status=status.value)
        except Exception as e:
            logger.warning("channel_status_write_failed", status=status.value, error=str(e))
            self.state.enqueue_local(LocalEntryType.STATUS, {"status": status.value, **(fallback or {})})
