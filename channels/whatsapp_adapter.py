"""
WhatsApp Channel Adapter — talks to a WhatsApp Web bridge over HTTP.

The bridge owns the browser session (QR pairing, LocalAuth data under
``session_path``) and exposes:
  POST {base_url}/messages/text   {"chat_id", "text"}                      → {"id"}
  POST {base_url}/messages/media  {"chat_id", "mimetype", "data", "caption"} → {"id"}

Lifecycle and inbound events travel the other way: the bridge POSTs them to
``/webhooks/whatsapp`` and ``parse_bridge_event`` turns them into ChannelEvents.

Without a ``base_url`` the adapter runs in mock mode and fabricates message ids.
"""
from __future__ import annotations

import base64
import hmac
import uuid
import structlog
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from channels.base import ChannelAdapter, ChannelError
from models.schemas import (
    ChannelEvent, ChannelEventType, InboundMedia, InboundMessage, SendResult,
)

logger = structlog.get_logger()


class WhatsAppAdapter(ChannelAdapter):
    """WhatsApp Web bridge adapter."""

    channel_name = "whatsapp"

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__()
        self._base_url: str = ""
        self._token: str = ""
        self._timeout: float = 15.0
        self._transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    async def initialize(self, config: dict[str, Any]) -> None:
        self._config = config
        self._base_url = (config.get("base_url") or "").rstrip("/")
        self._token = config.get("token", "")
        self._timeout = float(config.get("timeout", 15.0))
        self._initialized = True
        logger.info("whatsapp_adapter_initialized",
                    mode="bridge" if self._base_url else "mock")

    @property
    def mock_mode(self) -> bool:
        return not self._base_url

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {"Authorization": f"Bearer {self._token}"} if self._token else {}
            self.client = httpx.AsyncClient(
                base_url=self._base_url,
                headers=headers,
                timeout=self._timeout,
                transport=self._transport,
            )
        return self.client

    # ── Send ──────────────────────────────────────────────────

    async def _do_send_text(self, address: str, text: str) -> SendResult:
        if self.mock_mode:
            return self._mock_result(address, "text")
        return await self._post("/messages/text", {"chat_id": address, "text": text})

    async def _do_send_media(self, address: str, data: bytes, mime_type: str,
                             caption: str = "") -> SendResult:
        if self.mock_mode:
            return self._mock_result(address, "media")
        return await self._post("/messages/media", {
            "chat_id": address,
            "mimetype": mime_type,
            "data": base64.b64encode(data).decode("ascii"),
            "caption": caption,
        })

    async def _post(self, path: str, payload: dict[str, Any]) -> SendResult:
        client = await self._get_client()
        try:
            response = await client.post(path, json=payload)
        except httpx.TransportError as e:
            raise ChannelError(f"bridge unreachable: {e!r}", self.channel_name) from e
        if response.status_code >= 400:
            raise ChannelError(
                f"bridge rejected send: HTTP {response.status_code} {response.text[:200]}",
                self.channel_name,
            )
        body = response.json() if response.content else {}
        message_id = body.get("id")
        if isinstance(message_id, dict):
            # whatsapp-web.js serializes ids as {"id": ..., "_serialized": ...}
            message_id = message_id.get("id")
        logger.info("whatsapp_sent", to=payload["chat_id"], msg_id=message_id)
        return SendResult(message_id=message_id, raw=body)

    def _mock_result(self, address: str, kind: str) -> SendResult:
        msg_id = f"wamid.{uuid.uuid4().hex[:20]}"
        logger.info("whatsapp_mock_sent", to=address, kind=kind, msg_id=msg_id)
        return SendResult(message_id=msg_id, raw={"mock": True})

    # ── Bridge events ─────────────────────────────────────────

    def verify_token(self, token: Optional[str]) -> bool:
        """Check the shared secret the bridge sends with each event."""
        if not self._token:
            return True
        return hmac.compare_digest(token or "", self._token)

    def parse_bridge_event(self, raw: dict[str, Any]) -> Optional[ChannelEvent]:
        """Turn a bridge webhook payload into a ChannelEvent (None when unrecognized)."""
        event_name = raw.get("event", "")
        data = raw.get("data") or {}
        if not isinstance(event_name, str) or not isinstance(data, dict):
            logger.warning("whatsapp_event_malformed", event=event_name)
            return None
        try:
            event_type = ChannelEventType(event_name)
        except ValueError:
            logger.warning("whatsapp_event_unknown", event=event_name)
            return None

        try:
            if event_type == ChannelEventType.QR:
                return ChannelEvent(type=event_type, qr=data.get("qr"))
            if event_type in (ChannelEventType.DISCONNECTED, ChannelEventType.AUTH_FAILURE):
                return ChannelEvent(type=event_type, reason=data.get("reason") or data.get("msg"))
            if event_type == ChannelEventType.MESSAGE:
                return ChannelEvent(type=event_type, message=self._parse_message(data))
            return ChannelEvent(type=event_type)
        except ValidationError as e:
            logger.warning("whatsapp_event_invalid", event=event_name, error=str(e))
            return None

    def _parse_message(self, data: dict[str, Any]) -> InboundMessage:
        media = None
        raw_media = data.get("media")
        if isinstance(raw_media, dict) and raw_media.get("data"):
            media = InboundMedia(mime_type=raw_media.get("mimetype"), data=raw_media["data"])
        message_id = data.get("id")
        if isinstance(message_id, dict):
            message_id = message_id.get("id")
        return InboundMessage(
            id=message_id,
            sender=data.get("from"),
            body=data.get("body"),
            media=media,
        )

    async def shutdown(self) -> None:
        if self.client:
            await self.client.aclose()
