"""
Inbound Handler — stores messages received on the WhatsApp channel.

Flow per message:
    upsert chat by normalized number
    → upload attached media to storage (parked as ``media_upload`` on failure)
    → insert a ``received`` row into messages (parked as ``incoming_msg`` on failure)
    → audit ``message_received``

A parked message keeps ``media_path`` so the reconciler can resolve its
public URL once the upload has been replayed.
"""
from __future__ import annotations

import base64
import binascii
import time
import structlog
from typing import Any, Optional

from channels.addressing import normalize_number, to_jid
from core.audit import AuditRecorder
from core.state import RelayState
from database.store_base import RemoteStore
from models.schemas import InboundMedia, InboundMessage, LocalEntryType, MessageStatus

logger = structlog.get_logger()

MEDIA_PREFIX = "msg_media"


class InboundHandler:
    def __init__(self, store: RemoteStore, state: RelayState, audit: AuditRecorder):
        self.store = store
        self.state = state
        self.audit = audit

    async def handle_message(self, message: InboundMessage) -> Optional[dict[str, Any]]:
        """Persist one inbound message. Returns the stored row, or None when parked locally."""
        normalized = normalize_number(message.sender)
        jid = to_jid(normalized) or message.sender
        logger.info("inbound_message", id=message.id, sender=jid,
                    body=(message.body or "")[:100], media=message.media is not None)

        try:
            chat_id = await self._upsert_chat(normalized, jid)
        except Exception as e:
            logger.warning("inbound_chat_upsert_failed", sender=jid, error=str(e))
            media_path = self._park_media(message.media, None) if message.media else None
            self._park_message(message, jid, normalized, None, None, media_path)
            return None

        media_url, media_path = None, None
        if message.media:
            media_url, media_path = await self._store_media(message.media, chat_id)

        row = {
            "chat_id": chat_id,
            "sender": "whatsapp",
            "numero": normalized,
            "message": message.body or None,
            "media_url": media_url,
            "status": MessageStatus.RECEIVED.value,
            "whatsapp_message_id": message.id,
        }
        if media_path and not media_url:
            # Upload parked locally: store the row once the file exists.
            self._park_message(message, jid, normalized, chat_id, None, media_path)
            return None
        try:
            stored = await self.store.insert_message(row)
        except Exception as e:
            logger.warning("inbound_insert_failed", id=message.id, error=str(e))
            self._park_message(message, jid, normalized, chat_id, media_url, None)
            return None

        self.audit.record("message_received", {"chat_id": chat_id, "whatsapp_id": message.id})
        logger.info("inbound_stored", id=message.id, chat_id=chat_id)
        return stored

    async def _upsert_chat(self, normalized: Optional[str], jid: str) -> Any:
        found = await self.store.find_chat_by_number(normalized) if normalized else None
        if found:
            try:
                await self.store.touch_chat(found["id"])
            except Exception as e:
                logger.warning("inbound_chat_touch_failed", chat_id=found["id"], error=str(e))
            return found["id"]

        created = await self.store.create_chat({
            "numero_normalized": normalized,
            "jid": jid,
            "nome": None,
            "cognome": None,
            "status": "inactive",
        })
        logger.info("inbound_chat_created", chat_id=created.get("id"), jid=jid)
        return created.get("id")

    async def _store_media(self, media: InboundMedia, chat_id: Any) -> tuple[Optional[str], Optional[str]]:
        """Upload media. Returns (public_url, None) or (None, parked_path); (None, None) if unreadable."""
        path = media_path_for(chat_id, media.mime_type)
        try:
            data = base64.b64decode(media.data, validate=True)
        except (binascii.Error, ValueError) as e:
            logger.warning("inbound_media_invalid", error=str(e))
            return None, None
        try:
            await self.store.upload_media(path, data, media.mime_type)
        except Exception as e:
            logger.warning("inbound_media_upload_failed", path=path, error=str(e))
            return None, self._park_media(media, chat_id, path)
        url = self.store.public_url(path)
        logger.info("inbound_media_uploaded", path=path, url=url)
        return url, None

    def _park_media(self, media: InboundMedia, chat_id: Any, path: Optional[str] = None) -> str:
        path = path or media_path_for(chat_id, media.mime_type)
        self.state.enqueue_local(LocalEntryType.MEDIA_UPLOAD, {
            "path": path,
            "data": media.data,
            "content_type": media.mime_type,
        })
        return path

    def _park_message(self, message: InboundMessage, jid: str, normalized: Optional[str],
                      chat_id: Any, media_url: Optional[str], media_path: Optional[str]) -> None:
        self.state.enqueue_local(LocalEntryType.INCOMING_MSG, {
            "from": jid,
            "body": message.body,
            "chat_id": chat_id,
            "numero": normalized,
            "media_url": media_url,
            "media_path": media_path,
            "whatsapp_message_id": message.id,
        })


def media_path_for(chat_id: Any, mime_type: Optional[str]) -> str:
    """``msg_media/<chat>_<epoch ms>.<ext>``, extension taken from the mime subtype."""
    ext = mime_type.split("/")[1].split(";")[0] if mime_type and "/" in mime_type else "bin"
    return f"{MEDIA_PREFIX}/{chat_id if chat_id is not None else 'unassigned'}_{int(time.time() * 1000)}.{ext}"
