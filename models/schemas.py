"""
Core data models for the WhatsRelay system.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class MessageStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    SENT = "sent"
    FAILED = "failed"
    RECEIVED = "received"


TERMINAL_STATUSES = {MessageStatus.SENT, MessageStatus.FAILED}


class LocalEntryType(str, Enum):
    AUDIT = "audit"
    INCOMING_MSG = "incoming_msg"
    STATUS = "status"
    MEDIA_UPLOAD = "media_upload"
    DISPATCH_ERROR = "dispatch_error"
    MESSAGE_UPDATE = "message_update"


class ChannelStatus(str, Enum):
    QR_GENERATED = "qr_generated"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    AUTH_NEEDED = "auth_needed"
    CONNECTED_VIA_PHONE = "connected_via_phone"


class ChannelEventType(str, Enum):
    QR = "qr"
    READY = "ready"
    DISCONNECTED = "disconnected"
    AUTH_FAILURE = "auth_failure"
    MESSAGE = "message"


# ──────────────────────────────────────────────────────────────
#  OutboundMessage — a row of the remote ``messages`` table
# ──────────────────────────────────────────────────────────────

class OutboundMessage(BaseModel):
    """
    A work item driven through pending → approved → (in_progress) → sent | failed.

    The table is owned by the remote store; unknown columns are ignored so the
    schema can grow without breaking the workers.
    """
    model_config = ConfigDict(extra="ignore")

    id: Any
    chat_id: Optional[Any] = None
    sender: Optional[str] = None
    numero: Optional[str] = None              # destination phone, any formatting
    message: Optional[str] = None             # text body or media caption
    media_url: Optional[str] = None           # externally hosted media
    status: MessageStatus = MessageStatus.PENDING
    attempt_count: int = 0
    in_progress: bool = False
    whatsapp_message_id: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def has_media(self) -> bool:
        return bool(self.media_url)


# ──────────────────────────────────────────────────────────────
#  Local queue & audit
# ──────────────────────────────────────────────────────────────

class LocalQueueEntry(BaseModel):
    """A side effect that could not reach the remote store."""
    entry_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    type: LocalEntryType
    payload: dict[str, Any] = {}
    created_at: datetime = Field(default_factory=utcnow)


class AuditEvent(BaseModel):
    actor: str
    action: str
    meta: dict[str, Any] = {}
    timestamp: datetime = Field(default_factory=utcnow)

    def to_row(self) -> dict[str, Any]:
        return {"actor": self.actor, "action": self.action, "meta": self.meta}


# ──────────────────────────────────────────────────────────────
#  Channel
# ──────────────────────────────────────────────────────────────

class SendResult(BaseModel):
    """What the channel returned for a successful transmission."""
    message_id: Optional[str] = None
    raw: dict[str, Any] = {}


class ChannelEvent(BaseModel):
    """A lifecycle or inbound event pushed by the WhatsApp bridge."""
    type: ChannelEventType
    qr: Optional[str] = None                  # raw QR payload for ``qr``
    reason: Optional[str] = None              # ``disconnected`` / ``auth_failure``
    message: Optional["InboundMessage"] = None


class InboundMedia(BaseModel):
    mime_type: Optional[str] = None
    data: str                                 # base64


class InboundMessage(BaseModel):
    id: Optional[str] = None
    sender: str                               # ``from`` JID
    body: Optional[str] = None
    media: Optional[InboundMedia] = None


ChannelEvent.model_rebuild()
