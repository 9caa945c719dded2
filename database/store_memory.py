"""
InMemoryRemoteStore — Dict-backed remote store for development and testing.

Features:
  - Zero dependencies (no Supabase project needed)
  - Full interface compatibility with SupabaseRemoteStore
  - claim_message is an atomic CAS guarded by an asyncio.Lock
  - Outage simulation: put operation names in ``fail_operations``
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import asyncio
import itertools
import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from database.store_base import RemoteStore, StoreUnavailableError
from models.schemas import MessageStatus, OutboundMessage

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryRemoteStore(RemoteStore):
    """
    In-memory store with the same semantics as the Supabase backend.
    Rows are plain dicts; messages come back as OutboundMessage models.
    """

    def __init__(self, storage_base_url: str = "memory://storage"):
        self.messages: dict[Any, dict[str, Any]] = {}
        self.chats: dict[Any, dict[str, Any]] = {}
        self.audit_log: list[dict[str, Any]] = []
        self.status_calls: list[dict[str, Any]] = []
        self.objects: dict[str, tuple[bytes, Optional[str]]] = {}
        self.fail_operations: set[str] = set()
        self._storage_base_url = storage_base_url.rstrip("/")
        self._message_ids = itertools.count(1)
        self._chat_ids = itertools.count(1)
        self._lock = asyncio.Lock()
        logger.info("inmemory_store_initialized")

    def _check(self, operation: str) -> None:
        if operation in self.fail_operations or "*" in self.fail_operations:
            raise StoreUnavailableError(f"simulated outage during {operation}", operation)

    # ── Outbound messages ─────────────────────────────────

    async def fetch_dispatchable(self, limit: int = 5, max_attempt_count: int = 4) -> list[OutboundMessage]:
        self._check("fetch_dispatchable")
        eligible = [
            row for row in self.messages.values()
            if row["status"] == MessageStatus.APPROVED.value
            and row["attempt_count"] <= max_attempt_count
            and row["in_progress"] is False
        ]
        eligible.sort(key=lambda r: r["created_at"])
        return [OutboundMessage.model_validate(r) for r in eligible[:limit]]

    async def claim_message(self, message_id: Any) -> Optional[OutboundMessage]:
        self._check("claim_message")
        async with self._lock:
            row = self.messages.get(message_id)
            # Competing claims queue on the lock while this one yields.
            await asyncio.sleep(0)
            if (
                row is None
                or row["in_progress"] is not False
                or row["status"] != MessageStatus.APPROVED.value
            ):
                return None
            row["in_progress"] = True
            return OutboundMessage.model_validate(row)

    async def update_message(self, message_id: Any, **fields) -> None:
        self._check("update_message")
        row = self.messages.get(message_id)
        if row is None:
            return
        for key, value in fields.items():
            row[key] = value.value if isinstance(value, MessageStatus) else value

    async def insert_message(self, row: dict[str, Any]) -> dict[str, Any]:
        self._check("insert_message")
        message_id = next(self._message_ids)
        stored = {
            "chat_id": None, "sender": None, "numero": None, "message": None,
            "media_url": None, "whatsapp_message_id": None,
            "status": MessageStatus.PENDING.value,
            "attempt_count": 0, "in_progress": False,
            **row,
            "id": message_id,
            "created_at": row.get("created_at") or _utcnow(),
        }
        if isinstance(stored["status"], MessageStatus):
            stored["status"] = stored["status"].value
        self.messages[message_id] = stored
        return dict(stored)

    async def list_messages(self, chat_id: Any) -> list[dict[str, Any]]:
        self._check("list_messages")
        rows = [dict(r) for r in self.messages.values() if str(r.get("chat_id")) == str(chat_id)]
        rows.sort(key=lambda r: r["created_at"])
        return rows

    # ── Chats ─────────────────────────────────────────────

    async def find_chat_by_number(self, numero_normalized: str) -> Optional[dict[str, Any]]:
        self._check("find_chat_by_number")
        for chat in self.chats.values():
            if chat.get("numero_normalized") == numero_normalized:
                return dict(chat)
        return None

    async def create_chat(self, row: dict[str, Any]) -> dict[str, Any]:
        self._check("create_chat")
        chat_id = next(self._chat_ids)
        chat = {"status": "inactive", "last_message_at": _utcnow(), **row, "id": chat_id}
        self.chats[chat_id] = chat
        return dict(chat)

    async def touch_chat(self, chat_id: Any) -> None:
        self._check("touch_chat")
        if chat_id in self.chats:
            self.chats[chat_id]["last_message_at"] = _utcnow()

    async def list_chats(self) -> list[dict[str, Any]]:
        self._check("list_chats")
        return sorted(
            (dict(c) for c in self.chats.values()),
            key=lambda c: c["last_message_at"],
            reverse=True,
        )

    # ── Audit & status ────────────────────────────────────

    async def insert_audit(self, actor: str, action: str, meta: dict[str, Any]) -> None:
        self._check("insert_audit")
        self.audit_log.append({"actor": actor, "action": action, "meta": meta, "created_at": _utcnow()})

    async def set_channel_status(self, status: str, client_info: Optional[dict[str, Any]] = None,
                                 qr: Optional[str] = None) -> None:
        self._check("set_channel_status")
        self.status_calls.append({"status": status, "client_info": client_info, "qr": qr,
                                  "updated_at": _utcnow()})

    async def get_channel_status(self) -> Optional[dict[str, Any]]:
        self._check("get_channel_status")
        return dict(self.status_calls[-1]) if self.status_calls else None

    # ── Media storage ─────────────────────────────────────

    async def upload_media(self, path: str, data: bytes, content_type: Optional[str] = None) -> None:
        self._check("upload_media")
        self.objects[path] = (data, content_type)

    def public_url(self, path: str) -> str:
        return f"{self._storage_base_url}/{path}"

    # ── Helpers ───────────────────────────────────────────

    def actions(self) -> list[str]:
        """Audit actions in insertion order."""
        return [row["action"] for row in self.audit_log]
