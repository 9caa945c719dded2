"""
SupabaseRemoteStore — Supabase REST backend (PostgREST + RPC + Storage).

Talks plain HTTP through httpx so the relay needs no vendor SDK:
  tables   → {url}/rest/v1/{table}
  rpc      → {url}/rest/v1/rpc/{name}
  storage  → {url}/storage/v1/object/{bucket}/{path}

The claim CAS is a PATCH filtered on {id, in_progress=false, status=approved}
with ``Prefer: return=representation``; PostgREST applies it as a single
UPDATE ... WHERE, so at most one caller gets the row back.
"""
from __future__ import annotations

import json
import structlog
from typing import Any, Optional

import httpx

from database.store_base import RemoteStore, StoreError, StoreUnavailableError
from models.schemas import MessageStatus, OutboundMessage, utcnow

logger = structlog.get_logger()


def _eq(value: Any) -> str:
    if isinstance(value, bool):
        return f"is.{str(value).lower()}"
    return f"eq.{value}"


class SupabaseRemoteStore(RemoteStore):
    """Remote store backed by a Supabase project's REST endpoints."""

    def __init__(
        self,
        url: str,
        service_key: str,
        storage_bucket: str = "whatsapp-media",
        status_rpc: str = "set_whatsapp_status",
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url.rstrip("/")
        self.storage_bucket = storage_bucket
        self.status_rpc = status_rpc
        self._service_key = service_key
        self._timeout = timeout
        self._transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(
                base_url=self.url,
                headers={
                    "apikey": self._service_key,
                    "Authorization": f"Bearer {self._service_key}",
                },
                timeout=self._timeout,
                transport=self._transport,
            )
        return self.client

    async def _request(self, operation: str, method: str, path: str, **kwargs) -> Any:
        client = await self._get_client()
        try:
            response = await client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise StoreUnavailableError(f"{operation}: {e!r}", operation) from e

        if response.status_code >= 500:
            raise StoreUnavailableError(
                f"{operation}: HTTP {response.status_code} {response.text[:200]}", operation
            )
        if response.status_code >= 400:
            raise StoreError(f"{operation}: HTTP {response.status_code} {response.text[:200]}", operation)
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return None

    # ── Outbound messages ─────────────────────────────────

    async def fetch_dispatchable(self, limit: int = 5, max_attempt_count: int = 4) -> list[OutboundMessage]:
        rows = await self._request(
            "fetch_dispatchable", "GET", "/rest/v1/messages",
            params={
                "select": "*",
                "status": _eq(MessageStatus.APPROVED.value),
                "attempt_count": f"lte.{max_attempt_count}",
                "in_progress": _eq(False),
                "order": "created_at.asc",
                "limit": str(limit),
            },
        )
        return [OutboundMessage.model_validate(r) for r in rows or []]

    async def claim_message(self, message_id: Any) -> Optional[OutboundMessage]:
        rows = await self._request(
            "claim_message", "PATCH", "/rest/v1/messages",
            params={
                "id": _eq(message_id),
                "in_progress": _eq(False),
                "status": _eq(MessageStatus.APPROVED.value),
            },
            json={"in_progress": True},
            headers={"Prefer": "return=representation"},
        )
        if not rows:
            return None
        return OutboundMessage.model_validate(rows[0])

    async def update_message(self, message_id: Any, **fields) -> None:
        body = {k: (v.value if isinstance(v, MessageStatus) else v) for k, v in fields.items()}
        await self._request(
            "update_message", "PATCH", "/rest/v1/messages",
            params={"id": _eq(message_id)},
            json=body,
        )

    async def insert_message(self, row: dict[str, Any]) -> dict[str, Any]:
        body = {k: (v.value if isinstance(v, MessageStatus) else v) for k, v in row.items()}
        rows = await self._request(
            "insert_message", "POST", "/rest/v1/messages",
            json=[body],
            headers={"Prefer": "return=representation"},
        )
        return rows[0] if rows else {}

    async def list_messages(self, chat_id: Any) -> list[dict[str, Any]]:
        rows = await self._request(
            "list_messages", "GET", "/rest/v1/messages",
            params={"select": "*", "chat_id": _eq(chat_id), "order": "created_at.asc"},
        )
        return rows or []

    # ── Chats ─────────────────────────────────────────────

    async def find_chat_by_number(self, numero_normalized: str) -> Optional[dict[str, Any]]:
        rows = await self._request(
            "find_chat_by_number", "GET", "/rest/v1/chats",
            params={
                "select": "id,numero_normalized,status",
                "numero_normalized": _eq(numero_normalized),
                "limit": "1",
            },
        )
        return rows[0] if rows else None

    async def create_chat(self, row: dict[str, Any]) -> dict[str, Any]:
        rows = await self._request(
            "create_chat", "POST", "/rest/v1/chats",
            params={"select": "id"},
            json=[row],
            headers={"Prefer": "return=representation"},
        )
        return rows[0] if rows else {}

    async def touch_chat(self, chat_id: Any) -> None:
        await self._request(
            "touch_chat", "PATCH", "/rest/v1/chats",
            params={"id": _eq(chat_id)},
            json={"last_message_at": utcnow().isoformat()},
        )

    async def list_chats(self) -> list[dict[str, Any]]:
        rows = await self._request(
            "list_chats", "GET", "/rest/v1/chats",
            params={
                "select": "id,nome,cognome,numero_normalized,jid,status,last_message_at",
                "order": "last_message_at.desc",
            },
        )
        return rows or []

    # ── Audit & status ────────────────────────────────────

    async def insert_audit(self, actor: str, action: str, meta: dict[str, Any]) -> None:
        await self._request(
            "insert_audit", "POST", "/rest/v1/audit_log",
            json=[{"actor": actor, "action": action, "meta": meta}],
        )

    async def set_channel_status(self, status: str, client_info: Optional[dict[str, Any]] = None,
                                 qr: Optional[str] = None) -> None:
        await self._request(
            "set_channel_status", "POST", f"/rest/v1/rpc/{self.status_rpc}",
            json={
                "p_status": status,
                "p_client_info": json.dumps(client_info) if client_info is not None else None,
                "p_qr": qr,
            },
        )

    async def get_channel_status(self) -> Optional[dict[str, Any]]:
        rows = await self._request(
            "get_channel_status", "GET", "/rest/v1/whatsapp_status",
            params={"select": "*", "limit": "1"},
        )
        return rows[0] if rows else None

    # ── Media storage ─────────────────────────────────────

    async def upload_media(self, path: str, data: bytes, content_type: Optional[str] = None) -> None:
        await self._request(
            "upload_media", "POST", f"/storage/v1/object/{self.storage_bucket}/{path}",
            content=data,
            headers={"Content-Type": content_type or "application/octet-stream"},
        )
        logger.info("media_uploaded", path=path, bytes=len(data))

    def public_url(self, path: str) -> str:
        return f"{self.url}/storage/v1/object/public/{self.storage_bucket}/{path}"

    async def close(self) -> None:
        if self.client:
            await self.client.aclose()
