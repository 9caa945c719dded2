"""
Abstract Remote Store — Interface for the datastore the relay writes to.

Implementations:
  - SupabaseRemoteStore  (PostgREST tables, RPC and Storage over httpx)
  - InMemoryRemoteStore  (dict-based, single-process, atomic CAS under a lock)

The dispatch pipeline depends on one guarantee from every backend:
``claim_message`` is an atomic single-row compare-and-swap.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

from models.schemas import OutboundMessage


class StoreError(Exception):
    """Base exception for remote store operations."""

    def __init__(self, message: str, operation: str = ""):
        self.operation = operation
        super().__init__(message)


class StoreUnavailableError(StoreError):
    """The store could not be reached (transport error, timeout, 5xx)."""


class RemoteStore(ABC):
    """Interface that all remote store backends must implement."""

    # ── Outbound messages ─────────────────────────────────────

    @abstractmethod
    async def fetch_dispatchable(self, limit: int = 5, max_attempt_count: int = 4) -> list[OutboundMessage]:
        """Approved, unclaimed rows with attempt_count <= max, oldest first."""
        ...

    @abstractmethod
    async def claim_message(self, message_id: Any) -> Optional[OutboundMessage]:
        """
        Set in_progress=true iff the row matches {id, in_progress: false, status: approved}.
        Returns the updated row, or None when the condition did not match.
        """
        ...

    @abstractmethod
    async def update_message(self, message_id: Any, **fields) -> None:
        ...

    @abstractmethod
    async def insert_message(self, row: dict[str, Any]) -> dict[str, Any]:
        ...

    @abstractmethod
    async def list_messages(self, chat_id: Any) -> list[dict[str, Any]]:
        ...

    # ── Chats ─────────────────────────────────────────────────

    @abstractmethod
    async def find_chat_by_number(self, numero_normalized: str) -> Optional[dict[str, Any]]:
        ...

    @abstractmethod
    async def create_chat(self, row: dict[str, Any]) -> dict[str, Any]:
        ...

    @abstractmethod
    async def touch_chat(self, chat_id: Any) -> None:
        """Bump last_message_at to now."""
        ...

    @abstractmethod
    async def list_chats(self) -> list[dict[str, Any]]:
        ...

    # ── Audit & status ────────────────────────────────────────

    @abstractmethod
    async def insert_audit(self, actor: str, action: str, meta: dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def set_channel_status(self, status: str, client_info: Optional[dict[str, Any]] = None,
                                 qr: Optional[str] = None) -> None:
        """Call the status-transition procedure."""
        ...

    @abstractmethod
    async def get_channel_status(self) -> Optional[dict[str, Any]]:
        ...

    # ── Media storage ─────────────────────────────────────────

    @abstractmethod
    async def upload_media(self, path: str, data: bytes, content_type: Optional[str] = None) -> None:
        ...

    @abstractmethod
    def public_url(self, path: str) -> str:
        ...

    async def close(self) -> None:
        pass
