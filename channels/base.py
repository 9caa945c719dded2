"""
Channel Adapters — base infrastructure for outbound channels.

Provides:
- ChannelError: structured error hierarchy
- ChannelMetrics: send/fail/latency tracking
- ChannelAdapter: abstract base wrapping every send with metrics
"""
from __future__ import annotations

import abc
import time
import structlog
from typing import Any, Optional

from models.schemas import SendResult

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for all channel operations."""

    def __init__(self, message: str, channel: str = ""):
        self.channel = channel
        super().__init__(message)


class ChannelNotReadyError(ChannelError):
    def __init__(self, channel: str = "whatsapp"):
        super().__init__("WhatsApp client not ready", channel)


class NoDestinationError(ChannelError):
    def __init__(self, channel: str = "whatsapp"):
        super().__init__("No destination jid", channel)


class MediaFetchError(ChannelError):
    def __init__(self, url: str, status_code: Optional[int] = None, channel: str = "whatsapp"):
        self.url = url
        self.status_code = status_code
        detail = status_code if status_code is not None else "transport error"
        super().__init__(f"Failed download media: {detail}", channel)


# ══════════════════════════════════════════════════════════════
#  CHANNEL METRICS
# ══════════════════════════════════════════════════════════════

class ChannelMetrics:
    """Tracks send, failure, and latency metrics for one channel."""

    def __init__(self, channel: str):
        self.channel = channel
        self.messages_sent: int = 0
        self.messages_failed: int = 0
        self._latencies: list[float] = []
        self._errors: list[str] = []

    def record_send(self, latency_ms: float = 0.0):
        self.messages_sent += 1
        if latency_ms > 0:
            self._latencies.append(latency_ms)

    def record_failure(self, error: str = ""):
        self.messages_failed += 1
        if error:
            self._errors.append(error)

    @property
    def avg_latency_ms(self) -> float:
        return sum(self._latencies) / len(self._latencies) if self._latencies else 0.0

    @property
    def failure_rate(self) -> float:
        total = self.messages_sent + self.messages_failed
        return self.messages_failed / total if total > 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel,
            "sent": self.messages_sent,
            "failed": self.messages_failed,
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "failure_rate": round(self.failure_rate, 4),
            "recent_errors": self._errors[-10:],
        }


# ══════════════════════════════════════════════════════════════
#  CHANNEL ADAPTER — Abstract Base
# ══════════════════════════════════════════════════════════════

class ChannelAdapter(abc.ABC):
    """
    Base class for channel adapters.

    Subclasses implement _do_send_text and _do_send_media. The base class
    records metrics around every send; errors propagate to the caller, which
    owns the retry policy.
    """

    channel_name: str = ""

    def __init__(self):
        self._initialized = False
        self._config: dict[str, Any] = {}
        self._metrics = ChannelMetrics(self.channel_name)

    # ── Abstract hooks ────────────────────────────────────────

    @abc.abstractmethod
    async def _do_send_text(self, address: str, text: str) -> SendResult:
        ...

    @abc.abstractmethod
    async def _do_send_media(self, address: str, data: bytes, mime_type: str,
                             caption: str = "") -> SendResult:
        ...

    @abc.abstractmethod
    async def initialize(self, config: dict[str, Any]) -> None:
        ...

    # ── Public send ───────────────────────────────────────────

    async def send_text(self, address: str, text: str) -> SendResult:
        return await self._timed(self._do_send_text(address, text))

    async def send_media(self, address: str, data: bytes, mime_type: str,
                         caption: str = "") -> SendResult:
        return await self._timed(self._do_send_media(address, data, mime_type, caption))

    async def _timed(self, send) -> SendResult:
        start = time.monotonic()
        try:
            result = await send
        except Exception as e:
            self._metrics.record_failure(str(e))
            raise
        self._metrics.record_send((time.monotonic() - start) * 1000)
        return result

    @property
    def initialized(self) -> bool:
        return self._initialized

    # ── Health ────────────────────────────────────────────────

    async def health_check(self) -> dict[str, Any]:
        return {
            "channel": self.channel_name,
            "initialized": self._initialized,
            "metrics": self._metrics.to_dict(),
        }

    async def shutdown(self) -> None:
        pass
