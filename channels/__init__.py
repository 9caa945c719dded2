"""Channel adapters for the WhatsApp relay."""
from channels.base import (
    ChannelAdapter,
    ChannelError,
    ChannelMetrics,
    ChannelNotReadyError,
    MediaFetchError,
    NoDestinationError,
)
from channels.addressing import normalize_number, resolve_destination, to_jid
from channels.whatsapp_adapter import WhatsAppAdapter

__all__ = [
    "ChannelAdapter", "ChannelError", "ChannelMetrics",
    "ChannelNotReadyError", "MediaFetchError", "NoDestinationError",
    "normalize_number", "resolve_destination", "to_jid",
    "WhatsAppAdapter",
]
