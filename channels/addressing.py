"""Phone number normalization and WhatsApp JID mapping."""
from __future__ import annotations

import re
from typing import Optional

USER_JID_SUFFIX = "@c.us"


def normalize_number(raw: Optional[str]) -> Optional[str]:
    """Digits only, country code assumed present ("+39 333-1234" → "393331234")."""
    if not raw:
        return None
    digits = re.sub(r"[^\d]", "", raw)
    return digits or None


def to_jid(number: Optional[str]) -> Optional[str]:
    """Map a normalized number to a chat id; values already holding a JID pass through."""
    if not number:
        return None
    if "@" in number:
        return number
    return f"{number}{USER_JID_SUFFIX}"


def resolve_destination(numero: Optional[str], chat_id=None) -> Optional[str]:
    """JID for ``numero`` when it normalizes, else the raw chat id, else None."""
    jid = to_jid(normalize_number(numero))
    if jid:
        return jid
    return str(chat_id) if chat_id else None
