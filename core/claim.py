"""
Claim protocol — optimistic, single-winner acquisition of a work item.

``claim`` asks the store to flip ``in_progress`` to true on the row
``{id, in_progress: false, status: "approved"}``. Losing the race is the
normal outcome under contention and comes back as ``None``; store errors
propagate so the caller can skip the item without touching its state.

The at-most-one-claim guarantee is exactly the store's single-row CAS. A
backend without atomic conditional updates has to replace this with a
leased-lock table or disjoint per-worker item ranges.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from database.store_base import RemoteStore
from models.schemas import OutboundMessage

logger = structlog.get_logger()


async def claim(store: RemoteStore, item_id: Any) -> Optional[OutboundMessage]:
    claimed = await store.claim_message(item_id)
    if claimed is None:
        logger.debug("claim_lost", id=item_id)
        return None
    logger.debug("claim_won", id=item_id, attempt_count=claimed.attempt_count)
    return claimed
