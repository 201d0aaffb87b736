from __future__ import annotations

import logging
from typing import List, Optional

from .db import settings
from .models import Status
from .store import RecordStore

logger = logging.getLogger(__name__)

HOUR_MS = 60 * 60 * 1000


def cleanup_reason(created: Optional[int], status: Status, player_count: int, now: int) -> Optional[str]:
    """Why a room should be garbage collected, or None to keep it."""
    if created is not None and created < now - settings.ROOM_MAX_AGE_HOURS * HOUR_MS:
        return "old"
    if player_count == 0:
        return "empty"
    if status == Status.FINISHED and created is not None and created < now - settings.FINISHED_ROOM_MAX_AGE_HOURS * HOUR_MS:
        return "finished"
    return None


async def cleanup_rooms(store: RecordStore, now: Optional[int] = None) -> List[str]:
    """Delete stale rooms; returns the codes removed."""

    now = now if now is not None else store.clock()
    deleted: List[str] = []
    for room, player_count in await store.list_rooms():
        reason = cleanup_reason(room.created, room.status, player_count, now)
        if reason is None:
            continue
        result = await store.delete_room(room.code)
        if result.ok:
            deleted.append(room.code)
            logger.info("Cleaned up room %s", room.code, extra={"room_code": room.code, "reason": reason})
        else:
            logger.warning("Failed to clean up room %s: %s", room.code, result.error, extra={"room_code": room.code})

    try:
        pruned = await store.feed.prune(before=now - int(settings.CHANGE_LOG_RETENTION_SECONDS * 1000))
    except Exception:
        logger.exception("Error pruning change history")
    else:
        if pruned:
            logger.info("Pruned change history of %d rooms", len(pruned), extra={"event": "prune"})
    return deleted
