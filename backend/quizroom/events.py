from __future__ import annotations

from typing import Any, Dict, List

from pymongo import ReturnDocument

from .db import db
from .utils import Clock, now_ms


ROOMS = "rooms"
PLAYERS = "players"


class ChangeFeed:
    """Persist row-change notifications per room so clients can poll them.

    Every write the record store performs on ``rooms`` or ``players`` appends
    one entry here. Entries carry no payload beyond the table and the kind of
    change: subscribers always re-fetch the full snapshot.
    """

    def __init__(self, database: Any = None, *, clock: Clock = now_ms):
        database = database if database is not None else db
        self.clock = clock
        self.counters_collection = database.room_change_counters
        self.changes_collection = database.room_changes
        self.rooms_collection = database.rooms

    async def append(self, room_code: str, table: str, op: str) -> int:
        """Record a change for a room and return its sequence number."""

        counter_doc = await self.counters_collection.find_one_and_update(
            {"_id": room_code},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )

        if not counter_doc:
            # Some Mongo-compatible providers complete the upsert but return
            # ``None`` instead of the updated document.
            counter_doc = await self.counters_collection.find_one({"_id": room_code})

        if not counter_doc or "seq" not in counter_doc:
            counter_doc = {"seq": 1}
            await self.counters_collection.update_one(
                {"_id": room_code},
                {"$set": counter_doc},
                upsert=True,
            )

        seq = int(counter_doc.get("seq", 1))

        await self.changes_collection.insert_one(
            {
                "room_code": room_code,
                "seq": seq,
                "timestamp": self.clock(),
                "table": table,
                "op": op,
            }
        )
        return seq

    async def list(self, room_code: str, after: int | None = None, limit: int = 200) -> List[dict[str, Any]]:
        """Return changes for a room that occur after the given sequence."""

        query: dict[str, Any] = {"room_code": room_code}
        if after is not None:
            query["seq"] = {"$gt": after}

        cursor = (
            self.changes_collection.find(query)
            .sort("seq", 1)
            .limit(limit)
        )

        changes: List[dict[str, Any]] = []
        async for doc in cursor:
            changes.append(
                {
                    "seq": doc["seq"],
                    "timestamp": doc.get("timestamp"),
                    "table": doc.get("table"),
                    "op": doc.get("op"),
                }
            )
        return changes

    async def latest_seq(self, room_code: str) -> int:
        counter_doc = await self.counters_collection.find_one({"_id": room_code})
        if not counter_doc:
            return 0
        return int(counter_doc.get("seq", 0))

    async def prune(self, before: int) -> List[str]:
        """Drop the history and counter of rooms that no longer exist.

        A room's history is kept until its newest change is older than
        ``before`` so pollers still see the final delete.
        """

        newest: Dict[str, int] = {}
        async for doc in self.changes_collection.find({}):
            code = doc["room_code"]
            newest[code] = max(newest.get(code, 0), doc.get("timestamp") or 0)

        dropped: List[str] = []
        for code in sorted(c for c, ts in newest.items() if ts < before):
            if await self.rooms_collection.find_one({"code": code}) is not None:
                continue
            dropped.append(code)
            await self.changes_collection.delete_many({"room_code": code})
            await self.counters_collection.delete_one({"_id": code})
        return dropped
