"""Record store adapter over the shared ``rooms`` / ``players`` collections.

Every operation is a network round-trip against a Mongo-style async
collection API. Not-found is an ordinary outcome (``None``); any other
failure is caught here and handed back as a failed ``StoreResult`` so that
callers never see backend exceptions.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from pymongo import ReturnDocument

from . import fields as fmap
from .db import db, settings
from .errors import InvalidUpdateError
from .events import PLAYERS, ROOMS, ChangeFeed
from .identity import generate_player_id
from .models import BuzzerSound, Player, Room, Song
from .utils import Clock, now_ms

logger = logging.getLogger(__name__)


@dataclass
class StoreResult:
    ok: bool
    data: Any = None
    error: Optional[str] = None
    # False when a guarded write found no row matching its expectations.
    matched: bool = True

    @classmethod
    def success(cls, data: Any = None, *, matched: bool = True) -> "StoreResult":
        return cls(ok=True, data=data, matched=matched)

    @classmethod
    def failure(cls, error: Any) -> "StoreResult":
        return cls(ok=False, error=str(error), matched=False)


class RecordStore:
    def __init__(
        self,
        database: Any = None,
        feed: Optional[ChangeFeed] = None,
        *,
        clock: Clock = now_ms,
        cache_ttl_ms: Optional[int] = None,
    ):
        self.db = database if database is not None else db
        self.feed = feed or ChangeFeed(self.db, clock=clock)
        self.clock = clock
        self.cache_ttl_ms = settings.ROOM_CACHE_TTL_MS if cache_ttl_ms is None else cache_ttl_ms
        self._cache: Dict[str, Tuple[int, Room]] = {}

    # ------------------------------------------------------------------
    # Rooms
    # ------------------------------------------------------------------

    async def fetch_room(self, code: str, *, fresh: bool = False, newer_than: Optional[int] = None) -> StoreResult:
        """Read a room with its players; ``data`` is ``None`` when the room is gone.

        Reads are served from a short TTL cache unless ``fresh`` is set or the
        cached copy predates ``newer_than``. Local writes never clear it.
        """

        now = self.clock()
        self._drop_expired(now)
        cached = self._cache.get(code)
        if cached and not fresh:
            fetched_at, room = cached
            if now - fetched_at < self.cache_ttl_ms and (newer_than is None or fetched_at > newer_than):
                return StoreResult.success(room.model_copy(deep=True))

        try:
            room_doc = await self.db.rooms.find_one({"code": code})
            if room_doc is None:
                self._cache.pop(code, None)
                return StoreResult.success(None)
            player_docs = await self.db.players.find({"room_code": code}).sort("joined_at", 1).to_list(None)
            room = fmap.room_from_db(room_doc)
            room.players = [fmap.player_from_db(doc) for doc in player_docs]
        except Exception as exc:
            logger.exception("Error getting room %s", code, extra={"room_code": code})
            return StoreResult.failure(exc)
        self._cache[code] = (self.clock(), room)
        return StoreResult.success(room.model_copy(deep=True))

    def _drop_expired(self, now: int) -> None:
        for key in [k for k, (fetched_at, _) in self._cache.items() if now - fetched_at >= self.cache_ttl_ms]:
            del self._cache[key]

    async def get_room(self, code: str, *, fresh: bool = False, newer_than: Optional[int] = None) -> Optional[Room]:
        result = await self.fetch_room(code, fresh=fresh, newer_than=newer_than)
        return result.data if result.ok else None

    async def room_exists(self, code: str) -> bool:
        try:
            return await self.db.rooms.find_one({"code": code}) is not None
        except Exception:
            logger.exception("Error checking room %s", code, extra={"room_code": code})
            return False

    async def create_room(self, code: str, initial: Dict[str, Any]) -> StoreResult:
        """Insert a new room row; ``initial`` uses wire (camelCase) field names."""

        doc = fmap.room_to_db(initial)
        doc["code"] = code
        doc["created_at"] = self.clock()
        doc.setdefault("status", "lobby")
        doc.setdefault("current_q", -1)
        try:
            if await self.db.rooms.find_one({"code": code}) is not None:
                return StoreResult.failure(f"Room {code} already exists")
            await self.db.rooms.insert_one(doc)
            await self.feed.append(code, ROOMS, "insert")
            room = fmap.room_from_db(doc)
        except Exception as exc:
            logger.exception("Error creating room %s", code, extra={"room_code": code})
            return StoreResult.failure(exc)
        return StoreResult.success(room)

    async def update_room(
        self,
        code: str,
        updates: Dict[str, Any],
        *,
        expect: Optional[Dict[str, Any]] = None,
    ) -> StoreResult:
        """Apply a partial update; with ``expect`` only if the row still matches it.

        ``matched`` on the result tells a guarded caller whether it won.
        """

        db_updates = fmap.room_to_db(updates)
        query = {"code": code, **fmap.room_filter(expect or {})}
        if not db_updates:
            return StoreResult.success(matched=True)
        try:
            fmap.check_room_updates(updates)
        except InvalidUpdateError as exc:
            logger.warning("Rejected update to room %s: %s", code, exc, extra={"room_code": code})
            return StoreResult.failure(exc)
        try:
            before = await self.db.rooms.find_one_and_update(
                query,
                {"$set": db_updates},
                return_document=ReturnDocument.BEFORE,
            )
            if before is None:
                return StoreResult.success(matched=False)
            await self.feed.append(code, ROOMS, "update")
            previous = fmap.room_from_db(before)
        except Exception as exc:
            logger.exception("Error updating room %s", code, extra={"room_code": code})
            return StoreResult.failure(exc)
        return StoreResult.success(previous)

    async def delete_room(self, code: str) -> StoreResult:
        """Delete a room and, by cascade, its players."""
        try:
            await self.db.players.delete_many({"room_code": code})
            await self.db.rooms.delete_one({"code": code})
            await self.feed.append(code, ROOMS, "delete")
        except Exception as exc:
            logger.exception("Error deleting room %s", code, extra={"room_code": code})
            return StoreResult.failure(exc)
        logger.info("Deleted room %s", code, extra={"room_code": code})
        return StoreResult.success()

    async def list_rooms(self) -> List[Tuple[Room, int]]:
        """Every room with its player count (used by garbage collection)."""
        out: List[Tuple[Room, int]] = []
        try:
            async for doc in self.db.rooms.find({}):
                count = await self.db.players.count_documents({"room_code": doc["code"]})
                out.append((fmap.room_from_db(doc), count))
        except Exception:
            logger.exception("Error listing rooms")
        return out

    # ------------------------------------------------------------------
    # Players
    # ------------------------------------------------------------------

    async def fetch_players(self, code: str) -> StoreResult:
        try:
            docs = await self.db.players.find({"room_code": code}).sort("joined_at", 1).to_list(None)
            players = [fmap.player_from_db(doc) for doc in docs]
        except Exception as exc:
            logger.exception("Error getting players of %s", code, extra={"room_code": code})
            return StoreResult.failure(exc)
        return StoreResult.success(players)

    async def get_players(self, code: str) -> List[Player]:
        result = await self.fetch_players(code)
        return result.data if result.ok else []

    async def _resolve_player_id(self, code: str, key: str) -> Optional[str]:
        """``key`` may be a player ID or, for legacy callers, a display name."""
        doc = await self.db.players.find_one({"room_code": code, "player_id": key})
        if doc is None:
            doc = await self.db.players.find_one({"room_code": code, "name": key})
        return doc["player_id"] if doc else None

    async def find_player(self, code: str, key: str) -> Optional[Player]:
        try:
            player_id = await self._resolve_player_id(code, key)
            if player_id is None:
                return None
            doc = await self.db.players.find_one({"room_code": code, "player_id": player_id})
            return fmap.player_from_db(doc) if doc else None
        except Exception:
            logger.exception("Error getting player %s in %s", key, code, extra={"room_code": code})
            return None


    async def add_player(
        self,
        code: str,
        name: str,
        *,
        is_host: bool = False,
        player_id: Optional[str] = None,
    ) -> StoreResult:
        player_id = player_id or generate_player_id()
        buzzer_sound_id = None if is_host else await self.next_available_buzzer_sound(code)
        now = self.clock()
        doc = {
            "room_code": code,
            "player_id": player_id,
            "name": name,
            "score": 0,
            "answer": None,
            "answered": False,
            "answer_time": None,
            "last_points": 0,
            "correct_count": 0,
            "is_host": is_host,
            "lockout_until": None,
            "last_seen": now,
            "buzzer_sound_id": buzzer_sound_id,
            "previous_winner": False,
            "joined_at": now,
        }
        try:
            await self.db.players.insert_one(doc)
            await self.feed.append(code, PLAYERS, "insert")
            player = fmap.player_from_db(doc)
        except Exception as exc:
            logger.exception("Error adding player %s to %s", name, code, extra={"room_code": code})
            return StoreResult.failure(exc)
        return StoreResult.success(player)

    async def update_player(
        self,
        code: str,
        key: str,
        updates: Dict[str, Any],
        *,
        inc: Optional[Dict[str, int]] = None,
        expect: Optional[Dict[str, Any]] = None,
    ) -> StoreResult:
        update_doc: Dict[str, Any] = {}
        db_updates = fmap.player_to_db(updates)
        if db_updates:
            update_doc["$set"] = db_updates
        db_inc = fmap.player_to_db(inc or {})
        if db_inc:
            update_doc["$inc"] = db_inc
        if not update_doc:
            return StoreResult.success(matched=True)
        try:
            fmap.check_player_updates({**(inc or {}), **updates})
        except InvalidUpdateError as exc:
            logger.warning("Rejected update to player %s in %s: %s", key, code, exc, extra={"room_code": code})
            return StoreResult.failure(exc)
        try:
            player_id = await self._resolve_player_id(code, key)
            if player_id is None:
                return StoreResult.success(matched=False)
            query = {"room_code": code, "player_id": player_id, **fmap.player_filter(expect or {})}
            after = await self.db.players.find_one_and_update(
                query,
                update_doc,
                return_document=ReturnDocument.AFTER,
            )
            if after is None:
                return StoreResult.success(matched=False)
            await self.feed.append(code, PLAYERS, "update")
            player = fmap.player_from_db(after)
        except Exception as exc:
            logger.exception("Error updating player %s in %s", key, code, extra={"room_code": code})
            return StoreResult.failure(exc)
        return StoreResult.success(player)

    async def update_players(self, code: str, updates: Dict[str, Any]) -> StoreResult:
        """Apply the same partial update to every player of a room."""
        db_updates = fmap.player_to_db(updates)
        if not db_updates:
            return StoreResult.success()
        try:
            fmap.check_player_updates(updates)
        except InvalidUpdateError as exc:
            logger.warning("Rejected update to players of %s: %s", code, exc, extra={"room_code": code})
            return StoreResult.failure(exc)
        try:
            await self.db.players.update_many({"room_code": code}, {"$set": db_updates})
            await self.feed.append(code, PLAYERS, "update")
        except Exception as exc:
            logger.exception("Error updating players of %s", code, extra={"room_code": code})
            return StoreResult.failure(exc)
        return StoreResult.success()

    async def remove_player(self, code: str, key: str) -> StoreResult:
        try:
            player_id = await self._resolve_player_id(code, key)
            if player_id is None:
                return StoreResult.success(matched=False)
            await self.db.players.delete_one({"room_code": code, "player_id": player_id})
            await self.feed.append(code, PLAYERS, "delete")
        except Exception as exc:
            logger.exception("Error removing player %s from %s", key, code, extra={"room_code": code})
            return StoreResult.failure(exc)
        return StoreResult.success()

    async def change_player_name(self, code: str, player_id: str, new_name: str) -> StoreResult:
        try:
            existing = await self.db.players.find_one({"room_code": code, "name": new_name})
            if existing and existing["player_id"] != player_id:
                return StoreResult.failure("Name already taken")
            after = await self.db.players.find_one_and_update(
                {"room_code": code, "player_id": player_id},
                {"$set": {"name": new_name}},
                return_document=ReturnDocument.AFTER,
            )
            if after is None:
                return StoreResult.success(matched=False)
            await self.feed.append(code, PLAYERS, "update")
            player = fmap.player_from_db(after)
        except Exception as exc:
            logger.exception("Error renaming player %s in %s", player_id, code, extra={"room_code": code})
            return StoreResult.failure(exc)
        return StoreResult.success(player)

    # ------------------------------------------------------------------
    # Songs and buzzer sounds
    # ------------------------------------------------------------------

    async def get_verified_songs(self) -> List[Song]:
        try:
            docs = await self.db.songs.find({"verified": True}).to_list(None)
        except Exception:
            logger.exception("Error getting songs")
            return []
        return [Song.model_validate(doc) for doc in docs]

    async def get_song(self, song_id: str) -> Optional[Song]:
        try:
            doc = await self.db.songs.find_one({"id": song_id})
        except Exception:
            logger.exception("Error getting song %s", song_id)
            return None
        return Song.model_validate(doc) if doc else None

    async def list_buzzer_sounds(self, *, active_only: bool = True) -> List[BuzzerSound]:
        query = {"is_active": True} if active_only else {}
        try:
            docs = await self.db.buzzer_sounds.find(query).to_list(None)
        except Exception:
            logger.exception("Error getting buzzer sounds")
            return []
        sounds = [BuzzerSound.model_validate(doc) for doc in docs]
        return sorted(sounds, key=lambda s: s.display_name.lower())

    async def get_buzzer_sound(self, sound_id: str) -> Optional[BuzzerSound]:
        try:
            doc = await self.db.buzzer_sounds.find_one({"id": sound_id})
        except Exception:
            logger.exception("Error getting buzzer sound %s", sound_id)
            return None
        return BuzzerSound.model_validate(doc) if doc else None

    async def insert_buzzer_sound(self, sound: BuzzerSound) -> StoreResult:
        try:
            await self.db.buzzer_sounds.insert_one(sound.model_dump())
        except Exception as exc:
            logger.exception("Error saving buzzer sound %s", sound.id)
            return StoreResult.failure(exc)
        return StoreResult.success(sound)

    async def update_buzzer_sound(self, sound_id: str, updates: Dict[str, Any]) -> StoreResult:
        allowed = {"displayName": "display_name", "isStarter": "is_starter", "isActive": "is_active"}
        db_updates = {allowed[k]: v for k, v in updates.items() if k in allowed}
        if not db_updates:
            return StoreResult.success()
        try:
            after = await self.db.buzzer_sounds.find_one_and_update(
                {"id": sound_id},
                {"$set": db_updates},
                return_document=ReturnDocument.AFTER,
            )
        except Exception as exc:
            logger.exception("Error updating buzzer sound %s", sound_id)
            return StoreResult.failure(exc)
        if after is None:
            return StoreResult.success(matched=False)
        return StoreResult.success(BuzzerSound.model_validate(after))

    async def delete_buzzer_sound_record(self, sound_id: str) -> StoreResult:
        try:
            await self.db.buzzer_sounds.delete_one({"id": sound_id})
        except Exception as exc:
            logger.exception("Error deleting buzzer sound %s", sound_id)
            return StoreResult.failure(exc)
        return StoreResult.success()

    async def next_available_buzzer_sound(self, code: str) -> Optional[str]:
        """First active starter sound nobody in the room holds, else the first starter."""
        try:
            starters = [s for s in await self.list_buzzer_sounds() if s.is_starter]
            if not starters:
                return None
            used = {
                doc.get("buzzer_sound_id")
                async for doc in self.db.players.find({"room_code": code})
                if doc.get("buzzer_sound_id")
            }
        except Exception:
            logger.exception("Error picking buzzer sound for %s", code, extra={"room_code": code})
            return None
        for sound in starters:
            if sound.id not in used:
                return sound.id
        return starters[0].id
