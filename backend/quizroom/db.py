from __future__ import annotations

import asyncio
import copy
from functools import lru_cache
from typing import Any, Dict, Iterator, List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict
from pymongo import ReturnDocument


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    ADMIN_KEY: str = "change-me"
    CORS_ORIGINS: str = "http://localhost:5173,http://localhost:8080"
    CORS_ORIGIN_REGEX: Optional[str] = None
    AZURE_STORAGE_CONNECTION_STRING: Optional[str] = None
    AZURE_STORAGE_CONTAINER: str = "buzzer-sounds"

    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    # Record store / notification bus
    ROOM_CACHE_TTL_MS: int = 500
    BUS_POLL_INTERVAL: float = 0.25

    # Presence
    HEARTBEAT_INTERVAL: float = 5
    SWEEP_INTERVAL: float = 10
    HEARTBEAT_GRACE: float = 5
    EVICT_AFTER_MISSES: int = 2
    HOST_SILENCE_SECONDS: float = 30

    # Progression
    NEXT_COUNTDOWN_SECONDS: int = 5
    SCOREBOARD_COUNTDOWN_SECONDS: int = 3
    DEFAULT_QUESTION_SECONDS: int = 30
    HOST_MODE_QUESTION_SECONDS: int = 60
    DEFAULT_POINTS_SCALE: List[int] = [1000, 800, 600, 400]
    DEFAULT_NUM_QUESTIONS: int = 10

    # Buzzer mode
    BUZZER_CORRECT_POINTS: int = 1000
    BUZZER_WRONG_PENALTY: int = 250
    BUZZER_LOCKOUT_SECONDS: int = 5

    # Identity
    ROOM_CODE_LENGTH: int = 4
    MAX_ROOM_CODE_ATTEMPTS: int = 10
    MAX_NAME_LENGTH: int = 20

    # Buzzer sound uploads
    MAX_SOUND_BYTES: int = 512000
    SOUND_CONTENT_TYPES: List[str] = ["audio/mpeg", "audio/mp3"]

    # Garbage collection
    ROOM_MAX_AGE_HOURS: float = 24
    FINISHED_ROOM_MAX_AGE_HOURS: float = 1
    CHANGE_LOG_RETENTION_SECONDS: float = 60


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()


_MISSING = object()


def _get_path(doc: Dict[str, Any], path: str) -> Any:
    current: Any = doc
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current


def _set_path(doc: Dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    current = doc
    for part in parts[:-1]:
        nxt = current.get(part)
        if not isinstance(nxt, dict):
            nxt = {}
            current[part] = nxt
        current = nxt
    current[parts[-1]] = value


class InMemoryCursor:
    def __init__(self, collection: "InMemoryCollection", query: Dict[str, Any]):
        self._collection = collection
        self._query = query or {}
        self._sort_key: Optional[str] = None
        self._sort_direction: int = 1
        self._limit: Optional[int] = None
        self._materialised: Optional[Iterator[Dict[str, Any]]] = None

    def sort(self, key: str, direction: int):
        self._sort_key = key
        self._sort_direction = direction
        return self

    def limit(self, limit: int):
        self._limit = limit
        return self

    async def _ensure_materialised(self):
        if self._materialised is not None:
            return

        docs = await self._collection._find_all(self._query)

        if self._sort_key is not None:
            reverse = self._sort_direction < 0
            # None sorts first regardless of the value type of the key
            docs.sort(
                key=lambda d: (d.get(self._sort_key) is not None, d.get(self._sort_key) or 0),
                reverse=reverse,
            )

        if self._limit is not None:
            docs = docs[: self._limit]

        self._materialised = iter(docs)

    async def to_list(self, length: Optional[int] = None) -> List[Dict[str, Any]]:
        await self._ensure_materialised()
        assert self._materialised is not None
        docs = list(self._materialised)
        return docs if length is None else docs[:length]

    def __aiter__(self):
        return self

    async def __anext__(self):
        await self._ensure_materialised()
        assert self._materialised is not None
        try:
            return next(self._materialised)
        except StopIteration as exc:
            raise StopAsyncIteration from exc


class InMemoryCollection:
    def __init__(self):
        self._docs: List[Dict[str, Any]] = []
        self._lock = asyncio.Lock()

    async def _find_all(self, query: Dict[str, Any]) -> List[Dict[str, Any]]:
        async with self._lock:
            return [copy.deepcopy(doc) for doc in self._docs if self._matches(doc, query)]

    async def find_one(self, query: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        async with self._lock:
            for doc in self._docs:
                if self._matches(doc, query):
                    return copy.deepcopy(doc)
        return None

    def find(self, query: Dict[str, Any]):
        return InMemoryCursor(self, query)

    async def count_documents(self, query: Dict[str, Any]) -> int:
        async with self._lock:
            return sum(1 for doc in self._docs if self._matches(doc, query))

    async def update_one(self, query: Dict[str, Any], update: Dict[str, Any], upsert: bool = False):
        async with self._lock:
            for idx, doc in enumerate(self._docs):
                if self._matches(doc, query):
                    updated = self._apply_update(copy.deepcopy(doc), update)
                    self._docs[idx] = updated
                    return

            if upsert:
                new_doc = copy.deepcopy(query)
                new_doc = self._apply_update(new_doc, update)
                self._docs.append(new_doc)

    async def update_many(self, query: Dict[str, Any], update: Dict[str, Any]):
        async with self._lock:
            for idx, doc in enumerate(self._docs):
                if self._matches(doc, query):
                    self._docs[idx] = self._apply_update(copy.deepcopy(doc), update)

    async def insert_one(self, document: Dict[str, Any]):
        async with self._lock:
            self._docs.append(copy.deepcopy(document))

    async def delete_one(self, query: Dict[str, Any]):
        async with self._lock:
            for idx, doc in enumerate(self._docs):
                if self._matches(doc, query):
                    del self._docs[idx]
                    return

    async def delete_many(self, query: Dict[str, Any]):
        async with self._lock:
            self._docs = [doc for doc in self._docs if not self._matches(doc, query)]

    async def find_one_and_update(
        self,
        query: Dict[str, Any],
        update: Dict[str, Any],
        *,
        upsert: bool = False,
        return_document: bool = ReturnDocument.BEFORE,
    ) -> Optional[Dict[str, Any]]:
        async with self._lock:
            for idx, doc in enumerate(self._docs):
                if self._matches(doc, query):
                    original = copy.deepcopy(doc)
                    updated = self._apply_update(copy.deepcopy(doc), update)
                    self._docs[idx] = updated
                    return copy.deepcopy(updated if return_document == ReturnDocument.AFTER else original)

            if upsert:
                new_doc = {k: v for k, v in copy.deepcopy(query).items() if not isinstance(v, dict)}
                new_doc = self._apply_update(new_doc, update)
                self._docs.append(new_doc)
                if return_document == ReturnDocument.AFTER:
                    return copy.deepcopy(new_doc)
                return None

        return None

    def _apply_update(self, doc: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
        for op, payload in update.items():
            if op == "$set":
                for key, value in payload.items():
                    _set_path(doc, key, copy.deepcopy(value))
            elif op == "$inc":
                for key, value in payload.items():
                    current = _get_path(doc, key)
                    if current is _MISSING or current is None:
                        current = 0
                    _set_path(doc, key, current + value)
            else:  # pragma: no cover - only the above operators are used today
                raise ValueError(f"Unsupported update operator: {op}")
        return doc

    def _matches(self, doc: Dict[str, Any], query: Dict[str, Any]) -> bool:
        for key, expected in (query or {}).items():
            actual = _get_path(doc, key)
            if actual is _MISSING:
                actual = None
            if isinstance(expected, dict):
                for operator, operand in expected.items():
                    if operator == "$gt":
                        if actual is None or actual <= operand:
                            return False
                    elif operator == "$lt":
                        if actual is None or actual >= operand:
                            return False
                    elif operator == "$ne":
                        if actual == operand:
                            return False
                    elif operator == "$in":
                        if actual not in operand:
                            return False
                    else:  # pragma: no cover - extend as new operators are required
                        raise ValueError(f"Unsupported query operator(s): {expected}")
            else:
                if actual != expected:
                    return False
        return True


class InMemoryDatabase:
    def __init__(self):
        self.rooms = InMemoryCollection()
        self.players = InMemoryCollection()
        self.songs = InMemoryCollection()
        self.buzzer_sounds = InMemoryCollection()
        self.room_change_counters = InMemoryCollection()
        self.room_changes = InMemoryCollection()


db: Any = InMemoryDatabase()
