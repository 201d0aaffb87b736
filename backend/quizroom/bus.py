"""Change notification bus.

Delivery is at-least-once and coalesced by refetch: when any matching row
change shows up in a room's change feed, the subscriber re-reads the whole
room (or player set) and receives that snapshot, never a diff. Several
changes between two polls produce one callback. Every subscription gets
the current snapshot once as soon as it is registered.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from .db import settings
from .events import PLAYERS, ROOMS
from .store import RecordStore

logger = logging.getLogger(__name__)

Callback = Callable[[Any], Union[None, Awaitable[None]]]

KIND_ROOM = "room"
KIND_FIELD = "field"
KIND_PLAYERS = "players"

_ids = itertools.count(1)


@dataclass(eq=False)
class Subscription:
    code: str
    kind: str
    callback: Callback
    field_name: Optional[str] = None
    after: int = 0
    active: bool = True
    id: int = field(default_factory=lambda: next(_ids))

    def wants(self, change: Dict[str, Any]) -> bool:
        table = change.get("table")
        if self.kind == KIND_ROOM:
            return table in (ROOMS, PLAYERS)
        if self.kind == KIND_FIELD:
            return table == ROOMS
        return table == PLAYERS


async def _invoke(callback: Callback, value: Any) -> None:
    result = callback(value)
    if inspect.isawaitable(result):
        await result


class NotificationBus:
    def __init__(self, store: RecordStore, *, poll_interval: Optional[float] = None):
        self.store = store
        self.feed = store.feed
        self.poll_interval = settings.BUS_POLL_INTERVAL if poll_interval is None else poll_interval
        self._subs: Dict[int, Subscription] = {}
        self._task: Optional[asyncio.Task] = None

    @property
    def subscriptions(self) -> List[Subscription]:
        return list(self._subs.values())

    async def subscribe_room(self, code: str, callback: Callback) -> Subscription:
        return await self._register(Subscription(code=code, kind=KIND_ROOM, callback=callback))

    async def subscribe_room_field(self, code: str, field_name: str, callback: Callback) -> Subscription:
        """``callback`` receives the value of one Room attribute, or ``None`` once the room is gone."""
        return await self._register(Subscription(code=code, kind=KIND_FIELD, callback=callback, field_name=field_name))

    async def subscribe_players(self, code: str, callback: Callback) -> Subscription:
        return await self._register(Subscription(code=code, kind=KIND_PLAYERS, callback=callback))

    def unsubscribe(self, handle: Optional[Subscription]) -> None:
        if handle is None:
            return
        handle.active = False
        self._subs.pop(handle.id, None)

    async def _register(self, sub: Subscription) -> Subscription:
        sub.after = await self.feed.latest_seq(sub.code)
        self._subs[sub.id] = sub
        await self._deliver(sub, newer_than=None)
        return sub

    async def _deliver(self, sub: Subscription, newer_than: Optional[int]) -> bool:
        """Refetch and hand the snapshot to ``sub``; False if the read failed."""

        if sub.kind == KIND_PLAYERS:
            result = await self.store.fetch_players(sub.code)
            if not result.ok:
                return False
            value = result.data
        else:
            result = await self.store.fetch_room(sub.code, newer_than=newer_than)
            if not result.ok:
                return False
            room = result.data
            if sub.kind == KIND_FIELD:
                value = getattr(room, sub.field_name, None) if room is not None else None
            else:
                value = room

        if not sub.active:
            return True
        try:
            await _invoke(sub.callback, value)
        except Exception:
            logger.exception("Subscriber %s for room %s failed", sub.id, sub.code, extra={"room_code": sub.code})
        return True

    async def pump(self) -> int:
        """Process pending changes for every subscription once; returns deliveries made."""

        delivered = 0
        for sub in list(self._subs.values()):
            if not sub.active:
                continue
            try:
                changes = await self.feed.list(sub.code, after=sub.after)
            except Exception:
                logger.exception("Error polling changes for %s", sub.code, extra={"room_code": sub.code})
                continue
            if not changes:
                continue
            relevant = [c for c in changes if sub.wants(c)]
            if relevant:
                newest = max(c.get("timestamp") or 0 for c in relevant)
                if not await self._deliver(sub, newer_than=newest):
                    # leave ``after`` where it was so the next poll retries
                    continue
                delivered += 1
            sub.after = changes[-1]["seq"]
        return delivered

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def close(self) -> None:
        for sub in list(self._subs.values()):
            sub.active = False
        self._subs.clear()
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _run(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.poll_interval)
                await self.pump()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Error in notification bus loop")
