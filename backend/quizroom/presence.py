"""Heartbeats, the host's liveness sweep, and host self-healing."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from .db import settings
from .models import Player, Room, SessionIdentity
from .scheduler import Scheduler
from .store import RecordStore
from .utils import Clock, now_ms

logger = logging.getLogger(__name__)


async def promote(store: RecordStore, code: str, new_host: Player, old_hosts: List[Player]) -> bool:
    """Make ``new_host`` the host: flag first, then clear others, then the room's soft pointer."""
    result = await store.update_player(code, new_host.player_id, {"isHost": True})
    if not result.ok or not result.matched:
        return False
    for old in old_hosts:
        if old.player_id != new_host.player_id:
            await store.update_player(code, old.player_id, {"isHost": False})
    await store.update_room(code, {"host": new_host.name})
    logger.info("Host role moved to %s", new_host.name, extra={"room_code": code, "player_id": new_host.player_id})
    return True


class PresenceManager:
    def __init__(
        self,
        store: RecordStore,
        session: SessionIdentity,
        scheduler: Scheduler,
        *,
        clock: Clock = now_ms,
        heartbeat_interval: Optional[float] = None,
        sweep_interval: Optional[float] = None,
        grace: Optional[float] = None,
        evict_after: Optional[int] = None,
        host_silence: Optional[float] = None,
    ):
        self.store = store
        self.session = session
        self.scheduler = scheduler
        self.clock = clock
        self.heartbeat_interval = heartbeat_interval or settings.HEARTBEAT_INTERVAL
        self.sweep_interval = sweep_interval or settings.SWEEP_INTERVAL
        self.grace = settings.HEARTBEAT_GRACE if grace is None else grace
        self.evict_after = evict_after or settings.EVICT_AFTER_MISSES
        self.host_silence = host_silence or settings.HOST_SILENCE_SECONDS
        # consecutive missed sweeps per player; local to this client, never persisted
        self.misses: Dict[str, int] = {}

    @property
    def code(self) -> str:
        return self.session.game_code

    @property
    def timeout_ms(self) -> float:
        return (self.heartbeat_interval + self.grace) * 1000

    def start(self) -> None:
        self.scheduler.call_every("heartbeat", self.heartbeat_interval, self.heartbeat)
        self.scheduler.call_every("liveness_sweep", self.sweep_interval, self.sweep)

    def stop(self) -> None:
        self.scheduler.cancel("heartbeat")
        self.scheduler.cancel("liveness_sweep")

    async def heartbeat(self) -> None:
        result = await self.store.update_player(self.code, self.session.player_id, {"lastSeen": self.clock()})
        if not result.ok:
            logger.warning(
                "Heartbeat failed, retrying next tick: %s",
                result.error,
                extra={"room_code": self.code, "player_id": self.session.player_id},
            )
            return
        await self.heal_host()

    async def sweep(self, now: Optional[int] = None) -> List[str]:
        """Host only: evict players that missed ``evict_after`` consecutive sweeps."""

        room = await self.store.get_room(self.code, fresh=True)
        if room is None:
            return []
        me = room.player(self.session.player_id)
        if me is None or not me.is_host:
            self.misses.clear()
            return []

        now = now if now is not None else self.clock()
        present = {p.player_id for p in room.players}
        for gone in set(self.misses) - present:
            del self.misses[gone]

        evicted: List[str] = []
        for p in room.players:
            if p.player_id == me.player_id:
                continue
            if p.last_seen is not None and now - p.last_seen <= self.timeout_ms:
                self.misses.pop(p.player_id, None)
                continue
            self.misses[p.player_id] = self.misses.get(p.player_id, 0) + 1
            if self.misses[p.player_id] < self.evict_after:
                continue
            result = await self.store.remove_player(self.code, p.player_id)
            if result.ok:
                del self.misses[p.player_id]
                evicted.append(p.player_id)
                logger.info(
                    "Evicted %s after %s missed sweeps",
                    p.name,
                    self.evict_after,
                    extra={"room_code": self.code, "player_id": p.player_id, "event": "evict"},
                )

        if evicted:
            await self._after_eviction(room, evicted)
        return evicted

    async def _after_eviction(self, room: Room, evicted: List[str]) -> None:
        remaining = [p for p in room.players if p.player_id not in evicted]
        if not remaining:
            await self.store.delete_room(self.code)
            return
        if any(p.is_host for p in remaining):
            return
        await promote(self.store, self.code, remaining[0], [])

    async def heal_host(self, room: Optional[Room] = None, now: Optional[int] = None) -> bool:
        """Repair the host role when it is missing, silent, or duplicated.

        Every client runs the same deterministic rule on its own heartbeat, and
        only the client the rule picks writes anything, so all of them
        converge on exactly one host.
        """

        room = room or await self.store.get_room(self.code, fresh=True)
        if room is None or not room.players:
            return False
        now = now if now is not None else self.clock()
        me = room.player(self.session.player_id)
        if me is None:
            return False

        silence_ms = self.host_silence * 1000
        live = [p for p in room.players if p.last_seen is not None and now - p.last_seen <= silence_ms]
        hosts = room.hosts()
        live_hosts = [h for h in hosts if h in live]

        if live_hosts:
            keeper = live_hosts[0]
            if me.is_host and me.player_id != keeper.player_id:
                await self.store.update_player(self.code, me.player_id, {"isHost": False})
                self.session.is_host = False
                logger.info("Stepping down as duplicate host", extra={"room_code": self.code})
                return True
            return False

        candidates = live or room.players
        if candidates[0].player_id != me.player_id:
            return False
        if await promote(self.store, self.code, me, hosts):
            self.session.is_host = True
            return True
        return False
