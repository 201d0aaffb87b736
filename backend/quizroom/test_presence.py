import asyncio
from unittest import IsolatedAsyncioTestCase

from .db import InMemoryDatabase
from .models import SessionIdentity
from .presence import PresenceManager
from .scheduler import Scheduler
from .store import RecordStore

START = 1_700_000_000_000


class FakeClock:
    def __init__(self, now: int = START):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class PresenceTests(IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.clock = FakeClock()
        self.store = RecordStore(InMemoryDatabase(), clock=self.clock, cache_ttl_ms=0)
        await self.store.create_room("ABCD", {"host": "Ann"})
        self.players = {}
        for name in ("Ann", "Bob", "Cat"):
            self.clock.advance(1)
            self.players[name] = (await self.store.add_player("ABCD", name, is_host=name == "Ann")).data
        self.scheduler = Scheduler()

    async def asyncTearDown(self):
        self.scheduler.cancel_all()

    def manager(self, name: str) -> PresenceManager:
        player = self.players[name]
        session = SessionIdentity(
            game_code="ABCD", player_name=name, player_id=player.player_id, is_host=player.is_host
        )
        return PresenceManager(
            self.store,
            session,
            self.scheduler,
            clock=self.clock,
            heartbeat_interval=5,
            sweep_interval=10,
            grace=5,
            evict_after=2,
            host_silence=30,
        )

    async def touch(self, *names: str) -> None:
        for name in names:
            await self.store.update_player("ABCD", self.players[name].player_id, {"lastSeen": self.clock()})

    async def names(self):
        return [p.name for p in await self.store.get_players("ABCD")]

    async def test_evicts_only_after_two_missed_sweeps(self):
        host = self.manager("Ann")
        self.clock.advance(20_000)
        await self.touch("Ann", "Cat")

        self.assertEqual(await host.sweep(), [])
        self.assertEqual(await self.names(), ["Ann", "Bob", "Cat"])
        self.assertEqual(host.misses, {self.players["Bob"].player_id: 1})

        self.clock.advance(10_000)
        await self.touch("Ann", "Cat")
        self.assertEqual(await host.sweep(), [self.players["Bob"].player_id])
        self.assertEqual(await self.names(), ["Ann", "Cat"])
        self.assertEqual(host.misses, {})

    async def test_a_single_miss_never_evicts(self):
        host = self.manager("Ann")
        self.clock.advance(20_000)
        await self.touch("Ann", "Cat")
        await host.sweep()

        # Bob's heartbeat lands before the next sweep
        await self.touch("Bob")
        self.clock.advance(5_000)
        self.assertEqual(await host.sweep(), [])
        self.assertEqual(await self.names(), ["Ann", "Bob", "Cat"])
        self.assertNotIn(self.players["Bob"].player_id, host.misses)

    async def test_heartbeat_within_grace_counts_as_alive(self):
        host = self.manager("Ann")
        self.clock.advance(9_000)
        for _ in range(3):
            self.assertEqual(await host.sweep(), [])

    async def test_only_the_host_sweeps(self):
        bob = self.manager("Bob")
        self.clock.advance(60_000)
        for _ in range(3):
            self.assertEqual(await bob.sweep(), [])
        self.assertEqual(len(await self.names()), 3)

    async def test_heartbeat_writes_last_seen(self):
        bob = self.manager("Bob")
        self.clock.advance(3_000)
        await bob.heartbeat()
        room = await self.store.get_room("ABCD", fresh=True)
        self.assertEqual(room.player(self.players["Bob"].player_id).last_seen, self.clock())

    async def test_clients_converge_on_one_host_when_none_is_set(self):
        await self.store.update_players("ABCD", {"isHost": False})
        managers = [self.manager(name) for name in ("Cat", "Bob", "Ann")]
        await asyncio.gather(*(m.heal_host() for m in managers))
        await asyncio.gather(*(m.heal_host() for m in managers))

        room = await self.store.get_room("ABCD", fresh=True)
        self.assertEqual([p.name for p in room.hosts()], ["Ann"])
        self.assertEqual(room.host, "Ann")
        self.assertEqual([m.session.is_host for m in managers], [False, False, True])

    async def test_silent_host_is_replaced(self):
        self.clock.advance(60_000)
        await self.touch("Bob", "Cat")
        bob = self.manager("Bob")
        cat = self.manager("Cat")

        self.assertFalse(await cat.heal_host())
        self.assertTrue(await bob.heal_host())

        room = await self.store.get_room("ABCD", fresh=True)
        self.assertEqual([p.name for p in room.hosts()], ["Bob"])
        self.assertEqual(room.host, "Bob")
        self.assertTrue(bob.session.is_host)

    async def test_duplicate_host_steps_down(self):
        await self.store.update_player("ABCD", self.players["Bob"].player_id, {"isHost": True})
        bob = self.manager("Bob")
        bob.session.is_host = True
        ann = self.manager("Ann")

        self.assertFalse(await ann.heal_host())
        self.assertTrue(await bob.heal_host())

        room = await self.store.get_room("ABCD", fresh=True)
        self.assertEqual([p.name for p in room.hosts()], ["Ann"])
        self.assertFalse(bob.session.is_host)

    async def test_evicting_the_last_guest_keeps_the_host(self):
        await self.store.remove_player("ABCD", self.players["Cat"].player_id)
        host = self.manager("Ann")
        self.clock.advance(20_000)
        await self.touch("Ann")
        await host.sweep()
        self.clock.advance(10_000)
        await self.touch("Ann")
        await host.sweep()

        room = await self.store.get_room("ABCD", fresh=True)
        self.assertIsNotNone(room)
        self.assertEqual([p.name for p in room.players], ["Ann"])
        self.assertTrue(room.players[0].is_host)
