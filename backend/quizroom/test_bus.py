import asyncio
from unittest import IsolatedAsyncioTestCase

from .bus import NotificationBus
from .db import InMemoryDatabase
from .models import Status
from .store import RecordStore


class FakeClock:
    def __init__(self, now: int = 1_700_000_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now


class NotificationBusTests(IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.clock = FakeClock()
        self.store = RecordStore(InMemoryDatabase(), clock=self.clock, cache_ttl_ms=0)
        self.bus = NotificationBus(self.store, poll_interval=0.01)
        await self.store.create_room("ABCD", {"host": "Ann"})
        await self.store.add_player("ABCD", "Ann", is_host=True)

    async def asyncTearDown(self):
        await self.bus.close()

    async def test_subscribe_delivers_current_snapshot_immediately(self):
        seen = []
        await self.bus.subscribe_room("ABCD", seen.append)
        self.assertEqual(len(seen), 1)
        self.assertEqual(seen[0].code, "ABCD")
        self.assertEqual([p.name for p in seen[0].players], ["Ann"])

    async def test_changes_between_polls_are_coalesced(self):
        seen = []
        await self.bus.subscribe_room("ABCD", seen.append)
        await self.store.update_room("ABCD", {"currentQ": 0})
        await self.store.update_room("ABCD", {"currentQ": 1})
        await self.store.add_player("ABCD", "Bob")

        self.assertEqual(await self.bus.pump(), 1)
        self.assertEqual(len(seen), 2)
        self.assertEqual(seen[-1].current_q, 1)
        self.assertEqual(len(seen[-1].players), 2)

        self.assertEqual(await self.bus.pump(), 0)
        self.assertEqual(len(seen), 2)

    async def test_field_subscription_ignores_player_changes(self):
        seen = []
        await self.bus.subscribe_room_field("ABCD", "status", seen.append)
        await self.store.add_player("ABCD", "Bob")
        await self.bus.pump()
        await self.store.update_room("ABCD", {"status": Status.PLAYING})
        await self.bus.pump()
        self.assertEqual(seen, [Status.LOBBY, Status.PLAYING])

    async def test_player_subscription_ignores_room_changes(self):
        seen = []
        await self.bus.subscribe_players("ABCD", seen.append)
        await self.store.update_room("ABCD", {"currentQ": 3})
        await self.bus.pump()
        await self.store.add_player("ABCD", "Bob")
        await self.bus.pump()
        self.assertEqual([[p.name for p in players] for players in seen], [["Ann"], ["Ann", "Bob"]])

    async def test_deleted_room_delivers_none(self):
        seen = []
        await self.bus.subscribe_room("ABCD", seen.append)
        await self.store.delete_room("ABCD")
        await self.bus.pump()
        self.assertIsNone(seen[-1])

    async def test_unsubscribed_handle_gets_nothing(self):
        seen = []
        sub = await self.bus.subscribe_room("ABCD", seen.append)
        self.bus.unsubscribe(sub)
        await self.store.update_room("ABCD", {"currentQ": 0})
        await self.bus.pump()
        self.assertEqual(len(seen), 1)
        self.assertEqual(self.bus.subscriptions, [])

    async def test_failing_callback_does_not_break_other_subscribers(self):
        seen = []

        def broken(_room):
            raise RuntimeError("boom")

        await self.bus.subscribe_room("ABCD", seen.append)
        await self.bus.subscribe_room("ABCD", broken)
        await self.store.update_room("ABCD", {"currentQ": 0})
        await self.bus.pump()
        self.assertEqual(len(seen), 2)

    async def test_async_callbacks_are_awaited(self):
        seen = []

        async def on_room(room):
            seen.append(room.current_q)

        await self.bus.subscribe_room("ABCD", on_room)
        await self.store.update_room("ABCD", {"currentQ": 2})
        await self.bus.pump()
        self.assertEqual(seen, [-1, 2])

    async def test_malformed_room_row_still_delivers(self):
        seen = []
        await self.bus.subscribe_room("ABCD", seen.append)
        # a co-client wrote the row directly, bypassing the adapter's checks
        await self.store.db.rooms.update_one({"code": "ABCD"}, {"$set": {"status": "bogus", "current_q": 2}})
        await self.store.feed.append("ABCD", "rooms", "update")

        self.assertEqual(await self.bus.pump(), 1)
        self.assertEqual((seen[-1].status, seen[-1].current_q), (Status.LOBBY, 2))
        self.assertEqual(await self.bus.pump(), 0)


class PollingLoopTests(IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.store = RecordStore(InMemoryDatabase(), cache_ttl_ms=0)
        self.bus = NotificationBus(self.store, poll_interval=0.01)
        await self.store.create_room("ABCD", {"host": "Ann"})
        self.bus.start()

    async def asyncTearDown(self):
        await self.bus.close()

    async def settle(self):
        await asyncio.sleep(0.1)

    async def test_delivers_without_manual_pumping(self):
        seen = []
        await self.bus.subscribe_room("ABCD", lambda room: seen.append(room.host))
        await self.store.update_room("ABCD", {"host": "Bob"})
        await self.settle()
        self.assertEqual(seen, ["Ann", "Bob"])

    async def test_polling_survives_unsubscribing_everything(self):
        first, second = [], []
        sub = await self.bus.subscribe_room("ABCD", lambda room: first.append(room.host))
        self.bus.unsubscribe(sub)
        await self.bus.subscribe_room("ABCD", lambda room: second.append(room.host))

        await self.store.update_room("ABCD", {"host": "Bob"})
        await self.settle()
        self.assertEqual(first, ["Ann"])
        self.assertEqual(second, ["Ann", "Bob"])

    async def test_screen_change_inside_a_callback_keeps_polling(self):
        seen = []

        async def on_lobby(room):
            if room.status == Status.PLAYING:
                self.bus.unsubscribe(lobby)
                await self.bus.subscribe_room("ABCD", lambda r: seen.append(r.current_q))

        lobby = await self.bus.subscribe_room("ABCD", on_lobby)
        await self.store.update_room("ABCD", {"status": Status.PLAYING, "currentQ": 0})
        await self.settle()
        await self.store.update_room("ABCD", {"currentQ": 1})
        await self.settle()
        self.assertEqual(seen, [0, 1])

    async def test_close_stops_the_loop(self):
        seen = []
        await self.bus.subscribe_room("ABCD", lambda room: seen.append(room.host))
        await self.bus.close()
        await self.store.update_room("ABCD", {"host": "Bob"})
        await self.settle()
        self.assertEqual(seen, ["Ann"])
