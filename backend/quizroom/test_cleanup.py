from unittest import IsolatedAsyncioTestCase, TestCase

from .cleanup import HOUR_MS, cleanup_reason, cleanup_rooms
from .db import InMemoryDatabase
from .models import Status
from .store import RecordStore

NOW = 1_700_000_000_000


class CleanupReasonTests(TestCase):
    def test_reasons(self):
        self.assertEqual(cleanup_reason(NOW - 25 * HOUR_MS, Status.LOBBY, 3, NOW), "old")
        self.assertEqual(cleanup_reason(NOW, Status.PLAYING, 0, NOW), "empty")
        self.assertEqual(cleanup_reason(NOW - 2 * HOUR_MS, Status.FINISHED, 2, NOW), "finished")
        self.assertIsNone(cleanup_reason(NOW - 10 * 60 * 1000, Status.FINISHED, 2, NOW))
        self.assertIsNone(cleanup_reason(NOW - 2 * HOUR_MS, Status.PLAYING, 2, NOW))


class CleanupRoomsTests(IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.clock_now = NOW - 30 * HOUR_MS
        self.store = RecordStore(InMemoryDatabase(), clock=lambda: self.clock_now)

    async def _room(self, code: str, age_hours: float, status: Status, players: int):
        self.clock_now = NOW - int(age_hours * HOUR_MS)
        await self.store.create_room(code, {"status": status})
        for i in range(players):
            await self.store.add_player(code, f"P{i}")

    async def test_removes_stale_rooms_only(self):
        await self._room("OLD1", 30, Status.LOBBY, 2)
        await self._room("EMPT", 0.1, Status.LOBBY, 0)
        await self._room("DONE", 2, Status.FINISHED, 2)
        await self._room("LIVE", 2, Status.PLAYING, 2)
        await self._room("NEWF", 0.5, Status.FINISHED, 1)

        deleted = await cleanup_rooms(self.store, now=NOW)

        self.assertEqual(sorted(deleted), ["DONE", "EMPT", "OLD1"])
        self.assertIsNotNone(await self.store.get_room("LIVE", fresh=True))
        self.assertIsNotNone(await self.store.get_room("NEWF", fresh=True))
        self.assertEqual(await self.store.get_players("OLD1"), [])

    async def test_history_of_deleted_rooms_is_pruned_on_a_later_run(self):
        await self._room("EMPT", 0.1, Status.LOBBY, 0)
        await self._room("LIVE", 2, Status.PLAYING, 2)
        self.clock_now = NOW
        await cleanup_rooms(self.store, now=NOW)
        self.assertEqual((await self.store.feed.list("EMPT"))[-1]["op"], "delete")

        later = NOW + 2 * 60 * 1000
        self.clock_now = later
        await cleanup_rooms(self.store, now=later)
        self.assertEqual(await self.store.feed.list("EMPT"), [])
        self.assertEqual(await self.store.feed.latest_seq("EMPT"), 0)
        self.assertNotEqual(await self.store.feed.list("LIVE"), [])
