from unittest import IsolatedAsyncioTestCase, TestCase

from .bus import NotificationBus
from .db import InMemoryDatabase
from .models import Mode, Player, Question, Room, SessionIdentity, Status
from .reconcile import ENTRY, LOBBY, QUIZ
from .scoreboard import (
    ResultsController,
    ScoreboardController,
    continue_quiz,
    leaderboard,
    play_again,
    position_text,
)
from .store import RecordStore

START = 1_700_000_000_000


class FakeClock:
    def __init__(self, now: int = START):
        self.now = now

    def __call__(self) -> int:
        return self.now


class LeaderboardTests(TestCase):
    def _room(self, mode: Mode) -> Room:
        return Room(
            code="A",
            mode=mode,
            players=[
                Player(player_id="h", name="Host", is_host=True, score=0),
                Player(player_id="b", name="bob", score=500),
                Player(player_id="a", name="Amy", score=500),
                Player(player_id="c", name="Cy", score=900),
            ],
        )

    def test_sorted_by_score_then_name(self):
        standings = leaderboard(self._room(Mode.EVERYBODY))
        self.assertEqual([s.name for s in standings], ["Cy", "Amy", "bob", "Host"])
        self.assertEqual([s.rank for s in standings], [1, 2, 3, 4])

    def test_buzzer_host_is_left_out(self):
        self.assertEqual([s.name for s in leaderboard(self._room(Mode.BUZZER))], ["Cy", "Amy", "bob"])

    def test_position_text(self):
        self.assertEqual(position_text(1), "You're in 1st place!")
        self.assertEqual(position_text(2), "You're in 2nd place!")
        self.assertEqual(position_text(11), "You're in 11th place")
        self.assertEqual(position_text(22), "You're in 22nd place")


class ScoreboardFlowTests(IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.clock = FakeClock()
        self.store = RecordStore(InMemoryDatabase(), clock=self.clock, cache_ttl_ms=0)
        self.bus = NotificationBus(self.store)
        self.code = "SCOR"
        await self.store.create_room(
            self.code,
            {
                "host": "Ann",
                "status": Status.SCOREBOARD,
                "currentQ": 3,
                "questions": [Question(text=f"Q{i}", options=["a", "b"], correct=0) for i in range(10)],
            },
        )
        self.sessions = {}
        for name in ("Ann", "Bob"):
            player = (await self.store.add_player(self.code, name, is_host=name == "Ann")).data
            self.sessions[name] = SessionIdentity(
                game_code=self.code, player_name=name, player_id=player.player_id, is_host=name == "Ann"
            )
        await self.store.update_player(
            self.code, self.sessions["Bob"].player_id, {"lockoutUntil": START + 60_000}, inc={"score": 700}
        )
        self.navigations = []
        self.controllers = []

    async def asyncTearDown(self):
        for ctrl in self.controllers:
            await ctrl.teardown()
        await self.bus.close()

    async def open(self, cls, name: str):
        ctrl = cls(self.sessions[name], self.store, self.bus, navigate=self.navigations.append, clock=self.clock)
        ctrl.presence_enabled = False
        self.controllers.append(ctrl)
        await ctrl.start()
        return ctrl

    async def test_standings_on_the_scoreboard(self):
        bob = await self.open(ScoreboardController, "Bob")
        self.assertEqual([s.name for s in bob.top_three], ["Bob", "Ann"])
        self.assertEqual(bob.my_standing.rank, 1)

    async def test_continue_clears_lockouts_and_resumes_play(self):
        room = await self.store.get_room(self.code, fresh=True)
        result = await continue_quiz(self.store, room, START + 1_000)
        self.assertTrue(result.matched)

        room = await self.store.get_room(self.code, fresh=True)
        self.assertEqual((room.status, room.current_q), (Status.PLAYING, 3))
        self.assertEqual(room.question_start_time, START + 1_000)
        self.assertTrue(all(p.lockout_until is None for p in room.players))

        stale = await continue_quiz(self.store, room.model_copy(update={"status": Status.SCOREBOARD}), START)
        self.assertFalse(stale.matched)

    async def test_countdown_expiry_is_driven_by_the_host(self):
        ann = await self.open(ScoreboardController, "Ann")
        bob = await self.open(ScoreboardController, "Bob")
        await bob.start_countdown()
        await self.bus.pump()
        self.assertIsNotNone(ann.countdown)
        self.assertEqual(ann.countdown.started_by, "Bob")

        ends_at = bob.countdown.ends_at
        self.assertFalse((await bob.on_countdown_expired(ends_at)).matched)
        self.assertTrue((await ann.on_countdown_expired(ends_at)).matched)

        await self.bus.pump()
        self.assertEqual(self.navigations, [QUIZ, QUIZ])

    async def test_cancelled_countdown_does_not_advance(self):
        ann = await self.open(ScoreboardController, "Ann")
        await ann.start_countdown()
        await self.bus.pump()
        ends_at = ann.countdown.ends_at
        await ann.cancel_countdown()
        await self.bus.pump()
        self.assertIsNone(ann.countdown)
        self.assertFalse(ann.scheduler.is_active("scoreboard_countdown"))
        self.assertFalse((await ann.on_countdown_expired(ends_at)).matched)
        self.assertEqual((await self.store.get_room(self.code, fresh=True)).status, Status.SCOREBOARD)

    async def test_play_again_round_trip(self):
        await self.store.update_room(self.code, {"status": Status.FINISHED})
        ann = await self.open(ResultsController, "Ann")
        bob = await self.open(ResultsController, "Bob")
        self.assertEqual(ann.total_questions, 10)

        first = await bob.play_again()
        self.assertTrue(first.matched)
        room = await self.store.get_room(self.code, fresh=True)
        self.assertEqual((room.status, room.current_q, room.questions), (Status.LOBBY, -1, []))
        self.assertTrue(all(p.score == 0 and p.lockout_until is None for p in room.players))

        # the second click finds the room already reset and just follows it
        second = await ann.play_again()
        self.assertFalse(second.matched)
        self.assertEqual(self.navigations, [LOBBY])

        await self.bus.pump()
        self.assertEqual(self.navigations, [LOBBY, LOBBY])

    async def test_play_again_requires_finished_room(self):
        result = await play_again(self.store, self.code)
        self.assertFalse(result.matched)

    async def test_go_home(self):
        await self.store.update_room(self.code, {"status": Status.FINISHED})
        bob = await self.open(ResultsController, "Bob")
        await bob.go_home()
        self.assertEqual(self.navigations, [ENTRY])
        self.assertEqual([p.name for p in await self.store.get_players(self.code)], ["Ann"])
