from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

from .controller import ScreenController
from .db import settings
from .lobby import leave_room
from .models import Countdown, Mode, Room, Status
from .progression import new_countdown, seconds_until
from .reconcile import ENTRY, LOBBY, RESULTS, SCOREBOARD, Transition, TransitionKind
from .store import StoreResult
from .utils import ordinal_suffix, sort_leaderboard

logger = logging.getLogger(__name__)

PLAYER_GAME_RESET = {
    "score": 0,
    "correctCount": 0,
    "answer": None,
    "answered": False,
    "answerTime": None,
    "lastPoints": 0,
    "lockoutUntil": None,
}


@dataclass(frozen=True)
class Standing:
    rank: int
    player_id: str
    name: str
    score: int
    correct_count: int


def leaderboard(room: Room) -> List[Standing]:
    """Players by score, then name; the buzzer-mode host only referees and is left out."""
    players = room.players
    if room.mode == Mode.BUZZER:
        players = [p for p in players if not p.is_host]
    return [
        Standing(rank, p.player_id, p.name, p.score, p.correct_count)
        for rank, p in enumerate(sort_leaderboard(players), start=1)
    ]


def position_text(rank: int) -> str:
    if rank <= 3:
        return f"You're in {rank}{ordinal_suffix(rank)} place!"
    return f"You're in {rank}{ordinal_suffix(rank)} place"


class _StandingsMixin:
    room: Optional[Room]
    player_id: Optional[str]

    @property
    def standings(self) -> List[Standing]:
        return leaderboard(self.room) if self.room else []

    @property
    def top_three(self) -> List[Standing]:
        return self.standings[:3]

    @property
    def my_standing(self) -> Optional[Standing]:
        for s in self.standings:
            if s.player_id == self.player_id:
                return s
        return None


class ScoreboardController(_StandingsMixin, ScreenController):
    """The mid-game interstitial: standings, then a short countdown back into play."""

    screen = SCOREBOARD

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.countdown: Optional[Countdown] = None

    @property
    def countdown_left(self) -> Optional[float]:
        if self.countdown is None:
            return None
        return seconds_until(self.countdown.ends_at, self.clock())

    async def handle(self, transition: Transition) -> None:
        if transition.kind == TransitionKind.COUNTDOWN_STARTED:
            self.countdown = transition.value
            self.scheduler.call_later(
                "scoreboard_countdown",
                seconds_until(self.countdown.ends_at, self.clock()),
                self.on_countdown_expired,
                self.countdown.ends_at,
            )
        elif transition.kind == TransitionKind.COUNTDOWN_CANCELLED:
            self.countdown = None
            self.scheduler.cancel("scoreboard_countdown")

    async def start_countdown(self) -> StoreResult:
        countdown = new_countdown(settings.SCOREBOARD_COUNTDOWN_SECONDS, self.session.player_name, self.clock())
        result = await self.store.update_room(
            self.code, {"scoreboardCountdown": countdown}, expect={"status": Status.SCOREBOARD}
        )
        self.report(result)
        return result

    async def cancel_countdown(self) -> StoreResult:
        result = await self.store.update_room(
            self.code,
            {"scoreboardCountdown": Countdown(active=False, started_by=self.session.player_name)},
            expect={"status": Status.SCOREBOARD},
        )
        self.report(result)
        return result

    async def on_countdown_expired(self, ends_at: int) -> StoreResult:
        if self.closed or not self.is_host:
            return StoreResult.success(matched=False)
        room = await self.store.get_room(self.code, fresh=True)
        if room is None or room.status != Status.SCOREBOARD:
            return StoreResult.success(matched=False)
        if not room.scoreboard_countdown.active or room.scoreboard_countdown.ends_at != ends_at:
            return StoreResult.success(matched=False)
        result = await continue_quiz(self.store, room, self.clock())
        self.report(result)
        return result


async def continue_quiz(store, room: Room, now: int) -> StoreResult:
    """Flip the room from the scoreboard back into play, clearing buzzer lockouts."""

    cleared = await store.update_players(room.code, {"lockoutUntil": None})
    if not cleared.ok:
        return cleared
    if room.current_q >= room.total_questions:
        updates = {"status": Status.FINISHED, "scoreboardCountdown": Countdown()}
    else:
        updates = {
            "status": Status.PLAYING,
            "questionStartTime": now,
            "isPaused": False,
            "remainingTime": None,
            "scoreboardCountdown": Countdown(),
        }
    result = await store.update_room(
        room.code, updates, expect={"status": Status.SCOREBOARD, "currentQ": room.current_q}
    )
    if result.ok and result.matched:
        logger.info("Leaving scoreboard at question %s", room.current_q, extra={"room_code": room.code})
    return result


async def play_again(store, code: str) -> StoreResult:
    """Reset a finished room to the lobby; a second caller finds nothing to reset."""

    room = await store.get_room(code, fresh=True)
    if room is None or room.status != Status.FINISHED:
        return StoreResult.success(matched=False)
    reset = await store.update_players(code, PLAYER_GAME_RESET)
    if not reset.ok:
        return reset
    result = await store.update_room(
        code,
        {
            "status": Status.LOBBY,
            "currentQ": -1,
            "questions": [],
            "resultsCalculated": {},
            "nextCountdown": Countdown(),
            "scoreboardCountdown": Countdown(),
            "buzzedPlayer": None,
            "buzzTime": None,
            "buzzerLocked": False,
            "isPaused": False,
            "remainingTime": None,
            "questionStartTime": None,
        },
        expect={"status": Status.FINISHED},
    )
    if result.ok and result.matched:
        logger.info("Room reset for another game", extra={"room_code": code, "event": "play_again"})
    return result


class ResultsController(_StandingsMixin, ScreenController):
    """Final standings, with play-again and go-home."""

    screen = RESULTS

    @property
    def total_questions(self) -> int:
        return self.room.total_questions if self.room else 0

    def is_me(self, standing: Standing) -> bool:
        return standing.player_id == self.player_id

    async def play_again(self) -> StoreResult:
        result = await play_again(self.store, self.code)
        if not self.report(result):
            return result
        if not result.matched:
            room = await self.store.get_room(self.code, fresh=True)
            if room is not None and room.status == Status.LOBBY:
                await self.leave_to(LOBBY)
        return result

    async def go_home(self) -> StoreResult:
        result = await leave_room(self.store, self.session)
        if self.report(result):
            await self.leave_to(ENTRY)
        return result
