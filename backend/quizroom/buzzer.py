"""Buzzer mode: players race to buzz in, the host rules each answer right or wrong."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Optional

from .controller import ScreenController
from .errors import NotHostError
from .models import Question, Room, Status
from .playback import ClipCoordinator, ClipLoadError
from .progression import advance_question, pause_fields, question_duration, remaining_seconds, resume_fields
from .reconcile import BUZZER, Transition, TransitionKind
from .store import StoreResult

logger = logging.getLogger(__name__)


class BuzzerPhase(str, Enum):
    WAITING = "waiting"
    PLAYING = "playing"
    BUZZED = "buzzed"
    LOCKED_OUT = "locked_out"
    TIME_UP = "time_up"


def _clear_buzz() -> dict:
    return {"buzzedPlayer": None, "buzzTime": None, "buzzerLocked": False}


class BuzzerController(ScreenController):
    screen = BUZZER

    def __init__(self, *args, clip: Optional[ClipCoordinator] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.clip = clip
        self.phase = BuzzerPhase.WAITING
        self.question: Optional[Question] = None
        self.question_index: Optional[int] = None
        self.remaining: Optional[int] = None
        self.buzzed_player: Optional[str] = None
        self.audio_warning: Optional[str] = None

    @property
    def buzzed_name(self) -> Optional[str]:
        if self.room is None or self.buzzed_player is None:
            return None
        p = self.room.player(self.buzzed_player)
        return p.name if p else None

    async def handle(self, transition: Transition) -> None:
        kind = transition.kind
        if kind == TransitionKind.QUESTION_CHANGED:
            await self.show_question(transition.value)
        elif kind == TransitionKind.BUZZED:
            self.on_buzzed(transition.value)
        elif kind == TransitionKind.BUZZ_CLEARED:
            self.on_buzz_cleared(transition.value)
        elif kind == TransitionKind.PAUSED:
            if self.clip is not None:
                self.clip.pause()
        elif kind == TransitionKind.RESUMED:
            if self.clip is not None and self.phase == BuzzerPhase.PLAYING:
                self.clip.play()

    async def after_snapshot(self, room: Room) -> None:
        # the penalty lands after the buzz is cleared, so pick the lockout up late
        if self.phase == BuzzerPhase.PLAYING and self._locked_out(room):
            self._enter_lockout(room)
        if self.is_host and room.buzzed_player and room.player(room.buzzed_player) is None:
            logger.info("Buzzed player left, clearing buzz", extra={"room_code": self.code})
            await self._clear_vanished_buzz(room.buzzed_player)

    # ------------------------------------------------------------------
    # Question lifecycle
    # ------------------------------------------------------------------

    async def show_question(self, index: int) -> None:
        room = self.room
        self.scheduler.cancel("question_timer")
        self.scheduler.cancel("lockout")
        if self.clip is not None:
            self.clip.stop()
        self.question_index = index
        self.question = room.questions[index]
        self.buzzed_player = room.buzzed_player
        self.audio_warning = None
        self.remaining = remaining_seconds(room, self.clock(), self.question)

        if room.buzzed_player:
            self.phase = BuzzerPhase.BUZZED
        elif self._locked_out(room):
            self._enter_lockout(room)
        else:
            self.phase = BuzzerPhase.PLAYING

        if self.clip is not None and self.question.media_ref:
            await self._play_clip(room)
        if self.closed or self.question_index != index:
            return
        if self.remaining <= 0:
            self.on_time_up()
        else:
            self.scheduler.call_every("question_timer", 1, self._tick)

    async def _play_clip(self, room: Room) -> None:
        try:
            await self.clip.load(self.question.media_ref)
        except ClipLoadError as exc:
            self.audio_warning = str(exc)
            self._notify(f"Audio unavailable for this question: {exc}")
            return
        elapsed = question_duration(room, self.question) - self.remaining
        self.clip.play_clip(self.question.start_time + max(0, elapsed), self.remaining)
        if room.is_paused:
            self.clip.pause()

    async def _tick(self) -> None:
        if self.closed or self.room is None or self.question is None:
            return
        # paused time never counts down
        if self.room.is_paused:
            return
        self.remaining = remaining_seconds(self.room, self.clock(), self.question)
        if self.remaining <= 0:
            self.on_time_up()

    def on_time_up(self) -> None:
        self.scheduler.cancel("question_timer")
        if self.clip is not None:
            self.clip.stop()
        self.phase = BuzzerPhase.TIME_UP

    # ------------------------------------------------------------------
    # Buzzing
    # ------------------------------------------------------------------

    def _locked_out(self, room: Room) -> bool:
        me = room.player(self.player_id)
        return me is not None and me.is_locked_out(self.clock())

    def _enter_lockout(self, room: Room) -> None:
        me = room.player(self.player_id)
        self.phase = BuzzerPhase.LOCKED_OUT
        self.scheduler.call_later("lockout", (me.lockout_until - self.clock()) / 1000, self._end_lockout)

    def _end_lockout(self) -> None:
        if self.phase == BuzzerPhase.LOCKED_OUT:
            self.phase = BuzzerPhase.BUZZED if self.buzzed_player else BuzzerPhase.PLAYING

    def on_buzzed(self, player_id: str) -> None:
        self.buzzed_player = player_id
        if self.phase != BuzzerPhase.TIME_UP:
            self.phase = BuzzerPhase.BUZZED
        if self.clip is not None:
            self.clip.pause()

    def on_buzz_cleared(self, previous: Optional[str]) -> None:
        self.buzzed_player = None
        if self.phase == BuzzerPhase.TIME_UP:
            return
        if self.room is not None and self._locked_out(self.room):
            self._enter_lockout(self.room)
        else:
            self.phase = BuzzerPhase.PLAYING
        if self.clip is not None and not (self.room and self.room.is_paused):
            self.clip.play()

    async def buzz(self) -> bool:
        """Try to buzz in; True only if this player holds the buzz afterwards."""

        if self.is_host or self.phase != BuzzerPhase.PLAYING:
            return False
        index = self.question_index
        room = await self.store.get_room(self.code, fresh=True)
        if room is None or room.status != Status.PLAYING or room.current_q != index:
            return False
        if room.buzzed_player or room.is_paused or self._locked_out(room):
            return False

        now = self.clock()
        claim = await self.store.update_room(
            self.code,
            {
                "buzzedPlayer": self.player_id,
                "buzzTime": now,
                "buzzerLocked": True,
                **pause_fields(room, now),
            },
            expect={"buzzedPlayer": None, "currentQ": index},
        )
        if not self.report(claim) or not claim.matched:
            return False

        after = await self.store.get_room(self.code, fresh=True)
        won = after is not None and after.buzzed_player == self.player_id
        if won:
            logger.info("Buzzed in on question %s", index, extra={"room_code": self.code, "player_id": self.player_id})
        return won

    # ------------------------------------------------------------------
    # Host controls
    # ------------------------------------------------------------------

    def _check_host(self) -> None:
        if not self.is_host:
            raise NotHostError("Only the host can do that")

    async def _clear_vanished_buzz(self, player_id: str) -> StoreResult:
        room = await self.store.get_room(self.code, fresh=True)
        if room is None or room.buzzed_player != player_id:
            return StoreResult.success(matched=False)
        return await self.store.update_room(
            self.code,
            {**_clear_buzz(), **resume_fields(room, self.clock())},
            expect={"buzzedPlayer": player_id},
        )

    async def mark_correct(self) -> StoreResult:
        """Award the buzzed player and move straight on to the next question."""

        self._check_host()
        index = self.question_index
        room = await self.store.get_room(self.code, fresh=True)
        if room is None or room.current_q != index or not room.buzzed_player:
            return StoreResult.success(matched=False)
        buzzed = room.player(room.buzzed_player)
        if buzzed is None:
            return await self._clear_vanished_buzz(room.buzzed_player)

        claim = await self.store.update_room(
            self.code,
            {f"resultsCalculated.{index}": True},
            expect={
                "currentQ": index,
                "buzzedPlayer": buzzed.player_id,
                f"resultsCalculated.{index}": {"$ne": True},
            },
        )
        if not self.report(claim) or not claim.matched:
            return StoreResult.success(matched=False)

        points = room.game_params.buzzer_correct_points
        award = await self.store.update_player(
            self.code, buzzed.player_id, {"lastPoints": points}, inc={"score": points, "correctCount": 1}
        )
        self.report(award)
        logger.info("%s answered correctly", buzzed.name, extra={"room_code": self.code, "event": "buzz_correct"})
        result = await advance_question(self.store, self.code, index, self.clock())
        self.report(result)
        return result

    async def mark_wrong(self) -> StoreResult:
        """Penalise and lock out the buzzed player, then resume the question."""

        self._check_host()
        index = self.question_index
        room = await self.store.get_room(self.code, fresh=True)
        if room is None or room.current_q != index or not room.buzzed_player:
            return StoreResult.success(matched=False)
        buzzed = room.player(room.buzzed_player)
        if buzzed is None:
            return await self._clear_vanished_buzz(room.buzzed_player)

        now = self.clock()
        cleared = await self.store.update_room(
            self.code,
            {**_clear_buzz(), **resume_fields(room, now)},
            expect={"currentQ": index, "buzzedPlayer": buzzed.player_id},
        )
        if not self.report(cleared) or not cleared.matched:
            return StoreResult.success(matched=False)

        params = room.game_params
        penalty = await self.store.update_player(
            self.code,
            buzzed.player_id,
            {"lastPoints": -params.buzzer_wrong_penalty, "lockoutUntil": now + params.buzzer_lockout_seconds * 1000},
            inc={"score": -params.buzzer_wrong_penalty},
        )
        self.report(penalty)
        return penalty

    async def toggle_pause(self) -> StoreResult:
        self._check_host()
        room = await self.store.get_room(self.code, fresh=True)
        if room is None or room.current_q != self.question_index:
            return StoreResult.success(matched=False)
        now = self.clock()
        if room.is_paused:
            if room.buzzed_player:
                # a pending buzz keeps the question frozen until it is ruled on
                return StoreResult.success(matched=False)
            updates = resume_fields(room, now)
        else:
            updates = pause_fields(room, now)
        result = await self.store.update_room(
            self.code, updates, expect={"currentQ": room.current_q, "isPaused": {"$ne": not room.is_paused}}
        )
        self.report(result)
        return result

    async def skip(self) -> StoreResult:
        """Move on without scoring."""
        self._check_host()
        result = await advance_question(self.store, self.code, self.question_index, self.clock())
        self.report(result)
        return result

    async def continue_after_time_up(self) -> StoreResult:
        return await self.skip()

    async def teardown(self) -> None:
        await super().teardown()
        if self.clip is not None:
            self.clip.stop()
