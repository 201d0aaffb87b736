"""The "everybody" (and host-paced) quiz screen.

Per question: display, collect answers, score once, count down, advance.
Every step that writes shared state is safe to attempt from several clients
at once; only the first attempt has any effect.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Tuple

from .controller import ScreenController
from .db import settings
from .errors import NotHostError
from .models import Countdown, GameParams, Mode, Player, Question, Status
from .playback import ClipCoordinator, ClipLoadError
from .progression import advance_question, new_countdown, question_duration, remaining_seconds, seconds_until
from .reconcile import QUIZ, Transition, TransitionKind
from .store import StoreResult

logger = logging.getLogger(__name__)


class QuizPhase(str, Enum):
    WAITING = "waiting"
    COLLECTING = "collecting"
    ANSWERED = "answered"
    TIME_UP = "time_up"
    WAITING_FOR_HOST = "waiting_for_host"
    RESULTS = "results"


@dataclass
class Feedback:
    correct: bool
    correct_answer: str
    points: Optional[int] = None


def rank_correct_answers(
    players: Iterable[Player], question: Question, params: GameParams
) -> List[Tuple[Player, int]]:
    """Correct answerers, fastest first, paired with the points their rank earns."""
    correct = [
        p for p in players if p.answered and p.answer == question.correct and p.answer_time is not None
    ]
    correct.sort(key=lambda p: p.answer_time)
    return [(p, params.points_for_rank(rank)) for rank, p in enumerate(correct)]


class QuizController(ScreenController):
    screen = QUIZ

    def __init__(self, *args, clip: Optional[ClipCoordinator] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.clip = clip
        self.phase = QuizPhase.WAITING
        self.question: Optional[Question] = None
        self.question_index: Optional[int] = None
        self.selected_answer: Optional[int] = None
        self.has_answered = False
        self.results_shown = False
        self.feedback: Optional[Feedback] = None
        self.remaining: Optional[int] = None
        self.countdown: Optional[Countdown] = None
        self.audio_warning: Optional[str] = None
        self._players_sub = None
        self._score_before = 0
        self._opened_after_results = False

    @property
    def countdown_left(self) -> Optional[float]:
        if self.countdown is None:
            return None
        return seconds_until(self.countdown.ends_at, self.clock())

    async def handle(self, transition: Transition) -> None:
        kind = transition.kind
        if kind == TransitionKind.QUESTION_CHANGED:
            await self.show_question(transition.value)
        elif kind == TransitionKind.RESULTS_READY:
            self.show_results(transition.value)
        elif kind == TransitionKind.COUNTDOWN_STARTED:
            self.countdown = transition.value
            self.scheduler.call_later(
                "next_countdown",
                seconds_until(self.countdown.ends_at, self.clock()),
                self.on_countdown_expired,
                self.countdown.ends_at,
            )
        elif kind == TransitionKind.COUNTDOWN_CANCELLED:
            self.countdown = None
            self.scheduler.cancel("next_countdown")

    async def after_snapshot(self, room) -> None:
        if self.feedback is None or self.feedback.points is not None:
            return
        me = room.player(self.player_id)
        if me is not None and me.score != self._score_before:
            self.feedback.points = me.last_points

    # ------------------------------------------------------------------
    # Question display and timer
    # ------------------------------------------------------------------

    async def show_question(self, index: int) -> None:
        room = self.room
        self.scheduler.cancel("question_timer")
        self.scheduler.cancel("next_countdown")
        self.unsubscribe(self._players_sub)
        self._players_sub = None
        if self.clip is not None:
            self.clip.stop()

        self.question_index = index
        self.question = room.questions[index]
        self.selected_answer = None
        self.has_answered = False
        self.results_shown = False
        self.feedback = None
        self.countdown = None
        self.audio_warning = None
        self._opened_after_results = room.results_ready(index)

        me = room.player(self.player_id)
        self._score_before = me.score if me else 0
        if me is not None and me.answered and me.answer is not None:
            # reloaded after answering: keep the answer, don't prompt again
            self.has_answered = True
            self.selected_answer = me.answer
            self.phase = QuizPhase.ANSWERED
            self._players_sub = await self.subscribe(self.bus.subscribe_players(self.code, self.on_players))
        else:
            self.phase = QuizPhase.COLLECTING

        now = self.clock()
        self.remaining = remaining_seconds(room, now, self.question)
        if self.clip is not None and self.question.media_ref:
            elapsed = question_duration(room, self.question) - self.remaining
            await self._play_clip(self.question.start_time + max(0, elapsed))
        if self.closed or self.question_index != index:
            return
        if self.remaining <= 0:
            await self.on_time_up()
        else:
            self.scheduler.call_every("question_timer", 1, self._tick)

    async def _play_clip(self, offset: float) -> None:
        try:
            await self.clip.load(self.question.media_ref)
        except ClipLoadError as exc:
            self.audio_warning = str(exc)
            self._notify(f"Audio unavailable for this question: {exc}")
            return
        self.clip.play_clip(offset, self.remaining)

    async def _tick(self) -> None:
        if self.closed or self.room is None or self.question is None:
            return
        self.remaining = remaining_seconds(self.room, self.clock(), self.question)
        if self.remaining <= 0:
            self.scheduler.cancel("question_timer")
            await self.on_time_up()

    async def on_time_up(self) -> None:
        if self.results_shown:
            return
        if self.room.mode == Mode.HOST and not self.is_host:
            self.phase = QuizPhase.WAITING_FOR_HOST
            return
        if not self.has_answered:
            self.phase = QuizPhase.TIME_UP
        await self.calculate_results(self.question_index)

    # ------------------------------------------------------------------
    # Answers and scoring
    # ------------------------------------------------------------------

    async def submit_answer(self, index: int) -> StoreResult:
        if self.has_answered or self.phase != QuizPhase.COLLECTING or self.question is None:
            return StoreResult.success(matched=False)
        if not 0 <= index < len(self.question.options):
            raise ValueError(f"Answer {index} is out of range")

        self.has_answered = True
        self.selected_answer = index
        result = await self.store.update_player(
            self.code,
            self.player_id,
            {"answer": index, "answered": True, "answerTime": self.clock()},
        )
        if not self.report(result):
            self.has_answered = False
            self.selected_answer = None
            return result

        self.phase = QuizPhase.ANSWERED
        if self._players_sub is None and not self.closed:
            self._players_sub = await self.subscribe(self.bus.subscribe_players(self.code, self.on_players))
        return result

    async def on_players(self, players: List[Player]) -> None:
        if self.closed or not self.has_answered or self.results_shown:
            return
        if players and all(p.answered for p in players):
            await self.calculate_results(self.question_index)

    async def calculate_results(self, index: int) -> bool:
        """Score question ``index`` unless some client already has.

        Returns True only for the caller whose claim on
        ``resultsCalculated[index]`` won.
        """

        room = await self.store.get_room(self.code, fresh=True)
        if room is None or room.status != Status.PLAYING or room.current_q != index or room.results_ready(index):
            return False

        claim = await self.store.update_room(
            self.code,
            {f"resultsCalculated.{index}": True},
            expect={"currentQ": index, f"resultsCalculated.{index}": {"$ne": True}},
        )
        if not claim.ok or not claim.matched:
            logger.debug("Scoring of question %s already claimed", index, extra={"room_code": self.code})
            return False

        # re-read so answers that landed after the first read still count
        players = await self.store.get_players(self.code)
        question = room.questions[index]
        awards = {p.player_id: points for p, points in rank_correct_answers(players, question, room.game_params)}
        for p in players:
            points = awards.get(p.player_id)
            if points is None:
                await self.store.update_player(self.code, p.player_id, {"lastPoints": 0})
            else:
                await self.store.update_player(
                    self.code,
                    p.player_id,
                    {"lastPoints": points},
                    inc={"score": points, "correctCount": 1},
                )
        logger.info(
            "Scored question %s: %s correct",
            index,
            len(awards),
            extra={"room_code": self.code, "event": "score"},
        )

        if room.mode != Mode.HOST:
            await self.store.update_room(
                self.code,
                {"nextCountdown": new_countdown(settings.NEXT_COUNTDOWN_SECONDS, self.session.player_name, self.clock())},
                expect={"currentQ": index},
            )
        return True

    def show_results(self, index: int) -> None:
        if index != self.question_index or self.results_shown or self.question is None:
            return
        self.results_shown = True
        self.scheduler.cancel("question_timer")
        self.unsubscribe(self._players_sub)
        self._players_sub = None

        correct = self.selected_answer is not None and self.selected_answer == self.question.correct
        self.feedback = Feedback(correct=correct, correct_answer=self.question.options[self.question.correct])
        if not correct:
            self.feedback.points = 0
        elif self._opened_after_results and self.me is not None:
            self.feedback.points = self.me.last_points
        self.phase = QuizPhase.RESULTS

    # ------------------------------------------------------------------
    # Countdown gate
    # ------------------------------------------------------------------

    def _check_may_drive(self) -> None:
        if self.room is not None and self.room.mode == Mode.HOST and not self.is_host:
            raise NotHostError("Only the host can move on in host mode")

    async def start_countdown(self) -> StoreResult:
        self._check_may_drive()
        index = self.question_index
        room = await self.store.get_room(self.code, fresh=True)
        if room is None or room.current_q != index or not room.results_ready(index):
            return StoreResult.success(matched=False)
        countdown = new_countdown(settings.NEXT_COUNTDOWN_SECONDS, self.session.player_name, self.clock())
        result = await self.store.update_room(
            self.code, {"nextCountdown": countdown}, expect={"currentQ": index, "status": Status.PLAYING}
        )
        self.report(result)
        return result

    async def cancel_countdown(self) -> StoreResult:
        self._check_may_drive()
        result = await self.store.update_room(
            self.code,
            {"nextCountdown": Countdown(active=False, started_by=self.session.player_name)},
            expect={"currentQ": self.question_index},
        )
        self.report(result)
        return result

    async def on_countdown_expired(self, ends_at: int) -> StoreResult:
        """Local expiry of the shared countdown; only a client that believes it is host writes."""

        if self.closed or not self.is_host:
            return StoreResult.success(matched=False)
        index = self.question_index
        room = await self.store.get_room(self.code, fresh=True)
        if room is None or room.current_q != index:
            return StoreResult.success(matched=False)
        countdown = room.next_countdown
        if not countdown.active or countdown.ends_at != ends_at:
            return StoreResult.success(matched=False)
        result = await advance_question(self.store, self.code, index, self.clock())
        self.report(result)
        return result

    async def teardown(self) -> None:
        await super().teardown()
        if self.clip is not None:
            self.clip.stop()
