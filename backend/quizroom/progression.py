"""Question progression rules shared by every game mode.

The advancing write is the one state change per question that must happen
at most once. It is attempted only after a fresh (uncached) read confirms
the room is still on the question being left, and the room update itself
is guarded on ``currentQ`` so a second advancer matches nothing.
"""

from __future__ import annotations

import logging
import math
from typing import List, Optional, Tuple

from .db import settings
from .models import Countdown, Mode, Question, Room, Status
from .store import RecordStore, StoreResult

logger = logging.getLogger(__name__)


def scoreboard_stops(total: int) -> List[int]:
    """Question indices at which the scoreboard interstitial is shown."""
    if total <= 0:
        return []
    if total <= 5:
        fractions = (0.5,)
    elif total <= 10:
        fractions = (0.33, 0.66)
    else:
        fractions = (0.25, 0.5, 0.75)
    return sorted({math.floor(total * f) for f in fractions})


def should_show_scoreboard(next_q: int, total: int) -> bool:
    return next_q in scoreboard_stops(total)


def next_step(current_q: int, total: int) -> Tuple[Status, int]:
    next_q = current_q + 1
    if next_q >= total:
        return Status.FINISHED, current_q
    if should_show_scoreboard(next_q, total):
        return Status.SCOREBOARD, next_q
    return Status.PLAYING, next_q


def new_countdown(seconds: int, started_by: Optional[str], now: int) -> Countdown:
    return Countdown(active=True, ends_at=now + seconds * 1000, time_left=seconds, started_by=started_by)


def seconds_until(ends_at: Optional[int], now: int) -> float:
    if ends_at is None:
        return 0.0
    return max(0.0, (ends_at - now) / 1000)


def question_duration(room: Room, question: Optional[Question] = None) -> int:
    if room.game_params.question_duration:
        return room.game_params.question_duration
    if room.mode == Mode.HOST:
        return settings.HOST_MODE_QUESTION_SECONDS
    question = question or room.current_question
    if question is not None and question.duration:
        return question.duration
    return settings.DEFAULT_QUESTION_SECONDS


def remaining_seconds(room: Room, now: int, question: Optional[Question] = None) -> int:
    """Time left on the current question, reconstructed from the shared room fields.

    Lets a client that reloads mid-question resume close to where everyone
    else is.
    """
    duration = question_duration(room, question)
    if room.is_paused and room.remaining_time is not None:
        return max(0, int(math.ceil(room.remaining_time)))
    if room.question_start_time is None:
        return duration
    elapsed = (now - room.question_start_time) / 1000
    return max(0, int(math.ceil(duration - elapsed)))


def fresh_question_fields(now: int) -> dict:
    """Room fields every question starts from."""
    return {
        "buzzedPlayer": None,
        "buzzTime": None,
        "buzzerLocked": False,
        "isPaused": False,
        "remainingTime": None,
        "questionStartTime": now,
        "nextCountdown": Countdown(),
    }


def pause_fields(room: Room, now: int) -> dict:
    return {"isPaused": True, "remainingTime": remaining_seconds(room, now)}


def resume_fields(room: Room, now: int) -> dict:
    """Unpause, shifting the start time so the paused stretch is not counted."""
    remaining = room.remaining_time if room.remaining_time is not None else remaining_seconds(room, now)
    elapsed = question_duration(room) - remaining
    return {"isPaused": False, "remainingTime": None, "questionStartTime": now - int(elapsed * 1000)}


PLAYER_ANSWER_RESET = {"answered": False, "answer": None, "answerTime": None}


async def advance_question(store: RecordStore, code: str, from_q: int, now: int) -> StoreResult:
    """Move the room past question ``from_q``.

    Returns a result whose ``matched`` is False when another client already
    advanced (or the room left the playing phase), in which case nothing was
    written to the room.
    """

    room = await store.get_room(code, fresh=True)
    if room is None or room.status != Status.PLAYING or room.current_q != from_q:
        logger.debug("Advance from %s skipped, room already moved on", from_q, extra={"room_code": code})
        return StoreResult.success(matched=False)

    reset = await store.update_players(code, PLAYER_ANSWER_RESET)
    if not reset.ok:
        return reset

    status, next_q = next_step(from_q, room.total_questions)
    updates = {"status": status, f"resultsCalculated.{from_q}": False, "nextCountdown": Countdown()}
    if status != Status.FINISHED:
        updates["currentQ"] = next_q
        updates.update(fresh_question_fields(now))

    result = await store.update_room(code, updates, expect={"currentQ": from_q, "status": Status.PLAYING})
    if result.ok and result.matched:
        logger.info(
            "Room advanced from question %s to %s (%s)",
            from_q,
            next_q,
            status.value,
            extra={"room_code": code, "event": "advance"},
        )
    return result
