"""Turn a fresh room snapshot into the transitions a screen has to fire.

The bus hands every subscriber whole snapshots, never events, and the same
snapshot may arrive more than once. ``reconcile`` compares the snapshot
against the ``LocalView`` remembered from the previous one, so a duplicate
delivery yields no transitions at all. Nothing here touches the network.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, List, Optional

from .models import Mode, Room, Status

ENTRY = "entry"
LOBBY = "lobby"
QUIZ = "quiz"
BUZZER = "buzzer"
SCOREBOARD = "scoreboard"
RESULTS = "results"


class TransitionKind(str, Enum):
    ROOM_GONE = "room_gone"
    NAVIGATE = "navigate"
    PLAYER_REMOVED = "player_removed"
    HOST_CHANGED = "host_changed"
    QUESTION_CHANGED = "question_changed"
    RESULTS_READY = "results_ready"
    COUNTDOWN_STARTED = "countdown_started"
    COUNTDOWN_CANCELLED = "countdown_cancelled"
    BUZZED = "buzzed"
    BUZZ_CLEARED = "buzz_cleared"
    PAUSED = "paused"
    RESUMED = "resumed"


@dataclass(frozen=True)
class Transition:
    kind: TransitionKind
    value: Any = None


@dataclass(frozen=True)
class LocalView:
    screen: str
    last_index: Optional[int] = None
    results_index: Optional[int] = None
    countdown_ends_at: Optional[int] = None
    buzzed_player: Optional[str] = None
    is_paused: bool = False
    is_host: Optional[bool] = None
    me_seen: bool = False


def screen_for(room: Room) -> str:
    if room.status == Status.LOBBY:
        return LOBBY
    if room.status == Status.PLAYING:
        return BUZZER if room.mode == Mode.BUZZER else QUIZ
    if room.status == Status.SCOREBOARD:
        return SCOREBOARD
    return RESULTS


def _countdown_for(view: LocalView, room: Room):
    if view.screen == SCOREBOARD:
        return room.scoreboard_countdown
    return room.next_countdown


def reconcile(previous: LocalView, snapshot: Optional[Room], player_id: Optional[str]) -> List[Transition]:
    if snapshot is None:
        return [Transition(TransitionKind.ROOM_GONE)]

    target = screen_for(snapshot)
    if target != previous.screen:
        return [Transition(TransitionKind.NAVIGATE, target)]

    out: List[Transition] = []
    me = snapshot.player(player_id)
    if me is None:
        # a missing self before we were ever seen is just a stale read of our own join
        if previous.me_seen:
            return [Transition(TransitionKind.PLAYER_REMOVED)]
    elif me.is_host != previous.is_host:
        out.append(Transition(TransitionKind.HOST_CHANGED, me.is_host))

    if previous.screen in (QUIZ, BUZZER):
        index = snapshot.current_q
        if index != previous.last_index and 0 <= index < snapshot.total_questions:
            out.append(Transition(TransitionKind.QUESTION_CHANGED, index))
        if snapshot.results_ready(index) and previous.results_index != index:
            out.append(Transition(TransitionKind.RESULTS_READY, index))

    if previous.screen in (QUIZ, BUZZER, SCOREBOARD):
        countdown = _countdown_for(previous, snapshot)
        ends_at = countdown.ends_at if countdown.active else None
        if ends_at != previous.countdown_ends_at:
            if ends_at is not None:
                out.append(Transition(TransitionKind.COUNTDOWN_STARTED, countdown))
            else:
                out.append(Transition(TransitionKind.COUNTDOWN_CANCELLED))

    if previous.screen == BUZZER:
        if snapshot.buzzed_player != previous.buzzed_player:
            if snapshot.buzzed_player:
                out.append(Transition(TransitionKind.BUZZED, snapshot.buzzed_player))
            else:
                out.append(Transition(TransitionKind.BUZZ_CLEARED, previous.buzzed_player))
        if snapshot.is_paused != previous.is_paused:
            out.append(Transition(TransitionKind.PAUSED if snapshot.is_paused else TransitionKind.RESUMED))

    return out


def observe(previous: LocalView, snapshot: Optional[Room], player_id: Optional[str]) -> LocalView:
    """The view to remember after ``snapshot`` has been reconciled."""
    if snapshot is None:
        return previous
    me = snapshot.player(player_id)
    index = snapshot.current_q
    countdown = _countdown_for(previous, snapshot)
    return replace(
        previous,
        last_index=index if 0 <= index < snapshot.total_questions else previous.last_index,
        results_index=index if snapshot.results_ready(index) else None,
        countdown_ends_at=countdown.ends_at if countdown.active else None,
        buzzed_player=snapshot.buzzed_player,
        is_paused=snapshot.is_paused,
        is_host=me.is_host if me is not None else previous.is_host,
        me_seen=previous.me_seen or me is not None,
    )
