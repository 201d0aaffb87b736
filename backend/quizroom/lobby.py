from __future__ import annotations

import logging
from typing import Awaitable, Callable, List, Optional

from .controller import ScreenController
from .db import settings
from .errors import NameTakenError, NoQuestionsError, NotHostError, RoomNotFoundError
from .identity import ensure_name_available, generate_room_code, normalize_room_code, validate_name
from .models import Countdown, GameParams, Mode, Question, Room, SessionIdentity, Status
from .presence import promote
from .progression import fresh_question_fields
from .reconcile import ENTRY, LOBBY, screen_for
from .store import RecordStore, StoreResult

logger = logging.getLogger(__name__)

QuestionSource = Callable[[GameParams], Awaitable[List[Question]]]


async def create_room(store: RecordStore, host_name: str, mode: Mode = Mode.EVERYBODY) -> StoreResult:
    """Create a room with ``host_name`` as its host; ``data`` is the host's session."""

    name = validate_name(host_name)
    code = None
    for _ in range(settings.MAX_ROOM_CODE_ATTEMPTS):
        candidate = generate_room_code()
        if not await store.room_exists(candidate):
            code = candidate
            break
    if code is None:
        return StoreResult.failure("Could not allocate a room code, please try again")

    created = await store.create_room(
        code,
        {
            "host": name,
            "mode": mode,
            "status": Status.LOBBY,
            "currentQ": -1,
            "questions": [],
            "gameParams": GameParams(),
            "resultsCalculated": {},
            "nextCountdown": Countdown(),
            "scoreboardCountdown": Countdown(),
        },
    )
    if not created.ok:
        return created

    added = await store.add_player(code, name, is_host=True)
    if not added.ok:
        await store.delete_room(code)
        return added

    logger.info("Created room %s", code, extra={"room_code": code, "player_id": added.data.player_id})
    return StoreResult.success(
        SessionIdentity(game_code=code, player_name=name, player_id=added.data.player_id, is_host=True)
    )


async def join_room(store: RecordStore, code: str, player_name: str) -> StoreResult:
    """Join an existing room.

    ``data`` is a ``(session, screen)`` pair: joining a game that already
    started routes straight to whatever screen the room is on.
    """

    code = normalize_room_code(code)
    name = validate_name(player_name)
    room = await store.get_room(code, fresh=True)
    if room is None:
        raise RoomNotFoundError(f"Room {code} not found")
    ensure_name_available(name, room.players)

    added = await store.add_player(code, name)
    if not added.ok:
        return added
    player = added.data
    session = SessionIdentity(
        game_code=code,
        player_name=name,
        player_id=player.player_id,
        is_host=False,
        buzzer_sound_id=player.buzzer_sound_id,
    )
    logger.info("%s joined room %s", name, code, extra={"room_code": code, "player_id": player.player_id})
    return StoreResult.success((session, screen_for(room)))


async def leave_room(store: RecordStore, session: SessionIdentity) -> StoreResult:
    """Remove the session's player; delete the room if it empties, else hand the host role on."""

    code = session.game_code
    removed = await store.remove_player(code, session.player_id or session.player_name)
    if not removed.ok:
        return removed

    remaining = await store.fetch_players(code)
    if not remaining.ok:
        return remaining
    if not remaining.data:
        return await store.delete_room(code)
    if not any(p.is_host for p in remaining.data):
        await promote(store, code, remaining.data[0], [])
    return StoreResult.success()


class LobbyController(ScreenController):
    screen = LOBBY

    def __init__(self, *args, question_source: Optional[QuestionSource] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self._question_source = question_source

    @property
    def players(self):
        return self.room.players if self.room else []

    async def _require_host(self) -> Room:
        room = await self.store.get_room(self.code, fresh=True)
        if room is None:
            raise RoomNotFoundError(f"Room {self.code} not found")
        me = room.player(self.player_id)
        if me is None or not me.is_host:
            raise NotHostError("Only the host can do that")
        return room

    async def set_mode(self, mode: Mode) -> StoreResult:
        room = await self._require_host()
        if room.status != Status.LOBBY:
            return StoreResult.success(matched=False)
        result = await self.store.update_room(self.code, {"mode": Mode(mode)}, expect={"status": Status.LOBBY})
        self.report(result)
        return result

    async def update_params(self, **changes) -> StoreResult:
        room = await self._require_host()
        merged = room.game_params.model_dump()
        merged.update(changes)
        params = GameParams.model_validate(merged)
        if params.num_questions < 1:
            raise ValueError("Number of questions must be at least 1")
        if (
            params.release_year_min is not None
            and params.release_year_max is not None
            and params.release_year_min > params.release_year_max
        ):
            raise ValueError("Release year range is empty")
        result = await self.store.update_room(self.code, {"gameParams": params}, expect={"status": Status.LOBBY})
        self.report(result)
        return result

    async def transfer_host(self, target_player_id: str) -> StoreResult:
        room = await self._require_host()
        target = room.player(target_player_id)
        if target is None:
            return StoreResult.failure("Player not found")
        if target.player_id == self.player_id:
            return StoreResult.success(matched=False)
        if not await promote(self.store, self.code, target, room.hosts()):
            return StoreResult.failure("Could not transfer host")
        self.session.is_host = False
        return StoreResult.success()

    async def rename(self, new_name: str) -> StoreResult:
        name = validate_name(new_name)
        room = await self.store.get_room(self.code, fresh=True)
        if room is None:
            raise RoomNotFoundError(f"Room {self.code} not found")
        ensure_name_available(name, room.players, self.player_id)
        result = await self.store.change_player_name(self.code, self.player_id, name)
        if not result.ok and result.error == "Name already taken":
            raise NameTakenError(f"Name '{name}' is already taken")
        if result.ok and result.matched:
            if self.is_host:
                await self.store.update_room(self.code, {"host": name})
            self.session.player_name = name
        self.report(result)
        return result

    async def leave(self) -> StoreResult:
        result = await leave_room(self.store, self.session)
        if self.report(result):
            await self.leave_to(ENTRY)
        return result

    async def start_game(self) -> StoreResult:
        """Generate questions and move the room from the lobby into play."""

        room = await self._require_host()
        if room.status != Status.LOBBY:
            return StoreResult.success(matched=False)
        if self._question_source is None:
            from .questions import QuestionGenerator

            self._question_source = QuestionGenerator(self.store).for_params

        params = room.game_params
        questions = await self._question_source(params)
        if not questions:
            raise NoQuestionsError("No songs match the selected categories and years")
        if len(questions) < params.num_questions:
            logger.info(
                "Only %s of %s questions available, starting anyway",
                len(questions),
                params.num_questions,
                extra={"room_code": self.code},
            )

        reset = await self.store.update_players(
            self.code, {"answered": False, "answer": None, "answerTime": None, "lockoutUntil": None}
        )
        if not self.report(reset):
            return reset
        updates = {
            "status": Status.PLAYING,
            "currentQ": 0,
            "questions": questions,
            "resultsCalculated": {},
            "scoreboardCountdown": Countdown(),
        }
        updates.update(fresh_question_fields(self.clock()))
        result = await self.store.update_room(self.code, updates, expect={"status": Status.LOBBY})
        if self.report(result) and result.matched:
            logger.info("Game started with %s questions", len(questions), extra={"room_code": self.code})
        return result

