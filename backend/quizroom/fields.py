"""Translate between the camelCase wire form and snake_case storage columns.

Only whitelisted fields cross the boundary; anything else is dropped
silently in both directions.
"""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Type

from pydantic import BaseModel, ValidationError

from .errors import InvalidUpdateError
from .models import Player, Room

logger = logging.getLogger(__name__)


ROOM_FIELDS: Dict[str, str] = {
    "code": "code",
    "host": "host",
    "mode": "mode",
    "status": "status",
    "currentQ": "current_q",
    "questions": "questions",
    "gameParams": "game_params",
    "buzzedPlayer": "buzzed_player",
    "buzzTime": "buzz_time",
    "buzzerLocked": "buzzer_locked",
    "isPaused": "is_paused",
    "remainingTime": "remaining_time",
    "questionStartTime": "question_start_time",
    "resultsCalculated": "results_calculated",
    "nextCountdown": "next_countdown",
    "scoreboardCountdown": "scoreboard_countdown",
    "created": "created_at",
}

PLAYER_FIELDS: Dict[str, str] = {
    "playerId": "player_id",
    "name": "name",
    "score": "score",
    "answer": "answer",
    "answered": "answered",
    "answerTime": "answer_time",
    "lastPoints": "last_points",
    "correctCount": "correct_count",
    "isHost": "is_host",
    "lockoutUntil": "lockout_until",
    "lastSeen": "last_seen",
    "buzzerSoundId": "buzzer_sound_id",
    "previousWinner": "previous_winner",
    "joined": "joined_at",
}

# Keys that identify a row and are never written through a partial update.
ROOM_KEY_FIELDS = {"code", "created"}
PLAYER_KEY_FIELDS = {"playerId", "joined"}


def _plain(value: Any) -> Any:
    """Reduce pydantic models, enums and nested containers to JSON-ish values."""
    if hasattr(value, "model_dump"):
        return value.model_dump(by_alias=True, mode="json")
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


def _to_timestamp(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return int(value.timestamp() * 1000)
    return int(value)


def map_path(path: str, mapping: Dict[str, str]) -> Optional[str]:
    """Map ``resultsCalculated.3`` style paths; only the head segment is renamed."""
    head, dot, rest = path.partition(".")
    column = mapping.get(head)
    if column is None:
        return None
    return f"{column}{dot}{rest}"


def _to_db(fields: Dict[str, Any], mapping: Dict[str, str], keys: set, include_keys: bool) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for app_key, value in fields.items():
        column = map_path(app_key, mapping)
        if column is None:
            continue
        if app_key in keys and not include_keys:
            continue
        out[column] = _plain(value)
    return out


def room_filter(expect: Dict[str, Any]) -> Dict[str, Any]:
    """Translate an ``expect`` mapping (values may be query operators) to a row filter."""
    return {map_path(k, ROOM_FIELDS): _plain(v) for k, v in expect.items() if map_path(k, ROOM_FIELDS)}


def player_filter(expect: Dict[str, Any]) -> Dict[str, Any]:
    return {map_path(k, PLAYER_FIELDS): _plain(v) for k, v in expect.items() if map_path(k, PLAYER_FIELDS)}


def room_to_db(fields: Dict[str, Any], *, include_keys: bool = False) -> Dict[str, Any]:
    return _to_db(fields, ROOM_FIELDS, ROOM_KEY_FIELDS, include_keys)


def player_to_db(fields: Dict[str, Any], *, include_keys: bool = False) -> Dict[str, Any]:
    return _to_db(fields, PLAYER_FIELDS, PLAYER_KEY_FIELDS, include_keys)


def _validated(model: Type[BaseModel], data: Dict[str, Any]):
    """Validate a stored row; a malformed column reads as that field's default.

    Key fields have no default, so a broken key still raises.
    """
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        bad = {err["loc"][0] for err in exc.errors() if err["loc"]}
        logger.warning("Ignoring malformed %s fields: %s", model.__name__, ", ".join(sorted(map(str, bad))))
        return model.model_validate({k: v for k, v in data.items() if k not in bad})


def _check_updates(model: Type[BaseModel], fields: Dict[str, Any], mapping: Dict[str, str], keys: Dict[str, Any]) -> None:
    top = {k: v for k, v in fields.items() if "." not in k and k in mapping}
    try:
        model.model_validate({**keys, **top})
    except ValidationError as exc:
        names = sorted({str(err["loc"][0]) for err in exc.errors() if err["loc"]})
        raise InvalidUpdateError(f"Invalid value for {', '.join(names)}") from exc


def check_room_updates(fields: Dict[str, Any]) -> None:
    """Raise InvalidUpdateError when a top-level room field gets a value of the wrong shape."""
    _check_updates(Room, fields, ROOM_FIELDS, {"code": "-"})


def check_player_updates(fields: Dict[str, Any]) -> None:
    _check_updates(Player, fields, PLAYER_FIELDS, {"playerId": "-", "name": "-"})


def room_from_db(doc: Dict[str, Any]) -> Room:
    data = {app_key: doc.get(column) for app_key, column in ROOM_FIELDS.items() if column in doc}
    data["created"] = _to_timestamp(doc.get("created_at"))
    return _validated(Room, data)


def player_from_db(doc: Dict[str, Any]) -> Player:
    data = {app_key: doc.get(column) for app_key, column in PLAYER_FIELDS.items() if column in doc}
    data["joined"] = _to_timestamp(doc.get("joined_at"))
    return _validated(Player, data)
