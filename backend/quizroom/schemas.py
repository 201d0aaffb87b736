from typing import Any, Dict, List, Optional

from .models import BuzzerSound, CamelModel, Mode, Player, Room, SessionIdentity


class CreateRoomIn(CamelModel):
    host_name: str
    mode: Mode = Mode.EVERYBODY


class JoinIn(CamelModel):
    player_name: str


class LeaveIn(CamelModel):
    player_id: str


class RoomUpdateIn(CamelModel):
    updates: Dict[str, Any]
    expect: Optional[Dict[str, Any]] = None


class PlayerUpdateIn(CamelModel):
    updates: Dict[str, Any] = {}
    inc: Optional[Dict[str, int]] = None
    expect: Optional[Dict[str, Any]] = None


class RenameIn(CamelModel):
    new_name: str


class SoundUpdateIn(CamelModel):
    display_name: Optional[str] = None
    is_starter: Optional[bool] = None
    is_active: Optional[bool] = None


class SessionOut(CamelModel):
    session: SessionIdentity
    screen: str


class WriteOut(CamelModel):
    ok: bool = True
    matched: bool = True


class PlayersOut(CamelModel):
    players: List[Player]


class RoomOut(CamelModel):
    room: Room


class SoundsOut(CamelModel):
    sounds: List[BuzzerSound]
