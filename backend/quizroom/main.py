import logging
from typing import Optional

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware

from .cleanup import cleanup_rooms
from .db import settings
from .errors import InvalidUpdateError, NotHostError, RoomNotFoundError
from .fields import check_player_updates, check_room_updates
from .identity import normalize_room_code, validate_name
from .lobby import create_room, join_room, leave_room
from .logging_utils import configure_logging
from .models import SessionIdentity
from .schemas import (
    CreateRoomIn,
    JoinIn,
    LeaveIn,
    PlayerUpdateIn,
    PlayersOut,
    RenameIn,
    RoomOut,
    RoomUpdateIn,
    SessionOut,
    SoundsOut,
    SoundUpdateIn,
    WriteOut,
)
from .reconcile import LOBBY
from .storage import delete_buzzer_sound, upload_buzzer_sound
from .store import RecordStore, StoreResult

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="Quiz Room API")

origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()]
origin_regex = settings.CORS_ORIGIN_REGEX or None

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins or ["*"],
    allow_origin_regex=origin_regex,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

record_store = RecordStore()


def get_store() -> RecordStore:
    return record_store


def require_admin(x_admin_key: Optional[str] = Header(default=None)):
    if x_admin_key != settings.ADMIN_KEY:
        raise HTTPException(status_code=401, detail="Invalid admin key")


def _raise_for(exc: ValueError):
    if isinstance(exc, RoomNotFoundError):
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    if isinstance(exc, NotHostError):
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    raise HTTPException(status_code=400, detail=str(exc)) from exc


def _checked(result: StoreResult) -> StoreResult:
    if not result.ok:
        raise HTTPException(status_code=503, detail=result.error or "Store unavailable")
    return result


@app.post("/api/rooms", response_model=SessionOut)
async def create(payload: CreateRoomIn, store: RecordStore = Depends(get_store)):
    try:
        result = _checked(await create_room(store, payload.host_name, payload.mode))
    except ValueError as exc:
        _raise_for(exc)
    return SessionOut(session=result.data, screen=LOBBY)


@app.post("/api/rooms/{code}/join", response_model=SessionOut)
async def join(code: str, payload: JoinIn, store: RecordStore = Depends(get_store)):
    try:
        result = _checked(await join_room(store, code, payload.player_name))
    except ValueError as exc:
        _raise_for(exc)
    session, screen = result.data
    return SessionOut(session=session, screen=screen)


@app.get("/api/rooms/{code}", response_model=RoomOut)
async def get_room(code: str, store: RecordStore = Depends(get_store)):
    result = _checked(await store.fetch_room(normalize_room_code(code), fresh=True))
    if result.data is None:
        raise HTTPException(404, "Room not found")
    return RoomOut(room=result.data)


@app.patch("/api/rooms/{code}", response_model=WriteOut)
async def update_room(code: str, payload: RoomUpdateIn, store: RecordStore = Depends(get_store)):
    try:
        check_room_updates(payload.updates)
    except InvalidUpdateError as exc:
        _raise_for(exc)
    result = _checked(await store.update_room(normalize_room_code(code), payload.updates, expect=payload.expect))
    return WriteOut(matched=result.matched)


@app.delete("/api/rooms/{code}", response_model=WriteOut)
async def delete_room(code: str, store: RecordStore = Depends(get_store)):
    _checked(await store.delete_room(normalize_room_code(code)))
    return WriteOut()


@app.get("/api/rooms/{code}/changes")
async def list_changes(code: str, after: int | None = None, limit: int = 200, store: RecordStore = Depends(get_store)):
    changes = await store.feed.list(normalize_room_code(code), after=after, limit=limit)
    latest_seq = changes[-1]["seq"] if changes else after
    return {"changes": changes, "latest_seq": latest_seq}


@app.get("/api/rooms/{code}/players", response_model=PlayersOut)
async def list_players(code: str, store: RecordStore = Depends(get_store)):
    result = _checked(await store.fetch_players(normalize_room_code(code)))
    return PlayersOut(players=result.data)


@app.patch("/api/rooms/{code}/players/{key}", response_model=WriteOut)
async def update_player(code: str, key: str, payload: PlayerUpdateIn, store: RecordStore = Depends(get_store)):
    try:
        check_player_updates({**(payload.inc or {}), **(payload.updates or {})})
    except InvalidUpdateError as exc:
        _raise_for(exc)
    result = _checked(
        await store.update_player(
            normalize_room_code(code), key, payload.updates, inc=payload.inc, expect=payload.expect
        )
    )
    return WriteOut(matched=result.matched)


@app.post("/api/rooms/{code}/players/{player_id}/name", response_model=WriteOut)
async def rename_player(code: str, player_id: str, payload: RenameIn, store: RecordStore = Depends(get_store)):
    try:
        name = validate_name(payload.new_name)
    except ValueError as exc:
        _raise_for(exc)
    result = await store.change_player_name(normalize_room_code(code), player_id, name)
    if not result.ok and result.error == "Name already taken":
        raise HTTPException(status_code=400, detail=result.error)
    _checked(result)
    return WriteOut(matched=result.matched)


@app.delete("/api/rooms/{code}/players/{key}", response_model=WriteOut)
async def remove_player(code: str, key: str, store: RecordStore = Depends(get_store)):
    result = _checked(await store.remove_player(normalize_room_code(code), key))
    return WriteOut(matched=result.matched)


@app.post("/api/rooms/{code}/leave", response_model=WriteOut)
async def leave(code: str, payload: LeaveIn, store: RecordStore = Depends(get_store)):
    session = SessionIdentity(game_code=normalize_room_code(code), player_id=payload.player_id)
    _checked(await leave_room(store, session))
    return WriteOut()


@app.get("/api/buzzer-sounds", response_model=SoundsOut)
async def list_sounds(store: RecordStore = Depends(get_store)):
    return SoundsOut(sounds=await store.list_buzzer_sounds())


@app.get("/api/admin/verify")
async def verify(_: None = Depends(require_admin)):
    return {"ok": True}


@app.get("/api/admin/buzzer-sounds", response_model=SoundsOut)
async def list_all_sounds(_: None = Depends(require_admin), store: RecordStore = Depends(get_store)):
    return SoundsOut(sounds=await store.list_buzzer_sounds(active_only=False))


@app.post("/api/admin/buzzer-sounds")
async def upload_sound(
    display_name: str = Form(...),
    is_starter: bool = Form(False),
    file: UploadFile = File(...),
    _: None = Depends(require_admin),
    store: RecordStore = Depends(get_store),
):
    if not settings.AZURE_STORAGE_CONNECTION_STRING:
        raise HTTPException(status_code=500, detail="Sound storage is not configured")

    data = await file.read()
    try:
        result = await upload_buzzer_sound(store, file.filename, data, file.content_type, display_name, is_starter)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except Exception as exc:
        logger.exception("Buzzer sound upload failed")
        raise HTTPException(status_code=500, detail="Failed to upload sound") from exc

    _checked(result)
    return {"sound": result.data.model_dump(by_alias=True)}


@app.patch("/api/admin/buzzer-sounds/{sound_id}", response_model=WriteOut)
async def update_sound(
    sound_id: str, payload: SoundUpdateIn, _: None = Depends(require_admin), store: RecordStore = Depends(get_store)
):
    updates = payload.model_dump(by_alias=True, exclude_none=True)
    result = _checked(await store.update_buzzer_sound(sound_id, updates))
    if not result.matched:
        raise HTTPException(404, "Sound not found")
    return WriteOut()


@app.delete("/api/admin/buzzer-sounds/{sound_id}", response_model=WriteOut)
async def remove_sound(sound_id: str, _: None = Depends(require_admin), store: RecordStore = Depends(get_store)):
    if not settings.AZURE_STORAGE_CONNECTION_STRING:
        raise HTTPException(status_code=500, detail="Sound storage is not configured")
    result = await delete_buzzer_sound(store, sound_id)
    if not result.ok and result.error == "Sound not found":
        raise HTTPException(404, result.error)
    _checked(result)
    return WriteOut()


@app.post("/api/admin/cleanup")
async def cleanup(_: None = Depends(require_admin), store: RecordStore = Depends(get_store)):
    deleted = await cleanup_rooms(store)
    return {"deleted": deleted}
