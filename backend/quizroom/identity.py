import random
import re
import string
from typing import Iterable, Optional

from .db import settings
from .errors import InvalidNameError, NameTakenError

PLAYER_ID_LENGTH = 8
_PLAYER_ID_ALPHABET = string.ascii_lowercase + string.digits
_ROOM_CODE_ALPHABET = string.ascii_uppercase + string.digits
_FORBIDDEN_NAME_CHARS = re.compile(r"[.#$/\[\]]")


def generate_room_code(length: Optional[int] = None) -> str:
    """Generate a short, human-typeable room code."""
    return "".join(random.choices(_ROOM_CODE_ALPHABET, k=length or settings.ROOM_CODE_LENGTH))


def generate_player_id() -> str:
    """Generate an opaque 8-character player ID."""
    return "".join(random.choices(_PLAYER_ID_ALPHABET, k=PLAYER_ID_LENGTH))


def normalize_room_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


def sanitize_name(name: Optional[str]) -> str:
    return _FORBIDDEN_NAME_CHARS.sub("", (name or "").strip())


def validate_name(name: Optional[str]) -> str:
    """Sanitise a display name and return it, or raise ``InvalidNameError``."""
    clean = sanitize_name(name)
    if not clean:
        raise InvalidNameError("Please enter your name")
    if len(clean) > settings.MAX_NAME_LENGTH:
        raise InvalidNameError(f"Name must be at most {settings.MAX_NAME_LENGTH} characters")
    return clean


def ensure_name_available(name: str, players: Iterable, player_id: Optional[str] = None) -> None:
    """Reject ``name`` if a different player already holds it (case-insensitive)."""
    wanted = name.casefold()
    for p in players:
        if p.name.casefold() == wanted and p.player_id != player_id:
            raise NameTakenError(f"Name '{name}' is already taken")
