class InvalidNameError(ValueError):
    """Name empty after sanitising, or too long."""


class NameTakenError(ValueError):
    """Another player in the room already uses this name."""


class RoomNotFoundError(ValueError):
    pass


class NotHostError(ValueError):
    """Only the host can perform this action."""


class NoQuestionsError(ValueError):
    """The generator could not produce a single question."""


class InvalidSoundError(ValueError):
    """Uploaded buzzer sound is not an MP3 under the size limit."""


class MissingSessionError(RuntimeError):
    """The screen was opened without a game code or player name."""


class InvalidUpdateError(ValueError):
    """A partial update carries a value its record type cannot hold."""
