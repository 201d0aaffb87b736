from __future__ import annotations

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .db import settings


class CamelModel(BaseModel):
    """Python attributes are snake_case; the wire (browser) form is camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class Mode(str, Enum):
    EVERYBODY = "everybody"
    BUZZER = "buzzer"
    HOST = "host"


class Status(str, Enum):
    LOBBY = "lobby"
    PLAYING = "playing"
    SCOREBOARD = "scoreboard"
    FINISHED = "finished"


class Question(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore", frozen=True)

    type: str = "music"
    youtube_url: Optional[str] = None
    soundcloud_url: Optional[str] = None
    start_time: float = 0
    duration: int = 30
    text: str
    options: List[str]
    correct: int
    song_id: Optional[str] = None
    template_id: Optional[str] = None
    all_correct_answers: List[str] = Field(default_factory=list)

    @property
    def media_ref(self) -> Optional[str]:
        return self.youtube_url or self.soundcloud_url


class GameParams(CamelModel):
    correct_points_scale: List[int] = Field(default_factory=lambda: list(settings.DEFAULT_POINTS_SCALE))
    num_questions: int = settings.DEFAULT_NUM_QUESTIONS
    question_duration: Optional[int] = None
    buzzer_lockout_seconds: int = settings.BUZZER_LOCKOUT_SECONDS
    buzzer_correct_points: int = settings.BUZZER_CORRECT_POINTS
    buzzer_wrong_penalty: int = settings.BUZZER_WRONG_PENALTY
    selected_categories: List[str] = Field(
        default_factory=lambda: ["game", "series", "composer", "developer", "title", "location", "boss", "year"]
    )
    release_year_min: Optional[int] = None
    release_year_max: Optional[int] = None

    @field_validator("correct_points_scale")
    @classmethod
    def _non_empty_scale(cls, value: List[int]) -> List[int]:
        return value or list(settings.DEFAULT_POINTS_SCALE)

    def points_for_rank(self, rank: int) -> int:
        """Points for a 0-based rank; the last scale value repeats for overflow ranks."""
        scale = self.correct_points_scale
        return scale[min(rank, len(scale) - 1)]


class Countdown(CamelModel):
    active: bool = False
    ends_at: Optional[int] = None
    time_left: Optional[int] = None
    started_by: Optional[str] = None


class Player(CamelModel):
    player_id: str
    name: str
    score: int = 0
    answer: Optional[int] = None
    answered: bool = False
    answer_time: Optional[int] = None
    last_points: int = 0
    correct_count: int = 0
    is_host: bool = False
    lockout_until: Optional[int] = None
    last_seen: Optional[int] = None
    buzzer_sound_id: Optional[str] = None
    previous_winner: bool = False
    joined: Optional[int] = None

    @field_validator("score", "last_points", "correct_count", mode="before")
    @classmethod
    def _zero_if_null(cls, value):
        return 0 if value is None else value

    @field_validator("answered", "is_host", "previous_winner", mode="before")
    @classmethod
    def _false_if_null(cls, value):
        return False if value is None else value

    def is_locked_out(self, now: int) -> bool:
        return self.lockout_until is not None and self.lockout_until > now


class Room(CamelModel):
    code: str
    host: Optional[str] = None
    mode: Mode = Mode.EVERYBODY
    status: Status = Status.LOBBY
    current_q: int = -1
    questions: List[Question] = Field(default_factory=list)
    game_params: GameParams = Field(default_factory=GameParams)
    buzzed_player: Optional[str] = None
    buzz_time: Optional[int] = None
    buzzer_locked: bool = False
    is_paused: bool = False
    remaining_time: Optional[float] = None
    question_start_time: Optional[int] = None
    results_calculated: Dict[str, bool] = Field(default_factory=dict)
    next_countdown: Countdown = Field(default_factory=Countdown)
    scoreboard_countdown: Countdown = Field(default_factory=Countdown)
    created: Optional[int] = None
    players: List[Player] = Field(default_factory=list)

    @field_validator("mode", mode="before")
    @classmethod
    def _mode_alias(cls, value):
        if value is None:
            return Mode.EVERYBODY
        if value == "manual":
            return Mode.HOST
        return value

    @field_validator("status", mode="before")
    @classmethod
    def _status_default(cls, value):
        return Status.LOBBY if value is None else value

    @field_validator("current_q", mode="before")
    @classmethod
    def _index_default(cls, value):
        return -1 if value is None else value

    @field_validator("questions", "players", mode="before")
    @classmethod
    def _list_if_null(cls, value):
        return [] if value is None else value

    @field_validator("results_calculated", mode="before")
    @classmethod
    def _map_if_null(cls, value):
        if value is None:
            return {}
        if not isinstance(value, dict):
            return value
        return {str(k): bool(v) for k, v in value.items() if v is not None}

    @field_validator("game_params", mode="before")
    @classmethod
    def _params_if_null(cls, value):
        return GameParams() if value is None else value

    @field_validator("next_countdown", "scoreboard_countdown", mode="before")
    @classmethod
    def _countdown_if_null(cls, value):
        return Countdown() if value is None else value

    @field_validator("buzzer_locked", "is_paused", mode="before")
    @classmethod
    def _flag_if_null(cls, value):
        return False if value is None else value

    @property
    def total_questions(self) -> int:
        return len(self.questions)

    @property
    def current_question(self) -> Optional[Question]:
        if 0 <= self.current_q < len(self.questions):
            return self.questions[self.current_q]
        return None

    def results_ready(self, index: int) -> bool:
        return bool(self.results_calculated.get(str(index)))

    def player(self, player_id: Optional[str]) -> Optional[Player]:
        for p in self.players:
            if p.player_id == player_id:
                return p
        return None

    def player_by_name(self, name: str) -> Optional[Player]:
        for p in self.players:
            if p.name == name:
                return p
        return None

    def hosts(self) -> List[Player]:
        return [p for p in self.players if p.is_host]


class BuzzerSound(CamelModel):
    id: str
    file_name: str
    display_name: str
    file_url: str
    is_starter: bool = False
    is_active: bool = True
    file_size: Optional[int] = None


class Song(CamelModel):
    id: str
    title: Optional[str] = None
    artist: Optional[str] = None
    specific_game: Optional[str] = None
    series_source: Optional[str] = None
    developer: Optional[str] = None
    release_year: Optional[int] = None
    boss_battle: Optional[str] = None
    area: Optional[str] = None
    youtube_url: Optional[str] = None
    youtube_id: Optional[str] = None
    soundcloud_url: Optional[str] = None
    start_time: float = 0
    duration: int = 30
    difficulty: Optional[str] = None
    verified: bool = False
    alternates: Dict[str, List[str]] = Field(default_factory=dict)

    @field_validator("release_year", mode="before")
    @classmethod
    def _year(cls, value):
        if value in (None, "", "N/A"):
            return None
        return value


class SessionIdentity(CamelModel):
    """Identity carried between screens (the browser's session storage)."""

    game_code: Optional[str] = None
    player_name: Optional[str] = None
    player_id: Optional[str] = None
    is_host: bool = False
    buzzer_sound_id: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        return bool(self.game_code and self.player_name)
