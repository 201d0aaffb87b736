from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import Iterable, List, Optional

from .models import GameParams, Question, Song
from .store import RecordStore

logger = logging.getLogger(__name__)

DISTRACTOR_COUNT = 3
FILLER_ANSWER = "Unknown"


@dataclass(frozen=True)
class QuestionTemplate:
    id: str
    text: str
    field: str
    category: str
    difficulty: str


TEMPLATES = (
    QuestionTemplate("q-game", "Which game is this music from?", "specific_game", "game", "easy"),
    QuestionTemplate("q-series", "Which game series is this from?", "series_source", "series", "easy"),
    QuestionTemplate("q-artist", "Who composed this music?", "artist", "composer", "medium"),
    QuestionTemplate("q-developer", "Which company developed this game?", "developer", "developer", "medium"),
    QuestionTemplate("q-title", "What is the title of this track?", "title", "title", "hard"),
    QuestionTemplate("q-area", "Which area does this music play in?", "area", "location", "hard"),
    QuestionTemplate("q-boss", "Which boss battle features this music?", "boss_battle", "boss", "hard"),
    QuestionTemplate("q-year", "What year was this game released?", "release_year", "year", "medium"),
)


def _answer(song: Song, field: str) -> Optional[str]:
    value = getattr(song, field, None)
    if value in (None, "", "N/A"):
        return None
    return str(value)


def filter_by_year(songs: Iterable[Song], year_min: Optional[int], year_max: Optional[int]) -> List[Song]:
    """Songs inside the year bounds; songs with no known year drop out once any bound is set."""
    songs = list(songs)
    if year_min is None and year_max is None:
        return songs
    out = []
    for song in songs:
        if song.release_year is None:
            continue
        if year_min is not None and song.release_year < year_min:
            continue
        if year_max is not None and song.release_year > year_max:
            continue
        out.append(song)
    return out


class QuestionGenerator:
    """Builds multiple-choice questions from the verified song catalogue."""

    def __init__(self, store: RecordStore, rng: Optional[random.Random] = None):
        self.store = store
        self.rng = rng or random.Random()

    async def for_params(self, params: GameParams) -> List[Question]:
        return await self.generate(
            params.num_questions,
            params.selected_categories,
            params.release_year_min,
            params.release_year_max,
        )

    async def generate(
        self,
        count: int,
        categories: Optional[List[str]] = None,
        year_min: Optional[int] = None,
        year_max: Optional[int] = None,
    ) -> List[Question]:
        catalogue = await self.store.get_verified_songs()
        if not catalogue:
            logger.error("No verified songs in the catalogue")
            return []
        songs = filter_by_year(catalogue, year_min, year_max)
        if not songs:
            logger.error("No songs match years %s-%s", year_min, year_max)
            return []
        if len(songs) < count:
            logger.warning("Only %s songs available, requested %s", len(songs), count)
            count = len(songs)

        templates = [t for t in TEMPLATES if not categories or t.category in categories]
        questions: List[Question] = []
        # every song is used at most once per game
        for song in self.rng.sample(songs, len(songs)):
            if len(questions) >= count:
                break
            applicable = [t for t in templates if _answer(song, t.field) is not None]
            if not applicable:
                continue
            questions.append(self._build(song, self.rng.choice(applicable), songs))
        return questions

    def distractors(self, song: Song, field: str, songs: Iterable[Song]) -> List[str]:
        correct = _answer(song, field)
        seen = set()
        pool = []
        for other in songs:
            value = _answer(other, field)
            if value is None or value == correct or value in seen or not other.verified:
                continue
            seen.add(value)
            pool.append(value)
        self.rng.shuffle(pool)
        picked = pool[:DISTRACTOR_COUNT]
        while len(picked) < DISTRACTOR_COUNT:
            picked.append(FILLER_ANSWER)
        return picked

    def _build(self, song: Song, template: QuestionTemplate, songs: List[Song]) -> Question:
        correct = _answer(song, template.field)
        options = [correct] + self.distractors(song, template.field, songs)
        self.rng.shuffle(options)
        return Question(
            youtube_url=song.youtube_url,
            soundcloud_url=song.soundcloud_url,
            start_time=song.start_time or 0,
            duration=song.duration or 30,
            text=template.text,
            options=options,
            correct=options.index(correct),
            song_id=song.id,
            template_id=template.id,
            all_correct_answers=[correct] + list(song.alternates.get(template.field, [])),
        )
