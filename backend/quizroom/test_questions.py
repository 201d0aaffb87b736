import random
from unittest import IsolatedAsyncioTestCase

from .db import InMemoryDatabase
from .models import GameParams, Song
from .questions import FILLER_ANSWER, QuestionGenerator, filter_by_year
from .store import RecordStore

SONGS = [
    {
        "id": f"s{i}",
        "title": f"Track {i}",
        "artist": f"Composer {i % 3}",
        "specific_game": f"Game {i}",
        "series_source": f"Series {i % 2}",
        "release_year": 1990 + i,
        "youtube_url": f"https://www.youtube.com/watch?v=vid{i}",
        "start_time": 10,
        "duration": 20,
        "verified": True,
    }
    for i in range(6)
]


class QuestionGeneratorTests(IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.db = InMemoryDatabase()
        for song in SONGS:
            await self.db.songs.insert_one(dict(song))
        await self.db.songs.insert_one({"id": "draft", "title": "Draft", "specific_game": "Draft", "verified": False})
        self.store = RecordStore(self.db)
        self.generator = QuestionGenerator(self.store, rng=random.Random(7))

    async def test_generates_requested_count_without_repeating_songs(self):
        questions = await self.generator.generate(4)
        self.assertEqual(len(questions), 4)
        self.assertEqual(len({q.song_id for q in questions}), 4)
        self.assertNotIn("draft", {q.song_id for q in questions})
        for q in questions:
            self.assertEqual(len(q.options), 4)
            self.assertEqual(q.options[q.correct], q.all_correct_answers[0])
            self.assertTrue(q.youtube_url.startswith("https://www.youtube.com/"))
            self.assertEqual((q.start_time, q.duration), (10, 20))

    async def test_count_is_capped_by_catalogue(self):
        questions = await self.generator.generate(50)
        self.assertEqual(len(questions), len(SONGS))

    async def test_categories_pick_templates(self):
        questions = await self.generator.generate(5, categories=["year"])
        self.assertEqual({q.template_id for q in questions}, {"q-year"})
        for q in questions:
            song = next(s for s in SONGS if s["id"] == q.song_id)
            self.assertEqual(q.options[q.correct], str(song["release_year"]))

    async def test_year_range(self):
        params = GameParams(num_questions=10, release_year_min=1992, release_year_max=1993)
        questions = await self.generator.for_params(params)
        self.assertEqual({q.song_id for q in questions}, {"s2", "s3"})

    async def test_empty_range_gives_no_questions(self):
        self.assertEqual(await self.generator.generate(3, year_min=2050), [])

    async def test_alternates_are_accepted_answers(self):
        await self.db.songs.delete_many({})
        await self.db.songs.insert_one(
            {
                "id": "only",
                "specific_game": "Pocket Monsters",
                "verified": True,
                "alternates": {"specific_game": ["Pokemon Red"]},
            }
        )
        questions = await self.generator.generate(1, categories=["game"])
        q = questions[0]
        self.assertEqual(q.all_correct_answers, ["Pocket Monsters", "Pokemon Red"])
        # a single song has no distractors of its own
        self.assertEqual(sorted(q.options), sorted(["Pocket Monsters"] + [FILLER_ANSWER] * 3))

    def test_filter_by_year(self):
        songs = [Song(id="a", release_year=1999), Song(id="b"), Song(id="c", release_year=2005)]
        self.assertEqual(filter_by_year(songs, None, None), songs)
        self.assertEqual([s.id for s in filter_by_year(songs, 2000, None)], ["c"])
        self.assertEqual([s.id for s in filter_by_year(songs, None, 2000)], ["a"])
