import asyncio
from unittest import IsolatedAsyncioTestCase, TestCase

from .playback import ClipCoordinator, ClipLoadError, SoundCloudClip, YouTubeClip, extract_video_id

YOUTUBE = "https://www.youtube.com/watch?v=abc123&t=5"
SOUNDCLOUD = "https://soundcloud.com/artist/track"


class _FakeDriver:
    def __init__(self, *, fail: bool = False):
        self.fail = fail
        self.calls = []

    async def open(self, source):
        if self.fail:
            raise RuntimeError("widget error")
        self.calls.append(("open", source))

    def seek(self, position):
        self.calls.append(("seek", position))

    def play(self):
        self.calls.append(("play",))

    def pause(self):
        self.calls.append(("pause",))


class MediaReferenceTests(TestCase):
    def test_extract_video_id(self):
        self.assertEqual(extract_video_id(YOUTUBE), "abc123")
        self.assertEqual(extract_video_id("https://youtu.be/xyz?t=3"), "xyz")
        self.assertEqual(extract_video_id("https://www.youtube.com/embed/em1"), "em1")
        self.assertIsNone(extract_video_id(SOUNDCLOUD))
        self.assertIsNone(extract_video_id(None))

    def test_backend_selection(self):
        self.assertTrue(YouTubeClip.accepts(YOUTUBE))
        self.assertFalse(YouTubeClip.accepts(SOUNDCLOUD))
        self.assertTrue(SoundCloudClip.accepts(SOUNDCLOUD))
        self.assertFalse(SoundCloudClip.accepts(YOUTUBE))


class ClipCoordinatorTests(IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.youtube = _FakeDriver()
        self.soundcloud = _FakeDriver()
        self.clip = ClipCoordinator({"youtube": self.youtube, "soundcloud": self.soundcloud})

    async def asyncTearDown(self):
        self.clip.stop()

    async def test_youtube_clip_seeks_in_seconds(self):
        await self.clip.load(YOUTUBE)
        self.clip.play_clip(12.5, 30)
        self.assertEqual(self.youtube.calls, [("open", "abc123"), ("seek", 12.5), ("play",)])
        self.assertEqual(self.soundcloud.calls, [])

    async def test_soundcloud_clip_seeks_in_milliseconds(self):
        await self.clip.load(SOUNDCLOUD)
        self.clip.play_clip(12.5, 30)
        kind, source = self.soundcloud.calls[0]
        self.assertEqual(kind, "open")
        self.assertTrue(source.startswith("https://w.soundcloud.com/player/?url=https%3A%2F%2Fsoundcloud.com"))
        self.assertEqual(self.soundcloud.calls[1:], [("seek", 12500), ("play",)])

    async def test_switching_backends_stops_the_previous_one(self):
        await self.clip.load(YOUTUBE)
        self.clip.play_clip(0, 30)
        await self.clip.load(SOUNDCLOUD)
        self.assertEqual(self.youtube.calls[-2:], [("pause",), ("seek", 0)])
        self.assertIsInstance(self.clip.active, SoundCloudClip)

    async def test_unknown_reference(self):
        with self.assertRaises(ClipLoadError):
            await self.clip.load("https://example.com/song.mp3")

    async def test_missing_driver(self):
        clip = ClipCoordinator({"youtube": self.youtube})
        with self.assertRaises(ClipLoadError):
            await clip.load(SOUNDCLOUD)

    async def test_driver_failure_becomes_load_error(self):
        clip = ClipCoordinator({"youtube": _FakeDriver(fail=True)})
        with self.assertRaises(ClipLoadError):
            await clip.load(YOUTUBE)
        clip.play_clip(0, 30)
        self.assertFalse(clip.active.is_ready)

    async def test_ticks_count_down_and_skip_paused_time(self):
        player = self.clip.player_for(YOUTUBE)
        player.tick_interval = 0.01
        ticks = []
        await self.clip.load(YOUTUBE)
        self.clip.play_clip(0, 3, ticks.append)
        await asyncio.sleep(0.015)
        self.clip.pause()
        paused_at = len(ticks)
        await asyncio.sleep(0.05)
        self.assertEqual(len(ticks), paused_at)

        self.clip.play()
        await asyncio.sleep(0.1)
        self.assertEqual(ticks, [2, 1, 0])
        self.assertEqual(self.youtube.calls[-1], ("pause",))
