"""Clip playback behind one interface, whatever widget actually plays the audio.

A backend wraps a *driver*: the object that talks to the embedded widget
(``open(source)``, ``seek(position)``, ``play()``, ``pause()``). Which
backend a question uses is decided by the shape of its media reference, so
callers only ever talk to ``ClipCoordinator``.
"""

from __future__ import annotations

import abc
import asyncio
import inspect
import logging
import re
from typing import Any, Callable, Dict, Optional
from urllib.parse import quote

logger = logging.getLogger(__name__)

OnTick = Callable[[int], Any]

YOUTUBE_ID_PATTERNS = (
    re.compile(r"(?:youtube\.com/watch\?v=|youtu\.be/)([^&\n?#]+)"),
    re.compile(r"youtube\.com/embed/([^&\n?#]+)"),
)
SOUNDCLOUD_URL = re.compile(r"^https?://(?:www\.|m\.)?soundcloud\.com/\S+")
SOUNDCLOUD_WIDGET = (
    "https://w.soundcloud.com/player/?url={url}&auto_play=false&hide_related=true"
    "&show_comments=false&show_user=false&show_reposts=false&show_teaser=false&visual=false"
)


class ClipLoadError(Exception):
    """A clip could not be loaded; the question goes on without audio."""


def extract_video_id(url: Optional[str]) -> Optional[str]:
    for pattern in YOUTUBE_ID_PATTERNS:
        match = pattern.search(url or "")
        if match:
            return match.group(1)
    return None


class ClipPlayer(abc.ABC):
    kind = ""
    tick_interval = 1.0

    def __init__(self, driver: Any):
        self.driver = driver
        self.is_ready = False
        self.is_paused = False
        self.elapsed = 0
        self.duration = 0
        self._on_tick: Optional[OnTick] = None
        self._ticker: Optional[asyncio.Task] = None

    @staticmethod
    @abc.abstractmethod
    def accepts(ref: str) -> bool:
        """Whether ``ref`` is a media reference this backend can play."""

    @abc.abstractmethod
    def source_for(self, ref: str) -> str:
        """Translate a media reference to what the driver opens; raise ClipLoadError if invalid."""

    def position(self, seconds: float) -> float:
        return seconds

    async def load(self, ref: str) -> None:
        self.stop()
        self.is_ready = False
        source = self.source_for(ref)
        try:
            result = self.driver.open(source)
            if inspect.isawaitable(result):
                await result
        except ClipLoadError:
            raise
        except Exception as exc:
            raise ClipLoadError(f"{type(self).__name__} could not load {ref}: {exc}") from exc
        self.is_ready = True

    def play_clip(self, start: float, duration: int, on_tick: Optional[OnTick] = None) -> None:
        """Seek to ``start`` and play, calling ``on_tick(remaining)`` each second until ``duration``."""
        if not self.is_ready:
            logger.error("%s is not ready, clip not played", type(self).__name__)
            return
        self._cancel_ticker()
        self.elapsed = 0
        self.duration = duration
        self.is_paused = False
        self._on_tick = on_tick
        self.driver.seek(self.position(start))
        self.driver.play()
        self._ticker = asyncio.create_task(self._tick_loop())

    async def _tick_loop(self) -> None:
        while self.elapsed < self.duration:
            await asyncio.sleep(self.tick_interval)
            if self.is_paused:
                continue
            self.elapsed += 1
            if self._on_tick is not None:
                result = self._on_tick(self.duration - self.elapsed)
                if inspect.isawaitable(result):
                    await result
        self._ticker = None
        self.pause()

    def play(self) -> None:
        if self.is_ready:
            self.is_paused = False
            self.driver.play()

    def pause(self) -> None:
        if self.is_ready:
            self.is_paused = True
            self.driver.pause()

    def stop(self) -> None:
        self._cancel_ticker()
        if self.is_ready:
            self.driver.pause()
            self.driver.seek(self.position(0))
        self.elapsed = 0
        self.is_paused = False

    def _cancel_ticker(self) -> None:
        if self._ticker is not None and self._ticker is not asyncio.current_task():
            self._ticker.cancel()
        self._ticker = None


class YouTubeClip(ClipPlayer):
    kind = "youtube"

    @staticmethod
    def accepts(ref: str) -> bool:
        return extract_video_id(ref) is not None

    def source_for(self, ref: str) -> str:
        video_id = extract_video_id(ref)
        if not video_id:
            raise ClipLoadError("Invalid YouTube URL")
        return video_id


class SoundCloudClip(ClipPlayer):
    kind = "soundcloud"

    @staticmethod
    def accepts(ref: str) -> bool:
        return bool(SOUNDCLOUD_URL.match(ref or ""))

    def source_for(self, ref: str) -> str:
        if not self.accepts(ref):
            raise ClipLoadError("Invalid SoundCloud URL")
        return SOUNDCLOUD_WIDGET.format(url=quote(ref, safe=""))

    def position(self, seconds: float) -> float:
        # the widget seeks in milliseconds
        return seconds * 1000


BACKENDS = (YouTubeClip, SoundCloudClip)


class ClipCoordinator:
    """Picks the backend for each clip and forwards the playback calls to it."""

    def __init__(self, drivers: Dict[str, Any]):
        """``drivers`` maps a backend kind ("youtube", "soundcloud") to its widget driver."""
        self._players: Dict[type, ClipPlayer] = {}
        for backend in BACKENDS:
            driver = drivers.get(backend.kind)
            if driver is not None:
                self._players[backend] = backend(driver)
        self.active: Optional[ClipPlayer] = None

    def player_for(self, ref: Optional[str]) -> ClipPlayer:
        for backend, player in self._players.items():
            if backend.accepts(ref or ""):
                return player
        raise ClipLoadError(f"No player available for {ref!r}")

    async def load(self, ref: Optional[str]) -> None:
        player = self.player_for(ref)
        if self.active is not None and self.active is not player:
            self.active.stop()
        self.active = player
        await player.load(ref)

    def play_clip(self, start: float, duration: int, on_tick: Optional[OnTick] = None) -> None:
        if self.active is not None:
            self.active.play_clip(start, duration, on_tick)

    def play(self) -> None:
        if self.active is not None:
            self.active.play()

    def pause(self) -> None:
        if self.active is not None:
            self.active.pause()

    def stop(self) -> None:
        if self.active is not None:
            self.active.stop()
