from __future__ import annotations

import logging
from typing import Callable, List, Optional

from .bus import NotificationBus, Subscription
from .errors import MissingSessionError
from .models import Room, SessionIdentity
from .reconcile import ENTRY, LocalView, Transition, TransitionKind, observe, reconcile
from .scheduler import Scheduler
from .store import RecordStore, StoreResult
from .utils import Clock, now_ms

logger = logging.getLogger(__name__)

Navigate = Callable[[str], None]
Notify = Callable[[str], None]


class ScreenController:
    """State owned by one screen of one client.

    Holds the session identity, the last room snapshot, every subscription and
    every timer the screen starts. ``teardown`` releases all of them; it runs
    on navigation away, and handlers check ``closed`` so a late snapshot can't
    act on a screen that is already gone.
    """

    screen: str = ""
    presence_enabled = True

    def __init__(
        self,
        session: SessionIdentity,
        store: RecordStore,
        bus: NotificationBus,
        *,
        navigate: Optional[Navigate] = None,
        notify: Optional[Notify] = None,
        clock: Clock = now_ms,
    ):
        if not session.is_complete:
            raise MissingSessionError("Session has no game code or player name")
        self.session = session
        self.store = store
        self.bus = bus
        self.clock = clock
        self.scheduler = Scheduler()
        self.view = LocalView(screen=self.screen)
        self.room: Optional[Room] = None
        self.closed = False
        self.navigated_to: Optional[str] = None
        self.presence = None
        self._subs: List[Subscription] = []
        self._navigate = navigate or (lambda screen: None)
        self._notify = notify or (lambda message: logger.warning("%s", message))

    @property
    def code(self) -> str:
        return self.session.game_code

    @property
    def player_id(self) -> Optional[str]:
        return self.session.player_id

    @property
    def is_host(self) -> bool:
        return self.session.is_host

    @property
    def me(self):
        return self.room.player(self.player_id) if self.room else None

    async def start(self) -> None:
        if self.presence_enabled and self.session.player_id:
            from .presence import PresenceManager

            self.presence = PresenceManager(self.store, self.session, self.scheduler, clock=self.clock)
            self.presence.start()
        await self.subscribe(self.bus.subscribe_room(self.code, self.on_snapshot))

    async def subscribe(self, pending) -> Subscription:
        sub = await pending
        if self.closed:
            self.bus.unsubscribe(sub)
        else:
            self._subs.append(sub)
        return sub

    def unsubscribe(self, sub: Optional[Subscription]) -> None:
        if sub is None:
            return
        self.bus.unsubscribe(sub)
        if sub in self._subs:
            self._subs.remove(sub)

    async def on_snapshot(self, room: Optional[Room]) -> None:
        if self.closed:
            return
        transitions = reconcile(self.view, room, self.player_id)
        self.view = observe(self.view, room, self.player_id)
        if room is not None:
            self.room = room
        for transition in transitions:
            if self.closed:
                return
            await self.apply(transition)
        if not self.closed and room is not None:
            await self.after_snapshot(room)

    async def apply(self, transition: Transition) -> None:
        kind = transition.kind
        if kind in (TransitionKind.ROOM_GONE, TransitionKind.PLAYER_REMOVED):
            logger.info("Leaving %s: %s", self.screen, kind.value, extra={"room_code": self.code})
            await self.leave_to(ENTRY)
        elif kind == TransitionKind.NAVIGATE:
            await self.leave_to(transition.value)
        elif kind == TransitionKind.HOST_CHANGED:
            self.session.is_host = bool(transition.value)
            await self.handle(transition)
        else:
            await self.handle(transition)

    async def handle(self, transition: Transition) -> None:
        """Screen-specific transitions."""

    async def after_snapshot(self, room: Room) -> None:
        """Runs after every snapshot has been reconciled."""

    async def leave_to(self, screen: str) -> None:
        await self.teardown()
        self.navigated_to = screen
        self._navigate(screen)

    async def teardown(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.scheduler.cancel_all()
        for sub in self._subs:
            self.bus.unsubscribe(sub)
        self._subs.clear()

    def report(self, result: StoreResult) -> bool:
        """Surface a failed store call as a dismissible notice."""
        if not result.ok:
            self._notify(result.error or "Something went wrong, please try again")
        return result.ok
