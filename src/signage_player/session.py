"""Session controller: the device's top-level state machine.

States::

    loading ──register──▶ pairing ──paired──▶ sleeping ⇄ playing
       ▲                                          │
       └──────────────── unpair ◀─────────────────┘

The controller is the only consumer of the event queue. Dashboard
messages (from the connection) and player events (from the display
surface and the playback engine) all arrive there, so every state change
happens on the event loop, one event at a time.

Each playlist assignment and each refresh builds a brand-new
:class:`~signage_player.playback.PlaybackEngine`; engines are never patched
in place, so no standby state can leak from one playlist to the next.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from signage_player.models import (
    DeviceIdentity,
    Event,
    Message,
    MessageType,
    PlayerFault,
    RefreshRequested,
    SessionState,
    VideoEnded,
    VideoError,
    VideoProgress,
    VideoSource,
    playlist_urls,
)
from signage_player.playback import PlaybackEngine

if TYPE_CHECKING:
    from signage_player.cache import ContentCache
    from signage_player.config import Config
    from signage_player.connection import SignageConnection
    from signage_player.identity import DeviceStore
    from signage_player.playback import Surface
    from signage_player.telemetry import Reporter

log = logging.getLogger(__name__)

# Delay before a restart so the telemetry report can go out
RESTART_DELAY = 1.0

# Player rebuild after an unexpected exception
FAULT_RETRY_DELAY = 3.0
MAX_FAULT_RETRIES = 3

REASON_FAULT = "Player Fault"


def seconds_until(hour: int, now: datetime | None = None) -> float:
    """Seconds from *now* until the next occurrence of ``hour:00`` local time."""
    now = now or datetime.now()
    target = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if now >= target:
        target += timedelta(days=1)
    return (target - now).total_seconds()


class SessionController:
    """Drives pairing, playback and sleep from dashboard messages."""

    def __init__(
        self,
        config: Config,
        events: asyncio.Queue[Event],
        cache: ContentCache,
        surface: Surface,
        connection: SignageConnection,
        store: DeviceStore,
        reporter: Reporter,
        restart: Callable[[str], None],
        engine_factory: Callable[[], PlaybackEngine] | None = None,
    ) -> None:
        self.config = config
        self.events = events
        self.cache = cache
        self.surface = surface
        self.connection = connection
        self.store = store
        self.reporter = reporter
        self._restart = restart
        self._engine_factory = engine_factory or self._build_engine

        self._state = SessionState.LOADING
        self.playlist: list[VideoSource] = []
        self.identity: DeviceIdentity | None = None
        self.pairing_code: str = ""
        self.orientation: int = config.orientation
        self.engine: PlaybackEngine | None = None
        self._fault_count = 0
        self._timers: set[asyncio.TimerHandle] = set()

    # ----- State -----

    @property
    def state(self) -> SessionState:
        return self._state

    def _set_state(self, state: SessionState) -> None:
        if state != self._state:
            log.info("State %s -> %s", self._state.value, state.value)
        self._state = state

    # ----- Lifecycle -----

    async def start(self) -> None:
        """Prepare the cache, restore identity, connect and arm the daily reset."""
        self.cache.init()
        self.surface.rotation = self.orientation
        self.identity = self.store.load()
        if self.identity is not None:
            self.reporter.set_device(self.identity)
        self.schedule_daily_reset()
        await self.connection.connect(self.identity)

    async def run(self) -> None:
        """Start, then consume events until cancelled."""
        await self.start()
        while True:
            event = await self.events.get()
            await self.dispatch(event)

    async def shutdown(self) -> None:
        for handle in self._timers:
            handle.cancel()
        self._timers.clear()
        await self._stop_player()
        await self.connection.disconnect()

    def _call_later(self, delay: float, callback: Callable, *args) -> None:
        loop = asyncio.get_running_loop()

        def _fire() -> None:
            self._timers.discard(handle)
            callback(*args)

        handle = loop.call_later(delay, _fire)
        self._timers.add(handle)

    def schedule_daily_reset(self) -> None:
        """Arm the unconditional maintenance restart at the configured hour."""
        delay = seconds_until(self.config.daily_reset_hour)
        log.info(
            "Daily restart scheduled at %02d:00 (in %.1f h)",
            self.config.daily_reset_hour, delay / 3600,
        )
        self._call_later(delay, self._daily_reset)

    def _daily_reset(self) -> None:
        self.reporter.notify(
            "Daily Maintenance",
            f"Executing scheduled {self.config.daily_reset_hour:02d}:00 hard reset.",
            "info",
        )
        self._call_later(RESTART_DELAY, self._restart, "daily maintenance")

    def on_foreground(self) -> None:
        """The process resumed after being suspended."""
        if self.engine is not None:
            self.engine.on_foreground()
        asyncio.ensure_future(self.connection.reconnect())

    # ----- Dispatch -----

    async def dispatch(self, event: Event) -> None:
        """Handle one event. Never raises."""
        if isinstance(event, Message):
            try:
                await self.handle_message(event)
            except Exception:
                log.exception("Error handling %s message", event.type.value)
            return

        try:
            await self._handle_player_event(event)
        except Exception as exc:
            log.exception("Player error while handling %s", type(event).__name__)
            if not isinstance(event, PlayerFault):
                self.events.put_nowait(PlayerFault(str(exc)))

    async def _handle_player_event(self, event: Event) -> None:
        if isinstance(event, PlayerFault):
            await self._handle_fault(event.error)
            return
        if isinstance(event, RefreshRequested):
            await self._refresh(event.reason)
            return

        engine = self.engine
        if engine is None or self._state != SessionState.PLAYING:
            return
        if isinstance(event, VideoEnded):
            engine.on_ended()
        elif isinstance(event, VideoError):
            engine.on_error(event.message)
        elif isinstance(event, VideoProgress):
            engine.on_progress()
            self._fault_count = 0

    async def handle_message(self, message: Message) -> None:
        payload = message.payload
        msg_type = message.type

        if msg_type == MessageType.REGISTER:
            if self._state != SessionState.LOADING:
                log.debug("Ignoring register in state %s", self._state.value)
                return
            if payload and payload.code:
                self.pairing_code = payload.code
                log.info("Pairing code: %s", payload.code)
                self._set_state(SessionState.PAIRING)

        elif msg_type == MessageType.PAIRED:
            if payload is None:
                return
            identity = DeviceIdentity(
                id=payload.id or "",
                code=payload.code or "",
                name=payload.name or "",
                token=payload.token or "",
            )
            self.identity = identity
            self.reporter.set_device(identity)
            self.store.save(identity)
            self.connection.start_heartbeat()
            await self._sleep()

        elif msg_type == MessageType.AUTH:
            if payload is None:
                return
            token = payload.token or (self.identity.token if self.identity else "")
            self.identity = DeviceIdentity(
                id=payload.id or "",
                code=payload.code or "",
                name=payload.name or "",
                token=token,
            )
            self.reporter.set_device(self.identity)
            self._apply_orientation(payload.orientation or "0")
            self.connection.start_heartbeat()
            await self._apply_playlist(payload.playlist or [])

        elif msg_type == MessageType.PLAY:
            if payload and payload.url:
                await self._apply_playlist([VideoSource(url=payload.url)])

        elif msg_type == MessageType.PLAY_LIST:
            if payload and payload.playlist is not None:
                await self._apply_playlist(payload.playlist)

        elif msg_type == MessageType.SYNC_STATE:
            if payload is None:
                return
            if payload.orientation:
                self._apply_orientation(payload.orientation)
            if payload.playlist is not None:
                if playlist_urls(payload.playlist) != playlist_urls(self.playlist):
                    log.info("Playlist changed on server, applying")
                    await self._apply_playlist(payload.playlist)
                else:
                    log.debug("Playlist unchanged, keeping player")

        elif msg_type in (MessageType.STOP, MessageType.HIBERNATE):
            await self._sleep()

        elif msg_type == MessageType.UNPAIR:
            self.store.clear()
            self.identity = None
            await self.connection.disconnect()
            await self._stop_player()
            self.playlist = []
            self._set_state(SessionState.LOADING)
            await self.connection.connect(None)

        elif msg_type == MessageType.RESET:
            self.reporter.notify(
                "Manual Reset", "Manual reset signal received from dashboard.", "notice"
            )
            self._call_later(RESTART_DELAY, self._restart, "manual reset")

        elif msg_type == MessageType.SCHEDULE_UPDATE:
            schedule = payload.schedule if payload else None
            log.info("Schedule update received: %s", schedule)

    # ----- Playback control -----

    def _apply_orientation(self, orientation: str) -> None:
        self.orientation = int(orientation)
        self.surface.rotation = self.orientation

    async def _apply_playlist(self, playlist: list[VideoSource]) -> None:
        if not playlist:
            await self._sleep()
            return
        self.playlist = list(playlist)
        self._fault_count = 0
        await self._start_player()
        self._set_state(SessionState.PLAYING)

    async def _sleep(self) -> None:
        await self._stop_player()
        self.playlist = []
        self._set_state(SessionState.SLEEPING)

    def _build_engine(self) -> PlaybackEngine:
        return PlaybackEngine(
            self.cache,
            self.surface,
            self._request_refresh,
            reporter=self.reporter,
            stuck_threshold=self.config.watchdog_threshold,
            watchdog_interval=self.config.watchdog_interval,
            max_session=self.config.max_session_seconds,
            max_loops=self.config.max_loops,
        )

    def _request_refresh(self, reason: str) -> None:
        self.events.put_nowait(RefreshRequested(reason))

    async def _start_player(self) -> None:
        await self._stop_player()
        engine = self._engine_factory()
        self.engine = engine
        task = engine.start(self.playlist)
        task.add_done_callback(self._on_player_started)

    def _on_player_started(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("Player failed to start: %s", exc)
            self.events.put_nowait(PlayerFault(str(exc)))

    async def _stop_player(self) -> None:
        engine, self.engine = self.engine, None
        if engine is not None:
            await engine.stop()
        self.surface.stop()

    async def _refresh(self, reason: str) -> None:
        if self._state != SessionState.PLAYING or not self.playlist:
            log.debug("Ignoring refresh (%s) while %s", reason, self._state.value)
            return
        log.info("Refreshing player: %s", reason)
        await self._start_player()

    async def _handle_fault(self, error: str) -> None:
        self._fault_count += 1
        if self._fault_count > MAX_FAULT_RETRIES:
            log.error("Player keeps failing (%s), going to sleep", error)
            self.reporter.notify("Player Error", f"Giving up after repeated faults: {error}", "error")
            await self._sleep()
            return
        log.warning(
            "Player fault %d/%d, rebuilding in %.0fs: %s",
            self._fault_count, MAX_FAULT_RETRIES, FAULT_RETRY_DELAY, error,
        )
        self._call_later(FAULT_RETRY_DELAY, self._request_refresh, REASON_FAULT)
