"""Gapless circular playback over a playlist.

The engine keeps two sources: the *active* one on screen and a *standby*
one that is fetched into the local cache while the active video plays.
When the active video ends the standby path is promoted immediately, so
the switch never waits on the network or the disk. If the standby slot is
not ready yet the remote URL is streamed instead and the local copy keeps
downloading in the background.

Two safety nets bound long-running sessions:

* a watchdog that asks for a refresh when no playback progress has been
  seen for ``stuck_threshold`` seconds;
* a session ceiling that asks for a refresh at a loop boundary once the
  session is older than ``max_session`` seconds or has looped
  ``max_loops`` times (the decoder pipeline leaks memory over long runs).

A refresh is only *requested* through ``on_refresh``. The session
controller reacts by building a fresh engine.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from signage_player.models import VideoSource

if TYPE_CHECKING:
    from signage_player.cache import ContentCache
    from signage_player.telemetry import Reporter

log = logging.getLogger(__name__)

# End events closer together than this are one event (players can fire twice)
DEBOUNCE_SECONDS = 0.5

# Delay before skipping a source that failed to play
ERROR_ADVANCE_DELAY = 1.0

REASON_WATCHDOG = "Playback Stuck (Watchdog)"
REASON_SESSION = "2hr Session"
REASON_PERIODIC = "Periodic"


class Surface(Protocol):
    """Display surface the engine renders to."""

    rotation: int

    def play(self, source: str) -> None: ...

    def replay(self) -> None: ...

    def stop(self) -> None: ...


@dataclass
class PlaybackSession:
    """Mutable playback bookkeeping for one playlist assignment."""

    current_index: int = 0
    active_source: str | None = None
    standby_source: str | None = None
    standby_index: int | None = None
    session_started_at: float = 0.0
    last_progress_at: float = 0.0
    loop_count: int = 0


class PlaybackEngine:
    """Dual-buffer player for one playlist."""

    def __init__(
        self,
        cache: ContentCache,
        surface: Surface,
        on_refresh: Callable[[str], None],
        *,
        reporter: Reporter | None = None,
        stuck_threshold: float = 30.0,
        watchdog_interval: float = 5.0,
        max_session: float = 2 * 60 * 60,
        max_loops: int = 20,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._cache = cache
        self._surface = surface
        self._on_refresh = on_refresh
        self._reporter = reporter
        self.stuck_threshold = stuck_threshold
        self.watchdog_interval = watchdog_interval
        self.max_session = max_session
        self.max_loops = max_loops
        self._clock = clock

        self.playlist: list[VideoSource] = []
        self.session = PlaybackSession()
        self._last_end_at = float("-inf")
        self._stopped = False
        self._init_task: asyncio.Task | None = None
        self._standby_task: asyncio.Task | None = None
        self._watchdog_task: asyncio.Task | None = None
        self._error_handle: asyncio.TimerHandle | None = None

    # ----- Lifecycle -----

    def start(self, playlist: list[VideoSource]) -> asyncio.Task:
        """Begin playback of *playlist* from its first item.

        Loading the first item runs in the background; the returned task
        completes once it is on screen.
        """
        self.playlist = list(playlist)
        now = self._clock()
        self.session = PlaybackSession(session_started_at=now, last_progress_at=now)
        self._last_end_at = float("-inf")
        self._stopped = False
        self._init_task = asyncio.ensure_future(self._initialize())
        if self._watchdog_task is None:
            self._watchdog_task = asyncio.ensure_future(self._watchdog_loop())
        log.info("Starting playlist with %d item(s)", len(self.playlist))
        return self._init_task

    async def _initialize(self) -> None:
        if not self.playlist:
            return
        path = await self._load(self.playlist[0].url)
        if self._stopped:
            return
        self.session.active_source = path
        self.session.last_progress_at = self._clock()
        self._surface.play(path)
        if len(self.playlist) > 1:
            self._prefetch_standby(1)

    async def stop(self) -> None:
        """Stop timers and background loading. Downloads keep running in the cache."""
        self._stopped = True
        if self._error_handle is not None:
            self._error_handle.cancel()
            self._error_handle = None
        tasks = [t for t in (self._init_task, self._standby_task, self._watchdog_task) if t]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as exc:
                log.debug("Background task ended with %s", exc)
        self._init_task = self._standby_task = self._watchdog_task = None

    @property
    def is_stopped(self) -> bool:
        return self._stopped

    # ----- Loading -----

    async def _load(self, url: str) -> str:
        """Cache-first lookup, falling back to the remote URL."""
        cached = await self._cache.prefetch_video(url)
        return cached or url

    def _prefetch_standby(self, index: int) -> None:
        if self._standby_task is not None and not self._standby_task.done():
            self._standby_task.cancel()
        self.session.standby_source = None
        self.session.standby_index = None
        self._standby_task = asyncio.ensure_future(self._fill_standby(index))

    async def _fill_standby(self, index: int) -> None:
        url = self.playlist[index].url
        cached = await self._cache.prefetch_video(url)
        if self._stopped or cached is None:
            return
        self.session.standby_source = cached
        self.session.standby_index = index
        log.debug("Standby ready: item %d", index)

    # ----- Events -----

    def on_progress(self) -> None:
        """Playback position advanced."""
        self.session.last_progress_at = self._clock()

    def on_foreground(self) -> None:
        """The process resumed; do not count the suspension as a stall."""
        self.session.last_progress_at = self._clock()

    def on_error(self, message: str = "Unknown video error") -> None:
        """Skip a source that failed to play, as if it had ended."""
        if self._stopped:
            return
        log.error("Playback error on item %d: %s", self.session.current_index, message)
        if self._reporter is not None:
            self._reporter.notify("Player Error", message, "error")
        if self._error_handle is not None:
            self._error_handle.cancel()
        loop = asyncio.get_running_loop()
        self._error_handle = loop.call_later(ERROR_ADVANCE_DELAY, self._advance_after_error)

    def _advance_after_error(self) -> None:
        self._error_handle = None
        self.on_ended()

    def on_ended(self) -> None:
        """Advance to the next item."""
        if self._stopped or not self.playlist:
            return
        if self._init_task is None or not self._init_task.done():
            # Late end event from the previous source; item 0 is not on screen yet
            log.debug("Ignoring end event before the first item is loaded")
            return

        now = self._clock()
        if now - self._last_end_at < DEBOUNCE_SECONDS:
            log.debug("Ignoring duplicate end event")
            return
        self._last_end_at = now

        session = self.session
        current = session.current_index
        count = len(self.playlist)
        next_index = (current + 1) % count
        session.current_index = next_index
        session.last_progress_at = now

        if current == count - 1:
            session.loop_count += 1
            age = now - session.session_started_at
            if age >= self.max_session or session.loop_count >= self.max_loops:
                reason = REASON_SESSION if age >= self.max_session else REASON_PERIODIC
                log.info(
                    "Session refresh after %d loops / %.0f min (%s)",
                    session.loop_count, age / 60, reason,
                )
                if self._reporter is not None:
                    self._reporter.notify(
                        "Session Refresh", f"Scheduled memory cleanup.\nReason: {reason}", "info"
                    )
                self._on_refresh(reason)
                return

        if count == 1:
            self._surface.replay()
            return

        if session.standby_source is not None and session.standby_index == next_index:
            source = session.standby_source
        else:
            log.info("Standby not ready for item %d, streaming", next_index)
            source = self.playlist[next_index].url
        session.active_source = source
        self._surface.play(source)

        self._prefetch_standby((next_index + 1) % count)

    # ----- Watchdog -----

    async def _watchdog_loop(self) -> None:
        while True:
            await asyncio.sleep(self.watchdog_interval)
            self.check_watchdog()

    def check_watchdog(self) -> bool:
        """Request a refresh if playback has made no progress for too long.

        Returns:
            True if a refresh was requested.
        """
        if self._stopped:
            return False
        now = self._clock()
        stuck = now - self.session.last_progress_at
        if stuck <= self.stuck_threshold:
            return False

        log.warning("Playback stuck for %.0fs, requesting refresh", stuck)
        if self._reporter is not None:
            self._reporter.notify(
                "Watchdog Recovery",
                f"Playback stuck for {round(stuck)}s. Triggering reset.",
                "warning",
            )
        self._on_refresh(REASON_WATCHDOG)
        self.session.last_progress_at = now
        return True
