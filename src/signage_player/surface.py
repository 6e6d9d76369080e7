"""mpv-based display surface for the signage player.

Uses python-mpv with idle mode to keep a single player instance alive,
swapping media via the command API for minimal switch latency. A black
fullscreen window stays up while nothing plays, which is what the
sleeping and loading states show.

Includes automatic mpv recovery: if an mpv call fails, the surface
re-creates the instance and restores rotation and the current source.

mpv reports events from its own thread; they are handed to the asyncio
loop with ``call_soon_threadsafe`` so that player logic stays on the loop.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time

import mpv

from signage_player.models import Event, VideoEnded, VideoError, VideoProgress

log = logging.getLogger(__name__)

# Maximum consecutive mpv errors before giving up on recovery
_MAX_ERRORS = 5

# Minimum seconds between forwarded progress events
_PROGRESS_INTERVAL = 1.0


class MpvSurface:
    """Fullscreen mpv output that forwards playback events to an event queue."""

    def __init__(self, events: asyncio.Queue[Event], loop: asyncio.AbstractEventLoop) -> None:
        self._events = events
        self._loop = loop
        self._lock = threading.Lock()
        self._error_count: int = 0
        self._current_path: str = ""
        self._rotation: int = 0
        self._last_progress: float = 0.0
        self._player: mpv.MPV = self._create_mpv()

    # ----- mpv lifecycle helpers -----

    def _create_mpv(self) -> mpv.MPV:
        """Create a fresh mpv instance with event forwarding attached."""
        def _log(loglevel, component, message):
            if loglevel in ("error", "fatal"):
                log.error("mpv/%s: %s", component, message)

        player = mpv.MPV(
            fullscreen=True,
            hwdec="auto-safe",
            idle=True,
            # Keep a fullscreen black window visible at all times
            force_window="immediate",
            background_color="#000000",
            osc=False,
            osd_level=0,
            mute=True,
            config=False,
            input_default_bindings=False,
            input_vo_keyboard=False,
            cursor_autohide="always",
            # auto = cache for network streams, no cache for local files
            cache="auto",
            # Prevent lagging on long-running playback
            framedrop="vo",
            log_handler=_log,
            loglevel="warn",
        )

        @player.event_callback("end-file")
        def _on_end_file(event) -> None:
            reason = getattr(getattr(event, "data", None), "reason", None)
            if reason == mpv.MpvEventEndFile.EOF:
                self._emit(VideoEnded())
            elif reason == mpv.MpvEventEndFile.ERROR:
                self._emit(VideoError(f"mpv could not play {self._current_path}"))

        @player.property_observer("time-pos")
        def _on_time_pos(_name: str, value: float | None) -> None:
            if value is None:
                return
            now = time.monotonic()
            if now - self._last_progress >= _PROGRESS_INTERVAL:
                self._last_progress = now
                self._emit(VideoProgress())

        return player

    def _emit(self, event: Event) -> None:
        try:
            self._loop.call_soon_threadsafe(self._events.put_nowait, event)
        except RuntimeError:
            pass  # loop already closed during shutdown

    def _mpv_set(self, attr: str, value: object) -> None:
        """Safely set an mpv property. Attempts recovery on failure."""
        try:
            setattr(self._player, attr, value)
            self._error_count = 0
        except Exception as exc:
            self._error_count += 1
            log.error("mpv.%s failed (%d): %s", attr, self._error_count, exc)
            if self._error_count <= _MAX_ERRORS:
                self._try_recover()

    def _mpv_cmd(self, *args: object) -> None:
        """Safely run an mpv command. Attempts recovery on failure."""
        try:
            self._player.command(*args)
            self._error_count = 0
        except Exception as exc:
            self._error_count += 1
            log.error("mpv command %s failed (%d): %s", args, self._error_count, exc)
            if self._error_count <= _MAX_ERRORS:
                self._try_recover()

    def _try_recover(self) -> None:
        """Attempt to tear down and recreate the mpv instance."""
        with self._lock:
            log.warning("Attempting mpv recovery...")
            try:
                self._player.terminate()
            except Exception as exc:
                log.debug("terminate() during recovery failed: %s", exc)
            try:
                self._player = self._create_mpv()
                self._player.video_rotate = str(self._rotation)
                if self._current_path:
                    self._player.play(self._current_path)
                self._error_count = 0
                log.info("mpv recovered successfully")
            except Exception as exc:
                log.error("mpv recovery failed: %s", exc)

    # ----- Rotation -----

    @property
    def rotation(self) -> int:
        """Video rotation in degrees (0, 90, 180, 270)."""
        return self._rotation

    @rotation.setter
    def rotation(self, value: int) -> None:
        # Snap to nearest valid angle
        valid = (0, 90, 180, 270)
        closest = min(valid, key=lambda x: abs(x - (value % 360)))
        if closest == self._rotation:
            return
        self._rotation = closest
        self._mpv_set("video_rotate", str(closest))
        log.info("Rotation set to %d°", closest)

    # ----- Playback -----

    def play(self, source: str) -> None:
        """Replace the current media with a local path or stream URL."""
        self._current_path = source
        self._mpv_set("pause", False)
        self._mpv_cmd("loadfile", source, "replace")
        log.info("Playing '%s'", source)

    def replay(self) -> None:
        """Restart the current media from the beginning."""
        if not self._current_path:
            return
        self._mpv_cmd("loadfile", self._current_path, "replace")

    def stop(self) -> None:
        """Stop playback (mpv stays alive showing a black window)."""
        if self._current_path:
            self._mpv_cmd("stop")
            self._current_path = ""
            log.info("Playback stopped")

    def shutdown(self) -> None:
        """Terminate the mpv process cleanly."""
        try:
            self._player.terminate()
        except Exception as exc:
            log.debug("mpv terminate failed: %s", exc)
        log.info("Surface shut down")
