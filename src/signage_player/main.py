"""Signage player: kiosk video player driven by a remote dashboard.

Entry point and process orchestration. Connects to the dashboard over
Socket.IO, pairs or authenticates, and plays the assigned playlist
gaplessly from a local video cache.

Process signals:
    SIGINT / SIGTERM  - graceful shutdown
    SIGCONT           - resumed after suspension (foreground)
"""

import asyncio
import logging
import os
import signal
import socket
import sys

from signage_player.cache import ContentCache
from signage_player.config import Config, load_config
from signage_player.connection import SignageConnection
from signage_player.identity import DeviceStore
from signage_player.logging_config import setup_logging
from signage_player.models import Event
from signage_player.session import SessionController
from signage_player.surface import MpvSurface
from signage_player.telemetry import Reporter

log = logging.getLogger(__name__)

_SD_NOTIFY_ADDR: str | None = os.environ.get("NOTIFY_SOCKET")

# Seconds between systemd watchdog pings
_SD_WATCHDOG_INTERVAL = 2.0


def _sd_notify(state: str) -> None:
    """Send a notification to systemd if NOTIFY_SOCKET is set."""
    addr = _SD_NOTIFY_ADDR
    if not addr:
        return
    try:
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM)
        if addr.startswith("@"):
            addr = "\0" + addr[1:]
        sock.sendto(state.encode(), addr)
        sock.close()
    except OSError:
        pass


class Player:
    """Wires the cache, connection, display and session controller together."""

    def __init__(self, config: Config) -> None:
        self.config = config
        self.restart_reason: str | None = None
        self._stop_event: asyncio.Event | None = None

    async def run(self) -> None:
        """Run until stopped by a signal or a restart request."""
        config = self.config
        loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()

        events: asyncio.Queue[Event] = asyncio.Queue()
        cache = ContentCache(config.cache_dir, config.max_cache_bytes)
        reporter = Reporter(config.webhook_url)
        store = DeviceStore(config.store_path, config.backup_path)
        connection = SignageConnection(config.socket_url, events)
        surface = MpvSurface(events, loop)
        controller = SessionController(
            config, events, cache, surface, connection, store, reporter,
            restart=self.request_restart,
        )

        loop.add_signal_handler(signal.SIGINT, self.stop)
        loop.add_signal_handler(signal.SIGTERM, self.stop)
        loop.add_signal_handler(signal.SIGCONT, controller.on_foreground)

        log.info("Signage player starting, dashboard %s", config.socket_url)
        session_task = asyncio.ensure_future(controller.run())
        session_task.add_done_callback(self._on_session_done)
        watchdog_task = asyncio.ensure_future(self._sd_watchdog())
        _sd_notify("READY=1")

        try:
            await self._stop_event.wait()
        finally:
            log.info("Shutting down...")
            _sd_notify("STOPPING=1")
            watchdog_task.cancel()
            session_task.cancel()
            await asyncio.gather(watchdog_task, session_task, return_exceptions=True)
            await controller.shutdown()
            await cache.close()
            await reporter.close()
            surface.shutdown()
            for sig in (signal.SIGINT, signal.SIGTERM, signal.SIGCONT):
                loop.remove_signal_handler(sig)

    def stop(self) -> None:
        """Gracefully shut down the player."""
        if self._stop_event is not None:
            self._stop_event.set()

    def request_restart(self, reason: str) -> None:
        """Stop, then re-exec the process once the loop has shut down."""
        log.warning("Restart requested: %s", reason)
        self.restart_reason = reason
        self.stop()

    def _on_session_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.critical("Session controller stopped: %s", exc)
            self.stop()

    async def _sd_watchdog(self) -> None:
        while True:
            _sd_notify("WATCHDOG=1")
            await asyncio.sleep(_SD_WATCHDOG_INTERVAL)


def _restart() -> None:
    """Replace the current process with a fresh interpreter running the player."""
    argv = [sys.executable, "-m", "signage_player.main", *sys.argv[1:]]
    log.info("Restarting: %s", " ".join(argv))
    logging.shutdown()
    os.execv(sys.executable, argv)


def main() -> None:
    """Entry point for the signage player."""
    setup_logging()
    config = load_config(os.environ.get("SIGNAGE_CONFIG", "/etc/signage-player/config.ini"))
    player = Player(config)

    try:
        asyncio.run(player.run())
    except KeyboardInterrupt:
        pass
    except Exception as exc:
        log.critical("Fatal error: %s", exc)

    if player.restart_reason:
        _restart()

    sys.exit(0)


if __name__ == "__main__":
    main()
