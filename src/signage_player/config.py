"""Configuration loading for the signage player."""

import configparser
import logging
import os
from dataclasses import dataclass
from pathlib import Path

log = logging.getLogger(__name__)


_VALID_ORIENTATIONS = (0, 90, 180, 270)


@dataclass
class Config:
    """Player configuration loaded from INI file."""

    socket_url: str = "http://localhost:3001"
    cache_dir: str = "/var/cache/signage-player/video-cache"
    max_cache_mb: int = 200
    state_dir: str = "/var/lib/signage-player"
    backup_file: str = "device_config.json"
    watchdog_threshold: float = 30.0
    watchdog_interval: float = 5.0
    max_session_hours: float = 2.0
    max_loops: int = 20
    orientation: int = 0
    webhook_url: str = ""
    daily_reset_hour: int = 3

    def __post_init__(self) -> None:
        """Validate and normalise field values."""
        self.max_cache_mb = max(1, self.max_cache_mb)
        self.watchdog_interval = max(1.0, self.watchdog_interval)
        # A threshold below the tick interval would fire on every tick
        self.watchdog_threshold = max(self.watchdog_interval, self.watchdog_threshold)
        self.max_session_hours = max(0.1, self.max_session_hours)
        self.max_loops = max(1, self.max_loops)
        self.daily_reset_hour = max(0, min(23, self.daily_reset_hour))
        if self.orientation not in _VALID_ORIENTATIONS:
            self.orientation = 0
        self.socket_url = self.socket_url.rstrip("/")

    @property
    def max_cache_bytes(self) -> int:
        """Cache budget in bytes."""
        return self.max_cache_mb * 1024 * 1024

    @property
    def max_session_seconds(self) -> float:
        """Session ceiling in seconds."""
        return self.max_session_hours * 3600

    @property
    def store_path(self) -> Path:
        """Path of the primary key-value identity store."""
        return Path(self.state_dir) / "client_data"

    @property
    def backup_path(self) -> Path:
        """Path of the mirrored identity backup file."""
        return Path(self.state_dir) / self.backup_file


def _apply_env(config: Config) -> Config:
    """Apply SIGNAGE_* environment overrides on top of a loaded config."""
    url = os.environ.get("SIGNAGE_SOCKET_URL")
    if url:
        config.socket_url = url.rstrip("/")
    webhook = os.environ.get("SIGNAGE_WEBHOOK_URL")
    if webhook:
        config.webhook_url = webhook
    max_mb = os.environ.get("SIGNAGE_MAX_CACHE_MB")
    if max_mb:
        try:
            config.max_cache_mb = max(1, int(max_mb))
        except ValueError:
            log.warning("Ignoring invalid SIGNAGE_MAX_CACHE_MB=%r", max_mb)
    return config


def load_config(configpath: str = "/etc/signage-player/config.ini") -> Config:
    """Load configuration from an INI file.

    Falls back to defaults if the file is missing or cannot be parsed.
    ``SIGNAGE_SOCKET_URL``, ``SIGNAGE_WEBHOOK_URL`` and
    ``SIGNAGE_MAX_CACHE_MB`` override the file in both cases.

    Config file format::

        [Server]
        Url = https://dashboard.example.com

        [Cache]
        Directory = /var/cache/signage-player/video-cache
        MaxMB = 200

        [Player]
        WatchdogThreshold = 30
    """
    defaults = Config()
    path = Path(configpath)

    if not path.is_file():
        log.info("Config file '%s' not found, using defaults", configpath)
        return _apply_env(defaults)

    parser = configparser.ConfigParser()
    try:
        parser.read(configpath)

        socket_url = parser.get("Server", "Url", fallback=defaults.socket_url)
        cache_dir = parser.get("Cache", "Directory", fallback=defaults.cache_dir)
        max_cache_mb = parser.getint("Cache", "MaxMB", fallback=defaults.max_cache_mb)
        state_dir = parser.get("Device", "StateDir", fallback=defaults.state_dir)
        backup_file = parser.get("Device", "BackupFile", fallback=defaults.backup_file)
        watchdog_threshold = parser.getfloat(
            "Player", "WatchdogThreshold", fallback=defaults.watchdog_threshold
        )
        watchdog_interval = parser.getfloat(
            "Player", "WatchdogInterval", fallback=defaults.watchdog_interval
        )
        max_session_hours = parser.getfloat(
            "Player", "MaxSessionHours", fallback=defaults.max_session_hours
        )
        max_loops = parser.getint("Player", "MaxLoops", fallback=defaults.max_loops)
        orientation = parser.getint("Player", "Orientation", fallback=defaults.orientation)
        webhook_url = parser.get("Telemetry", "WebhookUrl", fallback=defaults.webhook_url)
        daily_reset_hour = parser.getint(
            "Maintenance", "DailyResetHour", fallback=defaults.daily_reset_hour
        )

        config = Config(
            socket_url=socket_url,
            cache_dir=cache_dir,
            max_cache_mb=max_cache_mb,
            state_dir=state_dir,
            backup_file=backup_file,
            watchdog_threshold=watchdog_threshold,
            watchdog_interval=watchdog_interval,
            max_session_hours=max_session_hours,
            max_loops=max_loops,
            orientation=orientation,
            webhook_url=webhook_url,
            daily_reset_hour=daily_reset_hour,
        )
        log.info("Loaded config from '%s': server %s", configpath, config.socket_url)
        return _apply_env(config)
    except Exception as e:
        log.error("Error reading config: %s", e)
        log.info("Using defaults")
        return _apply_env(defaults)
