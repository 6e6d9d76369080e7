"""Tests for signage_player.config."""

from pathlib import Path

from signage_player.config import Config, load_config


def test_config_defaults():
    """Config should have sensible defaults."""
    cfg = Config()
    assert cfg.socket_url == "http://localhost:3001"
    assert cfg.max_cache_mb == 200
    assert cfg.watchdog_threshold == 30.0
    assert cfg.max_loops == 20
    assert cfg.daily_reset_hour == 3
    assert cfg.webhook_url == ""


def test_config_derived_values():
    """Byte budget, session seconds and store paths derive from the fields."""
    cfg = Config(max_cache_mb=100, max_session_hours=2.0, state_dir="/data")
    assert cfg.max_cache_bytes == 100 * 1024 * 1024
    assert cfg.max_session_seconds == 7200
    assert cfg.store_path == Path("/data/client_data")
    assert cfg.backup_path == Path("/data/device_config.json")


def test_load_config_missing_file(tmp_path, monkeypatch):
    """Missing config file should return defaults."""
    for var in ("SIGNAGE_SOCKET_URL", "SIGNAGE_WEBHOOK_URL", "SIGNAGE_MAX_CACHE_MB"):
        monkeypatch.delenv(var, raising=False)
    cfg = load_config(str(tmp_path / "nonexistent.ini"))
    assert cfg.socket_url == "http://localhost:3001"
    assert cfg.max_cache_mb == 200


def test_load_config_valid(tmp_path, monkeypatch):
    """Valid config file should be parsed correctly."""
    for var in ("SIGNAGE_SOCKET_URL", "SIGNAGE_WEBHOOK_URL", "SIGNAGE_MAX_CACHE_MB"):
        monkeypatch.delenv(var, raising=False)
    config_file = tmp_path / "config.ini"
    config_file.write_text(
        "[Server]\nUrl = https://dash.example.com/\n"
        "[Cache]\nDirectory = /tmp/cache\nMaxMB = 512\n"
        "[Player]\nWatchdogThreshold = 20\nMaxLoops = 5\nOrientation = 90\n"
        "[Telemetry]\nWebhookUrl = https://hooks.example.com/x\n"
        "[Maintenance]\nDailyResetHour = 4\n"
    )
    cfg = load_config(str(config_file))
    assert cfg.socket_url == "https://dash.example.com"
    assert cfg.cache_dir == "/tmp/cache"
    assert cfg.max_cache_mb == 512
    assert cfg.watchdog_threshold == 20.0
    assert cfg.max_loops == 5
    assert cfg.orientation == 90
    assert cfg.webhook_url == "https://hooks.example.com/x"
    assert cfg.daily_reset_hour == 4


def test_load_config_env_overrides(tmp_path, monkeypatch):
    """SIGNAGE_* environment variables win over the file."""
    config_file = tmp_path / "config.ini"
    config_file.write_text("[Server]\nUrl = http://file\n[Cache]\nMaxMB = 50\n")
    monkeypatch.setenv("SIGNAGE_SOCKET_URL", "http://env/")
    monkeypatch.setenv("SIGNAGE_MAX_CACHE_MB", "300")
    monkeypatch.setenv("SIGNAGE_WEBHOOK_URL", "http://hook")
    cfg = load_config(str(config_file))
    assert cfg.socket_url == "http://env"
    assert cfg.max_cache_mb == 300
    assert cfg.webhook_url == "http://hook"


def test_load_config_invalid_env_ignored(tmp_path, monkeypatch):
    """A non-numeric cache size override is ignored."""
    monkeypatch.delenv("SIGNAGE_SOCKET_URL", raising=False)
    monkeypatch.delenv("SIGNAGE_WEBHOOK_URL", raising=False)
    monkeypatch.setenv("SIGNAGE_MAX_CACHE_MB", "lots")
    cfg = load_config(str(tmp_path / "nonexistent.ini"))
    assert cfg.max_cache_mb == 200


def test_load_config_unparsable_falls_back(tmp_path, monkeypatch):
    """A malformed value should fall back to defaults."""
    monkeypatch.delenv("SIGNAGE_MAX_CACHE_MB", raising=False)
    config_file = tmp_path / "config.ini"
    config_file.write_text("[Cache]\nMaxMB = not-a-number\n")
    cfg = load_config(str(config_file))
    assert cfg.max_cache_mb == 200


def test_config_post_init_validation():
    """__post_init__ should clamp and normalise values."""
    cfg = Config(max_cache_mb=0, watchdog_interval=10.0, watchdog_threshold=2.0,
                 max_loops=0, orientation=45, daily_reset_hour=30,
                 socket_url="http://host/")
    assert cfg.max_cache_mb == 1  # clamped to min 1
    assert cfg.watchdog_threshold == 10.0  # never below the tick interval
    assert cfg.max_loops == 1
    assert cfg.orientation == 0  # fallback
    assert cfg.daily_reset_hour == 23
    assert cfg.socket_url == "http://host"  # trailing slash removed


def test_config_post_init_accepts_valid():
    """__post_init__ should not alter valid values."""
    cfg = Config(max_cache_mb=64, watchdog_threshold=20.0, orientation=270,
                 daily_reset_hour=0)
    assert cfg.max_cache_mb == 64
    assert cfg.watchdog_threshold == 20.0
    assert cfg.orientation == 270
    assert cfg.daily_reset_hour == 0
