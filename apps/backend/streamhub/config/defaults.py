from __future__ import annotations

from pathlib import Path

from streamhub.util.paths import platform_default_data_dir

APP_NAME = "streamhub"
APP_VERSION = "0.1.0"
SETTINGS_VERSION = 1
DEFAULT_BIND = "127.0.0.1"
DEFAULT_PORT = 8765
DEFAULT_LOG_LEVEL = "info"
DEFAULT_CORS_ORIGINS = ["http://localhost:3000", "http://127.0.0.1:3000"]

DEFAULT_FFMPEG_PATH = "ffmpeg"
DEFAULT_RTSP_PORT = 554
DEFAULT_SEGMENT_SECONDS = 2.0
DEFAULT_PLAYLIST_SIZE = 6
DEFAULT_STARTUP_GRACE_SECONDS = 20.0
DEFAULT_RESOLVE_TIMEOUT_SECONDS = 10.0
MAX_RESOLVE_TIMEOUT_SECONDS = 30.0
DEFAULT_IDLE_TIMEOUT_SECONDS = 60.0
DEFAULT_FRESHNESS_WINDOW_SECONDS = 10.0
DEFAULT_HANG_TIMEOUT_SECONDS = 30.0
DEFAULT_RESTART_MAX_ATTEMPTS = 5
DEFAULT_RESTART_WINDOW_SECONDS = 60.0
DEFAULT_RESTART_COOLDOWN_SECONDS = 60.0
DEFAULT_BACKOFF_MIN_SECONDS = 0.5
DEFAULT_BACKOFF_MAX_SECONDS = 8.0
DEFAULT_STOP_GRACE_SECONDS = 3.0
DEFAULT_HEALTH_POLL_SECONDS = 1.0
DEFAULT_HOUSEKEEPING_SECONDS = 2.0
DEFAULT_SEGMENT_LINGER_SECONDS = 10.0
DEFAULT_PROBE_INTERVAL_SECONDS = 30.0
DEFAULT_PROBE_TIMEOUT_SECONDS = 1.5

DEFAULT_REGISTRY_POLL_SECONDS = 30.0
DEFAULT_REGISTRY_TIMEOUT_SECONDS = 5.0

MANIFEST_NAME = "index.m3u8"
SEGMENT_PATTERN = "seg_%06d.ts"


def default_data_dir() -> Path:
    return platform_default_data_dir()
