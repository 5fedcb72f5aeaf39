from __future__ import annotations

from pydantic import BaseModel, Field, field_validator, model_validator

from .defaults import (
    DEFAULT_BACKOFF_MAX_SECONDS,
    DEFAULT_BACKOFF_MIN_SECONDS,
    DEFAULT_BIND,
    DEFAULT_CORS_ORIGINS,
    DEFAULT_FFMPEG_PATH,
    DEFAULT_FRESHNESS_WINDOW_SECONDS,
    DEFAULT_HANG_TIMEOUT_SECONDS,
    DEFAULT_HEALTH_POLL_SECONDS,
    DEFAULT_HOUSEKEEPING_SECONDS,
    DEFAULT_IDLE_TIMEOUT_SECONDS,
    DEFAULT_PLAYLIST_SIZE,
    DEFAULT_PORT,
    DEFAULT_PROBE_INTERVAL_SECONDS,
    DEFAULT_PROBE_TIMEOUT_SECONDS,
    DEFAULT_REGISTRY_POLL_SECONDS,
    DEFAULT_REGISTRY_TIMEOUT_SECONDS,
    DEFAULT_RESOLVE_TIMEOUT_SECONDS,
    DEFAULT_RESTART_COOLDOWN_SECONDS,
    DEFAULT_RESTART_MAX_ATTEMPTS,
    DEFAULT_RESTART_WINDOW_SECONDS,
    DEFAULT_RTSP_PORT,
    DEFAULT_SEGMENT_LINGER_SECONDS,
    DEFAULT_SEGMENT_SECONDS,
    DEFAULT_STARTUP_GRACE_SECONDS,
    DEFAULT_STOP_GRACE_SECONDS,
    MAX_RESOLVE_TIMEOUT_SECONDS,
    SETTINGS_VERSION,
)


class SourceConfig(BaseModel):
    id: str
    name: str = "Camera"
    host: str
    port: int = DEFAULT_RTSP_PORT
    path: str = "/"
    scheme: str = "rtsp"
    username: str | None = None
    secret_ref: dict[str, str] | None = None
    room_id: str | None = None
    building_id: str | None = None


class StreamSettings(BaseModel):
    ffmpeg_path: str = DEFAULT_FFMPEG_PATH
    rtsp_transport: str = "tcp"
    segment_seconds: float = DEFAULT_SEGMENT_SECONDS
    playlist_size: int = DEFAULT_PLAYLIST_SIZE
    startup_grace_seconds: float = DEFAULT_STARTUP_GRACE_SECONDS
    default_resolve_timeout_seconds: float = DEFAULT_RESOLVE_TIMEOUT_SECONDS
    max_resolve_timeout_seconds: float = MAX_RESOLVE_TIMEOUT_SECONDS
    idle_timeout_seconds: float = DEFAULT_IDLE_TIMEOUT_SECONDS
    freshness_window_seconds: float = DEFAULT_FRESHNESS_WINDOW_SECONDS
    hang_timeout_seconds: float = DEFAULT_HANG_TIMEOUT_SECONDS
    restart_max_attempts: int = DEFAULT_RESTART_MAX_ATTEMPTS
    restart_window_seconds: float = DEFAULT_RESTART_WINDOW_SECONDS
    restart_cooldown_seconds: float = DEFAULT_RESTART_COOLDOWN_SECONDS
    backoff_min_seconds: float = DEFAULT_BACKOFF_MIN_SECONDS
    backoff_max_seconds: float = DEFAULT_BACKOFF_MAX_SECONDS
    stop_grace_seconds: float = DEFAULT_STOP_GRACE_SECONDS
    health_poll_seconds: float = DEFAULT_HEALTH_POLL_SECONDS
    housekeeping_seconds: float = DEFAULT_HOUSEKEEPING_SECONDS
    segment_linger_seconds: float = DEFAULT_SEGMENT_LINGER_SECONDS
    probe_interval_seconds: float = DEFAULT_PROBE_INTERVAL_SECONDS
    probe_timeout_seconds: float = DEFAULT_PROBE_TIMEOUT_SECONDS
    public_base_url: str = ""
    extra_input_args: list[str] = Field(default_factory=list)
    extra_output_args: list[str] = Field(default_factory=list)

    @field_validator("playlist_size", "restart_max_attempts")
    @classmethod
    def at_least_one(cls, value: int) -> int:
        return max(1, value)

    @field_validator(
        "segment_seconds",
        "startup_grace_seconds",
        "default_resolve_timeout_seconds",
        "max_resolve_timeout_seconds",
        "idle_timeout_seconds",
        "freshness_window_seconds",
        "hang_timeout_seconds",
        "restart_window_seconds",
        "stop_grace_seconds",
        "health_poll_seconds",
        "housekeeping_seconds",
    )
    @classmethod
    def positive_seconds(cls, value: float) -> float:
        return max(0.05, float(value))

    @field_validator(
        "restart_cooldown_seconds",
        "backoff_min_seconds",
        "backoff_max_seconds",
        "segment_linger_seconds",
        "probe_interval_seconds",
        "probe_timeout_seconds",
    )
    @classmethod
    def non_negative_seconds(cls, value: float) -> float:
        return max(0.0, float(value))

    @field_validator("public_base_url")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @model_validator(mode="after")
    def ordered_limits(self) -> "StreamSettings":
        if self.default_resolve_timeout_seconds > self.max_resolve_timeout_seconds:
            self.default_resolve_timeout_seconds = self.max_resolve_timeout_seconds
        if self.backoff_max_seconds < self.backoff_min_seconds:
            self.backoff_max_seconds = self.backoff_min_seconds
        return self


class RegistryFeedSettings(BaseModel):
    url: str | None = None
    poll_seconds: float = DEFAULT_REGISTRY_POLL_SECONDS
    timeout_seconds: float = DEFAULT_REGISTRY_TIMEOUT_SECONDS

    @field_validator("poll_seconds", "timeout_seconds")
    @classmethod
    def positive_seconds(cls, value: float) -> float:
        return max(0.5, float(value))


class AppSettings(BaseModel):
    version: int = SETTINGS_VERSION
    data_dir: str
    bind: str = DEFAULT_BIND
    port: int = DEFAULT_PORT
    allow_lan: bool = False
    cors_origins: list[str] = Field(default_factory=lambda: list(DEFAULT_CORS_ORIGINS))
    stream: StreamSettings = Field(default_factory=StreamSettings)
    registry: RegistryFeedSettings = Field(default_factory=RegistryFeedSettings)
    sources: list[SourceConfig] = Field(default_factory=list)

    @field_validator("data_dir")
    @classmethod
    def data_dir_not_empty(cls, value: str) -> str:
        if not value.strip():
            msg = "data_dir cannot be empty"
            raise ValueError(msg)
        return value
