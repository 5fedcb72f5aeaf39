from __future__ import annotations

import json

from streamhub.config.migrate import SettingsStore, migrate_settings
from streamhub.config.schema import AppSettings, StreamSettings


def test_stream_defaults_match_delivery_policy() -> None:
    stream = StreamSettings()
    assert stream.rtsp_transport == "tcp"
    assert stream.restart_max_attempts == 5
    assert stream.restart_window_seconds == 60.0
    assert stream.backoff_min_seconds == 0.5
    assert stream.backoff_max_seconds == 8.0
    assert stream.default_resolve_timeout_seconds == 10.0
    # Dashboard clients abort their first attempt at 12 s; a timeout must reach them first.
    assert stream.default_resolve_timeout_seconds < 12.0
    assert stream.default_resolve_timeout_seconds <= stream.max_resolve_timeout_seconds
    assert stream.public_base_url == ""


def test_stream_settings_clamp_nonsense_values() -> None:
    stream = StreamSettings(
        playlist_size=0,
        segment_seconds=-1,
        backoff_min_seconds=4.0,
        backoff_max_seconds=1.0,
        default_resolve_timeout_seconds=90.0,
        max_resolve_timeout_seconds=20.0,
        public_base_url="https://cams.example.org/",
    )
    assert stream.playlist_size == 1
    assert stream.segment_seconds == 0.05
    assert stream.backoff_max_seconds == 4.0
    assert stream.default_resolve_timeout_seconds == 20.0
    assert stream.public_base_url == "https://cams.example.org"


def test_app_settings_default_to_loopback() -> None:
    settings = AppSettings(data_dir="/tmp/streamhub-data")
    assert settings.bind == "127.0.0.1"
    assert settings.allow_lan is False
    assert settings.sources == []
    assert settings.registry.url is None


def test_migrate_fills_missing_sections() -> None:
    migrated = migrate_settings({"port": 9001}, "/tmp/streamhub-data")
    assert migrated["port"] == 9001
    assert migrated["stream"] == {}
    assert migrated["sources"] == []
    assert AppSettings.model_validate(migrated).stream.playlist_size == 6


def test_settings_store_persists_updates(tmp_path, monkeypatch) -> None:
    bootstrap_path = tmp_path / "bootstrap.json"
    monkeypatch.setattr("streamhub.config.migrate.bootstrap_config_path", lambda: bootstrap_path)
    data_dir = tmp_path / "data"

    store = SettingsStore(cli_data_dir=str(data_dir))
    store.update(port=9100)

    assert json.loads(bootstrap_path.read_text(encoding="utf-8"))["data_dir"] == str(data_dir.resolve())
    reloaded = SettingsStore()
    assert reloaded.settings.port == 9100
    assert reloaded.data_tree["streams"].is_dir()
