from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from streamhub.util.paths import bootstrap_config_path, ensure_data_tree, resolve_data_dir

from .defaults import DEFAULT_BIND, DEFAULT_CORS_ORIGINS, DEFAULT_PORT, SETTINGS_VERSION, default_data_dir
from .schema import AppSettings


class SettingsStore:
    def __init__(self, cli_data_dir: str | None = None) -> None:
        self.bootstrap_path = bootstrap_config_path()
        self.bootstrap_path.parent.mkdir(parents=True, exist_ok=True)
        bootstrap = self._read_json(self.bootstrap_path, default={})

        configured = bootstrap.get("data_dir")
        chosen_dir = resolve_data_dir(cli_data_dir or configured or str(default_data_dir()))
        self._data_tree = ensure_data_tree(chosen_dir)

        self.settings_path = self._data_tree["config"] / "settings.json"
        raw_settings = self._read_json(self.settings_path, default={})
        migrated = migrate_settings(raw_settings, str(chosen_dir))
        self._settings = AppSettings.model_validate(migrated)
        self._settings.data_dir = str(chosen_dir)
        self.save()
        self._write_json(self.bootstrap_path, {"data_dir": str(chosen_dir)})

    @property
    def settings(self) -> AppSettings:
        return self._settings

    @property
    def data_tree(self) -> dict[str, Path]:
        return self._data_tree

    def update(self, **changes: Any) -> AppSettings:
        merged = self._settings.model_dump()
        merged.update(changes)
        self._settings = AppSettings.model_validate(merged)
        self.save()
        return self._settings

    def save(self) -> None:
        payload = self._settings.model_dump(mode="json")
        self._write_json(self.settings_path, payload)

    @staticmethod
    def _read_json(path: Path, default: dict[str, Any]) -> dict[str, Any]:
        if not path.exists():
            return default
        try:
            loaded = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return default
        return loaded if isinstance(loaded, dict) else default

    @staticmethod
    def _write_json(path: Path, payload: dict[str, Any]) -> None:
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(payload, ensure_ascii=True, indent=2), encoding="utf-8")
        tmp_path.replace(path)


def migrate_settings(raw: dict[str, Any], data_dir: str) -> dict[str, Any]:
    if not raw:
        return {
            "version": SETTINGS_VERSION,
            "data_dir": data_dir,
            "bind": DEFAULT_BIND,
            "port": DEFAULT_PORT,
            "allow_lan": False,
            "cors_origins": list(DEFAULT_CORS_ORIGINS),
            "stream": {},
            "registry": {},
            "sources": [],
        }

    raw.setdefault("version", SETTINGS_VERSION)
    raw.setdefault("data_dir", data_dir)
    raw.setdefault("bind", DEFAULT_BIND)
    raw.setdefault("port", DEFAULT_PORT)
    raw.setdefault("allow_lan", False)
    raw.setdefault("cors_origins", list(DEFAULT_CORS_ORIGINS))
    raw.setdefault("stream", {})
    raw.setdefault("registry", {})
    raw.setdefault("sources", [])
    return raw
