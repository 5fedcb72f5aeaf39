from __future__ import annotations

import argparse
import json
from types import SimpleNamespace

from streamhub import cli


def _parsed() -> argparse.Namespace:
    return cli._build_parser("streamhub").parse_args(["serve", "--bind", "127.0.0.1", "--port", "8877"])


def _fake_app(begin_shutdown_calls: list[int], shutdown_calls: list[int] | None = None) -> object:
    streamhub = SimpleNamespace(
        begin_shutdown=lambda: begin_shutdown_calls.append(1),
        shutdown=lambda: (shutdown_calls if shutdown_calls is not None else []).append(1),
    )
    return SimpleNamespace(state=SimpleNamespace(streamhub=streamhub))


def test_cli_returns_zero_on_keyboard_interrupt(monkeypatch) -> None:
    shutdown_calls: list[int] = []
    monkeypatch.setattr(cli, "create_app", lambda **kwargs: _fake_app(shutdown_calls))
    monkeypatch.setattr(cli.uvicorn, "Config", lambda *args, **kwargs: object())

    class _InterruptServer:
        def __init__(self, _config: object) -> None:
            self.should_exit = False
            self.started = True

        def run(self) -> None:
            raise KeyboardInterrupt

    monkeypatch.setattr(cli.uvicorn, "Server", _InterruptServer)

    assert cli._run(_parsed()) == 0
    assert len(shutdown_calls) == 1


def test_cli_returns_nonzero_when_server_never_starts(monkeypatch) -> None:
    shutdown_calls: list[int] = []
    finalize_calls: list[int] = []
    monkeypatch.setattr(cli, "create_app", lambda **kwargs: _fake_app(shutdown_calls, finalize_calls))
    monkeypatch.setattr(cli.uvicorn, "Config", lambda *args, **kwargs: object())

    class _NeverStartedServer:
        def __init__(self, _config: object) -> None:
            self.should_exit = False
            self.started = False

        def run(self) -> None:
            return None

    monkeypatch.setattr(cli.uvicorn, "Server", _NeverStartedServer)

    assert cli._run(_parsed()) == 1
    assert len(shutdown_calls) == 1
    assert len(finalize_calls) == 1


def test_cli_forces_single_uvicorn_worker(monkeypatch) -> None:
    shutdown_calls: list[int] = []
    monkeypatch.setattr(cli, "create_app", lambda **kwargs: _fake_app(shutdown_calls))
    captured: dict[str, object] = {}

    def _capture_config(*_args, **kwargs):
        captured.update(kwargs)
        return object()

    monkeypatch.setattr(cli.uvicorn, "Config", _capture_config)

    class _StartedServer:
        def __init__(self, _config: object) -> None:
            self.should_exit = False
            self.started = True

        def run(self) -> None:
            return None

    monkeypatch.setattr(cli.uvicorn, "Server", _StartedServer)

    assert cli._run(_parsed()) == 0
    assert captured["workers"] == 1
    assert captured["port"] == 8877
    assert len(shutdown_calls) == 1


def test_cli_passes_registry_url_to_app(monkeypatch) -> None:
    received: dict[str, object] = {}

    def _create_app(**kwargs):
        received.update(kwargs)
        return _fake_app([])

    monkeypatch.setattr(cli, "create_app", _create_app)
    monkeypatch.setattr(cli.uvicorn, "Config", lambda *args, **kwargs: object())

    class _StartedServer:
        def __init__(self, _config: object) -> None:
            self.should_exit = False
            self.started = True

        def run(self) -> None:
            return None

    monkeypatch.setattr(cli.uvicorn, "Server", _StartedServer)
    parsed = cli._build_parser("streamhub").parse_args(["serve", "--registry-url", "http://admin.local/api/cctvs"])

    assert cli._run(parsed) == 0
    assert received["registry_url"] == "http://admin.local/api/cctvs"


def test_main_defaults_to_serve_and_returns_zero_on_interrupt(monkeypatch) -> None:
    seen: list[str] = []

    def _raise_interrupt(parsed: argparse.Namespace) -> int:
        seen.append(parsed.command)
        raise KeyboardInterrupt

    monkeypatch.setattr(cli, "_run", _raise_interrupt)
    assert cli.main(["--port", "9000"]) == 0
    assert seen == ["serve"]


def test_main_reports_startup_errors(monkeypatch, capsys) -> None:
    def _boom(_parsed: argparse.Namespace) -> int:
        raise RuntimeError("data dir not writable")

    monkeypatch.setattr(cli, "_run", _boom)
    assert cli.main(["serve"]) == 2
    assert "[error] data dir not writable" in capsys.readouterr().out


def test_cli_treats_system_exit_after_should_exit_as_clean(monkeypatch) -> None:
    shutdown_calls: list[int] = []
    monkeypatch.setattr(cli, "create_app", lambda **kwargs: _fake_app(shutdown_calls))
    monkeypatch.setattr(cli.uvicorn, "Config", lambda *args, **kwargs: object())

    class _SystemExitServer:
        def __init__(self, _config: object) -> None:
            self.should_exit = True
            self.started = True

        def run(self) -> None:
            raise SystemExit(1)

    monkeypatch.setattr(cli.uvicorn, "Server", _SystemExitServer)

    assert cli._run(_parsed()) == 0
    assert len(shutdown_calls) == 1


def test_cleanup_command_purges_leftover_areas(tmp_path, monkeypatch, capsys) -> None:
    monkeypatch.setattr("streamhub.config.migrate.bootstrap_config_path", lambda: tmp_path / "bootstrap.json")
    monkeypatch.setattr(cli, "cleanup_orphaned_transcoders", lambda streams_dir: 2)
    data_dir = tmp_path / "data"
    leftover = data_dir / "streams" / "cam-1"
    leftover.mkdir(parents=True)
    (leftover / "seg_000001.ts").write_bytes(b"\x47" * 188)

    assert cli.main(["cleanup", "--data-dir", str(data_dir)]) == 0

    report = json.loads(capsys.readouterr().out)
    assert report["terminated"] == 2
    assert report["purged"] == ["cam-1"]
    assert not leftover.exists()
