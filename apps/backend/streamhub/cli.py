from __future__ import annotations

import argparse
import json
import signal
import sys
import threading

import uvicorn

from streamhub.config.defaults import APP_NAME, DEFAULT_BIND, DEFAULT_LOG_LEVEL, DEFAULT_PORT
from streamhub.config.migrate import SettingsStore
from streamhub.engine.process import cleanup_orphaned_transcoders
from streamhub.engine.errors import StoreFault
from streamhub.engine.segments import SegmentStore
from streamhub.main import create_app

_KNOWN_COMMANDS = {"serve", "cleanup"}


def _build_parser(prog: str) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=prog, description="Camera RTSP to HLS stream delivery service")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the stream delivery API")
    serve.add_argument("--data-dir", default=None, help="Path for runtime data (streams/logs/config)")
    serve.add_argument("--bind", default=DEFAULT_BIND, help=f"Bind host (default {DEFAULT_BIND})")
    serve.add_argument("--port", type=int, default=DEFAULT_PORT, help=f"Bind port (default {DEFAULT_PORT})")
    serve.add_argument("--log-level", default=DEFAULT_LOG_LEVEL, help="Log level")
    serve.add_argument("--registry-url", default=None, help="Admin panel CCTV list to poll for sources")

    cleanup = subparsers.add_parser("cleanup", help="Kill orphaned transcoders and purge stream areas")
    cleanup.add_argument("--data-dir", default=None, help="Path for runtime data (streams/logs/config)")
    return parser


def _run(parsed: argparse.Namespace) -> int:
    if parsed.bind == "0.0.0.0":
        print("[warning] LAN access enabled. Keep the stream service on trusted networks.")

    app = create_app(
        data_dir=parsed.data_dir,
        bind=parsed.bind,
        port=parsed.port,
        log_level=parsed.log_level,
        registry_url=parsed.registry_url,
    )
    early_shutdown_started = threading.Event()

    print(f"{APP_NAME} listening on http://{parsed.bind}:{parsed.port}")
    config = uvicorn.Config(
        app,
        host=parsed.bind,
        port=parsed.port,
        log_level=parsed.log_level,
        workers=1,
        timeout_graceful_shutdown=2,
        timeout_keep_alive=5,
    )
    server = uvicorn.Server(config)
    previous_handlers: dict[int, object] = {}
    run_exit_code: int | None = None

    def _begin_engine_shutdown() -> None:
        if early_shutdown_started.is_set():
            return
        early_shutdown_started.set()
        state = getattr(app.state, "streamhub", None)
        if state is not None:
            state.begin_shutdown()

    def _finalize_state_shutdown() -> None:
        state = getattr(app.state, "streamhub", None)
        if state is not None:
            state.shutdown()

    def _request_exit(signum: int, _frame: object) -> None:
        if signum in {signal.SIGINT, signal.SIGTERM}:
            # Workers are stopped before uvicorn drains so blocked resolves return promptly.
            threading.Thread(target=_begin_engine_shutdown, name="engine-shutdown", daemon=True).start()
            server.should_exit = True

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            previous_handlers[sig] = signal.getsignal(sig)
            signal.signal(sig, _request_exit)
        except (AttributeError, ValueError):
            continue

    try:
        try:
            server.run()
        except KeyboardInterrupt:
            _begin_engine_shutdown()
            server.should_exit = True
        except SystemExit as exc:
            if server.should_exit or early_shutdown_started.is_set():
                run_exit_code = 0
            else:
                code = exc.code
                run_exit_code = code if isinstance(code, int) else 1
    finally:
        _begin_engine_shutdown()
        _finalize_state_shutdown()
        for sig, handler in previous_handlers.items():
            try:
                signal.signal(sig, handler)
            except (AttributeError, ValueError):
                continue
    if run_exit_code is not None:
        return run_exit_code
    if bool(getattr(server, "started", False)) or server.should_exit:
        return 0
    return 1


def _cleanup(parsed: argparse.Namespace) -> int:
    settings_store = SettingsStore(cli_data_dir=parsed.data_dir)
    tree = settings_store.data_tree
    terminated = cleanup_orphaned_transcoders(tree["streams"])
    store = SegmentStore(tree["streams"])
    purged = []
    for source_id in store.active_areas():
        try:
            store.purge(source_id)
        except (ValueError, StoreFault):
            continue
        purged.append(source_id)
    print(
        json.dumps(
            {"data_dir": str(tree["root"]), "terminated": terminated, "purged": purged},
            indent=2,
            sort_keys=True,
        )
    )
    return 0


def _dispatch_command(parsed: argparse.Namespace) -> int:
    if parsed.command == "serve":
        return _run(parsed)
    if parsed.command == "cleanup":
        return _cleanup(parsed)
    raise ValueError(f"Unknown command: {parsed.command}")


def main(argv: list[str] | None = None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)
    if not args or args[0] not in _KNOWN_COMMANDS | {"-h", "--help"}:
        args = ["serve", *args]
    try:
        parsed = _build_parser(APP_NAME).parse_args(args)
        return _dispatch_command(parsed)
    except KeyboardInterrupt:
        return 0
    except Exception as exc:
        print(f"[error] {exc}")
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
