from __future__ import annotations

import threading
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from streamhub.api import routes_health, routes_sources, routes_streams
from streamhub.api.responses import error_response, stream_error_response
from streamhub.config.defaults import APP_NAME, APP_VERSION
from streamhub.config.migrate import SettingsStore
from streamhub.engine.errors import StreamError
from streamhub.engine.process import ProcessLauncher, cleanup_orphaned_transcoders
from streamhub.engine.runtime import StreamEngine
from streamhub.registry.feed import RegistryFeed
from streamhub.registry.sources import RegistryChange, Source, SourceRegistry, sources_from_settings
from streamhub.util.logging import get_logger, setup_logging
from streamhub.util.paths import ensure_data_tree
from streamhub.util.security import SecretStore

logger = get_logger(__name__)

HTTP_STATUS_NAMES = {
    400: "invalid_request",
    404: "not_found",
    409: "conflict",
    422: "invalid_request",
}


@dataclass
class StreamhubState:
    settings_store: SettingsStore
    log_level: str
    secret_store: SecretStore
    registry: SourceRegistry
    engine: StreamEngine
    data_dir: Path
    feed: RegistryFeed | None = None
    _shutdown_lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)
    _shutdown_started: bool = field(default=False, init=False, repr=False)
    _shutdown_complete: bool = field(default=False, init=False, repr=False)

    @classmethod
    def create(
        cls,
        data_dir: str | None = None,
        bind: str | None = None,
        port: int | None = None,
        log_level: str = "info",
        registry_url: str | None = None,
        launcher: ProcessLauncher | None = None,
    ) -> "StreamhubState":
        settings_store = SettingsStore(cli_data_dir=data_dir)

        updates: dict[str, Any] = {}
        if bind:
            updates["bind"] = bind
            updates["allow_lan"] = bind == "0.0.0.0"
        if port:
            updates["port"] = port
        if registry_url:
            registry_settings = settings_store.settings.registry.model_dump()
            registry_settings["url"] = registry_url
            updates["registry"] = registry_settings
        if updates:
            settings_store.update(**updates)

        settings = settings_store.settings
        data_path = Path(settings.data_dir)
        tree = ensure_data_tree(data_path)
        setup_logging(log_level, data_path)

        killed = cleanup_orphaned_transcoders(tree["streams"])
        if killed:
            logger.warning("terminated %d transcoder(s) left over from a previous run", killed)

        secret_store = SecretStore(data_path)
        registry = SourceRegistry()
        registry.sync(sources_from_settings(settings.sources))
        engine = StreamEngine(
            settings=settings.stream,
            streams_dir=tree["streams"],
            registry=registry,
            secret_store=secret_store,
            launcher=launcher,
        )
        state = cls(
            settings_store=settings_store,
            log_level=log_level,
            secret_store=secret_store,
            registry=registry,
            engine=engine,
            data_dir=data_path,
        )
        if settings.registry.url:
            state.feed = RegistryFeed(settings.registry, secret_store, on_sources=state.replace_sources)
        return state

    def start(self) -> None:
        self.engine.start()
        if self.feed is not None:
            self.feed.start()

    def replace_sources(self, sources: list[Source]) -> RegistryChange:
        change = self.engine.sync_sources(sources)
        if not change.empty:
            self.settings_store.update(sources=[source.to_config().model_dump() for source in sources])
        for source_id in change.removed:
            self.secret_store.forget(f"rtsp:{source_id}")
        return change

    def feed_status(self) -> dict[str, object] | None:
        if self.feed is None:
            return None
        return {"url": self.feed.settings.url, "last_error": self.feed.last_error}

    def begin_shutdown(self) -> None:
        with self._shutdown_lock:
            if self._shutdown_started:
                return
            self._shutdown_started = True
        if self.feed is not None:
            self.feed.stop()
        self.engine.stop_all()

    def shutdown(self) -> None:
        self.begin_shutdown()
        with self._shutdown_lock:
            if self._shutdown_complete:
                return
            self._shutdown_complete = True
        logger.info("%s shut down", APP_NAME)


def create_app(
    data_dir: str | None = None,
    bind: str | None = None,
    port: int | None = None,
    log_level: str = "info",
    registry_url: str | None = None,
    launcher: ProcessLauncher | None = None,
) -> FastAPI:
    state = StreamhubState.create(
        data_dir=data_dir,
        bind=bind,
        port=port,
        log_level=log_level,
        registry_url=registry_url,
        launcher=launcher,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.streamhub.start()
        try:
            yield
        finally:
            app.state.streamhub.shutdown()

    app = FastAPI(title="Streamhub", version=APP_VERSION, lifespan=lifespan)
    app.state.streamhub = state

    app.add_middleware(
        CORSMiddleware,
        allow_origins=state.settings_store.settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StreamError)
    async def handle_stream_error(_request: Request, exc: StreamError) -> JSONResponse:
        return stream_error_response(exc)

    @app.exception_handler(HTTPException)
    async def handle_http_error(_request: Request, exc: HTTPException) -> JSONResponse:
        return error_response(exc.status_code, str(exc.detail), HTTP_STATUS_NAMES.get(exc.status_code, "error"))

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(_request: Request, exc: RequestValidationError) -> JSONResponse:
        first = exc.errors()[0] if exc.errors() else {}
        return error_response(422, str(first.get("msg", "Invalid request")), "invalid_request")

    app.include_router(routes_health.router, prefix="/api")
    app.include_router(routes_streams.router, prefix="/api")
    app.include_router(routes_sources.router, prefix="/api")
    app.include_router(routes_streams.media_router)

    return app
