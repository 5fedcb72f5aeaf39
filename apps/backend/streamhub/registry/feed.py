from __future__ import annotations

import threading
from collections.abc import Callable
from typing import Any

import httpx
from pydantic import ValidationError

from streamhub.config.schema import RegistryFeedSettings
from streamhub.util.logging import get_logger
from streamhub.util.security import SecretStore, sanitize_rtsp_url

from .sources import Source, SourcePayload, source_from_payload

logger = get_logger(__name__)


class FeedError(Exception):
    pass


def parse_feed(body: Any, secret_store: SecretStore) -> list[Source]:
    """Accept the admin panel envelope ``{"success", "message", "data"}`` or a bare list."""
    if isinstance(body, dict):
        if body.get("success") is False:
            raise FeedError(str(body.get("message") or "registry feed reported failure"))
        body = body.get("data")
    if not isinstance(body, list):
        raise FeedError("registry feed is not a list of sources")

    sources: list[Source] = []
    for item in body:
        try:
            payload = SourcePayload.model_validate(item)
            sources.append(source_from_payload(payload, secret_store))
        except (ValidationError, ValueError) as exc:
            ident = item.get("id") if isinstance(item, dict) else None
            logger.warning("registry entry %s skipped: %s", ident, sanitize_rtsp_url(str(exc).splitlines()[0]))
    return sources


class RegistryFeed:
    def __init__(
        self,
        settings: RegistryFeedSettings,
        secret_store: SecretStore,
        on_sources: Callable[[list[Source]], None],
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        if not settings.url:
            raise ValueError("registry feed url is not configured")
        self.settings = settings
        self.secret_store = secret_store
        self.on_sources = on_sources
        self._client = httpx.Client(timeout=settings.timeout_seconds, transport=transport)
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self.last_error: str | None = None

    def fetch(self) -> list[Source]:
        try:
            response = self._client.get(self.settings.url, headers={"Accept": "application/json"})
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as exc:
            raise FeedError(f"registry feed request failed: {exc}") from exc
        except ValueError as exc:
            raise FeedError("registry feed returned invalid JSON") from exc
        return parse_feed(body, self.secret_store)

    def poll_once(self) -> bool:
        try:
            sources = self.fetch()
        except FeedError as exc:
            self.last_error = str(exc)
            logger.warning("%s; keeping current registry", exc)
            return False
        self.last_error = None
        self.on_sources(sources)
        return True

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="registry-feed", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 3.0) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread and thread.is_alive():
            thread.join(timeout=timeout)
        self._thread = None
        self._client.close()

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.poll_once()
            except Exception:
                logger.exception("registry feed poll crashed")
            if self._stop_event.wait(self.settings.poll_seconds):
                break
