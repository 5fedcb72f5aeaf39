from __future__ import annotations

import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel

from streamhub.config.defaults import DEFAULT_RTSP_PORT
from streamhub.config.schema import SourceConfig
from streamhub.util.logging import get_logger
from streamhub.util.security import (
    SecretStore,
    build_rtsp_url,
    sanitize_rtsp_url,
    split_rtsp_url,
    validate_source_id,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class Source:
    id: str
    name: str
    host: str
    port: int = DEFAULT_RTSP_PORT
    path: str = "/"
    scheme: str = "rtsp"
    username: str | None = None
    secret_ref: tuple[tuple[str, str], ...] | None = None
    room_id: str | None = None
    building_id: str | None = None

    def rtsp_url(self, password: str | None = None) -> str:
        return build_rtsp_url(
            self.host,
            scheme=self.scheme,
            port=self.port,
            path=self.path,
            username=self.username,
            password=password,
        )

    @property
    def safe_url(self) -> str:
        return sanitize_rtsp_url(self.rtsp_url("***" if self.username else None))

    @property
    def secret(self) -> dict[str, str] | None:
        return dict(self.secret_ref) if self.secret_ref else None

    def to_config(self) -> SourceConfig:
        return SourceConfig(
            id=self.id,
            name=self.name,
            host=self.host,
            port=self.port,
            path=self.path,
            scheme=self.scheme,
            username=self.username,
            secret_ref=self.secret,
            room_id=self.room_id,
            building_id=self.building_id,
        )

    def public_view(self) -> dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "rtsp_url": self.safe_url,
            "host": self.host,
            "port": self.port,
            "room_id": self.room_id,
            "building_id": self.building_id,
            "has_credentials": self.secret_ref is not None,
        }

    @classmethod
    def from_config(cls, config: SourceConfig) -> "Source":
        secret_ref = tuple(sorted(config.secret_ref.items())) if config.secret_ref else None
        return cls(
            id=validate_source_id(config.id),
            name=config.name,
            host=config.host,
            port=config.port,
            path=config.path or "/",
            scheme=config.scheme,
            username=config.username,
            secret_ref=secret_ref,
            room_id=config.room_id,
            building_id=config.building_id,
        )


class SourcePayload(BaseModel):
    """A camera as published by the admin panel (CCTV records)."""

    id: str | int
    name: str | None = None
    ip_address: str | None = None
    rtsp_url: str | None = None
    port: int | None = None
    path: str | None = None
    username: str | None = None
    password: str | None = None
    room_id: str | int | None = None
    building_id: str | int | None = None


def source_from_payload(payload: SourcePayload, secret_store: SecretStore) -> Source:
    source_id = validate_source_id(str(payload.id))
    name = payload.name or source_id
    username = payload.username or None
    password = payload.password or None
    scheme = "rtsp"
    port = payload.port or DEFAULT_RTSP_PORT
    path = payload.path or "/"

    if payload.rtsp_url:
        parts = split_rtsp_url(payload.rtsp_url)
        host = parts.host
        scheme = parts.scheme
        port = parts.port or payload.port or DEFAULT_RTSP_PORT
        path = parts.path if parts.path != "/" or not payload.path else payload.path
        username = parts.username or username
        password = parts.password or password
    elif payload.ip_address:
        host = payload.ip_address.strip()
        if not host or any(ch.isspace() for ch in host) or "/" in host:
            raise ValueError("Invalid source address")
    else:
        raise ValueError("Source needs rtsp_url or ip_address")

    secret_ref: tuple[tuple[str, str], ...] | None = None
    secret_name = f"rtsp:{source_id}"
    if password:
        stored = secret_store.store(secret_name, password)
        secret_ref = tuple(sorted(stored.as_dict().items()))
    elif username:
        existing = {"provider": secret_store.provider, "ref": secret_name}
        if secret_store.get(existing) is not None:
            secret_ref = tuple(sorted(existing.items()))

    return Source(
        id=source_id,
        name=name,
        host=host,
        port=port,
        path=path,
        scheme=scheme,
        username=username,
        secret_ref=secret_ref,
        room_id=str(payload.room_id) if payload.room_id is not None else None,
        building_id=str(payload.building_id) if payload.building_id is not None else None,
    )


@dataclass(frozen=True)
class RegistryChange:
    added: tuple[Source, ...] = ()
    removed: tuple[str, ...] = ()
    changed: tuple[Source, ...] = ()

    @property
    def empty(self) -> bool:
        return not (self.added or self.removed or self.changed)


RegistryListener = Callable[[RegistryChange], None]


@dataclass
class SourceRegistry:
    _sources: dict[str, Source] = field(default_factory=dict)
    _listeners: list[RegistryListener] = field(default_factory=list)
    _lock: threading.RLock = field(default_factory=threading.RLock)
    _write_lock: threading.Lock = field(default_factory=threading.Lock)

    def subscribe(self, listener: RegistryListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def get(self, source_id: str) -> Source | None:
        with self._lock:
            return self._sources.get(source_id)

    def __contains__(self, source_id: object) -> bool:
        with self._lock:
            return source_id in self._sources

    def list_sources(self) -> list[Source]:
        with self._lock:
            return sorted(self._sources.values(), key=lambda s: s.id)

    def ids(self) -> set[str]:
        with self._lock:
            return set(self._sources)

    def sync(self, sources: Iterable[Source]) -> RegistryChange:
        with self._write_lock:
            return self._apply(sources)

    def add(self, source: Source) -> RegistryChange:
        with self._write_lock:
            with self._lock:
                current = dict(self._sources)
            current[source.id] = source
            return self._apply(current.values())

    def remove(self, source_id: str) -> RegistryChange:
        with self._write_lock:
            with self._lock:
                current = [s for sid, s in self._sources.items() if sid != source_id]
            return self._apply(current)

    def _apply(self, sources: Iterable[Source]) -> RegistryChange:
        desired: dict[str, Source] = {}
        for source in sources:
            if source.id in desired:
                logger.warning("duplicate source id in registry feed ignored: %s", source.id)
                continue
            desired[source.id] = source

        with self._lock:
            added = tuple(desired[sid] for sid in sorted(desired.keys() - self._sources.keys()))
            removed = tuple(sorted(self._sources.keys() - desired.keys()))
            changed = tuple(
                desired[sid]
                for sid in sorted(desired.keys() & self._sources.keys())
                if desired[sid] != self._sources[sid]
            )
            self._sources = desired
            listeners = list(self._listeners)

        change = RegistryChange(added=added, removed=removed, changed=changed)
        if change.empty:
            return change
        logger.info(
            "registry updated: added=%s removed=%s changed=%s",
            [s.id for s in added],
            list(removed),
            [s.id for s in changed],
        )
        # Writers stay serialized through notification so listeners see changes in order.
        for listener in listeners:
            try:
                listener(change)
            except Exception:
                logger.exception("registry listener failed")
        return change


def sources_from_settings(configs: Iterable[SourceConfig | dict[str, Any]]) -> list[Source]:
    out: list[Source] = []
    for raw in configs:
        try:
            config = raw if isinstance(raw, SourceConfig) else SourceConfig.model_validate(raw)
            out.append(Source.from_config(config))
        except ValueError:
            logger.warning("stored source skipped: invalid configuration")
    return out
