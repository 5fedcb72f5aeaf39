from __future__ import annotations

import threading
import time
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from streamhub.config.schema import StreamSettings
from streamhub.registry.sources import RegistryChange, Source, SourceRegistry
from streamhub.util.logging import get_logger
from streamhub.util.security import SecretStore, validate_source_id

from .coordinator import ActivationCoordinator, ManifestRef
from .errors import StoreFault
from .health import HealthMonitor, HealthPolicy, HealthRecord, WorkerSignal
from .process import ProcessLauncher
from .segments import SegmentStore
from .supervisor import TranscodeSupervisor

logger = get_logger(__name__)


class StreamEngine:
    def __init__(
        self,
        settings: StreamSettings,
        streams_dir: Path,
        registry: SourceRegistry | None = None,
        secret_store: SecretStore | None = None,
        launcher: ProcessLauncher | None = None,
    ) -> None:
        self.settings = settings
        self.registry = registry or SourceRegistry()
        self.store = SegmentStore(streams_dir, linger_seconds=settings.segment_linger_seconds)
        self.supervisor = TranscodeSupervisor(
            registry=self.registry,
            store=self.store,
            settings=settings,
            secret_store=secret_store,
            launcher=launcher,
        )
        self.monitor = HealthMonitor(
            HealthPolicy(
                startup_grace_seconds=settings.startup_grace_seconds,
                freshness_window_seconds=settings.freshness_window_seconds,
            ),
            read_signal=self._read_signal,
            poll_seconds=settings.health_poll_seconds,
            probe_target=self._probe_target,
            probe_interval_seconds=settings.probe_interval_seconds,
            probe_timeout_seconds=settings.probe_timeout_seconds,
        )
        self.supervisor.bind_events(self.monitor)
        self.coordinator = ActivationCoordinator(
            registry=self.registry,
            supervisor=self.supervisor,
            store=self.store,
            monitor=self.monitor,
            settings=settings,
        )
        for source in self.registry.list_sources():
            self.monitor.track(source.id)
        self.registry.subscribe(self._on_registry_change)

        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._housekeeper: threading.Thread | None = None
        self._started = False
        self._stopped = False

    def start(self) -> None:
        with self._lock:
            if self._started or self._stopped:
                return
            self._started = True
        # Nothing from a previous run is reusable: every source starts Unknown.
        for source_id in self.store.active_areas():
            self._purge(source_id)
        self.monitor.start()
        self._housekeeper = threading.Thread(target=self._housekeeping_loop, name="stream-housekeeping", daemon=True)
        self._housekeeper.start()
        logger.info("stream engine started with %d source(s)", len(self.registry.ids()))

    def stop_all(self, timeout: float = 10.0) -> None:
        with self._lock:
            if self._stopped:
                return
            self._stopped = True
        deadline = time.monotonic() + timeout
        self._stop_event.set()
        self.coordinator.stop()
        housekeeper = self._housekeeper
        if housekeeper is not None and housekeeper.is_alive():
            housekeeper.join(timeout=max(0.0, deadline - time.monotonic()))
        self.supervisor.stop_all()
        self.monitor.stop(timeout=max(0.1, deadline - time.monotonic()))
        for source_id in self.store.active_areas():
            self._purge(source_id)
        logger.info("stream engine stopped")

    @property
    def stopped(self) -> bool:
        return self._stopped

    def sync_sources(self, sources: Iterable[Source]) -> RegistryChange:
        return self.registry.sync(sources)

    def resolve(self, source_id: str, timeout: float | None = None) -> ManifestRef:
        return self.coordinator.resolve(validate_source_id(source_id), timeout)

    async def resolve_async(self, source_id: str, timeout: float | None = None) -> ManifestRef:
        return await self.coordinator.resolve_async(validate_source_id(source_id), timeout)

    def touch(self, source_id: str) -> None:
        self.coordinator.touch(source_id)

    def health(self, source_id: str) -> HealthRecord | None:
        return self.monitor.get(source_id)

    def status(self, source_id: str) -> dict[str, Any] | None:
        record = self.monitor.get(source_id)
        if record is None:
            return None
        handle = self.supervisor.handle(source_id)
        payload = record.as_dict()
        payload["worker"] = handle.as_dict() if handle is not None else None
        return payload

    def statuses(self) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        for source in self.registry.list_sources():
            status = self.status(source.id)
            if status is not None:
                status["name"] = source.name
                status["room_id"] = source.room_id
                out.append(status)
        return out

    def _read_signal(self, source_id: str) -> WorkerSignal:
        observed = self.supervisor.observe(source_id)
        if not observed.present:
            return WorkerSignal()
        return WorkerSignal(
            present=True,
            alive=observed.alive,
            ready=self.store.is_ready(source_id),
            last_output_at=self.store.last_output_at(source_id),
        )

    def _probe_target(self, source_id: str) -> tuple[str, int] | None:
        source = self.registry.get(source_id)
        if source is None:
            return None
        return source.host, source.port

    def _on_registry_change(self, change: RegistryChange) -> None:
        for source in change.added:
            self.monitor.track(source.id)
        self.supervisor.on_registry_change(change.added, change.removed, change.changed)
        for source_id in change.removed:
            self.coordinator.forget(source_id)
            self.monitor.forget(source_id)

    def _housekeeping_loop(self) -> None:
        while not self._stop_event.wait(self.settings.housekeeping_seconds):
            for source_id in self.supervisor.active_ids():
                try:
                    self.store.housekeep(source_id)
                except Exception:
                    logger.exception("segment housekeeping failed: %s", source_id)
            try:
                self.coordinator.sweep_idle()
            except Exception:
                logger.exception("idle sweep failed")

    def _purge(self, source_id: str) -> None:
        try:
            self.store.purge(source_id)
        except StoreFault as exc:
            logger.error("failed to purge stream area %s: %s", source_id, exc.message)
        except ValueError:
            logger.warning("unexpected entry in streams directory: %s", source_id)
